import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Callable, Optional, Sequence, Set

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .cli_config import (
    DepsyncConfig,
    apply_config_data,
    create_sample_config,
    get_config,
    load_config,
    load_config_file,
    validate_config_values,
)
from .completion import get_completion_scripts
from .entry import DependencyEntry
from .error_handling import (
    ConfigurationError,
    DepsyncError,
    log_configuration_error,
    setup_error_handling,
)
from .reporting import SyncReporter, report_to_json
from .structured_logging import clear_run_context, configure_logging
from .synchronizer import SyncOptions, SyncReport, get_synchronizer
from .table import load_dependency_table

__version__ = "1.0.0"

EXIT_OK = 0
EXIT_ENTRY_FAILURES = 1
EXIT_CONFIGURATION_ERROR = 3
EXIT_CANCELLED = 130

console = Console(soft_wrap=True)
err_console = Console(stderr=True, soft_wrap=True)


def parse_only(only: Optional[str]) -> Optional[Set[str]]:
    """Split a comma-separated ``--only`` value into a set of ids."""
    if only is None:
        return None
    ids = {part.strip() for part in only.split(",") if part.strip()}
    if not ids:
        raise ConfigurationError("--only needs at least one dependency id")
    return ids


def build_filter(
    entries: Sequence[DependencyEntry], only: Optional[Set[str]]
) -> Optional[Callable[[str], bool]]:
    """
    Turn an ``--only`` id set into a selection predicate.

    Raises:
        ConfigurationError: If an id is not in the table
    """
    if only is None:
        return None
    known = {entry.id for entry in entries}
    unknown = sorted(only - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown dependency ids: {', '.join(unknown)}",
            hint="check the ids against the table",
        )
    return lambda entry_id: entry_id in only


def resolve_settings(
    table: Optional[str], root: Optional[str], parallelism: Optional[int]
) -> DepsyncConfig:
    """Apply CLI flags on top of the loaded configuration."""
    config = load_config()
    if table is not None:
        config.sync.table_path = table
    if root is not None:
        config.sync.root = root
    if parallelism is not None:
        config.sync.parallelism = parallelism

    log_file = config.logging.log_file_path if config.logging.enable_file_logging else None
    configure_logging(config.logging.log_level, log_file)
    setup_error_handling(
        log_level=getattr(logging, config.logging.log_level.upper(), logging.WARNING)
    )
    return config


def _install_interrupt_handler(cancel_event: asyncio.Event) -> bool:
    """Route the first Ctrl-C into ``cancel_event``; a second one interrupts."""
    loop = asyncio.get_running_loop()

    def on_interrupt() -> None:
        err_console.print(
            "\n⚠️  Cancelling: waiting for running fetches to finish...",
            style="yellow",
        )
        cancel_event.set()
        loop.remove_signal_handler(signal.SIGINT)

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except (NotImplementedError, RuntimeError, ValueError):
        # No signal support here (Windows, or not the main thread)
        return False
    return True


async def async_sync_dependencies(
    config: DepsyncConfig,
    dry_run: bool,
    only: Optional[Set[str]],
    verbose: bool,
    quiet: bool,
) -> SyncReport:
    """Load the table and run one synchronization."""
    table_path = config.sync.table_path
    if verbose and not quiet:
        err_console.print(f"📁 Loading table: {table_path}", style="blue")

    entries = load_dependency_table(table_path)
    options = SyncOptions.from_config(
        config,
        dry_run=dry_run,
        filter=build_filter(entries, only),
        cancel_event=asyncio.Event(),
    )

    installed = _install_interrupt_handler(options.cancel_event)
    try:
        if not quiet:
            verb = "Planning" if dry_run else "Syncing"
            err_console.print(
                f"🔄 {verb} {len(entries)} dependencies into {config.sync.root}...",
                style="blue",
            )
            if verbose:
                err_console.print(
                    f"⚙️  Parallelism: {options.parallelism}, Retries: {options.retry_attempts}",
                    style="dim",
                )

        synchronizer = get_synchronizer(config)
        return await synchronizer.sync(entries, options)
    finally:
        if installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
        clear_run_context()


def output_report(
    report: SyncReport,
    output_format: str,
    output_file: Optional[str],
    verbose: bool,
    quiet: bool,
) -> None:
    if output_format == "json":
        json_output = report_to_json(report)
        if output_file:
            with open(output_file, "w", encoding="utf-8") as f:
                f.write(json_output)
            err_console.print(f"✅ Results saved to {output_file}", style="green")
        else:
            print(json_output)
        return

    reporter = SyncReporter(console)
    if not quiet:
        reporter.print_report(report, verbose=verbose)
    else:
        for outcome in report.failed_outcomes:
            reporter.print_outcome(outcome)


def exit_code_for(report: SyncReport) -> int:
    if report.cancelled:
        return EXIT_CANCELLED
    if not report.succeeded:
        return EXIT_ENTRY_FAILURES
    return EXIT_OK


def run_sync_command(
    dry_run: bool,
    parallelism: Optional[int],
    only: Optional[str],
    table: Optional[str],
    root: Optional[str],
    output_format: str,
    output_file: Optional[str],
    quiet: bool,
    verbose: bool,
) -> None:
    """Shared body of ``sync`` and ``status``; always exits."""
    try:
        if output_file and output_format != "json":
            raise click.UsageError("Output file can only be used with JSON format")

        config = resolve_settings(table, root, parallelism)
        selected = parse_only(only)

        if not quiet and output_format != "json":
            console.print(
                Panel(
                    f"🔗 [bold blue]depsync[/bold blue] v{__version__}",
                    border_style="blue",
                )
            )

        report = asyncio.run(
            async_sync_dependencies(config, dry_run, selected, verbose, quiet)
        )
        output_report(report, output_format, output_file, verbose, quiet)
        sys.exit(exit_code_for(report))

    except ConfigurationError as e:
        log_configuration_error(str(e), "main", "run_sync_command", exception=e)
        err_console.print(f"❌ Configuration error: {escape(str(e))}", style="red")
        sys.exit(EXIT_CONFIGURATION_ERROR)
    except KeyboardInterrupt:
        err_console.print("\n⚠️  Sync interrupted by user", style="yellow")
        sys.exit(EXIT_CANCELLED)
    except click.ClickException:
        raise
    except DepsyncError as e:
        err_console.print(f"❌ Error: {escape(str(e))}", style="red")
        sys.exit(EXIT_ENTRY_FAILURES)
    except OSError as e:
        err_console.print(f"❌ Error: {escape(str(e))}", style="red")
        sys.exit(EXIT_ENTRY_FAILURES)


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version information")
@click.pass_context
def cli(ctx, version):
    """
    🔗 depsync: Pinned Dependency Synchronizer

    Brings every third-party checkout listed in a dependency table to its
    pinned revision, in parallel, without ever leaving a half-updated tree.
    """
    if version:
        console.print(f"depsync version {__version__}", style="bold blue")
        ctx.exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


def sync_options(func):
    """Options shared by ``sync`` and ``status``."""
    options = [
        click.option(
            "--table",
            "-t",
            type=click.Path(dir_okay=False),
            help="Dependency table (default from config or DEPS.json)",
        ),
        click.option(
            "--root",
            "-r",
            type=click.Path(file_okay=False),
            help="Checkout root that destination paths are relative to",
        ),
        click.option(
            "--only",
            help="Comma-separated dependency ids to restrict the run to",
        ),
        click.option(
            "--parallelism",
            "-j",
            type=click.IntRange(min=1),
            help="Maximum concurrent fetches (default from config or 8)",
        ),
        click.option(
            "--output-format",
            type=click.Choice(["console", "json"], case_sensitive=False),
            default="console",
            help="Output format for results",
            show_default=True,
        ),
        click.option(
            "--output-file",
            "-o",
            type=click.Path(dir_okay=False),
            help="Save results to file (JSON format only)",
        ),
        click.option("--quiet", "-q", is_flag=True, help="Only print failed entries"),
        click.option(
            "--verbose",
            "-v",
            is_flag=True,
            help="Show backend, destination and timing per entry",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@cli.command()
@click.option(
    "--dry-run",
    is_flag=True,
    help="Report what would change without touching the filesystem",
)
@sync_options
def sync(
    dry_run: bool,
    table: Optional[str],
    root: Optional[str],
    only: Optional[str],
    parallelism: Optional[int],
    output_format: str,
    output_file: Optional[str],
    quiet: bool,
    verbose: bool,
) -> None:
    """
    Bring every dependency to its pinned revision.

    Exit codes: 0 all entries in sync, 1 one or more entries failed,
    3 configuration error (nothing was changed), 130 cancelled.

    Examples:

      depsync sync

      depsync sync --dry-run

      depsync sync --parallelism 4 --only skia/third_party/externals/zlib

      depsync sync --output-format json -o report.json
    """
    run_sync_command(
        dry_run,
        parallelism,
        only,
        table,
        root,
        output_format.lower(),
        output_file,
        quiet,
        verbose,
    )


@cli.command()
@sync_options
def status(
    table: Optional[str],
    root: Optional[str],
    only: Optional[str],
    parallelism: Optional[int],
    output_format: str,
    output_file: Optional[str],
    quiet: bool,
    verbose: bool,
) -> None:
    """Show which dependencies are current and which would change (same as sync --dry-run)."""
    run_sync_command(
        True,
        parallelism,
        only,
        table,
        root,
        output_format.lower(),
        output_file,
        quiet,
        verbose,
    )


@cli.command()
@click.option(
    "--table",
    "-t",
    type=click.Path(dir_okay=False),
    help="Dependency table (default from config or DEPS.json)",
)
@click.option(
    "--root",
    "-r",
    type=click.Path(file_okay=False),
    help="Checkout root that destination paths are relative to",
)
def validate(table: Optional[str], root: Optional[str]) -> None:
    """Validate a dependency table without inspecting the network."""
    try:
        config = resolve_settings(table, root, None)
        entries = load_dependency_table(config.sync.table_path)
        options = SyncOptions.from_config(config)
        plan = get_synchronizer(config).plan(entries, options)
    except ConfigurationError as e:
        log_configuration_error(str(e), "main", "validate", exception=e)
        err_console.print(f"❌ Configuration error: {escape(str(e))}", style="red")
        sys.exit(EXIT_CONFIGURATION_ERROR)

    summary = Table(title=f"📋 {config.sync.table_path}", title_style="bold cyan")
    summary.add_column("Backend", style="bold")
    summary.add_column("Entries", justify="center")
    summary.add_column("Nested", justify="center")
    for backend in sorted({p.backend for p in plan.entries}):
        plans = [p for p in plan.entries if p.backend == backend]
        summary.add_row(
            backend, str(len(plans)), str(sum(1 for p in plans if p.ancestors))
        )
    console.print(summary)
    console.print(
        f"✅ Table is valid: {len(entries)} entries, {len(plan.pending())} out of date",
        style="green",
    )


@cli.command()
def info():
    """Show information about table formats, backends and exit codes."""
    info_text = """
[bold blue]📋 Table Formats:[/bold blue]

• [green]DEPS.json[/green] - {"<id>": {"version": "<rev>", "path": "<dest>"}}
• [green]DEPS.yaml[/green] / [green]DEPS.toml[/green] - same shape, optionally under a top-level "deps" key
• Optional per-entry keys: [cyan]locator[/cyan], [cyan]backend[/cyan], [cyan]sha256[/cyan]

[bold blue]🔌 Backends:[/bold blue]

• [yellow]git[/yellow] - git/ssh/file URLs and host-style ids (chromium.googlesource.com/...)
• [yellow]archive[/yellow] - http(s) tarballs and zips, {revision} is substituted in the URL
• [yellow]cipd[/yellow] - package ids like infra/3pp/tools/ninja

[bold blue]🚦 Exit Codes:[/bold blue]

• [green]0[/green] - every entry is at its pinned revision
• [red]1[/red] - one or more entries failed (their previous content is intact)
• [red]3[/red] - configuration error, nothing was changed
• [yellow]130[/yellow] - cancelled

[bold blue]🌍 Environment Variables:[/bold blue]

• [cyan]DEPSYNC_TABLE[/cyan] / [cyan]DEPSYNC_ROOT[/cyan] - Default table and checkout root
• [cyan]DEPSYNC_PARALLELISM[/cyan] - Maximum concurrent fetches
• [cyan]DEPSYNC_RETRY_ATTEMPTS[/cyan] - Retries per failed fetch
• [cyan]DEPSYNC_LOG_LEVEL[/cyan] / [cyan]DEPSYNC_LOG_FILE[/cyan] - Structured log settings

[bold blue]📄 Configuration Files:[/bold blue]

• [green].depsync.json[/green] / [green].depsync.yaml[/green] - Project-level config
• [green]~/.config/depsync/config.json[/green] - User-level config

[bold blue]💡 Usage Examples:[/bold blue]

  # Sync everything
  depsync sync

  # See what would change
  depsync sync --dry-run

  # Only a couple of dependencies
  depsync sync --only a.googlesource.com/x,infra/3pp/tools/ninja

  # Generate sample config
  depsync config init
"""
    console.print(
        Panel(
            info_text,
            title="[bold]depsync Information[/bold]",
            border_style="blue",
        )
    )


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command("init")
@click.option(
    "--path",
    type=click.Path(),
    default=".depsync.json",
    help="Path where to create the config file",
    show_default=True,
)
@click.option("--force", is_flag=True, help="Overwrite existing config file")
def config_init(path: str, force: bool):
    """Create a sample configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        console.print(f"⚠️  Config file already exists at {config_path}", style="yellow")
        console.print("Use --force to overwrite", style="dim")
        return

    try:
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(create_sample_config())
    except OSError as e:
        console.print(f"❌ Failed to create config file: {escape(str(e))}", style="red")
        sys.exit(1)

    console.print(f"✅ Created configuration file at {config_path}", style="green")
    console.print("Edit this file to customize your settings", style="dim")


@config.command("show")
def config_show():
    """Show current configuration settings."""
    current_config = get_config()

    console.print(Panel("[bold blue]🔧 Configuration[/bold blue]", border_style="blue"))

    console.print("\n[bold cyan]🔄 Sync Settings:[/bold cyan]")
    console.print(f"  Table: {current_config.sync.table_path}")
    console.print(f"  Root: {current_config.sync.root}")
    console.print(f"  Parallelism: {current_config.sync.parallelism}")
    console.print(f"  Retry Attempts: {current_config.sync.retry_attempts}")
    console.print(f"  Fetch Timeout: {current_config.sync.fetch_timeout_seconds}s")
    console.print(f"  State Directory: {current_config.sync.state_dir_name}")

    console.print("\n[bold cyan]🌐 Network Settings:[/bold cyan]")
    console.print(f"  Connect Timeout: {current_config.network.connect_timeout}s")
    console.print(f"  Read Timeout: {current_config.network.read_timeout}s")
    console.print(f"  User Agent: {current_config.network.user_agent}")
    console.print(f"  Follow Redirects: {current_config.network.follow_redirects}")

    console.print("\n[bold cyan]🧰 Tools:[/bold cyan]")
    console.print(f"  git: {current_config.tools.git_binary}")
    console.print(f"  cipd: {current_config.tools.cipd_binary}")
    console.print(f"  Shallow git fetches: {current_config.tools.git_shallow}")

    console.print("\n[bold cyan]📝 Logging Settings:[/bold cyan]")
    console.print(f"  Log Level: {current_config.logging.log_level}")
    console.print(f"  File Logging: {current_config.logging.enable_file_logging}")
    console.print(
        f"  Sensitive Data Masking: {current_config.logging.enable_sensitive_data_masking}"
    )


@config.command("validate")
@click.argument("config_file", type=click.Path(exists=True))
def config_validate(config_file: str):
    """Validate a configuration file."""
    config_path = Path(config_file)
    config_data = load_config_file(config_path)

    if config_data is None:
        console.print(f"❌ Could not load config from {config_file}", style="red")
        sys.exit(EXIT_CONFIGURATION_ERROR)

    candidate = DepsyncConfig()
    apply_config_data(candidate, config_data)
    try:
        errors = validate_config_values(candidate)
    except (TypeError, AttributeError) as e:
        errors = [f"wrong value type: {e}"]

    if errors:
        console.print("❌ Configuration validation failed:", style="red")
        for error in errors:
            console.print(f"  • {error}", style="red")
        sys.exit(EXIT_CONFIGURATION_ERROR)

    console.print(f"✅ Configuration file {config_file} is valid", style="green")


@cli.command()
@click.argument(
    "shell", type=click.Choice(["bash", "zsh", "fish"], case_sensitive=False)
)
@click.option(
    "--install",
    is_flag=True,
    help="Install completion script to the user completion directory",
)
def completion(shell: str, install: bool):
    """Generate shell completion scripts.

    Examples:

      depsync completion bash

      depsync completion zsh --install
    """
    script_content = get_completion_scripts()[shell.lower()]

    if not install:
        print(script_content)
        return

    install_paths = {
        "bash": "~/.local/share/bash-completion/completions/depsync",
        "zsh": "~/.local/share/zsh/site-functions/_depsync",
        "fish": "~/.config/fish/completions/depsync.fish",
    }
    install_path = Path(install_paths[shell.lower()]).expanduser()
    try:
        install_path.parent.mkdir(parents=True, exist_ok=True)
        with open(install_path, "w", encoding="utf-8") as f:
            f.write(script_content)
    except OSError as e:
        console.print(f"❌ Could not install to {install_path}: {escape(str(e))}", style="red")
        console.print(
            f"Save manually: depsync completion {shell} > ~/.depsync-completion.{shell}",
            style="dim",
        )
        sys.exit(1)

    console.print(f"✅ Installed {shell} completion to {install_path}", style="green")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
