"""
Shell completion scripts.
"""

from typing import Dict


def get_bash_completion() -> str:
    """Bash completion script."""
    return """
# Bash completion for depsync
_depsync_completion() {
    local cur prev opts
    COMPREPLY=()
    cur="${COMP_WORDS[COMP_CWORD]}"
    prev="${COMP_WORDS[COMP_CWORD-1]}"

    if [[ ${COMP_CWORD} == 1 ]]; then
        opts="sync status validate info config completion --version --help"
        COMPREPLY=( $(compgen -W "${opts}" -- ${cur}) )
        return 0
    fi

    if [[ "${COMP_WORDS[1]}" == "config" && ${COMP_CWORD} == 2 ]]; then
        opts="init show validate"
        COMPREPLY=( $(compgen -W "${opts}" -- ${cur}) )
        return 0
    fi

    if [[ "${COMP_WORDS[1]}" == "completion" && ${COMP_CWORD} == 2 ]]; then
        COMPREPLY=( $(compgen -W "bash zsh fish" -- ${cur}) )
        return 0
    fi

    case "${prev}" in
        --table|-t|--output-file|-o)
            COMPREPLY=( $(compgen -f -- ${cur}) )
            return 0
            ;;
        --root|-r)
            COMPREPLY=( $(compgen -d -- ${cur}) )
            return 0
            ;;
        --output-format)
            COMPREPLY=( $(compgen -W "console json" -- ${cur}) )
            return 0
            ;;
    esac

    if [[ "${COMP_WORDS[1]}" == "sync" || "${COMP_WORDS[1]}" == "status" ]]; then
        opts="--dry-run --table --root --only --parallelism --output-format --output-file --quiet --verbose"
        COMPREPLY=( $(compgen -W "${opts}" -- ${cur}) )
        return 0
    fi

    if [[ "${COMP_WORDS[1]}" == "validate" ]]; then
        COMPREPLY=( $(compgen -W "--table --root" -- ${cur}) )
        return 0
    fi
}

complete -F _depsync_completion depsync
"""


def get_zsh_completion() -> str:
    """Zsh completion script."""
    return """
#compdef depsync

_depsync() {
    local context state state_descr line
    typeset -A opt_args

    _arguments -C \\
        '1: :_depsync_commands' \\
        '*:: :->args'

    case $state in
        args)
            case $words[1] in
                sync|status)
                    _arguments \\
                        '--dry-run[Report what would change without touching the filesystem]' \\
                        '--table[Dependency table]:table:_files' \\
                        '--root[Checkout root]:directory:_directories' \\
                        '--only[Comma-separated dependency ids]:ids:' \\
                        '--parallelism[Maximum concurrent fetches]:parallelism:(1 2 4 8 16)' \\
                        '--output-format[Output format]:format:(console json)' \\
                        '--output-file[Save results to file]:file:_files' \\
                        '--quiet[Only print failed entries]' \\
                        '--verbose[Show backend, destination and timing]'
                    ;;
                validate)
                    _arguments \\
                        '--table[Dependency table]:table:_files' \\
                        '--root[Checkout root]:directory:_directories'
                    ;;
                config)
                    _arguments '1: :(init show validate)'
                    ;;
                completion)
                    _arguments '1: :(bash zsh fish)'
                    ;;
            esac
            ;;
    esac
}

_depsync_commands() {
    local commands
    commands=(
        'sync:Bring every dependency to its pinned revision'
        'status:Show which dependencies would change'
        'validate:Validate a dependency table'
        'info:Show table formats, backends and exit codes'
        'config:Configuration management commands'
        'completion:Generate shell completion scripts'
    )
    _describe 'command' commands
}

_depsync "$@"
"""


def get_fish_completion() -> str:
    """Fish completion script."""
    return """
# Fish completion for depsync

complete -c depsync -n '__fish_use_subcommand' -a 'sync' -d 'Sync dependencies'
complete -c depsync -n '__fish_use_subcommand' -a 'status' -d 'Show what would change'
complete -c depsync -n '__fish_use_subcommand' -a 'validate' -d 'Validate a table'
complete -c depsync -n '__fish_use_subcommand' -a 'info' -d 'Show information'
complete -c depsync -n '__fish_use_subcommand' -a 'config' -d 'Configuration management'
complete -c depsync -n '__fish_use_subcommand' -a 'completion' -d 'Shell completion'
complete -c depsync -n '__fish_use_subcommand' -l version -d 'Show version'
complete -c depsync -n '__fish_use_subcommand' -l help -d 'Show help'

complete -c depsync -n '__fish_seen_subcommand_from sync' -l dry-run -d 'Do not touch the filesystem'
complete -c depsync -n '__fish_seen_subcommand_from sync status validate' -l table -d 'Dependency table' -F
complete -c depsync -n '__fish_seen_subcommand_from sync status validate' -l root -d 'Checkout root' -x -a "(__fish_complete_directories)"
complete -c depsync -n '__fish_seen_subcommand_from sync status' -l only -d 'Comma-separated ids' -x
complete -c depsync -n '__fish_seen_subcommand_from sync status' -l parallelism -d 'Max concurrent fetches' -x
complete -c depsync -n '__fish_seen_subcommand_from sync status' -l output-format -d 'Output format' -x -a 'console json'
complete -c depsync -n '__fish_seen_subcommand_from sync status' -l output-file -d 'Output file' -F
complete -c depsync -n '__fish_seen_subcommand_from sync status' -l quiet -d 'Only failures'
complete -c depsync -n '__fish_seen_subcommand_from sync status' -l verbose -d 'Verbose mode'

complete -c depsync -n '__fish_seen_subcommand_from config' -a 'init' -d 'Create sample config'
complete -c depsync -n '__fish_seen_subcommand_from config' -a 'show' -d 'Show current config'
complete -c depsync -n '__fish_seen_subcommand_from config' -a 'validate' -d 'Validate config file'

complete -c depsync -n '__fish_seen_subcommand_from completion' -x -a 'bash zsh fish'
"""


def get_completion_scripts() -> Dict[str, str]:
    """Return all completion scripts."""
    return {
        "bash": get_bash_completion(),
        "zsh": get_zsh_completion(),
        "fish": get_fish_completion(),
    }
