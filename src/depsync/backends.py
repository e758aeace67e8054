"""
Fetch backends.

Each backend knows how to materialize one pinned revision of a locator into
an empty staging directory. The synchronizer never looks inside a locator
beyond asking the registry which backend accepts it.
"""

import asyncio
import hashlib
import os
import shutil
import tarfile
import zipfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Type
from urllib.parse import urlparse

import httpx

from .cli_config import DepsyncConfig, get_config
from .entry import DependencyEntry
from .error_handling import (
    ConfigurationError,
    FetchError,
    log_network_error,
    sanitize_message,
)
from .markers import MARKER_FILENAME
from .structured_logging import get_fetch_logger

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tar", ".zip")
GIT_SCHEMES = ("git", "ssh", "file", "git+https", "git+http", "git+ssh")


class FetchBackend(ABC):
    """
    Base class for fetch backends.

    Backends are async context managers so that per-run resources (HTTP
    connection pools) are opened once and closed when the run ends.
    """

    name: str = ""

    def __init__(self, config: Optional[DepsyncConfig] = None):
        self.config = config or get_config()
        self.timeout = float(self.config.sync.fetch_timeout_seconds)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    @classmethod
    @abstractmethod
    def accepts(cls, locator: str) -> bool:
        """Whether this backend can fetch ``locator``."""

    @abstractmethod
    async def fetch(
        self, entry: DependencyEntry, staging: Path, previous: Optional[Path]
    ) -> None:
        """
        Materialize ``entry.revision`` into the empty directory ``staging``.

        Args:
            entry: The entry to fetch
            staging: Existing, empty directory to fill
            previous: Current destination content, if any, which a backend
                may reuse (e.g. as a git object reference) but never modify

        Raises:
            FetchError: If the revision cannot be materialized
        """

    async def _run(
        self,
        argv: List[str],
        entry: DependencyEntry,
        cwd: Optional[Path] = None,
    ) -> str:
        """Run an external client, returning stdout or raising FetchError."""
        env = dict(os.environ)
        env.setdefault("GIT_TERMINAL_PROMPT", "0")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as e:
            raise FetchError(
                f"{self.name} client not found: {argv[0]}",
                hint="install it or point the tools config at it",
                entry_id=entry.id,
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise FetchError(
                f"{argv[0]} {argv[1]} timed out after {self.timeout:.0f}s",
                entry_id=entry.id,
            ) from e
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise FetchError(
                sanitize_message(
                    f"{argv[0]} {argv[1]} failed ({process.returncode}): {message}"
                ),
                entry_id=entry.id,
            )
        return stdout.decode("utf-8", errors="replace").strip()


def _is_archive_url(locator: str) -> bool:
    parsed = urlparse(locator)
    return parsed.scheme in ("http", "https") and parsed.path.lower().endswith(
        ARCHIVE_SUFFIXES
    )


class GitBackend(FetchBackend):
    """Checks out a git repository detached at the pinned revision."""

    name = "git"

    @classmethod
    def accepts(cls, locator: str) -> bool:
        parsed = urlparse(locator)
        if parsed.scheme in GIT_SCHEMES:
            return True
        if parsed.scheme in ("http", "https"):
            return not _is_archive_url(locator)
        return locator.endswith(".git")

    @staticmethod
    def clone_url(locator: str) -> str:
        if locator.startswith("git+"):
            return locator[len("git+"):]
        return locator

    async def fetch(
        self, entry: DependencyEntry, staging: Path, previous: Optional[Path]
    ) -> None:
        git = self.config.tools.git_binary
        url = self.clone_url(entry.locator)

        if self.config.tools.git_shallow:
            await self._run([git, "init", "--quiet", str(staging)], entry)
            await self._run([git, "remote", "add", "origin", url], entry, cwd=staging)
            await self._run(
                [git, "fetch", "--quiet", "--depth", "1", "origin", entry.revision],
                entry,
                cwd=staging,
            )
            await self._run(
                [git, "checkout", "--quiet", "--detach", "FETCH_HEAD"], entry, cwd=staging
            )
        else:
            clone = [git, "clone", "--quiet", "--no-checkout"]
            if previous is not None and (previous / ".git").exists():
                clone += ["--reference-if-able", str(previous), "--dissociate"]
            await self._run(clone + [url, str(staging)], entry)
            try:
                await self._run(
                    [git, "checkout", "--quiet", "--detach", entry.revision],
                    entry,
                    cwd=staging,
                )
            except FetchError:
                # Revision not reachable from the advertised refs.
                await self._run(
                    [git, "fetch", "--quiet", "origin", entry.revision],
                    entry,
                    cwd=staging,
                )
                await self._run(
                    [git, "checkout", "--quiet", "--detach", "FETCH_HEAD"],
                    entry,
                    cwd=staging,
                )

        head = await self._run([git, "rev-parse", "HEAD"], entry, cwd=staging)
        if _looks_like_commit(entry.revision) and not head.startswith(entry.revision.lower()):
            raise FetchError(
                f"Checked out {head} but {entry.revision} was pinned",
                entry_id=entry.id,
            )

        exclude = staging / ".git" / "info" / "exclude"
        exclude.parent.mkdir(parents=True, exist_ok=True)
        with open(exclude, "a", encoding="utf-8") as f:
            f.write(f"/{MARKER_FILENAME}\n")

        get_fetch_logger().debug(
            "git_checkout_complete", entry_id=entry.id, commit=head
        )


def _looks_like_commit(revision: str) -> bool:
    return 7 <= len(revision) <= 40 and all(c in "0123456789abcdefABCDEF" for c in revision)


class ArchiveBackend(FetchBackend):
    """Downloads and unpacks a tarball or zip over HTTP(S)."""

    name = "archive"

    def __init__(self, config: Optional[DepsyncConfig] = None):
        super().__init__(config)
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        network = self.config.network
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(network.read_timeout, connect=network.connect_timeout),
            headers={"User-Agent": network.user_agent},
            follow_redirects=network.follow_redirects,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client:
            await self.client.aclose()
            self.client = None

    @classmethod
    def accepts(cls, locator: str) -> bool:
        return _is_archive_url(locator)

    @staticmethod
    def archive_url(entry: DependencyEntry) -> str:
        return entry.locator.replace("{revision}", entry.revision)

    async def fetch(
        self, entry: DependencyEntry, staging: Path, previous: Optional[Path]
    ) -> None:
        if self.client is None:
            raise RuntimeError("ArchiveBackend must be used as an async context manager")

        url = self.archive_url(entry)
        download = staging.parent / f"{staging.name}.download"
        digest = hashlib.sha256()
        try:
            try:
                async with self.client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(download, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            digest.update(chunk)
                            f.write(chunk)
            except httpx.HTTPStatusError as e:
                raise FetchError(
                    sanitize_message(
                        f"Download failed with HTTP {e.response.status_code}: {url}"
                    ),
                    entry_id=entry.id,
                ) from e
            except httpx.RequestError as e:
                log_network_error(
                    f"Download failed: {e}",
                    "backends",
                    "ArchiveBackend.fetch",
                    url=url,
                    exception=e,
                )
                raise FetchError(
                    sanitize_message(f"Download failed: {url}: {e}"), entry_id=entry.id
                ) from e

            actual = digest.hexdigest()
            if entry.sha256 and actual != entry.sha256:
                raise FetchError(
                    "Archive digest mismatch",
                    hint=f"expected {entry.sha256}, got {actual}",
                    entry_id=entry.id,
                )

            await asyncio.to_thread(_extract_archive, download, staging, urlparse(url).path)
        finally:
            download.unlink(missing_ok=True)

        get_fetch_logger().debug(
            "archive_extracted", entry_id=entry.id, sha256=digest.hexdigest()
        )


def _extract_archive(archive: Path, target: Path, url_path: str) -> None:
    try:
        if url_path.lower().endswith(".zip"):
            with zipfile.ZipFile(archive) as zf:
                for member in zf.namelist():
                    member_path = PurePosixPath(member)
                    if member_path.is_absolute() or ".." in member_path.parts:
                        raise FetchError(f"Unsafe path in archive: {member}")
                zf.extractall(target)
        else:
            with tarfile.open(archive, mode="r:*") as tf:
                tf.extractall(target, filter="data")
    except (tarfile.TarError, zipfile.BadZipFile) as e:
        raise FetchError(f"Corrupt archive: {e}") from e

    children = list(target.iterdir())
    if len(children) == 1 and children[0].is_dir():
        top = children[0]
        for item in list(top.iterdir()):
            shutil.move(str(item), str(target / item.name))
        top.rmdir()


class CipdBackend(FetchBackend):
    """Exports a CIPD package at a pinned version tag."""

    name = "cipd"

    @classmethod
    def accepts(cls, locator: str) -> bool:
        return locator.startswith("cipd://")

    async def fetch(
        self, entry: DependencyEntry, staging: Path, previous: Optional[Path]
    ) -> None:
        package = entry.locator[len("cipd://"):]
        ensure_file = staging.parent / f"{staging.name}.ensure"
        ensure_file.write_text(f"{package} {entry.revision}\n", encoding="utf-8")
        try:
            await self._run(
                [
                    self.config.tools.cipd_binary,
                    "export",
                    "-root",
                    str(staging),
                    "-ensure-file",
                    str(ensure_file),
                ],
                entry,
            )
        finally:
            ensure_file.unlink(missing_ok=True)


class BackendRegistry:
    """Ordered set of backends; the first one that accepts a locator wins."""

    def __init__(self):
        self._backends: Dict[str, Type[FetchBackend]] = {}

    def register(self, backend_cls: Type[FetchBackend], *, first: bool = False) -> None:
        """
        Register a backend class.

        Args:
            backend_cls: Backend to add (replaces one with the same name)
            first: Give it precedence over already registered backends
        """
        if not backend_cls.name:
            raise ValueError("Backend name must be a non-empty string")

        self._backends.pop(backend_cls.name, None)
        if first:
            self._backends = {backend_cls.name: backend_cls, **self._backends}
        else:
            self._backends[backend_cls.name] = backend_cls

    def names(self) -> List[str]:
        return list(self._backends)

    def resolve_name(self, entry: DependencyEntry) -> str:
        """
        Pick the backend for an entry.

        Raises:
            ConfigurationError: If the explicit backend is unknown or no
                backend accepts the locator
        """
        if entry.backend:
            if entry.backend not in self._backends:
                raise ConfigurationError(
                    f"Entry {entry.id!r} names unknown backend {entry.backend!r}",
                    hint=f"known backends: {', '.join(self._backends)}",
                )
            return entry.backend

        for name, backend_cls in self._backends.items():
            if backend_cls.accepts(entry.locator):
                return name

        raise ConfigurationError(
            sanitize_message(f"No backend accepts locator {entry.locator!r} of {entry.id!r}"),
            hint="set an explicit backend for this entry",
        )

    def create(self, name: str, config: Optional[DepsyncConfig] = None) -> FetchBackend:
        return self._backends[name](config)


def default_backend_registry() -> BackendRegistry:
    """Registry with the built-in backends, archive URLs checked before git."""
    registry = BackendRegistry()
    registry.register(ArchiveBackend)
    registry.register(CipdBackend)
    registry.register(GitBackend)
    return registry
