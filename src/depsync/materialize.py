"""
Staging and rollback-safe replacement of destination trees.

Backends always write into a fresh staging directory under the state
directory. Only a fully staged tree is moved into place, and the move is
journaled so that any failure restores the previous destination exactly.
All staging and trash directories live under the checkout root so every
move is a same-filesystem rename.
"""

import os
import re
import shutil
import tempfile
import uuid
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, List, Tuple

from .error_handling import MaterializeError, log_filesystem_error
from .structured_logging import get_materialize_logger

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _outermost(paths: Iterable[str]) -> List[str]:
    """Drop every path that lies inside another path of the set."""
    ordered = sorted(set(paths), key=lambda p: (len(PurePosixPath(p).parts), p))
    kept: List[str] = []
    for path in ordered:
        parts = PurePosixPath(path).parts
        if not any(parts[: len(PurePosixPath(k).parts)] == PurePosixPath(k).parts for k in kept):
            kept.append(path)
    return kept


def has_own_content(destination: Path, nested: Iterable[str]) -> bool:
    """
    Whether ``destination`` holds anything besides nested entries' trees.

    Args:
        destination: Directory to inspect
        nested: Paths, relative to ``destination``, owned by nested entries
    """
    if not os.path.lexists(destination):
        return False
    if not destination.is_dir() or destination.is_symlink():
        return True

    nested_paths = [PurePosixPath(p) for p in nested]

    def walk(directory: Path, rel: PurePosixPath) -> bool:
        for child in directory.iterdir():
            child_rel = rel / child.name
            if child_rel in nested_paths:
                continue
            leads_to_nested = any(
                p.parts[: len(child_rel.parts)] == child_rel.parts for p in nested_paths
            )
            if leads_to_nested and child.is_dir() and not child.is_symlink():
                if walk(child, child_rel):
                    return True
                continue
            return True
        return False

    return walk(destination, PurePosixPath())


class StagingArea:
    """Owns ``<root>/<state_dir>/staging`` and ``<root>/<state_dir>/trash``."""

    def __init__(self, root: Path, state_dir_name: str = ".depsync"):
        self.root = root
        self.state_dir = root / state_dir_name
        self.staging_root = self.state_dir / "staging"
        self.trash_root = self.state_dir / "trash"

    def new_staging_dir(self, entry_id: str) -> Path:
        """Create an empty staging directory for one fetch attempt."""
        self.staging_root.mkdir(parents=True, exist_ok=True)
        prefix = _UNSAFE_CHARS.sub("_", entry_id)[-48:] + "-"
        return Path(tempfile.mkdtemp(prefix=prefix, dir=self.staging_root))

    def discard(self, staged: Path) -> None:
        shutil.rmtree(staged, ignore_errors=True)

    def purge_leftovers(self) -> None:
        """Remove staging directories left behind by an interrupted run.

        Trash is kept: after a failed rollback it is the only copy of the
        previous content.
        """
        if self.staging_root.exists():
            shutil.rmtree(self.staging_root, ignore_errors=True)
        if self.trash_root.exists() and any(self.trash_root.iterdir()):
            get_materialize_logger().warning(
                "trash_not_empty", path=str(self.trash_root)
            )

    def _trash_path(self, label: str) -> Path:
        self.trash_root.mkdir(parents=True, exist_ok=True)
        return self.trash_root / f"{_UNSAFE_CHARS.sub('_', label)[-48:]}-{uuid.uuid4().hex[:12]}"

    def swap_into_place(
        self,
        staged: Path,
        destination: Path,
        nested: Iterable[str] = (),
    ) -> None:
        """
        Replace ``destination`` with ``staged``.

        The trees of nested entries (paths relative to ``destination``) are
        carried over from the old tree into the new one, so replacing an
        outer dependency never clobbers an inner one.

        Raises:
            MaterializeError: If the swap failed; ``destination`` has been
                restored to its previous state
        """
        logger = get_materialize_logger()
        journal: List[Tuple[str, Callable[[], None]]] = []
        backup = None
        shadowed_paths: List[Path] = []

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)

            if os.path.lexists(destination):
                backup = self._trash_path(destination.name)
                os.replace(destination, backup)
                journal.append(
                    ("restore previous destination", lambda b=backup: os.replace(b, destination))
                )

            os.replace(staged, destination)
            journal.append(
                ("unstage new tree", lambda: os.replace(destination, staged))
            )

            if backup is not None:
                for rel in _outermost(nested):
                    source = backup / rel
                    if not os.path.lexists(source):
                        continue
                    target = destination / rel
                    if os.path.lexists(target):
                        shadowed = self._trash_path(f"shadowed-{target.name}")
                        os.replace(target, shadowed)
                        shadowed_paths.append(shadowed)
                        journal.append(
                            (
                                f"restore shadowed {rel}",
                                lambda s=shadowed, t=target: os.replace(s, t),
                            )
                        )
                    target.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(source, target)
                    journal.append(
                        (
                            f"return nested {rel}",
                            lambda s=source, t=target: os.replace(t, s),
                        )
                    )
        except OSError as e:
            self._roll_back(journal, destination)
            logger.warning(
                "swap_rolled_back", destination=str(destination), error=str(e)
            )
            raise MaterializeError(
                f"Could not move new content into {destination}: {e}"
            ) from e

        replaced = ([backup] if backup is not None else []) + shadowed_paths
        for path in replaced:
            try:
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path)
                else:
                    path.unlink()
            except OSError as e:
                log_filesystem_error(
                    "Could not remove replaced content",
                    "materialize",
                    "swap_into_place",
                    path=str(path),
                    exception=e,
                )

    def _roll_back(
        self, journal: List[Tuple[str, Callable[[], None]]], destination: Path
    ) -> None:
        for description, undo in reversed(journal):
            try:
                undo()
            except OSError as e:
                log_filesystem_error(
                    f"Rollback step failed: {description}",
                    "materialize",
                    "swap_into_place",
                    path=str(destination),
                    exception=e,
                )
                raise MaterializeError(
                    f"Rollback of {destination} failed during '{description}'",
                    hint=f"previous content is kept under {self.trash_root}",
                ) from e
