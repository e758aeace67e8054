"""
Table validation and sync planning.

Everything here is synchronous and read-only: a plan is computed in full,
including inspection of every destination, before the first byte is written.
Any ``ConfigurationError`` therefore aborts a run with no filesystem changes.
"""

import posixpath
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .backends import BackendRegistry
from .entry import DependencyEntry
from .error_handling import ConfigurationError
from .markers import RevisionMarker, read_marker
from .materialize import has_own_content


class Action(Enum):
    """What a run has to do for one entry."""

    NONE = "none"
    FETCH = "fetch"
    UPDATE = "update"


@dataclass(frozen=True)
class EntryPlan:
    """Resolved work item for one entry."""

    entry: DependencyEntry
    backend: str
    relative_path: str
    destination: Path
    action: Action
    marker: Optional[RevisionMarker] = None
    ancestors: Tuple[str, ...] = ()
    nested: Tuple[str, ...] = ()

    @property
    def depth(self) -> int:
        return len(PurePosixPath(self.relative_path).parts)


@dataclass(frozen=True)
class SyncPlan:
    """All entry plans of one run, outer destinations before inner ones."""

    root: Path
    entries: Tuple[EntryPlan, ...]

    def by_id(self) -> Dict[str, EntryPlan]:
        return {plan.entry.id: plan for plan in self.entries}

    def pending(self) -> List[EntryPlan]:
        return [plan for plan in self.entries if plan.action is not Action.NONE]


def normalize_destination(destination: str, root: Path, state_dir_name: str) -> str:
    """
    Normalize a destination path and make sure it stays inside ``root``.

    Returns:
        The normalized POSIX relative path

    Raises:
        ConfigurationError: If the path is empty, absolute, escapes the root
            or points into the state directory
    """
    raw = destination.strip().replace("\\", "/")
    if not raw:
        raise ConfigurationError("Destination path is empty")
    if raw.startswith("/") or (len(raw) > 1 and raw[1] == ":"):
        raise ConfigurationError(f"Destination path must be relative: {destination}")

    normalized = posixpath.normpath(raw)
    parts = PurePosixPath(normalized).parts
    if normalized == ".":
        raise ConfigurationError(
            f"Destination path {destination!r} resolves to the checkout root"
        )
    if ".." in parts:
        raise ConfigurationError(f"Destination path escapes the checkout root: {destination}")
    if parts[0] == state_dir_name:
        raise ConfigurationError(
            f"Destination path {destination!r} is inside the state directory"
        )

    resolved_root = root.resolve()
    resolved = (root / normalized).resolve()
    if resolved != resolved_root and resolved_root not in resolved.parents:
        raise ConfigurationError(
            f"Destination path escapes the checkout root through a symlink: {destination}"
        )
    return normalized


def _is_inside(inner: str, outer: str) -> bool:
    inner_parts = PurePosixPath(inner).parts
    outer_parts = PurePosixPath(outer).parts
    return len(inner_parts) > len(outer_parts) and inner_parts[: len(outer_parts)] == outer_parts


def validate_entries(
    entries: Iterable[DependencyEntry],
    root: Path,
    state_dir_name: str = ".depsync",
) -> Dict[str, str]:
    """
    Validate a table.

    Args:
        entries: All entries of the table
        root: Checkout root
        state_dir_name: Name of the state directory under ``root``

    Returns:
        Mapping of entry id to normalized destination path

    Raises:
        ConfigurationError: On duplicate ids, bad destinations or entries
            sharing one destination
    """
    entries = list(entries)
    id_counts = Counter(entry.id for entry in entries)
    duplicates = sorted(entry_id for entry_id, count in id_counts.items() if count > 1)
    if duplicates:
        raise ConfigurationError(f"Duplicate dependency ids: {', '.join(duplicates)}")

    destinations: Dict[str, str] = {}
    owners: Dict[str, str] = {}
    for entry in entries:
        if not entry.id:
            raise ConfigurationError("Dependency id must be a non-empty string")
        if not entry.revision:
            raise ConfigurationError(f"Entry {entry.id!r} has an empty revision")
        if not entry.locator:
            raise ConfigurationError(f"Entry {entry.id!r} has an empty locator")

        try:
            normalized = normalize_destination(entry.destination_path, root, state_dir_name)
        except ConfigurationError as e:
            raise ConfigurationError(f"Entry {entry.id!r}: {e.message}") from e

        if normalized in owners:
            raise ConfigurationError(
                f"Entries {owners[normalized]!r} and {entry.id!r} share destination {normalized}",
                hint=(
                    "every entry needs its own destination; CIPD packages "
                    "sharing a directory need distinct paths"
                ),
            )
        owners[normalized] = entry.id
        destinations[entry.id] = normalized

    return destinations


def build_sync_plan(
    entries: Iterable[DependencyEntry],
    root: Path,
    registry: BackendRegistry,
    *,
    state_dir_name: str = ".depsync",
    selected: Optional[Callable[[str], bool]] = None,
) -> SyncPlan:
    """
    Validate ``entries`` and inspect their destinations.

    Args:
        entries: Full table; nesting is computed against all of it so that
            unselected inner entries are still preserved on disk
        root: Checkout root
        registry: Backends used to resolve each locator
        state_dir_name: Name of the state directory under ``root``
        selected: Optional predicate restricting which ids are synced

    Returns:
        SyncPlan ordered outer-to-inner

    Raises:
        ConfigurationError: If the table is invalid or a destination holds a
            different entry's content
    """
    entries = tuple(entries)
    destinations = validate_entries(entries, root, state_dir_name)

    chosen = [e for e in entries if selected is None or selected(e.id)]
    chosen_ids = {e.id for e in chosen}

    plans: List[EntryPlan] = []
    for entry in chosen:
        backend = registry.resolve_name(entry)
        relative = destinations[entry.id]
        destination = root / relative

        nested = tuple(
            sorted(
                PurePosixPath(other_path).relative_to(relative).as_posix()
                for other_path in destinations.values()
                if _is_inside(other_path, relative)
            )
        )
        ancestors = tuple(
            sorted(
                other_id
                for other_id, other_path in destinations.items()
                if other_id in chosen_ids and _is_inside(relative, other_path)
            )
        )

        marker = read_marker(destination) if destination.is_dir() else None
        if marker is not None and marker.id != entry.id:
            raise ConfigurationError(
                f"Destination {relative} of {entry.id!r} holds content of {marker.id!r}",
                hint="remove the directory or fix the table",
            )

        if marker is not None and marker.matches(entry):
            action = Action.NONE
        elif marker is not None or has_own_content(destination, nested):
            action = Action.UPDATE
        else:
            action = Action.FETCH

        plans.append(
            EntryPlan(
                entry=entry,
                backend=backend,
                relative_path=relative,
                destination=destination,
                action=action,
                marker=marker,
                ancestors=ancestors,
                nested=nested,
            )
        )

    plans.sort(key=lambda plan: (plan.depth, plan.entry.id))
    return SyncPlan(root=root, entries=tuple(plans))
