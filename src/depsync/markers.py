"""Revision markers: what a destination currently holds."""

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .entry import DependencyEntry
from .structured_logging import get_sync_logger

MARKER_FILENAME = ".depsync-revision.json"


@dataclass(frozen=True)
class RevisionMarker:
    """Contents of ``<destination>/.depsync-revision.json``."""

    id: str
    revision: str
    locator: str
    backend: str
    synced_at: str

    def matches(self, entry: DependencyEntry) -> bool:
        """True when the marker records exactly this entry's pin."""
        return self.id == entry.id and self.revision == entry.revision


def marker_path(destination: Path) -> Path:
    return destination / MARKER_FILENAME


def read_marker(destination: Path) -> Optional[RevisionMarker]:
    """
    Read the marker in ``destination``.

    A missing, unreadable or malformed marker is reported as absent; the
    destination is then re-materialized rather than trusted.
    """
    path = marker_path(destination)
    if not path.is_file():
        return None

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        get_sync_logger().warning(
            "marker_unreadable", path=str(path), error=str(e)
        )
        return None

    if not isinstance(payload, dict):
        get_sync_logger().warning("marker_malformed", path=str(path))
        return None

    try:
        return RevisionMarker(
            id=str(payload["id"]),
            revision=str(payload["revision"]),
            locator=str(payload.get("locator", "")),
            backend=str(payload.get("backend", "")),
            synced_at=str(payload.get("synced_at", "")),
        )
    except KeyError as e:
        get_sync_logger().warning(
            "marker_malformed", path=str(path), missing_field=str(e)
        )
        return None


def write_marker(destination: Path, entry: DependencyEntry, backend: str) -> RevisionMarker:
    """Write the marker for ``entry`` into ``destination`` (normally a staging dir)."""
    marker = RevisionMarker(
        id=entry.id,
        revision=entry.revision,
        locator=entry.locator,
        backend=backend,
        synced_at=datetime.now(timezone.utc).isoformat(),
    )
    marker_path(destination).write_text(
        json.dumps(asdict(marker), indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    return marker
