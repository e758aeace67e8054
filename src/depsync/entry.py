from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class DependencyEntry:
    """One pinned dependency: where it comes from, which revision, where it goes."""

    id: str
    locator: str
    revision: str
    destination_path: str
    backend: Optional[str] = None
    sha256: Optional[str] = None
