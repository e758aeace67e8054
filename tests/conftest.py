"""
Shared fixtures for depsync tests.
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

from src.depsync.backends import BackendRegistry, FetchBackend
from src.depsync.cli_config import DepsyncConfig, reset_config
from src.depsync.entry import DependencyEntry
from src.depsync.error_handling import FetchError, get_error_handler


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path_factory, monkeypatch):
    """Keep user config files, DEPSYNC_* variables and error stats out of every test."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    for key in list(os.environ):
        if key.startswith("DEPSYNC_"):
            monkeypatch.delenv(key, raising=False)
    reset_config()
    get_error_handler().reset_stats()
    yield
    reset_config()


@pytest.fixture
def temp_dir(tmp_path):
    """Scratch directory for a single test."""
    return tmp_path


@pytest.fixture
def checkout_root(tmp_path):
    """Empty checkout root that destinations are resolved against."""
    root = tmp_path / "checkout"
    root.mkdir()
    return root


@pytest.fixture
def depsync_config():
    """Default configuration with short timeouts."""
    config = DepsyncConfig()
    config.sync.fetch_timeout_seconds = 30
    config.sync.retry_attempts = 0
    return config


class FakeBackend(FetchBackend):
    """
    In-memory backend for ``fake://`` locators.

    Writes ``REVISION`` and ``<revision>.txt`` into the staging directory.
    Behaviour is driven by class attributes so each test gets its own
    subclass from the ``fake_backend`` fixture.
    """

    name = "fake"

    fail_ids: Set[str] = set()
    flaky_ids: Dict[str, int] = {}
    delay: float = 0.0
    calls: List[str] = []
    events: List[str] = []
    active: int = 0
    max_active: int = 0
    on_fetch = None

    @classmethod
    def accepts(cls, locator: str) -> bool:
        return locator.startswith("fake://")

    async def fetch(
        self, entry: DependencyEntry, staging: Path, previous: Optional[Path]
    ) -> None:
        cls = type(self)
        cls.calls.append(entry.id)
        cls.events.append(f"start:{entry.id}")
        cls.active += 1
        cls.max_active = max(cls.max_active, cls.active)
        try:
            if cls.on_fetch is not None:
                cls.on_fetch(entry)
            if cls.delay:
                await asyncio.sleep(cls.delay)
            if entry.id in cls.fail_ids:
                raise FetchError(f"revision {entry.revision} not found", entry_id=entry.id)
            if cls.flaky_ids.get(entry.id, 0) > 0:
                cls.flaky_ids[entry.id] -= 1
                raise FetchError("connection reset", entry_id=entry.id)

            (staging / "REVISION").write_text(entry.revision, encoding="utf-8")
            (staging / f"{entry.revision}.txt").write_text(entry.id, encoding="utf-8")
        finally:
            cls.active -= 1
            cls.events.append(f"end:{entry.id}")


@pytest.fixture
def fake_backend():
    """A fresh FakeBackend subclass with its own call log."""
    return type(
        "FakeBackend",
        (FakeBackend,),
        {
            "fail_ids": set(),
            "flaky_ids": {},
            "delay": 0.0,
            "calls": [],
            "events": [],
            "active": 0,
            "max_active": 0,
            "on_fetch": None,
        },
    )


@pytest.fixture
def fake_registry(fake_backend):
    """Backend registry that only knows the fake backend."""
    registry = BackendRegistry()
    registry.register(fake_backend)
    return registry


def _make_entry(entry_id: str, revision: str, path: str, **kwargs) -> DependencyEntry:
    return DependencyEntry(
        id=entry_id,
        locator=kwargs.pop("locator", f"fake://{entry_id}"),
        revision=revision,
        destination_path=path,
        **kwargs,
    )


@pytest.fixture
def entry_factory():
    """Build fake-backend entries: ``entry_factory(id, revision, path)``."""
    return _make_entry


@pytest.fixture
def sample_entries():
    """Three independent entries."""
    return [
        _make_entry("zlib", "r1", "third_party/externals/zlib"),
        _make_entry("libpng", "r1", "third_party/externals/libpng"),
        _make_entry("expat", "r1", "third_party/externals/expat"),
    ]


@pytest.fixture
def sample_table(temp_dir):
    """JSON table shaped like a generated DEPS table."""
    content = {
        "chromium.googlesource.com/chromium/src/third_party/zlib": {
            "version": "646b7f569718921d7d4b5b8e22572ff6c76f2596",
            "path": "third_party/externals/zlib",
        },
        "skia.googlesource.com/external/github.com/libexpat/libexpat": {
            "version": "8e49998f003d693213b538ef765814c7d21abada",
            "path": "third_party/externals/expat",
        },
        "infra/3pp/tools/ninja/linux-amd64": {
            "version": "version:2@1.12.1.chromium.4",
            "path": "bin/ninja",
        },
    }
    table_file = temp_dir / "DEPS.json"
    table_file.write_text(json.dumps(content, indent=2))
    return table_file


@pytest.fixture
def fake_table(temp_dir):
    """JSON table whose entries all use the fake backend."""

    def write(rows: Dict[str, Dict[str, str]], name: str = "DEPS.json") -> Path:
        content = {
            entry_id: {"locator": f"fake://{entry_id}", **row}
            for entry_id, row in rows.items()
        }
        table_file = temp_dir / name
        table_file.write_text(json.dumps(content, indent=2))
        return table_file

    return write
