"""
Loading of generated dependency tables.

A table maps dependency ids to ``{id, revision, path}`` rows. It is produced
by an external generator; this module only reads it. JSON, YAML and TOML
renditions are accepted, and duplicate keys in the source file are reported
instead of being silently collapsed by the parser.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

import toml
import yaml

from .entry import DependencyEntry
from .error_handling import ConfigurationError

SUPPORTED_SUFFIXES = (".json", ".yaml", ".yml", ".toml")
MAX_TABLE_SIZE_BYTES = 16 * 1024 * 1024

_REVISION_KEYS = ("revision", "version")
_PATH_KEYS = ("path", "destination_path", "destinationpath")


def _reject_duplicate_json_keys(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise ConfigurationError(f"Duplicate key in dependency table: {key}")
        result[key] = value
    return result


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses mappings with repeated keys."""


def _construct_unique_mapping(loader: _UniqueKeyLoader, node: yaml.MappingNode, deep: bool = False):
    loader.flatten_mapping(node)
    mapping: Dict[Any, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigurationError(
                f"Duplicate key in dependency table: {key}",
                hint=f"line {key_node.start_mark.line + 1}",
            )
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


_UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_unique_mapping
)


def _validate_table_path(table_path: str) -> Path:
    if not table_path:
        raise ConfigurationError("Table path must be a non-empty string")

    path = Path(table_path)
    if not path.exists():
        raise ConfigurationError(f"Dependency table does not exist: {path}")
    if not path.is_file():
        raise ConfigurationError(f"Dependency table is not a file: {path}")
    if path.suffix.lower() not in SUPPORTED_SUFFIXES:
        raise ConfigurationError(
            f"Unsupported table format: {path.suffix or '(none)'}",
            hint=f"use one of {', '.join(SUPPORTED_SUFFIXES)}",
        )
    size = path.stat().st_size
    if size > MAX_TABLE_SIZE_BYTES:
        raise ConfigurationError(
            f"Dependency table too large: {size} bytes (max: {MAX_TABLE_SIZE_BYTES})"
        )
    return path


def parse_table_text(content: str, fmt: str) -> Dict[str, Any]:
    """
    Parse raw table text into a mapping.

    Args:
        content: File contents
        fmt: One of ``json``, ``yaml`` or ``toml``

    Returns:
        The id -> row mapping (a top-level ``deps`` key is unwrapped)

    Raises:
        ConfigurationError: On syntax errors, duplicate keys or a non-mapping
    """
    try:
        if fmt == "json":
            data = json.loads(content, object_pairs_hook=_reject_duplicate_json_keys)
        elif fmt == "yaml":
            data = yaml.load(content, Loader=_UniqueKeyLoader)
        elif fmt == "toml":
            data = toml.loads(content)
        else:
            raise ConfigurationError(f"Unsupported table format: {fmt}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in dependency table: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in dependency table: {e}") from e
    except toml.TomlDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in dependency table: {e}") from e

    if data is None:
        return {}
    if isinstance(data, dict) and set(data) == {"deps"}:
        data = data["deps"]
    if not isinstance(data, dict):
        raise ConfigurationError("Dependency table must be a mapping of id to entry")
    return data


def locator_from_id(entry_id: str) -> str:
    """
    Derive a locator for rows that do not carry one.

    Generated tables key repositories by ``host/path`` and packages by a bare
    package name, so the first path component decides: a dotted host becomes
    an https URL, anything else a CIPD package.
    """
    if "://" in entry_id:
        return entry_id
    first_component = entry_id.split("/", 1)[0]
    if "." in first_component:
        return f"https://{entry_id}"
    return f"cipd://{entry_id}"


def _pick(row: Mapping[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        if key in row:
            return row[key]
    return None


def entry_from_row(key: str, row: Any) -> DependencyEntry:
    """Build one ``DependencyEntry`` from a table row keyed by ``key``."""
    if not isinstance(row, dict):
        raise ConfigurationError(f"Entry {key!r} must be a mapping")

    fields = {str(k).lower(): v for k, v in row.items()}

    entry_id = fields.get("id", key)
    if entry_id != key:
        raise ConfigurationError(
            f"Entry key {key!r} does not match its id {entry_id!r}",
            hint="the table key and the id field must agree",
        )

    revision = _pick(fields, _REVISION_KEYS)
    destination = _pick(fields, _PATH_KEYS)
    locator = fields.get("locator") or locator_from_id(key)

    for name, value in (("revision", revision), ("path", destination)):
        if value is not None and not isinstance(value, str):
            # YAML/TOML turn 1.10 into 1.1 and 0123 into 83; str() would change the pin
            raise ConfigurationError(
                f"Entry {key!r} has a non-string {name} {value!r}",
                hint=f"quote the {name} so it is read as a string",
            )
        if value is None or not value.strip():
            raise ConfigurationError(f"Entry {key!r} has an empty or missing {name}")

    backend = fields.get("backend")
    sha256 = fields.get("sha256")
    return DependencyEntry(
        id=key,
        locator=str(locator),
        revision=revision.strip(),
        destination_path=destination.strip(),
        backend=str(backend) if backend else None,
        sha256=str(sha256).lower() if sha256 else None,
    )


def entries_from_mapping(mapping: Mapping[str, Any]) -> Tuple[DependencyEntry, ...]:
    """Convert an id -> row mapping into an immutable, id-sorted tuple of entries."""
    for key in mapping:
        if not isinstance(key, str) or not key:
            raise ConfigurationError(
                f"Entry ids must be non-empty strings, got {key!r}",
                hint="quote numeric ids in YAML and TOML tables",
            )
    return tuple(entry_from_row(key, mapping[key]) for key in sorted(mapping))


def load_dependency_table(table_path: str) -> Tuple[DependencyEntry, ...]:
    """
    Load a dependency table file.

    Args:
        table_path: Path to a ``.json``, ``.yaml``/``.yml`` or ``.toml`` table

    Returns:
        Tuple of entries, sorted by id

    Raises:
        ConfigurationError: If the file is missing, malformed or inconsistent
    """
    path = _validate_table_path(table_path)
    suffix = path.suffix.lower()
    fmt = {".json": "json", ".yaml": "yaml", ".yml": "yaml", ".toml": "toml"}[suffix]

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ConfigurationError("Dependency table contains invalid UTF-8") from e
    except OSError as e:
        raise ConfigurationError(f"Error reading dependency table: {e}") from e

    return entries_from_mapping(parse_table_text(content, fmt))
