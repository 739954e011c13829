"""Model and file helpers for the managed configuration document.

The document is a single JSON object whose ``mcpServers`` key maps server
names to entries of the form ``{"command": ..., "args": [...], "env": {...}}``.
Keys mcpforge does not manage (other top-level keys, extra per-entry keys)
are carried through untouched.

Writes always go to a sibling temporary file which is flushed, fsynced and
then renamed over the target, so readers observe either the previous file or
the new one and never a truncated mix of both.
"""
from __future__ import annotations

import hashlib
import json
import os
import stat
import tempfile
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

SERVERS_KEY = "mcpServers"
ENTRY_KEYS = ("command", "args", "env")
NEW_FILE_MODE = 0o600


class DocumentError(RuntimeError):
    """Raised when the configuration document cannot be read or parsed."""


class DocumentWriteError(DocumentError):
    """Raised when writing the configuration document fails."""


@dataclass(frozen=True)
class ServerEntry:
    """A single named server record."""

    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Normalise container fields to private copies."""
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "env", dict(self.env))
        object.__setattr__(self, "extra", dict(self.extra))

    @classmethod
    def from_mapping(cls, raw: object, *, name: str = "") -> ServerEntry:
        """Build an entry from decoded JSON, rejecting wrongly typed fields."""
        label = f"server '{name}'" if name else "server entry"
        if not isinstance(raw, Mapping):
            raise DocumentError(f"{label} must be a JSON object.")

        command = raw.get("command", "")
        if command is None:
            command = ""
        if not isinstance(command, str):
            raise DocumentError(f"{label}: 'command' must be a string.")

        args_raw = raw.get("args", [])
        if args_raw is None:
            args_raw = []
        if not isinstance(args_raw, list) or not all(isinstance(item, str) for item in args_raw):
            raise DocumentError(f"{label}: 'args' must be a list of strings.")

        env_raw = raw.get("env", {})
        if env_raw is None:
            env_raw = {}
        if not isinstance(env_raw, Mapping):
            raise DocumentError(f"{label}: 'env' must be an object.")
        env: dict[str, str] = {}
        for key, value in env_raw.items():
            if not isinstance(value, str):
                raise DocumentError(f"{label}: env value for '{key}' must be a string.")
            env[str(key)] = value

        extra = {key: value for key, value in raw.items() if key not in ENTRY_KEYS}
        return cls(command=command, args=tuple(args_raw), env=env, extra=extra)

    def to_dict(self) -> dict[str, object]:
        """Return the JSON-serialisable representation."""
        payload: dict[str, object] = {"command": self.command, "args": list(self.args)}
        if self.env:
            payload["env"] = dict(self.env)
        for key, value in self.extra.items():
            payload[key] = value
        return payload


@dataclass
class ConfigurationDocument:
    """Ordered mapping of server name to :class:`ServerEntry`."""

    servers: dict[str, ServerEntry] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    duplicates: tuple[str, ...] = field(default=(), compare=False)
    duplicate_env: Mapping[str, tuple[str, ...]] = field(default_factory=dict, compare=False)

    def __contains__(self, name: object) -> bool:
        return name in self.servers

    def __iter__(self) -> Iterator[str]:
        return iter(self.servers)

    def __len__(self) -> int:
        return len(self.servers)

    def names(self) -> list[str]:
        """Return server names in declaration order."""
        return list(self.servers)

    def get(self, name: str) -> ServerEntry | None:
        """Return the entry for *name* if present."""
        return self.servers.get(name)

    def items(self) -> list[tuple[str, ServerEntry]]:
        """Return ``(name, entry)`` pairs in declaration order."""
        return list(self.servers.items())

    def set_entry(self, name: str, entry: ServerEntry) -> None:
        """Insert or replace *name* (replacements keep their position)."""
        self.servers[name] = entry

    def remove_entry(self, name: str) -> ServerEntry | None:
        """Remove *name* and return the previous entry, if any."""
        return self.servers.pop(name, None)

    def copy(self) -> ConfigurationDocument:
        """Return an independent copy (entries are immutable and shared)."""
        return ConfigurationDocument(
            servers=dict(self.servers),
            extra=json.loads(json.dumps(self.extra)),
        )

    @classmethod
    def from_mapping(cls, raw: object, *, source: str = "document") -> ConfigurationDocument:
        """Build a document from decoded JSON."""
        if not isinstance(raw, Mapping):
            raise DocumentError(f"{source} must contain a JSON object at the top level.")
        servers_raw = raw.get(SERVERS_KEY, {})
        if servers_raw is None:
            servers_raw = {}
        if not isinstance(servers_raw, Mapping):
            raise DocumentError(f"{source}: '{SERVERS_KEY}' must be a JSON object.")
        servers = {
            str(name): ServerEntry.from_mapping(entry, name=str(name))
            for name, entry in servers_raw.items()
        }
        extra = {key: value for key, value in raw.items() if key != SERVERS_KEY}
        duplicates = tuple(getattr(servers_raw, "duplicates", ()))
        duplicate_env: dict[str, tuple[str, ...]] = {}
        for name, entry in servers_raw.items():
            env_raw = entry.get("env") if isinstance(entry, Mapping) else None
            repeated = getattr(env_raw, "duplicates", ())
            if repeated:
                duplicate_env[str(name)] = tuple(repeated)
        return cls(
            servers=servers,
            extra=extra,
            duplicates=duplicates,
            duplicate_env=duplicate_env,
        )

    def to_dict(self) -> dict[str, object]:
        """Return the JSON-serialisable representation."""
        payload: dict[str, object] = {
            SERVERS_KEY: {name: entry.to_dict() for name, entry in self.servers.items()}
        }
        for key, value in self.extra.items():
            payload[key] = value
        return payload


@dataclass(frozen=True)
class DocumentMarker:
    """Modification marker for the on-disk document."""

    exists: bool
    size: int = 0
    mtime_ns: int = 0
    sha256: str | None = None

    @classmethod
    def missing(cls) -> DocumentMarker:
        """Return the marker describing an absent file."""
        return cls(exists=False)

    @classmethod
    def from_bytes(cls, data: bytes, stat_result: os.stat_result) -> DocumentMarker:
        """Build a marker from file contents and their stat result."""
        return cls(
            exists=True,
            size=len(data),
            mtime_ns=stat_result.st_mtime_ns,
            sha256=hashlib.sha256(data).hexdigest(),
        )

    @classmethod
    def for_path(cls, path: Path) -> DocumentMarker:
        """Read *path* and return its current marker."""
        try:
            data, stat_result = _read_bytes(path)
        except FileNotFoundError:
            return cls.missing()
        except OSError as exc:
            raise DocumentError(f"Failed to read {path}: {exc}") from exc
        return cls.from_bytes(data, stat_result)

    def same_content(self, other: DocumentMarker) -> bool:
        """Return ``True`` when both markers describe the same file content."""
        return self.exists == other.exists and self.sha256 == other.sha256

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "exists": self.exists,
            "size": self.size,
            "mtime_ns": self.mtime_ns,
            "sha256": self.sha256,
        }


@dataclass(frozen=True)
class LoadedDocument:
    """A document together with the path and marker it was read from."""

    path: Path
    document: ConfigurationDocument
    marker: DocumentMarker


class _PairsDict(dict[str, Any]):
    """Decoded JSON object remembering keys that appeared more than once."""

    duplicates: tuple[str, ...] = ()


def _object_pairs(pairs: Sequence[tuple[str, Any]]) -> _PairsDict:
    result = _PairsDict()
    repeated: list[str] = []
    for key, value in pairs:
        if key in result and key not in repeated:
            repeated.append(key)
        result[key] = value
    result.duplicates = tuple(repeated)
    return result


def parse_document(text: str, *, source: str = "document") -> ConfigurationDocument:
    """Parse JSON *text* into a document.

    Trailing data after the top-level object is rejected. Names repeated
    inside ``mcpServers`` are kept (last one wins) and reported through
    :attr:`ConfigurationDocument.duplicates`; keys repeated inside an
    entry's ``env`` are reported through
    :attr:`ConfigurationDocument.duplicate_env`.
    """
    try:
        raw = json.loads(text, object_pairs_hook=_object_pairs)
    except json.JSONDecodeError as exc:
        raise DocumentError(f"Failed to parse {source}: {exc}") from exc
    return ConfigurationDocument.from_mapping(raw, source=source)


def serialize_document(document: ConfigurationDocument) -> str:
    """Return the canonical on-disk text for *document*."""
    return json.dumps(document.to_dict(), indent=2, ensure_ascii=False) + "\n"


def load_document(path: Path) -> LoadedDocument:
    """Load the document at *path* (a missing file is an empty document)."""
    path = path.expanduser()
    try:
        data, stat_result = _read_bytes(path)
    except FileNotFoundError:
        return LoadedDocument(path, ConfigurationDocument(), DocumentMarker.missing())
    except OSError as exc:
        raise DocumentError(f"Failed to read {path}: {exc}") from exc
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DocumentError(f"{path} is not valid UTF-8: {exc}") from exc
    document = parse_document(text, source=str(path))
    return LoadedDocument(path, document, DocumentMarker.from_bytes(data, stat_result))


def load_document_file(path: Path) -> ConfigurationDocument:
    """Parse a JSON document from *path* without tracking a marker."""
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise DocumentError(f"Failed to read {path}: {exc}") from exc
    return parse_document(text, source=str(path))


def write_document_atomic(path: Path, document: ConfigurationDocument) -> DocumentMarker:
    """Atomically replace *path* with *document* and return the new marker."""
    payload = serialize_document(document).encode("utf-8")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
    except OSError as exc:
        raise DocumentWriteError(f"Failed to prepare temporary file for {path}: {exc}") from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, _target_mode(path))
        os.replace(tmp_path, path)
        _fsync_directory(path.parent)
    except OSError as exc:
        raise DocumentWriteError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)
    return DocumentMarker.for_path(path)


def _read_bytes(path: Path) -> tuple[bytes, os.stat_result]:
    with path.open("rb") as handle:
        stat_result = os.fstat(handle.fileno())
        return handle.read(), stat_result


def _target_mode(path: Path) -> int:
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return NEW_FILE_MODE


def _fsync_directory(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:  # pragma: no cover - platforms without directory handles
        return
    try:
        os.fsync(fd)
    except OSError:  # pragma: no cover - some filesystems reject directory fsync
        pass
    finally:
        os.close(fd)


__all__ = [
    "SERVERS_KEY",
    "ConfigurationDocument",
    "DocumentError",
    "DocumentMarker",
    "DocumentWriteError",
    "LoadedDocument",
    "ServerEntry",
    "load_document",
    "load_document_file",
    "parse_document",
    "serialize_document",
    "write_document_atomic",
]
