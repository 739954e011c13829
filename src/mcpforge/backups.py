"""Snapshot backups of the managed document plus their JSON index."""
from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .document import (
    ConfigurationDocument,
    DocumentError,
    load_document_file,
    write_document_atomic,
)

LOGGER = logging.getLogger(__name__)

BACKUP_SUFFIX = ".json"
_LABEL_UNSAFE = re.compile(r'[/\\:*?"<>|\s]')
_DURATION = re.compile(r"^\s*(\d+)\s*([dwhm]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"d": "days", "w": "weeks", "h": "hours", "m": "minutes", "": "days"}


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _format_iso(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds").replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def sanitize_label(label: str) -> str:
    """Return *label* with path separators, wildcards and whitespace replaced."""
    return _LABEL_UNSAFE.sub("_", label.strip())


def parse_duration(text: str) -> timedelta:
    """Parse ``30d``, ``2w``, ``24h`` or ``60m``; a bare number means days."""
    match = _DURATION.match(text)
    if not match:
        raise BackupError(
            f"Invalid duration '{text}'. Use forms like 30d, 2w, 24h or 60m."
        )
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit.lower()]: int(amount)})


def format_age(created_at: datetime, *, now: datetime | None = None) -> str:
    """Return a compact age such as ``3d``, ``5h`` or ``12m``."""
    delta = (now or _now()) - created_at
    seconds = max(int(delta.total_seconds()), 0)
    if seconds >= 86400:
        return f"{seconds // 86400}d"
    if seconds >= 3600:
        return f"{seconds // 3600}h"
    return f"{seconds // 60}m"


@dataclass(frozen=True)
class BackupRecord:
    """Metadata for one snapshot file."""

    id: str
    path: Path
    created_at: str
    servers: int
    sha256: str
    label: str | None = None
    reason: str | None = None
    source: str | None = None

    @property
    def created(self) -> datetime:
        """Return the creation time as an aware datetime."""
        return _parse_iso(self.created_at) or datetime.fromtimestamp(0, tz=UTC)

    def to_dict(self) -> dict[str, object]:
        """Return the JSON-serialisable index entry."""
        entry: dict[str, object] = {
            "id": self.id,
            "file": self.path.name,
            "created_at": self.created_at,
            "servers": self.servers,
            "checksum": {"algorithm": "sha256", "value": self.sha256},
        }
        if self.label:
            entry["label"] = self.label
        if self.reason:
            entry["reason"] = self.reason
        if self.source:
            entry["source"] = self.source
        return entry

    @classmethod
    def from_entry(cls, root: Path, entry: Mapping[str, object]) -> BackupRecord:
        """Build a record from an index entry."""
        backup_id = str(entry.get("id", "")).strip()
        if not backup_id:
            raise BackupRegistryError("Backup index entry is missing an 'id'.")
        checksum = entry.get("checksum")
        sha256 = ""
        if isinstance(checksum, Mapping):
            sha256 = str(checksum.get("value", ""))
        servers = entry.get("servers", 0)
        label = entry.get("label")
        reason = entry.get("reason")
        source = entry.get("source")
        return cls(
            id=backup_id,
            path=root / str(entry.get("file") or f"{backup_id}{BACKUP_SUFFIX}"),
            created_at=str(entry.get("created_at", "")),
            servers=servers if isinstance(servers, int) else 0,
            sha256=sha256,
            label=str(label) if label else None,
            reason=str(reason) if reason else None,
            source=str(source) if source else None,
        )


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with private permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o700)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        try:
            text = self.index.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {"backups": []}
        except OSError as exc:
            raise BackupRegistryError(f"Failed to read backup index {self.index}: {exc}") from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        try:
            self.index.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.index.parent),
                prefix=f".{self.index.name}.",
            )
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o600)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        entries: list[object] = list(self.list_entries())
        entries.append(dict(entry))
        self.write({"backups": entries})

    def list_entries(self) -> list[dict[str, object]]:
        """Return the backup entries in insertion order."""
        backups = self.read().get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def remove_entries(self, backup_ids: Iterable[str]) -> None:
        """Drop the entries whose id is in *backup_ids*."""
        doomed = set(backup_ids)
        kept = [entry for entry in self.list_entries() if str(entry.get("id", "")) not in doomed]
        self.write({"backups": kept})


class BackupStore:
    """Create, find, restore and prune document snapshots.

    Each snapshot is a complete copy of the document written in the same
    JSON format as the managed file, named after its creation timestamp and
    optional label. The index keeps the metadata used for lookups.
    """

    def __init__(
        self,
        root: Path,
        index: Path | None = None,
        *,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        """Store snapshots under *root* and metadata in *index*."""
        root = root.expanduser()
        self.registry = BackupsRegistry(root, index or root / "backups.json")
        self._clock = clock

    @property
    def root(self) -> Path:
        """Return the backup directory."""
        return self.registry.root

    def generate_identifier(self, label: str | None = None) -> str:
        """Return an unused identifier for a new snapshot."""
        moment = self._clock()
        base = moment.strftime("%Y%m%dT%H%M%S.%fZ")
        if label:
            base = f"{base}-{label}"
        identifier = base
        counter = 1
        while (self.root / f"{identifier}{BACKUP_SUFFIX}").exists():
            identifier = f"{base}-{counter}"
            counter += 1
        return identifier

    def create(
        self,
        document: ConfigurationDocument,
        *,
        label: str | None = None,
        reason: str | None = None,
        source: Path | None = None,
    ) -> BackupRecord:
        """Persist a full snapshot of *document* and index it."""
        safe_label = sanitize_label(label) if label else None
        self.registry.ensure_root()
        created = self._clock()
        backup_id = self.generate_identifier(safe_label)
        path = self.root / f"{backup_id}{BACKUP_SUFFIX}"
        try:
            marker = write_document_atomic(path, document)
        except DocumentError as exc:
            raise BackupError(f"Failed to write backup {path}: {exc}") from exc

        record = BackupRecord(
            id=backup_id,
            path=path,
            created_at=_format_iso(created),
            servers=len(document),
            sha256=marker.sha256 or "",
            label=safe_label,
            reason=reason,
            source=str(source) if source is not None else None,
        )
        try:
            self.registry.append(record.to_dict())
        except BackupRegistryError:
            path.unlink(missing_ok=True)
            raise
        LOGGER.debug("Created backup %s (%d servers)", backup_id, record.servers)
        return record

    def records(self) -> list[BackupRecord]:
        """Return every indexed snapshot, newest first."""
        records = [
            BackupRecord.from_entry(self.root, entry) for entry in self.registry.list_entries()
        ]
        records.sort(key=lambda record: (record.created, record.id), reverse=True)
        return records

    def find(self, query: str) -> BackupRecord:
        """Resolve *query* by exact id, then exact label, then unique substring."""
        needle = query.strip()
        if not needle:
            raise BackupError("Backup identifier must be a non-empty string.")
        records = self.records()
        for record in records:
            if record.id == needle:
                return record
        labelled = [record for record in records if record.label == needle]
        if labelled:
            return labelled[0]
        partial = [record for record in records if needle in record.id]
        if len(partial) == 1:
            return partial[0]
        if partial:
            candidates = ", ".join(record.id for record in partial)
            raise BackupError(f"Backup '{needle}' is ambiguous: {candidates}.")
        raise BackupError(f"Backup '{needle}' not found.")

    def load(self, record: BackupRecord) -> ConfigurationDocument:
        """Read the snapshot for *record*, verifying its checksum."""
        try:
            data = record.path.read_bytes()
        except OSError as exc:
            raise BackupError(f"Backup file {record.path} is unreadable: {exc}") from exc
        if record.sha256 and hashlib.sha256(data).hexdigest() != record.sha256:
            raise BackupError(f"Backup file {record.path} does not match its recorded checksum.")
        try:
            return load_document_file(record.path)
        except DocumentError as exc:
            raise BackupError(f"Backup {record.id} is not a valid document: {exc}") from exc

    def select_for_cleanup(
        self,
        *,
        older_than: timedelta | None = None,
        keep: int | None = None,
    ) -> list[BackupRecord]:
        """Return the snapshots a cleanup with these limits would delete.

        A snapshot is selected when it is older than *older_than* or falls
        outside the newest *keep* snapshots.
        """
        if keep is not None and keep < 0:
            raise BackupError("--keep must be zero or greater.")
        now = self._clock()
        selected: list[BackupRecord] = []
        for position, record in enumerate(self.records()):
            too_old = older_than is not None and now - record.created > older_than
            beyond_keep = keep is not None and position >= keep
            if too_old or beyond_keep:
                selected.append(record)
        return selected

    def clean(
        self,
        *,
        older_than: timedelta | None = None,
        keep: int | None = None,
    ) -> list[BackupRecord]:
        """Delete the snapshots chosen by :meth:`select_for_cleanup`."""
        doomed = self.select_for_cleanup(older_than=older_than, keep=keep)
        if not doomed:
            return []
        for record in doomed:
            try:
                record.path.unlink(missing_ok=True)
            except OSError as exc:
                raise BackupError(f"Failed to delete backup {record.path}: {exc}") from exc
        self.registry.remove_entries(record.id for record in doomed)
        LOGGER.debug("Removed %d backups", len(doomed))
        return doomed


__all__ = [
    "BackupError",
    "BackupRecord",
    "BackupRegistryError",
    "BackupStore",
    "BackupsRegistry",
    "format_age",
    "parse_duration",
    "sanitize_label",
]
