"""Structured operation log written as JSON lines.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
records what was asked for, how long it took and how it ended. Logging is
best effort: if the log directory or a write fails the logger switches
itself off and the command carries on.
"""
from __future__ import annotations

import json
import os
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .masking import mask

OPERATIONS_LOG = "operations.jsonl"


def _sanitise(value: object, *, key: str | None = None) -> object:
    """Return a JSON-safe copy of *value* with sensitive strings masked."""
    if isinstance(value, str):
        return mask(key, value) if key is not None else value
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): _sanitise(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


def _as_list(values: Iterable[object] | None) -> list[object]:
    if values is None:
        return []
    return [_sanitise(item) for item in values]


@dataclass
class OperationScope:
    """Collects the outcome of a single logged operation."""

    command: str
    args: Mapping[str, object] = field(default_factory=dict)
    target: Mapping[str, object] | None = None
    op_id: str = field(default_factory=lambda: secrets.token_hex(6))
    result: dict[str, object] | None = None

    def _record(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[object] | None = None,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "backups": _as_list(backups),
            "warnings": _as_list(warnings),
            "errors": _as_list(errors),
            "rc": rc,
            "context": _sanitise(dict(context or {})),
        }

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[object] | None = None,
        warnings: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._record(
            "success",
            message,
            changed=changed,
            backups=backups,
            warnings=warnings,
            rc=0,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[object] | None = None,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record an outcome that succeeded with caveats."""
        self._record(
            "warning",
            message,
            changed=changed,
            backups=backups,
            warnings=warnings,
            errors=errors,
            rc=0,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        rc: int = 1,
        changed: int = 0,
        backups: Iterable[object] | None = None,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome (errors default to the message)."""
        self._record(
            "error",
            message,
            changed=changed,
            backups=backups,
            warnings=warnings,
            errors=errors if errors is not None else [message],
            rc=rc,
            context=context,
        )


class StructuredLogger:
    """Append operation records to ``<logs_dir>/operations.jsonl``."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging when it cannot be created."""
        self.logs_dir = logs_dir.expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return ``True`` while records are being written."""
        return self._enabled

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Log the operation executed inside the ``with`` block."""
        scope = OperationScope(command=command, args=dict(args or {}), target=target)
        started_at = datetime.now(tz=UTC)
        started = time.monotonic()
        failure: BaseException | None = None
        try:
            yield scope
        except BaseException as exc:
            failure = exc
            raise
        finally:
            if scope.result is None:
                if failure is not None and not _is_clean_exit(failure):
                    scope.error(f"Unhandled {type(failure).__name__}: {failure}", rc=1)
                else:
                    scope.success("Completed.")
            self._write(
                {
                    "timestamp": started_at.isoformat(timespec="milliseconds").replace(
                        "+00:00", "Z"
                    ),
                    "op_id": scope.op_id,
                    "command": command,
                    "args": _sanitise(scope.args),
                    "target": _sanitise(scope.target) if scope.target is not None else None,
                    "duration_ms": int((time.monotonic() - started) * 1000),
                    "pid": os.getpid(),
                    "result": scope.result,
                }
            )

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError:
            self._enabled = False


def _is_clean_exit(exc: BaseException) -> bool:
    """Return ``True`` for exits that signal success (``SystemExit(0)``)."""
    if isinstance(exc, SystemExit):
        return exc.code in (None, 0)
    return getattr(exc, "exit_code", None) == 0


__all__ = ["OperationScope", "StructuredLogger"]
