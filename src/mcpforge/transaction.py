"""Apply approved change plans to the on-disk document.

A transaction walks a fixed state machine::

    PLANNED -> BACKED_UP -> APPLYING -> VALIDATED -> COMMITTED
                                     \\-> ROLLED_BACK

The backup is written before anything else happens and is kept even when
the transaction rolls back. Changes are applied to an in-memory copy and
only become visible through the atomic rename in
:func:`mcpforge.document.write_document_atomic`.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from .backups import BackupError, BackupRecord, BackupStore
from .document import (
    ConfigurationDocument,
    DocumentError,
    DocumentMarker,
    DocumentWriteError,
    LoadedDocument,
    write_document_atomic,
)
from .locking import LockManager, LockTimeoutError
from .planner import ChangePlan
from .validation import ValidationEngine, ValidationResult

LOGGER = logging.getLogger(__name__)


class TransactionState(str, Enum):
    """States visited by a transaction."""

    PLANNED = "planned"
    BACKED_UP = "backed_up"
    APPLYING = "applying"
    VALIDATED = "validated"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class TransactionErrorKind(str, Enum):
    """Classification used by callers to pick an exit code."""

    PATTERN = "pattern"
    NO_MATCH = "no_match"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    BACKUP = "backup"
    IO = "io"
    UNAPPROVED = "unapproved"
    CANCELLED = "cancelled"


class TransactionError(RuntimeError):
    """Base error for failed transactions."""

    kind = TransactionErrorKind.IO

    def __init__(
        self,
        message: str,
        *,
        states: Iterable[TransactionState] = (),
        backup: BackupRecord | None = None,
    ) -> None:
        """Store the visited *states* and the *backup* written, if any."""
        super().__init__(message)
        self.states = tuple(states)
        self.backup = backup

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind.value,
            "message": str(self),
            "states": [state.value for state in self.states],
            "backup": self.backup.id if self.backup else None,
        }


class ValidationError(TransactionError):
    """Raised when error-severity issues block a commit."""

    kind = TransactionErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        result: ValidationResult,
        *,
        states: Iterable[TransactionState] = (),
        backup: BackupRecord | None = None,
    ) -> None:
        """Keep the full validation *result* for reporting."""
        super().__init__(message, states=states, backup=backup)
        self.result = result

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation including the issues."""
        payload = super().to_dict()
        payload["issues"] = [issue.to_dict() for issue in self.result.issues]
        return payload


class ConflictError(TransactionError):
    """Raised when the document changed on disk after the plan was computed."""

    kind = TransactionErrorKind.CONFLICT
    hint = "The document was modified by another process; re-run the command."

    def __init__(
        self,
        message: str,
        *,
        expected: DocumentMarker | None,
        observed: DocumentMarker,
        states: Iterable[TransactionState] = (),
        backup: BackupRecord | None = None,
    ) -> None:
        """Record the *expected* and *observed* markers."""
        super().__init__(message, states=states, backup=backup)
        self.expected = expected
        self.observed = observed


class BackupFailedError(TransactionError):
    """Raised when the pre-commit backup cannot be written."""

    kind = TransactionErrorKind.BACKUP


class CommitIoError(TransactionError):
    """Raised when the temporary write or the rename fails."""

    kind = TransactionErrorKind.IO


class PlanNotApprovedError(TransactionError):
    """Raised when a plan is applied before it was approved."""

    kind = TransactionErrorKind.UNAPPROVED


class TransactionCancelledError(TransactionError):
    """Raised when cancellation was requested before any I/O."""

    kind = TransactionErrorKind.CANCELLED


class NoMatchError(TransactionError):
    """Raised when a selector matched nothing and a match was required."""

    kind = TransactionErrorKind.NO_MATCH


@dataclass(frozen=True)
class TransactionOutcome:
    """Result of a committed transaction."""

    handle: LoadedDocument
    plan: ChangePlan
    backup: BackupRecord | None
    states: tuple[TransactionState, ...]
    validation: ValidationResult = field(default_factory=ValidationResult)

    @property
    def changed(self) -> int:
        """Return the number of entries changed by the commit."""
        return len(self.plan.diffs)


class TransactionExecutor:
    """Run plans through backup, apply, validate and commit."""

    def __init__(
        self,
        backups: BackupStore,
        validator: ValidationEngine | None = None,
        locks: LockManager | None = None,
        *,
        lock_timeout: float | None = None,
    ) -> None:
        """Wire the collaborators; without *locks* commits are not serialised."""
        self.backups = backups
        self.validator = validator or ValidationEngine()
        self.locks = locks
        self.lock_timeout = lock_timeout

    def apply(
        self,
        handle: LoadedDocument,
        plan: ChangePlan,
        *,
        cancel: threading.Event | None = None,
        backup_label: str | None = None,
    ) -> TransactionOutcome:
        """Apply *plan* to the document behind *handle*.

        Returns the outcome with a fresh handle for the committed document,
        or raises a :class:`TransactionError` subclass.
        """
        states = [TransactionState.PLANNED]
        if not plan.approved:
            raise PlanNotApprovedError("The change plan has not been approved.", states=states)
        if cancel is not None and cancel.is_set():
            raise TransactionCancelledError("Cancelled before any change was made.", states=states)
        try:
            backup = self.backups.create(
                handle.document,
                label=backup_label,
                reason=plan.description,
                source=handle.path,
            )
        except BackupError as exc:
            raise BackupFailedError(
                f"Backup failed, nothing was changed: {exc}", states=states
            ) from exc
        states.append(TransactionState.BACKED_UP)
        LOGGER.debug("Backed up %s as %s", handle.path, backup.id)

        states.append(TransactionState.APPLYING)
        candidate, apply_issues = plan.apply_to(handle.document)
        validation = _merge(
            plan.validation,
            ValidationResult(tuple(apply_issues)),
            self.validator.validate_document(candidate),
        )
        if not validation.ok:
            states.append(TransactionState.ROLLED_BACK)
            LOGGER.debug("Rolled back %s: %d errors", plan.description, len(validation.errors))
            raise ValidationError(
                "Validation failed; the document was left unchanged.",
                validation,
                states=states,
                backup=backup,
            )
        states.append(TransactionState.VALIDATED)

        if self.locks is None:
            marker = self._commit(handle, plan, candidate, states, backup)
        else:
            try:
                with self.locks.document_lock(handle.path, timeout=self.lock_timeout):
                    marker = self._commit(handle, plan, candidate, states, backup)
            except LockTimeoutError as exc:
                states.append(TransactionState.ROLLED_BACK)
                raise CommitIoError(str(exc), states=states, backup=backup) from exc
        states.append(TransactionState.COMMITTED)
        LOGGER.debug("Committed %s to %s", plan.description, handle.path)
        return TransactionOutcome(
            handle=LoadedDocument(handle.path, candidate, marker),
            plan=plan,
            backup=backup,
            states=tuple(states),
            validation=validation,
        )

    def _commit(
        self,
        handle: LoadedDocument,
        plan: ChangePlan,
        candidate: ConfigurationDocument,
        states: list[TransactionState],
        backup: BackupRecord,
    ) -> DocumentMarker:
        expected = plan.base_marker or handle.marker
        try:
            observed = DocumentMarker.for_path(handle.path)
        except DocumentError as exc:
            states.append(TransactionState.ROLLED_BACK)
            raise CommitIoError(str(exc), states=states, backup=backup) from exc
        if not observed.same_content(expected):
            states.append(TransactionState.ROLLED_BACK)
            raise ConflictError(
                f"{handle.path} changed since the plan was computed. {ConflictError.hint}",
                expected=expected,
                observed=observed,
                states=states,
                backup=backup,
            )
        try:
            return write_document_atomic(handle.path, candidate)
        except DocumentWriteError as exc:
            states.append(TransactionState.ROLLED_BACK)
            raise CommitIoError(
                f"Commit failed, {handle.path} was left unchanged: {exc}",
                states=states,
                backup=backup,
            ) from exc


def _merge(*results: ValidationResult) -> ValidationResult:
    """Combine *results*, dropping repeated issues."""
    issues = dict.fromkeys(issue for result in results for issue in result.issues)
    return ValidationResult(tuple(issues))


__all__ = [
    "BackupFailedError",
    "CommitIoError",
    "ConflictError",
    "NoMatchError",
    "PlanNotApprovedError",
    "TransactionCancelledError",
    "TransactionError",
    "TransactionErrorKind",
    "TransactionExecutor",
    "TransactionOutcome",
    "TransactionState",
    "ValidationError",
]
