"""Run one operation per selected entry, each in its own transaction."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .backups import BackupRecord
from .document import LoadedDocument
from .planner import ChangePlan, ChangePlanner, Operation
from .preview import plan_to_dict, render_plan
from .transaction import (
    NoMatchError,
    TransactionError,
    TransactionExecutor,
    TransactionState,
    ValidationError,
)
from .validation import ValidationResult

LOGGER = logging.getLogger(__name__)

OperationFactory = Callable[[str], Operation]
ProgressCallback = Callable[[str, str], None]


@dataclass(frozen=True)
class BulkPolicy:
    """How a bulk run reacts to failures and whether it writes at all."""

    continue_on_error: bool = False
    dry_run: bool = False
    require_match: bool = False
    max_workers: int = 1


@dataclass(frozen=True)
class BulkFailure:
    """A single entry whose transaction failed."""

    name: str
    error: TransactionError

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, **self.error.to_dict()}


@dataclass(frozen=True)
class BulkResult:
    """Outcome of a bulk run, ordered by the resolved match list."""

    handle: LoadedDocument
    matched: tuple[str, ...] = ()
    applied: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    failed: tuple[BulkFailure, ...] = ()
    backups: tuple[BackupRecord, ...] = ()
    warnings: ValidationResult = field(default_factory=ValidationResult)

    @property
    def ok(self) -> bool:
        """Return ``True`` when no entry failed."""
        return not self.failed

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "matched": list(self.matched),
            "applied": list(self.applied),
            "skipped": list(self.skipped),
            "failed": [failure.to_dict() for failure in self.failed],
            "backups": [record.id for record in self.backups],
            "warnings": [issue.to_dict() for issue in self.warnings.issues],
        }


@dataclass(frozen=True)
class BulkPreview:
    """Plans computed by a dry run (nothing was written or locked)."""

    plans: tuple[ChangePlan, ...]
    matched: tuple[str, ...] = ()
    warnings: ValidationResult = field(default_factory=ValidationResult)

    def lines(self) -> list[str]:
        """Return masked display lines for every plan."""
        lines: list[str] = []
        for plan in self.plans:
            lines.extend(render_plan(plan))
        for issue in self.warnings.issues:
            lines.append(f"{issue.severity.value}: {issue.message}")
        return lines

    def to_dict(self) -> dict[str, object]:
        """Return a masked, serialisable representation."""
        return {
            "dry_run": True,
            "matched": list(self.matched),
            "plans": [plan_to_dict(plan) for plan in self.plans],
            "warnings": [issue.to_dict() for issue in self.warnings.issues],
        }


class BulkCoordinator:
    """Resolve a selector once, plan every match, then commit one by one.

    Planning is read-only and may use a bounded thread pool. Commits are
    always serial and in match order; each entry gets its own backup and
    transaction, so entries committed before a failure stay committed.
    Calling :meth:`run` without ``dry_run`` is the approval for every plan.
    """

    def __init__(self, planner: ChangePlanner, executor: TransactionExecutor) -> None:
        """Use *planner* for plans and *executor* for commits."""
        self.planner = planner
        self.executor = executor

    def run(
        self,
        handle: LoadedDocument,
        selector: str,
        per_entry: OperationFactory,
        policy: BulkPolicy | None = None,
        *,
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> BulkResult | BulkPreview:
        """Apply ``per_entry(name)`` to every entry matched by *selector*."""
        policy = policy or BulkPolicy()
        names = self.planner.matcher.match(handle.document.names(), selector)
        selection = self.planner.validator.validate_selection(
            selector, names, allow_empty=not policy.require_match
        )
        if not names and policy.require_match:
            raise NoMatchError(
                f"No entries matched selector '{selector}'.",
                states=(TransactionState.PLANNED,),
            )
        operations = [(name, per_entry(name)) for name in names]
        return self.run_operations(
            handle,
            operations,
            policy,
            warnings=selection,
            progress=progress,
            cancel=cancel,
        )

    def run_operations(
        self,
        handle: LoadedDocument,
        operations: Sequence[tuple[str, Operation]],
        policy: BulkPolicy | None = None,
        *,
        warnings: ValidationResult | None = None,
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> BulkResult | BulkPreview:
        """Plan and commit an explicit list of ``(name, operation)`` pairs."""
        policy = policy or BulkPolicy()
        warnings = warnings or ValidationResult()
        matched = tuple(name for name, _ in operations)
        plans = self._plan_all(handle, [operation for _, operation in operations], policy)

        if policy.dry_run:
            return BulkPreview(plans=tuple(plans), matched=matched, warnings=warnings)

        current = handle
        applied: list[str] = []
        skipped: list[str] = []
        failed: list[BulkFailure] = []
        backups: list[BackupRecord] = []

        for index, (name, plan) in enumerate(zip(matched, plans, strict=True)):
            if cancel is not None and cancel.is_set():
                skipped.extend(matched[index:])
                break
            if plan.is_empty and not plan.has_errors:
                skipped.append(name)
                _notify(progress, name, "skipped")
                continue

            error: TransactionError | None = None
            if plan.has_errors:
                error = ValidationError(
                    f"Plan for '{name}' has blocking validation issues.",
                    plan.validation,
                    states=(TransactionState.PLANNED,),
                )
            else:
                try:
                    outcome = self.executor.apply(
                        current, plan.rebase(current.marker).approve(), cancel=cancel
                    )
                except TransactionError as exc:
                    error = exc
                else:
                    current = outcome.handle
                    applied.append(name)
                    if outcome.backup is not None:
                        backups.append(outcome.backup)
                    _notify(progress, name, "applied")

            if error is not None:
                LOGGER.debug("Bulk entry %s failed: %s", name, error)
                failed.append(BulkFailure(name, error))
                _notify(progress, name, "failed")
                if not policy.continue_on_error:
                    skipped.extend(matched[index + 1 :])
                    break

        return BulkResult(
            handle=current,
            matched=matched,
            applied=tuple(applied),
            skipped=tuple(skipped),
            failed=tuple(failed),
            backups=tuple(backups),
            warnings=warnings,
        )

    def _plan_all(
        self,
        handle: LoadedDocument,
        operations: Sequence[Operation],
        policy: BulkPolicy,
    ) -> list[ChangePlan]:
        max_workers = max(1, policy.max_workers)
        if max_workers == 1 or len(operations) <= 1:
            return [self.planner.plan(handle, operation) for operation in operations]

        results: list[ChangePlan | None] = [None] * len(operations)
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as pool:
            future_to_index: dict[concurrent.futures.Future[ChangePlan], int] = {}
            for index, operation in enumerate(operations):
                future = pool.submit(self.planner.plan, handle, operation)
                future_to_index[future] = index

            for future in concurrent.futures.as_completed(future_to_index):
                results[future_to_index[future]] = future.result()

        return [result for result in results if result is not None]


def _notify(progress: ProgressCallback | None, name: str, status: str) -> None:
    if progress is not None:
        progress(name, status)


__all__ = [
    "BulkCoordinator",
    "BulkFailure",
    "BulkPolicy",
    "BulkPreview",
    "BulkResult",
    "OperationFactory",
]
