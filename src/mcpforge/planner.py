"""Compute change plans for document operations without touching disk.

A plan is the full list of per-entry differences an operation would make,
validated and tied to the modification marker of the document it was
computed against. Plans start unapproved; a caller outside the engine
decides whether to confirm them.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import cast

from .document import ConfigurationDocument, DocumentMarker, LoadedDocument, ServerEntry
from .selectors import PatternMatcher
from .validation import ValidationEngine, ValidationIssue, ValidationResult, error, warning

Mutator = Callable[[ServerEntry], ServerEntry]


class ChangeKind(str, Enum):
    """Kind of change applied to a single entry."""

    ADD = "add"
    UPDATE = "update"
    REMOVE = "remove"


@dataclass(frozen=True)
class EntryPatch:
    """Field-level edit of an entry, usable as a mutator."""

    command: str | None = None
    args: tuple[str, ...] | None = None
    append_args: tuple[str, ...] = ()
    set_env: Mapping[str, str] = field(default_factory=dict)
    unset_env: tuple[str, ...] = ()

    def __call__(self, entry: ServerEntry) -> ServerEntry:
        """Return *entry* with the patch applied."""
        args = tuple(self.args) if self.args is not None else tuple(entry.args)
        env = dict(entry.env)
        for key in self.unset_env:
            env.pop(key, None)
        env.update(self.set_env)
        return ServerEntry(
            command=self.command if self.command is not None else entry.command,
            args=args + tuple(self.append_args),
            env=env,
            extra=entry.extra,
        )

    @property
    def is_empty(self) -> bool:
        """Return ``True`` when the patch would change nothing."""
        return (
            self.command is None
            and self.args is None
            and not self.append_args
            and not self.set_env
            and not self.unset_env
        )


def replace_entry(entry: ServerEntry) -> Mutator:
    """Return a mutator that swaps any entry for *entry*."""

    def _replace(_: ServerEntry) -> ServerEntry:
        return entry

    return _replace


@dataclass(frozen=True)
class AddOne:
    """Add a single named entry (``overwrite`` replaces an existing one)."""

    name: str
    entry: ServerEntry
    overwrite: bool = False


@dataclass(frozen=True)
class UpdateOne:
    """Apply *mutator* to one named entry."""

    name: str
    mutator: Mutator


@dataclass(frozen=True)
class RemoveOne:
    """Remove one named entry."""

    name: str


@dataclass(frozen=True)
class RemoveMany:
    """Remove every entry selected by *selector*."""

    selector: str
    allow_empty: bool = True


@dataclass(frozen=True)
class UpdateMany:
    """Apply *mutator* to every entry selected by *selector*."""

    selector: str
    mutator: Mutator
    allow_empty: bool = True


@dataclass(frozen=True)
class MergeEntries:
    """Merge external entries into the document.

    New names are added. Existing names are updated when *overwrite* is set
    and otherwise left alone (reported as unchanged with a warning).
    """

    entries: Mapping[str, ServerEntry]
    overwrite: bool = False
    duplicates: tuple[str, ...] = ()
    duplicate_env: Mapping[str, tuple[str, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class ReplaceDocument:
    """Replace the whole document with *document*."""

    document: ConfigurationDocument


Operation = (
    AddOne | UpdateOne | RemoveOne | RemoveMany | UpdateMany | MergeEntries | ReplaceDocument
)


@dataclass(frozen=True)
class EntryDiff:
    """Difference for a single entry. ``before``/``after`` hold real values."""

    name: str
    kind: ChangeKind
    before: ServerEntry | None
    after: ServerEntry | None
    validation: ValidationResult = field(default_factory=ValidationResult)


@dataclass(frozen=True)
class ChangePlan:
    """Validated, not-yet-applied set of differences."""

    description: str
    diffs: tuple[EntryDiff, ...]
    validation: ValidationResult
    base_marker: DocumentMarker | None = None
    matched: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()
    approved: bool = False
    extra: Mapping[str, object] | None = None
    order: tuple[str, ...] | None = None

    @property
    def is_empty(self) -> bool:
        """Return ``True`` when applying the plan changes nothing."""
        return not self.diffs and self.extra is None and self.order is None

    @property
    def has_errors(self) -> bool:
        """Return ``True`` when the plan carries a commit-blocking issue."""
        return not self.validation.ok

    @property
    def names(self) -> list[str]:
        """Return the names touched by the plan, in diff order."""
        return [diff.name for diff in self.diffs]

    def counts(self) -> dict[str, int]:
        """Return the number of diffs per change kind."""
        counts = {kind.value: 0 for kind in ChangeKind}
        for diff in self.diffs:
            counts[diff.kind.value] += 1
        return counts

    def approve(self) -> ChangePlan:
        """Return an approved copy of the plan."""
        return replace(self, approved=True)

    def rebase(self, marker: DocumentMarker) -> ChangePlan:
        """Return a copy tied to *marker* (used after the caller's own commits)."""
        return replace(self, base_marker=marker)

    def apply_to(
        self,
        document: ConfigurationDocument,
    ) -> tuple[ConfigurationDocument, list[ValidationIssue]]:
        """Apply the diffs to a copy of *document*.

        Returns the new document and the issues found while applying (an
        entry that no longer looks the way the plan expects).
        """
        result = document.copy()
        issues: list[ValidationIssue] = []
        for diff in self.diffs:
            current = result.get(diff.name)
            if diff.kind is ChangeKind.ADD:
                if current is not None:
                    issues.append(
                        error(f"Server '{diff.name}' already exists.", diff.name)
                    )
                    continue
            elif current != diff.before:
                issues.append(
                    error(
                        f"Server '{diff.name}' changed since the plan was computed.",
                        diff.name,
                        "Re-run the command to plan against the current document.",
                    )
                )
                continue

            if diff.kind is ChangeKind.REMOVE:
                result.remove_entry(diff.name)
            else:
                result.set_entry(diff.name, cast(ServerEntry, diff.after))

        if self.extra is not None:
            result.extra = dict(self.extra)
        if self.order is not None:
            ordered = {name: result.servers[name] for name in self.order if name in result}
            for name, entry in result.servers.items():
                ordered.setdefault(name, entry)
            result.servers = ordered
        return result, issues


class ChangePlanner:
    """Turn operations into validated :class:`ChangePlan` objects."""

    def __init__(
        self,
        matcher: PatternMatcher | None = None,
        validator: ValidationEngine | None = None,
    ) -> None:
        """Use *matcher* for selectors and *validator* for the resulting entries."""
        self.matcher = matcher or PatternMatcher()
        self.validator = validator or ValidationEngine()

    def plan(
        self,
        source: ConfigurationDocument | LoadedDocument,
        operation: Operation,
        *,
        marker: DocumentMarker | None = None,
    ) -> ChangePlan:
        """Compute the plan for *operation* against *source*.

        Raises :class:`~mcpforge.selectors.PatternError` for malformed
        selectors; every other problem is recorded as a validation issue.
        """
        if isinstance(source, LoadedDocument):
            document = source.document
            marker = marker or source.marker
        else:
            document = source

        if isinstance(operation, AddOne):
            return self._plan_add(document, operation, marker)
        if isinstance(operation, UpdateOne):
            return self._plan_updates(
                document,
                [operation.name],
                operation.mutator,
                marker,
                description=f"update {operation.name}",
            )
        if isinstance(operation, RemoveOne):
            return self._plan_removals(
                document, [operation.name], marker, description=f"remove {operation.name}"
            )
        if isinstance(operation, RemoveMany):
            names = self.matcher.match(document.names(), operation.selector)
            selection = self.validator.validate_selection(
                operation.selector, names, allow_empty=operation.allow_empty
            )
            return self._plan_removals(
                document,
                names,
                marker,
                description=f"remove {operation.selector}",
                extra_issues=selection.issues,
            )
        if isinstance(operation, UpdateMany):
            names = self.matcher.match(document.names(), operation.selector)
            selection = self.validator.validate_selection(
                operation.selector, names, allow_empty=operation.allow_empty
            )
            return self._plan_updates(
                document,
                names,
                operation.mutator,
                marker,
                description=f"update {operation.selector}",
                extra_issues=selection.issues,
            )
        if isinstance(operation, MergeEntries):
            return self._plan_merge(document, operation, marker)
        if isinstance(operation, ReplaceDocument):
            return self._plan_replace(document, operation, marker)
        raise TypeError(f"Unsupported operation: {operation!r}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _diff(
        self,
        name: str,
        kind: ChangeKind,
        before: ServerEntry | None,
        after: ServerEntry | None,
    ) -> EntryDiff:
        validation = ValidationResult()
        if after is not None:
            validation = self.validator.validate_entry(after).scoped(name)
        return EntryDiff(name=name, kind=kind, before=before, after=after, validation=validation)

    def _finish(
        self,
        description: str,
        diffs: Sequence[EntryDiff],
        marker: DocumentMarker | None,
        *,
        matched: Sequence[str] = (),
        unchanged: Sequence[str] = (),
        issues: Sequence[ValidationIssue] = (),
        extra: Mapping[str, object] | None = None,
        order: Sequence[str] | None = None,
    ) -> ChangePlan:
        validation = ValidationResult.combine(
            [ValidationResult(tuple(issues))] + [diff.validation for diff in diffs]
        )
        return ChangePlan(
            description=description,
            diffs=tuple(diffs),
            validation=validation,
            base_marker=marker,
            matched=tuple(matched),
            unchanged=tuple(unchanged),
            extra=extra,
            order=tuple(order) if order is not None else None,
        )

    def _plan_add(
        self,
        document: ConfigurationDocument,
        operation: AddOne,
        marker: DocumentMarker | None,
    ) -> ChangePlan:
        name = operation.name
        issues: list[ValidationIssue] = []
        if not name.strip():
            issues.append(error("Server name must be a non-empty string.", "name"))
            return self._finish(f"add {name}", [], marker, issues=issues)
        before = document.get(name)
        if before is not None and not operation.overwrite:
            issues.append(
                error(
                    f"Server '{name}' already exists.",
                    name,
                    "Use --force to replace it or pick another name.",
                )
            )
            return self._finish(f"add {name}", [], marker, matched=[name], issues=issues)
        if before == operation.entry:
            return self._finish(f"add {name}", [], marker, matched=[name], unchanged=[name])
        kind = ChangeKind.UPDATE if before is not None else ChangeKind.ADD
        diff = self._diff(name, kind, before, operation.entry)
        return self._finish(f"add {name}", [diff], marker, matched=[name])

    def _plan_updates(
        self,
        document: ConfigurationDocument,
        names: Sequence[str],
        mutator: Mutator,
        marker: DocumentMarker | None,
        *,
        description: str,
        extra_issues: Sequence[ValidationIssue] = (),
    ) -> ChangePlan:
        issues = list(extra_issues)
        diffs: list[EntryDiff] = []
        unchanged: list[str] = []
        for name in names:
            before = document.get(name)
            if before is None:
                issues.append(error(f"Server '{name}' not found.", name))
                continue
            after = mutator(before)
            if after == before:
                unchanged.append(name)
                continue
            diffs.append(self._diff(name, ChangeKind.UPDATE, before, after))
        return self._finish(
            description, diffs, marker, matched=names, unchanged=unchanged, issues=issues
        )

    def _plan_removals(
        self,
        document: ConfigurationDocument,
        names: Sequence[str],
        marker: DocumentMarker | None,
        *,
        description: str,
        extra_issues: Sequence[ValidationIssue] = (),
    ) -> ChangePlan:
        issues = list(extra_issues)
        diffs: list[EntryDiff] = []
        for name in names:
            before = document.get(name)
            if before is None:
                issues.append(error(f"Server '{name}' not found.", name))
                continue
            diffs.append(self._diff(name, ChangeKind.REMOVE, before, None))
        return self._finish(description, diffs, marker, matched=names, issues=issues)

    def _plan_merge(
        self,
        document: ConfigurationDocument,
        operation: MergeEntries,
        marker: DocumentMarker | None,
    ) -> ChangePlan:
        issues = list(
            self.validator.validate_names(operation.duplicates, already_duplicates=True).issues
        )
        issues.extend(self.validator.validate_env_keys(operation.duplicate_env).issues)
        diffs: list[EntryDiff] = []
        unchanged: list[str] = []
        for name, entry in operation.entries.items():
            before = document.get(name)
            if before is None:
                diffs.append(self._diff(name, ChangeKind.ADD, None, entry))
            elif before == entry:
                unchanged.append(name)
            elif operation.overwrite:
                diffs.append(self._diff(name, ChangeKind.UPDATE, before, entry))
            else:
                unchanged.append(name)
                issues.append(
                    warning(
                        f"Server '{name}' already exists; keeping the current entry.",
                        name,
                        "Pass --overwrite or remove it first to take the imported entry.",
                    )
                )
        return self._finish(
            "merge entries",
            diffs,
            marker,
            matched=list(operation.entries),
            unchanged=unchanged,
            issues=issues,
        )

    def _plan_replace(
        self,
        document: ConfigurationDocument,
        operation: ReplaceDocument,
        marker: DocumentMarker | None,
    ) -> ChangePlan:
        target = operation.document
        issues = list(
            self.validator.validate_names(target.duplicates, already_duplicates=True).issues
        )
        issues.extend(self.validator.validate_env_keys(target.duplicate_env).issues)
        diffs: list[EntryDiff] = []
        unchanged: list[str] = []
        for name, before in document.items():
            after = target.get(name)
            if after is None:
                diffs.append(self._diff(name, ChangeKind.REMOVE, before, None))
            elif after == before:
                unchanged.append(name)
            else:
                diffs.append(self._diff(name, ChangeKind.UPDATE, before, after))
        for name, after in target.items():
            if name not in document:
                diffs.append(self._diff(name, ChangeKind.ADD, None, after))
        extra = dict(target.extra) if target.extra != document.extra else None
        order = target.names() if target.names() != document.names() else None
        return self._finish(
            "replace document",
            diffs,
            marker,
            matched=target.names(),
            unchanged=unchanged,
            issues=issues,
            extra=extra,
            order=order,
        )


__all__ = [
    "AddOne",
    "ChangeKind",
    "ChangePlan",
    "ChangePlanner",
    "EntryDiff",
    "EntryPatch",
    "MergeEntries",
    "Mutator",
    "Operation",
    "RemoveMany",
    "RemoveOne",
    "ReplaceDocument",
    "UpdateMany",
    "UpdateOne",
    "replace_entry",
]
