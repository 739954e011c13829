"""Tests for the change planner."""
from __future__ import annotations

import pytest

from mcpforge.document import ConfigurationDocument, DocumentMarker, ServerEntry
from mcpforge.planner import (
    AddOne,
    ChangeKind,
    ChangePlanner,
    EntryPatch,
    MergeEntries,
    RemoveMany,
    RemoveOne,
    ReplaceDocument,
    UpdateMany,
    UpdateOne,
)
from mcpforge.selectors import PatternError


def _document() -> ConfigurationDocument:
    return ConfigurationDocument(
        servers={
            "api-b": ServerEntry(command="node", args=("b.js",)),
            "db": ServerEntry(command="pg", env={"TOKEN": "abcdef1234567890"}),
            "api-a": ServerEntry(command="node", args=("a.js",)),
        },
        extra={"theme": "dark"},
    )


def test_planning_never_mutates_the_document() -> None:
    """Plans describe changes without touching the source document."""
    document = _document()
    snapshot = document.to_dict()

    plan = ChangePlanner().plan(document, RemoveMany("api-*"))

    assert plan.names == ["api-b", "api-a"]
    assert document.to_dict() == snapshot
    assert not plan.approved


def test_add_new_entry() -> None:
    """Adding a new name produces a single ADD diff."""
    entry = ServerEntry(command="npx", args=("-y", "gh"))
    plan = ChangePlanner().plan(_document(), AddOne("github", entry))

    assert [(diff.name, diff.kind) for diff in plan.diffs] == [("github", ChangeKind.ADD)]
    assert plan.counts() == {"add": 1, "update": 0, "remove": 0}
    assert plan.validation.ok


def test_add_existing_without_overwrite_is_an_error() -> None:
    """Existing names are not replaced unless asked to."""
    plan = ChangePlanner().plan(_document(), AddOne("db", ServerEntry(command="other")))

    assert plan.diffs == ()
    assert plan.has_errors
    assert "already exists" in plan.validation.errors[0].message


def test_add_existing_with_overwrite_is_an_update() -> None:
    """Overwrite turns the add into an update diff."""
    plan = ChangePlanner().plan(
        _document(), AddOne("db", ServerEntry(command="other"), overwrite=True)
    )

    assert plan.diffs[0].kind is ChangeKind.UPDATE
    assert plan.diffs[0].before == ServerEntry(command="pg", env={"TOKEN": "abcdef1234567890"})


def test_update_with_patch_and_unchanged_entries() -> None:
    """Entries the mutator leaves alone are reported as unchanged."""
    patch = EntryPatch(set_env={"TOKEN": "abcdef1234567890"})
    plan = ChangePlanner().plan(_document(), UpdateMany("*", patch))

    assert plan.names == ["api-b", "api-a"]
    assert plan.unchanged == ("db",)
    assert plan.matched == ("api-b", "db", "api-a")


def test_update_missing_entry_is_an_error() -> None:
    """Updating an unknown name is recorded as an error issue."""
    plan = ChangePlanner().plan(_document(), UpdateOne("ghost", EntryPatch(command="x")))

    assert plan.has_errors
    assert plan.diffs == ()


def test_remove_one_missing_entry_is_an_error() -> None:
    """Removing an unknown name is an error."""
    plan = ChangePlanner().plan(_document(), RemoveOne("ghost"))

    assert plan.has_errors


def test_empty_selection_warns_by_default() -> None:
    """No matches produce a warning and an empty plan."""
    plan = ChangePlanner().plan(_document(), RemoveMany("nomatch-*"))

    assert plan.is_empty
    assert not plan.has_errors
    assert plan.validation.warnings[0].field == "selector"


def test_empty_selection_can_be_required() -> None:
    """``allow_empty=False`` turns the empty selection into an error."""
    plan = ChangePlanner().plan(_document(), RemoveMany("nomatch-*", allow_empty=False))

    assert plan.has_errors


def test_malformed_selector_raises() -> None:
    """Selector errors propagate instead of becoming an empty plan."""
    with pytest.raises(PatternError):
        ChangePlanner().plan(_document(), RemoveMany("api-[abc"))


def test_invalid_result_is_reported_per_entry() -> None:
    """Validation of the resulting entry is scoped by its name."""
    plan = ChangePlanner().plan(_document(), UpdateOne("db", EntryPatch(command="")))

    assert plan.has_errors
    assert plan.validation.errors[0].field == "db.command"


def test_merge_keeps_existing_entries_with_warning() -> None:
    """Merging without overwrite adds new names and skips existing ones."""
    entries = {
        "db": ServerEntry(command="changed"),
        "new": ServerEntry(command="n"),
    }
    plan = ChangePlanner().plan(_document(), MergeEntries(entries))

    assert [(diff.name, diff.kind) for diff in plan.diffs] == [("new", ChangeKind.ADD)]
    assert plan.unchanged == ("db",)
    assert plan.validation.warnings[0].field == "db"

    overwrite = ChangePlanner().plan(_document(), MergeEntries(entries, overwrite=True))
    assert [diff.kind for diff in overwrite.diffs] == [ChangeKind.UPDATE, ChangeKind.ADD]


def test_replace_document_diffs_every_entry() -> None:
    """Replacement removes, updates and adds as needed and tracks top-level keys."""
    target = ConfigurationDocument(
        servers={
            "api-a": ServerEntry(command="node", args=("a.js",)),
            "db": ServerEntry(command="pg2"),
            "fresh": ServerEntry(command="f"),
        },
        extra={"theme": "light"},
    )
    plan = ChangePlanner().plan(_document(), ReplaceDocument(target))

    kinds = {diff.name: diff.kind for diff in plan.diffs}
    assert kinds == {
        "api-b": ChangeKind.REMOVE,
        "db": ChangeKind.UPDATE,
        "fresh": ChangeKind.ADD,
    }
    assert plan.unchanged == ("api-a",)
    assert plan.extra == {"theme": "light"}

    result, issues = plan.apply_to(_document())
    assert issues == []
    assert result.names() == ["api-a", "db", "fresh"]
    assert result.extra == {"theme": "light"}


def test_replace_with_identical_document_is_empty() -> None:
    """Restoring the same content plans nothing."""
    plan = ChangePlanner().plan(_document(), ReplaceDocument(_document()))

    assert plan.is_empty


def test_apply_to_detects_entries_changed_after_planning() -> None:
    """An entry that no longer matches the diff's ``before`` is an error."""
    plan = ChangePlanner().plan(_document(), UpdateOne("db", EntryPatch(command="x")))
    drifted = _document()
    drifted.set_entry("db", ServerEntry(command="edited elsewhere"))

    result, issues = plan.apply_to(drifted)

    assert issues and "changed since the plan was computed" in issues[0].message
    assert result.servers["db"].command == "edited elsewhere"


def test_plan_records_marker_and_approval() -> None:
    """Plans carry the base marker and approval returns a new object."""
    marker = DocumentMarker(exists=True, size=2, mtime_ns=1, sha256="abc")
    plan = ChangePlanner().plan(_document(), RemoveOne("db"), marker=marker)
    approved = plan.approve()

    assert plan.base_marker == marker
    assert approved.approved and not plan.approved
