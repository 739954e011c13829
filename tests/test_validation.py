"""Tests for entry and document validation."""
from __future__ import annotations

from pathlib import Path

from mcpforge.document import ConfigurationDocument, ServerEntry, parse_document
from mcpforge.validation import Severity, ValidationEngine, find_placeholders


def _fields(result: object) -> list[str | None]:
    return [issue.field for issue in result.issues]  # type: ignore[attr-defined]


def test_valid_entry_has_no_issues() -> None:
    """A plain entry passes shallow validation."""
    entry = ServerEntry(command="npx", args=("-y", "server"), env={"REGION": "eu"})
    result = ValidationEngine().validate_entry(entry)

    assert result.ok
    assert result.issues == ()


def test_issues_accumulate_without_short_circuit() -> None:
    """Every problem is reported, not just the first."""
    entry = ServerEntry(
        command="",
        args=("{{root}}",),
        env={"1BAD": "x", "EMPTY": ""},
    )
    result = ValidationEngine().validate_entry(entry)

    assert not result.ok
    assert _fields(result) == ["command", "args[0]", "env.1BAD", "env.EMPTY"]
    assert [issue.severity for issue in result.issues] == [
        Severity.ERROR,
        Severity.ERROR,
        Severity.ERROR,
        Severity.WARNING,
    ]


def test_warnings_never_block() -> None:
    """Warning-only results are still ok."""
    result = ValidationEngine().validate_entry(ServerEntry(command="x", env={"KEY": ""}))

    assert result.ok
    assert len(result.warnings) == 1
    assert result.errors == ()


def test_document_validation_scopes_fields_and_reports_duplicates() -> None:
    """Document issues carry the server name and duplicates are errors."""
    document = parse_document(
        '{"mcpServers": {"a": {"command": "x"}, "a": {"command": ""}, "b": {"command": "y"}}}'
    )
    result = ValidationEngine().validate_document(document)

    assert [issue.field for issue in result.errors] == ["a", "a.command"]
    assert "more than once" in result.errors[0].message


def test_document_validation_reports_duplicate_env_keys() -> None:
    """An env key defined twice in one entry is an error."""
    document = parse_document(
        '{"mcpServers": {"a": {"command": "x", "env": {"TOKEN": "1", "TOKEN": "2"}}}}'
    )
    result = ValidationEngine().validate_document(document)

    assert not result.ok
    assert [issue.field for issue in result.errors] == ["a.env.TOKEN"]
    assert "more than once" in result.errors[0].message


def test_deep_validation_checks_path_lookup(tmp_path: Path) -> None:
    """Deep checks use the injected PATH lookup and inspect paths and ports."""
    engine = ValidationEngine(deep=True, which=lambda name: None)
    entry = ServerEntry(
        command="missing-tool",
        args=(str(tmp_path / "absent"), "80"),
        env={"DATA_DIR": str(tmp_path)},
    )
    result = engine.validate_entry(entry)

    assert result.ok
    assert _fields(result) == ["command", "args[0]", "args[1]"]
    assert all(issue.severity is Severity.WARNING for issue in result.issues)


def test_deep_validation_is_opt_in() -> None:
    """Shallow validation never consults PATH."""
    calls: list[str] = []

    def which(name: str) -> str | None:
        calls.append(name)
        return None

    engine = ValidationEngine(which=which)
    engine.validate_document(ConfigurationDocument(servers={"a": ServerEntry(command="tool")}))
    assert calls == []

    engine.validate_entry(ServerEntry(command="tool"), deep=True)
    assert calls == ["tool"]


def test_selection_warning_or_error() -> None:
    """Empty selections warn by default and fail when a match is required."""
    engine = ValidationEngine()

    assert engine.validate_selection("nomatch-*", ["a"]).issues == ()
    soft = engine.validate_selection("nomatch-*", [])
    assert soft.ok
    assert soft.warnings[0].field == "selector"
    hard = engine.validate_selection("nomatch-*", [], allow_empty=False)
    assert not hard.ok


def test_find_placeholders() -> None:
    """Placeholders are extracted with surrounding whitespace trimmed."""
    assert find_placeholders("--root={{ root }}/{{sub}}") == ["root", "sub"]
