"""Tests for the mcpforge command line interface."""
from __future__ import annotations

import hashlib
import json
from pathlib import Path

import yaml
from typer.testing import CliRunner

from mcpforge import __version__
from mcpforge.cli import app

runner = CliRunner()

SECRET = "abcdef1234567890"
MASKED = "abc**********890"


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path,
    servers: dict[str, object] | None = None,
) -> tuple[dict[str, str], Path]:
    claude_dir = tmp_path / "claude"
    document = claude_dir / "claude_desktop_config.json"
    if servers is not None:
        claude_dir.mkdir(parents=True, exist_ok=True)
        document.write_text(
            json.dumps({"mcpServers": servers, "theme": "dark"}, indent=2), encoding="utf-8"
        )
    env = {
        "MCPFORGE_CONFIG_FILE": str(tmp_path / "missing.yml"),
        "MCPFORGE_CLAUDE_DIR": str(claude_dir),
        "MCPFORGE_LOGS_DIR": str(tmp_path / "logs"),
        "MCPFORGE_RUNTIME_DIR": str(tmp_path / "run"),
    }
    return env, document


def _default_servers() -> dict[str, object]:
    return {
        "api-b": {"command": "node", "args": ["b.js"]},
        "a": {"command": "x", "args": [], "env": {"API_TOKEN": SECRET}},
        "api-a": {"command": "node", "args": ["a.js"]},
    }


def _servers(document: Path) -> dict[str, dict[str, object]]:
    return json.loads(document.read_text(encoding="utf-8"))["mcpServers"]


def _digest(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def test_version_option_outputs_package_version() -> None:
    """`mcpforge --version` prints the package version."""
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help() -> None:
    """Running without a subcommand prints the help text and exits cleanly."""
    result = runner.invoke(app, [])
    assert result.exit_code == 0
    assert "Usage" in result.stdout
    assert "bulk" in result.stdout


def test_config_show_json_reports_resolved_paths(tmp_path: Path) -> None:
    """config show --json reflects environment overrides."""
    env, document = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["document"] == str(document)
    assert payload["logs_dir"] == str(tmp_path / "logs")
    assert payload["backups"]["root"] == str(tmp_path / "claude" / "backups")


def test_config_show_renders_table(tmp_path: Path) -> None:
    """The default config view is a key/value table."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 0
    assert "lock_timeout" in result.stdout
    assert "validation" in result.stdout


def test_config_path_honours_profile(tmp_path: Path) -> None:
    """--profile switches the managed document."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["--profile", "work", "config", "path"], env=env)

    assert result.exit_code == 0
    assert result.stdout.strip() == str(tmp_path / "claude" / "profile_work.json")


def test_invalid_configuration_exits_with_validation_code(tmp_path: Path) -> None:
    """A broken config file is reported before any command runs."""
    env, _ = _prepare_environment(tmp_path)
    cfg = tmp_path / "bad.yml"
    cfg.write_text("lock_timeout: 0\n", encoding="utf-8")
    env["MCPFORGE_CONFIG_FILE"] = str(cfg)

    result = runner.invoke(app, ["list"], env=env)

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout


def test_list_json_masks_environment_values(tmp_path: Path) -> None:
    """Listing never prints real environment values."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(app, ["list", "--json"], env=env)

    assert result.exit_code == 0
    assert SECRET not in result.stdout
    payload = _extract_json(result.stdout)
    assert payload["document"] == str(document)
    assert list(payload["servers"]) == ["api-b", "a", "api-a"]
    assert payload["servers"]["a"]["env"] == {"API_TOKEN": MASKED}


def test_list_table_filters_by_selector(tmp_path: Path) -> None:
    """A selector narrows the table to matching entries."""
    env, _ = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(app, ["list", "api-*"], env=env)

    assert result.exit_code == 0
    assert "api-a" in result.stdout
    assert "api-b" in result.stdout
    assert SECRET not in result.stdout


def test_list_rejects_malformed_selector(tmp_path: Path) -> None:
    """Malformed patterns exit with the validation code."""
    env, _ = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(app, ["list", "api-[abc"], env=env)

    assert result.exit_code == 2


def test_show_missing_entry_exits_no_match(tmp_path: Path) -> None:
    """Unknown names map to the no-match exit code."""
    env, _ = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(app, ["show", "ghost"], env=env)

    assert result.exit_code == 3
    assert "not found" in result.stdout


def test_add_commits_entry_and_creates_backup(tmp_path: Path) -> None:
    """Adding an entry stores real values, masks output and keeps a backup."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(
        app,
        [
            "add",
            "github",
            "--command",
            "npx",
            "--arg",
            "-y",
            "--arg",
            "@mcp/github",
            "--env",
            f"GITHUB_TOKEN={SECRET}",
            "--yes",
        ],
        env=env,
    )

    assert result.exit_code == 0, result.stdout
    assert SECRET not in result.stdout
    assert f"+ GITHUB_TOKEN={MASKED}" in result.stdout
    servers = _servers(document)
    assert list(servers) == ["api-b", "a", "api-a", "github"]
    assert servers["github"] == {
        "command": "npx",
        "args": ["-y", "@mcp/github"],
        "env": {"GITHUB_TOKEN": SECRET},
    }
    assert json.loads(document.read_text(encoding="utf-8"))["theme"] == "dark"
    assert (tmp_path / "claude" / "backups" / "backups.json").exists()


def test_add_existing_entry_requires_force(tmp_path: Path) -> None:
    """Adding over an existing name fails validation without --force."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    before = _digest(document)

    result = runner.invoke(app, ["add", "a", "--command", "other", "--yes"], env=env)
    assert result.exit_code == 2
    assert _digest(document) == before

    forced = runner.invoke(app, ["add", "a", "--command", "other", "--force", "--yes"], env=env)
    assert forced.exit_code == 0, forced.stdout
    assert _servers(document)["a"]["command"] == "other"


def test_add_requires_command_or_template(tmp_path: Path) -> None:
    """One of --command or --template must be supplied."""
    env, _ = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(app, ["add", "empty", "--yes"], env=env)

    assert result.exit_code == 2
    assert "--command" in result.stdout


def test_add_from_template_file(tmp_path: Path) -> None:
    """Templates are rendered with typed variables before planning."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    template = tmp_path / "filesystem.json"
    template.write_text(
        json.dumps(
            {
                "name": "filesystem",
                "variables": {"paths": {"type": "array", "required": True}},
                "config": {"command": "npx", "args": ["-y", "@mcp/fs", "{{paths}}"]},
            }
        ),
        encoding="utf-8",
    )

    result = runner.invoke(
        app,
        ["add", "fs", "--template", str(template), "--var", "paths=/data,/srv", "--yes"],
        env=env,
    )

    assert result.exit_code == 0, result.stdout
    assert _servers(document)["fs"]["args"] == ["-y", "@mcp/fs", "/data", "/srv"]


def test_update_sets_secret_and_previews_masked(tmp_path: Path) -> None:
    """The preview masks the new value while the file stores it."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(
        app, ["update", "api-a", "--set", f"TOKEN={SECRET}", "--yes"], env=env
    )

    assert result.exit_code == 0, result.stdout
    assert f"+ TOKEN={MASKED}" in result.stdout
    assert SECRET not in result.stdout
    assert _servers(document)["api-a"]["env"] == {"TOKEN": SECRET}


def test_update_missing_entry_exits_no_match(tmp_path: Path) -> None:
    """Updating an unknown entry exits with code 3."""
    env, _ = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(app, ["update", "ghost", "--set", "A=1", "--yes"], env=env)

    assert result.exit_code == 3


def test_update_rejects_malformed_assignment(tmp_path: Path) -> None:
    """KEY=VALUE options without '=' are usage errors."""
    env, _ = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(app, ["update", "a", "--set", "TOKEN", "--yes"], env=env)

    assert result.exit_code != 0


def test_update_dry_run_leaves_document_untouched(tmp_path: Path) -> None:
    """--dry-run prints the plan and writes nothing."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    before = _digest(document)

    result = runner.invoke(app, ["update", "a", "--command", "y", "--dry-run"], env=env)

    assert result.exit_code == 0
    assert "Dry run" in result.stdout
    assert "~ command: x -> y" in result.stdout
    assert _digest(document) == before
    assert not (tmp_path / "claude" / "backups").exists()


def test_update_cancelled_at_prompt(tmp_path: Path) -> None:
    """Declining the confirmation exits with the cancel code."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    before = _digest(document)

    result = runner.invoke(app, ["update", "a", "--command", "y"], env=env, input="n\n")

    assert result.exit_code == 6
    assert _digest(document) == before


def test_update_failing_validation_exits_and_keeps_file(tmp_path: Path) -> None:
    """An update that produces an invalid entry is refused."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    before = _digest(document)

    result = runner.invoke(app, ["update", "a", "--command", "", "--yes"], env=env)

    assert result.exit_code == 2
    assert _digest(document) == before


def test_remove_by_pattern_in_one_transaction(tmp_path: Path) -> None:
    """remove with a pattern drops every match."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(app, ["remove", "api-*", "--yes"], env=env)

    assert result.exit_code == 0, result.stdout
    assert list(_servers(document)) == ["a"]


def test_remove_without_match_is_a_warning(tmp_path: Path) -> None:
    """A selector matching nothing exits 0 and leaves the file alone."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    before = _digest(document)

    result = runner.invoke(app, ["remove", "nomatch-*", "--yes"], env=env)

    assert result.exit_code == 0
    assert "No entries matched selector 'nomatch-*'." in result.stdout
    assert _digest(document) == before


def test_remove_require_match_exits_no_match(tmp_path: Path) -> None:
    """--require-match turns an empty selection into exit code 3."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    before = _digest(document)

    result = runner.invoke(
        app, ["remove", "nomatch-*", "--require-match", "--yes"], env=env
    )

    assert result.exit_code == 3
    assert _digest(document) == before


def test_validate_reports_errors_with_exit_code(tmp_path: Path) -> None:
    """Validation errors exit 2 and are reported as JSON."""
    servers = _default_servers()
    servers["broken"] = {"command": "", "args": []}
    env, _ = _prepare_environment(tmp_path, servers)

    result = runner.invoke(app, ["validate", "--json"], env=env)

    assert result.exit_code == 2
    payload = _extract_json(result.stdout)
    assert payload["ok"] is False
    assert "broken.command" in [issue["field"] for issue in payload["issues"]]


def test_validate_clean_document(tmp_path: Path) -> None:
    """A valid document reports no issues."""
    env, _ = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(app, ["validate"], env=env)

    assert result.exit_code == 0
    assert "No issues found." in result.stdout


def test_bulk_update_applies_each_match(tmp_path: Path) -> None:
    """bulk update sets the value on every matching entry."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(
        app, ["bulk", "update", "api-*", "--set", f"TOKEN={SECRET}", "--yes"], env=env
    )

    assert result.exit_code == 0, result.stdout
    assert "Applied 2, skipped 0, failed 0." in result.stdout
    assert SECRET not in result.stdout
    servers = _servers(document)
    assert servers["api-a"]["env"] == {"TOKEN": SECRET}
    assert servers["api-b"]["env"] == {"TOKEN": SECRET}
    assert "env" in servers["a"] and "TOKEN" not in servers["a"]["env"]


def test_bulk_update_dry_run_emits_masked_json(tmp_path: Path) -> None:
    """Bulk dry runs return the masked plans."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    before = _digest(document)

    result = runner.invoke(
        app,
        ["bulk", "update", "api-*", "--set", f"TOKEN={SECRET}", "--dry-run", "--json"],
        env=env,
    )

    assert result.exit_code == 0
    assert SECRET not in result.stdout
    payload = _extract_json(result.stdout)
    assert payload["dry_run"] is True
    assert payload["matched"] == ["api-b", "api-a"]
    assert _digest(document) == before


def test_bulk_update_failure_sets_exit_code(tmp_path: Path) -> None:
    """A failed entry makes the whole run exit with its code."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(
        app, ["bulk", "update", "api-*", "--command", "", "--yes", "--json"], env=env
    )

    assert result.exit_code == 2
    payload = _extract_json(result.stdout)
    assert [failure["name"] for failure in payload["failed"]] == ["api-b"]
    assert payload["skipped"] == ["api-a"]
    assert _servers(document)["api-b"]["command"] == "node"


def test_bulk_remove_require_match(tmp_path: Path) -> None:
    """bulk remove honours --require-match."""
    env, _ = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(
        app, ["bulk", "remove", "nomatch-*", "--require-match", "--yes"], env=env
    )

    assert result.exit_code == 3


def test_bulk_add_from_batch_file(tmp_path: Path) -> None:
    """Batch files add entries from templates and literal definitions."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    (tmp_path / "echo.yml").write_text(
        "name: echo\nconfig:\n  command: echo\n  args: ['{{word}}']\n", encoding="utf-8"
    )
    batch = tmp_path / "batch.yml"
    batch.write_text(
        yaml.safe_dump(
            {
                "servers": [
                    {"name": "hello", "template": "echo", "vars": {"word": "hi"}},
                    {"name": "plain", "command": "run", "args": ["--fast"]},
                ]
            }
        ),
        encoding="utf-8",
    )

    result = runner.invoke(app, ["bulk", "add", "--file", str(batch), "--yes"], env=env)

    assert result.exit_code == 0, result.stdout
    servers = _servers(document)
    assert servers["hello"] == {"command": "echo", "args": ["hi"]}
    assert servers["plain"] == {"command": "run", "args": ["--fast"]}


def test_export_outputs_real_values(tmp_path: Path) -> None:
    """Export is the one command that prints unmasked values."""
    env, _ = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(app, ["export", "--format", "yaml"], env=env)

    assert result.exit_code == 0
    exported = yaml.safe_load(result.stdout)
    assert exported["mcpServers"]["a"]["env"]["API_TOKEN"] == SECRET
    assert exported["theme"] == "dark"


def test_export_to_file_and_import_merge(tmp_path: Path) -> None:
    """Exported files can be merged into another document."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    exported = tmp_path / "export.json"
    result = runner.invoke(app, ["export", "--output", str(exported)], env=env)
    assert result.exit_code == 0
    assert exported.stat().st_mode & 0o777 == 0o600

    other_env, other_document = _prepare_environment(tmp_path / "other", {"local": {"command": "z"}})
    merged = runner.invoke(app, ["import", str(exported), "--merge", "--yes"], env=other_env)

    assert merged.exit_code == 0, merged.stdout
    assert list(_servers(other_document)) == ["local", "api-b", "a", "api-a"]
    assert _servers(other_document)["a"]["env"]["API_TOKEN"] == SECRET
    assert _servers(document) == _servers(exported)


def test_import_replace_and_mode_selection(tmp_path: Path) -> None:
    """--replace swaps the document; exactly one mode is required."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    incoming = tmp_path / "incoming.yml"
    incoming.write_text("mcpServers:\n  only:\n    command: solo\n", encoding="utf-8")

    neither = runner.invoke(app, ["import", str(incoming), "--yes"], env=env)
    assert neither.exit_code == 2

    result = runner.invoke(app, ["import", str(incoming), "--replace", "--yes"], env=env)
    assert result.exit_code == 0, result.stdout
    assert _servers(document) == {"only": {"command": "solo", "args": []}}


def test_backup_create_list_and_restore(tmp_path: Path) -> None:
    """A labelled backup can be found again and restored."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    original = _servers(document)

    created = runner.invoke(app, ["backup", "create", "--name", "before", "--json"], env=env)
    assert created.exit_code == 0, created.stdout
    record = _extract_json(created.stdout)
    assert record["label"] == "before"
    assert record["servers"] == 3

    runner.invoke(app, ["remove", "api-*", "--yes"], env=env)
    assert list(_servers(document)) == ["a"]

    listed = runner.invoke(app, ["backup", "list", "--json"], env=env)
    assert listed.exit_code == 0
    backups = _extract_json(listed.stdout)["backups"]
    assert {entry["id"] for entry in backups} >= {record["id"]}

    restored = runner.invoke(app, ["backup", "restore", "before", "--yes"], env=env)
    assert restored.exit_code == 0, restored.stdout
    assert _servers(document) == original


def test_backup_restore_single_server(tmp_path: Path) -> None:
    """--server restores one entry and leaves the others as they are."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    runner.invoke(app, ["backup", "create", "--name", "snap"], env=env)
    runner.invoke(app, ["update", "a", "--command", "changed", "--yes"], env=env)
    runner.invoke(app, ["update", "api-a", "--command", "changed", "--yes"], env=env)

    result = runner.invoke(app, ["backup", "restore", "snap", "--server", "a", "--yes"], env=env)

    assert result.exit_code == 0, result.stdout
    servers = _servers(document)
    assert servers["a"]["command"] == "x"
    assert servers["api-a"]["command"] == "changed"


def test_backup_restore_unknown_backup(tmp_path: Path) -> None:
    """Unknown backup references exit with the no-match code."""
    env, _ = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(app, ["backup", "restore", "nope", "--yes"], env=env)

    assert result.exit_code == 3


def test_backup_clean_keep_zero_removes_everything(tmp_path: Path) -> None:
    """--keep 0 removes every backup after confirmation."""
    env, _ = _prepare_environment(tmp_path, _default_servers())
    runner.invoke(app, ["backup", "create"], env=env)
    runner.invoke(app, ["backup", "create"], env=env)

    dry = runner.invoke(app, ["backup", "clean", "--keep", "0", "--dry-run"], env=env)
    assert dry.exit_code == 0
    assert "2 backup(s) would be removed." in dry.stdout

    result = runner.invoke(app, ["backup", "clean", "--keep", "0", "--yes"], env=env)
    assert result.exit_code == 0
    listed = runner.invoke(app, ["backup", "list", "--json"], env=env)
    assert _extract_json(listed.stdout)["backups"] == []


def test_operations_log_masks_secrets(tmp_path: Path) -> None:
    """Every command is logged to operations.jsonl without real secrets."""
    env, _ = _prepare_environment(tmp_path, _default_servers())
    runner.invoke(app, ["update", "a", "--set", f"API_TOKEN={SECRET}x", "--yes"], env=env)

    log_path = tmp_path / "logs" / "operations.jsonl"
    content = log_path.read_text(encoding="utf-8")
    assert SECRET not in content
    record = json.loads(content.splitlines()[-1])
    assert record["command"] == "update"
    assert record["result"]["status"] == "success"
    assert record["result"]["backups"]


def test_bracketed_values_print_literally(tmp_path: Path) -> None:
    """Square brackets in names and arguments are shown as typed, not as styling."""
    servers = {
        "db[abc]": {"command": "run", "args": ["--allow", "[/data]"]},
        "fs": {"command": "npx", "args": ["[bold]x"], "env": {"MODE": "[red]"}},
    }
    env, _ = _prepare_environment(tmp_path, servers)

    listed = runner.invoke(app, ["list"], env=env)
    assert listed.exit_code == 0, listed.stdout
    assert "db[abc]" in listed.stdout
    assert "[/data]" in listed.stdout

    shown = runner.invoke(app, ["show", "fs"], env=env)
    assert shown.exit_code == 0, shown.stdout
    assert "[bold]x" in shown.stdout
    assert "MODE=[red]" in shown.stdout


def test_export_template_feeds_bulk_add(tmp_path: Path) -> None:
    """A template export is a batch file that recreates every entry."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    batch = tmp_path / "servers.json"
    result = runner.invoke(
        app, ["export", "--format", "template", "--output", str(batch)], env=env
    )
    assert result.exit_code == 0, result.stdout

    exported = json.loads(batch.read_text(encoding="utf-8"))
    assert [item["name"] for item in exported["servers"]] == ["api-b", "a", "api-a"]
    assert exported["servers"][1] == {
        "name": "a",
        "env": {"API_TOKEN": SECRET},
        "command": "x",
        "args": [],
    }
    assert exported["servers"][0]["env"] == {}

    fresh_env, fresh_document = _prepare_environment(tmp_path / "fresh", {})
    added = runner.invoke(app, ["bulk", "add", "--file", str(batch), "--yes"], env=fresh_env)

    assert added.exit_code == 0, added.stdout
    assert _servers(fresh_document) == _servers(document)


def test_export_rejects_unknown_format(tmp_path: Path) -> None:
    """Only json, yaml and template are accepted."""
    env, _ = _prepare_environment(tmp_path, _default_servers())
    result = runner.invoke(app, ["export", "--format", "toml"], env=env)

    assert result.exit_code == 2
    assert "template" in result.stdout


def test_import_merge_rejects_repeated_env_keys(tmp_path: Path) -> None:
    """An imported entry defining a variable twice blocks the merge."""
    env, document = _prepare_environment(tmp_path, _default_servers())
    before = _digest(document)
    incoming = tmp_path / "incoming.json"
    incoming.write_text(
        '{"mcpServers": {"dup": {"command": "run", "env": {"K": "1", "K": "2"}}}}',
        encoding="utf-8",
    )

    result = runner.invoke(app, ["import", str(incoming), "--merge", "--yes"], env=env)

    assert result.exit_code == 2
    assert "dup.env.K" in result.stdout
    assert _digest(document) == before


def test_doctor_json_reports_files_and_servers(tmp_path: Path) -> None:
    """doctor --json lists filesystem and per-server results."""
    servers = {"ok": {"command": "echo"}, "broken": {"command": ""}}
    env, document = _prepare_environment(tmp_path, servers)
    result = runner.invoke(app, ["doctor", "--only", "fs,servers", "--json"], env=env)

    assert result.exit_code == 2
    payload = _extract_json(result.stdout)
    statuses = {item["id"]: item["status"] for item in payload["results"]}
    assert statuses["fs-document"] == "green"
    assert statuses["fs-config-dir"] == "green"
    assert statuses["fs-backups"] == "yellow"
    assert statuses["server-ok"] == "green"
    assert statuses["server-broken"] == "red"
    assert payload["summary"]["exit_code"] == 2
    assert payload["summary"]["totals"]["red"] == 1
    assert payload["metadata"]["document"] == str(document)


def test_doctor_warnings_exit_zero(tmp_path: Path) -> None:
    """A missing document is only a warning."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["doctor", "--only", "fs"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Totals: green=0 warn=3 red=0" in result.stdout
    assert "Doctor completed with warnings." in result.stdout


def test_doctor_rejects_unknown_category(tmp_path: Path) -> None:
    """Unknown --only categories are a usage error."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["doctor", "--only", "network"], env=env)

    assert result.exit_code == 2
    assert "network" in result.stdout


def test_health_check_summarises_servers(tmp_path: Path) -> None:
    """health-check counts healthy servers and fails when one is broken."""
    servers = {"ok": {"command": "echo"}, "broken": {"command": ""}}
    env, _ = _prepare_environment(tmp_path, servers)

    result = runner.invoke(app, ["health-check"], env=env)
    assert result.exit_code == 2
    assert "Healthy servers: 1/2" in result.stdout

    as_json = runner.invoke(app, ["health-check", "--json"], env=env)
    payload = _extract_json(as_json.stdout)
    assert payload["healthy"] == 1
    assert payload["total"] == 2
