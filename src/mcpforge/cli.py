"""Typer-powered command line interface for ``mcpforge``.

Every command builds its collaborators from the resolved configuration,
runs inside a structured operation scope and maps engine errors to exit
codes. Environment values are masked in everything printed here except
``export``, which writes real data.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import NoReturn, cast

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from . import __version__
from .backups import BackupError, BackupRecord, BackupStore, format_age, parse_duration
from .bulk import BulkCoordinator, BulkPolicy, BulkPreview, BulkResult
from .config import AppConfig, ConfigError, load_config
from .doctor import (
    CHECK_CATEGORY_VALUES,
    CheckContext,
    CheckStatus,
    DoctorEngine,
    DoctorImpact,
    DoctorReport,
    collect_checks,
    serialize_report,
)
from .document import (
    ConfigurationDocument,
    DocumentError,
    LoadedDocument,
    ServerEntry,
    load_document,
    load_document_file,
    serialize_document,
)
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .masking import mask_assignments
from .planner import (
    AddOne,
    ChangePlan,
    ChangePlanner,
    EntryPatch,
    MergeEntries,
    Operation,
    RemoveMany,
    RemoveOne,
    ReplaceDocument,
    UpdateOne,
)
from .preview import entry_to_dict, plan_to_dict, render_issues, render_plan
from .selectors import PatternError, PatternMatcher
from .templates import (
    LocalTemplateCatalog,
    Template,
    TemplateError,
    load_template_file,
    render_template,
)
from .transaction import (
    TransactionError,
    TransactionErrorKind,
    TransactionExecutor,
)
from .validation import ValidationEngine, ValidationResult

console = Console()

EXIT_CODES: dict[TransactionErrorKind, ExitCode] = {
    TransactionErrorKind.PATTERN: ExitCode.VALIDATION,
    TransactionErrorKind.VALIDATION: ExitCode.VALIDATION,
    TransactionErrorKind.UNAPPROVED: ExitCode.VALIDATION,
    TransactionErrorKind.NO_MATCH: ExitCode.NO_MATCH,
    TransactionErrorKind.CONFLICT: ExitCode.CONFLICT,
    TransactionErrorKind.BACKUP: ExitCode.IO,
    TransactionErrorKind.IO: ExitCode.IO,
    TransactionErrorKind.CANCELLED: ExitCode.CANCELLED,
}
TEMPLATE_SUFFIXES = (".json", ".yml", ".yaml")
BATCH_KEYS = frozenset({"name", "template", "vars"})
EXPORT_FORMATS = ("json", "yaml", "template")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to mcpforge's YAML config file.",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Show the planned changes without writing anything.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Apply without asking for confirmation.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

SET_OPTION = typer.Option(
    None,
    "--set",
    help="Set an environment variable (KEY=VALUE). Repeatable.",
    metavar="KEY=VALUE",
)

UNSET_OPTION = typer.Option(
    None,
    "--unset",
    help="Remove an environment variable. Repeatable.",
    metavar="KEY",
)

APPEND_ARG_OPTION = typer.Option(
    None,
    "--append-arg",
    help="Append an argument to the existing ones. Repeatable.",
)

CONTINUE_ON_ERROR_OPTION = typer.Option(
    None,
    "--continue-on-error/--fail-fast",
    help="Keep going after a failed entry (defaults to the bulk.continue_on_error setting).",
)

WORKERS_OPTION = typer.Option(
    None,
    "--workers",
    min=1,
    help="Number of entries planned in parallel (defaults to bulk.max_workers).",
)

REQUIRE_MATCH_OPTION = typer.Option(
    False,
    "--require-match",
    help="Fail when the selector matches no entries.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage MCP server entries in Claude Desktop configuration files.

        Every change is planned, previewed with secrets masked, backed up and
        then written atomically. Bulk commands select entries with glob
        patterns such as 'api-*' or '{github,gitlab}'.
        """
    ).strip(),
)
bulk_app = typer.Typer(help="Apply one change to many entries selected by a pattern.")
backups_app = typer.Typer(help="Create, list, restore and prune document backups.")
config_app = typer.Typer(help="Inspect mcpforge configuration.")

app.add_typer(bulk_app, name="bulk")
app.add_typer(backups_app, name="backup")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    locks: LockManager
    backups: BackupStore
    matcher: PatternMatcher
    validator: ValidationEngine
    planner: ChangePlanner
    executor: TransactionExecutor
    bulk: BulkCoordinator


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    *,
    profile: str | None = None,
    document: Path | None = None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override
    if profile is not None:
        overrides["profile"] = profile
    if document is not None:
        overrides["document"] = str(document)

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    logger = StructuredLogger(config.logs_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    backups = BackupStore(config.backups.root, config.backups.index)
    matcher = PatternMatcher()
    validator = ValidationEngine(deep=config.validation.deep)
    planner = ChangePlanner(matcher, validator)
    executor = TransactionExecutor(backups, validator, locks, lock_timeout=config.lock_timeout)
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        locks=locks,
        backups=backups,
        matcher=matcher,
        validator=validator,
        planner=planner,
        executor=executor,
        bulk=BulkCoordinator(planner, executor),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the mcpforge version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    profile: str | None = typer.Option(
        None,
        "--profile",
        "-p",
        help="Operate on profile_<NAME>.json instead of the default document.",
    ),
    document: Path | None = typer.Option(
        None,
        "--document",
        dir_okay=False,
        help="Explicit path of the configuration document to manage.",
    ),
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override writer lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(
        ctx,
        config_file,
        profile=profile,
        document=document,
        lock_timeout_override=lock_timeout,
    )
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"mcpforge {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]", highlight=False)
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {escape(summary)}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _transaction_failed(op: OperationScope, exc: TransactionError) -> NoReturn:
    """Report a failed transaction and exit with the matching code."""
    rc = int(EXIT_CODES[exc.kind])
    console.print(f"[red]{escape(str(exc))}[/red]", highlight=False)
    result = getattr(exc, "result", None)
    if isinstance(result, ValidationResult):
        _print_lines(render_issues(result))
    if exc.backup is not None:
        console.print(f"Backup kept: {escape(exc.backup.id)}", highlight=False)
    op.error(
        str(exc),
        rc=rc,
        backups=[exc.backup.id] if exc.backup else None,
        context=exc.to_dict(),
    )
    raise typer.Exit(code=rc)


def _parse_assignments(values: Sequence[str] | None, option: str) -> dict[str, str]:
    """Parse repeated ``KEY=VALUE`` options."""
    parsed: dict[str, str] = {}
    for item in values or ():
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected KEY=VALUE, got '{item}'.", param_hint=option)
        parsed[key.strip()] = value
    return parsed


def _line_style(line: str) -> str | None:
    stripped = line.lstrip()
    if stripped.startswith("+"):
        return "green"
    if stripped.startswith("-"):
        return "red"
    if stripped.startswith("~"):
        return "yellow"
    if stripped.startswith("error"):
        return "bold red"
    if stripped.startswith("warning"):
        return "yellow"
    return None


def _print_lines(lines: Sequence[str]) -> None:
    for line in lines:
        console.print(line, style=_line_style(line), markup=False, highlight=False)


def _confirm(prompt: str, *, yes: bool) -> bool:
    return yes or typer.confirm(prompt, default=False)


def _load_handle(runtime: RuntimeContext, op: OperationScope) -> LoadedDocument:
    try:
        return load_document(runtime.config.document)
    except DocumentError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.IO))


def _plan(
    runtime: RuntimeContext,
    op: OperationScope,
    handle: LoadedDocument,
    operation: Operation,
) -> ChangePlan:
    try:
        return runtime.planner.plan(handle, operation)
    except PatternError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))


def _commit_plan(
    runtime: RuntimeContext,
    op: OperationScope,
    handle: LoadedDocument,
    plan: ChangePlan,
    *,
    yes: bool,
    dry_run: bool,
    backup_label: str | None = None,
) -> None:
    """Preview *plan*, then confirm and commit it unless this is a dry run."""
    _print_lines(render_plan(plan))
    if plan.has_errors:
        _command_error(
            op,
            "The change has blocking validation issues; nothing was written.",
            rc=int(ExitCode.VALIDATION),
            errors=[issue.message for issue in plan.validation.errors],
        )
    warnings = [issue.message for issue in plan.validation.warnings]
    if plan.is_empty:
        console.print("Nothing to change.")
        if warnings:
            op.warning("No changes required.", warnings=warnings)
        else:
            op.success("No changes required.", changed=0)
        return
    if dry_run:
        _dry_run_complete(op, "no changes were written.", context={"plan": plan_to_dict(plan)})
        return
    if not _confirm(f"Apply these changes to {handle.path}?", yes=yes):
        console.print("[yellow]Cancelled.[/yellow] No changes were written.")
        op.error("Cancelled by user.", rc=int(ExitCode.CANCELLED))
        raise typer.Exit(code=int(ExitCode.CANCELLED))

    try:
        outcome = runtime.executor.apply(handle, plan.approve(), backup_label=backup_label)
    except TransactionError as exc:
        _transaction_failed(op, exc)

    backup_id = outcome.backup.id if outcome.backup else None
    console.print(
        f"[green]Committed {escape(plan.description)} ({outcome.changed} change(s)).[/green]",
        highlight=False,
    )
    if backup_id:
        console.print(f"Backup: {escape(backup_id)}", highlight=False)
    op.success(
        f"Committed {plan.description}.",
        changed=outcome.changed,
        backups=[backup_id] if backup_id else None,
        warnings=warnings or None,
        context={"plan": plan_to_dict(plan)},
    )


def _cell(value: object) -> Text:
    """Table cell holding *value* as plain text (never parsed as markup)."""
    return Text(str(value))


def _entry_table(name: str, entry: ServerEntry) -> Table:
    table = Table(show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("name", _cell(name))
    table.add_row("command", _cell(entry.command))
    table.add_row("args", _cell("\n".join(entry.args)))
    table.add_row("env", _cell("\n".join(mask_assignments(entry.env))))
    for key, value in entry.extra.items():
        table.add_row(_cell(key), _cell(json.dumps(value)))
    return table


# ----------------------------------------------------------------------
# Entry commands
# ----------------------------------------------------------------------
@app.command("list")
def list_servers(
    ctx: typer.Context,
    selector: str | None = typer.Argument(None, help="Only list entries matching this pattern."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List server entries (environment values masked)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"selector": selector, "json": json_output},
        target={"kind": "document", "path": runtime.config.document},
    ) as op:
        handle = _load_handle(runtime, op)
        names = handle.document.names()
        if selector:
            try:
                names = runtime.matcher.match(names, selector)
            except PatternError as exc:
                _command_error(op, str(exc))

        if json_output:
            servers = {name: entry_to_dict(handle.document.servers[name]) for name in names}
            console.print_json(data={"document": str(handle.path), "servers": servers})
            op.success("Reported server list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Command")
        table.add_column("Args")
        table.add_column("Env")
        if not names:
            table.add_row("(none)", "", "", "")
        for name in names:
            entry = handle.document.servers[name]
            table.add_row(
                _cell(name),
                _cell(entry.command),
                _cell(" ".join(entry.args)),
                _cell("\n".join(mask_assignments(entry.env))),
            )
        console.print(table)
        op.success("Reported server list.", changed=0, context={"count": len(names)})


@app.command("show")
def show_server(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the server entry."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a single server entry (environment values masked)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "show",
        args={"name": name, "json": json_output},
        target={"kind": "server", "name": name},
    ) as op:
        handle = _load_handle(runtime, op)
        entry = handle.document.get(name)
        if entry is None:
            _command_error(op, f"Server '{name}' not found.", rc=int(ExitCode.NO_MATCH))
        if json_output:
            console.print_json(data={"name": name, **entry_to_dict(entry)})
        else:
            console.print(_entry_table(name, entry))
        op.success("Displayed server entry.", changed=0)


def _template_entry(path: Path, variables: Mapping[str, object]) -> ServerEntry:
    return render_template(load_template_file(path), variables)


@app.command("add")
def add_server(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name for the new server entry."),
    command: str | None = typer.Option(None, "--command", "-c", help="Executable to run."),
    args: list[str] | None = typer.Option(
        None, "--arg", "-a", help="Command argument. Repeatable."
    ),
    env: list[str] | None = typer.Option(
        None, "--env", "-e", help="Environment variable KEY=VALUE. Repeatable.", metavar="KEY=VALUE"
    ),
    template: Path | None = typer.Option(
        None,
        "--template",
        "-t",
        dir_okay=False,
        help="Render the entry from a JSON or YAML template file.",
    ),
    variables: list[str] | None = typer.Option(
        None, "--var", help="Template variable KEY=VALUE. Repeatable.", metavar="KEY=VALUE"
    ),
    force: bool = typer.Option(False, "--force", help="Replace an existing entry."),
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Add a server entry from options or a template."""
    runtime = _get_runtime(ctx)
    env_values = _parse_assignments(env, "--env")
    var_values = _parse_assignments(variables, "--var")

    with runtime.logger.operation(
        "add",
        args={
            "name": name,
            "command": command,
            "args": list(args or []),
            "env": mask_assignments(env_values),
            "template": template,
            "vars": mask_assignments(var_values),
            "force": force,
            "dry_run": dry_run,
        },
        target={"kind": "server", "name": name, "path": runtime.config.document},
    ) as op:
        if template is not None and command is not None:
            _command_error(op, "Use either --command or --template, not both.")
        if template is not None:
            try:
                entry = _template_entry(template, var_values)
            except TemplateError as exc:
                _command_error(op, str(exc))
            if env_values:
                entry = EntryPatch(set_env=env_values)(entry)
            if args:
                entry = EntryPatch(append_args=tuple(args))(entry)
        elif command is not None:
            entry = ServerEntry(command=command, args=tuple(args or ()), env=env_values)
        else:
            _command_error(op, "Provide --command or --template.")

        handle = _load_handle(runtime, op)
        plan = _plan(runtime, op, handle, AddOne(name, entry, overwrite=force))
        _commit_plan(runtime, op, handle, plan, yes=yes, dry_run=dry_run)


@app.command("update")
def update_server(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the server entry to update."),
    command: str | None = typer.Option(None, "--command", "-c", help="Replace the command."),
    args: list[str] | None = typer.Option(
        None, "--arg", "-a", help="Replace all arguments. Repeatable."
    ),
    append_args: list[str] | None = APPEND_ARG_OPTION,
    set_values: list[str] | None = SET_OPTION,
    unset: list[str] | None = UNSET_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Update fields of a single server entry."""
    runtime = _get_runtime(ctx)
    env_values = _parse_assignments(set_values, "--set")
    patch = EntryPatch(
        command=command,
        args=tuple(args) if args else None,
        append_args=tuple(append_args or ()),
        set_env=env_values,
        unset_env=tuple(unset or ()),
    )

    with runtime.logger.operation(
        "update",
        args={
            "name": name,
            "command": command,
            "args": list(args or []),
            "append_args": list(append_args or []),
            "set": mask_assignments(env_values),
            "unset": list(unset or []),
            "dry_run": dry_run,
        },
        target={"kind": "server", "name": name, "path": runtime.config.document},
    ) as op:
        if patch.is_empty:
            _command_error(op, "Nothing to update; pass --command, --arg, --set or --unset.")
        handle = _load_handle(runtime, op)
        if name not in handle.document:
            _command_error(op, f"Server '{name}' not found.", rc=int(ExitCode.NO_MATCH))
        plan = _plan(runtime, op, handle, UpdateOne(name, patch))
        _commit_plan(runtime, op, handle, plan, yes=yes, dry_run=dry_run)


@app.command("remove")
def remove_servers(
    ctx: typer.Context,
    selector: str = typer.Argument(..., help="Entry name or pattern such as 'test-*'."),
    require_match: bool = REQUIRE_MATCH_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Remove the selected entries in a single transaction."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "remove",
        args={"selector": selector, "require_match": require_match, "dry_run": dry_run},
        target={"kind": "server", "selector": selector, "path": runtime.config.document},
    ) as op:
        handle = _load_handle(runtime, op)
        plan = _plan(runtime, op, handle, RemoveMany(selector))
        if not plan.matched and require_match:
            _command_error(
                op, f"No entries matched selector '{selector}'.", rc=int(ExitCode.NO_MATCH)
            )
        _commit_plan(runtime, op, handle, plan, yes=yes, dry_run=dry_run)


@app.command("validate")
def validate_document(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Validate only this entry."),
    deep: bool = typer.Option(
        False,
        "--deep",
        help="Also check commands on PATH, referenced paths and ports.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Validate the document (or one entry) and report every issue."""
    runtime = _get_runtime(ctx)
    deep_enabled = deep or runtime.config.validation.deep
    with runtime.logger.operation(
        "validate",
        args={"name": name, "deep": deep_enabled, "json": json_output},
        target={"kind": "document", "path": runtime.config.document},
    ) as op:
        handle = _load_handle(runtime, op)
        if name is not None:
            entry = handle.document.get(name)
            if entry is None:
                _command_error(op, f"Server '{name}' not found.", rc=int(ExitCode.NO_MATCH))
            result = runtime.validator.validate_entry(entry, deep=deep_enabled).scoped(name)
        else:
            result = runtime.validator.validate_document(handle.document, deep=deep_enabled)

        if json_output:
            console.print_json(data=result.to_dict())
        elif result.issues:
            _print_lines(render_issues(result))
        else:
            console.print("[green]No issues found.[/green]")

        errors = [issue.message for issue in result.errors]
        warnings = [issue.message for issue in result.warnings]
        if errors:
            op.error(
                "Validation failed.",
                rc=int(ExitCode.VALIDATION),
                errors=errors,
                warnings=warnings or None,
            )
            raise typer.Exit(code=int(ExitCode.VALIDATION))
        if warnings:
            op.warning("Validation passed with warnings.", warnings=warnings)
        else:
            op.success("Validation passed.", changed=0)


# ----------------------------------------------------------------------
# Doctor
# ----------------------------------------------------------------------
_STATUS_STYLE: dict[CheckStatus, str] = {
    CheckStatus.GREEN: "[green]green[/green]",
    CheckStatus.YELLOW: "[yellow]warn[/yellow]",
    CheckStatus.RED: "[red]red[/red]",
}
_DOCTOR_IMPACT_MESSAGES: dict[DoctorImpact, str] = {
    DoctorImpact.OK: "Doctor checks passed.",
    DoctorImpact.VALIDATION: "Doctor found invalid configuration.",
    DoctorImpact.IO: "Doctor found filesystem problems.",
}


def _parse_categories(raw: str | None) -> set[str]:
    if raw is None:
        return set()
    return {part.strip().lower() for part in raw.split(",") if part.strip()}


def _render_doctor_report(report: DoctorReport) -> None:
    """Render a doctor report in a human-friendly format."""
    summary = report.summary
    totals = summary.totals
    console.print(
        f"Doctor summary: {_STATUS_STYLE[summary.status]} "
        f"(impact={summary.impact.name.lower()}, exit={summary.exit_code})"
    )
    console.print(
        f"Totals: green={totals.get(CheckStatus.GREEN, 0)} "
        f"warn={totals.get(CheckStatus.YELLOW, 0)} "
        f"red={totals.get(CheckStatus.RED, 0)}"
    )
    if not report.results:
        console.print("No checks were executed.")
        return

    console.print()
    for result in report.results:
        console.print(
            f"{_STATUS_STYLE[result.status]} "
            f"{escape(f'[{result.category}] {result.id}: {result.message}')}",
            highlight=False,
        )
        if result.remediation:
            console.print(f"  remediation: {escape(result.remediation)}", highlight=False)
        if result.warnings:
            console.print(f"  notes: {escape(', '.join(result.warnings))}", highlight=False)


def _finish_doctor(op: OperationScope, report: DoctorReport, *, json_output: bool) -> None:
    """Log the outcome of a doctor run and exit with its code."""
    summary = report.summary
    payload = serialize_report(report)
    warning_ids = [f"{r.category}:{r.id}" for r in report.results if r.is_warning]
    error_ids = [f"{r.category}:{r.id}" for r in report.results if r.is_failure]
    message = _DOCTOR_IMPACT_MESSAGES[summary.impact]

    if not json_output:
        if summary.exit_code == 0 and summary.status is CheckStatus.YELLOW:
            console.print("[yellow]Doctor completed with warnings.[/yellow]")
        elif summary.exit_code != 0:
            console.print(f"[red]{message}[/red]")

    if summary.exit_code == 0:
        if summary.status is CheckStatus.YELLOW:
            op.warning(
                "Doctor completed with warnings.",
                warnings=warning_ids,
                context={"report": payload},
            )
        else:
            op.success(message, changed=0, context={"report": payload})
        return
    op.error(
        message,
        rc=summary.exit_code,
        errors=error_ids or None,
        warnings=warning_ids or None,
        context={"report": payload},
    )
    raise typer.Exit(code=summary.exit_code)


def _check_context(runtime: RuntimeContext) -> CheckContext:
    return CheckContext(
        config=runtime.config,
        validator=runtime.validator,
        max_concurrency=max(1, runtime.config.bulk.max_workers),
    )


@app.command("doctor")
def doctor(
    ctx: typer.Context,
    only: str | None = typer.Option(
        None,
        "--only",
        metavar="CATEGORY[,CATEGORY...]",
        help=f"Comma-separated check categories to run ({', '.join(CHECK_CATEGORY_VALUES)}).",
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit a JSON doctor report."),
) -> None:
    """Check the environment, the files mcpforge writes and every server entry."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "doctor",
        args={"only": only, "json": json_output},
        target={"kind": "system", "scope": "health"},
    ) as op:
        categories = _parse_categories(only) or set(CHECK_CATEGORY_VALUES)
        unknown = categories - set(CHECK_CATEGORY_VALUES)
        if unknown:
            _command_error(op, f"Unknown check categories: {', '.join(sorted(unknown))}")

        context = _check_context(runtime)
        checks = collect_checks(
            context,
            [category for category in CHECK_CATEGORY_VALUES if category in categories],
        )
        report = DoctorEngine(context).run(
            checks,
            metadata={"document": str(runtime.config.document), "categories": sorted(categories)},
        )
        if json_output:
            console.print_json(data=serialize_report(report))
        else:
            _render_doctor_report(report)
        _finish_doctor(op, report, json_output=json_output)


@app.command("health-check")
def health_check(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Deep-validate every server entry and summarise which ones are healthy."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "health-check",
        args={"json": json_output},
        target={"kind": "document", "path": runtime.config.document},
    ) as op:
        handle = _load_handle(runtime, op)
        context = _check_context(runtime)
        report = DoctorEngine(context).run(
            collect_checks(context, ["servers"]),
            metadata={"document": str(handle.path)},
        )
        results = report.by_category("servers")
        healthy = sum(1 for result in results if result.status is CheckStatus.GREEN)
        if json_output:
            console.print_json(
                data={"healthy": healthy, "total": len(results), **serialize_report(report)}
            )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Status")
            table.add_column("Server", style="bold")
            table.add_column("Details")
            for result in results:
                name = str((result.data or {}).get("name", result.id))
                table.add_row(
                    _STATUS_STYLE[result.status],
                    _cell(name),
                    _cell("\n".join(result.warnings)),
                )
            if results:
                console.print(table)
            console.print(f"Healthy servers: {healthy}/{len(results)}")
        _finish_doctor(op, report, json_output=json_output)


# ----------------------------------------------------------------------
# Bulk commands
# ----------------------------------------------------------------------
def _bulk_policy(
    runtime: RuntimeContext,
    *,
    continue_on_error: bool | None,
    dry_run: bool,
    require_match: bool,
    workers: int | None,
) -> BulkPolicy:
    return BulkPolicy(
        continue_on_error=(
            runtime.config.bulk.continue_on_error
            if continue_on_error is None
            else continue_on_error
        ),
        dry_run=dry_run,
        require_match=require_match,
        max_workers=workers or runtime.config.bulk.max_workers,
    )


def _progress(name: str, status: str) -> None:
    styles = {"applied": "green", "skipped": "dim", "failed": "red"}
    style = styles.get(status, "white")
    console.print(f"  [{style}]{status}[/{style}] {escape(name)}", highlight=False)


def _run_bulk(
    op: OperationScope,
    run: Callable[[BulkPolicy], BulkResult | BulkPreview],
    policy: BulkPolicy,
    *,
    yes: bool,
    json_output: bool,
) -> None:
    """Preview, confirm and execute a bulk run."""
    try:
        preview = cast(BulkPreview, run(replace(policy, dry_run=True)))
    except PatternError as exc:
        _command_error(op, str(exc))
    except TransactionError as exc:
        _transaction_failed(op, exc)
    warnings = [issue.message for issue in preview.warnings.issues]

    if policy.dry_run:
        if json_output:
            console.print_json(data=preview.to_dict())
        else:
            _print_lines(preview.lines())
        _dry_run_complete(
            op,
            f"{len(preview.matched)} entr{'y' if len(preview.matched) == 1 else 'ies'} planned.",
            context=preview.to_dict(),
        )
        return

    pending = [plan for plan in preview.plans if not plan.is_empty or plan.has_errors]
    if pending and not yes:
        _print_lines(preview.lines())
        if not _confirm(f"Apply changes to {len(pending)} entr(ies)?", yes=yes):
            console.print("[yellow]Cancelled.[/yellow] No changes were written.")
            op.error("Cancelled by user.", rc=int(ExitCode.CANCELLED))
            raise typer.Exit(code=int(ExitCode.CANCELLED))

    try:
        result = cast(BulkResult, run(policy))
    except TransactionError as exc:
        _transaction_failed(op, exc)

    if json_output:
        console.print_json(data=result.to_dict())
    else:
        for issue in result.warnings.issues:
            console.print(f"[yellow]warning[/yellow]: {escape(issue.message)}", highlight=False)
        console.print(
            f"Applied {len(result.applied)}, skipped {len(result.skipped)}, "
            f"failed {len(result.failed)}.",
            highlight=False,
        )
        for failure in result.failed:
            console.print(
                f"[red]{escape(failure.name)}: {escape(str(failure.error))}[/red]", highlight=False
            )

    backups = [record.id for record in result.backups]
    context = result.to_dict()
    if result.failed:
        rc = int(EXIT_CODES[result.failed[0].error.kind])
        op.error(
            "Bulk run finished with failures.",
            rc=rc,
            changed=len(result.applied),
            backups=backups or None,
            errors=[f"{failure.name}: {failure.error}" for failure in result.failed],
            warnings=warnings or None,
            context=context,
        )
        raise typer.Exit(code=rc)
    if warnings:
        op.warning(
            "Bulk run finished with warnings.",
            changed=len(result.applied),
            backups=backups or None,
            warnings=warnings,
            context=context,
        )
    else:
        op.success(
            "Bulk run finished.",
            changed=len(result.applied),
            backups=backups or None,
            context=context,
        )


@bulk_app.command("update")
def bulk_update(
    ctx: typer.Context,
    selector: str = typer.Argument(..., help="Pattern selecting the entries to update."),
    set_values: list[str] | None = SET_OPTION,
    unset: list[str] | None = UNSET_OPTION,
    append_args: list[str] | None = APPEND_ARG_OPTION,
    command: str | None = typer.Option(None, "--command", help="Replace the command."),
    continue_on_error: bool | None = CONTINUE_ON_ERROR_OPTION,
    workers: int | None = WORKERS_OPTION,
    require_match: bool = REQUIRE_MATCH_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Apply the same edit to every selected entry, one transaction each."""
    runtime = _get_runtime(ctx)
    env_values = _parse_assignments(set_values, "--set")
    patch = EntryPatch(
        command=command,
        append_args=tuple(append_args or ()),
        set_env=env_values,
        unset_env=tuple(unset or ()),
    )
    policy = _bulk_policy(
        runtime,
        continue_on_error=continue_on_error,
        dry_run=dry_run,
        require_match=require_match,
        workers=workers,
    )
    with runtime.logger.operation(
        "bulk update",
        args={
            "selector": selector,
            "set": mask_assignments(env_values),
            "unset": list(unset or []),
            "append_args": list(append_args or []),
            "command": command,
            "continue_on_error": policy.continue_on_error,
            "dry_run": dry_run,
        },
        target={"kind": "server", "selector": selector, "path": runtime.config.document},
    ) as op:
        if patch.is_empty:
            _command_error(op, "Nothing to update; pass --set, --unset, --append-arg or --command.")
        handle = _load_handle(runtime, op)
        _run_bulk(
            op,
            lambda active: runtime.bulk.run(
                handle,
                selector,
                lambda name: UpdateOne(name, patch),
                active,
                progress=None if active.dry_run or json_output else _progress,
            ),
            policy,
            yes=yes,
            json_output=json_output,
        )


@bulk_app.command("remove")
def bulk_remove(
    ctx: typer.Context,
    selector: str = typer.Argument(..., help="Pattern selecting the entries to remove."),
    continue_on_error: bool | None = CONTINUE_ON_ERROR_OPTION,
    workers: int | None = WORKERS_OPTION,
    require_match: bool = REQUIRE_MATCH_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove every selected entry, one transaction each."""
    runtime = _get_runtime(ctx)
    policy = _bulk_policy(
        runtime,
        continue_on_error=continue_on_error,
        dry_run=dry_run,
        require_match=require_match,
        workers=workers,
    )
    with runtime.logger.operation(
        "bulk remove",
        args={
            "selector": selector,
            "continue_on_error": policy.continue_on_error,
            "dry_run": dry_run,
        },
        target={"kind": "server", "selector": selector, "path": runtime.config.document},
    ) as op:
        handle = _load_handle(runtime, op)
        _run_bulk(
            op,
            lambda active: runtime.bulk.run(
                handle,
                selector,
                RemoveOne,
                active,
                progress=None if active.dry_run or json_output else _progress,
            ),
            policy,
            yes=yes,
            json_output=json_output,
        )


def _load_batch(path: Path) -> list[dict[str, object]]:
    """Read a batch file: ``servers: [{name, template | command, args, env, vars}]``."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise TemplateError(f"Failed to read batch file {path}: {exc}") from exc
    try:
        raw = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise TemplateError(f"Failed to parse batch file {path}: {exc}") from exc
    servers = raw.get("servers") if isinstance(raw, Mapping) else None
    if not isinstance(servers, list):
        raise TemplateError(f"Batch file {path} must contain a 'servers' list.")
    items: list[dict[str, object]] = []
    for index, item in enumerate(servers):
        if not isinstance(item, Mapping) or not str(item.get("name") or "").strip():
            raise TemplateError(f"Batch entry #{index + 1} must be a mapping with a 'name'.")
        items.append(dict(item))
    return items


def _resolve_template(reference: str, base: Path, catalog: LocalTemplateCatalog) -> Template:
    if reference.lower().endswith(TEMPLATE_SUFFIXES):
        candidate = Path(reference).expanduser()
        return load_template_file(candidate if candidate.is_absolute() else base / candidate)
    return catalog.load_template(reference)


def _batch_entry(
    item: Mapping[str, object],
    base: Path,
    catalog: LocalTemplateCatalog,
) -> ServerEntry:
    reference = item.get("template")
    variables = item.get("vars") or {}
    if not isinstance(variables, Mapping):
        raise TemplateError(f"'vars' for '{item['name']}' must be a mapping.")
    if reference:
        return render_template(_resolve_template(str(reference), base, catalog), variables)
    try:
        fields = {key: value for key, value in item.items() if key not in BATCH_KEYS}
        return ServerEntry.from_mapping(fields, name=str(item["name"]))
    except DocumentError as exc:
        raise TemplateError(str(exc)) from exc


@bulk_app.command("add")
def bulk_add(
    ctx: typer.Context,
    file: Path = typer.Option(
        ...,
        "--file",
        "-f",
        exists=True,
        dir_okay=False,
        help="YAML or JSON batch file listing the servers to add.",
    ),
    templates_dir: Path | None = typer.Option(
        None,
        "--templates-dir",
        file_okay=False,
        help="Directory holding named templates (defaults to the batch file's directory).",
    ),
    force: bool = typer.Option(False, "--force", help="Replace entries that already exist."),
    continue_on_error: bool | None = CONTINUE_ON_ERROR_OPTION,
    workers: int | None = WORKERS_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Add every server listed in a batch file, one transaction each."""
    runtime = _get_runtime(ctx)
    policy = _bulk_policy(
        runtime,
        continue_on_error=continue_on_error,
        dry_run=dry_run,
        require_match=False,
        workers=workers,
    )
    with runtime.logger.operation(
        "bulk add",
        args={"file": file, "force": force, "dry_run": dry_run},
        target={"kind": "document", "path": runtime.config.document},
    ) as op:
        base = file.parent
        catalog = LocalTemplateCatalog(templates_dir or base)
        try:
            operations: list[tuple[str, Operation]] = []
            for item in _load_batch(file):
                name = str(item["name"]).strip()
                operations.append((name, AddOne(name, _batch_entry(item, base, catalog), force)))
        except TemplateError as exc:
            _command_error(op, str(exc))

        handle = _load_handle(runtime, op)
        _run_bulk(
            op,
            lambda active: runtime.bulk.run_operations(
                handle,
                operations,
                active,
                progress=None if active.dry_run or json_output else _progress,
            ),
            policy,
            yes=yes,
            json_output=json_output,
        )


# ----------------------------------------------------------------------
# Import / export
# ----------------------------------------------------------------------
def _read_external_document(path: Path) -> ConfigurationDocument:
    if path.suffix.lower() in {".yml", ".yaml"}:
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise DocumentError(f"Failed to read {path}: {exc}") from exc
        return ConfigurationDocument.from_mapping(raw, source=str(path))
    return load_document_file(path)


@app.command("import")
def import_document(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON or YAML to import."),
    merge: bool = typer.Option(False, "--merge", help="Add imported entries to the document."),
    replace_all: bool = typer.Option(
        False, "--replace", help="Replace the whole document with the imported one."
    ),
    overwrite: bool = typer.Option(
        False, "--overwrite", help="With --merge, replace entries that already exist."
    ),
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Import server entries from another configuration file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "import",
        args={"file": file, "merge": merge, "replace": replace_all, "dry_run": dry_run},
        target={"kind": "document", "path": runtime.config.document},
    ) as op:
        if merge == replace_all:
            _command_error(op, "Choose exactly one of --merge or --replace.")
        try:
            incoming = _read_external_document(file)
        except DocumentError as exc:
            _command_error(op, str(exc))
        handle = _load_handle(runtime, op)
        operation: Operation
        if merge:
            operation = MergeEntries(
                dict(incoming.servers),
                overwrite=overwrite,
                duplicates=incoming.duplicates,
                duplicate_env=incoming.duplicate_env,
            )
        else:
            operation = ReplaceDocument(incoming)
        plan = _plan(runtime, op, handle, operation)
        _commit_plan(runtime, op, handle, plan, yes=yes, dry_run=dry_run, backup_label="import")


def _template_batch(document: ConfigurationDocument) -> dict[str, object]:
    """Return ``servers: [{name, command, args, env}]`` as read by ``bulk add --file``."""
    servers: list[dict[str, object]] = []
    for name in document.names():
        entry = document.servers[name]
        item: dict[str, object] = {"name": name, "env": dict(entry.env)}
        item.update(
            (key, value) for key, value in entry.to_dict().items() if key not in BATCH_KEYS
        )
        servers.append(item)
    return {"servers": servers}


@app.command("export")
def export_document(
    ctx: typer.Context,
    output_format: str = typer.Option(
        "json",
        "--format",
        help="Output format: json, yaml or template (a batch file for 'bulk add').",
        metavar="FORMAT",
    ),
    output: Path | None = typer.Option(
        None, "--output", "-o", dir_okay=False, help="Write to this file instead of stdout."
    ),
) -> None:
    """Export the document with real (unmasked) values."""
    runtime = _get_runtime(ctx)
    fmt = output_format.lower()
    with runtime.logger.operation(
        "export",
        args={"format": fmt, "output": output},
        target={"kind": "document", "path": runtime.config.document},
    ) as op:
        if fmt not in EXPORT_FORMATS:
            _command_error(
                op, f"Unsupported format '{output_format}'. Use json, yaml or template."
            )
        handle = _load_handle(runtime, op)
        if fmt == "json":
            text = serialize_document(handle.document)
        elif fmt == "template":
            text = json.dumps(_template_batch(handle.document), indent=2, ensure_ascii=False) + "\n"
        else:
            text = yaml.safe_dump(handle.document.to_dict(), sort_keys=False, allow_unicode=True)
        if output is None:
            typer.echo(text, nl=False)
        else:
            try:
                output.parent.mkdir(parents=True, exist_ok=True)
                output.write_text(text, encoding="utf-8")
                output.chmod(0o600)
            except OSError as exc:
                _command_error(op, f"Failed to write {output}: {exc}", rc=int(ExitCode.IO))
            console.print(
                f"[green]Exported {len(handle.document)} server(s) to "
                f"{escape(str(output))}.[/green]",
                highlight=False,
            )
        op.success(
            "Exported document.",
            changed=0,
            context={"servers": len(handle.document), "format": fmt},
        )


# ----------------------------------------------------------------------
# Backups
# ----------------------------------------------------------------------
def _record_summary(record: BackupRecord) -> dict[str, object]:
    return {**record.to_dict(), "path": str(record.path), "age": format_age(record.created)}


@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    name: str | None = typer.Option(None, "--name", "-n", help="Label for the backup."),
    json_output: bool = typer.Option(False, "--json", help="Emit backup details as JSON."),
) -> None:
    """Snapshot the current document."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"name": name, "json": json_output},
        target={"kind": "backup", "path": runtime.config.document},
    ) as op:
        handle = _load_handle(runtime, op)
        try:
            record = runtime.backups.create(
                handle.document, label=name, reason="manual", source=handle.path
            )
        except BackupError as exc:
            _command_error(op, f"Failed to create backup: {exc}", rc=int(ExitCode.IO))
        summary = _record_summary(record)
        if json_output:
            console.print_json(data=summary)
        else:
            console.print(f"[green]Created backup '{escape(record.id)}'.[/green]", highlight=False)
            console.print(f"File: {escape(str(record.path))}", highlight=False)
            console.print(f"Servers: {record.servers}")
        op.success("Backup created.", changed=1, backups=[record.id], context=summary)


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Emit backups as JSON."),
) -> None:
    """List backups, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backup", "root": runtime.backups.root},
    ) as op:
        try:
            records = runtime.backups.records()
        except BackupError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.IO))
        if json_output:
            console.print_json(data={"backups": [_record_summary(record) for record in records]})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Created")
        table.add_column("Age")
        table.add_column("Servers")
        table.add_column("Label")
        table.add_column("Reason")
        if not records:
            table.add_row("(none)", "", "", "", "", "")
        for record in records:
            table.add_row(
                _cell(record.id),
                _cell(record.created_at),
                format_age(record.created),
                str(record.servers),
                _cell(record.label or ""),
                _cell(record.reason or ""),
            )
        console.print(table)
        op.success("Reported backups.", changed=0, context={"count": len(records)})


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    backup: str = typer.Argument(..., help="Backup id, label or unique part of the id."),
    server: str | None = typer.Option(
        None, "--server", "-s", help="Restore only this server entry."
    ),
    preview: bool = typer.Option(
        False, "--preview", "--dry-run", help="Show what would change without restoring."
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Restore the document (or one entry) from a backup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup restore",
        args={"backup": backup, "server": server, "preview": preview},
        target={"kind": "backup", "path": runtime.config.document},
    ) as op:
        try:
            record = runtime.backups.find(backup)
            snapshot = runtime.backups.load(record)
        except BackupError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.NO_MATCH))
        console.print(f"Restoring from backup '{escape(record.id)}'.", highlight=False)

        handle = _load_handle(runtime, op)
        operation: Operation
        if server is not None:
            entry = snapshot.get(server)
            if entry is None:
                _command_error(
                    op,
                    f"Server '{server}' is not present in backup '{record.id}'.",
                    rc=int(ExitCode.NO_MATCH),
                )
            operation = AddOne(server, entry, overwrite=True)
        else:
            operation = ReplaceDocument(snapshot)
        plan = _plan(runtime, op, handle, operation)
        _commit_plan(
            runtime, op, handle, plan, yes=yes, dry_run=preview, backup_label="pre-restore"
        )


@backups_app.command("clean")
def backup_clean(
    ctx: typer.Context,
    older_than: str | None = typer.Option(
        None, "--older-than", help="Delete backups older than this (30d, 2w, 24h, 60m)."
    ),
    keep: int | None = typer.Option(
        None, "--keep", min=0, help="Keep only the newest N backups."
    ),
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Delete old backups."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup clean",
        args={"older_than": older_than, "keep": keep, "dry_run": dry_run},
        target={"kind": "backup", "root": runtime.backups.root},
    ) as op:
        if older_than is None and keep is None:
            older_than = runtime.config.backups.max_age
            if older_than is None:
                keep = runtime.config.backups.keep
        try:
            age_limit = parse_duration(older_than) if older_than else None
            doomed = runtime.backups.select_for_cleanup(older_than=age_limit, keep=keep)
        except BackupError as exc:
            _command_error(op, str(exc))

        if not doomed:
            console.print("No backups to remove.")
            op.success("No backups removed.", changed=0)
            return
        for record in doomed:
            console.print(
                f"  - {escape(record.id)} ({format_age(record.created)})", highlight=False
            )
        if dry_run:
            _dry_run_complete(
                op,
                f"{len(doomed)} backup(s) would be removed.",
                context={"backups": [record.id for record in doomed]},
            )
            return
        if not _confirm(f"Delete {len(doomed)} backup(s)?", yes=yes):
            console.print("[yellow]Cancelled.[/yellow] No backups were removed.")
            op.error("Cancelled by user.", rc=int(ExitCode.CANCELLED))
            raise typer.Exit(code=int(ExitCode.CANCELLED))
        try:
            removed = runtime.backups.clean(older_than=age_limit, keep=keep)
        except BackupError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.IO))
        console.print(f"[green]Removed {len(removed)} backup(s).[/green]")
        op.success(
            "Backups removed.",
            changed=len(removed),
            context={"removed": [record.id for record in removed]},
        )


# ----------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, _cell(rendered))

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@config_app.command("path")
def config_path(ctx: typer.Context) -> None:
    """Print the path of the managed document."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("config path", target={"kind": "config"}) as op:
        typer.echo(str(runtime.config.document))
        op.success("Reported document path.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
