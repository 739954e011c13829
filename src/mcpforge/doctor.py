"""Environment and per-server health checks behind ``mcpforge doctor``.

Each check returns a :class:`CheckResult` with a traffic-light status and an
impact tier. The report's exit code is the worst impact seen, so warnings
alone never fail the command.
"""
from __future__ import annotations

import concurrent.futures
import logging
import os
import platform
import subprocess
import sys
import time
import traceback
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from . import __version__
from .config import AppConfig
from .document import ConfigurationDocument, DocumentError, load_document
from .exit_codes import ExitCode
from .validation import ValidationEngine, ValidationResult

LOGGER = logging.getLogger(__name__)


class CheckStatus(str, Enum):
    """High-level outcome for a doctor check."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is CheckStatus.RED

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the status represents a warning."""
        return self is CheckStatus.YELLOW


class DoctorImpact(Enum):
    """Impact tier used to derive the doctor exit code."""

    OK = int(ExitCode.OK)
    VALIDATION = int(ExitCode.VALIDATION)
    IO = int(ExitCode.IO)


CheckCategory = Literal["env", "fs", "servers"]

# Keep in sync with ``CheckCategory``.
CHECK_CATEGORY_VALUES: tuple[CheckCategory, ...] = ("env", "fs", "servers")

CommandRunner = Callable[[Sequence[str]], str | None]


def command_version(argv: Sequence[str]) -> str | None:
    """Return the first line printed by *argv* (``None`` when it cannot run)."""
    try:
        result = subprocess.run(  # noqa: S603,S607
            list(argv),
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
    except (FileNotFoundError, PermissionError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    output = (result.stdout or result.stderr or "").strip()
    return output.splitlines()[0] if output else ""


@dataclass(slots=True, frozen=True)
class CheckContext:
    """Everything a check may look at."""

    config: AppConfig
    validator: ValidationEngine
    run_command: CommandRunner = command_version
    max_concurrency: int = 4


@dataclass(slots=True, frozen=True)
class CheckResult:
    """Outcome of running one check."""

    id: str
    category: CheckCategory
    status: CheckStatus
    impact: DoctorImpact
    message: str
    remediation: str | None = None
    duration_ms: int | None = None
    data: Mapping[str, Any] | None = None
    warnings: Sequence[str] = field(default_factory=tuple)

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the result represents a failure."""
        return self.status.is_failure

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the result represents a warning."""
        return self.status.is_warning


@dataclass(slots=True, frozen=True)
class CheckDefinition:
    """Metadata + callable for a check."""

    id: str
    category: CheckCategory
    run: Callable[[CheckContext], CheckResult]


@dataclass(slots=True, frozen=True)
class DoctorSummary:
    """Aggregated summary derived from check results."""

    status: CheckStatus
    impact: DoctorImpact
    exit_code: int
    totals: Mapping[CheckStatus, int]


@dataclass(slots=True, frozen=True)
class DoctorReport:
    """Complete report for a doctor run."""

    results: Sequence[CheckResult]
    summary: DoctorSummary
    metadata: Mapping[str, Any] | None = None

    def by_category(self, category: CheckCategory) -> list[CheckResult]:
        """Return the results belonging to *category*."""
        return [result for result in self.results if result.category == category]


STATUS_ORDER: Mapping[CheckStatus, int] = {
    CheckStatus.GREEN: 0,
    CheckStatus.YELLOW: 1,
    CheckStatus.RED: 2,
}


def aggregate_results(results: Iterable[CheckResult]) -> DoctorSummary:
    """Compute the worst status and impact across *results*."""
    totals: dict[CheckStatus, int] = {status: 0 for status in CheckStatus}
    worst_impact = DoctorImpact.OK
    worst_status = CheckStatus.GREEN
    for result in results:
        totals[result.status] += 1
        if result.impact.value > worst_impact.value:
            worst_impact = result.impact
        if STATUS_ORDER[result.status] > STATUS_ORDER[worst_status]:
            worst_status = result.status
    return DoctorSummary(
        status=worst_status,
        impact=worst_impact,
        exit_code=worst_impact.value,
        totals=totals,
    )


def build_report(
    results: Sequence[CheckResult],
    metadata: Mapping[str, Any] | None = None,
) -> DoctorReport:
    """Create a full DoctorReport from check results."""
    return DoctorReport(
        results=tuple(results),
        summary=aggregate_results(results),
        metadata=metadata,
    )


def serialize_report(report: DoctorReport) -> dict[str, object]:
    """Convert a doctor report into a JSON-serialisable mapping."""
    summary = report.summary
    results: list[dict[str, object]] = []
    for result in report.results:
        payload: dict[str, object] = {
            "id": result.id,
            "category": result.category,
            "status": result.status.value,
            "impact": result.impact.name.lower(),
            "impact_code": result.impact.value,
            "message": result.message,
        }
        if result.remediation:
            payload["remediation"] = result.remediation
        if result.duration_ms is not None:
            payload["duration_ms"] = result.duration_ms
        if result.data:
            payload["data"] = _sanitize_payload(result.data)
        if result.warnings:
            payload["warnings"] = list(result.warnings)
        results.append(payload)
    return {
        "summary": {
            "status": summary.status.value,
            "impact": summary.impact.name.lower(),
            "exit_code": summary.exit_code,
            "totals": {status.value: int(summary.totals.get(status, 0)) for status in CheckStatus},
        },
        "results": results,
        "metadata": _sanitize_payload(report.metadata) if report.metadata else {},
    }


def _sanitize_payload(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize_payload(item) for item in value]
    return str(value)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _run_single_check(check: CheckDefinition, context: CheckContext) -> CheckResult:
    start = time.perf_counter()
    try:
        result = check.run(context)
    except Exception as exc:  # noqa: BLE001 - reported as a RED result
        LOGGER.debug("Doctor check %s raised: %s", check.id, exc)
        return CheckResult(
            id=check.id,
            category=check.category,
            status=CheckStatus.RED,
            impact=DoctorImpact.IO,
            message=f"Check '{check.id}' raised an unexpected error: {exc}",
            duration_ms=_duration_ms(start),
            data={"exception": repr(exc), "traceback": traceback.format_exc()},
            warnings=("unhandled-exception",),
        )
    if result.duration_ms is None:
        result = replace(result, duration_ms=_duration_ms(start))
    return result


def run_checks(context: CheckContext, checks: Sequence[CheckDefinition]) -> list[CheckResult]:
    """Execute *checks* with bounded concurrency, keeping their order."""
    if not checks:
        return []
    max_workers = max(1, context.max_concurrency)
    if max_workers == 1:
        return [_run_single_check(check, context) for check in checks]

    results: list[CheckResult | None] = [None] * len(checks)
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_index: dict[concurrent.futures.Future[CheckResult], int] = {}
        for index, check in enumerate(checks):
            future_to_index[executor.submit(_run_single_check, check, context)] = index
        for future in concurrent.futures.as_completed(future_to_index):
            results[future_to_index[future]] = future.result()
    return [result for result in results if result is not None]


class DoctorEngine:
    """Coordinator that executes checks and aggregates the overall report."""

    def __init__(self, context: CheckContext) -> None:
        """Store the check execution context."""
        self._context = context

    def run(
        self,
        checks: Sequence[CheckDefinition],
        *,
        metadata: Mapping[str, object] | None = None,
    ) -> DoctorReport:
        """Run the supplied checks and build a doctor report."""
        start = time.perf_counter()
        results = run_checks(self._context, checks)
        run_metadata: dict[str, object] = {
            "duration_ms": _duration_ms(start),
            "check_count": len(results),
            "concurrency": self._context.max_concurrency,
        }
        if metadata:
            run_metadata.update(metadata)
        return build_report(results, metadata=run_metadata)


# ---------------------------------------------------------------------------
# Check registry
# ---------------------------------------------------------------------------


def collect_checks(
    context: CheckContext,
    categories: Iterable[CheckCategory] = CHECK_CATEGORY_VALUES,
) -> tuple[CheckDefinition, ...]:
    """Return the checks for *categories* in report order."""
    wanted = set(categories)
    checks: list[CheckDefinition] = []
    if "env" in wanted:
        checks.extend(_env_checks())
    if "fs" in wanted:
        checks.extend(_fs_checks())
    if "servers" in wanted:
        checks.extend(_server_checks(context))
    return tuple(checks)


def _make_check(
    check_id: str,
    category: CheckCategory,
    handler: Callable[[CheckContext], CheckResult],
) -> CheckDefinition:
    return CheckDefinition(id=check_id, category=category, run=handler)


def _result(
    check_id: str,
    category: CheckCategory,
    status: CheckStatus,
    message: str,
    *,
    impact: DoctorImpact = DoctorImpact.OK,
    remediation: str | None = None,
    data: Mapping[str, Any] | None = None,
    warnings: Sequence[str] = (),
) -> CheckResult:
    return CheckResult(
        id=check_id,
        category=category,
        status=status,
        impact=impact,
        message=message,
        remediation=remediation,
        data=data,
        warnings=tuple(warnings),
    )


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


def _env_checks() -> Sequence[CheckDefinition]:
    return (
        _make_check("env-mcpforge", "env", _check_env_mcpforge),
        _make_check("env-platform", "env", _check_env_platform),
        _make_check("env-python", "env", _check_env_python),
        _make_check("env-node", "env", _check_env_node),
    )


def _check_env_mcpforge(_context: CheckContext) -> CheckResult:
    return _result("env-mcpforge", "env", CheckStatus.GREEN, f"mcpforge {__version__} installed.")


def _check_env_platform(_context: CheckContext) -> CheckResult:
    return _result("env-platform", "env", CheckStatus.GREEN, f"Platform: {platform.platform()}")


def _check_env_python(context: CheckContext) -> CheckResult:
    # Servers launch the interpreter on PATH, not the one running mcpforge.
    for binary in ("python3", "python"):
        version = context.run_command([binary, "--version"])
        if version is not None:
            return _result(
                "env-python",
                "env",
                CheckStatus.GREEN,
                f"{version} available as '{binary}'.",
                data={"binary": binary, "version": version, "mcpforge_python": sys.executable},
            )
    return _result(
        "env-python",
        "env",
        CheckStatus.YELLOW,
        "No python3 or python found on PATH.",
        remediation="Install Python if any server is started with python.",
        data={"mcpforge_python": sys.executable},
        warnings=("missing:python",),
    )


def _check_env_node(context: CheckContext) -> CheckResult:
    version = context.run_command(["node", "--version"])
    if version is None:
        return _result(
            "env-node",
            "env",
            CheckStatus.YELLOW,
            "Node.js not found on PATH; servers started with node or npx will fail.",
            remediation="Install Node.js (https://nodejs.org) if you use npx based servers.",
            warnings=("missing:node",),
        )
    return _result(
        "env-node",
        "env",
        CheckStatus.GREEN,
        f"Node.js {version} available.",
        data={"version": version},
    )


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


def _fs_checks() -> Sequence[CheckDefinition]:
    return (
        _make_check("fs-document", "fs", _check_fs_document),
        _make_check("fs-config-dir", "fs", _check_fs_config_dir),
        _make_check("fs-backups", "fs", _check_fs_backups),
    )


def _nearest_existing(path: Path) -> Path:
    candidate = path
    while not candidate.exists() and candidate != candidate.parent:
        candidate = candidate.parent
    return candidate


def _writable_dir_result(
    check_id: str,
    path: Path,
    label: str,
    *,
    missing_message: str,
) -> CheckResult:
    data = {"path": str(path)}
    if not path.exists():
        parent = _nearest_existing(path)
        if not os.access(parent, os.W_OK):
            return _result(
                check_id,
                "fs",
                CheckStatus.RED,
                f"{label} {path} is missing and cannot be created under {parent}.",
                impact=DoctorImpact.IO,
                remediation=f"Create {path} or fix the permissions of {parent}.",
                data=data,
            )
        return _result(check_id, "fs", CheckStatus.YELLOW, missing_message, data=data)
    if not path.is_dir():
        return _result(
            check_id,
            "fs",
            CheckStatus.RED,
            f"{label} {path} is not a directory.",
            impact=DoctorImpact.IO,
            data=data,
        )
    if not os.access(path, os.W_OK):
        return _result(
            check_id,
            "fs",
            CheckStatus.RED,
            f"{label} {path} is not writable.",
            impact=DoctorImpact.IO,
            remediation=f"Fix the permissions of {path}.",
            data=data,
        )
    return _result(check_id, "fs", CheckStatus.GREEN, f"{label} {path} is writable.", data=data)


def _check_fs_document(context: CheckContext) -> CheckResult:
    path = context.config.document.expanduser()
    data = {"path": str(path)}
    if not path.exists():
        return _result(
            "fs-document",
            "fs",
            CheckStatus.YELLOW,
            f"Configuration file {path} does not exist yet.",
            remediation="It is created on the first change (e.g. `mcpforge add`).",
            data=data,
        )
    try:
        handle = load_document(path)
    except DocumentError as exc:
        return _result(
            "fs-document",
            "fs",
            CheckStatus.RED,
            str(exc),
            impact=DoctorImpact.VALIDATION,
            remediation="Fix the JSON by hand or restore a backup with `mcpforge backup restore`.",
            data=data,
        )
    data = {**data, "servers": len(handle.document)}
    if not os.access(path, os.W_OK):
        return _result(
            "fs-document",
            "fs",
            CheckStatus.RED,
            f"Configuration file {path} is not writable.",
            impact=DoctorImpact.IO,
            remediation=f"Fix the permissions of {path}.",
            data=data,
        )
    return _result(
        "fs-document",
        "fs",
        CheckStatus.GREEN,
        f"Configuration file {path} is writable ({len(handle.document)} server(s)).",
        data=data,
    )


def _check_fs_config_dir(context: CheckContext) -> CheckResult:
    path = context.config.document.expanduser().parent
    return _writable_dir_result(
        "fs-config-dir",
        path,
        "Configuration directory",
        missing_message=f"Configuration directory {path} does not exist yet.",
    )


def _check_fs_backups(context: CheckContext) -> CheckResult:
    path = context.config.backups.root.expanduser()
    return _writable_dir_result(
        "fs-backups",
        path,
        "Backup directory",
        missing_message=(
            f"Backup directory {path} does not exist; it is created automatically when needed."
        ),
    )


# ---------------------------------------------------------------------------
# Servers
# ---------------------------------------------------------------------------


def _server_checks(context: CheckContext) -> Sequence[CheckDefinition]:
    try:
        document = load_document(context.config.document).document
    except DocumentError as exc:
        LOGGER.debug("Skipping server checks: %s", exc)
        return ()
    return tuple(
        _make_check(f"server-{name}", "servers", _check_server(document, name))
        for name in document.names()
    )


def _check_server(
    document: ConfigurationDocument,
    name: str,
) -> Callable[[CheckContext], CheckResult]:
    def _run(context: CheckContext) -> CheckResult:
        result = ValidationResult.combine(
            [
                context.validator.validate_entry(document.servers[name], deep=True).scoped(name),
                context.validator.validate_env_keys(
                    {name: document.duplicate_env.get(name, ())}
                ),
            ]
        )
        data = {"name": name, "issues": [issue.to_dict() for issue in result.issues]}
        check_id = f"server-{name}"
        if result.errors:
            return _result(
                check_id,
                "servers",
                CheckStatus.RED,
                f"{name}: unhealthy ({len(result.errors)} error(s)).",
                impact=DoctorImpact.VALIDATION,
                remediation=f"Run `mcpforge validate {name} --deep` for details.",
                data=data,
                warnings=[issue.message for issue in result.errors],
            )
        if result.warnings:
            return _result(
                check_id,
                "servers",
                CheckStatus.YELLOW,
                f"{name}: issues detected ({len(result.warnings)} warning(s)).",
                data=data,
                warnings=[issue.message for issue in result.warnings],
            )
        return _result(check_id, "servers", CheckStatus.GREEN, f"{name}: healthy.", data=data)

    return _run


__all__ = [
    "CHECK_CATEGORY_VALUES",
    "CheckCategory",
    "CheckContext",
    "CheckDefinition",
    "CheckResult",
    "CheckStatus",
    "DoctorEngine",
    "DoctorImpact",
    "DoctorReport",
    "DoctorSummary",
    "aggregate_results",
    "build_report",
    "collect_checks",
    "command_version",
    "run_checks",
    "serialize_report",
]
