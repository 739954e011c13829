"""Structural and semantic checks for server entries and whole documents.

Issues accumulate; no check stops the others. ``ERROR`` issues block a commit,
``WARNING`` issues are surfaced but never block. Checks that touch the
filesystem or ``PATH`` only run when deep validation is requested.
"""
from __future__ import annotations

import os
import re
import shutil
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from .document import ConfigurationDocument, ServerEntry

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")
ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
PATH_PREFIXES = ("/", "./", "../", "~/", ".\\", "..\\")
_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:[\\/]")
PATH_LIKE_ENV_MARKERS = ("PATH", "DIR", "FILE")
MAX_ARGS_BEFORE_WARNING = 20
PRIVILEGED_PORT_LIMIT = 1024


class Severity(str, Enum):
    """Severity of a validation issue."""

    ERROR = "error"
    WARNING = "warning"

    @property
    def blocks_commit(self) -> bool:
        """Return ``True`` when the severity prevents a commit."""
        return self is Severity.ERROR


@dataclass(frozen=True)
class ValidationIssue:
    """A single finding."""

    severity: Severity
    message: str
    field: str | None = None
    suggestion: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "severity": self.severity.value,
            "message": self.message,
            "field": self.field,
            "suggestion": self.suggestion,
        }


@dataclass(frozen=True)
class ValidationResult:
    """Ordered collection of issues."""

    issues: tuple[ValidationIssue, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        """Return ``True`` when no issue blocks a commit."""
        return not any(issue.severity.blocks_commit for issue in self.issues)

    @property
    def errors(self) -> tuple[ValidationIssue, ...]:
        """Return the error issues."""
        return tuple(issue for issue in self.issues if issue.severity is Severity.ERROR)

    @property
    def warnings(self) -> tuple[ValidationIssue, ...]:
        """Return the warning issues."""
        return tuple(issue for issue in self.issues if issue.severity is Severity.WARNING)

    @classmethod
    def combine(cls, results: Iterable[ValidationResult]) -> ValidationResult:
        """Concatenate the issues of *results* in order."""
        issues: list[ValidationIssue] = []
        for result in results:
            issues.extend(result.issues)
        return cls(tuple(issues))

    def extend(self, *issues: ValidationIssue) -> ValidationResult:
        """Return a new result with *issues* appended."""
        return ValidationResult(self.issues + tuple(issues))

    def scoped(self, prefix: str) -> ValidationResult:
        """Return a copy whose issue fields are prefixed with *prefix*."""
        return ValidationResult(
            tuple(
                replace(issue, field=f"{prefix}.{issue.field}" if issue.field else prefix)
                for issue in self.issues
            )
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"ok": self.ok, "issues": [issue.to_dict() for issue in self.issues]}


def error(
    message: str,
    field_name: str | None = None,
    suggestion: str | None = None,
) -> ValidationIssue:
    """Shortcut for an error issue."""
    return ValidationIssue(Severity.ERROR, message, field_name, suggestion)


def warning(
    message: str,
    field_name: str | None = None,
    suggestion: str | None = None,
) -> ValidationIssue:
    """Shortcut for a warning issue."""
    return ValidationIssue(Severity.WARNING, message, field_name, suggestion)


class ValidationEngine:
    """Validate entries and documents."""

    def __init__(
        self,
        *,
        deep: bool = False,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        """Store the default depth and the PATH lookup used by deep checks."""
        self.deep = deep
        self._which = which

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------
    def validate_entry(self, entry: ServerEntry, *, deep: bool | None = None) -> ValidationResult:
        """Return every issue found in *entry*."""
        issues: list[ValidationIssue] = []

        if not entry.command.strip():
            issues.append(
                error(
                    "Command must be a non-empty string.",
                    "command",
                    "Set the executable that starts the server.",
                )
            )

        issues.extend(_placeholder_issues("command", entry.command))
        for index, arg in enumerate(entry.args):
            issues.extend(_placeholder_issues(f"args[{index}]", arg))

        for key, value in entry.env.items():
            if not ENV_KEY_PATTERN.match(key):
                issues.append(
                    error(
                        f"Environment variable name '{key}' is not valid.",
                        f"env.{key}",
                        "Use letters, digits and underscores, not starting with a digit.",
                    )
                )
            issues.extend(_placeholder_issues(f"env.{key}", value))
            if value == "":
                issues.append(
                    warning(
                        f"Environment variable '{key}' is empty.",
                        f"env.{key}",
                        "Consider removing unused environment variables.",
                    )
                )

        if self.deep if deep is None else deep:
            issues.extend(self._deep_issues(entry))
        return ValidationResult(tuple(issues))

    def _deep_issues(self, entry: ServerEntry) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        command = entry.command.strip()
        if command and not PLACEHOLDER_PATTERN.search(command):
            if _looks_like_path(command) or os.sep in command:
                candidate = Path(command).expanduser()
                if not candidate.exists():
                    issues.append(
                        warning(
                            f"Command path '{command}' does not exist.",
                            "command",
                            "Verify the command path is correct.",
                        )
                    )
                elif not os.access(candidate, os.X_OK):
                    issues.append(
                        warning(
                            f"Command '{command}' is not executable.",
                            "command",
                            "Check file permissions.",
                        )
                    )
            elif self._which(command) is None:
                issues.append(
                    warning(
                        f"Command '{command}' not found in PATH.",
                        "command",
                        f"Install {command} or add it to your PATH.",
                    )
                )

        for index, arg in enumerate(entry.args):
            if _looks_like_path(arg) and not Path(arg).expanduser().exists():
                issues.append(
                    warning(
                        f"Path argument '{arg}' does not exist.",
                        f"args[{index}]",
                        "Verify the path exists or will be created at runtime.",
                    )
                )
            if arg.isdigit() and 0 < int(arg) < PRIVILEGED_PORT_LIMIT:
                issues.append(
                    warning(
                        f"Port {arg} requires elevated privileges.",
                        f"args[{index}]",
                        f"Consider using a port >= {PRIVILEGED_PORT_LIMIT}.",
                    )
                )

        if len(entry.args) > MAX_ARGS_BEFORE_WARNING:
            issues.append(
                warning(
                    f"Server has {len(entry.args)} arguments.",
                    "args",
                    "Consider using configuration files instead of many arguments.",
                )
            )

        for key, value in entry.env.items():
            upper = key.upper()
            if not value or not any(marker in upper for marker in PATH_LIKE_ENV_MARKERS):
                continue
            if not Path(value).expanduser().exists():
                issues.append(
                    warning(
                        f"Environment variable '{key}' points to non-existent path '{value}'.",
                        f"env.{key}",
                        "Verify the path exists or will be created at runtime.",
                    )
                )
        return issues

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------
    def validate_document(
        self,
        document: ConfigurationDocument,
        *,
        deep: bool | None = None,
    ) -> ValidationResult:
        """Validate every entry in *document* plus document-level rules."""
        results = [
            self.validate_names(document.duplicates, already_duplicates=True),
            self.validate_env_keys(document.duplicate_env),
        ]
        for name, entry in document.items():
            results.append(self.validate_entry(entry, deep=deep).scoped(name))
        return ValidationResult.combine(results)

    def validate_names(
        self,
        names: Iterable[str],
        *,
        already_duplicates: bool = False,
    ) -> ValidationResult:
        """Report names that occur more than once.

        Mapping-backed documents cannot hold duplicates; this guards the
        places where a mapping is rebuilt from external data (import, merge,
        restore). With *already_duplicates* the input is the list of repeated
        names itself.
        """
        if already_duplicates:
            repeated = list(dict.fromkeys(names))
        else:
            seen: set[str] = set()
            repeated = []
            for name in names:
                if name in seen and name not in repeated:
                    repeated.append(name)
                seen.add(name)
        return ValidationResult(
            tuple(
                error(
                    f"Server name '{name}' is defined more than once.",
                    name,
                    "Rename or remove the duplicate entry.",
                )
                for name in repeated
            )
        )

    def validate_env_keys(self, repeated: Mapping[str, Sequence[str]]) -> ValidationResult:
        """Report environment keys that occur more than once within an entry."""
        return ValidationResult(
            tuple(
                error(
                    f"Environment variable '{key}' is defined more than once in '{name}'.",
                    f"{name}.env.{key}",
                    "Keep a single definition; only the last one would be used.",
                )
                for name, keys in repeated.items()
                for key in keys
            )
        )

    def validate_selection(
        self,
        selector: str,
        matched: Sequence[str],
        *,
        allow_empty: bool = True,
    ) -> ValidationResult:
        """Check that *selector* resolved to at least one entry."""
        if matched:
            return ValidationResult()
        message = f"No entries matched selector '{selector}'."
        if allow_empty:
            return ValidationResult((warning(message, "selector"),))
        return ValidationResult((error(message, "selector"),))


def find_placeholders(value: str) -> list[str]:
    """Return placeholder names left in *value*."""
    return [match.group(1) for match in PLACEHOLDER_PATTERN.finditer(value)]


def _placeholder_issues(field_name: str, value: str) -> list[ValidationIssue]:
    return [
        error(
            f"Unresolved template variable '{{{{{name}}}}}' in {field_name}.",
            field_name,
            f"Provide a value for '{name}'.",
        )
        for name in find_placeholders(value)
    ]


def _looks_like_path(value: str) -> bool:
    return value.startswith(PATH_PREFIXES) or bool(_WINDOWS_DRIVE.match(value))


__all__ = [
    "ENV_KEY_PATTERN",
    "PLACEHOLDER_PATTERN",
    "Severity",
    "ValidationEngine",
    "ValidationIssue",
    "ValidationResult",
    "error",
    "find_placeholders",
    "warning",
]
