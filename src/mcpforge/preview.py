"""Masked, human-readable renderings of entries and plans.

Everything produced here is for display. Environment values always pass
through :func:`mcpforge.masking.mask`; the plan objects themselves keep the
real values used for the write.
"""
from __future__ import annotations

from typing import cast

from .document import ServerEntry
from .masking import mask, mask_env
from .planner import ChangeKind, ChangePlan, EntryDiff
from .validation import ValidationResult

INDENT = "    "
_KIND_MARKERS = {ChangeKind.ADD: "+", ChangeKind.UPDATE: "~", ChangeKind.REMOVE: "-"}


def entry_to_dict(entry: ServerEntry, *, masked: bool = True) -> dict[str, object]:
    """Return *entry* as a dictionary with env values masked by default."""
    payload = entry.to_dict()
    payload["env"] = mask_env(entry.env) if masked else dict(entry.env)
    return payload


def render_entry(name: str, entry: ServerEntry) -> list[str]:
    """Return display lines describing *entry*."""
    lines = [name, f"{INDENT}command: {entry.command}"]
    if entry.args:
        lines.append(f"{INDENT}args: {' '.join(entry.args)}")
    for key, value in entry.env.items():
        lines.append(f"{INDENT}{key}={mask(key, value)}")
    return lines


def render_diff(diff: EntryDiff) -> list[str]:
    """Return display lines for a single entry diff."""
    marker = _KIND_MARKERS[diff.kind]
    lines = [f"{marker} {diff.name}"]
    if diff.kind is ChangeKind.ADD:
        added = cast(ServerEntry, diff.after)
        lines.append(f"{INDENT}+ command: {added.command}")
        if added.args:
            lines.append(f"{INDENT}+ args: {' '.join(added.args)}")
        for key, value in added.env.items():
            lines.append(f"{INDENT}+ {key}={mask(key, value)}")
        return lines
    if diff.kind is ChangeKind.REMOVE:
        removed = cast(ServerEntry, diff.before)
        lines.append(f"{INDENT}- command: {removed.command}")
        for key, value in removed.env.items():
            lines.append(f"{INDENT}- {key}={mask(key, value)}")
        return lines

    before = cast(ServerEntry, diff.before)
    after = cast(ServerEntry, diff.after)
    if before.command != after.command:
        lines.append(f"{INDENT}~ command: {before.command} -> {after.command}")
    if before.args != after.args:
        lines.append(f"{INDENT}~ args: {' '.join(before.args)} -> {' '.join(after.args)}")
    for key, value in after.env.items():
        if key not in before.env:
            lines.append(f"{INDENT}+ {key}={mask(key, value)}")
        elif before.env[key] != value:
            old = mask(key, before.env[key])
            lines.append(f"{INDENT}~ {key}: {old} -> {mask(key, value)}")
    for key, value in before.env.items():
        if key not in after.env:
            lines.append(f"{INDENT}- {key}={mask(key, value)}")
    if before.extra != after.extra:
        lines.append(f"{INDENT}~ other settings changed")
    return lines


def render_issues(result: ValidationResult) -> list[str]:
    """Return one line per validation issue."""
    lines: list[str] = []
    for issue in result.issues:
        location = f" [{issue.field}]" if issue.field else ""
        lines.append(f"{issue.severity.value}{location}: {issue.message}")
        if issue.suggestion:
            lines.append(f"{INDENT}hint: {issue.suggestion}")
    return lines


def render_plan(plan: ChangePlan) -> list[str]:
    """Return display lines for every diff in *plan* plus its issues."""
    counts = plan.counts()
    lines = [
        f"Plan: {plan.description} "
        f"({counts['add']} to add, {counts['update']} to update, {counts['remove']} to remove)"
    ]
    for diff in plan.diffs:
        lines.extend(render_diff(diff))
    if plan.unchanged:
        lines.append(f"unchanged: {', '.join(plan.unchanged)}")
    if plan.is_empty:
        lines.append("No changes.")
    lines.extend(render_issues(plan.validation))
    return lines


def diff_to_dict(diff: EntryDiff) -> dict[str, object]:
    """Return a masked, serialisable representation of *diff*."""
    return {
        "name": diff.name,
        "kind": diff.kind.value,
        "before": entry_to_dict(diff.before) if diff.before is not None else None,
        "after": entry_to_dict(diff.after) if diff.after is not None else None,
    }


def plan_to_dict(plan: ChangePlan) -> dict[str, object]:
    """Return a masked, serialisable representation of *plan*."""
    return {
        "description": plan.description,
        "approved": plan.approved,
        "counts": plan.counts(),
        "matched": list(plan.matched),
        "unchanged": list(plan.unchanged),
        "diffs": [diff_to_dict(diff) for diff in plan.diffs],
        "validation": plan.validation.to_dict(),
    }


__all__ = [
    "diff_to_dict",
    "entry_to_dict",
    "plan_to_dict",
    "render_diff",
    "render_entry",
    "render_issues",
    "render_plan",
]
