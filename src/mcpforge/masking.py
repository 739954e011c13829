"""Display-safe projections of sensitive environment values.

Masking is a presentation concern only: callers pass the ``env`` mapping
stored inside a server entry (never the host process environment) and get
back strings suitable for previews, diffs and listings. Stored data is never
rewritten.
"""
from __future__ import annotations

from collections.abc import Mapping

SENSITIVE_FRAGMENTS: tuple[str, ...] = (
    "CLIENT_ID",
    "CLIENT_SECRET",
    "API_KEY",
    "TOKEN",
    "SECRET",
    "PASSWORD",
    "AUTH",
    "CREDENTIAL",
    "PRIVATE_KEY",
    "ACCESS_KEY",
    "REFRESH_TOKEN",
)

MASK_CHAR = "*"
MIN_MASK_WIDTH = 4
SHORT_VALUE_LENGTH = 8
VISIBLE_EDGE = 3

_SEPARATORS = str.maketrans("", "", "_-.")


def normalise_key(key: str) -> str:
    """Upper-case *key* and collapse ``_``, ``-`` and ``.`` separators."""
    return key.upper().translate(_SEPARATORS)


_NORMALISED_FRAGMENTS = tuple(normalise_key(fragment) for fragment in SENSITIVE_FRAGMENTS)


def is_sensitive(key: str) -> bool:
    """Return ``True`` when *key* contains one of the sensitive fragments."""
    normalised = normalise_key(key)
    return any(fragment in normalised for fragment in _NORMALISED_FRAGMENTS)


def mask(key: str, value: str) -> str:
    """Return *value* masked for display when *key* looks sensitive.

    Short values (fewer than eight characters) collapse to a fixed run of
    asterisks. Longer values keep the first and last three characters; the
    asterisk run between them never drops below four characters.
    """
    if not is_sensitive(key):
        return value
    if len(value) < SHORT_VALUE_LENGTH:
        return MASK_CHAR * MIN_MASK_WIDTH
    hidden = max(len(value) - 2 * VISIBLE_EDGE, MIN_MASK_WIDTH)
    return f"{value[:VISIBLE_EDGE]}{MASK_CHAR * hidden}{value[-VISIBLE_EDGE:]}"


def mask_env(env: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of *env* with every value passed through :func:`mask`."""
    return {key: mask(key, value) for key, value in env.items()}


def mask_assignments(assignments: Mapping[str, str]) -> list[str]:
    """Render ``KEY=VALUE`` pairs with masked values (used for log payloads)."""
    return [f"{key}={mask(key, value)}" for key, value in assignments.items()]


__all__ = [
    "SENSITIVE_FRAGMENTS",
    "is_sensitive",
    "mask",
    "mask_assignments",
    "mask_env",
    "normalise_key",
]
