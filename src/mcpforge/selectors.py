"""Glob-style selectors evaluated against server entry names.

Supported syntax:

* ``*`` matches zero or more characters other than ``/``.
* ``?`` matches exactly one character other than ``/``.
* ``[set]`` is a character class; ``[!set]`` negates it and ``a-z`` ranges
  are allowed. A ``]`` placed first is taken literally.
* ``{alt1,alt2}`` is a non-nested alternation. Alternatives may contain the
  other wildcards. A ``}`` outside an alternation is literal.
* ``\\x`` escapes any single character.

Selectors compile to an anchored regular expression. Every name is tested on
its own, so a name is selected when any alternative matches it and it is
reported once, at its position in the document.
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

SPECIAL_CHARACTERS = frozenset("*?[{\\")
_SEPARATOR = "/"


class PatternError(RuntimeError):
    """Raised when a selector is malformed."""


@dataclass(frozen=True)
class Selector:
    """A compiled selector."""

    pattern: str
    regex: re.Pattern[str]
    literal: bool

    def matches(self, name: str) -> bool:
        """Return ``True`` when *name* is selected."""
        if self.literal:
            return name == self.pattern
        return self.regex.fullmatch(name) is not None


def is_literal(selector: str) -> bool:
    """Return ``True`` when *selector* contains no wildcard syntax."""
    return not any(char in SPECIAL_CHARACTERS for char in selector)


def escape(name: str) -> str:
    """Return a selector matching exactly *name*."""
    return "".join(
        f"\\{char}" if char in SPECIAL_CHARACTERS or char in "]}," else char for char in name
    )


def compile_selector(selector: str) -> Selector:
    """Compile *selector* or raise :class:`PatternError`."""
    if not isinstance(selector, str) or not selector:
        raise PatternError("Selector must be a non-empty string.")
    if is_literal(selector):
        return Selector(pattern=selector, regex=re.compile(re.escape(selector)), literal=True)
    body = _translate(selector, selector, in_alternation=False)
    try:
        regex = re.compile(body)
    except re.error as exc:  # pragma: no cover - translation emits valid syntax
        raise PatternError(f"Invalid selector '{selector}': {exc}") from exc
    return Selector(pattern=selector, regex=regex, literal=False)


class PatternMatcher:
    """Resolve selectors against the names of a document."""

    def compile(self, selector: str) -> Selector:
        """Compile *selector* (see :func:`compile_selector`)."""
        return compile_selector(selector)

    def match(self, names: Iterable[str], selector: str | Selector) -> list[str]:
        """Return the names selected by *selector* in their original order.

        An empty result is not an error here; callers decide whether zero
        matches is fatal.
        """
        compiled = selector if isinstance(selector, Selector) else compile_selector(selector)
        matched: list[str] = []
        seen: set[str] = set()
        for name in names:
            if name in seen:
                continue
            seen.add(name)
            if compiled.matches(name):
                matched.append(name)
        return matched


def match_names(names: Iterable[str], selector: str | Selector) -> list[str]:
    """Shortcut for ``PatternMatcher().match(names, selector)``."""
    return PatternMatcher().match(names, selector)


def _translate(pattern: str, source: str, *, in_alternation: bool) -> str:
    parts: list[str] = []
    index = 0
    length = len(pattern)
    while index < length:
        char = pattern[index]
        if char == "\\":
            if index + 1 >= length:
                raise PatternError(f"Dangling escape at the end of selector '{source}'.")
            parts.append(re.escape(pattern[index + 1]))
            index += 2
            continue
        if char == "*":
            parts.append(f"[^{_SEPARATOR}]*")
        elif char == "?":
            parts.append(f"[^{_SEPARATOR}]")
        elif char == "[":
            end, translated = _translate_class(pattern, index, source)
            parts.append(translated)
            index = end
            continue
        elif char == "{":
            if in_alternation:
                raise PatternError(f"Nested alternation is not supported in selector '{source}'.")
            close = _find_alternation_end(pattern, index, source)
            alternatives = _split_alternatives(pattern[index + 1 : close])
            translated = "|".join(
                _translate(alternative, source, in_alternation=True) for alternative in alternatives
            )
            parts.append(f"(?:{translated})")
            index = close + 1
            continue
        else:
            # A '}' with no open alternation is literal.
            parts.append(re.escape(char))
        index += 1
    return "".join(parts)


def _translate_class(pattern: str, start: int, source: str) -> tuple[int, str]:
    index = start + 1
    negated = False
    if index < len(pattern) and pattern[index] in "!^":
        negated = True
        index += 1
    members: list[str] = []
    first = True
    while True:
        if index >= len(pattern):
            raise PatternError(f"Unterminated character class in selector '{source}'.")
        char = pattern[index]
        if char == "]" and not first:
            break
        if char == "\\":
            if index + 1 >= len(pattern):
                raise PatternError(f"Dangling escape at the end of selector '{source}'.")
            char = pattern[index + 1]
            index += 1
        members.append(char)
        first = False
        index += 1

    rendered: list[str] = []
    position = 0
    while position < len(members):
        current = members[position]
        if position + 2 < len(members) and members[position + 1] == "-":
            upper = members[position + 2]
            if ord(upper) < ord(current):
                raise PatternError(
                    f"Invalid range '{current}-{upper}' in selector '{source}'."
                )
            rendered.append(f"{re.escape(current)}-{re.escape(upper)}")
            position += 3
            continue
        rendered.append(re.escape(current))
        position += 1

    body = "".join(rendered)
    if negated:
        return index + 1, f"[^{body}{re.escape(_SEPARATOR)}]"
    return index + 1, f"[{body}]"


def _skip_class(pattern: str, start: int) -> int:
    """Return the index just past the class opened at *start* (or the end)."""
    index = start + 1
    if index < len(pattern) and pattern[index] in "!^":
        index += 1
    # A leading ']' is a class member, not the terminator.
    if index < len(pattern) and pattern[index] == "]":
        index += 1
    while index < len(pattern):
        char = pattern[index]
        if char == "\\":
            index += 2
            continue
        if char == "]":
            return index + 1
        index += 1
    return len(pattern)


def _find_alternation_end(pattern: str, start: int, source: str) -> int:
    index = start + 1
    while index < len(pattern):
        char = pattern[index]
        if char == "\\":
            index += 2
            continue
        if char == "[":
            index = _skip_class(pattern, index)
            continue
        if char == "{":
            raise PatternError(f"Nested alternation is not supported in selector '{source}'.")
        if char == "}":
            return index
        index += 1
    raise PatternError(f"Unterminated alternation in selector '{source}'.")


def _split_alternatives(body: str) -> list[str]:
    alternatives: list[str] = []
    segment_start = 0
    index = 0
    while index < len(body):
        char = body[index]
        if char == "\\":
            index += 2
            continue
        if char == "[":
            index = _skip_class(body, index)
            continue
        if char == ",":
            alternatives.append(body[segment_start:index])
            segment_start = index + 1
        index += 1
    alternatives.append(body[segment_start:])
    return alternatives


__all__ = [
    "PatternError",
    "PatternMatcher",
    "Selector",
    "compile_selector",
    "escape",
    "is_literal",
    "match_names",
]
