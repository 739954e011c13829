"""Template boundary: typed variables in, plain-string server entries out.

Templates describe a server with ``{{ variable }}`` placeholders plus a
variable schema. Variable values are modelled as tagged values
(:class:`VariableValue`) and converted to plain strings here, so everything
past this module only sees ``str`` arguments and environment values.

Command, argument and environment strings are rendered with Jinja2.
Placeholders naming a variable nobody supplied render back as
``{{ name }}`` so validation can report them.

Fetching templates from a remote catalog is outside this package; anything
implementing :class:`TemplateCatalog` can be plugged in.
:class:`LocalTemplateCatalog` reads ``<name>.json`` / ``<name>.yml`` files
from a directory.
"""
from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol, cast

from jinja2 import Environment, Undefined
from jinja2.exceptions import TemplateError as JinjaError

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to read mcpforge templates. Install with `pip install mcpforge`."
    ) from exc

from .document import ServerEntry

# An argument made of exactly one placeholder, e.g. ``{{ paths }}``.
_WHOLE_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_TRUE_WORDS = {"true", "yes", "on", "1"}
_FALSE_WORDS = {"false", "no", "off", "0"}


class TemplateError(RuntimeError):
    """Raised when a template cannot be loaded or applied."""


class _KeepPlaceholder(Undefined):
    """Undefined that renders as the placeholder it came from."""

    __slots__ = ()

    def __str__(self) -> str:
        return f"{{{{ {self._undefined_name} }}}}"


def _build_environment() -> Environment:
    return Environment(
        undefined=_KeepPlaceholder,
        autoescape=False,
        keep_trailing_newline=True,
    )


_ENVIRONMENT = _build_environment()


class VariableType(str, Enum):
    """Declared type of a template variable."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    SELECT = "select"


@dataclass(frozen=True)
class VariableValue:
    """A resolved variable value tagged with its type."""

    type: VariableType
    value: str | int | float | bool | tuple[str, ...]

    def as_text(self) -> str:
        """Render the value as it appears inside a single string."""
        if self.type is VariableType.BOOLEAN:
            return "true" if self.value else "false"
        if self.type is VariableType.ARRAY:
            return ",".join(cast(tuple[str, ...], self.value))
        if isinstance(self.value, float) and self.value.is_integer():
            return str(int(self.value))
        return str(self.value)

    def as_args(self) -> list[str]:
        """Render the value for an argument consisting solely of this placeholder."""
        if self.type is VariableType.ARRAY:
            return list(cast(tuple[str, ...], self.value))
        return [self.as_text()]


@dataclass(frozen=True)
class TemplateVariable:
    """Schema for one template variable."""

    name: str
    type: VariableType = VariableType.STRING
    description: str = ""
    default: object | None = None
    required: bool = False
    options: tuple[str, ...] = ()

    def coerce(self, raw: object) -> VariableValue:
        """Convert *raw* (CLI text or decoded YAML/JSON) into a tagged value."""
        if self.type is VariableType.BOOLEAN:
            if isinstance(raw, bool):
                return VariableValue(self.type, raw)
            text = str(raw).strip().lower()
            if text in _TRUE_WORDS:
                return VariableValue(self.type, True)
            if text in _FALSE_WORDS:
                return VariableValue(self.type, False)
            raise TemplateError(f"Variable '{self.name}' expects a boolean, got {raw!r}.")
        if self.type is VariableType.NUMBER:
            if isinstance(raw, bool):
                raise TemplateError(f"Variable '{self.name}' expects a number, got {raw!r}.")
            if isinstance(raw, (int, float)):
                return VariableValue(self.type, raw)
            try:
                number = float(str(raw).strip())
            except ValueError as exc:
                raise TemplateError(
                    f"Variable '{self.name}' expects a number, got {raw!r}."
                ) from exc
            return VariableValue(self.type, int(number) if number.is_integer() else number)
        if self.type is VariableType.ARRAY:
            if isinstance(raw, (list, tuple)):
                items = tuple(str(item) for item in raw)
            else:
                items = tuple(part.strip() for part in str(raw).split(",") if part.strip())
            return VariableValue(self.type, items)
        text = str(raw)
        if self.type is VariableType.SELECT and self.options and text not in self.options:
            allowed = ", ".join(self.options)
            raise TemplateError(
                f"Variable '{self.name}' must be one of: {allowed}. Got '{text}'."
            )
        return VariableValue(self.type, text)


@dataclass(frozen=True)
class Template:
    """A server template."""

    name: str
    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    variables: tuple[TemplateVariable, ...] = ()
    description: str = ""
    version: str = ""

    @classmethod
    def from_mapping(cls, raw: object, *, source: str = "template") -> Template:
        """Build a template from decoded JSON/YAML."""
        if not isinstance(raw, Mapping):
            raise TemplateError(f"{source} must contain a mapping at the top level.")
        config = raw.get("config", {})
        if not isinstance(config, Mapping):
            raise TemplateError(f"{source}: 'config' must be a mapping.")
        if config.get("url") is not None:
            raise TemplateError(f"{source}: URL-based templates are not supported.")
        command = config.get("command")
        if not isinstance(command, str) or not command.strip():
            raise TemplateError(f"{source}: 'config.command' must be a non-empty string.")
        args = config.get("args") or []
        if not isinstance(args, list):
            raise TemplateError(f"{source}: 'config.args' must be a list.")
        env = config.get("env") or {}
        if not isinstance(env, Mapping):
            raise TemplateError(f"{source}: 'config.env' must be a mapping.")

        variables_raw = raw.get("variables") or {}
        if not isinstance(variables_raw, Mapping):
            raise TemplateError(f"{source}: 'variables' must be a mapping.")
        variables: list[TemplateVariable] = []
        for var_name, definition in variables_raw.items():
            if not isinstance(definition, Mapping):
                raise TemplateError(f"{source}: variable '{var_name}' must be a mapping.")
            if not str(var_name).isidentifier():
                raise TemplateError(
                    f"{source}: variable name '{var_name}' must use letters, digits and '_'."
                )
            type_name = str(definition.get("type", "string")).lower()
            try:
                var_type = VariableType(type_name)
            except ValueError as exc:
                raise TemplateError(
                    f"{source}: variable '{var_name}' has unknown type '{type_name}'."
                ) from exc
            options = definition.get("options") or ()
            variables.append(
                TemplateVariable(
                    name=str(var_name),
                    type=var_type,
                    description=str(definition.get("description", "")),
                    default=definition.get("default"),
                    required=bool(definition.get("required", False)),
                    options=tuple(str(option) for option in options),
                )
            )

        return cls(
            name=str(raw.get("name") or source),
            command=command,
            args=tuple(str(arg) for arg in args),
            env={str(key): str(value) for key, value in env.items()},
            variables=tuple(variables),
            description=str(raw.get("description", "")),
            version=str(raw.get("version", "")),
        )

    def variable(self, name: str) -> TemplateVariable | None:
        """Return the schema for *name* if declared."""
        for variable in self.variables:
            if variable.name == name:
                return variable
        return None


class TemplateCatalog(Protocol):
    """Source of templates (remote catalogs live outside this package)."""

    def load_template(self, name: str) -> Template:
        """Return the template called *name* or raise :class:`TemplateError`."""


@dataclass(frozen=True)
class LocalTemplateCatalog:
    """Templates stored as files inside *root*."""

    root: Path

    def load_template(self, name: str) -> Template:
        """Load ``<root>/<name>.json`` (or ``.yml`` / ``.yaml``)."""
        for suffix in (".json", ".yml", ".yaml"):
            candidate = self.root / f"{name}{suffix}"
            if candidate.exists():
                return load_template_file(candidate)
        raise TemplateError(f"Template '{name}' not found in {self.root}.")


def load_template_file(path: Path) -> Template:
    """Read a template from a JSON or YAML file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise TemplateError(f"Failed to read template {path}: {exc}") from exc
    try:
        if path.suffix.lower() == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise TemplateError(f"Failed to parse template {path}: {exc}") from exc
    return Template.from_mapping(raw, source=path.stem)


def resolve_variables(
    template: Template,
    values: Mapping[str, object],
) -> dict[str, VariableValue]:
    """Apply defaults, enforce required variables and coerce every value."""
    resolved: dict[str, VariableValue] = {}
    for variable in template.variables:
        raw = values.get(variable.name, variable.default)
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            if variable.required:
                raise TemplateError(f"Required variable '{variable.name}' is missing.")
            if variable.type is VariableType.ARRAY:
                resolved[variable.name] = VariableValue(VariableType.ARRAY, ())
            else:
                resolved[variable.name] = VariableValue(VariableType.STRING, "")
            continue
        resolved[variable.name] = variable.coerce(raw)
    for name, raw in values.items():
        if name not in resolved and template.variable(name) is None and raw is not None:
            resolved[name] = VariableValue(VariableType.STRING, str(raw))
    return resolved


def render_template(template: Template, values: Mapping[str, object]) -> ServerEntry:
    """Render *template* with *values* into a :class:`ServerEntry`.

    An argument made of a single array placeholder expands into one argument
    per element. Optional variables without a value render empty, and
    environment variables that render empty are dropped. Placeholders that
    name no declared variable and have no value are left in place so
    validation reports them.
    """
    resolved = resolve_variables(template, values)
    context = {name: value.as_text() for name, value in resolved.items()}

    args: list[str] = []
    for index, arg in enumerate(template.args):
        whole = _WHOLE_PLACEHOLDER.fullmatch(arg.strip())
        if whole and whole.group(1) in resolved:
            args.extend(resolved[whole.group(1)].as_args())
        else:
            args.append(_render(arg, context, f"args[{index}]"))

    env: dict[str, str] = {}
    for key, value in template.env.items():
        rendered_key = _render(key, context, "env key").strip()
        rendered_value = _render(value, context, f"env.{key}")
        if rendered_key and rendered_value.strip():
            env[rendered_key] = rendered_value

    return ServerEntry(
        command=_render(template.command, context, "command"),
        args=tuple(args),
        env=env,
    )


def _render(text: str, context: Mapping[str, str], label: str) -> str:
    try:
        return _ENVIRONMENT.from_string(text).render(context)
    except JinjaError as exc:
        raise TemplateError(f"Failed to render {label} '{text}': {exc}") from exc


__all__ = [
    "LocalTemplateCatalog",
    "Template",
    "TemplateCatalog",
    "TemplateError",
    "TemplateVariable",
    "VariableType",
    "VariableValue",
    "load_template_file",
    "render_template",
    "resolve_variables",
]
