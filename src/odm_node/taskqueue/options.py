"""Validation of processing options against the pipeline's option schema."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from odm_node.taskqueue.errors import ValidationError
from odm_node.taskqueue.models import TaskOption

SUPPORTED_TYPES = frozenset({"int", "float", "bool", "string", "enum", "path"})
_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


@dataclass(slots=True)
class OptionSpec:
    """One option advertised by the processing pipeline."""

    name: str
    type: str
    value: Any = None
    domain: list[Any] | str | None = None
    help: str = ""


class OptionValidator:
    """Normalizes raw ``[{name, value}]`` lists; permissive when no schema is loaded."""

    def __init__(self, specs: list[OptionSpec] | None = None) -> None:
        self._specs = {spec.name: spec for spec in specs or []}

    @classmethod
    def from_schema_file(cls, path: Path) -> OptionValidator:
        raw = json.loads(path.read_text("utf-8"))
        if not isinstance(raw, list):
            raise TypeError(f"Option schema {path} must be a JSON array")
        specs: list[OptionSpec] = []
        for item in raw:
            if not isinstance(item, dict) or not isinstance(item.get("name"), str):
                raise ValueError(f"Invalid option schema entry in {path}: {item!r}")
            option_type = str(item.get("type", "string"))
            if option_type not in SUPPORTED_TYPES:
                raise ValueError(f"Unsupported option type {option_type!r} for {item['name']}")
            specs.append(
                OptionSpec(
                    name=item["name"],
                    type=option_type,
                    value=item.get("value"),
                    domain=item.get("domain"),
                    help=str(item.get("help", "")),
                ),
            )
        return cls(specs)

    @property
    def has_schema(self) -> bool:
        return bool(self._specs)

    def get_options(self) -> list[dict[str, Any]]:
        return [asdict(spec) for spec in self._specs.values()]

    def filter_options(self, raw: str | list[Any] | None) -> list[TaskOption]:
        """Parse and type-check options; duplicates keep the last value at the first position."""

        items = _parse_raw_options(raw)
        normalized: dict[str, Any] = {}
        for item in items:
            if not isinstance(item, dict):
                raise ValidationError(f"Each option must be an object, got {item!r}")
            name = item.get("name")
            if not isinstance(name, str) or not name.strip():
                raise ValidationError(f"Option name must be a non-empty string: {item!r}")
            name = name.strip()
            normalized[name] = self._coerce(name, item.get("value"))
        return [TaskOption(name=name, value=value) for name, value in normalized.items()]

    def _coerce(self, name: str, value: Any) -> Any:
        spec = self._specs.get(name)
        if spec is None:
            if self._specs:
                raise ValidationError(f"Unknown option: {name}")
            return value
        try:
            return _coerce_value(spec, value)
        except (TypeError, ValueError) as error:
            raise ValidationError(f"Invalid value for option {name}: {value!r} ({error})") from error


def _parse_raw_options(raw: str | list[Any] | None) -> list[Any]:
    if raw is None:
        return []
    if isinstance(raw, str):
        if not raw.strip():
            return []
        try:
            raw = json.loads(raw)
        except ValueError as error:
            raise ValidationError(f"Options must be a JSON array: {error}") from error
    if not isinstance(raw, list):
        raise ValidationError("Options must be a JSON array of {name, value} objects.")
    return raw


def _coerce_value(spec: OptionSpec, value: Any) -> Any:
    if spec.type == "bool":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        raise ValueError("expected a boolean")
    if spec.type == "int":
        if isinstance(value, bool):
            raise TypeError("expected an integer")
        return int(value)
    if spec.type == "float":
        if isinstance(value, bool):
            raise TypeError("expected a number")
        return float(value)
    if spec.type == "enum":
        allowed = spec.domain if isinstance(spec.domain, list) else []
        if str(value) not in {str(choice) for choice in allowed}:
            raise ValueError(f"expected one of {allowed}")
        return str(value)
    return str(value)
