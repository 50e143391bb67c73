from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence


class ParameterValidationError(ValueError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ParameterValidationError(msg)


_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class AlgorithmParameter:
    """
    Description of one tunable setting: display name, key, kind, default and bounds.

    Host applications list these to build their own configuration UI or file format; `parse` turns a
    raw value (possibly a string) into a validated Python value.
    """

    name: str
    key: str
    kind: str
    default: Any
    min_value: float | None = None
    max_value: float | None = None
    choices: tuple[str, ...] = ()
    optional: bool = False

    def parse(self, raw: Any) -> Any:
        if raw is None or (self.optional and isinstance(raw, str) and raw.strip().lower() in {"", "none", "null"}):
            _require(self.optional, f"{self.key} is required")
            return None

        if self.kind == "bool":
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            _require(text in _TRUE or text in _FALSE, f"{self.key} must be a boolean")
            return text in _TRUE

        if self.kind == "choice":
            value = str(getattr(raw, "value", raw)).strip().lower()
            _require(value in self.choices, f"{self.key} must be one of {'|'.join(self.choices)}")
            return value

        if self.kind == "int":
            try:
                value_f = float(raw)
            except (TypeError, ValueError) as e:
                raise ParameterValidationError(f"{self.key} must be an integer") from e
            _require(value_f.is_integer(), f"{self.key} must be an integer")
            value = int(value_f)
        elif self.kind == "float":
            try:
                value = float(raw)
            except (TypeError, ValueError) as e:
                raise ParameterValidationError(f"{self.key} must be a number") from e
            _require(value == value, f"{self.key} must not be nan")
        else:
            raise ParameterValidationError(f"unknown parameter kind: {self.kind}")

        if self.min_value is not None:
            _require(value >= self.min_value, f"{self.key} must be >= {self.min_value}")
        if self.max_value is not None:
            _require(value <= self.max_value, f"{self.key} must be <= {self.max_value}")
        return value

    def describe(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "key": self.key, "kind": self.kind, "default": self.default}
        if self.min_value is not None:
            out["min"] = self.min_value
        if self.max_value is not None:
            out["max"] = self.max_value
        if self.choices:
            out["choices"] = list(self.choices)
        if self.optional:
            out["optional"] = True
        return out


def bool_parameter(name: str, key: str, default: bool) -> AlgorithmParameter:
    return AlgorithmParameter(name=name, key=key, kind="bool", default=bool(default))


def int_parameter(name: str, key: str, default: int, min_value: int, max_value: int) -> AlgorithmParameter:
    return AlgorithmParameter(name=name, key=key, kind="int", default=int(default), min_value=min_value, max_value=max_value)


def float_parameter(
    name: str,
    key: str,
    default: float | None,
    min_value: float,
    max_value: float,
    *,
    optional: bool = False,
) -> AlgorithmParameter:
    return AlgorithmParameter(
        name=name,
        key=key,
        kind="float",
        default=default,
        min_value=min_value,
        max_value=max_value,
        optional=optional,
    )


def choice_parameter(name: str, key: str, default: str, choices: Sequence[str]) -> AlgorithmParameter:
    return AlgorithmParameter(name=name, key=key, kind="choice", default=default, choices=tuple(choices))


def resolve_parameters(
    parameters: Sequence[AlgorithmParameter],
    values: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Defaults of `parameters`, overridden by the validated entries of `values`.
    """
    by_key = {p.key: p for p in parameters}
    values = dict(values or {})
    unknown = sorted(set(values) - set(by_key))
    _require(not unknown, f"unknown parameter(s): {', '.join(unknown)}")
    out: dict[str, Any] = {}
    for p in parameters:
        out[p.key] = p.parse(values[p.key]) if p.key in values else p.default
    return out


def describe_parameters(parameters: Sequence[AlgorithmParameter]) -> list[dict[str, Any]]:
    return [p.describe() for p in parameters]


def parse_assignments(items: Sequence[str]) -> dict[str, str]:
    """
    Parse `key=value` strings (as given on the command line).
    """
    out: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        _require(bool(sep) and bool(key.strip()), f"expected key=value, got {item!r}")
        out[key.strip()] = value.strip()
    return out
