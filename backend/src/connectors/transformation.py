"""
Transformation Pipeline - reshapes records between the caller's and the
external system's representation.

Rules run in declaration order over a deep copy of the record. Each
operation is a pure function of (record, rule parameters); nothing here
performs I/O. A `filter` rule that rejects the record makes `apply` return
the FILTERED sentinel instead of a record.

Inbound rules are every rule whose shape is not `object`; they run on the
caller's input. Outbound rules (shape `object`) run on the transport
response record `{"status": ..., "data": ...}`.
"""

import copy
import logging
import math
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from .conditions import all_match
from .definitions import Condition, TransformationRule
from .errors import ExpressionError, TransformationFailed
from .expression import evaluate, referenced_names
from .paths import delete_path, get_path, has_path, set_path


logger = logging.getLogger(__name__)

CustomHandler = Callable[[dict, dict], dict]


class _Filtered:
    """Sentinel returned when a filter rule drops the record."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "FILTERED"

    def __bool__(self) -> bool:
        return False


FILTERED = _Filtered()


class ConversionError(ValueError):
    pass


# ---------------------------------------------------------------------------
# Value coercions
# ---------------------------------------------------------------------------

_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}
_FALSE_STRINGS = {"false", "0", "no", "n", "off", ""}

_LENIENT_DEFAULTS = {
    "number": 0,
    "integer": 0,
    "boolean": False,
    "date": "",
    "string": "",
}


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ConversionError(f"Cannot convert boolean {value!r} to number")
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            raise ConversionError(f"Cannot convert {value!r} to number")
    else:
        raise ConversionError(f"Cannot convert {type(value).__name__} to number")

    if not math.isfinite(result):
        raise ConversionError(f"Cannot convert {value!r} to a finite number")
    return result


def _to_integer(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    return int(_to_number(value))


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ConversionError(f"Cannot convert {value!r} to boolean")


def _to_iso_date(value: Any) -> str:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch milliseconds
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ConversionError(f"Timestamp out of range: {value!r}")
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            raise ConversionError(f"Cannot parse {value!r} as an ISO-8601 date")
    else:
        raise ConversionError(f"Cannot convert {type(value).__name__} to date")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


_CONVERTERS: dict[str, Callable[[Any], Any]] = {
    "number": _to_number,
    "integer": _to_integer,
    "boolean": _to_boolean,
    "date": _to_iso_date,
    "string": _to_string,
}

_STRING_TRANSFORMS: dict[str, Callable[[str], str]] = {
    "uppercase": str.upper,
    "lowercase": str.lower,
    "trim": str.strip,
}

VALUE_TRANSFORMS = tuple(sorted([*_CONVERTERS, *_STRING_TRANSFORMS]))


def convert_value(value: Any, target_type: str, strict: bool = True) -> Any:
    """Coerce a value to `number`, `integer`, `boolean`, `date` or `string`.

    Args:
        value: Value to coerce
        target_type: Target type name
        strict: Raise ConversionError on invalid input. When False, invalid
            input yields the type's zero value (0, False, "") instead.

    Raises:
        ConversionError: If strict and the value cannot be converted, or the
            target type is unknown
    """
    converter = _CONVERTERS.get(target_type)
    if converter is None:
        raise ConversionError(f"Unknown target type '{target_type}'")
    try:
        return converter(value)
    except ConversionError:
        if strict:
            raise
        logger.debug(f"Lenient conversion of {type(value).__name__} to {target_type} defaulted")
        return _LENIENT_DEFAULTS[target_type]


def apply_value_transform(name: str, value: Any, strict: bool = True) -> Any:
    """Apply a named value transformation (used by data mapping rules)."""
    if name in _STRING_TRANSFORMS:
        if not isinstance(value, str):
            if strict:
                raise ConversionError(f"'{name}' requires a string, got {type(value).__name__}")
            return value
        return _STRING_TRANSFORMS[name](value)
    return convert_value(value, name, strict)


# ---------------------------------------------------------------------------
# Rule selection
# ---------------------------------------------------------------------------

def inbound_rules(rules: Iterable[TransformationRule]) -> list[TransformationRule]:
    return [rule for rule in rules if rule.type != "object"]


def outbound_rules(rules: Iterable[TransformationRule]) -> list[TransformationRule]:
    return [rule for rule in rules if rule.type == "object"]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TransformationPipeline:
    """
    Applies transformation rules to data records.

    Usage:
        pipeline = TransformationPipeline()
        pipeline.register_handler("flag_urgent", flag_urgent)
        result = pipeline.apply({"heartRate": 72}, definition.transformations)
        if result is FILTERED:
            ...

    Custom handlers must be pure functions `(record, parameters) -> record`.
    """

    def __init__(self, strict_conversions: bool = True, handlers: Optional[dict[str, CustomHandler]] = None):
        self.strict_conversions = strict_conversions
        self._handlers: dict[str, CustomHandler] = dict(handlers or {})
        self._operations: dict[str, Callable[[dict, TransformationRule], Any]] = {
            "map": self._map,
            "convert": self._convert,
            "calculate": self._calculate,
            "filter": self._filter,
            "aggregate": self._aggregate,
            "split": self._split,
            "merge": self._merge,
            "custom": self._custom,
        }

    def register_handler(self, name: str, handler: CustomHandler) -> None:
        if not name or not name.strip():
            raise ValueError("handler name cannot be empty")
        self._handlers[name] = handler

    def apply(self, record: Any, rules: Iterable[TransformationRule]) -> Any:
        """Run rules in order over a copy of `record`.

        Returns:
            The transformed record, or FILTERED if a filter rule dropped it

        Raises:
            TransformationFailed: If a rule cannot be applied
        """
        rules = list(rules)
        working = copy.deepcopy(record)
        if not rules:
            return working

        if not isinstance(working, dict):
            raise TransformationFailed(rules[0].id, "record must be an object")

        for rule in rules:
            if not rule.enabled:
                logger.debug(f"Skipping disabled transformation '{rule.id}'")
                continue
            if rule.conditions and not all_match(working, rule.conditions):
                logger.debug(f"Transformation '{rule.id}' conditions not met, skipping")
                continue

            working = self.apply_rule(working, rule)
            if working is FILTERED:
                logger.info(f"Record filtered by transformation '{rule.id}'")
                return FILTERED

        return working

    def apply_rule(self, record: dict, rule: TransformationRule) -> Any:
        operation = self._operations.get(rule.operation)
        if operation is None:
            raise TransformationFailed(rule.id, f"unsupported operation '{rule.operation}'")
        try:
            return operation(record, rule)
        except TransformationFailed:
            raise
        except Exception as e:
            raise TransformationFailed(rule.id, str(e))

    # -- operations ---------------------------------------------------------

    def _map(self, record: dict, rule: TransformationRule) -> dict:
        source = rule.parameters.get("sourceField") or rule.source
        target = rule.parameters.get("targetField") or rule.target
        if not source or not target:
            raise TransformationFailed(rule.id, "map requires a source and a target")

        if has_path(record, source):
            value = get_path(record, source)
            if source != target:
                delete_path(record, source)
            set_path(record, target, value)
        return record

    def _convert(self, record: dict, rule: TransformationRule) -> dict:
        target_type = rule.parameters.get("targetType") or rule.parameters.get("target_type")
        if not has_path(record, rule.source):
            return record

        try:
            converted = convert_value(get_path(record, rule.source), target_type, self.strict_conversions)
        except ConversionError as e:
            if self.strict_conversions:
                raise TransformationFailed(rule.id, str(e))
            logger.warning(f"Transformation '{rule.id}' left '{rule.source}' unchanged: {e}")
            return record

        set_path(record, rule.source, converted)
        return record

    def _calculate(self, record: dict, rule: TransformationRule) -> dict:
        formula = rule.parameters.get("formula", "")
        target = rule.target or rule.source
        variables = rule.parameters.get("variables")

        try:
            if not variables:
                variables = {name: name for name in referenced_names(formula)}

            values = {}
            for name, path in variables.items():
                if not has_path(record, path):
                    logger.debug(f"Transformation '{rule.id}' skipped: '{path}' not present")
                    return record
                values[name] = _as_operand(get_path(record, path))

            result = evaluate(formula, values)
        except ExpressionError as e:
            logger.warning(
                f"Formula evaluation failed for transformation '{rule.id}', defaulting to 0: {e}",
                extra={"rule_id": rule.id},
            )
            result = 0

        set_path(record, target, result)
        return record

    def _filter(self, record: dict, rule: TransformationRule) -> Any:
        try:
            conditions = [Condition.model_validate(c) for c in rule.parameters.get("conditions", [])]
        except ValidationError as e:
            raise TransformationFailed(rule.id, f"invalid filter conditions: {e.error_count()} errors")

        if not all_match(record, conditions):
            return FILTERED
        return record

    def _aggregate(self, record: dict, rule: TransformationRule) -> dict:
        if not has_path(record, rule.source):
            return record
        items = get_path(record, rule.source)
        if not isinstance(items, list):
            raise TransformationFailed(rule.id, f"'{rule.source}' is not a list")

        function = rule.parameters.get("function", "sum")
        field = rule.parameters.get("field")
        values = [get_path(item, field) if field else item for item in items]
        values = [value for value in values if value is not None]

        if function == "count":
            result = len(values)
        else:
            numbers = [_as_operand(value) for value in values]
            if function == "sum":
                result = sum(numbers)
            elif function == "avg":
                result = sum(numbers) / len(numbers) if numbers else 0
            elif function == "min":
                result = min(numbers) if numbers else None
            elif function == "max":
                result = max(numbers) if numbers else None
            else:
                raise TransformationFailed(rule.id, f"unknown aggregate function '{function}'")

        set_path(record, rule.target or rule.source, result)
        return record

    def _split(self, record: dict, rule: TransformationRule) -> dict:
        if not has_path(record, rule.source):
            return record
        value = get_path(record, rule.source)
        if not isinstance(value, str):
            raise TransformationFailed(rule.id, f"'{rule.source}' is not a string")

        separator = rule.parameters.get("separator", ",")
        parts = value.split(separator)
        if rule.parameters.get("trim", True):
            parts = [part.strip() for part in parts]

        targets = rule.parameters.get("targets")
        if targets:
            for index, target in enumerate(targets):
                set_path(record, target, parts[index] if index < len(parts) else None)
        else:
            set_path(record, rule.target or rule.source, parts)

        if rule.parameters.get("removeSource") and rule.source not in (targets or [rule.target]):
            delete_path(record, rule.source)
        return record

    def _merge(self, record: dict, rule: TransformationRule) -> dict:
        fields = rule.parameters.get("fields") or ([rule.source] if rule.source else [])
        present = [get_path(record, field) for field in fields if has_path(record, field)]
        if not present:
            return record

        if all(isinstance(value, dict) for value in present):
            merged: Any = {}
            for value in present:
                merged.update(value)
        else:
            separator = rule.parameters.get("separator", " ")
            merged = separator.join(str(value) for value in present if value is not None)

        if not rule.target:
            raise TransformationFailed(rule.id, "merge requires a target")
        set_path(record, rule.target, merged)
        return record

    def _custom(self, record: dict, rule: TransformationRule) -> Any:
        name = rule.parameters.get("handler")
        handler = self._handlers.get(name) if name else None
        if handler is None:
            raise TransformationFailed(rule.id, f"no custom handler registered as '{name}'")

        result = handler(copy.deepcopy(record), dict(rule.parameters))
        if result is FILTERED:
            return FILTERED
        if not isinstance(result, dict):
            raise TransformationFailed(rule.id, f"handler '{name}' must return a record")
        return result


def _as_operand(value: Any) -> Any:
    """Numeric strings are accepted as formula operands."""
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            raise ExpressionError(f"Value {value!r} is not numeric")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ExpressionError(f"Value {value!r} is not numeric")
    return value
