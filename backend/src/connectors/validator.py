"""Input and configuration validation against connector declarations."""

import logging
import re
from datetime import date, datetime
from typing import Any, Callable, Mapping, Optional

from .definitions import EndpointDefinition, EndpointParameter, ValidationSpec
from .errors import ConfigurationInvalid, ValidationFailed
from .paths import get_path


logger = logging.getLogger(__name__)

BODY_FIELD = "body"


def is_missing(value: Any) -> bool:
    """Absent, None and empty-string values all count as missing."""
    return value is None or value == ""


def _is_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if isinstance(value, str):
        try:
            datetime.fromisoformat(value)
            return True
        except ValueError:
            return False
    return False


_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "date": _is_date,
    "array": lambda v: isinstance(v, (list, tuple)),
    "object": lambda v: isinstance(v, dict),
}


def check_type(value: Any, type_name: str) -> bool:
    check = _TYPE_CHECKS.get(type_name)
    if check is None:
        logger.warning(f"Unknown data type '{type_name}' accepted without checking")
        return True
    return check(value)


def _measure(value: Any) -> Optional[float]:
    """Numbers compare by value, strings and lists by length."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, (str, list, tuple)):
        return len(value)
    return None


def _check_spec(record: Mapping[str, Any], spec: ValidationSpec) -> Optional[tuple[str, str]]:
    """Return (field, reason) for the first violation, or None."""
    for name in spec.required:
        if is_missing(get_path(record, name)):
            return name, f"Required field missing: {name}"

    for name, type_name in spec.data_types.items():
        value = get_path(record, name)
        if not is_missing(value) and not check_type(value, type_name):
            return name, f"Field '{name}' must be of type {type_name}"

    for name, bounds in spec.ranges.items():
        value = get_path(record, name)
        if is_missing(value):
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return name, f"Field '{name}' must be numeric"
        if value < bounds.min or value > bounds.max:
            return name, f"Field '{name}' must be between {bounds.min} and {bounds.max}"

    for name, pattern in spec.patterns.items():
        value = get_path(record, name)
        if not is_missing(value) and not re.search(pattern, str(value)):
            return name, f"Field '{name}' does not match pattern {pattern}"

    return None


class InputValidator:
    """
    Checks call input against an endpoint's declared parameters and body.

    Input is a flat mapping of parameter name to value; the request body,
    when the endpoint declares one, is carried under the "body" key.
    Validation stops at the first failure.
    """

    def validate(self, input: Mapping[str, Any], endpoint: EndpointDefinition) -> None:
        """
        Raises:
            ValidationFailed: Naming the first offending field
        """
        for parameter in endpoint.parameters:
            value = input.get(parameter.name)
            if is_missing(value):
                if parameter.required:
                    raise ValidationFailed(parameter.name)
                continue
            self._check_parameter(parameter, value)

        body_spec = endpoint.request_body
        if body_spec is None:
            return

        body = input.get(BODY_FIELD)
        if is_missing(body):
            if body_spec.required:
                raise ValidationFailed(BODY_FIELD, "Request body is required")
            return

        if isinstance(body, Mapping):
            violation = _check_spec(body, body_spec.validation)
            if violation:
                field, reason = violation
                raise ValidationFailed(f"{BODY_FIELD}.{field}", reason)

    def _check_parameter(self, parameter: EndpointParameter, value: Any) -> None:
        name = parameter.name
        if not check_type(value, parameter.type):
            raise ValidationFailed(name, f"Parameter '{name}' must be of type {parameter.type}")

        constraints = parameter.validation
        if constraints is None:
            return

        if constraints.enum is not None and value not in constraints.enum:
            allowed = ", ".join(str(option) for option in constraints.enum)
            raise ValidationFailed(name, f"Parameter '{name}' must be one of: {allowed}")

        measure = _measure(value)
        if constraints.min is not None and measure is not None and measure < constraints.min:
            raise ValidationFailed(name, f"Parameter '{name}' is below minimum {constraints.min}")
        if constraints.max is not None and measure is not None and measure > constraints.max:
            raise ValidationFailed(name, f"Parameter '{name}' exceeds maximum {constraints.max}")

        if constraints.pattern and not re.search(constraints.pattern, str(value)):
            raise ValidationFailed(name, f"Parameter '{name}' does not match pattern {constraints.pattern}")


def validate_configuration(spec: ValidationSpec, configuration: Mapping[str, Any]) -> None:
    """Check an instance configuration against a connector's ValidationSpec.

    Raises:
        ConfigurationInvalid: On the first violation
    """
    if not isinstance(configuration, Mapping):
        raise ConfigurationInvalid("Configuration must be a mapping")
    violation = _check_spec(configuration, spec)
    if violation:
        raise ConfigurationInvalid(f"Invalid configuration: {violation[1]}")
