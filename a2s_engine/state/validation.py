"""Value validation against declared variable types and constraints."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

from ..capability.errors import ValidationError
from ..capability.schemas.document import ValueType, VariableSpec

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_URI_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*://\S+$")


def _is_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if isinstance(value, str):
        try:
            datetime.fromisoformat(value.replace("Z", "+00:00"))
            return True
        except ValueError:
            return False
    return False


def type_matches(value: Any, declared: Optional[str]) -> bool:
    """Return whether ``value`` conforms to the declared type name.

    ``None`` (no declaration) and unknown type names match anything; the
    validator reports unknown type names separately.
    """
    if declared is None:
        return True
    try:
        vtype = ValueType(declared)
    except ValueError:
        return True
    if vtype == ValueType.string:
        return isinstance(value, str)
    if vtype == ValueType.boolean:
        return isinstance(value, bool)
    if vtype == ValueType.integer:
        return isinstance(value, int) and not isinstance(value, bool)
    if vtype == ValueType.number:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if vtype == ValueType.date:
        return _is_date(value)
    if vtype == ValueType.object:
        return isinstance(value, dict)
    return isinstance(value, (list, tuple))


def _check_format(fmt: str, value: Any) -> bool:
    if not isinstance(value, str):
        return True
    if fmt == "email":
        return bool(_EMAIL_RE.match(value))
    if fmt in ("uri", "url"):
        return bool(_URI_RE.match(value))
    if fmt in ("date", "date-time", "datetime"):
        return _is_date(value)
    if fmt == "uuid":
        try:
            UUID(value)
            return True
        except ValueError:
            return False
    return True


def validate_value(name: str, value: Any, spec: Optional[VariableSpec]) -> None:
    """Validate ``value`` against ``spec``.

    Raises:
        ValidationError: if the value fails its declared type, enum, pattern,
            range or format. Values are never coerced.
    """
    if spec is None or value is None:
        return
    if not type_matches(value, spec.type):
        raise ValidationError(f"{name}: expected {spec.type}, got {type(value).__name__}")
    if spec.enum is not None and value not in spec.enum:
        raise ValidationError(f"{name}: {value!r} is not one of {spec.enum!r}")
    if spec.pattern is not None and isinstance(value, str) and re.search(spec.pattern, value) is None:
        raise ValidationError(f"{name}: {value!r} does not match pattern {spec.pattern!r}")

    measure: Optional[float] = None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        measure = value
    elif isinstance(value, (str, list, tuple, dict)):
        measure = len(value)
    if measure is not None:
        if spec.min is not None and measure < spec.min:
            raise ValidationError(f"{name}: {value!r} is below the minimum {spec.min:g}")
        if spec.max is not None and measure > spec.max:
            raise ValidationError(f"{name}: {value!r} is above the maximum {spec.max:g}")

    if spec.format is not None and not _check_format(spec.format, value):
        raise ValidationError(f"{name}: {value!r} is not a valid {spec.format}")
