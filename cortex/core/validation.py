"""Input validation for cortex.

Standalone sanitizers used by the engine at its boundary, plus the
``InputValidationMixin`` instance helpers. Every failure raises
:class:`~cortex.protocols.ValidationFailure` (a ``ValueError``), before
anything is persisted.

- ``sanitize_string``: string validation + control-char stripping
- ``sanitize_number``: numeric validation + NaN/Infinity rejection
- ``sanitize_list``: list validation + null-item rejection
"""

import logging
import math
import re
from typing import Any, List, Optional

from cortex.protocols import ValidationFailure

logger = logging.getLogger(__name__)

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_string(
    value: Any, field_name: str, max_length: int = 1000, required: bool = True
) -> str:
    """Sanitize and validate string inputs.

    Args:
        value: The value to sanitize.
        field_name: Name of the field for error messages.
        max_length: Maximum allowed string length.
        required: If True, empty strings are rejected.

    Returns:
        Sanitized string.

    Raises:
        ValidationFailure: If validation fails.
    """
    if value is None and not required:
        return ""

    if not isinstance(value, str):
        raise ValidationFailure(
            f"{field_name} must be a string, got {type(value).__name__}", field=field_name
        )

    if required and not value.strip():
        raise ValidationFailure(f"{field_name} cannot be empty", field=field_name)

    if len(value) > max_length:
        raise ValidationFailure(
            f"{field_name} too long (max {max_length} characters, got {len(value)})",
            field=field_name,
        )

    # Remove null bytes and control characters except newlines and tabs
    return _CONTROL_CHARS_RE.sub("", value)


def sanitize_number(
    value: Any,
    field_name: str,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
    default: Optional[float] = None,
) -> float:
    """Validate numeric inputs, rejecting NaN and Infinity.

    Raises:
        ValidationFailure: If validation fails.
    """
    if value is None:
        if default is not None:
            return default
        raise ValidationFailure(f"{field_name} is required", field=field_name)

    if isinstance(value, bool):
        raise ValidationFailure(f"{field_name} must be a number, got bool", field=field_name)

    if not isinstance(value, (int, float)):
        raise ValidationFailure(
            f"{field_name} must be a number, got {type(value).__name__}", field=field_name
        )

    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        raise ValidationFailure(f"{field_name} must be a finite number, got {value}", field=field_name)

    if min_val is not None and value < min_val:
        raise ValidationFailure(f"{field_name} must be >= {min_val}, got {value}", field=field_name)

    if max_val is not None and value > max_val:
        raise ValidationFailure(f"{field_name} must be <= {max_val}, got {value}", field=field_name)

    return float(value)


def sanitize_list(
    value: Any,
    field_name: str,
    item_max_length: int = 500,
    max_items: int = 100,
) -> List[str]:
    """Validate and sanitize a list of strings.

    Accepts lists, tuples and sets (sets are sorted). Empty items are
    dropped.

    Raises:
        ValidationFailure: If validation fails.
    """
    if value is None:
        return []

    if isinstance(value, (set, frozenset)):
        value = sorted(value, key=str)
    elif isinstance(value, tuple):
        value = list(value)

    if not isinstance(value, list):
        raise ValidationFailure(
            f"{field_name} must be a list, got {type(value).__name__}", field=field_name
        )

    if len(value) > max_items:
        raise ValidationFailure(
            f"{field_name} too many items (max {max_items}, got {len(value)})", field=field_name
        )

    if any(item is None for item in value):
        raise ValidationFailure(f"{field_name} must not contain null items", field=field_name)

    sanitized = []
    for i, item in enumerate(value):
        sanitized_item = sanitize_string(item, f"{field_name}[{i}]", item_max_length, required=False)
        if sanitized_item.strip():
            sanitized.append(sanitized_item.strip())

    return sanitized


class InputValidationMixin:
    """Input validation helpers for the engine."""

    def _validate_stack_id(self, stack_id: str) -> str:
        """Validate and sanitize the stack id used in log lines.

        Rejects path traversal attempts before sanitizing.
        """
        if not stack_id or not stack_id.strip():
            raise ValidationFailure("Stack ID cannot be empty", field="stack_id")

        stripped = stack_id.strip()

        if "/" in stripped or "\\" in stripped:
            raise ValidationFailure("Stack ID must not contain path separators", field="stack_id")
        if stripped in (".", "..") or ".." in stripped.split("."):
            raise ValidationFailure(
                "Stack ID must not contain path traversal sequences", field="stack_id"
            )

        sanitized = "".join(c for c in stripped if c.isalnum() or c in "-_.")

        if not sanitized:
            raise ValidationFailure(
                "Stack ID must contain alphanumeric characters", field="stack_id"
            )

        if len(sanitized) > 100:
            raise ValidationFailure("Stack ID too long (max 100 characters)", field="stack_id")

        return sanitized

    def _validate_memory_id(self, memory_id: Any) -> str:
        return sanitize_string(memory_id, "memory_id", 100)
