"""
Enum Utilities for VARCHAR-based Status Fields

• Database: VARCHAR(20) - NOT PostgreSQL ENUM
• SQLAlchemy: String(20) with Mapped[str]
• Pydantic: Python Enum for API validation
• Case: All enum values stored in UPPERCASE

INPUT (API Request):
    Pydantic Enum → .value → String → Database
    Example: PayoutStatus.DRAFT → "DRAFT" → VARCHAR

OUTPUT (API Response):
    Database → String → Return directly
"""

from enum import Enum
from typing import Any, Optional, Set, Type


def get_enum_value(value: Any) -> Optional[str]:
    """
    Safely get string value from an enum or string.

    Examples:
        >>> get_enum_value(PayoutStatus.DRAFT)
        'DRAFT'
        >>> get_enum_value("DRAFT")
        'DRAFT'
        >>> get_enum_value(None)
        None
    """
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    return str(value)


def enum_values(enum_class: Type[Enum]) -> list:
    return [e.value for e in enum_class]


def enum_comment(enum_class: Type[Enum]) -> str:
    """
    Generate a comment string for a VARCHAR column.

    Examples:
        >>> enum_comment(LinkStatus)
        'ACTIVE, EXPIRED, REVOKED'
    """
    return ", ".join(enum_values(enum_class))


def normalize_to_uppercase(value: Any, valid_values: Set[str]) -> Any:
    """
    Normalize a string value to UPPERCASE if it's a valid enum value.

    Invalid values are returned as-is so Pydantic raises the validation error.
    """
    if value is None:
        return value
    if isinstance(value, str):
        upper_v = value.upper()
        if upper_v in valid_values:
            return upper_v
    return value


# =============================================================================
# VALID VALUE SETS
# =============================================================================

VALID_PARTNER_STATUSES = {"ACTIVE", "INACTIVE", "SUSPENDED"}

VALID_CAFE_STATUSES = {"ACTIVE", "INACTIVE"}

