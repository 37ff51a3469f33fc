"""Parsing helpers for submitted action forms."""
from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Type, TypeVar

from ..exceptions import ValidationError
from ..money import to_decimal
from .config import MAX_BULK_IDS

E = TypeVar("E", bound=Enum)

COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
_ID_SPLIT = re.compile(r"[\s,]+")
_DATETIME_FORMATS = ("%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d")


def _blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def require_text(value: Optional[str], label: str, *, min_length: int = 1, max_length: Optional[int] = None) -> str:
    cleaned = (value or "").strip()
    if len(cleaned) < min_length:
        if min_length <= 1:
            raise ValidationError(f"{label} is required")
        raise ValidationError(f"{label} must be at least {min_length} characters")
    if max_length is not None and len(cleaned) > max_length:
        raise ValidationError(f"{label} must be at most {max_length} characters")
    return cleaned


def parse_int(value: object, label: str, *, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    if _blank(value):
        raise ValidationError(f"{label} is required")
    try:
        number = int(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"{label} must be a whole number") from exc
    if minimum is not None and number < minimum:
        raise ValidationError(f"{label} must be at least {minimum}")
    if maximum is not None and number > maximum:
        raise ValidationError(f"{label} must be at most {maximum}")
    return number


def parse_optional_int(value: object, label: str, *, minimum: Optional[int] = None, maximum: Optional[int] = None) -> Optional[int]:
    if _blank(value):
        return None
    return parse_int(value, label, minimum=minimum, maximum=maximum)


def parse_id(value: object, label: str = "Id") -> int:
    return parse_int(value, label, minimum=1)


def parse_amount(value: object, label: str = "Amount", *, allow_zero: bool = False, allow_negative: bool = False) -> Decimal:
    if _blank(value):
        raise ValidationError(f"{label} is required")
    try:
        amount = to_decimal(value if isinstance(value, (Decimal, int, float)) else str(value))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{label} must be a number") from exc
    if allow_negative:
        return amount
    if allow_zero and amount < 0:
        raise ValidationError(f"{label} cannot be negative")
    if not allow_zero and amount <= 0:
        raise ValidationError(f"{label} must be positive")
    return amount


def parse_color(value: Optional[str], default: str) -> str:
    if _blank(value):
        return default
    cleaned = str(value).strip()
    if not COLOR_PATTERN.match(cleaned):
        raise ValidationError("Color must be a valid hex color")
    return cleaned


def parse_enum(enum_cls: Type[E], value: object, label: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"{label} must be one of: {allowed}") from exc


def parse_datetime(value: object, label: str) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if _blank(value):
        raise ValidationError(f"{label} is required")
    text = str(value).strip()
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ValidationError(f"{label} must be a valid date")


def parse_optional_datetime(value: object, label: str) -> Optional[datetime]:
    if _blank(value):
        return None
    return parse_datetime(value, label)


def parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if _blank(value):
        return False
    return str(value).strip().lower() in {"1", "true", "on", "yes"}


def parse_id_list(raw: object, *, limit: Optional[int] = MAX_BULK_IDS) -> List[int]:
    """Split ``raw`` on commas and whitespace into unique positive ids."""

    if isinstance(raw, (list, tuple)):
        tokens = [str(item) for item in raw]
    else:
        tokens = _ID_SPLIT.split(str(raw or "").strip())
    ids: List[int] = []
    for token in tokens:
        token = token.strip()
        if not token:
            continue
        try:
            number = int(token)
        except ValueError:
            continue
        if number > 0 and number not in ids:
            ids.append(number)
    if not ids:
        raise ValidationError("No valid ids provided")
    return ids[:limit]


def parse_tag_names(raw: Optional[str]) -> List[str]:
    names: List[str] = []
    seen: set[str] = set()
    for token in (raw or "").split(","):
        name = token.strip()
        if name and name.lower() not in seen:
            seen.add(name.lower())
            names.append(name)
    return names


__all__ = [
    "COLOR_PATTERN",
    "parse_amount",
    "parse_bool",
    "parse_color",
    "parse_datetime",
    "parse_enum",
    "parse_id",
    "parse_id_list",
    "parse_int",
    "parse_optional_datetime",
    "parse_optional_int",
    "parse_tag_names",
    "require_text",
]
