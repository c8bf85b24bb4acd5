"""Input parsing shared by the fulfillment services and views."""
from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime


def parse_int(
    value: Any,
    field_name: str,
    errors: Dict[str, str],
    minimum: Optional[int] = None,
    maximum: Optional[int] = None,
) -> Optional[int]:
    if isinstance(value, bool) or isinstance(value, float):
        errors[field_name] = "Must be an integer."
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or not re.fullmatch(r"[+-]?\d+", stripped):
            errors[field_name] = "Must be an integer."
            return None
        value = stripped
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        errors[field_name] = "Must be an integer."
        return None
    if minimum is not None and parsed < minimum:
        errors[field_name] = f"Must be at least {minimum}."
        return None
    if maximum is not None and parsed > maximum:
        errors[field_name] = f"Must be at most {maximum}."
        return None
    return parsed


def parse_positive_int(value: Any, field_name: str, errors: Dict[str, str]) -> Optional[int]:
    if value is None:
        errors[field_name] = "This field is required."
        return None
    parsed = parse_int(value, field_name, errors)
    if parsed is not None and parsed <= 0:
        errors[field_name] = "Must be a positive integer."
        return None
    return parsed


def parse_decimal(
    value: Any,
    field_name: str,
    errors: Dict[str, str],
    positive: bool = False,
    allow_zero: bool = True,
    decimal_places: Optional[int] = None,
) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None or value == "":
        errors[field_name] = "Must be a number."
        return None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        errors[field_name] = "Must be a number."
        return None
    if not parsed.is_finite():
        errors[field_name] = "Must be a number."
        return None
    if decimal_places is not None and parsed.normalize().as_tuple().exponent < -decimal_places:
        errors[field_name] = f"Must have at most {decimal_places} decimal places."
        return None
    if positive and parsed <= 0:
        errors[field_name] = "Must be greater than 0."
        return None
    if not allow_zero and parsed == 0:
        errors[field_name] = "Must not be 0."
        return None
    if parsed < 0:
        errors[field_name] = "Must not be negative."
        return None
    return parsed


def require_text(value: Any, field_name: str, errors: Dict[str, str], max_length: int = 255) -> str:
    text = str(value or "").strip()
    if not text:
        errors[field_name] = "This field is required."
    elif len(text) > max_length:
        errors[field_name] = f"Must be at most {max_length} characters."
    return text


def optional_text(value: Any, max_length: int = 255) -> Optional[str]:
    text = str(value or "").strip()
    return text[:max_length] if text else None


def parse_optional_date(value: Any, field_name: str, errors: Dict[str, str]) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = parse_date(str(value))
    if parsed is None:
        parsed_dt = parse_datetime(str(value))
        parsed = parsed_dt.date() if parsed_dt else None
    if parsed is None:
        errors[field_name] = "Must be an ISO date."
    return parsed


def parse_optional_datetime(value: Any, field_name: str, errors: Dict[str, str]) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = parse_datetime(str(value))
        if parsed is None:
            parsed_date = parse_date(str(value))
            if parsed_date is not None:
                parsed = datetime.combine(parsed_date, datetime.min.time())
    if parsed is None:
        errors[field_name] = "Must be an ISO datetime."
        return None
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed
