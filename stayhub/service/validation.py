from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Optional

from stayhub.service.errors import (
    InvalidEmailError,
    InvalidPasswordError,
    InvalidPhoneError,
    MissingFieldsError,
    ValidationError,
)
from stayhub.storage.models import GENDERS, UTILITIES, Address, PriceRange, Role

# Separators are mandatory inside the repeats so a failed match stays linear
EMAIL_PATTERN = re.compile(r"^\w+(?:[.-]\w+)*@\w+(?:[.-]\w+)*\.\w{2,3}$")
EMAIL_MAX_LENGTH = 254
PHONE_PATTERN = re.compile(r"^[0-9]{10}$")

PASSWORD_MIN_LENGTH = 8
PASSWORD_MIN_CLASSES = 3
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50

ADDRESS_FIELDS = ("street", "ward", "district", "city")

PASSWORD_RULE_MESSAGE = (
    "Password must be at least 8 characters and contain at least 3 of: "
    "lowercase letter, uppercase letter, digit, special character"
)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def require_fields(values: Mapping[str, Any], names: Iterable[str]) -> None:
    missing = [name for name in names if _is_blank(values.get(name))]
    if missing:
        raise MissingFieldsError(
            "Please provide all required fields", detail={"fields": missing}
        )


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_email(email: str) -> str:
    normalized = normalize_email(email)
    if len(normalized) > EMAIL_MAX_LENGTH or not EMAIL_PATTERN.match(normalized):
        raise InvalidEmailError("Invalid email format")
    return normalized


def validate_phone(phone: str) -> str:
    phone = phone.strip()
    if not PHONE_PATTERN.match(phone):
        raise InvalidPhoneError("Phone number must be exactly 10 digits")
    return phone


def password_classes(password: str) -> int:
    """Count the character classes present: lower, upper, digit, other."""
    return sum(
        (
            any(c.islower() for c in password),
            any(c.isupper() for c in password),
            any(c.isdigit() for c in password),
            any(not c.isalnum() for c in password),
        )
    )


def validate_password(password: str) -> str:
    if (
        len(password) < PASSWORD_MIN_LENGTH
        or password_classes(password) < PASSWORD_MIN_CLASSES
    ):
        raise InvalidPasswordError(PASSWORD_RULE_MESSAGE)
    return password


def validate_name(name: str) -> str:
    name = name.strip()
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise ValidationError(
            f"Name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters",
            detail={"field": "name"},
        )
    return name


def validate_address(address: Any) -> Address:
    if isinstance(address, Address):
        address = address.to_dict()
    if not isinstance(address, Mapping):
        raise MissingFieldsError(
            "Please provide complete address information",
            detail={"fields": ["address"]},
        )
    missing = [f"address.{name}" for name in ADDRESS_FIELDS if _is_blank(address.get(name))]
    if missing:
        raise MissingFieldsError(
            "Please provide complete address information", detail={"fields": missing}
        )
    return Address(**{name: str(address[name]).strip() for name in ADDRESS_FIELDS})


def validate_role(role: str) -> str:
    try:
        return Role(role).value
    except ValueError:
        raise ValidationError(
            "Invalid role", detail={"allowed": [r.value for r in Role]}
        ) from None


def validate_gender(gender: str) -> str:
    if gender not in GENDERS:
        raise ValidationError("Invalid gender", detail={"allowed": list(GENDERS)})
    return gender


def validate_utilities(utilities: Iterable[str]) -> list[str]:
    values = list(utilities)
    unknown = [u for u in values if u not in UTILITIES]
    if unknown:
        raise ValidationError(
            "Unknown utilities", detail={"unknown": unknown, "allowed": list(UTILITIES)}
        )
    # keep first occurrence order, drop repeats
    return list(dict.fromkeys(values))


def validate_price_range(value: Any) -> Optional[PriceRange]:
    if value is None:
        return None
    if isinstance(value, PriceRange):
        low, high = value.min, value.max
    elif isinstance(value, Mapping):
        low, high = value.get("min", 0), value.get("max", 0)
    else:
        raise ValidationError("Invalid price range")
    try:
        low, high = float(low), float(high)
    except (TypeError, ValueError):
        raise ValidationError("Invalid price range") from None
    if low < 0 or high < 0 or low > high:
        raise ValidationError(
            "Price range must be non-negative with min <= max",
            detail={"min": low, "max": high},
        )
    return PriceRange(min=low, max=high)
