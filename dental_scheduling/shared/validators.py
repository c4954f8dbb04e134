"""Shared validation utilities"""

import re
from typing import Optional

_PHONE_SEPARATORS = re.compile(r"[\s\-().]")
_CODE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,49}$")


def validate_phone(phone: Optional[str]) -> Optional[str]:
    """
    Validate and normalize a patient phone number.

    Local numbers must be exactly 10 digits. Numbers given with a leading "+"
    are treated as E.164 and must carry 11 to 15 digits.

    Raises:
        ValueError: If phone number is invalid
    """
    if not phone:
        return phone

    compact = _PHONE_SEPARATORS.sub("", phone.strip())

    if compact.startswith("+"):
        digits = compact[1:]
        if not digits.isdigit() or not 11 <= len(digits) <= 15:
            raise ValueError("International phone numbers must have 11 to 15 digits")
        return f"+{digits}"

    if not compact.isdigit() or len(compact) != 10:
        raise ValueError("Phone number must be exactly 10 digits")

    return compact


def validate_email(email: Optional[str]) -> Optional[str]:
    """
    Validate email format.

    Returns:
        Lowercase email address

    Raises:
        ValueError: If email format is invalid
    """
    if not email:
        return email

    email = email.strip().lower()

    email_pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"

    if not re.match(email_pattern, email):
        raise ValueError("Invalid email format")

    return email


def validate_code(value: Optional[str], field: str = "code") -> Optional[str]:
    """Dentist / patient / staff codes: short, no whitespace"""
    if value is None:
        return value

    value = value.strip()
    if not _CODE_PATTERN.match(value):
        raise ValueError(f"Invalid {field}: {value!r}")
    return value


def sanitize_text(value: Optional[str], max_length: int = 500) -> Optional[str]:
    """Trim free text and drop empty strings"""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    return value[:max_length]
