"""
Input sanitization helpers.

Cheap checks that let the pipeline drop malformed data early instead of
letting it reach the database.
"""

import re
from typing import Optional

EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
PHONE_CHARS_RE = re.compile(r"^[0-9+()\- ]+$")
CANONICAL_PHONE_RE = re.compile(r"^[0-9+]{6,20}$")
LOGICAL_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")

# Ids that stay literal strings (raw chat ids, provider message ids)
EXTERNAL_ID_RE = re.compile(r"^[A-Za-z0-9_.:@+=\-]+$")

MAX_PHONE_LENGTH = 32
MAX_EXTERNAL_ID_LENGTH = 255


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_RE.match(email) is not None


def sanitize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Return the canonical phone number (digits and '+'), or None when it is unusable.

    Input may only contain digits, '+', '(', ')', '-' and spaces, so
    "+7 (999) 123-45-67" and "+79991234567" sanitize to the same value.
    """
    if phone is None:
        return None
    value = phone.strip()
    if not value or len(value) > MAX_PHONE_LENGTH:
        return None
    if not PHONE_CHARS_RE.match(value):
        return None
    canonical = re.sub(r"[^0-9+]", "", value)
    if not CANONICAL_PHONE_RE.match(canonical):
        return None
    return canonical


def is_safe_identifier(value: Optional[str]) -> bool:
    """Non-empty, bounded length, restricted character set."""
    if not value or len(value) > MAX_EXTERNAL_ID_LENGTH:
        return False
    return EXTERNAL_ID_RE.match(value) is not None


def is_valid_logical_name(name: Optional[str]) -> bool:
    """Database names are interpolated into URLs: alphanumerics and underscore only."""
    return bool(name) and LOGICAL_NAME_RE.match(name) is not None
