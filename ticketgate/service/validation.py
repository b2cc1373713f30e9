from __future__ import annotations

import re
import unicodedata
from typing import Optional

from ticketgate.service.errors import ValidationError

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def _invalid(field: str, message: str) -> ValidationError:
    return ValidationError(message, detail={"field": field})


def validate_email(value: Optional[str]) -> str:
    """Return the NFKC-normalized, lowercased address or raise ``ValidationError``."""
    if not isinstance(value, str):
        raise _invalid("email", "email is required")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise _invalid("email", "email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise _invalid("email", "invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise _invalid("email", "invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2:
        raise _invalid("email", "invalid email address format")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise _invalid("email", "invalid email address format")
    return normalized


def validate_username(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if len(value) > 64:
        raise _invalid("username", "username must be at most 64 characters")
    if not _USERNAME_PATTERN.match(value):
        raise _invalid(
            "username",
            "username must contain only alphanumeric characters, underscores, and hyphens",
        )
    return value


def validate_password(value: Optional[str], *, field: str = "password") -> str:
    if not isinstance(value, str) or len(value) < MIN_PASSWORD_LENGTH:
        raise _invalid(field, f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise _invalid(field, f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


__all__ = ["validate_email", "validate_password", "validate_username"]
