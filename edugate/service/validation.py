from __future__ import annotations

import re
import unicodedata

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
NAME_MAX_LENGTH = 100


def normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES)
    return unicodedata.normalize("NFKC", cleaned)


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def validate_password_strength(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("password must be a string")
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    return value


def validate_name(value: str, field: str = "name") -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field} must be a string")
    cleaned = normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError(f"{field} is required")
    if len(cleaned) > NAME_MAX_LENGTH:
        raise ValueError(f"{field} must be at most {NAME_MAX_LENGTH} characters")
    return cleaned


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", normalize_unicode(value).lower()).strip("-")
