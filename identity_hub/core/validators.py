"""Input validation helpers for account data."""
from __future__ import annotations
import re
from typing import Callable

from identity_hub.core.similarity import normalize


USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 64


def normalize_username(raw: str) -> str:
    """Normalize and validate username.

    Args:
        raw: Raw username input

    Returns:
        Normalized username

    Raises:
        ValueError: If username is invalid
    """
    normalized = "".join(char for char in raw.lower().strip() if char.isalnum() or char in {".", "-", "_"})

    if len(normalized) < USERNAME_MIN_LENGTH:
        raise ValueError(f"Username must be at least {USERNAME_MIN_LENGTH} characters")
    if len(normalized) > USERNAME_MAX_LENGTH:
        raise ValueError(f"Username must not exceed {USERNAME_MAX_LENGTH} characters")
    if normalized[0] in {".", "-", "_"} or normalized[-1] in {".", "-", "_"}:
        raise ValueError("Username cannot start or end with special characters")

    return normalized


def validate_email(email: str) -> str:
    """Validate email address.

    Args:
        email: Email address to validate

    Returns:
        Normalized email address

    Raises:
        ValueError: If email is invalid
    """
    email = email.strip().lower()
    if not email or "@" not in email:
        raise ValueError("Invalid email format")

    local, domain = email.rsplit("@", 1)
    if not local or not domain or "." not in domain:
        raise ValueError("Invalid email format")
    if len(email) > 254:
        raise ValueError("Email exceeds maximum length")

    return email


def validate_name(name: str, field: str) -> str:
    """Validate a person name field coming from the ERP or directory.

    Raises:
        ValueError: If name is empty, too long or contains markup/shell characters
    """
    name = " ".join(name.split())
    if not name:
        raise ValueError(f"{field} is required")
    if len(name) > 128:
        raise ValueError(f"{field} exceeds maximum length")

    if any(char in name for char in "<>\"`;&|$"):
        raise ValueError(f"{field} contains invalid characters")

    return name


def split_full_name(full_name: str) -> tuple[str, str]:
    """ERP full name -> (given name, surname): first token, then the rest."""
    tokens = full_name.split()
    if not tokens:
        return "", ""
    return tokens[0], " ".join(tokens[1:])


def generate_username(full_name: str, is_taken: Callable[[str], bool], discriminator: str = "") -> str:
    """``given.firstsurname`` in ASCII lowercase, with a numeric suffix on collision.

    Names too short for a username (a single "Li") get ``discriminator``
    appended, normally the ERP person id: "li" + "7" -> "li7".

    Raises:
        ValueError: Name yields no usable characters, or is too short and no discriminator was given
    """
    tokens = normalize(full_name).split()
    if not tokens:
        raise ValueError("Cannot derive a username from an empty name")
    first = tokens[0]
    surname = tokens[1] if len(tokens) > 1 else ""
    base = re.sub(r"[^a-z.]", "", f"{first}.{surname}" if surname else first)
    base = base[:USERNAME_MAX_LENGTH - 4].strip(".")
    if base and len(base) < USERNAME_MIN_LENGTH:
        base += re.sub(r"[^a-z0-9]", "", discriminator.lower())[:USERNAME_MAX_LENGTH - 4 - len(base)]
    base = normalize_username(base)

    candidate = base
    suffix = 1
    while is_taken(candidate):
        candidate = f"{base}{suffix}"
        suffix += 1
    return candidate
