"""Directory entry mapping and attribute encoding helpers."""
from __future__ import annotations
import re
from typing import Any, Iterable, Mapping

from identity_hub.core.models import DirectoryIdentity


PERSON_ATTRIBUTES = [
    "sAMAccountName",
    "mail",
    "givenName",
    "sn",
    "displayName",
    "department",
    "physicalDeliveryOfficeName",
    "title",
    "memberOf",
]

_CN_PATTERN = re.compile(r"^CN=([^,]+)", re.IGNORECASE)


def first_value(value: Any) -> str:
    """Single-valued view of an attribute (ldap3 returns lists without schema info)."""
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return str(value[0]).strip() if value else ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace").strip()
    return str(value).strip()


def all_values(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item]
    return [str(value)] if value else []


def group_name_from_dn(dn: str) -> str:
    """``CN=Finance,OU=Groups,DC=corp`` -> ``Finance``; other DNs are returned unchanged."""
    match = _CN_PATTERN.match(dn.strip())
    return match.group(1) if match else dn


def identity_from_attributes(
    attributes: Mapping[str, Any],
    *,
    fallback_username: str = "",
    email_domain: str = "",
) -> DirectoryIdentity:
    """Build a DirectoryIdentity from a search result attribute map.

    Missing ``mail`` becomes ``username@email_domain``; missing ``displayName``
    falls back to the username.
    """
    username = first_value(attributes.get("sAMAccountName")) or fallback_username
    email = first_value(attributes.get("mail"))
    if not email and username and email_domain:
        email = f"{username}@{email_domain}"
    return DirectoryIdentity(
        username=username,
        email=email.lower(),
        given_name=first_value(attributes.get("givenName")),
        surname=first_value(attributes.get("sn")),
        display_name=first_value(attributes.get("displayName")) or username,
        department=first_value(attributes.get("department")),
        office=first_value(attributes.get("physicalDeliveryOfficeName")),
        title=first_value(attributes.get("title")),
        groups=tuple(group_name_from_dn(dn) for dn in all_values(attributes.get("memberOf"))),
    )


def identities_from_response(response: Iterable[Mapping[str, Any]] | None, *, email_domain: str = "") -> list[DirectoryIdentity]:
    """Keep search result entries (skip referrals) that carry a username."""
    identities = []
    for item in response or []:
        if item.get("type") != "searchResEntry":
            continue
        identity = identity_from_attributes(item.get("attributes") or {}, email_domain=email_domain)
        if identity.username:
            identities.append(identity)
    return identities


def user_principal_name(username: str, upn_suffix: str) -> str:
    return f"{username}@{upn_suffix}" if upn_suffix else username


def down_level_logon_name(username: str, domain: str) -> str:
    return f"{domain}\\{username}" if domain else username


def encode_directory_password(password: str) -> bytes:
    """Directory password attribute value: the quoted password in UTF-16LE."""
    return f'"{password}"'.encode("utf-16-le")
