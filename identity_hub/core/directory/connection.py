"""ldap3 connection handling for the enterprise directory.

``DirectoryConnector.session`` is the only way code in this package talks to
the directory: it opens, secures and binds a connection, and always unbinds it
on exit, whatever happened inside the block.
"""
from __future__ import annotations
import logging
import ssl
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

import ldap3
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from identity_hub.config.settings import DirectorySettings
from identity_hub.core.directory.entries import (
    PERSON_ATTRIBUTES,
    encode_directory_password,
    identities_from_response,
    identity_from_attributes,
)
from identity_hub.core.errors import AuthFailed, ConnectionUnavailable, DirectoryTimeout, PolicyRejected
from identity_hub.core.models import DirectoryIdentity

logger = logging.getLogger(__name__)

PLAIN = "plain"
LDAPS = "ldaps"
STARTTLS = "starttls"

# LDAP result codes (RFC 4511) the client reacts to
RESULT_SUCCESS = 0
RESULT_TIME_LIMIT_EXCEEDED = 3
RESULT_SIZE_LIMIT_EXCEEDED = 4
RESULT_CONFIDENTIALITY_REQUIRED = 13
RESULT_CONSTRAINT_VIOLATION = 19
RESULT_NO_SUCH_OBJECT = 32
RESULT_INAPPROPRIATE_AUTHENTICATION = 48
RESULT_INVALID_CREDENTIALS = 49

PEOPLE_FILTER = (
    "(&(objectCategory=person)(objectClass=user)(sAMAccountName=*)"
    "(!(userAccountControl:1.2.840.113556.1.4.803:=2)))"
)


class DirectorySession:
    """Bound connection wrapper exposing the handful of operations the engine needs."""

    def __init__(self, connection: Any, settings: DirectorySettings):
        self.connection = connection
        self.settings = settings

    def find_entry(self, username: str) -> Optional[dict]:
        """Raw search result entry for ``username`` or None."""
        search_filter = f"(sAMAccountName={escape_filter_chars(username)})"
        self._search(search_filter, size_limit=1, time_limit=int(self.settings.auth_timeout) or 5)
        for item in self.connection.response or []:
            if item.get("type") == "searchResEntry":
                return item
        return None

    def find_identity(self, username: str) -> Optional[DirectoryIdentity]:
        entry = self.find_entry(username)
        if entry is None:
            return None
        return identity_from_attributes(
            entry.get("attributes") or {},
            fallback_username=username,
            email_domain=self.settings.email_domain,
        )

    def find_dn(self, username: str) -> Optional[str]:
        entry = self.find_entry(username)
        return entry.get("dn") if entry else None

    def search_people(self) -> list[DirectoryIdentity]:
        """All enabled person entries under the base DN, capped at ``size_limit``."""
        self._search(
            PEOPLE_FILTER,
            size_limit=self.settings.size_limit,
            time_limit=int(self.settings.search_timeout) or 15,
        )
        return identities_from_response(self.connection.response, email_domain=self.settings.email_domain)

    def modify_password(self, user_dn: str, new_password: str, old_password: Optional[str] = None) -> None:
        """Write a new password.

        With ``old_password`` the change is a user-initiated delete/add of the
        password attribute; without it, an administrative replace.

        Raises:
            PolicyRejected: The directory refused the value (history/complexity)
            ConnectionUnavailable: Any other refusal; the next mechanism may work
        """
        new_value = encode_directory_password(new_password)
        if old_password is None:
            changes = {"unicodePwd": [(ldap3.MODIFY_REPLACE, [new_value])]}
        else:
            changes = {"unicodePwd": [
                (ldap3.MODIFY_DELETE, [encode_directory_password(old_password)]),
                (ldap3.MODIFY_ADD, [new_value]),
            ]}

        try:
            ok = self.connection.modify(user_dn, changes)
        except LDAPException as exc:
            raise ConnectionUnavailable(f"password modify failed: {type(exc).__name__}") from exc

        if ok:
            return
        result = self.connection.result or {}
        code = result.get("result")
        if code == RESULT_CONSTRAINT_VIOLATION:
            raise PolicyRejected(["The directory rejected the new password (complexity or history rules)"])
        raise ConnectionUnavailable(f"password modify refused: {result.get('description', code)}")

    def _search(self, search_filter: str, *, size_limit: int, time_limit: int) -> None:
        try:
            self.connection.search(
                search_base=self.settings.base_dn,
                search_filter=search_filter,
                search_scope=ldap3.SUBTREE,
                attributes=PERSON_ATTRIBUTES,
                size_limit=size_limit,
                time_limit=time_limit,
            )
        except LDAPException as exc:
            raise ConnectionUnavailable(f"search failed: {type(exc).__name__}") from exc

        result = self.connection.result or {}
        code = result.get("result", RESULT_SUCCESS)
        if code in (RESULT_SUCCESS, RESULT_NO_SUCH_OBJECT):
            return
        if code == RESULT_SIZE_LIMIT_EXCEEDED:
            logger.warning("Directory search truncated at %d entries", size_limit)
            return
        if code == RESULT_TIME_LIMIT_EXCEEDED:
            raise DirectoryTimeout(f"search exceeded server time limit of {time_limit}s")
        raise ConnectionUnavailable(f"search refused: {result.get('description', code)}")


class DirectoryConnector:
    """Build ldap3 connections for a named transport and bind them.

    Args:
        settings: Directory host, ports and TLS options
        connection_factory: ``ldap3.Connection`` (replaceable in tests)
        server_factory: ``ldap3.Server`` (replaceable in tests)
    """

    def __init__(
        self,
        settings: DirectorySettings,
        connection_factory: Callable[..., Any] = ldap3.Connection,
        server_factory: Callable[..., Any] = ldap3.Server,
    ):
        self.settings = settings
        self._connection_factory = connection_factory
        self._server_factory = server_factory

    def server_for(self, transport: str, timeout: float) -> Any:
        if transport not in (PLAIN, LDAPS, STARTTLS):
            raise ValueError(f"Unknown directory transport: {transport}")
        use_ssl = transport == LDAPS
        tls = None
        if transport in (LDAPS, STARTTLS):
            tls = ldap3.Tls(validate=ssl.CERT_REQUIRED if self.settings.tls_verify else ssl.CERT_NONE)
        return self._server_factory(
            self.settings.host,
            port=self.settings.tls_port if use_ssl else self.settings.port,
            use_ssl=use_ssl,
            tls=tls,
            get_info=ldap3.NONE,
            connect_timeout=max(1, int(timeout)),
        )

    @contextmanager
    def session(
        self,
        transport: str,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 5.0,
    ) -> Iterator[DirectorySession]:
        """Open, secure and bind a connection; always unbind on exit.

        Raises:
            AuthFailed: The server rejected the bind credentials
            ConnectionUnavailable: Socket, TLS or server-side availability failure
        """
        server = self.server_for(transport, timeout)
        connection = self._connection_factory(
            server,
            user=user,
            password=password,
            authentication=ldap3.SIMPLE if user else ldap3.ANONYMOUS,
            auto_bind=ldap3.AUTO_BIND_NONE,
            receive_timeout=max(1, int(timeout)),
            raise_exceptions=False,
        )
        try:
            self._open_and_bind(connection, transport)
            yield DirectorySession(connection, self.settings)
        finally:
            _release(connection)

    def _open_and_bind(self, connection: Any, transport: str) -> None:
        try:
            connection.open()
            if transport == STARTTLS and not connection.start_tls():
                raise ConnectionUnavailable("StartTLS upgrade was refused by the server")
            bound = connection.bind()
        except LDAPException as exc:
            raise ConnectionUnavailable(f"{transport} connection failed: {type(exc).__name__}") from exc
        except OSError as exc:
            raise ConnectionUnavailable(f"{transport} connection failed: {exc.__class__.__name__}") from exc

        if bound:
            return
        result = connection.result or {}
        code = result.get("result")
        if code in (RESULT_INVALID_CREDENTIALS, RESULT_INAPPROPRIATE_AUTHENTICATION):
            raise AuthFailed("directory rejected the bind credentials")
        if code == RESULT_CONFIDENTIALITY_REQUIRED:
            raise ConnectionUnavailable(f"{transport} transport is not accepted for binds")
        raise ConnectionUnavailable(f"{transport} bind refused: {result.get('description', code)}")


def _release(connection: Any) -> None:
    try:
        connection.unbind()
    except (LDAPException, OSError) as exc:
        logger.debug("Ignoring error while releasing directory connection: %s", exc)
