"""Access tokens issued after a successful login (HS256 JWT via PyJWT)."""
from __future__ import annotations
import datetime
import logging
from typing import Any, Callable, Dict

import jwt
from jwt.exceptions import DecodeError, ExpiredSignatureError, InvalidSignatureError, InvalidTokenError

from identity_hub.core.models import LocalAccount, PermissionSet

logger = logging.getLogger(__name__)


class TokenValidationError(Exception):
    """Exception raised when an access token fails validation."""
    pass


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class TokenService:
    """Issue and verify signed access tokens.

    Args:
        secret: Shared signing secret
        algorithm: JWT algorithm (HS256 by default)
        expiry_minutes: Token lifetime
        clock: Returns an aware UTC datetime; injectable for tests
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        expiry_minutes: int = 480,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ):
        if not secret:
            raise ValueError("Token signing secret must not be empty")
        self._secret = secret
        self.algorithm = algorithm
        self.expiry_minutes = expiry_minutes
        self._clock = clock

    def issue(self, account: LocalAccount, permissions: PermissionSet) -> str:
        now = self._clock()
        claims = {
            "sub": str(account.id),
            "username": account.username,
            "email": account.email,
            "role": permissions.role,
            "auth_mode": account.auth_mode.value,
            "iat": now,
            "exp": now + datetime.timedelta(minutes=self.expiry_minutes),
        }
        return jwt.encode(claims, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Dict[str, Any]:
        """Validate signature and expiry.

        Raises:
            TokenValidationError: Token is expired, tampered or malformed
        """
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat", "sub"]},
                leeway=5,
            )
        except ExpiredSignatureError:
            raise TokenValidationError("Token expired (exp claim)")
        except InvalidSignatureError:
            raise TokenValidationError("Invalid signature (token tampered or wrong key)")
        except DecodeError as e:
            raise TokenValidationError(f"Token decode error (malformed JWT): {e}")
        except InvalidTokenError as e:
            logger.warning(f"Access token rejected: {e}")
            raise TokenValidationError(f"Token validation failed: {e}")
