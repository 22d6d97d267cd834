"""
Session Tokens

A session is a JWT signed with the server's key (python-jose, HS256 by
default). The token IS the session: nothing about a login's MFA state is
kept in server memory.

DESIGN DECISION: Claims only ever change through reissue(), called by the
gate after it has verified something itself (a password, a passkey
assertion). A client can hand back a token, never a set of claims to merge
into one.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from monterico.config import SessionSettings, get_settings
from monterico.errors import AuthorizationError
from monterico.models.auth import IssuedSession, SessionClaims


class SessionSigner:
    """Issues and verifies signed session tokens."""

    def __init__(self, settings: Optional[SessionSettings] = None):
        self._settings = settings or get_settings().session

    def issue(self, claims: SessionClaims, now: Optional[datetime] = None) -> IssuedSession:
        now = now or datetime.now(timezone.utc)
        payload: dict[str, Any] = claims.model_dump()
        payload.update(
            {
                "sub": claims.user_id,
                "iat": int(now.timestamp()),
                "exp": int((now + timedelta(hours=self._settings.ttl_hours)).timestamp()),
            }
        )
        token = jwt.encode(
            payload,
            self._settings.secret_key,
            algorithm=self._settings.algorithm,
        )
        return IssuedSession(token=token, claims=claims)

    def verify(self, token: str) -> SessionClaims:
        """
        Check the signature and expiry of a token and return its claims.

        Raises:
            AuthorizationError(UNAUTHORIZED): Missing, forged or expired token
        """
        if not token:
            raise AuthorizationError("Not authenticated")
        try:
            payload = jwt.decode(
                token,
                self._settings.secret_key,
                algorithms=[self._settings.algorithm],
            )
        except ExpiredSignatureError:
            raise AuthorizationError("Session expired")
        except JWTError:
            raise AuthorizationError("Invalid session token")
        return SessionClaims.model_validate(payload)

    def reissue(self, claims: SessionClaims, **changes: Any) -> IssuedSession:
        """Sign a new token from verified claims with server-decided changes."""
        return self.issue(claims.model_copy(update=changes))
