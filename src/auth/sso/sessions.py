"""
Session credentials for SSO sign-ins.

``SessionIssuer.issue`` hands out a short-lived, single-use sign-in token
(an HS256 JWT whose ``jti`` is registered in the ephemeral store). The
browser follows the returned session URL; ``redeem`` consumes the jti so
the same token can never be redeemed twice. A redeemed token is exchanged
for an application session cookie signed with the same secret.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import jwt

from src.storage.ephemeral_store import BaseEphemeralStore
from src.types.sso import SessionClaims, SessionHandle, UserProfile, UserRole, utc_now

from .errors import SessionError, StoreError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SIGNIN_TOKEN_TYPE = "sso_signin"
APP_SESSION_TYPE = "app_session"
SESSION_KEY_PREFIX = "session:"


def session_key(jti: str) -> str:
    return f"{SESSION_KEY_PREFIX}{jti}"


class SessionIssuer:
    """Issues and redeems one-time sign-in credentials."""

    def __init__(
        self,
        store: BaseEphemeralStore,
        secret: str,
        redeem_url: str,
        token_ttl: int = 300,
        app_session_ttl: int = 28800,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not secret:
            raise ValueError("Session secret must not be empty")
        self.store = store
        self._secret = secret
        self.redeem_url = redeem_url
        self.token_ttl = token_ttl
        self.app_session_ttl = app_session_ttl
        self._clock = clock

    async def issue(self, profile: UserProfile) -> SessionHandle:
        """
        Issue a sign-in credential for ``profile``.

        Raises:
            SessionError: If the credential cannot be registered
        """
        now = self._clock()
        expires_at = now + timedelta(seconds=self.token_ttl)
        jti = secrets.token_urlsafe(24)

        token = jwt.encode(
            {
                "sub": profile.user_id,
                "email": profile.email,
                "role": profile.role.value,
                "jti": jti,
                "iat": now,
                "exp": expires_at,
                "typ": SIGNIN_TOKEN_TYPE,
            },
            self._secret,
            algorithm=ALGORITHM,
        )

        try:
            await self.store.put(
                session_key(jti),
                {"user_id": profile.user_id},
                self.token_ttl,
            )
        except StoreError as e:
            logger.error(f"Failed to register sign-in credential: {e.message}")
            raise SessionError("Unable to register sign-in credential") from e

        separator = "&" if "?" in self.redeem_url else "?"
        return SessionHandle(
            user_id=profile.user_id,
            token=token,
            session_url=f"{self.redeem_url}{separator}{urlencode({'token': token})}",
            expires_at=expires_at,
        )

    async def redeem(self, token: str) -> SessionClaims:
        """
        Consume a sign-in token. Succeeds at most once per token.

        Raises:
            SessionError: If the token is invalid, expired or already used
            StoreError: If the ephemeral store is unavailable
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "iat", "sub", "jti"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise SessionError("Sign-in link has expired") from e
        except jwt.InvalidTokenError as e:
            raise SessionError("Invalid sign-in token") from e

        if claims.get("typ") != SIGNIN_TOKEN_TYPE:
            raise SessionError("Invalid sign-in token")

        entry = await self.store.take_once(session_key(claims["jti"]))
        if entry is None or entry.get("user_id") != claims["sub"]:
            logger.warning(
                "Sign-in token was already used or is unknown",
                extra={"profile_user_id": claims["sub"]},
            )
            raise SessionError("Sign-in link has already been used")

        return SessionClaims(
            user_id=claims["sub"],
            email=claims["email"],
            role=UserRole(claims["role"]),
            jti=claims["jti"],
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )

    def create_app_session(self, claims: SessionClaims) -> Tuple[str, datetime]:
        """Application session token and its expiry."""
        now = self._clock()
        expires_at = now + timedelta(seconds=self.app_session_ttl)
        token = jwt.encode(
            {
                "sub": claims.user_id,
                "email": claims.email,
                "role": claims.role.value,
                "iat": now,
                "exp": expires_at,
                "typ": APP_SESSION_TYPE,
            },
            self._secret,
            algorithm=ALGORITHM,
        )
        return token, expires_at

    def read_app_session(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Claims of a valid application session, or None."""
        if not token:
            return None
        try:
            claims = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
        except jwt.InvalidTokenError:
            return None
        if claims.get("typ") != APP_SESSION_TYPE:
            return None
        return claims
