"""
Tests for one-time sign-in credentials and application sessions.
"""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import jwt
import pytest

from src.auth.sso.errors import SessionError, StoreError
from src.auth.sso.sessions import (
    ALGORITHM,
    APP_SESSION_TYPE,
    SessionIssuer,
    session_key,
)
from src.storage.ephemeral_store import InMemoryEphemeralStore
from src.types.sso import UserProfile, UserRole

SECRET = "unit-test-secret"
REDEEM_URL = "https://sp.example.com/sso/session/redeem"


@pytest.fixture
def profile():
    return UserProfile(
        user_id="user-1",
        email="jane@example.com",
        role=UserRole.ANALYST,
    )


@pytest.fixture
def store():
    return InMemoryEphemeralStore()


@pytest.fixture
def issuer(store):
    return SessionIssuer(store, secret=SECRET, redeem_url=REDEEM_URL, token_ttl=300)


class BrokenStore(InMemoryEphemeralStore):
    async def put(self, key, payload, ttl):
        raise StoreError("redis down")


def test_empty_secret_rejected(store):
    with pytest.raises(ValueError):
        SessionIssuer(store, secret="", redeem_url=REDEEM_URL)


class TestIssue:
    @pytest.mark.asyncio
    async def test_handle(self, issuer, store, profile):
        handle = await issuer.issue(profile)

        assert handle.user_id == "user-1"
        parts = urlsplit(handle.session_url)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == REDEEM_URL
        assert parse_qs(parts.query)["token"] == [handle.token]

        claims = jwt.decode(handle.token, SECRET, algorithms=[ALGORITHM])
        assert claims["sub"] == "user-1"
        assert claims["role"] == "analyst"
        assert await store.take_once(session_key(claims["jti"])) == {"user_id": "user-1"}

    @pytest.mark.asyncio
    async def test_redeem_url_with_query(self, store, profile):
        issuer = SessionIssuer(store, secret=SECRET, redeem_url=f"{REDEEM_URL}?next=/home")

        handle = await issuer.issue(profile)

        assert parse_qs(urlsplit(handle.session_url).query)["next"] == ["/home"]

    @pytest.mark.asyncio
    async def test_store_failure(self, profile):
        issuer = SessionIssuer(BrokenStore(), secret=SECRET, redeem_url=REDEEM_URL)

        with pytest.raises(SessionError) as exc_info:
            await issuer.issue(profile)
        assert exc_info.value.retryable is True


class TestRedeem:
    @pytest.mark.asyncio
    async def test_redeem_once(self, issuer, profile):
        handle = await issuer.issue(profile)

        claims = await issuer.redeem(handle.token)
        assert claims.user_id == "user-1"
        assert claims.email == "jane@example.com"
        assert claims.role == UserRole.ANALYST
        assert claims.expires_at.tzinfo is not None

        with pytest.raises(SessionError, match="already been used"):
            await issuer.redeem(handle.token)

    @pytest.mark.asyncio
    async def test_expired(self, store, profile):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        issuer = SessionIssuer(
            store, secret=SECRET, redeem_url=REDEEM_URL, token_ttl=300, clock=lambda: past
        )
        handle = await issuer.issue(profile)

        with pytest.raises(SessionError, match="expired"):
            await issuer.redeem(handle.token)

    @pytest.mark.asyncio
    async def test_tampered(self, issuer, profile):
        handle = await issuer.issue(profile)
        header, payload, signature = handle.token.split(".")
        forged = ".".join([header, payload, signature[::-1]])

        with pytest.raises(SessionError, match="Invalid"):
            await issuer.redeem(forged)

    @pytest.mark.asyncio
    async def test_other_secret(self, store, issuer, profile):
        other = SessionIssuer(store, secret="other-secret", redeem_url=REDEEM_URL)
        handle = await other.issue(profile)

        with pytest.raises(SessionError, match="Invalid"):
            await issuer.redeem(handle.token)

    @pytest.mark.asyncio
    async def test_app_session_token_cannot_be_redeemed(self, issuer, profile):
        claims = await issuer.redeem((await issuer.issue(profile)).token)
        app_token, _ = issuer.create_app_session(claims)

        with pytest.raises(SessionError, match="Invalid"):
            await issuer.redeem(app_token)


class TestAppSession:
    @pytest.mark.asyncio
    async def test_round_trip(self, issuer, profile):
        claims = await issuer.redeem((await issuer.issue(profile)).token)

        token, expires_at = issuer.create_app_session(claims)
        session = issuer.read_app_session(token)

        assert session["sub"] == "user-1"
        assert session["typ"] == APP_SESSION_TYPE
        assert expires_at > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_sign_in_token_is_not_a_session(self, issuer, profile):
        handle = await issuer.issue(profile)
        assert issuer.read_app_session(handle.token) is None

    def test_missing_or_garbage(self, issuer):
        assert issuer.read_app_session(None) is None
        assert issuer.read_app_session("not-a-jwt") is None
