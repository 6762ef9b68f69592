"""
Tests for just-in-time provisioning.

Covers first-login creation, repeat sign-ins, rollback of half-created
users and convergence of concurrent first logins.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from src.auth.sso.errors import DuplicateKeyError, ProvisioningConflict, StoreError
from src.auth.sso.provisioning import (
    PASSWORD_ALPHABET,
    PASSWORD_LENGTH,
    ProvisioningService,
    generate_password,
)
from src.storage.identity_store import InMemoryIdentityStore
from src.types.sso import ProvisionUserRequest, SSOIdentity, UserRole


def make_identity(email="jane@example.com", role=UserRole.ANALYST, **kwargs):
    return SSOIdentity(
        name_id=kwargs.pop("name_id", "subject-123"),
        email=email,
        role=role,
        **kwargs,
    )


class FailingProfileStore(InMemoryIdentityStore):
    """Profile inserts fail; identity deletes optionally fail too."""

    def __init__(self, fail_delete=False, **kwargs):
        super().__init__(**kwargs)
        self.fail_delete = fail_delete

    async def insert_profile(self, profile):
        raise StoreError("profiles table unavailable")

    async def delete_identity(self, user_id):
        if self.fail_delete:
            raise StoreError("auth admin API unavailable")
        await super().delete_identity(user_id)


class ThreadedInsertStore(InMemoryIdentityStore):
    """Profile inserts run in a worker thread that outlives the caller's timeout."""

    def __init__(self, delay, fail=False):
        super().__init__()
        self.delay = delay
        self.fail = fail

    def _insert_blocking(self, profile):
        time.sleep(self.delay)
        if self.fail:
            raise StoreError("profiles table unavailable")
        self._profiles[profile.user_id] = profile
        return profile

    async def insert_profile(self, profile):
        return await asyncio.to_thread(self._insert_blocking, profile)


class SlowStore(InMemoryIdentityStore):
    async def find_profile_by_email(self, email):
        await asyncio.sleep(1)
        return await super().find_profile_by_email(email)


@pytest.fixture
def store():
    return InMemoryIdentityStore()


@pytest.fixture
def service(store):
    return ProvisioningService(store, reconcile_delay=0.01)


def test_generated_password():
    password = generate_password()
    assert len(password) == PASSWORD_LENGTH
    assert set(password) <= set(PASSWORD_ALPHABET)
    assert generate_password() != password


class TestProvisionOrSignIn:
    @pytest.mark.asyncio
    async def test_first_login_creates_user(self, service, store):
        result = await service.provision_or_sign_in(
            make_identity(display_name="Jane Doe"), "okta"
        )

        assert result.created is True
        profile = result.profile
        assert profile.email == "jane@example.com"
        assert profile.role == UserRole.ANALYST
        assert profile.sso_provider == "okta"
        assert profile.sso_subject == "subject-123"
        assert profile.last_sign_in_at is not None

        identity = store.identities[profile.user_id]
        assert identity["email_confirmed"] is True
        assert identity["user_metadata"]["sso_provider"] == "okta"

    @pytest.mark.asyncio
    async def test_repeat_login_signs_in(self, service, store):
        first = await service.provision_or_sign_in(make_identity(), "okta")
        second = await service.provision_or_sign_in(make_identity(), "okta")

        assert second.created is False
        assert second.profile.user_id == first.profile.user_id
        assert len(store.profiles) == 1
        assert len(store.identities) == 1

    @pytest.mark.asyncio
    async def test_email_match_is_case_insensitive(self, service, store):
        await service.provision_or_sign_in(make_identity(email="jane@example.com"), "okta")
        result = await service.provision_or_sign_in(
            make_identity(email="JANE@Example.com"), "okta"
        )

        assert result.created is False
        assert len(store.profiles) == 1

    @pytest.mark.asyncio
    async def test_sign_in_updates_last_sign_in(self, store):
        times = iter(
            [
                datetime(2024, 1, 1, tzinfo=timezone.utc),
                datetime(2024, 1, 2, tzinfo=timezone.utc),
            ]
        )
        service = ProvisioningService(store, clock=lambda: next(times))

        created = await service.provision_or_sign_in(make_identity(), "okta")
        signed_in = await service.provision_or_sign_in(make_identity(), "okta")

        assert signed_in.profile.last_sign_in_at - created.profile.last_sign_in_at == timedelta(
            days=1
        )
        assert signed_in.profile.created_at == created.profile.created_at

    @pytest.mark.asyncio
    async def test_role_never_changes_on_sign_in(self, service):
        await service.provision_or_sign_in(make_identity(role=UserRole.VIEWER), "okta")

        upgraded = await service.provision_or_sign_in(make_identity(role=UserRole.ADMIN), "okta")
        assert upgraded.profile.role == UserRole.VIEWER

    @pytest.mark.asyncio
    async def test_no_role_downgrade(self, service):
        await service.provision_or_sign_in(make_identity(role=UserRole.MANAGER), "okta")

        result = await service.provision_or_sign_in(make_identity(role=UserRole.VIEWER), "okta")
        assert result.profile.role == UserRole.MANAGER

    @pytest.mark.asyncio
    async def test_fills_missing_display_name(self, service):
        await service.provision_or_sign_in(make_identity(), "okta")

        result = await service.provision_or_sign_in(
            make_identity(display_name="Jane Doe"), "okta"
        )
        assert result.profile.display_name == "Jane Doe"


class TestRollback:
    @pytest.mark.asyncio
    async def test_failed_profile_insert_removes_identity(self):
        store = FailingProfileStore()
        service = ProvisioningService(store)

        with pytest.raises(StoreError) as exc_info:
            await service.provision_or_sign_in(make_identity(), "okta")

        assert store.identities == {}
        assert store.profiles == []
        assert "rollback_failed" not in exc_info.value.details

    @pytest.mark.asyncio
    async def test_failed_rollback_is_reported(self, caplog):
        store = FailingProfileStore(fail_delete=True)
        service = ProvisioningService(store)

        with pytest.raises(StoreError) as exc_info:
            await service.provision_or_sign_in(make_identity(), "okta")

        assert exc_info.value.details["rollback_failed"] is True
        assert len(store.identities) == 1
        assert any(record.levelname == "CRITICAL" for record in caplog.records)

    @pytest.mark.asyncio
    async def test_store_timeout(self):
        service = ProvisioningService(SlowStore(), store_timeout=0.05)

        with pytest.raises(StoreError) as exc_info:
            await service.provision_or_sign_in(make_identity(), "okta")

        assert exc_info.value.details["operation"] == "profile_lookup"

    @pytest.mark.asyncio
    async def test_late_profile_insert_keeps_identity(self):
        store = ThreadedInsertStore(delay=0.5)
        service = ProvisioningService(store, store_timeout=0.1)

        with pytest.raises(StoreError) as exc_info:
            await service.provision_or_sign_in(make_identity(), "okta")
        await asyncio.sleep(0.6)

        assert exc_info.value.details["operation"] == "profile_insert"
        assert len(store.profiles) == 1
        assert list(store.identities) == [store.profiles[0].user_id]

    @pytest.mark.asyncio
    async def test_slow_profile_insert_within_grace_succeeds(self):
        store = ThreadedInsertStore(delay=0.3)
        service = ProvisioningService(store, store_timeout=0.2)

        result = await service.provision_or_sign_in(make_identity(), "okta")

        assert result.created is True
        assert list(store.identities) == [result.profile.user_id]

    @pytest.mark.asyncio
    async def test_late_failed_insert_rolls_back_identity(self):
        store = ThreadedInsertStore(delay=0.5, fail=True)
        service = ProvisioningService(store, store_timeout=0.1)

        with pytest.raises(StoreError):
            await service.provision_or_sign_in(make_identity(), "okta")
        assert len(store.identities) == 1
        await asyncio.sleep(0.6)

        assert store.identities == {}
        assert store.profiles == []


class TestConcurrentFirstLogin:
    @pytest.mark.asyncio
    async def test_concurrent_logins_converge(self, service, store):
        results = await asyncio.gather(
            *(service.provision_or_sign_in(make_identity(), "okta") for _ in range(5))
        )

        user_ids = {result.profile.user_id for result in results}
        assert len(user_ids) == 1
        assert sum(1 for result in results if result.created) == 1
        assert len(store.profiles) == 1
        assert len(store.identities) == 1

    @pytest.mark.asyncio
    async def test_profile_race_rolls_back_losing_identity(self):
        # Identities are not unique here, so both creations reach the profile insert
        store = InMemoryIdentityStore(unique_identity_email=False)
        service = ProvisioningService(store, reconcile_delay=0.01)

        results = await asyncio.gather(
            service.provision_or_sign_in(make_identity(), "okta"),
            service.provision_or_sign_in(make_identity(), "okta"),
        )

        assert results[0].profile.user_id == results[1].profile.user_id
        assert len(store.profiles) == 1
        assert list(store.identities) == [results[0].profile.user_id]

    @pytest.mark.asyncio
    async def test_unreconcilable_conflict(self, store):
        service = ProvisioningService(store, reconcile_attempts=2, reconcile_delay=0)
        # An identity exists without a profile, so every re-read comes back empty
        await store.create_identity("jane@example.com", "x", {})

        with pytest.raises(ProvisioningConflict) as exc_info:
            await service.provision_or_sign_in(make_identity(), "okta")

        assert exc_info.value.details["attempts"] == 2


class TestCreateUser:
    def _request(self, **overrides):
        values = {
            "email": "New.User@Example.com",
            "display_name": "New User",
            "role": "manager",
            "sso_provider": "okta",
            "sso_subject": "subject-9",
        }
        values.update(overrides)
        return ProvisionUserRequest(**values)

    @pytest.mark.asyncio
    async def test_creates_profile(self, service, store):
        profile = await service.create_user(self._request())

        assert profile.email == "new.user@example.com"
        assert profile.role == UserRole.MANAGER
        assert store.identities[profile.user_id]["email"] == "new.user@example.com"

    @pytest.mark.asyncio
    async def test_existing_profile_conflicts(self, service):
        existing = await service.create_user(self._request())

        with pytest.raises(ProvisioningConflict) as exc_info:
            await service.create_user(self._request())

        assert exc_info.value.details["user_id"] == existing.user_id

    @pytest.mark.asyncio
    async def test_orphaned_identity_conflicts(self, service, store):
        await store.create_identity("new.user@example.com", "x", {})

        with pytest.raises(ProvisioningConflict) as exc_info:
            await service.create_user(self._request())

        assert "user_id" not in exc_info.value.details


@pytest.mark.asyncio
async def test_duplicate_key_is_a_store_error():
    store = InMemoryIdentityStore()
    await store.create_identity("a@example.com", "x", {})

    with pytest.raises(StoreError):
        await store.create_identity("A@example.com", "x", {})
    with pytest.raises(DuplicateKeyError):
        await store.create_identity("a@example.com", "x", {})
