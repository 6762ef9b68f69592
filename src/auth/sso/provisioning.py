"""
Just-in-time provisioning of SSO users.

A first sign-in creates an auth identity and a profile for the asserted
email; later sign-ins only refresh the profile. Creation spans two writes,
so a failed profile insert deletes the identity it just created. An insert
that times out is left to settle first; the identity is removed only if the
write eventually fails. Two concurrent first logins for the same email
converge on a single profile: the loser of the race re-reads the winner's
profile instead of failing.

Roles are assigned once at creation. An IdP asserting a higher role for an
existing user is logged for an administrator, never applied.
"""

import asyncio
import functools
import logging
import secrets
import string
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from src.storage.identity_store import BaseIdentityStore
from src.types.sso import (
    ProvisioningResult,
    ProvisionUserRequest,
    SSOIdentity,
    UserProfile,
    UserRole,
    utc_now,
)
from src.utils.logging import mask_email

from .errors import DuplicateKeyError, ProvisioningConflict, StoreError

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"
PASSWORD_LENGTH = 32


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Random credential for SSO-only identities; never shown to anyone."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


class ProvisioningService:
    """Creates or refreshes local users for validated SSO identities."""

    def __init__(
        self,
        store: BaseIdentityStore,
        store_timeout: float = 5.0,
        reconcile_attempts: int = 3,
        reconcile_delay: float = 0.2,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.store_timeout = store_timeout
        self.reconcile_attempts = max(1, reconcile_attempts)
        self.reconcile_delay = reconcile_delay
        self._clock = clock
        self._late_rollbacks: Set["asyncio.Task[bool]"] = set()

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.store_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Identity store {operation} timed out after {self.store_timeout}s")
            raise StoreError(
                f"Identity store {operation} timed out",
                details={"operation": operation},
            ) from e

    async def provision_or_sign_in(
        self, identity: SSOIdentity, sso_provider: str
    ) -> ProvisioningResult:
        """
        Return the local profile for ``identity``, creating it on first login.

        Raises:
            ProvisioningConflict: If a concurrent creation cannot be reconciled
            StoreError: If the identity store fails (the identity is rolled back)
        """
        email = identity.email.lower()
        profile = await self._call("profile_lookup", self.store.find_profile_by_email(email))

        if profile is None:
            try:
                created = await self._create(
                    email=email,
                    display_name=identity.display_name,
                    role=identity.role,
                    sso_provider=sso_provider,
                    sso_subject=identity.name_id,
                )
            except DuplicateKeyError:
                logger.info(
                    "Concurrent SSO provisioning detected, reconciling",
                    extra={"email": mask_email(email)},
                )
                profile = await self._reconcile(email)
            else:
                logger.info(
                    "Provisioned SSO user",
                    extra={
                        "email": mask_email(email),
                        "sso_provider": sso_provider,
                        "role": created.role.value,
                    },
                )
                return ProvisioningResult(profile=created, created=True)

        updated = await self._refresh(profile, identity, sso_provider)
        return ProvisioningResult(profile=updated, created=False)

    async def create_user(self, request: ProvisionUserRequest) -> UserProfile:
        """
        Explicitly provision a user (service-to-service endpoint).

        Raises:
            ProvisioningConflict: If a profile already exists for the email;
                ``details["user_id"]`` names it when known
            StoreError: If the identity store fails
        """
        existing = await self._call(
            "profile_lookup", self.store.find_profile_by_email(request.email)
        )
        if existing is not None:
            raise ProvisioningConflict(details={"user_id": existing.user_id})

        try:
            profile = await self._create(
                email=request.email,
                display_name=request.display_name,
                role=request.role,
                sso_provider=request.sso_provider,
                sso_subject=request.sso_subject,
            )
        except DuplicateKeyError as e:
            existing = await self._call(
                "profile_lookup", self.store.find_profile_by_email(request.email)
            )
            details = {"user_id": existing.user_id} if existing else {}
            raise ProvisioningConflict(details=details) from e

        logger.info(
            "Provisioned user via service API",
            extra={"email": mask_email(profile.email), "role": profile.role.value},
        )
        return profile

    async def _create(
        self,
        email: str,
        display_name: Optional[str],
        role: UserRole,
        sso_provider: str,
        sso_subject: str,
    ) -> UserProfile:
        """
        Create identity then profile. DuplicateKeyError propagates once any
        identity created here has been removed again.
        """
        metadata = {
            "display_name": display_name,
            "sso_provider": sso_provider,
            "sso_subject": sso_subject,
        }
        user_id = await self._call(
            "identity_create",
            self.store.create_identity(email, generate_password(), metadata),
        )

        now = self._clock()
        profile = UserProfile(
            user_id=user_id,
            email=email,
            display_name=display_name,
            role=role,
            sso_provider=sso_provider,
            sso_subject=sso_subject,
            created_at=now,
            updated_at=now,
            last_sign_in_at=now,
        )

        # Threaded stores finish the write even after we stop waiting
        insert = asyncio.ensure_future(self.store.insert_profile(profile))
        try:
            try:
                return await asyncio.wait_for(asyncio.shield(insert), timeout=self.store_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Identity store profile_insert timed out after {self.store_timeout}s, "
                    "waiting for its outcome"
                )
            done, _ = await asyncio.wait({insert}, timeout=self.store_timeout)
            if done:
                return insert.result()
        except DuplicateKeyError:
            await self._compensate(user_id)
            raise
        except Exception as e:
            rolled_back = await self._compensate(user_id)
            details: Dict[str, Any] = {"operation": "profile_insert"}
            if not rolled_back:
                details["rollback_failed"] = True
            raise StoreError("Failed to create user profile", details=details) from e

        insert.add_done_callback(functools.partial(self._settle_late_insert, user_id))
        logger.error(
            "Profile insert outcome unknown; auth identity kept until it settles",
            extra={"pending_user_id": user_id},
        )
        raise StoreError(
            "Identity store profile_insert timed out",
            details={"operation": "profile_insert"},
        )

    def _settle_late_insert(self, user_id: str, insert: "asyncio.Future[UserProfile]") -> None:
        """Roll back the identity if an abandoned profile insert fails late."""
        if insert.cancelled():
            logger.critical(
                "Abandoned profile insert was cancelled; identity may be orphaned",
                extra={"orphaned_user_id": user_id},
            )
            return
        if insert.exception() is None:
            logger.info(
                "Abandoned profile insert completed",
                extra={"profile_user_id": user_id},
            )
            return
        rollback = asyncio.ensure_future(self._compensate(user_id))
        self._late_rollbacks.add(rollback)
        rollback.add_done_callback(self._late_rollbacks.discard)

    async def _compensate(self, user_id: str) -> bool:
        """Delete an identity whose profile could not be created."""
        try:
            await self._call("identity_delete", self.store.delete_identity(user_id))
        except Exception:
            logger.critical(
                "Failed to roll back auth identity after profile creation failed; "
                "identity is orphaned",
                extra={"orphaned_user_id": user_id},
                exc_info=True,
            )
            return False
        logger.warning(
            "Rolled back auth identity after profile creation failed",
            extra={"rolled_back_user_id": user_id},
        )
        return True

    async def _reconcile(self, email: str) -> UserProfile:
        for attempt in range(1, self.reconcile_attempts + 1):
            profile = await self._call("profile_lookup", self.store.find_profile_by_email(email))
            if profile is not None:
                return profile
            if attempt < self.reconcile_attempts:
                await asyncio.sleep(self.reconcile_delay)

        logger.error(
            "Could not reconcile concurrent SSO provisioning",
            extra={"email": mask_email(email), "attempts": self.reconcile_attempts},
        )
        raise ProvisioningConflict(
            "Concurrent provisioning could not be reconciled",
            details={"attempts": self.reconcile_attempts},
        )

    async def _refresh(
        self, profile: UserProfile, identity: SSOIdentity, sso_provider: str
    ) -> UserProfile:
        now = self._clock()
        changes: Dict[str, Any] = {"last_sign_in_at": now, "updated_at": now}

        if not profile.display_name and identity.display_name:
            changes["display_name"] = identity.display_name
        if not profile.sso_provider:
            changes["sso_provider"] = sso_provider
        if not profile.sso_subject:
            changes["sso_subject"] = identity.name_id
        elif profile.sso_subject != identity.name_id:
            logger.warning(
                "SSO subject differs from the one recorded on the profile",
                extra={"profile_user_id": profile.user_id, "sso_provider": sso_provider},
            )

        if identity.role.rank > profile.role.rank:
            logger.info(
                "IdP asserts a higher role than the profile holds; not applied",
                extra={
                    "profile_user_id": profile.user_id,
                    "current_role": profile.role.value,
                    "asserted_role": identity.role.value,
                },
            )

        return await self._call(
            "profile_update", self.store.update_profile(profile.user_id, changes)
        )
