"""
Identity Store Layer.

Local identities (auth users) and their profiles, plus the change log that
audit events are written to. Provides a Supabase implementation (auth admin
API + ``profiles`` / ``change_logs`` tables) and an in-memory implementation
for local development and tests.

Both implementations enforce a unique, lower-cased email on profiles and on
identities and report violations as DuplicateKeyError. Every other backend
failure surfaces as StoreError.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from src.auth.sso.errors import DuplicateKeyError, StoreError
from src.config import Settings
from src.types.sso import UserProfile, utc_now

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
CHANGE_LOGS_TABLE = "change_logs"

# Postgres unique_violation
PG_UNIQUE_VIOLATION = "23505"


class BaseIdentityStore(ABC):
    """Abstract base class for identity store implementations."""

    @abstractmethod
    async def find_profile_by_email(self, email: str) -> Optional[UserProfile]:
        """Case-insensitive profile lookup."""

    @abstractmethod
    async def find_profile_by_user_id(self, user_id: str) -> Optional[UserProfile]:
        pass

    @abstractmethod
    async def update_profile(self, user_id: str, changes: Dict[str, Any]) -> UserProfile:
        pass

    @abstractmethod
    async def insert_profile(self, profile: UserProfile) -> UserProfile:
        """Insert a profile. Raises DuplicateKeyError if the email is taken."""

    @abstractmethod
    async def create_identity(
        self, email: str, password: str, metadata: Dict[str, Any]
    ) -> str:
        """Create a pre-confirmed auth identity and return its user id."""

    @abstractmethod
    async def delete_identity(self, user_id: str) -> None:
        pass

    @abstractmethod
    async def get_identity(self, user_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def record_change_log(self, entry: Dict[str, Any]) -> None:
        pass

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "backend": self.__class__.__name__}


class InMemoryIdentityStore(BaseIdentityStore):
    """
    In-memory identity store for local development and testing.

    Each call yields to the event loop once, so concurrent logins interleave
    the way they would against a networked store.
    """

    def __init__(self, unique_identity_email: bool = True) -> None:
        self._identities: Dict[str, Dict[str, Any]] = {}
        self._profiles: Dict[str, UserProfile] = {}
        self.change_logs: List[Dict[str, Any]] = []
        self._unique_identity_email = unique_identity_email
        logger.info("Initialized in-memory identity store")

    @property
    def identities(self) -> Dict[str, Dict[str, Any]]:
        return self._identities

    @property
    def profiles(self) -> List[UserProfile]:
        return list(self._profiles.values())

    async def find_profile_by_email(self, email: str) -> Optional[UserProfile]:
        await asyncio.sleep(0)
        email = email.lower()
        for profile in self._profiles.values():
            if profile.email == email:
                return profile.model_copy()
        return None

    async def find_profile_by_user_id(self, user_id: str) -> Optional[UserProfile]:
        await asyncio.sleep(0)
        profile = self._profiles.get(user_id)
        return profile.model_copy() if profile else None

    async def update_profile(self, user_id: str, changes: Dict[str, Any]) -> UserProfile:
        await asyncio.sleep(0)
        profile = self._profiles.get(user_id)
        if profile is None:
            raise StoreError(f"Profile not found: {user_id}")
        updated = profile.model_copy(update=changes)
        self._profiles[user_id] = updated
        return updated.model_copy()

    async def insert_profile(self, profile: UserProfile) -> UserProfile:
        await asyncio.sleep(0)
        email = profile.email.lower()
        if profile.user_id in self._profiles or any(
            p.email == email for p in self._profiles.values()
        ):
            raise DuplicateKeyError(details={"resource_type": "profile"})
        stored = profile.model_copy(update={"email": email})
        self._profiles[profile.user_id] = stored
        return stored.model_copy()

    async def create_identity(
        self, email: str, password: str, metadata: Dict[str, Any]
    ) -> str:
        await asyncio.sleep(0)
        email = email.lower()
        if self._unique_identity_email and any(
            identity["email"] == email for identity in self._identities.values()
        ):
            raise DuplicateKeyError(
                "A user with this email address has already been registered",
                details={"resource_type": "identity"},
            )
        user_id = str(uuid.uuid4())
        self._identities[user_id] = {
            "id": user_id,
            "email": email,
            "email_confirmed": True,
            "user_metadata": dict(metadata),
            "created_at": utc_now().isoformat(),
        }
        return user_id

    async def delete_identity(self, user_id: str) -> None:
        await asyncio.sleep(0)
        self._identities.pop(user_id, None)

    async def get_identity(self, user_id: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        identity = self._identities.get(user_id)
        return dict(identity) if identity else None

    async def record_change_log(self, entry: Dict[str, Any]) -> None:
        await asyncio.sleep(0)
        self.change_logs.append(dict(entry))


class SupabaseIdentityStore(BaseIdentityStore):
    """
    Supabase-backed identity store for production use.

    Requires the service role key: identities are managed through the auth
    admin API. The Supabase client is synchronous, so every call runs in a
    worker thread.
    """

    def __init__(self, supabase_url: str, service_role_key: str) -> None:
        self._supabase_url = supabase_url
        self._service_role_key = service_role_key
        self._client = None
        logger.info("Initialized Supabase identity store")

    def _get_client(self):
        """Get or create Supabase client (lazy initialization)."""
        if self._client is None:
            from supabase import create_client

            self._client = create_client(self._supabase_url, self._service_role_key)
        return self._client

    @staticmethod
    def _is_unique_violation(error: Exception) -> bool:
        code = str(getattr(error, "code", "") or "")
        message = str(error).lower()
        return (
            code in (PG_UNIQUE_VIOLATION, "email_exists", "user_already_exists")
            or "duplicate key" in message
            or "already been registered" in message
        )

    @staticmethod
    def _profile_from_row(row: Dict[str, Any]) -> UserProfile:
        return UserProfile.model_validate(row)

    @staticmethod
    def _serialize(values: Dict[str, Any]) -> Dict[str, Any]:
        """Convert datetimes and enums to JSON column values."""
        row = {}
        for key, value in values.items():
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            row[key] = value
        return row

    async def _run(self, operation: str, fn):
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            if self._is_unique_violation(e):
                raise DuplicateKeyError(details={"resource_type": operation}) from e
            logger.error(f"Supabase {operation} failed: {e}")
            raise StoreError(f"Identity store {operation} failed") from e

    async def find_profile_by_email(self, email: str) -> Optional[UserProfile]:
        client = self._get_client()
        response = await self._run(
            "profile_lookup",
            lambda: client.table(PROFILES_TABLE)
            .select("*")
            .eq("email", email.lower())
            .limit(1)
            .execute(),
        )
        if not response.data:
            return None
        return self._profile_from_row(response.data[0])

    async def find_profile_by_user_id(self, user_id: str) -> Optional[UserProfile]:
        client = self._get_client()
        response = await self._run(
            "profile_lookup",
            lambda: client.table(PROFILES_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .limit(1)
            .execute(),
        )
        if not response.data:
            return None
        return self._profile_from_row(response.data[0])

    async def update_profile(self, user_id: str, changes: Dict[str, Any]) -> UserProfile:
        client = self._get_client()
        data = self._serialize(changes)
        response = await self._run(
            "profile_update",
            lambda: client.table(PROFILES_TABLE)
            .update(data)
            .eq("user_id", user_id)
            .execute(),
        )
        if not response.data:
            raise StoreError(f"Profile not found: {user_id}")
        return self._profile_from_row(response.data[0])

    async def insert_profile(self, profile: UserProfile) -> UserProfile:
        client = self._get_client()
        data = self._serialize(profile.model_dump(exclude_none=True))
        data["email"] = profile.email.lower()
        response = await self._run(
            "profile",
            lambda: client.table(PROFILES_TABLE).insert(data).execute(),
        )
        if not response.data:
            raise StoreError("Profile insert returned no data")
        return self._profile_from_row(response.data[0])

    async def create_identity(
        self, email: str, password: str, metadata: Dict[str, Any]
    ) -> str:
        client = self._get_client()
        response = await self._run(
            "identity",
            lambda: client.auth.admin.create_user({
                "email": email.lower(),
                "password": password,
                "email_confirm": True,
                "user_metadata": metadata,
            }),
        )
        if response is None or response.user is None:
            raise StoreError("Identity creation returned no user")
        return str(response.user.id)

    async def delete_identity(self, user_id: str) -> None:
        client = self._get_client()
        await self._run(
            "identity_delete",
            lambda: client.auth.admin.delete_user(user_id),
        )

    async def get_identity(self, user_id: str) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        response = await self._run(
            "identity_lookup",
            lambda: client.auth.admin.get_user_by_id(user_id),
        )
        if response is None or response.user is None:
            return None
        return {"id": str(response.user.id), "email": response.user.email}

    async def record_change_log(self, entry: Dict[str, Any]) -> None:
        client = self._get_client()
        data = self._serialize(entry)
        await self._run(
            "change_log",
            lambda: client.table(CHANGE_LOGS_TABLE).insert(data).execute(),
        )

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self._run(
                "health_check",
                lambda: self._get_client().table(PROFILES_TABLE).select("user_id").limit(1).execute(),
            )
        except StoreError as e:
            return {"status": "unhealthy", "backend": "supabase", "error": e.message}
        return {"status": "healthy", "backend": "supabase"}


def create_identity_store(settings: Settings) -> BaseIdentityStore:
    """
    Select the identity store from configuration.

    Uses Supabase when SUPABASE_URL and the service role key are configured,
    otherwise in-memory storage.
    """
    database = settings.database
    if database.is_configured:
        logger.info("Using Supabase identity store")
        return SupabaseIdentityStore(
            database.supabase_url,
            database.supabase_service_role_key.get_secret_value(),
        )

    if settings.is_production:
        logger.warning(
            "Supabase is not configured in production; "
            "provisioned users will not survive a restart"
        )
    else:
        logger.info("Supabase not configured. Using in-memory identity store.")
    return InMemoryIdentityStore()
