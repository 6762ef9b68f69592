"""
Storage backends for the SSO gateway.

- ephemeral_store: TTL-bound single-use entries (in-memory or Redis)
- identity_store: identities, profiles and change log (in-memory or Supabase)
"""

from .ephemeral_store import BaseEphemeralStore, InMemoryEphemeralStore, RedisEphemeralStore
from .identity_store import (
    BaseIdentityStore,
    InMemoryIdentityStore,
    SupabaseIdentityStore,
    create_identity_store,
)
from .redis_client import RedisClient

__all__ = [
    "BaseEphemeralStore",
    "InMemoryEphemeralStore",
    "RedisEphemeralStore",
    "BaseIdentityStore",
    "InMemoryIdentityStore",
    "SupabaseIdentityStore",
    "create_identity_store",
    "RedisClient",
]
