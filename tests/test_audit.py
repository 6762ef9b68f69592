"""
Tests for the SSO audit trail.
"""

import pytest

from src.auth.sso.audit import AuditLogger
from src.storage.identity_store import InMemoryIdentityStore
from src.types.sso import AuditAction, AuditEvent


class UnavailableChangeLog(InMemoryIdentityStore):
    async def record_change_log(self, entry):
        raise RuntimeError("change_logs table missing")


class TestAuditLogger:
    @pytest.mark.asyncio
    async def test_provision_entry(self):
        store = InMemoryIdentityStore()
        audit = AuditLogger(store)

        await audit.record(
            AuditEvent(
                user_id="user-1",
                action=AuditAction.SSO_PROVISION,
                sso_provider="okta",
                ip_address="203.0.113.7",
                user_agent="Mozilla/5.0",
                changes={"email": "jane@example.com", "role": "analyst"},
            )
        )

        assert len(store.change_logs) == 1
        entry = store.change_logs[0]
        assert entry["entity_type"] == "user"
        assert entry["entity_id"] == "user-1"
        assert entry["action"] == "sso_provision"
        assert entry["changes"] == {
            "sso_provider": "okta",
            "email": "jane@example.com",
            "role": "analyst",
        }
        assert entry["ip_address"] == "203.0.113.7"

    @pytest.mark.asyncio
    async def test_signin_entry_defaults(self):
        store = InMemoryIdentityStore()

        await AuditLogger(store).record(
            AuditEvent(user_id="user-1", action=AuditAction.SSO_SIGNIN)
        )

        entry = store.change_logs[0]
        assert entry["entity_type"] == "session"
        assert entry["ip_address"] == "unknown"
        assert entry["user_agent"] == "unknown"

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self):
        audit = AuditLogger(UnavailableChangeLog())

        await audit.record(AuditEvent(user_id="user-1", action=AuditAction.SSO_SIGNIN))
