"""Audit trail for SSO sign-ins and provisioning."""

import asyncio
import logging

from src.storage.identity_store import BaseIdentityStore
from src.types.sso import AuditAction, AuditEvent

logger = logging.getLogger(__name__)

ENTITY_TYPES = {
    AuditAction.SSO_PROVISION: "user",
    AuditAction.SSO_SIGNIN: "session",
}


class AuditLogger:
    """
    Writes audit events to the change log.

    Recording is best effort: a failed write is logged and never fails the
    sign-in that produced it.
    """

    def __init__(self, store: BaseIdentityStore, timeout: float = 5.0) -> None:
        self.store = store
        self.timeout = timeout

    async def record(self, event: AuditEvent) -> None:
        changes = {"sso_provider": event.sso_provider, **event.changes}
        entry = {
            "user_id": event.user_id,
            "entity_type": ENTITY_TYPES[event.action],
            "entity_id": event.user_id,
            "action": event.action.value,
            "changes": changes,
            "ip_address": event.ip_address or "unknown",
            "user_agent": event.user_agent or "unknown",
            "created_at": event.timestamp,
        }

        logger.info(
            f"Audit: {event.action.value}",
            extra={
                "audit_action": event.action.value,
                "profile_user_id": event.user_id,
                "sso_provider": event.sso_provider,
                "ip_address": entry["ip_address"],
            },
        )

        try:
            await asyncio.wait_for(self.store.record_change_log(entry), timeout=self.timeout)
        except Exception as e:
            logger.warning(
                f"Failed to record audit event: {e}",
                extra={"audit_action": event.action.value, "profile_user_id": event.user_id},
            )
