from __future__ import annotations

from typing import Any, Optional

from fitauth.logging import get_logger, mask_sensitive_data
from fitauth.storage.common import AuthStore, generate_uuid
from fitauth.storage.models import AuditLogEntry

logger = get_logger(__name__)


class AuditLogger:
    """Append-only audit trail for authentication events.

    Recording is best-effort: a store failure is logged and swallowed so a
    broken audit table never blocks a login or a logout.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store
        self.logger = logger

    async def record(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        success: bool = True,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        old_values: Optional[dict[str, Any]] = None,
        new_values: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        try:
            entry = AuditLogEntry(
                id=generate_uuid(),
                action=action,
                success=success,
                user_id=user_id,
                entity_type=entity_type,
                entity_id=entity_id,
                old_values=mask_sensitive_data(old_values) if old_values else None,
                new_values=mask_sensitive_data(new_values) if new_values else None,
                ip_address=ip_address,
                user_agent=user_agent,
                error_message=error_message,
            )
            self.store.append_audit_log(entry)
        except Exception as exc:
            self.logger.warning(
                "audit_log_failed", action=action, user_id=user_id, error=str(exc)
            )
            return None
        self.logger.info(
            "audit_event",
            action=action,
            user_id=user_id,
            success=success,
            ip_address=ip_address,
        )
        return entry

    def list_entries(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        return self.store.list_audit_logs(
            user_id=user_id, action=action, limit=max(1, min(limit, 500))
        )
