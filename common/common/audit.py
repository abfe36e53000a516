import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from common.enums import AuditSource
from common.models import AuditLog, Lead, utcnow


audit_logger = logging.getLogger("audit")
logger = logging.getLogger(__name__)


def jsonable(value: Any) -> Any:
    """Converts enums, datetimes and containers into JSON column friendly values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


class AuditLogWriter:
    """
    Writes audit entries for lead mutations.

    The row is added to the caller's session so it commits or rolls back
    together with the mutation it describes. A copy of every entry is emitted
    on the ``audit`` logger for external sinks.
    """

    async def record(
        self,
        session: AsyncSession,
        lead: Lead,
        actor: str,
        action: str,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
        source: AuditSource,
    ) -> AuditLog:
        entry = AuditLog(
            lead_id=lead.id,
            organization_id=lead.organization_id,
            actor=actor,
            action=action,
            before=jsonable(before),
            after=jsonable(after),
            source=source,
            created_at=utcnow(),
        )
        session.add(entry)
        self._mirror(entry)
        return entry

    def _mirror(self, entry: AuditLog) -> None:
        try:
            audit_logger.info(
                "lead=%s org=%s actor=%s action=%s source=%s before=%s after=%s",
                entry.lead_id,
                entry.organization_id,
                entry.actor,
                entry.action,
                entry.source.value,
                entry.before,
                entry.after,
            )
        except Exception:
            logger.exception("Failed to mirror audit entry for lead %s", entry.lead_id)
