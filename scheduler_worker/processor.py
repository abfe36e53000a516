import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from common.config import settings
from common.enums import AuditSource, LeadStatus
from common.models import Lead, ensure_utc, utcnow
from common.transitions import SCHEDULED_TRANSITIONS, advance_lead, due_leads_query, lead_query


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


@dataclass
class LeadTickOutcome:
    lead_id: UUID
    result: str  # advanced | skipped | failed
    status_before: Optional[LeadStatus] = None
    status_after: Optional[LeadStatus] = None
    reason: Optional[str] = None


@dataclass
class TickReport:
    advanced: int = 0
    skipped: int = 0
    failed: int = 0
    outcomes: List[LeadTickOutcome] = field(default_factory=list)

    def add(self, outcome: LeadTickOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.result == "advanced":
            self.advanced += 1
        elif outcome.result == "skipped":
            self.skipped += 1
        else:
            self.failed += 1


class SchedulerProcessor:
    """
    Periodic sweep that moves leads out of wait statuses once their timer
    has expired.

    Each lead is advanced in its own transaction, so one bad lead never holds
    back the rest of the batch. Overlapping ticks are serialized.
    """

    def __init__(self, session_factory: async_sessionmaker, batch_size: Optional[int] = None):
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.SCHEDULER_BATCH_SIZE
        self._lock = asyncio.Lock()

    async def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        """
        Advances every due lead found at ``now``.

        Args:
            now: Evaluation time, defaults to the current UTC time

        Returns:
            TickReport: Counts and per-lead outcomes of the sweep
        """
        async with self._lock:
            now = now or utcnow()
            report = TickReport()
            due = await self._find_due(now)
            if due:
                logger.info("Scheduler tick at %s: %d due leads", now.isoformat(), len(due))
            for lead_id, organization_id, status in due:
                report.add(await self._process_lead(lead_id, organization_id, status, now))
            if due:
                logger.info(
                    "Scheduler tick done: advanced=%d skipped=%d failed=%d",
                    report.advanced, report.skipped, report.failed,
                )
            return report

    async def _find_due(self, now: datetime):
        async with self.session_factory() as session:
            stmt = due_leads_query(now, limit=self.batch_size).with_only_columns(
                Lead.id, Lead.organization_id, Lead.status
            )
            return (await session.execute(stmt)).all()

    async def _process_lead(
        self,
        lead_id: UUID,
        organization_id: UUID,
        scanned_status: LeadStatus,
        now: datetime,
    ) -> LeadTickOutcome:
        outcome = LeadTickOutcome(lead_id=lead_id, result="skipped", status_before=LeadStatus(scanned_status))
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    reason = await self._recheck(session, lead_id, organization_id, scanned_status, now)
                    if reason is not None:
                        outcome.reason = reason
                        return outcome

                    target = SCHEDULED_TRANSITIONS[LeadStatus(scanned_status)]
                    result = await advance_lead(
                        session,
                        lead_id,
                        organization_id,
                        target,
                        actor=SYSTEM_ACTOR,
                        source=AuditSource.SCHEDULER,
                        now=now,
                    )
                    if not result.success:
                        outcome.reason = result.error
                        logger.info("Lead %s not advanced: %s", lead_id, result.error)
                        return outcome

                    outcome.result = "advanced"
                    outcome.status_after = LeadStatus(result.lead.status)
                    return outcome
        except StaleDataError:
            logger.info("Lead %s changed concurrently, skipped this tick", lead_id)
            outcome.result = "skipped"
            outcome.status_after = None
            outcome.reason = "modified concurrently"
            return outcome
        except Exception as e:
            logger.exception("Scheduler failed to advance lead %s", lead_id)
            outcome.result = "failed"
            outcome.status_after = None
            outcome.reason = str(e)
            return outcome

    async def _recheck(
        self,
        session: AsyncSession,
        lead_id: UUID,
        organization_id: UUID,
        scanned_status: LeadStatus,
        now: datetime,
    ) -> Optional[str]:
        """Re-reads the lead under lock; returns why it should be skipped, if at all."""
        lead = (await session.execute(lead_query(lead_id, organization_id, lock=True))).scalar_one_or_none()
        if lead is None:
            return "lead no longer exists"
        if LeadStatus(lead.status) != LeadStatus(scanned_status):
            return f"status changed to {LeadStatus(lead.status).value}"
        due = ensure_utc(lead.next_action_due_utc)
        if due is None or due > now:
            return "no longer due"
        return None
