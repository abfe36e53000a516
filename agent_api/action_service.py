import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from common.audit import AuditLogWriter
from common.enums import AgentAction, AuditSource, LeadStatus, TERMINAL_STATUSES
from common.exceptions import (
    ActionAlreadyRecorded,
    AlreadyReplied,
    ConcurrentModification,
    InvalidTransition,
    LeadNotFound,
    TransitionEngineRejected,
)
from common.models import Lead, ensure_utc, utcnow
from common.transitions import (
    ActionRule,
    Hop,
    advance_lead,
    available_actions,
    lead_query,
    resolve_rule,
    wire_name,
)


logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

# Lead attribute reported in the audit entry of actions that set no flag
_TRACKED_FIELDS = {
    AgentAction.MARK_REPLIED: "replied_at_utc",
    AgentAction.MARK_QUALIFIED: "qualified",
    AgentAction.MARK_NOT_INTERESTED: "qualified",
}


@dataclass
class ActionOutcome:
    lead: Lead
    action: AgentAction
    status_before: LeadStatus
    status_after: LeadStatus
    transitions: List[Hop] = field(default_factory=list)


def append_note(existing: Optional[str], actor: str, action: AgentAction, notes: str, now: datetime) -> str:
    """Notes are append-only; each entry is stamped with time, actor and action."""
    entry = f"[{now.isoformat()}] {actor}:{action.value}: {notes}"
    return f"{existing}\n{entry}" if existing else entry


class ActionExecutor:
    """
    Records an agent action against a lead and advances its status.

    Validation, the flag mutation, the status advance, the note and the audit
    entry all happen in one transaction: either all of them are committed or
    the lead is left untouched.

    Args:
        session: Database session with no transaction in progress
        organization_id: Tenant scope of the caller
        actor: Actor name recorded in notes and audit entries
        audit_writer: Writer for the combined action audit entry
    """

    def __init__(
        self,
        session: AsyncSession,
        organization_id: UUID,
        actor: str,
        audit_writer: Optional[AuditLogWriter] = None,
    ):
        self.session = session
        self.organization_id = organization_id
        self.actor = actor
        self.audit_writer = audit_writer or AuditLogWriter()

    async def execute(
        self,
        lead_id: UUID,
        action: Union[AgentAction, str],
        notes: Optional[str] = None,
    ) -> ActionOutcome:
        """
        Raises:
            LeadNotFound: lead missing or owned by another organization
            UnknownAction: action outside the catalog
            InvalidTransition: current status not in the action's allowed-from set
            ActionAlreadyRecorded: the action's one-shot flag is already set
            AlreadyReplied: mark_replied on a lead with a recorded reply
            TransitionEngineRejected: the engine refused the resulting move
            ConcurrentModification: the row kept changing after all retries
        """
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                async with self.session.begin():
                    return await self._execute_once(lead_id, action, notes)
            except StaleDataError:
                # Rolled back; the next attempt re-validates against the fresh row
                logger.warning(
                    "Lead %s changed during %s (attempt %d/%d)",
                    lead_id, action, attempt, MAX_ATTEMPTS,
                )
        raise ConcurrentModification(lead_id)

    async def _execute_once(
        self,
        lead_id: UUID,
        action: Union[AgentAction, str],
        notes: Optional[str],
    ) -> ActionOutcome:
        now = utcnow()

        result = await self.session.execute(
            lead_query(lead_id, self.organization_id, lock=True).execution_options(populate_existing=True)
        )
        lead = result.scalar_one_or_none()
        if lead is None:
            raise LeadNotFound(lead_id)

        action, rule = resolve_rule(action)
        status_before = LeadStatus(lead.status)
        self._check_eligible(lead, action, rule, status_before)

        tracked = rule.flag or _TRACKED_FIELDS[action]
        value_before = getattr(lead, tracked)

        if rule.flag is not None:
            setattr(lead, rule.flag, True)
        elif action == AgentAction.MARK_REPLIED:
            lead.replied_at_utc = now
        elif action == AgentAction.MARK_QUALIFIED:
            lead.qualified = True

        hops: List[Hop] = []
        if rule.target_status is not None:
            advanced = await advance_lead(
                self.session,
                lead.id,
                self.organization_id,
                rule.target_status,
                actor=self.actor,
                source=AuditSource.AGENT,
                record_audit=False,
                now=now,
            )
            if not advanced.success:
                raise TransitionEngineRejected(
                    advanced.error,
                    current_status=status_before.value,
                    target_status=rule.target_status.value,
                    action=action.value,
                )
            hops = advanced.transitions

        if notes:
            lead.notes = append_note(lead.notes, self.actor, action, notes, now)
        lead.last_action_utc = now

        status_after = LeadStatus(lead.status)
        await self.audit_writer.record(
            self.session,
            lead,
            actor=self.actor,
            action="action_logged",
            before={"status": status_before, wire_name(tracked): value_before},
            after=self._audit_after(lead, action, tracked, hops),
            source=AuditSource.AGENT,
        )

        logger.info(
            "Action %s recorded on lead %s: %s -> %s",
            action.value, lead.id, status_before.value, status_after.value,
        )
        return ActionOutcome(
            lead=lead,
            action=action,
            status_before=status_before,
            status_after=status_after,
            transitions=hops,
        )

    def _check_eligible(
        self,
        lead: Lead,
        action: AgentAction,
        rule: ActionRule,
        status: LeadStatus,
    ) -> None:
        # A repeated one-shot action reports the guard, not the status it moved
        # the lead to; terminal leads reject everything as a transition error
        if status not in TERMINAL_STATUSES:
            if rule.flag is not None and getattr(lead, rule.flag):
                raise ActionAlreadyRecorded(action.value, wire_name(rule.flag))
            if action == AgentAction.MARK_REPLIED and lead.replied_at_utc is not None:
                raise AlreadyReplied(ensure_utc(lead.replied_at_utc).isoformat())
        if status not in rule.allowed_from:
            raise InvalidTransition(
                action=action.value,
                current_status=status.value,
                allowed_from=[s.value for s in LeadStatus if s in rule.allowed_from],
                allowed_actions=[a.value for a in available_actions(status)],
                target_status=rule.target_status.value if rule.target_status else None,
            )

    @staticmethod
    def _audit_after(lead: Lead, action: AgentAction, tracked: str, hops: List[Hop]) -> Dict[str, Any]:
        return {
            "status": lead.status,
            "action": action,
            wire_name(tracked): getattr(lead, tracked),
            "transitions": [hop.to_dict() for hop in hops],
        }
