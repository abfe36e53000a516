"""
Deterministic lead status transitions.

Two tables drive everything here:

* ``ACTION_RULES`` maps each agent action to the statuses it may be invoked
  from, the status it moves the lead to and the one-shot flag it sets.
* ``TRANSITION_RULES`` maps every permitted ``(from, to)`` status edge to a
  precondition and the side effects applied when the edge is taken.

``advance_lead`` walks a requested edge plus any automatic follow-on edges
(``AUTO_CHAINS``) and applies the final state to the lead in one step, so a
rejected chain leaves the lead untouched.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple, Union
from uuid import UUID

from pydantic.alias_generators import to_camel
from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from common.audit import AuditLogWriter
from common.config import settings
from common.enums import (
    ACTIVE_STATUSES,
    AgentAction,
    AuditSource,
    LeadStatus,
    TERMINAL_STATUSES,
    WAIT_STATUSES,
)
from common.exceptions import UnknownAction
from common.models import Lead, ensure_utc, utcnow


logger = logging.getLogger(__name__)


# ── Action rule table ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ActionRule:
    allowed_from: FrozenSet[LeadStatus]
    target_status: Optional[LeadStatus]
    flag: Optional[str]  # Lead attribute set to True by the action


ACTION_RULES: Dict[AgentAction, ActionRule] = {
    AgentAction.SEND_EMAIL_1: ActionRule(frozenset({LeadStatus.NEW}), LeadStatus.CONTACTED_1, "email_sent_1"),
    AgentAction.SEND_DM_LI_1: ActionRule(frozenset({LeadStatus.NEW}), LeadStatus.CONTACTED_1, "dm_li_sent_1"),
    AgentAction.SEND_DM_FB_1: ActionRule(frozenset({LeadStatus.NEW}), LeadStatus.CONTACTED_1, "dm_fb_sent_1"),
    AgentAction.SEND_DM_IG_1: ActionRule(frozenset({LeadStatus.NEW}), LeadStatus.CONTACTED_1, "dm_ig_sent_1"),
    AgentAction.CALL_DONE: ActionRule(frozenset({LeadStatus.CALL_DUE}), LeadStatus.CALLED, "call_done"),
    AgentAction.SEND_EMAIL_2: ActionRule(frozenset({LeadStatus.WAITING_D1}), LeadStatus.CONTACTED_2, "email_sent_2"),
    AgentAction.SEND_DM_2: ActionRule(frozenset({LeadStatus.WAITING_D1}), LeadStatus.CONTACTED_2, "dm_sent_2"),
    AgentAction.SEND_WA_VOICE: ActionRule(frozenset({LeadStatus.WA_VOICE_DUE}), LeadStatus.COMPLETED, "wa_voice_sent"),
    # Sets replied_at_utc instead of a flag
    AgentAction.MARK_REPLIED: ActionRule(frozenset(ACTIVE_STATUSES), LeadStatus.REPLIED, None),
    # Sets qualified=True instead of a flag
    AgentAction.MARK_QUALIFIED: ActionRule(frozenset({LeadStatus.REPLIED}), LeadStatus.QUALIFIED, None),
    AgentAction.MARK_NOT_INTERESTED: ActionRule(
        frozenset(ACTIVE_STATUSES) | {LeadStatus.REPLIED}, LeadStatus.NOT_INTERESTED, None
    ),
}

FIRST_TOUCH_FLAGS = ("email_sent_1", "dm_li_sent_1", "dm_fb_sent_1", "dm_ig_sent_1")
FOLLOW_UP_FLAGS = ("email_sent_2", "dm_sent_2")


def wire_name(attribute: str) -> str:
    """Lead attribute name as exposed in JSON payloads (email_sent_1 -> emailSent1)."""
    return to_camel(attribute)


def available_actions(status: Union[LeadStatus, str]) -> List[AgentAction]:
    """Every action whose allowed-from set contains ``status``, in catalog order."""
    status = LeadStatus(status)
    return [action for action, rule in ACTION_RULES.items() if status in rule.allowed_from]


def resolve_rule(action: Union[AgentAction, str]) -> Tuple[AgentAction, ActionRule]:
    """
    Looks up the rule for an action name.

    Raises:
        UnknownAction: if ``action`` is not part of the action catalog
    """
    try:
        action = AgentAction(action)
    except ValueError:
        raise UnknownAction(action, [a.value for a in AgentAction])
    return action, ACTION_RULES[action]


# ── Status edges ──────────────────────────────────────────────────────────────

Precondition = Callable[[Any, datetime], Optional[str]]
SideEffects = Callable[[Any, datetime], Dict[str, Any]]


@dataclass(frozen=True)
class EdgeRule:
    precondition: Precondition
    side_effects: SideEffects


def _always(lead, now) -> Optional[str]:
    return None


def _any_flag(flags: Tuple[str, ...], reason: str) -> Precondition:
    def check(lead, now) -> Optional[str]:
        return None if any(getattr(lead, f) for f in flags) else reason
    return check


def _flag(name: str) -> Precondition:
    def check(lead, now) -> Optional[str]:
        return None if getattr(lead, name) else f"{name} must be true"
    return check


def _wait_elapsed(lead, now) -> Optional[str]:
    due = ensure_utc(lead.next_action_due_utc)
    if due is None:
        return "next_action_due_utc is not set"
    if due > now:
        remaining = (due - now).total_seconds() / 86400
        return f"Wait period has not elapsed ({remaining:.1f} days remaining)"
    return None


def _follow_up_ready(lead, now) -> Optional[str]:
    if any(getattr(lead, f) for f in FOLLOW_UP_FLAGS):
        return None
    reason = _wait_elapsed(lead, now)
    if reason is None:
        return None
    return f"email_sent_2 or dm_sent_2 must be true, or the follow-up window must elapse: {reason}"


def _replied(lead, now) -> Optional[str]:
    return None if lead.replied_at_utc else "replied_at_utc must be set"


def _mobile(expected: bool) -> Precondition:
    def check(lead, now) -> Optional[str]:
        if bool(lead.mobile_valid) == expected:
            return None
        return f"mobile_valid must be {str(expected).lower()}"
    return check


def _effects(next_action: Optional[str], due_days: Optional[Callable[[], int]] = None, **extra) -> SideEffects:
    def apply(lead, now) -> Dict[str, Any]:
        effects = {
            "next_action": next_action,
            "next_action_due_utc": now + timedelta(days=due_days()) if due_days else None,
        }
        effects.update(extra)
        return effects
    return apply


def _close_without_mobile(lead, now) -> Dict[str, Any]:
    # A lead that reached CONTACTED_2 because the window ran out was never followed up
    followed_up = any(getattr(lead, f) for f in FOLLOW_UP_FLAGS)
    return {
        "next_action": None,
        "next_action_due_utc": None,
        "outcome": "pipeline_complete_no_mobile" if followed_up else "follow_up_skipped",
    }


def _wait_d2() -> int:
    return settings.WAIT_D2_DAYS


def _wait_d1() -> int:
    return settings.WAIT_D1_DAYS


TRANSITION_RULES: Dict[Tuple[LeadStatus, LeadStatus], EdgeRule] = {
    # First touch recorded
    (LeadStatus.NEW, LeadStatus.CONTACTED_1): EdgeRule(
        _any_flag(FIRST_TOUCH_FLAGS, "a first-touch action (email or DM) must be recorded"),
        _effects("wait_for_call_window", _wait_d2),
    ),
    (LeadStatus.CONTACTED_1, LeadStatus.WAITING_D2): EdgeRule(_always, _effects("call", _wait_d2)),
    (LeadStatus.WAITING_D2, LeadStatus.CALL_DUE): EdgeRule(_wait_elapsed, _effects("call_lead")),
    (LeadStatus.CALL_DUE, LeadStatus.CALLED): EdgeRule(
        _flag("call_done"), _effects("wait_for_followup_window", _wait_d1)
    ),
    (LeadStatus.CALLED, LeadStatus.WAITING_D1): EdgeRule(_always, _effects("follow_up_email_dm", _wait_d1)),
    (LeadStatus.WAITING_D1, LeadStatus.CONTACTED_2): EdgeRule(
        _follow_up_ready, _effects("wa_voice_note_or_complete")
    ),
    (LeadStatus.CONTACTED_2, LeadStatus.WA_VOICE_DUE): EdgeRule(_mobile(True), _effects("send_wa_voice_note")),
    (LeadStatus.CONTACTED_2, LeadStatus.COMPLETED): EdgeRule(_mobile(False), _close_without_mobile),
    (LeadStatus.WA_VOICE_DUE, LeadStatus.COMPLETED): EdgeRule(
        _flag("wa_voice_sent"), _effects(None, outcome="pipeline_complete")
    ),
    (LeadStatus.REPLIED, LeadStatus.QUALIFIED): EdgeRule(
        _always, _effects(None, qualified=True, outcome="qualified")
    ),
}

# Interrupts: a reply or an opt-out may arrive at any active funnel position
for _status in ACTIVE_STATUSES:
    TRANSITION_RULES[(_status, LeadStatus.REPLIED)] = EdgeRule(_replied, _effects("qualify_lead"))
for _status in ACTIVE_STATUSES + (LeadStatus.REPLIED,):
    TRANSITION_RULES[(_status, LeadStatus.NOT_INTERESTED)] = EdgeRule(
        _always, _effects(None, qualified=False, outcome="not_interested")
    )

# Statuses that are left automatically as soon as they are entered
AUTO_CHAINS: Dict[LeadStatus, Callable[[Any], LeadStatus]] = {
    LeadStatus.CONTACTED_1: lambda lead: LeadStatus.WAITING_D2,
    LeadStatus.CALLED: lambda lead: LeadStatus.WAITING_D1,
    LeadStatus.CONTACTED_2: lambda lead: (
        LeadStatus.WA_VOICE_DUE if lead.mobile_valid else LeadStatus.COMPLETED
    ),
}

# Time-driven edges taken by the scheduler once a wait period elapses
SCHEDULED_TRANSITIONS: Dict[LeadStatus, LeadStatus] = {
    LeadStatus.WAITING_D2: LeadStatus.CALL_DUE,
    LeadStatus.WAITING_D1: LeadStatus.CONTACTED_2,
}

STATUS_GRAPH: Dict[LeadStatus, Tuple[LeadStatus, ...]] = {
    source: tuple(target for target in LeadStatus if (source, target) in TRANSITION_RULES)
    for source in LeadStatus
}

MAX_HOPS = len(LeadStatus)

# Lead attributes read by preconditions or written by side effects
_STATE_FIELDS = (
    "status", "mobile_valid", "replied_at_utc", "qualified", "outcome",
    "next_action", "next_action_due_utc", "last_action_utc",
) + FIRST_TOUCH_FLAGS + FOLLOW_UP_FLAGS + ("call_done", "wa_voice_sent")


# ── Engine ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Hop:
    from_status: LeadStatus
    to_status: LeadStatus

    def to_dict(self) -> Dict[str, str]:
        return {"from": self.from_status.value, "to": self.to_status.value}


@dataclass
class TransitionResult:
    success: bool
    lead: Optional[Lead] = None
    transitions: List[Hop] = field(default_factory=list)
    error: Optional[str] = None


def can_transition(
    lead: Any,
    target_status: LeadStatus,
    now: Optional[datetime] = None,
) -> Tuple[bool, Optional[str]]:
    """Checks whether a single edge may be taken, without executing it."""
    now = now or utcnow()
    source = LeadStatus(lead.status)
    rule = TRANSITION_RULES.get((source, target_status))
    if rule is None:
        return False, f"Transition {source.value} → {target_status.value} is not allowed"
    reason = rule.precondition(lead, now)
    if reason is not None:
        return False, reason
    return True, None


def plan_transition(
    lead: Any,
    target_status: LeadStatus,
    now: datetime,
) -> Tuple[List[Hop], Dict[str, Any], Optional[str]]:
    """
    Walks the requested edge and every automatic follow-on edge on a snapshot
    of the lead.

    Returns:
        (hops, final field values, error). On error nothing should be applied.
    """
    view = SimpleNamespace(**{name: getattr(lead, name) for name in _STATE_FIELDS})
    view.status = LeadStatus(view.status)
    hops: List[Hop] = []
    changes: Dict[str, Any] = {}
    target: Optional[LeadStatus] = target_status

    while target is not None:
        if len(hops) >= MAX_HOPS:
            return [], {}, f"Transition chain exceeded {MAX_HOPS} hops"

        allowed, reason = can_transition(view, target, now)
        if not allowed:
            return [], {}, reason

        from_status = view.status
        effects = TRANSITION_RULES[(from_status, target)].side_effects(view, now)
        effects["status"] = target
        effects["last_action_utc"] = now
        for name, value in effects.items():
            setattr(view, name, value)
        changes.update(effects)
        hops.append(Hop(from_status, target))

        chain = AUTO_CHAINS.get(target)
        next_target = chain(view) if chain else None
        if next_target is not None and (target, next_target) not in TRANSITION_RULES:
            next_target = None
        target = next_target

    return hops, changes, None


def get_next_steps(lead: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Describes every edge out of the lead's current status and whether it is open."""
    now = now or utcnow()
    current = LeadStatus(lead.status)
    possible = []
    for target in STATUS_GRAPH[current]:
        allowed, reason = can_transition(lead, target, now)
        possible.append({"to": target, "allowed": allowed, "reason": reason})
    return {"currentStatus": current, "possibleTransitions": possible}


def lead_query(lead_id: UUID, organization_id: UUID, lock: bool = False) -> Select:
    """Organization scoped lookup of a single lead, optionally row locked."""
    stmt = select(Lead).where(Lead.id == lead_id, Lead.organization_id == organization_id)
    if lock:
        stmt = stmt.with_for_update()
    return stmt


def due_leads_query(
    now: datetime,
    organization_id: Optional[UUID] = None,
    limit: Optional[int] = None,
) -> Select:
    """Leads sitting in a wait status whose timer has expired, oldest first."""
    stmt = (
        select(Lead)
        .where(Lead.status.in_(list(WAIT_STATUSES)))
        .where(Lead.next_action_due_utc <= now)
        .order_by(Lead.next_action_due_utc)
    )
    if organization_id is not None:
        stmt = stmt.where(Lead.organization_id == organization_id)
    if limit:
        stmt = stmt.limit(limit)
    return stmt


async def advance_lead(
    session: AsyncSession,
    lead_id: UUID,
    organization_id: UUID,
    target_status: Union[LeadStatus, str],
    actor: str,
    source: AuditSource,
    *,
    record_audit: bool = True,
    now: Optional[datetime] = None,
    audit_writer: Optional[AuditLogWriter] = None,
) -> TransitionResult:
    """
    Moves a lead to ``target_status`` and through any automatic chain.

    Runs inside the caller's transaction and never commits. Every hop is
    validated before the lead is touched, so a rejected request leaves the
    lead exactly as it was and observers only ever see the final status.

    Args:
        session: Database session holding the caller's transaction
        lead_id: Lead to move
        organization_id: Tenant scope of the caller
        target_status: Requested canonical status
        actor: Who requested the move (``agent:<name>`` or ``system``)
        source: Where the request came from
        record_audit: Write a ``status_change`` audit entry for this call
        now: Evaluation time, defaults to the current UTC time
        audit_writer: Writer used for the audit entry

    Returns:
        TransitionResult with the ordered hops that were applied
    """
    now = now or utcnow()
    try:
        target_status = LeadStatus(target_status)
    except ValueError:
        return TransitionResult(success=False, error=f"Unknown status: {target_status}")

    result = await session.execute(lead_query(lead_id, organization_id, lock=True))
    lead = result.scalar_one_or_none()
    if lead is None:
        return TransitionResult(success=False, error="Lead not found")

    status_before = LeadStatus(lead.status)
    if target_status == status_before:
        return TransitionResult(success=True, lead=lead)

    if status_before in TERMINAL_STATUSES:
        return TransitionResult(
            success=False,
            error=f"Lead is in terminal status {status_before.value}",
        )

    hops, changes, error = plan_transition(lead, target_status, now)
    if error is not None:
        return TransitionResult(success=False, lead=lead, error=error)

    for name, value in changes.items():
        setattr(lead, name, value)

    if record_audit:
        await (audit_writer or AuditLogWriter()).record(
            session,
            lead,
            actor=actor,
            action="status_change",
            before={"status": status_before},
            after={
                "status": lead.status,
                "transitions": [hop.to_dict() for hop in hops],
                "next_action": lead.next_action,
                "next_action_due_utc": lead.next_action_due_utc,
                "outcome": lead.outcome,
                "qualified": lead.qualified,
            },
            source=source,
        )

    logger.info(
        "Lead %s advanced %s -> %s (%d hops, actor=%s, source=%s)",
        lead.id, status_before.value, LeadStatus(lead.status).value, len(hops), actor, source.value,
    )
    return TransitionResult(success=True, lead=lead, transitions=hops)
