from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm.exc import StaleDataError

from agent_api import action_service
from agent_api.action_service import MAX_ATTEMPTS, ActionExecutor, append_note
from common.audit import AuditLogWriter
from common.enums import AgentAction, AuditSource, LeadStatus, TERMINAL_STATUSES
from common.exceptions import (
    ActionAlreadyRecorded,
    AlreadyReplied,
    ConcurrentModification,
    InvalidTransition,
    LeadNotFound,
    TransitionEngineRejected,
    UnknownAction,
)
from common.models import Base, utcnow
from common.transitions import ACTION_RULES, TransitionResult
from conftest import OTHER_ORG_ID, ORG_ID, audit_entries, count_audit_entries, create_lead, get_lead


ACTOR = "agent:tester"


@pytest.fixture
def executor(db_session):
    return ActionExecutor(db_session, ORG_ID, ACTOR)


class FlakyAuditWriter(AuditLogWriter):
    """Simulates the row changing underneath the first ``failures`` attempts."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def record(self, *args, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise StaleDataError("simulated concurrent update")
        return await super().record(*args, **kwargs)


async def test_send_email_1_records_flag_and_advances(executor, session_factory):
    lead = await create_lead(session_factory)

    outcome = await executor.execute(lead.id, AgentAction.SEND_EMAIL_1, notes="Intro sent")

    assert outcome.status_before == LeadStatus.NEW
    assert outcome.status_after == LeadStatus.WAITING_D2
    assert outcome.transitions[0].to_status == LeadStatus.CONTACTED_1
    stored = await get_lead(session_factory, lead.id)
    assert stored.email_sent_1 is True
    assert stored.status == LeadStatus.WAITING_D2
    assert stored.notes.endswith("agent:tester:send_email_1: Intro sent")


async def test_second_call_of_one_shot_action_is_rejected(executor, session_factory):
    lead = await create_lead(session_factory)
    await executor.execute(lead.id, AgentAction.SEND_EMAIL_1)

    with pytest.raises(ActionAlreadyRecorded) as exc_info:
        await executor.execute(lead.id, AgentAction.SEND_EMAIL_1)

    assert exc_info.value.extra["flag"] == "emailSent1"
    stored = await get_lead(session_factory, lead.id)
    assert stored.email_sent_1 is True
    assert await count_audit_entries(session_factory, lead.id) == 1


async def test_flag_already_set_is_reported_in_camel_case(executor, session_factory):
    lead = await create_lead(session_factory, status=LeadStatus.CALL_DUE, call_done=True)

    with pytest.raises(ActionAlreadyRecorded) as exc_info:
        await executor.execute(lead.id, AgentAction.CALL_DONE)

    payload = exc_info.value.to_payload()
    assert payload["code"] == "ACTION_ALREADY_RECORDED"
    assert payload["flag"] == "callDone"


async def test_invalid_transition_lists_available_actions(executor, session_factory):
    lead = await create_lead(session_factory)

    with pytest.raises(InvalidTransition) as exc_info:
        await executor.execute(lead.id, AgentAction.CALL_DONE)

    payload = exc_info.value.to_payload()
    assert payload["currentStatus"] == "NEW"
    assert payload["allowedFrom"] == ["CALL_DUE"]
    assert payload["targetStatus"] == "CALLED"
    assert "send_email_1" in payload["allowedActions"]
    assert "mark_replied" in payload["allowedActions"]
    assert "call_done" not in payload["allowedActions"]
    assert payload["message"] == 'Cannot perform "call_done" when lead is in "NEW". Allowed from: CALL_DUE'


@pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
@pytest.mark.parametrize("action", list(AgentAction))
async def test_no_action_succeeds_from_terminal_status(executor, session_factory, status, action):
    lead = await create_lead(session_factory, status=status)

    with pytest.raises(InvalidTransition):
        await executor.execute(lead.id, action)


@pytest.mark.parametrize("action", list(AgentAction))
async def test_actions_outside_allowed_from_are_invalid(executor, session_factory, action):
    rule = ACTION_RULES[action]
    for status in LeadStatus:
        if status in rule.allowed_from:
            continue
        lead = await create_lead(session_factory, status=status)
        with pytest.raises(InvalidTransition):
            await executor.execute(lead.id, action)


async def test_mark_replied_from_call_due(executor, session_factory):
    lead = await create_lead(session_factory, status=LeadStatus.CALL_DUE)

    outcome = await executor.execute(lead.id, AgentAction.MARK_REPLIED)

    assert outcome.status_after == LeadStatus.REPLIED
    stored = await get_lead(session_factory, lead.id)
    assert stored.replied_at_utc is not None
    assert stored.next_action == "qualify_lead"


async def test_mark_replied_twice_is_rejected(executor, session_factory):
    lead = await create_lead(session_factory, status=LeadStatus.WAITING_D2, replied_at_utc=utcnow())

    with pytest.raises(AlreadyReplied):
        await executor.execute(lead.id, AgentAction.MARK_REPLIED)


async def test_mark_qualified_is_terminal(executor, session_factory):
    lead = await create_lead(session_factory, status=LeadStatus.REPLIED, replied_at_utc=utcnow())

    outcome = await executor.execute(lead.id, AgentAction.MARK_QUALIFIED)

    assert outcome.status_after == LeadStatus.QUALIFIED
    assert outcome.lead.qualified is True
    with pytest.raises(InvalidTransition):
        await executor.execute(lead.id, AgentAction.MARK_NOT_INTERESTED)


async def test_mark_not_interested_closes_lead(executor, session_factory):
    lead = await create_lead(session_factory, status=LeadStatus.WAITING_D1)

    outcome = await executor.execute(lead.id, AgentAction.MARK_NOT_INTERESTED)

    assert outcome.status_after == LeadStatus.NOT_INTERESTED
    assert outcome.lead.qualified is False
    assert outcome.lead.outcome == "not_interested"


async def test_follow_up_without_mobile_completes(executor, session_factory):
    lead = await create_lead(
        session_factory,
        status=LeadStatus.WAITING_D1,
        mobile_valid=False,
        next_action_due_utc=utcnow() + timedelta(hours=3),
    )

    outcome = await executor.execute(lead.id, AgentAction.SEND_DM_2)

    assert [hop.to_status for hop in outcome.transitions] == [LeadStatus.CONTACTED_2, LeadStatus.COMPLETED]
    assert outcome.lead.dm_sent_2 is True
    assert outcome.lead.outcome == "pipeline_complete_no_mobile"


async def test_sent_wa_voice_twice_hits_terminal_status(executor, session_factory):
    lead = await create_lead(session_factory, status=LeadStatus.WA_VOICE_DUE)
    await executor.execute(lead.id, AgentAction.SEND_WA_VOICE)

    with pytest.raises(InvalidTransition) as exc_info:
        await executor.execute(lead.id, AgentAction.SEND_WA_VOICE)

    assert exc_info.value.extra["currentStatus"] == "COMPLETED"
    assert exc_info.value.extra["allowedActions"] == []


async def test_transition_engine_rejection_is_atomic(db_session, session_factory, monkeypatch):
    lead = await create_lead(session_factory, status=LeadStatus.CALL_DUE)

    async def refuse(*args, **kwargs):
        return TransitionResult(success=False, error="simulated precondition failure")

    monkeypatch.setattr(action_service, "advance_lead", refuse)

    with pytest.raises(TransitionEngineRejected) as exc_info:
        await ActionExecutor(db_session, ORG_ID, ACTOR).execute(lead.id, AgentAction.CALL_DONE)

    assert exc_info.value.extra["reason"] == "simulated precondition failure"
    stored = await get_lead(session_factory, lead.id)
    assert stored.call_done is False
    assert stored.status == LeadStatus.CALL_DUE
    assert await count_audit_entries(session_factory, lead.id) == 0


async def test_unknown_action(executor, session_factory):
    lead = await create_lead(session_factory)

    with pytest.raises(UnknownAction):
        await executor.execute(lead.id, "send_carrier_pigeon")


async def test_cross_tenant_lead_is_not_found(db_session, session_factory):
    lead = await create_lead(session_factory, organization_id=OTHER_ORG_ID)

    with pytest.raises(LeadNotFound):
        await ActionExecutor(db_session, ORG_ID, ACTOR).execute(lead.id, AgentAction.SEND_EMAIL_1)


async def test_action_writes_exactly_one_audit_entry(executor, session_factory):
    lead = await create_lead(session_factory, status=LeadStatus.CALL_DUE)

    await executor.execute(lead.id, AgentAction.CALL_DONE)

    entries = await audit_entries(session_factory, lead.id)
    assert len(entries) == 1
    entry = entries[0]
    assert entry.action == "action_logged"
    assert entry.source == AuditSource.AGENT
    assert entry.actor == ACTOR
    assert entry.before == {"status": "CALL_DUE", "callDone": False}
    assert entry.after["status"] == "WAITING_D1"
    assert entry.after["action"] == "call_done"
    assert entry.after["callDone"] is True
    assert entry.after["transitions"] == [
        {"from": "CALL_DUE", "to": "CALLED"},
        {"from": "CALLED", "to": "WAITING_D1"},
    ]


async def test_notes_are_appended(executor, session_factory):
    lead = await create_lead(session_factory, notes="Imported from trade show list")

    await executor.execute(lead.id, AgentAction.SEND_EMAIL_1, notes="Intro sent")

    stored = await get_lead(session_factory, lead.id)
    first, second = stored.notes.split("\n")
    assert first == "Imported from trade show list"
    assert second.startswith("[")
    assert second.endswith("] agent:tester:send_email_1: Intro sent")


def test_append_note_on_empty_notes():
    now = utcnow()
    assert append_note(None, "agent:a", AgentAction.CALL_DONE, "ok", now) == f"[{now.isoformat()}] agent:a:call_done: ok"


async def test_stale_row_is_retried(db_session, session_factory):
    lead = await create_lead(session_factory, status=LeadStatus.CALL_DUE)
    writer = FlakyAuditWriter(failures=1)

    outcome = await ActionExecutor(db_session, ORG_ID, ACTOR, audit_writer=writer).execute(
        lead.id, AgentAction.CALL_DONE
    )

    assert writer.calls == 2
    assert outcome.status_after == LeadStatus.WAITING_D1
    assert await count_audit_entries(session_factory, lead.id) == 1


async def test_persistent_conflict_gives_up(db_session, session_factory):
    lead = await create_lead(session_factory, status=LeadStatus.CALL_DUE)
    writer = FlakyAuditWriter(failures=MAX_ATTEMPTS)

    with pytest.raises(ConcurrentModification):
        await ActionExecutor(db_session, ORG_ID, ACTOR, audit_writer=writer).execute(
            lead.id, AgentAction.CALL_DONE
        )

    stored = await get_lead(session_factory, lead.id)
    assert stored.call_done is False
    assert stored.status == LeadStatus.CALL_DUE


@pytest.fixture
async def file_session_factory(tmp_path):
    """File backed database: every session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


async def test_racing_sessions_record_the_action_once(file_session_factory, monkeypatch):
    lead = await create_lead(file_session_factory, status=LeadStatus.CALL_DUE)
    real_advance = action_service.advance_lead
    raced = []

    async def advance_after_rival_commits(session, *args, **kwargs):
        # The rival commits between our row load and our first write
        if not raced:
            raced.append(True)
            async with file_session_factory() as rival_session:
                await ActionExecutor(rival_session, ORG_ID, "agent:rival").execute(
                    lead.id, AgentAction.CALL_DONE
                )
        return await real_advance(session, *args, **kwargs)

    monkeypatch.setattr(action_service, "advance_lead", advance_after_rival_commits)

    async with file_session_factory() as session:
        with pytest.raises((ActionAlreadyRecorded, ConcurrentModification)):
            await ActionExecutor(session, ORG_ID, ACTOR).execute(lead.id, AgentAction.CALL_DONE)

    entries = await audit_entries(file_session_factory, lead.id)
    assert [e.actor for e in entries] == ["agent:rival"]
    stored = await get_lead(file_session_factory, lead.id)
    assert stored.call_done is True
    assert stored.status == LeadStatus.WAITING_D1
