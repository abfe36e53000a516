import asyncio
from datetime import timedelta

import pytest

from common.enums import AuditSource, LeadStatus
from common.models import utcnow
from scheduler_worker import processor as processor_module
from scheduler_worker.processor import SYSTEM_ACTOR, SchedulerProcessor
from conftest import OTHER_ORG_ID, audit_entries, create_lead, get_lead


@pytest.fixture
def scheduler(session_factory) -> SchedulerProcessor:
    return SchedulerProcessor(session_factory, batch_size=50)


async def test_due_follow_up_wait_advances_through_contacted_2(scheduler, session_factory):
    lead = await create_lead(
        session_factory,
        status=LeadStatus.WAITING_D1,
        mobile_valid=True,
        next_action_due_utc=utcnow() - timedelta(minutes=5),
    )

    report = await scheduler.run_tick()

    assert report.advanced == 1
    assert report.failed == 0
    stored = await get_lead(session_factory, lead.id)
    assert stored.status == LeadStatus.WA_VOICE_DUE

    entries = await audit_entries(session_factory, lead.id)
    assert len(entries) == 1
    assert entries[0].source == AuditSource.SCHEDULER
    assert entries[0].actor == SYSTEM_ACTOR
    assert entries[0].before == {"status": "WAITING_D1"}
    assert [hop["to"] for hop in entries[0].after["transitions"]] == ["CONTACTED_2", "WA_VOICE_DUE"]


async def test_expired_follow_up_window_without_mobile_is_closed_as_skipped(scheduler, session_factory):
    lead = await create_lead(
        session_factory,
        status=LeadStatus.WAITING_D1,
        mobile_valid=False,
        next_action_due_utc=utcnow() - timedelta(minutes=5),
    )

    report = await scheduler.run_tick()

    assert report.advanced == 1
    stored = await get_lead(session_factory, lead.id)
    assert stored.status == LeadStatus.COMPLETED
    assert stored.outcome == "follow_up_skipped"
    assert stored.email_sent_2 is False
    assert stored.dm_sent_2 is False


async def test_due_call_window_moves_to_call_due(scheduler, session_factory):
    lead = await create_lead(
        session_factory,
        status=LeadStatus.WAITING_D2,
        next_action_due_utc=utcnow() - timedelta(seconds=1),
    )

    report = await scheduler.run_tick()

    assert report.advanced == 1
    assert report.outcomes[0].status_after == LeadStatus.CALL_DUE
    stored = await get_lead(session_factory, lead.id)
    assert stored.status == LeadStatus.CALL_DUE
    assert stored.next_action == "call_lead"


async def test_leads_not_yet_due_or_not_waiting_are_ignored(scheduler, session_factory):
    future = await create_lead(
        session_factory,
        status=LeadStatus.WAITING_D2,
        next_action_due_utc=utcnow() + timedelta(days=1),
    )
    new_lead = await create_lead(session_factory, next_action_due_utc=utcnow() - timedelta(days=1))

    report = await scheduler.run_tick()

    assert report.advanced == report.skipped == report.failed == 0
    assert (await get_lead(session_factory, future.id)).status == LeadStatus.WAITING_D2
    assert (await get_lead(session_factory, new_lead.id)).status == LeadStatus.NEW


async def test_sweep_covers_every_organization(scheduler, session_factory):
    past = utcnow() - timedelta(hours=1)
    await create_lead(session_factory, status=LeadStatus.WAITING_D2, next_action_due_utc=past)
    await create_lead(
        session_factory,
        status=LeadStatus.WAITING_D2,
        organization_id=OTHER_ORG_ID,
        next_action_due_utc=past,
    )

    report = await scheduler.run_tick()

    assert report.advanced == 2


async def test_second_tick_does_not_double_advance(scheduler, session_factory):
    lead = await create_lead(
        session_factory,
        status=LeadStatus.WAITING_D2,
        next_action_due_utc=utcnow() - timedelta(minutes=1),
    )

    first = await scheduler.run_tick()
    second = await scheduler.run_tick()

    assert first.advanced == 1
    assert second.advanced == 0
    assert len(await audit_entries(session_factory, lead.id)) == 1


async def test_one_failing_lead_does_not_abort_the_batch(scheduler, session_factory, monkeypatch):
    past = utcnow() - timedelta(hours=1)
    broken = await create_lead(session_factory, status=LeadStatus.WAITING_D2, next_action_due_utc=past)
    healthy = await create_lead(
        session_factory, status=LeadStatus.WAITING_D2, next_action_due_utc=past + timedelta(minutes=1)
    )

    real_advance = processor_module.advance_lead

    async def flaky_advance(session, lead_id, *args, **kwargs):
        if lead_id == broken.id:
            raise RuntimeError("database hiccup")
        return await real_advance(session, lead_id, *args, **kwargs)

    monkeypatch.setattr(processor_module, "advance_lead", flaky_advance)

    report = await scheduler.run_tick()

    assert report.failed == 1
    assert report.advanced == 1
    outcomes = {o.lead_id: o for o in report.outcomes}
    assert outcomes[broken.id].result == "failed"
    assert outcomes[broken.id].reason == "database hiccup"
    assert (await get_lead(session_factory, broken.id)).status == LeadStatus.WAITING_D2
    assert (await get_lead(session_factory, healthy.id)).status == LeadStatus.CALL_DUE


async def test_lead_moved_after_scan_is_skipped(scheduler, session_factory, monkeypatch):
    lead = await create_lead(
        session_factory,
        status=LeadStatus.WAITING_D2,
        next_action_due_utc=utcnow() - timedelta(minutes=1),
    )
    real_find_due = scheduler._find_due

    async def find_then_reply(now):
        due = await real_find_due(now)
        async with session_factory() as session:
            async with session.begin():
                stored = await session.get(processor_module.Lead, lead.id)
                stored.status = LeadStatus.NOT_INTERESTED
        return due

    monkeypatch.setattr(scheduler, "_find_due", find_then_reply)

    report = await scheduler.run_tick()

    assert report.skipped == 1
    assert report.outcomes[0].reason == "status changed to NOT_INTERESTED"
    assert (await get_lead(session_factory, lead.id)).status == LeadStatus.NOT_INTERESTED


async def test_batch_size_limits_a_tick(session_factory):
    past = utcnow() - timedelta(hours=1)
    for _ in range(3):
        await create_lead(session_factory, status=LeadStatus.WAITING_D2, next_action_due_utc=past)

    report = await SchedulerProcessor(session_factory, batch_size=2).run_tick()

    assert report.advanced == 2


async def test_overlapping_ticks_are_serialized(scheduler, session_factory):
    await create_lead(
        session_factory,
        status=LeadStatus.WAITING_D2,
        next_action_due_utc=utcnow() - timedelta(minutes=1),
    )

    first, second = await asyncio.gather(scheduler.run_tick(), scheduler.run_tick())

    assert first.advanced + second.advanced == 1
