import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional, Tuple, TypeVar
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import Response
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from agent_api.action_service import ActionExecutor
from agent_api.dependencies import AgentContext, get_agent_context, get_idempotency_cache
from agent_api.idempotency import IdempotencyCache, IdempotentRequest, request_fingerprint, run_idempotent
from common.audit import AuditLogWriter
from common.config import settings
from common.database import get_async_session
from common.enums import AuditSource, LeadStatus
from common.exceptions import (
    ActionTimeout,
    ConcurrentModification,
    LeadNotFound,
    TransitionEngineRejected,
)
from common.models import AuditLog, Lead, utcnow
from common.schemas import (
    ActionRequest,
    ActionResponse,
    AdvanceRequest,
    AdvanceResponse,
    AuditEntryResponse,
    AuditTrailResponse,
    BulkFailure,
    LeadBulkCreate,
    LeadBulkResponse,
    LeadCreate,
    LeadCreatedResponse,
    LeadDetailResponse,
    LeadListResponse,
    LeadResponse,
    LeadUpdate,
    PipelineSteps,
    TransitionHop,
)
from common.transitions import advance_lead, available_actions, get_next_steps, lead_query, wire_name


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Non-nullable columns, an explicit null in a PATCH leaves them unchanged
REQUIRED_CONTACT_FIELDS = frozenset({"company", "key_decision_maker", "emails", "mobile_valid"})

ERROR_RESPONSES = {
    400: {"description": "Validation error or unknown action"},
    404: {"description": "Lead not found in the caller's organization"},
    409: {"description": "Transition conflict or Idempotency-Key reuse"},
}

leads_router = APIRouter(
    prefix="/leads",
    tags=["leads"],
    responses=ERROR_RESPONSES,
)


def _guard(
    request: Request,
    context: AgentContext,
    idempotency_key: Optional[str],
    cache: IdempotencyCache,
    body: Any,
) -> IdempotentRequest:
    fingerprint = request_fingerprint(request.method, request.url.path, body)
    return IdempotentRequest(
        cache,
        context.organization_id,
        idempotency_key,
        fingerprint,
        settings.IDEMPOTENCY_TTL_SECONDS,
    )


async def _within_timeout(operation: Awaitable[T]) -> T:
    """Cancelling the operation rolls back its open transaction."""
    try:
        return await asyncio.wait_for(operation, timeout=settings.ACTION_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("Operation exceeded %ss and was rolled back", settings.ACTION_TIMEOUT_SECONDS)
        raise ActionTimeout(settings.ACTION_TIMEOUT_SECONDS)


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _new_lead(data: LeadCreate, organization_id: UUID) -> Lead:
    now = utcnow()
    return Lead(
        organization_id=organization_id,
        **data.model_dump(mode="json", exclude={"notes"}),
        notes=data.notes,
        status=LeadStatus.NEW,
        next_action="send_first_touch",
        next_action_due_utc=now,
        created_at=now,
        updated_at=now,
    )


async def _audit_created(db: AsyncSession, lead: Lead, actor: str) -> None:
    await AuditLogWriter().record(
        db,
        lead,
        actor=actor,
        action="lead_created",
        before=None,
        after={"company": lead.company, "keyDecisionMaker": lead.key_decision_maker, "status": lead.status},
        source=AuditSource.API,
    )


async def _get_lead(db: AsyncSession, lead_id: UUID, organization_id: UUID, lock: bool = False) -> Lead:
    result = await db.execute(lead_query(lead_id, organization_id, lock=lock))
    lead = result.scalar_one_or_none()
    if lead is None:
        raise LeadNotFound(lead_id)
    return lead


@leads_router.post(
    "",
    response_model=LeadCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_lead(
    lead_data: LeadCreate,
    request: Request,
    context: AgentContext = Depends(get_agent_context),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    cache: IdempotencyCache = Depends(get_idempotency_cache),
    db: AsyncSession = Depends(get_async_session),
) -> Response:
    """
    Creates a new lead in NEW, due for its first touch immediately.

    Args:
        lead_data: Contact data for the lead
        idempotency_key: Optional key, a retry with the same key replays the
            stored 201 response instead of creating a second lead

    Returns:
        LeadCreatedResponse (201), or the stored response on replay
    """
    guard = _guard(request, context, idempotency_key, cache, lead_data.model_dump(mode="json"))

    async def handler() -> Tuple[int, Dict[str, Any]]:
        async with db.begin():
            lead = _new_lead(lead_data, context.organization_id)
            db.add(lead)
            await db.flush()
            await _audit_created(db, lead, context.actor)
        logger.info("Lead %s created for organization %s", lead.id, context.organization_id)
        payload = LeadCreatedResponse(
            lead=LeadResponse.model_validate(lead),
            request_id=request.state.request_id,
        )
        return status.HTTP_201_CREATED, _dump(payload)

    return await run_idempotent(guard, handler)


@leads_router.post(
    "/bulk",
    response_model=LeadBulkResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_leads_bulk(
    bulk: LeadBulkCreate,
    request: Request,
    context: AgentContext = Depends(get_agent_context),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    cache: IdempotencyCache = Depends(get_idempotency_cache),
    db: AsyncSession = Depends(get_async_session),
) -> Response:
    """
    Creates up to 100 leads. Each lead is committed on its own, so one failing
    row is reported in ``failures`` without losing the others.
    """
    guard = _guard(request, context, idempotency_key, cache, bulk.model_dump(mode="json"))

    async def handler() -> Tuple[int, Dict[str, Any]]:
        created: List[Lead] = []
        failures: List[BulkFailure] = []
        for index, lead_data in enumerate(bulk.leads):
            try:
                async with db.begin():
                    lead = _new_lead(lead_data, context.organization_id)
                    db.add(lead)
                    await db.flush()
                    await _audit_created(db, lead, context.actor)
                created.append(lead)
            except SQLAlchemyError as e:
                logger.warning("Bulk lead %d (%s) failed: %s", index, lead_data.company, e)
                failures.append(BulkFailure(index=index, company=lead_data.company, error=str(e)))

        logger.info("Bulk create: %d created, %d failed", len(created), len(failures))
        payload = LeadBulkResponse(
            created=len(created),
            errors=len(failures),
            leads=[LeadResponse.model_validate(lead) for lead in created],
            failures=failures,
        )
        return status.HTTP_201_CREATED, _dump(payload)

    return await run_idempotent(guard, handler)


@leads_router.get("", response_model=LeadListResponse)
async def list_leads(
    status_filter: Optional[LeadStatus] = Query(None, alias="status"),
    due_before: Optional[datetime] = Query(None, alias="dueBefore"),
    limit: int = Query(50, ge=1, le=100),
    context: AgentContext = Depends(get_agent_context),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Lists the organization's leads, soonest due first.

    Args:
        status_filter: Canonical status to filter on
        due_before: Only leads whose next action is due before this time
        limit: Page size, at most 100
    """
    stmt = select(Lead).where(Lead.organization_id == context.organization_id)
    if status_filter is not None:
        stmt = stmt.where(Lead.status == status_filter)
    if due_before is not None:
        stmt = stmt.where(Lead.next_action_due_utc <= due_before)
    stmt = stmt.order_by(Lead.next_action_due_utc.asc().nulls_last(), Lead.created_at).limit(limit)

    leads = (await db.execute(stmt)).scalars().all()
    return LeadListResponse(
        leads=[LeadResponse.model_validate(lead) for lead in leads],
        count=len(leads),
    )


@leads_router.get("/{lead_id}", response_model=LeadDetailResponse)
async def get_lead(
    lead_id: UUID,
    context: AgentContext = Depends(get_agent_context),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Retrieves a lead with the actions an agent may take next and the status
    edges open from its current position.

    Raises:
        LeadNotFound: 404 if the lead is not in the caller's organization
    """
    lead = await _get_lead(db, lead_id, context.organization_id)
    return LeadDetailResponse(
        lead=LeadResponse.model_validate(lead),
        available_actions=available_actions(lead.status),
        pipeline=PipelineSteps.model_validate(get_next_steps(lead)),
    )


@leads_router.patch("/{lead_id}", response_model=LeadResponse)
async def update_lead(
    lead_id: UUID,
    updates: LeadUpdate,
    context: AgentContext = Depends(get_agent_context),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Updates contact fields. Status, action flags and notes are rejected by the
    schema; status only moves through actions and the scheduler.

    Raises:
        LeadNotFound: 404 if the lead is not in the caller's organization
        ConcurrentModification: 409 if the row changed during the update
    """
    changes = {
        name: value
        for name, value in updates.model_dump(mode="json", exclude_unset=True).items()
        if value is not None or name not in REQUIRED_CONTACT_FIELDS
    }
    try:
        async with db.begin():
            lead = await _get_lead(db, lead_id, context.organization_id, lock=True)
            before: Dict[str, Any] = {}
            after: Dict[str, Any] = {}
            for name, value in changes.items():
                if getattr(lead, name) != value:
                    before[wire_name(name)] = getattr(lead, name)
                    after[wire_name(name)] = value
                    setattr(lead, name, value)
            if after:
                await AuditLogWriter().record(
                    db, lead,
                    actor=context.actor,
                    action="field_update",
                    before=before,
                    after=after,
                    source=AuditSource.API,
                )
    except StaleDataError:
        raise ConcurrentModification(lead_id)
    return LeadResponse.model_validate(lead)


@leads_router.get("/{lead_id}/audit", response_model=AuditTrailResponse)
async def get_audit_trail(
    lead_id: UUID,
    context: AgentContext = Depends(get_agent_context),
    db: AsyncSession = Depends(get_async_session),
):
    """Audit entries for a lead, oldest first."""
    lead = await _get_lead(db, lead_id, context.organization_id)
    stmt = (
        select(AuditLog)
        .where(AuditLog.lead_id == lead.id, AuditLog.organization_id == context.organization_id)
        .order_by(AuditLog.created_at)
    )
    entries = (await db.execute(stmt)).scalars().all()
    return AuditTrailResponse(
        lead_id=lead.id,
        current_status=lead.status,
        count=len(entries),
        entries=[AuditEntryResponse.model_validate(entry) for entry in entries],
    )


@leads_router.post("/{lead_id}/actions", response_model=ActionResponse)
async def record_action(
    lead_id: UUID,
    body: ActionRequest,
    request: Request,
    context: AgentContext = Depends(get_agent_context),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    cache: IdempotencyCache = Depends(get_idempotency_cache),
    db: AsyncSession = Depends(get_async_session),
) -> Response:
    """
    Records an agent action and advances the lead through the pipeline.

    Args:
        lead_id: Lead the action was performed on
        body: Action name and optional notes
        idempotency_key: Optional key, a retry replays the first response

    Returns:
        ActionResponse with the lead, statuses before/after and the applied hops

    Raises:
        InvalidTransition, ActionAlreadyRecorded, AlreadyReplied,
        TransitionEngineRejected: 409, nothing is committed
        ActionTimeout: 503 if the action did not finish in time
    """
    guard = _guard(request, context, idempotency_key, cache, body.model_dump(mode="json"))

    async def handler() -> Tuple[int, Dict[str, Any]]:
        executor = ActionExecutor(db, context.organization_id, context.actor)
        outcome = await _within_timeout(executor.execute(lead_id, body.action, body.notes))
        payload = ActionResponse(
            lead=LeadResponse.model_validate(outcome.lead),
            action=outcome.action,
            status_before=outcome.status_before,
            status_after=outcome.status_after,
            transitions=[
                TransitionHop(from_status=hop.from_status, to_status=hop.to_status)
                for hop in outcome.transitions
            ],
            request_id=request.state.request_id,
        )
        return status.HTTP_200_OK, _dump(payload)

    return await run_idempotent(guard, handler)


@leads_router.post("/{lead_id}/advance", response_model=AdvanceResponse)
async def advance(
    lead_id: UUID,
    body: AdvanceRequest,
    request: Request,
    context: AgentContext = Depends(get_agent_context),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    cache: IdempotencyCache = Depends(get_idempotency_cache),
    db: AsyncSession = Depends(get_async_session),
) -> Response:
    """
    Asks the transition engine to move a lead to ``targetStatus`` directly.

    Raises:
        LeadNotFound: 404 if the lead is not in the caller's organization
        TransitionEngineRejected: 409 with the engine's reason
    """
    guard = _guard(request, context, idempotency_key, cache, body.model_dump(mode="json"))

    async def run():
        try:
            async with db.begin():
                lead = await _get_lead(db, lead_id, context.organization_id, lock=True)
                status_before = LeadStatus(lead.status)
                result = await advance_lead(
                    db,
                    lead_id,
                    context.organization_id,
                    body.target_status,
                    actor=context.actor,
                    source=AuditSource.API,
                )
                if not result.success:
                    raise TransitionEngineRejected(
                        result.error,
                        current_status=status_before.value,
                        target_status=body.target_status.value,
                    )
        except StaleDataError:
            raise ConcurrentModification(lead_id)
        return status_before, result

    async def handler() -> Tuple[int, Dict[str, Any]]:
        status_before, result = await _within_timeout(run())
        payload = AdvanceResponse(
            lead=LeadResponse.model_validate(result.lead),
            status_before=status_before,
            status_after=result.lead.status,
            transitions=[
                TransitionHop(from_status=hop.from_status, to_status=hop.to_status)
                for hop in result.transitions
            ],
            request_id=request.state.request_id,
        )
        return status.HTTP_200_OK, _dump(payload)

    return await run_idempotent(guard, handler)
