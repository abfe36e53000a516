from datetime import datetime
from uuid import UUID
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from common.enums import AgentAction, AuditSource, LeadStatus
from common.models import ensure_utc


class CamelModel(BaseModel):
    """Base schema exposing camelCase field names on the wire."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class LeadContact(CamelModel):
    """Contact fields shared by lead creation and lead responses."""
    company: str = Field(min_length=1, max_length=255)
    key_decision_maker: str = Field(min_length=1, max_length=255)
    role: Optional[str] = None
    website: Optional[str] = None
    emails: List[EmailStr] = Field(default_factory=list)
    number: Optional[str] = None
    mobile_valid: bool = False
    facebook_clean: Optional[str] = None
    insta_clean: Optional[str] = None
    linkedin_clean: Optional[str] = None


class LeadCreate(LeadContact):
    """Schema for creating a new lead."""
    notes: Optional[str] = None


class LeadBulkCreate(CamelModel):
    """Schema for creating up to 100 leads in one request."""
    leads: List[LeadCreate] = Field(min_length=1, max_length=100)


class LeadUpdate(CamelModel):
    """
    Schema for updating non-pipeline lead fields.

    Status, action flags and notes are deliberately absent: status moves only
    through actions or the scheduler and notes are append-only.
    """
    model_config = ConfigDict(extra="forbid")

    company: Optional[str] = Field(default=None, min_length=1, max_length=255)
    key_decision_maker: Optional[str] = Field(default=None, min_length=1, max_length=255)
    role: Optional[str] = None
    website: Optional[str] = None
    emails: Optional[List[EmailStr]] = None
    number: Optional[str] = None
    mobile_valid: Optional[bool] = None
    facebook_clean: Optional[str] = None
    insta_clean: Optional[str] = None
    linkedin_clean: Optional[str] = None


class LeadResponse(LeadContact):
    """Schema for lead API responses."""
    id: UUID
    organization_id: UUID
    emails: List[str] = Field(default_factory=list)

    status: LeadStatus
    email_sent_1: bool
    dm_li_sent_1: bool
    dm_fb_sent_1: bool
    dm_ig_sent_1: bool
    call_done: bool
    email_sent_2: bool
    dm_sent_2: bool
    wa_voice_sent: bool
    replied_at_utc: Optional[datetime] = None
    qualified: Optional[bool] = None
    outcome: Optional[str] = None

    next_action: Optional[str] = None
    next_action_due_utc: Optional[datetime] = None
    last_action_utc: Optional[datetime] = None
    notes: Optional[str] = None

    created_at: datetime
    updated_at: datetime

    @field_validator(
        "replied_at_utc", "next_action_due_utc", "last_action_utc", "created_at", "updated_at"
    )
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class TransitionHop(BaseModel):
    """A single status change applied by the transition engine."""
    model_config = ConfigDict(populate_by_name=True)

    from_status: LeadStatus = Field(alias="from")
    to_status: LeadStatus = Field(alias="to")


class PossibleTransition(CamelModel):
    to: LeadStatus
    allowed: bool
    reason: Optional[str] = None


class PipelineSteps(CamelModel):
    current_status: LeadStatus
    possible_transitions: List[PossibleTransition]


class LeadDetailResponse(CamelModel):
    """Lead plus the actions and edges open from its current status."""
    lead: LeadResponse
    available_actions: List[AgentAction]
    pipeline: PipelineSteps


class LeadListResponse(CamelModel):
    leads: List[LeadResponse]
    count: int


class LeadCreatedResponse(CamelModel):
    lead: LeadResponse
    request_id: str


class BulkFailure(CamelModel):
    index: int
    company: str
    error: str


class LeadBulkResponse(CamelModel):
    created: int
    errors: int
    leads: List[LeadResponse]
    failures: List[BulkFailure]


class ActionRequest(CamelModel):
    """Request body for POST /leads/{id}/actions."""
    action: AgentAction
    notes: Optional[str] = Field(default=None, max_length=5000)


class AdvanceRequest(CamelModel):
    """Request body for POST /leads/{id}/advance."""
    target_status: LeadStatus


class ActionResponse(CamelModel):
    lead: LeadResponse
    action: AgentAction
    status_before: LeadStatus
    status_after: LeadStatus
    transitions: List[TransitionHop]
    request_id: str


class AdvanceResponse(CamelModel):
    lead: LeadResponse
    status_before: LeadStatus
    status_after: LeadStatus
    transitions: List[TransitionHop]
    request_id: str


class AuditEntryResponse(CamelModel):
    id: UUID
    lead_id: UUID
    actor: str
    action: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    source: AuditSource
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class AuditTrailResponse(CamelModel):
    lead_id: UUID
    current_status: LeadStatus
    count: int
    entries: List[AuditEntryResponse]


class ActionRuleResponse(CamelModel):
    allowed_from: List[LeadStatus]
    target_status: Optional[LeadStatus]
    flag: Optional[str]


class CatalogResponse(CamelModel):
    """Discovery document listing the canonical enums and the rule table."""
    statuses: List[LeadStatus]
    actions: List[AgentAction]
    terminal_statuses: List[LeadStatus]
    wait_statuses: List[LeadStatus]
    rules: Dict[AgentAction, ActionRuleResponse]
    available_actions: Dict[LeadStatus, List[AgentAction]]
