from datetime import datetime, timezone
from uuid import UUID, uuid4
from typing import Any, List, Optional, Annotated
from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, Index
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, DeclarativeBase

from common.enums import AuditSource, LeadStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends that drop tzinfo."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


uuid_pk = Annotated[UUID, mapped_column(primary_key=True, default=uuid4)]
created_dt = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), default=utcnow, nullable=False),
]


class Base(DeclarativeBase):
    pass


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid_pk]
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)

    company: Mapped[str] = mapped_column(String(255), nullable=False)
    key_decision_maker: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    emails: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    mobile_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    facebook_clean: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    insta_clean: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    linkedin_clean: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Pipeline position, the single source of truth
    status: Mapped[LeadStatus] = mapped_column(
        SQLEnum(LeadStatus, name="lead_status", validate_strings=True),
        nullable=False,
        default=LeadStatus.NEW,
    )

    # One-shot action flags
    email_sent_1: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dm_li_sent_1: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dm_fb_sent_1: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dm_ig_sent_1: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    call_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_sent_2: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dm_sent_2: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    wa_voice_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    replied_at_utc: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    qualified: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    outcome: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    next_action: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    next_action_due_utc: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_action_utc: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Optimistic concurrency: every flush checks and bumps the row version
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[created_dt]
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_leads_status_due", "status", "next_action_due_utc"),
    )


class AuditLog(Base):
    """Append-only record of lead mutations. Rows are never updated or deleted."""
    __tablename__ = "audit_logs"

    id: Mapped[uuid_pk]
    lead_id: Mapped[UUID] = mapped_column(ForeignKey("leads.id"), nullable=False, index=True)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)

    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    before: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    after: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    source: Mapped[AuditSource] = mapped_column(
        SQLEnum(AuditSource, name="audit_source", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )

    created_at: Mapped[created_dt]
