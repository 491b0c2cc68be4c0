import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    DateTime,
    Numeric,
    Text,
    JSON,
    ForeignKey,
    CheckConstraint,
    Index,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_engine.database import Base
from approval_engine.domain import utcnow


class ApprovalRequestModel(Base):
    __tablename__ = "approval_requests"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    # No FK: finished requests keep the id of a chain that may since have been deleted
    chain_id: Mapped[str] = mapped_column(String(36), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    entity_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2))
    requester_id: Mapped[str] = mapped_column(String(36), nullable=False)
    status: Mapped[str] = mapped_column(String(50), default="PENDING")
    current_level: Mapped[int] = mapped_column(Integer, default=1)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    steps: Mapped[list["ApprovalStepModel"]] = relationship(
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="ApprovalStepModel.requested_at",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("current_level > 0", name="chk_request_level_positive"),
        Index("idx_approval_requests_chain_status", "chain_id", "status"),
        Index("idx_approval_requests_status", "status"),
        # One open request per entity
        Index(
            "uq_approval_requests_open_entity",
            "tenant_id",
            "entity_type",
            "entity_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'IN_PROGRESS')"),
            sqlite_where=text("status IN ('PENDING', 'IN_PROGRESS')"),
        ),
    )


class ApprovalStepModel(Base):
    __tablename__ = "approval_steps"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    request_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("approval_requests.id", ondelete="CASCADE"), nullable=False
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[str] = mapped_column(String(36), nullable=False)
    status: Mapped[str] = mapped_column(String(50), default="PENDING")
    action: Mapped[str] = mapped_column(String(50), default="SUBMIT")
    delegated_from: Mapped[Optional[str]] = mapped_column(String(36))
    comments: Mapped[Optional[str]] = mapped_column(Text)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_overdue: Mapped[bool] = mapped_column(Boolean, default=False)
    escalated_from: Mapped[Optional[str]] = mapped_column(String(36))

    request: Mapped[ApprovalRequestModel] = relationship(back_populates="steps")

    __table_args__ = (
        CheckConstraint("level > 0", name="chk_step_level_positive"),
        Index("idx_approval_steps_approver", "approver_id", "status"),
        Index("idx_approval_steps_request_level", "request_id", "level"),
    )
