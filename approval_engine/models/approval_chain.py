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
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_engine.database import Base
from approval_engine.domain import utcnow


class ApprovalChainModel(Base):
    __tablename__ = "approval_chains"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    conditions: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    levels: Mapped[list["ApprovalChainLevelModel"]] = relationship(
        back_populates="chain",
        cascade="all, delete-orphan",
        order_by="ApprovalChainLevelModel.level",
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_approval_chains_tenant_entity", "tenant_id", "entity_type"),
        # At most one default chain per tenant + entity type
        Index(
            "uq_approval_chains_default",
            "tenant_id",
            "entity_type",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )


class ApprovalChainLevelModel(Base):
    __tablename__ = "approval_chain_levels"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    chain_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("approval_chains.id", ondelete="CASCADE"), nullable=False
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    approver_type: Mapped[str] = mapped_column(String(50), nullable=False)
    approver_user_id: Mapped[Optional[str]] = mapped_column(String(36))
    approver_role_id: Mapped[Optional[str]] = mapped_column(String(100))
    min_approvers: Mapped[int] = mapped_column(Integer, default=1)
    allow_delegation: Mapped[bool] = mapped_column(Boolean, default=False)
    threshold_min: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2))
    threshold_max: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2))
    timeout_hours: Mapped[Optional[int]] = mapped_column(Integer)
    escalation_level: Mapped[Optional[int]] = mapped_column(Integer)

    chain: Mapped[ApprovalChainModel] = relationship(back_populates="levels")

    __table_args__ = (
        CheckConstraint("level > 0", name="chk_chain_level_positive"),
        CheckConstraint("min_approvers > 0", name="chk_chain_level_min_approvers"),
        UniqueConstraint("chain_id", "level", name="uq_chain_level_number"),
    )
