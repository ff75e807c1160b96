"""Matching rule models: versioned definitions, history and approvals."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from recon_matching.database import Base
from recon_matching.models.base import JSONType, StringIDMixin, TimestampMixin, utcnow


class RuleStatus(str, Enum):
    """Lifecycle status of a matching rule."""

    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    ACTIVE = "active"
    INACTIVE = "inactive"
    REJECTED = "rejected"


class RuleChangeType(str, Enum):
    """Kind of change recorded in rule history."""

    CREATED = "created"
    UPDATED = "updated"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVATED = "activated"
    DEACTIVATED = "deactivated"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class MatchingRule(Base, StringIDMixin, TimestampMixin):
    """Operator-curated rule: ordered conditions plus a match configuration.

    Conditions and configuration are stored as JSON documents and parsed into
    schema objects by the rule evaluator.
    """

    __tablename__ = "matching_rules"

    rule_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[RuleStatus] = mapped_column(SQLEnum(RuleStatus), nullable=False, default=RuleStatus.DRAFT)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    conditions: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    match_configuration: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tags: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    applies_to: Mapped[dict[str, list[str]]] = mapped_column(JSONType, nullable=False, default=dict)

    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    updated_by: Mapped[str] = mapped_column(String(128), nullable=False)
    approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    times_applied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_matches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RuleVersion(Base, StringIDMixin):
    """Immutable snapshot of a rule at one version."""

    __tablename__ = "rule_versions"

    rule_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("matching_rules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    conditions: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    match_configuration: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    changed_by: Mapped[str] = mapped_column(String(128), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    change_type: Mapped[RuleChangeType] = mapped_column(SQLEnum(RuleChangeType), nullable=False)
    change_description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    previous_version: Mapped[int | None] = mapped_column(Integer, nullable=True)


class ApprovalRequest(Base, StringIDMixin):
    """Request to approve a rule version, with the changes under review."""

    __tablename__ = "rule_approval_requests"

    rule_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("matching_rules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    rule_version: Mapped[int] = mapped_column(Integer, nullable=False)
    requested_by: Mapped[str] = mapped_column(String(128), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    status: Mapped[ApprovalStatus] = mapped_column(
        SQLEnum(ApprovalStatus), nullable=False, default=ApprovalStatus.PENDING
    )
    reviewed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    changes: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
