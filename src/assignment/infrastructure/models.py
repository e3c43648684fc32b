"""
Assignment Infrastructure Models
=================================

SQLAlchemy ORM models for the assignment module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import Boolean, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config import AvailabilityStatus, TicketPriority, TicketStatus
from infrastructure.database import Base, UTCDateTime


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketModel(Base):
    """
    Database model for Ticket entity.

    Maps to the 'maintenance_requests' table owned by the ticket store.
    """
    __tablename__ = "maintenance_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default=TicketPriority.MEDIUM.value)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TicketStatus.PENDING.value)
    assigned_group: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Orchestrated fields
    assigned_to: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    assignment_acknowledged_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_escalation_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    auto_assignment_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Set by the ticket store
    sla_breach_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    is_crisis: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    work_started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Completion evidence
    before_photo_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    after_photo_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    closure_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_requests_status_next_escalation", "status", "next_escalation_at"),
        Index("ix_requests_status_sla_breach", "status", "sla_breach_at"),
    )


class StaffModel(Base):
    """
    Database model for a staff member's availability record.

    Maps to the 'staff_availability' table owned by the staff directory.
    """
    __tablename__ = "staff_availability"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    availability_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AvailabilityStatus.AVAILABLE.value
    )
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_offline_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_assigned_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_status_change: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    memberships: Mapped[List["StaffGroupMembershipModel"]] = relationship(
        back_populates="staff",
        lazy="selectin",
        cascade="all, delete-orphan",
    )


class StaffGroupMembershipModel(Base):
    """(group, staff_level) pair for one staff member."""
    __tablename__ = "staff_group_members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    staff_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("staff_availability.id", ondelete="CASCADE"), nullable=False
    )
    group_name: Mapped[str] = mapped_column(String(255), nullable=False)
    staff_level: Mapped[int] = mapped_column(Integer, nullable=False)

    staff: Mapped[StaffModel] = relationship(back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("staff_id", "group_name", name="uq_staff_group"),
        Index("ix_staff_group_level", "group_name", "staff_level"),
    )


class AssignmentHistoryModel(Base):
    """Append-only 'ticket_assignment_history' table."""
    __tablename__ = "ticket_assignment_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    ticket_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    assigned_to: Mapped[str] = mapped_column(String(36), nullable=False)
    previous_assignee: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    assignment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)


class EscalationLogModel(Base):
    """Append-only 'escalation_logs' table."""
    __tablename__ = "escalation_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    request_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    escalation_type: Mapped[str] = mapped_column(String(50), nullable=False)
    escalation_reason: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)


class NotificationModel(Base):
    """Outbound 'notifications' table read by the notification sink."""
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    action_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    details: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
