"""
Assignment Domain Entities
===========================

Pure Python domain entities for ticket assignment and escalation.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns. Every state
change the orchestrator makes goes through a method on these classes,
so the escalation invariants live in exactly one place.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Optional

from config import (
    ACTIVE_STATUSES,
    MAX_ESCALATION_LEVEL,
    AssignmentType,
    AvailabilityStatus,
    EscalationType,
    NotificationType,
    StaffRole,
    TicketPriority,
    TicketStatus,
)
from core import DomainException

DEFAULT_CLOSURE_REASON = "Work completed successfully"


@dataclass(frozen=True)
class TicketVersion:
    """
    Snapshot of the orchestrated ticket fields as they were read.

    Conditional updates only land when the stored row still matches it.
    """
    assigned_to: Optional[str]
    assignment_acknowledged_at: Optional[datetime]
    next_escalation_at: Optional[datetime]
    escalation_level: int
    status: TicketStatus
    before_photo_url: Optional[str] = None
    after_photo_url: Optional[str] = None


@dataclass
class Ticket:
    """
    Ticket entity representing a maintenance/service request.

    The ticket store owns creation and manual status changes; the
    orchestrator only moves the assignment and escalation fields.
    """

    id: str
    title: str
    priority: TicketPriority
    status: TicketStatus
    assigned_group: str

    created_at: datetime
    updated_at: datetime

    assigned_to: Optional[str] = None
    escalation_level: int = 0
    assignment_acknowledged_at: Optional[datetime] = None
    next_escalation_at: Optional[datetime] = None
    sla_breach_at: Optional[datetime] = None
    is_crisis: bool = False
    auto_assignment_attempts: int = 0
    work_started_at: Optional[datetime] = None
    before_photo_url: Optional[str] = None
    after_photo_url: Optional[str] = None
    completed_at: Optional[datetime] = None
    closure_reason: Optional[str] = None

    def __post_init__(self):
        """Validate ticket on initialization."""
        if not 0 <= self.escalation_level <= MAX_ESCALATION_LEVEL:
            raise ValueError(
                f"escalation_level must be between 0 and {MAX_ESCALATION_LEVEL}"
            )
        if self.auto_assignment_attempts < 0:
            raise ValueError("auto_assignment_attempts cannot be negative")

    @property
    def is_active(self) -> bool:
        """Only pending and in-progress tickets are orchestrated."""
        return self.status in ACTIVE_STATUSES

    @property
    def is_pending_acknowledgment(self) -> bool:
        """Assigned but the assignee has not confirmed receipt."""
        return self.assigned_to is not None and self.assignment_acknowledged_at is None

    @property
    def is_at_max_escalation(self) -> bool:
        return self.escalation_level >= MAX_ESCALATION_LEVEL

    def version(self) -> TicketVersion:
        """Snapshot used as the expected value of a conditional update."""
        return TicketVersion(
            assigned_to=self.assigned_to,
            assignment_acknowledged_at=self.assignment_acknowledged_at,
            next_escalation_at=self.next_escalation_at,
            escalation_level=self.escalation_level,
            status=self.status,
            before_photo_url=self.before_photo_url,
            after_photo_url=self.after_photo_url,
        )

    def is_acknowledgment_overdue(self, now: datetime) -> bool:
        return (
            self.is_active
            and self.is_pending_acknowledgment
            and self.next_escalation_at is not None
            and self.next_escalation_at <= now
        )

    def is_sla_escalation_due(self, now: datetime) -> bool:
        """
        Breached, acknowledged, not terminal, and the previous escalation
        window (if any) has run out.
        """
        return (
            self.is_active
            and self.assignment_acknowledged_at is not None
            and self.sla_breach_at is not None
            and self.sla_breach_at <= now
            and not self.is_at_max_escalation
            and (self.next_escalation_at is None or self.next_escalation_at <= now)
        )

    def assign(
        self,
        staff_id: str,
        now: datetime,
        acknowledgment_window: timedelta,
        automatic: bool = True
    ) -> Optional[str]:
        """
        Hand the ticket to ``staff_id`` and restart the acknowledgment clock.

        Returns the previous assignee.
        """
        if not self.is_active:
            raise DomainException(
                f"Ticket {self.id} is {self.status.value} and cannot be assigned"
            )
        if staff_id == self.assigned_to:
            raise DomainException(f"Ticket {self.id} is already assigned to {staff_id}")

        previous = self.assigned_to
        self.assigned_to = staff_id
        self.assignment_acknowledged_at = None
        self.next_escalation_at = now + acknowledgment_window
        self.escalation_level = max(self.escalation_level, 1)
        if automatic:
            self.auto_assignment_attempts += 1
        self.updated_at = now
        return previous

    def escalate(self, target_level: int, now: datetime, window: timedelta) -> int:
        """
        Raise the escalation level and open a new escalation window.

        Returns the previous level.
        """
        if target_level > MAX_ESCALATION_LEVEL:
            raise DomainException(
                f"Escalation level {target_level} exceeds maximum {MAX_ESCALATION_LEVEL}"
            )
        if target_level < self.escalation_level:
            raise DomainException(
                f"Ticket {self.id} cannot de-escalate from {self.escalation_level} to {target_level}"
            )

        previous = self.escalation_level
        self.escalation_level = target_level
        self.next_escalation_at = now + window
        self.updated_at = now
        return previous

    def acknowledge(self, staff_id: str, now: datetime) -> None:
        """Assignee confirms receipt of the assignment."""
        if self.assigned_to != staff_id:
            raise DomainException(f"Ticket {self.id} is not assigned to {staff_id}")
        if self.assignment_acknowledged_at is not None:
            raise DomainException(f"Ticket {self.id} is already acknowledged")
        self.assignment_acknowledged_at = now
        self.updated_at = now

    def start_work(self, staff_id: str, now: datetime) -> None:
        """Assignee begins work; implies acknowledgment."""
        if self.assigned_to != staff_id:
            raise DomainException(f"Ticket {self.id} is not assigned to {staff_id}")
        if self.status != TicketStatus.PENDING:
            raise DomainException(
                f"Ticket {self.id} is {self.status.value}, only pending tickets can start"
            )
        if self.assignment_acknowledged_at is None:
            self.assignment_acknowledged_at = now
        self.status = TicketStatus.IN_PROGRESS
        self.work_started_at = now
        self.updated_at = now

    def _require_assignee(self, staff_id: str) -> None:
        if self.assigned_to != staff_id:
            raise DomainException(f"Ticket {self.id} is not assigned to {staff_id}")
        if not self.is_active:
            raise DomainException(f"Ticket {self.id} is {self.status.value}")

    def attach_photos(
        self,
        staff_id: str,
        now: datetime,
        before_photo_url: Optional[str] = None,
        after_photo_url: Optional[str] = None
    ) -> None:
        """Record before/after evidence; a missing URL leaves the stored one alone."""
        self._require_assignee(staff_id)
        if not before_photo_url and not after_photo_url:
            raise DomainException(f"No photo given for ticket {self.id}")
        if before_photo_url:
            self.before_photo_url = before_photo_url
        if after_photo_url:
            self.after_photo_url = after_photo_url
        self.updated_at = now

    def close(self, staff_id: str, now: datetime, reason: Optional[str] = None) -> None:
        """
        Assignee completes the ticket, which takes it out of orchestration.

        Both the before and the after photo must be on file.
        """
        self._require_assignee(staff_id)
        if not (self.before_photo_url and self.after_photo_url):
            raise DomainException(
                f"Ticket {self.id} cannot be closed, both before and after photos are required"
            )
        self.status = TicketStatus.COMPLETED
        self.completed_at = now
        self.closure_reason = reason or DEFAULT_CLOSURE_REASON
        self.updated_at = now


@dataclass(frozen=True)
class GroupMembership:
    """A staff member's level inside one staff group."""
    group: str
    staff_level: int


@dataclass
class StaffMember:
    """Person who can be assigned tickets or notified of escalations."""

    id: str
    name: str
    role: StaffRole
    availability_status: AvailabilityStatus = AvailabilityStatus.AVAILABLE
    is_available: bool = True
    auto_offline_at: Optional[datetime] = None
    last_assigned_at: Optional[datetime] = None
    group_memberships: FrozenSet[GroupMembership] = field(default_factory=frozenset)

    @property
    def is_assignable(self) -> bool:
        return self.is_available and self.availability_status == AvailabilityStatus.AVAILABLE

    def level_in(self, group: str) -> Optional[int]:
        for membership in self.group_memberships:
            if membership.group == group:
                return membership.staff_level
        return None

    def is_auto_offline_due(self, now: datetime) -> bool:
        return self.auto_offline_at is not None and self.auto_offline_at <= now

    def go_offline(self) -> None:
        self.availability_status = AvailabilityStatus.OFFLINE
        self.is_available = False
        self.auto_offline_at = None


@dataclass(frozen=True)
class AssignmentHistoryEntry:
    """Append-only audit record of a (re)assignment."""
    ticket_id: str
    assigned_to: str
    assignment_type: AssignmentType
    reason: str
    created_at: datetime
    previous_assignee: Optional[str] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class EscalationLogEntry:
    """Append-only audit record of an escalation."""
    ticket_id: str
    escalation_type: EscalationType
    reason: str
    metadata: Dict[str, Any]
    created_at: datetime
    id: Optional[str] = None

    @property
    def previous_level(self) -> Optional[int]:
        return self.metadata.get("previous_level")

    @property
    def new_level(self) -> Optional[int]:
        return self.metadata.get("new_level")


@dataclass(frozen=True)
class NotificationRecord:
    """Outbound notification handed to the notification sink."""
    recipient_id: str
    title: str
    message: str
    type: NotificationType
    created_at: datetime
    action_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    def with_id(self, record_id: str) -> "NotificationRecord":
        return replace(self, id=record_id)
