"""
Assignment Application DTOs
============================

Data Transfer Objects for the assignment API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from assignment.domain import (
    AssignmentHistoryEntry,
    EscalationLogEntry,
    PhaseReport,
    Ticket,
    TickReport,
)


# ========== Type Aliases for Literals ==========
TicketStatusStr = Literal["pending", "in_progress", "completed", "cancelled"]
PriorityStr = Literal["low", "medium", "high", "urgent"]
AssignmentTypeStr = Literal["auto", "reassignment", "manual"]
EscalationTypeStr = Literal["sla_breach", "acknowledgement_timeout"]


# ========== Request DTOs ==========

class StaffActionRequest(BaseModel):
    """Request body for acknowledge / start work."""
    staff_id: str = Field(..., min_length=1, description="Staff member performing the action")


class ManualAssignRequest(BaseModel):
    """Request body for manual dispatch."""
    staff_id: str = Field(..., min_length=1, description="Staff member receiving the ticket")
    reason: str = Field(default="manual assignment", max_length=500)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reason cannot be blank")
        return v


class UploadPhotosRequest(BaseModel):
    """Request body for attaching completion evidence."""
    staff_id: str = Field(..., min_length=1, description="Assignee uploading the photos")
    before_photo_url: Optional[str] = Field(default=None, max_length=1000)
    after_photo_url: Optional[str] = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def require_a_photo(self) -> "UploadPhotosRequest":
        if not self.before_photo_url and not self.after_photo_url:
            raise ValueError("before_photo_url or after_photo_url is required")
        return self


class CloseTicketRequest(BaseModel):
    """Request body for completing a ticket."""
    staff_id: str = Field(..., min_length=1, description="Assignee closing the ticket")
    closure_reason: Optional[str] = Field(default=None, max_length=500)


# ========== Response DTOs ==========

class TicketAssignmentResponse(BaseModel):
    """Assignment and escalation state of a ticket."""
    id: str
    title: str
    priority: PriorityStr
    status: TicketStatusStr
    assigned_group: str
    assigned_to: Optional[str] = None
    escalation_level: int = Field(..., ge=0, le=5)
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
    updated_at: datetime

    @classmethod
    def from_entity(cls, ticket: Ticket) -> "TicketAssignmentResponse":
        return cls(
            id=ticket.id,
            title=ticket.title,
            priority=ticket.priority.value,
            status=ticket.status.value,
            assigned_group=ticket.assigned_group,
            assigned_to=ticket.assigned_to,
            escalation_level=ticket.escalation_level,
            assignment_acknowledged_at=ticket.assignment_acknowledged_at,
            next_escalation_at=ticket.next_escalation_at,
            sla_breach_at=ticket.sla_breach_at,
            is_crisis=ticket.is_crisis,
            auto_assignment_attempts=ticket.auto_assignment_attempts,
            work_started_at=ticket.work_started_at,
            before_photo_url=ticket.before_photo_url,
            after_photo_url=ticket.after_photo_url,
            completed_at=ticket.completed_at,
            closure_reason=ticket.closure_reason,
            updated_at=ticket.updated_at,
        )


class AssignmentHistoryResponse(BaseModel):
    id: Optional[str] = None
    assigned_to: str
    previous_assignee: Optional[str] = None
    assignment_type: AssignmentTypeStr
    reason: str
    created_at: datetime

    @classmethod
    def from_entity(cls, entry: AssignmentHistoryEntry) -> "AssignmentHistoryResponse":
        return cls(
            id=entry.id,
            assigned_to=entry.assigned_to,
            previous_assignee=entry.previous_assignee,
            assignment_type=entry.assignment_type.value,
            reason=entry.reason,
            created_at=entry.created_at,
        )


class EscalationLogResponse(BaseModel):
    id: Optional[str] = None
    escalation_type: EscalationTypeStr
    reason: str
    previous_level: Optional[int] = None
    new_level: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_entity(cls, entry: EscalationLogEntry) -> "EscalationLogResponse":
        return cls(
            id=entry.id,
            escalation_type=entry.escalation_type.value,
            reason=entry.reason,
            previous_level=entry.previous_level,
            new_level=entry.new_level,
            metadata=entry.metadata,
            created_at=entry.created_at,
        )


class TimelineResponse(BaseModel):
    """Ticket state with its full audit trail."""
    ticket: TicketAssignmentResponse
    assignments: List[AssignmentHistoryResponse] = Field(default_factory=list)
    escalations: List[EscalationLogResponse] = Field(default_factory=list)


class PhaseReportResponse(BaseModel):
    name: str
    selected: int
    changed: int
    stale: int
    skipped: int
    failed: bool
    error: Optional[str] = None
    details: Dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_report(cls, report: PhaseReport) -> "PhaseReportResponse":
        return cls(**report.to_dict())


class TickResponse(BaseModel):
    """Outcome of a triggered tick."""
    tick_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: float
    aborted: bool
    skipped: bool
    phases: List[PhaseReportResponse] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: TickReport) -> "TickResponse":
        return cls(
            tick_id=report.tick_id,
            started_at=report.started_at,
            finished_at=report.finished_at,
            duration_ms=round(report.duration_ms, 2),
            aborted=report.aborted,
            skipped=report.skipped,
            phases=[PhaseReportResponse.from_report(phase) for phase in report.phases],
        )
