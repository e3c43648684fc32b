"""
Assignment Application Layer
=============================

Application layer for the assignment orchestrator.

Contains:
- Orchestrator: the periodic four-phase tick
- Services: human-driven assignment actions and repository interfaces
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from assignment.application.dto import (
    StaffActionRequest,
    ManualAssignRequest,
    UploadPhotosRequest,
    CloseTicketRequest,
    TicketAssignmentResponse,
    AssignmentHistoryResponse,
    EscalationLogResponse,
    TimelineResponse,
    PhaseReportResponse,
    TickResponse,
)
from assignment.application.services import (
    AssignmentService,
    NotificationDispatcher,
    NotificationFactory,
    ITicketRepository,
    IStaffRepository,
    IAuditRepository,
    INotificationRepository,
    INotificationSink,
    IEscalationConfigProvider,
    IUnitOfWork,
    utc_now,
)
from assignment.application.orchestrator import (
    AssignmentOrchestrator,
    PHASE_EXPIRE_STAFF,
    PHASE_REASSIGN,
    PHASE_SLA,
    PHASE_CRISIS,
)

__all__ = [
    # DTOs
    "StaffActionRequest",
    "ManualAssignRequest",
    "UploadPhotosRequest",
    "CloseTicketRequest",
    "TicketAssignmentResponse",
    "AssignmentHistoryResponse",
    "EscalationLogResponse",
    "TimelineResponse",
    "PhaseReportResponse",
    "TickResponse",
    # Services
    "AssignmentOrchestrator",
    "AssignmentService",
    "NotificationDispatcher",
    "NotificationFactory",
    "utc_now",
    # Phase names
    "PHASE_EXPIRE_STAFF",
    "PHASE_REASSIGN",
    "PHASE_SLA",
    "PHASE_CRISIS",
    # Repository Interfaces
    "ITicketRepository",
    "IStaffRepository",
    "IAuditRepository",
    "INotificationRepository",
    "INotificationSink",
    "IEscalationConfigProvider",
    "IUnitOfWork",
]
