"""
Assignment Infrastructure Layer
================================

Infrastructure implementations for the assignment orchestrator:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and unit of work
- External: Escalation config watcher, notification sinks, scheduler
"""

from assignment.infrastructure.models import (
    TicketModel,
    StaffModel,
    StaffGroupMembershipModel,
    AssignmentHistoryModel,
    EscalationLogModel,
    NotificationModel,
)
from assignment.infrastructure.repositories import (
    SQLAlchemyTicketRepository,
    SQLAlchemyStaffRepository,
    SQLAlchemyAuditRepository,
    SQLAlchemyNotificationRepository,
    SQLAlchemyUnitOfWork,
)
from assignment.infrastructure.external import (
    EscalationConfigManager,
    StaticConfigProvider,
    DatabaseNotificationSink,
    WebhookNotificationSink,
    CircuitBreaker,
    OrchestratorScheduler,
)

__all__ = [
    "TicketModel",
    "StaffModel",
    "StaffGroupMembershipModel",
    "AssignmentHistoryModel",
    "EscalationLogModel",
    "NotificationModel",
    "SQLAlchemyTicketRepository",
    "SQLAlchemyStaffRepository",
    "SQLAlchemyAuditRepository",
    "SQLAlchemyNotificationRepository",
    "SQLAlchemyUnitOfWork",
    "EscalationConfigManager",
    "StaticConfigProvider",
    "DatabaseNotificationSink",
    "WebhookNotificationSink",
    "CircuitBreaker",
    "OrchestratorScheduler",
]
