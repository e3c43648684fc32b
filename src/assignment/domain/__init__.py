"""
Assignment Domain Layer
=======================

Domain layer for the assignment and escalation orchestrator.

Contains:
- Entities: Ticket, StaffMember and the append-only audit/notification records
- Value Objects: EscalationPolicy, TicketVersion, tick and phase reports

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from assignment.domain.entities import (
    Ticket,
    TicketVersion,
    StaffMember,
    GroupMembership,
    AssignmentHistoryEntry,
    EscalationLogEntry,
    NotificationRecord,
)
from assignment.domain.value_objects import (
    EscalationPolicy,
    EscalationLevelConfig,
    PhaseReport,
    TickReport,
    DEFAULT_ESCALATION_WINDOWS,
    DEFAULT_ESCALATION_AUDIENCES,
)

__all__ = [
    # Entities
    "Ticket",
    "TicketVersion",
    "StaffMember",
    "GroupMembership",
    "AssignmentHistoryEntry",
    "EscalationLogEntry",
    "NotificationRecord",
    # Value Objects
    "EscalationPolicy",
    "EscalationLevelConfig",
    "PhaseReport",
    "TickReport",
    "DEFAULT_ESCALATION_WINDOWS",
    "DEFAULT_ESCALATION_AUDIENCES",
]
