"""
Assignment Application Services
================================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, Callable, Dict, Iterable, List, Optional, Sequence

from assignment.domain import (
    AssignmentHistoryEntry,
    EscalationLogEntry,
    EscalationPolicy,
    NotificationRecord,
    StaffMember,
    Ticket,
    TicketVersion,
)
from config import AssignmentType, NotificationType, StaffRole, settings
from core import RepositoryException, ResourceNotFoundException, ValidationException
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock."""
    return datetime.now(timezone.utc)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ITicketRepository(ABC):
    """Interface for ticket store access."""

    @abstractmethod
    async def get(self, ticket_id: str) -> Optional[Ticket]:
        """Get ticket by ID."""

    @abstractmethod
    async def list_unacknowledged_overdue(self, now: datetime) -> List[Ticket]:
        """Assigned, unacknowledged, active tickets whose escalation deadline passed."""

    @abstractmethod
    async def list_sla_escalation_due(self, now: datetime) -> List[Ticket]:
        """Acknowledged, active, breached tickets below level 5 with an elapsed window."""

    @abstractmethod
    async def list_unassigned_crisis(self) -> List[Ticket]:
        """Pending crisis tickets nobody holds."""

    @abstractmethod
    async def save_conditionally(self, ticket: Ticket, expected: TicketVersion) -> None:
        """
        Persist the orchestrated fields if the row still matches ``expected``.

        Raises:
            StaleStateException: the row changed since it was read
        """


class IStaffRepository(ABC):
    """Interface for staff directory access."""

    @abstractmethod
    async def get(self, staff_id: str) -> Optional[StaffMember]:
        """Get staff member by ID."""

    @abstractmethod
    async def list_auto_offline_due(self, now: datetime) -> List[StaffMember]:
        """Staff whose auto-offline time has passed."""

    @abstractmethod
    async def save_offline(
        self,
        staff: StaffMember,
        expected_auto_offline_at: Optional[datetime],
        now: datetime
    ) -> None:
        """
        Persist an offline transition if auto_offline_at is unchanged.

        Raises:
            StaleStateException: the record changed since it was read
        """

    @abstractmethod
    async def find_available(
        self,
        group: str,
        staff_level: int,
        exclude_ids: Iterable[str] = ()
    ) -> List[StaffMember]:
        """Available staff at a level in a group, in tie-break order."""

    @abstractmethod
    async def claim(self, staff: StaffMember, now: datetime) -> bool:
        """
        Atomically re-check availability and stamp last_assigned_at.

        Returns False if the candidate stopped being available or was
        claimed by another writer since it was read.
        """

    @abstractmethod
    async def list_by_role(self, role: StaffRole) -> List[StaffMember]:
        """All staff holding a role (notification audience)."""


class IAuditRepository(ABC):
    """Interface for the append-only audit trail."""

    @abstractmethod
    async def add_assignment(self, entry: AssignmentHistoryEntry) -> AssignmentHistoryEntry:
        """Append an assignment history entry."""

    @abstractmethod
    async def add_escalation(self, entry: EscalationLogEntry) -> EscalationLogEntry:
        """Append an escalation log entry."""

    @abstractmethod
    async def list_assignments(self, ticket_id: str) -> List[AssignmentHistoryEntry]:
        """Assignment history of a ticket, oldest first."""

    @abstractmethod
    async def list_escalations(self, ticket_id: str) -> List[EscalationLogEntry]:
        """Escalation log of a ticket, oldest first."""


class INotificationRepository(ABC):
    """Interface for the outbound notification table."""

    @abstractmethod
    async def add_many(self, records: Sequence[NotificationRecord]) -> List[NotificationRecord]:
        """Append notification records."""

    @abstractmethod
    async def list_for_recipient(self, recipient_id: str) -> List[NotificationRecord]:
        """Notifications addressed to a staff member, oldest first."""


class IUnitOfWork(ABC):
    """
    One database transaction spanning the repositories.

    Leaving the context without commit() rolls back.
    """

    tickets: ITicketRepository
    staff: IStaffRepository
    audit: IAuditRepository
    notifications: INotificationRepository

    @abstractmethod
    async def __aenter__(self) -> "IUnitOfWork":
        ...

    @abstractmethod
    async def __aexit__(self, exc_type, exc, tb) -> None:
        ...

    @abstractmethod
    async def commit(self) -> None:
        """Commit the transaction."""

    @abstractmethod
    def savepoint(self) -> AsyncContextManager[Any]:
        """Nested transaction whose failure leaves the outer one intact."""


UnitOfWorkFactory = Callable[[], IUnitOfWork]


class INotificationSink(ABC):
    """Fire-and-forget destination for notification records."""

    @abstractmethod
    async def send(self, records: Sequence[NotificationRecord]) -> None:
        """Deliver records; raise on failure, callers only log it."""


class IEscalationConfigProvider(ABC):
    """Interface for escalation policy access."""

    @abstractmethod
    def get_config(self) -> EscalationPolicy:
        """Get current escalation policy."""


# ========== Notification building ==========

class NotificationFactory:
    """Builds the notification records emitted by assignment changes."""

    def __init__(self, ticket_link_base: str = settings.ticket_link_base):
        self._link_base = ticket_link_base.rstrip("/")

    def ticket_url(self, ticket_id: str) -> str:
        return f"{self._link_base}/{ticket_id}"

    def assignment(
        self,
        ticket: Ticket,
        assignment_type: AssignmentType,
        acknowledge_within_minutes: int,
        now: datetime
    ) -> NotificationRecord:
        """Ask the new assignee to acknowledge."""
        if assignment_type == AssignmentType.REASSIGNMENT:
            kind, title = NotificationType.REASSIGNMENT, "Ticket reassigned to you"
        elif ticket.is_crisis:
            kind, title = NotificationType.CRISIS, "Crisis ticket assigned to you"
        else:
            kind, title = NotificationType.ASSIGNMENT, "Ticket assigned to you"

        return NotificationRecord(
            recipient_id=ticket.assigned_to,
            title=title,
            message=(
                f"{ticket.title or 'Ticket ' + ticket.id} ({ticket.priority.value}) needs you. "
                f"Acknowledge within {acknowledge_within_minutes} minutes."
            ),
            type=kind,
            created_at=now,
            action_url=self.ticket_url(ticket.id),
            metadata={
                "ticket_id": ticket.id,
                "assignment_type": assignment_type.value,
                "escalation_level": ticket.escalation_level,
                "acknowledge_by": ticket.next_escalation_at.isoformat() if ticket.next_escalation_at else None,
            },
        )

    def escalation(
        self,
        ticket: Ticket,
        recipients: Iterable[StaffMember],
        previous_level: int,
        reason: str,
        now: datetime
    ) -> List[NotificationRecord]:
        """One record per audience member."""
        return [
            NotificationRecord(
                recipient_id=recipient.id,
                title=f"Ticket escalated to L{ticket.escalation_level}",
                message=f"{ticket.title or 'Ticket ' + ticket.id}: {reason}",
                type=NotificationType.ESCALATION,
                created_at=now,
                action_url=self.ticket_url(ticket.id),
                metadata={
                    "ticket_id": ticket.id,
                    "previous_level": previous_level,
                    "new_level": ticket.escalation_level,
                    "reason": reason,
                },
            )
            for recipient in recipients
        ]


class NotificationDispatcher:
    """
    Hands records to every configured sink.

    Sink failures are logged and never propagate to the caller.
    """

    def __init__(self, sinks: Sequence[INotificationSink]):
        self._sinks = list(sinks)

    async def dispatch(self, records: Sequence[NotificationRecord], log=logger) -> int:
        if not records:
            return 0
        delivered = 0
        for sink in self._sinks:
            try:
                await sink.send(records)
                delivered += 1
            except Exception as e:
                log.error(
                    "Notification sink failed",
                    extra={
                        "sink": type(sink).__name__,
                        "records": len(records),
                        "error_type": type(e).__name__,
                        "error": str(e),
                    }
                )
        return delivered


async def append_audit(uow: IUnitOfWork, write: Callable[[], Any], log=logger, **context) -> bool:
    """
    Run an audit append inside a savepoint.

    A failed append rolls back only the savepoint, so the state change
    made earlier in the same transaction still commits.
    """
    try:
        async with uow.savepoint():
            await write()
        return True
    except RepositoryException as e:
        log.error(
            "Audit append failed",
            extra={"error_type": type(e).__name__, "error": str(e), **context}
        )
        return False


# ========== Application Services ==========

class AssignmentService:
    """
    Human-driven assignment actions.

    Acknowledge, start work, photo upload, closing and manual dispatch
    all use the same conditional-update path as the orchestrator, so they
    cannot clobber a concurrent tick.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        config_provider: IEscalationConfigProvider,
        dispatcher: NotificationDispatcher,
        clock: Clock = utc_now,
        notification_factory: Optional[NotificationFactory] = None
    ):
        self._uow_factory = uow_factory
        self._config_provider = config_provider
        self._dispatcher = dispatcher
        self._clock = clock
        self._notifications = notification_factory or NotificationFactory()

    async def _load(self, uow: IUnitOfWork, ticket_id: str) -> Ticket:
        ticket = await uow.tickets.get(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        return ticket

    async def acknowledge(self, ticket_id: str, staff_id: str) -> Ticket:
        """Current assignee confirms receipt."""
        now = self._clock()
        async with self._uow_factory() as uow:
            ticket = await self._load(uow, ticket_id)
            expected = ticket.version()
            ticket.acknowledge(staff_id, now)
            await uow.tickets.save_conditionally(ticket, expected)
            await uow.commit()

        logger.info(
            "Assignment acknowledged",
            extra={"ticket_id": ticket_id, "staff_id": staff_id}
        )
        return ticket

    async def start_work(self, ticket_id: str, staff_id: str) -> Ticket:
        """Assignee moves the ticket to in_progress."""
        now = self._clock()
        async with self._uow_factory() as uow:
            ticket = await self._load(uow, ticket_id)
            expected = ticket.version()
            ticket.start_work(staff_id, now)
            await uow.tickets.save_conditionally(ticket, expected)
            await uow.commit()

        logger.info("Work started", extra={"ticket_id": ticket_id, "staff_id": staff_id})
        return ticket

    async def upload_photos(
        self,
        ticket_id: str,
        staff_id: str,
        before_photo_url: Optional[str] = None,
        after_photo_url: Optional[str] = None
    ) -> Ticket:
        """Assignee attaches before/after evidence photos."""
        now = self._clock()
        async with self._uow_factory() as uow:
            ticket = await self._load(uow, ticket_id)
            expected = ticket.version()
            ticket.attach_photos(staff_id, now, before_photo_url, after_photo_url)
            await uow.tickets.save_conditionally(ticket, expected)
            await uow.commit()

        logger.info(
            "Photos uploaded",
            extra={
                "ticket_id": ticket_id,
                "has_before_photo": bool(before_photo_url),
                "has_after_photo": bool(after_photo_url),
            }
        )
        return ticket

    async def close_request(
        self,
        ticket_id: str,
        staff_id: str,
        closure_reason: Optional[str] = None
    ) -> Ticket:
        """
        Assignee completes the ticket.

        Raises DomainException unless both photos are on file.
        """
        now = self._clock()
        async with self._uow_factory() as uow:
            ticket = await self._load(uow, ticket_id)
            expected = ticket.version()
            ticket.close(staff_id, now, closure_reason)
            await uow.tickets.save_conditionally(ticket, expected)
            await uow.commit()

        logger.info("Ticket closed", extra={"ticket_id": ticket_id, "staff_id": staff_id})
        return ticket

    async def assign_manually(
        self,
        ticket_id: str,
        staff_id: str,
        reason: str = "manual assignment"
    ) -> Ticket:
        """Dispatcher hands a ticket to a specific staff member."""
        if not reason or not reason.strip():
            raise ValidationException("Manual assignment needs a reason", details={"ticket_id": ticket_id})
        reason = reason.strip()
        now = self._clock()
        policy = self._config_provider.get_config()

        async with self._uow_factory() as uow:
            ticket = await self._load(uow, ticket_id)
            staff = await uow.staff.get(staff_id)
            if staff is None:
                raise ResourceNotFoundException("Staff member", staff_id)

            expected = ticket.version()
            previous = ticket.assign(staff.id, now, policy.reassignment_window, automatic=False)
            await uow.tickets.save_conditionally(ticket, expected)

            entry = AssignmentHistoryEntry(
                ticket_id=ticket.id,
                assigned_to=staff.id,
                assignment_type=AssignmentType.MANUAL,
                reason=reason,
                created_at=now,
                previous_assignee=previous,
            )
            await append_audit(uow, lambda: uow.audit.add_assignment(entry), ticket_id=ticket.id)
            await uow.commit()

        logger.info(
            "Ticket assigned manually",
            extra={"ticket_id": ticket_id, "staff_id": staff_id, "previous_assignee": previous}
        )
        await self._dispatcher.dispatch([
            self._notifications.assignment(
                ticket, AssignmentType.MANUAL, policy.reassignment_window_minutes, now
            )
        ])
        return ticket

    async def get_timeline(self, ticket_id: str) -> Dict[str, Any]:
        """Ticket plus its assignment history and escalation log."""
        async with self._uow_factory() as uow:
            ticket = await self._load(uow, ticket_id)
            assignments = await uow.audit.list_assignments(ticket_id)
            escalations = await uow.audit.list_escalations(ticket_id)

        return {
            "ticket": ticket,
            "assignments": assignments,
            "escalations": escalations,
        }
