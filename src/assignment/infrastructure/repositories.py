"""
Assignment Infrastructure Repositories
=======================================

Concrete implementations of repository interfaces using SQLAlchemy.

Every orchestrated write is a conditional UPDATE keyed on the values read
earlier, so two writers racing on the same row cannot both win: the loser
sees zero affected rows and gets a StaleStateException.
"""

from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Sequence, TypeVar

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from assignment.application.services import (
    IAuditRepository,
    INotificationRepository,
    IStaffRepository,
    ITicketRepository,
    IUnitOfWork,
)
from assignment.domain import (
    AssignmentHistoryEntry,
    EscalationLogEntry,
    GroupMembership,
    NotificationRecord,
    StaffMember,
    Ticket,
    TicketVersion,
)
from assignment.infrastructure.models import (
    AssignmentHistoryModel,
    EscalationLogModel,
    NotificationModel,
    StaffGroupMembershipModel,
    StaffModel,
    TicketModel,
)
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
from core import RepositoryException, StaleStateException, TransientStoreException
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

_ACTIVE = [status.value for status in ACTIVE_STATUSES]

T = TypeVar("T")


def _translate(error: SQLAlchemyError, operation: str) -> RepositoryException:
    """Map driver errors onto the repository exception hierarchy."""
    details = {"operation": operation, "error_type": type(error).__name__}
    if isinstance(error, OperationalError) or (
        isinstance(error, DBAPIError) and error.connection_invalidated
    ):
        return TransientStoreException(f"{operation} failed: {error}", details=details)
    return RepositoryException(f"{operation} failed: {error}", details=details)


def _matches(column, value):
    """Equality that also matches NULL expectations."""
    return column.is_(None) if value is None else column == value


def _convert_rows(models: Iterable, convert: Callable[[Any], T], kind: str) -> List[T]:
    """
    Convert rows one at a time.

    Rows the domain rejects (unknown enum value, out-of-range level) are
    logged and dropped; the rest of the batch is returned.
    """
    converted = []
    for model in models:
        try:
            converted.append(convert(model))
        except (ValueError, TypeError) as e:
            logger.warning(
                "Skipping malformed row",
                extra={"kind": kind, "row_id": model.id, "error": str(e)}
            )
    return converted


def _convert_one(model, convert: Callable[[Any], T], kind: str) -> T:
    try:
        return convert(model)
    except (ValueError, TypeError) as e:
        raise RepositoryException(
            f"Malformed {kind} row {model.id}: {e}",
            details={"kind": kind, "row_id": model.id}
        ) from e


class _SQLAlchemyRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def _execute(self, stmt, operation: str):
        try:
            return await self._session.execute(stmt)
        except SQLAlchemyError as e:
            raise _translate(e, operation) from e

    async def _flush(self, operation: str) -> None:
        try:
            await self._session.flush()
        except SQLAlchemyError as e:
            raise _translate(e, operation) from e


# ========== Ticket store ==========

def ticket_from_model(model: TicketModel) -> Ticket:
    """Convert ORM row to domain entity."""
    return Ticket(
        id=model.id,
        title=model.title,
        priority=TicketPriority(model.priority),
        status=TicketStatus(model.status),
        assigned_group=model.assigned_group,
        created_at=model.created_at,
        updated_at=model.updated_at,
        assigned_to=model.assigned_to,
        escalation_level=model.escalation_level,
        assignment_acknowledged_at=model.assignment_acknowledged_at,
        next_escalation_at=model.next_escalation_at,
        sla_breach_at=model.sla_breach_at,
        is_crisis=model.is_crisis,
        auto_assignment_attempts=model.auto_assignment_attempts,
        work_started_at=model.work_started_at,
        before_photo_url=model.before_photo_url,
        after_photo_url=model.after_photo_url,
        completed_at=model.completed_at,
        closure_reason=model.closure_reason,
    )


class SQLAlchemyTicketRepository(_SQLAlchemyRepository, ITicketRepository):
    """
    SQLAlchemy implementation of the ticket store contract.

    Reads whole tickets; writes only the orchestrated fields.
    """

    async def get(self, ticket_id: str) -> Optional[Ticket]:
        stmt = (
            select(TicketModel)
            .where(TicketModel.id == ticket_id)
            .execution_options(populate_existing=True)
        )
        result = await self._execute(stmt, "get ticket")
        model = result.scalar_one_or_none()
        return _convert_one(model, ticket_from_model, "ticket") if model else None

    async def _list(self, stmt, operation: str) -> List[Ticket]:
        result = await self._execute(stmt, operation)
        return _convert_rows(result.scalars().all(), ticket_from_model, "ticket")

    async def list_unacknowledged_overdue(self, now: datetime) -> List[Ticket]:
        stmt = (
            select(TicketModel)
            .where(
                and_(
                    TicketModel.status.in_(_ACTIVE),
                    TicketModel.assigned_to.is_not(None),
                    TicketModel.assignment_acknowledged_at.is_(None),
                    TicketModel.next_escalation_at.is_not(None),
                    TicketModel.next_escalation_at <= now,
                )
            )
            .order_by(TicketModel.next_escalation_at.asc(), TicketModel.id.asc())
        )
        return await self._list(stmt, "list unacknowledged tickets")

    async def list_sla_escalation_due(self, now: datetime) -> List[Ticket]:
        stmt = (
            select(TicketModel)
            .where(
                and_(
                    TicketModel.status.in_(_ACTIVE),
                    TicketModel.assignment_acknowledged_at.is_not(None),
                    TicketModel.sla_breach_at.is_not(None),
                    TicketModel.sla_breach_at <= now,
                    TicketModel.escalation_level < MAX_ESCALATION_LEVEL,
                    or_(
                        TicketModel.next_escalation_at.is_(None),
                        TicketModel.next_escalation_at <= now,
                    ),
                )
            )
            .order_by(TicketModel.sla_breach_at.asc(), TicketModel.id.asc())
        )
        return await self._list(stmt, "list SLA breaches")

    async def list_unassigned_crisis(self) -> List[Ticket]:
        stmt = (
            select(TicketModel)
            .where(
                and_(
                    TicketModel.is_crisis.is_(True),
                    TicketModel.assigned_to.is_(None),
                    TicketModel.status == TicketStatus.PENDING.value,
                )
            )
            .order_by(TicketModel.created_at.asc(), TicketModel.id.asc())
        )
        return await self._list(stmt, "list crisis tickets")

    async def save_conditionally(self, ticket: Ticket, expected: TicketVersion) -> None:
        stmt = (
            update(TicketModel)
            .where(
                and_(
                    TicketModel.id == ticket.id,
                    _matches(TicketModel.assigned_to, expected.assigned_to),
                    _matches(
                        TicketModel.assignment_acknowledged_at,
                        expected.assignment_acknowledged_at,
                    ),
                    _matches(TicketModel.next_escalation_at, expected.next_escalation_at),
                    TicketModel.escalation_level == expected.escalation_level,
                    TicketModel.status == expected.status.value,
                    _matches(TicketModel.before_photo_url, expected.before_photo_url),
                    _matches(TicketModel.after_photo_url, expected.after_photo_url),
                )
            )
            .values(
                assigned_to=ticket.assigned_to,
                assignment_acknowledged_at=ticket.assignment_acknowledged_at,
                next_escalation_at=ticket.next_escalation_at,
                escalation_level=ticket.escalation_level,
                auto_assignment_attempts=ticket.auto_assignment_attempts,
                status=ticket.status.value,
                work_started_at=ticket.work_started_at,
                before_photo_url=ticket.before_photo_url,
                after_photo_url=ticket.after_photo_url,
                completed_at=ticket.completed_at,
                closure_reason=ticket.closure_reason,
                updated_at=ticket.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt, "update ticket")
        if result.rowcount != 1:
            raise StaleStateException(
                "Ticket",
                ticket.id,
                details={"expected_level": expected.escalation_level},
            )


# ========== Staff directory ==========

def staff_from_model(model: StaffModel) -> StaffMember:
    """Convert ORM row to domain entity."""
    return StaffMember(
        id=model.id,
        name=model.name,
        role=StaffRole(model.role),
        availability_status=AvailabilityStatus(model.availability_status),
        is_available=model.is_available,
        auto_offline_at=model.auto_offline_at,
        last_assigned_at=model.last_assigned_at,
        group_memberships=frozenset(
            GroupMembership(group=m.group_name, staff_level=m.staff_level)
            for m in model.memberships
        ),
    )


class SQLAlchemyStaffRepository(_SQLAlchemyRepository, IStaffRepository):
    """SQLAlchemy implementation of the staff directory contract."""

    async def get(self, staff_id: str) -> Optional[StaffMember]:
        stmt = (
            select(StaffModel)
            .where(StaffModel.id == staff_id)
            .execution_options(populate_existing=True)
        )
        result = await self._execute(stmt, "get staff")
        model = result.scalar_one_or_none()
        return _convert_one(model, staff_from_model, "staff") if model else None

    async def list_auto_offline_due(self, now: datetime) -> List[StaffMember]:
        stmt = (
            select(StaffModel)
            .where(
                and_(
                    StaffModel.auto_offline_at.is_not(None),
                    StaffModel.auto_offline_at <= now,
                )
            )
            .order_by(StaffModel.auto_offline_at.asc(), StaffModel.id.asc())
        )
        result = await self._execute(stmt, "list auto-offline staff")
        return _convert_rows(result.scalars().all(), staff_from_model, "staff")

    async def save_offline(
        self,
        staff: StaffMember,
        expected_auto_offline_at: Optional[datetime],
        now: datetime
    ) -> None:
        stmt = (
            update(StaffModel)
            .where(
                and_(
                    StaffModel.id == staff.id,
                    _matches(StaffModel.auto_offline_at, expected_auto_offline_at),
                )
            )
            .values(
                availability_status=staff.availability_status.value,
                is_available=staff.is_available,
                auto_offline_at=staff.auto_offline_at,
                last_status_change=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt, "update staff availability")
        if result.rowcount != 1:
            raise StaleStateException("Staff member", staff.id)

    async def find_available(
        self,
        group: str,
        staff_level: int,
        exclude_ids: Iterable[str] = ()
    ) -> List[StaffMember]:
        """
        Available members of ``group`` at ``staff_level``.

        Ordered by active ticket load, then least recently assigned
        (never-assigned first), then id.
        """
        active_load = (
            select(func.count(TicketModel.id))
            .where(
                and_(
                    TicketModel.assigned_to == StaffModel.id,
                    TicketModel.status.in_(_ACTIVE),
                )
            )
            .correlate(StaffModel)
            .scalar_subquery()
        )
        stmt = (
            select(StaffModel)
            .join(
                StaffGroupMembershipModel,
                StaffGroupMembershipModel.staff_id == StaffModel.id,
            )
            .where(
                and_(
                    StaffGroupMembershipModel.group_name == group,
                    StaffGroupMembershipModel.staff_level == staff_level,
                    StaffModel.availability_status == AvailabilityStatus.AVAILABLE.value,
                    StaffModel.is_available.is_(True),
                )
            )
            .order_by(
                active_load.asc(),
                StaffModel.last_assigned_at.asc().nulls_first(),
                StaffModel.id.asc(),
            )
            .execution_options(populate_existing=True)
        )
        excluded = [staff_id for staff_id in exclude_ids if staff_id]
        if excluded:
            stmt = stmt.where(StaffModel.id.not_in(excluded))

        result = await self._execute(stmt, "find available staff")
        return _convert_rows(result.scalars().unique().all(), staff_from_model, "staff")

    async def claim(self, staff: StaffMember, now: datetime) -> bool:
        stmt = (
            update(StaffModel)
            .where(
                and_(
                    StaffModel.id == staff.id,
                    StaffModel.availability_status == AvailabilityStatus.AVAILABLE.value,
                    StaffModel.is_available.is_(True),
                    _matches(StaffModel.last_assigned_at, staff.last_assigned_at),
                )
            )
            .values(last_assigned_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt, "claim staff")
        if result.rowcount == 1:
            staff.last_assigned_at = now
            return True
        return False

    async def list_by_role(self, role: StaffRole) -> List[StaffMember]:
        stmt = (
            select(StaffModel)
            .where(StaffModel.role == role.value)
            .order_by(StaffModel.id.asc())
        )
        result = await self._execute(stmt, "list staff by role")
        return _convert_rows(result.scalars().all(), staff_from_model, "staff")


# ========== Audit trail ==========

class SQLAlchemyAuditRepository(_SQLAlchemyRepository, IAuditRepository):
    """Append-only assignment history and escalation log."""

    async def add_assignment(self, entry: AssignmentHistoryEntry) -> AssignmentHistoryEntry:
        model = AssignmentHistoryModel(
            ticket_id=entry.ticket_id,
            assigned_to=entry.assigned_to,
            previous_assignee=entry.previous_assignee,
            assignment_type=entry.assignment_type.value,
            reason=entry.reason,
            created_at=entry.created_at,
        )
        self._session.add(model)
        await self._flush("append assignment history")
        return AssignmentHistoryEntry(
            ticket_id=entry.ticket_id,
            assigned_to=entry.assigned_to,
            assignment_type=entry.assignment_type,
            reason=entry.reason,
            created_at=entry.created_at,
            previous_assignee=entry.previous_assignee,
            id=model.id,
        )

    async def add_escalation(self, entry: EscalationLogEntry) -> EscalationLogEntry:
        model = EscalationLogModel(
            request_id=entry.ticket_id,
            escalation_type=entry.escalation_type.value,
            escalation_reason=entry.reason,
            details=dict(entry.metadata),
            created_at=entry.created_at,
        )
        self._session.add(model)
        await self._flush("append escalation log")
        return EscalationLogEntry(
            ticket_id=entry.ticket_id,
            escalation_type=entry.escalation_type,
            reason=entry.reason,
            metadata=dict(entry.metadata),
            created_at=entry.created_at,
            id=model.id,
        )

    async def list_assignments(self, ticket_id: str) -> List[AssignmentHistoryEntry]:
        stmt = (
            select(AssignmentHistoryModel)
            .where(AssignmentHistoryModel.ticket_id == ticket_id)
            .order_by(AssignmentHistoryModel.created_at.asc(), AssignmentHistoryModel.id.asc())
        )
        result = await self._execute(stmt, "list assignment history")
        return [
            AssignmentHistoryEntry(
                ticket_id=model.ticket_id,
                assigned_to=model.assigned_to,
                assignment_type=AssignmentType(model.assignment_type),
                reason=model.reason,
                created_at=model.created_at,
                previous_assignee=model.previous_assignee,
                id=model.id,
            )
            for model in result.scalars().all()
        ]

    async def list_escalations(self, ticket_id: str) -> List[EscalationLogEntry]:
        stmt = (
            select(EscalationLogModel)
            .where(EscalationLogModel.request_id == ticket_id)
            .order_by(EscalationLogModel.created_at.asc(), EscalationLogModel.id.asc())
        )
        result = await self._execute(stmt, "list escalation log")
        return [
            EscalationLogEntry(
                ticket_id=model.request_id,
                escalation_type=EscalationType(model.escalation_type),
                reason=model.escalation_reason,
                metadata=dict(model.details or {}),
                created_at=model.created_at,
                id=model.id,
            )
            for model in result.scalars().all()
        ]


# ========== Notifications ==========

class SQLAlchemyNotificationRepository(_SQLAlchemyRepository, INotificationRepository):
    """Writes the notifications table consumed by the delivery service."""

    async def add_many(self, records: Sequence[NotificationRecord]) -> List[NotificationRecord]:
        models = [
            NotificationModel(
                user_id=record.recipient_id,
                title=record.title,
                message=record.message,
                type=record.type.value,
                action_url=record.action_url,
                details=dict(record.metadata),
                created_at=record.created_at,
            )
            for record in records
        ]
        self._session.add_all(models)
        await self._flush("append notifications")
        return [record.with_id(model.id) for record, model in zip(records, models)]

    async def list_for_recipient(self, recipient_id: str) -> List[NotificationRecord]:
        stmt = (
            select(NotificationModel)
            .where(NotificationModel.user_id == recipient_id)
            .order_by(NotificationModel.created_at.asc(), NotificationModel.id.asc())
        )
        result = await self._execute(stmt, "list notifications")
        return [
            NotificationRecord(
                recipient_id=model.user_id,
                title=model.title,
                message=model.message,
                type=NotificationType(model.type),
                created_at=model.created_at,
                action_url=model.action_url,
                metadata=dict(model.details or {}),
                id=model.id,
            )
            for model in result.scalars().all()
        ]


# ========== Unit of work ==========

class SQLAlchemyUnitOfWork(IUnitOfWork):
    """
    One AsyncSession, one transaction.

    Usage:
        async with SQLAlchemyUnitOfWork(get_session_maker()) as uow:
            ticket = await uow.tickets.get(ticket_id)
            ...
            await uow.commit()
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker
        self._session: Optional[AsyncSession] = None
        self._committed = False

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        self._session = self._session_maker()
        self._committed = False
        self.tickets = SQLAlchemyTicketRepository(self._session)
        self.staff = SQLAlchemyStaffRepository(self._session)
        self.audit = SQLAlchemyAuditRepository(self._session)
        self.notifications = SQLAlchemyNotificationRepository(self._session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is not None or not self._committed:
                await self._session.rollback()
        finally:
            await self._session.close()
            self._session = None

    async def commit(self) -> None:
        try:
            await self._session.commit()
        except SQLAlchemyError as e:
            raise _translate(e, "commit") from e
        self._committed = True

    def savepoint(self):
        return self._session.begin_nested()
