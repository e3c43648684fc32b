"""
Shared fixtures: a real async SQLAlchemy engine on a temporary SQLite file,
a controllable clock, and helpers to seed and inspect the stores.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import uuid4

import pytest
from sqlalchemy import select

from assignment.domain import EscalationPolicy
from assignment.infrastructure import (
    AssignmentHistoryModel,
    EscalationLogModel,
    NotificationModel,
    SQLAlchemyUnitOfWork,
    StaffGroupMembershipModel,
    StaffModel,
    StaticConfigProvider,
    TicketModel,
)
from config import AvailabilityStatus, StaffRole, TicketPriority, TicketStatus
from infrastructure.database import close_database, create_tables, get_session_maker, init_database
from main import build_services

NOW = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Store:
    """Seeds and reads rows directly, bypassing the code under test."""

    def __init__(self, session_maker):
        self.session_maker = session_maker

    async def ticket(
        self,
        ticket_id: Optional[str] = None,
        group: str = "G",
        status: TicketStatus = TicketStatus.PENDING,
        priority: TicketPriority = TicketPriority.HIGH,
        created_at: datetime = NOW - timedelta(hours=1),
        **fields
    ) -> str:
        ticket_id = ticket_id or str(uuid4())
        async with self.session_maker() as session:
            session.add(TicketModel(
                id=ticket_id,
                title=f"Ticket {ticket_id}",
                priority=priority.value,
                status=status.value,
                assigned_group=group,
                created_at=created_at,
                updated_at=created_at,
                **fields
            ))
            await session.commit()
        return ticket_id

    async def staff(
        self,
        staff_id: str,
        groups: Optional[Dict[str, int]] = None,
        role: StaffRole = StaffRole.FIELD_STAFF,
        status: AvailabilityStatus = AvailabilityStatus.AVAILABLE,
        is_available: bool = True,
        **fields
    ) -> str:
        async with self.session_maker() as session:
            model = StaffModel(
                id=staff_id,
                name=f"Staff {staff_id}",
                role=role.value,
                availability_status=status.value,
                is_available=is_available,
                **fields
            )
            model.memberships = [
                StaffGroupMembershipModel(group_name=group, staff_level=level)
                for group, level in (groups or {}).items()
            ]
            session.add(model)
            await session.commit()
        return staff_id

    async def get_ticket(self, ticket_id: str) -> TicketModel:
        async with self.session_maker() as session:
            return await session.get(TicketModel, ticket_id)

    async def get_staff(self, staff_id: str) -> StaffModel:
        async with self.session_maker() as session:
            return await session.get(StaffModel, staff_id)

    async def assignments(self, ticket_id: str) -> List[AssignmentHistoryModel]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(AssignmentHistoryModel)
                .where(AssignmentHistoryModel.ticket_id == ticket_id)
                .order_by(AssignmentHistoryModel.created_at)
            )
            return list(result.scalars().all())

    async def escalations(self, ticket_id: str) -> List[EscalationLogModel]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(EscalationLogModel)
                .where(EscalationLogModel.request_id == ticket_id)
                .order_by(EscalationLogModel.created_at)
            )
            return list(result.scalars().all())

    async def notifications(self, user_id: Optional[str] = None) -> List[NotificationModel]:
        async with self.session_maker() as session:
            stmt = select(NotificationModel).order_by(NotificationModel.created_at)
            if user_id:
                stmt = stmt.where(NotificationModel.user_id == user_id)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_ticket(self, ticket_id: str, **fields) -> None:
        async with self.session_maker() as session:
            model = await session.get(TicketModel, ticket_id)
            for key, value in fields.items():
                setattr(model, key, value)
            await session.commit()


@pytest.fixture
async def session_maker(tmp_path):
    init_database(f"sqlite+aiosqlite:///{tmp_path / 'orchestrator.db'}")
    await create_tables()
    yield get_session_maker()
    await close_database()


@pytest.fixture
def store(session_maker) -> Store:
    return Store(session_maker)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def policy() -> EscalationPolicy:
    return EscalationPolicy()


@pytest.fixture
def uow_factory(session_maker):
    return lambda: SQLAlchemyUnitOfWork(session_maker)


@pytest.fixture
def services(session_maker, policy, clock):
    return build_services(session_maker, StaticConfigProvider(policy), clock=clock)


@pytest.fixture
def orchestrator(services):
    return services[0]


@pytest.fixture
def assignment_service(services):
    return services[1]
