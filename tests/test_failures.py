"""
Concurrency and partial-failure behaviour of the orchestration tick.
"""

import asyncio
from datetime import timedelta

import pytest

from assignment.application import (
    PHASE_CRISIS,
    PHASE_EXPIRE_STAFF,
    PHASE_REASSIGN,
    PHASE_SLA,
    AssignmentOrchestrator,
)
from assignment.domain import NotificationRecord
from assignment.infrastructure import (
    SQLAlchemyAuditRepository,
    SQLAlchemyStaffRepository,
    SQLAlchemyTicketRepository,
    StaffModel,
    StaticConfigProvider,
)
from config import NotificationType
from core import (
    NotificationDeliveryException,
    RepositoryException,
    StaleStateException,
    TransientStoreException,
)
from main import build_services

from conftest import NOW


class TestConditionalUpdates:
    async def test_stale_write_raises(self, store, uow_factory):
        ticket_id = await store.ticket(
            assigned_to="A", escalation_level=1, next_escalation_at=NOW
        )
        async with uow_factory() as uow:
            ticket = await uow.tickets.get(ticket_id)
        expected = ticket.version()

        await store.update_ticket(ticket_id, assignment_acknowledged_at=NOW)

        ticket.escalate(2, NOW, timedelta(minutes=10))
        with pytest.raises(StaleStateException):
            async with uow_factory() as uow:
                await uow.tickets.save_conditionally(ticket, expected)
                await uow.commit()

        stored = await store.get_ticket(ticket_id)
        assert stored.escalation_level == 1

    async def test_ticket_acknowledged_mid_tick_is_left_alone(
        self, store, orchestrator, monkeypatch
    ):
        await store.staff("A", groups={"G": 1})
        await store.staff("B", groups={"G": 1})
        ticket_id = await store.ticket(
            assigned_to="A", escalation_level=1,
            next_escalation_at=NOW - timedelta(minutes=1),
        )

        original = AssignmentOrchestrator._reassign_or_escalate

        async def acknowledged_meanwhile(self, ctx, ticket):
            await store.update_ticket(ticket.id, assignment_acknowledged_at=NOW)
            return await original(self, ctx, ticket)

        monkeypatch.setattr(
            AssignmentOrchestrator, "_reassign_or_escalate", acknowledged_meanwhile
        )

        report = await orchestrator.run_tick()

        ticket = await store.get_ticket(ticket_id)
        assert ticket.assigned_to == "A"
        assert ticket.assignment_acknowledged_at == NOW
        assert report.phase(PHASE_REASSIGN).stale == 1
        assert report.phase(PHASE_REASSIGN).failed is False
        assert await store.assignments(ticket_id) == []
        # The claim on B was rolled back with the ticket write
        assert (await store.get_staff("B")).last_assigned_at is None

    async def test_lost_staff_claim_moves_to_next_candidate(
        self, store, orchestrator, monkeypatch
    ):
        await store.staff("A", groups={"G": 1})
        await store.staff("B", groups={"G": 1})
        await store.staff("C", groups={"G": 1})
        ticket_id = await store.ticket(
            assigned_to="A", escalation_level=1,
            next_escalation_at=NOW - timedelta(minutes=1),
        )

        original = SQLAlchemyStaffRepository.claim

        async def claim_b_taken(self, staff, now):
            if staff.id == "B":
                return False
            return await original(self, staff, now)

        monkeypatch.setattr(SQLAlchemyStaffRepository, "claim", claim_b_taken)

        await orchestrator.run_tick()

        assert (await store.get_ticket(ticket_id)).assigned_to == "C"

    async def test_staff_toggled_back_before_expiry_write(self, store, orchestrator, monkeypatch):
        await store.staff("S", auto_offline_at=NOW - timedelta(minutes=5))

        original = AssignmentOrchestrator._expire_one

        async def extended_meanwhile(self, ctx, staff):
            async with store.session_maker() as session:
                model = await session.get(StaffModel, staff.id)
                model.auto_offline_at = NOW + timedelta(hours=8)
                await session.commit()
            return await original(self, ctx, staff)

        monkeypatch.setattr(AssignmentOrchestrator, "_expire_one", extended_meanwhile)

        report = await orchestrator.run_tick()

        staff = await store.get_staff("S")
        assert staff.is_available is True
        assert staff.auto_offline_at == NOW + timedelta(hours=8)
        assert report.phase(PHASE_EXPIRE_STAFF).stale == 1


class TestTickLifecycle:
    async def test_overlapping_tick_is_skipped(self, store, orchestrator, monkeypatch):
        release = asyncio.Event()
        entered = asyncio.Event()
        original = SQLAlchemyStaffRepository.list_auto_offline_due

        async def slow(self, now):
            entered.set()
            await release.wait()
            return await original(self, now)

        monkeypatch.setattr(SQLAlchemyStaffRepository, "list_auto_offline_due", slow)

        first = asyncio.create_task(orchestrator.run_tick())
        await entered.wait()

        second = await orchestrator.run_tick()
        assert second.skipped is True
        assert second.phases == []

        release.set()
        first_report = await first
        assert first_report.skipped is False
        assert len(first_report.phases) == 4

    async def test_cancelled_before_start_runs_nothing(self, store, orchestrator):
        await store.staff("S", auto_offline_at=NOW - timedelta(minutes=5))
        cancel = asyncio.Event()
        cancel.set()

        report = await orchestrator.run_tick(cancel_event=cancel)

        assert report.aborted is True
        assert report.phases == []
        assert (await store.get_staff("S")).is_available is True

    async def test_cancel_between_records(self, store, orchestrator, monkeypatch):
        await store.staff("S1", auto_offline_at=NOW - timedelta(minutes=5))
        await store.staff("S2", auto_offline_at=NOW - timedelta(minutes=4))
        cancel = asyncio.Event()
        original = SQLAlchemyStaffRepository.save_offline

        async def save_and_cancel(self, staff, expected, now):
            await original(self, staff, expected, now)
            cancel.set()

        monkeypatch.setattr(SQLAlchemyStaffRepository, "save_offline", save_and_cancel)

        report = await orchestrator.run_tick(cancel_event=cancel)

        assert report.aborted is True
        assert [phase.name for phase in report.phases] == [PHASE_EXPIRE_STAFF]
        assert (await store.get_staff("S1")).is_available is False
        assert (await store.get_staff("S2")).is_available is True


class TestFailureIsolation:
    async def test_failed_phase_does_not_stop_later_phases(self, store, orchestrator, monkeypatch):
        await store.staff("L2", groups={"G": 2})
        crisis_id = await store.ticket(is_crisis=True)

        async def boom(self, now):
            raise RuntimeError("selection query exploded")

        monkeypatch.setattr(SQLAlchemyTicketRepository, "list_unacknowledged_overdue", boom)

        report = await orchestrator.run_tick()

        assert report.failed_phases == [PHASE_REASSIGN]
        assert report.phase(PHASE_REASSIGN).error == "selection query exploded"
        assert report.phase(PHASE_SLA).failed is False
        assert report.phase(PHASE_CRISIS).changed == 1
        assert (await store.get_ticket(crisis_id)).assigned_to == "L2"

    async def test_transient_error_skips_only_that_record(self, store, orchestrator, monkeypatch):
        await store.staff("S1", auto_offline_at=NOW - timedelta(minutes=5))
        await store.staff("S2", auto_offline_at=NOW - timedelta(minutes=4))
        original = SQLAlchemyStaffRepository.save_offline

        async def flaky(self, staff, expected, now):
            if staff.id == "S1":
                raise TransientStoreException("connection reset")
            await original(self, staff, expected, now)

        monkeypatch.setattr(SQLAlchemyStaffRepository, "save_offline", flaky)

        report = await orchestrator.run_tick()

        phase = report.phase(PHASE_EXPIRE_STAFF)
        assert phase.skipped == 1
        assert phase.changed == 1
        assert phase.failed is False
        assert (await store.get_staff("S1")).is_available is True
        assert (await store.get_staff("S2")).is_available is False

    async def test_audit_failure_keeps_state_change(self, store, orchestrator, monkeypatch):
        await store.staff("A", groups={"G": 1})
        await store.staff("B", groups={"G": 1})
        ticket_id = await store.ticket(
            assigned_to="A", escalation_level=1,
            next_escalation_at=NOW - timedelta(minutes=1),
        )

        async def broken_history(self, entry):
            raise RepositoryException("history table unavailable")

        monkeypatch.setattr(SQLAlchemyAuditRepository, "add_assignment", broken_history)

        report = await orchestrator.run_tick()

        assert (await store.get_ticket(ticket_id)).assigned_to == "B"
        assert await store.assignments(ticket_id) == []
        assert report.phase(PHASE_REASSIGN).changed == 1
        # Notification still goes out
        assert len(await store.notifications("B")) == 1

    async def test_escalation_log_failure_keeps_state_change(self, store, orchestrator, monkeypatch):
        ticket_id = await store.ticket(
            assigned_to="A",
            assignment_acknowledged_at=NOW - timedelta(hours=1),
            sla_breach_at=NOW - timedelta(minutes=1),
            escalation_level=1,
        )

        async def broken_log(self, entry):
            raise RepositoryException("escalation log unavailable")

        monkeypatch.setattr(SQLAlchemyAuditRepository, "add_escalation", broken_log)

        await orchestrator.run_tick()

        assert (await store.get_ticket(ticket_id)).escalation_level == 2
        assert await store.escalations(ticket_id) == []

    async def test_notification_sink_failure_keeps_state_change(
        self, store, session_maker, policy, clock
    ):
        class FailingSink:
            calls = 0

            async def send(self, records):
                FailingSink.calls += 1
                raise NotificationDeliveryException("webhook down")

        orchestrator, _ = build_services(
            session_maker, StaticConfigProvider(policy), sinks=[FailingSink()], clock=clock
        )
        await store.staff("A", groups={"G": 1})
        await store.staff("B", groups={"G": 1})
        ticket_id = await store.ticket(
            assigned_to="A", escalation_level=1,
            next_escalation_at=NOW - timedelta(minutes=1),
        )

        report = await orchestrator.run_tick()

        assert FailingSink.calls == 1
        assert (await store.get_ticket(ticket_id)).assigned_to == "B"
        assert report.phase(PHASE_REASSIGN).changed == 1
        # The database sink still delivered
        assert len(await store.notifications("B")) == 1


async def test_notification_record_ids_assigned(uow_factory):
    record = NotificationRecord(
        recipient_id="S",
        title="t",
        message="m",
        type=NotificationType.ASSIGNMENT,
        created_at=NOW,
    )
    async with uow_factory() as uow:
        stored = await uow.notifications.add_many([record])
        await uow.commit()

    assert stored[0].id is not None
    async with uow_factory() as uow:
        listed = await uow.notifications.list_for_recipient("S")
    assert [r.id for r in listed] == [stored[0].id]
