"""Human-driven assignment actions."""

from datetime import timedelta

import pytest

from assignment.application import PHASE_REASSIGN, PHASE_SLA
from config import TicketStatus
from core import DomainException, RepositoryException, ResourceNotFoundException, ValidationException

from conftest import NOW


async def test_acknowledge_stops_reassignment(store, assignment_service, orchestrator, clock):
    await store.staff("A", groups={"G": 1})
    await store.staff("B", groups={"G": 1})
    ticket_id = await store.ticket(
        assigned_to="A", escalation_level=1, next_escalation_at=NOW + timedelta(minutes=5)
    )

    ticket = await assignment_service.acknowledge(ticket_id, "A")
    assert ticket.assignment_acknowledged_at == NOW

    clock.advance(minutes=10)
    report = await orchestrator.run_tick()

    assert report.phase(PHASE_REASSIGN).selected == 0
    assert (await store.get_ticket(ticket_id)).assigned_to == "A"


async def test_acknowledged_ticket_becomes_sla_eligible(store, assignment_service, orchestrator, clock):
    ticket_id = await store.ticket(
        assigned_to="A",
        escalation_level=1,
        next_escalation_at=NOW + timedelta(minutes=5),
        sla_breach_at=NOW - timedelta(minutes=1),
    )

    await assignment_service.acknowledge(ticket_id, "A")
    report = await orchestrator.run_tick()
    # window from the original assignment has not run out yet
    assert report.phase(PHASE_SLA).selected == 0

    clock.advance(minutes=5)
    report = await orchestrator.run_tick()

    assert report.phase(PHASE_SLA).changed == 1
    assert (await store.get_ticket(ticket_id)).escalation_level == 2


async def test_acknowledge_by_other_staff_rejected(store, assignment_service):
    ticket_id = await store.ticket(assigned_to="A", escalation_level=1)

    with pytest.raises(DomainException):
        await assignment_service.acknowledge(ticket_id, "B")

    assert (await store.get_ticket(ticket_id)).assignment_acknowledged_at is None


async def test_unknown_ticket(assignment_service):
    with pytest.raises(ResourceNotFoundException):
        await assignment_service.acknowledge("missing", "A")


async def test_start_work(store, assignment_service):
    ticket_id = await store.ticket(assigned_to="A", escalation_level=1)

    ticket = await assignment_service.start_work(ticket_id, "A")

    stored = await store.get_ticket(ticket_id)
    assert ticket.status == TicketStatus.IN_PROGRESS
    assert stored.status == TicketStatus.IN_PROGRESS.value
    assert stored.work_started_at == NOW
    assert stored.assignment_acknowledged_at == NOW


async def test_manual_assignment(store, assignment_service):
    await store.staff("A", groups={"G": 1})
    await store.staff("D", groups={"G": 2})
    ticket_id = await store.ticket(assigned_to="A", escalation_level=1, assignment_acknowledged_at=NOW)

    ticket = await assignment_service.assign_manually(ticket_id, "D", "needs a senior technician")

    assert ticket.assigned_to == "D"
    stored = await store.get_ticket(ticket_id)
    assert stored.assigned_to == "D"
    assert stored.assignment_acknowledged_at is None
    assert stored.next_escalation_at == NOW + timedelta(minutes=10)
    assert stored.auto_assignment_attempts == 0

    history = await store.assignments(ticket_id)
    assert history[0].assignment_type == "manual"
    assert history[0].reason == "needs a senior technician"
    assert history[0].previous_assignee == "A"
    assert len(await store.notifications("D")) == 1


async def test_manual_assignment_to_unknown_staff(store, assignment_service):
    ticket_id = await store.ticket()
    with pytest.raises(ResourceNotFoundException):
        await assignment_service.assign_manually(ticket_id, "ghost")


async def test_timeline(store, assignment_service, orchestrator):
    await store.staff("A", groups={"G": 1})
    ticket_id = await store.ticket(
        assigned_to="A", escalation_level=1, next_escalation_at=NOW - timedelta(minutes=1)
    )
    await orchestrator.run_tick()
    await store.staff("B", groups={"G": 1})
    await assignment_service.assign_manually(ticket_id, "B")

    timeline = await assignment_service.get_timeline(ticket_id)

    assert timeline["ticket"].assigned_to == "B"
    assert [entry.assigned_to for entry in timeline["assignments"]] == ["B"]
    assert len(timeline["escalations"]) == 1
    assert timeline["escalations"][0].new_level == 2
    assert timeline["escalations"][0].previous_level == 1


async def test_manual_assignment_needs_reason(store, assignment_service):
    await store.staff("D", groups={"G": 2})
    ticket_id = await store.ticket()

    with pytest.raises(ValidationException):
        await assignment_service.assign_manually(ticket_id, "D", "   ")

    assert (await store.get_ticket(ticket_id)).assigned_to is None


async def test_close_after_photos(store, assignment_service, orchestrator, clock):
    ticket_id = await store.ticket(
        assigned_to="A",
        escalation_level=1,
        status=TicketStatus.IN_PROGRESS,
        assignment_acknowledged_at=NOW - timedelta(minutes=30),
        sla_breach_at=NOW + timedelta(minutes=5),
    )

    await assignment_service.upload_photos(ticket_id, "A", before_photo_url="https://img/before.jpg")
    with pytest.raises(DomainException):
        await assignment_service.close_request(ticket_id, "A")
    assert (await store.get_ticket(ticket_id)).status == TicketStatus.IN_PROGRESS.value

    await assignment_service.upload_photos(ticket_id, "A", after_photo_url="https://img/after.jpg")
    await assignment_service.close_request(ticket_id, "A", "Replaced the valve")

    stored = await store.get_ticket(ticket_id)
    assert stored.status == TicketStatus.COMPLETED.value
    assert stored.completed_at == NOW
    assert stored.closure_reason == "Replaced the valve"
    assert stored.before_photo_url == "https://img/before.jpg"
    assert stored.after_photo_url == "https://img/after.jpg"

    clock.advance(hours=2)
    report = await orchestrator.run_tick()
    assert report.phase(PHASE_SLA).selected == 0
    assert (await store.get_ticket(ticket_id)).escalation_level == 1


async def test_photos_rejected_for_other_staff(store, assignment_service):
    ticket_id = await store.ticket(assigned_to="A", escalation_level=1)

    with pytest.raises(DomainException):
        await assignment_service.upload_photos(ticket_id, "B", before_photo_url="https://img/b.jpg")

    assert (await store.get_ticket(ticket_id)).before_photo_url is None


async def test_malformed_ticket_row_is_skipped(store, orchestrator):
    await store.staff("A", groups={"G": 1})
    await store.staff("B", groups={"G": 1})
    overdue = dict(assigned_to="A", escalation_level=1, next_escalation_at=NOW - timedelta(minutes=1))
    broken_id = await store.ticket(**overdue)
    await store.update_ticket(broken_id, priority="critical")
    good_id = await store.ticket(**overdue)

    report = await orchestrator.run_tick()

    phase = report.phase(PHASE_REASSIGN)
    assert phase.failed is False
    assert phase.changed == 1
    assert (await store.get_ticket(good_id)).assigned_to == "B"
    assert (await store.get_ticket(broken_id)).assigned_to == "A"


async def test_malformed_ticket_row_on_direct_read(store, assignment_service):
    ticket_id = await store.ticket(assigned_to="A", escalation_level=1)
    await store.update_ticket(ticket_id, priority="critical")

    with pytest.raises(RepositoryException):
        await assignment_service.acknowledge(ticket_id, "A")
