"""
Assignment Controllers (API Routes)
====================================

FastAPI routes for the assignment orchestrator.

Controllers are thin - they delegate to application services. Application
exceptions are mapped to HTTP status codes by the shared exception handler.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from assignment.application import (
    AssignmentOrchestrator,
    AssignmentService,
    CloseTicketRequest,
    ManualAssignRequest,
    StaffActionRequest,
    UploadPhotosRequest,
    TicketAssignmentResponse,
    TickResponse,
    TimelineResponse,
    AssignmentHistoryResponse,
    EscalationLogResponse,
)
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/assignments", tags=["Assignment Orchestrator"])


# ========== Example payloads for Swagger ==========

TICK_RESPONSE_EXAMPLE = {
    "tick_id": "7d0c2c1e-8d4f-4f59-9a53-6c1f1b0b9e11",
    "started_at": "2026-01-15T10:00:00Z",
    "finished_at": "2026-01-15T10:00:00.412Z",
    "duration_ms": 412.0,
    "aborted": False,
    "skipped": False,
    "phases": [
        {"name": "expire_inactive_staff", "selected": 1, "changed": 1, "stale": 0,
         "skipped": 0, "failed": False, "error": None, "details": {"offline": 1}},
        {"name": "reassign_unacknowledged", "selected": 2, "changed": 2, "stale": 0,
         "skipped": 0, "failed": False, "error": None,
         "details": {"reassigned": 1, "escalated": 1}},
    ]
}

TICKET_RESPONSE_EXAMPLE = {
    "id": "5b3e7a52-7d0e-4bd4-9df8-8f0f1b9a3c21",
    "title": "Leaking pipe in block C",
    "priority": "high",
    "status": "pending",
    "assigned_group": "plumbing",
    "assigned_to": "staff-17",
    "escalation_level": 1,
    "assignment_acknowledged_at": "2026-01-15T10:04:00Z",
    "next_escalation_at": "2026-01-15T10:10:00Z",
    "sla_breach_at": "2026-01-15T12:00:00Z",
    "is_crisis": False,
    "auto_assignment_attempts": 1,
    "work_started_at": None,
    "before_photo_url": None,
    "after_photo_url": None,
    "completed_at": None,
    "closure_reason": None,
    "updated_at": "2026-01-15T10:04:00Z"
}


# ========== Dependencies ==========

def get_orchestrator(request: Request) -> AssignmentOrchestrator:
    """Orchestrator created during application startup."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator not initialized"
        )
    return orchestrator


def get_assignment_service(request: Request) -> AssignmentService:
    """Assignment service created during application startup."""
    service = getattr(request.app.state, "assignment_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Assignment service not initialized"
        )
    return service


# ========== Route Handlers ==========

@router.post(
    "/tick",
    response_model=TickResponse,
    summary="Run one orchestration tick",
    description="""
    Run all four phases once, for external cron triggers.

    1. Expire staff whose auto-offline time has passed
    2. Reassign (or escalate) tickets whose assignee did not acknowledge
    3. Escalate acknowledged tickets past their SLA breach time
    4. Assign unassigned crisis tickets to the most senior available responder

    If a tick is already running in this process the call returns immediately
    with `skipped: true`.
    """,
    responses={
        200: {
            "description": "Tick report",
            "content": {"application/json": {"example": TICK_RESPONSE_EXAMPLE}}
        }
    }
)
async def run_tick(
    request: Request,
    orchestrator: AssignmentOrchestrator = Depends(get_orchestrator)
):
    cancel_event = getattr(request.app.state, "shutdown_event", None)
    report = await orchestrator.run_tick(cancel_event=cancel_event)
    return TickResponse.from_report(report)


@router.post(
    "/tickets/{ticket_id}/acknowledge",
    response_model=TicketAssignmentResponse,
    summary="Acknowledge an assignment",
    description="""
    The current assignee confirms they received the ticket. Stops the
    acknowledgment timer; the ticket becomes eligible for SLA escalation.

    Returns 409 if the staff member is not the assignee, the ticket is already
    acknowledged, or the ticket changed concurrently.
    """,
    responses={
        200: {
            "description": "Updated ticket",
            "content": {"application/json": {"example": TICKET_RESPONSE_EXAMPLE}}
        },
        404: {"description": "Ticket not found"},
        409: {"description": "Not the assignee, or concurrent change"}
    }
)
async def acknowledge_assignment(
    ticket_id: str,
    body: StaffActionRequest,
    service: AssignmentService = Depends(get_assignment_service)
):
    ticket = await service.acknowledge(ticket_id, body.staff_id)
    return TicketAssignmentResponse.from_entity(ticket)


@router.post(
    "/tickets/{ticket_id}/start",
    response_model=TicketAssignmentResponse,
    summary="Start work on a ticket",
    description="Assignee moves a pending ticket to in_progress (acknowledging it if needed).",
    responses={
        404: {"description": "Ticket not found"},
        409: {"description": "Not the assignee, not pending, or concurrent change"}
    }
)
async def start_work(
    ticket_id: str,
    body: StaffActionRequest,
    service: AssignmentService = Depends(get_assignment_service)
):
    ticket = await service.start_work(ticket_id, body.staff_id)
    return TicketAssignmentResponse.from_entity(ticket)


@router.post(
    "/tickets/{ticket_id}/photos",
    response_model=TicketAssignmentResponse,
    summary="Upload completion photos",
    description="Assignee records before and/or after photo URLs. A URL left out keeps its stored value.",
    responses={
        404: {"description": "Ticket not found"},
        409: {"description": "Not the assignee, ticket closed, or concurrent change"}
    }
)
async def upload_photos(
    ticket_id: str,
    body: UploadPhotosRequest,
    service: AssignmentService = Depends(get_assignment_service)
):
    ticket = await service.upload_photos(
        ticket_id, body.staff_id, body.before_photo_url, body.after_photo_url
    )
    return TicketAssignmentResponse.from_entity(ticket)


@router.post(
    "/tickets/{ticket_id}/close",
    response_model=TicketAssignmentResponse,
    summary="Close a ticket",
    description="""
    Assignee marks the ticket completed. Both before and after photos must
    already be uploaded. A completed ticket is no longer reassigned or escalated.
    """,
    responses={
        404: {"description": "Ticket not found"},
        409: {"description": "Not the assignee, photos missing, already closed, or concurrent change"}
    }
)
async def close_request(
    ticket_id: str,
    body: CloseTicketRequest,
    service: AssignmentService = Depends(get_assignment_service)
):
    ticket = await service.close_request(ticket_id, body.staff_id, body.closure_reason)
    return TicketAssignmentResponse.from_entity(ticket)


@router.post(
    "/tickets/{ticket_id}/assign",
    response_model=TicketAssignmentResponse,
    summary="Assign a ticket manually",
    description="""
    Dispatcher hands the ticket to a specific staff member. The acknowledgment
    timer restarts with the reassignment window and the assignee is notified.
    """,
    responses={
        404: {"description": "Ticket or staff member not found"},
        409: {"description": "Ticket closed, already assigned to that staff, or concurrent change"}
    }
)
async def assign_manually(
    ticket_id: str,
    body: ManualAssignRequest,
    service: AssignmentService = Depends(get_assignment_service)
):
    ticket = await service.assign_manually(ticket_id, body.staff_id, body.reason)
    return TicketAssignmentResponse.from_entity(ticket)


@router.get(
    "/tickets/{ticket_id}/timeline",
    response_model=TimelineResponse,
    summary="Assignment and escalation history",
    responses={404: {"description": "Ticket not found"}}
)
async def get_timeline(
    ticket_id: str,
    service: AssignmentService = Depends(get_assignment_service)
):
    timeline = await service.get_timeline(ticket_id)
    return TimelineResponse(
        ticket=TicketAssignmentResponse.from_entity(timeline["ticket"]),
        assignments=[AssignmentHistoryResponse.from_entity(e) for e in timeline["assignments"]],
        escalations=[EscalationLogResponse.from_entity(e) for e in timeline["escalations"]],
    )


assignment_router = router
