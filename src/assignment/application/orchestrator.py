"""
Assignment Orchestrator
========================

Periodic tick that keeps tickets moving toward resolution.

Phases run strictly in order, each behind its own failure boundary:

1. expire_inactive_staff - staff past their auto-offline time go offline
2. reassign_unacknowledged - overdue unacknowledged tickets move to another
   level-1 staff member, or escalate when nobody is free
3. escalate_sla_breaches - acknowledged, breached tickets climb one level
4. assign_crisis_tickets - unassigned crisis tickets go to the most senior
   available responder

Each ticket is handled in its own transaction. Notifications go out only
after that transaction commits.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

from assignment.application.services import (
    Clock,
    IEscalationConfigProvider,
    IUnitOfWork,
    NotificationDispatcher,
    NotificationFactory,
    UnitOfWorkFactory,
    append_audit,
    utc_now,
)
from assignment.domain import (
    AssignmentHistoryEntry,
    EscalationLogEntry,
    EscalationPolicy,
    NotificationRecord,
    PhaseReport,
    StaffMember,
    Ticket,
    TickReport,
)
from config import MAX_ESCALATION_LEVEL, AssignmentType, EscalationType, StaffRole
from core import (
    DomainException,
    RepositoryException,
    StaleStateException,
)
from shared.infrastructure.logging import get_context_logger, get_logger, log_latency

logger = get_logger(__name__)

REASON_NOT_ACKNOWLEDGED = "previous assignee did not acknowledge"
REASON_NO_LEVEL1_STAFF = "no level-1 staff available for reassignment"
REASON_CRISIS = "crisis ticket auto-assignment"

PHASE_EXPIRE_STAFF = "expire_inactive_staff"
PHASE_REASSIGN = "reassign_unacknowledged"
PHASE_SLA = "escalate_sla_breaches"
PHASE_CRISIS = "assign_crisis_tickets"

# Outcome returned when a record was looked at but nothing changed
NO_CANDIDATE = "no_candidate"


def sla_breach_reason(level: int) -> str:
    return f"SLA breach - escalating to L{level}"


@dataclass
class EscalationResult:
    """Committed escalation waiting for its audience to be notified."""
    ticket: Ticket
    previous_level: int
    reason: str
    audience: StaffRole


@dataclass
class _PhaseContext:
    now: datetime
    policy: EscalationPolicy
    report: PhaseReport
    log: object
    cancel_event: Optional[asyncio.Event]


class AssignmentOrchestrator:
    """
    Runs orchestration ticks.

    Overlapping calls are rejected in-process: a run_tick that starts while
    another is in flight returns a report flagged ``skipped``. Across
    processes, conditional updates make concurrent writers safe.
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
        self._tick_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._tick_lock.locked()

    async def wait_idle(self) -> None:
        """Return once no tick is in flight."""
        async with self._tick_lock:
            pass

    def _phases(self) -> List[Tuple[str, Callable[[_PhaseContext], Awaitable[None]]]]:
        return [
            (PHASE_EXPIRE_STAFF, self._expire_inactive_staff),
            (PHASE_REASSIGN, self._reassign_unacknowledged),
            (PHASE_SLA, self._escalate_sla_breaches),
            (PHASE_CRISIS, self._assign_crisis_tickets),
        ]

    async def run_tick(self, cancel_event: Optional[asyncio.Event] = None) -> TickReport:
        """
        Run all four phases once against a single ``now``.

        Args:
            cancel_event: checked between phases and between records; once
                set, the tick stops after the record in flight

        Returns:
            TickReport with per-phase counters
        """
        now = self._clock()
        report = TickReport(tick_id=str(uuid4()), started_at=now)
        log = get_context_logger(__name__, report.tick_id)

        if self._tick_lock.locked():
            report.skipped = True
            report.finished_at = now
            log.warning("Tick skipped, previous tick still running")
            return report

        async with self._tick_lock:
            policy = self._config_provider.get_config()
            log.info("Tick started", extra={"now": now.isoformat()})

            for name, phase in self._phases():
                if _is_cancelled(cancel_event):
                    report.aborted = True
                    break

                phase_report = PhaseReport(name=name)
                report.phases.append(phase_report)
                ctx = _PhaseContext(now, policy, phase_report, log, cancel_event)

                try:
                    with log_latency(log, name):
                        await phase(ctx)
                except Exception as e:
                    phase_report.failed = True
                    phase_report.error = str(e)
                    log.error(
                        "Phase failed",
                        extra={"phase": name, "error_type": type(e).__name__, "error": str(e)},
                        exc_info=True
                    )
                else:
                    log.info(
                        "Phase completed",
                        extra={
                            "phase": name,
                            "selected": phase_report.selected,
                            "changed": phase_report.changed,
                            "stale": phase_report.stale,
                            "skipped": phase_report.skipped,
                        }
                    )

            if _is_cancelled(cancel_event):
                report.aborted = True

        report.finished_at = self._clock()
        log.info(
            "Tick completed",
            extra={
                "duration_ms": round(report.duration_ms, 2),
                "aborted": report.aborted,
                "failed_phases": report.failed_phases,
            }
        )
        return report

    # ========== Per-record driver ==========

    async def _for_each(
        self,
        ctx: _PhaseContext,
        records: Sequence,
        handle: Callable[..., Awaitable[str]],
        kind: str = "ticket_id"
    ) -> None:
        """
        Apply ``handle`` to every record with per-record error isolation.

        Stale writes count as no-ops, store errors skip the record.
        """
        ctx.report.selected = len(records)
        for record in records:
            if _is_cancelled(ctx.cancel_event):
                ctx.log.info("Phase cancelled", extra={"phase": ctx.report.name})
                return

            try:
                outcome = await handle(ctx, record)
            except StaleStateException as e:
                ctx.report.stale += 1
                ctx.log.info(
                    "Record changed concurrently, skipped",
                    extra={kind: record.id, "phase": ctx.report.name, "error": e.message}
                )
            except (RepositoryException, DomainException) as e:
                ctx.report.skipped += 1
                ctx.log.warning(
                    "Record skipped",
                    extra={
                        kind: record.id,
                        "phase": ctx.report.name,
                        "error_type": type(e).__name__,
                        "error": e.message,
                    }
                )
            else:
                ctx.report.bump(outcome)
                if outcome != NO_CANDIDATE:
                    ctx.report.changed += 1

    # ========== Phase 1 ==========

    async def _expire_inactive_staff(self, ctx: _PhaseContext) -> None:
        async with self._uow_factory() as uow:
            due = await uow.staff.list_auto_offline_due(ctx.now)
        await self._for_each(ctx, due, self._expire_one, kind="staff_id")

    async def _expire_one(self, ctx: _PhaseContext, staff: StaffMember) -> str:
        expected = staff.auto_offline_at
        staff.go_offline()
        async with self._uow_factory() as uow:
            await uow.staff.save_offline(staff, expected, ctx.now)
            await uow.commit()
        ctx.log.info("Staff auto-offlined", extra={"staff_id": staff.id})
        return "offline"

    # ========== Phase 2 ==========

    async def _reassign_unacknowledged(self, ctx: _PhaseContext) -> None:
        async with self._uow_factory() as uow:
            overdue = await uow.tickets.list_unacknowledged_overdue(ctx.now)
        await self._for_each(ctx, overdue, self._reassign_or_escalate)

    async def _reassign_or_escalate(self, ctx: _PhaseContext, ticket: Ticket) -> str:
        expected = ticket.version()
        notices: List[NotificationRecord] = []
        escalation: Optional[EscalationResult] = None

        async with self._uow_factory() as uow:
            candidate = await self._claim_candidate(
                uow, ctx,
                group=ticket.assigned_group,
                staff_level=ctx.policy.reassignment_staff_level,
                exclude_ids=[ticket.assigned_to],
            )
            if candidate is not None:
                previous = ticket.assign(candidate.id, ctx.now, ctx.policy.reassignment_window)
                await uow.tickets.save_conditionally(ticket, expected)
                await self._record_assignment(
                    uow, ctx, ticket, AssignmentType.REASSIGNMENT, REASON_NOT_ACKNOWLEDGED, previous
                )
                await uow.commit()
                notices.append(self._notifications.assignment(
                    ticket,
                    AssignmentType.REASSIGNMENT,
                    ctx.policy.reassignment_window_minutes,
                    ctx.now,
                ))
                outcome = "reassigned"
                ctx.log.info(
                    "Ticket reassigned",
                    extra={"ticket_id": ticket.id, "from": previous, "to": candidate.id}
                )
            else:
                escalation = await self._escalate(
                    uow, ctx, ticket,
                    target_level=ctx.policy.unacknowledged_target_level(ticket.escalation_level),
                    escalation_type=EscalationType.ACKNOWLEDGEMENT_TIMEOUT,
                    reason=REASON_NO_LEVEL1_STAFF,
                    triggered_at=expected.next_escalation_at,
                )
                outcome = "escalated"

        await self._dispatcher.dispatch(notices, log=ctx.log)
        if escalation is not None:
            await self._notify_audience(ctx, escalation)
        return outcome

    # ========== Phase 3 ==========

    async def _escalate_sla_breaches(self, ctx: _PhaseContext) -> None:
        async with self._uow_factory() as uow:
            breached = await uow.tickets.list_sla_escalation_due(ctx.now)
        await self._for_each(ctx, breached, self._escalate_breach)

    async def _escalate_breach(self, ctx: _PhaseContext, ticket: Ticket) -> str:
        target = ctx.policy.sla_breach_target_level(ticket.escalation_level)
        if target is None:
            return NO_CANDIDATE

        async with self._uow_factory() as uow:
            escalation = await self._escalate(
                uow, ctx, ticket,
                target_level=target,
                escalation_type=EscalationType.SLA_BREACH,
                reason=sla_breach_reason(target),
                triggered_at=ticket.sla_breach_at,
            )
        await self._notify_audience(ctx, escalation)
        return f"escalated_to_l{target}"

    # ========== Phase 4 ==========

    async def _assign_crisis_tickets(self, ctx: _PhaseContext) -> None:
        async with self._uow_factory() as uow:
            crisis = await uow.tickets.list_unassigned_crisis()
        await self._for_each(ctx, crisis, self._assign_crisis)

    async def _assign_crisis(self, ctx: _PhaseContext, ticket: Ticket) -> str:
        expected = ticket.version()

        async with self._uow_factory() as uow:
            candidate = None
            for staff_level in ctx.policy.crisis_staff_levels:
                candidate = await self._claim_candidate(
                    uow, ctx, group=ticket.assigned_group, staff_level=staff_level
                )
                if candidate is not None:
                    break

            if candidate is None:
                ctx.log.warning(
                    "No responder available for crisis ticket",
                    extra={"ticket_id": ticket.id, "group": ticket.assigned_group}
                )
                return NO_CANDIDATE

            previous = ticket.assign(candidate.id, ctx.now, ctx.policy.crisis_window)
            ticket.escalate(MAX_ESCALATION_LEVEL, ctx.now, ctx.policy.crisis_window)
            await uow.tickets.save_conditionally(ticket, expected)
            await self._record_assignment(
                uow, ctx, ticket, AssignmentType.AUTO, REASON_CRISIS, previous
            )
            await uow.commit()

        ctx.log.info(
            "Crisis ticket assigned",
            extra={"ticket_id": ticket.id, "staff_id": candidate.id}
        )
        await self._dispatcher.dispatch(
            [self._notifications.assignment(
                ticket, AssignmentType.AUTO, ctx.policy.crisis_window_minutes, ctx.now
            )],
            log=ctx.log,
        )
        return "assigned"

    # ========== Shared building blocks ==========

    async def _claim_candidate(
        self,
        uow: IUnitOfWork,
        ctx: _PhaseContext,
        group: str,
        staff_level: int,
        exclude_ids: Iterable[Optional[str]] = ()
    ) -> Optional[StaffMember]:
        """
        First candidate, in tie-break order, whose claim succeeds.

        The claim is a conditional update inside the caller's transaction,
        so it is released if the ticket write later fails.
        """
        candidates = await uow.staff.find_available(group, staff_level, exclude_ids=exclude_ids)
        for candidate in candidates:
            if await uow.staff.claim(candidate, ctx.now):
                return candidate
            ctx.log.info(
                "Candidate claimed elsewhere, trying next",
                extra={"staff_id": candidate.id, "group": group}
            )
        return None

    async def _record_assignment(
        self,
        uow: IUnitOfWork,
        ctx: _PhaseContext,
        ticket: Ticket,
        assignment_type: AssignmentType,
        reason: str,
        previous: Optional[str]
    ) -> None:
        entry = AssignmentHistoryEntry(
            ticket_id=ticket.id,
            assigned_to=ticket.assigned_to,
            assignment_type=assignment_type,
            reason=reason,
            created_at=ctx.now,
            previous_assignee=previous,
        )
        await append_audit(
            uow, lambda: uow.audit.add_assignment(entry), log=ctx.log, ticket_id=ticket.id
        )

    async def _escalate(
        self,
        uow: IUnitOfWork,
        ctx: _PhaseContext,
        ticket: Ticket,
        target_level: int,
        escalation_type: EscalationType,
        reason: str,
        triggered_at: Optional[datetime]
    ) -> EscalationResult:
        """
        Move a ticket to ``target_level`` and commit.

        Same behaviour for acknowledgment timeouts and SLA breaches: new
        window from the policy, escalation log entry, then (after commit)
        the level's audience is notified by the caller.
        """
        expected = ticket.version()
        previous_level = ticket.escalate(target_level, ctx.now, ctx.policy.window_for(target_level))
        await uow.tickets.save_conditionally(ticket, expected)

        entry = EscalationLogEntry(
            ticket_id=ticket.id,
            escalation_type=escalation_type,
            reason=reason,
            metadata={
                "previous_level": previous_level,
                "new_level": target_level,
                "triggered_at": triggered_at.isoformat() if triggered_at else None,
                "assigned_to": ticket.assigned_to,
            },
            created_at=ctx.now,
        )
        await append_audit(
            uow, lambda: uow.audit.add_escalation(entry), log=ctx.log, ticket_id=ticket.id
        )
        await uow.commit()

        ctx.log.info(
            "Ticket escalated",
            extra={
                "ticket_id": ticket.id,
                "previous_level": previous_level,
                "new_level": target_level,
                "escalation_type": escalation_type.value,
            }
        )
        return EscalationResult(
            ticket=ticket,
            previous_level=previous_level,
            reason=reason,
            audience=ctx.policy.audience_for(target_level),
        )

    async def _notify_audience(self, ctx: _PhaseContext, escalation: EscalationResult) -> None:
        """Resolve the level's audience and notify it; failures only log."""
        try:
            async with self._uow_factory() as uow:
                recipients = await uow.staff.list_by_role(escalation.audience)
        except RepositoryException as e:
            ctx.log.error(
                "Escalation audience lookup failed",
                extra={
                    "ticket_id": escalation.ticket.id,
                    "role": escalation.audience.value,
                    "error_type": type(e).__name__,
                    "error": e.message,
                }
            )
            return

        if not recipients:
            ctx.log.warning(
                "Escalation audience is empty",
                extra={"ticket_id": escalation.ticket.id, "role": escalation.audience.value}
            )
            return

        records = self._notifications.escalation(
            escalation.ticket, recipients, escalation.previous_level, escalation.reason, ctx.now
        )
        await self._dispatcher.dispatch(records, log=ctx.log)


def _is_cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()
