"""
Assignment Value Objects
=========================

Immutable value objects for the assignment domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from config import (
    ASSIGNABLE_STAFF_LEVELS,
    MAX_ESCALATION_LEVEL,
    MIN_ESCALATION_LEVEL,
    StaffRole,
)


DEFAULT_ESCALATION_WINDOWS: Dict[int, int] = {1: 10, 2: 10, 3: 15, 4: 30, 5: 60}
DEFAULT_ESCALATION_AUDIENCES: Dict[int, StaffRole] = {
    1: StaffRole.FIELD_STAFF,
    2: StaffRole.OPS_SUPERVISOR,
    3: StaffRole.ADMIN,
    4: StaffRole.ADMIN,
    5: StaffRole.ADMIN,
}


class EscalationLevelConfig(BaseModel):
    """Configuration for a single escalation level."""
    level: int = Field(ge=MIN_ESCALATION_LEVEL, le=MAX_ESCALATION_LEVEL, description="Escalation level")
    window_minutes: int = Field(gt=0, description="Minutes until the next escalation check")
    notify_role: StaffRole = Field(description="Role notified when a ticket reaches this level")


def _default_levels() -> List[EscalationLevelConfig]:
    return [
        EscalationLevelConfig(
            level=level,
            window_minutes=DEFAULT_ESCALATION_WINDOWS[level],
            notify_role=DEFAULT_ESCALATION_AUDIENCES[level],
        )
        for level in sorted(DEFAULT_ESCALATION_WINDOWS)
    ]


class EscalationPolicy(BaseModel):
    """
    Escalation policy loaded from YAML.

    Closed level -> (window, audience) table, validated once when loaded.
    Lookups for levels outside the table fall back to the defaults instead
    of failing a tick.
    """
    escalation_levels: List[EscalationLevelConfig] = Field(
        default_factory=_default_levels,
        description="Window and audience per escalation level"
    )
    default_window_minutes: int = Field(default=30, gt=0)
    default_audience: StaffRole = Field(default=StaffRole.ADMIN)
    reassignment_window_minutes: int = Field(default=10, gt=0)
    crisis_window_minutes: int = Field(default=5, gt=0)
    unacknowledged_escalation_level: int = Field(
        default=2, ge=MIN_ESCALATION_LEVEL, le=MAX_ESCALATION_LEVEL
    )
    reassignment_staff_level: int = Field(default=1)
    crisis_staff_levels: List[int] = Field(
        default_factory=lambda: sorted(ASSIGNABLE_STAFF_LEVELS, reverse=True)
    )

    @field_validator("escalation_levels")
    @classmethod
    def validate_escalation_levels(
        cls, v: List[EscalationLevelConfig]
    ) -> List[EscalationLevelConfig]:
        """Reject duplicate levels and fill missing ones from the defaults."""
        seen = [entry.level for entry in v]
        duplicates = {level for level in seen if seen.count(level) > 1}
        if duplicates:
            raise ValueError(f"duplicate escalation levels: {sorted(duplicates)}")

        by_level = {entry.level: entry for entry in v}
        for default in _default_levels():
            by_level.setdefault(default.level, default)
        return [by_level[level] for level in sorted(by_level)]

    @field_validator("reassignment_staff_level")
    @classmethod
    def validate_reassignment_level(cls, v: int) -> int:
        if v not in ASSIGNABLE_STAFF_LEVELS:
            raise ValueError(f"reassignment_staff_level must be one of {ASSIGNABLE_STAFF_LEVELS}")
        return v

    @field_validator("crisis_staff_levels")
    @classmethod
    def validate_crisis_levels(cls, v: List[int]) -> List[int]:
        """Crisis scan runs over the assignable pool only, highest first."""
        if not v:
            raise ValueError("crisis_staff_levels cannot be empty")
        invalid = [level for level in v if level not in ASSIGNABLE_STAFF_LEVELS]
        if invalid:
            raise ValueError(
                f"crisis_staff_levels {invalid} outside assignable pool {ASSIGNABLE_STAFF_LEVELS}"
            )
        return sorted(set(v), reverse=True)

    def _entry(self, level: int) -> Optional[EscalationLevelConfig]:
        for entry in self.escalation_levels:
            if entry.level == level:
                return entry
        return None

    def window_for(self, level: int) -> timedelta:
        """Escalation window for ``level``; unknown levels use the default."""
        entry = self._entry(level)
        minutes = entry.window_minutes if entry else self.default_window_minutes
        return timedelta(minutes=minutes)

    def audience_for(self, level: int) -> StaffRole:
        """Role notified at ``level``; unknown levels go to the default audience."""
        entry = self._entry(level)
        return entry.notify_role if entry else self.default_audience

    @property
    def reassignment_window(self) -> timedelta:
        return timedelta(minutes=self.reassignment_window_minutes)

    @property
    def crisis_window(self) -> timedelta:
        return timedelta(minutes=self.crisis_window_minutes)

    def unacknowledged_target_level(self, current_level: int) -> int:
        """
        Level for a ticket nobody on the front line could take over.

        Always the configured level unless the ticket already sits higher.
        """
        return max(self.unacknowledged_escalation_level, current_level)

    @staticmethod
    def sla_breach_target_level(current_level: int) -> Optional[int]:
        """One step up, or None when the ticket is already terminal."""
        if current_level >= MAX_ESCALATION_LEVEL:
            return None
        return max(current_level + 1, MIN_ESCALATION_LEVEL)


@dataclass
class PhaseReport:
    """Outcome counters for one phase of a tick."""
    name: str
    selected: int = 0
    changed: int = 0
    stale: int = 0
    skipped: int = 0
    failed: bool = False
    error: Optional[str] = None
    details: Dict[str, int] = field(default_factory=dict)

    def bump(self, key: str) -> None:
        self.details[key] = self.details.get(key, 0) + 1

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "selected": self.selected,
            "changed": self.changed,
            "stale": self.stale,
            "skipped": self.skipped,
            "failed": self.failed,
            "error": self.error,
            "details": dict(self.details),
        }


@dataclass
class TickReport:
    """Outcome of one orchestration tick."""
    tick_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    phases: List[PhaseReport] = field(default_factory=list)
    aborted: bool = False
    skipped: bool = False

    @property
    def duration_ms(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds() * 1000

    @property
    def failed_phases(self) -> List[str]:
        return [phase.name for phase in self.phases if phase.failed]

    def phase(self, name: str) -> PhaseReport:
        for report in self.phases:
            if report.name == name:
                return report
        raise KeyError(name)

    def to_dict(self) -> dict:
        return {
            "tick_id": self.tick_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": round(self.duration_ms, 2),
            "aborted": self.aborted,
            "skipped": self.skipped,
            "phases": [phase.to_dict() for phase in self.phases],
        }
