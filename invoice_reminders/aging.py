"""
Invoice Aging Calculator

Computes how many days an invoice is overdue and maps that onto the
reminder cadence.

Stage boundaries (lower bound inclusive):
    0:  fewer than 7 days overdue   (no reminder due)
    1:  7-13 days overdue           (first reminder)
    2:  14-20 days overdue          (second reminder)
    3:  21+ days overdue            (final reminder)

Both functions are pure; "today" is passed in by the caller so runs and
tests can pin the clock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional


# ---------------------------------------------------------------------------
# Stage Boundaries
# ---------------------------------------------------------------------------

STAGE_1_DAYS: int = 7
STAGE_2_DAYS: int = 14
STAGE_3_DAYS: int = 21

NO_STAGE: int = 0
MAX_STAGE: int = 3

STAGE_LABELS: dict[int, str] = {
    0: "Not due",
    1: "First reminder",
    2: "Second reminder",
    3: "Final reminder",
}


@dataclass(frozen=True)
class AgingResult:
    """Aging outcome for a single invoice."""
    days_overdue: int
    stage: int

    @property
    def label(self) -> str:
        return STAGE_LABELS[self.stage]

    @property
    def is_due(self) -> bool:
        return self.stage > NO_STAGE


# ---------------------------------------------------------------------------
# Calculations
# ---------------------------------------------------------------------------

def _as_date(value: date | datetime | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def days_overdue(due_date: date | datetime | str, today: Optional[date | datetime] = None) -> int:
    """Whole calendar days between today and the due date.

    Positive once the due date has passed; an invoice due today yields 0
    and one due in the future yields a negative number.
    """
    current = _as_date(today) if today is not None else date.today()
    return (current - _as_date(due_date)).days


def reminder_stage(days: int) -> int:
    """Map days overdue to a reminder stage (0 = nothing due)."""
    if days >= STAGE_3_DAYS:
        return 3
    if days >= STAGE_2_DAYS:
        return 2
    if days >= STAGE_1_DAYS:
        return 1
    return NO_STAGE


def classify(due_date: date | datetime | str, today: Optional[date | datetime] = None) -> AgingResult:
    """Compute days overdue and stage together."""
    days = days_overdue(due_date, today)
    return AgingResult(days_overdue=days, stage=reminder_stage(days))
