"""
Reminder Insights

Dashboard figures derived from the reminder core:

    suggested_action        The most-overdue invoice that is due a reminder
                            right now.  Uses the same eligibility filter as
                            a dispatch run, so it never suggests an invoice
                            a run would skip.
    reminder_effectiveness  Of the reminders sent in the last 30 days, how
                            many were followed by payment within 14 days.

Usage:
    from invoice_reminders.insights import build_insights
    report = build_insights(store, owner_id)
    print(report.suggestion.message)
    print(report.effectiveness.label)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional

from .aging import AgingResult
from .eligibility import filter_eligible
from .models import Client, Invoice, InvoiceStatus, ReminderRecord, ReminderStatus
from .store import ReminderStore

EFFECTIVENESS_DAYS: int = 30
PAID_WITHIN_DAYS: int = 14

_NO_REMINDERS_LABEL = f"No reminders sent in the last {EFFECTIVENESS_DAYS} days."


@dataclass(frozen=True)
class SuggestedAction:
    """Next reminder worth sending; empty when nothing is due."""
    message: str = ""
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    days_overdue: int = 0
    stage: int = 0
    stage_label: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ReminderEffectiveness:
    reminders_sent: int
    paid_within_days: int
    label: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class InsightsReport:
    suggestion: SuggestedAction = field(default_factory=SuggestedAction)
    effectiveness: ReminderEffectiveness = field(
        default_factory=lambda: ReminderEffectiveness(0, 0, _NO_REMINDERS_LABEL)
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "suggestion": self.suggestion.to_dict(),
            "effectiveness": self.effectiveness.to_dict(),
        }


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Suggested action
# ---------------------------------------------------------------------------

def suggested_action(
    invoices: Iterable[Invoice],
    clients: Mapping[str, Client],
    reminders: Iterable[ReminderRecord],
    today: Optional[date] = None,
) -> SuggestedAction:
    """Pick the eligible invoice with the most days overdue.

    Ties go to the invoice listed first.
    """
    eligible, _rejected = filter_eligible(invoices, clients, reminders, today)
    if not eligible:
        return SuggestedAction()

    invoice, verdict = max(eligible, key=lambda pair: pair[1].days_overdue)
    client = clients.get(invoice.client_id) if invoice.client_id else None
    name = (client.name if client else "") or "Client"
    return SuggestedAction(
        message=(
            f"Send reminder to {name}: {invoice.invoice_number} is "
            f"{verdict.days_overdue} days overdue."
        ),
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        days_overdue=verdict.days_overdue,
        stage=verdict.stage,
        stage_label=AgingResult(verdict.days_overdue, verdict.stage).label,
    )


# ---------------------------------------------------------------------------
# Effectiveness
# ---------------------------------------------------------------------------

def effectiveness_window_start(now: Optional[datetime] = None) -> datetime:
    """Midnight (UTC) at the start of the look-back window."""
    current = _as_utc(now) if now else datetime.now(timezone.utc)
    start = current - timedelta(days=EFFECTIVENESS_DAYS)
    return start.replace(hour=0, minute=0, second=0, microsecond=0)


def reminder_effectiveness(
    reminders: Iterable[ReminderRecord],
    invoices: Iterable[Invoice],
    now: Optional[datetime] = None,
) -> ReminderEffectiveness:
    """Count recent sent reminders and the invoices paid soon after one.

    A paid invoice counts once even when several of its reminders fall in
    the window.  Payment must land 0-14 days after the reminder.
    """
    start = effectiveness_window_start(now)
    by_id = {inv.id: inv for inv in invoices}
    recent = [
        r for r in reminders
        if r.status is ReminderStatus.SENT and r.sent_at and _as_utc(r.sent_at) >= start
    ]

    paid: set[str] = set()
    for reminder in recent:
        invoice = by_id.get(reminder.invoice_id)
        if invoice is None or invoice.status is not InvoiceStatus.PAID or invoice.paid_at is None:
            continue
        days_to_pay = (_as_utc(invoice.paid_at) - _as_utc(reminder.sent_at)) / timedelta(days=1)
        if 0 <= days_to_pay <= PAID_WITHIN_DAYS:
            paid.add(reminder.invoice_id)

    if not recent:
        label = _NO_REMINDERS_LABEL
    else:
        label = (
            f"{len(paid)} of {len(recent)} reminders led to payment "
            f"within {PAID_WITHIN_DAYS} days."
        )
    return ReminderEffectiveness(reminders_sent=len(recent), paid_within_days=len(paid), label=label)


def build_insights(
    store: ReminderStore,
    owner_id: str,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
) -> InsightsReport:
    invoices = store.list_invoices(owner_id)
    reminders = store.get_reminders(owner_id=owner_id)
    return InsightsReport(
        suggestion=suggested_action(invoices, store.get_clients(owner_id), reminders, today),
        effectiveness=reminder_effectiveness(reminders, invoices, now),
    )
