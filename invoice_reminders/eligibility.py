"""
Reminder Eligibility Filter

Decides, fresh on every run, whether an invoice should get a reminder
right now and at which stage.  Checks run in a fixed order and the first
failing check names the skip reason:

    1. status must be open or partial
    2. the invoice must have reached stage 1 or later
    3. no non-failed reminder may exist for (invoice, stage)
    4. the client must have an email address

The preview path uses exactly the same filter.  Check 3 is a fast path
only; the store's unique index on (invoice, stage) is what actually
prevents a duplicate send.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Mapping, Optional

from .aging import classify
from .models import Client, Invoice, ReminderRecord, SkipReason


@dataclass(frozen=True)
class EligibilityResult:
    """Filter verdict for one invoice."""
    invoice_id: str
    eligible: bool
    stage: int
    days_overdue: int
    skip_reason: Optional[SkipReason] = None


def sent_stages(reminders: Iterable[ReminderRecord], invoice_id: str) -> set[int]:
    """Stages already taken for an invoice (failed attempts don't count)."""
    return {r.stage for r in reminders if r.invoice_id == invoice_id and r.blocks_stage}


def check_eligibility(
    invoice: Invoice,
    client: Optional[Client],
    reminders: Iterable[ReminderRecord],
    today: Optional[date] = None,
) -> EligibilityResult:
    aging = classify(invoice.due_date, today)

    def _reject(reason: SkipReason) -> EligibilityResult:
        return EligibilityResult(
            invoice_id=invoice.id,
            eligible=False,
            stage=aging.stage,
            days_overdue=aging.days_overdue,
            skip_reason=reason,
        )

    if not invoice.status.is_collectable:
        return _reject(SkipReason.NOT_OPEN)
    if not aging.is_due:
        return _reject(SkipReason.NOT_OVERDUE)
    if aging.stage in sent_stages(reminders, invoice.id):
        return _reject(SkipReason.ALREADY_SENT)
    if client is None or not client.has_email:
        return _reject(SkipReason.NO_CLIENT_EMAIL)

    return EligibilityResult(
        invoice_id=invoice.id,
        eligible=True,
        stage=aging.stage,
        days_overdue=aging.days_overdue,
    )


def filter_eligible(
    invoices: Iterable[Invoice],
    clients: Mapping[str, Client],
    reminders: Iterable[ReminderRecord],
    today: Optional[date] = None,
) -> tuple[list[tuple[Invoice, EligibilityResult]], list[tuple[Invoice, EligibilityResult]]]:
    """Split invoices into (eligible, rejected), each paired with its verdict."""
    history = list(reminders)
    eligible: list[tuple[Invoice, EligibilityResult]] = []
    rejected: list[tuple[Invoice, EligibilityResult]] = []
    for invoice in invoices:
        client = clients.get(invoice.client_id) if invoice.client_id else None
        result = check_eligibility(invoice, client, history, today)
        (eligible if result.eligible else rejected).append((invoice, result))
    return eligible, rejected
