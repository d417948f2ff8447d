"""Invoice Reminders - staged overdue-invoice reminder engine.

Dataclasses for invoices, clients and reminder records, a token-based
template parser, an LLM-backed resolver for custom placeholders, and a
dispatcher that sends at most one reminder per invoice per stage.

The ReminderStore provides SQLite persistence with a storage-level
uniqueness guard on (invoice, stage) and an audit log.
"""

from .models import (
    BatchResult,
    Client,
    Invoice,
    InvoiceOutcome,
    InvoiceStatus,
    LineItem,
    OutcomeStatus,
    OwnerSettings,
    PreviewResult,
    ReminderRecord,
    ReminderStatus,
    SkipReason,
    TokenResolution,
)

from .dispatcher import DispatchMode, ReminderDispatcher
from .store import ReminderStore

__all__ = [
    "BatchResult",
    "Client",
    "DispatchMode",
    "Invoice",
    "InvoiceOutcome",
    "InvoiceStatus",
    "LineItem",
    "OutcomeStatus",
    "OwnerSettings",
    "PreviewResult",
    "ReminderDispatcher",
    "ReminderRecord",
    "ReminderStatus",
    "ReminderStore",
    "SkipReason",
    "TokenResolution",
]
