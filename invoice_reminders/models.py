"""Data models for the invoice reminder engine.

All models are plain dataclasses with type hints.  No ORM, no Pydantic --
the SQLite store in store.py maps rows to and from these by hand.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class InvoiceStatus(Enum):
    """Invoice lifecycle.  Only OPEN and PARTIAL can receive reminders."""

    OPEN = "open"
    PARTIAL = "partial"
    PAID = "paid"
    VOID = "void"

    @property
    def is_collectable(self) -> bool:
        return self in (InvoiceStatus.OPEN, InvoiceStatus.PARTIAL)


class ReminderStatus(Enum):
    """Lifecycle of a reminder row.

    PENDING is the claim taken before the email is built.  SENDING is set
    right before the transport is called: from then on the email may have
    left, so the row is never released for a retry.  A SENDING row left
    behind by a crashed run becomes UNKNOWN, which still blocks the stage.
    Only FAILED reopens it.
    """

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    UNKNOWN = "unknown"


class SkipReason(Enum):
    """Why an invoice did not receive a reminder in this run."""

    NOT_OPEN = "Invoice is not open or partial."
    NOT_OVERDUE = "Invoice is not overdue yet."
    ALREADY_SENT = "Reminder already sent for this stage."
    NO_CLIENT_EMAIL = "Client email missing."
    MISSING_TOKENS = "Template placeholders have no value."
    CLAIMED = "Another run is already sending this stage."


class OutcomeStatus(Enum):
    """Per-invoice result of a dispatch attempt."""

    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"
    NEEDS_INPUT = "needs_input"
    READY = "ready"             # preview only: would be sent


# ---------------------------------------------------------------------------
# Core Data Models
# ---------------------------------------------------------------------------

@dataclass
class LineItem:
    """One billed line on an invoice."""

    description: str = ""
    quantity: float = 1.0
    unit_price: float = 0.0
    line_total: float | None = None

    @property
    def total(self) -> float:
        """Stored line total, or quantity x unit price when absent."""
        if self.line_total is not None:
            return self.line_total
        return self.quantity * self.unit_price

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "line_total": self.total,
        }


@dataclass
class Client:
    """A billed customer.  Email is unique per owner."""

    id: str
    owner_id: str
    name: str
    email: str = ""

    @property
    def has_email(self) -> bool:
        """True when the client can be contacted."""
        return bool(self.email and self.email.strip())


@dataclass
class Invoice:
    """A single invoice owned by one user.

    ``due_date`` is mandatory and ``amount`` is never negative; both are
    checked on construction.
    """

    # --- identifiers ---
    id: str
    owner_id: str
    invoice_number: str
    client_id: str | None = None

    # --- financials ---
    amount: float = 0.0
    currency: str = "USD"
    subtotal: float | None = None
    tax: float | None = None
    total: float | None = None

    # --- dates & terms ---
    due_date: date | None = None
    issue_date: date | None = None
    payment_terms: str = ""
    bill_to_address: str = ""

    # --- lifecycle ---
    status: InvoiceStatus = InvoiceStatus.OPEN
    paid_at: datetime | None = None
    last_reminder_sent_at: datetime | None = None

    # --- detail ---
    line_items: list[LineItem] = field(default_factory=list)
    source_file: str = ""

    def __post_init__(self) -> None:
        if self.due_date is None:
            raise ValueError(f"Invoice {self.invoice_number}: due date is required")
        if self.amount < 0:
            raise ValueError(
                f"Invoice {self.invoice_number}: amount must be non-negative, got {self.amount}"
            )

    def mark_paid(self, when: datetime | None = None) -> None:
        """Close the invoice as paid."""
        if not self.status.is_collectable:
            raise ValueError(
                f"Can only mark open/partial invoices paid, current status: {self.status.value}"
            )
        self.status = InvoiceStatus.PAID
        self.paid_at = when or datetime.now(timezone.utc)

    def mark_void(self) -> None:
        """Cancel the invoice."""
        if not self.status.is_collectable:
            raise ValueError(
                f"Can only void open/partial invoices, current status: {self.status.value}"
            )
        self.status = InvoiceStatus.VOID

    def snapshot(self, client: Client | None = None) -> dict[str, Any]:
        """JSON-safe view of the invoice handed to the field resolver."""
        return {
            "invoice_number": self.invoice_number,
            "amount": self.amount,
            "currency": self.currency,
            "issue_date": self.issue_date.isoformat() if self.issue_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "payment_terms": self.payment_terms or None,
            "bill_to_address": self.bill_to_address or None,
            "subtotal": self.subtotal,
            "tax": self.tax,
            "total": self.total,
            "status": self.status.value,
            "client_name": client.name if client else None,
            "client_email": client.email if client else None,
            "line_items": [item.to_dict() for item in self.line_items],
        }


@dataclass
class ReminderRecord:
    """One reminder attempt for an (invoice, stage) pair."""

    id: str
    owner_id: str
    invoice_id: str
    stage: int
    status: ReminderStatus
    sent_at: datetime | None = None
    message_id: str = ""
    error: str = ""

    @property
    def blocks_stage(self) -> bool:
        """A non-failed record is what makes a stage 'already sent'."""
        return self.status is not ReminderStatus.FAILED


@dataclass
class OwnerSettings:
    """Per-owner sender identity and reminder templates."""

    owner_id: str
    company_name: str = ""
    sender_name: str = ""
    from_email: str = ""
    reply_to: str = ""
    reminder_subject: str = ""
    reminder_body: str = ""


@dataclass(frozen=True)
class TokenResolution:
    """A resolver answer for one custom placeholder."""

    key: str
    value: str = ""
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "value": self.value, "confidence": self.confidence}


# ---------------------------------------------------------------------------
# Dispatch Results
# ---------------------------------------------------------------------------

@dataclass
class InvoiceOutcome:
    """What happened to one invoice during a run, send or preview."""

    invoice_id: str
    invoice_number: str = ""
    client_name: str = ""
    status: OutcomeStatus = OutcomeStatus.SKIPPED
    stage: int = 0
    reason: str = ""
    missing_tokens: list[str] = field(default_factory=list)
    suggestions: dict[str, TokenResolution] = field(default_factory=dict)
    subject: str = ""
    body: str = ""
    message_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "client_name": self.client_name,
            "status": self.status.value,
            "stage": self.stage,
            "reason": self.reason,
            "missing_tokens": list(self.missing_tokens),
            "suggestions": {k: s.to_dict() for k, s in self.suggestions.items()},
            "message_id": self.message_id,
        }


@dataclass
class BatchResult:
    """Counts plus itemized reasons for one dispatch run."""

    outcomes: list[InvoiceOutcome] = field(default_factory=list)

    def _with_status(self, status: OutcomeStatus) -> list[InvoiceOutcome]:
        return [o for o in self.outcomes if o.status is status]

    @property
    def sent(self) -> int:
        return len(self._with_status(OutcomeStatus.SENT))

    @property
    def failed(self) -> int:
        return len(self._with_status(OutcomeStatus.FAILED))

    @property
    def skipped(self) -> int:
        return len(self.skips)

    @property
    def failures(self) -> list[InvoiceOutcome]:
        return self._with_status(OutcomeStatus.FAILED)

    @property
    def skips(self) -> list[InvoiceOutcome]:
        return [
            o for o in self.outcomes
            if o.status in (OutcomeStatus.SKIPPED, OutcomeStatus.NEEDS_INPUT)
        ]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for the CLI / UI."""
        return {
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "failures": [
                {"invoice_id": o.invoice_id, "invoice_number": o.invoice_number, "error": o.reason}
                for o in self.failures
            ],
            "skips": [
                {
                    "invoice_id": o.invoice_id,
                    "invoice_number": o.invoice_number,
                    "reason": o.reason,
                    "missing_tokens": list(o.missing_tokens),
                }
                for o in self.skips
            ],
        }

    def summary(self) -> str:
        """One-line summary for logs."""
        return f"{self.sent} sent, {self.failed} failed, {self.skipped} skipped"


@dataclass
class PreviewResult:
    """Dry-run report: what a real run would do right now."""

    needs_input: list[InvoiceOutcome] = field(default_factory=list)
    ready: list[InvoiceOutcome] = field(default_factory=list)
    ineligible: list[InvoiceOutcome] = field(default_factory=list)
    failed: list[InvoiceOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "needs_input": [o.to_dict() for o in self.needs_input],
            "ready": [o.to_dict() for o in self.ready],
            "ineligible": [o.to_dict() for o in self.ineligible],
            "failed": [o.to_dict() for o in self.failed],
        }
