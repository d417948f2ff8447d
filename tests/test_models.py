"""Tests for invoice_reminders.models -- invoice, reminder and result dataclasses.

Covers:
- Enum values and InvoiceStatus.is_collectable
- Invoice construction checks, paid/void transitions, snapshot
- LineItem totals, ReminderRecord.blocks_stage
- BatchResult counting and serialization, PreviewResult buckets
"""

import json
from datetime import date, datetime, timezone

import pytest

from invoice_reminders.models import (
    BatchResult,
    Client,
    Invoice,
    InvoiceOutcome,
    InvoiceStatus,
    LineItem,
    OutcomeStatus,
    PreviewResult,
    ReminderRecord,
    ReminderStatus,
    SkipReason,
    TokenResolution,
)


def _make_invoice(**overrides):
    defaults = dict(id="inv-1", owner_id="o1", invoice_number="INV-1001", amount=1250.0,
                    due_date=date(2026, 1, 1))
    defaults.update(overrides)
    return Invoice(**defaults)


# ============================================================================
# Enums
# ============================================================================

class TestEnums:

    @pytest.mark.parametrize("status,collectable", [
        (InvoiceStatus.OPEN, True),
        (InvoiceStatus.PARTIAL, True),
        (InvoiceStatus.PAID, False),
        (InvoiceStatus.VOID, False),
    ])
    def test_collectable(self, status, collectable):
        assert status.is_collectable is collectable

    def test_skip_reasons_are_human_readable(self):
        assert SkipReason.ALREADY_SENT.value == "Reminder already sent for this stage."
        assert SkipReason.NO_CLIENT_EMAIL.value == "Client email missing."

    def test_reminder_status_values(self):
        assert [s.value for s in ReminderStatus] == ["pending", "sending", "sent", "failed", "unknown"]


# ============================================================================
# Invoice
# ============================================================================

class TestInvoice:

    def test_requires_due_date(self):
        with pytest.raises(ValueError, match="due date"):
            _make_invoice(due_date=None)

    def test_rejects_negative_amount(self):
        with pytest.raises(ValueError, match="non-negative"):
            _make_invoice(amount=-0.01)

    def test_zero_amount_allowed(self):
        assert _make_invoice(amount=0).amount == 0

    def test_mark_paid(self):
        invoice = _make_invoice()
        when = datetime(2026, 1, 9, tzinfo=timezone.utc)
        invoice.mark_paid(when)
        assert invoice.status is InvoiceStatus.PAID
        assert invoice.paid_at == when

    def test_mark_paid_defaults_to_now(self):
        invoice = _make_invoice(status=InvoiceStatus.PARTIAL)
        invoice.mark_paid()
        assert invoice.paid_at is not None

    @pytest.mark.parametrize("status", [InvoiceStatus.PAID, InvoiceStatus.VOID])
    def test_closed_invoices_cannot_change(self, status):
        invoice = _make_invoice(status=status)
        with pytest.raises(ValueError):
            invoice.mark_paid()
        with pytest.raises(ValueError):
            invoice.mark_void()

    def test_snapshot_is_json_safe(self):
        invoice = _make_invoice(
            issue_date=date(2025, 12, 2),
            payment_terms="Net 30",
            line_items=[LineItem("Design", 2, 100.0)],
        )
        client = Client(id="c1", owner_id="o1", name="Acme", email="ap@acme.test")
        snap = invoice.snapshot(client)
        json.dumps(snap)
        assert snap["due_date"] == "2026-01-01"
        assert snap["issue_date"] == "2025-12-02"
        assert snap["client_name"] == "Acme"
        assert snap["status"] == "open"
        assert snap["line_items"][0]["line_total"] == 200.0

    def test_snapshot_without_client(self):
        snap = _make_invoice().snapshot()
        assert snap["client_name"] is None
        assert snap["payment_terms"] is None


# ============================================================================
# Small models
# ============================================================================

class TestSmallModels:

    def test_line_item_total(self):
        assert LineItem("a", 3, 2.5).total == 7.5
        assert LineItem("a", 3, 2.5, line_total=7.0).total == 7.0

    @pytest.mark.parametrize("status,blocks", [
        (ReminderStatus.PENDING, True),
        (ReminderStatus.SENDING, True),
        (ReminderStatus.SENT, True),
        (ReminderStatus.FAILED, False),
        (ReminderStatus.UNKNOWN, True),
    ])
    def test_blocks_stage(self, status, blocks):
        record = ReminderRecord(id="r", owner_id="o", invoice_id="i", stage=1, status=status)
        assert record.blocks_stage is blocks

    def test_client_has_email(self):
        assert Client("c", "o", "Acme", "ap@acme.test").has_email
        assert not Client("c", "o", "Acme", "  ").has_email


# ============================================================================
# BatchResult
# ============================================================================

class TestBatchResult:

    @pytest.fixture
    def result(self):
        return BatchResult(outcomes=[
            InvoiceOutcome("a", "A", status=OutcomeStatus.SENT, stage=1),
            InvoiceOutcome("b", "B", status=OutcomeStatus.FAILED, reason="SMTP down"),
            InvoiceOutcome("c", "C", status=OutcomeStatus.SKIPPED, reason=SkipReason.NOT_OVERDUE.value),
            InvoiceOutcome("d", "D", status=OutcomeStatus.NEEDS_INPUT, missing_tokens=["po_number"]),
        ])

    def test_counts(self, result):
        assert (result.sent, result.failed, result.skipped) == (1, 1, 2)
        assert result.summary() == "1 sent, 1 failed, 2 skipped"

    def test_to_dict(self, result):
        payload = result.to_dict()
        assert payload["failures"] == [{"invoice_id": "b", "invoice_number": "B", "error": "SMTP down"}]
        assert [s["invoice_id"] for s in payload["skips"]] == ["c", "d"]
        assert payload["skips"][1]["missing_tokens"] == ["po_number"]
        json.dumps(payload)

    def test_outcome_to_dict(self):
        outcome = InvoiceOutcome(
            "a", "A", status=OutcomeStatus.NEEDS_INPUT,
            suggestions={"po_number": TokenResolution("po_number", "PO-1", 0.5)},
        )
        data = outcome.to_dict()
        assert data["status"] == "needs_input"
        assert data["suggestions"]["po_number"] == {"key": "po_number", "value": "PO-1", "confidence": 0.5}

    def test_preview_keeps_failures_apart(self):
        report = PreviewResult(
            ineligible=[InvoiceOutcome("c", "C", reason=SkipReason.NOT_OVERDUE.value)],
            failed=[InvoiceOutcome("b", "B", status=OutcomeStatus.FAILED, reason="boom")],
        )
        payload = report.to_dict()
        assert sorted(payload) == ["failed", "ineligible", "needs_input", "ready"]
        assert [o["invoice_id"] for o in payload["failed"]] == ["b"]
        assert [o["invoice_id"] for o in payload["ineligible"]] == ["c"]
