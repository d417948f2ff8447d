"""
Reminder Email Rendering

Turns an invoice plus the owner's sender identity into the built-in
placeholder values, and wraps a rendered plain-text reminder body in
the Jinja2 HTML layout used for the multipart/alternative part.

Usage:
    from invoice_reminders.template_engine import TemplateEngine, builtin_values
    data = builtin_values(invoice, client, days_overdue=9, identity=identity)
    engine = TemplateEngine()
    html = engine.render_html(subject, body_text, identity)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .config import DEFAULT_TEMPLATE_DIR, ReminderConfig
from .models import Client, Invoice, LineItem, OwnerSettings

logger = logging.getLogger(__name__)

FALLBACK_CLIENT_NAME = "there"


# ---------------------------------------------------------------------------
# Helper: Format Utilities
# ---------------------------------------------------------------------------

def format_date(d: date | None) -> str:
    """Format a date as 'Mon D, YYYY' (e.g. 'Jan 5, 2026').

    Returns empty string for None.
    """
    if d is None:
        return ""
    return f"{d:%b} {d.day}, {d.year}"


def format_money(amount: float | None, currency: str = "USD") -> str:
    """Currency code plus two decimals: 'USD 1250.00'."""
    return f"{currency or 'USD'} {(amount or 0.0):.2f}"


# ---------------------------------------------------------------------------
# Sender Identity
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SenderIdentity:
    """Who a reminder comes from, after settings/config fallbacks."""
    sender_name: str
    company_name: str
    from_email: str = ""
    reply_to: str = ""


def resolve_identity(settings: Optional[OwnerSettings], config: ReminderConfig) -> SenderIdentity:
    """Owner settings first, then the configured defaults."""
    s = settings or OwnerSettings(owner_id="")
    return SenderIdentity(
        sender_name=s.sender_name.strip() or config.sender.sender_name,
        company_name=s.company_name.strip() or config.sender.company_name,
        from_email=s.from_email.strip() or config.sender.from_email or config.smtp.username,
        reply_to=s.reply_to.strip() or config.sender.reply_to,
    )


# ---------------------------------------------------------------------------
# Built-in Placeholder Values
# ---------------------------------------------------------------------------

def builtin_values(
    invoice: Invoice,
    client: Optional[Client],
    days_overdue: int,
    identity: SenderIdentity,
) -> dict[str, str]:
    """Values for every built-in key; always present, never None."""
    return {
        "client_name": (client.name if client and client.name else FALLBACK_CLIENT_NAME),
        "invoice_number": invoice.invoice_number,
        "amount": format_money(invoice.amount, invoice.currency),
        "due_date": format_date(invoice.due_date),
        "days_overdue": str(days_overdue),
        "sender_name": identity.sender_name,
        "company_name": identity.company_name,
    }


# ---------------------------------------------------------------------------
# Sample Invoice (template editor preview)
# ---------------------------------------------------------------------------

SAMPLE_DAYS_OVERDUE = 14


def sample_invoice() -> tuple[Invoice, Client]:
    """A realistic invoice used to preview templates before saving."""
    client = Client(id="sample-client", owner_id="", name="Bluehill Media", email="billing@bluehill.io")
    invoice = Invoice(
        id="sample",
        owner_id="",
        invoice_number="INV-2401",
        client_id=client.id,
        amount=1250.0,
        currency="USD",
        due_date=date(2026, 1, 15),
        issue_date=date(2025, 12, 15),
        payment_terms="Net 30",
        bill_to_address="123 Main St, City",
        line_items=[LineItem(description="Website redesign", quantity=1, unit_price=1250.0, line_total=1250.0)],
    )
    return invoice, client


# ===========================================================================
# HTML Template Engine
# ===========================================================================

class TemplateEngine:
    """Jinja2 renderer for the HTML alternative of a reminder email.

    The reminder text itself comes from the owner's token template; this
    only lays it out as paragraphs inside ``reminder.html``.
    """

    def __init__(self, template_dir: str | Path | None = None, template_name: str = "reminder.html") -> None:
        self.template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR
        self.template_name = template_name
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    @classmethod
    def from_config(cls, config: ReminderConfig) -> "TemplateEngine":
        return cls(config.templates.resolved_dir, config.templates.html_template)

    def render_html(self, subject: str, body_text: str, identity: SenderIdentity) -> str:
        paragraphs = [
            block.split("\n")
            for block in body_text.replace("\r\n", "\n").split("\n\n")
            if block.strip()
        ]
        template = self.env.get_template(self.template_name)
        return template.render(
            subject=subject,
            paragraphs=paragraphs,
            company_name=identity.company_name,
        )
