"""Root conftest.py -- makes `invoice_reminders` importable and provides
the fakes shared by the dispatcher and store tests.

Fixtures:
    store           fresh SQLite ReminderStore under tmp_path
    config          ReminderConfig with sender identity and tmp outbox
    transport       FakeTransport (records every email it is handed)
    pdf             FakePDFGenerator (returns a few fixed bytes)
    resolver        StubResolver with no answers
    add_invoice     factory: client + invoice N days overdue as of TODAY
    make_dispatcher factory: ReminderDispatcher wired to the fakes above
"""

import sys
import threading
import uuid
from datetime import date, timedelta
from pathlib import Path

import pytest

# Add the project root to sys.path so `from invoice_reminders.x import ...` works.
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from invoice_reminders.config import ConfigurationError, ReminderConfig
from invoice_reminders.dispatcher import ReminderDispatcher
from invoice_reminders.models import Invoice, InvoiceStatus, LineItem, TokenResolution
from invoice_reminders.rate_limit import RateLimiter
from invoice_reminders.store import ReminderStore
from invoice_reminders.token_resolver import empty_resolutions
from invoice_reminders.transport import SendReceipt, TransportError

TODAY = date(2026, 1, 10)
OWNER = "owner-1"


# ============================================================================
# Fakes
# ============================================================================

class FakeTransport:
    """Records emails instead of sending them.

    ``fail_for`` recipients raise TransportError; ``config_error`` makes
    validate() raise ConfigurationError.
    """

    def __init__(self, fail_for=(), config_error=None):
        self.sent = []
        self.fail_for = set(fail_for)
        self.config_error = config_error
        self.validate_calls = 0
        self._lock = threading.Lock()

    def validate(self):
        self.validate_calls += 1
        if self.config_error:
            raise ConfigurationError(self.config_error)

    def send(self, email):
        if email.to in self.fail_for:
            raise TransportError(f"Mailbox unavailable: {email.to}")
        with self._lock:
            self.sent.append(email)
            count = len(self.sent)
        return SendReceipt(message_id=f"<msg-{count}@test.local>")

    @property
    def recipients(self):
        return sorted(e.to for e in self.sent)


class FakePDFGenerator:
    """Returns fixed bytes; raises for invoice numbers in ``fail_for``."""

    def __init__(self, payload=b"%PDF-1.4 fake invoice", fail_for=()):
        self.payload = payload
        self.fail_for = set(fail_for)
        self.calls = []

    def generate(self, invoice, client, branding):
        if invoice.invoice_number in self.fail_for:
            raise RuntimeError(f"PDF renderer crashed on {invoice.invoice_number}")
        self.calls.append(invoice.invoice_number)
        return self.payload


class StubResolver:
    """Answers from a fixed {key: (value, confidence)} table.

    ``unavailable`` mimics a resolver whose backend is down (every key
    empty with confidence 0); ``explode`` raises, which a real resolver
    never does, to exercise per-invoice isolation.
    """

    def __init__(self, answers=None, unavailable=False, explode=False):
        self.answers = dict(answers or {})
        self.unavailable = unavailable
        self.explode = explode
        self.calls = []

    def resolve_batch(self, keys, snapshot):
        self.calls.append((list(keys), snapshot))
        if self.explode:
            raise RuntimeError("resolver exploded")
        if self.unavailable:
            return empty_resolutions(keys)
        resolutions = []
        for key in keys:
            value, confidence = self.answers.get(key, ("", 0.0))
            resolutions.append(TokenResolution(key=key, value=value, confidence=confidence))
        return resolutions


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store(tmp_path):
    return ReminderStore(tmp_path / "reminders.db")


@pytest.fixture
def config(tmp_path):
    cfg = ReminderConfig()
    cfg.sender.sender_name = "Dana Lee"
    cfg.sender.company_name = "Northwind Studio"
    cfg.sender.from_email = "billing@northwind.test"
    cfg.storage.outbox_dir = str(tmp_path / "outbox")
    cfg.dispatch.max_workers = 4
    return cfg


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def pdf():
    return FakePDFGenerator()


@pytest.fixture
def resolver():
    return StubResolver()


@pytest.fixture
def add_invoice(store):
    """Factory: store a client + invoice that is ``days_overdue`` old on TODAY."""

    def _add(
        number,
        days_overdue=9,
        email=None,
        client_name="Acme Corp",
        status=InvoiceStatus.OPEN,
        amount=1250.0,
        line_items=None,
        owner_id=OWNER,
    ):
        if email is None:
            email = f"ap+{number.lower()}@acme.test"
        client = store.upsert_client(owner_id, client_name, email)
        invoice = Invoice(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            invoice_number=number,
            client_id=client.id,
            amount=amount,
            due_date=TODAY - timedelta(days=days_overdue),
            issue_date=TODAY - timedelta(days=days_overdue + 30),
            payment_terms="Net 30",
            status=status,
            line_items=line_items if line_items is not None else [
                LineItem(description="Website redesign", quantity=1, unit_price=amount),
            ],
        )
        stored_id = store.save_invoice(invoice)
        return store.require_invoice(stored_id)

    return _add


@pytest.fixture
def make_dispatcher(store, config, transport, pdf, resolver):
    """Factory: dispatcher over the shared store with optional fake swaps."""

    def _make(transport_=None, pdf_=None, resolver_=None, rate_limiter=None):
        return ReminderDispatcher(
            store=store,
            transport=transport_ or transport,
            resolver=resolver_ or resolver,
            pdf_generator=pdf_ or pdf,
            config=config,
            rate_limiter=rate_limiter or RateLimiter(max_requests=100, window_seconds=60),
        )

    return _make
