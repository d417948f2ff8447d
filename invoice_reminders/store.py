"""
Invoice Reminders -- SQLite Store

Durable storage for owners' settings, clients, invoices (with line items),
reminder attempts and an audit trail.

Reminder lifecycle per (invoice, stage):

    claim -> PENDING -> SENDING -> SENT
                    |          |-> FAILED   (transport refused)
                    |          |-> UNKNOWN  (stale: may have been delivered)
                    |-> FAILED              (stale, or email could not be built)

The partial unique index ``uq_reminders_active`` allows at most one
non-failed row per (invoice, stage).  Claiming a stage is therefore the
linearization point for at-most-once delivery: a second concurrent claim
raises DuplicateReminderError instead of producing a second email.  A
FAILED row never blocks a later attempt; UNKNOWN blocks it for good.

Database schema:
    settings    - Per-owner sender identity and templates
    clients     - Billed customers (email unique per owner)
    invoices    - Invoices (number unique per owner)
    line_items  - Ordered invoice lines
    reminders   - One row per reminder attempt
    audit_log   - Every claim/send/failure/status change

Usage:
    from invoice_reminders.store import ReminderStore

    store = ReminderStore("data/reminders.db")
    invoices = store.list_invoices(owner_id)
    claim = store.claim_reminder(owner_id, invoice.id, stage=1)
    store.complete_reminder(claim.id, message_id="<abc@mail>")
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from .models import (
    Client,
    Invoice,
    InvoiceStatus,
    LineItem,
    OwnerSettings,
    ReminderRecord,
    ReminderStatus,
)

logger = logging.getLogger(__name__)


class DuplicateReminderError(Exception):
    """A non-failed reminder already exists for this (invoice, stage)."""


class InvoiceNotFoundError(LookupError):
    """No invoice with the given id exists for the owner."""


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
]

# Claim states that can still be completed or failed
_IN_FLIGHT = f"('{ReminderStatus.PENDING.value}', '{ReminderStatus.SENDING.value}')"


# ---------------------------------------------------------------------------
# Database Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS settings (
    owner_id            TEXT PRIMARY KEY,
    company_name        TEXT NOT NULL DEFAULT '',
    sender_name         TEXT NOT NULL DEFAULT '',
    from_email          TEXT NOT NULL DEFAULT '',
    reply_to            TEXT NOT NULL DEFAULT '',
    reminder_subject    TEXT NOT NULL DEFAULT '',
    reminder_body       TEXT NOT NULL DEFAULT '',
    updated_at          TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS clients (
    id          TEXT PRIMARY KEY,
    owner_id    TEXT NOT NULL,
    name        TEXT NOT NULL DEFAULT '',
    email       TEXT NOT NULL DEFAULT '',
    created_at  TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS invoices (
    id                      TEXT PRIMARY KEY,
    owner_id                TEXT NOT NULL,
    client_id               TEXT,
    invoice_number          TEXT NOT NULL,
    amount                  REAL NOT NULL DEFAULT 0.0 CHECK (amount >= 0),
    currency                TEXT NOT NULL DEFAULT 'USD',
    subtotal                REAL,
    tax                     REAL,
    total                   REAL,
    issue_date              TEXT,
    due_date                TEXT NOT NULL,
    payment_terms           TEXT NOT NULL DEFAULT '',
    bill_to_address         TEXT NOT NULL DEFAULT '',
    status                  TEXT NOT NULL DEFAULT 'open',
    paid_at                 TEXT,
    last_reminder_sent_at   TEXT,
    source_file             TEXT NOT NULL DEFAULT '',
    created_at              TEXT NOT NULL DEFAULT '',
    UNIQUE (owner_id, invoice_number),
    FOREIGN KEY (client_id) REFERENCES clients(id)
);

CREATE TABLE IF NOT EXISTS line_items (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    invoice_id  TEXT NOT NULL,
    position    INTEGER NOT NULL DEFAULT 0,
    description TEXT NOT NULL DEFAULT '',
    quantity    REAL NOT NULL DEFAULT 1,
    unit_price  REAL NOT NULL DEFAULT 0,
    line_total  REAL,
    FOREIGN KEY (invoice_id) REFERENCES invoices(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS reminders (
    id          TEXT PRIMARY KEY,
    owner_id    TEXT NOT NULL,
    invoice_id  TEXT NOT NULL,
    stage       INTEGER NOT NULL CHECK (stage BETWEEN 1 AND 3),
    status      TEXT NOT NULL DEFAULT 'pending',
    created_at  TEXT NOT NULL DEFAULT '',
    sent_at     TEXT,
    message_id  TEXT NOT NULL DEFAULT '',
    error       TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (invoice_id) REFERENCES invoices(id)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id    TEXT NOT NULL DEFAULT '',
    invoice_id  TEXT NOT NULL DEFAULT '',
    action      TEXT NOT NULL,
    details     TEXT NOT NULL DEFAULT '{}',
    timestamp   TEXT NOT NULL DEFAULT ''
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_clients_email
    ON clients(owner_id, email) WHERE email != '';
CREATE UNIQUE INDEX IF NOT EXISTS uq_reminders_active
    ON reminders(invoice_id, stage) WHERE status != 'failed';

CREATE INDEX IF NOT EXISTS idx_invoices_owner ON invoices(owner_id, status);
CREATE INDEX IF NOT EXISTS idx_line_items_invoice ON line_items(invoice_id);
CREATE INDEX IF NOT EXISTS idx_reminders_owner ON reminders(owner_id);
CREATE INDEX IF NOT EXISTS idx_reminders_invoice ON reminders(invoice_id);
CREATE INDEX IF NOT EXISTS idx_audit_owner ON audit_log(owner_id);
"""


# ---------------------------------------------------------------------------
# Serialization Helpers
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _parse_date(val: Any) -> date | None:
    if not val:
        return None
    return date.fromisoformat(str(val)[:10])


def _parse_datetime(val: Any) -> datetime | None:
    if not val:
        return None
    return datetime.fromisoformat(str(val))


def _row_to_client(row: sqlite3.Row) -> Client:
    return Client(id=row["id"], owner_id=row["owner_id"], name=row["name"], email=row["email"])


def _row_to_invoice(row: sqlite3.Row, items: list[LineItem]) -> Invoice:
    return Invoice(
        id=row["id"],
        owner_id=row["owner_id"],
        invoice_number=row["invoice_number"],
        client_id=row["client_id"],
        amount=row["amount"],
        currency=row["currency"] or "USD",
        subtotal=row["subtotal"],
        tax=row["tax"],
        total=row["total"],
        due_date=_parse_date(row["due_date"]),
        issue_date=_parse_date(row["issue_date"]),
        payment_terms=row["payment_terms"],
        bill_to_address=row["bill_to_address"],
        status=InvoiceStatus(row["status"]),
        paid_at=_parse_datetime(row["paid_at"]),
        last_reminder_sent_at=_parse_datetime(row["last_reminder_sent_at"]),
        line_items=items,
        source_file=row["source_file"],
    )


def _row_to_reminder(row: sqlite3.Row) -> ReminderRecord:
    return ReminderRecord(
        id=row["id"],
        owner_id=row["owner_id"],
        invoice_id=row["invoice_id"],
        stage=row["stage"],
        status=ReminderStatus(row["status"]),
        sent_at=_parse_datetime(row["sent_at"]),
        message_id=row["message_id"],
        error=row["error"],
    )


# ===========================================================================
# Store
# ===========================================================================

class ReminderStore:
    """SQLite-backed store for the reminder engine.

    Thread safety: each method opens/closes its own connection, so worker
    threads in a dispatch run never share one.  WAL mode plus the busy
    timeout lets concurrent writers queue instead of failing.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Owner settings
    # ------------------------------------------------------------------

    def get_settings(self, owner_id: str) -> OwnerSettings | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM settings WHERE owner_id = ?", (owner_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return OwnerSettings(
            owner_id=row["owner_id"],
            company_name=row["company_name"],
            sender_name=row["sender_name"],
            from_email=row["from_email"],
            reply_to=row["reply_to"],
            reminder_subject=row["reminder_subject"],
            reminder_body=row["reminder_body"],
        )

    def save_settings(self, settings: OwnerSettings) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO settings
                   (owner_id, company_name, sender_name, from_email, reply_to,
                    reminder_subject, reminder_body, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(owner_id) DO UPDATE SET
                     company_name = excluded.company_name,
                     sender_name = excluded.sender_name,
                     from_email = excluded.from_email,
                     reply_to = excluded.reply_to,
                     reminder_subject = excluded.reminder_subject,
                     reminder_body = excluded.reminder_body,
                     updated_at = excluded.updated_at""",
                (
                    settings.owner_id,
                    settings.company_name,
                    settings.sender_name,
                    settings.from_email,
                    settings.reply_to,
                    settings.reminder_subject,
                    settings.reminder_body,
                    _now_iso(),
                ),
            )
            self._log_action(conn, settings.owner_id, "", "settings_saved")
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def upsert_client(self, owner_id: str, name: str, email: str = "") -> Client:
        """Return the owner's client with this email, creating it if needed."""
        email = (email or "").strip().lower()
        conn = self._get_conn()
        try:
            if email:
                row = conn.execute(
                    "SELECT * FROM clients WHERE owner_id = ? AND email = ?",
                    (owner_id, email),
                ).fetchone()
                if row is not None:
                    if name and row["name"] != name:
                        conn.execute("UPDATE clients SET name = ? WHERE id = ?", (name, row["id"]))
                        conn.commit()
                    return Client(id=row["id"], owner_id=owner_id, name=name or row["name"], email=email)

            client = Client(id=str(uuid.uuid4()), owner_id=owner_id, name=name, email=email)
            conn.execute(
                "INSERT INTO clients (id, owner_id, name, email, created_at) VALUES (?, ?, ?, ?, ?)",
                (client.id, owner_id, name, email, _now_iso()),
            )
            conn.commit()
            return client
        finally:
            conn.close()

    def get_client(self, client_id: str) -> Client | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM clients WHERE id = ?", (client_id,)).fetchone()
            return _row_to_client(row) if row else None
        finally:
            conn.close()

    def get_clients(self, owner_id: str) -> dict[str, Client]:
        """All of an owner's clients keyed by id."""
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT * FROM clients WHERE owner_id = ?", (owner_id,)).fetchall()
            return {row["id"]: _row_to_client(row) for row in rows}
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def save_invoice(self, invoice: Invoice) -> str:
        """Insert or update an invoice by (owner, number); returns the stored id.

        Line items are replaced wholesale.
        """
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO invoices
                   (id, owner_id, client_id, invoice_number, amount, currency,
                    subtotal, tax, total, issue_date, due_date, payment_terms,
                    bill_to_address, status, paid_at, last_reminder_sent_at,
                    source_file, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(owner_id, invoice_number) DO UPDATE SET
                     client_id = excluded.client_id,
                     amount = excluded.amount,
                     currency = excluded.currency,
                     subtotal = excluded.subtotal,
                     tax = excluded.tax,
                     total = excluded.total,
                     issue_date = excluded.issue_date,
                     due_date = excluded.due_date,
                     payment_terms = excluded.payment_terms,
                     bill_to_address = excluded.bill_to_address,
                     status = excluded.status,
                     source_file = excluded.source_file""",
                (
                    invoice.id,
                    invoice.owner_id,
                    invoice.client_id,
                    invoice.invoice_number,
                    invoice.amount,
                    invoice.currency,
                    invoice.subtotal,
                    invoice.tax,
                    invoice.total,
                    invoice.issue_date.isoformat() if invoice.issue_date else None,
                    invoice.due_date.isoformat(),
                    invoice.payment_terms,
                    invoice.bill_to_address,
                    invoice.status.value,
                    invoice.paid_at.isoformat() if invoice.paid_at else None,
                    invoice.last_reminder_sent_at.isoformat() if invoice.last_reminder_sent_at else None,
                    invoice.source_file,
                    _now_iso(),
                ),
            )
            stored_id = conn.execute(
                "SELECT id FROM invoices WHERE owner_id = ? AND invoice_number = ?",
                (invoice.owner_id, invoice.invoice_number),
            ).fetchone()["id"]

            conn.execute("DELETE FROM line_items WHERE invoice_id = ?", (stored_id,))
            conn.executemany(
                """INSERT INTO line_items
                   (invoice_id, position, description, quantity, unit_price, line_total)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (stored_id, pos, item.description, item.quantity, item.unit_price, item.line_total)
                    for pos, item in enumerate(invoice.line_items)
                ],
            )
            conn.commit()
            return stored_id
        finally:
            conn.close()

    def _load_items(self, conn: sqlite3.Connection, invoice_ids: list[str]) -> dict[str, list[LineItem]]:
        items: dict[str, list[LineItem]] = {inv_id: [] for inv_id in invoice_ids}
        if not invoice_ids:
            return items
        placeholders = ", ".join(["?"] * len(invoice_ids))
        rows = conn.execute(
            f"""SELECT * FROM line_items WHERE invoice_id IN ({placeholders})
                ORDER BY invoice_id, position""",
            invoice_ids,
        ).fetchall()
        for row in rows:
            items[row["invoice_id"]].append(LineItem(
                description=row["description"],
                quantity=row["quantity"],
                unit_price=row["unit_price"],
                line_total=row["line_total"],
            ))
        return items

    def get_invoice(self, invoice_id: str, owner_id: str | None = None) -> Invoice | None:
        conn = self._get_conn()
        try:
            sql = "SELECT * FROM invoices WHERE id = ?"
            params: list[Any] = [invoice_id]
            if owner_id is not None:
                sql += " AND owner_id = ?"
                params.append(owner_id)
            row = conn.execute(sql, params).fetchone()
            if row is None:
                return None
            return _row_to_invoice(row, self._load_items(conn, [invoice_id])[invoice_id])
        finally:
            conn.close()

    def require_invoice(self, invoice_id: str, owner_id: str | None = None) -> Invoice:
        invoice = self.get_invoice(invoice_id, owner_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice not found: {invoice_id}")
        return invoice

    def list_invoices(
        self,
        owner_id: str,
        statuses: Iterable[InvoiceStatus] | None = None,
    ) -> list[Invoice]:
        """An owner's invoices, optionally filtered by status, oldest due first."""
        conditions = ["owner_id = ?"]
        params: list[Any] = [owner_id]
        if statuses is not None:
            values = [s.value for s in statuses]
            conditions.append(f"status IN ({', '.join(['?'] * len(values))})")
            params.extend(values)

        conn = self._get_conn()
        try:
            rows = conn.execute(
                f"SELECT * FROM invoices WHERE {' AND '.join(conditions)} ORDER BY due_date, invoice_number",
                params,
            ).fetchall()
            items = self._load_items(conn, [r["id"] for r in rows])
            return [_row_to_invoice(r, items[r["id"]]) for r in rows]
        finally:
            conn.close()

    def _persist_status(self, invoice: Invoice, action: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                "UPDATE invoices SET status = ?, paid_at = ? WHERE id = ?",
                (
                    invoice.status.value,
                    invoice.paid_at.isoformat() if invoice.paid_at else None,
                    invoice.id,
                ),
            )
            self._log_action(conn, invoice.owner_id, invoice.id, action)
            conn.commit()
        finally:
            conn.close()

    def mark_paid(self, invoice_id: str, when: datetime | None = None) -> Invoice:
        invoice = self.require_invoice(invoice_id)
        invoice.mark_paid(when)
        self._persist_status(invoice, "marked_paid")
        return invoice

    def mark_void(self, invoice_id: str) -> Invoice:
        invoice = self.require_invoice(invoice_id)
        invoice.mark_void()
        self._persist_status(invoice, "voided")
        return invoice

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def get_reminders(
        self,
        owner_id: str | None = None,
        invoice_ids: Iterable[str] | None = None,
    ) -> list[ReminderRecord]:
        conditions = []
        params: list[Any] = []
        if owner_id is not None:
            conditions.append("owner_id = ?")
            params.append(owner_id)
        if invoice_ids is not None:
            ids = list(invoice_ids)
            if not ids:
                return []
            conditions.append(f"invoice_id IN ({', '.join(['?'] * len(ids))})")
            params.extend(ids)
        where = " AND ".join(conditions) if conditions else "1=1"

        conn = self._get_conn()
        try:
            rows = conn.execute(
                f"SELECT * FROM reminders WHERE {where} ORDER BY created_at", params
            ).fetchall()
            return [_row_to_reminder(r) for r in rows]
        finally:
            conn.close()

    def claim_reminder(self, owner_id: str, invoice_id: str, stage: int) -> ReminderRecord:
        """Reserve (invoice, stage) for sending.

        Raises:
            DuplicateReminderError: a pending or sent row already holds it.
            ValueError: stage is outside 1-3.
        """
        if not 1 <= stage <= 3:
            raise ValueError(f"Reminder stage must be 1-3, got {stage}")
        record = ReminderRecord(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            invoice_id=invoice_id,
            stage=stage,
            status=ReminderStatus.PENDING,
        )
        conn = self._get_conn()
        try:
            try:
                conn.execute(
                    """INSERT INTO reminders (id, owner_id, invoice_id, stage, status, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (record.id, owner_id, invoice_id, stage, record.status.value, _now_iso()),
                )
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise DuplicateReminderError(
                    f"Reminder for invoice {invoice_id} stage {stage} already exists"
                ) from exc
            self._log_action(conn, owner_id, invoice_id, "claimed", details={"stage": stage})
            conn.commit()
            return record
        finally:
            conn.close()

    def mark_sending(self, reminder_id: str) -> None:
        """PENDING -> SENDING, taken immediately before the transport call.

        Raises:
            DuplicateReminderError: the claim is no longer PENDING.
        """
        conn = self._get_conn()
        try:
            result = conn.execute(
                "UPDATE reminders SET status = ? WHERE id = ? AND status = ?",
                (ReminderStatus.SENDING.value, reminder_id, ReminderStatus.PENDING.value),
            )
            if result.rowcount == 0:
                conn.rollback()
                raise DuplicateReminderError(f"Reminder {reminder_id} is no longer pending")
            conn.commit()
        finally:
            conn.close()

    def complete_reminder(self, reminder_id: str, message_id: str = "") -> bool:
        """PENDING/SENDING -> SENT, and stamp the invoice's last reminder time."""
        now = _now_iso()
        conn = self._get_conn()
        try:
            result = conn.execute(
                f"""UPDATE reminders SET status = ?, sent_at = ?, message_id = ?
                   WHERE id = ? AND status IN {_IN_FLIGHT}""",
                (ReminderStatus.SENT.value, now, message_id or "", reminder_id),
            )
            if result.rowcount == 0:
                return False
            row = conn.execute(
                "SELECT owner_id, invoice_id, stage FROM reminders WHERE id = ?", (reminder_id,)
            ).fetchone()
            conn.execute(
                "UPDATE invoices SET last_reminder_sent_at = ? WHERE id = ?",
                (now, row["invoice_id"]),
            )
            self._log_action(conn, row["owner_id"], row["invoice_id"], "sent", details={
                "stage": row["stage"],
                "message_id": message_id,
            })
            conn.commit()
            return True
        finally:
            conn.close()

    def fail_reminder(self, reminder_id: str, error: str) -> bool:
        """PENDING/SENDING -> FAILED.  The invoice's last reminder time is untouched.

        Only call this once the transport has refused the message.
        """
        conn = self._get_conn()
        try:
            result = conn.execute(
                f"UPDATE reminders SET status = ?, error = ? WHERE id = ? AND status IN {_IN_FLIGHT}",
                (ReminderStatus.FAILED.value, error, reminder_id),
            )
            if result.rowcount == 0:
                return False
            row = conn.execute(
                "SELECT owner_id, invoice_id, stage FROM reminders WHERE id = ?", (reminder_id,)
            ).fetchone()
            self._log_action(conn, row["owner_id"], row["invoice_id"], "failed", details={
                "stage": row["stage"],
                "error": error,
            })
            conn.commit()
            return True
        finally:
            conn.close()

    def release_stale_claims(self, older_than: timedelta) -> int:
        """Clean up claims left behind by a crashed run.

        A stale PENDING claim never reached the transport, so it is failed
        and the stage opens again.  A stale SENDING claim may have been
        delivered; it becomes UNKNOWN and keeps blocking the stage.

        Returns the number of claims released for retry.
        """
        cutoff = (datetime.now(timezone.utc) - older_than).isoformat()
        conn = self._get_conn()
        try:
            released = conn.execute(
                """UPDATE reminders SET status = ?, error = ?
                   WHERE status = ? AND created_at < ?""",
                (ReminderStatus.FAILED.value, "Abandoned claim released",
                 ReminderStatus.PENDING.value, cutoff),
            ).rowcount
            unknown = conn.execute(
                """UPDATE reminders SET status = ?, error = ?
                   WHERE status = ? AND created_at < ?""",
                (ReminderStatus.UNKNOWN.value, "Send interrupted; delivery unknown",
                 ReminderStatus.SENDING.value, cutoff),
            ).rowcount
            conn.commit()
        finally:
            conn.close()
        if released:
            logger.warning("Released %d stale reminder claims", released)
        if unknown:
            logger.warning("%d interrupted reminder sends marked unknown; their stages stay blocked", unknown)
        return released

    # ------------------------------------------------------------------
    # Send History
    # ------------------------------------------------------------------

    def get_send_history(
        self,
        owner_id: str,
        status: ReminderStatus | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Reminder attempts with invoice and client details, newest first."""
        conditions = ["r.owner_id = ?"]
        params: list[Any] = [owner_id]
        if status is not None:
            conditions.append("r.status = ?")
            params.append(status.value)
        params.append(limit)

        conn = self._get_conn()
        try:
            rows = conn.execute(
                f"""SELECT r.id, r.invoice_id, r.stage, r.status, r.created_at,
                           r.sent_at, r.message_id, r.error,
                           i.invoice_number, c.name AS client_name, c.email AS client_email
                    FROM reminders r
                    JOIN invoices i ON i.id = r.invoice_id
                    LEFT JOIN clients c ON c.id = i.client_id
                    WHERE {' AND '.join(conditions)}
                    ORDER BY r.created_at DESC
                    LIMIT ?""",
                params,
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Audit Log
    # ------------------------------------------------------------------

    def get_audit_log(self, owner_id: str | None = None, limit: int = 200) -> list[dict[str, Any]]:
        """Audit entries, newest first."""
        conn = self._get_conn()
        try:
            if owner_id:
                rows = conn.execute(
                    """SELECT * FROM audit_log WHERE owner_id = ?
                       ORDER BY id DESC LIMIT ?""",
                    (owner_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def _log_action(
        self,
        conn: sqlite3.Connection,
        owner_id: str,
        invoice_id: str,
        action: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Write an audit log entry (internal, must be within a transaction)."""
        conn.execute(
            """INSERT INTO audit_log (owner_id, invoice_id, action, details, timestamp)
               VALUES (?, ?, ?, ?, ?)""",
            (owner_id, invoice_id, action, json.dumps(details or {}), _now_iso()),
        )
