"""Invoice Reminders - CSV / XLSX Invoice Importer.

Reads an invoice export (one invoice per row) and upserts clients and
invoices into the store.

Supported data sources
~~~~~~~~~~~~~~~~~~~~~~
* ``.csv`` files (UTF-8, optional BOM), read with the csv module.
* ``.xlsx`` workbooks (first sheet), read with openpyxl.
* A bytes buffer plus an explicit ``kind`` for uploads.

Headers are matched case-insensitively through ``HEADER_ALIASES`` so
"Invoice #", "Customer" or "Amount Due" all land on the right field.
Up to five line items are read from ``item1_desc`` ... ``item5_line_total``.

Rows that fail validation are reported as ``"Row N: ..."`` (N is the
spreadsheet row number, header = row 1) and the rest still import.

Usage::

    from invoice_reminders.data_loader import load_invoices, import_into_store

    result = load_invoices("exports/invoices.csv")
    imported = import_into_store(result, store, owner_id)
    for err in result.errors:
        print(err)
"""

from __future__ import annotations

import csv
import io
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import IO, Any, Optional, Union

import openpyxl

from .models import Invoice, InvoiceStatus, LineItem
from .store import ReminderStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HEADER_ALIASES: dict[str, str] = {
    "invoice number": "invoice_number",
    "invoice #": "invoice_number",
    "invoice no": "invoice_number",
    "inv no": "invoice_number",
    "inv #": "invoice_number",
    "invoice": "invoice_number",
    "client": "client_name",
    "client name": "client_name",
    "customer": "client_name",
    "customer name": "client_name",
    "company": "client_name",
    "company name": "client_name",
    "client email": "client_email",
    "customer email": "client_email",
    "email": "client_email",
    "contact email": "client_email",
    "amount": "amount",
    "total amount": "amount",
    "amount due": "amount",
    "balance": "amount",
    "currency": "currency",
    "currency code": "currency",
    "subtotal": "subtotal",
    "tax": "tax",
    "total": "total",
    "payment terms": "payment_terms",
    "payment_term": "payment_terms",
    "bill to address": "bill_to_address",
    "billing address": "bill_to_address",
    "issue date": "issue_date",
    "invoice date": "issue_date",
    "date": "issue_date",
    "due date": "due_date",
    "due": "due_date",
    "status": "status",
    "invoice status": "status",
}

REQUIRED_FIELDS: tuple[str, ...] = ("invoice_number", "client_name", "client_email", "amount", "due_date")

MAX_LINE_ITEMS = 5

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%d.%m.%Y",
                 "%Y-%m-%dT%H:%M:%S", "%b %d, %Y", "%B %d, %Y")


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------

@dataclass
class ImportedRow:
    """One validated invoice row, not yet bound to an owner."""
    row_number: int
    invoice_number: str
    client_name: str
    client_email: str
    amount: float
    due_date: date
    currency: str = "USD"
    issue_date: date | None = None
    status: InvoiceStatus = InvoiceStatus.OPEN
    subtotal: float | None = None
    tax: float | None = None
    total: float | None = None
    payment_terms: str = ""
    bill_to_address: str = ""
    line_items: list[LineItem] = field(default_factory=list)


@dataclass
class ImportResult:
    """Aggregated output from :func:`load_invoices`."""

    rows: list[ImportedRow] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    source_file: str | None = None
    total_rows_scanned: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def normalize_header(header: Any) -> str:
    cleaned = str(header or "").strip().lower()
    return HEADER_ALIASES.get(cleaned, cleaned)


def load_invoices(
    source: Union[str, Path, IO[bytes]],
    kind: Optional[str] = None,
) -> ImportResult:
    """Parse a CSV or XLSX invoice export.

    Args:
        source: File path or bytes buffer.
        kind: ``"csv"`` or ``"xlsx"``; inferred from the suffix for paths.

    Raises:
        FileNotFoundError: the path does not exist.
        ValueError: the file type cannot be determined.
    """
    source_name = None
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"Invoice file not found: {path}")
        source_name = str(path)
        kind = kind or path.suffix.lower().lstrip(".")

    if kind == "csv":
        records = _read_csv(source)
    elif kind in ("xlsx", "xlsm"):
        records = _read_xlsx(source)
    else:
        raise ValueError(f"Unsupported invoice file type: {kind!r}")

    result = ImportResult(source_file=source_name, total_rows_scanned=len(records))
    for index, record in enumerate(records):
        if not any(_clean_str(v) for v in record.values()):
            continue
        row_number = index + 2
        try:
            result.rows.append(_parse_row(record, row_number))
        except ValueError as exc:
            result.errors.append(f"Row {row_number}: {exc}")

    logger.info(
        "Loaded %d invoice rows (%d errors) from %s",
        len(result.rows), len(result.errors), source_name or "buffer",
    )
    return result


def import_into_store(result: ImportResult, store: ReminderStore, owner_id: str) -> int:
    """Upsert clients (by email) and invoices (by number) for an owner."""
    imported = 0
    for row in result.rows:
        client = store.upsert_client(owner_id, row.client_name, row.client_email)
        invoice = Invoice(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            invoice_number=row.invoice_number,
            client_id=client.id,
            amount=row.amount,
            currency=row.currency,
            subtotal=row.subtotal,
            tax=row.tax,
            total=row.total,
            due_date=row.due_date,
            issue_date=row.issue_date,
            payment_terms=row.payment_terms,
            bill_to_address=row.bill_to_address,
            status=row.status,
            line_items=row.line_items,
            source_file=result.source_file or "",
        )
        store.save_invoice(invoice)
        imported += 1
    logger.info("Imported %d invoices for owner %s", imported, owner_id)
    return imported


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

def _read_csv(source: Union[str, Path, IO[bytes]]) -> list[dict[str, Any]]:
    if isinstance(source, (str, Path)):
        text = Path(source).read_text(encoding="utf-8-sig")
    else:
        text = source.read().decode("utf-8-sig")
    reader = csv.DictReader(io.StringIO(text))
    reader.fieldnames = [normalize_header(h) for h in (reader.fieldnames or [])]
    return [dict(row) for row in reader]


def _read_xlsx(source: Union[str, Path, IO[bytes]]) -> list[dict[str, Any]]:
    wb = openpyxl.load_workbook(source, data_only=True, read_only=True)
    try:
        ws = wb.worksheets[0]
        rows = ws.iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            return []
        keys = [normalize_header(h) for h in header]
        return [dict(zip(keys, values)) for values in rows]
    finally:
        wb.close()


# ---------------------------------------------------------------------------
# Row parsing
# ---------------------------------------------------------------------------

def _parse_row(record: dict[str, Any], row_number: int) -> ImportedRow:
    missing = [name for name in REQUIRED_FIELDS if not _clean_str(record.get(name))]
    if missing:
        raise ValueError(f"missing {', '.join(missing)}")

    email = _clean_str(record["client_email"]).lower()
    if not _EMAIL_PATTERN.match(email):
        raise ValueError(f"invalid client email '{email}'")

    amount = _parse_number(record["amount"])
    if amount is None or amount < 0:
        raise ValueError(f"invalid amount '{_clean_str(record['amount'])}'")

    due_date = _parse_date(record["due_date"])
    if due_date is None:
        raise ValueError(f"invalid due date '{_clean_str(record['due_date'])}'")

    return ImportedRow(
        row_number=row_number,
        invoice_number=_clean_str(record["invoice_number"]),
        client_name=_clean_str(record["client_name"]),
        client_email=email,
        amount=amount,
        due_date=due_date,
        currency=(_clean_str(record.get("currency")) or "USD").upper(),
        issue_date=_parse_date(record.get("issue_date")),
        status=_parse_status(record.get("status")),
        subtotal=_parse_number(record.get("subtotal")),
        tax=_parse_number(record.get("tax")),
        total=_parse_number(record.get("total")),
        payment_terms=_clean_str(record.get("payment_terms")),
        bill_to_address=_clean_str(record.get("bill_to_address")),
        line_items=_parse_line_items(record),
    )


def _parse_line_items(record: dict[str, Any]) -> list[LineItem]:
    items: list[LineItem] = []
    for n in range(1, MAX_LINE_ITEMS + 1):
        description = _clean_str(record.get(f"item{n}_desc"))
        if not description:
            continue
        quantity = _parse_number(record.get(f"item{n}_qty"))
        items.append(LineItem(
            description=description,
            quantity=quantity if quantity is not None else 1.0,
            unit_price=_parse_number(record.get(f"item{n}_unit_price")) or 0.0,
            line_total=_parse_number(record.get(f"item{n}_line_total")),
        ))
    return items


# ---------------------------------------------------------------------------
# Data cleaning / type coercion helpers
# ---------------------------------------------------------------------------

def _clean_str(val) -> str:
    """Convert a cell value to a stripped string.  None becomes ``""``."""
    if val is None:
        return ""
    return str(val).strip()


def _parse_number(val) -> float | None:
    """Parse an amount cell: numbers, ``"1,234.56"``, ``"$99"``, ``"(50)"``."""
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        return float(val)

    s = str(val).strip()
    if not s:
        return None
    negative = s.startswith("(") and s.endswith(")")
    if negative:
        s = s[1:-1]
    s = re.sub(r"[^\d.\-]", "", s)
    try:
        amount = float(s)
    except ValueError:
        return None
    return -amount if negative else amount


def _parse_date(val) -> date | None:
    """Parse a date cell value.

    openpyxl returns ``datetime`` objects for date-typed cells; CSV gives
    strings in a handful of common formats.
    """
    if val is None:
        return None
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val
    if isinstance(val, (int, float)):
        serial = int(val)
        if 20000 < serial < 80000:
            return (datetime(1899, 12, 30) + timedelta(days=serial)).date()
        return None

    s = str(val).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


def _parse_status(raw) -> InvoiceStatus:
    value = _clean_str(raw).lower()
    if value in ("paid", "settled"):
        return InvoiceStatus.PAID
    if value == "partial":
        return InvoiceStatus.PARTIAL
    if value == "void":
        return InvoiceStatus.VOID
    return InvoiceStatus.OPEN
