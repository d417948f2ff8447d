"""
Invoice PDF Generator

Renders the current state of an invoice (header, bill-to, dates, line
items, totals) to a LETTER-size PDF with reportlab.  The reminder
dispatcher attaches this fresh rendering rather than any originally
uploaded file, so the attachment always matches the stored invoice.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Optional, Protocol
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .models import Client, Invoice
from .template_engine import format_date, format_money


@dataclass(frozen=True)
class Branding:
    """Seller identity printed on the invoice."""
    company_name: str = ""


class PDFGenerator(Protocol):
    def generate(self, invoice: Invoice, client: Optional[Client], branding: Branding) -> bytes:
        ...


def pdf_filename(invoice: Invoice) -> str:
    return f"invoice-{invoice.invoice_number}.pdf"


class InvoicePDFGenerator:
    """reportlab implementation of PDFGenerator."""

    def generate(self, invoice: Invoice, client: Optional[Client], branding: Branding) -> bytes:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer, pagesize=LETTER,
            leftMargin=18 * mm, rightMargin=18 * mm,
            topMargin=18 * mm, bottomMargin=18 * mm,
            title=f"Invoice {invoice.invoice_number}",
        )

        styles = getSampleStyleSheet()
        title_style = ParagraphStyle("InvoiceTitle", parent=styles["Title"], fontSize=22, spaceAfter=4)
        heading_style = ParagraphStyle("InvoiceHeading", parent=styles["Heading3"], spaceAfter=2)
        normal = styles["Normal"]
        currency = invoice.currency or "USD"

        def _p(text: str, style: ParagraphStyle = normal) -> Paragraph:
            return Paragraph(escape(text), style)

        elements = [_p("INVOICE", title_style)]
        if branding.company_name:
            elements.append(_p(branding.company_name, heading_style))
        elements.append(Spacer(1, 6 * mm))

        # Bill To
        elements.append(_p("Bill To", heading_style))
        if client is not None:
            elements.append(_p(client.name))
            if client.email:
                elements.append(_p(client.email))
        for line in (invoice.bill_to_address or "").splitlines():
            if line.strip():
                elements.append(_p(line.strip()))
        elements.append(Spacer(1, 6 * mm))

        # Invoice details
        details = [
            ["Invoice Number", invoice.invoice_number],
            ["Issue Date", format_date(invoice.issue_date) or "-"],
            ["Due Date", format_date(invoice.due_date)],
        ]
        if invoice.payment_terms:
            details.append(["Payment Terms", invoice.payment_terms])
        details_table = Table(details, colWidths=[45 * mm, 80 * mm], hAlign="LEFT")
        details_table.setStyle(TableStyle([
            ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 9),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
        ]))
        elements.append(details_table)
        elements.append(Spacer(1, 8 * mm))

        # Line items
        if invoice.line_items:
            rows = [["Description", "Qty", "Unit Price", "Total"]]
            for item in invoice.line_items:
                rows.append([
                    _p(item.description or "-"),
                    f"{item.quantity:g}",
                    format_money(item.unit_price, currency),
                    format_money(item.total, currency),
                ])
            items_table = Table(rows, colWidths=[85 * mm, 20 * mm, 35 * mm, 35 * mm], repeatRows=1)
            items_table.setStyle(TableStyle([
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#4472C4")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                ("ALIGN", (1, 1), (-1, -1), "RIGHT"),
                ("FONTSIZE", (0, 0), (-1, -1), 9),
                ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#F2F2F2")]),
            ]))
            elements.append(items_table)
        else:
            elements.append(_p("No line items"))
        elements.append(Spacer(1, 6 * mm))

        # Totals
        subtotal = invoice.subtotal if invoice.subtotal is not None else invoice.amount
        total = invoice.total if invoice.total is not None else invoice.amount
        totals = [["Subtotal", format_money(subtotal, currency)]]
        if invoice.tax is not None:
            totals.append(["Tax", format_money(invoice.tax, currency)])
        totals.append(["Total", format_money(total, currency)])
        totals_table = Table(totals, colWidths=[35 * mm, 35 * mm], hAlign="RIGHT")
        totals_table.setStyle(TableStyle([
            ("ALIGN", (1, 0), (1, -1), "RIGHT"),
            ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
            ("LINEABOVE", (0, -1), (-1, -1), 0.75, colors.black),
            ("FONTSIZE", (0, 0), (-1, -1), 10),
        ]))
        elements.append(totals_table)
        elements.append(Spacer(1, 12 * mm))

        elements.append(_p("Thank you for your business!"))
        elements.append(_p("Please remit payment by the due date."))

        doc.build(elements)
        return buffer.getvalue()
