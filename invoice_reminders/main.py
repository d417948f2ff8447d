"""Invoice Reminders -- Command Line Entry Point.

Wires config, store, resolver, PDF generator and transport into a
ReminderDispatcher and exposes it as subcommands:

    import FILE         Load invoices from a CSV/XLSX export
    preview             Dry run: which invoices would send, which need values
    run                 Send every due reminder (skips invoices missing values)
    send INVOICE        Send one invoice now, or list the values it needs
    history             Show recent reminder attempts
    audit               Show the audit trail (claims, sends, failures)
    template-preview    Render the current templates against a sample invoice
    insights            Suggested next reminder and 30-day reminder effectiveness
    variants INVOICE    Draft AI reminder wordings for one invoice

Usage::

    # From the project root:
    python -m invoice_reminders.main import data/invoices.csv
    python -m invoice_reminders.main preview
    python -m invoice_reminders.main run --override INV-1001:po_number=PO-77
    python -m invoice_reminders.main --today 2026-02-01 run --json
    python -m invoice_reminders.main variants INV-1001 --tone friendly
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections import defaultdict
from datetime import date
from typing import Optional

from .config import ConfigurationError, ReminderConfig, get_config
from .data_loader import import_into_store, load_invoices
from .dispatcher import ReminderDispatcher
from .insights import build_insights
from .models import BatchResult, InvoiceOutcome, OutcomeStatus, PreviewResult
from .pdf_generator import InvoicePDFGenerator
from .rate_limit import RateLimitExceeded
from .store import InvoiceNotFoundError, ReminderStore
from .token_resolver import OpenAITokenResolver, confidence_band
from .tokens import TemplateValidationError
from .transport import build_transport
from .variants import TONES, OpenAIVariantGenerator, VariantGenerationError, draft_variants

logger = logging.getLogger(__name__)

DEFAULT_OWNER_ID = "default"


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_store(cfg: ReminderConfig, db_path: Optional[str] = None) -> ReminderStore:
    return ReminderStore(db_path or cfg.storage.resolve(cfg.storage.db_path))


def build_dispatcher(cfg: ReminderConfig, store: ReminderStore) -> ReminderDispatcher:
    return ReminderDispatcher(
        store=store,
        transport=build_transport(cfg),
        resolver=OpenAITokenResolver(cfg.openai),
        pdf_generator=InvoicePDFGenerator(),
        config=cfg,
    )


def _invoice_ids_by_number(store: ReminderStore, owner_id: str) -> dict[str, str]:
    return {inv.invoice_number: inv.id for inv in store.list_invoices(owner_id)}


def parse_overrides(
    raw: list[str],
    ids_by_number: dict[str, str],
) -> dict[str, dict[str, str]]:
    """Turn ``INVOICE:KEY=VALUE`` strings into {invoice_id: {key: value}}.

    INVOICE may be an invoice id or an invoice number.
    """
    overrides: dict[str, dict[str, str]] = defaultdict(dict)
    for item in raw:
        target, sep, assignment = item.partition(":")
        key, eq, value = assignment.partition("=")
        if not sep or not eq or not target or not key:
            raise ValueError(f"Override must look like INVOICE:KEY=VALUE, got {item!r}")
        invoice_id = ids_by_number.get(target, target)
        overrides[invoice_id][key.strip()] = value
    return dict(overrides)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def _print_outcome(outcome: InvoiceOutcome) -> None:
    line = f"  {outcome.invoice_number:<14} {outcome.status.value:<12} stage {outcome.stage}"
    if outcome.reason:
        line += f"  {outcome.reason}"
    print(line)
    for key, suggestion in outcome.suggestions.items():
        print(f"      suggestion {key} = {suggestion.value!r} (confidence {suggestion.confidence:.2f})")


def _print_batch(result: BatchResult) -> None:
    print(f"\nReminder run: {result.summary()}")
    for outcome in result.failures + result.skips:
        _print_outcome(outcome)


def _print_preview(report: PreviewResult) -> None:
    print(f"\nReady to send: {len(report.ready)}")
    for outcome in report.ready:
        _print_outcome(outcome)
    print(f"\nNeeds input: {len(report.needs_input)}")
    for outcome in report.needs_input:
        _print_outcome(outcome)
    print(f"\nNot eligible: {len(report.ineligible)}")
    if report.failed:
        print(f"\nFailed: {len(report.failed)}")
        for outcome in report.failed:
            _print_outcome(outcome)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_import(args, cfg: ReminderConfig, store: ReminderStore) -> int:
    result = load_invoices(args.file)
    imported = import_into_store(result, store, args.owner)
    print(f"Imported {imported} invoices from {args.file}")
    for err in result.errors:
        print(f"  {err}")
    return 0 if result.ok else 1


def _cmd_preview(args, cfg: ReminderConfig, store: ReminderStore) -> int:
    dispatcher = build_dispatcher(cfg, store)
    overrides = parse_overrides(args.override, _invoice_ids_by_number(store, args.owner))
    report = dispatcher.preview(args.owner, overrides=overrides, today=args.today)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_preview(report)
    return 1 if report.failed else 0


def _cmd_run(args, cfg: ReminderConfig, store: ReminderStore) -> int:
    dispatcher = build_dispatcher(cfg, store)
    overrides = parse_overrides(args.override, _invoice_ids_by_number(store, args.owner))
    result = dispatcher.run(args.owner, overrides=overrides, today=args.today)
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        _print_batch(result)
    return 0 if result.failed == 0 else 1


def _cmd_send(args, cfg: ReminderConfig, store: ReminderStore) -> int:
    dispatcher = build_dispatcher(cfg, store)
    invoice_id = _invoice_ids_by_number(store, args.owner).get(args.invoice, args.invoice)
    values = parse_overrides([f"{invoice_id}:{item}" for item in args.set], {}).get(invoice_id, {})
    outcome = dispatcher.send_one(args.owner, invoice_id, overrides=values, today=args.today)
    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2))
    else:
        _print_outcome(outcome)
    return 1 if outcome.status is OutcomeStatus.FAILED else 0


def _cmd_history(args, cfg: ReminderConfig, store: ReminderStore) -> int:
    rows = store.get_send_history(args.owner, limit=args.limit)
    if args.json:
        print(json.dumps(rows, indent=2))
        return 0
    if not rows:
        print("No reminders recorded yet.")
    for row in rows:
        print(
            f"  {row['created_at'][:19]}  {row['invoice_number']:<14} stage {row['stage']}  "
            f"{row['status']:<8} {row['client_email'] or ''} {row['error']}"
        )
    return 0


def _cmd_template_preview(args, cfg: ReminderConfig, store: ReminderStore) -> int:
    dispatcher = build_dispatcher(cfg, store)
    preview = dispatcher.preview_template(args.owner)
    print(f"Subject: {preview.subject}\n")
    print(preview.body)
    print()
    for key, value in preview.token_values.items():
        confidence = preview.token_confidence.get(key, 0.0)
        band = confidence_band(confidence, cfg.confidence.auto_fill, cfg.confidence.low)
        print(f"  {key:<20} {confidence:.2f} {band.value:<9}  {value!r}")
    return 0


def _cmd_insights(args, cfg: ReminderConfig, store: ReminderStore) -> int:
    report = build_insights(store, args.owner, today=args.today)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
        return 0
    suggestion = report.suggestion
    if suggestion.invoice_id:
        print(f"Suggested: {suggestion.message} ({suggestion.stage_label})")
    else:
        print("Suggested: nothing is due a reminder right now.")
    print(f"Effectiveness: {report.effectiveness.label}")
    return 0


def _cmd_variants(args, cfg: ReminderConfig, store: ReminderStore) -> int:
    invoice_id = _invoice_ids_by_number(store, args.owner).get(args.invoice, args.invoice)
    generator = OpenAIVariantGenerator(cfg.openai)
    variants = draft_variants(store, generator, cfg, args.owner, invoice_id, tone=args.tone)
    if args.json:
        print(json.dumps([v.to_dict() for v in variants], indent=2))
        return 0
    for number, variant in enumerate(variants, start=1):
        print(f"\n--- Variant {number} ---")
        print(f"Subject: {variant.subject}\n")
        print(variant.body)
    return 0


def _cmd_audit(args, cfg: ReminderConfig, store: ReminderStore) -> int:
    rows = store.get_audit_log(args.owner, limit=args.limit)
    if args.json:
        print(json.dumps(rows, indent=2))
        return 0
    if not rows:
        print("No audit entries yet.")
    for row in rows:
        print(f"  {row['timestamp'][:19]}  {row['action']:<10} {row['invoice_id']}  {row['details']}")
    return 0


def _parse_today(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from exc


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error or failed sends).
    """
    parser = argparse.ArgumentParser(
        description="Invoice Reminders - send staged overdue-invoice reminder emails",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m invoice_reminders.main import data/invoices.csv\n"
            "  python -m invoice_reminders.main preview\n"
            "  python -m invoice_reminders.main run --override INV-1001:po_number=PO-77\n"
            "  python -m invoice_reminders.main send INV-1001 --set po_number=PO-77\n"
        ),
    )
    parser.add_argument("--config", type=str, default=None,
                        help="Path to config.yaml (default: project root config.yaml)")
    parser.add_argument("--db", type=str, default=None, help="SQLite database path (overrides config)")
    parser.add_argument("--owner", type=str, default=os.environ.get("REMINDER_OWNER_ID", DEFAULT_OWNER_ID),
                        help="Owner id whose invoices to process")
    parser.add_argument("--today", type=_parse_today, default=None,
                        help="Treat this date as today (YYYY-MM-DD)")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose (DEBUG) logging")

    # --json is also accepted after the subcommand; SUPPRESS keeps the
    # top-level value when it is only given before it.
    json_flag = argparse.ArgumentParser(add_help=False)
    json_flag.add_argument("--json", action="store_true", default=argparse.SUPPRESS,
                           help="Print machine-readable JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    p_import = sub.add_parser("import", help="Import invoices from CSV/XLSX")
    p_import.add_argument("file")
    p_import.set_defaults(handler=_cmd_import)

    for name, handler, help_text in (
        ("preview", _cmd_preview, "Dry run without sending"),
        ("run", _cmd_run, "Send all due reminders"),
    ):
        p = sub.add_parser(name, help=help_text, parents=[json_flag])
        p.add_argument("--override", action="append", default=[], metavar="INVOICE:KEY=VALUE",
                       help="Supply a placeholder value for one invoice (repeatable)")
        p.set_defaults(handler=handler)

    p_send = sub.add_parser("send", help="Send one invoice's reminder now", parents=[json_flag])
    p_send.add_argument("invoice", help="Invoice id or invoice number")
    p_send.add_argument("--set", action="append", default=[], metavar="KEY=VALUE",
                        help="Supply a placeholder value (repeatable)")
    p_send.set_defaults(handler=_cmd_send)

    p_history = sub.add_parser("history", help="Show recent reminder attempts", parents=[json_flag])
    p_history.add_argument("--limit", type=int, default=50)
    p_history.set_defaults(handler=_cmd_history)

    p_audit = sub.add_parser("audit", help="Show the audit trail", parents=[json_flag])
    p_audit.add_argument("--limit", type=int, default=100)
    p_audit.set_defaults(handler=_cmd_audit)

    p_tpl = sub.add_parser("template-preview", help="Render templates against a sample invoice")
    p_tpl.set_defaults(handler=_cmd_template_preview)

    p_insights = sub.add_parser("insights", help="Suggested next reminder and reminder effectiveness",
                                parents=[json_flag])
    p_insights.set_defaults(handler=_cmd_insights)

    p_variants = sub.add_parser("variants", help="Draft AI reminder wordings for one invoice",
                                parents=[json_flag])
    p_variants.add_argument("invoice", help="Invoice id or invoice number")
    p_variants.add_argument("--tone", type=str, default=None,
                            help=f"Tone to write in (e.g. {', '.join(TONES)})")
    p_variants.set_defaults(handler=_cmd_variants)

    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        cfg = get_config(args.config)
        store = build_store(cfg, args.db)
        return args.handler(args, cfg, store)

    except (ConfigurationError, TemplateValidationError) as exc:
        logger.error("Configuration error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except (RateLimitExceeded, VariantGenerationError) as exc:
        logger.error("%s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except (FileNotFoundError, InvoiceNotFoundError) as exc:
        logger.error("Not found: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except ValueError as exc:
        logger.error("Data error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error")
        print(f"\nUNEXPECTED ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
