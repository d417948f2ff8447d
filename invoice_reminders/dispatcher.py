"""
Invoice Reminders -- Dispatch Orchestrator

Runs the reminder pipeline for one owner:

    1. Load invoices, clients and reminder history from the store
    2. Filter to eligible invoices and their stage (eligibility.py)
    3. Classify template placeholders once for the run (tokens.py)
    4. Per invoice: built-in values, then aliases, caller overrides and
       the token resolver for custom placeholders
    5. Skip (batch) or ask for input (interactive) when a custom
       placeholder still has no value
    6. Claim (invoice, stage), render, attach a fresh PDF and send
    7. Record the claim as sent or failed

Batch runs, single-invoice sends and the dry-run preview all go through
``_process_invoice``; only the ``DispatchMode`` differs.  A failure inside
one invoice is recorded against that invoice and never stops the rest.

Usage:
    dispatcher = ReminderDispatcher(store, transport, resolver, pdf, config)
    report = dispatcher.preview(owner_id)
    result = dispatcher.run(owner_id, overrides={invoice_id: {"po_number": "PO-7"}})
    print(result.summary())
"""

from __future__ import annotations

import logging
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Any, Mapping, Optional

from .config import ReminderConfig, get_config
from .eligibility import EligibilityResult, check_eligibility, filter_eligible
from .models import (
    BatchResult,
    Client,
    Invoice,
    InvoiceOutcome,
    OutcomeStatus,
    PreviewResult,
    SkipReason,
    TokenResolution,
)
from .pdf_generator import Branding, PDFGenerator, pdf_filename
from .rate_limit import RateLimiter
from .store import DuplicateReminderError, ReminderStore
from .template_engine import (
    SAMPLE_DAYS_OVERDUE,
    SenderIdentity,
    TemplateEngine,
    builtin_values,
    resolve_identity,
    sample_invoice,
)
from .token_resolver import TokenResolver, is_auto_fill_confidence, is_low_confidence
from .tokens import (
    TokenClassification,
    list_tokens,
    normalize_key,
    render_template,
    validate_template,
)
from .transport import Attachment, EmailTransport, OutgoingEmail, TransportError

logger = logging.getLogger(__name__)

_RECORD_ATTEMPTS = 3
_RECORD_BACKOFF_SECONDS = 0.2


class DispatchMode(str, Enum):
    """What to do with an invoice once its placeholders are resolved."""
    BATCH = "batch"                 # send; skip when values are missing
    INTERACTIVE = "interactive"     # send; ask for input when values are missing
    PREVIEW = "preview"             # never send


# invoice_id -> placeholder key -> value
Overrides = Mapping[str, Mapping[str, str]]


# ---------------------------------------------------------------------------
# Placeholder Resolution
# ---------------------------------------------------------------------------

@dataclass
class ResolvedTokens:
    """Custom placeholder outcome for one invoice."""
    values: dict[str, str] = field(default_factory=dict)
    confidence: dict[str, float] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    suggestions: dict[str, TokenResolution] = field(default_factory=dict)


def _clean_overrides(overrides: Optional[Mapping[str, str]]) -> dict[str, str]:
    cleaned: dict[str, str] = {}
    for key, value in (overrides or {}).items():
        text = "" if value is None else str(value).strip()
        if text:
            cleaned[normalize_key(key)] = text
    return cleaned


def resolve_custom_tokens(
    custom_keys: list[str],
    builtins: Mapping[str, str],
    overrides: Optional[Mapping[str, str]],
    resolver: TokenResolver,
    snapshot: dict[str, Any],
    aliases: Mapping[str, str],
    auto_fill: float,
    low: float,
) -> ResolvedTokens:
    """Fill custom keys: caller override, else alias, else resolver.

    Resolver answers at or above ``auto_fill`` are used directly; answers
    between ``low`` and ``auto_fill`` become suggestions and the key stays
    missing; anything below ``low`` is discarded.
    """
    result = ResolvedTokens()
    supplied = _clean_overrides(overrides)
    remaining: list[str] = []

    for key in custom_keys:
        alias_target = aliases.get(key)
        if key in supplied:
            result.values[key] = supplied[key]
            result.confidence[key] = 1.0
        elif alias_target and builtins.get(alias_target):
            result.values[key] = builtins[alias_target]
            result.confidence[key] = 1.0
        else:
            remaining.append(key)

    if not remaining:
        return result

    answers = {r.key: r for r in resolver.resolve_batch(remaining, snapshot)}
    for key in remaining:
        answer = answers.get(key) or TokenResolution(key=key)
        result.confidence[key] = answer.confidence
        if answer.value and is_auto_fill_confidence(answer.confidence, auto_fill):
            result.values[key] = answer.value
            continue
        result.missing.append(key)
        if answer.value and not is_low_confidence(answer.confidence, low):
            result.suggestions[key] = answer

    return result


# ---------------------------------------------------------------------------
# Run Context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TemplatePlan:
    """Subject/body for a run with placeholders classified once."""
    subject: str
    body: str
    tokens: TokenClassification


@dataclass
class TemplatePreview:
    """Sample rendering shown in the template editor."""
    subject: str
    body: str
    token_values: dict[str, str]
    token_confidence: dict[str, float]
    missing_tokens: list[str]


@dataclass(frozen=True)
class _RunContext:
    owner_id: str
    plan: TemplatePlan
    identity: SenderIdentity
    mode: DispatchMode


# ===========================================================================
# Dispatcher
# ===========================================================================

class ReminderDispatcher:
    """Orchestrates eligibility, placeholder resolution and sending."""

    def __init__(
        self,
        store: ReminderStore,
        transport: EmailTransport,
        resolver: TokenResolver,
        pdf_generator: Optional[PDFGenerator] = None,
        config: Optional[ReminderConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        template_engine: Optional[TemplateEngine] = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.resolver = resolver
        self.pdf_generator = pdf_generator
        self.config = config or get_config()
        self.rate_limiter = rate_limiter or RateLimiter.from_settings(self.config.rate_limit)
        self.template_engine = template_engine or TemplateEngine.from_config(self.config)

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def run(
        self,
        owner_id: str,
        overrides: Optional[Overrides] = None,
        subject_template: Optional[str] = None,
        body_template: Optional[str] = None,
        today: Optional[date] = None,
    ) -> BatchResult:
        """Send every due reminder for an owner.

        Raises (before any invoice is touched):
            RateLimitExceeded, ConfigurationError, TemplateValidationError
        """
        self.rate_limiter.check(f"run:{owner_id}")
        self.transport.validate()
        ctx = self._context(owner_id, subject_template, body_template, DispatchMode.BATCH)
        self.store.release_stale_claims(timedelta(minutes=self.config.dispatch.stale_claim_minutes))

        eligible, rejected = self._candidates(owner_id, today)
        logger.info(
            "Reminder run for %s: %d eligible, %d ineligible",
            owner_id, len(eligible), len(rejected),
        )

        result = BatchResult(outcomes=[self._ineligible_outcome(inv, client, verdict)
                                       for inv, client, verdict in rejected])
        result.outcomes.extend(self._process_all(ctx, eligible, overrides or {}))

        logger.info("Reminder run for %s finished: %s", owner_id, result.summary())
        return result

    def preview(
        self,
        owner_id: str,
        overrides: Optional[Overrides] = None,
        subject_template: Optional[str] = None,
        body_template: Optional[str] = None,
        today: Optional[date] = None,
    ) -> PreviewResult:
        """Dry run: report which invoices would send and which need values."""
        ctx = self._context(owner_id, subject_template, body_template, DispatchMode.PREVIEW)
        eligible, rejected = self._candidates(owner_id, today)

        report = PreviewResult(
            ineligible=[self._ineligible_outcome(inv, client, verdict) for inv, client, verdict in rejected],
        )
        for outcome in self._process_all(ctx, eligible, overrides or {}):
            if outcome.status is OutcomeStatus.READY:
                report.ready.append(outcome)
            elif outcome.status is OutcomeStatus.NEEDS_INPUT:
                report.needs_input.append(outcome)
            elif outcome.status is OutcomeStatus.FAILED:
                report.failed.append(outcome)
            else:
                report.ineligible.append(outcome)
        return report

    def send_one(
        self,
        owner_id: str,
        invoice_id: str,
        overrides: Optional[Mapping[str, str]] = None,
        subject_template: Optional[str] = None,
        body_template: Optional[str] = None,
        today: Optional[date] = None,
    ) -> InvoiceOutcome:
        """Send one invoice's reminder now, or say what input it needs.

        Raises:
            InvoiceNotFoundError: unknown invoice id (before any side effect).
        """
        invoice = self.store.require_invoice(invoice_id, owner_id)
        self.rate_limiter.check(f"send:{owner_id}")
        self.transport.validate()
        ctx = self._context(owner_id, subject_template, body_template, DispatchMode.INTERACTIVE)

        client = self.store.get_client(invoice.client_id) if invoice.client_id else None
        reminders = self.store.get_reminders(invoice_ids=[invoice.id])
        verdict = check_eligibility(invoice, client, reminders, today)
        if not verdict.eligible:
            return self._ineligible_outcome(invoice, client, verdict)
        return self._safe_process(ctx, invoice, client, verdict, overrides or {})

    def preview_template(
        self,
        owner_id: str,
        subject_template: Optional[str] = None,
        body_template: Optional[str] = None,
    ) -> TemplatePreview:
        """Render a subject/body against the sample invoice."""
        ctx = self._context(owner_id, subject_template, body_template, DispatchMode.PREVIEW)
        invoice, client = sample_invoice()
        data = builtin_values(invoice, client, SAMPLE_DAYS_OVERDUE, ctx.identity)
        resolved = self._resolve(ctx.plan.tokens.custom, data, {}, invoice.snapshot(client))

        values = dict(data)
        values.update({k: s.value for k, s in resolved.suggestions.items()})
        values.update(resolved.values)
        confidence = {key: 1.0 for key in ctx.plan.tokens.builtin}
        confidence.update(resolved.confidence)
        return TemplatePreview(
            subject=render_template(ctx.plan.subject, values),
            body=render_template(ctx.plan.body, values),
            token_values={k: values.get(k, "") for k in ctx.plan.tokens.all},
            token_confidence=confidence,
            missing_tokens=list(resolved.missing),
        )

    # -------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------

    def _context(
        self,
        owner_id: str,
        subject_template: Optional[str],
        body_template: Optional[str],
        mode: DispatchMode,
    ) -> _RunContext:
        settings = self.store.get_settings(owner_id)
        subject = (
            subject_template
            or (settings.reminder_subject if settings else "")
            or self.config.templates.subject
        )
        body = (
            body_template
            or (settings.reminder_body if settings else "")
            or self.config.templates.body
        )
        validate_template(subject, "subject")
        validate_template(body, "body")
        return _RunContext(
            owner_id=owner_id,
            plan=TemplatePlan(subject=subject, body=body, tokens=list_tokens(subject, body)),
            identity=resolve_identity(settings, self.config),
            mode=mode,
        )

    def _candidates(
        self, owner_id: str, today: Optional[date]
    ) -> tuple[list[tuple[Invoice, Optional[Client], EligibilityResult]],
               list[tuple[Invoice, Optional[Client], EligibilityResult]]]:
        invoices = self.store.list_invoices(owner_id)
        clients = self.store.get_clients(owner_id)
        reminders = self.store.get_reminders(owner_id=owner_id)
        eligible, rejected = filter_eligible(invoices, clients, reminders, today)

        def _with_client(pairs):
            return [(inv, clients.get(inv.client_id) if inv.client_id else None, verdict)
                    for inv, verdict in pairs]

        return _with_client(eligible), _with_client(rejected)

    def _process_all(
        self,
        ctx: _RunContext,
        eligible: list[tuple[Invoice, Optional[Client], EligibilityResult]],
        overrides: Overrides,
    ) -> list[InvoiceOutcome]:
        if not eligible:
            return []
        workers = max(1, min(self.config.dispatch.max_workers, len(eligible)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reminder") as pool:
            return list(pool.map(
                lambda item: self._safe_process(ctx, item[0], item[1], item[2], overrides.get(item[0].id, {})),
                eligible,
            ))

    def _resolve(
        self,
        custom_keys: list[str],
        builtins: Mapping[str, str],
        overrides: Mapping[str, str],
        snapshot: dict[str, Any],
    ) -> ResolvedTokens:
        return resolve_custom_tokens(
            custom_keys,
            builtins,
            overrides,
            self.resolver,
            snapshot,
            self.config.aliases,
            self.config.confidence.auto_fill,
            self.config.confidence.low,
        )

    def _safe_process(
        self,
        ctx: _RunContext,
        invoice: Invoice,
        client: Optional[Client],
        verdict: EligibilityResult,
        overrides: Mapping[str, str],
    ) -> InvoiceOutcome:
        try:
            return self._process_invoice(ctx, invoice, client, verdict, overrides)
        except Exception as exc:
            logger.exception("Reminder for invoice %s failed", invoice.invoice_number)
            return InvoiceOutcome(
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                client_name=client.name if client else "",
                status=OutcomeStatus.FAILED,
                stage=verdict.stage,
                reason=str(exc) or exc.__class__.__name__,
            )

    def _process_invoice(
        self,
        ctx: _RunContext,
        invoice: Invoice,
        client: Optional[Client],
        verdict: EligibilityResult,
        overrides: Mapping[str, str],
    ) -> InvoiceOutcome:
        outcome = InvoiceOutcome(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            client_name=client.name if client else "",
            stage=verdict.stage,
        )

        data = builtin_values(invoice, client, verdict.days_overdue, ctx.identity)
        resolved = self._resolve(ctx.plan.tokens.custom, data, overrides, invoice.snapshot(client))
        data.update(resolved.values)
        outcome.subject = render_template(ctx.plan.subject, data)
        outcome.body = render_template(ctx.plan.body, data)

        if resolved.missing:
            outcome.missing_tokens = list(resolved.missing)
            outcome.suggestions = dict(resolved.suggestions)
            missing = ", ".join(resolved.missing)
            if ctx.mode is DispatchMode.BATCH:
                outcome.status = OutcomeStatus.SKIPPED
                outcome.reason = f"{SkipReason.MISSING_TOKENS.value} ({missing})"
            else:
                outcome.status = OutcomeStatus.NEEDS_INPUT
                outcome.reason = f"Needs values for: {missing}"
            return outcome

        if ctx.mode is DispatchMode.PREVIEW:
            outcome.status = OutcomeStatus.READY
            return outcome

        try:
            claim = self.store.claim_reminder(ctx.owner_id, invoice.id, verdict.stage)
        except DuplicateReminderError:
            outcome.status = OutcomeStatus.SKIPPED
            outcome.reason = SkipReason.CLAIMED.value
            return outcome

        try:
            email = self._build_email(ctx, invoice, client, outcome.subject, outcome.body)
            self.store.mark_sending(claim.id)
        except Exception as exc:
            self.store.fail_reminder(claim.id, str(exc) or exc.__class__.__name__)
            raise

        try:
            receipt = self.transport.send(email)
        except TransportError as exc:
            self.store.fail_reminder(claim.id, str(exc))
            logger.warning("Send failed for invoice %s: %s", invoice.invoice_number, exc)
            outcome.status = OutcomeStatus.FAILED
            outcome.reason = str(exc)
            return outcome

        # The email is out: from here on nothing may report a failure.
        outcome.status = OutcomeStatus.SENT
        outcome.message_id = receipt.message_id
        logger.info(
            "Sent stage %d reminder for invoice %s to %s",
            verdict.stage, invoice.invoice_number, client.email if client else "?",
        )
        if not self._record_sent(claim.id, receipt.message_id):
            outcome.reason = "Sent, but the send could not be recorded; the stage stays blocked."
        return outcome

    def _record_sent(self, reminder_id: str, message_id: str) -> bool:
        """Mark a delivered claim SENT, retrying transient store errors.

        On final failure the row stays SENDING, which blocks the stage and
        later becomes UNKNOWN, never FAILED.
        """
        for attempt in range(1, _RECORD_ATTEMPTS + 1):
            try:
                self.store.complete_reminder(reminder_id, message_id)
                return True
            except sqlite3.Error:
                logger.exception(
                    "Recording sent reminder %s failed (attempt %d/%d)",
                    reminder_id, attempt, _RECORD_ATTEMPTS,
                )
                if attempt < _RECORD_ATTEMPTS:
                    time.sleep(_RECORD_BACKOFF_SECONDS * attempt)
        return False

    def _build_email(
        self,
        ctx: _RunContext,
        invoice: Invoice,
        client: Optional[Client],
        subject: str,
        body: str,
    ) -> OutgoingEmail:
        identity = ctx.identity
        attachments: list[Attachment] = []
        if self.pdf_generator is not None:
            pdf = self.pdf_generator.generate(invoice, client, Branding(company_name=identity.company_name))
            limit = self.config.dispatch.max_attachment_bytes
            if len(pdf) > limit:
                logger.warning(
                    "PDF for invoice %s is %d bytes (limit %d); sending without attachment",
                    invoice.invoice_number, len(pdf), limit,
                )
            else:
                attachments.append(Attachment(filename=pdf_filename(invoice), content=pdf))

        return OutgoingEmail(
            from_email=identity.from_email,
            from_name=identity.sender_name,
            to=client.email if client else "",
            subject=subject,
            text=body,
            html=self.template_engine.render_html(subject, body, identity),
            reply_to=identity.reply_to,
            attachments=attachments,
        )

    @staticmethod
    def _ineligible_outcome(
        invoice: Invoice,
        client: Optional[Client],
        verdict: EligibilityResult,
    ) -> InvoiceOutcome:
        return InvoiceOutcome(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            client_name=client.name if client else "",
            status=OutcomeStatus.SKIPPED,
            stage=verdict.stage,
            reason=verdict.skip_reason.value if verdict.skip_reason else "",
        )
