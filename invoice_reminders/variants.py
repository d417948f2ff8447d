"""
Reminder Variants

Drafts alternative reminder emails for one invoice with a single
chat-completions call, so the owner can pick a wording before sending.
A chosen variant is sent through ``ReminderDispatcher.send_one`` as the
subject/body template, which keeps the at-most-once claim in charge.

Unlike the token resolver, drafting is an explicit user action: a missing
API key raises ConfigurationError and a failed or unusable reply raises
VariantGenerationError.

Usage:
    generator = OpenAIVariantGenerator(cfg.openai)
    variants = draft_variants(store, generator, cfg, owner_id, invoice_id, tone="firm")
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from openai import OpenAI, OpenAIError

from .config import ConfigurationError, OpenAISettings, ReminderConfig
from .models import Client, Invoice
from .store import ReminderStore
from .template_engine import SenderIdentity, format_money, resolve_identity

logger = logging.getLogger(__name__)

VARIANT_COUNT = 3
DEFAULT_TONE = "polite, firm"
TONES = ("polite, firm", "friendly", "formal", "final notice")

_SYSTEM_PROMPT = "You write short accounts-receivable reminder emails. Return only JSON."


class VariantGenerationError(Exception):
    """The model call failed or its reply had no usable variants."""


@dataclass(frozen=True)
class ReminderVariant:
    subject: str
    body: str

    def to_dict(self) -> dict[str, str]:
        return {"subject": self.subject, "body": self.body}


def build_variant_prompt(
    invoice: Invoice,
    client: Optional[Client],
    identity: SenderIdentity,
    tone: Optional[str] = None,
) -> str:
    client_name = (client.name if client else "") or "Client"
    client_email = client.email if client else ""
    return " ".join([
        f"Generate {VARIANT_COUNT} professional, polite reminder variants for a past due invoice.",
        f"Use tone: {tone or DEFAULT_TONE}.",
        f"Client: {client_name} ({client_email}).",
        f"Invoice: {invoice.invoice_number} for {format_money(invoice.amount, invoice.currency)} "
        f"due on {invoice.due_date.isoformat()}.",
        f"Sender: {identity.sender_name} at {identity.company_name}.",
        "Write plain text without placeholders or markdown.",
        'Respond as {"variants": [{"subject": "...", "body": "..."}]}',
    ])


def parse_variants(content: str | None) -> list[ReminderVariant]:
    """Read the variants list, dropping entries without a subject and body."""
    try:
        payload = json.loads((content or "").strip())
    except json.JSONDecodeError as exc:
        raise VariantGenerationError(f"Reply is not JSON: {exc}") from exc

    items: Any = payload.get("variants") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        raise VariantGenerationError("Reply has no 'variants' list")

    variants = []
    for item in items:
        if not isinstance(item, dict):
            continue
        subject = str(item.get("subject") or "").strip()
        body = str(item.get("body") or "").strip()
        if subject and body:
            variants.append(ReminderVariant(subject=subject, body=body))
    if not variants:
        raise VariantGenerationError("Reply contained no complete variants")
    return variants[:VARIANT_COUNT]


class OpenAIVariantGenerator:
    """Draft reminder wordings through the OpenAI chat-completions API."""

    def __init__(self, settings: OpenAISettings, client: OpenAI | None = None) -> None:
        self.settings = settings
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self._client is not None or self.settings.api_key)

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self.settings.api_key, timeout=self.settings.timeout)
        return self._client

    def generate(
        self,
        invoice: Invoice,
        client: Optional[Client],
        identity: SenderIdentity,
        tone: Optional[str] = None,
    ) -> list[ReminderVariant]:
        if not self.enabled:
            raise ConfigurationError("OPENAI_API_KEY is not set; reminder variants are unavailable")

        try:
            response = self._get_client().chat.completions.create(
                model=self.settings.model,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": build_variant_prompt(invoice, client, identity, tone)},
                ],
                response_format={"type": "json_object"},
                temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens,
            )
        except OpenAIError as exc:
            logger.warning("Variant generation failed for invoice %s: %s", invoice.invoice_number, exc)
            raise VariantGenerationError(f"AI request failed: {exc}") from exc

        variants = parse_variants(response.choices[0].message.content)
        logger.info("Drafted %d reminder variants for invoice %s", len(variants), invoice.invoice_number)
        return variants


def draft_variants(
    store: ReminderStore,
    generator: OpenAIVariantGenerator,
    config: ReminderConfig,
    owner_id: str,
    invoice_id: str,
    tone: Optional[str] = None,
) -> list[ReminderVariant]:
    """Load the invoice and sender identity, then ask for variants.

    Raises:
        InvoiceNotFoundError: unknown invoice id.
        ConfigurationError: no OpenAI API key.
        VariantGenerationError: the model call or its reply failed.
    """
    invoice = store.require_invoice(invoice_id, owner_id)
    client = store.get_client(invoice.client_id) if invoice.client_id else None
    identity = resolve_identity(store.get_settings(owner_id), config)
    return generator.generate(invoice, client, identity, tone)
