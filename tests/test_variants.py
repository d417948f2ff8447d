"""Tests for invoice_reminders.variants -- AI-drafted reminder wordings.

Covers:
- build_variant_prompt contents
- parse_variants: good replies, partial entries, unusable replies
- OpenAIVariantGenerator with a fake chat client: request shape,
  API errors, no API key
- draft_variants over a real store, and sending a chosen variant
"""

import json
from types import SimpleNamespace

import pytest
from openai import OpenAIError

from conftest import OWNER, TODAY
from invoice_reminders.config import ConfigurationError, OpenAISettings
from invoice_reminders.models import Client, OutcomeStatus
from invoice_reminders.store import InvoiceNotFoundError
from invoice_reminders.template_engine import SenderIdentity
from invoice_reminders.variants import (
    VARIANT_COUNT,
    OpenAIVariantGenerator,
    ReminderVariant,
    VariantGenerationError,
    build_variant_prompt,
    draft_variants,
    parse_variants,
)


class _FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _fake_client(content=None, error=None):
    completions = _FakeCompletions(content, error)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def _reply(*pairs):
    return json.dumps({"variants": [{"subject": s, "body": b} for s, b in pairs]})


@pytest.fixture
def settings(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_MODEL", raising=False)
    return OpenAISettings(api_key="sk-test", model="gpt-4o-mini")


@pytest.fixture
def identity():
    return SenderIdentity(sender_name="Dana Lee", company_name="Northwind Studio")


# ============================================================================
# Prompt
# ============================================================================

class TestPrompt:

    def test_prompt_carries_invoice_facts(self, add_invoice, identity):
        invoice = add_invoice("INV-7", amount=1250.0)
        client = Client("c1", OWNER, "Acme Corp", "ap@acme.test")
        prompt = build_variant_prompt(invoice, client, identity, tone="friendly")
        assert "Generate 3 " in prompt
        assert "Use tone: friendly." in prompt
        assert "Client: Acme Corp (ap@acme.test)." in prompt
        assert f"INV-7 for USD 1250.00 due on {invoice.due_date.isoformat()}" in prompt
        assert "Dana Lee at Northwind Studio" in prompt

    def test_default_tone_and_missing_client(self, add_invoice, identity):
        prompt = build_variant_prompt(add_invoice("INV-7"), None, identity)
        assert "Use tone: polite, firm." in prompt
        assert "Client: Client ()." in prompt


# ============================================================================
# Reply parsing
# ============================================================================

class TestParseVariants:

    def test_good_reply(self):
        variants = parse_variants(_reply(("Reminder", "Please pay."), ("Follow-up", "Still open.")))
        assert variants == [ReminderVariant("Reminder", "Please pay."), ReminderVariant("Follow-up", "Still open.")]

    def test_capped_at_variant_count(self):
        pairs = [(f"S{i}", f"B{i}") for i in range(5)]
        assert len(parse_variants(_reply(*pairs))) == VARIANT_COUNT

    def test_incomplete_entries_dropped(self):
        content = json.dumps({"variants": [
            {"subject": "  ", "body": "x"},
            "not an object",
            {"subject": "Kept", "body": " Body "},
            {"subject": "No body"},
        ]})
        assert parse_variants(content) == [ReminderVariant("Kept", "Body")]

    @pytest.mark.parametrize("content,message", [
        ("not json", "not JSON"),
        (None, "not JSON"),
        ("[1, 2]", "no 'variants' list"),
        ('{"variants": "three"}', "no 'variants' list"),
        ('{"variants": [{"subject": "only"}]}', "no complete variants"),
    ])
    def test_unusable_reply(self, content, message):
        with pytest.raises(VariantGenerationError, match=message):
            parse_variants(content)


# ============================================================================
# Generator
# ============================================================================

class TestGenerator:

    def test_happy_path(self, settings, add_invoice, identity):
        client, completions = _fake_client(_reply(("Reminder", "Please pay.")))
        generator = OpenAIVariantGenerator(settings, client=client)

        variants = generator.generate(add_invoice("INV-1"), None, identity, tone="formal")

        assert [v.subject for v in variants] == ["Reminder"]
        [call] = completions.calls
        assert call["model"] == "gpt-4o-mini"
        assert call["response_format"] == {"type": "json_object"}
        assert "Use tone: formal." in call["messages"][1]["content"]

    def test_api_error_wrapped(self, settings, add_invoice, identity):
        client, _ = _fake_client(error=OpenAIError("rate limited"))
        generator = OpenAIVariantGenerator(settings, client=client)
        with pytest.raises(VariantGenerationError, match="rate limited"):
            generator.generate(add_invoice("INV-1"), None, identity)

    def test_no_api_key(self, monkeypatch, add_invoice, identity):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        generator = OpenAIVariantGenerator(OpenAISettings())
        assert not generator.enabled
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            generator.generate(add_invoice("INV-1"), None, identity)


# ============================================================================
# draft_variants
# ============================================================================

class TestDraftVariants:

    def test_uses_stored_client_and_identity(self, settings, store, config, add_invoice):
        invoice = add_invoice("INV-1", client_name="Globex", email="ap@globex.test")
        client, completions = _fake_client(_reply(("Reminder", "Please pay.")))
        generator = OpenAIVariantGenerator(settings, client=client)

        variants = draft_variants(store, generator, config, OWNER, invoice.id)

        assert len(variants) == 1
        prompt = completions.calls[0]["messages"][1]["content"]
        assert "Client: Globex (ap@globex.test)." in prompt
        assert "Dana Lee at Northwind Studio" in prompt

    def test_unknown_invoice(self, settings, store, config):
        client, completions = _fake_client(_reply(("S", "B")))
        generator = OpenAIVariantGenerator(settings, client=client)
        with pytest.raises(InvoiceNotFoundError):
            draft_variants(store, generator, config, OWNER, "missing")
        assert completions.calls == []

    def test_chosen_variant_sends_once(self, settings, store, config, add_invoice, make_dispatcher, transport):
        invoice = add_invoice("INV-1")
        client, _ = _fake_client(_reply(("Friendly nudge {{invoice_number}}", "Hi {{client_name}}.")))
        [variant] = draft_variants(store, OpenAIVariantGenerator(settings, client=client), config, OWNER, invoice.id)
        dispatcher = make_dispatcher()

        first = dispatcher.send_one(OWNER, invoice.id, subject_template=variant.subject,
                                    body_template=variant.body, today=TODAY)
        second = dispatcher.send_one(OWNER, invoice.id, subject_template=variant.subject,
                                     body_template=variant.body, today=TODAY)

        assert first.status is OutcomeStatus.SENT
        assert first.subject == "Friendly nudge INV-1"
        assert second.status is OutcomeStatus.SKIPPED
        assert len(transport.sent) == 1
