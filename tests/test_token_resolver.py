"""Tests for invoice_reminders.token_resolver -- custom placeholder inference.

Covers:
- Confidence policy helpers (auto-fill / review / low bands, clamping)
- coerce_resolutions: one answer per requested key, whatever the reply
- parse_reply: JSON, code fences, malformed replies
- OpenAITokenResolver with a fake chat client: happy path, failures,
  no API key, empty key list
"""

import json
from types import SimpleNamespace

import pytest

from invoice_reminders.config import OpenAISettings
from invoice_reminders.models import TokenResolution
from invoice_reminders.token_resolver import (
    AUTO_FILL_CONFIDENCE,
    LOW_CONFIDENCE,
    ConfidenceBand,
    OpenAITokenResolver,
    ResolverError,
    build_prompt,
    clamp_confidence,
    coerce_resolutions,
    confidence_band,
    empty_resolutions,
    is_auto_fill_confidence,
    is_low_confidence,
    parse_reply,
)


SNAPSHOT = {
    "invoice_number": "INV-1001",
    "amount": 1250.0,
    "currency": "USD",
    "payment_terms": "Net 30",
    "line_items": [{"description": "Website Redesign", "quantity": 1, "unit_price": 1250.0}],
}


# ============================================================================
# Fake OpenAI client
# ============================================================================

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


def _reply(*tokens):
    return json.dumps({"tokens": [
        {"key": k, "value": v, "confidence": c} for k, v, c in tokens
    ]})


@pytest.fixture
def settings(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_MODEL", raising=False)
    return OpenAISettings(api_key="sk-test", model="gpt-4o-mini")


# ============================================================================
# Confidence policy
# ============================================================================

class TestConfidencePolicy:

    def test_default_thresholds(self):
        assert AUTO_FILL_CONFIDENCE == 0.7
        assert LOW_CONFIDENCE == 0.3

    @pytest.mark.parametrize("confidence,band", [
        (1.0, ConfidenceBand.AUTO_FILL),
        (0.82, ConfidenceBand.AUTO_FILL),
        (0.7, ConfidenceBand.AUTO_FILL),     # inclusive
        (0.69, ConfidenceBand.REVIEW),
        (0.5, ConfidenceBand.REVIEW),
        (0.3, ConfidenceBand.REVIEW),        # low is strictly below 0.3
        (0.29, ConfidenceBand.LOW),
        (0.0, ConfidenceBand.LOW),
    ])
    def test_bands(self, confidence, band):
        assert confidence_band(confidence) is band

    def test_predicates(self):
        assert is_auto_fill_confidence(0.82)
        assert not is_auto_fill_confidence(0.5)
        assert is_low_confidence(0.1)
        assert not is_low_confidence(0.3)

    def test_custom_thresholds(self):
        assert confidence_band(0.6, auto_fill=0.5, low=0.2) is ConfidenceBand.AUTO_FILL
        assert confidence_band(0.25, auto_fill=0.5, low=0.3) is ConfidenceBand.LOW

    @pytest.mark.parametrize("raw,expected", [
        (0.42, 0.42),
        ("0.9", 0.9),
        (1.7, 1.0),
        (-2, 0.0),
        ("high", 0.0),
        (None, 0.0),
        (float("nan"), 0.0),
    ])
    def test_clamp(self, raw, expected):
        assert clamp_confidence(raw) == pytest.approx(expected)


# ============================================================================
# coerce_resolutions
# ============================================================================

class TestCoerceResolutions:

    def test_every_key_answered_in_request_order(self):
        result = coerce_resolutions(
            ["po_number", "project_name"],
            [{"key": "project_name", "value": "Website Redesign", "confidence": 0.82}],
        )
        assert [r.key for r in result] == ["po_number", "project_name"]
        assert result[0] == TokenResolution(key="po_number", value="", confidence=0.0)
        assert result[1].value == "Website Redesign"

    def test_unknown_keys_dropped(self):
        result = coerce_resolutions(["po_number"], [{"key": "surprise", "value": "x", "confidence": 1}])
        assert result == [TokenResolution(key="po_number")]

    def test_reply_keys_are_normalized(self):
        result = coerce_resolutions(["project_name"], [{"key": "Project Name", "value": "Site", "confidence": 0.9}])
        assert result[0].value == "Site"

    def test_first_answer_wins(self):
        result = coerce_resolutions(["po_number"], [
            {"key": "po_number", "value": "PO-1", "confidence": 0.9},
            {"key": "po_number", "value": "PO-2", "confidence": 1.0},
        ])
        assert result[0].value == "PO-1"

    def test_values_trimmed_and_confidence_clamped(self):
        result = coerce_resolutions(["ref"], [{"key": "ref", "value": "  R-9 ", "confidence": 4}])
        assert result[0] == TokenResolution(key="ref", value="R-9", confidence=1.0)

    def test_non_dict_items_ignored(self):
        result = coerce_resolutions(["ref"], ["junk", 42, None])
        assert result == [TokenResolution(key="ref")]

    def test_null_value_becomes_empty(self):
        result = coerce_resolutions(["ref"], [{"key": "ref", "value": None, "confidence": 0.9}])
        assert result[0].value == ""

    def test_empty_resolutions(self):
        assert empty_resolutions(["a", "b"]) == [TokenResolution("a"), TokenResolution("b")]


# ============================================================================
# parse_reply / build_prompt
# ============================================================================

class TestParseReply:

    def test_plain_json(self):
        assert parse_reply(_reply(("a", "1", 0.9))) == [{"key": "a", "value": "1", "confidence": 0.9}]

    def test_code_fenced_json(self):
        content = "```json\n" + _reply(("a", "1", 0.9)) + "\n```"
        assert parse_reply(content)[0]["key"] == "a"

    @pytest.mark.parametrize("content", [
        None,
        "",
        "I could not find anything",
        '{"answer": []}',
        '{"tokens": "nope"}',
        "[1, 2, 3]",
    ])
    def test_unusable_replies(self, content):
        with pytest.raises(ResolverError):
            parse_reply(content)

    def test_prompt_lists_keys_and_invoice(self):
        prompt = build_prompt(["po_number", "project_name"], SNAPSHOT)
        assert "- po_number" in prompt
        assert "- project_name" in prompt
        assert "INV-1001" in prompt
        assert '"tokens"' in prompt


# ============================================================================
# OpenAITokenResolver
# ============================================================================

class TestOpenAITokenResolver:

    def test_auto_fill_answer(self, settings):
        client, completions = _fake_client(_reply(("project_name", "Website Redesign", 0.82)))
        resolver = OpenAITokenResolver(settings, client=client)

        result = resolver.resolve_batch(["project_name"], SNAPSHOT)

        assert result == [TokenResolution("project_name", "Website Redesign", 0.82)]
        assert len(completions.calls) == 1

    def test_one_call_per_batch(self, settings):
        client, completions = _fake_client(_reply(("a", "1", 0.9), ("b", "2", 0.4)))
        resolver = OpenAITokenResolver(settings, client=client)
        result = resolver.resolve_batch(["a", "b", "c"], SNAPSHOT)
        assert [r.key for r in result] == ["a", "b", "c"]
        assert result[2].confidence == 0.0
        assert len(completions.calls) == 1

    def test_request_shape(self, settings):
        client, completions = _fake_client(_reply())
        OpenAITokenResolver(settings, client=client).resolve_batch(["a"], SNAPSHOT)
        call = completions.calls[0]
        assert call["model"] == "gpt-4o-mini"
        assert call["response_format"] == {"type": "json_object"}
        assert call["temperature"] == 0.0
        assert call["messages"][0]["role"] == "system"
        assert "INV-1001" in call["messages"][1]["content"]

    def test_duplicate_keys_sent_once(self, settings):
        client, completions = _fake_client(_reply(("a", "1", 0.9)))
        result = OpenAITokenResolver(settings, client=client).resolve_batch(["a", "a"], SNAPSHOT)
        assert len(result) == 1
        assert completions.calls[0]["messages"][1]["content"].count("- a\n") == 1

    def test_no_keys_no_call(self, settings):
        client, completions = _fake_client(_reply())
        assert OpenAITokenResolver(settings, client=client).resolve_batch([], SNAPSHOT) == []
        assert completions.calls == []

    def test_network_error_returns_empty_values(self, settings):
        client, _ = _fake_client(error=ConnectionError("connection reset"))
        result = OpenAITokenResolver(settings, client=client).resolve_batch(["a", "b"], SNAPSHOT)
        assert result == empty_resolutions(["a", "b"])

    def test_malformed_reply_returns_empty_values(self, settings):
        client, _ = _fake_client("Sorry, I cannot help with that.")
        result = OpenAITokenResolver(settings, client=client).resolve_batch(["a"], SNAPSHOT)
        assert result == [TokenResolution("a", "", 0.0)]

    def test_no_api_key_skips_inference(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        resolver = OpenAITokenResolver(OpenAISettings(api_key=""))
        assert not resolver.enabled
        assert resolver.resolve_batch(["po_number"], SNAPSHOT) == [TokenResolution("po_number")]

    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        assert OpenAITokenResolver(OpenAISettings()).enabled
