"""
Custom Token Resolver

Fills custom template placeholders (anything that is not a built-in like
``client_name``) from an invoice snapshot, using one batched
chat-completions call per invoice.  Every requested key comes back with
a value and a confidence in [0, 1].

The resolver never raises: a missing API key, a network failure or a
malformed reply all produce empty values with confidence 0, which the
dispatcher then treats as missing data.

Confidence policy (shared by dispatch and preview):
    >= 0.7        auto-fill, used without review
    0.3 .. 0.7    needs review, surfaced as a suggestion
    <  0.3        no usable signal, treated as empty

Usage:
    from invoice_reminders.token_resolver import OpenAITokenResolver
    resolver = OpenAITokenResolver(cfg.openai)
    resolutions = resolver.resolve_batch(["po_number"], invoice.snapshot(client))
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Iterable, Protocol

from openai import OpenAI

from .config import OpenAISettings
from .models import TokenResolution
from .tokens import normalize_key

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Confidence Policy
# ---------------------------------------------------------------------------

AUTO_FILL_CONFIDENCE: float = 0.7
LOW_CONFIDENCE: float = 0.3


class ConfidenceBand(str, Enum):
    AUTO_FILL = "auto_fill"
    REVIEW = "review"
    LOW = "low"


def is_auto_fill_confidence(confidence: float, threshold: float = AUTO_FILL_CONFIDENCE) -> bool:
    return confidence >= threshold


def is_low_confidence(confidence: float, threshold: float = LOW_CONFIDENCE) -> bool:
    return confidence < threshold


def confidence_band(
    confidence: float,
    auto_fill: float = AUTO_FILL_CONFIDENCE,
    low: float = LOW_CONFIDENCE,
) -> ConfidenceBand:
    """Place a score in one of the three policy bands."""
    if is_auto_fill_confidence(confidence, auto_fill):
        return ConfidenceBand.AUTO_FILL
    if is_low_confidence(confidence, low):
        return ConfidenceBand.LOW
    return ConfidenceBand.REVIEW


def clamp_confidence(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return min(1.0, max(0.0, number))


# ---------------------------------------------------------------------------
# Resolver Interface
# ---------------------------------------------------------------------------

class TokenResolver(Protocol):
    """Anything that can answer a batch of custom keys for one invoice."""

    def resolve_batch(self, keys: list[str], snapshot: dict[str, Any]) -> list[TokenResolution]:
        ...


class ResolverError(Exception):
    """The inference reply could not be used (internal; never escapes)."""


def empty_resolutions(keys: Iterable[str]) -> list[TokenResolution]:
    return [TokenResolution(key=key, value="", confidence=0.0) for key in keys]


def coerce_resolutions(keys: list[str], items: Iterable[Any]) -> list[TokenResolution]:
    """Reduce raw reply items to exactly one resolution per requested key.

    Item keys are normalized; unknown keys are dropped, the first answer
    for a key wins, values are trimmed, confidence is clamped, and keys
    the reply left out are backfilled empty.
    """
    wanted = set(keys)
    found: dict[str, TokenResolution] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        key = normalize_key(str(item.get("key", "")))
        if key not in wanted or key in found:
            continue
        raw_value = item.get("value")
        value = "" if raw_value is None else str(raw_value).strip()
        found[key] = TokenResolution(
            key=key,
            value=value,
            confidence=clamp_confidence(item.get("confidence")),
        )
    return [found.get(key) or TokenResolution(key=key) for key in keys]



# ---------------------------------------------------------------------------
# OpenAI-backed Resolver
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = "You infer invoice placeholder values. Return only JSON."

_CONFIDENCE_GUIDE = (
    "Confidence guide: 1.0 exact match from the invoice data, 0.7-0.9 strong "
    "inference, 0.4-0.6 educated guess, 0.0-0.3 weak or no signal. "
    "Use an empty value when the data does not support an answer."
)


def build_prompt(keys: list[str], snapshot: dict[str, Any]) -> str:
    key_lines = "\n".join(f"- {key}" for key in keys)
    return (
        "Fill in each placeholder key using only the invoice data below.\n\n"
        f"Keys:\n{key_lines}\n\n"
        f"Invoice data:\n{json.dumps(snapshot, indent=2, default=str)}\n\n"
        f"{_CONFIDENCE_GUIDE}\n\n"
        'Respond as {"tokens": [{"key": "...", "value": "...", "confidence": 0.0}]}'
    )


def parse_reply(content: str | None) -> list[Any]:
    """Pull the token list out of a chat reply, tolerating code fences."""
    text = (content or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.startswith("json"):
            text = text[4:]
    if not text:
        raise ResolverError("empty reply")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ResolverError(f"reply is not JSON: {exc}") from exc
    tokens = payload.get("tokens") if isinstance(payload, dict) else None
    if not isinstance(tokens, list):
        raise ResolverError("reply has no 'tokens' list")
    return tokens


class OpenAITokenResolver:
    """Resolve custom tokens through the OpenAI chat-completions API."""

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

    def resolve_batch(self, keys: list[str], snapshot: dict[str, Any]) -> list[TokenResolution]:
        keys = list(dict.fromkeys(keys))
        if not keys:
            return []
        if not self.enabled:
            logger.debug("No OpenAI API key configured; %d tokens left empty", len(keys))
            return empty_resolutions(keys)

        try:
            response = self._get_client().chat.completions.create(
                model=self.settings.model,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(keys, snapshot)},
                ],
                response_format={"type": "json_object"},
                temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens,
            )
            items = parse_reply(response.choices[0].message.content)
        except Exception as exc:
            logger.warning(
                "Token resolution failed for invoice %s (%s); returning empty values",
                snapshot.get("invoice_number", "?"), exc,
            )
            return empty_resolutions(keys)

        return coerce_resolutions(keys, items)
