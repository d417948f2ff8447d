"""
Template Token Parser

Finds ``{{ name }}`` placeholders in reminder subject/body templates,
normalizes them to canonical keys, sorts them into built-in vs. custom,
and renders templates against a value map.

Normalization makes ``{{Client Name}}``, ``{{ client-name }}`` and
``{{client_name}}`` the same key.  Rendering never leaves a recognised
placeholder behind: keys with no value render as an empty string.

Usage:
    from invoice_reminders.tokens import extract_tokens, render_template
    keys = extract_tokens("Hi {{Client Name}}, re {{po_number}}")
    # ['client_name', 'po_number']
    render_template("Hi {{Client Name}}", {"client_name": "Acme"})
    # 'Hi Acme'
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping


class TemplateValidationError(ValueError):
    """A subject or body template cannot be parsed."""


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

TOKEN_PATTERN = re.compile(r"\{\{\s*([^}]+)\s*\}\}")
_EMPTY_TOKEN = re.compile(r"\{\{\s*\}\}")

_SEPARATOR_RUNS = re.compile(r"[\s\-./]+")
_INVALID_CHARS = re.compile(r"[^a-z0-9_]")
_UNDERSCORE_RUNS = re.compile(r"_+")

FALLBACK_KEY = "placeholder"


# ---------------------------------------------------------------------------
# Field Catalogue
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TokenField:
    """A documented placeholder shown in the template editor."""
    key: str
    label: str
    description: str = ""


BUILTIN_FIELDS: tuple[TokenField, ...] = (
    TokenField("client_name", "Client name", "Client or company name"),
    TokenField("invoice_number", "Invoice number", "Invoice identifier"),
    TokenField("amount", "Amount", "Amount with currency"),
    TokenField("due_date", "Due date", "Formatted due date"),
    TokenField("days_overdue", "Days overdue", "Days past the due date"),
    TokenField("sender_name", "Sender name", "Your name from settings"),
    TokenField("company_name", "Company name", "Your company from settings"),
)

BUILTIN_KEYS: frozenset[str] = frozenset(f.key for f in BUILTIN_FIELDS)

SUGGESTED_CUSTOM_FIELDS: tuple[TokenField, ...] = (
    TokenField("project_name", "Project name"),
    TokenField("po_number", "PO number"),
    TokenField("reference", "Reference"),
    TokenField("contract_id", "Contract ID"),
    TokenField("first_line_item", "First line item"),
    TokenField("service_description", "Service description"),
    TokenField("billing_period", "Billing period"),
)


@dataclass
class TokenClassification:
    """Placeholders partitioned by whether invoice data supplies them."""
    builtin: list[str] = field(default_factory=list)
    custom: list[str] = field(default_factory=list)

    @property
    def all(self) -> list[str]:
        return self.builtin + self.custom


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def normalize_key(raw: str) -> str:
    """Canonical form of a placeholder name.

    Lowercase, separators (whitespace, ``-``, ``.``, ``/``) become single
    underscores, anything outside ``[a-z0-9_]`` is dropped, and the
    result never starts or ends with an underscore.  Empty results fall
    back to ``"placeholder"``.
    """
    key = (raw or "").strip().lower()
    key = _SEPARATOR_RUNS.sub("_", key)
    key = _INVALID_CHARS.sub("", key)
    key = _UNDERSCORE_RUNS.sub("_", key)
    key = key.strip("_")
    return key or FALLBACK_KEY


def extract_tokens_with_raw(template: str) -> list[tuple[str, str]]:
    """(normalized key, raw inner text) pairs, first spelling wins."""
    seen: dict[str, str] = {}
    for match in TOKEN_PATTERN.finditer(template or ""):
        raw = match.group(1).strip()
        key = normalize_key(raw)
        if key not in seen:
            seen[key] = raw
    return list(seen.items())


def extract_tokens(template: str) -> list[str]:
    """Normalized placeholder keys in order of first appearance."""
    return [key for key, _raw in extract_tokens_with_raw(template)]


def classify_tokens(
    tokens: Iterable[str],
    builtin_keys: Iterable[str] = BUILTIN_KEYS,
) -> TokenClassification:
    """Split keys into built-in and custom, keeping input order."""
    builtins = set(builtin_keys)
    result = TokenClassification()
    for token in tokens:
        target = result.builtin if token in builtins else result.custom
        if token not in target:
            target.append(token)
    return result


def list_tokens(
    subject: str,
    body: str,
    builtin_keys: Iterable[str] = BUILTIN_KEYS,
) -> TokenClassification:
    """Classify every placeholder used across a subject/body pair."""
    return classify_tokens(
        extract_tokens(subject) + extract_tokens(body),
        builtin_keys,
    )


def validate_template(template: str, name: str = "template") -> None:
    """Reject templates with an empty ``{{ }}`` or an unclosed ``{{``."""
    text = template or ""
    bare = _EMPTY_TOKEN.search(text)
    if bare:
        raise TemplateValidationError(f"{name}: empty placeholder at position {bare.start()}")
    for match in TOKEN_PATTERN.finditer(text):
        if not match.group(1).strip():
            raise TemplateValidationError(
                f"{name}: empty placeholder at position {match.start()}"
            )
    remainder = TOKEN_PATTERN.sub("", text)
    position = remainder.find("{{")
    if position != -1 and "}}" not in remainder[position:]:
        raise TemplateValidationError(f"{name}: unclosed '{{{{' placeholder")


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render_template(template: str, data: Mapping[str, Any]) -> str:
    """Substitute every placeholder; missing or None values become ''."""

    def _replace(match: re.Match) -> str:
        value = data.get(normalize_key(match.group(1)))
        return "" if value is None else str(value)

    return TOKEN_PATTERN.sub(_replace, template or "")
