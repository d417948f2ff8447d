"""
Invoice Reminders -- Configuration Module

Centralizes all configuration for the reminder engine.
Loads defaults from dataclasses, then overlays any overrides from config.yaml.

Usage:
    from invoice_reminders.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.sender.sender_name)              # "Accounts Team"
    print(cfg.confidence.auto_fill)            # 0.7
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # invoice_reminders/
PROJECT_ROOT = _THIS_DIR.parent                       # repository root
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_TEMPLATE_DIR = _THIS_DIR / "templates"


class ConfigurationError(Exception):
    """Settings are missing or unusable; raised before any batch work starts."""


# ===================================================================
# 1. Confidence Cut-points
# ===================================================================

@dataclass
class ConfidenceSettings:
    """Decision thresholds applied to resolver confidence scores."""
    auto_fill: float = 0.7          # >= auto_fill: use without review
    low: float = 0.3                # < low: no usable signal


# ===================================================================
# 2. Custom Token Aliases
# ===================================================================

DEFAULT_TOKEN_ALIASES: dict[str, str] = {
    "invoice_amount": "amount",
    "invoice_date": "due_date",
    "total": "amount",
    "invoice_total": "amount",
}


# ===================================================================
# 3. Sender Identity
# ===================================================================

@dataclass
class SenderInfo:
    """Fallback FROM identity used when an owner has no saved settings."""
    sender_name: str = "Accounts Team"
    company_name: str = "Your Company"
    from_email: str = ""            # set via env var REMINDER_FROM_EMAIL
    reply_to: str = ""

    def __post_init__(self):
        self.from_email = self.from_email or os.environ.get("REMINDER_FROM_EMAIL", "")


# ===================================================================
# 4. SMTP Settings
# ===================================================================

@dataclass
class SMTPSettings:
    """SMTP relay used by the default transport."""
    host: str = "smtp.gmail.com"
    port: int = 587
    use_tls: bool = True
    username: str = ""        # set via env var SMTP_USERNAME
    password: str = ""        # set via env var SMTP_PASSWORD
    timeout: float = 30.0

    def __post_init__(self):
        self.username = self.username or os.environ.get("SMTP_USERNAME", "")
        self.password = self.password or os.environ.get("SMTP_PASSWORD", "")


# ===================================================================
# 5. Field Inference (OpenAI)
# ===================================================================

@dataclass
class OpenAISettings:
    """Chat-completions settings for the custom token resolver."""
    api_key: str = ""         # set via env var OPENAI_API_KEY
    model: str = ""           # set via env var OPENAI_MODEL
    max_tokens: int = 800
    temperature: float = 0.0
    timeout: float = 30.0

    def __post_init__(self):
        self.api_key = self.api_key or os.environ.get("OPENAI_API_KEY", "")
        self.model = self.model or os.environ.get("OPENAI_MODEL", "gpt-4o-mini")


# ===================================================================
# 6. Dispatch
# ===================================================================

@dataclass
class DispatchSettings:
    """Batch execution knobs."""
    max_workers: int = 4                            # bounded per-invoice concurrency
    max_attachment_bytes: int = 10 * 1024 * 1024    # PDFs above this are dropped
    transport: str = "smtp"                         # "smtp" or "outbox"
    stale_claim_minutes: int = 30


# ===================================================================
# 7. Rate Limit
# ===================================================================

@dataclass
class RateLimitSettings:
    """Fixed window applied per owner to run/send actions."""
    max_requests: int = 10
    window_seconds: int = 60


# ===================================================================
# 8. Storage
# ===================================================================

@dataclass
class StorageSettings:
    """SQLite database and .eml outbox locations (relative to project root)."""
    db_path: str = "data/reminders.db"
    outbox_dir: str = "output/outbox"

    def resolve(self, rel_path: str) -> Path:
        p = Path(rel_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 9. Default Templates
# ===================================================================

DEFAULT_SUBJECT = "Friendly reminder: Invoice {{invoice_number}} is {{days_overdue}} days past due"

DEFAULT_BODY = (
    "Hi {{client_name}},\n"
    "\n"
    "This is a friendly reminder that invoice {{invoice_number}} for {{amount}} "
    "was due on {{due_date}} and is now {{days_overdue}} days past due.\n"
    "\n"
    "If you've already sent payment, please disregard this note. Otherwise, "
    "could you let us know when we can expect payment?\n"
    "\n"
    "Thanks,\n"
    "{{sender_name}}\n"
    "{{company_name}}"
)


@dataclass
class TemplateSettings:
    """Subject/body used when an owner has not saved their own."""
    subject: str = DEFAULT_SUBJECT
    body: str = DEFAULT_BODY
    html_template: str = "reminder.html"
    template_dir: str = ""

    @property
    def resolved_dir(self) -> Path:
        if not self.template_dir:
            return DEFAULT_TEMPLATE_DIR
        p = Path(self.template_dir)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class ReminderConfig:
    """Top-level configuration container for the reminder engine."""
    confidence: ConfidenceSettings = field(default_factory=ConfidenceSettings)
    aliases: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_TOKEN_ALIASES))
    sender: SenderInfo = field(default_factory=SenderInfo)
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    openai: OpenAISettings = field(default_factory=OpenAISettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    templates: TemplateSettings = field(default_factory=TemplateSettings)


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: ReminderConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a ReminderConfig instance."""

    # --- stage thresholds are fixed constants in aging.py ---
    if "stages" in data:
        raise ConfigurationError(
            "Reminder stage thresholds are fixed at 7/14/21 days; remove the 'stages' section"
        )

    # --- aliases replace the table wholesale ---
    if isinstance(data.get("aliases"), dict):
        cfg.aliases = {str(k): str(v) for k, v in data["aliases"].items()}

    # --- simple sub-configs ---
    _section_map = {
        "confidence": cfg.confidence,
        "sender": cfg.sender,
        "smtp": cfg.smtp,
        "openai": cfg.openai,
        "dispatch": cfg.dispatch,
        "rate_limit": cfg.rate_limit,
        "storage": cfg.storage,
        "templates": cfg.templates,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)


def get_config(yaml_path: Optional[str | Path] = None) -> ReminderConfig:
    """Build a ReminderConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated ReminderConfig instance.
    """
    cfg = ReminderConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)

    return cfg


def validate_smtp(cfg: ReminderConfig) -> None:
    """Raise ConfigurationError unless the SMTP transport can authenticate."""
    missing = []
    if not cfg.smtp.host:
        missing.append("smtp.host")
    if not cfg.smtp.username:
        missing.append("SMTP_USERNAME")
    if not cfg.smtp.password:
        missing.append("SMTP_PASSWORD")
    if not (cfg.sender.from_email or cfg.smtp.username):
        missing.append("sender.from_email")
    if missing:
        raise ConfigurationError(
            "Email transport is not configured; missing: " + ", ".join(missing)
        )


# ===================================================================
# Quick smoke test when run directly
# ===================================================================

if __name__ == "__main__":
    cfg = get_config()
    print(f"Project root : {PROJECT_ROOT}")
    print(f"Config path  : {DEFAULT_CONFIG_PATH}")
    print(f"Sender       : {cfg.sender.sender_name} <{cfg.sender.from_email}>")
    print(f"Confidence   : auto>={cfg.confidence.auto_fill} low<{cfg.confidence.low}")
    print(f"Aliases      : {cfg.aliases}")
    print(f"Model        : {cfg.openai.model} (key set: {bool(cfg.openai.api_key)})")
    print(f"Database     : {cfg.storage.resolve(cfg.storage.db_path)}")
