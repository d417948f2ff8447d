"""
Invoice Reminders -- Streamlit Console

Review what the next reminder run will do, fill in placeholder values the
resolver could not find, send, and browse the reminder history.  Ready
invoices can also be sent with an AI-drafted wording instead of the
saved template.

Usage:
    streamlit run app.py
"""

from __future__ import annotations

import io
import logging
import os
import sys
from datetime import date
from pathlib import Path

import streamlit as st

# ---------------------------------------------------------------------------
# Project root setup -- ensure invoice_reminders/ is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from invoice_reminders.config import ConfigurationError, get_config
from invoice_reminders.data_loader import import_into_store, load_invoices
from invoice_reminders.insights import build_insights
from invoice_reminders.main import build_dispatcher, build_store
from invoice_reminders.models import OutcomeStatus, OwnerSettings
from invoice_reminders.rate_limit import RateLimitExceeded
from invoice_reminders.store import InvoiceNotFoundError
from invoice_reminders.token_resolver import ConfidenceBand, confidence_band
from invoice_reminders.tokens import (
    BUILTIN_FIELDS,
    SUGGESTED_CUSTOM_FIELDS,
    TemplateValidationError,
    extract_tokens_with_raw,
    list_tokens,
    validate_template,
)
from invoice_reminders.variants import (
    TONES,
    OpenAIVariantGenerator,
    VariantGenerationError,
    draft_variants,
)

app_logger = logging.getLogger("invoice_reminders.app")

st.set_page_config(page_title="Invoice Reminders", layout="wide")


# ---------------------------------------------------------------------------
# Session State
# ---------------------------------------------------------------------------

@st.cache_resource
def _get_runtime():
    cfg = get_config(os.environ.get("REMINDER_CONFIG"))
    store = build_store(cfg)
    return cfg, store


def init_session_state():
    defaults = {
        "page": "reminders",
        "owner_id": os.environ.get("REMINDER_OWNER_ID", "default"),
        "overrides": {},            # invoice_id -> {key: value}
        "preview": None,
        "last_result": None,
        "variants": {},             # invoice_id -> [ReminderVariant]
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value
    if "dispatcher" not in st.session_state:
        cfg, store = _get_runtime()
        st.session_state.dispatcher = build_dispatcher(cfg, store)


def _status_badge(status: OutcomeStatus) -> str:
    colors = {
        OutcomeStatus.SENT: "#2e7d32",
        OutcomeStatus.READY: "#2e7d32",
        OutcomeStatus.FAILED: "#c62828",
        OutcomeStatus.NEEDS_INPUT: "#ef6c00",
        OutcomeStatus.SKIPPED: "#607d8b",
    }
    return (
        f'<span style="background:{colors[status]};color:white;padding:2px 8px;'
        f'border-radius:10px;font-size:0.8rem;">{status.value}</span>'
    )


# ---------------------------------------------------------------------------
# Sidebar
# ---------------------------------------------------------------------------

def render_sidebar():
    with st.sidebar:
        st.markdown("## Invoice Reminders")
        st.session_state.owner_id = st.text_input("Owner", value=st.session_state.owner_id)
        st.markdown("---")
        for page, label in (
            ("reminders", "Reminders"),
            ("history", "History"),
            ("settings", "Templates & Sender"),
            ("import", "Import Invoices"),
        ):
            if st.button(label, use_container_width=True, key=f"nav_{page}"):
                st.session_state.page = page
                st.rerun()


# ---------------------------------------------------------------------------
# Reminders Page
# ---------------------------------------------------------------------------

def render_reminders_page():
    dispatcher = st.session_state.dispatcher
    owner_id = st.session_state.owner_id

    st.title("Reminders")
    today = st.date_input("Run as of", value=date.today())
    render_insights(owner_id, today)

    if st.button("Preview next run", type="primary"):
        try:
            st.session_state.preview = dispatcher.preview(
                owner_id, overrides=st.session_state.overrides, today=today,
            )
        except TemplateValidationError as exc:
            st.error(f"Template error: {exc}")

    report = st.session_state.preview
    if report is None:
        st.info("Click **Preview next run** to see which invoices are due.")
        return

    cols = st.columns(4)
    cols[0].metric("Ready to send", len(report.ready))
    cols[1].metric("Need input", len(report.needs_input))
    cols[2].metric("Not eligible", len(report.ineligible))
    cols[3].metric("Failed", len(report.failed))

    for outcome in report.failed:
        st.markdown(
            f"{_status_badge(outcome.status)} **{outcome.invoice_number}** {outcome.reason}",
            unsafe_allow_html=True,
        )

    if report.needs_input:
        st.subheader("Missing placeholder values")
        for outcome in report.needs_input:
            with st.expander(f"{outcome.invoice_number} - {outcome.client_name} (stage {outcome.stage})"):
                values = st.session_state.overrides.setdefault(outcome.invoice_id, {})
                for key in outcome.missing_tokens:
                    suggestion = outcome.suggestions.get(key)
                    help_text = (
                        f"Suggested with confidence {suggestion.confidence:.2f}" if suggestion else None
                    )
                    values[key] = st.text_input(
                        key,
                        value=values.get(key) or (suggestion.value if suggestion else ""),
                        help=help_text,
                        key=f"ovr_{outcome.invoice_id}_{key}",
                    )

    if report.ready:
        st.subheader("Ready")
        for outcome in report.ready:
            with st.expander(f"{outcome.invoice_number} - {outcome.client_name} (stage {outcome.stage})"):
                st.markdown(f"**Subject:** {outcome.subject}")
                st.text(outcome.body)
                render_variants(outcome.invoice_id, today)

    st.markdown("---")
    if st.button("Send reminders"):
        try:
            result = dispatcher.run(owner_id, overrides=st.session_state.overrides, today=today)
        except (ConfigurationError, RateLimitExceeded, TemplateValidationError) as exc:
            st.error(str(exc))
            return
        st.session_state.last_result = result
        st.session_state.preview = None
        st.success(f"Reminder run: {result.summary()}")
        for outcome in result.failures + result.skips:
            st.markdown(
                f"{_status_badge(outcome.status)} **{outcome.invoice_number}** {outcome.reason}",
                unsafe_allow_html=True,
            )


def render_insights(owner_id: str, today: date):
    _, store = _get_runtime()
    report = build_insights(store, owner_id, today=today)
    left, right = st.columns(2)
    with left:
        if report.suggestion.invoice_id:
            st.info(f"{report.suggestion.message} ({report.suggestion.stage_label})")
        else:
            st.info("Nothing is due a reminder right now.")
    with right:
        st.info(report.effectiveness.label)


def render_variants(invoice_id: str, today: date):
    """Draft AI wordings for one invoice and send the chosen one."""
    cfg, store = _get_runtime()
    dispatcher = st.session_state.dispatcher
    owner_id = st.session_state.owner_id

    tone = st.selectbox("Tone", TONES, key=f"tone_{invoice_id}")
    if st.button("Draft variants", key=f"draft_{invoice_id}"):
        try:
            st.session_state.variants[invoice_id] = draft_variants(
                store, OpenAIVariantGenerator(cfg.openai), cfg, owner_id, invoice_id, tone=tone,
            )
        except (ConfigurationError, VariantGenerationError) as exc:
            st.error(str(exc))

    for number, variant in enumerate(st.session_state.variants.get(invoice_id, []), start=1):
        st.markdown(f"**Variant {number}: {variant.subject}**")
        st.text(variant.body)
        if st.button("Send this variant", key=f"send_{invoice_id}_{number}"):
            try:
                outcome = dispatcher.send_one(
                    owner_id, invoice_id,
                    overrides=st.session_state.overrides.get(invoice_id, {}),
                    subject_template=variant.subject,
                    body_template=variant.body,
                    today=today,
                )
            except (ConfigurationError, RateLimitExceeded, TemplateValidationError) as exc:
                st.error(str(exc))
                continue
            app_logger.info("Variant %d sent for invoice %s: %s", number, invoice_id, outcome.status.value)
            st.markdown(
                f"{_status_badge(outcome.status)} {outcome.reason or 'Sent.'}",
                unsafe_allow_html=True,
            )
            st.session_state.variants.pop(invoice_id, None)
            st.session_state.preview = None


# ---------------------------------------------------------------------------
# History Page
# ---------------------------------------------------------------------------

def render_history_page():
    _, store = _get_runtime()
    st.title("Reminder History")
    rows = store.get_send_history(st.session_state.owner_id, limit=200)
    if not rows:
        st.info("No reminders have been sent yet.")
        return
    st.dataframe(
        [
            {
                "When": row["sent_at"] or row["created_at"],
                "Invoice": row["invoice_number"],
                "Client": row["client_name"],
                "Email": row["client_email"],
                "Stage": row["stage"],
                "Status": row["status"],
                "Error": row["error"],
            }
            for row in rows
        ],
        use_container_width=True,
    )

    with st.expander("Audit trail"):
        st.dataframe(
            [
                {
                    "When": row["timestamp"],
                    "Action": row["action"],
                    "Invoice": row["invoice_id"],
                    "Details": row["details"],
                }
                for row in store.get_audit_log(st.session_state.owner_id, limit=500)
            ],
            use_container_width=True,
        )


# ---------------------------------------------------------------------------
# Settings Page
# ---------------------------------------------------------------------------

def render_settings_page():
    cfg, store = _get_runtime()
    dispatcher = st.session_state.dispatcher
    owner_id = st.session_state.owner_id
    saved = store.get_settings(owner_id) or OwnerSettings(owner_id=owner_id)

    st.title("Templates & Sender")
    left, right = st.columns([3, 2])

    with left:
        sender_name = st.text_input("Sender name", value=saved.sender_name, placeholder=cfg.sender.sender_name)
        company_name = st.text_input("Company name", value=saved.company_name, placeholder=cfg.sender.company_name)
        from_email = st.text_input("From email", value=saved.from_email)
        reply_to = st.text_input("Reply-to", value=saved.reply_to)
        subject = st.text_input("Subject", value=saved.reminder_subject or cfg.templates.subject)
        body = st.text_area("Body", value=saved.reminder_body or cfg.templates.body, height=280)

        if st.button("Save", type="primary"):
            try:
                validate_template(subject, "subject")
                validate_template(body, "body")
            except TemplateValidationError as exc:
                st.error(str(exc))
            else:
                store.save_settings(OwnerSettings(
                    owner_id=owner_id,
                    company_name=company_name,
                    sender_name=sender_name,
                    from_email=from_email,
                    reply_to=reply_to,
                    reminder_subject=subject,
                    reminder_body=body,
                ))
                st.success("Saved.")

    with right:
        st.markdown("#### Placeholders")
        tokens = list_tokens(subject, body)
        st.markdown("Built-in: " + ", ".join(f"`{k}`" for k in tokens.builtin) if tokens.builtin else "Built-in: none")
        st.markdown("Custom: " + ", ".join(f"`{k}`" for k in tokens.custom) if tokens.custom else "Custom: none")
        respelled = [
            (key, raw) for key, raw in extract_tokens_with_raw(f"{subject}\n{body}") if raw != key
        ]
        if respelled:
            st.caption("Read as: " + ", ".join(f"`{{{{{raw}}}}}` → `{key}`" for key, raw in respelled))
        with st.expander("Available fields"):
            for f in BUILTIN_FIELDS:
                st.markdown(f"`{{{{{f.key}}}}}` {f.description}")
            st.markdown("Suggested custom fields:")
            for f in SUGGESTED_CUSTOM_FIELDS:
                st.markdown(f"`{{{{{f.key}}}}}` {f.label}")

        st.markdown("#### Sample preview")
        try:
            preview = dispatcher.preview_template(owner_id, subject, body)
        except TemplateValidationError as exc:
            st.error(str(exc))
        else:
            st.markdown(f"**{preview.subject}**")
            st.text(preview.body)
            for key in tokens.custom:
                confidence = preview.token_confidence.get(key, 0.0)
                band = confidence_band(confidence, cfg.confidence.auto_fill, cfg.confidence.low)
                if band is ConfidenceBand.AUTO_FILL:
                    st.success(f"`{key}` filled automatically ({confidence:.2f}).")
                elif band is ConfidenceBand.REVIEW:
                    st.warning(f"`{key}` needs review ({confidence:.2f}); it will be asked for before sending.")
                else:
                    st.error(f"No confident value for `{key}` on the sample invoice.")


# ---------------------------------------------------------------------------
# Import Page
# ---------------------------------------------------------------------------

def render_import_page():
    _, store = _get_runtime()
    st.title("Import Invoices")
    uploaded = st.file_uploader("CSV or XLSX export", type=["csv", "xlsx"])
    if uploaded is None:
        return
    kind = Path(uploaded.name).suffix.lower().lstrip(".")
    result = load_invoices(io.BytesIO(uploaded.getvalue()), kind=kind)
    st.markdown(f"**{len(result.rows)}** valid rows, **{len(result.errors)}** errors")
    for err in result.errors:
        st.warning(err)
    if result.rows and st.button("Import", type="primary"):
        result.source_file = uploaded.name
        count = import_into_store(result, store, st.session_state.owner_id)
        st.success(f"Imported {count} invoices.")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Main application entry point -- routes to the active page."""
    init_session_state()
    render_sidebar()

    page = st.session_state.page
    try:
        if page == "history":
            render_history_page()
        elif page == "settings":
            render_settings_page()
        elif page == "import":
            render_import_page()
        else:
            render_reminders_page()
    except InvoiceNotFoundError as exc:
        st.error(str(exc))


if __name__ == "__main__":
    main()
