from __future__ import annotations

import json
import logging
import os
import time
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional

import streamlit as st
import streamlit.components.v1 as components
from dotenv import load_dotenv

from advisor_session import AdvisorBusyError, AdvisorSession
from ai_advisor import AdvisorConfig, CompletionClient, advisor_enabled, load_config_from_env, make_completion_client
from currency import Currency, format_amount
from estimate_pdf import artifact_from_quote, make_estimate_pdf_bytes
from pricing_engine import (
    CMS_TIER_LABELS,
    DEFAULT_PRICE_TABLE,
    DESIGN_TIER_LABELS,
    SELECTION_LIMITS,
    WIRE_KEYS,
    CmsTier,
    QuoteResult,
    Selections,
)
from transcript_export import TRANSCRIPT_FILE_NAME, transcript_html, transcript_text

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_ADVISOR_ENV_KEYS = (
    "ADVISOR_API_KEY",
    "OPENAI_API_KEY",
    "ADVISOR_BASE_URL",
    "ADVISOR_MODEL",
    "ADVISOR_TIMEOUT_S",
    "ADVISOR_NAME",
    "ADVISOR_OWNER_NAME",
)

# (wire key, widget label, unit price shown next to the control)
_SLIDERS = (
    ("standardPages", "Standard Pages (e.g., Home, About)", DEFAULT_PRICE_TABLE.standard_page_ngn, "/page"),
    ("complexPages", "Complex Pages (e.g., Dashboard)", DEFAULT_PRICE_TABLE.complex_page_ngn, "/page"),
    ("systemPages", "System Pages (e.g., Auth)", DEFAULT_PRICE_TABLE.system_page_ngn, "/page"),
    ("products", "Number of Products (for E-commerce)", DEFAULT_PRICE_TABLE.per_product_ngn, "/product"),
    ("apis", "External API Integrations", DEFAULT_PRICE_TABLE.per_api_ngn, "/API"),
)
_TOGGLES = (
    ("userAuth", "User Authentication", DEFAULT_PRICE_TABLE.user_auth_ngn),
    ("paymentGateway", "Payment Gateway", DEFAULT_PRICE_TABLE.payment_gateway_ngn),
)


def configure_logging() -> None:
    """
    Configure root logging from LOG_LEVEL.

    Streamlit re-executes this script on every interaction, so handlers are
    only installed when the root logger has none.
    """
    root = logging.getLogger()
    level_name = str(os.environ.get("LOG_LEVEL") or "INFO").strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)


def _read_secret_or_env_str(key: str) -> str:
    """
    Read a configuration value from Streamlit Secrets (preferred) or environment variables.

    Returns a stripped string; returns "" when missing.
    """
    val: object = ""
    try:
        # Raises when no secrets.toml exists at all.
        val = st.secrets.get(key, "")  # type: ignore[attr-defined]
    except FileNotFoundError:
        val = ""
    except Exception as exc:
        logger.debug("secrets lookup for %s failed: %s", key, exc)
        val = ""
    if not val:
        val = os.environ.get(key, "")
    if isinstance(val, str):
        return val.strip()
    return str(val).strip() if val is not None else ""


def _sync_advisor_env_from_secrets() -> None:
    """
    Mirror Streamlit secrets into environment variables for the advisor config.

    Keeps `ai_advisor.py` Streamlit-free while still allowing `.streamlit/secrets.toml`.
    """
    for key in _ADVISOR_ENV_KEYS:
        value = _read_secret_or_env_str(key)
        if value:
            os.environ[key] = value


@st.cache_resource
def _completion_client(config: AdvisorConfig) -> CompletionClient:
    return make_completion_client(config)


def _session(config: AdvisorConfig) -> AdvisorSession:
    return AdvisorSession(st.session_state, config=config)


def _currency() -> Currency:
    return Currency(str(st.session_state.get("estimate_currency") or Currency.NGN.value))


def _widget_key(wire_key: str) -> str:
    return f"estimator_{wire_key}"


def _sync_widgets_from_selections(sel: Selections) -> None:
    """
    Push the shared selections into the widget keys before the widgets render.

    Widgets are views of the selections; an advisor patch applied on the
    previous rerun shows up here without the widgets holding stale values.
    """
    wire = sel.to_wire()
    for wire_key, value in wire.items():
        st.session_state[_widget_key(wire_key)] = value


def _on_widget_change(session: AdvisorSession, wire_key: str) -> None:
    session.update_field(wire_key, st.session_state.get(_widget_key(wire_key)))


def _field_label(label: str, wire_key: str) -> str:
    highlighted = st.session_state.get("selections_origin") == "agent" and wire_key in (
        st.session_state.get("changed_fields") or frozenset()
    )
    return f"✨ {label}" if highlighted else label


def _render_estimator(session: AdvisorSession) -> None:
    st.markdown('<div id="calculator"></div>', unsafe_allow_html=True)
    st.subheader("Project Features")
    if bool(st.session_state.get("calculating")):
        st.info("The assistant is working out a configuration for you...")
    elif bool(st.session_state.get("ai_suggestion")):
        prompt = str(st.session_state.get("last_user_prompt") or "").strip()
        msg = "Updated by the AI assistant. Highlighted fields changed."
        if prompt:
            msg += f"\n\nBased on: _{prompt}_"
        st.success(msg)

    _sync_widgets_from_selections(session.selections)

    st.selectbox(
        _field_label(f"Design Tier (x{session.selections.design_tier} of base)", "designTier"),
        options=list(DESIGN_TIER_LABELS.keys()),
        format_func=lambda t: f"Tier {t}: {DESIGN_TIER_LABELS[t]}",
        key=_widget_key("designTier"),
        on_change=_on_widget_change,
        args=(session, "designTier"),
    )
    for wire_key, label, unit, suffix in _SLIDERS:
        lo, hi = SELECTION_LIMITS[WIRE_KEYS[wire_key]]
        st.slider(
            _field_label(f"{label} - {format_amount(unit)}{suffix}", wire_key),
            min_value=lo,
            max_value=hi,
            key=_widget_key(wire_key),
            on_change=_on_widget_change,
            args=(session, wire_key),
        )
        if wire_key == "systemPages":
            st.selectbox(
                _field_label("Content Management (CMS)", "cmsType"),
                options=[t.value for t in CmsTier],
                format_func=lambda v: CMS_TIER_LABELS[CmsTier(v)],
                key=_widget_key("cmsType"),
                on_change=_on_widget_change,
                args=(session, "cmsType"),
            )
    for wire_key, label, price in _TOGGLES:
        st.toggle(
            _field_label(f"{label} - {format_amount(price)}", wire_key),
            key=_widget_key(wire_key),
            on_change=_on_widget_change,
            args=(session, wire_key),
        )


def _estimate_payload(sel: Selections, quote: QuoteResult) -> dict[str, object]:
    return {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "selections": sel.to_wire(),
        "line_items": [
            {"code": li.code, "description": li.description, "amount_ngn": li.amount_ngn} for li in quote.line_items
        ],
        "total_ngn": quote.total_ngn,
        "milestones": [
            {"label": m.label, "fraction_bp": m.fraction_bp, "amount_ngn": m.amount_ngn} for m in quote.milestones
        ],
    }


def _estimate_pdf_bytes(session: AdvisorSession, config: AdvisorConfig, *, include_chat: bool) -> bytes:
    quote = session.quote()
    transcript = ()
    if include_chat:
        transcript = tuple(
            ("You" if m.get("role") == "user" else config.advisor_name, str(m.get("text") or ""))
            for m in session.messages()
        )
    artifact = artifact_from_quote(
        estimate_id=datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S"),
        estimate_date=date.today(),
        prepared_by=f"{config.owner_name} (portfolio estimator)",
        selections=session.selections,
        quote=quote,
        transcript=transcript,
    )
    return make_estimate_pdf_bytes(artifact)


def _render_pdf_download(
    session: AdvisorSession, config: AdvisorConfig, *, include_chat: bool, label: str, file_name: str
) -> None:
    try:
        pdf = _estimate_pdf_bytes(session, config, include_chat=include_chat)
    except Exception as exc:
        # The surrounding panel must still render if ReportLab chokes.
        logger.exception("estimate PDF generation failed")
        st.error(f"Could not generate PDF: {exc}")
        return
    st.download_button(label, data=pdf, file_name=file_name, mime="application/pdf", use_container_width=True)


def _render_summary(session: AdvisorSession, config: AdvisorConfig, client: CompletionClient) -> None:
    st.subheader("Estimate Summary")
    st.radio(
        "Currency",
        options=[c.value for c in Currency],
        format_func=lambda v: v.upper(),
        key="estimate_currency",
        horizontal=True,
    )
    currency = _currency()
    quote = session.quote()
    st.metric("Total Estimated Cost", format_amount(quote.total_ngn, currency))

    st.markdown("#### Payment Milestones")
    rows = [
        {"Phase": m.label, "Description": m.description, "Amount": format_amount(m.amount_ngn, currency)}
        for m in quote.milestones
    ]
    st.dataframe(rows, use_container_width=True, hide_index=True)

    with st.expander("Cost breakdown", expanded=False):
        st.dataframe(
            [{"Item": li.description, "Amount": format_amount(li.amount_ngn, currency)} for li in quote.line_items],
            use_container_width=True,
            hide_index=True,
        )

    left, right = st.columns(2)
    with left:
        if st.button("Reset", use_container_width=True):
            session.reset_selections()
            st.rerun()
    with right:
        if st.button("✨ Discuss with AI", use_container_width=True, disabled=session.is_busy()):
            try:
                with st.spinner(f"{config.advisor_name} is typing..."):
                    session.discuss_with_ai(client, currency)
            except AdvisorBusyError:
                st.toast("Please wait for the current reply.")
            st.rerun()

    st.download_button(
        "Download estimate (JSON)",
        data=json.dumps(_estimate_payload(session.selections, quote), indent=2),
        file_name="estimate.json",
        mime="application/json",
        use_container_width=True,
    )
    _render_pdf_download(session, config, include_chat=False, label="Download estimate (PDF)", file_name="estimate.pdf")
    st.caption("Prices are estimates and may vary.")


def _maybe_scroll_to_calculator(session: AdvisorSession) -> None:
    if not session.consume_scroll_request():
        return
    components.html(
        """
<script>
(() => {
  try {
    const doc = window.parent.document;
    window.requestAnimationFrame(() => {
      const anchor = doc.getElementById("calculator");
      if (anchor) {
        try { anchor.scrollIntoView({ behavior: "smooth", block: "start" }); } catch (e) {}
      }
    });
  } catch (e) {}
})();
</script>
""",
        height=0,
    )


def _handle_chat_text(session: AdvisorSession, client: CompletionClient, text: str, advisor_name: str) -> None:
    try:
        with st.spinner(f"{advisor_name} is typing..."):
            session.submit_user_message(text, client)
    except AdvisorBusyError:
        st.toast("Please wait for the current reply.")
    st.rerun()


def _render_chat_export(session: AdvisorSession, config: AdvisorConfig) -> None:
    messages = session.messages()
    if len(messages) <= 1:
        return
    with st.expander("Share / export", expanded=False):
        st.download_button(
            "Download chat (.txt)",
            data=transcript_text(messages, advisor_name=config.advisor_name),
            file_name=f"{TRANSCRIPT_FILE_NAME}.txt",
            mime="text/plain",
            use_container_width=True,
        )
        st.download_button(
            "Printable chat (.html)",
            data=transcript_html(messages, advisor_name=config.advisor_name),
            file_name=f"{TRANSCRIPT_FILE_NAME}.html",
            mime="text/html",
            use_container_width=True,
        )
        _render_pdf_download(
            session,
            config,
            include_chat=True,
            label="Estimate + chat (.pdf)",
            file_name=f"{TRANSCRIPT_FILE_NAME}.pdf",
        )
        st.code(transcript_text(messages, advisor_name=config.advisor_name), language=None)


def _render_chat(session: AdvisorSession, config: AdvisorConfig, client: CompletionClient) -> None:
    name = config.advisor_name
    with st.sidebar:
        if not bool(st.session_state.get("chat_open")):
            if st.button(f"💬 Chat with {name}", use_container_width=True):
                session.open_chat()
                st.rerun()
            return

        head_left, head_right = st.columns([4, 1])
        head_left.subheader("AI Assistant")
        if head_right.button("✕", help="Close chat"):
            session.close_chat()
            st.rerun()
        if not advisor_enabled(config):
            st.caption("Set `ADVISOR_API_KEY` to enable the assistant.")

        session.ensure_welcome()
        with st.container(height=480, border=True):
            for idx, msg in enumerate(session.messages()):
                role = "user" if msg.get("role") == "user" else "assistant"
                with st.chat_message(role):
                    st.markdown(str(msg.get("text") or ""))
                    if msg.get("action") == "pricing":
                        c1, c2 = st.columns(2)
                        if c1.button("Go to calculator", key=f"pricing_calc_{idx}", disabled=session.is_busy()):
                            session.choose_pricing_action("calculator", client)
                            st.rerun()
                        if c2.button("Assist me here", key=f"pricing_assist_{idx}", disabled=session.is_busy()):
                            try:
                                with st.spinner(f"{name} is typing..."):
                                    session.choose_pricing_action("assist", client)
                            except AdvisorBusyError:
                                st.toast("Please wait for the current reply.")
                            st.rerun()
                    if msg.get("show_calculator_cta"):
                        if st.button("Check the calculator", key=f"calc_cta_{idx}"):
                            st.session_state["scroll_to_calculator"] = True
                            session.close_chat()
                            st.rerun()
            if bool(st.session_state.get("calculating")):
                with st.chat_message("assistant"):
                    st.markdown("_Calculating..._")

        user_text = st.chat_input("Ask me anything...", disabled=session.is_busy())
        if user_text is not None:
            _handle_chat_text(session, client, user_text, name)

        _render_chat_export(session, config)


def main() -> None:
    st.set_page_config(page_title="Portfolio - Project Estimate", layout="wide")
    # Explicit path: dotenv's auto discovery needs a caller frame.
    load_dotenv(dotenv_path=Path.cwd() / ".env")
    configure_logging()
    _sync_advisor_env_from_secrets()

    config = load_config_from_env()
    client = _completion_client(config)
    session = _session(config)

    # A parked "calculating" reply is applied here even when the chat is closed.
    session.reveal_due()

    st.title("Instant Project Estimate")
    st.caption("Use this calculator to get a ballpark figure for your project. Prices are estimates and may vary.")

    left, right = st.columns([3, 2], gap="large")
    with left:
        _render_estimator(session)
    with right:
        _render_summary(session, config, client)

    _render_chat(session, config, client)
    _maybe_scroll_to_calculator(session)

    next_reveal: Optional[int] = session.next_reveal_at_ms()
    if next_reveal is not None:
        wait_ms = max(0, next_reveal - int(time.time() * 1000))
        time.sleep(min(0.35, wait_ms / 1000.0))
        st.rerun()


if __name__ == "__main__":
    main()
