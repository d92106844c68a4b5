from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, Sequence

import httpx
from openai import OpenAI, OpenAIError

from chat_protocol import (
    CALCULATING_SENTINEL,
    PATCH_SENTINEL,
    PRICING_SENTINEL,
    REASONING_CLOSE,
    REASONING_OPEN,
)
from currency import USD_RATE_NGN
from pricing_engine import DEFAULT_PRICE_TABLE, CmsTier, PriceTable, Selections

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.hyperbolic.xyz/v1"
DEFAULT_MODEL = "deepseek-ai/DeepSeek-V3-0324"

RequestMessage = Mapping[str, str]


class AdvisorTransportError(RuntimeError):
    pass


@dataclass(frozen=True)
class AdvisorConfig:
    api_key: str
    base_url: str
    model: str
    timeout_s: float
    max_tokens: int
    temperature: float
    top_p: float
    advisor_name: str
    owner_name: str


def _env_str(name: str, default: str = "") -> str:
    return str(os.environ.get(name, "") or "").strip() or default


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number (got {raw!r})") from e


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from e


def load_config_from_env() -> AdvisorConfig:
    """
    Loads advisor config from environment variables (after dotenv / secrets are loaded).

    `ADVISOR_API_KEY` wins over `OPENAI_API_KEY`; an empty key disables the advisor.
    """
    return AdvisorConfig(
        api_key=_env_str("ADVISOR_API_KEY") or _env_str("OPENAI_API_KEY"),
        base_url=_env_str("ADVISOR_BASE_URL", DEFAULT_BASE_URL),
        model=_env_str("ADVISOR_MODEL", DEFAULT_MODEL),
        timeout_s=_env_float("ADVISOR_TIMEOUT_S", 60.0),
        max_tokens=_env_int("ADVISOR_MAX_TOKENS", 4096),
        temperature=_env_float("ADVISOR_TEMPERATURE", 0.2),
        top_p=_env_float("ADVISOR_TOP_P", 0.8),
        advisor_name=_env_str("ADVISOR_NAME", "Amir"),
        owner_name=_env_str("ADVISOR_OWNER_NAME", "Yusuf"),
    )


def advisor_enabled(config: AdvisorConfig) -> bool:
    return bool(config.api_key)


def _pricing_reference(table: PriceTable) -> str:
    cms = table.cms_prices_ngn
    return (
        f"- **Base Fee**: {table.base_fee_ngn:,} (This is always included)\n"
        f"- **Design Tier Cost**: {table.design_unit_ngn:,} * the selected tier (1, 2, 3, or 4)\n"
        f"- **Standard Pages Cost**: {table.standard_page_ngn:,} * number of pages\n"
        f"- **Complex Pages Cost**: {table.complex_page_ngn:,} * number of pages\n"
        f"- **System Pages Cost**: {table.system_page_ngn:,} * number of pages\n"
        f"- **CMS Cost**: {cms[CmsTier.NONE]:,} for None, {cms[CmsTier.HEADLESS]:,} for Headless, "
        f"{cms[CmsTier.TRADITIONAL]:,} for Traditional\n"
        f"- **E-commerce Cost**: {table.ecommerce_base_ngn:,} base fee (only if products > 0) PLUS "
        f"{table.per_product_ngn:,} * number of products\n"
        f"- **User Authentication Cost**: {table.user_auth_ngn:,} (if selected)\n"
        f"- **Payment Gateway Cost**: {table.payment_gateway_ngn:,} (if selected)\n"
        f"- **API Integrations Cost**: {table.per_api_ngn:,} * number of integrations\n"
    )


def build_system_instruction(
    config: AdvisorConfig,
    *,
    current: Selections,
    table: PriceTable = DEFAULT_PRICE_TABLE,
) -> str:
    """
    Build the fixed instructions sent ahead of the conversation.

    Carries the full pricing formula, the directive grammar the reply parser
    accepts, and the calculator's current selections.
    """
    name = config.advisor_name
    owner = config.owner_name
    cms_values = ", ".join(f'"{t.value}"' for t in CmsTier)
    return (
        f"You are '{name}', a friendly and helpful AI assistant for {owner}'s frontend developer portfolio. "
        "Your goal is to be conversational and helpful. Keep your answers concise. You are knowledgeable about:\n"
        f"- {owner}'s skills: React, Next.js, TypeScript, Tailwind CSS, Node.js, Vercel, Docker.\n"
        f"- {owner}'s services: App Development, Frontend Development, eCommerce solutions.\n\n"
        "**CRITICAL RULE: THE INVISIBLE CALCULATOR & SELF-VERIFICATION**\n"
        "You have an internal calculator that is an exact copy of the on-screen calculator. You MUST use it "
        "for any budget or alternative calculation. Never estimate; calculate precisely.\n\n"
        "**INTERNAL CALCULATION FORMULA & REFERENCE (All prices in NGN):**\n"
        "The total cost is the SUM of all the following components that apply:\n"
        f"{_pricing_reference(table)}\n"
        "---\n\n"
        "**RESPONSE RULES & FLOWS**\n\n"
        f"**1. GENERAL CONVERSATION:** Be friendly and answer questions based on {owner}'s skills and services.\n\n"
        "**2. PRICING INTENT:**\n"
        "- If a user wants a price for THEIR OWN project, respond with ONLY the special command: "
        f"`{PRICING_SENTINEL}`.\n\n"
        "**3. CALCULATOR ASSISTANCE FLOW:**\n"
        "- If the user asks you to assist, gather their requirements conversationally.\n"
        "- Once you have enough info, summarize it and provide the command to update the calculator. The format "
        f"MUST be `{PATCH_SENTINEL}<JSON_OBJECT>`. The JSON object must be a single line with no newlines. "
        "All JSON keys MUST be in double quotes.\n"
        f'- Example: `I\'ve got the details... {PATCH_SENTINEL}{{"designTier":2,"standardPages":5,"userAuth":false}}`\n'
        '- Valid JSON keys/types: "designTier"(number 1-4), "standardPages"(number 0-20), '
        '"complexPages"(number 0-20), "systemPages"(number 0-5), '
        f'"cmsType"(string: {cms_values}), "products"(number 0-200), "userAuth"(boolean), '
        '"paymentGateway"(boolean), "apis"(number 0-10).\n'
        "- Keys you leave out are reset to the calculator defaults.\n\n"
        "**4. BUDGETS & ALTERNATIVES (THE \"CALCULATING\" MODE):**\n"
        f"- Your response MUST begin with the special command `{CALCULATING_SENTINEL}` on its own line.\n"
        f"- Then wrap all of your working inside `{REASONING_OPEN}...{REASONING_CLOSE}`. This content is "
        "stripped and never shown. State the goal (if the budget is in USD, convert at "
        f"1 USD = {USD_RATE_NGN} NGN), try combinations with full calculations, and finish with a FINAL "
        "VERIFICATION of the chosen configuration.\n"
        "- After the closing tag, write the user-facing message and the calculator command, generated SOLELY "
        "from your final verification. Never let calculations or the word 'Verification' appear outside the tags.\n\n"
        "**CURRENT CALCULATOR SELECTIONS:**\n"
        f"{json.dumps(current.to_wire(), separators=(',', ':'))}\n"
    )


def build_request_messages(system: str, history: Sequence[Mapping[str, object]]) -> list[dict[str, str]]:
    """
    Map the chat log to chat-completion messages (agent -> assistant).
    """
    out: list[dict[str, str]] = [{"role": "system", "content": system}]
    for msg in history:
        text = msg.get("text")
        if not isinstance(text, str) or not text.strip():
            continue
        role = "assistant" if msg.get("role") == "agent" else "user"
        out.append({"role": role, "content": text})
    return out


class CompletionClient(Protocol):
    def complete(self, messages: Sequence[RequestMessage]) -> str:
        ...


class OpenAICompletionClient:
    """
    Text-in/text-out client for an OpenAI-compatible chat completions endpoint.
    """

    def __init__(self, config: AdvisorConfig, *, http_client: Optional[httpx.Client] = None) -> None:
        if not config.api_key:
            raise ValueError("Missing ADVISOR_API_KEY (set it in .env or Streamlit secrets)")
        self._config = config
        self._client = OpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            http_client=http_client or httpx.Client(timeout=config.timeout_s),
            max_retries=0,
        )

    def complete(self, messages: Sequence[RequestMessage]) -> str:
        cfg = self._config
        try:
            resp = self._client.chat.completions.create(
                model=cfg.model,
                messages=[dict(m) for m in messages],  # type: ignore[misc]
                max_tokens=cfg.max_tokens,
                temperature=cfg.temperature,
                top_p=cfg.top_p,
                stream=False,
            )
        except (OpenAIError, httpx.HTTPError) as e:
            raise AdvisorTransportError(f"completion request failed: {e}") from e
        if not resp.choices:
            return ""
        return resp.choices[0].message.content or ""


class AdvisorUnavailableClient:
    """Stands in when no API key is configured; every call fails like a network error."""

    def complete(self, messages: Sequence[RequestMessage]) -> str:
        raise AdvisorTransportError("advisor is not configured (missing API key)")


def make_completion_client(config: AdvisorConfig) -> CompletionClient:
    if not advisor_enabled(config):
        logger.info("advisor disabled: no API key configured")
        return AdvisorUnavailableClient()
    return OpenAICompletionClient(config)
