from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal, Optional

from pricing_engine import Selections, merge_patch

logger = logging.getLogger(__name__)

PRICING_SENTINEL = "[ACTION:PRICING]"
CALCULATING_SENTINEL = "[ACTION:CALCULATING]"
PATCH_SENTINEL = "[CALCULATOR_JSON]:"
REASONING_OPEN = "<internal_monologue>"
REASONING_CLOSE = "</internal_monologue>"

PRICING_PROMPT_TEXT = (
    "I can help with that. Would you like to go to the pricing calculator or have me adjust it "
    "for you based on our conversation?"
)
MALFORMED_PATCH_TEXT = (
    "I seem to have run into a small issue with formatting my response. Could you try asking that again?"
)
MISSING_PATCH_TEXT = "I had trouble generating the calculator configuration. Let's try that again."
EMPTY_REPLY_TEXT = (
    "Sorry, I seem to be having trouble connecting. Please check your connection or try again in a moment."
)
PATCH_ONLY_TEXT = "I've updated the calculator with that configuration."

PatchStatus = Literal["none", "applied", "malformed", "missing"]

_REASONING_BLOCK_RE = re.compile(
    re.escape(REASONING_OPEN) + r".*?" + re.escape(REASONING_CLOSE),
    re.DOTALL,
)


@dataclass(frozen=True)
class AgentReply:
    text: str
    action: Optional[Literal["pricing"]] = None
    calculating: bool = False
    selections: Optional[Selections] = None
    patch_status: PatchStatus = "none"
    show_calculator_cta: bool = False


def strip_reasoning(text: str) -> str:
    """
    Remove hidden reasoning blocks.

    An opening tag without a matching close hides everything after it, so a
    truncated completion never leaks its reasoning.
    """
    out = _REASONING_BLOCK_RE.sub("", text or "")
    idx = out.find(REASONING_OPEN)
    if idx != -1:
        out = out[:idx]
    return out


def _extract_patch_payload(remainder: str) -> Optional[tuple[str, str]]:
    """
    Return (json_candidate, trailing_text) spanning the first '{' to the last '}'.
    """
    start = remainder.find("{")
    end = remainder.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return remainder[start : end + 1], remainder[end + 1 :]


def _decode_object(candidate: str) -> Optional[dict[str, Any]]:
    try:
        obj = json.loads(candidate)
    except (ValueError, RecursionError) as exc:
        # Oversized integer literals and deep nesting fail outside JSONDecodeError.
        logger.warning("advisor patch is not valid JSON: %s", str(exc)[:200])
        logger.debug("raw advisor patch: %r", candidate[:500])
        return None
    if not isinstance(obj, dict):
        logger.warning("advisor patch decoded to %s, expected an object", type(obj).__name__)
        return None
    return obj


def parse_agent_reply(raw: str) -> AgentReply:
    """
    Split one advisor completion into the text shown to the user and its directives.

    Directives: the calculating marker (leading), the pricing marker (whole
    body) and a selections patch (`[CALCULATOR_JSON]:{...}`). Reasoning blocks
    are removed before any of them are looked for.
    """
    body = strip_reasoning(raw).strip()

    calculating = False
    if body.startswith(CALCULATING_SENTINEL):
        calculating = True
        body = body[len(CALCULATING_SENTINEL) :].strip()

    if body == PRICING_SENTINEL:
        return AgentReply(text=PRICING_PROMPT_TEXT, action="pricing", calculating=calculating)

    selections: Optional[Selections] = None
    patch_status: PatchStatus = "none"
    if PATCH_SENTINEL in body:
        prefix, _, remainder = body.partition(PATCH_SENTINEL)
        text = prefix.strip()
        extracted = _extract_patch_payload(remainder)
        if extracted is None:
            logger.warning("advisor patch sentinel without a JSON object")
            text = MISSING_PATCH_TEXT
            patch_status = "missing"
        else:
            candidate, trailing = extracted
            payload = _decode_object(candidate)
            if payload is None:
                text = MALFORMED_PATCH_TEXT
                patch_status = "malformed"
            else:
                selections = merge_patch(payload)
                patch_status = "applied"
                trailing = trailing.strip()
                if trailing:
                    text = f"{text} {trailing}" if text else trailing
        if not text:
            text = PATCH_ONLY_TEXT if patch_status == "applied" else EMPTY_REPLY_TEXT
        return AgentReply(
            text=text,
            calculating=calculating,
            selections=selections,
            patch_status=patch_status,
            show_calculator_cta=True,
        )

    return AgentReply(text=body or EMPTY_REPLY_TEXT, calculating=calculating)
