from __future__ import annotations

import logging
import random
import time
from typing import Callable, Literal, MutableMapping, Optional, TypedDict

from ai_advisor import (
    AdvisorConfig,
    AdvisorTransportError,
    CompletionClient,
    build_request_messages,
    build_system_instruction,
)
from chat_protocol import MALFORMED_PATCH_TEXT, AgentReply, parse_agent_reply
from currency import Currency, format_amount
from pricing_engine import (
    DEFAULT_PRICE_TABLE,
    DEFAULT_SELECTIONS,
    WIRE_KEYS,
    PriceTable,
    QuoteResult,
    Selections,
    changed_fields,
    coerce_selections,
    describe_scope,
    generate_quote,
    validate_selections,
)

logger = logging.getLogger(__name__)

SelectionsOrigin = Literal["user", "agent"]
PricingChoice = Literal["calculator", "assist"]

# Bounds (ms) of the simulated "calculating" hold before a reply is revealed.
CALCULATING_DELAY_MS = (2000, 3000)

TRANSPORT_ERROR_TEXT = "Sorry, I encountered an error. Please try again."
ASSIST_REQUEST_TEXT = "Please assist me here."

_BUDGET_KEYWORDS = ("budget", "cost", "alternative", "suggest")


class AdvisorBusyError(RuntimeError):
    pass


class ChatMessage(TypedDict, total=False):
    role: Literal["user", "agent"]
    text: str
    action: str
    show_calculator_cta: bool
    created_at_ms: int
    # Equal to created_at_ms except for replies held back by the calculating delay.
    visible_at_ms: int


class PendingReply(TypedDict):
    reply: AgentReply
    received_at_ms: int
    reveal_at_ms: int


_STATE_DEFAULTS: dict[str, object] = {
    "selections": DEFAULT_SELECTIONS,
    "selections_origin": "user",
    "changed_fields": frozenset(),
    "ai_suggestion": False,
    "last_ai_suggestion": None,
    "last_user_prompt": "",
    "chat_messages": [],
    "chat_open": False,
    "chat_welcome_sent": False,
    "request_in_flight": False,
    "pending_reply": None,
    "calculating": False,
    "scroll_to_calculator": False,
}


def init_state(store: MutableMapping[str, object]) -> None:
    for key, default in _STATE_DEFAULTS.items():
        if key not in store:
            # Fresh containers per session.
            store[key] = list(default) if isinstance(default, list) else default


def _now_ms() -> int:
    return int(time.time() * 1000)


class AdvisorSession:
    """
    The single owner of the shared estimator/chat state.

    All state lives in one mapping (`st.session_state` in the app). The
    estimator controls and the chat both read `selections` fresh on every
    rerun and write only through `set_selections`, so the displayed total and
    the chat always describe the same record.
    """

    def __init__(
        self,
        store: MutableMapping[str, object],
        *,
        config: AdvisorConfig,
        table: PriceTable = DEFAULT_PRICE_TABLE,
        clock_ms: Optional[Callable[[], int]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._config = config
        self._table = table
        self._clock_ms = clock_ms or _now_ms
        self._rng = rng or random.Random()
        init_state(store)

    # region selections

    @property
    def selections(self) -> Selections:
        sel = self._store.get("selections")
        return sel if isinstance(sel, Selections) else DEFAULT_SELECTIONS

    def set_selections(self, new: Selections, *, origin: SelectionsOrigin) -> None:
        validate_selections(new)
        update: dict[str, object] = {
            "changed_fields": changed_fields(self.selections, new),
            "selections_origin": origin,
            "ai_suggestion": origin == "agent",
            "selections": new,
        }
        if origin == "agent":
            update["last_ai_suggestion"] = new
        self._store.update(update)

    def update_field(self, wire_key: str, value: object) -> None:
        """Direct edit from an estimator control; values are coerced, never rejected."""
        if wire_key not in WIRE_KEYS:
            raise KeyError(f"unknown selection field: {wire_key}")
        self.set_selections(coerce_selections({wire_key: value}, base=self.selections), origin="user")

    def reset_selections(self) -> None:
        self.set_selections(DEFAULT_SELECTIONS, origin="user")

    def quote(self) -> QuoteResult:
        return generate_quote(self.selections, self._table)

    # endregion selections

    # region chat log

    def messages(self) -> list[ChatMessage]:
        raw = self._store.get("chat_messages")
        if not isinstance(raw, list):
            return []
        return [m for m in raw if isinstance(m, dict) and m.get("role") in ("user", "agent")]

    def _append(self, role: Literal["user", "agent"], text: str, **extra: object) -> ChatMessage:
        now = self._clock_ms()
        msg: ChatMessage = {"role": role, "text": text, "created_at_ms": now, "visible_at_ms": now}
        msg.update(extra)  # type: ignore[typeddict-item]
        self._store["chat_messages"] = self.messages() + [msg]
        return msg

    def ensure_welcome(self) -> None:
        if self._store.get("chat_welcome_sent") or self.messages():
            self._store["chat_welcome_sent"] = True
            return
        self._store["chat_welcome_sent"] = True
        self._append(
            "agent",
            f"Hi! I'm {self._config.advisor_name}, an AI assistant. "
            f"How can I help you learn more about {self._config.owner_name}'s work?",
        )

    def open_chat(self) -> None:
        self._store["chat_open"] = True
        self.ensure_welcome()

    def close_chat(self) -> None:
        # In-flight or parked replies are still applied after the chat closes.
        self._store["chat_open"] = False

    # endregion chat log

    # region conversation

    def is_busy(self, now_ms: Optional[int] = None) -> bool:
        if self._store.get("request_in_flight"):
            return True
        pending = self._store.get("pending_reply")
        if not pending:
            return False
        now = self._clock_ms() if now_ms is None else now_ms
        return now < int(pending["reveal_at_ms"])  # type: ignore[index]

    def next_reveal_at_ms(self) -> Optional[int]:
        pending = self._store.get("pending_reply")
        return int(pending["reveal_at_ms"]) if pending else None  # type: ignore[index]

    def submit_user_message(self, text: str, client: CompletionClient) -> Optional[AgentReply]:
        """
        Send one user message and handle the advisor's reply.

        Raises AdvisorBusyError while another request or a calculating reveal is
        pending. Returns the parsed reply, or None for blank input and
        transport failures.
        """
        clean = (text or "").strip()
        if not clean:
            return None
        self.reveal_due()
        if self.is_busy():
            raise AdvisorBusyError("a message is already being answered")

        lowered = clean.lower()
        if any(k in lowered for k in _BUDGET_KEYWORDS):
            self._store["last_user_prompt"] = clean
        self._append("user", clean)
        return self._request(client)

    def _request(self, client: CompletionClient) -> Optional[AgentReply]:
        system = build_system_instruction(self._config, current=self.selections, table=self._table)
        request = build_request_messages(system, self.messages())
        self._store["request_in_flight"] = True
        try:
            raw = client.complete(request)
        except AdvisorTransportError as e:
            logger.warning("advisor request failed: %s", e)
            self._append("agent", TRANSPORT_ERROR_TEXT)
            self._store["calculating"] = False
            return None
        finally:
            self._store["request_in_flight"] = False

        received_at = self._clock_ms()
        logger.debug("advisor raw reply: %r", raw)
        try:
            reply = parse_agent_reply(raw)
        except Exception:
            logger.exception("advisor reply could not be parsed")
            self._append("agent", MALFORMED_PATCH_TEXT)
            return None
        if reply.calculating:
            lo, hi = CALCULATING_DELAY_MS
            delay = int(self._rng.uniform(lo, hi))
            self._store.update(
                {
                    "pending_reply": PendingReply(
                        reply=reply, received_at_ms=received_at, reveal_at_ms=received_at + delay
                    ),
                    "calculating": True,
                    "scroll_to_calculator": True,
                }
            )
        else:
            self._deliver(reply)
        return reply

    def reveal_due(self, now_ms: Optional[int] = None) -> bool:
        """Deliver a parked calculating reply once its hold has elapsed."""
        pending = self._store.get("pending_reply")
        if not pending:
            return False
        now = self._clock_ms() if now_ms is None else now_ms
        if now < int(pending["reveal_at_ms"]):  # type: ignore[index]
            return False
        self._store["pending_reply"] = None
        self._store["calculating"] = False
        self._deliver(
            pending["reply"],  # type: ignore[index]
            received_at_ms=int(pending.get("received_at_ms", now)),  # type: ignore[union-attr]
            visible_at_ms=now,
        )
        return True

    def _deliver(
        self,
        reply: AgentReply,
        *,
        received_at_ms: Optional[int] = None,
        visible_at_ms: Optional[int] = None,
    ) -> None:
        extra: dict[str, object] = {}
        if received_at_ms is not None:
            extra["created_at_ms"] = received_at_ms
        if visible_at_ms is not None:
            extra["visible_at_ms"] = visible_at_ms
        if reply.action:
            extra["action"] = reply.action
        if reply.show_calculator_cta:
            extra["show_calculator_cta"] = True
        self._append("agent", reply.text, **extra)
        if reply.selections is not None:
            self.set_selections(reply.selections, origin="agent")
            self._store["scroll_to_calculator"] = True

    def choose_pricing_action(self, choice: PricingChoice, client: CompletionClient) -> Optional[AgentReply]:
        self._store["chat_messages"] = [m for m in self.messages() if m.get("action") != "pricing"]
        if choice == "calculator":
            self._store["scroll_to_calculator"] = True
            self.close_chat()
            return None
        if choice == "assist":
            return self.submit_user_message(ASSIST_REQUEST_TEXT, client)
        raise ValueError(f"unknown pricing choice: {choice!r}")

    def consume_scroll_request(self) -> bool:
        return bool(self._store.pop("scroll_to_calculator", False))

    # endregion conversation

    def scope_summary(self, currency: Currency = Currency.NGN) -> str:
        lines = [
            f"Hello {self._config.advisor_name}, I've used the calculator to create a project estimate. "
            "Here's the scope:"
        ]
        lines.extend(f"- {line}" for line in describe_scope(self.selections))
        total = format_amount(self.quote().total_ngn, currency)
        return "\n".join(lines) + f"\n\nThe estimated total is {total}. Can we discuss this further?"

    def discuss_with_ai(self, client: CompletionClient, currency: Currency = Currency.NGN) -> Optional[AgentReply]:
        self.open_chat()
        return self.submit_user_message(self.scope_summary(currency), client)
