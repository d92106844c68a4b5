from __future__ import annotations

import random
import unittest
from dataclasses import replace
from typing import Sequence
from unittest import mock

from advisor_session import (
    ASSIST_REQUEST_TEXT,
    CALCULATING_DELAY_MS,
    TRANSPORT_ERROR_TEXT,
    AdvisorBusyError,
    AdvisorSession,
    init_state,
)
from ai_advisor import AdvisorConfig, AdvisorTransportError, RequestMessage
from chat_protocol import MALFORMED_PATCH_TEXT, PRICING_PROMPT_TEXT
from currency import Currency
from pricing_engine import DEFAULT_SELECTIONS, CmsTier


def _config() -> AdvisorConfig:
    return AdvisorConfig(
        api_key="test-key",
        base_url="http://test.local/v1",
        model="test-model",
        timeout_s=5.0,
        max_tokens=256,
        temperature=0.2,
        top_p=0.8,
        advisor_name="Amir",
        owner_name="Yusuf",
    )


class _FakeClient:
    """Returns scripted replies; an exception in the script is raised instead."""

    def __init__(self, *replies: object) -> None:
        self.replies = list(replies)
        self.calls: list[list[dict[str, str]]] = []

    def complete(self, messages: Sequence[RequestMessage]) -> str:
        self.calls.append([dict(m) for m in messages])
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return str(reply)


class _Clock:
    def __init__(self, now_ms: int = 1_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


class TestAdvisorSession(unittest.TestCase):
    def setUp(self) -> None:
        self.store: dict[str, object] = {}
        self.clock = _Clock()
        self.session = AdvisorSession(self.store, config=_config(), clock_ms=self.clock, rng=random.Random(42))

    def _texts(self) -> list[str]:
        return [str(m.get("text")) for m in self.session.messages()]

    def test_init_state_gives_each_store_its_own_log(self) -> None:
        a: dict[str, object] = {}
        b: dict[str, object] = {}
        init_state(a)
        init_state(b)
        self.assertEqual(a["selections"], DEFAULT_SELECTIONS)
        self.assertIsNot(a["chat_messages"], b["chat_messages"])

    def test_init_state_keeps_existing_values(self) -> None:
        store: dict[str, object] = {"chat_open": True}
        init_state(store)
        self.assertTrue(store["chat_open"])

    def test_welcome_is_added_once(self) -> None:
        self.session.open_chat()
        self.session.close_chat()
        self.session.open_chat()
        texts = self._texts()
        self.assertEqual(len(texts), 1)
        self.assertIn("Amir", texts[0])
        self.assertIn("Yusuf's work", texts[0])

    def test_plain_reply_is_appended(self) -> None:
        client = _FakeClient("React, mostly.")
        reply = self.session.submit_user_message("  What stack do you use?  ", client)
        self.assertIsNotNone(reply)
        self.assertEqual(self._texts(), ["What stack do you use?", "React, mostly."])
        self.assertEqual([m["role"] for m in self.session.messages()], ["user", "agent"])

        request = client.calls[0]
        self.assertEqual(request[0]["role"], "system")
        self.assertIn("CURRENT CALCULATOR SELECTIONS", request[0]["content"])
        self.assertEqual(request[-1], {"role": "user", "content": "What stack do you use?"})
        self.assertFalse(self.store["request_in_flight"])

    def test_agent_history_is_sent_as_assistant(self) -> None:
        client = _FakeClient("First answer.", "Second answer.")
        self.session.submit_user_message("one", client)
        self.session.submit_user_message("two", client)
        roles = [m["role"] for m in client.calls[1]]
        self.assertEqual(roles, ["system", "user", "assistant", "user"])

    def test_blank_input_is_ignored(self) -> None:
        client = _FakeClient()
        self.assertIsNone(self.session.submit_user_message("   ", client))
        self.assertEqual(client.calls, [])
        self.assertEqual(self.session.messages(), [])

    def test_patch_updates_shared_selections(self) -> None:
        client = _FakeClient('Done! [CALCULATOR_JSON]:{"designTier":2,"standardPages":5}')
        self.session.submit_user_message("Tier 2 with 5 pages please", client)

        self.assertEqual(self.session.selections, replace(DEFAULT_SELECTIONS, design_tier=2, standard_pages=5))
        self.assertEqual(self.store["selections_origin"], "agent")
        self.assertTrue(self.store["ai_suggestion"])
        self.assertEqual(self.store["last_ai_suggestion"], self.session.selections)
        self.assertEqual(self.store["changed_fields"], frozenset({"designTier", "standardPages"}))
        self.assertEqual(self.session.quote().total_ngn, 250_000 + 200_000 + 125_000)

        last = self.session.messages()[-1]
        self.assertEqual(last["text"], "Done!")
        self.assertTrue(last.get("show_calculator_cta"))
        self.assertTrue(self.session.consume_scroll_request())
        self.assertFalse(self.session.consume_scroll_request())

    def test_patch_replaces_earlier_manual_edits(self) -> None:
        self.session.update_field("apis", 3)
        client = _FakeClient('[CALCULATOR_JSON]:{"designTier":2}')
        self.session.submit_user_message("switch to tier 2", client)
        self.assertEqual(self.session.selections.apis, 0)
        self.assertIn("apis", self.store["changed_fields"])  # type: ignore[operator]

    def test_malformed_patch_leaves_selections(self) -> None:
        self.session.update_field("standardPages", 7)
        before = self.session.selections
        client = _FakeClient("[CALCULATOR_JSON]:{not valid json}")
        with self.assertLogs("chat_protocol", level="WARNING"):
            self.session.submit_user_message("update it", client)
        self.assertEqual(self.session.selections, before)
        self.assertEqual(self._texts()[-1], MALFORMED_PATCH_TEXT)
        self.assertEqual(self.store["selections_origin"], "user")

    def test_parser_failure_still_answers_the_turn(self) -> None:
        self.session.update_field("apis", 2)
        before = self.session.selections
        client = _FakeClient('ok [CALCULATOR_JSON]:{"apis":1}')
        with mock.patch("advisor_session.parse_agent_reply", side_effect=RuntimeError("boom")):
            with self.assertLogs("advisor_session", level="ERROR"):
                reply = self.session.submit_user_message("hi", client)
        self.assertIsNone(reply)
        self.assertEqual(self._texts(), ["hi", MALFORMED_PATCH_TEXT])
        self.assertEqual(self.session.selections, before)
        self.assertFalse(self.session.is_busy())

    def test_oversized_patch_reply_gets_an_answer(self) -> None:
        client = _FakeClient('ok [CALCULATOR_JSON]:{"apis":' + "1" * 5000 + "}")
        self.session.submit_user_message("hi", client)
        messages = self.session.messages()
        self.assertEqual([m["role"] for m in messages], ["user", "agent"])
        self.assertEqual(self.session.selections.apis, 0 if messages[-1]["text"] == MALFORMED_PATCH_TEXT else 10)

    def test_transport_failure_leaves_state_untouched(self) -> None:
        self.session.update_field("products", 10)
        before = self.session.selections
        client = _FakeClient(AdvisorTransportError("connection reset"))
        with self.assertLogs("advisor_session", level="WARNING"):
            reply = self.session.submit_user_message("hello?", client)
        self.assertIsNone(reply)
        self.assertEqual(self.session.selections, before)
        self.assertEqual(self._texts(), ["hello?", TRANSPORT_ERROR_TEXT])
        self.assertFalse(self.store["request_in_flight"])
        self.assertFalse(self.session.is_busy())

        # The user can retry straight away.
        retry = _FakeClient("Back online.")
        self.session.submit_user_message("hello again", retry)
        self.assertEqual(self._texts()[-1], "Back online.")

    def test_second_message_rejected_while_in_flight(self) -> None:
        self.store["request_in_flight"] = True
        client = _FakeClient("never sent")
        with self.assertRaises(AdvisorBusyError):
            self.session.submit_user_message("are you there?", client)
        self.assertEqual(client.calls, [])
        self.assertEqual(self.session.messages(), [])

    def test_calculating_reply_is_revealed_after_hold(self) -> None:
        client = _FakeClient(
            "[ACTION:CALCULATING]\n<internal_monologue>Goal: 800,000</internal_monologue>"
            'This fits. [CALCULATOR_JSON]:{"designTier":2,"standardPages":10}'
        )
        start = self.clock.now_ms
        self.session.submit_user_message("My budget is 800k", client)

        self.assertTrue(self.store["calculating"])
        self.assertTrue(self.session.is_busy())
        self.assertEqual(self._texts(), ["My budget is 800k"])
        self.assertEqual(self.session.selections, DEFAULT_SELECTIONS)
        reveal_at = self.session.next_reveal_at_ms()
        assert reveal_at is not None
        lo, hi = CALCULATING_DELAY_MS
        self.assertTrue(lo <= reveal_at - start <= hi)

        with self.assertRaises(AdvisorBusyError):
            self.session.submit_user_message("hurry up", _FakeClient("x"))

        self.assertFalse(self.session.reveal_due())
        self.clock.now_ms = reveal_at
        self.assertTrue(self.session.reveal_due())
        self.assertFalse(self.store["calculating"])
        self.assertIsNone(self.session.next_reveal_at_ms())
        self.assertFalse(self.session.is_busy())
        self.assertEqual(self._texts()[-1], "This fits.")
        self.assertEqual(self.session.selections.standard_pages, 10)
        self.assertEqual(self.session.quote().total_ngn, 700_000)

        revealed = self.session.messages()[-1]
        self.assertEqual(revealed["created_at_ms"], start)
        self.assertEqual(revealed["visible_at_ms"], reveal_at)

    def test_calculating_reply_applies_with_chat_closed(self) -> None:
        self.session.open_chat()
        client = _FakeClient('[ACTION:CALCULATING] Try this. [CALCULATOR_JSON]:{"apis":1}')
        self.session.submit_user_message("suggest an alternative", client)
        self.session.close_chat()
        self.clock.now_ms += CALCULATING_DELAY_MS[1]
        self.assertTrue(self.session.reveal_due())
        self.assertEqual(self.session.selections.apis, 1)

    def test_budget_prompts_are_remembered(self) -> None:
        client = _FakeClient("ok", "ok")
        self.session.submit_user_message("What stack?", client)
        self.assertEqual(self.store["last_user_prompt"], "")
        self.session.submit_user_message("What can I get on a 1M budget?", client)
        self.assertEqual(self.store["last_user_prompt"], "What can I get on a 1M budget?")

    def test_pricing_choice_calculator(self) -> None:
        self.session.open_chat()
        client = _FakeClient("[ACTION:PRICING]")
        self.session.submit_user_message("How much for my site?", client)
        last = self.session.messages()[-1]
        self.assertEqual(last["text"], PRICING_PROMPT_TEXT)
        self.assertEqual(last.get("action"), "pricing")

        self.assertIsNone(self.session.choose_pricing_action("calculator", client))
        self.assertFalse(any(m.get("action") == "pricing" for m in self.session.messages()))
        self.assertFalse(self.store["chat_open"])
        self.assertTrue(self.session.consume_scroll_request())
        self.assertEqual(len(client.calls), 1)

    def test_pricing_choice_assist(self) -> None:
        client = _FakeClient("[ACTION:PRICING]", "Happy to help. How many pages?")
        self.session.submit_user_message("How much for my site?", client)
        self.session.choose_pricing_action("assist", client)
        self.assertEqual(
            self._texts(),
            ["How much for my site?", ASSIST_REQUEST_TEXT, "Happy to help. How many pages?"],
        )

    def test_unknown_pricing_choice(self) -> None:
        with self.assertRaises(ValueError):
            self.session.choose_pricing_action("later", _FakeClient())  # type: ignore[arg-type]

    def test_update_field_clamps_and_marks_user_origin(self) -> None:
        self.session.update_field("standardPages", 50)
        self.assertEqual(self.session.selections.standard_pages, 20)
        self.assertEqual(self.store["selections_origin"], "user")
        self.assertFalse(self.store["ai_suggestion"])
        self.assertEqual(self.store["changed_fields"], frozenset({"standardPages"}))

        self.session.update_field("cmsType", "250000")
        self.assertEqual(self.session.selections.cms_tier, CmsTier.TRADITIONAL)

        with self.assertRaises(KeyError):
            self.session.update_field("colour", "blue")

    def test_reset_selections(self) -> None:
        self.session.update_field("userAuth", True)
        self.session.reset_selections()
        self.assertEqual(self.session.selections, DEFAULT_SELECTIONS)

    def test_scope_summary(self) -> None:
        summary = self.session.scope_summary()
        self.assertTrue(summary.startswith("Hello Amir, I've used the calculator"))
        self.assertIn("- Design Tier: Template Customization", summary)
        self.assertIn("- Standard Pages: 3", summary)
        self.assertIn("The estimated total is ₦425,000.", summary)
        self.assertIn("$274.19", self.session.scope_summary(Currency.USD))

    def test_discuss_with_ai_opens_chat_and_sends_scope(self) -> None:
        client = _FakeClient("Looks good!")
        self.session.discuss_with_ai(client)
        self.assertTrue(self.store["chat_open"])
        messages = self.session.messages()
        self.assertEqual([m["role"] for m in messages], ["agent", "user", "agent"])
        self.assertIn("Here's the scope:", str(messages[1]["text"]))
        self.assertEqual(messages[-1]["text"], "Looks good!")


if __name__ == "__main__":
    unittest.main()
