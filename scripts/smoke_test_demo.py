from __future__ import annotations

"""
Smoke test for the estimator + advisor (local, offline).

Replays a few scripted conversations against an in-memory session with a
scripted advisor (no network), then:
- checks the displayed total against the pricing engine
- writes the chat transcript (txt + html)
- generates the estimate PDF with the transcript attached

It writes artifacts to `out/smoke_test_demo/` and exits non-zero if anything breaks.

Usage:
  python3 scripts/smoke_test_demo.py
  python3 scripts/smoke_test_demo.py --out-dir out/smoke_test_demo
"""

import argparse
import logging
import random
import sys
import traceback
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Sequence

from tqdm import tqdm

# Allow running as `python3 scripts/smoke_test_demo.py` (module imports live at repo root).
_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from advisor_session import AdvisorSession
from ai_advisor import AdvisorConfig, AdvisorTransportError, RequestMessage
from estimate_pdf import artifact_from_quote, make_estimate_pdf_bytes
from pricing_engine import compute_total
from transcript_export import transcript_html, transcript_text

logger = logging.getLogger("smoke_test_demo")


@dataclass(frozen=True)
class Scenario:
    name: str
    user_turns: tuple[str, ...]
    advisor_replies: tuple[str, ...]
    expected_total_ngn: int


SCENARIOS: tuple[Scenario, ...] = (
    Scenario(
        name="pricing_then_patch",
        user_turns=("How much would my website cost?", "Please assist me here.", "Tier 2 with 5 pages and login."),
        advisor_replies=(
            "[ACTION:PRICING]",
            "Sure! How many pages, and do you need user accounts?",
            'Here you go [CALCULATOR_JSON]:{"designTier":2,"standardPages":5,"userAuth":true} Anything else?',
        ),
        expected_total_ngn=250_000 + 200_000 + 125_000 + 120_000,
    ),
    Scenario(
        name="budget_calculating",
        user_turns=("My budget is 800k, what can I get?",),
        advisor_replies=(
            "[ACTION:CALCULATING]\n<internal_monologue>Goal: 800k. Attempt 1 ...</internal_monologue>"
            'A Tier 2 site with 10 pages fits. [CALCULATOR_JSON]:{"designTier":2,"standardPages":10}',
        ),
        expected_total_ngn=250_000 + 200_000 + 250_000,
    ),
    Scenario(
        name="malformed_patch",
        user_turns=("Set up an online store.",),
        advisor_replies=("[CALCULATOR_JSON]:{not valid json}",),
        expected_total_ngn=425_000,
    ),
    Scenario(
        name="transport_failure",
        user_turns=("Hello?",),
        advisor_replies=(),
        expected_total_ngn=425_000,
    ),
)


class ScriptedAdvisor:
    def __init__(self, replies: Sequence[str]) -> None:
        self._replies = list(replies)

    def complete(self, messages: Sequence[RequestMessage]) -> str:
        if not self._replies:
            raise AdvisorTransportError("scripted advisor has no more replies")
        return self._replies.pop(0)


class _ManualClock:
    def __init__(self) -> None:
        self.now_ms = 1_000_000

    def __call__(self) -> int:
        return self.now_ms


def _config() -> AdvisorConfig:
    return AdvisorConfig(
        api_key="offline",
        base_url="http://localhost",
        model="scripted",
        timeout_s=1.0,
        max_tokens=256,
        temperature=0.0,
        top_p=1.0,
        advisor_name="Amir",
        owner_name="Yusuf",
    )


def run_scenario(scenario: Scenario, out_dir: Path) -> None:
    config = _config()
    clock = _ManualClock()
    session = AdvisorSession({}, config=config, clock_ms=clock, rng=random.Random(7))
    session.open_chat()
    advisor = ScriptedAdvisor(scenario.advisor_replies)

    for text in scenario.user_turns:
        if text == "Please assist me here." and any(m.get("action") == "pricing" for m in session.messages()):
            session.choose_pricing_action("assist", advisor)
        else:
            session.submit_user_message(text, advisor)
        if session.next_reveal_at_ms() is not None:
            clock.now_ms += 3_000
            if not session.reveal_due():
                raise RuntimeError("calculating reply was not revealed after the hold")

    quote = session.quote()
    if quote.total_ngn != compute_total(session.selections):
        raise RuntimeError("quote total disagrees with compute_total")
    if quote.total_ngn != scenario.expected_total_ngn:
        raise RuntimeError(f"expected total {scenario.expected_total_ngn}, got {quote.total_ngn}")
    if sum(m.amount_ngn for m in quote.milestones) != quote.total_ngn:
        raise RuntimeError("milestones do not sum to the total")

    messages = session.messages()
    (out_dir / f"{scenario.name}.txt").write_text(
        transcript_text(messages, advisor_name=config.advisor_name), encoding="utf-8"
    )
    (out_dir / f"{scenario.name}.html").write_text(
        transcript_html(messages, advisor_name=config.advisor_name, auto_print=False), encoding="utf-8"
    )
    artifact = artifact_from_quote(
        estimate_id=scenario.name.upper(),
        estimate_date=date.today(),
        prepared_by="Smoke test",
        selections=session.selections,
        quote=quote,
        transcript=tuple(
            ("You" if m.get("role") == "user" else config.advisor_name, str(m.get("text") or "")) for m in messages
        ),
    )
    pdf = make_estimate_pdf_bytes(artifact)
    if not pdf.startswith(b"%PDF"):
        raise RuntimeError("PDF output does not look like a PDF")
    (out_dir / f"{scenario.name}.pdf").write_bytes(pdf)


def main() -> int:
    parser = argparse.ArgumentParser(description="Offline smoke test for the estimator + advisor flow.")
    parser.add_argument("--out-dir", default=str(_ROOT / "out" / "smoke_test_demo"), help="Artifact directory.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    failures = 0
    for scenario in tqdm(SCENARIOS, desc="Scenarios"):
        try:
            run_scenario(scenario, out_dir)
        except Exception:
            failures += 1
            logger.error("scenario %s failed:\n%s", scenario.name, traceback.format_exc())
    print(f"{len(SCENARIOS) - failures}/{len(SCENARIOS)} scenarios passed; artifacts in {out_dir}")
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
