from __future__ import annotations

import unittest
from dataclasses import replace
from datetime import date

from estimate_pdf import (
    EstimatePdfArtifact,
    EstimatePdfLineItem,
    EstimatePdfMilestone,
    artifact_from_quote,
    make_estimate_pdf_bytes,
)
from pricing_engine import DEFAULT_SELECTIONS, generate_quote


class TestEstimatePdf(unittest.TestCase):
    def _count_pdf_pages(self, pdf: bytes) -> int:
        """
        Best-effort page count without extra dependencies.

        Each page object carries "/Type /Page"; the page tree carries "/Type /Pages".
        """
        page = pdf.count(b"/Type /Page")
        pages_tree = pdf.count(b"/Type /Pages")
        return max(0, page - pages_tree)

    def test_estimate_pdf_from_quote(self) -> None:
        sel = replace(DEFAULT_SELECTIONS, products=10, user_auth=True)
        artifact = artifact_from_quote(
            estimate_id="TEST123",
            estimate_date=date(2026, 1, 15),
            prepared_by="Yusuf",
            selections=sel,
            quote=generate_quote(sel),
        )
        self.assertEqual(artifact.total_ngn, 425_000 + 350_000 + 120_000)
        self.assertIn("E-commerce Products: 10", artifact.scope_lines)

        pdf = make_estimate_pdf_bytes(artifact)
        self.assertTrue(pdf.startswith(b"%PDF"))
        self.assertGreater(len(pdf), 1000)
        self.assertIn(b"EST-TEST123", pdf)
        self.assertIn(b"Payment Milestones", pdf)
        self.assertIn(b"Total Estimated Cost", pdf)
        self.assertIn(b"NGN 895,000", pdf)
        self.assertNotIn(b"CONVERSATION", pdf)
        self.assertEqual(self._count_pdf_pages(pdf), 1)

    def test_transcript_adds_pages(self) -> None:
        long_text = "Budget talk. " * 80
        transcript = tuple(("You" if i % 2 == 0 else "Amir", f"{i}: {long_text}") for i in range(12))
        artifact = EstimatePdfArtifact(
            estimate_id="CHAT1",
            estimate_date=date(2026, 1, 15),
            prepared_by="Yusuf",
            scope_lines=("Design Tier: Template Customization",),
            line_items=(EstimatePdfLineItem("Base fee", 250_000),),
            total_ngn=250_000,
            milestones=(EstimatePdfMilestone("Initial Deposit (20%)", "Project kickoff & discovery", 50_000),),
            transcript=transcript,
        )
        pdf = make_estimate_pdf_bytes(artifact)
        self.assertIn(b"CONVERSATION", pdf)
        self.assertGreaterEqual(self._count_pdf_pages(pdf), 3)

    def test_naira_sign_and_long_descriptions_do_not_break_rendering(self) -> None:
        artifact = EstimatePdfArtifact(
            estimate_id="X",
            estimate_date=date(2026, 1, 15),
            prepared_by="Yusuf — portfolio",
            scope_lines=(),
            line_items=(EstimatePdfLineItem("Very long description " * 20, 1),),
            total_ngn=1,
            milestones=(),
            transcript=(("Amir", "That comes to ₦425,000.\n\nThanks"),),
        )
        pdf = make_estimate_pdf_bytes(artifact)
        self.assertTrue(pdf.startswith(b"%PDF"))
        self.assertIn(b"NGN 425,000", pdf)


if __name__ == "__main__":
    unittest.main()
