from __future__ import annotations

import unittest
from unittest import mock

import portfolio_app
from advisor_session import AdvisorSession
from ai_advisor import AdvisorConfig


def _config() -> AdvisorConfig:
    return AdvisorConfig(
        api_key="",
        base_url="http://test.local/v1",
        model="test-model",
        timeout_s=5.0,
        max_tokens=256,
        temperature=0.2,
        top_p=0.8,
        advisor_name="Amir",
        owner_name="Yusuf",
    )


class TestPdfDownload(unittest.TestCase):
    def setUp(self) -> None:
        self.config = _config()
        self.session = AdvisorSession({}, config=self.config)

    def test_pdf_failure_shows_error_instead_of_raising(self) -> None:
        with mock.patch.object(portfolio_app, "st") as fake_st, mock.patch.object(
            portfolio_app, "_estimate_pdf_bytes", side_effect=RuntimeError("font missing")
        ):
            with self.assertLogs("portfolio_app", level="ERROR"):
                portfolio_app._render_pdf_download(
                    self.session,
                    self.config,
                    include_chat=True,
                    label="Estimate + chat (.pdf)",
                    file_name="chat-with-advisor.pdf",
                )
        fake_st.error.assert_called_once()
        self.assertIn("font missing", fake_st.error.call_args[0][0])
        fake_st.download_button.assert_not_called()

    def test_pdf_success_offers_download(self) -> None:
        with mock.patch.object(portfolio_app, "st") as fake_st, mock.patch.object(
            portfolio_app, "_estimate_pdf_bytes", return_value=b"%PDF-1.4"
        ) as build:
            portfolio_app._render_pdf_download(
                self.session,
                self.config,
                include_chat=False,
                label="Download estimate (PDF)",
                file_name="estimate.pdf",
            )
        build.assert_called_once_with(self.session, self.config, include_chat=False)
        fake_st.error.assert_not_called()
        args, kwargs = fake_st.download_button.call_args
        self.assertEqual(args[0], "Download estimate (PDF)")
        self.assertEqual(kwargs["data"], b"%PDF-1.4")
        self.assertEqual(kwargs["file_name"], "estimate.pdf")

    def test_real_pdf_with_chat(self) -> None:
        self.session.open_chat()
        pdf = portfolio_app._estimate_pdf_bytes(self.session, self.config, include_chat=True)
        self.assertTrue(pdf.startswith(b"%PDF"))
        self.assertIn(b"CONVERSATION", pdf)


if __name__ == "__main__":
    unittest.main()
