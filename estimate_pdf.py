from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from io import BytesIO
from typing import Sequence, Tuple

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.units import inch
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from currency import USD_RATE_NGN, format_ngn_ascii
from pricing_engine import QuoteResult, Selections, describe_scope


@dataclass(frozen=True)
class EstimatePdfLineItem:
    description: str
    amount_ngn: int


@dataclass(frozen=True)
class EstimatePdfMilestone:
    label: str
    description: str
    amount_ngn: int


@dataclass(frozen=True)
class EstimatePdfArtifact:
    estimate_id: str
    estimate_date: date
    prepared_by: str
    scope_lines: Tuple[str, ...]
    line_items: Tuple[EstimatePdfLineItem, ...]
    total_ngn: int
    milestones: Tuple[EstimatePdfMilestone, ...]
    # (sender, text) pairs rendered on "CONVERSATION" pages after the estimate.
    transcript: Tuple[Tuple[str, str], ...] = ()
    notes: Tuple[str, ...] = ()


def artifact_from_quote(
    *,
    estimate_id: str,
    estimate_date: date,
    prepared_by: str,
    selections: Selections,
    quote: QuoteResult,
    transcript: Sequence[Tuple[str, str]] = (),
) -> EstimatePdfArtifact:
    return EstimatePdfArtifact(
        estimate_id=estimate_id,
        estimate_date=estimate_date,
        prepared_by=prepared_by,
        scope_lines=tuple(describe_scope(selections)),
        line_items=tuple(EstimatePdfLineItem(li.description, li.amount_ngn) for li in quote.line_items),
        total_ngn=quote.total_ngn,
        milestones=tuple(EstimatePdfMilestone(m.label, m.description, m.amount_ngn) for m in quote.milestones),
        transcript=tuple(transcript),
        notes=(
            "Prices are estimates and may vary.",
            f"USD figures elsewhere use a fixed rate of 1 USD = {USD_RATE_NGN} NGN.",
        ),
    )


def make_estimate_pdf_bytes(artifact: EstimatePdfArtifact) -> bytes:
    """
    Render the estimate PDF.

    Layout:
    - Page 1: header + scope block + line items + total + payment milestones.
    - Additional pages: the chat transcript, when one is provided.
    """
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    # Uncompressed so tests can find text markers in the bytes.
    c.setPageCompression(0)
    w, h = letter

    margin = 0.6 * inch
    x0 = margin
    y_top = h - margin
    pad = 0.15 * inch
    content_w = w - 2 * margin

    # Header band
    header_h = 1.1 * inch
    _rect(c, x0, y_top - header_h, content_w, header_h, stroke=1, fill=0)
    c.setFont("Helvetica-Bold", 13)
    c.drawString(x0 + pad, y_top - 0.42 * inch, "Project Estimate")
    c.setFont("Helvetica", 9)
    _draw_truncated(c, x0 + pad, y_top - 0.66 * inch, f"Prepared by {artifact.prepared_by}", max_width=3.4 * inch)

    box_w = 2.4 * inch
    box_x = w - margin - box_w
    c.setFont("Helvetica-Bold", 10)
    c.drawString(box_x + pad, y_top - 0.36 * inch, f"EST-{artifact.estimate_id}")
    c.setFont("Helvetica", 9)
    c.drawString(box_x + pad, y_top - 0.58 * inch, f"Date: {artifact.estimate_date.isoformat()}")
    c.setFont("Helvetica-Bold", 11)
    c.drawString(box_x + pad, y_top - 0.84 * inch, f"Total: {format_ngn_ascii(artifact.total_ngn)}")

    y = y_top - header_h - 0.25 * inch

    # Scope block
    scope_h = 0.45 * inch + 0.17 * inch * max(1, len(artifact.scope_lines))
    _rect(c, x0, y - scope_h, content_w, scope_h, stroke=1, fill=0)
    c.setFont("Helvetica-Bold", 9)
    c.drawString(x0 + pad, y - 0.25 * inch, "PROJECT SCOPE")
    c.setFont("Helvetica", 9)
    line_y = y - 0.45 * inch
    for line in artifact.scope_lines:
        _draw_truncated(c, x0 + pad, line_y, line, max_width=content_w - 2 * pad)
        line_y -= 0.17 * inch
    y = y - scope_h - 0.25 * inch

    # Line items
    row_h = 0.25 * inch
    table_h = 0.55 * inch + row_h * len(artifact.line_items) + 0.35 * inch
    _rect(c, x0, y - table_h, content_w, table_h, stroke=1, fill=0)
    c.setFont("Helvetica-Bold", 9)
    c.drawString(x0 + pad, y - 0.25 * inch, "DESCRIPTION")
    c.drawRightString(w - margin - pad, y - 0.25 * inch, "AMOUNT")
    _hline(c, x0, w - margin, y - 0.35 * inch)
    c.setFont("Helvetica", 9)
    row_y = y - 0.55 * inch
    desc_max_w = content_w - 1.8 * inch
    for li in artifact.line_items:
        _draw_truncated(c, x0 + pad, row_y, li.description, max_width=desc_max_w)
        c.drawRightString(w - margin - pad, row_y, format_ngn_ascii(li.amount_ngn))
        row_y -= row_h
    _hline(c, x0, w - margin, row_y + 0.12 * inch)
    c.setFont("Helvetica-Bold", 10)
    _totals_row(c, x0, row_y - 0.08 * inch, "Total Estimated Cost", artifact.total_ngn, content_w)
    y = y - table_h - 0.25 * inch

    # Payment milestones
    ms_h = 0.5 * inch + 0.22 * inch * len(artifact.milestones)
    band_h = 0.22 * inch
    c.setFillColor(colors.black)
    c.rect(x0, y - band_h, content_w, band_h, stroke=0, fill=1)
    c.setFillColor(colors.white)
    c.setFont("Helvetica-Bold", 9)
    c.drawString(x0 + pad, y - 0.15 * inch, "Payment Milestones")
    c.setFillColor(colors.black)
    _rect(c, x0, y - ms_h, content_w, ms_h, stroke=1, fill=0)
    c.setFont("Helvetica", 9)
    ms_y = y - band_h - 0.22 * inch
    for m in artifact.milestones:
        _totals_row(c, x0, ms_y, f"{m.label} - {m.description}", m.amount_ngn, content_w)
        ms_y -= 0.22 * inch

    footer_y = margin + 0.2 * inch
    c.setFont("Helvetica", 8)
    c.setFillColor(colors.grey)
    note_y = footer_y
    for n in artifact.notes[:3]:
        c.drawString(x0, note_y, n)
        note_y += 0.13 * inch
    c.setFillColor(colors.black)
    c.showPage()

    if artifact.transcript:
        _render_transcript_pages(c, transcript=artifact.transcript)

    c.save()
    return buf.getvalue()


def _render_transcript_pages(c: canvas.Canvas, *, transcript: Sequence[Tuple[str, str]]) -> None:
    w, h = letter
    margin = 0.6 * inch
    text_w = w - 2 * margin
    line_h = 0.17 * inch
    font = "Helvetica"
    size = 9

    def _new_page() -> float:
        c.setFont("Helvetica-Bold", 11)
        c.drawString(margin, h - margin, "CONVERSATION")
        return h - margin - 0.35 * inch

    y = _new_page()
    for sender, text in transcript:
        lines = [f"{sender}:"]
        for para in (text or "").splitlines() or [""]:
            lines.extend(simpleSplit(_ascii_safe(para), font, size, text_w) or [""])
        for idx, line in enumerate(lines):
            if y < margin + line_h:
                c.showPage()
                y = _new_page()
            c.setFont("Helvetica-Bold" if idx == 0 else font, size)
            c.drawString(margin, y, line)
            y -= line_h
        y -= line_h / 2
    c.showPage()


def _ascii_safe(text: str) -> str:
    # Built-in Type1 fonts cannot draw the naira sign or smart punctuation.
    return (
        text.replace("₦", "NGN ")
        .replace("—", "-")
        .replace("–", "-")
        .replace("’", "'")
        .replace("“", '"')
        .replace("”", '"')
    )


def _rect(c: canvas.Canvas, x: float, y: float, w: float, h: float, *, stroke: int, fill: int) -> None:
    c.rect(x, y, w, h, stroke=stroke, fill=fill)


def _hline(c: canvas.Canvas, x1: float, x2: float, y: float) -> None:
    c.line(x1, y, x2, y)


def _totals_row(c: canvas.Canvas, x: float, y: float, label: str, amount_ngn: int, box_w: float) -> None:
    """
    Draw one label/value row; the label is truncated so it never runs into the amount.
    """
    left_pad = 0.15 * inch
    right_pad = 0.15 * inch
    gap = 0.10 * inch
    amount_txt = format_ngn_ascii(amount_ngn)
    amount_w = c.stringWidth(amount_txt)

    label_max = box_w - left_pad - right_pad - amount_w - gap
    _draw_truncated(c, x + left_pad, y, (label or "").strip(), max_width=max(0.0, label_max))
    c.drawRightString(x + box_w - right_pad, y, amount_txt)


def _draw_truncated(c: canvas.Canvas, x: float, y: float, text: str, *, max_width: float) -> None:
    """
    Draw text truncated with an ASCII ellipsis so it stays inside a box.
    """
    t = _ascii_safe((text or "").strip())
    if not t or max_width <= 0:
        return
    if c.stringWidth(t) <= max_width:
        c.drawString(x, y, t)
        return
    ell = "..."
    lo = 0
    hi = len(t)
    best = ""
    while lo <= hi:
        mid = (lo + hi) // 2
        cand = (t[:mid].rstrip() + ell) if mid < len(t) else t
        if c.stringWidth(cand) <= max_width:
            best = cand
            lo = mid + 1
        else:
            hi = mid - 1
    if best:
        c.drawString(x, y, best)
