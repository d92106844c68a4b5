from __future__ import annotations

import html
from typing import Mapping, Sequence

TRANSCRIPT_FILE_NAME = "chat-with-advisor"

_PRINT_CSS = """
@media print { body { -webkit-print-color-adjust: exact; } }
body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Helvetica, Arial, sans-serif; line-height: 1.6; color: #333; padding: 1rem; }
h1 { color: #111; }
.user-message, .agent-message { margin-bottom: 1rem; padding: 0.75rem 1rem; border-radius: 12px; max-width: 80%; word-wrap: break-word; }
.user-message { background-color: #dbeafe; margin-left: auto; border-bottom-right-radius: 4px; }
.agent-message { background-color: #e5e7eb; border-bottom-left-radius: 4px; }
p { margin: 0.25rem 0 0; white-space: pre-wrap; }
strong { display: block; margin-bottom: 4px; }
"""


def _sender(msg: Mapping[str, object], advisor_name: str) -> str:
    return "You" if msg.get("role") == "user" else advisor_name


def transcript_text(messages: Sequence[Mapping[str, object]], *, advisor_name: str) -> str:
    return "\n\n".join(f"{_sender(m, advisor_name)}: {m.get('text') or ''}" for m in messages)


def transcript_html(messages: Sequence[Mapping[str, object]], *, advisor_name: str, auto_print: bool = True) -> str:
    """
    Render the chat as a standalone printable HTML page.

    Message text is escaped; newlines become <br>.
    """
    title = html.escape(f"Chat with {advisor_name}")
    blocks = []
    for m in messages:
        css = "user-message" if m.get("role") == "user" else "agent-message"
        body = html.escape(str(m.get("text") or "")).replace("\n", "<br>")
        sender = html.escape(_sender(m, advisor_name))
        blocks.append(f'<div class="{css}"><strong>{sender}:</strong> <p>{body}</p></div>')
    script = (
        "<script>window.onload = function() { window.print(); };</script>" if auto_print else ""
    )
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        f"<head><meta charset=\"utf-8\"><title>{title}</title><style>{_PRINT_CSS}</style></head>\n"
        f"<body>\n<h1>{title}</h1>\n<div>{''.join(blocks)}</div>\n{script}\n</body>\n"
        "</html>\n"
    )
