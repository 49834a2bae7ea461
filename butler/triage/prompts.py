"""Anthropic tool definition and prompt builder for triage decisions."""

from collections.abc import Sequence
from html.parser import HTMLParser
from typing import Any

from butler.mail.types import MessageRecord

TOOL_NAME = "record_triage_decision"

# Maximum characters of body sent to the model, applied after HTML stripping
# so the limit counts text rather than markup.
BODY_CHAR_LIMIT = 4_000


# ── HTML stripper ───────────────────────────────────────────────────────────────


class _HTMLStripper(HTMLParser):
    """Collects visible text nodes, skipping <style> and <script> contents."""

    _SKIP = {"style", "script"}

    def __init__(self) -> None:
        super().__init__()
        self._parts: list[str] = []
        self._skipping = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in self._SKIP:
            self._skipping += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIP and self._skipping:
            self._skipping -= 1

    def handle_data(self, data: str) -> None:
        if self._skipping:
            return
        text = data.strip()
        if text:
            self._parts.append(text)

    def get_text(self) -> str:
        return " ".join(self._parts)


def strip_html(text: str) -> str:
    """Return plain text from an HTML string.

    Input that doesn't look like HTML, or that strips down to almost
    nothing, is returned unchanged.
    """
    if "<" not in text:
        return text
    stripper = _HTMLStripper()
    try:
        stripper.feed(text)
        stripper.close()
        result = stripper.get_text()
        # Stripping away >90% usually means the input was not really HTML.
        return result if len(result) > len(text) * 0.1 else text
    except Exception:  # noqa: BLE001
        return text


# ── Tool definition ────────────────────────────────────────────────────────────


def triage_tool(labels: Sequence[str]) -> dict[str, Any]:
    """Tool schema whose ``label`` enum is the closed label set."""
    return {
        "name": TOOL_NAME,
        "description": "Record whether the email matches the triage criteria.",
        "input_schema": {
            "type": "object",
            "properties": {
                "match": {
                    "type": "boolean",
                    "description": "True if the email matches the user's criteria.",
                },
                "label": {
                    "type": ["string", "null"],
                    "enum": [*labels, None],
                    "description": "Destination folder for a match; null when match is false.",
                },
                "rationale": {
                    "type": "string",
                    "description": "One short sentence explaining the decision.",
                },
            },
            "required": ["match", "label", "rationale"],
        },
    }


# ── Prompt builder ─────────────────────────────────────────────────────────────


def build_messages(
    item: MessageRecord, body: str, criteria: str, labels: Sequence[str]
) -> list[dict[str, str]]:
    """Build the messages list for classifying one email.

    Falls back to the preview text when no body was fetched.
    """
    plain_body = strip_html(body or item.preview_text or "")
    body_preview = plain_body[:BODY_CHAR_LIMIT]
    truncated = len(plain_body) > BODY_CHAR_LIMIT

    content_lines = [
        f"From: {item.sender or 'unknown'}",
        f"Subject: {item.subject}",
    ]
    if item.received_at is not None:
        content_lines.append(f"Date: {item.received_at.isoformat()}")
    content_lines.append(f"Folder: {item.folder_label}")
    content_lines.append("")
    content_lines.append(body_preview)
    if truncated:
        content_lines.append("\n[… email truncated …]")

    return [
        {
            "role": "user",
            "content": (
                f"Criteria: {criteria}\n"
                f"Allowed folders: {', '.join(labels)}\n\n"
                f"Decide whether the email below matches the criteria. If it does, pick the "
                f"single best folder from the allowed list. Call {TOOL_NAME} with your "
                "decision.\n\n" + "\n".join(content_lines)
            ),
        }
    ]
