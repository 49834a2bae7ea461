"""Claude-powered triage classifier."""

from __future__ import annotations

import difflib
import logging
import os
import re
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from anthropic import AsyncAnthropic
from anthropic.types import ToolUseBlock

from butler.mail.types import MessageRecord
from butler.triage.prompts import TOOL_NAME, build_messages, triage_tool
from butler.triage.types import DEFAULT_LABELS, Classification

logger = logging.getLogger(__name__)

# Haiku: fast and cheap enough to run once per triaged email.
_MODEL = "claude-haiku-4-5-20251001"
_MAX_TOKENS = 512
_FUZZY_CUTOFF = 0.8


class ClassifierError(Exception):
    """Raised internally when the model's answer cannot be used."""


@runtime_checkable
class Classifier(Protocol):
    """Decides whether a message matches free-text criteria.

    Implementations must not raise: failures come back as a Classification
    with ``error`` set.
    """

    async def classify(self, item: MessageRecord, criteria: str, body: str = "") -> Classification:
        ...


# ── Label normalisation ────────────────────────────────────────────────────────


def _key(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "", text.lower())


def _singular(key: str) -> str:
    return key[:-1] if key.endswith("s") and len(key) > 1 else key


def normalize_label(raw: object, labels: Sequence[str]) -> str | None:
    """Map a near-miss label onto the closed set, or None if nothing fits.

    Tried in order: case/punctuation-insensitive equality, singular/plural,
    unambiguous substring, then fuzzy matching.
    """
    if not isinstance(raw, str) or not raw.strip():
        return None
    wanted = _key(raw)
    if not wanted:
        return None
    keyed = {_key(label): label for label in labels}

    if wanted in keyed:
        return keyed[wanted]

    for key, label in keyed.items():
        if _singular(key) == _singular(wanted):
            return label

    if len(wanted) >= 3:
        hits = [label for key, label in keyed.items() if wanted in key or key in wanted]
        if len(hits) == 1:
            return hits[0]

    close = difflib.get_close_matches(wanted, list(keyed), n=1, cutoff=_FUZZY_CUTOFF)
    return keyed[close[0]] if close else None


# ── Classifier ─────────────────────────────────────────────────────────────────


class ClaudeClassifier:
    """Asks Claude Haiku for a triage decision through a forced tool call.

    The tool's ``label`` enum is the closed label set; anything the model
    returns outside it is normalised or treated as an error.

    Usage::

        classifier = ClaudeClassifier(["Newsletters", "Receipts"])
        decision = await classifier.classify(record, "marketing I never read")
    """

    def __init__(self, labels: Sequence[str] = DEFAULT_LABELS, api_key: str | None = None) -> None:
        if not labels:
            raise ValueError("At least one triage label is required")
        self._labels = tuple(labels)
        self._tool = triage_tool(self._labels)
        self._client = AsyncAnthropic(
            api_key=api_key or os.environ.get("ANTHROPIC_API_KEY", "")
        )

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    async def classify(self, item: MessageRecord, criteria: str, body: str = "") -> Classification:
        """Classify one message; never raises."""
        try:
            data = await self._request(item, criteria, body)
            return _parse_decision(data, self._labels)
        except ClassifierError as exc:
            logger.warning("Unusable classification for item %s: %s", item.id, exc)
            return Classification(match=False, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.error("Classifier call failed for item %s: %s", item.id, exc)
            return Classification(match=False, error=f"Classification failed: {exc}")

    async def _request(self, item: MessageRecord, criteria: str, body: str) -> dict[str, object]:
        response = await self._client.messages.create(
            model=_MODEL,
            max_tokens=_MAX_TOKENS,
            tools=[self._tool],  # type: ignore[list-item]
            tool_choice={"type": "tool", "name": TOOL_NAME},
            messages=build_messages(item, body, criteria, self._labels),  # type: ignore[arg-type]
        )
        for block in response.content:
            if isinstance(block, ToolUseBlock) and block.name == TOOL_NAME:
                return dict(block.input)  # type: ignore[arg-type]
        raise ClassifierError(
            f"Model did not return a {TOOL_NAME} tool call "
            f"(stop_reason={response.stop_reason!r})"
        )


def _parse_decision(data: dict[str, object], labels: Sequence[str]) -> Classification:
    """Convert the raw tool-call input into a Classification."""
    rationale = str(data.get("rationale") or "")
    if not data.get("match"):
        return Classification(match=False, rationale=rationale)

    raw = data.get("label")
    label = normalize_label(raw, labels)
    if label is None:
        raise ClassifierError(f"Label {raw!r} is not one of: {', '.join(labels)}")
    if label != raw:
        logger.debug("Normalised label %r -> %r", raw, label)
    return Classification(match=True, label=label, rationale=rationale)
