"""Types for the AI triage pipeline."""

from dataclasses import dataclass, field
from typing import Any

#: Labels offered to the classifier when none are configured.
DEFAULT_LABELS: tuple[str, ...] = ("Newsletters", "Receipts", "Notifications", "Promotions")


@dataclass(frozen=True)
class Classification:
    """What the classifier made of one message.

    ``label`` is always a member of the classifier's closed label set, or
    None.  ``error`` is set instead of raising; a failed classification
    never matches.
    """

    match: bool
    label: str | None = None
    rationale: str = ""
    error: str | None = None


@dataclass(frozen=True)
class TriageDecision:
    """Input to the pipeline's move step: whether to move, and where."""

    match: bool
    folder: str | None = None
    rationale: str = ""
    error: str | None = None

    @classmethod
    def from_classification(cls, classification: Classification) -> "TriageDecision":
        return cls(
            match=classification.match,
            folder=classification.label,
            rationale=classification.rationale,
            error=classification.error,
        )


@dataclass(frozen=True)
class TriageItemResult:
    id: str
    subject: str
    sender: str
    match: bool = False
    folder: str | None = None
    reasoning: str = ""
    moved: bool = False
    error: str | None = None
    auth_failure: bool = False  # the move was rejected for an expired token

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "from": self.sender,
            "match": self.match,
            "folder": self.folder,
            "reasoning": self.reasoning,
            "moved": self.moved,
            "error": self.error,
        }


@dataclass
class TriageResult:
    """Outcome of one triage run.

    ``success`` is False only when the run could not get going (the fetch
    failed); per-item problems are counted in ``errors`` instead.
    """

    processed: int = 0
    moved: int = 0
    results: list[TriageItemResult] = field(default_factory=list)
    aborted: bool = False
    distribution: dict[str, int] = field(default_factory=dict)
    success: bool = True
    error: str | None = None
    auth_required: bool = False

    @classmethod
    def failed(cls, error: str, *, auth_required: bool = False) -> "TriageResult":
        return cls(success=False, error=error, auth_required=auth_required)

    @property
    def errors(self) -> int:
        return sum(1 for r in self.results if r.error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "auth_required": self.auth_required,
            "processed": self.processed,
            "moved": self.moved,
            "errors": self.errors,
            "aborted": self.aborted,
            "distribution": dict(self.distribution),
            "results": [r.to_dict() for r in self.results],
        }
