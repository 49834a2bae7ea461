"""Data types shared across the mail store and the engine."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

UNKNOWN_FOLDER = "(Unknown folder)"
NO_SUBJECT = "(No Subject)"


class FolderKind(str, Enum):
    """How a folder is addressed on the wire."""

    DISTINGUISHED = "distinguished"  # well-known label, e.g. "inbox", "archive"
    BY_ID = "by_id"


@dataclass(frozen=True)
class FolderRef:
    """A folder the engine can read from or move into."""

    id: str
    display_name: str
    kind: FolderKind = FolderKind.BY_ID

    @classmethod
    def distinguished(cls, label: str, display_name: str | None = None) -> "FolderRef":
        return cls(id=label, display_name=display_name or label.capitalize(),
                   kind=FolderKind.DISTINGUISHED)


INBOX = FolderRef.distinguished("inbox", "Inbox")


@dataclass(frozen=True)
class MessageRecord:
    """One mail item as seen by a single fetch pass.

    ``revision_token`` is the store's optimistic-concurrency key (OWA
    ChangeKey).  It goes stale after any write to the mailbox, so a record
    must not be reused for a move once another move has happened in the
    same run.

    ``message_id``, ``in_reply_to`` and ``references`` are already
    entity-decoded; ``message_id`` is empty when the header is absent.
    """

    id: str
    revision_token: str
    subject: str = NO_SUBJECT
    sender: str = ""
    received_at: datetime | None = None
    message_id: str = ""
    in_reply_to: tuple[str, ...] = ()
    references: tuple[str, ...] = ()
    source_folder: str = UNKNOWN_FOLDER
    preview_text: str = ""
    importance: str = "Normal"
    is_read: bool = False
    to_recipients: frozenset[str] = field(default_factory=frozenset)
    cc_recipients: frozenset[str] = field(default_factory=frozenset)

    @property
    def folder_label(self) -> str:
        """Source folder label, never blank."""
        label = self.source_folder.strip() if self.source_folder else ""
        return label or UNKNOWN_FOLDER
