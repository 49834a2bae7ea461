"""Reply-graph and duplicate detection over one fetch pass."""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from butler.mail.types import NO_SUBJECT, MessageRecord


@dataclass(frozen=True)
class ReplyClassification:
    superseded_ids: frozenset[str]
    reference_count: int  # size of the ReferenceSet the decision was made against


@dataclass(frozen=True)
class DuplicateGroup:
    """Records sharing one Message-ID, in ingestion order.

    The keeper is the first record ingested.  That is a policy, not a
    newest-wins guarantee: within a folder the first record is the most
    recently received, but across folders it is whichever folder was
    scanned first.
    """

    message_id: str
    records: tuple[MessageRecord, ...]

    @property
    def keeper(self) -> MessageRecord:
        return self.records[0]

    @property
    def movable(self) -> tuple[MessageRecord, ...]:
        return self.records[1:]

    @property
    def count(self) -> int:
        return len(self.records)

    @property
    def subject(self) -> str:
        return self.keeper.subject or NO_SUBJECT

    @property
    def sender(self) -> str:
        return self.keeper.sender or "unknown"


@dataclass(frozen=True)
class FolderCount:
    folder: str
    count: int


class ReplyGraphAnalyzer:
    """Marks messages that something else in the scanned set replies to.

    The reference set is rebuilt from scratch on every call; reusing one
    from an earlier pass would archive against a mailbox that no longer
    exists.
    """

    @staticmethod
    def build_reference_set(messages: Iterable[MessageRecord]) -> frozenset[str]:
        refs: set[str] = set()
        for record in messages:
            refs.update(record.in_reply_to)
            refs.update(record.references)
        return frozenset(refs)

    def classify(self, messages: Sequence[MessageRecord]) -> ReplyClassification:
        refs = self.build_reference_set(messages)
        superseded = frozenset(
            record.id for record in messages
            if record.message_id and record.message_id in refs
        )
        return ReplyClassification(superseded_ids=superseded, reference_count=len(refs))

    def superseded(self, messages: Sequence[MessageRecord]) -> list[MessageRecord]:
        """Superseded records in ingestion order."""
        ids = self.classify(messages).superseded_ids
        return [record for record in messages if record.id in ids]


class DuplicateGrouper:
    """Groups records by Message-ID; only groups of two or more are returned."""

    def group(self, messages: Sequence[MessageRecord]) -> list[DuplicateGroup]:
        buckets: dict[str, list[MessageRecord]] = {}
        for record in messages:
            if not record.message_id:
                continue
            buckets.setdefault(record.message_id, []).append(record)

        groups = [
            DuplicateGroup(message_id=mid, records=tuple(records))
            for mid, records in buckets.items()
            if len(records) > 1
        ]
        # sorted() is stable: equal-size groups keep first-seen order.
        return sorted(groups, key=lambda g: g.count, reverse=True)


def count_by_folder(messages: Iterable[MessageRecord]) -> list[FolderCount]:
    """Histogram of source folders, largest first."""
    counts: dict[str, int] = {}
    for record in messages:
        label = record.folder_label
        counts[label] = counts.get(label, 0) + 1
    rows = [FolderCount(folder, count) for folder, count in counts.items()]
    return sorted(rows, key=lambda r: r.count, reverse=True)
