"""Two-phase archive workflow: dedup → re-fetch → archive."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from butler.engine.aggregator import FolderScanStats, MultiFolderAggregator, ScanLimits
from butler.engine.analysis import (
    DuplicateGroup,
    DuplicateGrouper,
    FolderCount,
    ReplyGraphAnalyzer,
    count_by_folder,
)
from butler.engine.folders import FolderResolver
from butler.engine.mover import MoveEngine
from butler.engine.runlog import RunLog
from butler.mail.errors import AlreadyRunningError, AuthError, MailStoreError, MoveError
from butler.mail.store import MailStore
from butler.mail.types import FolderRef

logger = logging.getLogger(__name__)

DUPLICATES_FOLDER = "Duplicates"
ARCHIVE_LABEL = "archive"
RESULT_KIND = "archive"


class RunState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DRY_RUN_COMPLETE = "dry_run_complete"
    DEDUP_MOVING = "dedup_moving"
    RESCANNING = "rescanning"
    ARCHIVE_MOVING = "archive_moving"
    DONE = "done"
    FAILED = "failed"


class ResultSink(Protocol):
    """Where the last-run summary is persisted."""

    def save_run_result(self, kind: str, payload: dict[str, Any]) -> None:
        ...


@dataclass(frozen=True)
class DuplicateSummary:
    message_id: str
    subject: str
    sender: str
    count: int

    @classmethod
    def from_group(cls, group: DuplicateGroup) -> DuplicateSummary:
        return cls(group.message_id, group.subject, group.sender, group.count)


@dataclass
class ArchiveResult:
    """Outcome of one orchestrator run, returned to the caller and persisted.

    ``success`` is always set; on failure ``error`` explains why and ``log``
    still carries the narrated trail up to the failure.
    """

    success: bool
    dry_run: bool = False
    final_state: RunState = RunState.DONE
    total_scanned: int = 0
    found_count: int = 0
    found_subjects: list[str] = field(default_factory=list)
    duplicate_count: int = 0
    duplicate_groups: list[DuplicateSummary] = field(default_factory=list)
    duplicates_moved_count: int = 0
    archived_count: int = 0
    archived_subjects: list[str] = field(default_factory=list)
    errors: int = 0
    folder_stats: list[FolderScanStats] = field(default_factory=list)
    to_archive_by_folder: list[FolderCount] = field(default_factory=list)
    archived_by_folder: list[FolderCount] = field(default_factory=list)
    log: tuple[str, ...] = ()
    error: str | None = None
    auth_required: bool = False
    finished_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="seconds")
    )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["final_state"] = self.final_state.value
        data["log"] = list(self.log)
        return data


class ArchiveOrchestrator:
    """Runs the scan/dedup/archive workflow against one MailStore.

    Single-flight: a second ``run()`` while one is in progress raises
    AlreadyRunningError.  The guard is instance state, reset on every exit
    path, so a crash mid-run never leaves the orchestrator stuck.

    Live runs move duplicates first, then re-fetch the whole folder set
    before computing what to archive: the first pass's revision tokens are
    stale after any move, and duplicate handling may have relocated items
    the first pass would have archived.

    Usage::

        orchestrator = ArchiveOrchestrator(store, result_sink=db)
        preview = await orchestrator.run(dry_run=True)
        result = await orchestrator.run(include_subfolders=True)
    """

    def __init__(
        self,
        store: MailStore,
        *,
        limits: ScanLimits | None = None,
        duplicates_folder: str = DUPLICATES_FOLDER,
        archive_label: str = ARCHIVE_LABEL,
        result_sink: ResultSink | None = None,
    ) -> None:
        self._store = store
        self._aggregator = MultiFolderAggregator(store, limits)
        self._analyzer = ReplyGraphAnalyzer()
        self._grouper = DuplicateGrouper()
        self._mover = MoveEngine(store)
        self._duplicates_folder = duplicates_folder
        self._archive_label = archive_label
        self._result_sink = result_sink
        self._state = RunState.IDLE
        self._last_state = RunState.IDLE

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def last_state(self) -> RunState:
        """Terminal state of the most recent run."""
        return self._last_state

    async def run(self, dry_run: bool = False, include_subfolders: bool = False) -> ArchiveResult:
        """Execute one run.

        Raises:
            AlreadyRunningError: if another run is in progress.
        """
        if self._state is not RunState.IDLE:
            raise AlreadyRunningError()
        self._state = RunState.SCANNING
        log = RunLog()
        try:
            try:
                result = await self._run(log, dry_run, include_subfolders)
            except AuthError as exc:
                result = self._fail(log, str(exc), dry_run, auth_required=True)
            except Exception as exc:  # noqa: BLE001
                logger.error("Archive run failed: %s", exc, exc_info=True)
                result = self._fail(log, str(exc), dry_run)
            if not dry_run:
                self._persist(result)
            return result
        finally:
            self._last_state = self._state
            self._state = RunState.IDLE

    # ── Workflow ───────────────────────────────────────────────────────────────

    async def _run(self, log: RunLog, dry_run: bool, include_subfolders: bool) -> ArchiveResult:
        limits = self._aggregator.limits
        log.append(f"Starting email processing{' (DRY RUN)' if dry_run else ''}")
        log.append(
            f"Fetching up to {limits.global_cap} messages from inbox"
            f"{' (including subfolders)' if include_subfolders else ''}"
        )
        initial = await self._aggregator.fetch_all(include_subfolders)
        messages = initial.messages
        log.append(f"Found {len(messages)} messages")
        _log_scan_stats(log, "Scan breakdown (unique included per folder):", initial.folder_stats)

        if not messages:
            log.append("No messages to process")
            self._state = RunState.DRY_RUN_COMPLETE if dry_run else RunState.DONE
            return self._finish(log, dry_run=dry_run, folder_stats=initial.folder_stats)

        references = self._analyzer.build_reference_set(messages)
        log.append(f"Found {len(references)} unique message references (In-Reply-To + References)")
        to_archive = self._analyzer.superseded(messages)
        log.append(
            f"{len(to_archive)} messages have been replied to"
            f"{'' if dry_run else ' and will be archived'}"
        )
        to_archive_by_folder = count_by_folder(to_archive)
        _log_folder_counts(log, "Replied-to emails by folder:", to_archive_by_folder)

        groups = self._grouper.group(messages)
        duplicate_count = sum(len(g.movable) for g in groups)
        log.append(
            f"Found {duplicate_count} duplicate emails (same Message-ID) in {len(groups)} groups"
        )
        summaries = [DuplicateSummary.from_group(g) for g in groups]

        if dry_run:
            self._state = RunState.DRY_RUN_COMPLETE
            return self._finish(
                log,
                dry_run=True,
                total_scanned=len(messages),
                found_count=len(to_archive),
                found_subjects=[r.subject for r in to_archive],
                duplicate_count=duplicate_count,
                duplicate_groups=summaries,
                folder_stats=initial.folder_stats,
                to_archive_by_folder=to_archive_by_folder,
            )

        # Phase 1: duplicates.  Every resolution for this run goes through one
        # resolver so folder lookups are memoised for the run only.
        resolver = FolderResolver(self._store)
        self._state = RunState.DEDUP_MOVING
        duplicates_moved, duplicate_errors = await self._move_duplicates(groups, resolver, log)

        # Phase 2: re-fetch unconditionally, then rebuild the reply graph.
        self._state = RunState.RESCANNING
        log.append("Re-fetching after duplicate removal...")
        rescan = await self._aggregator.fetch_all(include_subfolders)
        log.append(f"Found {len(rescan.messages)} messages after deduplication")
        _log_scan_stats(log, "Scan breakdown after dedup (unique included per folder):", rescan.folder_stats)

        to_archive = self._analyzer.superseded(rescan.messages)
        log.append(f"{len(to_archive)} emails to archive")
        to_archive_by_folder = count_by_folder(to_archive)
        _log_folder_counts(log, "Emails to archive by folder:", to_archive_by_folder)

        common: dict[str, Any] = dict(
            total_scanned=len(messages),
            duplicate_count=duplicate_count,
            duplicate_groups=summaries,
            duplicates_moved_count=duplicates_moved,
            folder_stats=rescan.folder_stats,
            to_archive_by_folder=to_archive_by_folder,
        )

        if not to_archive:
            self._state = RunState.DONE
            log.append(
                f"Done. Archived 0 messages, moved {duplicates_moved} duplicates, "
                f"{duplicate_errors} total errors"
            )
            return self._finish(log, errors=duplicate_errors, **common)

        # Phase 3: archive.  No safe fallback destination exists, so failing
        # to resolve the archive folder fails the run.
        log.append("Getting archive folder ID")
        try:
            archive = await resolver.resolve_distinguished(self._archive_label)
        except MailStoreError as exc:
            message = f"Could not get archive folder: {exc}"
            log.append(message)
            self._state = RunState.FAILED
            return self._finish(
                log,
                success=False,
                error=message,
                errors=duplicate_errors,
                auth_required=isinstance(exc, AuthError),
                **common,
            )
        log.append("Archive folder found")

        self._state = RunState.ARCHIVE_MOVING
        archived, archive_errors, auth_required = await self._archive(to_archive, archive, log)
        archived_by_folder = count_by_folder(archived)
        _log_folder_counts(log, "Archived emails by source folder:", archived_by_folder)
        log.append(
            f"Done. Archived {len(archived)} messages, moved {duplicates_moved} duplicates, "
            f"{archive_errors + duplicate_errors} total errors"
        )
        self._state = RunState.DONE
        return self._finish(
            log,
            archived_count=len(archived),
            archived_subjects=[r.subject for r in archived],
            archived_by_folder=archived_by_folder,
            errors=archive_errors + duplicate_errors,
            auth_required=auth_required,
            **common,
        )

    async def _move_duplicates(
        self, groups: list[DuplicateGroup], resolver: FolderResolver, log: RunLog
    ) -> tuple[int, int]:
        """Move every non-keeper into the duplicates folder.  Returns (moved, errors).

        The folder is never created here: relocating mail into a folder the
        user did not ask for is not something to do silently.
        """
        if not groups:
            return 0, 0

        name = self._duplicates_folder
        log.append(f'Checking for "{name}" folder...')
        try:
            folder = await resolver.find(name)
        except MailStoreError as exc:
            log.append(f'Could not look up "{name}" folder ({exc}) - skipping duplicate handling')
            return 0, 0
        if folder is None:
            log.append(
                f'"{name}" folder not found - skipping duplicate handling. '
                "Create the folder manually to enable."
            )
            return 0, 0

        log.append(f'Found "{name}" folder, moving duplicates...')
        moved = 0
        errors = 0
        for group in groups:
            for record in group.movable:
                try:
                    await self._mover.move_record(record, folder)
                except MoveError as exc:
                    errors += 1
                    log.append(f'Failed to move duplicate "{record.subject}": {exc}')
                    continue
                moved += 1
                log.append(f"Moved duplicate: {record.subject}")
        log.append(f"Moved {moved} duplicates, {errors} errors")
        return moved, errors

    async def _archive(self, records: list, archive: FolderRef, log: RunLog) -> tuple[list, int, bool]:
        archived = []
        errors = 0
        auth_required = False
        for record in records:
            try:
                await self._mover.move_record(record, archive)
            except MoveError as exc:
                errors += 1
                auth_required = auth_required or exc.auth_failure
                log.append(f'Failed to archive "{record.subject}": {exc}')
                continue
            archived.append(record)
            log.append(f"Archived: {record.subject}")
        return archived, errors, auth_required

    # ── Result helpers ─────────────────────────────────────────────────────────

    def _finish(self, log: RunLog, *, success: bool = True, dry_run: bool = False, **fields: Any) -> ArchiveResult:
        return ArchiveResult(
            success=success,
            dry_run=dry_run,
            final_state=self._state,
            log=log.freeze(),
            **fields,
        )

    def _fail(self, log: RunLog, message: str, dry_run: bool, *, auth_required: bool = False) -> ArchiveResult:
        log.append(f"Error: {message}")
        self._state = RunState.FAILED
        return self._finish(
            log, success=False, dry_run=dry_run, error=message, auth_required=auth_required
        )

    def _persist(self, result: ArchiveResult) -> None:
        """Save the summary as the last processing result; failures are logged only."""
        if self._result_sink is None:
            return
        try:
            self._result_sink.save_run_result(RESULT_KIND, result.to_dict())
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to persist archive result: %s", exc, exc_info=True)


def _log_scan_stats(log: RunLog, title: str, stats: list[FolderScanStats]) -> None:
    log.section(title, (
        f"{row.folder}: fetched {row.fetched}, included {row.included}"
        + (f" (error: {row.error})" if row.error else "")
        for row in stats
    ))


def _log_folder_counts(log: RunLog, title: str, rows: list[FolderCount]) -> None:
    log.section(title, (f"{row.folder}: {row.count}" for row in rows))
