"""Multi-folder ingestion with global/per-folder caps and id de-duplication."""

import logging
import math
from dataclasses import dataclass, field

from butler.engine.fetcher import PagedFolderFetcher
from butler.mail.errors import AuthError, MailStoreError
from butler.mail.store import MailStore
from butler.mail.types import INBOX, FolderRef, MessageRecord

logger = logging.getLogger(__name__)

GLOBAL_CAP = 2000
MAX_FOLDERS = 30  # includes the Inbox itself
MIN_PER_FOLDER = 50
MAX_PER_FOLDER = 2000
PAGE_SIZE = 200


@dataclass(frozen=True)
class ScanLimits:
    """Caps applied to one aggregate fetch."""

    global_cap: int = GLOBAL_CAP
    max_folders: int = MAX_FOLDERS
    min_per_folder: int = MIN_PER_FOLDER
    max_per_folder: int = MAX_PER_FOLDER
    page_size: int = PAGE_SIZE

    def per_folder_cap(self, folder_count: int) -> int:
        """Share of the global cap each folder gets, clamped to [min, max]."""
        count = folder_count if folder_count > 0 else 1
        return max(self.min_per_folder, min(self.max_per_folder, self.global_cap // count))


@dataclass(frozen=True)
class FolderScanStats:
    """Informational per-folder outcome of a scan."""

    folder: str
    fetched: int
    included: int
    truncated: bool = False
    error: str | None = None


@dataclass(frozen=True)
class AggregateFetch:
    messages: list[MessageRecord] = field(default_factory=list)
    folder_stats: list[FolderScanStats] = field(default_factory=list)


class MultiFolderAggregator:
    """Drives PagedFolderFetcher across the Inbox and (optionally) its subfolders.

    Ingestion order is folder order, then page order, then item order; the
    first occurrence of an item id wins.  A folder that fails mid-scan keeps
    whatever it contributed before the failure and the scan moves on, since
    partial results beat none for a triage tool.  A rejected credential is
    not folder-scoped: AuthError always propagates.

    Usage::

        aggregator = MultiFolderAggregator(store)
        fetched = await aggregator.fetch_all(include_subfolders=True)
    """

    def __init__(self, store: MailStore, limits: ScanLimits | None = None) -> None:
        self._store = store
        self._fetcher = PagedFolderFetcher(store)
        self._limits = limits or ScanLimits()

    @property
    def limits(self) -> ScanLimits:
        return self._limits

    async def folder_set(self, include_subfolders: bool) -> list[FolderRef]:
        """Inbox first, then up to ``max_folders - 1`` subfolders (best-effort)."""
        folders = [INBOX]
        if include_subfolders:
            try:
                subfolders = await self._store.list_subfolders(INBOX)
            except AuthError:
                raise
            except MailStoreError as exc:
                logger.error("Subfolder listing failed, scanning Inbox only: %s", exc)
                subfolders = []
            remaining_slots = max(0, self._limits.max_folders - 1)
            folders.extend(subfolders[:remaining_slots])
            if len(subfolders) > remaining_slots:
                logger.info(
                    "Inbox has %d subfolders; scanning only the first %d",
                    len(subfolders), remaining_slots,
                )
        return folders

    async def fetch_all(self, include_subfolders: bool = False) -> AggregateFetch:
        limits = self._limits
        folders = await self.folder_set(include_subfolders)
        per_folder_cap = limits.per_folder_cap(len(folders))
        max_pages = math.ceil(per_folder_cap / limits.page_size) if limits.page_size > 0 else 0

        messages: list[MessageRecord] = []
        seen_ids: set[str] = set()
        stats: list[FolderScanStats] = []

        for folder in folders:
            fetched = 0
            included = 0
            offset = 0
            page_index = 0
            error: str | None = None

            while (
                len(messages) < limits.global_cap
                and fetched < per_folder_cap
                and page_index < max_pages
            ):
                page_size = min(
                    limits.page_size,
                    per_folder_cap - fetched,
                    limits.global_cap - len(messages),
                )
                if page_size <= 0:
                    break

                try:
                    page = await self._fetcher.fetch(folder, page_size, offset)
                except AuthError:
                    raise
                except MailStoreError as exc:
                    error = str(exc)
                    logger.error(
                        "Failed fetching folder %r (page %d): %s",
                        folder.display_name, page_index, exc,
                    )
                    break

                fetched += len(page)
                for record in page:
                    if not record.id or record.id in seen_ids:
                        continue
                    seen_ids.add(record.id)
                    messages.append(record)
                    included += 1
                    if len(messages) >= limits.global_cap:
                        break

                # A short page means the folder is exhausted.
                if len(page) < page_size:
                    break
                offset += page_size
                page_index += 1

            if error is not None:
                stats.append(FolderScanStats(folder.display_name, fetched, included, error=error))
            else:
                truncated = fetched >= per_folder_cap or len(messages) >= limits.global_cap
                stats.append(FolderScanStats(folder.display_name, fetched, included, truncated=truncated))

            if len(messages) >= limits.global_cap:
                logger.info("Global cap of %d messages reached", limits.global_cap)
                break

        return AggregateFetch(messages=messages, folder_stats=stats)
