"""Single-folder page fetcher."""

import logging

from butler.mail.store import MailStore
from butler.mail.types import FolderRef, MessageRecord

logger = logging.getLogger(__name__)


class PagedFolderFetcher:
    """Fetches one bounded page of one folder from a MailStore.

    Pages come back newest-first; duplicate keeper selection downstream
    relies on that order, so records are returned exactly as received.
    Store errors propagate unchanged — retry policy belongs to the caller.
    """

    def __init__(self, store: MailStore) -> None:
        self._store = store

    async def fetch(self, folder: FolderRef, page_size: int, offset: int) -> list[MessageRecord]:
        if page_size <= 0:
            return []
        page = await self._store.list_messages(folder, page_size, max(0, offset))
        logger.debug(
            "Fetched %d item(s) from %s (offset=%d, page_size=%d)",
            len(page), folder.display_name, offset, page_size,
        )
        return page
