"""Folder lookup and creation with a per-run memo."""

import logging

from butler.mail.errors import FolderUnavailableError, MailStoreError, NotFoundError
from butler.mail.store import MailStore
from butler.mail.types import FolderRef

logger = logging.getLogger(__name__)


class FolderResolver:
    """Resolves folders by display name or distinguished label.

    Build one per run: folder identity is not guaranteed stable across
    sessions, so resolved folders are memoised only for the resolver's
    lifetime.  Absent lookups are not memoised.
    """

    def __init__(self, store: MailStore) -> None:
        self._store = store
        self._by_name: dict[str, FolderRef] = {}
        self._distinguished: dict[str, FolderRef] = {}

    async def find(self, name: str) -> FolderRef | None:
        """Return the folder called ``name`` under the mailbox root, if any."""
        cached = self._by_name.get(name)
        if cached is not None:
            return cached
        folder = await self._store.find_folder_by_name(name)
        if folder is not None:
            self._by_name[name] = folder
        return folder

    async def find_or_create(self, name: str) -> FolderRef:
        """Find ``name``, creating it if absent.

        A failed create is followed by exactly one more lookup, which covers
        another client creating the same folder between our find and create.

        Raises:
            FolderUnavailableError: if the folder still cannot be found.
        """
        folder = await self.find(name)
        if folder is not None:
            return folder

        logger.info("Folder %r not found, creating it", name)
        try:
            folder = await self._store.create_folder(name)
        except MailStoreError as exc:
            logger.warning("Creating folder %r failed (%s); looking it up again", name, exc)
            folder = await self.find(name)
            if folder is None:
                raise FolderUnavailableError(f'Could not find or create "{name}" folder') from exc
            return folder

        self._by_name[name] = folder
        return folder

    async def resolve_distinguished(self, label: str) -> FolderRef:
        """Resolve a well-known folder such as "archive".

        Raises:
            NotFoundError: if the mailbox has no such folder.
        """
        cached = self._distinguished.get(label)
        if cached is not None:
            return cached
        folder = await self._store.resolve_distinguished(label)
        if folder is None or not folder.id:
            raise NotFoundError(f"Could not find folder: {label}")
        self._distinguished[label] = folder
        return folder
