"""Single-item moves with errors translated for the caller."""

import logging

from butler.mail.errors import AuthError, MailStoreError, MoveError
from butler.mail.store import MailStore
from butler.mail.types import FolderRef, MessageRecord

logger = logging.getLogger(__name__)

_AUTH_HINT = "authorization expired — capture a fresh Outlook token and retry"


class MoveEngine:
    """Executes moves against the MailStore, one independent call per item.

    Isolating one item's failure from the rest of a batch is the caller's
    job; this class only guarantees that every failure arrives as MoveError.
    """

    def __init__(self, store: MailStore) -> None:
        self._store = store

    async def move(self, record_id: str, revision_token: str, destination: FolderRef) -> None:
        """Move one item.

        Raises:
            MoveError: with ``auth_failure=True`` when the token was rejected.
        """
        try:
            await self._store.move_item(record_id, revision_token, destination)
        except AuthError as exc:
            raise MoveError(f"Move failed: {_AUTH_HINT}", auth_failure=True) from exc
        except MailStoreError as exc:
            raise MoveError(f"Move failed: {exc}") from exc

    async def move_record(self, record: MessageRecord, destination: FolderRef) -> None:
        await self.move(record.id, record.revision_token, destination)
