"""Collaborator interfaces consumed by the engine."""

from typing import Protocol, runtime_checkable

from butler.mail.types import FolderRef, MessageRecord


@runtime_checkable
class MailStore(Protocol):
    """Remote mailbox operations the engine relies on.

    Implementations raise subclasses of ``MailStoreError``; see
    ``butler.mail.errors``.
    """

    async def list_messages(
        self, folder: FolderRef, page_size: int, offset: int
    ) -> list[MessageRecord]:
        """Return one page of a folder, newest first."""
        ...

    async def list_subfolders(self, parent: FolderRef) -> list[FolderRef]:
        """Return folders below ``parent``.  Best-effort: ``[]`` on any failure."""
        ...

    async def find_folder_by_name(self, name: str) -> FolderRef | None:
        ...

    async def create_folder(self, name: str) -> FolderRef:
        ...

    async def resolve_distinguished(self, label: str) -> FolderRef:
        """Raises NotFoundError when the well-known folder does not exist."""
        ...

    async def move_item(
        self, item_id: str, revision_token: str, destination: FolderRef
    ) -> None:
        ...

    async def get_full_body(self, item_id: str) -> str:
        """Return the plain body text, or ``""`` on any failure.  Never raises."""
        ...


@runtime_checkable
class TokenSource(Protocol):
    """Supplies the bearer credential for the mail store."""

    def current_token(self) -> str | None:
        ...


class StaticTokenSource:
    """TokenSource that always returns the same credential (e.g. from BUTLER_TOKEN)."""

    def __init__(self, token: str | None) -> None:
        self._token = token or None

    def current_token(self) -> str | None:
        return self._token
