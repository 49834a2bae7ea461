"""In-memory MailStore and record builders shared by the test-suite."""

from dataclasses import replace

from butler.mail.errors import ConflictError, MailStoreError, NotFoundError, RemoteLogicError
from butler.mail.types import INBOX, FolderRef, MessageRecord

ARCHIVE = FolderRef("archive-id", "Archive")
DUPLICATES = FolderRef("duplicates-id", "Duplicates")


def make_record(item_id: str, **kwargs: object) -> MessageRecord:
    defaults: dict[str, object] = dict(
        id=item_id,
        revision_token=f"ck-{item_id}",
        subject=f"Subject {item_id}",
        sender="alice@example.com",
    )
    return MessageRecord(**{**defaults, **kwargs})  # type: ignore[arg-type]


class FakeMailStore:
    """A small mailbox that behaves like the real thing where it matters.

    Moves relocate items between folders and replace their revision token,
    and a move with a stale token raises ConflictError, so tests see the
    same consequences as a live mailbox.  Every call is recorded.
    """

    def __init__(
        self,
        contents: dict[str, list[MessageRecord]] | None = None,
        *,
        subfolders: list[FolderRef] | None = None,
        named: dict[str, FolderRef] | None = None,
        distinguished: dict[str, FolderRef] | None = None,
    ) -> None:
        self.contents: dict[str, list[MessageRecord]] = {
            k: list(v) for k, v in (contents or {}).items()
        }
        self.contents.setdefault(INBOX.id, [])
        self.subfolders = list(subfolders or [])
        self.named = dict(named or {})
        self.distinguished = dict(distinguished if distinguished is not None else {"archive": ARCHIVE})
        self.bodies: dict[str, str] = {}

        self.folder_errors: dict[str, MailStoreError] = {}
        self.move_errors: dict[str, MailStoreError] = {}
        self.subfolder_error: MailStoreError | None = None
        self.find_error: MailStoreError | None = None
        self.create_error: MailStoreError | None = None

        self.list_calls: list[tuple[str, int, int]] = []
        self.moves: list[tuple[str, str]] = []
        self.find_calls: list[str] = []
        self.create_calls: list[str] = []
        self.resolve_calls: list[str] = []

    # ── MailStore ──────────────────────────────────────────────────────────────

    async def list_messages(self, folder: FolderRef, page_size: int, offset: int) -> list[MessageRecord]:
        self.list_calls.append((folder.id, page_size, offset))
        if folder.id in self.folder_errors:
            raise self.folder_errors[folder.id]
        items = self.contents.get(folder.id, [])[offset:offset + page_size]
        return [replace(r, source_folder=folder.display_name) for r in items]

    async def list_subfolders(self, parent: FolderRef) -> list[FolderRef]:
        if self.subfolder_error is not None:
            raise self.subfolder_error
        return list(self.subfolders)

    async def find_folder_by_name(self, name: str) -> FolderRef | None:
        self.find_calls.append(name)
        if self.find_error is not None:
            raise self.find_error
        return self.named.get(name)

    async def create_folder(self, name: str) -> FolderRef:
        self.create_calls.append(name)
        if self.create_error is not None:
            raise self.create_error
        folder = FolderRef(f"{name.lower()}-id", name)
        self.named[name] = folder
        self.contents.setdefault(folder.id, [])
        return folder

    async def resolve_distinguished(self, label: str) -> FolderRef:
        self.resolve_calls.append(label)
        folder = self.distinguished.get(label)
        if folder is None:
            raise NotFoundError(f"Could not find folder: {label}")
        return folder

    async def move_item(self, item_id: str, revision_token: str, destination: FolderRef) -> None:
        self.moves.append((item_id, destination.id))
        if item_id in self.move_errors:
            raise self.move_errors[item_id]
        for folder_id, items in self.contents.items():
            for index, record in enumerate(items):
                if record.id != item_id:
                    continue
                if record.revision_token != revision_token:
                    raise ConflictError(f"MoveItem conflict: stale change key for {item_id}")
                del items[index]
                moved = replace(record, revision_token=f"{revision_token}+")
                self.contents.setdefault(destination.id, []).append(moved)
                return
        raise RemoteLogicError(f"MoveItem error: item {item_id} not found")

    async def get_full_body(self, item_id: str) -> str:
        return self.bodies.get(item_id, "")

    # ── Helpers ────────────────────────────────────────────────────────────────

    def ids_in(self, folder_id: str) -> list[str]:
        return [r.id for r in self.contents.get(folder_id, [])]

    def moved_to(self, folder_id: str) -> list[str]:
        return [item for item, dest in self.moves if dest == folder_id]
