"""Outlook Web Access client — the MailStore used in production.

Talks to OWA's ``service.svc`` JSON endpoint the same way the Outlook web
client does: a body-less POST whose JSON request travels URL-encoded in the
``x-owa-urlpostdata`` header, authorised with the bearer token captured from
the browser session.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import quote

import aiohttp
from aiohttp import ClientTimeout

from butler.mail.errors import (
    AuthError,
    ConflictError,
    MailStoreError,
    NotFoundError,
    RateLimitedError,
    RemoteLogicError,
    TransportError,
)
from butler.mail.records import record_from_item
from butler.mail.store import TokenSource
from butler.mail.types import FolderKind, FolderRef, MessageRecord

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://outlook.cloud.microsoft/owa/service.svc"
DEFAULT_TIMEOUT_SECONDS = 60

# FindFolder page size; mailboxes with more folders than this are truncated.
_FOLDER_PAGE_SIZE = 500

# OWA response codes that mean "your ChangeKey is out of date".
_CONFLICT_CODES = frozenset({
    "ErrorIrresolvableConflict",
    "ErrorStaleObject",
    "ErrorChangeKeyRequiredForWriteOperations",
})

_NO_TOKEN_MESSAGE = "No Microsoft token found. Visit outlook.office.com first."

_JsonDict = dict[str, Any]


def _envelope(request_type: str, body: _JsonDict, server_version: str = "V2018_01_08") -> _JsonDict:
    """Wrap a request body in OWA's JSON request header boilerplate."""
    return {
        "__type": f"{request_type}JsonRequest:#Exchange",
        "Header": {
            "__type": "JsonRequestHeaders:#Exchange",
            "RequestServerVersion": server_version,
            "TimeZoneContext": {
                "__type": "TimeZoneContext:#Exchange",
                "TimeZoneDefinition": {"__type": "TimeZoneDefinitionType:#Exchange", "Id": "UTC"},
            },
        },
        "Body": {"__type": f"{request_type}Request:#Exchange", **body},
    }


def _folder_id(folder: FolderRef) -> _JsonDict:
    if folder.kind == FolderKind.DISTINGUISHED:
        return {"__type": "DistinguishedFolderId:#Exchange", "Id": folder.id}
    return {"__type": "FolderId:#Exchange", "Id": folder.id}


def _property(field_uri: str) -> _JsonDict:
    return {"__type": "PropertyUri:#Exchange", "FieldURI": field_uri}


def _extended_property(tag: str) -> _JsonDict:
    return {"__type": "ExtendedPropertyUri:#Exchange", "PropertyTag": tag, "PropertyType": "String"}


_MESSAGE_PROPERTIES: list[_JsonDict] = [
    _property("Subject"),
    _property("DateTimeReceived"),
    _property("From"),
    _property("InternetMessageId"),
    _property("Preview"),
    _property("Importance"),
    _property("IsRead"),
    _property("DisplayTo"),
    _property("DisplayCc"),
    _extended_property("0x1042"),  # In-Reply-To
    _extended_property("0x1039"),  # References
]


def _as_dict(value: object) -> _JsonDict:
    return value if isinstance(value, dict) else {}


def _first_response_item(data: _JsonDict) -> _JsonDict:
    items = _as_dict(_as_dict(data.get("Body")).get("ResponseMessages")).get("Items") or []
    first = items[0] if isinstance(items, list) and items else {}
    return _as_dict(first)


def _first_folder_id(folders: object) -> object:
    first = folders[0] if isinstance(folders, list) and folders else {}
    return _as_dict(_as_dict(first).get("FolderId")).get("Id")


class OwaMailStore:
    """Async MailStore over the OWA JSON API.

    Holds one aiohttp session for the lifetime of a run.  Use the
    ``owa_client()`` context manager to construct and tear down correctly.
    Every request carries the session's ClientTimeout; a timeout surfaces as
    TransportError and is never retried here.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token_source: TokenSource,
        base_url: str = DEFAULT_BASE_URL,
    ) -> None:
        self._session = session
        self._token_source = token_source
        self._base_url = base_url.rstrip("?")

    # ── Public API ─────────────────────────────────────────────────────────────

    async def list_messages(
        self, folder: FolderRef, page_size: int, offset: int
    ) -> list[MessageRecord]:
        """Return one page of ``folder`` sorted by DateTimeReceived, newest first."""
        request = _envelope("FindItem", {
            "ItemShape": {
                "__type": "ItemResponseShape:#Exchange",
                "BaseShape": "IdOnly",
                "AdditionalProperties": _MESSAGE_PROPERTIES,
            },
            "ParentFolderIds": [_folder_id(folder)],
            "Traversal": "Shallow",
            "Paging": {
                "__type": "IndexedPageView:#Exchange",
                "BasePoint": "Beginning",
                "Offset": offset,
                "MaxEntriesReturned": page_size,
            },
            "SortOrder": [{
                "__type": "SortResults:#Exchange",
                "Order": "Descending",
                "Path": _property("DateTimeReceived"),
            }],
        })
        data = await self._call("FindItem", request)
        root = _as_dict(_first_response_item(data).get("RootFolder"))
        items = root.get("Items") or []
        if not isinstance(items, list):
            raise RemoteLogicError(f"FindItem returned malformed items for {folder.display_name!r}")
        return [
            record_from_item(item, folder.display_name)
            for item in items
            if isinstance(item, dict)
        ]

    async def list_subfolders(self, parent: FolderRef) -> list[FolderRef]:
        """Return every folder below ``parent`` (deep traversal); [] on failure."""
        try:
            data = await self._find_folders(parent, server_version="Exchange2016")
        except MailStoreError as exc:
            logger.error("Listing subfolders of %s failed: %s", parent.display_name, exc)
            return []
        return [
            FolderRef(id=fid, display_name=name or "(Unnamed)")
            for fid, name in self._parse_folders(data)
            if fid
        ]

    async def find_folder_by_name(self, name: str) -> FolderRef | None:
        """Look a folder up by display name anywhere under the mailbox root."""
        root = FolderRef.distinguished("msgfolderroot", "Mailbox")
        data = await self._find_folders(root, server_version="Exchange2016")
        folders = self._parse_folders(data)
        logger.debug("FindFolder returned %d folder(s)", len(folders))
        for fid, display_name in folders:
            if display_name == name and fid:
                return FolderRef(id=fid, display_name=display_name)
        return None

    async def create_folder(self, name: str) -> FolderRef:
        """Create ``name`` directly under the mailbox root."""
        request = _envelope("CreateFolder", {
            "ParentFolderId": {
                "__type": "TargetFolderId:#Exchange",
                "BaseFolderId": {"__type": "DistinguishedFolderId:#Exchange", "Id": "msgfolderroot"},
            },
            "Folders": [{"__type": "Folder:#Exchange", "DisplayName": name}],
        })
        data = await self._call("CreateFolder", request)
        folder_id = _first_folder_id(_first_response_item(data).get("Folders"))
        if not folder_id:
            raise RemoteLogicError(f"CreateFolder returned no folder id for {name!r}")
        logger.info("Created folder %r", name)
        return FolderRef(id=str(folder_id), display_name=name)

    async def resolve_distinguished(self, label: str) -> FolderRef:
        """Resolve a well-known folder (e.g. "archive") to its concrete id."""
        request = _envelope("GetFolder", {
            "FolderShape": {"__type": "FolderResponseShape:#Exchange", "BaseShape": "IdOnly"},
            "FolderIds": [{"__type": "DistinguishedFolderId:#Exchange", "Id": label}],
        })
        try:
            data = await self._call("GetFolder", request)
        except RemoteLogicError as exc:
            raise NotFoundError(f"Could not find folder: {label} ({exc})") from exc
        folder_id = _first_folder_id(_first_response_item(data).get("Folders"))
        if not folder_id:
            raise NotFoundError(f"Could not find folder: {label}")
        return FolderRef(id=str(folder_id), display_name=label.capitalize())

    async def move_item(self, item_id: str, revision_token: str, destination: FolderRef) -> None:
        """Move one item.  The revision token must come from the current fetch pass."""
        item_ref: _JsonDict = {"__type": "ItemId:#Exchange", "Id": item_id}
        if revision_token:
            item_ref["ChangeKey"] = revision_token
        request = _envelope("MoveItem", {
            "ToFolderId": {"__type": "TargetFolderId:#Exchange", "BaseFolderId": _folder_id(destination)},
            "ItemIds": [item_ref],
            "ReturnNewItemIds": True,
        })
        await self._call("MoveItem", request)
        logger.debug("Moved item %s… to %s", item_id[:24], destination.display_name)

    async def get_full_body(self, item_id: str) -> str:
        """Return the item's body as plain text, or "" if it cannot be fetched."""
        request = _envelope("GetItem", {
            "ItemShape": {
                "__type": "ItemResponseShape:#Exchange",
                "BaseShape": "IdOnly",
                "BodyType": "Text",
                "AdditionalProperties": [_property("Body")],
            },
            "ItemIds": [{"__type": "ItemId:#Exchange", "Id": item_id}],
        })
        try:
            data = await self._call("GetItem", request)
        except MailStoreError as exc:
            logger.warning("Could not fetch body for item %s…: %s", item_id[:24], exc)
            return ""
        items = _first_response_item(data).get("Items")
        first = _as_dict(items[0]) if isinstance(items, list) and items else {}
        value = _as_dict(first.get("Body")).get("Value")
        return str(value) if value else ""

    # ── Internal helpers ───────────────────────────────────────────────────────

    async def _find_folders(self, parent: FolderRef, server_version: str) -> _JsonDict:
        request = _envelope("FindFolder", {
            "FolderShape": {"__type": "FolderResponseShape:#Exchange", "BaseShape": "Default"},
            "ParentFolderIds": [_folder_id(parent)],
            "Traversal": "Deep",
            "Paging": {
                "__type": "IndexedPageView:#Exchange",
                "BasePoint": "Beginning",
                "Offset": 0,
                "MaxEntriesReturned": _FOLDER_PAGE_SIZE,
            },
        }, server_version=server_version)
        return await self._call("FindFolder", request)

    @staticmethod
    def _parse_folders(data: _JsonDict) -> list[tuple[str, str]]:
        """Extract (folder id, display name) pairs from a FindFolder response.

        OWA builds disagree on where the folder list lives, so a few shapes
        are tried in turn.
        """
        body = _as_dict(data.get("Body"))
        folders = _as_dict(_first_response_item(data).get("RootFolder")).get("Folders")
        if not folders:
            folders = body.get("Folders")
        if not folders:
            for item in _as_dict(body.get("ResponseMessages")).get("Items") or []:
                nested = _as_dict(_as_dict(item).get("RootFolder")).get("Folders")
                if nested:
                    folders = nested
                    break
        if not isinstance(folders, list):
            return []
        return [
            (str(_as_dict(f.get("FolderId")).get("Id") or ""), str(f.get("DisplayName") or ""))
            for f in folders
            if isinstance(f, dict)
        ]

    async def _call(self, action: str, request: _JsonDict) -> _JsonDict:
        """POST an OWA action and return the decoded JSON body.

        Raises AuthError, RateLimitedError, TransportError, ConflictError or
        RemoteLogicError; aiohttp exceptions never escape.
        """
        token = self._token_source.current_token()
        if not token:
            raise AuthError(_NO_TOKEN_MESSAGE)

        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json; charset=utf-8",
            "Accept": "application/json",
            "Action": action,
            "x-owa-urlpostdata": quote(json.dumps(request), safe=""),
        }
        url = f"{self._base_url}?action={action}&app=Mail"
        logger.debug("OWA → %s", action)
        try:
            async with self._session.post(url, headers=headers) as response:
                text = await response.text()
                status = response.status
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{action} timed out") from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"{action} request failed: {exc}") from exc

        return self._check_response(action, status, text)

    @staticmethod
    def _check_response(action: str, status: int, text: str) -> _JsonDict:
        """Map an HTTP status and body to parsed JSON or the right MailStoreError."""
        if status in (401, 403):
            raise AuthError()
        if status == 429:
            raise RateLimitedError(f"{action} was throttled (HTTP 429)")

        try:
            data = json.loads(text) if text and text.strip() else None
        except json.JSONDecodeError:
            data = None

        if status >= 400:
            body = _as_dict(_as_dict(data).get("Body"))
            detail = body.get("ExceptionName") or body.get("FaultMessage") or text[:200]
            if status >= 500:
                raise TransportError(f"{action} failed: HTTP {status} - {detail}")
            raise RemoteLogicError(f"{action} failed: HTTP {status} - {detail}")

        if not isinstance(data, dict):
            raise RemoteLogicError(f"{action} returned a non-JSON or empty body: {text[:200]!r}")

        body = _as_dict(data.get("Body"))
        if body.get("ErrorCode") or body.get("ExceptionName"):
            raise RemoteLogicError(
                f"{action} error: {body.get('ExceptionName') or body.get('ResponseCode') or body.get('ErrorCode')}"
            )

        first = _first_response_item(data)
        if first.get("ResponseClass") == "Error":
            code = str(first.get("ResponseCode") or "")
            message = first.get("MessageText") or code or "Unknown OWA error"
            if code in _CONFLICT_CODES:
                raise ConflictError(f"{action} conflict: {message}")
            raise RemoteLogicError(f"{action} error: {message}")
        return data


@asynccontextmanager
async def owa_client(
    token_source: TokenSource,
    *,
    base_url: str | None = None,
    timeout_seconds: float | None = None,
) -> AsyncIterator[OwaMailStore]:
    """Async context manager that yields a ready-to-use OwaMailStore.

    Example::

        async with owa_client(token_source) as store:
            page = await store.list_messages(INBOX, 200, 0)
    """
    url = base_url or DEFAULT_BASE_URL
    timeout = ClientTimeout(total=timeout_seconds or DEFAULT_TIMEOUT_SECONDS)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        logger.info("OWA client ready (%s)", url)
        yield OwaMailStore(session, token_source, base_url=url)
