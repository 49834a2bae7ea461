"""Bearer-token capture with a debounced, size-capped persistent store."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Protocol
from urllib.parse import urlsplit

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

MICROSOFT_TOKEN_DOMAINS: tuple[str, ...] = (
    "graph.microsoft.com",
    "outlook.office.com",
    "outlook.office365.com",
    "outlook.cloud.microsoft",
    "substrate.office.com",
)
PREFERRED_DOMAIN = "outlook.cloud.microsoft"

MAX_TOKENS_STORED = 50
TOKEN_EXPIRY = timedelta(hours=24)
DEBOUNCE_SECONDS = 1.0
MAX_TOKEN_LENGTH = 8192

_FLUSH_JOB_ID = "butler-token-flush"
_TOKEN_RE = re.compile(r"^[A-Za-z0-9\-_.]+$")
_BEARER_PREFIX = "bearer "


def is_valid_bearer_token(token: object) -> bool:
    if not isinstance(token, str):
        return False
    if not 0 < len(token) <= MAX_TOKEN_LENGTH:
        return False
    return bool(_TOKEN_RE.match(token))


def extract_bearer_token(header: object) -> str | None:
    """Return the token from an ``Authorization: Bearer …`` value, if well-formed."""
    if not isinstance(header, str) or not header.lower().startswith(_BEARER_PREFIX):
        return None
    token = header[len(_BEARER_PREFIX):].strip()
    return token if is_valid_bearer_token(token) else None


def redact(token: str) -> str:
    return f"{token[:8]}…" if len(token) > 8 else "…"


@dataclass(frozen=True)
class CapturedToken:
    token: str
    url: str = ""
    domain: str = ""
    method: str = "GET"
    timestamp: float = 0.0  # epoch seconds, first seen
    last_seen: float = 0.0
    count: int = 1


class TokenBackend(Protocol):
    """Persistence for the captured-token list, newest first."""

    def load_tokens(self) -> list[CapturedToken]:
        ...

    def replace_tokens(self, tokens: list[CapturedToken]) -> None:
        ...


def merge_tokens(
    stored: list[CapturedToken],
    incoming: list[CapturedToken],
    *,
    now: float,
    expiry: timedelta = TOKEN_EXPIRY,
    max_tokens: int = MAX_TOKENS_STORED,
) -> list[CapturedToken]:
    """Fold ``incoming`` into ``stored`` and return the new list.

    A token already stored has its ``last_seen`` refreshed and ``count``
    bumped in place; a new token goes to the front.  Entries first seen
    more than ``expiry`` ago are then dropped and the list is capped.
    """
    tokens = list(stored)
    for entry in incoming:
        index = next((i for i, t in enumerate(tokens) if t.token == entry.token), None)
        if index is not None:
            known = tokens[index]
            tokens[index] = replace(known, last_seen=entry.timestamp, count=(known.count or 1) + 1)
        else:
            tokens.insert(0, replace(entry, count=1, last_seen=entry.timestamp))

    max_age = expiry.total_seconds()
    tokens = [t for t in tokens if now - t.timestamp < max_age]
    return tokens[:max_tokens]


class TokenCaptureStore:
    """Micro-batching queue in front of a TokenBackend.

    ``enqueue`` only touches an in-memory map and (re)schedules a single
    APScheduler ``date`` job; a burst of captures is written in one flush
    once the burst has been quiet for ``debounce_seconds``.  Without a
    scheduler, callers flush explicitly with ``flush_now()``.

    Also serves as the TokenSource for the mail store.

    Usage::

        scheduler = AsyncIOScheduler()
        scheduler.start()
        tokens = TokenCaptureStore(db, scheduler)
        tokens.capture_request(url, "POST", request_headers)
        store = OwaMailStore(session, tokens)
    """

    def __init__(
        self,
        backend: TokenBackend,
        scheduler: AsyncIOScheduler | None = None,
        *,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        max_tokens: int = MAX_TOKENS_STORED,
        expiry: timedelta = TOKEN_EXPIRY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._scheduler = scheduler
        self._debounce = debounce_seconds
        self._max_tokens = max_tokens
        self._expiry = expiry
        self._clock = clock
        self._pending: dict[str, CapturedToken] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def enqueue(self, token: CapturedToken) -> None:
        """Queue a capture; the same token captured twice keeps the latest details."""
        self._pending[token.token] = token
        if self._scheduler is None:
            return
        run_date = datetime.now(timezone.utc) + timedelta(seconds=self._debounce)
        self._scheduler.add_job(
            self.flush_now,
            "date",
            run_date=run_date,
            id=_FLUSH_JOB_ID,
            replace_existing=True,
        )

    async def flush_now(self) -> int:
        """Write every pending capture to the backend.  Returns how many were flushed."""
        if not self._pending:
            return 0
        batch = list(self._pending.values())
        self._pending.clear()
        try:
            merged = merge_tokens(
                self._backend.load_tokens(),
                batch,
                now=self._clock(),
                expiry=self._expiry,
                max_tokens=self._max_tokens,
            )
            self._backend.replace_tokens(merged)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to store %d captured token(s): %s", len(batch), exc, exc_info=True)
            # Put the batch back without clobbering anything captured since.
            for entry in batch:
                self._pending.setdefault(entry.token, entry)
            return 0
        logger.debug("Stored %d captured token(s); %d on file", len(batch), len(merged))
        return len(batch)

    async def aclose(self) -> int:
        """Drop the scheduled flush and write whatever is still pending."""
        if self._scheduler is not None and self._scheduler.get_job(_FLUSH_JOB_ID) is not None:
            self._scheduler.remove_job(_FLUSH_JOB_ID)
        return await self.flush_now()

    def capture_request(self, url: str, method: str, headers: Mapping[str, str]) -> str | None:
        """Pick a bearer token out of an outgoing request to a Microsoft domain."""
        domain = (urlsplit(url).hostname or "").lower()
        if domain not in MICROSOFT_TOKEN_DOMAINS:
            return None
        header = next((v for k, v in headers.items() if k.lower() == "authorization"), None)
        token = extract_bearer_token(header)
        if token is None:
            return None
        now = self._clock()
        self.enqueue(CapturedToken(
            token=token, url=url, domain=domain, method=method.upper(),
            timestamp=now, last_seen=now,
        ))
        logger.info("Captured token %s from %s", redact(token), domain)
        return token

    def tokens(self) -> list[CapturedToken]:
        """Stored tokens plus any still waiting for a flush."""
        stored = self._backend.load_tokens()
        known = {t.token for t in stored}
        fresh = [t for t in self._pending.values() if t.token not in known]
        return fresh + stored

    def current_token(self) -> str | None:
        """Newest unexpired Microsoft token, preferring outlook.cloud.microsoft."""
        now = self._clock()
        max_age = self._expiry.total_seconds()
        candidates = [
            t for t in self.tokens()
            if t.domain in MICROSOFT_TOKEN_DOMAINS
            and is_valid_bearer_token(t.token)
            and now - t.timestamp < max_age
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda t: (t.domain == PREFERRED_DOMAIN, t.last_seen), reverse=True)
        return candidates[0].token
