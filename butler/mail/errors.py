"""Exception hierarchy for mail store calls and the engine built on top."""


class MailStoreError(Exception):
    """Base class for failures reported by a MailStore call."""


class TransportError(MailStoreError):
    """Network failure, timeout, or an unexpected HTTP status.

    Never retried automatically.
    """


class RateLimitedError(TransportError):
    """The remote store throttled the request (HTTP 429)."""


class AuthError(MailStoreError):
    """The bearer token is missing, expired, or was rejected."""

    DEFAULT_MESSAGE = (
        "Authorization failed — the captured Outlook token has expired or is "
        "missing. Open Outlook on the web to capture a fresh token and retry."
    )

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.DEFAULT_MESSAGE)


class RemoteLogicError(MailStoreError):
    """The store answered, but with an error or an unparseable body."""


class ConflictError(RemoteLogicError):
    """The item's revision token is stale (it changed since it was fetched)."""


class NotFoundError(MailStoreError):
    """A distinguished folder could not be resolved."""


class FolderUnavailableError(MailStoreError):
    """A named folder could neither be found nor created."""


class MoveError(Exception):
    """A single item move failed.

    ``auth_failure`` tells the caller to prompt for re-authentication rather
    than simply reporting a failed item.
    """

    def __init__(self, message: str, *, auth_failure: bool = False) -> None:
        super().__init__(message)
        self.auth_failure = auth_failure


class AlreadyRunningError(Exception):
    """An archive run was requested while another one is in progress."""

    def __init__(self) -> None:
        super().__init__("Processing already in progress")
