"""Append-only, timestamped audit trail for one run."""

import logging
from collections.abc import Iterable
from datetime import datetime, timezone

logger = logging.getLogger("butler.run")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RunLog:
    """Ordered list of ``"<ISO timestamp>: <message>"`` lines.

    Owned by one run; every line is mirrored to the ``butler.run`` logger.
    ``freeze()`` hands the lines to the caller and rejects further appends.
    """

    def __init__(self) -> None:
        self._lines: list[str] = []
        self._frozen = False

    def append(self, message: str) -> None:
        if self._frozen:
            raise RuntimeError("RunLog is frozen")
        self._lines.append(f"{_timestamp()}: {message}")
        logger.info("%s", message)

    def section(self, title: str, rows: Iterable[str]) -> None:
        """Append a title line followed by indented rows; nothing if rows is empty."""
        rows = list(rows)
        if not rows:
            return
        self.append(title)
        for row in rows:
            self.append(f"  - {row}")

    def freeze(self) -> tuple[str, ...]:
        self._frozen = True
        return tuple(self._lines)

    @property
    def lines(self) -> tuple[str, ...]:
        return tuple(self._lines)

    def __len__(self) -> int:
        return len(self._lines)
