"""User-facing message reporting with per-message de-duplication."""
from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)

Notify = Callable[[str, int], None]


class Reporter:
    """Forward messages to the host's ``notify(message, level)`` and the log.

    Messages sent through :meth:`once` are shown only the first time a given
    text is seen, so a server failing on every keystroke does not flood the
    editor.
    """

    def __init__(self, notify: Notify | None = None):
        self._notify = notify
        self._seen: set[str] = set()

    def warn(self, message: str) -> None:
        self._emit(message, logging.WARNING)

    def error(self, message: str) -> None:
        self._emit(message, logging.ERROR)

    def once(self, message: str, level: int = logging.WARNING) -> bool:
        """Report *message* unless it was already reported. Returns True if shown."""
        if message in self._seen:
            logger.debug('suppressed repeated message: %s', message)
            return False
        self._seen.add(message)
        self._emit(message, level)
        return True

    def _emit(self, message: str, level: int) -> None:
        logger.log(level, message)
        if self._notify is None:
            return
        try:
            self._notify(message, level)
        except Exception:
            logger.exception('notify callback failed for %r', message)
