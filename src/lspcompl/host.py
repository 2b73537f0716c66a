"""
Interfaces the completion core needs from its host.

The core never owns buffer storage, popup rendering, snippet expansion or
the LSP connection.  Hosts provide objects that satisfy the protocols below;
``lspcompl.headless`` has in-memory implementations.

Columns are 0-based UTF-8 byte offsets into a line, lines are 0-based.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class Mode(enum.Enum):
    INSERT = 'insert'
    OTHER = 'other'


class ResponseError(Exception):
    """An LSP error response (or transport failure) for one request."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code


class UnsupportedHost(RuntimeError):
    """The host lacks an API the completion core depends on."""


@dataclass
class Response:
    """Error-or-result union delivered to transport callbacks."""
    result: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


Cancel = Callable[[], None]
OnResult = Callable[[Response], None]


@runtime_checkable
class TextBuffer(Protocol):
    uri: str

    @property
    def changedtick(self) -> int: ...

    def get_current_line(self) -> str: ...

    def get_line(self, lnum: int) -> str: ...

    def get_cursor(self) -> tuple[int, int]: ...

    def set_text_range(self, lnum: int, start_col: int, end_col: int, replacement: str) -> None: ...

    def set_text(self, start: tuple[int, int], end: tuple[int, int], text: str) -> None: ...

    def get_mode(self) -> Mode: ...


@runtime_checkable
class Transport(Protocol):
    def send_request(self, server_id: str, method: str, params: Any, on_result: OnResult) -> Cancel: ...


@runtime_checkable
class Popup(Protocol):
    def show(self, start_col: int, matches: list) -> None: ...

    def is_visible(self) -> bool: ...


class SnippetEngine(Protocol):
    def expand(self, text: str) -> None: ...


class SignatureView(Protocol):
    def show_signature(self, server_id: str, help: Any) -> None: ...


class Scheduler(Protocol):
    """The subset of :class:`asyncio.AbstractEventLoop` used for timers."""

    def time(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], Any]) -> Any: ...

    def call_soon(self, callback: Callable[[], Any]) -> Any: ...


_REQUIRED = (
    ('buffer', TextBuffer),
    ('transport', Transport),
    ('popup', Popup),
)

_reported_hosts: set[str] = set()


def check_host(**collaborators) -> None:
    """Raise :class:`UnsupportedHost` if a collaborator misses required methods.

    Each distinct failure is logged once.
    """
    for name, proto in _REQUIRED:
        obj = collaborators.get(name)
        if obj is None or not isinstance(obj, proto):
            msg = f'{name} does not implement {proto.__name__}'
            if msg not in _reported_hosts:
                _reported_hosts.add(msg)
                logger.error('lspcompl cannot initialize: %s', msg)
            raise UnsupportedHost(msg)
