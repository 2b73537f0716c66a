"""Shared fakes: a manually advanced loop, a scripted transport, a snippet engine."""
from __future__ import annotations

import pytest

from lspcompl.headless import LineBuffer, ListPopup
from lspcompl.host import Response
from lspcompl.orchestrator import BufferCompleter, ClientBinding
from lspcompl.report import Reporter
from lspcompl.snippets import SnippetProviders

URI = 'file:///tmp/test.py'


class _Handle:
    def __init__(self, when: float, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """Just enough of an event loop for timers; time moves only on advance()."""

    def __init__(self):
        self.now = 0.0
        self.handles: list[_Handle] = []

    def time(self) -> float:
        return self.now

    def call_later(self, delay, callback):
        handle = _Handle(self.now + delay, callback)
        self.handles.append(handle)
        return handle

    def call_soon(self, callback):
        return self.call_later(0, callback)

    @property
    def pending(self) -> list[_Handle]:
        return [h for h in self.handles if not h.cancelled]

    def advance(self, seconds: float = 0.0) -> None:
        target = self.now + seconds
        while True:
            due = [h for h in self.pending if h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self.handles.remove(handle)
            self.now = max(self.now, handle.when)
            handle.callback()
        self.now = target


class FakeRequest:
    def __init__(self, server_id, method, params, on_result):
        self.server_id = server_id
        self.method = method
        self.params = params
        self.on_result = on_result
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    def respond(self, result=None, error=None):
        """Deliver a response unless the transport dropped the request."""
        if self.cancelled:
            return
        self.on_result(Response(result=result, error=error))

    def respond_anyway(self, result=None, error=None):
        """Deliver even after cancellation (a straggler the transport missed)."""
        self.on_result(Response(result=result, error=error))


class FakeTransport:
    def __init__(self):
        self.requests: list[FakeRequest] = []
        self.auto: dict[tuple[str, str], Response] = {}

    def send_request(self, server_id, method, params, on_result):
        req = FakeRequest(server_id, method, params, on_result)
        self.requests.append(req)
        auto = self.auto.get((server_id, method))
        if auto is not None:
            on_result(auto)
        return req.cancel

    def of(self, method: str) -> list[FakeRequest]:
        return [r for r in self.requests if r.method == method]

    def last(self, method: str) -> FakeRequest:
        return self.of(method)[-1]


class RecordingSnippetEngine:
    def __init__(self):
        self.expanded: list[str] = []

    def expand(self, text: str) -> None:
        self.expanded.append(text)


class RecordingNotify:
    def __init__(self):
        self.messages: list[tuple[str, int]] = []

    def __call__(self, message, level):
        self.messages.append((message, level))


@pytest.fixture
def loop():
    return FakeLoop()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def buffer():
    return LineBuffer(URI, 'a', cursor=(0, 1))


@pytest.fixture
def popup():
    return ListPopup()


@pytest.fixture
def notify():
    return RecordingNotify()


@pytest.fixture
def snippet_engine():
    return RecordingSnippetEngine()


@pytest.fixture
def completer(buffer, transport, popup, loop, notify, snippet_engine):
    c = BufferCompleter(
        buffer, transport, popup,
        loop=loop,
        reporter=Reporter(notify),
        snippets=SnippetProviders([lambda: snippet_engine]),
    )
    popup.on_close = c.on_complete_done
    return c


@pytest.fixture
def make_binding():
    def make(server_id='server', **kwargs) -> ClientBinding:
        kwargs.setdefault('completion_triggers', ('.',))
        return ClientBinding(server_id=server_id, **kwargs)
    return make
