"""
Completion request orchestration.

One :class:`BufferCompleter` per buffer decides when completion and
signature-help requests are sent, debounces keystrokes, cancels superseded
requests and hands merged results to the popup.  The host forwards its
insert-mode events to it:

===========================  ===========================================
host event                   method
===========================  ===========================================
character about to insert    :meth:`BufferCompleter.on_char_typed`
text changed, popup visible  :meth:`BufferCompleter.on_text_changed_popup`
text changed, no popup       :meth:`BufferCompleter.on_text_changed`
insert mode left             :meth:`BufferCompleter.on_insert_leave`
popup closed / item chosen   :meth:`BufferCompleter.on_complete_done`
===========================  ===========================================

Everything runs on the event loop thread; requests are the only suspension
points.  Every request fan-out is tracked by a :class:`RequestCycle`, and a
new cycle always cancels the previous one first.
"""
from __future__ import annotations

import asyncio
import enum
import functools
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from lsprotocol import types as lsp
from lsprotocol.converters import get_converter

from lspcompl.accept import AcceptHandler
from lspcompl.boundary import UTF16, char_col, naive_start_col
from lspcompl.commands import CommandRegistry, global_commands
from lspcompl.config import CompletionSettings
from lspcompl.host import (
    Cancel, Mode, Popup, Response, Scheduler, SignatureView, TextBuffer, Transport, check_host,
)
from lspcompl.items import NormalizedMatch
from lspcompl.latency import LatencyEstimator
from lspcompl.merge import Matcher, merge_responses
from lspcompl.report import Reporter
from lspcompl.snippets import SnippetProviders

logger = logging.getLogger(__name__)

# Subsequent debounce before any round trip has been measured.
DEFAULT_SUBSEQUENT_DEBOUNCE_MS = 150


class State(enum.Enum):
    IDLE = 'idle'
    LEADING_DEBOUNCE = 'leading-debounce'
    REQUEST_IN_FLIGHT = 'request-in-flight'
    SUBSEQUENT_DEBOUNCE = 'subsequent-debounce'


# ---------------------------------------------------------------------------
# Per-server binding
# ---------------------------------------------------------------------------

def _encoding_value(raw) -> str:
    if raw is None:
        return UTF16
    return getattr(raw, 'value', raw)


@dataclass
class ClientBinding:
    server_id: str
    offset_encoding: str = UTF16
    server_side_fuzzy_completion: bool = False
    resolve_provider: bool = False
    completion_triggers: tuple[str, ...] = ()
    signature_triggers: tuple[str, ...] = ()
    signature_help: bool = False
    execute_commands: frozenset[str] = frozenset()
    commands: CommandRegistry = field(default_factory=CommandRegistry)
    leading_debounce_ms: float = 50
    subsequent_debounce_ms: float | None = None
    trigger_on_delete: bool = False
    delete_debounce_ms: float = 150

    @classmethod
    def from_capabilities(
        cls,
        server_id: str,
        capabilities: lsp.ServerCapabilities,
        settings: CompletionSettings | None = None,
    ) -> ClientBinding:
        """Build a binding from what the server advertised at initialization."""
        settings = settings or CompletionSettings()
        completion = capabilities.completion_provider
        signature = capabilities.signature_help_provider
        execute = capabilities.execute_command_provider
        return cls(
            server_id=server_id,
            offset_encoding=_encoding_value(capabilities.position_encoding),
            server_side_fuzzy_completion=settings.server_side_fuzzy_completion,
            resolve_provider=bool(completion and completion.resolve_provider) and settings.resolve_edits,
            completion_triggers=tuple(completion.trigger_characters or ()) if completion else (),
            signature_triggers=tuple(signature.trigger_characters or ()) if signature else (),
            signature_help=signature is not None,
            execute_commands=frozenset(execute.commands) if execute else frozenset(),
            leading_debounce_ms=settings.leading_debounce_ms,
            subsequent_debounce_ms=settings.subsequent_debounce_ms,
            trigger_on_delete=settings.trigger_on_delete,
            delete_debounce_ms=settings.delete_debounce_ms,
        )


# ---------------------------------------------------------------------------
# Request bookkeeping
# ---------------------------------------------------------------------------

class RequestCycle:
    """Cancellation handle for one request fanned out to several servers.

    Callbacks of a canceled cycle are no-ops, and canceling tells every
    transport request still outstanding to stop expecting a response.
    *on_cancel* runs when a cycle is canceled before every server reported.
    """

    def __init__(self, method: str, started: float, server_ids,
                 on_cancel: Callable[[], Any] | None = None):
        self.method = method
        self.started = started
        self.cancelled = False
        self.remaining: set[str] = set(server_ids)
        self.responses: dict[str, Response] = {}
        self._cancels: dict[str, Cancel] = {}
        self._on_cancel = on_cancel

    @property
    def done(self) -> bool:
        return not self.remaining

    def add(self, server_id: str, cancel: Cancel | None) -> None:
        if cancel is None or server_id not in self.remaining:
            return
        if self.cancelled:
            _invoke_cancel(server_id, cancel)
            return
        self._cancels[server_id] = cancel

    def record(self, server_id: str, response: Response) -> bool:
        """Store *response*; True once every server has reported."""
        self.responses[server_id] = response
        self.remaining.discard(server_id)
        self._cancels.pop(server_id, None)
        return self.done

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        cancels, self._cancels = self._cancels, {}
        for server_id, cancel in cancels.items():
            _invoke_cancel(server_id, cancel)
        logger.debug('canceled %s cycle, %d requests outstanding', self.method, len(cancels))
        if self._on_cancel is not None and not self.done:
            try:
                self._on_cancel()
            except Exception:
                logger.exception('cancel callback of %s cycle failed', self.method)


def _invoke_cancel(server_id: str, cancel: Cancel) -> None:
    try:
        cancel()
    except Exception:
        logger.exception('cancel of request to %s failed', server_id)


@dataclass
class RequestContext:
    """Mutable completion state of one buffer."""
    last_request: float | None = None
    pending: list[RequestCycle] = field(default_factory=list)
    is_incomplete: bool = False
    suppress_complete_done: bool = False
    expand_snippet: bool = False
    cursor: tuple[int, int] | None = None

    def cancel_pending(self) -> None:
        pending, self.pending = self.pending, []
        for cycle in pending:
            cycle.cancel()

    def reset(self) -> None:
        # cursor survives: it is needed across the popup closing
        self.expand_snippet = False
        self.is_incomplete = False
        self.suppress_complete_done = False
        self.cancel_pending()


# ---------------------------------------------------------------------------
# Per-buffer orchestrator
# ---------------------------------------------------------------------------

class BufferCompleter:
    def __init__(
        self,
        buffer: TextBuffer,
        transport: Transport,
        popup: Popup,
        *,
        loop: Scheduler | None = None,
        latency: LatencyEstimator | None = None,
        reporter: Reporter | None = None,
        snippets: SnippetProviders | None = None,
        commands: CommandRegistry | None = None,
        signature_view: SignatureView | None = None,
        matcher: Matcher | None = None,
        keyword_pattern: re.Pattern | None = None,
    ):
        self.buffer = buffer
        self.transport = transport
        self.popup = popup
        self.latency = latency or LatencyEstimator()
        self.reporter = reporter or Reporter()
        self.snippets = snippets or SnippetProviders()
        self.commands = commands or global_commands
        self.signature_view = signature_view
        self.matcher = matcher
        self.keyword_pattern = keyword_pattern
        self.bindings: dict[str, ClientBinding] = {}
        self.state = State.IDLE
        self._loop = loop
        self._ctx: RequestContext | None = None
        self._timer = None
        self._signature_timer = None
        self._signature_cycle: RequestCycle | None = None
        self._accept = AcceptHandler(self)

    # -- plumbing -------------------------------------------------------------

    @property
    def loop(self) -> Scheduler:
        if self._loop is None:
            # host events arrive on the loop thread
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def context(self) -> RequestContext:
        if self._ctx is None:
            self._ctx = RequestContext()
        return self._ctx

    def attach(self, binding: ClientBinding) -> None:
        self.bindings[binding.server_id] = binding
        logger.debug('%s: attached %s (encoding %s, triggers %r)',
                      self.buffer.uri, binding.server_id, binding.offset_encoding,
                      binding.completion_triggers)

    def detach(self, server_id: str) -> bool:
        """Remove a binding; returns True while other bindings remain."""
        self.bindings.pop(server_id, None)
        if not self.bindings:
            self.close()
        return bool(self.bindings)

    def close(self) -> None:
        self._reset_timer()
        self._reset_signature_timer()
        self._cancel_signature()
        if self._ctx is not None:
            self._ctx.cursor = None
            self._ctx.reset()
        self.state = State.IDLE

    def _reset_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _reset_signature_timer(self) -> None:
        if self._signature_timer is not None:
            self._signature_timer.cancel()
            self._signature_timer = None

    def _schedule(self, delay_ms: float, state: State, callback: Callable[[], Any]) -> None:
        self._reset_timer()
        self.state = state

        def fire():
            self._timer = None
            callback()

        if delay_ms <= 0:
            self._timer = self.loop.call_soon(fire)
        else:
            self._timer = self.loop.call_later(delay_ms / 1000, fire)

    def _any_fuzzy(self) -> bool:
        return any(b.server_side_fuzzy_completion for b in self.bindings.values())

    def _triggers(self, attr: str) -> set[str]:
        chars: set[str] = set()
        for binding in self.bindings.values():
            chars.update(getattr(binding, attr))
        return chars

    def leading_debounce(self) -> float:
        return max((b.leading_debounce_ms for b in self.bindings.values()), default=50)

    def next_debounce(self) -> float:
        """Milliseconds to wait before re-triggering while the popup is visible."""
        configured = [b.subsequent_debounce_ms for b in self.bindings.values()
                      if b.subsequent_debounce_ms is not None]
        if configured:
            debounce = max(configured)
        else:
            debounce = self.latency.get(DEFAULT_SUBSEQUENT_DEBOUNCE_MS)
        ctx = self.context
        if ctx.last_request is None:
            return 0
        since_ms = (self.loop.time() - ctx.last_request) * 1000
        return max(debounce - since_ms, 0)

    # -- host events ----------------------------------------------------------

    def on_char_typed(self, char: str) -> None:
        """A character is about to be inserted."""
        if self.popup.is_visible():
            if self._timer is not None:
                return
            ctx = self.context
            if ctx.is_incomplete or self._any_fuzzy():
                kind = (lsp.CompletionTriggerKind.TriggerForIncompleteCompletions
                        if ctx.is_incomplete else lsp.CompletionTriggerKind.Invoked)
                self._schedule(
                    self.next_debounce(), State.SUBSEQUENT_DEBOUNCE,
                    functools.partial(self.trigger_completion, trigger_kind=kind),
                )
            return

        if self._timer is None and char in self._triggers('completion_triggers'):
            self._schedule(
                self.leading_debounce(), State.LEADING_DEBOUNCE,
                functools.partial(
                    self.trigger_completion,
                    trigger_kind=lsp.CompletionTriggerKind.TriggerCharacter,
                    trigger_character=char,
                ),
            )
        if self._signature_timer is None and char in self._triggers('signature_triggers'):
            def fire():
                self._signature_timer = None
                self.trigger_signature_help(trigger_character=char)
            self._signature_timer = self.loop.call_later(self.leading_debounce() / 1000, fire)

    def on_text_changed_popup(self) -> None:
        if any(b.trigger_on_delete for b in self.bindings.values()):
            self.context.cursor = self.buffer.get_cursor()

    def on_text_changed(self) -> None:
        """Re-trigger after deleting back towards where the popup opened."""
        ctx = self._ctx
        if ctx is None or ctx.cursor is None or self._timer is not None:
            return
        lnum, col = self.buffer.get_cursor()
        if lnum == ctx.cursor[0] and col <= ctx.cursor[1]:
            delay = max((b.delete_debounce_ms for b in self.bindings.values()
                         if b.trigger_on_delete), default=150)
            self._schedule(delay, State.SUBSEQUENT_DEBOUNCE, self.trigger_completion)
        elif lnum != ctx.cursor[0]:
            ctx.cursor = None

    def on_insert_leave(self) -> None:
        self.close()

    def on_complete_done(self, match: NormalizedMatch | None) -> None:
        self._accept.on_complete_done(match)

    def accept_pending(self) -> bool:
        """Arm snippet expansion for the next acceptance if the popup is open."""
        if not self.popup.is_visible():
            return False
        self.context.expand_snippet = True
        return True

    def hard_reset(self) -> None:
        self._reset_timer()
        self.context.reset()
        self.state = State.IDLE

    # -- requests -------------------------------------------------------------

    def _position(self, binding: ClientBinding, lnum: int, line: str, col: int) -> lsp.Position:
        return lsp.Position(line=lnum, character=char_col(line, col, binding.offset_encoding))

    def dispatch(
        self,
        cycle: RequestCycle,
        bindings: list[ClientBinding],
        params_for: Callable[[ClientBinding], Any],
        on_response: Callable[[RequestCycle, str, Response], None],
    ) -> None:
        for binding in bindings:
            sid = binding.server_id
            callback = functools.partial(on_response, cycle, sid)
            try:
                cancel = self.transport.send_request(sid, cycle.method, params_for(binding), callback)
            except Exception as exc:
                logger.exception('%s request to %s failed', cycle.method, sid)
                callback(Response(error=exc))
                continue
            cycle.add(sid, cancel)

    def trigger_completion(
        self,
        trigger_kind: lsp.CompletionTriggerKind = lsp.CompletionTriggerKind.Invoked,
        trigger_character: str | None = None,
    ) -> None:
        """Cancel whatever is pending and request completion right away."""
        self._reset_timer()
        ctx = self.context
        ctx.cancel_pending()
        if not self.bindings:
            self.state = State.IDLE
            return

        lnum, col = self.buffer.get_cursor()
        line = self.buffer.get_current_line()
        if self.keyword_pattern is not None:
            naive_col = naive_start_col(line, col, self.keyword_pattern)
        else:
            naive_col = naive_start_col(line, col)
        now = self.loop.time()
        bindings = list(self.bindings.values())
        cycle = RequestCycle(lsp.TEXT_DOCUMENT_COMPLETION, now, [b.server_id for b in bindings])
        ctx.pending.append(cycle)
        ctx.last_request = now
        self.state = State.REQUEST_IN_FLIGHT
        logger.debug('%s: completion at %d:%d (%s) to %s', self.buffer.uri, lnum, col,
                     trigger_kind.name, [b.server_id for b in bindings])

        def params_for(binding: ClientBinding) -> lsp.CompletionParams:
            return lsp.CompletionParams(
                text_document=lsp.TextDocumentIdentifier(uri=self.buffer.uri),
                position=self._position(binding, lnum, line, col),
                context=lsp.CompletionContext(
                    trigger_kind=trigger_kind,
                    trigger_character=trigger_character,
                ),
            )

        on_response = functools.partial(self._on_completion_response, lnum=lnum,
                                        line=line, col=col, naive_col=naive_col)
        self.dispatch(cycle, bindings, params_for, on_response)

    def _on_completion_response(
        self, cycle: RequestCycle, server_id: str, response: Response,
        *, lnum: int, line: str, col: int, naive_col: int,
    ) -> None:
        if cycle.cancelled:
            logger.debug('dropping stale completion response from %s', server_id)
            return
        if not cycle.record(server_id, response):
            return
        try:
            self._show(cycle, lnum, line, col, naive_col)
        except Exception:
            logger.exception('%s: failed to merge completion responses', self.buffer.uri)
            self.reporter.once('lspcompl: failed to show completion results')

    def _show(self, cycle: RequestCycle, lnum: int, line: str, col: int, naive_col: int) -> None:
        ctx = self.context
        if cycle in ctx.pending:
            ctx.pending.remove(cycle)
        self.state = State.IDLE

        result = merge_responses(
            naive_col, line, lnum, cycle.responses, self.bindings,
            cursor_col=col, matcher=self.matcher, reporter=self.reporter,
        )
        elapsed_ms = (self.loop.time() - cycle.started) * 1000
        self.latency.add(elapsed_ms)
        cur_lnum, _ = self.buffer.get_cursor()
        if cur_lnum != lnum or self.buffer.get_mode() is not Mode.INSERT:
            ctx.is_incomplete = result.is_incomplete
            logger.debug('%s: cursor left line %d or insert mode, not showing', self.buffer.uri, lnum)
            return
        logger.debug('%s: showing %d matches at col %d after %.1f ms',
                     self.buffer.uri, len(result.matches), result.start_col, elapsed_ms)
        if self.popup.is_visible():
            # replacing the visible popup closes it; that close is not an
            # acceptance
            ctx.suppress_complete_done = True
        self.popup.show(result.start_col, result.matches)
        # set after show: replacing a visible popup may reset the context
        ctx.is_incomplete = result.is_incomplete

    # -- signature help -------------------------------------------------------

    def _cancel_signature(self) -> None:
        if self._signature_cycle is not None:
            self._signature_cycle.cancel()
            self._signature_cycle = None

    def trigger_signature_help(self, trigger_character: str | None = None) -> None:
        self._reset_signature_timer()
        self._cancel_signature()
        bindings = [b for b in self.bindings.values() if b.signature_help]
        if not bindings:
            return
        lnum, col = self.buffer.get_cursor()
        line = self.buffer.get_current_line()
        cycle = RequestCycle(lsp.TEXT_DOCUMENT_SIGNATURE_HELP, self.loop.time(),
                             [b.server_id for b in bindings])
        self._signature_cycle = cycle

        def params_for(binding: ClientBinding) -> lsp.SignatureHelpParams:
            context = None
            if trigger_character is not None:
                context = lsp.SignatureHelpContext(
                    trigger_kind=lsp.SignatureHelpTriggerKind.TriggerCharacter,
                    trigger_character=trigger_character,
                    is_retrigger=False,
                )
            return lsp.SignatureHelpParams(
                text_document=lsp.TextDocumentIdentifier(uri=self.buffer.uri),
                position=self._position(binding, lnum, line, col),
                context=context,
            )

        self.dispatch(cycle, bindings, params_for, self._on_signature_response)

    def _on_signature_response(self, cycle: RequestCycle, server_id: str, response: Response) -> None:
        if cycle.cancelled:
            return
        if cycle.record(server_id, response) and self._signature_cycle is cycle:
            self._signature_cycle = None
        if response.error is not None:
            message = getattr(response.error, 'message', None) or str(response.error)
            self.reporter.once(f'{server_id}: signature help failed: {message}')
            return
        result = response.result
        if result is None or self.signature_view is None:
            return
        try:
            if isinstance(result, dict):
                result = get_converter().structure(result, lsp.SignatureHelp)
            if result.signatures:
                self.signature_view.show_signature(server_id, result)
        except Exception:
            logger.exception('%s: failed to show signature help from %s', self.buffer.uri, server_id)


# ---------------------------------------------------------------------------
# Session-wide registry
# ---------------------------------------------------------------------------

class CompletionManager:
    """Owns one :class:`BufferCompleter` per buffer URI.

    A completer is created when the first server attaches to a buffer and
    torn down when the last one detaches.  The latency estimate, reporter,
    snippet providers and command registry are shared.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        loop: Scheduler | None = None,
        reporter: Reporter | None = None,
        snippets: SnippetProviders | None = None,
        commands: CommandRegistry | None = None,
        matcher: Matcher | None = None,
    ):
        self.transport = transport
        self.loop = loop
        self.latency = LatencyEstimator()
        self.reporter = reporter or Reporter()
        self.snippets = snippets or SnippetProviders()
        self.commands = commands or global_commands
        self.matcher = matcher
        self._completers: dict[str, BufferCompleter] = {}

    def attach(
        self,
        buffer: TextBuffer,
        popup: Popup,
        binding: ClientBinding,
        signature_view: SignatureView | None = None,
    ) -> BufferCompleter:
        completer = self._completers.get(buffer.uri)
        if completer is None:
            check_host(buffer=buffer, transport=self.transport, popup=popup)
            completer = BufferCompleter(
                buffer, self.transport, popup,
                loop=self.loop,
                latency=self.latency,
                reporter=self.reporter,
                snippets=self.snippets,
                commands=self.commands,
                signature_view=signature_view,
                matcher=self.matcher,
            )
            self._completers[buffer.uri] = completer
        completer.attach(binding)
        return completer

    def detach(self, uri: str, server_id: str) -> None:
        completer = self._completers.get(uri)
        if completer is None:
            return
        if not completer.detach(server_id):
            del self._completers[uri]
            logger.debug('%s: last server detached', uri)

    def detach_server(self, server_id: str) -> None:
        for uri in list(self._completers):
            self.detach(uri, server_id)

    def get(self, uri: str) -> BufferCompleter | None:
        return self._completers.get(uri)

    def __contains__(self, uri: str) -> bool:
        return uri in self._completers
