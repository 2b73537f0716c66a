"""
Completion acceptance.

When the popup reports that a candidate was chosen the host has already
inserted its ``word``.  What remains:

1. optionally replace that word with the expanded snippet (keeping the text
   that followed the cursor);
2. apply ``additionalTextEdits``, resolving the item first when the server
   only sends them lazily;
3. run the item's command.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from lsprotocol import types as lsp
from lsprotocol.converters import get_converter

from lspcompl.boundary import UTF16, byte_col
from lspcompl.host import Response
from lspcompl.items import NormalizedMatch, edit_text, is_snippet

if TYPE_CHECKING:
    from lspcompl.orchestrator import BufferCompleter, ClientBinding, RequestCycle

logger = logging.getLogger(__name__)


@dataclass
class AcceptContext:
    """An accepted item, as seen by command handlers."""
    match: NormalizedMatch
    item: lsp.CompletionItem
    binding: ClientBinding | None
    lnum: int
    start_col: int
    expand_snippet: bool = False
    suffix: str | None = None

    @property
    def server_id(self) -> str | None:
        return self.binding.server_id if self.binding else self.match.client_id


def _line_or_empty(buffer, lnum: int) -> str:
    try:
        return buffer.get_line(lnum)
    except IndexError:
        return ''


def apply_text_edits(buffer, lnum: int, edits, encoding: str = UTF16) -> int:
    """Apply *edits* that do not touch line *lnum*; returns how many were applied.

    Edits on the cursor line would move the cursor away from the completed
    word, so they are skipped.  Edits are applied bottom-up so earlier
    positions stay valid.
    """
    edits = [e for e in edits or [] if e.range.start.line != lnum]
    edits.sort(key=lambda e: (e.range.start.line, e.range.start.character), reverse=True)
    for edit in edits:
        start, end = edit.range.start, edit.range.end
        start_col = byte_col(_line_or_empty(buffer, start.line), start.character, encoding)
        end_col = byte_col(_line_or_empty(buffer, end.line), end.character, encoding)
        buffer.set_text((start.line, start_col), (end.line, end_col), edit.new_text)
    return len(edits)


class AcceptHandler:
    def __init__(self, completer: BufferCompleter):
        self.completer = completer

    def on_complete_done(self, match: NormalizedMatch | None) -> None:
        completer = self.completer
        ctx = completer.context
        if ctx.suppress_complete_done:
            ctx.suppress_complete_done = False
            return
        if match is None or match.item is None:
            completer.hard_reset()
            return

        buffer = completer.buffer
        item = match.item
        lnum, col = buffer.get_cursor()
        binding = completer.bindings.get(match.client_id) if match.client_id else None
        expand = (
            is_snippet(item)
            and ctx.expand_snippet
            and (item.text_edit is not None or bool(item.insert_text))
        )
        accepted = AcceptContext(match=match, item=item, binding=binding, lnum=lnum,
                                 start_col=col, expand_snippet=expand)
        if expand:
            line = buffer.get_line(lnum).encode('utf-8')
            accepted.start_col = max(col - len(match.word.encode('utf-8')), 0)
            accepted.suffix = line[col:].decode('utf-8', errors='ignore')
            buffer.set_text_range(lnum, accepted.start_col, len(line), '')
        completer.hard_reset()
        logger.debug('%s: accepted %r from %s (expand=%s)', buffer.uri, match.word,
                     match.client_id, expand)

        if item.additional_text_edits:
            self._apply_edits(accepted, item.additional_text_edits)
            self._finish(accepted)
        elif binding is not None and binding.resolve_provider:
            self._resolve(accepted)
        else:
            self._finish(accepted)

    # -- steps ----------------------------------------------------------------

    def _apply_edits(self, accepted: AcceptContext, edits) -> None:
        encoding = accepted.binding.offset_encoding if accepted.binding else UTF16
        try:
            apply_text_edits(self.completer.buffer, accepted.lnum, edits, encoding)
        except Exception:
            logger.exception('failed to apply additional text edits')
            self.completer.reporter.warn('lspcompl: failed to apply additional text edits')

    def _resolve(self, accepted: AcceptContext) -> None:
        from lspcompl.orchestrator import RequestCycle

        completer = self.completer
        buffer = completer.buffer
        binding = accepted.binding
        changedtick = buffer.changedtick

        def on_cancel() -> None:
            # the word is already stripped; expansion and the command still run
            logger.debug('%s: resolve canceled, finishing with the unresolved item', buffer.uri)
            self._finish(accepted)

        cycle = RequestCycle(lsp.COMPLETION_ITEM_RESOLVE, completer.loop.time(), [binding.server_id],
                             on_cancel=on_cancel)
        completer.context.pending.append(cycle)

        def on_result(cycle: RequestCycle, server_id: str, response: Response) -> None:
            if cycle.cancelled:
                logger.debug('dropping stale resolve response from %s', server_id)
                return
            cycle.record(server_id, response)
            if cycle in completer.context.pending:
                completer.context.pending.remove(cycle)
            try:
                self._on_resolved(accepted, response, changedtick)
            except Exception:
                logger.exception('%s: failed to handle resolved item', buffer.uri)
            finally:
                self._finish(accepted)

        completer.dispatch(cycle, [binding], lambda b: accepted.item, on_result)

    def _on_resolved(self, accepted: AcceptContext, response: Response, changedtick: int) -> None:
        buffer = self.completer.buffer
        if response.error is not None:
            message = getattr(response.error, 'message', None) or str(response.error)
            self.completer.reporter.warn(f'{accepted.server_id}: completionItem/resolve failed: {message}')
            return
        if buffer.changedtick != changedtick:
            logger.debug('%s: buffer changed while resolving, discarding edits', buffer.uri)
            return
        result = response.result
        if isinstance(result, dict):
            result = get_converter().structure(result, lsp.CompletionItem)
        edits = getattr(result, 'additional_text_edits', None)
        if edits:
            self._apply_edits(accepted, edits)

    def _finish(self, accepted: AcceptContext) -> None:
        if accepted.expand_snippet:
            self._expand_snippet(accepted)
        self.execute_command(accepted)

    def _expand_snippet(self, accepted: AcceptContext) -> None:
        completer = self.completer
        item = accepted.item
        text = edit_text(item)
        if text is None:
            text = item.insert_text or ''
        suffix = accepted.suffix or ''
        engine = completer.snippets.engine()
        if engine is None:
            completer.reporter.once('lspcompl: no snippet engine available, inserted plain text')
            completer.buffer.set_text_range(
                accepted.lnum, accepted.start_col, accepted.start_col, accepted.match.word + suffix,
            )
            return
        try:
            engine.expand(text + suffix)
        except Exception:
            logger.exception('snippet expansion failed for %r', text)
            completer.reporter.warn(f'lspcompl: snippet expansion failed for {item.label!r}')

    def execute_command(self, accepted: AcceptContext) -> None:
        """Run the item's command: binding handler, global handler, then the server."""
        command = accepted.item.command
        if command is None:
            return
        completer = self.completer
        binding = accepted.binding
        handler = binding.commands.get(command.command) if binding else None
        if handler is None:
            handler = completer.commands.get(command.command)
        if handler is not None:
            try:
                handler(command, accepted)
            except Exception:
                logger.exception('command %s failed', command.command)
                completer.reporter.warn(f'lspcompl: command `{command.command}` failed')
            return

        if binding is not None and command.command in binding.execute_commands:
            server_id = binding.server_id

            def on_result(response: Response) -> None:
                if response.error is not None:
                    message = getattr(response.error, 'message', None) or str(response.error)
                    completer.reporter.warn(f'{server_id}: {command.command} failed: {message}')

            params = lsp.ExecuteCommandParams(command=command.command, arguments=command.arguments)
            try:
                completer.transport.send_request(server_id, lsp.WORKSPACE_EXECUTE_COMMAND, params, on_result)
            except Exception:
                logger.exception('workspace/executeCommand to %s failed', server_id)
                completer.reporter.warn(f'{server_id}: {command.command} failed')
            return

        completer.reporter.once(
            f'Language server `{accepted.server_id}` does not support command `{command.command}`. '
            'This command may require a client extension.'
        )
