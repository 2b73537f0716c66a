"""Tests for lspcompl.accept: snippet expansion, additional edits and commands."""
from __future__ import annotations

import pytest
from lsprotocol import types as lsp

from lspcompl.accept import apply_text_edits
from lspcompl.commands import CommandRegistry
from lspcompl.headless import LineBuffer
from lspcompl.host import ResponseError
from lspcompl.items import NormalizedMatch
from lspcompl.snippets import SnippetProviders

COMPLETION = lsp.TEXT_DOCUMENT_COMPLETION
RESOLVE = lsp.COMPLETION_ITEM_RESOLVE
EXECUTE = lsp.WORKSPACE_EXECUTE_COMMAND
SNIPPET = lsp.InsertTextFormat.Snippet


def _edit(line: int, start: int, end: int, new_text: str) -> lsp.TextEdit:
    return lsp.TextEdit(
        range=lsp.Range(
            start=lsp.Position(line=line, character=start),
            end=lsp.Position(line=line, character=end),
        ),
        new_text=new_text,
    )


def _accept(completer, transport, popup, buffer, item):
    completer.trigger_completion()
    transport.last(COMPLETION).respond(result=[item])
    return popup.accept(0, buffer)


@pytest.fixture
def calls():
    return []


@pytest.fixture
def recorder(calls):
    def handler(command, context):
        calls.append((command.command, command.arguments, context))
    return handler


class TestCompleteDone:
    def test_suppressed_close_is_ignored(self, completer, make_binding):
        completer.attach(make_binding())
        completer.context.suppress_complete_done = True
        completer.context.expand_snippet = True
        completer.on_complete_done(None)
        assert completer.context.suppress_complete_done is False
        assert completer.context.expand_snippet is True

    def test_dismiss_resets(self, completer, transport, popup, make_binding):
        completer.attach(make_binding())
        completer.trigger_completion()
        transport.last(COMPLETION).respond(result=[lsp.CompletionItem(label='x')])
        completer.accept_pending()
        popup.dismiss()
        assert completer.context.expand_snippet is False

    def test_accept_during_subsequent_debounce(self, completer, transport, popup, buffer, loop,
                                               snippet_engine, make_binding):
        item = lsp.CompletionItem(label='foo', insert_text='foo(${1})', insert_text_format=SNIPPET)
        completer.attach(make_binding())
        completer.trigger_completion()
        transport.last(COMPLETION).respond(result=lsp.CompletionList(is_incomplete=True, items=[item]))

        completer.on_char_typed('f')
        assert completer.accept_pending() is True
        popup.accept(0, buffer)
        loop.advance(1)

        assert snippet_engine.expanded == ['foo(${1})']
        assert buffer.lines == ['']
        assert len(transport.of(COMPLETION)) == 1
        assert not popup.is_visible()

    def test_match_without_item_resets(self, completer):
        completer.context.expand_snippet = True
        completer.on_complete_done(NormalizedMatch(word='x', abbr='x'))
        assert completer.context.expand_snippet is False


class TestSnippetExpansion:
    @pytest.fixture
    def item(self):
        return lsp.CompletionItem(label='add', insert_text='add(${1:x})', insert_text_format=SNIPPET)

    @pytest.fixture
    def line_with_suffix(self, buffer):
        buffer.set_text((0, 1), (0, 1), ')')
        assert buffer.lines == ['a)']
        assert buffer.cursor == (0, 1)
        return buffer

    def test_expands_with_suffix(self, completer, transport, popup, line_with_suffix,
                                 snippet_engine, item, make_binding):
        completer.attach(make_binding())
        completer.trigger_completion()
        transport.last(COMPLETION).respond(result=[item])
        assert completer.accept_pending() is True
        popup.accept(0, line_with_suffix)
        assert line_with_suffix.lines == ['']
        assert snippet_engine.expanded == ['add(${1:x}))']

    def test_not_armed_keeps_word(self, completer, transport, popup, line_with_suffix,
                                  snippet_engine, item, make_binding):
        completer.attach(make_binding())
        _accept(completer, transport, popup, line_with_suffix, item)
        assert line_with_suffix.lines == ['add)']
        assert snippet_engine.expanded == []

    def test_without_engine_reinserts_word(self, completer, transport, popup, line_with_suffix,
                                           notify, item, make_binding):
        completer.snippets = SnippetProviders()
        completer.attach(make_binding())
        completer.trigger_completion()
        transport.last(COMPLETION).respond(result=[item])
        completer.accept_pending()
        popup.accept(0, line_with_suffix)
        assert line_with_suffix.lines == ['add)']
        assert notify.messages[0][0] == 'lspcompl: no snippet engine available, inserted plain text'

    def test_text_edit_preferred(self, completer, transport, popup, buffer, snippet_engine, make_binding):
        item = lsp.CompletionItem(label='wait', insert_text='wait', text_edit=_edit(0, 0, 1, 'wait($0)'),
                                  insert_text_format=SNIPPET)
        completer.attach(make_binding())
        completer.trigger_completion()
        transport.last(COMPLETION).respond(result=[item])
        completer.accept_pending()
        popup.accept(0, buffer)
        assert snippet_engine.expanded == ['wait($0)']

    def test_plain_text_item_not_expanded(self, completer, transport, popup, buffer,
                                          snippet_engine, make_binding):
        completer.attach(make_binding())
        completer.trigger_completion()
        transport.last(COMPLETION).respond(result=[lsp.CompletionItem(label='abc')])
        completer.accept_pending()
        popup.accept(0, buffer)
        assert buffer.lines == ['abc']
        assert snippet_engine.expanded == []


class TestAdditionalTextEdits:
    @pytest.fixture
    def two_lines(self, buffer):
        buffer.set_text((0, 0), (0, 0), 'header\n')
        assert buffer.cursor == (1, 1)
        return buffer

    def test_applied_except_cursor_line(self, completer, transport, popup, two_lines, make_binding):
        item = lsp.CompletionItem(
            label='abc',
            additional_text_edits=[_edit(0, 0, 0, 'import x\n'), _edit(1, 0, 0, 'ignored')],
        )
        completer.attach(make_binding())
        _accept(completer, transport, popup, two_lines, item)
        assert two_lines.lines == ['import x', 'header', 'abc']
        assert two_lines.cursor == (2, 3)

    def test_resolved_edits(self, completer, transport, popup, two_lines, make_binding, calls, recorder):
        binding = make_binding(resolve_provider=True)
        binding.commands.register('after', recorder)
        completer.attach(binding)
        item = lsp.CompletionItem(label='abc', command=lsp.Command(title='', command='after'))
        _accept(completer, transport, popup, two_lines, item)

        req = transport.last(RESOLVE)
        assert req.params is item
        assert calls == []
        req.respond(result={'label': 'abc', 'additionalTextEdits': [
            {'range': {'start': {'line': 0, 'character': 0}, 'end': {'line': 0, 'character': 6}},
             'newText': 'HEADER'},
        ]})
        assert two_lines.lines == ['HEADER', 'abc']
        assert len(calls) == 1

    def test_stale_resolve_discards_edits(self, completer, transport, popup, two_lines,
                                          make_binding, calls, recorder):
        binding = make_binding(resolve_provider=True)
        binding.commands.register('after', recorder)
        completer.attach(binding)
        item = lsp.CompletionItem(label='abc', command=lsp.Command(title='', command='after'))
        _accept(completer, transport, popup, two_lines, item)

        two_lines.type('!')
        transport.last(RESOLVE).respond(result=lsp.CompletionItem(
            label='abc', additional_text_edits=[_edit(0, 0, 6, 'HEADER')],
        ))
        assert two_lines.lines == ['header', 'abc!']
        assert len(calls) == 1

    def test_resolve_error_warns(self, completer, transport, popup, buffer, notify, make_binding):
        completer.attach(make_binding(resolve_provider=True))
        _accept(completer, transport, popup, buffer, lsp.CompletionItem(label='abc'))
        transport.last(RESOLVE).respond(error=ResponseError('bad'))
        assert notify.messages[0][0] == 'server: completionItem/resolve failed: bad'

    def test_new_completion_cancels_resolve(self, completer, transport, popup, buffer, make_binding,
                                            calls, recorder):
        binding = make_binding(resolve_provider=True)
        binding.commands.register('after', recorder)
        completer.attach(binding)
        item = lsp.CompletionItem(label='abc', command=lsp.Command(title='', command='after'))
        _accept(completer, transport, popup, buffer, item)
        resolve = transport.last(RESOLVE)
        completer.trigger_completion()
        assert resolve.cancelled
        assert len(calls) == 1
        resolve.respond_anyway(result=lsp.CompletionItem(label='abc'))
        assert len(calls) == 1


class TestCanceledResolve:
    @pytest.fixture
    def line_with_rest(self, buffer):
        buffer.set_text((0, 1), (0, 1), ') + rest')
        assert buffer.cursor == (0, 1)
        return buffer

    @pytest.fixture
    def item(self):
        return lsp.CompletionItem(label='abc', insert_text='abc($1)', insert_text_format=SNIPPET)

    def _accept_with_expansion(self, completer, transport, popup, buffer, item):
        completer.trigger_completion()
        transport.last(COMPLETION).respond(result=[item])
        completer.accept_pending()
        popup.accept(0, buffer)
        assert buffer.lines == ['']
        return transport.last(RESOLVE)

    def test_insert_leave_still_expands(self, completer, transport, popup, line_with_rest, item,
                                        snippet_engine, make_binding):
        completer.attach(make_binding(resolve_provider=True))
        resolve = self._accept_with_expansion(completer, transport, popup, line_with_rest, item)
        completer.on_insert_leave()
        assert resolve.cancelled
        assert snippet_engine.expanded == ['abc($1)) + rest']

        resolve.respond_anyway(result=lsp.CompletionItem(label='abc'))
        assert snippet_engine.expanded == ['abc($1)) + rest']

    def test_new_completion_restores_text_without_engine(self, completer, transport, popup,
                                                         line_with_rest, item, make_binding):
        completer.snippets = SnippetProviders()
        completer.attach(make_binding(resolve_provider=True))
        self._accept_with_expansion(completer, transport, popup, line_with_rest, item)
        completer.trigger_completion()
        assert line_with_rest.lines == ['abc) + rest']

    def test_utf16_positions(self):
        buf = LineBuffer('file:///x', 'äb\nabc', cursor=(1, 3))
        applied = apply_text_edits(buf, 1, [_edit(0, 1, 2, 'c')], 'utf-16')
        assert applied == 1
        assert buf.lines == ['äc', 'abc']


class TestCommands:
    def test_binding_handler(self, completer, transport, popup, buffer, make_binding, calls, recorder):
        binding = make_binding()
        binding.commands.register('dummy', recorder)
        completer.attach(binding)
        item = lsp.CompletionItem(label='hello', command=lsp.Command(title='', command='dummy', arguments=[1]))
        _accept(completer, transport, popup, buffer, item)
        (name, arguments, context), = calls
        assert name == 'dummy'
        assert arguments == [1]
        assert context.server_id == 'server'
        assert context.item is item

    def test_global_handler(self, completer, transport, popup, buffer, make_binding, calls, recorder):
        completer.commands = CommandRegistry()
        completer.commands.register('editor.action')(recorder)
        completer.attach(make_binding())
        item = lsp.CompletionItem(label='x', command=lsp.Command(title='', command='editor.action'))
        _accept(completer, transport, popup, buffer, item)
        assert [c[0] for c in calls] == ['editor.action']

    def test_server_side_command(self, completer, transport, popup, buffer, notify, make_binding):
        completer.attach(make_binding(execute_commands=frozenset({'server.cmd'})))
        item = lsp.CompletionItem(label='x', command=lsp.Command(title='', command='server.cmd',
                                                                 arguments=['a']))
        _accept(completer, transport, popup, buffer, item)
        req = transport.last(EXECUTE)
        assert req.params.command == 'server.cmd'
        assert req.params.arguments == ['a']
        req.respond(error=ResponseError('denied'))
        assert notify.messages[0][0] == 'server: server.cmd failed: denied'

    def test_unsupported_command_warns_once(self, completer, transport, popup, buffer, notify, make_binding):
        completer.attach(make_binding())
        item = lsp.CompletionItem(label='x', command=lsp.Command(title='', command='mystery'))
        for _ in range(2):
            buffer.set_text((0, 0), (0, len(buffer.lines[0])), 'a')
            buffer.set_cursor(0, 1)
            _accept(completer, transport, popup, buffer, item)
        assert [m for m, _ in notify.messages] == [
            'Language server `server` does not support command `mystery`. '
            'This command may require a client extension.'
        ]

    def test_failing_handler_warns(self, completer, transport, popup, buffer, notify, make_binding):
        def boom(command, context):
            raise RuntimeError('nope')
        binding = make_binding()
        binding.commands.register('boom', boom)
        completer.attach(binding)
        _accept(completer, transport, popup, buffer,
                lsp.CompletionItem(label='x', command=lsp.Command(title='', command='boom')))
        assert notify.messages[0][0] == 'lspcompl: command `boom` failed'
