"""Tests for lspcompl.boundary: offset encodings and replacement start columns."""
from __future__ import annotations

from lsprotocol import types as lsp

from lspcompl.boundary import UTF8, UTF16, UTF32, byte_col, char_col, naive_start_col, resolve_start_col


def _item(start: int, end: int, line: int = 0, new_text: str = 'x') -> lsp.CompletionItem:
    return lsp.CompletionItem(
        label=new_text,
        text_edit=lsp.TextEdit(
            range=lsp.Range(
                start=lsp.Position(line=line, character=start),
                end=lsp.Position(line=line, character=end),
            ),
            new_text=new_text,
        ),
    )


class TestOffsets:
    def test_ascii_is_identity(self):
        for enc in (UTF8, UTF16, UTF32):
            assert byte_col('hello', 3, enc) == 3
            assert char_col('hello', 3, enc) == 3

    def test_multibyte(self):
        line = 'äx'          # ä: 2 bytes, 1 UTF-16 unit
        assert byte_col(line, 1, UTF16) == 2
        assert char_col(line, 2, UTF16) == 1

    def test_astral_plane(self):
        line = '😀x'          # 4 bytes, 2 UTF-16 units, 1 UTF-32 unit
        assert byte_col(line, 2, UTF16) == 4
        assert byte_col(line, 1, UTF32) == 4
        assert char_col(line, 4, UTF16) == 2
        assert char_col(line, 4, UTF32) == 1

    def test_past_end_clamps(self):
        assert byte_col('ab', 10, UTF16) == 2
        assert byte_col('ab', 10, UTF8) == 2


class TestNaiveStartCol:
    def test_keyword_run(self):
        line = "require('plenary.asy"
        assert naive_start_col(line, len(line)) == 17

    def test_no_keyword_before_cursor(self):
        assert naive_start_col('foo(', 4) == 4

    def test_empty_line(self):
        assert naive_start_col('', 0) == 0


class TestResolveStartCol:
    def test_agreeing_edits(self):
        line = "require('plenary.asy"
        items = [_item(9, 20, new_text='plenary.async'), _item(9, 20, new_text='plenary.busted')]
        assert resolve_start_col(0, line, items, UTF16) == 9

    def test_disagreeing_edits_have_no_opinion(self):
        assert resolve_start_col(0, 'abcdef', [_item(1, 3), _item(2, 3)]) is None

    def test_inverted_range_has_no_opinion(self):
        assert resolve_start_col(0, 'abcdef', [_item(4, 2)]) is None

    def test_other_lines_ignored(self):
        assert resolve_start_col(0, 'abc', [_item(1, 2, line=5)]) is None
        assert resolve_start_col(0, 'abc', [_item(1, 2, line=5), _item(2, 3)]) == 2

    def test_items_without_edits(self):
        assert resolve_start_col(0, 'abc', [lsp.CompletionItem(label='abc')]) is None

    def test_converts_server_units_to_bytes(self):
        line = 'ä.fo'
        assert resolve_start_col(0, line, [_item(2, 4)], UTF16) == 3
        assert resolve_start_col(0, line, [_item(3, 5)], UTF8) == 3
