"""
Replacement boundary resolution.

The editor guesses where the word being completed starts by scanning
keyword characters backwards from the cursor.  A language server may use a
different boundary, e.g. for Lua

    require('plenary.asy|
            ^       ^   ^
            |       |   cursor
            |       naive start
            textEdit.range.start  (newText = 'plenary.async')

Text edits carry the server's boundary, but positions are counted in the
server's offset encoding while editor columns are UTF-8 bytes.
"""
from __future__ import annotations

import re
from typing import Iterable

from lsprotocol import types as lsp

from lspcompl.items import edit_range

UTF8 = 'utf-8'
UTF16 = 'utf-16'
UTF32 = 'utf-32'

_KEYWORD_RUN_RE = re.compile(r'\w*$')


def _units(ch: str, encoding: str) -> int:
    if encoding == UTF16:
        return 2 if ord(ch) > 0xFFFF else 1
    if encoding == UTF32:
        return 1
    return len(ch.encode('utf-8'))


def byte_col(line: str, index: int, encoding: str = UTF16) -> int:
    """Convert a server *index* (in *encoding* code units) to a byte column.

    Indexes past the end of *line* clamp to its byte length.
    """
    if encoding == UTF8:
        return min(index, len(line.encode('utf-8')))
    units = 0
    col = 0
    for ch in line:
        if units >= index:
            break
        units += _units(ch, encoding)
        col += len(ch.encode('utf-8'))
    return col


def char_col(line: str, col: int, encoding: str = UTF16) -> int:
    """Convert a byte column to an index in *encoding* code units."""
    if encoding == UTF8:
        return col
    prefix = line.encode('utf-8')[:col].decode('utf-8', errors='ignore')
    return sum(_units(ch, encoding) for ch in prefix)


def naive_start_col(line: str, cursor_col: int, pattern: re.Pattern = _KEYWORD_RUN_RE) -> int:
    """Byte column where the keyword run ending at the cursor starts."""
    before = line.encode('utf-8')[:cursor_col].decode('utf-8', errors='ignore')
    m = pattern.search(before)
    start = m.start() if m else len(before)
    return len(before[:start].encode('utf-8'))


def resolve_start_col(
    lnum: int,
    line: str,
    items: Iterable[lsp.CompletionItem],
    encoding: str = UTF16,
) -> int | None:
    """Return the byte column all text edits on *lnum* agree on, or None.

    Edits on other lines are ignored.  Differing start characters, or a
    same-line range whose start lies after its end, mean no opinion.
    """
    start_char = None
    for item in items:
        rng = edit_range(item)
        if rng is None or rng.start.line != lnum:
            continue
        if (rng.end.line, rng.end.character) < (rng.start.line, rng.start.character):
            return None
        if start_char is not None and start_char != rng.start.character:
            return None
        start_char = rng.start.character
    if start_char is None:
        return None
    return byte_col(line, start_char, encoding)
