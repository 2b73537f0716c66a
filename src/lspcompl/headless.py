"""
In-memory host collaborators.

:class:`LineBuffer` and :class:`ListPopup` implement the host interfaces
without an editor.  The probe CLI drives a real server through them, and
they make the orchestrator testable.
"""
from __future__ import annotations

from typing import Callable

from lspcompl.host import Mode


class LineBuffer:
    """A list of lines with a cursor, a mode and a change counter.

    Columns are UTF-8 byte offsets, like the rest of the core.
    """

    def __init__(self, uri: str, text: str = '', cursor: tuple[int, int] = (0, 0),
                 mode: Mode = Mode.INSERT):
        self.uri = uri
        self.lines = text.split('\n')
        self.cursor = cursor
        self.mode = mode
        self._changedtick = 0

    @property
    def changedtick(self) -> int:
        return self._changedtick

    @property
    def text(self) -> str:
        return '\n'.join(self.lines)

    def get_current_line(self) -> str:
        return self.lines[self.cursor[0]]

    def get_line(self, lnum: int) -> str:
        if not 0 <= lnum < len(self.lines):
            raise IndexError(f'line {lnum} out of range')
        return self.lines[lnum]

    def get_cursor(self) -> tuple[int, int]:
        return self.cursor

    def set_cursor(self, lnum: int, col: int) -> None:
        self.cursor = (lnum, col)

    def get_mode(self) -> Mode:
        return self.mode

    def set_text_range(self, lnum: int, start_col: int, end_col: int, replacement: str) -> None:
        self.set_text((lnum, start_col), (lnum, end_col), replacement)

    def set_text(self, start: tuple[int, int], end: tuple[int, int], text: str) -> None:
        sl, sc = start
        el, ec = end
        if sl >= len(self.lines):
            self.lines.extend([''] * (sl - len(self.lines) + 1))
        if el >= len(self.lines):
            el = len(self.lines) - 1
            ec = len(self.lines[el].encode('utf-8'))
        head = self.lines[sl].encode('utf-8')[:sc]
        tail = self.lines[el].encode('utf-8')[ec:]
        new_lines = (head + text.encode('utf-8') + tail).decode('utf-8').split('\n')
        self.lines[sl:el + 1] = new_lines
        self._changedtick += 1
        self.cursor = self._moved_cursor((sl, sc), (el, ec), new_lines, len(tail))

    def _moved_cursor(self, start, end, new_lines: list[str], tail_len: int) -> tuple[int, int]:
        cl, cc = self.cursor
        if (cl, cc) <= start:
            return self.cursor
        if (cl, cc) < end:
            return start
        last = len(new_lines) - 1
        if cl == end[0]:
            new_col = cc - end[1] + len(new_lines[last].encode('utf-8')) - tail_len
            return start[0] + last, new_col
        return cl + last - (end[0] - start[0]), cc

    def type(self, text: str) -> None:
        """Insert *text* at the cursor and move the cursor past it."""
        lnum, col = self.cursor
        self.set_text((lnum, col), (lnum, col), text)
        inserted = text.split('\n')
        if len(inserted) == 1:
            self.cursor = (lnum, col + len(text.encode('utf-8')))
        else:
            self.cursor = (lnum + len(inserted) - 1, len(inserted[-1].encode('utf-8')))

    def backspace(self) -> None:
        lnum, col = self.cursor
        if col == 0:
            return
        before = self.lines[lnum].encode('utf-8')[:col].decode('utf-8', errors='ignore')
        width = len(before[-1:].encode('utf-8'))
        self.set_text((lnum, col - width), (lnum, col), '')


class ListPopup:
    """Records what would be shown in a completion popup.

    ``on_close`` receives the accepted match, or None when the popup closes
    without a selection (including when it is replaced by a new one).
    """

    def __init__(self, on_close: Callable | None = None, on_show: Callable | None = None):
        self.on_close = on_close
        self.on_show = on_show
        self.visible = False
        self.start_col: int | None = None
        self.matches: list = []
        self.history: list[tuple[int, list]] = []

    def show(self, start_col: int, matches: list) -> None:
        if self.visible:
            self._close(None)
        self.start_col = start_col
        self.matches = list(matches)
        self.history.append((start_col, self.matches))
        self.visible = bool(matches)
        if self.on_show is not None:
            self.on_show(start_col, self.matches)

    def is_visible(self) -> bool:
        return self.visible

    def accept(self, index: int = 0, buffer: LineBuffer | None = None):
        """Choose ``matches[index]``; inserts its word into *buffer* if given."""
        match = self.matches[index]
        if buffer is not None:
            lnum, col = buffer.get_cursor()
            buffer.set_text((lnum, self.start_col), (lnum, col), match.word)
        self._close(match)
        return match

    def dismiss(self) -> None:
        if self.visible:
            self._close(None)

    def _close(self, match) -> None:
        self.visible = False
        if self.on_close is not None:
            self.on_close(match)
