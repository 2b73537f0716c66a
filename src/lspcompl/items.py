"""
Completion item normalization.

Turns one ``lsp.CompletionItem`` into a :class:`NormalizedMatch`: the record
a popup menu displays and filters on.  The ``word`` is both the text the
popup matches against the typed prefix and the literal text inserted on
selection, so picking it well matters more than anything else here:

* snippets are abbreviation driven, their ``label`` is usually the better
  word unless the text edit clearly extends what the user typed;
* plain-text edits may carry trailing newlines or indentation that must not
  end up in the popup.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

import attrs
from lsprotocol import types as lsp
from lsprotocol.converters import get_converter

_converter = get_converter()

_LEADING_WORD_RE = re.compile(r'\w*')
_LEADING_NONSPACE_RE = re.compile(r'\S*')


@dataclass
class NormalizedMatch:
    word: str
    abbr: str
    kind: str = ''
    menu: str = ''
    info: str = ''
    icase: int = 1
    dup: int = 1
    empty: int = 1
    equal: int = 0
    client_id: str | None = None
    item: lsp.CompletionItem | None = field(default=None, repr=False)


def kind_name(kind) -> str:
    """Return the ``CompletionItemKind`` member name, or '' if unknown."""
    if kind is None:
        return ''
    try:
        return lsp.CompletionItemKind(kind).name
    except ValueError:
        return ''


def get_documentation(item: lsp.CompletionItem) -> str:
    docs = item.documentation
    if isinstance(docs, str):
        return docs
    if isinstance(docs, lsp.MarkupContent) and isinstance(docs.value, str):
        return docs.value
    return ''


def edit_text(item: lsp.CompletionItem) -> str | None:
    """New text of the item's ``TextEdit``/``InsertReplaceEdit``, if any."""
    if item.text_edit is None:
        return None
    return item.text_edit.new_text


def edit_range(item: lsp.CompletionItem) -> lsp.Range | None:
    """The range a text edit replaces; the insert range for insert/replace edits."""
    te = item.text_edit
    if te is None:
        return None
    if isinstance(te, lsp.InsertReplaceEdit):
        return te.insert
    return te.range


def is_snippet(item: lsp.CompletionItem) -> bool:
    return item.insert_text_format == lsp.InsertTextFormat.Snippet


def _word(item: lsp.CompletionItem, fuzzy: bool, offset: int) -> str:
    if kind_name(item.kind) == 'Snippet':
        return item.label

    insert_text = item.insert_text or None   # '' counts as absent
    new_text = edit_text(item)

    if is_snippet(item):
        if new_text is not None:
            if fuzzy or new_text[offset:].startswith(item.label):
                return new_text
            return item.label
        if insert_text:
            return _LEADING_WORD_RE.match(insert_text).group() or item.label
        return item.label

    if new_text is not None:
        return _LEADING_NONSPACE_RE.match(new_text).group()
    if insert_text:
        return insert_text
    return item.label


def convert_item(
    item: lsp.CompletionItem,
    fuzzy: bool = False,
    offset: int = 0,
    client_id: str | None = None,
) -> NormalizedMatch:
    """Normalize *item* for display.

    *offset* is the number of characters the server's replacement range
    starts before the editor's own word boundary (e.g. the opening quote of
    a JSON key).
    """
    return NormalizedMatch(
        word=_word(item, fuzzy, offset),
        abbr=item.label,
        kind=kind_name(item.kind),
        menu=item.detail or '',
        info=get_documentation(item),
        icase=1,
        dup=1,
        empty=1,
        equal=1 if fuzzy else 0,
        client_id=client_id,
        item=item,
    )


# ---------------------------------------------------------------------------
# Response payloads
# ---------------------------------------------------------------------------

def structure_result(result: Any) -> lsp.CompletionList | list[lsp.CompletionItem] | None:
    """Accept typed results as-is and structure raw JSON dicts/lists."""
    if result is None:
        return None
    if isinstance(result, dict):
        return _converter.structure(result, lsp.CompletionList)
    if isinstance(result, (list, tuple)):
        return [
            _converter.structure(i, lsp.CompletionItem) if isinstance(i, dict) else i
            for i in result
        ]
    return result


def apply_item_defaults(
    item: lsp.CompletionItem,
    defaults,
) -> lsp.CompletionItem:
    """Return *item* with response-level defaults filled in.

    Fields already set on the item always win.  An ``edit_range`` default
    becomes a text edit whose new text is ``text_edit_text``, else
    ``insert_text``, else ``label``.
    """
    if defaults is None:
        return item
    changes: dict[str, Any] = {}
    for name in ('commit_characters', 'insert_text_format', 'insert_text_mode', 'data'):
        value = getattr(defaults, name, None)
        if value is not None and getattr(item, name, None) is None:
            changes[name] = value

    rng = getattr(defaults, 'edit_range', None)
    if rng is not None and item.text_edit is None:
        new_text = item.text_edit_text or item.insert_text or item.label
        if isinstance(rng, lsp.Range):
            changes['text_edit'] = lsp.TextEdit(range=rng, new_text=new_text)
        else:
            changes['text_edit'] = lsp.InsertReplaceEdit(
                new_text=new_text, insert=rng.insert, replace=rng.replace,
            )
    return attrs.evolve(item, **changes) if changes else item


def extract_items(result) -> tuple[list[lsp.CompletionItem], bool]:
    """Return ``(items, is_incomplete)`` with item defaults applied."""
    result = structure_result(result)
    if result is None:
        return [], False
    if isinstance(result, lsp.CompletionList):
        defaults = result.item_defaults
        items = [apply_item_defaults(i, defaults) for i in result.items or []]
        return items, bool(result.is_incomplete)
    return list(result), False
