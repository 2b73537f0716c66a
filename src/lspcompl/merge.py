"""
Merge completion responses from every server attached to a buffer.

Each server's response is handled in isolation (item defaults, boundary,
normalization) and the results are concatenated.  Only the start column is
shared: the popup has a single one, so when servers disagree on it the
editor's own word boundary is used for the whole cycle.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Mapping

from lspcompl.boundary import UTF16, resolve_start_col
from lspcompl.host import Response
from lspcompl.items import NormalizedMatch, convert_item, extract_items

if TYPE_CHECKING:
    from lspcompl.orchestrator import ClientBinding
    from lspcompl.report import Reporter

logger = logging.getLogger(__name__)

Matcher = Callable[[str, str], bool]


@dataclass
class MergeResult:
    matches: list[NormalizedMatch] = field(default_factory=list)
    start_col: int = 0
    is_incomplete: bool = False


def prefix_matcher(prefix: str, text: str) -> bool:
    """Case-insensitive prefix match, usable as a simple ``matcher``."""
    return text.lower().startswith(prefix.lower())


def sort_key(match: NormalizedMatch) -> str:
    item = match.item
    if item is None:
        return match.abbr
    return item.sort_text if item.sort_text is not None else item.label


def _error_message(server_id: str, error: BaseException) -> str:
    message = getattr(error, 'message', None) or str(error) or type(error).__name__
    return f'{server_id}: completion request failed: {message}'


def merge_responses(
    naive_col: int,
    line: str,
    lnum: int,
    responses: Mapping[str, Response],
    bindings: Mapping[str, ClientBinding] | None = None,
    *,
    cursor_col: int | None = None,
    matcher: Matcher | None = None,
    reporter: Reporter | None = None,
) -> MergeResult:
    """Combine per-server *responses* into one :class:`MergeResult`.

    *matcher*, if given, is called as ``matcher(prefix, filter_text)`` to
    drop candidates on the client side.  An empty prefix keeps everything,
    as do servers doing their own fuzzy filtering.
    """
    bindings = bindings or {}
    per_server: list[tuple[str, list, int | None]] = []
    is_incomplete = False

    for server_id, response in responses.items():
        if response.error is not None:
            msg = _error_message(server_id, response.error)
            if reporter is not None:
                reporter.once(msg)
            else:
                logger.warning(msg)
            continue
        items, incomplete = extract_items(response.result)
        is_incomplete = is_incomplete or incomplete
        binding = bindings.get(server_id)
        encoding = binding.offset_encoding if binding else UTF16
        resolved = resolve_start_col(lnum, line, items, encoding)
        logger.debug('merge: %s returned %d items, start col %s (naive %d)',
                     server_id, len(items), resolved, naive_col)
        per_server.append((server_id, items, resolved))

    opinions = {resolved for _, _, resolved in per_server if resolved is not None}
    if len(opinions) == 1:
        start_col = opinions.pop()
    else:
        if len(opinions) > 1:
            logger.debug('merge: servers disagree on start column %s, using %d',
                         sorted(opinions), naive_col)
        start_col = naive_col

    if cursor_col is None:
        cursor_col = len(line.encode('utf-8'))
    prefix = line.encode('utf-8')[start_col:cursor_col].decode('utf-8', errors='ignore')

    matches: list[NormalizedMatch] = []
    for server_id, items, resolved in per_server:
        binding = bindings.get(server_id)
        fuzzy = bool(binding and binding.server_side_fuzzy_completion)
        offset = 0
        if resolved is not None and resolved < naive_col:
            offset = len(line.encode('utf-8')[resolved:naive_col].decode('utf-8', errors='ignore'))
        for item in items:
            match = convert_item(item, fuzzy, offset, client_id=server_id)
            if matcher is not None and prefix and not fuzzy:
                if not matcher(prefix, item.filter_text or match.word):
                    continue
            matches.append(match)

    matches.sort(key=sort_key)
    return MergeResult(matches=matches, start_col=start_col, is_incomplete=is_incomplete)
