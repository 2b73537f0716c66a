"""
lspcompl-probe – run one completion cycle against a real language server.

Usage
-----
    lspcompl-probe FILE LINE COL -- pyright-langserver --stdio
    lspcompl-probe --log-level DEBUG src/app.py 12 8 -- pylsp

LINE and COL are 1-based (COL counts characters).  The server is started
over stdio, FILE is opened, a completion is triggered at the position and
the merged popup entries are printed as ``word<TAB>kind<TAB>detail``.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog='lspcompl-probe',
        description='Trigger one LSP completion through lspcompl and print the popup entries.',
    )
    p.add_argument('file', nargs='?', help='Document to complete in')
    p.add_argument('line', nargs='?', type=int, help='1-based line number')
    p.add_argument('col', nargs='?', type=int, help='1-based character column')
    p.add_argument(
        'server',
        nargs=argparse.REMAINDER,
        help='Language server command line, after --',
    )
    p.add_argument(
        '--language-id',
        metavar='ID',
        default=None,
        help='languageId sent in didOpen (default: file suffix)',
    )
    p.add_argument(
        '--root',
        metavar='DIR',
        default=None,
        help='Workspace root (default: the file\'s directory); .lspcompl.toml is read from here',
    )
    p.add_argument(
        '--timeout',
        metavar='SECONDS',
        type=float,
        default=10.0,
        help='How long to wait for the completion result (default: 10)',
    )
    p.add_argument(
        '--version',
        action='store_true',
        default=False,
        help='Print the lspcompl version and exit',
    )
    p.add_argument(
        '--log-level',
        metavar='LEVEL',
        default='WARNING',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Logging level written to stderr (default: WARNING)',
    )
    return p


def _byte_col(line: str, col: int) -> int:
    return len(line[:max(col - 1, 0)].encode('utf-8'))


async def _probe(args) -> int:
    from lsprotocol import types as lsp
    from pygls.lsp.client import LanguageClient

    from lspcompl import __version__
    from lspcompl.capabilities import client_capabilities
    from lspcompl.config import load_settings
    from lspcompl.headless import LineBuffer, ListPopup
    from lspcompl.orchestrator import BufferCompleter, ClientBinding
    from lspcompl.transport import PyglsTransport

    path = Path(args.file).resolve()
    text = path.read_text(encoding='utf-8')
    uri = path.as_uri()
    root = Path(args.root).resolve() if args.root else path.parent
    server_id = Path(args.server[0]).name

    client = LanguageClient('lspcompl-probe', __version__)
    await client.start_io(*args.server)
    try:
        init = await client.initialize_async(lsp.InitializeParams(
            capabilities=client_capabilities(),
            process_id=os.getpid(),
            root_uri=root.as_uri(),
        ))
        client.initialized(lsp.InitializedParams())
        client.text_document_did_open(lsp.DidOpenTextDocumentParams(
            text_document=lsp.TextDocumentItem(
                uri=uri,
                language_id=args.language_id or path.suffix.lstrip('.'),
                version=0,
                text=text,
            ),
        ))

        loop = asyncio.get_running_loop()
        shown = loop.create_future()

        def on_show(start_col, matches):
            if not shown.done():
                shown.set_result((start_col, matches))

        lines = text.split('\n')
        lnum = args.line - 1
        buffer = LineBuffer(uri, text, cursor=(lnum, _byte_col(lines[lnum], args.col)))
        popup = ListPopup(on_show=on_show)
        transport = PyglsTransport()
        transport.add_client(server_id, client)
        completer = BufferCompleter(buffer, transport, popup, loop=loop)
        popup.on_close = completer.on_complete_done
        settings = load_settings(str(root), server_id)
        completer.attach(ClientBinding.from_capabilities(server_id, init.capabilities, settings))

        completer.trigger_completion()
        try:
            start_col, matches = await asyncio.wait_for(shown, args.timeout)
        except asyncio.TimeoutError:
            print(f'no completion result within {args.timeout}s', file=sys.stderr)
            return 1

        print(f'# start column {start_col}, {len(matches)} matches, '
              f'{completer.latency.value:.1f} ms', file=sys.stderr)
        for m in matches:
            print(f'{m.word}\t{m.kind}\t{m.menu}')
        return 0
    finally:
        await client.shutdown_async(None)
        client.exit(None)
        await client.stop()


def probe() -> None:
    """Entry point for the ``lspcompl-probe`` command."""
    import logging
    parser = _build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )

    from lspcompl import __version__

    if args.version:
        print(f'lspcompl {__version__}')
        sys.exit(0)

    if args.server and args.server[0] == '--':
        args.server = args.server[1:]
    if args.file is None or args.line is None or args.col is None or not args.server:
        parser.error('FILE, LINE, COL and a server command are required')

    sys.exit(asyncio.run(_probe(args)))


if __name__ == '__main__':
    probe()
