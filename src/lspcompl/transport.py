"""
pygls-backed transport.

Maps server ids to running ``pygls`` language clients and adapts their
future-based requests to the callback + cancel-handle shape the
orchestrator uses.  Canceling a request cancels its future, so a late
response never reaches the callback, and sends ``$/cancelRequest`` so the
server can stop working on it.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any

from lsprotocol import types as lsp
from pygls.lsp.client import LanguageClient

from lspcompl.host import Cancel, OnResult, Response, ResponseError

logger = logging.getLogger(__name__)


def _as_response_error(exc: BaseException) -> ResponseError:
    if isinstance(exc, ResponseError):
        return exc
    message = getattr(exc, 'message', None) or str(exc) or type(exc).__name__
    return ResponseError(message, getattr(exc, 'code', None))


class PyglsTransport:
    def __init__(self):
        self._clients: dict[str, LanguageClient] = {}

    def add_client(self, server_id: str, client: LanguageClient) -> None:
        self._clients[server_id] = client

    def remove_client(self, server_id: str) -> LanguageClient | None:
        return self._clients.pop(server_id, None)

    def client(self, server_id: str) -> LanguageClient:
        try:
            return self._clients[server_id]
        except KeyError:
            raise ResponseError(f'no client registered for {server_id}') from None

    def send_request(self, server_id: str, method: str, params: Any, on_result: OnResult) -> Cancel:
        client = self.client(server_id)
        msg_id = str(uuid.uuid4())
        future = client.protocol.send_request(method, params, msg_id=msg_id)
        logger.debug('-> %s %s (id %s)', server_id, method, msg_id)

        def done(fut) -> None:
            if fut.cancelled():
                logger.debug('<- %s %s (id %s) canceled', server_id, method, msg_id)
                return
            exc = fut.exception()
            response = Response(error=_as_response_error(exc)) if exc else Response(result=fut.result())
            try:
                on_result(response)
            except Exception:
                logger.exception('callback for %s %s failed', server_id, method)

        future.add_done_callback(done)

        def cancel() -> None:
            if future.done():
                return
            future.cancel()
            try:
                client.protocol.notify(lsp.CANCEL_REQUEST, lsp.CancelParams(id=msg_id))
            except Exception:
                logger.debug('could not notify %s of canceled request %s', server_id, msg_id,
                             exc_info=True)

        return cancel
