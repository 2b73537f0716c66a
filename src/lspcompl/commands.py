"""Registry for commands attached to completion items."""
from __future__ import annotations

import logging
from typing import Any, Callable

from lsprotocol import types as lsp

logger = logging.getLogger(__name__)

CommandHandler = Callable[[lsp.Command, Any], Any]


class CommandRegistry:
    """Map command names to client-side handlers.

    Handlers are called as ``handler(command, context)`` where *context* is
    the :class:`~lspcompl.accept.AcceptContext` of the accepted item.
    """

    def __init__(self):
        self._handlers: dict[str, CommandHandler] = {}

    def register(self, name: str, handler: CommandHandler | None = None):
        """Register *handler*; usable as a decorator when *handler* is omitted."""
        if handler is None:
            def decorator(fn: CommandHandler) -> CommandHandler:
                self._handlers[name] = fn
                return fn
            return decorator
        self._handlers[name] = handler
        return handler

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def get(self, name: str) -> CommandHandler | None:
        return self._handlers.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers


# Commands available to every server (editor-wide handlers).
global_commands = CommandRegistry()
