"""
Snippet engine lookup.

Engines come and go during a session (plugins load lazily), so providers
are asked in priority order every time a snippet is expanded rather than
once at startup.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from lspcompl.host import SnippetEngine

logger = logging.getLogger(__name__)

Provider = Callable[[], Optional[SnippetEngine]]


class SnippetProviders:
    def __init__(self, providers: list[Provider] | None = None):
        self._providers: list[Provider] = list(providers or [])

    def register(self, provider: Provider, *, first: bool = False) -> None:
        if first:
            self._providers.insert(0, provider)
        else:
            self._providers.append(provider)

    def unregister(self, provider: Provider) -> None:
        self._providers.remove(provider)

    def engine(self) -> SnippetEngine | None:
        """Return the first engine a provider currently offers."""
        for provider in self._providers:
            try:
                engine = provider()
            except Exception:
                logger.debug('snippet provider %r failed', provider, exc_info=True)
                continue
            if engine is not None:
                return engine
        return None

    def __len__(self) -> int:
        return len(self._providers)
