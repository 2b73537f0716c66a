"""
Completion settings.

Settings are resolved from, in increasing priority:

1. Built-in defaults (:class:`CompletionSettings`).
2. A ``.lspcompl.toml`` file in the workspace root.  Top-level keys apply
   to every server, ``[servers.<id>]`` tables override them per server.
3. An options dict supplied by the host (e.g. from the editor's own
   configuration).  Keys may be snake_case or camelCase.
"""
from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILENAME = '.lspcompl.toml'


@dataclass(frozen=True)
class CompletionSettings:
    leading_debounce_ms: float = 50
    subsequent_debounce_ms: float | None = None   # None: use measured latency
    server_side_fuzzy_completion: bool = False
    trigger_on_delete: bool = False
    delete_debounce_ms: float = 150
    resolve_edits: bool = True
    log_level: str | None = None

    def merged(self, options: dict | None) -> CompletionSettings:
        """Return a copy with the recognised keys of *options* applied."""
        if not options:
            return self
        known = {f.name for f in dataclasses.fields(self)}
        changes = {}
        for key, value in options.items():
            name = _snake(key)
            if name in known:
                changes[name] = value
            else:
                logger.debug('ignoring unknown completion setting %r', key)
        return dataclasses.replace(self, **changes)


def _snake(key: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', key).lower()


def _read_project_config(workspace_root: str | None) -> dict:
    """Parse ``.lspcompl.toml`` in *workspace_root*; {} if absent or invalid."""
    if not workspace_root:
        return {}
    try:
        import tomllib  # Python 3.11+
    except ImportError:
        import tomli as tomllib

    config_path = Path(workspace_root) / CONFIG_FILENAME
    if not config_path.exists():
        return {}
    try:
        return tomllib.loads(config_path.read_text(encoding='utf-8'))
    except Exception:
        logger.warning('failed to read %s', config_path, exc_info=True)
        return {}


def load_settings(
    workspace_root: str | None = None,
    server_id: str | None = None,
    options: dict | None = None,
) -> CompletionSettings:
    data = _read_project_config(workspace_root)
    servers = data.pop('servers', {}) if isinstance(data.get('servers'), dict) else {}
    settings = CompletionSettings().merged(data)
    if server_id is not None:
        settings = settings.merged(servers.get(server_id))
    settings = settings.merged(options)
    apply_log_level(settings.log_level)
    return settings


def apply_log_level(raw: str | None) -> None:
    """Set the package logger level from a string like 'debug', 'warning', etc."""
    if not raw:
        return
    level = getattr(logging, raw.upper(), None)
    if isinstance(level, int):
        logging.getLogger('lspcompl').setLevel(level)
