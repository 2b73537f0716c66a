"""Client capabilities advertised to servers by transports using lspcompl."""
from __future__ import annotations

from lsprotocol import types as lsp
from lsprotocol.converters import get_converter

RESOLVE_PROPERTIES = ['additionalTextEdits', 'documentation', 'detail']
ITEM_DEFAULTS = ['editRange', 'insertTextFormat', 'insertTextMode', 'data', 'commitCharacters']

COMPLETION_CAPABILITIES = {
    'dynamicRegistration': False,
    'contextSupport': True,
    'completionItem': {
        'snippetSupport': True,
        'commitCharactersSupport': False,
        'deprecatedSupport': True,
        'preselectSupport': False,
        'insertReplaceSupport': True,
        'labelDetailsSupport': False,
        'documentationFormat': [lsp.MarkupKind.Markdown.value, lsp.MarkupKind.PlainText.value],
        'resolveSupport': {'properties': RESOLVE_PROPERTIES},
    },
    'completionItemKind': {
        'valueSet': [k.value for k in lsp.CompletionItemKind],
    },
    'completionList': {
        'itemDefaults': ITEM_DEFAULTS,
    },
}

SIGNATURE_HELP_CAPABILITIES = {
    'dynamicRegistration': False,
    'contextSupport': False,
    'signatureInformation': {
        'documentationFormat': [lsp.MarkupKind.Markdown.value, lsp.MarkupKind.PlainText.value],
        'activeParameterSupport': True,
    },
}


def capabilities_dict() -> dict:
    """The descriptor in LSP JSON form (camelCase keys)."""
    return {
        'general': {
            'positionEncodings': ['utf-8', 'utf-16', 'utf-32'],
        },
        'textDocument': {
            'completion': COMPLETION_CAPABILITIES,
            'signatureHelp': SIGNATURE_HELP_CAPABILITIES,
        },
        'workspace': {
            'executeCommand': {'dynamicRegistration': False},
        },
    }


def client_capabilities() -> lsp.ClientCapabilities:
    return get_converter().structure(capabilities_dict(), lsp.ClientCapabilities)
