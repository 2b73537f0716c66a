"""lspcompl – LSP completion orchestration for insert-mode editors."""
try:
    from importlib.metadata import version, PackageNotFoundError
    try:
        __version__ = version('lspcompl')
    except PackageNotFoundError:
        __version__ = '0.0.0.dev0'
except ImportError:
    __version__ = '0.0.0.dev0'
