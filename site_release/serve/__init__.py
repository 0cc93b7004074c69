"""Serving helpers."""

from .command import exec_server, server_argv
from .preview import PreviewHandler, PreviewServer

__all__ = [
    "exec_server",
    "server_argv",
    "PreviewHandler",
    "PreviewServer",
]
