"""Serving image assembly stage."""

from .assembler import assemble
from .backends import (
    AssemblyContext,
    AssemblyResult,
    DockerBackend,
    HostBackend,
    ImageBackend,
    PlanBackend,
    build_backend,
)
from .dockerfile import render_context, render_dockerfile
from .steps import server_install_steps

__all__ = [
    "assemble",
    "AssemblyContext",
    "AssemblyResult",
    "DockerBackend",
    "HostBackend",
    "ImageBackend",
    "PlanBackend",
    "build_backend",
    "render_context",
    "render_dockerfile",
    "server_install_steps",
]
