"""Build a WASM single-page site and package it with a static file server."""

__version__ = "0.1.0"
from .build import AssetBuilder, BuildConfig, BuildOutcome
from .assemble import assemble, build_backend
from .config import PipelineSettings, load_settings
from .errors import BuildError, LockfileError, PipelineError, ProvisionError
from .pipeline import PipelineRun, PipelineStage, assemble_site, build_site, run_pipeline
from .schemas import AssetBundle, RuntimeImage, ServingConfiguration
from .serve import PreviewServer, exec_server

__all__ = [
    "__version__",
    "AssetBuilder",
    "BuildConfig",
    "BuildOutcome",
    "assemble",
    "build_backend",
    "PipelineSettings",
    "load_settings",
    "BuildError",
    "LockfileError",
    "PipelineError",
    "ProvisionError",
    "PipelineRun",
    "PipelineStage",
    "assemble_site",
    "build_site",
    "run_pipeline",
    "AssetBundle",
    "RuntimeImage",
    "ServingConfiguration",
    "PreviewServer",
    "exec_server",
]
