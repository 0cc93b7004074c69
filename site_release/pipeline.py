from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import requests

from .assemble import assemble, build_backend, server_install_steps
from .build import AssetBuilder, BuildConfig, BuildOutcome, load_bundle
from .build.manifest import MANIFEST_NAME
from .build.toolchain import toolchain_steps
from .config import PipelineSettings, load_settings
from .errors import PipelineError
from .schemas.bundle import AssetBundle
from .schemas.image import RuntimeImage
from .utils import CommandRunner, resolve_path

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    NOT_BUILT = "not-built"
    BUILT = "built"
    ASSEMBLED = "assembled"


_NEXT_STAGE = {
    PipelineStage.NOT_BUILT: PipelineStage.BUILT,
    PipelineStage.BUILT: PipelineStage.ASSEMBLED,
}


@dataclass
class PipelineRun:
    """Tracks one run through the one-way not-built → built → assembled sequence."""

    stage: PipelineStage = PipelineStage.NOT_BUILT
    bundle: Optional[AssetBundle] = None
    image: Optional[RuntimeImage] = None
    receipts: Dict[str, object] = field(default_factory=dict)
    error: Optional[PipelineError] = None

    @property
    def status(self) -> str:
        if self.error is not None:
            return "error"
        return "ok" if self.stage is PipelineStage.ASSEMBLED else "incomplete"

    def advance(self, target: PipelineStage) -> None:
        if self.error is not None:
            raise PipelineError(f"Pipeline run already failed at stage '{self.stage.value}'.")
        if _NEXT_STAGE.get(self.stage) is not target:
            raise PipelineError(f"Illegal pipeline transition {self.stage.value} -> {target.value}.")
        self.stage = target

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "stage": self.stage.value,
            "bundle_digest": self.bundle.digest if self.bundle else None,
            "image": self.image.model_dump(mode="json") if self.image else None,
            "receipts": self.receipts,
            "error": self.error.to_dict() if self.error else None,
        }


def _settings(settings: Optional[PipelineSettings], config_path: Optional[str | Path], workspace: Path) -> PipelineSettings:
    if settings is not None:
        return settings
    path = resolve_path(config_path, workspace) if config_path else None
    return load_settings(path, workspace_root=workspace)


def build_site(
    *,
    workspace_root: str | Path = ".",
    settings: Optional[PipelineSettings] = None,
    config_path: Optional[str | Path] = None,
    output_dir: Optional[str | Path] = None,
    skip_toolchain: bool = False,
    runner: Optional[CommandRunner] = None,
) -> BuildOutcome:
    """Compile the build context into a promoted asset bundle."""

    workspace = Path(workspace_root).resolve()
    resolved = _settings(settings, config_path, workspace)
    output = resolve_path(output_dir or resolved.build.output_dir, workspace)
    builder = AssetBuilder(runner=runner)
    return builder.build(
        BuildConfig(
            context_root=workspace,
            output_dir=output,
            settings=resolved.build,
            skip_toolchain=skip_toolchain,
        )
    )


def assemble_site(
    *,
    workspace_root: str | Path = ".",
    settings: Optional[PipelineSettings] = None,
    config_path: Optional[str | Path] = None,
    bundle: Optional[AssetBundle] = None,
    bundle_dir: Optional[str | Path] = None,
    backend: str = "plan",
    backend_options: Optional[Mapping[str, object]] = None,
    context_dir: Optional[str | Path] = None,
    runner: Optional[CommandRunner] = None,
    session: Optional[requests.Session] = None,
) -> RuntimeImage:
    """Package a built bundle with the file server using the named backend."""

    workspace = Path(workspace_root).resolve()
    resolved = _settings(settings, config_path, workspace)
    if bundle is None:
        output = resolve_path(bundle_dir or resolved.build.output_dir, workspace)
        manifest_path = output / MANIFEST_NAME
        if not manifest_path.exists():
            raise PipelineError(f"Bundle manifest not found: {manifest_path}; run the build stage first.")
        bundle = load_bundle(manifest_path)

    image_backend = build_backend(backend, runner=runner, session=session, options=backend_options)
    return assemble(
        bundle,
        resolved,
        image_backend,
        context_dir=resolve_path(context_dir or resolved.image.context_dir, workspace),
    )


def run_pipeline(
    *,
    workspace_root: str | Path = ".",
    settings: Optional[PipelineSettings] = None,
    config_path: Optional[str | Path] = None,
    output_dir: Optional[str | Path] = None,
    skip_toolchain: bool = False,
    backend: str = "plan",
    backend_options: Optional[Mapping[str, object]] = None,
    context_dir: Optional[str | Path] = None,
    runner: Optional[CommandRunner] = None,
    session: Optional[requests.Session] = None,
) -> PipelineRun:
    """Build then assemble; a failed stage ends the run with no image."""

    workspace = Path(workspace_root).resolve()
    run = PipelineRun()
    try:
        resolved = _settings(settings, config_path, workspace)
        outcome = build_site(
            workspace_root=workspace,
            settings=resolved,
            output_dir=output_dir,
            skip_toolchain=skip_toolchain,
            runner=runner,
        )
        run.bundle = outcome.bundle
        run.receipts["build"] = outcome.to_dict()
        run.advance(PipelineStage.BUILT)

        run.image = assemble_site(
            workspace_root=workspace,
            settings=resolved,
            bundle=outcome.bundle,
            backend=backend,
            backend_options=backend_options,
            context_dir=context_dir,
            runner=runner,
            session=session,
        )
        run.receipts["assemble"] = {"steps": [step.model_dump(mode="json") for step in run.image.steps]}
        run.advance(PipelineStage.ASSEMBLED)
    except PipelineError as exc:
        logger.error("Pipeline failed at stage %s: %s", run.stage.value, exc)
        run.error = exc
        run.image = None
    return run


def describe_steps(settings: PipelineSettings) -> List[Dict[str, object]]:
    steps = [("build", step) for step in toolchain_steps(settings.build)]
    steps += [("assemble", step) for step in server_install_steps(settings.image)]
    return [
        {"stage": stage, "name": step.name, "description": step.description, "shell": step.render()}
        for stage, step in steps
    ]
