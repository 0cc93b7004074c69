from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from .errors import PipelineError
from .pipeline import assemble_site, build_site, run_pipeline
from .utils import CommandRunner


@dataclass(frozen=True)
class PipelineInputSpec:
    description: Optional[str] = None
    default: Optional[object] = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"description": self.description}
        if self.default is not None:
            payload["default"] = self.default
        return payload


@dataclass(frozen=True)
class PipelineSpec:
    slug: str
    description: str
    runner: Callable[["PipelineContext"], "PipelineResult"]
    inputs: Dict[str, PipelineInputSpec] = field(default_factory=dict)
    artifacts: List[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "slug": self.slug,
            "description": self.description,
            "inputs": {name: spec.to_dict() for name, spec in self.inputs.items()},
            "artifacts": list(self.artifacts),
        }


@dataclass
class PipelineContext:
    workspace_root: Path
    inputs: Dict[str, object]
    command_runner: Optional[CommandRunner] = None

    def get(self, name: str, default: Optional[object] = None) -> Optional[object]:
        return self.inputs.get(name, default)


@dataclass
class PipelineResult:
    status: str = "ok"
    artifacts: Dict[str, object] = field(default_factory=dict)
    receipts: Dict[str, object] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)
    next_steps: List[str] = field(default_factory=list)
    data: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "artifacts": self.artifacts,
            "receipts": self.receipts,
            "logs": self.logs,
            "next_steps": self.next_steps,
            "data": self.data,
        }


_PIPELINES: Dict[str, PipelineSpec] = {}


def register_pipeline(spec: PipelineSpec) -> None:
    if spec.slug in _PIPELINES:
        raise ValueError(f"Pipeline '{spec.slug}' already registered.")
    _PIPELINES[spec.slug] = spec


def get_pipeline(slug: str) -> PipelineSpec:
    try:
        return _PIPELINES[slug]
    except KeyError as exc:
        available = ", ".join(sorted(_PIPELINES))
        raise KeyError(f"Unknown pipeline slug '{slug}'. Available pipelines: {available}.") from exc


def list_pipelines() -> Iterable[PipelineSpec]:
    return _PIPELINES.values()


def resolve_inputs(spec: PipelineSpec, provided: Dict[str, List[str]]) -> Dict[str, object]:
    resolved: Dict[str, object] = {}
    for name, input_spec in spec.inputs.items():
        values = provided.get(name, [])
        resolved[name] = values[-1] if values else input_spec.default

    unknown = sorted(name for name in provided if name not in spec.inputs)
    if unknown:
        raise ValueError(f"Unknown input(s) for '{spec.slug}': {', '.join(unknown)}.")
    return resolved


def _to_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _optional_str(value: object) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def _backend_options(context: PipelineContext) -> Dict[str, object]:
    options: Dict[str, object] = {}
    for key in ("tag", "rootfs", "docker"):
        value = _optional_str(context.get(key))
        if value:
            options[key] = value
    return options


def _pipeline_site_build(context: PipelineContext) -> PipelineResult:
    outcome = build_site(
        workspace_root=context.workspace_root,
        config_path=_optional_str(context.get("config")),
        output_dir=_optional_str(context.get("output-dir")),
        skip_toolchain=_to_bool(context.get("skip-toolchain")),
        runner=context.command_runner,
    )
    payload = outcome.to_dict()
    return PipelineResult(
        status="ok",
        artifacts={"bundle": payload["bundle_dir"], "manifest": payload["manifest_path"]},
        receipts={"build": payload},
        next_steps=["Run the site-image pipeline to package the bundle."],
    )


def _pipeline_site_image(context: PipelineContext) -> PipelineResult:
    image = assemble_site(
        workspace_root=context.workspace_root,
        config_path=_optional_str(context.get("config")),
        bundle_dir=_optional_str(context.get("bundle-dir")),
        backend=str(context.get("backend") or "plan"),
        backend_options=_backend_options(context),
        context_dir=_optional_str(context.get("context-dir")),
        runner=context.command_runner,
    )
    next_steps: List[str] = []
    if image.backend == "plan":
        next_steps.append(f"Build the rendered context with: docker build {image.reference}")
    return PipelineResult(
        status="ok",
        artifacts={"image": image.reference},
        receipts={"assemble": image.model_dump(mode="json")},
        next_steps=next_steps,
    )


def _pipeline_site_release(context: PipelineContext) -> PipelineResult:
    run = run_pipeline(
        workspace_root=context.workspace_root,
        config_path=_optional_str(context.get("config")),
        output_dir=_optional_str(context.get("output-dir")),
        skip_toolchain=_to_bool(context.get("skip-toolchain")),
        backend=str(context.get("backend") or "plan"),
        backend_options=_backend_options(context),
        context_dir=_optional_str(context.get("context-dir")),
        runner=context.command_runner,
    )
    artifacts: Dict[str, object] = {}
    if run.bundle is not None:
        artifacts["bundle"] = str(run.bundle.root)
    if run.image is not None:
        artifacts["image"] = run.image.reference
    logs = [str(run.error)] if run.error else []
    return PipelineResult(
        status=run.status,
        artifacts=artifacts,
        receipts=run.receipts,
        logs=logs,
        data=run.to_dict(),
    )


_CONFIG_INPUT = PipelineInputSpec(description="Settings YAML path (defaults to site-release.yaml when present)")
_BACKEND_INPUTS = {
    "backend": PipelineInputSpec(description="Image backend: plan, docker or host", default="plan"),
    "tag": PipelineInputSpec(description="Image tag for the docker backend"),
    "docker": PipelineInputSpec(description="docker executable for the docker backend"),
    "rootfs": PipelineInputSpec(description="Filesystem root for the host backend"),
    "context-dir": PipelineInputSpec(description="Directory for the rendered image context"),
}


def _register_builtin_pipelines() -> None:
    register_pipeline(
        PipelineSpec(
            slug="site-build",
            description="Compile the WASM site into a promoted asset bundle.",
            runner=_pipeline_site_build,
            inputs={
                "config": _CONFIG_INPUT,
                "output-dir": PipelineInputSpec(description="Bundle output directory"),
                "skip-toolchain": PipelineInputSpec(description="Skip toolchain provisioning", default="false"),
            },
            artifacts=["bundle", "manifest"],
        )
    )
    register_pipeline(
        PipelineSpec(
            slug="site-image",
            description="Package an existing bundle with the static file server.",
            runner=_pipeline_site_image,
            inputs={
                "config": _CONFIG_INPUT,
                "bundle-dir": PipelineInputSpec(description="Directory holding bundle.json and app/"),
                **_BACKEND_INPUTS,
            },
            artifacts=["image"],
        )
    )
    register_pipeline(
        PipelineSpec(
            slug="site-release",
            description="Build the site, then assemble the serving image.",
            runner=_pipeline_site_release,
            inputs={
                "config": _CONFIG_INPUT,
                "output-dir": PipelineInputSpec(description="Bundle output directory"),
                "skip-toolchain": PipelineInputSpec(description="Skip toolchain provisioning", default="false"),
                **_BACKEND_INPUTS,
            },
            artifacts=["bundle", "image"],
        )
    )


_register_builtin_pipelines()


__all__ = [
    "PipelineContext",
    "PipelineError",
    "PipelineInputSpec",
    "PipelineResult",
    "PipelineSpec",
    "get_pipeline",
    "list_pipelines",
    "register_pipeline",
    "resolve_inputs",
]
