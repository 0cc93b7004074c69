"""Image backends used during assembly."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import requests

from ..config import PipelineSettings
from ..errors import ProvisionError
from ..schemas.bundle import AssetBundle
from ..schemas.serving import ServingConfiguration
from ..steps import StepHost, StepReceipt, plan_steps, run_steps
from ..utils import CommandRunner, copy_tree
from .dockerfile import check_bundle_surface, render_context
from .steps import server_install_steps

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AssemblyContext:
    bundle: AssetBundle
    settings: PipelineSettings
    serving: ServingConfiguration
    context_dir: Path


@dataclass(slots=True)
class AssemblyResult:
    reference: str
    steps: List[StepReceipt] = field(default_factory=list)
    context_dir: Optional[Path] = None
    logs: List[str] = field(default_factory=list)


class ImageBackend(ABC):
    name: str

    @abstractmethod
    def assemble(self, context: AssemblyContext) -> AssemblyResult:
        ...


class PlanBackend(ImageBackend):
    """Render the image context without building anything."""

    name = "plan"

    def assemble(self, context: AssemblyContext) -> AssemblyResult:
        steps = server_install_steps(context.settings.image)
        dockerfile = render_context(
            context.bundle,
            context.context_dir,
            settings=context.settings.image,
            serving=context.serving,
            steps=steps,
        )
        return AssemblyResult(
            reference=str(context.context_dir),
            steps=plan_steps(steps),
            context_dir=context.context_dir,
            logs=[f"Plan only; Dockerfile written to {dockerfile}"],
        )


class DockerBackend(ImageBackend):
    """Render the context and build it with the docker CLI."""

    name = "docker"

    def __init__(self, *, runner: Optional[CommandRunner] = None, tag: Optional[str] = None, docker: str = "docker") -> None:
        self.runner = runner or CommandRunner()
        self.tag = tag
        self.docker = docker

    def assemble(self, context: AssemblyContext) -> AssemblyResult:
        steps = server_install_steps(context.settings.image)
        render_context(
            context.bundle,
            context.context_dir,
            settings=context.settings.image,
            serving=context.serving,
            steps=steps,
        )
        tag = self.tag or context.settings.image.tag
        argv = [self.docker, "build", "--tag", tag, str(context.context_dir)]
        logger.info("Building image %s", tag)
        result = self.runner.run(argv)
        logs = [line for line in (result.stdout.strip(), result.stderr.strip()) if line]
        if not result.ok:
            raise ProvisionError(
                f"docker build exited with status {result.returncode}: {result.tail()}",
                step="docker-build",
            )
        return AssemblyResult(
            reference=tag,
            steps=[StepReceipt(name=step.name, status="applied", detail="docker build") for step in steps],
            context_dir=context.context_dir,
            logs=logs,
        )


class HostBackend(ImageBackend):
    """Provision the current Debian host (or a mounted rootfs) directly."""

    name = "host"

    def __init__(self, host: Optional[StepHost] = None) -> None:
        self.host = host or StepHost()

    def assemble(self, context: AssemblyContext) -> AssemblyResult:
        check_bundle_surface(context.bundle.root)
        receipts = run_steps(server_install_steps(context.settings.image), self.host)
        destination = self.host.path(context.serving.root)
        copy_tree(context.bundle.root, destination)
        logger.info("Copied bundle into %s", destination)
        return AssemblyResult(
            reference=str(self.host.rootfs),
            steps=receipts,
            logs=[f"Bundle installed at {destination}"],
        )


def build_backend(
    name: str,
    *,
    runner: Optional[CommandRunner] = None,
    session: Optional[requests.Session] = None,
    options: Optional[Mapping[str, object]] = None,
) -> ImageBackend:
    opts: Dict[str, object] = dict(options or {})
    normalized = name.lower()
    if normalized == "plan":
        return PlanBackend()
    if normalized == "docker":
        tag = opts.get("tag")
        return DockerBackend(
            runner=runner,
            tag=str(tag) if tag else None,
            docker=str(opts.get("docker") or "docker"),
        )
    if normalized == "host":
        rootfs = Path(str(opts.get("rootfs") or "/"))
        host = StepHost(runner=runner or CommandRunner(), rootfs=rootfs, session=session)
        return HostBackend(host)
    raise ProvisionError(f"Unknown image backend '{name}' (expected plan, docker or host)", step="select-backend")
