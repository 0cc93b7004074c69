"""Idempotent check-then-apply steps shared by the toolchain and image provisioning."""

from __future__ import annotations

import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Type

import requests

from .errors import PipelineError
from .utils import CommandResult, CommandRunner

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StepReceipt:
    name: str
    status: str
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {"name": self.name, "status": self.status, "detail": self.detail}


@dataclass
class StepHost:
    """Where steps run: a command runner, a filesystem root and an HTTP session."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    rootfs: Path = Path("/")
    session: Optional[requests.Session] = None
    timeout: float = 30.0

    @property
    def confined(self) -> bool:
        return self.rootfs != Path("/")

    def path(self, absolute: str) -> Path:
        return self.rootfs / absolute.lstrip("/")

    def command(self, argv: Sequence[str]) -> List[str]:
        """Return ``argv`` so that it runs against ``rootfs`` rather than the live root."""

        if not self.confined:
            return list(argv)
        return ["chroot", str(self.rootfs), *argv]

    def http(self) -> requests.Session:
        if self.session is None:
            self.session = requests.Session()
        return self.session


class ProvisionStep(ABC):
    """One discrete, independently failing setup step."""

    name: str
    description: str = ""
    error_cls: Type[PipelineError] = PipelineError
    verify_after_apply: bool = True

    @abstractmethod
    def check(self, host: StepHost) -> bool:
        """Return True when the step's effect is already present."""

    @abstractmethod
    def apply(self, host: StepHost) -> None:
        ...

    @abstractmethod
    def check_shell(self) -> str:
        ...

    @abstractmethod
    def apply_shell(self) -> str:
        ...

    def render(self) -> str:
        return f"{self.check_shell()} || ({self.apply_shell()})"

    def fail(self, message: str) -> PipelineError:
        return self.error_cls(f"Step '{self.name}' failed: {message}", step=self.name)


class CommandStep(ProvisionStep):
    """Step whose check and apply phases are plain commands."""

    def __init__(
        self,
        name: str,
        *,
        check: Sequence[str],
        apply: Sequence[Sequence[str]],
        expect_line: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        description: str = "",
        error_cls: Type[PipelineError] = PipelineError,
        verify_after_apply: bool = True,
    ) -> None:
        self.name = name
        self.check_argv = [str(arg) for arg in check]
        self.apply_argvs = [[str(arg) for arg in argv] for argv in apply]
        self.expect_line = expect_line
        self.env = dict(env or {})
        self.description = description
        self.error_cls = error_cls
        self.verify_after_apply = verify_after_apply

    def check(self, host: StepHost) -> bool:
        result = host.runner.run(host.command(self.check_argv), env=self.env)
        if not result.ok:
            return False
        if self.expect_line is None:
            return True
        return self.expect_line in {line.strip() for line in result.stdout.splitlines()}

    def apply(self, host: StepHost) -> None:
        for argv in self.apply_argvs:
            result = host.runner.run(host.command(argv), env=self.env)
            if not result.ok:
                raise self.fail(_describe_failure(result))

    def check_shell(self) -> str:
        command = shlex.join(self.check_argv)
        if self.expect_line is not None:
            return f"{command} 2>/dev/null | grep -qx {shlex.quote(self.expect_line)}"
        return f"{command} >/dev/null 2>&1"

    def apply_shell(self) -> str:
        prefix = " ".join(f"{key}={shlex.quote(value)}" for key, value in sorted(self.env.items()))
        commands = [shlex.join(argv) for argv in self.apply_argvs]
        if prefix:
            commands = [f"{prefix} {command}" for command in commands]
        return " && ".join(commands)


def run_steps(steps: Iterable[ProvisionStep], host: StepHost) -> List[StepReceipt]:
    """Apply each unsatisfied step in order; the first failure aborts the chain."""

    receipts: List[StepReceipt] = []
    for step in steps:
        if step.check(host):
            logger.info("Step %s already satisfied; skipping", step.name)
            receipts.append(StepReceipt(name=step.name, status="skipped", detail="already satisfied"))
            continue
        logger.info("Applying step %s", step.name)
        step.apply(host)
        if step.verify_after_apply and not step.check(host):
            raise step.fail("post-condition not met after apply")
        receipts.append(StepReceipt(name=step.name, status="applied"))
    return receipts


def plan_steps(steps: Iterable[ProvisionStep]) -> List[StepReceipt]:
    return [StepReceipt(name=step.name, status="planned", detail=step.render()) for step in steps]


def _describe_failure(result: CommandResult) -> str:
    tail = result.tail()
    message = f"`{shlex.join(result.argv)}` exited with status {result.returncode}"
    return f"{message}: {tail}" if tail else message
