"""Compiler toolchain provisioning for the asset builder."""

from __future__ import annotations

import logging
import re
from typing import List

from ..config import BuildSettings
from ..errors import BuildError
from ..steps import CommandStep, ProvisionStep, StepHost, StepReceipt, run_steps

logger = logging.getLogger(__name__)

_RUSTC_VERSION_RE = re.compile(r"^rustc\s+(\d+\.\d+\.\d+)")


def toolchain_steps(settings: BuildSettings) -> List[ProvisionStep]:
    return [
        CommandStep(
            "add-compile-target",
            check=["rustup", "target", "list", "--installed"],
            apply=[["rustup", "target", "add", settings.target]],
            expect_line=settings.target,
            description=f"Install the {settings.target} standard library.",
            error_cls=BuildError,
        ),
        CommandStep(
            "install-bundler",
            check=[settings.bundler, "--version"],
            apply=[["cargo", "install", "--locked", settings.bundler]],
            description=f"Install {settings.bundler} with locked dependencies.",
            error_cls=BuildError,
        ),
    ]


def ensure_toolchain(settings: BuildSettings, host: StepHost) -> List[StepReceipt]:
    receipts: List[StepReceipt] = []
    if settings.rust_version:
        receipts.append(check_rust_version(settings.rust_version, host))
    if settings.install_toolchain:
        receipts.extend(run_steps(toolchain_steps(settings), host))
    return receipts


def check_rust_version(expected: str, host: StepHost) -> StepReceipt:
    result = host.runner.run(["rustc", "--version"])
    if not result.ok:
        raise BuildError(f"rustc is not available: {result.tail()}", step="check-compiler")
    match = _RUSTC_VERSION_RE.match(result.stdout.strip())
    actual = match.group(1) if match else result.stdout.strip()
    if actual != expected:
        raise BuildError(f"rustc {actual} does not match pinned {expected}", step="check-compiler")
    logger.debug("rustc %s matches pinned version", actual)
    return StepReceipt(name="check-compiler", status="skipped", detail=f"rustc {actual}")
