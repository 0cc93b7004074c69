"""Asset build orchestration."""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ..config import BuildSettings
from ..errors import BuildError
from ..schemas.bundle import AssetBundle, SourceDescriptor
from ..steps import StepHost, StepReceipt
from ..utils import CommandResult, CommandRunner, replace_tree
from .locks import LockReport, verify_lock
from .manifest import BUNDLE_DIR_NAME, MANIFEST_NAME, dump_bundle, scan_bundle
from .sources import resolve_sources
from .toolchain import ensure_toolchain

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BuildConfig:
    """Configuration describing one asset build run."""

    context_root: Path
    output_dir: Path
    settings: BuildSettings = field(default_factory=BuildSettings)
    built_at: Optional[datetime] = None
    skip_toolchain: bool = False


@dataclass(slots=True)
class BuildOutcome:
    bundle: AssetBundle
    manifest_path: Path
    lock: LockReport
    command: CommandResult
    toolchain: List[StepReceipt] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "bundle_dir": str(self.bundle.root),
            "manifest_path": str(self.manifest_path),
            "digest": self.bundle.digest,
            "file_count": self.bundle.file_count,
            "total_bytes": self.bundle.total_bytes,
            "lock": self.lock.to_dict(),
            "toolchain": [receipt.to_dict() for receipt in self.toolchain],
            "command": self.command.argv,
        }


def bundler_argv(settings: BuildSettings) -> List[str]:
    argv = [settings.bundler, "build", "--locked"]
    if settings.release:
        argv.append("--release")
    argv.extend(["--dist", settings.dist_dir])
    return argv


class AssetBuilder:
    """Turns a build context into a promoted AssetBundle."""

    def __init__(self, *, runner: Optional[CommandRunner] = None, host: Optional[StepHost] = None) -> None:
        self.runner = runner or CommandRunner()
        self.host = host or StepHost(runner=self.runner)

    def build(self, config: BuildConfig) -> BuildOutcome:
        """Compile, validate and promote the bundle; nothing is promoted on failure."""

        settings = config.settings
        inputs = resolve_sources(config.context_root, settings)
        lock = verify_lock(inputs.descriptor, inputs.lock_file)

        toolchain: List[StepReceipt] = []
        if not config.skip_toolchain:
            toolchain = ensure_toolchain(settings, self.host)

        entry_name = Path(settings.entry).name
        with tempfile.TemporaryDirectory(prefix="site-release-build-") as tmp_dir:
            workspace = Path(tmp_dir) / "workspace"
            workspace.mkdir()
            inputs.stage(workspace)

            argv = bundler_argv(settings)
            logger.info("Building assets with %s", " ".join(argv))
            result = self.runner.run(argv, cwd=workspace)
            if not result.ok:
                raise BuildError(
                    f"{settings.bundler} build failed ({result.returncode}): {result.tail()}",
                    step="compile",
                )

            dist = workspace / settings.dist_dir
            _check_output(dist, entry_name)
            bundle_dir = _promote(dist, config.output_dir)

        bundle = scan_bundle(
            bundle_dir,
            entry=entry_name,
            built_at=config.built_at or datetime.now(timezone.utc),
            source=SourceDescriptor(
                lock_sha256=lock.lock_sha256,
                target=settings.target,
                profile="release" if settings.release else "debug",
                pinned_packages=lock.pinned,
            ),
        )
        manifest_path = config.output_dir / MANIFEST_NAME
        dump_bundle(bundle, manifest_path)
        logger.info("Bundle promoted to %s (%d files, %d bytes)", bundle.root, bundle.file_count, bundle.total_bytes)
        return BuildOutcome(
            bundle=bundle,
            manifest_path=manifest_path,
            lock=lock,
            command=result,
            toolchain=toolchain,
        )


def _check_output(dist: Path, entry_name: str) -> None:
    if not dist.is_dir():
        raise BuildError(f"Bundler produced no output directory at {dist}", step="compile")
    if not any(path.is_file() for path in dist.rglob("*")):
        raise BuildError(f"Bundler output directory is empty: {dist}", step="compile")
    if not (dist / entry_name).is_file():
        raise BuildError(f"Bundler output is missing entry file '{entry_name}'", step="compile")


def _promote(dist: Path, output_dir: Path) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    final = output_dir / BUNDLE_DIR_NAME
    staging = Path(tempfile.mkdtemp(prefix=f".{BUNDLE_DIR_NAME}-", dir=output_dir))
    try:
        shutil.copytree(dist, staging, dirs_exist_ok=True)
        replace_tree(staging, final)
    except OSError as exc:
        shutil.rmtree(staging, ignore_errors=True)
        raise BuildError(f"Unable to promote bundle into {final}: {exc}", step="promote") from exc
    return final
