"""Rendering of the runtime image build context."""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, List, Sequence

from ..config import ImageSettings
from ..errors import ProvisionError
from ..schemas.bundle import AssetBundle
from ..schemas.serving import ServingConfiguration
from ..steps import ProvisionStep
from ..utils import replace_tree, write_text

logger = logging.getLogger(__name__)

DOCKERFILE_NAME = "Dockerfile"
CONTEXT_BUNDLE_DIR = "app"
DIGEST_LABEL = "site-release.bundle-digest"

# Only needed to fetch the trust key and source list.
FETCH_TOOLS = ("curl", "gnupg")

BUILD_ONLY_FILES = frozenset({"Cargo.lock", "Cargo.toml", "Trunk.toml", "rust-toolchain.toml"})
BUILD_ONLY_DIRS = frozenset({"src", "target"})


def render_dockerfile(
    settings: ImageSettings,
    serving: ServingConfiguration,
    steps: Sequence[ProvisionStep],
    *,
    bundle_digest: str,
) -> str:
    lines: List[str] = [
        f"FROM {settings.base_image}",
        'SHELL ["/bin/bash", "-o", "pipefail", "-c"]',
        "",
    ]
    for step in steps:
        lines.append(f"# {step.name}: {step.description}" if step.description else f"# {step.name}")
        lines.append(f"RUN {step.render()}")
        lines.append("")

    purge = [tool for tool in FETCH_TOOLS if tool in settings.prerequisites]
    if settings.purge_fetch_tools:
        commands = []
        if purge:
            commands.append(f"DEBIAN_FRONTEND=noninteractive apt-get purge -y --auto-remove {' '.join(purge)}")
        commands.append("rm -rf /var/lib/apt/lists/*")
        lines.append(f"RUN {' && '.join(commands)}")
        lines.append("")

    lines.extend(
        [
            f"COPY {CONTEXT_BUNDLE_DIR} {serving.root}",
            f'LABEL {DIGEST_LABEL}="{bundle_digest}"',
            f"EXPOSE {serving.port}",
            f"CMD {json.dumps(serving.argv())}",
            "",
        ]
    )
    return "\n".join(lines)


def render_context(
    bundle: AssetBundle,
    context_dir: Path,
    *,
    settings: ImageSettings,
    serving: ServingConfiguration,
    steps: Sequence[ProvisionStep],
) -> Path:
    """Write a build context holding only the Dockerfile and the bundle copy.

    The context is rendered beside ``context_dir`` and swapped into place.
    A directory that overlaps the bundle, or holds anything besides a
    previously rendered context, is never replaced.
    """

    context_dir = context_dir.resolve()
    check_context_target(context_dir, bundle.root.resolve())
    context_dir.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=f".{context_dir.name}-", dir=context_dir.parent))
    try:
        shutil.copytree(bundle.root, staging / CONTEXT_BUNDLE_DIR)
        dockerfile = render_dockerfile(settings, serving, steps, bundle_digest=bundle.digest)
        write_text(staging / DOCKERFILE_NAME, dockerfile)
        check_context_surface(staging)
        replace_tree(staging, context_dir)
    except OSError as exc:
        raise ProvisionError(f"Unable to render image context at {context_dir}: {exc}", step="render-context") from exc
    finally:
        shutil.rmtree(staging, ignore_errors=True)
    logger.info("Rendered image context at %s", context_dir)
    return context_dir / DOCKERFILE_NAME


def check_context_target(context_dir: Path, bundle_root: Path) -> None:
    """Refuse context directories whose replacement would destroy other files."""

    if context_dir.is_relative_to(bundle_root) or bundle_root.is_relative_to(context_dir):
        raise ProvisionError(
            f"Image context {context_dir} overlaps the bundle at {bundle_root}",
            step="render-context",
        )
    if not context_dir.exists():
        return
    if not context_dir.is_dir():
        raise ProvisionError(f"Image context {context_dir} is not a directory", step="render-context")
    foreign = sorted(
        entry.name for entry in context_dir.iterdir() if entry.name not in (CONTEXT_BUNDLE_DIR, DOCKERFILE_NAME)
    )
    if foreign:
        raise ProvisionError(
            f"Refusing to replace {context_dir}; it holds more than an image context ({', '.join(foreign)})",
            step="render-context",
        )


def check_context_surface(context_dir: Path) -> None:
    entries = sorted(entry.name for entry in context_dir.iterdir())
    if entries != sorted([CONTEXT_BUNDLE_DIR, DOCKERFILE_NAME]):
        raise ProvisionError(
            f"Image context must contain only {DOCKERFILE_NAME} and {CONTEXT_BUNDLE_DIR}/ (found: {', '.join(entries)})",
            step="render-context",
        )
    check_bundle_surface(context_dir / CONTEXT_BUNDLE_DIR)


def check_bundle_surface(bundle_root: Path) -> None:
    """Reject bundles that would ship lock files, descriptors or sources."""

    offenders = sorted(_build_only_entries(bundle_root))
    if offenders:
        raise ProvisionError(
            f"Bundle carries build-only artifacts: {', '.join(offenders)}",
            step="check-surface",
        )


def _build_only_entries(bundle_root: Path) -> Iterable[str]:
    for child in bundle_root.iterdir():
        if child.is_dir() and child.name in BUILD_ONLY_DIRS:
            yield f"{child.name}/"
    for path in bundle_root.rglob("*"):
        if path.is_file() and path.name in BUILD_ONLY_FILES:
            yield path.relative_to(bundle_root).as_posix()
