"""Serving image assembly."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..config import PipelineSettings
from ..errors import ProvisionError
from ..schemas.bundle import AssetBundle
from ..schemas.image import RuntimeImage, StepRecord
from .backends import AssemblyContext, ImageBackend, PlanBackend

logger = logging.getLogger(__name__)


def assemble(
    bundle: AssetBundle,
    settings: PipelineSettings,
    backend: Optional[ImageBackend] = None,
    *,
    context_dir: Optional[Path] = None,
    assembled_at: Optional[datetime] = None,
) -> RuntimeImage:
    """Package ``bundle`` with the file server using ``backend``."""

    if not bundle.root.is_dir():
        raise ProvisionError(f"Bundle directory not found: {bundle.root}", step="locate-bundle")
    if not bundle.entry_path.is_file():
        raise ProvisionError(f"Bundle entry file not found: {bundle.entry_path}", step="locate-bundle")

    backend = backend or PlanBackend()
    serving = settings.serve
    context = AssemblyContext(
        bundle=bundle,
        settings=settings,
        serving=serving,
        context_dir=(context_dir or Path(settings.image.context_dir)).resolve(),
    )
    logger.info("Assembling runtime image with %s backend", backend.name)
    result = backend.assemble(context)
    for line in result.logs:
        logger.debug(line)

    return RuntimeImage(
        backend=backend.name,
        reference=result.reference,
        base_image=settings.image.base_image,
        package=settings.image.package,
        entrypoint=serving.argv(),
        serving=serving,
        bundle_digest=bundle.digest,
        steps=[StepRecord(**receipt.to_dict()) for receipt in result.steps],
        context_dir=str(result.context_dir) if result.context_dir else None,
        assembled_at=assembled_at or datetime.now(timezone.utc),
    )
