"""Pydantic model describing an assembled runtime image."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .serving import ServingConfiguration


class StepRecord(BaseModel):
    name: str
    status: str
    detail: Optional[str] = None


class RuntimeImage(BaseModel):
    backend: str
    reference: str = Field(..., description="Image tag, rootfs path or rendered context directory.")
    base_image: str
    package: str
    entrypoint: List[str]
    serving: ServingConfiguration
    bundle_digest: str
    steps: List[StepRecord] = Field(default_factory=list)
    context_dir: Optional[str] = None
    assembled_at: datetime

    model_config = ConfigDict(extra="forbid")
