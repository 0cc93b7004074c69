"""Error taxonomy for the build-and-serve pipeline."""

from __future__ import annotations

from typing import Optional


class PipelineError(RuntimeError):
    """Raised when a pipeline execution fails validation or runtime checks."""

    category = "pipeline"

    def __init__(self, message: str, *, step: Optional[str] = None) -> None:
        super().__init__(message)
        self.step = step

    def to_dict(self) -> dict[str, object]:
        return {
            "category": self.category,
            "step": self.step,
            "message": str(self),
        }


class BuildError(PipelineError):
    """Dependency resolution or compilation failure in the asset builder."""

    category = "build"


class LockfileError(BuildError):
    """The dependency lock file does not pin every required dependency."""


class ProvisionError(PipelineError):
    """Trust-key fetch, package-index refresh or package install failure."""

    category = "provision"
