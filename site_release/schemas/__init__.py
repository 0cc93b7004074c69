"""Schema definitions for pipeline artifacts."""

from .bundle import AssetBundle, AssetFile, SourceDescriptor
from .image import RuntimeImage, StepRecord
from .serving import ServingConfiguration

__all__ = [
    "AssetBundle",
    "AssetFile",
    "SourceDescriptor",
    "RuntimeImage",
    "StepRecord",
    "ServingConfiguration",
]
