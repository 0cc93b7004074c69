"""Asset build stage."""

from .builder import AssetBuilder, BuildConfig, BuildOutcome
from .locks import LockReport, verify_lock
from .manifest import dump_bundle, load_bundle, scan_bundle, verify_bundle
from .sources import SourceInputs, resolve_sources

__all__ = [
    "AssetBuilder",
    "BuildConfig",
    "BuildOutcome",
    "LockReport",
    "verify_lock",
    "dump_bundle",
    "load_bundle",
    "scan_bundle",
    "verify_bundle",
    "SourceInputs",
    "resolve_sources",
]
