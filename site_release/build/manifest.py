"""Bundle manifest helpers."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from ..errors import BuildError
from ..schemas.bundle import AssetBundle, AssetFile, SourceDescriptor
from ..utils import compute_sha256

MANIFEST_NAME = "bundle.json"
BUNDLE_DIR_NAME = "app"


def scan_bundle(
    root: Path,
    *,
    entry: str = "index.html",
    built_at: Optional[datetime] = None,
    source: Optional[SourceDescriptor] = None,
) -> AssetBundle:
    """Describe the directory tree at ``root`` as an AssetBundle."""

    root = root.resolve()
    if not root.is_dir():
        raise BuildError(f"Bundle directory not found: {root}", step="scan-bundle")
    files: List[AssetFile] = []
    for path in sorted(root.rglob("*"), key=lambda item: item.relative_to(root).as_posix()):
        if not path.is_file():
            continue
        files.append(
            AssetFile(
                path=path.relative_to(root).as_posix(),
                size=path.stat().st_size,
                sha256=compute_sha256(path),
            )
        )
    try:
        return AssetBundle(
            root=root,
            entry=entry,
            file_count=len(files),
            total_bytes=sum(item.size for item in files),
            files=files,
            digest=bundle_digest(files),
            built_at=built_at,
            source=source,
        )
    except ValidationError as exc:
        raise BuildError(f"Invalid asset bundle at {root}: {exc}", step="scan-bundle") from exc


def bundle_digest(files: List[AssetFile]) -> str:
    digest = hashlib.sha256()
    for item in files:
        digest.update(f"{item.path}\0{item.sha256}\n".encode("utf-8"))
    return digest.hexdigest()


def load_bundle(path: Path) -> AssetBundle:
    """Load a bundle manifest from JSON."""

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        return AssetBundle.model_validate(payload)
    except (OSError, ValueError) as exc:
        raise BuildError(f"Unable to load bundle manifest {path}: {exc}", step="load-bundle") from exc


def dump_bundle(bundle: AssetBundle, path: Path) -> None:
    """Write a bundle manifest to disk."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(bundle.model_dump_json(indent=2) + "\n", encoding="utf-8")


@dataclass(slots=True)
class BundleVerification:
    manifest_digest: str
    actual_digest: str
    missing: List[str] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)
    unexpected: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.manifest_digest == self.actual_digest and not (self.missing or self.changed or self.unexpected)

    def to_dict(self) -> Dict[str, object]:
        return {
            "valid": self.valid,
            "manifest_digest": self.manifest_digest,
            "actual_digest": self.actual_digest,
            "missing": self.missing,
            "changed": self.changed,
            "unexpected": self.unexpected,
        }


def verify_bundle(bundle: AssetBundle) -> BundleVerification:
    """Re-scan the bundle root and compare it against the recorded manifest."""

    expected = {item.path: item.sha256 for item in bundle.files}
    actual: Dict[str, str] = {}
    if bundle.root.is_dir():
        for path in bundle.root.rglob("*"):
            if path.is_file():
                actual[path.relative_to(bundle.root).as_posix()] = compute_sha256(path)

    records = [
        AssetFile(path=name, size=0, sha256=actual[name])
        for name in sorted(actual)
    ]
    return BundleVerification(
        manifest_digest=bundle.digest,
        actual_digest=bundle_digest(records),
        missing=sorted(name for name in expected if name not in actual),
        changed=sorted(name for name in expected if name in actual and actual[name] != expected[name]),
        unexpected=sorted(name for name in actual if name not in expected),
    )
