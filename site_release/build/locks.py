"""Dependency lock-file verification.

The bundler runs in locked mode, but checking the pins up front turns a
missing entry into a fast, explicit failure before any compiler starts.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Set

from ..errors import LockfileError
from ..utils import compute_sha256

logger = logging.getLogger(__name__)

_DEPENDENCY_TABLES = ("dependencies", "build-dependencies")


@dataclass(slots=True)
class LockReport:
    lock_sha256: str
    packages: Dict[str, List[str]] = field(default_factory=dict)
    required: List[str] = field(default_factory=list)

    @property
    def pinned(self) -> int:
        return sum(len(versions) for versions in self.packages.values())

    def to_dict(self) -> Dict[str, object]:
        return {
            "lock_sha256": self.lock_sha256,
            "pinned": self.pinned,
            "required": self.required,
        }


def verify_lock(descriptor_path: Path, lock_path: Path) -> LockReport:
    """Ensure every declared dependency (and the root package) is pinned."""

    descriptor = _load_toml(descriptor_path)
    lock = _load_toml(lock_path)

    packages = _locked_packages(lock, lock_path)
    required = sorted(required_packages(descriptor))
    missing = [name for name in required if name not in packages]
    if missing:
        raise LockfileError(
            f"Lock file {lock_path.name} does not pin: {', '.join(missing)}",
            step="verify-lock",
        )
    logger.info("Lock file pins %d packages covering %d declared dependencies", len(packages), len(required))
    return LockReport(lock_sha256=compute_sha256(lock_path), packages=packages, required=required)


def required_packages(descriptor: Mapping[str, object]) -> Set[str]:
    names: Set[str] = set()
    package = descriptor.get("package")
    if isinstance(package, dict) and isinstance(package.get("name"), str):
        names.add(package["name"])

    names.update(_dependency_names(descriptor))
    targets = descriptor.get("target")
    if isinstance(targets, dict):
        for target_table in targets.values():
            if isinstance(target_table, dict):
                names.update(_dependency_names(target_table))
    return names


def _dependency_names(table: Mapping[str, object]) -> Iterable[str]:
    for section in _DEPENDENCY_TABLES:
        deps = table.get(section)
        if not isinstance(deps, dict):
            continue
        for key, spec in deps.items():
            if isinstance(spec, dict) and isinstance(spec.get("package"), str):
                yield spec["package"]
            else:
                yield key


def _locked_packages(lock: Mapping[str, object], lock_path: Path) -> Dict[str, List[str]]:
    entries = lock.get("package")
    if not isinstance(entries, list) or not entries:
        raise LockfileError(f"Lock file has no [[package]] entries: {lock_path}", step="verify-lock")
    packages: Dict[str, List[str]] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name")
        version = entry.get("version")
        if not isinstance(name, str) or not isinstance(version, str) or not version:
            raise LockfileError(f"Lock file entry without exact version: {entry!r}", step="verify-lock")
        packages.setdefault(name, []).append(version)
    return packages


def _load_toml(path: Path) -> Dict[str, object]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise LockfileError(f"File not found: {path}", step="verify-lock") from exc
    except tomllib.TOMLDecodeError as exc:
        raise LockfileError(f"Unable to parse {path.name}: {exc}", step="verify-lock") from exc
