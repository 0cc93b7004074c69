"""Pydantic models describing a compiled asset bundle."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AssetFile(BaseModel):
    path: str = Field(..., description="POSIX path relative to the bundle root.")
    size: int = Field(..., ge=0)
    sha256: str

    model_config = ConfigDict(extra="forbid", frozen=True)


class SourceDescriptor(BaseModel):
    lock_sha256: Optional[str] = None
    target: str = "wasm32-unknown-unknown"
    profile: str = "release"
    pinned_packages: int = 0

    model_config = ConfigDict(extra="forbid", frozen=True)


class AssetBundle(BaseModel):
    root: Path
    entry: str = "index.html"
    file_count: int
    total_bytes: int
    files: List[AssetFile]
    digest: str = Field(..., description="SHA-256 over the ordered (path, sha256) records.")
    built_at: Optional[datetime] = None
    source: Optional[SourceDescriptor] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _check_invariants(self) -> "AssetBundle":
        if not self.files:
            raise ValueError("asset bundle must not be empty")
        paths = [item.path for item in self.files]
        if self.entry not in paths:
            raise ValueError(f"asset bundle is missing entry file '{self.entry}'")
        if paths != sorted(paths):
            raise ValueError("asset bundle files must be ordered by path")
        if self.file_count != len(self.files):
            raise ValueError("file_count does not match files")
        if self.total_bytes != sum(item.size for item in self.files):
            raise ValueError("total_bytes does not match files")
        return self

    @property
    def entry_path(self) -> Path:
        return self.root / self.entry
