"""Resolution of the fixed build-context inputs."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from ..config import BuildSettings
from ..errors import BuildError


@dataclass(slots=True)
class SourceInputs:
    """Build inputs resolved against one build-context root."""

    context_root: Path
    lock_file: Path
    descriptor: Path
    entry: Path
    source_dir: Path
    extra_inputs: List[Path] = field(default_factory=list)

    def staged_paths(self) -> List[Path]:
        return [self.lock_file, self.descriptor, self.entry, self.source_dir, *self.extra_inputs]

    def stage(self, workspace: Path) -> None:
        """Copy only the declared inputs into a build workspace, keeping relative layout."""

        for path in self.staged_paths():
            target = workspace / path.relative_to(self.context_root)
            target.parent.mkdir(parents=True, exist_ok=True)
            if path.is_dir():
                shutil.copytree(path, target, dirs_exist_ok=True)
            else:
                shutil.copy2(path, target)


def resolve_sources(context_root: Path, settings: BuildSettings) -> SourceInputs:
    root = context_root.resolve()
    if not root.is_dir():
        raise BuildError(f"Build context not found: {root}", step="resolve-sources")

    def _required(relative: str, *, directory: bool = False) -> Path:
        path = (root / relative).resolve()
        if not path.is_relative_to(root):
            raise BuildError(f"Build input escapes the build context: {relative}", step="resolve-sources")
        exists = path.is_dir() if directory else path.is_file()
        if not exists:
            kind = "directory" if directory else "file"
            raise BuildError(f"Build input {kind} not found: {path}", step="resolve-sources")
        return path

    inputs = SourceInputs(
        context_root=root,
        lock_file=_required(settings.lock_file),
        descriptor=_required(settings.descriptor),
        entry=_required(settings.entry),
        source_dir=_required(settings.source_dir, directory=True),
    )
    for extra in settings.extra_inputs:
        candidate = (root / extra).resolve()
        if not candidate.exists() or not candidate.is_relative_to(root):
            raise BuildError(f"Extra build input not found: {candidate}", step="resolve-sources")
        inputs.extra_inputs.append(candidate)

    if not any(path.is_file() for path in inputs.source_dir.rglob("*")):
        raise BuildError(f"Source directory is empty: {inputs.source_dir}", step="resolve-sources")
    return inputs
