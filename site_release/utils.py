"""Shared helpers used by build and assembly tooling."""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)


def compute_sha256(path: Path) -> str:
    """Return the SHA-256 checksum for a file."""

    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_text(path: Path, content: str, *, newline: Optional[str] = None) -> None:
    """Write text to file ensuring parent directories exist."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8", newline=newline)


def copy_tree(src: Path, dst: Path) -> None:
    if dst.exists():
        shutil.rmtree(dst)
    shutil.copytree(src, dst, symlinks=False)


def replace_tree(staging: Path, final: Path) -> None:
    """Move ``staging`` into place at ``final``.

    An existing ``final`` is set aside first and restored if the swap fails,
    so callers either see the new tree or the old one.
    """

    if not final.exists():
        staging.rename(final)
        return
    retired = Path(tempfile.mkdtemp(prefix=f".{final.name}-old-", dir=final.parent))
    retired.rmdir()
    final.rename(retired)
    try:
        staging.rename(final)
    except OSError:
        retired.rename(final)
        raise
    shutil.rmtree(retired)


def resolve_path(value: str | Path, workspace: Path) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = workspace / path
    return path.resolve()


@dataclass(slots=True)
class CommandResult:
    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, limit: int = 2000) -> str:
        text = self.stderr.strip() or self.stdout.strip()
        return text[-limit:]

    def to_dict(self) -> Dict[str, object]:
        return {
            "argv": self.argv,
            "returncode": self.returncode,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


@dataclass
class CommandRunner:
    """Runs external tools; swapped for a fake in tests."""

    env: Dict[str, str] = field(default_factory=dict)

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        input: Optional[bytes] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        command = [str(arg) for arg in argv]
        merged_env = os.environ.copy()
        merged_env.update(self.env)
        if env:
            merged_env.update(env)
        logger.debug("Running %s (cwd=%s)", " ".join(command), cwd)
        try:
            proc = subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                input=input,
                capture_output=True,
                env=merged_env,
                check=False,
            )
        except FileNotFoundError:
            return CommandResult(argv=command, returncode=127, stderr=f"{command[0]}: command not found")
        return CommandResult(
            argv=command,
            returncode=proc.returncode,
            stdout=_decode(proc.stdout),
            stderr=_decode(proc.stderr),
        )


def _decode(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
