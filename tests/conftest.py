from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from site_release.utils import CommandResult

CARGO_TOML = """\
[package]
name = "site"
version = "0.1.0"
edition = "2021"

[dependencies]
yew = { version = "0.21", features = ["csr"] }
wasm-bindgen = "0.2"
"""

CARGO_LOCK = """\
version = 3

[[package]]
name = "site"
version = "0.1.0"
dependencies = ["wasm-bindgen", "yew"]

[[package]]
name = "wasm-bindgen"
version = "0.2.93"

[[package]]
name = "yew"
version = "0.21.0"
"""

INDEX_HTML = "<!DOCTYPE html>\n<html><head><link data-trunk rel=\"rust\" /></head><body></body></html>\n"

Handler = Callable[[List[str], Optional[Path], Optional[bytes]], CommandResult]


class FakeRunner:
    """Stands in for CommandRunner; dispatches on the executable name."""

    def __init__(self, handlers: Optional[Dict[str, Handler]] = None) -> None:
        self.handlers: Dict[str, Handler] = dict(handlers or {})
        self.calls: List[List[str]] = []

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        input: Optional[bytes] = None,
        env=None,
    ) -> CommandResult:
        command = [str(arg) for arg in argv]
        self.calls.append(command)
        handler = self.handlers.get(command[0])
        if handler is None:
            return CommandResult(argv=command, returncode=0)
        return handler(command, cwd, input)

    def commands(self, executable: str) -> List[List[str]]:
        return [call for call in self.calls if call[0] == executable]


def fake_trunk(argv: List[str], cwd: Optional[Path], _input: Optional[bytes]) -> CommandResult:
    """Emulate `trunk build`: derive the dist output from the staged inputs."""

    if argv[1:2] != ["build"]:
        return CommandResult(argv=argv, returncode=0, stdout="trunk 0.21.4\n")
    assert cwd is not None
    dist = cwd / argv[argv.index("--dist") + 1]
    dist.mkdir(parents=True, exist_ok=True)
    sources = b"".join(path.read_bytes() for path in sorted((cwd / "src").rglob("*")) if path.is_file())
    fingerprint = hashlib.sha256(sources).hexdigest()[:16]
    (dist / "index.html").write_text((cwd / "index.html").read_text(encoding="utf-8"), encoding="utf-8")
    (dist / f"site-{fingerprint}_bg.wasm").write_bytes(b"\0asm\x01\0\0\0" + sources)
    (dist / f"site-{fingerprint}.js").write_text("export default function init() {}\n", encoding="utf-8")
    return CommandResult(argv=argv, returncode=0, stdout="success\n")


def write_site(root: Path) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    (root / "Cargo.toml").write_text(CARGO_TOML, encoding="utf-8")
    (root / "Cargo.lock").write_text(CARGO_LOCK, encoding="utf-8")
    (root / "index.html").write_text(INDEX_HTML, encoding="utf-8")
    (root / "src").mkdir(exist_ok=True)
    (root / "src" / "main.rs").write_text("fn main() { yew::Renderer::<App>::new().render(); }\n", encoding="utf-8")
    return root


@pytest.fixture(autouse=True)
def _isolate_settings_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("SITE_RELEASE_"):
            monkeypatch.delenv(key)


@pytest.fixture()
def site_workspace(tmp_path: Path) -> Path:
    return write_site(tmp_path / "site")


@pytest.fixture()
def runner() -> FakeRunner:
    return FakeRunner({"trunk": fake_trunk})
