from __future__ import annotations

import json
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Set

import pytest
import requests

from conftest import FakeRunner
from site_release.assemble import DockerBackend, HostBackend, PlanBackend, assemble, build_backend
from site_release.assemble.dockerfile import check_bundle_surface, render_dockerfile
from site_release.assemble.steps import server_install_steps
from site_release.build import AssetBuilder, BuildConfig
from site_release.config import ImageSettings, PipelineSettings
from site_release.errors import ProvisionError
from site_release.schemas.bundle import AssetBundle
from site_release.schemas.serving import ServingConfiguration
from site_release.steps import StepHost
from site_release.utils import CommandResult

KEY_URL = "https://dl.cloudsmith.io/public/caddy/stable/gpg.key"
LIST_URL = "https://dl.cloudsmith.io/public/caddy/stable/debian.deb.txt"
ARMORED_KEY = b"-----BEGIN PGP PUBLIC KEY BLOCK-----\nmQINBGSu\n-----END PGP PUBLIC KEY BLOCK-----\n"
SOURCE_LIST = (
    "deb [signed-by=/usr/share/keyrings/caddy-stable-archive-keyring.gpg] "
    "https://dl.cloudsmith.io/public/caddy/stable/deb/debian any-version main\n"
)


class _FakeResponse:
    def __init__(self, url: str, content: bytes, status_code: int = 200) -> None:
        self.url = url
        self.content = content
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error for url: {self.url}")


class _FakeSession:
    def __init__(self, responses: Dict[str, _FakeResponse]) -> None:
        self.responses = responses
        self.calls: List[Dict[str, object]] = []

    def get(self, url: str, timeout: float) -> _FakeResponse:
        self.calls.append({"url": url, "timeout": timeout})
        return self.responses.get(url, _FakeResponse(url, b"", status_code=404))


class _FakeApt:
    """Tracks installed packages across dpkg and apt-get calls."""

    def __init__(self) -> None:
        self.installed: Set[str] = set()
        self.updates = 0

    def dpkg(self, argv: List[str], _cwd, _input) -> CommandResult:
        missing = [name for name in argv[2:] if name not in self.installed]
        if missing:
            return CommandResult(argv=argv, returncode=1, stderr=f"package '{missing[0]}' is not installed")
        return CommandResult(argv=argv, returncode=0)

    def apt_get(self, argv: List[str], _cwd, _input) -> CommandResult:
        if argv[1] == "update":
            self.updates += 1
        elif argv[1] == "install":
            self.installed.update(arg for arg in argv[2:] if not arg.startswith("-"))
        return CommandResult(argv=argv, returncode=0)


def _gpg(argv: List[str], _cwd, data, root: Path = Path("/")) -> CommandResult:
    output = root / argv[argv.index("-o") + 1].lstrip("/")
    output.write_bytes(b"\x99\x02\x0d" + data)
    return CommandResult(argv=argv, returncode=0)


def _host_runner(apt: _FakeApt) -> FakeRunner:
    tools = {"dpkg": apt.dpkg, "apt-get": apt.apt_get}

    def chroot(argv: List[str], cwd, data) -> CommandResult:
        root, inner = Path(argv[1]), argv[2:]
        if inner[0] == "gpg":
            return _gpg(inner, cwd, data, root=root)
        return tools[inner[0]](inner, cwd, data)

    return FakeRunner({**tools, "gpg": _gpg, "chroot": chroot})


def _session() -> _FakeSession:
    return _FakeSession(
        {
            KEY_URL: _FakeResponse(KEY_URL, ARMORED_KEY),
            LIST_URL: _FakeResponse(LIST_URL, SOURCE_LIST.encode("utf-8")),
        }
    )


@pytest.fixture()
def bundle(site_workspace: Path, tmp_path: Path, runner: FakeRunner) -> AssetBundle:
    outcome = AssetBuilder(runner=runner).build(
        BuildConfig(context_root=site_workspace, output_dir=tmp_path / "out", skip_toolchain=True)
    )
    return outcome.bundle


def test_plan_backend_renders_minimal_context(bundle: AssetBundle, tmp_path: Path) -> None:
    context_dir = tmp_path / "image"
    image = assemble(bundle, PipelineSettings(), PlanBackend(), context_dir=context_dir)

    assert sorted(entry.name for entry in context_dir.iterdir()) == ["Dockerfile", "app"]
    shipped = sorted(path.relative_to(context_dir / "app").as_posix() for path in (context_dir / "app").rglob("*"))
    assert shipped == [item.path for item in bundle.files]
    assert image.backend == "plan"
    assert image.reference == str(context_dir.resolve())
    assert image.bundle_digest == bundle.digest
    assert image.entrypoint == ["caddy", "file-server", "--browse", "--root", "/app", "--listen", ":80"]
    assert [step.name for step in image.steps] == [
        "install-prerequisites",
        "install-trust-key",
        "register-package-source",
        "refresh-package-index",
        "install-server",
    ]
    assert {step.status for step in image.steps} == {"planned"}


def test_rerendering_replaces_previous_context(bundle: AssetBundle, tmp_path: Path) -> None:
    context_dir = tmp_path / "image"
    assemble(bundle, PipelineSettings(), PlanBackend(), context_dir=context_dir)
    (context_dir / "app" / "stale.js").write_text("old\n", encoding="utf-8")

    assemble(bundle, PipelineSettings(), PlanBackend(), context_dir=context_dir)

    assert not (context_dir / "app" / "stale.js").exists()
    assert not [entry.name for entry in tmp_path.iterdir() if entry.name.startswith(".image-")]


def test_context_dir_overlapping_bundle_is_refused(bundle: AssetBundle) -> None:
    for context_dir in (bundle.root.parent, bundle.root, bundle.root / "image"):
        with pytest.raises(ProvisionError) as excinfo:
            assemble(bundle, PipelineSettings(), PlanBackend(), context_dir=context_dir)

        assert excinfo.value.step == "render-context"
        assert "overlaps the bundle" in str(excinfo.value)
    assert bundle.entry_path.is_file()
    assert not (bundle.root / "image").exists()


def test_context_dir_with_other_files_is_refused(bundle: AssetBundle, site_workspace: Path) -> None:
    with pytest.raises(ProvisionError) as excinfo:
        assemble(bundle, PipelineSettings(), PlanBackend(), context_dir=site_workspace)

    assert excinfo.value.step == "render-context"
    assert "Cargo.toml" in str(excinfo.value)
    assert (site_workspace / "Cargo.toml").is_file()
    assert not (site_workspace / "Dockerfile").exists()


def test_dockerfile_installs_server_before_copying_bundle(bundle: AssetBundle, tmp_path: Path) -> None:
    context_dir = tmp_path / "image"
    assemble(bundle, PipelineSettings(), PlanBackend(), context_dir=context_dir)
    lines = (context_dir / "Dockerfile").read_text(encoding="utf-8").splitlines()

    assert lines[0] == "FROM debian:bullseye-slim"
    assert lines[1] == 'SHELL ["/bin/bash", "-o", "pipefail", "-c"]'
    run_lines = [index for index, line in enumerate(lines) if line.startswith("RUN ")]
    copy_line = lines.index("COPY app /app")
    assert max(run_lines) < copy_line
    assert json.loads(lines[-1][len("CMD ") :]) == [
        "caddy",
        "file-server",
        "--browse",
        "--root",
        "/app",
        "--listen",
        ":80",
    ]
    assert "EXPOSE 80" in lines
    assert f'LABEL site-release.bundle-digest="{bundle.digest}"' in lines


def test_dockerfile_steps_are_guarded_and_purge_fetch_tools() -> None:
    settings = ImageSettings()
    text = render_dockerfile(settings, ServingConfiguration(), server_install_steps(settings), bundle_digest="abc")

    assert (
        "RUN test -s /usr/share/keyrings/caddy-stable-archive-keyring.gpg || "
        f"(curl -1sLf {KEY_URL} | gpg --dearmor -o /usr/share/keyrings/caddy-stable-archive-keyring.gpg "
        "&& chmod o+r /usr/share/keyrings/caddy-stable-archive-keyring.gpg)"
    ) in text
    assert "RUN dpkg -s caddy >/dev/null 2>&1 || (DEBIAN_FRONTEND=noninteractive apt-get install -y caddy)" in text
    assert "apt-get purge -y --auto-remove curl gnupg && rm -rf /var/lib/apt/lists/*" in text

    kept = render_dockerfile(
        ImageSettings(purge_fetch_tools=False),
        ServingConfiguration(),
        server_install_steps(settings),
        bundle_digest="abc",
    )
    assert "apt-get purge" not in kept


def test_bundle_surface_rejects_build_inputs(tmp_path: Path) -> None:
    root = tmp_path / "app"
    (root / "src").mkdir(parents=True)
    (root / "index.html").write_text("<html></html>\n", encoding="utf-8")
    (root / "Cargo.lock").write_text("version = 3\n", encoding="utf-8")

    with pytest.raises(ProvisionError) as excinfo:
        check_bundle_surface(root)

    assert excinfo.value.step == "check-surface"
    assert "Cargo.lock" in str(excinfo.value)
    assert "src/" in str(excinfo.value)


def test_assemble_requires_bundle_on_disk(bundle: AssetBundle, tmp_path: Path) -> None:
    bundle.entry_path.unlink()

    with pytest.raises(ProvisionError) as excinfo:
        assemble(bundle, PipelineSettings(), PlanBackend(), context_dir=tmp_path / "image")

    assert excinfo.value.step == "locate-bundle"


def test_docker_backend_builds_rendered_context(bundle: AssetBundle, tmp_path: Path) -> None:
    runner = FakeRunner()
    context_dir = tmp_path / "image"
    backend = DockerBackend(runner=runner, tag="site:test")  # type: ignore[arg-type]

    image = assemble(bundle, PipelineSettings(), backend, context_dir=context_dir)

    assert runner.calls == [["docker", "build", "--tag", "site:test", str(context_dir.resolve())]]
    assert image.reference == "site:test"
    assert {step.status for step in image.steps} == {"applied"}
    assert (context_dir / "Dockerfile").is_file()


def test_docker_backend_failure_raises_provision_error(bundle: AssetBundle, tmp_path: Path) -> None:
    def failing_docker(argv, _cwd, _input):
        return CommandResult(argv=argv, returncode=1, stderr="E: Unable to locate package caddy")

    backend = DockerBackend(runner=FakeRunner({"docker": failing_docker}))  # type: ignore[arg-type]

    with pytest.raises(ProvisionError) as excinfo:
        assemble(bundle, PipelineSettings(), backend, context_dir=tmp_path / "image")

    assert excinfo.value.step == "docker-build"
    assert "Unable to locate package caddy" in str(excinfo.value)


def test_host_backend_provisions_rootfs_idempotently(bundle: AssetBundle, tmp_path: Path) -> None:
    rootfs = tmp_path / "rootfs"
    rootfs.mkdir()
    apt = _FakeApt()
    session = _session()
    host = StepHost(runner=_host_runner(apt), rootfs=rootfs, session=session)  # type: ignore[arg-type]

    image = assemble(bundle, PipelineSettings(), HostBackend(host), context_dir=tmp_path / "unused")

    assert [(step.name, step.status) for step in image.steps] == [
        ("install-prerequisites", "applied"),
        ("install-trust-key", "applied"),
        ("register-package-source", "applied"),
        ("refresh-package-index", "applied"),
        ("install-server", "applied"),
    ]
    assert "caddy" in apt.installed
    keyring = rootfs / "usr/share/keyrings/caddy-stable-archive-keyring.gpg"
    assert keyring.read_bytes().endswith(ARMORED_KEY)
    assert keyring.stat().st_mode & stat.S_IROTH
    source_list = rootfs / "etc/apt/sources.list.d/caddy-stable.list"
    assert source_list.read_text(encoding="utf-8") == SOURCE_LIST
    assert (rootfs / "app" / "index.html").read_bytes() == bundle.entry_path.read_bytes()
    assert [call["url"] for call in session.calls] == [KEY_URL, LIST_URL]

    again = assemble(bundle, PipelineSettings(), HostBackend(host), context_dir=tmp_path / "unused")
    assert {step.status for step in again.steps} == {"skipped"}
    assert len(session.calls) == 2


def test_host_backend_runs_package_commands_inside_rootfs(bundle: AssetBundle, tmp_path: Path) -> None:
    rootfs = tmp_path / "rootfs"
    rootfs.mkdir()
    apt = _FakeApt()
    runner = _host_runner(apt)
    host = StepHost(runner=runner, rootfs=rootfs, session=_session())  # type: ignore[arg-type]

    assemble(bundle, PipelineSettings(), HostBackend(host), context_dir=tmp_path / "unused")

    assert runner.calls
    assert all(call[:2] == ["chroot", str(rootfs)] for call in runner.calls)
    assert runner.commands("dpkg") == runner.commands("apt-get") == runner.commands("gpg") == []
    assert ["chroot", str(rootfs), "apt-get", "install", "-y", "caddy"] in runner.calls
    assert "caddy" in apt.installed


def test_host_backend_on_live_root_runs_commands_directly() -> None:
    runner = FakeRunner()
    host = StepHost(runner=runner)  # type: ignore[arg-type]
    step = server_install_steps(ImageSettings())[-1]

    assert step.check(host) is True
    assert runner.calls == [["dpkg", "-s", "caddy"]]


def test_unreachable_trust_key_aborts_provisioning(bundle: AssetBundle, tmp_path: Path) -> None:
    rootfs = tmp_path / "rootfs"
    rootfs.mkdir()
    apt = _FakeApt()
    session = _FakeSession({})
    host = StepHost(runner=_host_runner(apt), rootfs=rootfs, session=session)  # type: ignore[arg-type]

    with pytest.raises(ProvisionError) as excinfo:
        assemble(bundle, PipelineSettings(), HostBackend(host), context_dir=tmp_path / "unused")

    assert excinfo.value.step == "install-trust-key"
    assert "404" in str(excinfo.value)
    assert "caddy" not in apt.installed
    assert not (rootfs / "app").exists()


def test_source_list_without_entries_is_rejected(bundle: AssetBundle, tmp_path: Path) -> None:
    rootfs = tmp_path / "rootfs"
    rootfs.mkdir()
    session = _FakeSession(
        {
            KEY_URL: _FakeResponse(KEY_URL, ARMORED_KEY),
            LIST_URL: _FakeResponse(LIST_URL, b"<html>maintenance</html>"),
        }
    )
    host = StepHost(runner=_host_runner(_FakeApt()), rootfs=rootfs, session=session)  # type: ignore[arg-type]

    with pytest.raises(ProvisionError) as excinfo:
        assemble(bundle, PipelineSettings(), HostBackend(host), context_dir=tmp_path / "unused")

    assert excinfo.value.step == "register-package-source"


def test_build_backend_selects_by_name(tmp_path: Path) -> None:
    runner = FakeRunner()

    assert isinstance(build_backend("plan"), PlanBackend)
    docker = build_backend("docker", runner=runner, options={"tag": "site:ci"})  # type: ignore[arg-type]
    assert isinstance(docker, DockerBackend) and docker.tag == "site:ci"
    host = build_backend("host", runner=runner, options={"rootfs": str(tmp_path)})  # type: ignore[arg-type]
    assert isinstance(host, HostBackend) and host.host.rootfs == tmp_path
    with pytest.raises(ProvisionError, match="Unknown image backend") as excinfo:
        build_backend("podman")
    assert excinfo.value.step == "select-backend"


def test_assembled_at_is_recorded(bundle: AssetBundle, tmp_path: Path) -> None:
    stamp = datetime(2025, 6, 1, tzinfo=timezone.utc)
    image = assemble(bundle, PipelineSettings(), context_dir=tmp_path / "image", assembled_at=stamp)

    assert image.assembled_at == stamp
    assert image.backend == "plan"
