"""Provisioning steps that install the static file server from its signed channel."""

from __future__ import annotations

import logging
import shlex
import stat
from pathlib import Path
from typing import List

import requests

from ..config import ImageSettings
from ..errors import ProvisionError
from ..steps import CommandStep, ProvisionStep, StepHost

logger = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def _non_empty(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0


def _make_world_readable(path: Path) -> None:
    path.chmod(path.stat().st_mode | stat.S_IROTH)


class _FetchStep(ProvisionStep):
    error_cls = ProvisionError

    def __init__(self, url: str, target: str) -> None:
        self.url = url
        self.target = target

    def check(self, host: StepHost) -> bool:
        return _non_empty(host.path(self.target))

    def check_shell(self) -> str:
        return f"test -s {shlex.quote(self.target)}"

    def _fetch(self, host: StepHost) -> bytes:
        logger.info("Fetching %s", self.url)
        try:
            response = host.http().get(self.url, timeout=host.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise self.fail(f"unable to fetch {self.url}: {exc}") from exc
        if not response.content:
            raise self.fail(f"empty response from {self.url}")
        return response.content


class TrustKeyStep(_FetchStep):
    """Fetch the channel's public signing key and store it dearmored."""

    name = "install-trust-key"
    description = "Install the package channel's public signing key."

    def apply(self, host: StepHost) -> None:
        armored = self._fetch(host)
        keyring = host.path(self.target)
        keyring.parent.mkdir(parents=True, exist_ok=True)
        result = host.runner.run(
            host.command(["gpg", "--batch", "--yes", "--dearmor", "-o", self.target]),
            input=armored,
        )
        if not result.ok:
            raise self.fail(f"gpg --dearmor exited with status {result.returncode}: {result.tail()}")
        if not keyring.exists():
            raise self.fail(f"keyring was not written to {keyring}")
        _make_world_readable(keyring)

    def apply_shell(self) -> str:
        target = shlex.quote(self.target)
        return f"curl -1sLf {shlex.quote(self.url)} | gpg --dearmor -o {target} && chmod o+r {target}"


class SourceListStep(_FetchStep):
    """Register the channel as a trusted package source."""

    name = "register-package-source"
    description = "Register the signed package channel with apt."

    def apply(self, host: StepHost) -> None:
        content = self._fetch(host).decode("utf-8", errors="replace")
        if not any(line.strip().startswith("deb") for line in content.splitlines()):
            raise self.fail(f"{self.url} does not contain an apt source entry")
        target = host.path(self.target)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        _make_world_readable(target)

    def apply_shell(self) -> str:
        target = shlex.quote(self.target)
        return f"curl -1sLf {shlex.quote(self.url)} | tee {target} >/dev/null && chmod o+r {target}"


def server_install_steps(settings: ImageSettings) -> List[ProvisionStep]:
    package_installed = ["dpkg", "-s", settings.package]
    return [
        CommandStep(
            "install-prerequisites",
            check=["dpkg", "-s", *settings.prerequisites],
            apply=[
                ["apt-get", "update"],
                ["apt-get", "install", "-y", "--no-install-recommends", *settings.prerequisites],
            ],
            env=APT_ENV,
            description="Install keyrings and fetch tooling.",
            error_cls=ProvisionError,
        ),
        TrustKeyStep(settings.key_url, settings.keyring_path),
        SourceListStep(settings.source_list_url, settings.source_list_path),
        CommandStep(
            "refresh-package-index",
            check=package_installed,
            apply=[["apt-get", "update"]],
            env=APT_ENV,
            description="Refresh the local package index.",
            error_cls=ProvisionError,
            verify_after_apply=False,
        ),
        CommandStep(
            "install-server",
            check=package_installed,
            apply=[["apt-get", "install", "-y", settings.package]],
            env=APT_ENV,
            description=f"Install the {settings.package} binary.",
            error_cls=ProvisionError,
        ),
    ]
