"""Pipeline settings loaded from YAML and environment overrides."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import PipelineError
from .schemas.serving import SERVER_BINARY, ServingConfiguration

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "site-release.yaml"
ENV_PREFIX = "SITE_RELEASE_"


class BuildSettings(BaseModel):
    lock_file: str = "Cargo.lock"
    descriptor: str = "Cargo.toml"
    entry: str = "index.html"
    source_dir: str = "src"
    extra_inputs: List[str] = Field(default_factory=list)
    target: str = "wasm32-unknown-unknown"
    bundler: str = "trunk"
    release: bool = True
    dist_dir: str = "dist"
    output_dir: str = "build/site"
    rust_version: Optional[str] = Field(default=None, description="Expected `rustc --version` number, e.g. 1.90.0.")
    install_toolchain: bool = True

    model_config = ConfigDict(extra="forbid")


class ImageSettings(BaseModel):
    base_image: str = "debian:bullseye-slim"
    tag: str = "site:latest"
    package: Literal["caddy"] = SERVER_BINARY
    key_url: str = "https://dl.cloudsmith.io/public/caddy/stable/gpg.key"
    source_list_url: str = "https://dl.cloudsmith.io/public/caddy/stable/debian.deb.txt"
    keyring_path: str = "/usr/share/keyrings/caddy-stable-archive-keyring.gpg"
    source_list_path: str = "/etc/apt/sources.list.d/caddy-stable.list"
    prerequisites: List[str] = Field(
        default_factory=lambda: [
            "debian-keyring",
            "debian-archive-keyring",
            "apt-transport-https",
            "curl",
            "gnupg",
        ]
    )
    purge_fetch_tools: bool = True
    context_dir: str = "build/image"

    model_config = ConfigDict(extra="forbid")


class PipelineSettings(BaseModel):
    build: BuildSettings = Field(default_factory=BuildSettings)
    image: ImageSettings = Field(default_factory=ImageSettings)
    serve: ServingConfiguration = Field(default_factory=ServingConfiguration)

    model_config = ConfigDict(extra="forbid")


def load_settings(
    path: Optional[Path] = None,
    *,
    workspace_root: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> PipelineSettings:
    """Load settings from YAML (explicit path or workspace default) plus env overrides."""

    payload: Dict[str, Any] = {}
    candidate = path
    if candidate is None and workspace_root is not None:
        default = workspace_root / DEFAULT_CONFIG_NAME
        if default.exists():
            candidate = default
    if candidate is not None:
        if not candidate.exists():
            raise PipelineError(f"Settings file not found: {candidate}")
        loaded = yaml.safe_load(candidate.read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise PipelineError(f"Settings file must contain a mapping: {candidate}")
        payload = loaded
        logger.debug("Loaded settings from %s", candidate)

    _apply_env_overrides(payload, os.environ if env is None else env)
    try:
        return PipelineSettings.model_validate(payload)
    except ValidationError as exc:
        raise PipelineError(f"Invalid pipeline settings: {exc}") from exc


def _apply_env_overrides(payload: Dict[str, Any], env: Mapping[str, str]) -> None:
    sections = {
        "BUILD": ("build", BuildSettings),
        "IMAGE": ("image", ImageSettings),
        "SERVE": ("serve", ServingConfiguration),
    }
    for key, raw_value in env.items():
        if not key.startswith(ENV_PREFIX):
            continue
        remainder = key[len(ENV_PREFIX) :]
        section_key, _, field_key = remainder.partition("_")
        if section_key not in sections or not field_key:
            continue
        section_name, model = sections[section_key]
        field_name = field_key.lower()
        if field_name not in model.model_fields:
            logger.warning("Ignoring unknown settings override %s", key)
            continue
        section = payload.setdefault(section_name, {})
        if not isinstance(section, dict):
            raise PipelineError(f"Settings section '{section_name}' must be a mapping.")
        section[field_name] = _coerce_env_value(raw_value, model.model_fields[field_name].annotation)


def _coerce_env_value(value: str, annotation: Any) -> object:
    origin = getattr(annotation, "__origin__", None)
    if origin in (list, List):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value
