from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv

from .build.manifest import BUNDLE_DIR_NAME, MANIFEST_NAME, load_bundle, verify_bundle
from .config import PipelineSettings, load_settings
from .errors import PipelineError
from .pipeline import assemble_site, build_site, describe_steps, run_pipeline
from .pipelines import PipelineContext, get_pipeline, list_pipelines, resolve_inputs
from .serve import PreviewServer, exec_server, server_argv
from .utils import resolve_path


def _load_local_env(workspace_root: str) -> None:
    """Load a workspace-local .env so SITE_RELEASE_* overrides can live there."""

    env_file = Path(workspace_root).resolve() / ".env"
    if env_file.exists():
        load_dotenv(env_file)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load(args: argparse.Namespace) -> PipelineSettings:
    workspace = Path(args.workspace_root).resolve()
    path = resolve_path(args.config, workspace) if args.config else None
    return load_settings(path, workspace_root=workspace)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--workspace-root", default=".")
    parser.add_argument("--config", help="Settings YAML (defaults to site-release.yaml in the workspace)")


def _add_backend_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--backend", choices=["plan", "docker", "host"], default="plan")
    parser.add_argument("--tag", help="Image tag for the docker backend")
    parser.add_argument("--docker", help="docker executable for the docker backend")
    parser.add_argument("--rootfs", help="Filesystem root for the host backend")
    parser.add_argument("--context-dir")


def _backend_options(args: argparse.Namespace) -> Dict[str, object]:
    options: Dict[str, object] = {}
    for key in ("tag", "docker", "rootfs"):
        value = getattr(args, key, None)
        if value:
            options[key] = value
    return options


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="site-release", description="Build a WASM site and package it with a static file server")
    parser.add_argument("--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build = subparsers.add_parser("build", help="Compile the site into an asset bundle")
    _add_common_arguments(build)
    build.add_argument("--output-dir")
    build.add_argument("--skip-toolchain", action=argparse.BooleanOptionalAction, default=False)

    assemble = subparsers.add_parser("assemble", help="Package a built bundle with the file server")
    _add_common_arguments(assemble)
    _add_backend_arguments(assemble)
    assemble.add_argument("--bundle-dir", help="Directory holding bundle.json and app/")

    run = subparsers.add_parser("run", help="Build then assemble")
    _add_common_arguments(run)
    _add_backend_arguments(run)
    run.add_argument("--output-dir")
    run.add_argument("--skip-toolchain", action=argparse.BooleanOptionalAction, default=False)

    bundle = subparsers.add_parser("bundle", help="Bundle helpers")
    bundle_subparsers = bundle.add_subparsers(dest="bundle_command", required=True)
    bundle_verify = bundle_subparsers.add_parser("verify", help="Re-hash a bundle against its manifest")
    _add_common_arguments(bundle_verify)
    bundle_verify.add_argument("--bundle-dir")

    serve = subparsers.add_parser("serve", help="Run the file server in the foreground")
    _add_common_arguments(serve)
    serve.add_argument("--dry-run", action=argparse.BooleanOptionalAction, default=False)

    preview = subparsers.add_parser("preview", help="Serve a built bundle locally over plain HTTP")
    _add_common_arguments(preview)
    preview.add_argument("--bundle-dir")
    preview.add_argument("--host", default="127.0.0.1")
    preview.add_argument("--port", type=int, default=8080)

    config_cmd = subparsers.add_parser("config", help="Settings helpers")
    config_subparsers = config_cmd.add_subparsers(dest="config_command", required=True)
    config_show = config_subparsers.add_parser("show", help="Print effective settings")
    _add_common_arguments(config_show)
    config_steps = config_subparsers.add_parser("steps", help="Print provisioning steps and their shell form")
    _add_common_arguments(config_steps)

    pipeline_cmd = subparsers.add_parser("pipeline", help="Composite pipeline registry commands")
    pipeline_subparsers = pipeline_cmd.add_subparsers(dest="pipeline_command", required=True)
    pipeline_subparsers.add_parser("list", help="List registered pipelines")
    pipeline_run = pipeline_subparsers.add_parser("run", help="Execute a registered pipeline")
    pipeline_run.add_argument("--pipeline", required=True, dest="pipeline_slug")
    pipeline_run.add_argument("--input", action="append")
    pipeline_run.add_argument("--workspace-root", default=".")

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    _load_local_env(getattr(args, "workspace_root", "."))

    try:
        return _dispatch(parser, args)
    except PipelineError as exc:
        print(str(exc), file=sys.stderr)
        return 2


def _dispatch(parser: argparse.ArgumentParser, args: argparse.Namespace) -> int:
    if args.command == "build":
        outcome = build_site(
            workspace_root=args.workspace_root,
            settings=_load(args),
            output_dir=args.output_dir,
            skip_toolchain=args.skip_toolchain,
        )
        print(json.dumps(outcome.to_dict(), indent=2))
        return 0

    if args.command == "assemble":
        image = assemble_site(
            workspace_root=args.workspace_root,
            settings=_load(args),
            bundle_dir=args.bundle_dir,
            backend=args.backend,
            backend_options=_backend_options(args),
            context_dir=args.context_dir,
        )
        print(json.dumps(image.model_dump(mode="json"), indent=2))
        return 0

    if args.command == "run":
        result = run_pipeline(
            workspace_root=args.workspace_root,
            settings=_load(args),
            output_dir=args.output_dir,
            skip_toolchain=args.skip_toolchain,
            backend=args.backend,
            backend_options=_backend_options(args),
            context_dir=args.context_dir,
        )
        print(json.dumps(result.to_dict(), indent=2))
        if result.error is not None:
            print(str(result.error), file=sys.stderr)
            return 2
        return 0

    if args.command == "bundle" and args.bundle_command == "verify":
        bundle_dir = _bundle_dir(args)
        manifest_path = bundle_dir / MANIFEST_NAME
        if not manifest_path.exists():
            raise PipelineError(f"Bundle manifest not found: {manifest_path}")
        verification = verify_bundle(load_bundle(manifest_path))
        print(json.dumps(verification.to_dict(), indent=2))
        return 0 if verification.valid else 1

    if args.command == "serve":
        serving = _load(args).serve
        if args.dry_run:
            print(json.dumps({"argv": server_argv(serving), "root": serving.root, "listen": serving.listen}, indent=2))
            return 0
        exec_server(serving)

    if args.command == "preview":
        root = _bundle_dir(args) / BUNDLE_DIR_NAME
        try:
            server = PreviewServer(root, host=args.host, port=args.port)
        except FileNotFoundError as exc:
            raise PipelineError(str(exc), step="preview") from exc
        server.serve_forever()
        return 0

    if args.command == "config":
        settings = _load(args)
        if args.config_command == "show":
            print(json.dumps(settings.model_dump(mode="json"), indent=2))
            return 0
        if args.config_command == "steps":
            print(json.dumps(describe_steps(settings), indent=2))
            return 0

    if args.command == "pipeline":
        if args.pipeline_command == "list":
            print(json.dumps([spec.to_dict() for spec in list_pipelines()], indent=2))
            return 0

        if args.pipeline_command == "run":
            try:
                spec = get_pipeline(args.pipeline_slug)
                provided_inputs = _parse_pipeline_inputs(args.input or [])
                resolved_inputs = resolve_inputs(spec, provided_inputs)
            except (KeyError, ValueError) as exc:
                print(str(exc.args[0] if exc.args else exc), file=sys.stderr)
                return 2

            context = PipelineContext(
                workspace_root=Path(args.workspace_root).resolve(),
                inputs=resolved_inputs,
            )
            result = spec.runner(context)
            payload = {"pipeline": spec.slug, **result.to_dict()}
            print(json.dumps(payload, indent=2))
            if result.status == "error":
                return 2
            return 0

    parser.error("Unknown command")
    return 1


def _bundle_dir(args: argparse.Namespace) -> Path:
    workspace = Path(args.workspace_root).resolve()
    if args.bundle_dir:
        return resolve_path(args.bundle_dir, workspace)
    return resolve_path(_load(args).build.output_dir, workspace)


def _parse_pipeline_inputs(values: List[str]) -> Dict[str, List[str]]:
    inputs: Dict[str, List[str]] = {}
    for entry in values:
        if "=" not in entry:
            raise ValueError(f"Pipeline input must be key=value (got '{entry}')")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Pipeline input key cannot be empty.")
        inputs.setdefault(key, []).append(raw_value.strip())
    return inputs


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
