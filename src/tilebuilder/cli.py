"""CLI entrypoint for the tilebuilder boundary map pipeline."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Sequence

from dotenv import load_dotenv

from .config import COLLECTIONS, Settings, load_config
from .credentials import check_credentials, redact
from .errors import StageError, TilebuilderError
from .generate import resolve_renderer
from .pipeline import STAGES, Pipeline, format_pipeline_lines
from .util import ensure_directories, setup_logging

LOGGER = logging.getLogger("tilebuilder.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tilebuilder",
        description="Boundary map tiles: generate SVGs, publish them and seed their rows.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", default="config.yaml", help="Path to YAML config.")
        p.add_argument("--verbose", action="store_true", help="Enable debug logs.")
        p.add_argument(
            "--collection",
            choices=COLLECTIONS,
            required=True,
            help="Boundary collection to process.",
        )

    def add_generate_options(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--renderer",
            default=None,
            help="Renderer as 'module:callable'; overrides the configured one.",
        )
        p.add_argument(
            "--force-download",
            action="store_true",
            help="Download the source dataset even when a cached copy exists.",
        )

    generate_p = subparsers.add_parser("generate", help="Download source data and render SVGs + metadata.")
    add_common(generate_p)
    add_generate_options(generate_p)

    upload_p = subparsers.add_parser("upload", help="Upload generated SVGs to storage.")
    add_common(upload_p)

    seed_p = subparsers.add_parser("seed", help="Upsert rows from the metadata sidecar.")
    add_common(seed_p)

    pipeline_p = subparsers.add_parser("pipeline", help="Run generate, upload and seed in order.")
    add_common(pipeline_p)
    add_generate_options(pipeline_p)
    pipeline_p.add_argument(
        "--skip-generate",
        action="store_true",
        help="Reuse SVGs and metadata already on disk.",
    )

    reset_p = subparsers.add_parser(
        "reset",
        help="Delete stored objects and rows of the collection, then upload and seed again "
        "(requires ALLOW_DESTRUCTIVE=1).",
    )
    add_common(reset_p)

    creds_p = subparsers.add_parser(
        "check-credentials",
        help="Check that storage and database credentials target the same project.",
    )
    add_common(creds_p)

    return parser


def _load_and_setup(args: argparse.Namespace) -> Settings:
    cfg = load_config(args.config)
    setup_logging(cfg.paths.logs_dir / "tilebuilder.log", verbose=args.verbose)
    ensure_directories(cfg.paths.build_directories)
    return Settings.from_env(cfg)


def _run_check_credentials(settings: Settings) -> int:
    LOGGER.info(
        "Credentials: %s",
        redact(
            {
                "SUPABASE_URL": settings.supabase_url,
                "SUPABASE_SERVICE_ROLE_KEY": settings.service_role_key,
                "SUPABASE_DB_URL": settings.db_url,
            }
        ),
    )
    check = check_credentials(settings.supabase_url, settings.service_role_key, settings.db_url)
    LOGGER.info("[OK] Credentials target project %s", check.project_ref)
    if not check.db_checked:
        LOGGER.info("[WARN] SUPABASE_DB_URL not set; database URL not checked")
    return 0


async def _run_pipeline(pipeline: Pipeline, command: str, *, skip_generate: bool) -> None:
    if command == "reset":
        await pipeline.reset()
    elif command == "pipeline":
        stages = STAGES[1:] if skip_generate else STAGES
        await pipeline.run(stages)
    else:
        await pipeline.run([command])


def _dispatch(args: argparse.Namespace) -> int:
    settings = _load_and_setup(args)
    command = str(args.command)
    if command == "check-credentials":
        try:
            return _run_check_credentials(settings)
        except TilebuilderError as exc:
            LOGGER.error("[ERROR] %s", exc)
            return 1
    if command not in (*STAGES, "pipeline", "reset"):
        raise ValueError(f"Unknown command: {command}")

    renderer_ref = getattr(args, "renderer", None)
    try:
        renderer = resolve_renderer(renderer_ref) if renderer_ref else None
    except TilebuilderError as exc:
        LOGGER.error("[ERROR] %s", exc)
        return 1
    pipeline = Pipeline(
        settings,
        str(args.collection),
        renderer=renderer,
        force_download=bool(getattr(args, "force_download", False)),
    )
    try:
        asyncio.run(
            _run_pipeline(pipeline, command, skip_generate=bool(getattr(args, "skip_generate", False)))
        )
    except StageError as exc:
        for line in format_pipeline_lines(pipeline.report):
            LOGGER.info(line)
        LOGGER.error("[ERROR] %s", exc)
        return 1
    except TilebuilderError as exc:
        LOGGER.error("[ERROR] %s", exc)
        return 1
    for line in format_pipeline_lines(pipeline.report):
        LOGGER.info(line)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv(override=False)
    parser = _build_parser()
    args = parser.parse_args(argv)
    return _dispatch(args)


if __name__ == "__main__":
    raise SystemExit(main())
