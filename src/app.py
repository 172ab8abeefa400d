"""Application entry point for the cityscope pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

import settings
from core.boundaries import count_features, filter_features_by_boundaries, load_boundaries
from core.errors import CityscopeError
from core.models import IngestOptions, IngestResult

NAME = "CITYSCOPE"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    """Mask secret environment values in every formatted record."""

    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = [os.getenv(name) for name in redact_cfg.get("patterns", [])]
    # Longest first so a secret containing another is masked whole.
    return sorted({value for value in values if value}, key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
    formatter = _RedactingFormatter(
        _collect_redaction_values(config),
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers: list[logging.Handler] = []
    if config.get("console", True):
        # stdout carries command output; logs go to stderr.
        handlers.append(logging.StreamHandler(sys.stderr))

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/cityscope.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                path,
                maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
                backupCount=int(file_cfg.get("backup_count", 5)),
                encoding="utf-8",
            )
        )

    if not handlers:
        return
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=handlers)


def _read_text(path: Optional[str]) -> str:
    if not path or path == "-":
        return sys.stdin.read()
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read()


def _read_geojson(path: Optional[str]) -> Optional[dict]:
    if not path:
        return None
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _summarize(result: IngestResult) -> dict:
    return {
        "messages": [
            {
                "id": message.id,
                "isRelevant": message.is_relevant,
                "categories": message.categories,
                "features": count_features(message.geo_json),
                "ingestErrors": message.ingest_errors,
            }
            for message in result.messages
        ],
        "totalCategorized": result.total_categorized,
        "totalRelevant": result.total_relevant,
        "totalIrrelevant": result.total_irrelevant,
    }


def _ingest(args: argparse.Namespace) -> int:
    from pipeline import build_orchestrator

    options = IngestOptions(
        locality=args.locality or settings.LOCALITY,
        source=args.source,
        source_url=args.source_url,
        precomputed_geo_json=_read_geojson(args.geojson),
    )
    orchestrator = build_orchestrator()
    try:
        result = asyncio.run(orchestrator.ingest(_read_text(args.file), options))
    except CityscopeError as exc:
        LOGGER.error("Ingest failed: %s", exc)
        return 1
    print(json.dumps(_summarize(result), ensure_ascii=False, indent=2))
    return 0


async def _notify_with_telethon() -> int:
    from adapters.telethon_sender import TelethonSender
    from client import bot_token, build_client
    from pipeline import build_matcher

    client = build_client()
    await client.start(bot_token=bot_token())
    try:
        summary = await build_matcher(TelethonSender(client)).run()
    finally:
        await client.disconnect()
    print(json.dumps(summary.to_document(), indent=2))
    return 0


def _notify(args: argparse.Namespace) -> int:
    from pipeline import build_bot_sender, build_matcher

    if settings.NOTIFICATION_METHOD == "telethon":
        return asyncio.run(_notify_with_telethon())
    if settings.NOTIFICATION_METHOD != "bot_api":
        LOGGER.error("Unsupported notification method: %s", settings.NOTIFICATION_METHOD)
        return 2
    summary = asyncio.run(build_matcher(build_bot_sender()).run())
    print(json.dumps(summary.to_document(), indent=2))
    return 0


def _boundaries(args: argparse.Namespace) -> int:
    boundaries = load_boundaries(args.boundary or settings.BOUNDARY_PATH)
    if boundaries is None:
        LOGGER.error("No boundary file configured")
        return 2
    geo_json = _read_geojson(args.geojson)
    kept = filter_features_by_boundaries(geo_json, boundaries)
    print(
        json.dumps(
            {
                "features": count_features(geo_json),
                "inside": count_features(kept),
                "withinBoundaries": kept is not None,
            },
            indent=2,
        )
    )
    return 0 if kept is not None else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cityscope")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Ingest one raw submission")
    ingest.add_argument("file", nargs="?", help="Text file to ingest (stdin when omitted or '-')")
    ingest.add_argument("--locality", help="Locality id, defaults to the configured one")
    ingest.add_argument("--source", default="cli", help="Source name stored with the message")
    ingest.add_argument("--source-url", help="Original URL; also seeds the message id")
    ingest.add_argument("--geojson", help="Precomputed GeoJSON; skips extraction and geocoding")

    subparsers.add_parser("notify", help="Run one matching and delivery pass")

    boundaries = subparsers.add_parser(
        "boundaries",
        help="Report whether a GeoJSON file intersects the locality boundary",
    )
    boundaries.add_argument("geojson", help="FeatureCollection to check")
    boundaries.add_argument("--boundary", help="Boundary file, defaults to the configured one")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    _configure_logging()
    if args.command != "boundaries":
        _print_banner()

    handlers = {"ingest": _ingest, "notify": _notify, "boundaries": _boundaries}
    sys.exit(handlers[args.command](args))


if __name__ == "__main__":
    main()
