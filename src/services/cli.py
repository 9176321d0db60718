"""
Command-line entry point for the ingestion pipelines.

Usage:
    python3 -m src.services.cli challenges --max-items 20
    python3 -m src.services.cli events --skip-news
    python3 -m src.services.cli directory --log-level DEBUG
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv

from src.services.challenge_pipeline import run_ingestion_pipeline
from src.services.config import PipelineConfig
from src.services.errors import ConfigurationError
from src.services.event_discovery import run_directory_pipeline, run_discovery_pipeline
from src.services.models import PipelineRunStats

LOGGER = logging.getLogger(__name__)

PIPELINE_REQUIREMENTS = {
    "challenges": ("openrouter", "newsapi", "user_agent"),
    "events": ("openrouter", "user_agent"),
    "directory": ("openrouter", "user_agent"),
}


def _requirements(args: argparse.Namespace) -> list[str]:
    require = list(PIPELINE_REQUIREMENTS[args.pipeline])
    if args.pipeline == "events":
        if not args.skip_search:
            require.append("brave")
        if not args.skip_news:
            require.append("newsapi")
    return require


def run_pipeline(args: argparse.Namespace, config: PipelineConfig) -> PipelineRunStats:
    if args.pipeline == "challenges":
        return run_ingestion_pipeline(config=config, max_items_per_category=args.max_items)
    if args.pipeline == "events":
        return run_discovery_pipeline(
            config=config,
            skip_search=args.skip_search,
            skip_news=args.skip_news,
            max_items_per_source=args.max_items or 20,
        )
    return run_directory_pipeline(config=config)


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Ingest civic challenges and discover civic-tech events.")
    parser.add_argument(
        "pipeline",
        choices=sorted(PIPELINE_REQUIREMENTS),
        help="Which pipeline to run.",
    )
    parser.add_argument(
        "--db-path",
        type=Path,
        default=None,
        help="SQLite database for records and the geocode cache (default: $CIVIC_DB_PATH or datasets/civic/civic.sqlite).",
    )
    parser.add_argument(
        "--max-items",
        type=int,
        default=None,
        help="Items to request per news category or per search query.",
    )
    parser.add_argument(
        "--skip-search",
        action="store_true",
        help="Skip the web search source (events pipeline only).",
    )
    parser.add_argument(
        "--skip-news",
        action="store_true",
        help="Skip the news source (events pipeline only).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO).",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        force=True,
    )

    dotenv_loaded = load_dotenv(dotenv_path=Path(__file__).resolve().parents[2] / ".env")
    if dotenv_loaded:
        LOGGER.debug("Loaded environment variables from .env file.")

    try:
        config = PipelineConfig.from_env(require=_requirements(args), db_path=args.db_path)
    except ConfigurationError as exc:
        LOGGER.error("%s", exc)
        return 2
    config.db_path.parent.mkdir(parents=True, exist_ok=True)

    LOGGER.info("Starting %s pipeline (db=%s)", args.pipeline, config.db_path)
    stats = run_pipeline(args, config)
    LOGGER.info("Run summary: %s", json.dumps(stats.to_dict(), sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
