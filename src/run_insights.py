"""
Symptom Insights Runner
=======================
Command-line entry point for the two batch jobs.

Usage:
    python run_insights.py                      # correlations, then insights
    python run_insights.py --correlations       # correlation engine only
    python run_insights.py --insights           # insights pipeline only
    python run_insights.py --user abc123        # one user, on demand
    python run_insights.py --user abc123 --date 2025-03-01
    python run_insights.py --migrate            # create tables first
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("run_insights")

from correlation_engine import CorrelationEngine
from pipeline.insights_pipeline import InsightsPipeline
from pipeline.migrations import ensure_startup_schema, schema_audit
from reasoning_agent import CrewAIReasoningClient, ReasoningAdapter
from settings import PipelineSettings
from store import PostgresHealthStore


def build_pipeline(store, settings: PipelineSettings) -> InsightsPipeline:
    client = CrewAIReasoningClient(
        model=settings.model,
        api_key=settings.api_key,
        timeout=settings.timeout_seconds,
    )
    return InsightsPipeline(store, ReasoningAdapter(client, model_name=settings.model), settings)


async def run(args: argparse.Namespace, settings: PipelineSettings) -> None:
    store = PostgresHealthStore()
    run_both = not args.correlations and not args.insights

    if args.user:
        if args.correlations or run_both:
            written = await CorrelationEngine(store, settings.min_log_days).compute_for_user(args.user)
            log.info("Correlations for %s: %d records", args.user, written)
        if args.insights or run_both:
            result = await build_pipeline(store, settings).run_for_user(args.user, args.date)
            log.info("Insights for %s: status=%s tokens=%d", args.user, result["status"], result["tokens"])
        return

    if args.correlations or run_both:
        log.info("Step 1: Computing correlations...")
        await CorrelationEngine(store, settings.min_log_days).compute_all()
    if args.insights or run_both:
        log.info("Step 2: Generating insights...")
        await build_pipeline(store, settings).run_for_all_eligible_users(args.date)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Symptom insights batch runner")
    parser.add_argument("--correlations", action="store_true",
                        help="Run the correlation engine")
    parser.add_argument("--insights", action="store_true",
                        help="Run the insights pipeline")
    parser.add_argument("--user", default=None,
                        help="Process a single user id instead of the whole batch")
    parser.add_argument("--date", type=date.fromisoformat, default=None,
                        help="Target date YYYY-MM-DD (default: today, UTC)")
    parser.add_argument("--migrate", action="store_true",
                        help="Run startup migrations before processing")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = PipelineSettings.from_env()
    try:
        if args.migrate:
            ensure_startup_schema()
            audit = schema_audit()
            if not audit["ok"]:
                log.warning(
                    "Schema audit: missing tables %s; missing columns %s",
                    ", ".join(audit["missing_tables"]) or "none",
                    audit.get("missing_columns") or "none",
                )
        asyncio.run(run(args, settings))
    except Exception as e:
        log.exception("Run failed: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
