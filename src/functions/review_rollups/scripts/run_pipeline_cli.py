"""CLI entry point for the review rollup pipeline."""

from __future__ import annotations

import argparse
import json
import logging
import socket
import sys
from pathlib import Path
from typing import Dict, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[4]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.shared.utils.config_validator import ConfigurationError
from src.shared.utils.env import load_env
from src.shared.utils.logging import setup_logging

from src.functions.review_rollups.core.orchestration.config_loader import (
    build_openai_settings,
    build_pipeline_config,
    build_supabase_settings,
)
from src.functions.review_rollups.core.orchestration.pipeline import build_pipeline

LOG = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one pass of the review rollup pipeline.")
    parser.add_argument("--max-subjects", type=int, help="Maximum dirty subjects to process")
    parser.add_argument("--max-jobs", type=int, help="Maximum review embedding jobs to process")
    parser.add_argument("--runner", help="Lock owner name (default: cli-<hostname>)")
    parser.add_argument("--parallel", action="store_true", help="Process subjects in parallel")
    parser.add_argument("--max-workers", type=int, help="Maximum worker threads when running in parallel")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report selected work; no claims, no OpenAI calls, no writes",
    )
    parser.add_argument("--skip-subjects", action="store_true", help="Do not process dirty subjects")
    parser.add_argument("--skip-jobs", action="store_true", help="Do not process review embedding jobs")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--output",
        choices=("text", "json"),
        default="text",
        help="Output format for results (default: text)",
    )
    return parser.parse_args(argv)


def run(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    load_env()
    setup_logging(level="DEBUG" if args.verbose else None)

    try:
        pipeline_config = build_pipeline_config(
            {
                "max_subjects": args.max_subjects,
                "max_jobs": args.max_jobs,
                "parallel": True if args.parallel else None,
                "max_workers": args.max_workers,
                "dry_run": True if args.dry_run else None,
                "process_subjects": False if args.skip_subjects else None,
                "process_jobs": False if args.skip_jobs else None,
            }
        )
        supabase_settings = build_supabase_settings()
        openai_settings = build_openai_settings()
    except (ConfigurationError, ValueError) as exc:
        LOG.error("Configuration error: %s", exc)
        return 1

    runner = args.runner or f"cli-{socket.gethostname()}"
    pipeline = build_pipeline(
        config=pipeline_config,
        runner=runner,
        supabase_settings=supabase_settings,
        openai_settings=openai_settings,
    )
    result = pipeline.run()
    output = result.to_dict()

    if args.output == "json":
        json.dump(output, sys.stdout, indent=2, ensure_ascii=False)
        sys.stdout.write("\n")
    else:
        _print_summary(output)

    counts = output["counts"]
    return 0 if counts.get("subjects_failed", 0) == 0 and counts.get("failed", 0) == 0 else 2


def _print_summary(output: Dict[str, object]) -> None:
    counts = output.get("counts") or {}
    LOG.info(
        "Pass complete: %s subjects (%s kept dirty, %s failed), jobs picked=%s done=%s skipped=%s failed=%s",
        counts.get("subjects"),
        counts.get("kept_dirty"),
        counts.get("subjects_failed"),
        counts.get("picked"),
        counts.get("done"),
        counts.get("skipped"),
        counts.get("failed"),
    )
    planned = output.get("planned")
    if planned:
        LOG.info("Dry run would process subjects: %s", ", ".join(planned["subjects"]) or "-")
        LOG.info("Dry run would embed reviews: %s", ", ".join(planned["jobs"]) or "-")
    errors = output.get("errors") or []
    if errors:
        LOG.warning("Encountered %s errors", len(errors))
        for entry in errors:
            LOG.warning(
                "[%s] %s (%s) - %s",
                entry.get("unit"),
                entry.get("stage"),
                entry.get("kind"),
                entry.get("message"),
            )


if __name__ == "__main__":  # pragma: no cover - manual execution entry
    sys.exit(run())
