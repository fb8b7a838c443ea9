"""Cloud Function entry point for the review rollup pipeline."""

from __future__ import annotations

import hmac
import json
import logging
import os
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable

import flask
import functions_framework

# Ensure project root is available on import path
project_root = Path(__file__).parent.parent.parent.parent.parent.absolute()
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.shared.utils.config_validator import ConfigurationError
from src.shared.utils.env import load_env
from src.shared.utils.logging import setup_logging

from src.functions.review_rollups.core.contracts.config import TriggerSettings
from src.functions.review_rollups.core.contracts.errors import UnauthorizedTriggerError
from src.functions.review_rollups.core.orchestration.config_loader import (
    build_openai_settings,
    build_pipeline_config,
    build_supabase_settings,
    build_trigger_settings,
)
from src.functions.review_rollups.core.orchestration.pipeline import build_pipeline

load_env()
setup_logging(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-Batch-Token"
RUNNER_HEADER = "X-Batch-Runner"
OVERRIDE_KEYS = ("max_subjects", "max_jobs", "dry_run", "parallel", "max_workers", "process_subjects", "process_jobs")


def authenticate(request: flask.Request, settings: TriggerSettings) -> None:
    """Raise UnauthorizedTriggerError unless the request carries the batch token."""

    expected = settings.batch_token
    if not expected:
        raise ConfigurationError("BATCH_TOKEN is not configured")
    provided = request.headers.get(TOKEN_HEADER, "")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise UnauthorizedTriggerError("invalid or missing batch token")


def resolve_runner(request: flask.Request, settings: TriggerSettings) -> str:
    """Name the lock owner for this invocation; unique per run."""

    base = (request.headers.get(RUNNER_HEADER) or settings.default_runner).strip()
    return f"{base or settings.default_runner}-{uuid.uuid4().hex[:8]}"


def pipeline_handler(request: flask.Request) -> flask.Response:
    """HTTP handler running one bounded pass of the review rollup pipeline."""

    if request.method == "OPTIONS":
        return _cors_response({}, status=204)

    if request.method != "POST":
        return _error_response("Method not allowed. Use POST.", status=405)

    try:
        trigger_settings = build_trigger_settings()
        authenticate(request, trigger_settings)
    except UnauthorizedTriggerError:
        logger.warning("Rejected pipeline trigger with invalid token")
        return _error_response("unauthorized", status=401)
    except ConfigurationError as exc:
        logger.error("Trigger is not configured: %s", exc)
        return _error_response(f"Configuration error: {exc}", status=500)

    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        return _error_response("Request body must be a JSON object", status=400)
    logger.info("Received pipeline invocation with payload keys: %s", list(payload.keys()))
    overrides = {key: payload.get(key) for key in OVERRIDE_KEYS}

    try:
        pipeline_config = build_pipeline_config(overrides)
    except ConfigurationError as exc:
        logger.error("Invalid pipeline configuration: %s", exc)
        return _error_response(f"Configuration error: {exc}", status=500)
    except ValueError as exc:
        return _error_response(f"Invalid request: {exc}", status=400)

    try:
        supabase_settings = build_supabase_settings()
        openai_settings = build_openai_settings()
    except (ConfigurationError, ValueError) as exc:
        logger.error("Missing configuration: %s", exc)
        return _error_response(f"Configuration error: {exc}", status=500)

    runner = resolve_runner(request, trigger_settings)
    pipeline = build_pipeline(
        config=pipeline_config,
        runner=runner,
        supabase_settings=supabase_settings,
        openai_settings=openai_settings,
    )
    try:
        result = pipeline.run()
    except Exception as exc:  # noqa: BLE001
        logger.exception("Pipeline run aborted")
        return _error_response(f"Pipeline error: {exc}", status=500)

    response_body = result.to_dict()
    counts = response_body["counts"]
    logger.info(
        "Pipeline finished: subjects=%s kept_dirty=%s picked=%s done=%s failed=%s",
        counts.get("subjects"),
        counts.get("kept_dirty"),
        counts.get("picked"),
        counts.get("done"),
        counts.get("failed"),
    )
    return _cors_response(response_body)


def health_check_handler(request: flask.Request) -> flask.Response:
    """Health check endpoint returning module status."""

    return _cors_response({"status": "healthy", "module": "review_rollups"})


def _cors_response(body: Dict[str, Any] | Iterable[Any], status: int = 200) -> flask.Response:
    response = flask.make_response(json.dumps(body, ensure_ascii=False), status)
    headers = response.headers
    headers["Content-Type"] = "application/json"
    headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Allow-Methods"] = "POST,OPTIONS"
    headers["Access-Control-Allow-Headers"] = f"Content-Type,{TOKEN_HEADER},{RUNNER_HEADER}"
    return response


def _error_response(message: str, status: int) -> flask.Response:
    return _cors_response({"status": "error", "message": message}, status=status)


@functions_framework.http
def run_pipeline(request: flask.Request):
    return pipeline_handler(request)


@functions_framework.http
def health_check(request: flask.Request):
    return health_check_handler(request)
