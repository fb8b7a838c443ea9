"""Deployment wrapper for the review rollup Cloud Function.

Cloud Functions loads ``main.py`` from the deployment root; the handlers here
delegate to the module's own entry point.
"""

from __future__ import annotations

import sys
from pathlib import Path

import flask

project_root = Path(__file__).resolve().parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.functions.review_rollups.functions.main import health_check_handler, pipeline_handler


def run_review_rollups(request: flask.Request) -> flask.Response:
    return pipeline_handler(request)


def health_check(request: flask.Request) -> flask.Response:
    return health_check_handler(request)
