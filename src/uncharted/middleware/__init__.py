"""Middleware registration."""

from fastapi import FastAPI

from uncharted.config import Settings
from uncharted.middleware.cors import setup_cors
from uncharted.middleware.error_handler import setup_error_handlers
from uncharted.middleware.logging import setup_logging
from uncharted.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware in the correct order.

    FastAPI/Starlette executes middleware in reverse-add order (last added = outermost).
    CORS must be outermost so it wraps error responses from inner middleware.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
