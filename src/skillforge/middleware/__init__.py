"""Middleware registration."""

from fastapi import FastAPI

from skillforge.config import Settings
from skillforge.middleware.error_handler import setup_error_handlers
from skillforge.middleware.logging import setup_logging
from skillforge.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure logging, error handlers and request tagging."""
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
