"""
Dependency wiring for the FastAPI app.

Clients are built once by ``create_app`` and kept on ``app.state``; routes
receive them through ``Depends`` so tests can hand in their own.
"""

from __future__ import annotations

import logging

from fastapi import Request

from brewbuddy.config import Settings
from brewbuddy.db import DbClient, InMemoryDbClient, SqlDbClient
from brewbuddy.vision import GeminiVisionClient, VisionClient

logger = logging.getLogger(__name__)


def build_db_client(settings: Settings) -> DbClient:
    """Pick the storage backend once, at startup."""
    if settings.use_in_memory_backends or not settings.database_url:
        logger.info("Using in-memory database")
        client: DbClient = InMemoryDbClient()
    else:
        client = SqlDbClient(settings.database_url)
    client.initialize()
    return client


def build_vision_client(settings: Settings) -> VisionClient:
    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY is not set; coffee bag analysis will fail")
    return GeminiVisionClient(
        api_key=settings.gemini_api_key, model=settings.gemini_model
    )


def get_settings_from_app(request: Request) -> Settings:
    return request.app.state.settings


def get_db_client(request: Request) -> DbClient:
    return request.app.state.db


def get_vision_client(request: Request) -> VisionClient:
    return request.app.state.vision
