"""
FastAPI application entry point for the BrewBuddy backend.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from brewbuddy import __version__
from brewbuddy.config import Settings, get_settings
from brewbuddy.db import DbClient
from brewbuddy.dependencies import build_db_client, build_vision_client
from brewbuddy.errors import register_error_handlers
from brewbuddy.routes import router
from brewbuddy.vision import VisionClient


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[DbClient] = None,
    vision: Optional[VisionClient] = None,
) -> FastAPI:
    logging.basicConfig(level=logging.INFO)
    settings = settings or get_settings()

    app = FastAPI(title="BrewBuddy Backend (FastAPI)", version=__version__)
    app.state.settings = settings
    app.state.db = db if db is not None else build_db_client(settings)
    app.state.vision = vision if vision is not None else build_vision_client(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Device-ID"],
    )
    register_error_handlers(app)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
