# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module builds the FastAPI application from the loaded settings and
starts/stops the dispatch core with the application lifespan.

Usage:
    uvicorn mail_dispatch.server:app --host 0.0.0.0 --port 8000

Environment variables:
    MDS_CONFIG: Path to the INI configuration (default: config.ini)
    MDS_DB_PATH: Path to the SQLite database (default: /data/mail_dispatch.db)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from .api import create_app
from .config import build_core, load_settings
from .core import MailDispatchCore
from .logger import configure_logging


def build_app(settings: dict[str, Any], core: MailDispatchCore | None = None) -> FastAPI:
    """Create the application and bind the core lifecycle to its lifespan."""
    core = core or build_core(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await core.start()
        yield
        await core.stop()

    return create_app(core, api_token=settings.get("api_token"), lifespan=lifespan)


configure_logging()
app = build_app(load_settings())
