"""Fixtures for the HTTP route tests.

``api_client`` serves the application through ``httpx.ASGITransport`` with
the registry, scheduler and review pipeline replaced by the in-memory
services from the root conftest.  No database, broker or extraction service
is contacted.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest_asyncio
from fastapi import FastAPI

from activity_harvester.api.dependencies import get_pipeline, get_registry, get_scheduler
from activity_harvester.api.main import create_app


@pytest_asyncio.fixture
async def app(registry, scheduler, pipeline) -> FastAPI:
    application = create_app()
    application.dependency_overrides[get_registry] = lambda: registry
    application.dependency_overrides[get_scheduler] = lambda: scheduler
    application.dependency_overrides[get_pipeline] = lambda: pipeline
    return application


@pytest_asyncio.fixture
async def api_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
