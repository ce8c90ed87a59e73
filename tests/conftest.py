"""Pytest fixtures for Stackyard tests."""

import os
import sys
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Add gateway to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "gateway"))

from stackyard.core.config import Settings
from stackyard.core.dependencies import build_services
from stackyard.main import create_app

from fakes import FakeEngine


@pytest.fixture
def engine() -> FakeEngine:
    """In-memory Engine adapter."""
    return FakeEngine()


@pytest.fixture
def projects_dir(tmp_path) -> str:
    path = tmp_path / "projects"
    path.mkdir()
    return str(path)


@pytest.fixture
def test_settings(projects_dir) -> Settings:
    """Override settings for testing."""
    return Settings(
        docker_host="/var/run/docker.sock",
        projects_dir=projects_dir,
        project_scan_ttl=0,
        debug=True,
    )


@pytest.fixture
def services(test_settings, engine):
    return build_services(test_settings, engine)


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    """Create test client backed by the fake Engine."""
    app = create_app(use_lifespan=False)
    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def api_base_url() -> str:
    """Base URL for API endpoints."""
    return "/api/v1"
