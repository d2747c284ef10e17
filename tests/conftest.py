import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services.screener.snapshot import get_snapshot_service


class _SyncASGIClient:
    """Minimal synchronous wrapper around httpx.AsyncClient for ASGI apps."""

    def __init__(self, app):
        transport = httpx.ASGITransport(app=app)
        self._client = httpx.AsyncClient(transport=transport, base_url="http://testserver")

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._client.request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        asyncio.run(self._client.aclose())


@pytest.fixture
def client():
    """Create test client compatible with older/newer httpx releases.

    Used without a context manager so the lifespan (startup refresh + scheduler)
    does not run against the real SEC endpoints.
    """
    try:
        test_client = TestClient(app)
        yield test_client
    except TypeError:
        fallback_client = _SyncASGIClient(app)
        try:
            yield fallback_client
        finally:
            fallback_client.close()


@pytest.fixture
def override_service():
    """Install a SnapshotService built from fakes for the duration of a test."""

    def _install(service):
        app.dependency_overrides[get_snapshot_service] = lambda: service
        return service

    yield _install
    app.dependency_overrides.pop(get_snapshot_service, None)
