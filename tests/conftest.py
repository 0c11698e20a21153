"""
Pytest configuration for the stream proxy tests.

Upstream CDNs are simulated with httpx.MockTransport, so no test touches the network.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from stream_proxy import handlers
from stream_proxy.configs import settings
from stream_proxy.main import app
from stream_proxy.utils.http_utils import create_httpx_client


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture(autouse=True)
def no_retry_backoff(monkeypatch):
    """Keep the retry policy but skip the waits between attempts."""
    monkeypatch.setattr(settings.transport_config, "retry_backoff", 0)
    monkeypatch.setattr(settings, "public_base_url", None)


@pytest.fixture
def mock_client():
    """
    Factory fixture that builds an httpx client backed by a mock upstream.

    Usage:
        def test_something(mock_client):
            client = mock_client(lambda request: httpx.Response(200))
    """

    def _build(handler) -> httpx.AsyncClient:
        return create_httpx_client(transport=httpx.MockTransport(handler))

    return _build


@pytest.fixture
def upstream(monkeypatch, mock_client):
    """
    Factory fixture that routes the proxy's upstream fetches to ``handler``.

    Returns the list of requests the mock upstream received.

    Usage:
        def test_something(upstream, client):
            calls = upstream(lambda request: httpx.Response(200, content=b"data"))
    """

    def _install(handler) -> list[httpx.Request]:
        calls = []

        def _record(request: httpx.Request):
            calls.append(request)
            return handler(request)

        monkeypatch.setattr(handlers, "create_httpx_client", lambda: mock_client(_record))
        return calls

    return _install


@pytest.fixture
def client():
    return TestClient(app)
