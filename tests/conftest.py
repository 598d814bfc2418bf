"""Shared fixtures for quotagate tests."""

from datetime import datetime, timezone
from typing import Callable, Optional

import pytest
from starlette.requests import Request

from quotagate.app.core.store import InMemoryCounterStore

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def build_request(
    path: str = "/test",
    headers: Optional[dict] = None,
    client: Optional[tuple] = ("127.0.0.1", 50000),
) -> Request:
    """Build a bare Starlette request for a GET on ``path``."""
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "method": "GET",
        "scheme": "http",
        "server": ("testserver", 80),
        "root_path": "",
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "headers": raw_headers,
        "client": client,
    }
    return Request(scope)


@pytest.fixture
def make_request() -> Callable[..., Request]:
    return build_request


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def memory_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()
