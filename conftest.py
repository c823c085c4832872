# Ensure tests import the package from this checkout first, whether or not it
# has been installed.
import dataclasses
import os
import sys

import httpx
import pytest

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from incognito.server import create_app  # noqa: E402
from incognito.state import ProxySettings, ProxyState  # noqa: E402


def upstream_response(status_code=200, content=b"", headers=None) -> httpx.Response:
    """
    Stub upstream response whose body is still unread, as it is when it comes
    off the network. ``httpx.Response(content=...)`` would load it eagerly.
    """
    return httpx.Response(
        status_code, headers=headers, stream=httpx.ByteStream(content)
    )


class SpyUpstream:
    """httpx handler that records every request and answers with ``respond``."""

    def __init__(self, respond=None):
        self.calls = []
        self.respond = respond or (lambda request: upstream_response(200, b"hello"))

    def __call__(self, request: httpx.Request):
        self.calls.append(request)
        return self.respond(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def settings(tmp_path):
    return ProxySettings(
        static_dir=str(tmp_path / "no-static"),
        request_timeout_ms=2000,
        process_metrics=False,
    )


@pytest.fixture
def spy_upstream():
    return SpyUpstream()


@pytest.fixture
def make_app(settings):
    """Build an isolated app whose upstream traffic goes to ``upstream``."""

    def _make(upstream=None, **overrides):
        effective = settings
        if overrides:
            effective = dataclasses.replace(settings, **overrides)
        transport = upstream.transport if upstream is not None else None
        state = ProxyState(effective, transport=transport)
        return create_app(state=state)

    return _make
