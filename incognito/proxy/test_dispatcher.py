import asyncio
import time

import httpx
import pytest

from conftest import upstream_response
from incognito.errors import (
    ClientDisconnected,
    InvalidTarget,
    TimeoutExceeded,
    UpstreamProtocolError,
    UpstreamUnreachable,
)
from incognito.proxy.dispatcher import CancellationContext, UpstreamDispatcher
from incognito.proxy.models import ProxyRequest


def dispatcher_for(handler) -> UpstreamDispatcher:
    return UpstreamDispatcher(transport=httpx.MockTransport(handler))


async def read_body(response) -> bytes:
    data = b""
    async for chunk in response.body:
        data += chunk
    await response.aclose()
    return data


class HangingUpstream:
    """Never answers; records whether the pending call was torn down."""

    def __init__(self):
        self.calls = 0
        self.closed = False

    async def __call__(self, request):
        self.calls += 1
        try:
            await asyncio.sleep(3600)
        finally:
            self.closed = True


class TestDispatch:
    @pytest.mark.asyncio
    async def test_forwards_method_headers_and_body(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = request.content
            return upstream_response(201, b"created")

        dispatcher = dispatcher_for(handler)
        response = await dispatcher.dispatch(
            ProxyRequest(
                method="post",
                url="http://example.com/items?x=1",
                headers=[("x-trace", "abc"), ("content-type", "text/plain")],
                body=b"payload",
            ),
            timeout=1.0,
        )

        assert response.status_code == 201
        assert await read_body(response) == b"created"
        assert seen["method"] == "POST"
        assert seen["url"] == "http://example.com/items?x=1"
        assert seen["headers"]["x-trace"] == "abc"
        assert seen["headers"]["host"] == "example.com"
        assert seen["body"] == b"payload"

    @pytest.mark.asyncio
    async def test_streams_request_body(self):
        received = {}

        def handler(request: httpx.Request):
            received["body"] = request.content
            return upstream_response(200)

        async def chunks():
            for i in range(5):
                yield f"part{i};".encode()

        response = await dispatcher_for(handler).dispatch(
            ProxyRequest(method="PUT", url="http://example.com/", body=chunks()),
            timeout=1.0,
        )
        await response.aclose()

        assert received["body"] == b"part0;part1;part2;part3;part4;"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS"])
    async def test_bodyless_methods_drop_body(self, method):
        received = {}

        def handler(request: httpx.Request):
            received["body"] = request.content
            received["headers"] = request.headers
            return upstream_response(204)

        response = await dispatcher_for(handler).dispatch(
            ProxyRequest(
                method=method,
                url="http://example.com/",
                headers=[("Content-Length", "7"), ("x-keep", "1")],
                body=b"ignored",
            ),
            timeout=1.0,
        )
        await response.aclose()

        assert received["body"] == b""
        # The dropped body takes its declared length with it
        assert "content-length" not in received["headers"]
        assert received["headers"]["x-keep"] == "1"

    @pytest.mark.asyncio
    async def test_response_headers_sanitized_with_multiplicity(self):
        def handler(request):
            return upstream_response(
                200,
                headers=[
                    ("Set-Cookie", "a=1"),
                    ("Connection", "keep-alive"),
                    ("Set-Cookie", "b=2"),
                    ("Transfer-Encoding", "chunked"),
                    ("Set-Cookie", "c=3"),
                    ("X-Upstream", "yes"),
                ],
            )

        response = await dispatcher_for(handler).dispatch(
            ProxyRequest(method="GET", url="http://example.com/"), timeout=1.0
        )
        await response.aclose()

        names = [name.lower() for name, _ in response.headers]
        assert names.count("set-cookie") == 3
        assert "connection" not in names
        assert "transfer-encoding" not in names
        assert ("X-Upstream", "yes") in response.headers

    @pytest.mark.asyncio
    async def test_body_is_raw_bytes(self):
        # Compressed bytes are passed through untouched with their encoding header
        payload = bytes(range(256)) * 4

        def handler(request):
            return upstream_response(
                200, payload, headers={"content-encoding": "gzip"}
            )

        response = await dispatcher_for(handler).dispatch(
            ProxyRequest(method="GET", url="http://example.com/"), timeout=1.0
        )

        assert await read_body(response) == payload
        assert ("content-encoding", "gzip") in response.headers


class TestDispatchFailures:
    @pytest.mark.asyncio
    async def test_timeout_aborts_pending_call(self):
        upstream = HangingUpstream()
        dispatcher = dispatcher_for(upstream)

        started = time.monotonic()
        with pytest.raises(TimeoutExceeded) as exc_info:
            await dispatcher.dispatch(
                ProxyRequest(method="GET", url="http://slow.test/"), timeout=0.2
            )
        elapsed = time.monotonic() - started

        assert elapsed < 0.2 + 0.5
        assert upstream.closed
        assert upstream.calls == 1
        assert exc_info.value.status_code == 504

    @pytest.mark.asyncio
    async def test_timeout_does_not_bound_body_transfer(self):
        async def slow_body():
            for i in range(3):
                await asyncio.sleep(0.1)
                yield f"{i}".encode()

        def handler(request):
            return httpx.Response(200, content=slow_body())

        response = await dispatcher_for(handler).dispatch(
            ProxyRequest(method="GET", url="http://example.com/"), timeout=0.05
        )

        assert await read_body(response) == b"012"

    @pytest.mark.asyncio
    async def test_cancellation_context_stops_waiting(self):
        upstream = HangingUpstream()
        cancellation = CancellationContext()
        asyncio.get_running_loop().call_later(0.05, cancellation.cancel, "gone")

        with pytest.raises(ClientDisconnected):
            await dispatcher_for(upstream).dispatch(
                ProxyRequest(method="GET", url="http://slow.test/"),
                timeout=5.0,
                cancellation=cancellation,
            )

        assert upstream.closed
        assert cancellation.reason == "gone"

    @pytest.mark.asyncio
    async def test_watch_disconnect(self):
        upstream = HangingUpstream()
        polls = []

        async def is_disconnected():
            polls.append(1)
            return len(polls) >= 2

        cancellation = CancellationContext()
        cancellation.watch_disconnect(is_disconnected, interval=0.01)
        try:
            with pytest.raises(ClientDisconnected):
                await dispatcher_for(upstream).dispatch(
                    ProxyRequest(method="GET", url="http://slow.test/"),
                    timeout=5.0,
                    cancellation=cancellation,
                )
        finally:
            await cancellation.aclose()

        assert cancellation.reason == "client disconnected"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, expected",
        [
            (httpx.ConnectError("refused"), UpstreamUnreachable),
            (httpx.ReadError("reset"), UpstreamUnreachable),
            (httpx.ConnectTimeout("slow"), TimeoutExceeded),
            (httpx.RemoteProtocolError("garbage"), UpstreamProtocolError),
            (httpx.UnsupportedProtocol("gopher"), InvalidTarget),
        ],
    )
    async def test_transport_errors_are_translated(self, error, expected):
        calls = []

        def handler(request):
            calls.append(request)
            raise error

        with pytest.raises(expected):
            await dispatcher_for(handler).dispatch(
                ProxyRequest(method="GET", url="http://example.com/"), timeout=1.0
            )

        # Single attempt, never retried
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_error_message_hides_upstream_details(self):
        def handler(request):
            raise httpx.ConnectError("connect to 10.0.0.7:5432 refused")

        with pytest.raises(UpstreamUnreachable) as exc_info:
            await dispatcher_for(handler).dispatch(
                ProxyRequest(method="GET", url="http://example.com/"), timeout=1.0
            )

        assert exc_info.value.message == "Bad gateway"
        assert "10.0.0.7" in exc_info.value.reason
