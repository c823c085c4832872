"""
Single-attempt upstream dispatch.

The configured timeout bounds the wait for the upstream's response headers
only. Once headers are in, the body is handed over unread and may take as long
as it takes, so large downloads are never cut short.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx
from starlette.requests import ClientDisconnect

from incognito.errors import (
    ClientDisconnected,
    InvalidTarget,
    TimeoutExceeded,
    UpstreamProtocolError,
    UpstreamUnreachable,
)
from incognito.proxy.headers import HeaderDirection, sanitize_headers
from incognito.proxy.models import ProxyRequest, ProxyResponse
from incognito.utils import redact_url

logger = logging.getLogger("uvicorn.error")


class CancellationContext:
    """Lets the caller abort a dispatch that is still waiting for headers."""

    def __init__(self):
        self._event = asyncio.Event()
        self._watcher: Optional[asyncio.Task] = None
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def watch_disconnect(
        self, is_disconnected: Callable[[], Awaitable[bool]], interval: float = 0.1
    ) -> None:
        """
        Poll ``is_disconnected`` in the background and cancel when it reports
        True. Only safe while nothing else reads the inbound request body.
        """

        async def _poll():
            while not self.cancelled:
                if await is_disconnected():
                    self.cancel("client disconnected")
                    return
                await asyncio.sleep(interval)

        self._watcher = asyncio.ensure_future(_poll())

    async def aclose(self) -> None:
        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
            await asyncio.wait({self._watcher})
        self._watcher = None


async def _abort(send: asyncio.Task) -> None:
    """Cancel an in-flight send and release whatever it may have produced."""
    send.cancel()
    await asyncio.wait({send})
    if send.cancelled() or send.exception() is not None:
        return
    await send.result().aclose()


class UpstreamDispatcher:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        # No client-level timeouts: the header wait is bounded in dispatch()
        # and body transfer is deliberately unbounded.
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(None),
            follow_redirects=False,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def dispatch(
        self,
        proxy_request: ProxyRequest,
        timeout: float,
        cancellation: Optional[CancellationContext] = None,
    ) -> ProxyResponse:
        target = redact_url(proxy_request.url)
        try:
            outbound = self.client.build_request(
                method=proxy_request.method,
                url=proxy_request.url,
                headers=proxy_request.headers,
                content=proxy_request.body,
            )
        except httpx.InvalidURL as e:
            raise InvalidTarget(reason=f"httpx rejected target URL: {e}")

        logger.debug(f"[Dispatch] {proxy_request.method} {target} (timeout {timeout}s)")
        send = asyncio.ensure_future(self.client.send(outbound, stream=True))
        waiters = {send}
        cancel_wait = None
        if cancellation is not None:
            cancel_wait = asyncio.ensure_future(cancellation.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            await _abort(send)
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if send not in done:
            await _abort(send)
            if cancellation is not None and cancellation.cancelled:
                logger.info(f"[Dispatch] {target} abandoned: {cancellation.reason}")
                raise ClientDisconnected(cancellation.reason)
            raise TimeoutExceeded(
                reason=f"no response headers from {target} within {timeout}s"
            )

        try:
            response = send.result()
        except httpx.TimeoutException as e:
            raise TimeoutExceeded(reason=f"{type(e).__name__} talking to {target}")
        except httpx.UnsupportedProtocol as e:
            raise InvalidTarget(reason=f"unsupported protocol for {target}: {e}")
        except (httpx.ProtocolError, httpx.DecodingError) as e:
            raise UpstreamProtocolError(
                reason=f"{type(e).__name__} from {target}: {e}"
            )
        except httpx.TransportError as e:
            raise UpstreamUnreachable(reason=f"{type(e).__name__} for {target}: {e}")
        except ClientDisconnect:
            raise ClientDisconnected("client disconnected during upload")

        logger.debug(f"[Dispatch] {target} answered {response.status_code}")
        # Raw header bytes, latin-1 round-trips them unchanged
        headers = [
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in response.headers.raw
        ]
        return ProxyResponse(
            status_code=response.status_code,
            headers=sanitize_headers(headers, HeaderDirection.RESPONSE),
            body=response.aiter_raw(),
            close=response.aclose,
        )
