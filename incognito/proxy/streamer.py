import logging
from typing import AsyncIterator, Callable, Optional

from fastapi.responses import StreamingResponse

from incognito.proxy.headers import HeaderList
from incognito.proxy.models import ProxyResponse
from incognito.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")


class ProxyStreamingResponse(StreamingResponse):
    """
    StreamingResponse that sends an explicit header list.

    Starlette's mapping-based ``headers`` would fold repeated names into one;
    raw headers keep every ``set-cookie`` as its own line.
    """

    def __init__(
        self,
        content: AsyncIterator[bytes],
        status_code: int,
        headers: HeaderList,
    ):
        super().__init__(content, status_code=status_code)
        self.raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in headers
        ]


async def iter_upstream_body(
    response: ProxyResponse, on_complete: Optional[Callable[[], object]] = None
) -> AsyncIterator[bytes]:
    """
    Pull the upstream body one chunk at a time.

    The next chunk is only read once the previous one has been handed to the
    caller, so a slow caller slows the upstream read instead of filling memory.
    An upstream failure after headers were sent is logged and re-raised, which
    makes the server drop the connection (a truncated response). The upstream
    is closed and ``on_complete`` is called on every exit path, including
    cancellation when the caller goes away.
    """
    try:
        async for chunk in response.body:
            if chunk:
                yield chunk
    except Exception as e:
        log_exception_with_details(
            logger, "[Stream] Upstream body failed after headers were sent;", e,
            level=logging.WARNING,
        )
        raise
    finally:
        try:
            await response.aclose()
        finally:
            if on_complete is not None:
                on_complete()


def stream_response(
    response: ProxyResponse, on_complete: Optional[Callable[[], object]] = None
) -> ProxyStreamingResponse:
    return ProxyStreamingResponse(
        iter_upstream_body(response, on_complete),
        status_code=response.status_code,
        headers=response.headers,
    )
