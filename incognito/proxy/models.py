from dataclasses import dataclass, field
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Optional, Union

from incognito.proxy.headers import HeaderList

# Methods that never carry a request body to the upstream
BODYLESS_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

SUPPORTED_METHODS = frozenset(
    {"GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"}
)

RequestBody = Union[bytes, AsyncIterable[bytes]]


def carries_body(method: str) -> bool:
    return method.upper() not in BODYLESS_METHODS


@dataclass
class TargetResolution:
    """Outcome of a resolution strategy.

    ``method``, ``headers`` and ``body`` are only set when the inbound request
    describes the outbound one itself (JSON body form); otherwise the inbound
    request's own values are forwarded.
    """

    url: str
    strategy: str
    method: Optional[str] = None
    headers: Optional[HeaderList] = None
    body: Optional[bytes] = None


@dataclass
class ProxyRequest:
    method: str
    url: str
    headers: HeaderList = field(default_factory=list)
    body: Optional[RequestBody] = None

    def __post_init__(self):
        self.method = self.method.upper()
        if not carries_body(self.method):
            self.body = None
        if self.body is None:
            # A declared length with no body would leave the upstream waiting
            self.headers = [
                (name, value)
                for name, value in self.headers
                if name.lower() != "content-length"
            ]


@dataclass
class ProxyResponse:
    """Upstream response with status and headers settled and the body unread."""

    status_code: int
    headers: HeaderList
    body: AsyncIterator[bytes]
    close: Callable[[], Awaitable[None]]

    async def aclose(self) -> None:
        await self.close()
