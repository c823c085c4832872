from enum import Enum
from typing import Iterable, List, Tuple

HeaderList = List[Tuple[str, str]]

# Hop-by-hop headers that should NOT be forwarded (RFC 7230 section 6.1)
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


class HeaderDirection(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"


def is_hop_by_hop(name: str) -> bool:
    return name.lower() in HOP_BY_HOP_HEADERS


def sanitize_headers(
    headers: Iterable[Tuple[str, str]], direction: HeaderDirection
) -> HeaderList:
    """
    Drop hop-by-hop headers, keeping everything else in order.

    Repeated names (``set-cookie`` in particular) stay separate entries. On the
    request side ``host`` is dropped too; the HTTP client derives it from the
    resolved target.
    """
    sanitized = []
    for name, value in headers:
        name_lower = name.lower()
        if name_lower in HOP_BY_HOP_HEADERS:
            continue
        if direction is HeaderDirection.REQUEST and name_lower == "host":
            continue
        sanitized.append((name, value))
    return sanitized
