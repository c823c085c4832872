"""
Target resolution for inbound proxy requests.

The destination of a proxied request can be expressed four ways. Each one is a
strategy; ``TargetResolver`` asks them in order and the first one that claims
the request produces the target:

1. ``/p/<base64>``          path form, base64 of the absolute URL
2. ``/p/?link=<base64>``    query form, same encoding in a query parameter
3. ``/proxy/<host>/<path>`` path-rewrite form, ``https://`` is prepended
4. ``POST /proxy``          JSON body ``{"url", "method", "headers", "data"}``

Anything undecodable, malformed or not http/https raises ``InvalidTarget``
before any upstream connection is attempted.
"""

import base64
import binascii
import json
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional
from urllib.parse import unquote, urlsplit

from fastapi import Request
from pydantic import ValidationError

from incognito.errors import InvalidTarget, PayloadTooLarge
from incognito.models import ProxyBodyRequest
from incognito.proxy.headers import HeaderDirection, sanitize_headers
from incognito.proxy.models import SUPPORTED_METHODS, TargetResolution

logger = logging.getLogger("uvicorn.error")

ALLOWED_SCHEMES = ("http", "https")


def validate_target_url(url: Optional[str]) -> str:
    """Return ``url`` if it is an absolute http(s) URL with a host."""
    if not url or not isinstance(url, str) or not url.strip():
        raise InvalidTarget(reason="empty target URL")
    url = url.strip()
    try:
        parsed = urlsplit(url)
        # Accessing .port validates it
        parsed.port
    except ValueError as e:
        raise InvalidTarget(reason=f"malformed target URL: {e}")
    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise InvalidTarget(reason=f"unsupported scheme {parsed.scheme!r}")
    if not parsed.hostname:
        raise InvalidTarget(reason="target URL has no host")
    return url


def decode_b64_target(encoded: str) -> str:
    """
    Decode a percent-encoded base64 (standard or URL-safe) target URL.

    Padding may be omitted. A space is read back as ``+``, since form-style
    query decoding turns an unescaped ``+`` into one.
    """
    # Spaces become "+" before stripping, a trailing "+" is part of the payload
    value = unquote(encoded or "").replace(" ", "+").strip()
    if not value:
        raise InvalidTarget(reason="empty encoded target")
    value += "=" * (-len(value) % 4)
    altchars = b"-_" if ("-" in value or "_" in value) else None
    try:
        raw = base64.b64decode(value, altchars=altchars, validate=True)
        decoded = raw.decode("utf-8")
    except (binascii.Error, ValueError) as e:
        raise InvalidTarget(reason=f"undecodable target: {e}")
    return validate_target_url(decoded)


def encode_b64_target(url: str) -> str:
    """Inverse of :func:`decode_b64_target`, for building proxy links."""
    return base64.b64encode(url.encode("utf-8")).decode("ascii")


class ResolutionStrategy(ABC):
    name = "strategy"

    @abstractmethod
    def matches(self, request: Request) -> bool:
        """Whether this strategy is responsible for ``request``."""

    @abstractmethod
    async def resolve(self, request: Request) -> TargetResolution:
        """Produce the target or raise ``InvalidTarget``."""


class PathBase64Strategy(ResolutionStrategy):
    name = "path"

    def __init__(self, prefix: str = "/p/"):
        self.prefix = prefix

    def _remainder(self, request: Request) -> str:
        return request.url.path[len(self.prefix):]

    def matches(self, request: Request) -> bool:
        path = request.url.path
        return path.startswith(self.prefix) and bool(self._remainder(request))

    async def resolve(self, request: Request) -> TargetResolution:
        return TargetResolution(
            url=decode_b64_target(self._remainder(request)), strategy=self.name
        )


class QueryBase64Strategy(ResolutionStrategy):
    name = "query"

    def __init__(self, param: str = "link", prefix: str = "/p/"):
        self.param = param
        self.prefix = prefix

    def matches(self, request: Request) -> bool:
        path = request.url.path
        under_prefix = path.startswith(self.prefix) or path == self.prefix.rstrip("/")
        return under_prefix and self.param in request.query_params

    async def resolve(self, request: Request) -> TargetResolution:
        return TargetResolution(
            url=decode_b64_target(request.query_params.get(self.param, "")),
            strategy=self.name,
        )


class PathRewriteStrategy(ResolutionStrategy):
    """``/proxy/example.com/a?b=1`` -> ``https://example.com/a?b=1``."""

    name = "rewrite"

    def __init__(self, prefix: str = "/proxy/", scheme: str = "https"):
        self.prefix = prefix
        self.scheme = scheme

    def _remainder(self, request: Request) -> str:
        return request.url.path[len(self.prefix):].lstrip("/")

    def matches(self, request: Request) -> bool:
        return request.url.path.startswith(self.prefix) and bool(self._remainder(request))

    async def resolve(self, request: Request) -> TargetResolution:
        remainder = self._remainder(request)
        url = f"{self.scheme}://{remainder}"
        query_string = str(request.url.query)
        if query_string:
            url = f"{url}?{query_string}"
        return TargetResolution(url=validate_target_url(url), strategy=self.name)


# Default cap on the buffered JSON body form
DEFAULT_JSON_BODY_LIMIT = 2 * 1024 * 1024


def _header_value(value) -> str:
    # Booleans keep their JSON spelling
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class JsonBodyStrategy(ResolutionStrategy):
    """``POST /proxy`` whose JSON body describes the whole outbound request."""

    name = "body"

    def __init__(self, path: str = "/proxy", max_body_bytes: int = DEFAULT_JSON_BODY_LIMIT):
        self.path = path.rstrip("/") or "/"
        self.max_body_bytes = max_body_bytes

    def matches(self, request: Request) -> bool:
        path = request.url.path.rstrip("/") or "/"
        return request.method == "POST" and path == self.path

    async def _read_body(self, request: Request) -> bytes:
        """Buffer the inbound body, refusing it as soon as it passes the limit."""
        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_body_bytes:
            raise PayloadTooLarge(
                reason=f"declared body of {declared} bytes over {self.max_body_bytes}"
            )
        received = bytearray()
        async for chunk in request.stream():
            received.extend(chunk)
            if len(received) > self.max_body_bytes:
                raise PayloadTooLarge(
                    reason=f"body passed {self.max_body_bytes} bytes while reading"
                )
        return bytes(received)

    async def resolve(self, request: Request) -> TargetResolution:
        raw = await self._read_body(request)
        try:
            payload = json.loads(raw)
        except ValueError as e:
            raise InvalidTarget(reason=f"malformed JSON body: {e}")
        if not isinstance(payload, dict):
            raise InvalidTarget(reason="JSON body is not an object")
        try:
            body = ProxyBodyRequest.model_validate(payload)
        except ValidationError as e:
            raise InvalidTarget(reason=f"invalid proxy body: {e.error_count()} error(s)")

        url = validate_target_url(body.url)
        method = body.method.upper()
        if method not in SUPPORTED_METHODS:
            raise InvalidTarget("Invalid method", reason=f"unsupported method {method!r}")

        headers = sanitize_headers(
            ((name, _header_value(value)) for name, value in body.headers.items()),
            HeaderDirection.REQUEST,
        )
        content = None
        if body.data is not None:
            if isinstance(body.data, str):
                content = body.data.encode("utf-8")
            else:
                content = json.dumps(body.data).encode("utf-8")
                if not any(name.lower() == "content-type" for name, _ in headers):
                    headers.append(("content-type", "application/json"))
        return TargetResolution(
            url=url, strategy=self.name, method=method, headers=headers, body=content
        )


class TargetResolver:
    def __init__(self, strategies: Iterable[ResolutionStrategy]):
        self.strategies: List[ResolutionStrategy] = list(strategies)

    @classmethod
    def default(
        cls,
        path_prefix: str = "/p/",
        query_param: str = "link",
        rewrite_prefix: str = "/proxy/",
        body_path: str = "/proxy",
        json_body_limit: int = DEFAULT_JSON_BODY_LIMIT,
    ) -> "TargetResolver":
        return cls(
            [
                PathBase64Strategy(path_prefix),
                QueryBase64Strategy(query_param, path_prefix),
                PathRewriteStrategy(rewrite_prefix),
                JsonBodyStrategy(body_path, json_body_limit),
            ]
        )

    def handles(self, request: Request) -> bool:
        return any(s.matches(request) for s in self.strategies)

    async def resolve(self, request: Request) -> TargetResolution:
        for strategy in self.strategies:
            if strategy.matches(request):
                resolution = await strategy.resolve(request)
                logger.debug(
                    f"[Proxy] Resolved target via {strategy.name} strategy: {resolution.url}"
                )
                return resolution
        raise InvalidTarget(reason=f"no target in {request.url.path}")
