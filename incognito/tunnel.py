"""
Hand-off to the WebSocket tunneling ("bare") application.

The tunneling protocol itself lives in a separate ASGI application. This
middleware only decides whether a connection belongs to it, using the
application's own ``should_route(scope)`` when it has one and a path prefix
otherwise. Everything else continues to the proxy routes and static files.
WebSocket connections nobody claims are closed.
"""

import logging
from typing import Optional

from starlette.types import ASGIApp, Receive, Scope, Send
from uvicorn.importer import import_from_string

logger = logging.getLogger("uvicorn.error")


def load_tunnel_app(import_str: str) -> Optional[ASGIApp]:
    """Import the tunneling application from a ``module:attribute`` string."""
    if not import_str:
        return None
    tunnel_app = import_from_string(import_str)
    logger.info(f"[Tunnel] Using tunneling application {import_str}")
    return tunnel_app


class TunnelDispatchMiddleware:
    def __init__(
        self,
        app: ASGIApp,
        tunnel_app: Optional[ASGIApp] = None,
        prefix: str = "/bare/",
    ):
        self.app = app
        self.tunnel_app = tunnel_app
        self.prefix = prefix

    def should_route(self, scope: Scope) -> bool:
        if self.tunnel_app is None or scope["type"] not in ("http", "websocket"):
            return False
        matcher = getattr(self.tunnel_app, "should_route", None)
        if callable(matcher):
            return bool(matcher(scope))
        return scope.get("path", "").startswith(self.prefix)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self.should_route(scope):
            await self.tunnel_app(scope, receive, send)
            return
        if scope["type"] == "websocket":
            logger.debug(f"[Tunnel] Closing unclaimed upgrade for {scope.get('path')}")
            await send({"type": "websocket.close", "code": 1000})
            return
        await self.app(scope, receive, send)
