import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.responses import PlainTextResponse
from starlette.websockets import WebSocket, WebSocketDisconnect

from incognito.tunnel import TunnelDispatchMiddleware, load_tunnel_app


class EchoTunnel:
    """Minimal tunneling application answering both HTTP and WebSocket."""

    def __init__(self):
        self.seen = []

    async def __call__(self, scope, receive, send):
        self.seen.append(scope["path"])
        if scope["type"] == "websocket":
            websocket = WebSocket(scope, receive, send)
            await websocket.accept()
            await websocket.send_text(await websocket.receive_text())
            await websocket.close()
            return
        response = PlainTextResponse("tunnel")
        await response(scope, receive, send)


class ClaimingTunnel(EchoTunnel):
    def should_route(self, scope):
        return scope.get("path", "").startswith("/custom/")


def build_app(tunnel_app=None, prefix="/bare/"):
    app = FastAPI()

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.add_middleware(TunnelDispatchMiddleware, tunnel_app=tunnel_app, prefix=prefix)
    return app


tunnel_for_import = EchoTunnel()


class TestTunnelDispatchMiddleware:
    def test_prefix_routes_to_tunnel(self):
        tunnel = EchoTunnel()
        client = TestClient(build_app(tunnel))

        assert client.get("/bare/v1/").text == "tunnel"
        assert client.get("/health").json() == {"status": "ok"}
        assert tunnel.seen == ["/bare/v1/"]

    def test_websocket_handed_to_tunnel(self):
        client = TestClient(build_app(EchoTunnel()))

        with client.websocket_connect("/bare/v1/") as websocket:
            websocket.send_text("ping")
            assert websocket.receive_text() == "ping"

    def test_tunnel_should_route_takes_precedence(self):
        tunnel = ClaimingTunnel()
        client = TestClient(build_app(tunnel))

        assert client.get("/custom/x").text == "tunnel"
        assert client.get("/bare/v1/").status_code == 404
        assert tunnel.seen == ["/custom/x"]

    def test_unclaimed_websocket_closed(self):
        client = TestClient(build_app(EchoTunnel()))

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/elsewhere"):
                pass

        assert exc_info.value.code == 1000

    def test_without_tunnel_nothing_is_routed(self):
        middleware = TunnelDispatchMiddleware(app=None)

        assert not middleware.should_route({"type": "http", "path": "/bare/v1/"})


class TestLoadTunnelApp:
    def test_empty_means_no_tunnel(self):
        assert load_tunnel_app("") is None

    def test_imports_module_attribute(self):
        assert load_tunnel_app("incognito.test_tunnel:tunnel_for_import") is tunnel_for_import
