import logging

from fastapi import Request
from fastapi.responses import Response
from opentelemetry import trace

from incognito.errors import ClientDisconnected, Forbidden, ProxyError, ShuttingDown
from incognito.proxy.dispatcher import CancellationContext
from incognito.proxy.headers import HeaderDirection, sanitize_headers
from incognito.proxy.models import ProxyRequest, TargetResolution, carries_body
from incognito.proxy.streamer import stream_response
from incognito.utils import redact_url
from incognito.utils.traced_requests import set_target, traced_request

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")


def _has_inbound_body(request: Request) -> bool:
    headers = request.headers
    if "transfer-encoding" in headers:
        return True
    return headers.get("content-length", "0") not in ("", "0")


def build_proxy_request(request: Request, resolution: TargetResolution) -> ProxyRequest:
    """
    Describe the outbound request.

    When the resolution carries its own method/headers/body (JSON body form)
    those are used verbatim. Otherwise the inbound method and sanitized
    headers are forwarded and the inbound body is streamed through unread.
    """
    if resolution.method is not None:
        return ProxyRequest(
            method=resolution.method,
            url=resolution.url,
            headers=list(resolution.headers or []),
            body=resolution.body,
        )

    body = None
    if carries_body(request.method) and _has_inbound_body(request):
        body = request.stream()
    return ProxyRequest(
        method=request.method,
        url=resolution.url,
        headers=sanitize_headers(request.headers.items(), HeaderDirection.REQUEST),
        body=body,
    )


async def forward_request(request: Request) -> Response:
    """
    Resolve, check, dispatch and stream one proxied request.

    The metrics timer starts here and finishes either when the response body
    has been fully streamed or, on any failure before that, when this
    coroutine exits.
    """
    state = request.app.state.proxy
    if state.shutting_down:
        raise ShuttingDown()

    timer = state.metrics.start_timer()
    handed_off = False
    with traced_request(tracer, "proxy_request", request.method, request.url.path) as span:
        try:
            resolution = await state.resolver.resolve(request)
            set_target(span, resolution.url, resolution.strategy)

            if not state.allow_list.allowed(resolution.url):
                raise Forbidden(reason=f"{redact_url(resolution.url)} not in allow-list")

            proxy_request = build_proxy_request(request, resolution)

            cancellation = CancellationContext()
            # The disconnect probe reads from the inbound channel, so it only
            # runs when the body is not being streamed upstream.
            if proxy_request.body is None or isinstance(proxy_request.body, bytes):
                cancellation.watch_disconnect(request.is_disconnected)
            try:
                upstream = await state.dispatcher.dispatch(
                    proxy_request, state.settings.timeout_seconds, cancellation
                )
            finally:
                await cancellation.aclose()

            span.set_attribute("proxy.status_code", upstream.status_code)
            logger.info(
                f"[Proxy] {proxy_request.method} {redact_url(proxy_request.url)} -> {upstream.status_code}"
            )
            response = stream_response(upstream, on_complete=timer.finish)
            handed_off = True
            return response
        except ProxyError as e:
            span.set_attribute("proxy.error", type(e).__name__)
            logger.warning(
                f"[Proxy] {request.method} {request.url.path} failed with {e.status_code}: {e.reason}"
            )
            raise
        except ClientDisconnected as e:
            span.set_attribute("proxy.error", "client_disconnected")
            logger.info(f"[Proxy] {request.method} {request.url.path}: {e}")
            raise
        finally:
            if not handed_off:
                timer.finish()
