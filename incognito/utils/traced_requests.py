import logging
from contextlib import contextmanager

from opentelemetry.trace import Tracer

from incognito.utils import redact_url

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    method: str,
    path: str,
):
    """Context manager to create a span for an inbound proxy request and log its start."""
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("proxy.method", method)
        span.set_attribute("proxy.path", path)
        logger.debug(f"[Proxy] {method} {path}")
        yield span


def set_target(span, url: str, strategy: str) -> None:
    span.set_attribute("proxy.target_url", redact_url(url))
    span.set_attribute("proxy.strategy", strategy)
