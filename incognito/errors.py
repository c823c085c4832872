"""
Error taxonomy of the forwarding engine.

Every error carries the HTTP status it maps to and a client-safe ``message``.
Anything more specific (upstream exception text, target URLs, stack traces)
stays in the server log.
"""


class ProxyError(Exception):
    """Base class for failures that translate into an HTTP error response."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None, reason: str = None, detail: str = None):
        self.message = message or self.default_message
        # Optional client-facing explanation rendered next to the message
        self.detail = detail
        # Diagnostic text for the log only
        self.reason = reason or self.message
        super().__init__(self.reason)

    def to_dict(self) -> dict:
        payload = {"error": self.message}
        if self.detail:
            payload["message"] = self.detail
        return payload


class InvalidTarget(ProxyError):
    """The target URL is missing, undecodable, malformed or not http/https."""

    status_code = 400
    default_message = "Invalid or missing URL"


class PayloadTooLarge(ProxyError):
    """A buffered request body is over the configured limit."""

    status_code = 413
    default_message = "Payload too large"


class Forbidden(ProxyError):
    """The target URL is not covered by the allow-list."""

    status_code = 403
    default_message = "URL not allowed"


class TimeoutExceeded(ProxyError):
    status_code = 504
    default_message = "Request timed out"


class UpstreamUnreachable(ProxyError):
    """Connection refused, DNS, TLS or any other transport-level failure."""

    status_code = 502
    default_message = "Bad gateway"


class UpstreamProtocolError(ProxyError):
    """The upstream answered with something that is not valid HTTP."""

    status_code = 502
    default_message = "Bad gateway"


class ConfigurationMissing(ProxyError):
    status_code = 503
    default_message = "Service Unavailable"


class ShuttingDown(ProxyError):
    status_code = 503
    default_message = "Server shutting down"


class ClientDisconnected(Exception):
    """The caller went away before the upstream answered."""
