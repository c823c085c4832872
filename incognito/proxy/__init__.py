from .allow_list import AllowList
from .dispatcher import CancellationContext, UpstreamDispatcher
from .forward import build_proxy_request, forward_request
from .headers import HOP_BY_HOP_HEADERS, HeaderDirection, sanitize_headers
from .models import ProxyRequest, ProxyResponse, TargetResolution
from .streamer import ProxyStreamingResponse, stream_response
from .target import TargetResolver, decode_b64_target, encode_b64_target

__all__ = [
    "AllowList",
    "CancellationContext",
    "HOP_BY_HOP_HEADERS",
    "HeaderDirection",
    "ProxyRequest",
    "ProxyResponse",
    "ProxyStreamingResponse",
    "TargetResolution",
    "TargetResolver",
    "UpstreamDispatcher",
    "build_proxy_request",
    "decode_b64_target",
    "encode_b64_target",
    "forward_request",
    "sanitize_headers",
    "stream_response",
]
