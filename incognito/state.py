import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

import httpx

from incognito import vars as env
from incognito.metrics import MetricsRecorder
from incognito.proxy.allow_list import AllowList
from incognito.proxy.dispatcher import UpstreamDispatcher
from incognito.proxy.target import TargetResolver

logger = logging.getLogger("uvicorn.error")


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class ProxySettings:
    service_name: str = "incognito-proxy"
    host: str = "0.0.0.0"
    port: int = 8080
    request_timeout_ms: int = 5000
    allow_list: Tuple[str, ...] = ()
    cors_origins: Tuple[str, ...] = ("*",)
    contact_secret_key: str = ""
    static_dir: str = "static"
    bare_prefix: str = "/bare/"
    tunnel_app: str = ""
    path_prefix: str = "/p/"
    query_param: str = "link"
    rewrite_prefix: str = "/proxy/"
    body_path: str = "/proxy"
    json_body_limit: int = 2 * 1024 * 1024
    log_level: str = "info"
    process_metrics: bool = field(default=True, compare=False)

    @property
    def timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000.0

    @classmethod
    def from_env(cls) -> "ProxySettings":
        timeout_ms = _parse_int("REQUEST_TIMEOUT", env.REQUEST_TIMEOUT)
        if timeout_ms <= 0:
            raise ValueError(f"REQUEST_TIMEOUT must be positive, got {timeout_ms}")
        json_body_limit = _parse_int("JSON_BODY_LIMIT", env.JSON_BODY_LIMIT)
        if json_body_limit <= 0:
            raise ValueError(f"JSON_BODY_LIMIT must be positive, got {json_body_limit}")
        return cls(
            service_name=env.SERVICE_NAME,
            host=env.HOST,
            port=_parse_int("PORT", env.PORT),
            request_timeout_ms=timeout_ms,
            allow_list=AllowList.from_csv(env.WHITELIST).entries,
            cors_origins=tuple(
                o.strip() for o in env.CORS_ORIGIN.split(",") if o.strip()
            )
            or ("*",),
            contact_secret_key=env.CONTACT_SECRET_KEY,
            static_dir=env.STATIC_DIR,
            bare_prefix=env.BARE_PREFIX,
            tunnel_app=env.TUNNEL_APP,
            path_prefix=env.PATH_PREFIX,
            query_param=env.QUERY_PARAM,
            rewrite_prefix=env.REWRITE_PREFIX,
            body_path=env.BODY_PATH,
            json_body_limit=json_body_limit,
            log_level=env.LOG_LEVEL,
        )


class ProxyState:
    """
    Process-scoped state of one application instance.

    Created once by the application factory and reachable from handlers as
    ``request.app.state.proxy``. The allow-list and resolver are read-only
    after construction; the metrics recorder is the only shared mutable part.
    """

    def __init__(
        self,
        settings: ProxySettings,
        metrics: Optional[MetricsRecorder] = None,
        dispatcher: Optional[UpstreamDispatcher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.allow_list = AllowList(settings.allow_list)
        self.metrics = metrics or MetricsRecorder(
            process_metrics=settings.process_metrics
        )
        self.resolver = TargetResolver.default(
            path_prefix=settings.path_prefix,
            query_param=settings.query_param,
            rewrite_prefix=settings.rewrite_prefix,
            body_path=settings.body_path,
            json_body_limit=settings.json_body_limit,
        )
        self.dispatcher = dispatcher or UpstreamDispatcher(transport=transport)
        self._shutting_down = False

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def begin_shutdown(self) -> bool:
        """Stop accepting proxy requests. Returns False if already shutting down."""
        if self._shutting_down:
            return False
        self._shutting_down = True
        logger.info("Server shutting down...")
        return True

    async def aclose(self) -> None:
        await self.dispatcher.aclose()
