import logging

import uvicorn

from incognito.server import create_app
from incognito.state import ProxySettings, ProxyState

logger = logging.getLogger("uvicorn.error")

# The following notice MAY NOT be removed
NOTICE = (
    "Incognito\n"
    "This program comes with ABSOLUTELY NO WARRANTY.\n"
    "This is free software, and you are welcome to redistribute it\n"
    "under the terms of the GNU General Public License as published..."
)

# Long downloads and streams must not be cut by idle keep-alive handling
KEEP_ALIVE_TIMEOUT = 120


class GracefulServer(uvicorn.Server):
    """
    uvicorn server that flags the proxy as shutting down on the first signal.

    uvicorn stops accepting connections and lets in-flight requests finish;
    further signals while that is happening are ignored.
    """

    def __init__(self, config: uvicorn.Config, state: ProxyState):
        super().__init__(config)
        self.proxy_state = state

    def handle_exit(self, sig, frame) -> None:
        if not self.proxy_state.begin_shutdown():
            return
        super().handle_exit(sig, frame)


def main() -> None:
    settings = ProxySettings.from_env()
    state = ProxyState(settings)
    app = create_app(state=state)

    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        timeout_keep_alive=KEEP_ALIVE_TIMEOUT,
    )
    server = GracefulServer(config, state)
    logger.info(NOTICE)
    logger.info(f"Server running on port {settings.port}")
    server.run()


if __name__ == "__main__":
    main()
