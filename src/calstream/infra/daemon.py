"""StreamDaemon — runs the update stream app under uvicorn."""

from __future__ import annotations

import logging
import os

import anyio
import uvicorn

from calstream.api.app import create_app
from calstream.api.service import StreamService
from calstream.config import StreamConfig
from calstream.core.store import ChangeLogStore

logger = logging.getLogger(__name__)


class StreamDaemon:
    """Central HTTP server composing StreamService + FastAPI app + uvicorn."""

    def __init__(
        self,
        config: StreamConfig | None = None,
        *,
        store: ChangeLogStore | None = None,
        log_level: str = "info",
    ) -> None:
        self._config = config or StreamConfig.from_env()
        if store is None and str(self._config.sqlite.db_path) == ":memory:":
            logger.warning(
                "change log is an in-memory SQLite database: ids restart at 1 on every "
                "restart and reconnecting clients will miss records; set CALSTREAM_SQLITE_PATH"
            )
        self._service = StreamService(self._config, store=store)
        self._app = create_app(self._service)
        self._server = uvicorn.Server(
            uvicorn.Config(
                self._app,
                host=self._config.host,
                port=self._config.port,
                log_level=log_level,
                # Sessions end on their own after max_duration; don't wait longer on shutdown.
                timeout_graceful_shutdown=int(self._config.max_duration) + 1,
            )
        )

    @property
    def service(self) -> StreamService:
        return self._service

    @property
    def app(self):
        return self._app

    @property
    def url(self) -> str:
        return f"http://{self._config.host}:{self._config.port}"

    @property
    def started(self) -> bool:
        return bool(self._server.started)

    async def run_forever(self) -> None:
        logger.info("stream daemon listening on %s", self.url)
        await self._server.serve()
        logger.info("stream daemon stopped")

    def stop(self) -> None:
        self._server.should_exit = True


def main() -> None:
    level = os.environ.get("CALSTREAM_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    daemon = StreamDaemon(log_level=level.lower())
    anyio.run(daemon.run_forever)


if __name__ == "__main__":
    main()
