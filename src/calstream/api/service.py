"""StreamService — composes config, change log store, pruner and writer for the server."""

from __future__ import annotations

import logging
import random

from calstream._util.clock import SYSTEM_CLOCK, Clock
from calstream.config import StreamConfig
from calstream.core.pruner import Pruner
from calstream.core.sqlite import SQLiteChangeLog
from calstream.core.store import ChangeLogStore
from calstream.core.writer import ChangeLogWriter
from calstream.net.session import StreamSession

logger = logging.getLogger(__name__)


class StreamService:
    """Everything one stream server process needs, handed to the app explicitly.

    Mutation handlers living in the same process share ``writer`` (or build
    their own ChangeLogWriter around ``store``); nothing here is global.
    """

    def __init__(
        self,
        config: StreamConfig | None = None,
        *,
        store: ChangeLogStore | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or StreamConfig()
        self.clock = clock or SYSTEM_CLOCK
        self.store = store if store is not None else SQLiteChangeLog(self.config.sqlite, clock=self.clock)
        self.pruner = Pruner(
            self.store,
            self.config.retention,
            probability=self.config.trim_probability,
            rng=rng,
        )
        self.writer = ChangeLogWriter(self.store, pruner=self.pruner, clock=self.clock)

    async def open(self) -> None:
        await self.store.open()
        # One unconditional trim on startup.
        await self.pruner.trim()
        logger.info("stream service ready (store=%s)", self.store.name)

    async def close(self) -> None:
        await self.store.close()
        logger.info("stream service stopped")

    def new_session(self, cursor: int = 0) -> StreamSession:
        return StreamSession.from_config(
            self.store,
            self.config,
            cursor=cursor,
            pruner=self.pruner,
            clock=self.clock,
        )
