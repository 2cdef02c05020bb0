"""Pruner: opportunistic retention piggybacked on stream sessions and writers."""

from __future__ import annotations

import logging
import random

from calstream.core.store import ChangeLogStore
from calstream.core.types import RetentionPolicy

logger = logging.getLogger(__name__)


class Pruner:
    """Applies a RetentionPolicy to a store, either always or on a coin flip.

    There is no scheduler: every open session (and every writer) rolls the dice
    once per iteration, so trim frequency scales with activity. Trims are
    delete-by-threshold and therefore safe to fire concurrently. Readers whose
    cursor lags behind the threshold silently skip what was pruned.
    """

    def __init__(
        self,
        store: ChangeLogStore,
        policy: RetentionPolicy | None = None,
        *,
        probability: float = 0.01,
        rng: random.Random | None = None,
    ) -> None:
        if not 0.0 <= probability <= 1.0:
            raise ValueError("probability must be within [0, 1]")
        self._store = store
        self._policy = policy or RetentionPolicy()
        self._probability = probability
        self._rng = rng or random.Random()
        self.runs = 0
        self.deleted = 0

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    @property
    def probability(self) -> float:
        return self._probability

    def should_trim(self) -> bool:
        if self._probability <= 0.0:
            return False
        return self._rng.random() < self._probability

    async def trim(self) -> int:
        """Trim now. Failures are logged and reported as zero deletions."""
        self.runs += 1
        try:
            removed = await self._store.trim(self._policy)
        except Exception:
            logger.exception("change log trim failed; continuing without retention")
            return 0
        self.deleted += removed
        if removed:
            logger.debug("pruner removed %s old records", removed)
        return removed

    async def maybe_trim(self) -> int:
        if not self.should_trim():
            return 0
        return await self.trim()
