"""Optimistic read -> compute -> compare-and-set updates of a single versioned record.

No lock is taken here. The store's compare-and-set is the only arbiter
between concurrent writers: at most one write lands per version value,
everyone else re-reads and tries again until the attempt budget runs out.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Union

from versioned_store import StoreAccessError

logger = logging.getLogger(__name__)


# ----------- Outcomes ------------

@dataclass(frozen=True)
class Success:
    final_quantity: int
    attempts: int

    @property
    def ok(self):
        return True


@dataclass(frozen=True)
class InsufficientInventory:
    item_id: Any
    delta: int
    observed_quantity: int
    version: int

    @property
    def ok(self):
        return False


@dataclass(frozen=True)
class VersionConflictExhausted:
    item_id: Any
    attempts: int

    @property
    def ok(self):
        return False


@dataclass(frozen=True)
class NotFound:
    item_id: Any

    @property
    def ok(self):
        return False


@dataclass(frozen=True)
class StoreError:
    item_id: Any
    cause: BaseException

    @property
    def ok(self):
        return False


Outcome = Union[Success, InsufficientInventory, VersionConflictExhausted, NotFound, StoreError]


class VersionConflict:
    """Per-attempt marker: the compare-and-set lost the race. Never leaves apply()."""


VERSION_CONFLICT = VersionConflict()


# ----------- Backoff ------------

def no_backoff(attempt):
    return 0.0


def jittered_backoff(base=0.005, cap=0.2):
    """Capped exponential backoff with full jitter, keyed on the attempt that just failed."""
    if base < 0 or cap < 0:
        raise ValueError("backoff bounds must be non-negative")

    def policy(attempt):
        return random.uniform(0, min(cap, base * 2 ** (attempt - 1)))

    return policy


# ----------- Updater ------------

class OptimisticUpdater:
    def __init__(self, store, max_attempts, backoff=None, sleep=time.sleep):
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int):
            raise TypeError(f"max_attempts must be an int, got {type(max_attempts).__name__}")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.store = store
        self.max_attempts = max_attempts
        self.backoff = backoff or no_backoff
        self.sleep = sleep

    def apply(self, item_id, delta) -> Outcome:
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise TypeError(f"delta must be an int, got {type(delta).__name__}")

        for attempt in range(1, self.max_attempts + 1):
            result = self._attempt(item_id, delta, attempt)
            if result is not VERSION_CONFLICT:
                return result

            logger.debug("version conflict on %r (attempt %d/%d)", item_id, attempt, self.max_attempts)
            if attempt < self.max_attempts:
                delay = self.backoff(attempt)
                if delay > 0:
                    self.sleep(delay)

        logger.warning("gave up on %r after %d conflicting attempts", item_id, self.max_attempts)
        return VersionConflictExhausted(item_id, self.max_attempts)

    def _attempt(self, item_id, delta, attempt):
        # a fresh read every attempt, the previous snapshot is stale by definition
        try:
            snapshot = self.store.read(item_id)
        except StoreAccessError as e:
            return StoreError(item_id, e.cause or e)
        if snapshot is None:
            return NotFound(item_id)

        new_quantity = snapshot.quantity + delta
        if new_quantity < 0:
            logger.warning(
                "rejecting delta %d on %r: quantity %d at version %d would go negative",
                delta, item_id, snapshot.quantity, snapshot.version,
            )
            return InsufficientInventory(item_id, delta, snapshot.quantity, snapshot.version)

        try:
            rows = self.store.compare_and_set(item_id, new_quantity, snapshot.version)
        except StoreAccessError as e:
            return StoreError(item_id, e.cause or e)

        if rows == 1:
            return Success(new_quantity, attempt)
        return VERSION_CONFLICT


def apply(store, item_id, delta, max_attempts, backoff=None) -> Outcome:
    return OptimisticUpdater(store, max_attempts, backoff=backoff).apply(item_id, delta)
