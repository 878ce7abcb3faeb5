import asyncio
import logging
from collections.abc import Sequence
from enum import Enum
from typing import Union

from .scoring import score
from .state import KeyState
from .store import CursorStore, MemoryCursorStore

logger = logging.getLogger("keybalance")

DEFAULT_CURSOR_NAME = "round_robin_index"


class Strategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    LEAST_USED = "least_used"
    ADAPTIVE = "adaptive"

    @classmethod
    def parse(cls, name: Union[str, "Strategy", None]) -> "Strategy":
        """Resolve a configured strategy name; unknown names fall back to ADAPTIVE."""
        if isinstance(name, Strategy):
            return name
        if name:
            try:
                return cls(str(name).strip().lower())
            except ValueError:
                logger.warning(f"unknown strategy {name!r}; using adaptive")
        return cls.ADAPTIVE


def _require_candidates(candidates: Sequence[KeyState]) -> None:
    if not candidates:
        raise ValueError("selection requires at least one candidate")


class SelectionPolicy:
    """Picks one key from a non-empty, store-ordered candidate sequence."""

    strategy: Strategy

    async def select(self, candidates: Sequence[KeyState]) -> KeyState:
        _require_candidates(candidates)
        return self._pick(candidates)

    def _pick(self, candidates: Sequence[KeyState]) -> KeyState:
        raise NotImplementedError


class LeastUsedPolicy(SelectionPolicy):
    strategy = Strategy.LEAST_USED

    def _pick(self, candidates):
        least = candidates[0]
        for k in candidates[1:]:
            if k.total_requests < least.total_requests:
                least = k
        return least


class AdaptivePolicy(SelectionPolicy):
    strategy = Strategy.ADAPTIVE

    def _pick(self, candidates):
        best, best_score = candidates[0], score(candidates[0])
        for k in candidates[1:]:
            s = score(k)
            if s > best_score:
                best, best_score = k, s
        return best


class RoundRobinPolicy(SelectionPolicy):
    """Cycle through candidates using a cursor kept in a shared CursorStore.

    The cursor is read, used, and then advanced by a detached task, with no
    transaction around the read and the write. Interleaved callers can read
    the same index and pick the same key; that repeat is accepted, the cursor
    is only a spreading hint. Failed cursor writes are logged and dropped.
    """

    strategy = Strategy.ROUND_ROBIN

    def __init__(
        self,
        cursor_store: Union[CursorStore, None] = None,
        cursor_name: str = DEFAULT_CURSOR_NAME,
        ttl: Union[float, None] = None,
    ):
        self.cursor_store = cursor_store if cursor_store is not None else MemoryCursorStore()
        self.cursor_name = cursor_name
        self.ttl = ttl
        self._pending: set[asyncio.Task] = set()

    async def _read_index(self, n: int) -> int:
        try:
            raw = await self.cursor_store.get_cursor(self.cursor_name)
        except Exception as e:
            logger.warning(f"round robin cursor read failed: {e}; starting at 0")
            return 0
        try:
            index = int(raw) if raw is not None else 0
        except (TypeError, ValueError):
            return 0
        return index if 0 <= index < n else 0

    async def _write_index(self, index: int) -> None:
        try:
            await self.cursor_store.set_cursor(self.cursor_name, str(index), self.ttl)
        except Exception as e:
            logger.error(f"failed to update round robin cursor: {e}")

    async def select(self, candidates):
        _require_candidates(candidates)
        index = await self._read_index(len(candidates))
        selected = candidates[index]
        task = asyncio.get_running_loop().create_task(
            self._write_index((index + 1) % len(candidates))
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return selected

    async def flush(self) -> None:
        """Wait for outstanding cursor writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending))


def coerce_policy(
    strategy: Union[SelectionPolicy, Strategy, str, None],
    cursor_store: Union[CursorStore, None] = None,
    cursor_name: str = DEFAULT_CURSOR_NAME,
    ttl: Union[float, None] = None,
) -> SelectionPolicy:
    """Turn None | str | Strategy | SelectionPolicy into a SelectionPolicy.

    Accepted inputs:
      - None / unknown string -> AdaptivePolicy
      - "adaptive"            -> AdaptivePolicy
      - "least_used"          -> LeastUsedPolicy
      - "round_robin"         -> RoundRobinPolicy over cursor_store
      - SelectionPolicy instance (returned as-is)
    """
    if isinstance(strategy, SelectionPolicy):
        return strategy
    resolved = Strategy.parse(strategy)
    if resolved is Strategy.ROUND_ROBIN:
        return RoundRobinPolicy(cursor_store, cursor_name, ttl)
    if resolved is Strategy.LEAST_USED:
        return LeastUsedPolicy()
    return AdaptivePolicy()
