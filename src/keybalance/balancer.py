import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar, Union

from .errors import FailoverExhausted, NoAvailableKeys
from .policies import RoundRobinPolicy, SelectionPolicy, Strategy, coerce_policy
from .scoring import score_breakdown
from .state import KeyState
from .store import CursorStore, KeyStore, MemoryCursorStore
from .types import BalancerConfig, HealthStatus

logger = logging.getLogger("keybalance")

T = TypeVar("T")

STRATEGY_CONFIG_NAME = "load_balance_strategy"
DEFAULT_FAILOVER_ATTEMPTS = 3
# stats count a healthy key only above this success rate
HEALTHY_SUCCESS_RATE = 0.8


@dataclass
class SelectionContext:
    strategy: Strategy
    excluded: frozenset[int] = frozenset()
    candidates: list[KeyState] = field(default_factory=list)


def is_key_healthy(key: KeyState) -> bool:
    return key.health_status is HealthStatus.HEALTHY and key.success_rate > HEALTHY_SUCCESS_RATE


class LoadBalancer:
    def __init__(
        self,
        store: KeyStore,
        cursor_store: Union[CursorStore, None] = None,
        config: Union[BalancerConfig, None] = None,
    ):
        """Initialize a LoadBalancer.

        Args:
            store (KeyStore): source of candidates and config values
            cursor_store (CursorStore | None): shared cursor for round robin; in-memory if None
            config (BalancerConfig | None): fallback strategy and cursor settings

        The strategy is read from the store's config value "load_balance_strategy"
        on every call, falling back to config.strategy.
        """
        self.store = store
        self.config = config or BalancerConfig()
        self.cursor_store = cursor_store if cursor_store is not None else MemoryCursorStore()
        # one policy per strategy; round robin keeps its pending cursor writes
        self._policies: dict[Strategy, SelectionPolicy] = {
            s: coerce_policy(s, self.cursor_store, self.config.cursor_name, self.config.cursor_ttl)
            for s in Strategy
        }

    async def strategy(self) -> Strategy:
        try:
            name = await self.store.backend.get_config_value(
                STRATEGY_CONFIG_NAME, self.config.strategy
            )
        except Exception as e:
            logger.warning(f"strategy lookup failed: {e}; using {self.config.strategy}")
            name = self.config.strategy
        return Strategy.parse(name)

    def policy_for(self, strategy: Strategy) -> SelectionPolicy:
        return self._policies[strategy]

    async def context(self, excluded: Iterable[int] = ()) -> SelectionContext:
        excluded = frozenset(excluded)
        candidates = await self.store.list_candidates(must_be_enabled=True)
        return SelectionContext(
            strategy=await self.strategy(),
            excluded=excluded,
            candidates=[k for k in candidates if k.id not in excluded],
        )

    async def select_key(self, excluded: Iterable[int] = ()) -> KeyState:
        ctx = await self.context(excluded)
        if not ctx.candidates:
            raise NoAvailableKeys(
                "No available keys" if not ctx.excluded else "No available keys after exclusions",
                excluded=ctx.excluded,
            )
        key = await self.policy_for(ctx.strategy).select(ctx.candidates)
        logger.debug(
            f"selected key={key.id} strategy={ctx.strategy.value} "
            f"candidates={len(ctx.candidates)} excluded={len(ctx.excluded)}"
        )
        return key

    async def failover(
        self, failed_id: int, max_attempts: int = DEFAULT_FAILOVER_ATTEMPTS
    ) -> KeyState:
        """Select a replacement for failed_id.

        Raises FailoverExhausted after max_attempts unsuccessful iterations.
        """
        return await self._failover(failed_id, max_attempts, None)

    async def run_with_failover(
        self,
        failed_id: int,
        call: Callable[[KeyState], Awaitable[T]],
        max_attempts: int = DEFAULT_FAILOVER_ATTEMPTS,
    ) -> T:
        """Like failover, but hand each replacement to call(key) and return its result.

        A failure tagged with a key id adds that key to the exclusion set before
        the next iteration, so a key that failed is never selected again.
        """
        return await self._failover(failed_id, max_attempts, call)

    async def _failover(self, failed_id, max_attempts, call):
        excluded = {failed_id}
        last_error: Union[Exception, None] = None
        for attempt in range(max_attempts):
            try:
                key = await self.select_key(excluded)
                logger.info(f"failover from key={failed_id} to key={key.id}")
                return key if call is None else await call(key)
            except Exception as e:
                last_error = e
                logger.warning(f"failover attempt {attempt + 1}/{max_attempts} failed: {e}")
                key_id = getattr(e, "key_id", None)
                if key_id is not None:
                    excluded.add(key_id)
        raise FailoverExhausted(failed_id, max_attempts) from last_error

    async def flush(self) -> None:
        policy = self._policies[Strategy.ROUND_ROBIN]
        if isinstance(policy, RoundRobinPolicy):
            await policy.flush()

    async def stats(self) -> dict[str, Any]:
        keys = await self.store.list_candidates(must_be_enabled=True)
        return {
            "strategy": (await self.strategy()).value,
            "total_keys": len(keys),
            "healthy_keys": sum(1 for k in keys if is_key_healthy(k)),
            "key_distribution": [
                {
                    "id": k.id,
                    "health_status": k.health_status.value,
                    "success_rate": k.success_rate,
                    "total_requests": k.total_requests,
                    "avg_response_time_ms": k.avg_response_time_ms,
                    "score": score_breakdown(k),
                }
                for k in keys
            ],
        }
