import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Union

from .errors import ErrorKind, TaggedUpstreamError
from .state import KeyState
from .store import KeyStore
from .types import RetryConfig, UpstreamResult

logger = logging.getLogger("keybalance")

Invoker = Callable[[KeyState, Any], Awaitable[UpstreamResult]]


class RetryCoordinator:
    """Run one upstream call on one key with bounded same-key retries.

    Every attempt, successful or not, is reported to the store before the
    retry decision. Failures leave as TaggedUpstreamError carrying the key id;
    moving to another key is the caller's job (LoadBalancer.failover).

    Cancelling the awaiting task cancels the in-flight call or backoff sleep;
    an interrupted attempt is not reported.
    """

    def __init__(
        self,
        store: KeyStore,
        invoke: Invoker,
        retry_config: Union[RetryConfig, None] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.invoke = invoke
        self.retry_config = retry_config or RetryConfig()
        self._sleep = sleep

    def _now_ms(self) -> float:
        return time.perf_counter() * 1000

    def classify(self, error: BaseException) -> ErrorKind:
        status = getattr(error, "status", None)
        if status in self.retry_config.terminal_statuses:
            return ErrorKind.TERMINAL
        return ErrorKind.RETRYABLE

    def backoff(self, attempt: int) -> float:
        return self.retry_config.backoff_base * (attempt + 1)

    async def call_with_retry(
        self, key: KeyState, payload: Any, max_retries: Union[int, None] = None
    ) -> UpstreamResult:
        retries = self.retry_config.max_retries if max_retries is None else max_retries
        attempt = 0
        while True:
            started = self._now_ms()
            try:
                result = await self.invoke(key, payload)
            except Exception as e:
                latency = self._now_ms() - started
                await self.store.record_outcome(key.id, False, latency, getattr(e, "status", None))
                kind = self.classify(e)
                logger.warning(
                    f"attempt {attempt + 1}/{retries + 1} failed for key={key.id} "
                    f"({kind.value}): {e}"
                )
                if kind is ErrorKind.TERMINAL or attempt >= retries:
                    raise TaggedUpstreamError(kind, key.id, e) from e
                await self._sleep(self.backoff(attempt))
                attempt += 1
                continue
            latency = self._now_ms() - started
            await self.store.record_outcome(key.id, True, latency, getattr(result, "status", None))
            if attempt:
                logger.info(f"key={key.id} succeeded after {attempt} retries")
            return result
