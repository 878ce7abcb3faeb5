import contextlib
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Union

from .adapters import AiohttpUpstream, HttpxUpstream
from .balancer import STRATEGY_CONFIG_NAME, LoadBalancer
from .env import load_balancer_config_from_env, load_keyconfigs_from_env, load_retry_config_from_env
from .errors import TaggedUpstreamError
from .policies import Strategy
from .retry import Invoker, RetryCoordinator
from .state import KeyState
from .store import CursorStore, KeyBackend, KeyStore, MemoryCursorStore
from .types import AuthConfig, BalancerConfig, KeyConfig, RetryConfig, UpstreamResult

HEALTH_CHECK_CURSOR = "health_check"
HEALTH_CHECK_TTL = 60.0


class KeyPool:
    """Wire a KeyStore, LoadBalancer and RetryCoordinator into one request path.

    complete(payload) selects a key, runs the call with same-key retries, and
    on a tagged failure fails over to other keys, excluding every key that
    failed along the way.
    """

    def __init__(
        self,
        keys: Union[list[KeyConfig], None] = None,
        upstream: Union[Invoker, None] = None,
        base_url: Union[str, None] = None,
        backend: Union[KeyBackend, None] = None,
        cursor_store: Union[CursorStore, None] = None,
        log_level: Union[int, None] = None,
        **kwargs,
    ):
        """Initialize a KeyPool.

        Args:
            keys (list[KeyConfig] | None): keys added to the backend on first use
            upstream (Invoker | None): async (key, payload) -> UpstreamResult
            base_url (str | None): OpenAI-compatible base url; builds an http
                invoker when upstream is not given
            backend (KeyBackend | None): key rows and config; in-memory if None
            cursor_store (CursorStore | None): round robin cursor; in-memory if None
            log_level (int | None): level for the "keybalance" logger
            kwargs:
            - strategy: str, default strategy when the backend has none configured
            - balancer_config: BalancerConfig object
            - retry_config: RetryConfig object
            - max_retries: int
            - backoff_base: float
            - failover_attempts: int
            - auth_config: AuthConfig object
            - auth_header: str
            - auth_scheme: str
            - auth_in: str
            - auth_query_param: str
            - http_client: "httpx" (default) or "aiohttp"
            - timeout: float, request timeout for the built http invoker

        Raises:
            ValueError: if neither upstream nor base_url is given
        """
        self._logger = logging.getLogger("keybalance")
        if log_level is not None:
            self._logger.setLevel(log_level)

        bconf = kwargs.get("balancer_config")
        if bconf is None:
            bconf = BalancerConfig(strategy=kwargs.get("strategy", "adaptive"))
        rconf = kwargs.get("retry_config")
        if rconf is None:
            defaults = RetryConfig()
            rconf = RetryConfig(
                max_retries=kwargs.get("max_retries", defaults.max_retries),
                backoff_base=kwargs.get("backoff_base", defaults.backoff_base),
                failover_attempts=kwargs.get("failover_attempts", defaults.failover_attempts),
            )
        self.retry_config = rconf
        if kwargs.get("auth_config") is not None:
            self.auth_config = kwargs["auth_config"]
        else:
            self.auth_config = AuthConfig(
                header=kwargs.get("auth_header", "Authorization"),
                scheme=kwargs.get("auth_scheme", "Bearer"),
                in_=kwargs.get("auth_in", "header"),
                query_param=kwargs.get("auth_query_param", "key"),
            )

        self._own_upstream = False
        if upstream is None:
            if not base_url:
                raise ValueError("KeyPool needs either an upstream invoker or a base_url")
            timeout = kwargs.get("timeout")
            if kwargs.get("http_client", "httpx") == "aiohttp":
                upstream = AiohttpUpstream(base_url, self.auth_config, timeout=timeout)
            else:
                upstream = HttpxUpstream(base_url, self.auth_config, timeout=timeout)
            self._own_upstream = True
        self.upstream = upstream

        self.store = KeyStore(backend)
        self.cursor_store = cursor_store if cursor_store is not None else MemoryCursorStore()
        self.balancer = LoadBalancer(self.store, self.cursor_store, bconf)
        self.coordinator = RetryCoordinator(self.store, upstream, rconf)
        self._pending_keys = list(keys or [])

    # ---------- lifecycle ----------
    async def __aenter__(self):
        await self._load_keys()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
        return False

    async def aclose(self):
        await self.balancer.flush()
        if self._own_upstream:
            with contextlib.suppress(Exception):
                await self.upstream.aclose()

    async def _load_keys(self):
        if self._pending_keys:
            pending, self._pending_keys = self._pending_keys, []
            await self.store.add_keys(pending)

    # ---------- request path ----------
    async def select_key(self, excluded=()) -> KeyState:
        await self._load_keys()
        return await self.balancer.select_key(excluded)

    async def complete(self, payload: Any) -> UpstreamResult:
        """Run one chat-completion payload against the pool.

        Raises NoAvailableKeys when the pool is empty and FailoverExhausted when
        every replacement key failed too.
        """
        key = await self.select_key()
        try:
            return await self.coordinator.call_with_retry(key, payload)
        except TaggedUpstreamError as e:
            self._logger.warning(f"key={e.key_id} failed ({e.kind.value}); failing over")
            return await self.balancer.run_with_failover(
                e.key_id,
                lambda k: self.coordinator.call_with_retry(k, payload),
                max_attempts=self.retry_config.failover_attempts,
            )

    # ---------- admin ----------
    async def add_key(self, secret: str, name: Union[str, None] = None) -> KeyState:
        await self._load_keys()
        return await self.store.add_key(secret, name)

    async def delete_key(self, key_id: int) -> bool:
        return await self.store.delete_key(key_id)

    async def set_enabled(self, key_id: int, enabled: bool) -> bool:
        return await self.store.set_enabled(key_id, enabled)

    async def set_strategy(self, strategy: Union[Strategy, str]) -> Strategy:
        resolved = Strategy.parse(strategy)
        await self.store.backend.set_config_value(STRATEGY_CONFIG_NAME, resolved.value)
        return resolved

    # ---------- reporting ----------
    async def stats(self) -> dict[str, Any]:
        await self._load_keys()
        stats = await self.store.stats()
        stats["load_balance"] = await self.balancer.stats()
        return stats

    async def health(self) -> dict[str, Any]:
        """Probe the backend and cursor store; healthy needs both plus one enabled key."""
        await self._load_keys()
        started = time.perf_counter()
        backend_status, key_count = "ok", 0
        try:
            key_count = len(await self.store.list_candidates())
        except Exception as e:
            self._logger.error(f"backend health check failed: {e}")
            backend_status = "error"

        cursor_status = "ok"
        try:
            marker = str(int(time.time() * 1000))
            await self.cursor_store.set_cursor(HEALTH_CHECK_CURSOR, marker, HEALTH_CHECK_TTL)
            if not await self.cursor_store.get_cursor(HEALTH_CHECK_CURSOR):
                cursor_status = "error"
        except Exception as e:
            self._logger.error(f"cursor store health check failed: {e}")
            cursor_status = "error"

        healthy = backend_status == "ok" and cursor_status == "ok" and key_count > 0
        return {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "response_time_ms": (time.perf_counter() - started) * 1000,
            "checks": {
                "backend": backend_status,
                "cursor_store": cursor_status,
                "available_keys": key_count,
            },
        }

    # ---------- convenience: build keys from env ----------
    @classmethod
    def from_env(
        cls,
        names=None,
        prefix: Union[str, None] = None,
        env_path: Union[str, None] = None,
        **kwargs,
    ):
        """Create a KeyPool from environment variables.

        Keys come from load_keyconfigs_from_env(names, prefix, env_path);
        strategy and retry settings come from KEYBALANCE_* variables, with
        explicit strategy, max_retries, backoff_base and failover_attempts
        kwargs applied on top. Loader flags (to_lower_names, split_commas,
        strip_prefix) are forwarded; everything else goes to KeyPool.
        """
        loader_keys = {
            k: kwargs.pop(k)
            for k in list(kwargs.keys())
            if k in {"to_lower_names", "split_commas", "strip_prefix"}
        }
        keys = load_keyconfigs_from_env(
            names=names, prefix=prefix, env_path=env_path, **loader_keys
        )
        if kwargs.get("balancer_config") is None:
            bconf = load_balancer_config_from_env(env_path=env_path)
            if kwargs.get("strategy") is not None:
                bconf = replace(bconf, strategy=kwargs.pop("strategy"))
            kwargs["balancer_config"] = bconf
        if kwargs.get("retry_config") is None:
            rconf = load_retry_config_from_env(env_path=env_path)
            overrides = {
                k: kwargs.pop(k)
                for k in ("max_retries", "backoff_base", "failover_attempts")
                if kwargs.get(k) is not None
            }
            kwargs["retry_config"] = replace(rconf, **overrides)
        return cls(keys, **kwargs)
