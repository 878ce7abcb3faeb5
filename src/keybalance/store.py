import dataclasses
import itertools
import logging
import time
from collections.abc import Sequence
from typing import Any, Protocol

from .errors import FeedbackPersistenceError
from .state import KeyState
from .types import HealthStatus, KeyConfig

logger = logging.getLogger("keybalance")

# Fields a feedback event is allowed to write
METRIC_FIELDS = frozenset(
    {
        "total_requests",
        "successful_requests",
        "success_rate",
        "avg_response_time_ms",
        "consecutive_failures",
        "health_status",
        "last_check_time",
        "enabled",
    }
)


class KeyBackend(Protocol):
    """Row storage for keys and config values."""

    async def get_key(self, key_id: int) -> KeyState | None: ...

    async def list_keys(self, enabled_only: bool = False) -> list[KeyState]: ...

    async def update_key_metrics(self, key_id: int, fields: dict[str, Any]) -> bool: ...

    async def get_config_value(self, name: str, default: Any = None) -> Any: ...

    async def set_config_value(self, name: str, value: Any) -> None: ...

    async def add_key(self, secret: str, name: str | None = None) -> KeyState: ...

    async def delete_key(self, key_id: int) -> bool: ...


class CursorStore(Protocol):
    """Ephemeral shared state used by round-robin selection."""

    async def get_cursor(self, name: str) -> str | None: ...

    async def set_cursor(self, name: str, value: str, ttl: float | None = None) -> None: ...


class MemoryBackend:
    """In-process KeyBackend. Returned rows are copies; only update_key_metrics writes."""

    def __init__(self, config: dict[str, Any] | None = None):
        self._rows: dict[int, KeyState] = {}
        self._config: dict[str, Any] = dict(config or {})
        self._ids = itertools.count(1)

    async def get_key(self, key_id):
        row = self._rows.get(key_id)
        return dataclasses.replace(row) if row is not None else None

    async def list_keys(self, enabled_only=False):
        return [
            dataclasses.replace(k)
            for k in self._rows.values()
            if k.enabled or not enabled_only
        ]

    async def update_key_metrics(self, key_id, fields):
        row = self._rows.get(key_id)
        if row is None:
            return False
        unknown = set(fields) - METRIC_FIELDS
        if unknown:
            raise ValueError(f"not a metric field: {', '.join(sorted(unknown))}")
        for name, value in fields.items():
            setattr(row, name, value)
        return True

    async def get_config_value(self, name, default=None):
        return self._config.get(name, default)

    async def set_config_value(self, name, value):
        self._config[name] = value

    async def add_key(self, secret, name=None):
        key = KeyState(id=next(self._ids), secret=secret, name=name or "")
        self._rows[key.id] = key
        return dataclasses.replace(key)

    async def delete_key(self, key_id):
        return self._rows.pop(key_id, None) is not None


class MemoryCursorStore:
    def __init__(self):
        self._values: dict[str, tuple[str, float | None]] = {}

    def _now(self) -> float:
        return time.time()

    async def get_cursor(self, name):
        entry = self._values.get(name)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            self._values.pop(name, None)
            return None
        return value

    async def set_cursor(self, name, value, ttl=None):
        expires_at = self._now() + ttl if ttl else None
        self._values[name] = (str(value), expires_at)


class KeyStore:
    """Query and feedback contract over a KeyBackend.

    record_outcome is a read-modify-write against the backend with no
    client-side locking; concurrent feedback for one key is last-write-wins.
    """

    def __init__(self, backend: KeyBackend | None = None):
        self.backend = backend if backend is not None else MemoryBackend()

    async def list_candidates(self, must_be_enabled: bool = True) -> list[KeyState]:
        keys = await self.backend.list_keys(enabled_only=must_be_enabled)
        if must_be_enabled:
            keys = [k for k in keys if k.enabled]
        return sorted(keys, key=KeyState.sort_key)

    async def record_outcome(
        self,
        key_id: int,
        success: bool,
        latency_ms: float,
        status_code: int | None = None,
    ) -> None:
        try:
            key = await self.backend.get_key(key_id)
            if key is None:
                logger.warning(f"feedback for unknown key={key_id} dropped")
                return
            fields = key.apply_outcome(success, latency_ms, status_code)
            await self.backend.update_key_metrics(key_id, fields)
        except Exception as e:
            err = FeedbackPersistenceError(key_id, e)
            logger.error(str(err))
            return
        became_unhealthy = fields["health_status"] is HealthStatus.UNHEALTHY
        if became_unhealthy and key.health_status is not HealthStatus.UNHEALTHY:
            failures = fields["consecutive_failures"]
            logger.warning(f"key={key_id} marked unhealthy after {failures} consecutive failures")

    # pass-through admin operations
    async def get_key(self, key_id: int) -> KeyState | None:
        return await self.backend.get_key(key_id)

    async def add_key(self, secret: str, name: str | None = None) -> KeyState:
        key = await self.backend.add_key(secret, name)
        logger.info(f"added key={key.id} name={key.name}")
        return key

    async def add_keys(self, configs: Sequence[KeyConfig]) -> list[KeyState]:
        return [await self.add_key(c.token, c.name) for c in configs]

    async def delete_key(self, key_id: int) -> bool:
        removed = await self.backend.delete_key(key_id)
        if removed:
            logger.info(f"deleted key={key_id}")
        return removed

    async def set_enabled(self, key_id: int, enabled: bool) -> bool:
        return await self.backend.update_key_metrics(key_id, {"enabled": enabled})

    async def stats(self) -> dict[str, Any]:
        keys = await self.backend.list_keys(enabled_only=False)
        by_status = {s.value: 0 for s in HealthStatus}
        for k in keys:
            by_status[k.health_status.value] += 1
        n = len(keys)
        return {
            "keys": {"total": n, "enabled": sum(1 for k in keys if k.enabled), **by_status},
            "usage": {"total_requests": sum(k.total_requests for k in keys)},
            "performance": {
                "avg_response_time_ms": (
                    sum(k.avg_response_time_ms for k in keys) / n if n else 0.0
                ),
                "avg_success_rate": sum(k.success_rate for k in keys) / n if n else 0.0,
            },
            "per_key": [k.snapshot() for k in sorted(keys, key=lambda k: k.id)],
        }
