import logging
import os
from collections.abc import Iterable

from .types import BalancerConfig, KeyConfig, RetryConfig

logger = logging.getLogger("keybalance")

DEFAULT_SETTINGS_PREFIX = "KEYBALANCE_"


def _parse_env_file(env_path: str) -> dict[str, str]:
    """Parse a simple .env file into a dict without modifying os.environ.

    KEY=VALUE pairs only; comments and blank lines are skipped and
    surrounding quotes stripped. A missing file yields an empty dict.
    """
    values: dict[str, str] = {}
    try:
        with open(env_path) as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                name, val = line.split("=", 1)
                name = name.strip()
                if name:
                    values[name] = val.strip().strip('"').strip("'")
    except FileNotFoundError:
        pass
    return values


def _env_map(env_path: str | None) -> dict[str, str]:
    # the real environment wins over the file
    file_env = _parse_env_file(env_path) if env_path else {}
    return {**file_env, **os.environ}


def _expand(cfg_name: str, token: str, split_commas: bool) -> list[KeyConfig]:
    if split_commas and "," in token:
        parts = [t.strip() for t in token.split(",") if t.strip()]
        return [KeyConfig(name=f"{cfg_name}_{i + 1}", token=p) for i, p in enumerate(parts)]
    return [KeyConfig(name=cfg_name, token=token)]


def load_keyconfigs_from_env(
    names: Iterable[str] | None = None,
    prefix: str | None = None,
    env_path: str | None = None,
    **kwargs,
) -> list[KeyConfig]:
    """Create KeyConfig objects from environment variables.

    - 'names': explicit variable names; each one found yields key(s).
    - 'prefix': every variable starting with the prefix yields key(s).
    - Both may be given; results are combined.
    - 'env_path': a .env file consulted for lookups without touching
        os.environ. The process environment takes precedence.

    kwargs keywords:
    to_lower_names: lowercase the key names (default False)
    split_commas: one key per comma-separated value (default True)
    strip_prefix: drop the prefix from key names (default False)
    """
    env_map = _env_map(env_path)
    split_commas = kwargs.get("split_commas", True)
    to_lower_names = kwargs.get("to_lower_names", False)
    strip_prefix = kwargs.get("strip_prefix", False)

    results: list[KeyConfig] = []
    for var in names or ():
        token = env_map.get(var)
        if token:
            results.extend(_expand(var.lower() if to_lower_names else var, token, split_commas))

    if prefix:
        for var, token in env_map.items():
            if not (var.startswith(prefix) and token):
                continue
            name_part = var[len(prefix) :] if strip_prefix else var
            results.extend(
                _expand(name_part.lower() if to_lower_names else name_part, token, split_commas)
            )
    return results


def _get_number(env_map: dict[str, str], name: str, cast, default):
    raw = env_map.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"ignoring invalid {name}={raw!r}; using {default}")
        return default


def load_balancer_config_from_env(
    prefix: str = DEFAULT_SETTINGS_PREFIX, env_path: str | None = None
) -> BalancerConfig:
    """Read <prefix>STRATEGY, <prefix>CURSOR_NAME and <prefix>CURSOR_TTL."""
    env_map = _env_map(env_path)
    defaults = BalancerConfig()
    return BalancerConfig(
        strategy=env_map.get(f"{prefix}STRATEGY") or defaults.strategy,
        cursor_name=env_map.get(f"{prefix}CURSOR_NAME") or defaults.cursor_name,
        cursor_ttl=_get_number(env_map, f"{prefix}CURSOR_TTL", float, defaults.cursor_ttl),
    )


def load_retry_config_from_env(
    prefix: str = DEFAULT_SETTINGS_PREFIX, env_path: str | None = None
) -> RetryConfig:
    """Read <prefix>MAX_RETRIES, <prefix>BACKOFF_BASE and <prefix>FAILOVER_ATTEMPTS."""
    env_map = _env_map(env_path)
    defaults = RetryConfig()
    return RetryConfig(
        max_retries=max(0, _get_number(env_map, f"{prefix}MAX_RETRIES", int, defaults.max_retries)),
        backoff_base=_get_number(env_map, f"{prefix}BACKOFF_BASE", float, defaults.backoff_base),
        failover_attempts=max(
            1,
            _get_number(env_map, f"{prefix}FAILOVER_ATTEMPTS", int, defaults.failover_attempts),
        ),
    )
