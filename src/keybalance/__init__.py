from .adapters import AiohttpUpstream, HttpxUpstream
from .balancer import LoadBalancer, SelectionContext
from .env import load_balancer_config_from_env, load_keyconfigs_from_env, load_retry_config_from_env
from .errors import (
    ErrorKind,
    FailoverExhausted,
    FeedbackPersistenceError,
    KeyBalanceError,
    NoAvailableKeys,
    TaggedUpstreamError,
    UpstreamError,
)
from .policies import (
    AdaptivePolicy,
    LeastUsedPolicy,
    RoundRobinPolicy,
    SelectionPolicy,
    Strategy,
    coerce_policy,
)
from .pool import KeyPool
from .retry import RetryCoordinator
from .scoring import score
from .state import KeyState
from .store import KeyStore, MemoryBackend, MemoryCursorStore
from .types import (
    AuthConfig,
    BalancerConfig,
    HealthStatus,
    KeyConfig,
    RetryConfig,
    UpstreamResult,
)

__all__ = [
    "KeyConfig",
    "AuthConfig",
    "RetryConfig",
    "BalancerConfig",
    "HealthStatus",
    "UpstreamResult",
    "KeyState",
    "KeyStore",
    "MemoryBackend",
    "MemoryCursorStore",
    "score",
    "Strategy",
    "SelectionPolicy",
    "RoundRobinPolicy",
    "LeastUsedPolicy",
    "AdaptivePolicy",
    "coerce_policy",
    "LoadBalancer",
    "SelectionContext",
    "RetryCoordinator",
    "KeyPool",
    "HttpxUpstream",
    "AiohttpUpstream",
    "KeyBalanceError",
    "NoAvailableKeys",
    "FailoverExhausted",
    "UpstreamError",
    "ErrorKind",
    "TaggedUpstreamError",
    "FeedbackPersistenceError",
    "load_keyconfigs_from_env",
    "load_balancer_config_from_env",
    "load_retry_config_from_env",
]
