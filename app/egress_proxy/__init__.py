from .models import InboundRequest, PrefixMapping, ProxyResponse
from .mappings import PrefixMappingTable
from .rate_limiter import RateLimiter
from .circuit_breaker import BreakerSettings, BreakerState, CircuitBreaker
from .redirect_client import RedirectFollowingClient
from .service import ProxyService

__all__ = [
    "InboundRequest",
    "PrefixMapping",
    "ProxyResponse",
    "PrefixMappingTable",
    "RateLimiter",
    "BreakerSettings",
    "BreakerState",
    "CircuitBreaker",
    "RedirectFollowingClient",
    "ProxyService",
]
