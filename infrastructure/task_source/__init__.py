from .api_client import ApiClient, ApiClientError, ApiPermissionError, ApiRateLimitError
from .rate_limiter import RateLimiter
from .remote_source import RemoteTaskSource

__all__ = [
    "ApiClient",
    "ApiClientError",
    "ApiPermissionError",
    "ApiRateLimitError",
    "RateLimiter",
    "RemoteTaskSource",
]
