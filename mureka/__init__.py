"""Public surface for the Mureka integration."""
from .client import MurekaAPIError, MurekaClient, MurekaClientError, MurekaServerError
from .schemas import MurekaChoice, MurekaTask, map_mureka_status

__all__ = [
    "MurekaAPIError",
    "MurekaClient",
    "MurekaClientError",
    "MurekaServerError",
    "MurekaChoice",
    "MurekaTask",
    "map_mureka_status",
]
