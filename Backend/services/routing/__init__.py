"""
Routing provider package for the nearby engine.

Provides a common interface over OpenRouteService, OSRM and the haversine fallback.
"""

from app.config import NearbyConfig

from .base import (
    IsochroneResult,
    MatrixResult,
    RoutingError,
    RoutingMalformedResponse,
    RoutingProvider,
    RoutingRateLimited,
    RoutingTransportError,
    RoutingUnauthorized,
)
from .basic_provider import BasicRoutingProvider
from .ors_provider import OrsRoutingProvider
from .osrm_provider import OsrmRoutingProvider


def get_routing_provider(config: NearbyConfig) -> RoutingProvider:
    """
    ORS when routing is selected and a key is configured, OSRM when selected,
    otherwise the haversine fallback.
    """
    if config.routing_enabled:
        return OrsRoutingProvider(
            config.ors_api_key or "",
            base_url=config.ors_base_url,
            profile=config.profile,
            timeout_s=config.timeout_s,
        )
    if config.provider == "osrm":
        return OsrmRoutingProvider(
            base_url=config.osrm_base_url,
            profile=config.profile,
            timeout_s=config.timeout_s,
            walking_speed_kmh=config.walking_speed_kmh,
        )
    return BasicRoutingProvider(profile=config.profile, walking_speed_kmh=config.walking_speed_kmh)


__all__ = [
    "BasicRoutingProvider",
    "IsochroneResult",
    "MatrixResult",
    "OrsRoutingProvider",
    "OsrmRoutingProvider",
    "RoutingError",
    "RoutingMalformedResponse",
    "RoutingProvider",
    "RoutingRateLimited",
    "RoutingTransportError",
    "RoutingUnauthorized",
    "get_routing_provider",
]
