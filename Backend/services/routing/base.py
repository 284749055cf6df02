"""
Abstract base class for routing providers.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

# (lat, lng)
Point = Tuple[float, float]


class RoutingError(Exception):
    """
    Base class for routing failures.

    ``tag`` is the short error string persisted in cache payloads
    ("rate_limited", "unauthorized", "network_error", ...).
    """

    tag = "routing_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after_s: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
        tag: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.headers: Dict[str, str] = dict(headers or {})
        if tag:
            self.tag = tag


class RoutingRateLimited(RoutingError):
    tag = "rate_limited"


class RoutingUnauthorized(RoutingError):
    tag = "unauthorized"


class RoutingTransportError(RoutingError):
    tag = "network_error"


class RoutingMalformedResponse(RoutingError):
    tag = "invalid_response"


def parse_retry_after(headers: Mapping[str, str]) -> Optional[int]:
    raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0, int(float(raw)))
    except (TypeError, ValueError):
        return None


def as_float_row(row: Any) -> List[Optional[float]]:
    if not isinstance(row, list):
        raise ValueError("matrix row is not a list")
    return [float(v) if v is not None else None for v in row]


@dataclass
class MatrixResult:
    """One row of a 1×N matrix: values are aligned with the requested destinations."""

    durations: List[Optional[float]]
    distances: List[Optional[float]]
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class IsochroneResult:
    geojson: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


class RoutingProvider(ABC):
    """
    Computes walking matrices and isochrones.

    Providers that call a metered API set ``requires_quota`` (matrix) and
    ``isochrone_requires_quota``; the engine then routes every such call
    through the quota tracker first.
    """

    name: str = "routing"
    isochrone_name: str = "routing"
    requires_quota: bool = True
    isochrone_requires_quota: bool = True

    def __init__(self, profile: str = "foot-walking"):
        self.profile = profile

    @abstractmethod
    async def matrix(self, origin: Point, destinations: Sequence[Point]) -> MatrixResult:
        """
        Durations (s) and distances (m) from ``origin`` to each destination.

        Raises:
            RoutingError: classified upstream failure
        """

    @abstractmethod
    async def isochrones(self, center: Point, ranges_s: Sequence[int]) -> IsochroneResult:
        """GeoJSON FeatureCollection of reachable areas, one feature per range."""

    async def aclose(self) -> None:
        return None

    async def __aenter__(self) -> "RoutingProvider":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
