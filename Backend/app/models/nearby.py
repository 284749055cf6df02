from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


EntityType = Literal["poi", "charging_location", "rv_spot"]
ENTITY_TYPES: tuple[str, ...] = ("poi", "charging_location", "rv_spot")

QueueStatus = Literal["pending", "processing", "completed", "failed"]
ACTIVE_STATUSES: tuple[str, ...] = ("pending", "processing")

_TYPE_ALIASES = {
    "poi": "poi",
    "charger": "charging_location",
    "charging": "charging_location",
    "charging_location": "charging_location",
    "rv": "rv_spot",
    "rv_spot": "rv_spot",
}

# Relation type → payload key of the per-origin cache blob
_PAYLOAD_KEYS = {
    "poi": "poi_foot",
    "charging_location": "charger_foot",
    "rv_spot": "rv_foot",
}

# Origin type → relation types that origin needs computed
_RELATIONS = {
    "charging_location": ("poi", "rv_spot"),
    "poi": ("charging_location",),
    "rv_spot": ("charging_location", "poi"),
}

# Asking an origin for its own type makes no sense; these are the substitutes.
_SELF_REMAP = {
    "charging_location": "poi",
    "poi": "charging_location",
    "rv_spot": "charging_location",
}


def normalize_entity_type(value: Optional[str], default: Optional[str] = None) -> Optional[str]:
    if value is None:
        return default
    return _TYPE_ALIASES.get(str(value).strip().lower(), default)


def payload_key_for(relation_type: str) -> str:
    return _PAYLOAD_KEYS[relation_type]


def isochrone_key_for(profile: str) -> str:
    return f"isochrones_v1_{profile}"


def relations_for(entity_type: str) -> tuple[str, ...]:
    return _RELATIONS.get(entity_type, ())


def remap_relation(origin_type: str, relation_type: str) -> str:
    if origin_type == relation_type:
        return _SELF_REMAP[origin_type]
    return relation_type


class Entity(BaseModel):
    id: int
    entity_type: EntityType
    title: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None

    @property
    def has_coords(self) -> bool:
        if self.lat is None or self.lng is None:
            return False
        return -90.0 <= self.lat <= 90.0 and -180.0 <= self.lng <= 180.0 and (self.lat, self.lng) != (0.0, 0.0)


class Candidate(BaseModel):
    id: int
    entity_type: EntityType
    title: Optional[str] = None
    lat: float
    lng: float
    distance_m: float


class NearbyItem(BaseModel):
    candidate_id: int
    candidate_type: str
    title: Optional[str] = None
    duration_s: Optional[float] = None
    distance_m: Optional[float] = None
    direct_m: Optional[float] = None
    provider: str
    profile: str


class Progress(BaseModel):
    done: int = 0
    total: int = 0


class CachePayload(BaseModel):
    """Per origin, per relation type. While ``partial`` is true ``items`` is a readable prefix."""

    computed_at: Optional[str] = None
    items: List[NearbyItem] = Field(default_factory=list)
    partial: bool = False
    progress: Progress = Field(default_factory=Progress)
    provider: Optional[str] = None
    error: Optional[str] = None
    error_at: Optional[str] = None
    retry_after_s: Optional[int] = None


class IsochronePayload(BaseModel):
    version: int = 1
    profile: str
    ranges_s: List[int] = Field(default_factory=list)
    center: List[float] = Field(default_factory=list)  # [lng, lat]
    geojson: Optional[Dict[str, Any]] = None
    computed_at: Optional[str] = None
    ttl_days: int = 30
    provider: Optional[str] = None
    error: Optional[str] = None
    error_at: Optional[str] = None
    retry_after_s: Optional[int] = None

    @property
    def feature_count(self) -> int:
        if not self.geojson:
            return 0
        return len(self.geojson.get("features") or [])


class QueueItem(BaseModel):
    id: int
    origin_id: int
    origin_type: EntityType
    priority: int = 0
    status: QueueStatus = "pending"
    attempts: int = 0
    max_attempts: int = 3
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class QueueStats(BaseModel):
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class RateDecision(BaseModel):
    allowed: bool
    wait_seconds: Optional[int] = None
    tokens_remaining: Optional[float] = None


class QuotaSnapshot(BaseModel):
    scope: str
    remaining: Optional[int] = None
    reset_at: Optional[float] = None
    retry_until: Optional[float] = None
    source: Literal["headers", "fallback"] = "fallback"
    state: str = "ok"
    daily_limit: int = 0
    used_today: int = 0


class RecomputeOutcome(BaseModel):
    """What one recompute run did. ``status`` drives the queue transition."""

    origin_id: int
    relation_type: str
    status: Literal["completed", "partial", "rate_limited", "error", "locked"]
    error: Optional[str] = None
    retryable: bool = True
    retry_after_s: Optional[int] = None
    api_calls: int = 0
    candidates_count: int = 0
    items_count: int = 0
    provider: Optional[str] = None


class IsochroneOutcome(BaseModel):
    status: Literal["cached", "computed", "error", "disabled"]
    error: Optional[str] = None
    api_calls: int = 0
    features: int = 0


class BatchResult(BaseModel):
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    rate_limited: bool = False
    reason: Optional[str] = None
    next_run_at: Optional[float] = None


class ProcessedRecord(BaseModel):
    origin_id: int
    origin_type: str
    origin_title: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    processed_type: str
    candidates_count: int = 0
    api_calls_used: int = 0
    processing_time_s: float = 0.0
    api_provider: Optional[str] = None
    cache_size_kb: float = 0.0
    nearby_items_count: int = 0
    iso_features: int = 0
    iso_calls: int = 0
    has_nearby: bool = False
    has_isochrones: bool = False
    status: Literal["completed", "cached", "error"] = "completed"
    error_message: Optional[str] = None
    processing_date: Optional[datetime] = None


class AutoRunResult(BaseModel):
    loops: int = 0
    processed: int = 0
    errors: int = 0
    swept: int = 0
    stopped_reason: str = "completed"
    next_run_in_s: Optional[int] = None
    pending_after: int = 0
