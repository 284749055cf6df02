# app/config.py
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Backend/app/config.py → parent = Backend
ENV_FILE = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(ENV_FILE, override=False)  # pre-load in procesomgeving

# Hard cap van de ORS matrix endpoint (bestemmingen per call)
MATRIX_HARD_CAP = 50


class Settings(BaseSettings):
    # ---- App / Infra ----
    APP_VERSION: str = "0.1.0-alpha"
    DATABASE_URL: Optional[str] = None

    # ---- Admin Auth (Supabase) ----
    SUPABASE_JWT_SECRET: Optional[str] = Field(
        default_factory=lambda: os.getenv("SUPABASE_JWT_SECRET")
    )
    ALLOWED_ADMIN_EMAILS: List[EmailStr] = Field(default_factory=list)

    # ---- Routing provider (OpenRouteService, OSRM) ----
    NEARBY_PROVIDER: Literal["routing", "osrm", "basic"] = "routing"
    ORS_API_KEY: Optional[str] = None
    ORS_BASE_URL: str = "https://api.openrouteservice.org"
    OSRM_BASE_URL: str = "https://router.project-osrm.org"
    ORS_PROFILE: str = "foot-walking"
    ORS_TIMEOUT_S: float = 20.0

    # ---- Candidate search ----
    NEARBY_MATRIX_BATCH_SIZE: int = 50
    NEARBY_MAX_CANDIDATES: int = 50
    NEARBY_RADIUS_KM: float = 5.0
    NEARBY_RADIUS_POI_FOR_CHARGER_KM: float = 5.0
    NEARBY_RADIUS_CHARGER_FOR_POI_KM: float = 5.0
    NEARBY_AFFECTED_RADIUS_KM: float = 5.0
    NEARBY_CACHE_TTL_DAYS: int = 30

    # ---- Quota ----
    NEARBY_MATRIX_PER_MINUTE: int = 1
    NEARBY_ISOCHRONES_PER_MINUTE: int = 1
    NEARBY_MATRIX_DAILY_LIMIT: int = 500
    NEARBY_ISOCHRONES_DAILY_LIMIT: int = 500
    NEARBY_QUOTA_BUFFER: int = 0
    NEARBY_SHARED_DAILY_QUOTA: bool = False

    # ---- Isochrones ----
    NEARBY_ISOCHRONES_ENABLED: bool = True
    NEARBY_WALKING_SPEED_KMH: float = 4.5
    NEARBY_ISOCHRONE_MINUTES: List[int] = Field(default_factory=lambda: [10, 20, 30])

    # ---- Worker / automation ----
    NEARBY_WORKER_TOKEN: Optional[str] = None
    NEARBY_AUTO_ENABLED: bool = True
    NEARBY_AUTO_ENQUEUE_ON_GET: bool = False
    NEARBY_AUTO_MAX_LOOPS: int = 3
    NEARBY_AUTO_BATCH_SIZE: int = 1
    NEARBY_STUCK_TIMEOUT_MINUTES: int = 15
    NEARBY_QUEUE_RETENTION_DAYS: int = 30
    NEARBY_STATE_BACKEND: Literal["postgres", "memory"] = "postgres"
    NEARBY_CHUNK_THROTTLE_MS: int = 150

    # Pydantic v2 configuratie
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()


class NearbyConfig(BaseModel):
    """
    Validated nearby options, built once and handed to every engine component.
    """

    model_config = ConfigDict(frozen=True)

    provider: Literal["routing", "osrm", "basic"] = "routing"
    ors_api_key: Optional[str] = None
    ors_base_url: str = "https://api.openrouteservice.org"
    osrm_base_url: str = "https://router.project-osrm.org"
    profile: str = "foot-walking"
    timeout_s: float = 20.0

    matrix_batch_size: int = 50
    max_candidates: int = 50
    radius_km: float = 5.0
    radius_poi_for_charger_km: float = 5.0
    radius_charger_for_poi_km: float = 5.0
    affected_radius_km: float = 5.0
    cache_ttl_days: int = 30

    per_minute: Dict[str, int] = Field(default_factory=lambda: {"matrix": 1, "isochrones": 1})
    daily_limit: Dict[str, int] = Field(default_factory=lambda: {"matrix": 500, "isochrones": 500})
    quota_buffer: int = 0
    shared_daily_quota: bool = False

    isochrones_enabled: bool = True
    walking_speed_kmh: float = 4.5
    isochrone_minutes: List[int] = Field(default_factory=lambda: [10, 20, 30])

    worker_token: Optional[str] = None
    auto_enabled: bool = True
    auto_enqueue_on_get: bool = False
    auto_max_loops: int = 3
    auto_batch_size: int = 1
    stuck_timeout_minutes: int = 15
    queue_retention_days: int = 30
    state_backend: Literal["postgres", "memory"] = "postgres"
    chunk_throttle_ms: int = 150

    @field_validator("matrix_batch_size", "max_candidates")
    @classmethod
    def clamp_to_hard_cap(cls, value: int) -> int:
        return max(1, min(MATRIX_HARD_CAP, int(value)))

    @field_validator("per_minute", "daily_limit")
    @classmethod
    def positive_caps(cls, value: Dict[str, int]) -> Dict[str, int]:
        return {str(k): max(1, int(v)) for k, v in value.items()}

    @field_validator("isochrone_minutes")
    @classmethod
    def sorted_minutes(cls, value: List[int]) -> List[int]:
        minutes = sorted({int(m) for m in value if int(m) > 0})
        if not minutes:
            raise ValueError("isochrone_minutes needs at least one positive value")
        return minutes

    @field_validator("auto_max_loops", "auto_batch_size")
    @classmethod
    def at_least_one(cls, value: int) -> int:
        return max(1, int(value))

    @property
    def routing_enabled(self) -> bool:
        """True when matrix/isochrone calls go to ORS instead of the haversine fallback."""
        return self.provider == "routing" and bool(self.ors_api_key)

    @property
    def cache_ttl_seconds(self) -> int:
        return self.cache_ttl_days * 86400

    @classmethod
    def from_settings(cls, source: Settings) -> "NearbyConfig":
        return cls(
            provider=source.NEARBY_PROVIDER,
            ors_api_key=(source.ORS_API_KEY or "").strip() or None,
            ors_base_url=source.ORS_BASE_URL.rstrip("/"),
            osrm_base_url=source.OSRM_BASE_URL.rstrip("/"),
            profile=source.ORS_PROFILE,
            timeout_s=source.ORS_TIMEOUT_S,
            matrix_batch_size=source.NEARBY_MATRIX_BATCH_SIZE,
            max_candidates=source.NEARBY_MAX_CANDIDATES,
            radius_km=source.NEARBY_RADIUS_KM,
            radius_poi_for_charger_km=source.NEARBY_RADIUS_POI_FOR_CHARGER_KM,
            radius_charger_for_poi_km=source.NEARBY_RADIUS_CHARGER_FOR_POI_KM,
            affected_radius_km=source.NEARBY_AFFECTED_RADIUS_KM,
            cache_ttl_days=source.NEARBY_CACHE_TTL_DAYS,
            per_minute={
                "matrix": source.NEARBY_MATRIX_PER_MINUTE,
                "isochrones": source.NEARBY_ISOCHRONES_PER_MINUTE,
            },
            daily_limit={
                "matrix": source.NEARBY_MATRIX_DAILY_LIMIT,
                "isochrones": source.NEARBY_ISOCHRONES_DAILY_LIMIT,
            },
            quota_buffer=source.NEARBY_QUOTA_BUFFER,
            shared_daily_quota=source.NEARBY_SHARED_DAILY_QUOTA,
            isochrones_enabled=source.NEARBY_ISOCHRONES_ENABLED,
            walking_speed_kmh=source.NEARBY_WALKING_SPEED_KMH,
            isochrone_minutes=source.NEARBY_ISOCHRONE_MINUTES,
            worker_token=source.NEARBY_WORKER_TOKEN,
            auto_enabled=source.NEARBY_AUTO_ENABLED,
            auto_enqueue_on_get=source.NEARBY_AUTO_ENQUEUE_ON_GET,
            auto_max_loops=source.NEARBY_AUTO_MAX_LOOPS,
            auto_batch_size=source.NEARBY_AUTO_BATCH_SIZE,
            stuck_timeout_minutes=source.NEARBY_STUCK_TIMEOUT_MINUTES,
            queue_retention_days=source.NEARBY_QUEUE_RETENTION_DAYS,
            state_backend=source.NEARBY_STATE_BACKEND,
            chunk_throttle_ms=source.NEARBY_CHUNK_THROTTLE_MS,
        )


@lru_cache(maxsize=1)
def get_nearby_config() -> NearbyConfig:
    return NearbyConfig.from_settings(settings)


def require_database_url() -> str:
    """
    Runtime-check die een duidelijke foutmelding geeft als DATABASE_URL ontbreekt.
    """
    dsn = (settings.DATABASE_URL or os.getenv("DATABASE_URL") or "").strip()
    if not dsn:
        raise RuntimeError(
            "DATABASE_URL ontbreekt. Controleer Backend/.env "
            f"(gezocht op: {ENV_FILE})."
        )
    return dsn


def require_supabase_jwt() -> str:
    secret = settings.SUPABASE_JWT_SECRET
    if not secret:
        raise RuntimeError(
            "SUPABASE_JWT_SECRET ontbreekt. Zet deze in Backend/.env "
            f"(gezocht op: {ENV_FILE})."
        )
    return secret


def require_worker_token(config: Optional[NearbyConfig] = None) -> str:
    """
    The trigger endpoint refuses to run without a configured worker token.
    """
    token = (config or get_nearby_config()).worker_token
    if not token:
        raise RuntimeError(
            "NEARBY_WORKER_TOKEN ontbreekt. Zet deze in Backend/.env "
            f"(gezocht op: {ENV_FILE})."
        )
    return token


def get_allowed_admin_emails() -> list[str]:
    """
    Geef de geparste admin allowlist terug (lowercase, zonder lege waarden).
    """
    return [
        str(email).strip().lower()
        for email in settings.ALLOWED_ADMIN_EMAILS
        if str(email).strip()
    ]


def require_allowed_admin_emails() -> list[str]:
    allowed = get_allowed_admin_emails()
    if not allowed:
        raise RuntimeError(
            "ALLOWED_ADMIN_EMAILS ontbreekt of is leeg. Voeg minstens één admin e-mail toe "
            f"in Backend/.env (bron: {ENV_FILE})."
        )
    return allowed
