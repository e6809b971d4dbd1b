"""Application configuration and settings management."""

from pathlib import Path
from typing import Any, Optional

import json
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="TABI_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Tabi Route Engine API"
    api_prefix: str = "/api"
    log_level: str = Field(default="INFO", description="Root logging level.")
    data_root: Path = Field(default=Path("data"), description="Root directory for plan and sync queue files.")

    osrm_base_url: Optional[str] = Field(
        default=None,
        description="Base URL for the OSRM directions service (e.g., http://localhost:5000).",
    )
    osrm_profiles: dict[str, str] = Field(
        default={"driving": "driving", "walking": "foot", "cycling": "bike"},
        description="Travel mode to OSRM profile mapping.",
    )
    osrm_timeout_seconds: float = Field(default=10.0, gt=0.0)
    osrm_max_retries: int = Field(default=3, ge=0)
    osrm_backoff_seconds: float = Field(default=0.5, ge=0.0)

    distance_cache_ttl_seconds: int = Field(default=24 * 3600, ge=1)
    coordinate_precision: int = Field(
        default=5,
        ge=0,
        le=8,
        description="Decimal places kept when keying cached edges (5 is roughly one metre).",
    )
    max_parallel_lookups: int = Field(default=8, ge=1, description="Concurrent directions requests.")
    lookup_timeout_seconds: float = Field(default=15.0, gt=0.0)
    fallback_speeds_kmh: dict[str, float] = Field(
        default={"driving": 40.0, "walking": 4.5, "cycling": 15.0},
        description="Average speeds used to derive durations for haversine fallback edges.",
    )

    max_destinations_per_route: int = Field(default=60, ge=2)
    two_opt_max_iterations: int = Field(default=50, ge=0)
    optimizer_time_budget_seconds: float = Field(default=10.0, gt=0.0)
    route_recompute_attempts: int = Field(default=3, ge=1)

    day_start_hour: int = Field(default=9, ge=0, le=23)
    day_end_hour: int = Field(default=20, ge=1, le=24)
    default_visit_duration_min: int = Field(default=60, ge=1)

    frontend_allowed_origins: tuple[str, ...] = Field(
        default=(
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    # Supabase configuration
    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL (e.g., https://xxx.supabase.co).",
    )
    supabase_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key for backend operations.",
    )

    @field_validator("data_root", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        path_value = value if isinstance(value, Path) else Path(str(value))
        return path_value.expanduser().resolve()

    @field_validator("frontend_allowed_origins", mode="before")
    @classmethod
    def _parse_str_tuple_from_env(cls, value: Any) -> tuple[str, ...]:
        """Parse string tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(str(item) for item in parsed)
            except (json.JSONDecodeError, TypeError):
                pass
            if "," in value:
                return tuple(item.strip() for item in value.split(",") if item.strip())
            if value.strip():
                return (value.strip(),)
        return tuple()

    @field_validator("osrm_profiles", "fallback_speeds_kmh", mode="before")
    @classmethod
    def _parse_mapping_from_env(cls, value: Any) -> Any:
        """Accept a JSON object or ``mode=value`` pairs separated by commas."""
        if not isinstance(value, str):
            return value
        try:
            parsed = json.loads(value)
            if isinstance(parsed, dict):
                return parsed
        except (json.JSONDecodeError, TypeError):
            pass
        pairs = [item.split("=", 1) for item in value.split(",") if "=" in item]
        return {key.strip(): raw.strip() for key, raw in pairs}


settings = Settings()
