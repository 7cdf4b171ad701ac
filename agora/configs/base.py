import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class CompactionConfig(BaseModel):
    """Thresholds for automatic transcript compaction."""
    enabled: bool = True
    min_threshold: int = 15      # start debounced compaction
    max_threshold: int = 25      # force immediate compaction
    debounce_ms: int = 5000

    @field_validator("min_threshold", "max_threshold")
    @classmethod
    def _positive_int(cls, v: int) -> int:
        return max(1, int(v))

    @field_validator("debounce_ms")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        return max(0, int(v))


class RetryConfig(BaseModel):
    """Bounded retry for rate-limited backend calls."""
    max_attempts: int = 3
    base_delay: float = 0.5   # seconds
    backoff_factor: float = 2.0
    max_delay: float = 8.0

    @field_validator("max_attempts")
    @classmethod
    def _clamp_attempts(cls, v: int) -> int:
        return min(5, max(1, int(v)))

    @field_validator("base_delay", "max_delay")
    @classmethod
    def _non_negative_delay(cls, v: float) -> float:
        return max(0.0, float(v))


class AgoraConfig(BaseModel):
    db_path: str = Field(
        default_factory=lambda: os.path.join(os.path.expanduser("~"), ".agora", "agora.db")
    )
    max_delegation_depth: int = 10
    approval_timeout_ms: int = 5 * 60 * 1000
    interaction_timeout_ms: int = 60 * 1000
    history_max: int = 1000
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("max_delegation_depth")
    @classmethod
    def _valid_depth(cls, v: int) -> int:
        v = int(v)
        if v < 1:
            raise ValueError(f"max_delegation_depth must be >= 1, got {v}")
        return v

    @field_validator("approval_timeout_ms", "interaction_timeout_ms", "history_max")
    @classmethod
    def _positive_int(cls, v: int) -> int:
        return max(1, int(v))

    @classmethod
    def from_env(cls, overrides: Optional[Dict[str, Any]] = None) -> "AgoraConfig":
        """Build a config from AGORA_* environment variables."""
        data: Dict[str, Any] = {}
        env_map = {
            "AGORA_DB_PATH": "db_path",
            "AGORA_MAX_DELEGATION_DEPTH": "max_delegation_depth",
            "AGORA_APPROVAL_TIMEOUT_MS": "approval_timeout_ms",
            "AGORA_INTERACTION_TIMEOUT_MS": "interaction_timeout_ms",
        }
        for env_name, field_name in env_map.items():
            value = os.environ.get(env_name)
            if value is not None and value.strip():
                data[field_name] = value.strip()
        data.update(overrides or {})
        return cls(**data)
