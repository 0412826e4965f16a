"""LeaseGate configuration management."""

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendKind(str, Enum):
    """Lease store backend."""

    REDIS = "redis"
    FILE = "file"


class Settings(BaseSettings):
    """LeaseGate configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="LEASEGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # General
    log_level: str = "INFO"
    log_file: Optional[Path] = Field(
        default=None, description="Optional file that mirrors all log output"
    )
    agent_id: Optional[str] = Field(
        default=None,
        description="Agent identifier (auto-detected at startup if not set)",
    )
    state_dir: Path = Field(
        default=Path(".leasegate"),
        description="Local state: PID marker, mode marker and file backend namespace",
    )

    # Backend
    backend: BackendKind = BackendKind.REDIS
    redis_url: str = Field(
        default="redis://localhost:6379",
        validation_alias=AliasChoices("LEASEGATE_REDIS_URL", "REDIS_URL", "redis_url"),
    )
    backend_timeout_seconds: float = Field(
        default=5.0, description="Upper bound for any single store call"
    )
    backend_retry_attempts: int = Field(
        default=3, description="Attempts per store call before BackendUnavailable"
    )
    backend_retry_backoff_seconds: float = Field(
        default=0.2, description="Initial backoff between attempts (doubles each time)"
    )

    # Redis circuit breaker
    circuit_breaker_enabled: bool = Field(
        default=True, description="Enable circuit breaker for Redis calls"
    )
    circuit_breaker_failure_threshold: int = Field(
        default=5, description="Failures before opening circuit"
    )
    circuit_breaker_timeout_seconds: int = Field(
        default=30, description="Seconds before attempting half-open"
    )
    circuit_breaker_half_open_max_calls: int = Field(
        default=3, description="Test calls in half-open state"
    )
    circuit_breaker_success_threshold: int = Field(
        default=2, description="Successes to close from half-open"
    )

    # Lease timing
    claim_ttl: int = Field(default=300, description="Lease TTL (5 min)")
    stale_agent_threshold: int = Field(
        default=600, description="Heartbeat age after which an agent is presumed dead"
    )
    orphan_threshold: int = Field(
        default=1800, description="Lease age after which a claim is orphaned (30 min)"
    )
    early_failure_window: int = Field(
        default=120, description="Failures younger than this are retried immediately"
    )
    early_failure_max_retries: int = Field(
        default=3, description="Maximum early-failure resurrections per task"
    )

    # Loops
    recovery_interval: int = Field(
        default=300,
        validation_alias=AliasChoices(
            "LEASEGATE_RECOVERY_INTERVAL", "RECOVERY_INTERVAL", "recovery_interval"
        ),
    )
    recovery_jitter: float = Field(
        default=0.2, description="Fractional jitter applied to the recovery interval"
    )
    heartbeat_interval: int = Field(default=30, description="Heartbeat/renewal cadence")
    heartbeat_ttl: int = Field(
        default=1200, description="Native TTL of liveness records"
    )
    health_check_interval: int = Field(default=60, description="Daemon health cadence")
    recovery_log_size: int = Field(
        default=1000, description="Entries kept in the recovery log"
    )

    # Service recovery
    auto_start: bool = Field(
        default=True, description="Try to start the Redis service when unreachable"
    )
    compose_file: Path = Field(
        default=Path("docker-compose.coordination.yml"),
        description="Compose file that defines the coordination services",
    )
    service_start_attempts: int = Field(default=3, description="Startup attempts")
    service_startup_timeout: int = Field(
        default=60, description="Seconds to wait for Redis after each startup attempt"
    )
    service_probe_interval: float = Field(default=2.0, description="Probe cadence")
    service_retry_delay: float = Field(
        default=5.0, description="Pause between failed startup attempts"
    )

    # Validators
    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        """Validate Redis URL scheme."""
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError(f"redis_url must start with redis://, rediss:// or unix://, got {v}")
        return v

    @field_validator(
        "claim_ttl",
        "stale_agent_threshold",
        "orphan_threshold",
        "early_failure_window",
        "recovery_interval",
        "heartbeat_interval",
        "heartbeat_ttl",
        "health_check_interval",
        "backend_retry_attempts",
        "service_start_attempts",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"must be positive, got {v}")
        return v

    @field_validator("recovery_jitter")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        if not 0 <= v < 1:
            raise ValueError(f"recovery_jitter must be in [0, 1), got {v}")
        return v

    @model_validator(mode="after")
    def validate_threshold_ordering(self) -> "Settings":
        """A task is orphaned only after its agent had several chances to renew."""
        if not self.claim_ttl < self.stale_agent_threshold < self.orphan_threshold:
            raise ValueError(
                "thresholds must satisfy claim_ttl < stale_agent_threshold < orphan_threshold "
                f"(got {self.claim_ttl} / {self.stale_agent_threshold} / {self.orphan_threshold})"
            )
        if self.heartbeat_interval >= self.claim_ttl:
            raise ValueError(
                f"heartbeat_interval ({self.heartbeat_interval}s) must be shorter than "
                f"claim_ttl ({self.claim_ttl}s)"
            )
        return self

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "coordinator.pid"

    @property
    def mode_file(self) -> Path:
        return self.state_dir / "coordinator.mode"

