"""Validated runtime settings for the sync orchestrator."""

from pydantic import BaseModel, field_validator

from .models import ResolutionStrategy


class SyncSettings(BaseModel):
    """Tunables for debouncing, retries and tombstone retention."""

    debounce_ms: int = 1000
    network_timeout_seconds: float = 10.0
    max_attempts: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    tombstone_retention_days: int = 30
    resolution_strategy: ResolutionStrategy = ResolutionStrategy.FIELD_LEVEL

    @field_validator("debounce_ms")
    @classmethod
    def validate_debounce(cls, v):
        if v < 0 or v > 1500:
            raise ValueError("Debounce must be between 0 and 1500 milliseconds")
        return v

    @field_validator("network_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("Network timeout must be positive")
        return v

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v):
        if v < 1:
            raise ValueError("At least one attempt is required")
        return v

    @field_validator("retry_base_delay", "retry_max_delay")
    @classmethod
    def validate_delays(cls, v):
        if v < 0:
            raise ValueError("Retry delays cannot be negative")
        return v
