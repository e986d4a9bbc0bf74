from __future__ import annotations

from typing import IO

import structlog
from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from resilient_executor.circuit_breaker import CircuitBreakerConfig
from resilient_executor.logging import configure_structlog, get_log_level_value
from resilient_executor.retry import RetryPolicy

DEFAULT_ENV_PREFIX = "RESILIENCE_"


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ExecutorSettings(BaseSettings):
    """Recognized configuration surface of a resilient executor."""

    model_config = prefixed_settings_config(DEFAULT_ENV_PREFIX)

    pool_max_size: int = 10
    pool_acquire_timeout: float = 5.0
    breaker_failure_threshold: int = 5
    breaker_recovery_timeout: float = 30.0
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.1
    retry_max_delay: float = 10.0
    retry_jitter: bool = True
    cache_default_ttl: float = 60.0
    cache_max_entries: int | None = None
    operation_timeout: float | None = None
    log_level: str = "INFO"

    @field_validator("pool_max_size", "breaker_failure_threshold", "retry_max_attempts")
    @classmethod
    def _validate_at_least_one(cls, value: int, info: ValidationInfo) -> int:
        if value < 1:
            raise ValueError(f"{info.field_name} must be >= 1")
        return value

    @field_validator(
        "pool_acquire_timeout",
        "breaker_recovery_timeout",
        "retry_base_delay",
        "retry_max_delay",
    )
    @classmethod
    def _validate_non_negative(cls, value: float, info: ValidationInfo) -> float:
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @field_validator("cache_default_ttl")
    @classmethod
    def _validate_cache_ttl(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("cache_default_ttl must be > 0")
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip().upper()
            get_log_level_value(normalized)
            return normalized
        return value

    @model_validator(mode="after")
    def _validate_executor_settings(self) -> ExecutorSettings:
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must be >= retry_base_delay")
        if self.cache_max_entries is not None and self.cache_max_entries < 1:
            raise ValueError("cache_max_entries must be >= 1 when provided")
        if self.operation_timeout is not None and self.operation_timeout <= 0:
            raise ValueError("operation_timeout must be > 0 when provided")
        return self

    def breaker_config(self) -> CircuitBreakerConfig:
        """Build the circuit breaker configuration for every destination."""
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            recovery_timeout=self.breaker_recovery_timeout,
        )

    def retry_policy(self) -> RetryPolicy:
        """Build the default retry policy."""
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )

    def configure_logging(
        self,
        *,
        json_output: bool | None = None,
        stream: IO[str] | None = None,
    ) -> structlog.stdlib.BoundLogger:
        """Configure structlog and stdlib logging at ``log_level``."""
        return configure_structlog(
            log_level=self.log_level, json_output=json_output, stream=stream
        )
