"""
Exponential backoff policy for retry operations.

The delay before attempt N+1 is base_delay * multiplier ** (N - 1), capped at
max_delay. With the defaults this gives 1s, 2s, 4s, 8s, 16s for attempts 1-5.
"""
import random
from dataclasses import dataclass
from datetime import timedelta

MAX_JITTER = 0.2


@dataclass(frozen=True)
class RetryConfig:
    base_delay_ms: int = 1000
    multiplier: float = 2.0
    max_delay_ms: int = 300000
    max_retries: int = 5
    jitter: float = 0.0
    fast_fail_permanent: bool = True
    claim_timeout_seconds: int = 300

    def __post_init__(self):
        if self.base_delay_ms <= 0:
            raise ValueError("base_delay_ms must be positive")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if not 0 <= self.jitter <= MAX_JITTER:
            raise ValueError(f"jitter must be between 0 and {MAX_JITTER}")
        if self.claim_timeout_seconds <= 0:
            raise ValueError("claim_timeout_seconds must be positive")

    @classmethod
    def from_app_config(cls, config):
        """Build from a Flask config mapping, falling back to the defaults."""
        defaults = cls()
        return cls(
            base_delay_ms=config.get("RETRY_BASE_DELAY_MS", defaults.base_delay_ms),
            multiplier=config.get("RETRY_MULTIPLIER", defaults.multiplier),
            max_delay_ms=config.get("RETRY_MAX_DELAY_MS", defaults.max_delay_ms),
            max_retries=config.get("RETRY_MAX_RETRIES", defaults.max_retries),
            jitter=config.get("RETRY_JITTER", defaults.jitter),
            fast_fail_permanent=config.get("RETRY_FAST_FAIL_PERMANENT", defaults.fast_fail_permanent),
            claim_timeout_seconds=config.get("RETRY_CLAIM_TIMEOUT_SECONDS", defaults.claim_timeout_seconds),
        )


def next_delay(attempt: int, config: RetryConfig, rng=random) -> timedelta:
    """
    Delay to wait after the given (1-based) attempt before trying again.

    Args:
        attempt: Number of attempts made so far (>= 1)
        config: RetryConfig
        rng: Source of randomness for jitter (anything with .uniform)

    Returns:
        timedelta, never larger than config.max_delay_ms
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")

    try:
        delay_ms = min(config.base_delay_ms * config.multiplier ** (attempt - 1), config.max_delay_ms)
    except OverflowError:
        delay_ms = config.max_delay_ms

    if config.jitter > 0:
        delay_ms = delay_ms * rng.uniform(1 - config.jitter, 1 + config.jitter)
        delay_ms = min(delay_ms, config.max_delay_ms)

    return timedelta(milliseconds=delay_ms)
