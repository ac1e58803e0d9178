"""
Tests for the exponential backoff policy.
"""
from datetime import timedelta
from unittest.mock import Mock

import pytest

from fulfillment.retry.backoff import RetryConfig, next_delay


class TestNextDelay:
    """Delay schedule with the default configuration."""

    def test_first_five_attempts_double(self):
        config = RetryConfig()
        delays = [next_delay(attempt, config) for attempt in range(1, 6)]
        assert delays == [timedelta(seconds=s) for s in (1, 2, 4, 8, 16)]

    def test_delay_is_capped_at_max(self):
        config = RetryConfig()
        assert next_delay(10, config) == timedelta(seconds=300)
        assert next_delay(50, config) == timedelta(seconds=300)

    def test_huge_attempt_does_not_overflow(self):
        assert next_delay(5000, RetryConfig()) == timedelta(seconds=300)

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            next_delay(0, RetryConfig())

    def test_jitter_stays_within_bounds(self):
        config = RetryConfig(jitter=0.2)
        rng = Mock()
        rng.uniform.return_value = 1.2
        assert next_delay(2, config, rng=rng) == timedelta(milliseconds=2400)
        rng.uniform.assert_called_once_with(0.8, 1.2)

    def test_jitter_never_exceeds_max_delay(self):
        config = RetryConfig(jitter=0.2)
        rng = Mock()
        rng.uniform.return_value = 1.2
        assert next_delay(20, config, rng=rng) == timedelta(seconds=300)


class TestRetryConfig:
    """Validation of retry configuration."""

    @pytest.mark.parametrize("kwargs", [
        {"base_delay_ms": 0},
        {"multiplier": 0.5},
        {"base_delay_ms": 5000, "max_delay_ms": 1000},
        {"max_retries": 0},
        {"jitter": 0.5},
        {"jitter": -0.1},
    ])
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)

    def test_from_app_config(self):
        config = RetryConfig.from_app_config({
            "RETRY_BASE_DELAY_MS": 500,
            "RETRY_MULTIPLIER": 3.0,
            "RETRY_MAX_RETRIES": 7,
            "RETRY_FAST_FAIL_PERMANENT": False,
        })
        assert config.base_delay_ms == 500
        assert config.multiplier == 3.0
        assert config.max_retries == 7
        assert config.fast_fail_permanent is False
        assert config.max_delay_ms == 300000

    def test_config_is_frozen(self):
        config = RetryConfig()
        with pytest.raises(Exception):
            config.max_retries = 10
