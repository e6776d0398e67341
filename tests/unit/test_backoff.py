"""Tests for retry delay computation and status classification."""

import pytest

from courier_engine.deliveries.backoff import (
    MAX_JITTER_MS,
    compute_delay,
    is_retryable_status,
    is_success,
)
from courier_engine.endpoints.schemas import RetryPolicy


class TestComputeDelay:
    def test_exponential_sequence_clamped(self):
        policy = RetryPolicy(backoff_strategy="exponential", initial_delay=1000, max_delay=60000, jitter=False)
        delays = [compute_delay(n, policy) for n in range(1, 9)]
        assert delays == [1000, 2000, 4000, 8000, 16000, 32000, 60000, 60000]

    def test_linear(self):
        policy = RetryPolicy(backoff_strategy="linear", initial_delay=500, max_delay=1800, jitter=False)
        assert [compute_delay(n, policy) for n in range(1, 5)] == [500, 1000, 1500, 1800]

    def test_jitter_added_after_clamp(self):
        policy = RetryPolicy(initial_delay=1000, max_delay=1000, jitter=True)
        assert compute_delay(5, policy, jitter_source=lambda: 0.5) == 1500

    def test_jitter_bounds(self):
        policy = RetryPolicy(initial_delay=1000, jitter=True)
        assert compute_delay(1, policy, jitter_source=lambda: 0.0) == 1000
        assert compute_delay(1, policy, jitter_source=lambda: 0.9999) < 1000 + MAX_JITTER_MS

    def test_attempt_floor(self):
        policy = RetryPolicy(jitter=False)
        assert compute_delay(0, policy) == compute_delay(1, policy)


class TestStatusClassification:
    @pytest.mark.parametrize("code", [200, 201, 204, 299])
    def test_success(self, code):
        assert is_success(code) is True

    @pytest.mark.parametrize("code", [199, 300, 404, 500])
    def test_not_success(self, code):
        assert is_success(code) is False

    def test_default_retry_set(self):
        policy = RetryPolicy()
        assert all(is_retryable_status(c, policy) for c in (408, 429, 500, 502, 503, 504))
        assert not any(is_retryable_status(c, policy) for c in (400, 401, 404, 410, 501))

    def test_custom_retry_set(self):
        policy = RetryPolicy(retry_on_status=[409])
        assert is_retryable_status(409, policy) is True
        assert is_retryable_status(503, policy) is False

    def test_rejects_inverted_delays(self):
        with pytest.raises(ValueError):
            RetryPolicy(initial_delay=10, max_delay=5)
