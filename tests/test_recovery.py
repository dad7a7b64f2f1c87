"""
Unit tests for the error recovery manager.

Tests the decision order, degraded mode and provider health transitions.
"""

import pytest

from ai_request_guard.core.backoff import BackoffCalculator
from ai_request_guard.core.errors import ErrorType, LLMError, classify_exception
from ai_request_guard.core.failover import ProviderEntry
from ai_request_guard.core.recovery import ErrorRecoveryManager, RecoveryAction, RecoveryPolicy

from conftest import FakeProvider


def network_error():
    return LLMError(ErrorType.NETWORK_ERROR, "connection reset")


class TestErrorTaxonomy:
    """Test retryability defaults and exception classification."""

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_client_api_errors_not_retryable(self, status):
        assert not LLMError(ErrorType.API_ERROR, http_status=status).is_retryable

    @pytest.mark.parametrize("status", [None, 500, 503])
    def test_server_api_errors_retryable(self, status):
        assert LLMError(ErrorType.API_ERROR, http_status=status).is_retryable

    def test_transient_types_retryable(self):
        for error_type in (ErrorType.NETWORK_ERROR, ErrorType.TIMEOUT, ErrorType.RATE_LIMITED,
                           ErrorType.INVALID_RESPONSE, ErrorType.PARSE_ERROR,
                           ErrorType.PROVIDER_UNAVAILABLE):
            assert LLMError(error_type).is_retryable

    def test_classify_builtin_exceptions(self):
        assert classify_exception(TimeoutError("slow")).error_type == ErrorType.TIMEOUT
        assert classify_exception(ConnectionError("down")).error_type == ErrorType.NETWORK_ERROR
        assert classify_exception(ValueError("bad json")).error_type == ErrorType.PARSE_ERROR
        unknown = classify_exception(RuntimeError("boom"), provider="p")
        assert unknown.error_type == ErrorType.UNKNOWN
        assert unknown.is_retryable
        assert "RuntimeError" in unknown.message

    def test_classify_passes_llm_errors_through(self):
        error = network_error()
        assert classify_exception(error) is error


class TestHandleError:
    """Test retry/fallback/fail decisions."""

    def test_non_retryable_fails_immediately(self):
        manager = ErrorRecoveryManager()
        error = LLMError(ErrorType.API_ERROR, "unauthorized", http_status=401)
        assert manager.handle_error(error, 0) == RecoveryAction.FAIL

    def test_retryable_retries_later_until_exhausted(self):
        manager = ErrorRecoveryManager(RecoveryPolicy(max_retries=3))
        actions = [manager.handle_error(network_error(), attempt) for attempt in range(4)]
        assert actions == [RecoveryAction.RETRY_LATER] * 3 + [RecoveryAction.USE_FALLBACK]

    def test_exhausted_without_offline_fallback_fails(self):
        manager = ErrorRecoveryManager(RecoveryPolicy(max_retries=1, fallback_to_offline=False))
        assert manager.handle_error(network_error(), 1) == RecoveryAction.FAIL

    @pytest.mark.parametrize("error_type", [ErrorType.INVALID_RESPONSE, ErrorType.PARSE_ERROR])
    def test_garbled_payload_retried_immediately(self, error_type):
        manager = ErrorRecoveryManager()
        assert manager.handle_error(LLMError(error_type), 0) == RecoveryAction.RETRY_IMMEDIATELY

    def test_attempt_number_stamped_on_error(self):
        manager = ErrorRecoveryManager()
        error = network_error()
        manager.handle_error(error, 2)
        assert error.attempt_number == 2
        assert manager.recent_errors()[-1].attempt_number == 2

    def test_retry_delay_follows_backoff(self):
        manager = ErrorRecoveryManager(backoff=BackoffCalculator(base_delay_ms=500))
        assert manager.get_retry_delay_ms(2) == 2000


class TestDegradedMode:
    """Test entry into and exit from degraded mode."""

    def test_consecutive_errors_enter_degraded_mode(self, clock):
        manager = ErrorRecoveryManager(RecoveryPolicy(consecutive_error_limit=5), clock=clock)
        actions = [manager.handle_error(network_error(), 0) for _ in range(5)]

        assert actions[:4] == [RecoveryAction.RETRY_LATER] * 4
        assert actions[4] == RecoveryAction.USE_FALLBACK
        assert manager.is_degraded()

    def test_exhausted_retries_still_enter_degraded_mode(self, clock):
        manager = ErrorRecoveryManager(
            RecoveryPolicy(max_retries=0, consecutive_error_limit=5), clock=clock
        )
        actions = [manager.handle_error(network_error(), 0) for _ in range(5)]

        assert actions == [RecoveryAction.USE_FALLBACK] * 5
        assert manager.is_degraded()
        assert manager.get_error_statistics()["degraded_entries"] == 1

    def test_non_retryable_error_rate_enters_degraded_mode(self, clock):
        manager = ErrorRecoveryManager(clock=clock)
        unauthorized = LLMError(ErrorType.API_ERROR, "unauthorized", http_status=401)
        actions = [manager.handle_error(unauthorized, 0) for _ in range(10)]

        assert actions == [RecoveryAction.FAIL] * 10
        assert manager.get_error_rate() == 1.0
        assert manager.is_degraded()

    def test_success_resets_consecutive_errors(self):
        manager = ErrorRecoveryManager(RecoveryPolicy(consecutive_error_limit=2))
        manager.handle_error(network_error(), 0)
        manager.record_success()
        assert manager.handle_error(network_error(), 0) == RecoveryAction.RETRY_LATER
        assert not manager.is_degraded()

    def test_error_rate_needs_minimum_samples(self, clock):
        policy = RecoveryPolicy(consecutive_error_limit=100, min_samples=10, error_rate_threshold=0.5)
        manager = ErrorRecoveryManager(policy, clock=clock)
        for _ in range(4):
            manager.record_success()
        actions = [manager.handle_error(network_error(), 0) for _ in range(6)]

        assert actions[:5] == [RecoveryAction.RETRY_LATER] * 5
        assert actions[5] == RecoveryAction.USE_FALLBACK
        assert manager.get_error_rate() == pytest.approx(0.6)

    def test_degraded_mode_ends_after_cooldown(self, clock):
        manager = ErrorRecoveryManager(RecoveryPolicy(degraded_cooldown_seconds=300), clock=clock)
        manager.set_degraded_mode(True)

        clock.advance(299)
        assert manager.is_degraded()
        clock.advance(1)
        assert not manager.is_degraded()
        assert manager.get_error_statistics()["degraded_entries"] == 1

    def test_statistics_and_reset(self):
        manager = ErrorRecoveryManager()
        manager.handle_error(network_error(), 0)
        manager.handle_error(LLMError(ErrorType.API_ERROR, http_status=400), 0)
        stats = manager.get_error_statistics()
        assert stats["total_errors"] == 2
        assert stats["retryable_errors"] == 1

        manager.reset_error_tracking()
        assert manager.get_error_rate() == 0.0
        assert manager.recent_errors() == []


class TestProviderHealth:
    """Test provider health transitions owned by the manager."""

    def test_unhealthy_after_threshold(self, clock):
        manager = ErrorRecoveryManager(RecoveryPolicy(provider_failure_threshold=3), clock=clock)
        entry = ProviderEntry(provider=FakeProvider(), priority=0)
        for _ in range(2):
            manager.record_provider_failure(entry, network_error())
        assert entry.is_healthy

        manager.record_provider_failure(entry, network_error())
        assert not entry.is_healthy
        assert not manager.is_provider_usable(entry)

    def test_reprobed_on_probation_after_cooldown(self, clock):
        policy = RecoveryPolicy(provider_failure_threshold=3, provider_cooldown_seconds=60)
        manager = ErrorRecoveryManager(policy, clock=clock)
        entry = ProviderEntry(provider=FakeProvider(), priority=0)
        for _ in range(3):
            manager.record_provider_failure(entry, network_error())

        clock.advance(60)
        assert manager.is_provider_usable(entry)
        assert entry.failure_count == 2

        manager.record_provider_failure(entry, network_error())
        assert not entry.is_healthy

    def test_success_restores_health(self, clock):
        manager = ErrorRecoveryManager(RecoveryPolicy(provider_failure_threshold=1), clock=clock)
        entry = ProviderEntry(provider=FakeProvider(), priority=0)
        manager.record_provider_failure(entry, network_error())
        manager.record_provider_success(entry)
        assert entry.is_healthy
        assert entry.failure_count == 0
        assert entry.last_error is None
