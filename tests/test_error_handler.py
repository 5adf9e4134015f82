"""
Tests for error handling and recovery mechanisms
"""
import pytest
import time
from unittest.mock import Mock

from crossbroker.pipeline.error_handler import (
    ErrorHandler, ErrorContext, ErrorCategory, ErrorSeverity, RetryConfig
)


class TestErrorContext:
    """Test ErrorContext dataclass"""

    def test_create_error_context(self):
        context = ErrorContext(
            category=ErrorCategory.TOPOLOGY_PROVISIONING,
            severity=ErrorSeverity.HIGH,
            message="Test error",
            topology_id="cb-1234"
        )

        assert context.category == ErrorCategory.TOPOLOGY_PROVISIONING
        assert context.severity == ErrorSeverity.HIGH
        assert context.message == "Test error"
        assert context.topology_id == "cb-1234"


class TestRetryConfig:

    def test_default_retry_config(self):
        config = RetryConfig()

        assert config.max_attempts == 3
        assert config.initial_delay == 1.0
        assert config.exponential_base == 2.0
        assert config.jitter is True


class TestErrorHandler:
    """Test ErrorHandler class"""

    def test_initialization(self):
        handler = ErrorHandler()

        assert len(handler.error_history) == 0
        assert len(handler.recovery_strategies) > 0

    def test_handle_error_fatal_severity(self):
        handler = ErrorHandler()

        context = ErrorContext(
            category=ErrorCategory.TOPOLOGY_PROVISIONING,
            severity=ErrorSeverity.FATAL,
            message="Docker daemon unreachable"
        )

        assert handler.handle_error(context) is False
        assert len(handler.error_history) == 1

    def test_cache_errors_degrade_to_cold_state(self):
        handler = ErrorHandler()
        context = ErrorContext(
            category=ErrorCategory.CACHE,
            severity=ErrorSeverity.MEDIUM,
            message="Valkey store unavailable"
        )
        assert handler.handle_error(context) is True

    def test_notification_errors_never_fail_the_run(self):
        handler = ErrorHandler()
        context = ErrorContext(
            category=ErrorCategory.NOTIFICATION,
            severity=ErrorSeverity.HIGH,
            message="Webhook returned 500"
        )
        assert handler.handle_error(context) is True

    def test_provisioning_errors_abort_the_job(self):
        handler = ErrorHandler()
        context = ErrorContext(
            category=ErrorCategory.TOPOLOGY_PROVISIONING,
            severity=ErrorSeverity.HIGH,
            message="Node never became ready"
        )
        assert handler.handle_error(context) is False

    def test_controller_discovery_recovery(self):
        handler = ErrorHandler()
        context = ErrorContext(
            category=ErrorCategory.CONTROLLER_DISCOVERY,
            severity=ErrorSeverity.MEDIUM,
            message="Controller probe failed"
        )
        assert handler._recover_controller_discovery(context) is True

        context.severity = ErrorSeverity.HIGH
        assert handler._recover_controller_discovery(context) is False

    def test_unknown_category_only_low_severity_continues(self):
        handler = ErrorHandler()
        low = ErrorContext(category=ErrorCategory.COMMAND, severity=ErrorSeverity.LOW, message="warn")
        high = ErrorContext(category=ErrorCategory.COMMAND, severity=ErrorSeverity.HIGH, message="fail")

        assert handler.handle_error(low) is True
        assert handler.handle_error(high) is False

    def test_retry_with_backoff_success_first_attempt(self):
        handler = ErrorHandler()
        mock_operation = Mock(return_value=2)

        success, result = handler.retry_with_backoff(
            operation=mock_operation,
            config=RetryConfig(max_attempts=3),
            error_category=ErrorCategory.CONTROLLER_DISCOVERY,
            operation_name="controller probe"
        )

        assert success is True
        assert result == 2
        assert mock_operation.call_count == 1

    def test_retry_with_backoff_success_after_retries(self):
        handler = ErrorHandler()
        mock_operation = Mock(side_effect=[
            Exception("Fail 1"),
            Exception("Fail 2"),
            1
        ])

        success, result = handler.retry_with_backoff(
            operation=mock_operation,
            config=RetryConfig(max_attempts=3, initial_delay=0.1),
            error_category=ErrorCategory.CONTROLLER_DISCOVERY,
            operation_name="controller probe"
        )

        assert success is True
        assert result == 1
        assert mock_operation.call_count == 3

    def test_retry_with_backoff_all_failures(self):
        handler = ErrorHandler()
        mock_operation = Mock(side_effect=Exception("Always fails"))

        success, result = handler.retry_with_backoff(
            operation=mock_operation,
            config=RetryConfig(max_attempts=3, initial_delay=0.1),
            error_category=ErrorCategory.CONTROLLER_DISCOVERY,
            operation_name="controller probe"
        )

        assert success is False
        assert result is None
        assert mock_operation.call_count == 3
        assert len(handler.error_history) == 4  # 3 attempts + 1 final error

    def test_retry_exponential_backoff_timing(self):
        handler = ErrorHandler()
        call_times = []

        def failing_operation():
            call_times.append(time.time())
            raise Exception("Fail")

        config = RetryConfig(max_attempts=3, initial_delay=0.1, exponential_base=2.0, jitter=False)

        start_time = time.time()
        handler.retry_with_backoff(
            operation=failing_operation,
            config=config,
            error_category=ErrorCategory.NETWORK_ERROR,
            operation_name="dial"
        )

        assert len(call_times) == 3
        # 0.1s then 0.2s between attempts
        assert time.time() - start_time >= 0.3

    def test_cleanup_resources(self):
        handler = ErrorHandler()
        topology = Mock(topology_id="cb-1234")
        provisioner = Mock()
        gateway = Mock()

        assert handler.cleanup_resources(topology=topology, provisioner=provisioner, gateway=gateway) is True
        gateway.stop.assert_called_once()
        provisioner.teardown.assert_called_once_with(topology)

    def test_cleanup_resources_continues_after_gateway_error(self):
        handler = ErrorHandler()
        topology = Mock(topology_id="cb-1234")
        provisioner = Mock()
        gateway = Mock()
        gateway.stop.side_effect = OSError("socket already closed")

        assert handler.cleanup_resources(topology=topology, provisioner=provisioner, gateway=gateway) is False
        provisioner.teardown.assert_called_once_with(topology)

    def test_cleanup_resources_records_teardown_failure(self):
        handler = ErrorHandler()
        topology = Mock(topology_id="cb-1234")
        provisioner = Mock()
        provisioner.teardown.side_effect = RuntimeError("network in use")

        assert handler.cleanup_resources(topology=topology, provisioner=provisioner) is False
        assert handler.error_history[-1].category == ErrorCategory.RESOURCE_CLEANUP
        assert handler.error_history[-1].topology_id == "cb-1234"

    def test_cleanup_with_nothing_to_do(self):
        assert ErrorHandler().cleanup_resources() is True

    def test_get_error_summary(self):
        handler = ErrorHandler()
        handler.error_history.extend([
            ErrorContext(category=ErrorCategory.CONFORMANCE, severity=ErrorSeverity.HIGH, message="Error 1"),
            ErrorContext(category=ErrorCategory.CONFORMANCE, severity=ErrorSeverity.MEDIUM, message="Error 2"),
            ErrorContext(category=ErrorCategory.CACHE, severity=ErrorSeverity.LOW, message="Error 3"),
        ])

        summary = handler.get_error_summary()

        assert summary['total_errors'] == 3
        assert summary['by_category']['conformance'] == 2
        assert summary['by_category']['cache'] == 1
        assert summary['by_severity']['high'] == 1
        assert summary['by_severity']['low'] == 1
        assert len(summary['recent_errors']) == 3

    def test_error_summary_by_job(self):
        handler = ErrorHandler()
        handler.error_history.extend([
            ErrorContext(category=ErrorCategory.COMMAND, severity=ErrorSeverity.HIGH, message="a", job_name="lint"),
            ErrorContext(category=ErrorCategory.COMMAND, severity=ErrorSeverity.HIGH, message="b", job_name="lint"),
            ErrorContext(category=ErrorCategory.CACHE, severity=ErrorSeverity.LOW, message="c"),
        ])
        summary = handler.get_error_summary()
        assert summary['by_job'] == {"lint": 2}
        assert summary['recent_errors'][0]['job'] == "lint"

    def test_clear_history(self):
        handler = ErrorHandler()
        handler.error_history.append(
            ErrorContext(category=ErrorCategory.FUZZING, severity=ErrorSeverity.HIGH, message="Error")
        )
        handler.clear_history()
        assert len(handler.error_history) == 0

    def test_failing_recovery_strategy(self):
        handler = ErrorHandler()
        handler.recovery_strategies[ErrorCategory.GATEWAY] = Mock(side_effect=RuntimeError("boom"))
        context = ErrorContext(category=ErrorCategory.GATEWAY, severity=ErrorSeverity.MEDIUM, message="x")
        assert handler.handle_error(context) is False


class TestErrorHandlerIntegration:

    def test_full_retry_workflow(self):
        handler = ErrorHandler()
        attempt_count = 0

        def flaky_probe():
            nonlocal attempt_count
            attempt_count += 1
            if attempt_count < 3:
                raise Exception(f"Attempt {attempt_count} failed")
            return 0

        success, result = handler.retry_with_backoff(
            operation=flaky_probe,
            config=RetryConfig(max_attempts=5, initial_delay=0.1),
            error_category=ErrorCategory.CONTROLLER_DISCOVERY,
            operation_name="flaky probe"
        )

        assert success is True
        assert result == 0
        assert attempt_count == 3
        assert handler.get_error_summary()['total_errors'] == 2
