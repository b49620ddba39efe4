"""
Tests for STREAM-LEASE logging configuration and structured logging helpers.
"""

import pytest
from unittest.mock import Mock

from stream_lease.logging_config import (
    ErrorContext,
    configure_logging,
    log_backoff_retry,
    log_batch_processed,
    log_checkpoint_written,
    log_lease_transition,
    log_operation_error,
    log_rebalance,
    log_worker_transition,
)
from stream_lease.storage import StorageConnectionError
from tests.conftest import make_config


class TestConfigureLogging:
    """Test cases for logging configuration."""

    @pytest.mark.parametrize("log_format,log_level", [("json", "INFO"), ("console", "DEBUG")])
    def test_configure_logging(self, log_format, log_level):
        logger = configure_logging(make_config(log_format=log_format, log_level=log_level))

        assert hasattr(logger, 'info')
        assert hasattr(logger, 'error')
        assert hasattr(logger, 'warning')


class TestErrorContext:
    """Test cases for ErrorContext context manager."""

    def test_error_context_success_case(self):
        mock_logger = Mock()
        mock_bound_logger = Mock()
        mock_logger.bind.return_value = mock_bound_logger

        with ErrorContext(mock_logger, "renew_lease", partition_id="0") as bound:
            assert bound is mock_bound_logger

        mock_logger.bind.assert_called_once_with(operation="renew_lease", partition_id="0")
        assert mock_bound_logger.debug.call_count == 2
        mock_logger.error.assert_not_called()

    def test_error_context_failure_case(self):
        mock_logger = Mock()
        mock_logger.bind.return_value = Mock()

        with pytest.raises(RuntimeError):
            with ErrorContext(mock_logger, "put_checkpoint", partition_id="1"):
                raise RuntimeError("boom")

        mock_logger.error.assert_called_once()
        kwargs = mock_logger.error.call_args.kwargs
        assert kwargs["operation"] == "put_checkpoint"
        assert kwargs["error_type"] == "RuntimeError"
        assert kwargs["partition_id"] == "1"


class TestLogHelpers:
    """Structured record helpers."""

    def test_log_operation_error_includes_cause(self):
        mock_logger = Mock()
        cause = OSError("socket closed")
        try:
            raise StorageConnectionError("store unreachable", cause) from cause
        except StorageConnectionError as e:
            error = e

        log_operation_error(mock_logger, "list_leases", error, 12.5, retry_count=2)

        kwargs = mock_logger.error.call_args.kwargs
        assert kwargs["original_error_type"] == "OSError"
        assert kwargs["retry_count"] == 2
        assert "stack_trace" in kwargs

    def test_log_backoff_retry(self):
        mock_logger = Mock()

        log_backoff_retry(mock_logger, "acquire_lease", 1, 123.456, ValueError("x"))

        kwargs = mock_logger.warning.call_args.kwargs
        assert kwargs["delay_ms"] == 123.5
        assert kwargs["error_type"] == "ValueError"

    def test_lost_lease_logged_as_warning(self):
        mock_logger = Mock()

        log_lease_transition(mock_logger, "0", "lost", "consumer-a", 3)
        log_lease_transition(mock_logger, "0", "claimed", "consumer-a", 4)

        mock_logger.warning.assert_called_once()
        mock_logger.info.assert_called_once()
        assert mock_logger.info.call_args.kwargs["fencing_token"] == 4

    def test_log_worker_transition(self):
        mock_logger = Mock()

        log_worker_transition(mock_logger, "2", "opening", "running")

        kwargs = mock_logger.debug.call_args.kwargs
        assert kwargs["from_state"] == "opening"
        assert kwargs["to_state"] == "running"

    def test_log_batch_processed(self):
        mock_logger = Mock()

        log_batch_processed(mock_logger, "0", 100, 0, 99, 4.2, fencing_token=1)

        kwargs = mock_logger.info.call_args.kwargs
        assert kwargs["event_count"] == 100
        assert kwargs["last_position"] == 99

    def test_log_checkpoint_written(self):
        mock_logger = Mock()

        log_checkpoint_written(mock_logger, "0", 99, 1, attempts=2)

        assert mock_logger.info.call_args.kwargs["attempts"] == 2

    def test_quiet_rebalance_logged_at_debug(self):
        mock_logger = Mock()

        log_rebalance(mock_logger, "consumer-a", 4, 2, 2, 2, 0, 0)
        log_rebalance(mock_logger, "consumer-a", 4, 2, 2, 1, 1, 0)

        mock_logger.debug.assert_called_once()
        mock_logger.info.assert_called_once()
