"""
Tests for the event processor contract.
"""

from unittest.mock import patch

from stream_lease.models import Event, PartitionContext
from stream_lease.processor import EventProcessor, LoggingProcessor


def context():
    return PartitionContext(partition_id="0", fencing_token=1, operation_id="op-1", consumer_id="consumer-a")


class TestEventProcessor:
    def test_plain_coroutine_functions_satisfy_protocol(self):
        async def handler(context, events):
            return None

        assert isinstance(handler, EventProcessor)
        assert isinstance(LoggingProcessor(), EventProcessor)

    async def test_logging_processor_truncates_body(self):
        processor = LoggingProcessor(preview_bytes=4)
        events = [Event(body=b"abcdefgh", position=0), Event(body=b"\xff\xfe", position=1)]

        with patch("stream_lease.processor.logger") as mock_logger:
            await processor(context(), events)

        assert mock_logger.info.call_count == 2
        first = mock_logger.info.call_args_list[0].kwargs
        assert first["body"] == "abcd"
        assert first["position"] == 0
        assert first["operation_id"] == "op-1"
