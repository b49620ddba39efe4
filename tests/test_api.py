"""
Tests for the read-only status API.
"""

import pytest
from unittest.mock import AsyncMock, Mock, patch
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from stream_lease import __version__
from stream_lease.api import collect_process_metadata, create_app
from stream_lease.models import Checkpoint, PartitionLease
from stream_lease.storage import StorageConnectionError
from tests.conftest import make_config

NOW = datetime.now(timezone.utc)


class TestStatusEndpoints:
    """Test suite for the status API endpoints."""

    @pytest.fixture
    def mock_dispatcher(self):
        dispatcher = Mock()
        dispatcher.is_running = True
        dispatcher.owned_partitions.return_value = [
            {
                "partition_id": "1",
                "fencing_token": 4,
                "operation_id": "op-1",
                "claimed_at": NOW,
                "stopping": False,
            }
        ]
        dispatcher.stats.return_value = {
            "consumer_id": "consumer-a",
            "is_running": True,
            "owned_partitions": ["1"],
            "cycles": 12,
            "partitions_claimed": 3,
            "partitions_released": 2,
            "leases_lost": 0,
            "workers_completed": 2,
            "workers_failed": 0,
            "live_consumers": 2,
            "consecutive_store_failures": 0,
            "telemetry_dropped": 0,
        }
        return dispatcher

    @pytest.fixture
    def lease_store(self):
        return AsyncMock()

    @pytest.fixture
    def checkpoint_store(self):
        return AsyncMock()

    @pytest.fixture
    def client(self, mock_dispatcher, lease_store, checkpoint_store):
        """Create test client."""
        return TestClient(create_app(mock_dispatcher, lease_store, checkpoint_store, make_config()))

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["consumer_id"] == "consumer-a"
        assert data["owned_partitions"] == 1
        assert data["version"] == __version__

    def test_health_before_dispatcher_runs(self, client, mock_dispatcher):
        mock_dispatcher.is_running = False

        assert client.get("/health").json()["status"] == "starting"

    def test_owned_partitions(self, client):
        data = client.get("/partitions").json()

        assert data[0]["partition_id"] == "1"
        assert data[0]["fencing_token"] == 4
        assert data[0]["stopping"] is False

    def test_leases(self, client, lease_store):
        lease_store.list_leases.return_value = [
            PartitionLease("0", "consumer-a", 3, NOW + timedelta(seconds=30)),
            PartitionLease("1", None, 2, None),
        ]

        data = client.get("/leases").json()

        assert [lease["is_live"] for lease in data] == [True, False]
        assert 0 < data[0]["remaining_seconds"] <= 30
        assert data[1]["remaining_seconds"] == 0.0
        assert data[1]["owner_id"] is None

    def test_leases_store_unavailable(self, client, lease_store):
        lease_store.list_leases.side_effect = StorageConnectionError("down")

        assert client.get("/leases").status_code == 503

    def test_checkpoints(self, client, checkpoint_store):
        checkpoint_store.list_checkpoints.return_value = [Checkpoint("0", 41, 3, NOW)]

        data = client.get("/checkpoints").json()

        assert data == [{
            "partition_id": "0",
            "position": 41,
            "fencing_token": 3,
            "updated_at": data[0]["updated_at"],
        }]

    def test_checkpoint_by_partition(self, client, checkpoint_store):
        checkpoint_store.get_checkpoint.return_value = Checkpoint("2", 7, 1, NOW)

        response = client.get("/checkpoints/2")

        assert response.status_code == 200
        assert response.json()["position"] == 7
        checkpoint_store.get_checkpoint.assert_awaited_once_with("2")

    def test_checkpoint_missing(self, client, checkpoint_store):
        checkpoint_store.get_checkpoint.return_value = None

        assert client.get("/checkpoints/9").status_code == 404

    def test_checkpoint_store_unavailable(self, client, checkpoint_store):
        checkpoint_store.get_checkpoint.side_effect = StorageConnectionError("down")

        assert client.get("/checkpoints/0").status_code == 503

    def test_stats(self, client):
        data = client.get("/stats").json()

        assert data["cycles"] == 12
        assert data["owned_partitions"] == ["1"]


class TestProcessMetadata:
    def test_collects_resource_usage(self):
        metadata = collect_process_metadata()

        assert metadata["pid"] > 0
        assert "memory_rss_mb" in metadata

    def test_psutil_failure_returns_empty(self):
        import psutil

        with patch("stream_lease.api.psutil.Process", side_effect=psutil.NoSuchProcess(1)):
            assert collect_process_metadata() == {}
