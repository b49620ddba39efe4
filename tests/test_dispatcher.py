"""
Tests for the partition dispatcher: claiming, balancing, supervision and shutdown.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from stream_lease.dispatcher import (
    DispatcherFatalError,
    PartitionDispatcher,
    ShutdownTimeoutError,
    fair_share,
    static_assignment,
)
from stream_lease.lease_manager import LeaseManager
from stream_lease.models import DispatcherStatsResponse, StopReason, WorkerHandle
from stream_lease.storage import LeaseExpiredError, StorageConnectionError
from stream_lease.telemetry import PARTITION_CLAIMED, PARTITION_RELEASED, TelemetrySink
from tests.conftest import make_config, wait_until


class NoopProcessor:
    def __init__(self, fail_on=(), block_on=()):
        self.fail_on = set(fail_on)
        self.block_on = set(block_on)
        self.seen = []

    async def __call__(self, context, events):
        if context.partition_id in self.fail_on:
            raise RuntimeError(f"cannot process partition {context.partition_id}")
        if context.partition_id in self.block_on:
            await asyncio.sleep(60)
        self.seen.extend((context.partition_id, e.position) for e in events)


def build_dispatcher(lease_store, checkpoint_store, event_source, clock,
                     processor=None, telemetry=None, **overrides):
    config = make_config(**overrides)
    lease_manager = LeaseManager(lease_store, config, telemetry=telemetry)
    return PartitionDispatcher(
        lease_manager,
        checkpoint_store,
        event_source,
        processor or NoopProcessor(),
        config,
        telemetry=telemetry,
        clock=clock,
    )


@pytest.fixture
async def dispatcher(lease_store, checkpoint_store, event_source, clock):
    dispatcher = build_dispatcher(lease_store, checkpoint_store, event_source, clock)
    yield dispatcher
    await dispatcher._shutdown_workers()


def owned(dispatcher):
    return [p["partition_id"] for p in dispatcher.owned_partitions()]


async def renewed(dispatcher):
    """Wait until every lease the dispatcher holds was renewed at the current time."""
    renewals = dispatcher.lease_manager._renewals
    before = {pid: renewal.renewals for pid, renewal in renewals.items()}
    await wait_until(lambda: all(
        renewals[pid].renewals > count for pid, count in before.items() if pid in renewals
    ))


class TestBalancingRules:
    @pytest.mark.parametrize("partitions,owners,expected", [
        (4, 1, 4), (4, 2, 2), (5, 2, 3), (4, 3, 2), (2, 4, 1), (0, 3, 0), (4, 0, 4),
    ])
    def test_fair_share(self, partitions, owners, expected):
        assert fair_share(partitions, owners) == expected

    def test_static_assignment(self):
        ids = ["0", "1", "2", "3", "4"]

        assert static_assignment(ids, 0, 2) == ["0", "2", "4"]
        assert static_assignment(ids, 1, 2) == ["1", "3"]


class TestClaiming:
    async def test_single_consumer_claims_everything(self, dispatcher, lease_store):
        await dispatcher.tick()

        assert owned(dispatcher) == ["0", "1", "2", "3"]
        leases = await lease_store.list_leases()
        assert {lease.owner_id for lease in leases} == {"consumer-a"}
        assert dispatcher.partitions_claimed == 4

    async def test_foreign_owner_limits_claim_to_fair_share(self, dispatcher, lease_store):
        await lease_store.acquire_lease("0", "consumer-b", 10)

        await dispatcher.tick()
        await dispatcher.tick()

        assert owned(dispatcher) == ["1", "2"]

    async def test_configured_partition_ids_override_discovery(
        self, lease_store, checkpoint_store, event_source, clock
    ):
        dispatcher = build_dispatcher(
            lease_store, checkpoint_store, event_source, clock, partition_ids="2,3"
        )

        await dispatcher.tick()
        await dispatcher._shutdown_workers()

        assert [lease.partition_id for lease in await lease_store.list_leases()] == ["2", "3"]

    async def test_static_mode_claims_assigned_partitions_only(
        self, lease_store, checkpoint_store, event_source, clock
    ):
        dispatcher = build_dispatcher(
            lease_store, checkpoint_store, event_source, clock,
            balancing_mode="static", process_index=1, process_count=2,
        )

        await dispatcher.tick()
        result = owned(dispatcher)
        await dispatcher._shutdown_workers()

        assert result == ["1", "3"]

    async def test_claim_spawns_worker_that_consumes(self, lease_store, checkpoint_store, event_source, clock):
        processor = NoopProcessor()
        dispatcher = build_dispatcher(lease_store, checkpoint_store, event_source, clock, processor=processor)
        await event_source.append_many("2", [b"a", b"b"])

        await dispatcher.tick()
        await wait_until(lambda: ("2", 1) in processor.seen)
        await dispatcher._shutdown_workers()

        assert (await checkpoint_store.get_checkpoint("2")).position == 1


class TestRebalancing:
    async def test_excess_partitions_released_after_full_lease_interval(
        self, dispatcher, lease_store, event_source, clock
    ):
        await dispatcher.tick()
        event_source.add_partition("4")
        await lease_store.acquire_lease("4", "consumer-b", 10)

        await dispatcher.tick()
        assert not any(p["stopping"] for p in dispatcher.owned_partitions())

        clock.advance(10)
        await lease_store.acquire_lease("4", "consumer-b", 10)
        await dispatcher.tick()

        stopping = [p["partition_id"] for p in dispatcher.owned_partitions() if p["stopping"]]
        assert len(stopping) == 1
        assert dispatcher._handles[stopping[0]].stop_reason == StopReason.REBALANCE

        await wait_until(lambda: dispatcher._handles[stopping[0]].task.done())
        await dispatcher.tick()

        assert stopping[0] not in owned(dispatcher)
        assert dispatcher.partitions_released == 1
        assert (await lease_store.get_lease(stopping[0])).owner_id is None

    def test_newest_claims_released_first(self, dispatcher, clock):
        now = clock.now
        for pid, age in (("0", 40), ("1", 15), ("2", 12), ("3", 5)):
            dispatcher._handles[pid] = WorkerHandle(
                partition_id=pid, fencing_token=1, operation_id=pid,
                claimed_at=now - timedelta(seconds=age),
            )

        try:
            assert dispatcher._excess(["0", "1", "2", "3"], 2, now) == ["2", "1"]
            assert dispatcher._excess(["0", "1", "2", "3"], 0, now) == []
        finally:
            dispatcher._handles.clear()


class TestFleetMembership:
    async def test_idle_member_limits_claims_to_fair_share(self, dispatcher, lease_store):
        await lease_store.heartbeat_member("consumer-b", 10)

        await dispatcher.tick()

        assert owned(dispatcher) == ["0", "1"]
        assert dispatcher.live_consumers == 2

    async def test_lapsed_member_is_not_counted(self, dispatcher, lease_store, clock):
        await lease_store.heartbeat_member("consumer-b", 10)
        clock.advance(11)

        await dispatcher.tick()

        assert owned(dispatcher) == ["0", "1", "2", "3"]
        assert dispatcher.live_consumers == 1

    async def test_joining_consumer_receives_fair_share(
        self, lease_store, checkpoint_store, event_source, clock
    ):
        first = build_dispatcher(
            lease_store, checkpoint_store, event_source, clock, renew_interval_seconds=0.05
        )
        second = build_dispatcher(
            lease_store, checkpoint_store, event_source, clock,
            consumer_id="consumer-b", renew_interval_seconds=0.05,
        )
        try:
            await first.tick()
            await second.tick()
            assert owned(first) == ["0", "1", "2", "3"]
            assert owned(second) == []
            assert second.live_consumers == 2

            # Both stay alive while the first holds its claims for a full lease interval
            for _ in range(2):
                clock.advance(5)
                await renewed(first)
                await second.tick()

            await first.tick()
            stopping = [p["partition_id"] for p in first.owned_partitions() if p["stopping"]]
            assert len(stopping) == 2
            assert first.live_consumers == 2

            await wait_until(lambda: all(first._handles[pid].task.done() for pid in stopping))
            await first.tick()
            await second.tick()

            assert owned(second) == sorted(stopping)
            assert len(owned(first)) == 2
            assert set(owned(first)).isdisjoint(owned(second))
        finally:
            await first._shutdown_workers()
            await second._shutdown_workers()

    async def test_heartbeat_failure_counts_as_store_failure(self, dispatcher, lease_store):
        lease_store.heartbeat_member = AsyncMock(side_effect=StorageConnectionError("store down"))

        await dispatcher.tick()

        assert dispatcher.consecutive_store_failures == 1
        assert dispatcher.owned_partitions() == []


class TestSupervision:
    async def test_failed_worker_does_not_affect_others(
        self, lease_store, checkpoint_store, event_source, clock
    ):
        processor = NoopProcessor(fail_on={"0"})
        dispatcher = build_dispatcher(lease_store, checkpoint_store, event_source, clock, processor=processor)
        await event_source.append("0", b"poison")
        await event_source.append("1", b"fine")

        await dispatcher.tick()
        first_handle = dispatcher._handles["0"]
        await wait_until(lambda: first_handle.task.done())
        await wait_until(lambda: ("1", 0) in processor.seen)
        await dispatcher.tick()

        assert dispatcher.workers_failed == 1
        assert not dispatcher._handles["1"].task.done()
        assert (await checkpoint_store.get_checkpoint("1")).position == 0
        assert dispatcher._handles["0"] is not first_handle
        await dispatcher._shutdown_workers()

    async def test_lease_loss_stops_worker_without_release(self, lease_store, checkpoint_store, event_source, clock):
        telemetry = TelemetrySink("consumer-a", exporters=[])
        dispatcher = build_dispatcher(
            lease_store, checkpoint_store, event_source, clock, telemetry=telemetry
        )
        await dispatcher.tick()
        handle = dispatcher._handles["0"]

        dispatcher._on_lease_lost("0", handle.fencing_token + 1, LeaseExpiredError("old", "0"))
        assert not handle.cancel.is_set()

        dispatcher._on_lease_lost("0", handle.fencing_token, LeaseExpiredError("lost", "0"))
        await wait_until(lambda: handle.task.done())
        await dispatcher.tick()

        assert dispatcher.leases_lost == 1
        assert dispatcher.partitions_released == 0
        assert dispatcher._handles["0"].fencing_token == handle.fencing_token + 1

        names = []
        while not telemetry._queue.empty():
            names.append(telemetry._queue.get_nowait().name)
        assert names.count(PARTITION_CLAIMED) == 5
        assert PARTITION_RELEASED not in names
        await dispatcher._shutdown_workers()


class TestFatalConditions:
    async def test_store_unavailable_aborts_run(self, lease_store, checkpoint_store, event_source, clock):
        dispatcher = build_dispatcher(
            lease_store, checkpoint_store, event_source, clock, max_consecutive_store_failures=2
        )
        lease_store.list_leases = AsyncMock(side_effect=StorageConnectionError("store down"))

        with pytest.raises(DispatcherFatalError):
            await asyncio.wait_for(dispatcher.run(), 2.0)

        assert dispatcher.consecutive_store_failures == 2
        assert not dispatcher.is_running

    async def test_store_recovery_resets_failure_count(self, lease_store, checkpoint_store, event_source, clock):
        dispatcher = build_dispatcher(
            lease_store, checkpoint_store, event_source, clock, max_consecutive_store_failures=2
        )
        real_list = lease_store.list_leases
        lease_store.list_leases = AsyncMock(side_effect=[StorageConnectionError("blip"), await real_list()])

        await dispatcher.tick()
        await dispatcher.tick()
        await dispatcher._shutdown_workers()

        assert dispatcher.consecutive_store_failures == 0

    async def test_unclaimable_partitions_abort_after_default_limit(
        self, lease_store, checkpoint_store, event_source, clock
    ):
        dispatcher = build_dispatcher(lease_store, checkpoint_store, event_source, clock)
        lease_store.acquire_lease = AsyncMock(side_effect=StorageConnectionError("store down"))
        limit = dispatcher.config.max_idle_claim_cycles
        assert limit > 0

        for _ in range(limit - 1):
            await dispatcher.tick()
        with pytest.raises(DispatcherFatalError, match="No partition could be claimed"):
            await dispatcher.tick()

        assert dispatcher.idle_claim_cycles == limit

    async def test_idle_claim_check_can_be_disabled(
        self, lease_store, checkpoint_store, event_source, clock
    ):
        dispatcher = build_dispatcher(
            lease_store, checkpoint_store, event_source, clock, max_idle_claim_cycles=0
        )
        lease_store.acquire_lease = AsyncMock(side_effect=StorageConnectionError("store down"))

        for _ in range(20):
            await dispatcher.tick()

        assert dispatcher.idle_claim_cycles == 20
        assert dispatcher.owned_partitions() == []


class TestShutdown:
    async def test_run_until_stopped_releases_all_leases(self, lease_store, checkpoint_store, event_source, clock):
        dispatcher = build_dispatcher(lease_store, checkpoint_store, event_source, clock)
        shutdown = asyncio.Event()

        run_task = asyncio.create_task(dispatcher.run(shutdown))
        await wait_until(lambda: len(dispatcher.owned_partitions()) == 4)
        assert dispatcher.is_running

        dispatcher.stop()
        await asyncio.wait_for(run_task, 2.0)

        assert not dispatcher.is_running
        assert dispatcher.partitions_released == 4
        assert all(lease.owner_id is None for lease in await lease_store.list_leases())
        assert await lease_store.list_members() == []

    async def test_stuck_worker_cancelled_after_grace(self, lease_store, checkpoint_store, event_source, clock):
        dispatcher = build_dispatcher(
            lease_store, checkpoint_store, event_source, clock,
            processor=NoopProcessor(block_on={"3"}),
            shutdown_grace_seconds=0.1,
        )
        await event_source.append("3", b"slow")
        await dispatcher.tick()
        await wait_until(lambda: dispatcher._workers["3"].state.value == "processing")

        with pytest.raises(ShutdownTimeoutError) as exc_info:
            await dispatcher._shutdown_workers()

        assert exc_info.value.partition_ids == ["3"]
        assert dispatcher.owned_partitions() == []
        assert (await lease_store.get_lease("3")).owner_id is None


class TestIntrospection:
    async def test_stats_match_response_model(self, dispatcher):
        await dispatcher.tick()

        stats = DispatcherStatsResponse(**dispatcher.stats())

        assert stats.owned_partitions == ["0", "1", "2", "3"]
        assert stats.cycles == 1
        assert stats.telemetry_dropped == 0
        assert all(p["claimed_at"] is not None for p in dispatcher.owned_partitions())
