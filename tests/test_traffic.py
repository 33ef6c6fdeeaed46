"""Tests for in-memory traffic and platform collaborators and retry helpers."""

import asyncio

import pytest

from rolloutctl.core.async_utils import (
    RetryPolicy,
    retry_async,
    wait_for_any,
    wait_for_event,
)
from rolloutctl.core.exceptions import PlatformError, TransportFault
from rolloutctl.deploy.traffic import (
    InMemoryPlatform,
    InMemoryTrafficController,
    ResourceDescriptor,
    TrafficController,
)


class TestInMemoryTrafficController:
    """Tests for InMemoryTrafficController."""

    @pytest.mark.asyncio
    async def test_records_weights_and_selectors(self):
        traffic = InMemoryTrafficController()
        await traffic.set_weight("svc-canary", 10)
        await traffic.set_weight("svc-canary", 50)
        await traffic.set_selector("svc", {"app": "svc", "color": "green"})

        assert traffic.weights == {"svc-canary": 50}
        assert traffic.weight_history("svc-canary") == [10, 50]
        assert traffic.selectors["svc"]["color"] == "green"

    @pytest.mark.asyncio
    async def test_scripted_failures(self):
        traffic = InMemoryTrafficController(failures={"set_weight": 1})
        with pytest.raises(PlatformError):
            await traffic.set_weight("svc-canary", 10)
        await traffic.set_weight("svc-canary", 10)
        assert traffic.weights["svc-canary"] == 10

    @pytest.mark.asyncio
    async def test_overlapping_calls_detected(self):
        traffic = InMemoryTrafficController()
        results = await asyncio.gather(
            traffic.set_weight("svc-canary", 10),
            traffic.set_weight("svc-canary", 20),
            return_exceptions=True,
        )
        assert any(isinstance(r, PlatformError) for r in results)

    @pytest.mark.asyncio
    async def test_routes_unsupported_by_default(self):
        class WeightsOnly(TrafficController):
            async def set_weight(self, destination_id, percent):
                pass

            async def set_selector(self, service_id, labels):
                pass

        with pytest.raises(PlatformError, match="routing"):
            await WeightsOnly().set_routes("svc", [])

    @pytest.mark.asyncio
    async def test_split_is_one_call(self):
        traffic = InMemoryTrafficController()
        await traffic.set_split({"svc": 70, "svc-b": 30})

        assert traffic.weights == {"svc": 70, "svc-b": 30}
        assert traffic.calls == [("set_split", ({"svc": 70, "svc-b": 30},))]

    @pytest.mark.asyncio
    async def test_split_must_total_100(self):
        traffic = InMemoryTrafficController()
        with pytest.raises(PlatformError, match="total 100"):
            await traffic.set_split({"svc": 70, "svc-b": 20})
        assert traffic.calls == []

    @pytest.mark.asyncio
    async def test_default_split_sets_each_weight_in_order(self):
        applied = []

        class WeightsOnly(TrafficController):
            async def set_weight(self, destination_id, percent):
                applied.append((destination_id, percent))

            async def set_selector(self, service_id, labels):
                pass

        await WeightsOnly().set_split({"svc": 100, "svc-b": 0})

        assert applied == [("svc", 100), ("svc-b", 0)]


class TestInMemoryPlatform:
    """Tests for InMemoryPlatform."""

    @pytest.mark.asyncio
    async def test_ready_after_polls(self):
        platform = InMemoryPlatform(ready_after=2)
        await platform.apply("default", ResourceDescriptor(name="svc", version="2", replicas=3))

        statuses = [await platform.rollout_status("svc", "default") for _ in range(3)]
        assert [s.ready for s in statuses] == [False, False, True]
        assert statuses[-1].ready_replicas == 3

    @pytest.mark.asyncio
    async def test_missing_workload(self):
        with pytest.raises(PlatformError) as exc_info:
            await InMemoryPlatform().rollout_status("nope", "default")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_teardown(self):
        platform = InMemoryPlatform()
        await platform.apply("default", ResourceDescriptor(name="svc-green", version="2"))
        await platform.teardown("svc-green", "default")
        assert platform.workloads == {}
        assert platform.torn_down == ["svc-green"]


class TestRetryAsync:
    """Tests for retry_async."""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        attempts = []
        delays = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise PlatformError("503")
            return "ok"

        async def fake_sleep(delay):
            delays.append(delay)

        policy = RetryPolicy(attempts=3, base_delay=0.5, multiplier=2.0, max_delay=5.0)
        assert await retry_async(flaky, "set_weight", policy, sleep=fake_sleep) == "ok"
        assert delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_escalates_to_transport_fault(self):
        async def broken():
            raise PlatformError("connection reset")

        async def fake_sleep(delay):
            pass

        with pytest.raises(TransportFault) as exc_info:
            await retry_async(broken, "set_selector(svc)", RetryPolicy(attempts=2), sleep=fake_sleep)

        assert exc_info.value.cause == "transport"
        assert exc_info.value.attempts == 2
        assert exc_info.value.operation == "set_selector(svc)"

    def test_delay_is_bounded(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=10.0, max_delay=3.0)
        assert policy.delay_for(1) == 1.0
        assert policy.delay_for(4) == 3.0


class TestWaits:
    """Tests for bounded wait helpers."""

    @pytest.mark.asyncio
    async def test_wait_for_event(self):
        event = asyncio.Event()
        assert await wait_for_event(event, 0.01) is False
        event.set()
        assert await wait_for_event(event, 0.01) is True

    @pytest.mark.asyncio
    async def test_wait_for_any_returns_first_set(self):
        first, second = asyncio.Event(), asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, second.set)
        assert await wait_for_any([first, second], 1.0) is second
        assert await wait_for_any([asyncio.Event()], 0.01) is None
