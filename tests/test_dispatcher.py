# tests/test_dispatcher.py
"""Tests for concurrent fan-out with per-send outcome capture"""
import asyncio

import pytest

from chatpush.core.dispatcher import Dispatcher
from chatpush.core.errors import DeliveryFailure
from chatpush.infra.metrics import get_metrics_collector

from tests.fakes import FakePushProvider

PAYLOAD = {"notification": {"title": "T", "body": "B"}, "data": {}}


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_no_tokens_no_provider_call(self):
        provider = FakePushProvider()
        result = await Dispatcher(provider).send([], PAYLOAD)

        assert result.total == 0
        assert result.successful == 0
        assert provider.sent == []

    @pytest.mark.asyncio
    async def test_all_succeed(self):
        provider = FakePushProvider()
        result = await Dispatcher(provider).send(["a", "b", "c"], PAYLOAD)

        assert result.total == 3
        assert result.successful == 3
        assert sorted(token for token, _ in provider.sent) == ["a", "b", "c"]
        assert all(o.message_id for o in result.outcomes)

    @pytest.mark.asyncio
    async def test_partial_failure_isolated(self):
        provider = FakePushProvider(failing={"b", "d"})
        result = await Dispatcher(provider).send(["a", "b", "c", "d", "e"], PAYLOAD)

        assert result.total == 5
        assert result.successful == 3
        assert result.failed == 2
        # every token attempted exactly once
        assert sorted(token for token, _ in provider.sent) == ["a", "b", "c", "d", "e"]

        failed = {o.token: o.error for o in result.outcomes if not o.success}
        assert set(failed) == {"b", "d"}
        assert all(isinstance(e, DeliveryFailure) and e.unregistered for e in failed.values())

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_counted_as_failure(self):
        provider = FakePushProvider(crashing={"b"})
        result = await Dispatcher(provider).send(["a", "b"], PAYLOAD)

        assert result.successful == 1
        crashed = next(o for o in result.outcomes if o.token == "b")
        assert isinstance(crashed.error, DeliveryFailure)
        assert crashed.error.retryable

    @pytest.mark.asyncio
    async def test_same_payload_for_every_token(self):
        provider = FakePushProvider()
        await Dispatcher(provider).send(["a", "b"], PAYLOAD)
        assert all(payload is PAYLOAD for _, payload in provider.sent)

    @pytest.mark.asyncio
    async def test_duplicate_tokens_sent_twice(self):
        provider = FakePushProvider()
        result = await Dispatcher(provider).send(["same", "same"], PAYLOAD)

        assert result.total == 2
        assert len(provider.sent) == 2

    @pytest.mark.asyncio
    async def test_max_concurrency_bounds_in_flight_sends(self):
        in_flight = 0
        peak = 0

        class SlowProvider:
            async def send(self, token, payload):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                return f"msg-{token}"

        result = await Dispatcher(SlowProvider(), max_concurrency=2).send(
            [f"t{i}" for i in range(8)], PAYLOAD,
        )

        assert result.successful == 8
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_send_metrics_recorded(self):
        provider = FakePushProvider(failing={"b"})
        await Dispatcher(provider).send(["a", "b", "c"], PAYLOAD)

        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["push_sends_total{status=sent}"] == 2
        assert counters["push_sends_total{status=failed}"] == 1
