import asyncio
import json

import httpx
import pytest

from shield_agent.telemetry import EventSink


class TestEventSink:

    @pytest.mark.asyncio
    async def test_overlapping_events_are_all_delivered(self):
        received = []

        async def handler(request):
            await asyncio.sleep(0.01)
            received.append(json.loads(request.content)["event_type"])
            return httpx.Response(200)

        sink = EventSink("http://sink.test", enabled=True, transport=httpx.MockTransport(handler))
        await asyncio.gather(
            sink.log("scan_cycle_completed", {"chain": "sepolia"}),
            sink.log("shield_action", {"adapter": "AaveAdapter"})
        )

        assert sorted(received) == ["scan_cycle_completed", "shield_action"]

    @pytest.mark.asyncio
    async def test_unreachable_sink_does_not_raise(self):
        def handler(request):
            raise httpx.ConnectError("sink down")

        sink = EventSink("http://sink.test", enabled=True, transport=httpx.MockTransport(handler))
        await sink.log("scan_cycle_completed", {"chain": "sepolia"})

    @pytest.mark.asyncio
    async def test_rejected_event_is_not_an_error(self):
        sink = EventSink("http://sink.test", enabled=True,
                         transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        await sink.log("scan_cycle_completed", {"chain": "sepolia"})
