import asyncio
import json

import pytest

from broadcast import Broadcaster, LogBroadcaster, WebSocketHub, safe_publish


class FakeSocket:
    def __init__(self, name, gate=None, opens=None, fail=False):
        self.name = name
        self.gate = gate
        self.opens = opens
        self.fail = fail
        self.received = []

    async def accept(self):
        pass

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError(f"{self.name} closed")
        if self.gate is not None:
            await self.gate.wait()
        self.received.append(json.loads(text))
        if self.opens is not None:
            self.opens.set()


def test_broadcaster_requires_publish():
    class Silent(Broadcaster):
        pass

    with pytest.raises(TypeError):
        Broadcaster()
    with pytest.raises(TypeError):
        Silent()


def test_safe_publish_swallows_errors():
    class Exploding(Broadcaster):
        def publish(self, event, payload):
            raise RuntimeError("socket gone")

    safe_publish(Exploding(), "new_sensor_data", {})
    safe_publish(LogBroadcaster(), "new_sensor_data", {"device_id": "RIVER-01"})


def test_stalled_client_does_not_hold_up_the_others():
    async def scenario():
        hub = WebSocketHub()
        gate = asyncio.Event()
        # the stalled client is only released once a later client has received
        stalled = FakeSocket("stalled", gate=gate)
        healthy = FakeSocket("healthy", opens=gate)
        broken = FakeSocket("broken", fail=True)
        clients = [stalled, broken, healthy]
        for ws in clients:
            await hub.connect(ws)

        text = json.dumps({"event": "new_sensor_data", "data": {"device_id": "R"}})
        await asyncio.wait_for(hub._send_all(clients, text), timeout=2)
        return hub, stalled, healthy

    hub, stalled, healthy = asyncio.run(scenario())

    assert healthy.received[0]["event"] == "new_sensor_data"
    assert stalled.received == healthy.received
    assert hub.client_count == 2
