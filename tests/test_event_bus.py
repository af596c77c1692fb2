from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from codeagent.adapters.event_bus import EventBus
from codeagent.adapters.events import (
    BusEvent,
    SessionError,
    SessionIdle,
    dict_to_event,
    event_to_dict,
)


def test_subscribers_receive_matching_events():
    bus = EventBus()
    idle = MagicMock()
    everything = MagicMock()
    unsubscribe = bus.subscribe("session.idle", idle)
    bus.subscribe_all(everything)

    bus.publish(SessionIdle(session_id="ses_1"))
    bus.publish(SessionError(session_id="ses_1", error={"name": "UnknownError"}))
    unsubscribe()
    bus.publish(SessionIdle(session_id="ses_2"))

    idle.assert_called_once_with(SessionIdle(session_id="ses_1"))
    assert everything.call_count == 3


def test_failing_subscriber_does_not_stop_delivery():
    bus = EventBus()
    after = MagicMock()
    bus.subscribe("session.idle", MagicMock(side_effect=RuntimeError("boom")))
    bus.subscribe("session.idle", after)

    bus.publish(SessionIdle(session_id="ses_1"))

    after.assert_called_once()


@pytest.mark.asyncio
async def test_queues_and_async_callbacks():
    bus = EventBus(maxsize=1)
    queue = bus.open_queue()
    seen = []

    async def record(event):
        seen.append(event.session_id)

    bus.subscribe("session.idle", record)
    bus.publish(SessionIdle(session_id="a"))
    bus.publish(SessionIdle(session_id="b"))
    await asyncio.sleep(0)

    assert queue.qsize() == 1
    assert (await queue.get()).session_id == "a"
    assert seen == ["a", "b"]

    bus.close()
    bus.publish(SessionIdle(session_id="c"))
    assert queue.empty()


def test_wire_round_trip_ignores_unknown_fields():
    wire = event_to_dict(SessionError(session_id="ses_1", error={"name": "AbortedError"}))
    assert wire == {
        "type": "session.error",
        "properties": {"session_id": "ses_1", "error": {"name": "AbortedError"}},
    }

    wire["properties"]["extra"] = 1
    assert dict_to_event(wire) == SessionError(session_id="ses_1", error={"name": "AbortedError"})
    assert type(dict_to_event({"type": "custom.thing"})) is BusEvent
