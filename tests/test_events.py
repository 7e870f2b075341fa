import pytest

from attribution_relay.utils.events import EventLog


async def test_newest_first_and_capacity_eviction():
    log = EventLog(capacity=3)
    for i in range(5):
        await log.log("click", f"click {i}")

    events = log.get_events()
    assert len(log) == 3
    assert [e.summary for e in events] == ["click 4", "click 3", "click 2"]


async def test_since_filter():
    log = EventLog()
    first = await log.log("system", "boot")
    second = await log.log("click", "hit")
    second.timestamp = first.timestamp + 10

    assert [e.summary for e in log.get_events(since=first.timestamp)] == ["hit"]


async def test_unknown_type_rejected():
    with pytest.raises(ValueError):
        await EventLog().log("bogus", "x")


async def test_sink_only_receives_persisted_types():
    received = []

    async def sink(event):
        received.append(event.type)

    log = EventLog(sink=sink)
    await log.log("click", "a")
    await log.log("postback", "b", {"click_id": "clk_1"})
    await log.log("error", "c")
    await log.log("attribution", "d", {"suspicious": True})

    assert received == ["postback", "error"]


async def test_sink_failure_does_not_propagate():
    async def broken(event):
        raise RuntimeError("db down")

    log = EventLog(sink=broken)
    event = await log.log("error", "boom")
    assert log.get_events()[0] is event


def test_invalid_capacity():
    with pytest.raises(ValueError):
        EventLog(capacity=0)
