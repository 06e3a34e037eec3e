"""Tests for the in-process event channel"""

import asyncio
import threading

import pytest

from federal_job_finder.events import (
    ALL_TOPICS,
    SYNC_COMPLETED,
    SYNC_STARTED,
    EventChannel,
)


def test_publish_routes_by_topic():
    events = EventChannel()
    started, everything = [], []
    events.subscribe(SYNC_STARTED, lambda topic, event: started.append(event))
    events.subscribe(ALL_TOPICS, lambda topic, event: everything.append(topic))

    events.publish(SYNC_STARTED, {"n": 1})
    events.publish(SYNC_COMPLETED)

    assert started == [{"n": 1}]
    assert everything == [SYNC_STARTED, SYNC_COMPLETED]


def test_unsubscribe():
    events = EventChannel()
    received = []
    unsubscribe = events.subscribe(SYNC_STARTED, lambda topic, event: received.append(event))

    unsubscribe()
    unsubscribe()  # Should not raise
    events.publish(SYNC_STARTED, {})

    assert received == []


def test_handler_error_does_not_stop_delivery():
    events = EventChannel()
    received = []

    def broken(topic, event):
        raise ValueError("handler bug")

    events.subscribe(SYNC_STARTED, broken)
    events.subscribe(SYNC_STARTED, lambda topic, event: received.append(topic))

    events.publish(SYNC_STARTED)

    assert received == [SYNC_STARTED]


@pytest.mark.asyncio
async def test_stream_yields_published_events():
    events = EventChannel()
    stream = events.stream(SYNC_COMPLETED)
    next_event = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)

    events.publish(SYNC_STARTED, {"ignored": True})
    events.publish(SYNC_COMPLETED, {"refreshed": 2})

    topic, event = await asyncio.wait_for(next_event, timeout=1)
    assert topic == SYNC_COMPLETED
    assert event == {"refreshed": 2}
    await stream.aclose()


@pytest.mark.asyncio
async def test_stream_receives_events_published_from_other_threads():
    """Test that a publish from a worker thread reaches the stream on its own loop"""
    events = EventChannel()
    stream = events.stream(SYNC_COMPLETED)
    next_event = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)

    worker = threading.Thread(target=events.publish, args=(SYNC_COMPLETED, {"refreshed": 1}))
    worker.start()
    worker.join()

    topic, event = await asyncio.wait_for(next_event, timeout=1)
    assert topic == SYNC_COMPLETED
    assert event == {"refreshed": 1}
    await stream.aclose()
