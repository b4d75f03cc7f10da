import asyncio
import json
import threading

from backend.app.broadcast import ChangeBroadcaster, ChangeNotice, format_sse, stream_events


def _notice(entity_id="p-1", data_type="products", action="update"):
    return ChangeNotice(data_type, action, entity_id)


def _data_lines(chunks):
    out = []
    for chunk in chunks:
        for line in chunk.splitlines():
            if line.startswith("data: "):
                out.append(json.loads(line[len("data: "):]))
    return out


def test_publish_assigns_sequence_and_dedupes_within_one_commit():
    hub = ChangeBroadcaster(queue_size=10, buffer_size=10)
    events = hub.publish([_notice("p-1"), _notice("p-1"), _notice("o-1", "orders", "create")])

    assert [e["seq"] for e in events] == [1, 2]
    assert [(e["data_type"], e["action"], e["entity_id"]) for e in events] == [
        ("products", "update", "p-1"),
        ("orders", "create", "o-1"),
    ]
    # Pointers only: no entity data travels with the event.
    assert set(events[0]) == {"type", "seq", "data_type", "action", "entity_id", "emitted_at"}
    assert hub.current_seq == 2
    assert hub.publish([]) == []


def test_recent_serves_buffer_and_signals_gaps():
    hub = ChangeBroadcaster(queue_size=10, buffer_size=3)
    for i in range(5):
        hub.publish([_notice(f"p-{i}")])

    tail = hub.recent(3, hub.instance_id)
    assert tail["reset"] is False
    assert [e["seq"] for e in tail["events"]] == [4, 5]

    assert hub.recent(2, hub.instance_id)["reset"] is False
    assert hub.recent(1, hub.instance_id)["reset"] is True
    assert hub.recent(5, hub.instance_id) == {"instance_id": hub.instance_id, "seq": 5, "reset": False, "events": []}
    # A terminal that knew a previous server process cannot trust its seq.
    assert hub.recent(5, "another-instance")["reset"] is True
    assert hub.recent(9, hub.instance_id)["reset"] is True


def test_subscriber_receives_events_published_from_another_thread():
    hub = ChangeBroadcaster(queue_size=10, buffer_size=10)

    async def scenario():
        sub = hub.subscribe()
        assert hub.client_count() == 1
        t = threading.Thread(target=hub.publish, args=([_notice("p-9")],))
        t.start()
        t.join()
        event = await asyncio.wait_for(sub.queue.get(), timeout=2)
        hub.unsubscribe(sub)
        return event

    event = asyncio.run(scenario())
    assert event["entity_id"] == "p-9"
    assert hub.client_count() == 0


def test_stream_sends_connected_then_changes_and_unsubscribes_on_disconnect():
    hub = ChangeBroadcaster(queue_size=10, buffer_size=10)
    hub.publish([_notice("p-0")])

    async def scenario():
        sub = hub.subscribe()
        hub.publish([_notice("p-1")])
        await asyncio.sleep(0)
        checks = iter([False, True])

        async def is_disconnected():
            return next(checks)

        return [chunk async for chunk in stream_events(hub, is_disconnected, heartbeat_seconds=1, sub=sub)]

    chunks = asyncio.run(scenario())
    assert chunks[0] == "retry: 3000\n\n"
    events = _data_lines(chunks)
    assert events[0]["type"] == "connected"
    assert events[0]["seq"] == 2
    assert events[0]["instance_id"] == hub.instance_id
    assert events[1]["entity_id"] == "p-1"
    assert hub.client_count() == 0


def test_slow_subscriber_is_reset_and_dropped():
    hub = ChangeBroadcaster(queue_size=1, buffer_size=10)

    async def scenario():
        sub = hub.subscribe()
        hub.publish([_notice("p-1"), _notice("p-2"), _notice("p-3")])
        await asyncio.sleep(0)
        assert sub.overflowed is True

        async def is_disconnected():
            return False

        chunks = [chunk async for chunk in stream_events(hub, is_disconnected, heartbeat_seconds=1, sub=sub)]
        return sub, chunks

    sub, chunks = asyncio.run(scenario())
    events = _data_lines(chunks)
    assert [e["type"] for e in events] == ["connected", "reset"]
    assert hub.client_count() == 0


def test_overflowed_subscriber_is_pruned_on_next_publish():
    hub = ChangeBroadcaster(queue_size=1, buffer_size=10)

    async def scenario():
        hub.subscribe()
        hub.publish([_notice("p-1"), _notice("p-2")])
        await asyncio.sleep(0)
        hub.publish([_notice("p-3")])

    asyncio.run(scenario())
    assert hub.client_count() == 0


def test_format_sse_sets_id_for_data_changes_only():
    assert format_sse({"type": "data-change", "seq": 7}).startswith("id: 7\n")
    assert format_sse({"type": "reset"}) == 'data: {"type": "reset"}\n\n'


def test_stream_subscribes_only_once_iterated():
    hub = ChangeBroadcaster(queue_size=10, buffer_size=10)

    async def scenario():
        async def is_disconnected():
            return False

        gen = stream_events(hub, is_disconnected, heartbeat_seconds=1)
        before = hub.client_count()
        first = await gen.__anext__()
        during = hub.client_count()
        await gen.aclose()
        return before, first, during

    before, first, during = asyncio.run(scenario())
    assert (before, during) == (0, 1)
    assert first == "retry: 3000\n\n"
    assert hub.client_count() == 0
