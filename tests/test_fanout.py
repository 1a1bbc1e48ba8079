import threading
from sanctuary_engine.realtime.fanout import (
    EPHEMERAL, NORMAL, SAFETY, Event, LocalBroker, RedisBroker, Subscription, publish_all,
)


def _types(events):
    return [e.type for e in events]


def test_sequence_numbers_are_per_session():
    broker = LocalBroker()
    assert broker.publish("s-1", "a", {}).seq == 1
    assert broker.publish("s-1", "b", {}).seq == 2
    assert broker.publish("s-2", "c", {}).seq == 1
    assert broker.last_seq("s-1") == 2


def test_subscriber_only_sees_events_after_subscribing():
    broker = LocalBroker()
    broker.publish("s-1", "before", {})
    sub = broker.subscribe("s-1")
    broker.publish("s-1", "after", {})
    assert _types(sub.drain()) == ["after"]


def test_publish_all_keeps_order():
    broker = LocalBroker()
    sub = broker.subscribe("s-1")
    publish_all(broker, "s-1", [("x", {}, NORMAL), ("y", {}, SAFETY), ("z", {}, EPHEMERAL)])
    events = sub.drain()
    assert _types(events) == ["x", "y", "z"]
    assert [e.seq for e in events] == [1, 2, 3]


def test_concurrent_publishers_deliver_in_sequence_order():
    broker = LocalBroker(buffer_size=1000)
    sub = broker.subscribe("s-1")

    def spam(tag):
        for i in range(50):
            broker.publish("s-1", f"{tag}-{i}", {})

    threads = [threading.Thread(target=spam, args=(t,)) for t in "abcd"]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    seqs = [e.seq for e in sub.drain()]
    assert seqs == list(range(1, 201))


def test_ephemeral_events_are_dropped_first():
    broker = LocalBroker(buffer_size=2)
    sub = broker.subscribe("s-1")
    broker.publish("s-1", "telemetry", {}, EPHEMERAL)
    broker.publish("s-1", "joined", {}, NORMAL)
    broker.publish("s-1", "left", {}, NORMAL)
    assert _types(sub.drain()) == ["joined", "left"]
    assert sub.dropped == 1
    assert sub.needs_resync is False


def test_incoming_ephemeral_is_dropped_when_nothing_cheaper_is_buffered():
    broker = LocalBroker(buffer_size=2)
    sub = broker.subscribe("s-1")
    broker.publish("s-1", "joined", {}, NORMAL)
    broker.publish("s-1", "left", {}, NORMAL)
    broker.publish("s-1", "reaction", {}, EPHEMERAL)
    assert _types(sub.drain()) == ["joined", "left"]
    assert sub.needs_resync is False


def test_dropping_state_delta_requests_resync():
    broker = LocalBroker(buffer_size=2)
    sub = broker.subscribe("s-1")
    for name in ("one", "two", "three"):
        broker.publish("s-1", name, {}, NORMAL)
    assert _types(sub.drain()) == ["two", "three"]
    assert sub.needs_resync is True


def test_safety_events_are_never_dropped():
    broker = LocalBroker(buffer_size=2)
    sub = broker.subscribe("s-1")
    broker.publish("s-1", "joined", {}, NORMAL)
    for i in range(4):
        broker.publish("s-1", f"alert-{i}", {}, SAFETY)
    broker.publish("s-1", "left", {}, NORMAL)
    assert _types(sub.drain()) == ["alert-0", "alert-1", "alert-2", "alert-3"]
    assert sub.needs_resync is True


def test_get_waits_and_close_wakes_readers():
    broker = LocalBroker()
    sub = broker.subscribe("s-1")
    assert sub.get(timeout=0.01) is None
    broker.publish("s-1", "x", {})
    assert sub.get(timeout=0.01).type == "x"
    broker.unsubscribe(sub)
    assert sub.closed
    assert sub.get(timeout=5) is None
    broker.publish("s-1", "y", {})
    assert sub.drain() == []


def test_on_ready_is_called_per_delivery():
    broker = LocalBroker()
    calls = []
    broker.subscribe("s-1", on_ready=lambda: calls.append(1))
    broker.publish("s-1", "x", {})
    broker.publish("s-1", "y", {})
    assert len(calls) == 2


def test_event_dict_round_trip():
    event = Event(session_id="s-1", type="alert.created", payload={"alert": {"id": "a"}}, priority=SAFETY, seq=7)
    restored = Event.from_dict(event.to_dict())
    assert restored == event


class FakeRedis:
    """Just enough of a redis client for the broker's publish path."""

    def __init__(self):
        self.seq = {}
        self.published = []

    def register_script(self, _source):
        def run(keys, args):
            self.seq[keys[0]] = self.seq.get(keys[0], 0) + 1
            self.published.append((args[0], f"{self.seq[keys[0]]}|{args[1]}"))
            return self.seq[keys[0]]
        return run

    def get(self, key):
        return str(self.seq[key]).encode() if key in self.seq else None


def test_redis_broker_frames_and_dispatches_events():
    client = FakeRedis()
    broker = RedisBroker(client)
    sub = Subscription("s-1")
    broker._subs["s-1"] = [sub]
    event = broker.publish("s-1", "alert.created", {"alert": {"id": "a-1"}}, SAFETY)
    assert event.seq == 1
    assert broker.last_seq("s-1") == 1
    channel, raw = client.published[0]
    assert channel == "sanctuary:events:s-1"
    broker.dispatch_raw(raw.encode())
    [delivered] = sub.drain()
    assert (delivered.seq, delivered.type, delivered.priority) == (1, "alert.created", SAFETY)
    assert delivered.payload == {"alert": {"id": "a-1"}}


def test_retire_closes_subscribers_and_drops_the_channel():
    broker = LocalBroker()
    sub = broker.subscribe("s-1")
    broker.publish("s-1", "session.ended", {})
    broker.retire("s-1")
    assert sub.closed
    assert _types(sub.drain()) == ["session.ended"]
    broker.unsubscribe(sub)
    assert broker.last_seq("s-1") == 0
    assert "s-1" not in broker._channels
    # A later event for the retired session starts a fresh channel.
    assert broker.publish("s-1", "alert.updated", {}, SAFETY).seq == 1
