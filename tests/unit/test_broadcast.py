"""Unit tests for the broadcast hub."""

import json

import pytest

from conftest import make_phase, seed_project
from pdl.broadcast import BroadcastHub, WSMessage
from pdl.engine import RoadmapEngine
from pdl.errors import StorageFailure
from pdl.models import Project


class FakeObserver:
    """Collects frames the hub sends."""

    def __init__(self, fail=False):
        self.fail = fail
        self.frames = []
        self.closed = False

    async def send_text(self, text):
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.frames.append(json.loads(text))

    async def close(self):
        self.closed = True

    def of_type(self, message_type):
        return [frame for frame in self.frames if frame["type"] == message_type]


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestWSMessage:
    """Test cases for the wire frame."""

    def test_optional_fields_are_omitted(self):
        data = WSMessage(type="ping").to_dict()

        assert set(data) == {"type", "payload", "timestamp"}

    def test_from_json_reads_all_fields(self):
        message = WSMessage.from_json(
            json.dumps({"type": "subscribe", "project_name": "alpha", "session_id": "s-1"})
        )

        assert message.type == "subscribe"
        assert message.project_name == "alpha"
        assert message.session_id == "s-1"
        assert message.payload == {}

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"payload": {}}'])
    def test_from_json_rejects_non_messages(self, raw):
        with pytest.raises(ValueError):
            WSMessage.from_json(raw)


class TestPublish:
    """Test cases for fan-out to subscribers."""

    @pytest.mark.asyncio
    async def test_only_subscribers_of_the_project_receive(self):
        hub = BroadcastHub()
        alpha_observer, beta_observer = FakeObserver(), FakeObserver()
        hub.subscribe(alpha_observer, "alpha")
        hub.subscribe(beta_observer, "beta")

        targeted = hub.publish("alpha", "phase_update", {"action": "phase_inserted"})
        await hub.flush()

        assert targeted == 1
        (frame,) = alpha_observer.frames
        assert frame["type"] == "phase_update"
        assert frame["project_name"] == "alpha"
        assert frame["payload"] == {"action": "phase_inserted"}
        assert beta_observer.frames == []

    @pytest.mark.asyncio
    async def test_no_subscribers_is_a_no_op(self):
        hub = BroadcastHub()

        assert hub.publish("alpha", "sprint_update", {}) == 0

    @pytest.mark.asyncio
    async def test_unknown_type_is_rejected(self):
        hub = BroadcastHub()

        with pytest.raises(ValueError, match="Unsupported"):
            hub.publish("alpha", "shout", {})

    def test_publish_without_loop_drops_quietly(self):
        hub = BroadcastHub()
        hub.subscribe(FakeObserver(), "alpha")

        assert hub.publish("alpha", "phase_update", {}) == 0

    @pytest.mark.asyncio
    async def test_failed_delivery_drops_observer(self):
        hub = BroadcastHub()
        broken, healthy = FakeObserver(fail=True), FakeObserver()
        hub.subscribe(broken, "alpha")
        hub.subscribe(healthy, "alpha")

        hub.publish("alpha", "pdl_update", {"stage": 2})
        await hub.flush()

        assert broken not in hub.clients
        assert len(healthy.frames) == 1
        assert hub.subscribers("alpha") == [healthy]

    @pytest.mark.asyncio
    async def test_log_update_carries_session(self):
        hub = BroadcastHub()
        observer = FakeObserver()
        hub.subscribe(observer, "alpha")

        hub.broadcast_log_update("alpha", "session-9", {"entry": "phase inserted"})
        await hub.flush()

        assert observer.frames[0]["session_id"] == "session-9"


class TestInboundFrames:
    """Test cases for messages sent by observers."""

    @pytest.mark.asyncio
    async def test_subscribe_acknowledges_and_sends_snapshot(self):
        async def loader(name):
            return Project(project_name=name, description="tracked")

        hub = BroadcastHub(snapshot_loader=loader)
        observer = FakeObserver()

        await hub.handle_message(observer, json.dumps({"type": "subscribe", "project_name": "alpha"}))

        ack, snapshot = observer.frames
        assert ack["payload"] == {"subscribed": "alpha"}
        assert snapshot["payload"]["project"]["description"] == "tracked"
        assert hub.subscribers("alpha") == [observer]

    @pytest.mark.asyncio
    async def test_snapshot_of_absent_project_is_null(self):
        async def loader(name):
            return None

        hub = BroadcastHub(snapshot_loader=loader)
        observer = FakeObserver()

        await hub.handle_message(observer, json.dumps({"type": "subscribe", "project_name": "ghost"}))

        assert observer.frames[-1]["payload"] == {"project": None}

    @pytest.mark.asyncio
    async def test_failed_snapshot_keeps_connection_usable(self):
        async def loader(name):
            raise StorageFailure(f"Could not read project '{name}'")

        hub = BroadcastHub(snapshot_loader=loader)
        observer = FakeObserver()

        await hub.handle_message(observer, json.dumps({"type": "subscribe", "project_name": "alpha"}))
        await hub.handle_message(observer, json.dumps({"type": "ping", "payload": {"n": 2}}))

        ack, pong = observer.frames
        assert ack["payload"] == {"subscribed": "alpha"}
        assert pong["type"] == "pong"
        assert pong["payload"] == {"n": 2}
        assert hub.subscribers("alpha") == [observer]

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self):
        hub = BroadcastHub()
        observer = FakeObserver()
        hub.subscribe(observer, "alpha")

        await hub.handle_message(observer, json.dumps({"type": "unsubscribe", "project_name": "alpha"}))
        hub.publish("alpha", "phase_update", {})
        await hub.flush()

        assert observer.frames == [observer.frames[0]]
        assert observer.frames[0]["payload"] == {"unsubscribed": "alpha"}

    @pytest.mark.asyncio
    async def test_ping_is_answered_with_pong(self):
        hub = BroadcastHub()
        observer = FakeObserver()

        await hub.handle_message(observer, json.dumps({"type": "ping", "payload": {"n": 1}}))

        assert observer.frames[0]["type"] == "pong"
        assert observer.frames[0]["payload"] == {"n": 1}

    @pytest.mark.asyncio
    async def test_malformed_frame_gets_error(self):
        hub = BroadcastHub()
        observer = FakeObserver()

        await hub.handle_message(observer, "{broken")

        (error,) = observer.of_type("error")
        assert error["payload"]["error"] == "Invalid message format"
        assert observer in hub.clients

    @pytest.mark.asyncio
    async def test_unknown_frame_type_gets_error(self):
        hub = BroadcastHub()
        observer = FakeObserver()

        await hub.handle_message(observer, json.dumps({"type": "dance"}))

        assert observer.frames[0]["payload"] == {"error": "Unknown message type", "details": {"type": "dance"}}

    @pytest.mark.asyncio
    async def test_subscribe_without_project_name_gets_error(self):
        hub = BroadcastHub()
        observer = FakeObserver()

        await hub.handle_message(observer, json.dumps({"type": "subscribe"}))

        assert observer.frames[0]["payload"]["error"] == "subscribe requires project_name"
        assert hub.get_stats()["subscriptions"] == {}


class TestHeartbeat:
    """Test cases for liveness checks."""

    @pytest.mark.asyncio
    async def test_silent_observers_are_dropped_and_closed(self):
        clock = FakeClock(0.0)
        hub = BroadcastHub(heartbeat_timeout=90.0, clock=clock)
        silent, chatty = FakeObserver(), FakeObserver()
        hub.connect(silent)
        hub.connect(chatty)

        clock.now = 60.0
        await hub.handle_message(chatty, json.dumps({"type": "pong"}))
        dropped = await hub.heartbeat(now=120.0)

        assert dropped == 1
        assert silent.closed is True
        assert list(hub.clients) == [chatty]
        assert chatty.of_type("ping")[0]["payload"] == {"heartbeat": True}


class TestStats:
    def test_stats_count_connections_and_subscriptions(self):
        hub = BroadcastHub()
        first, second = FakeObserver(), FakeObserver()
        hub.subscribe(first, "alpha")
        hub.subscribe(second, "alpha")
        hub.subscribe(second, "beta")

        stats = hub.get_stats()

        assert stats["total_connections"] == 2
        assert stats["subscriptions"] == {"alpha": 2, "beta": 1}
        assert stats["pending_deliveries"] == 0


class TestEngineFanOut:
    """Test cases for engine commits flowing through a real hub."""

    @pytest.mark.asyncio
    async def test_commit_reaches_only_its_project(self, private_store, fixed_clock):
        seed_project(private_store, "alpha", [make_phase("a1")])
        seed_project(private_store, "beta", [make_phase("b1")])
        hub = BroadcastHub(snapshot_loader=private_store.fetch)
        engine = RoadmapEngine(private_store, hub, clock=fixed_clock, session_id="session-7")
        alpha_observer, beta_observer = FakeObserver(), FakeObserver()
        await hub.handle_message(alpha_observer, json.dumps({"type": "subscribe", "project_name": "alpha"}))
        await hub.handle_message(beta_observer, json.dumps({"type": "subscribe", "project_name": "beta"}))
        subscription_frames = list(alpha_observer.frames)

        await engine.insert_phase("beta", {"name": "Hardening"})
        await hub.flush()

        assert alpha_observer.frames == subscription_frames
        (phase_frame,) = beta_observer.of_type("phase_update")
        (log_frame,) = beta_observer.of_type("log_update")
        assert phase_frame["project_name"] == "beta"
        assert phase_frame["session_id"] == "session-7"
        assert log_frame["session_id"] == "session-7"
        assert log_frame["payload"]["entry"]["action"] == "phase_inserted"
        assert log_frame["payload"]["entry"]["session_id"] == "session-7"
