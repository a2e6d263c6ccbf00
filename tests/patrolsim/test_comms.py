"""Tests for the domain EventBus and the peer BroadcastLayer."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from patrolsim.comms.broadcast import BroadcastLayer, active_gms
from patrolsim.comms.event_bus import EventBus
from patrolsim.host.documents import User
from patrolsim.host.memory import InMemoryHost, LoopbackNetwork


def _make_peer(network: LoopbackNetwork, user_id: str, is_gm: bool = True,
               active: bool = True) -> BroadcastLayer:
    host = InMemoryHost(network=network,
                        user=User(id=user_id, name=user_id, is_gm=is_gm, active=active))
    return BroadcastLayer(host.transport)


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestEventBus:
    def test_subscriber_receives_envelope(self):
        bus = EventBus()
        q = bus.subscribe()
        bus.publish("alert", {"patrolId": "p1"})
        assert q.get_nowait() == {"type": "alert", "data": {"patrolId": "p1"}}

    def test_filter_restricts_types(self):
        bus = EventBus()
        q = bus.subscribe({"captureResolved"})
        bus.publish("alert", {})
        bus.publish("captureResolved", {"id": "c1"})
        assert q.qsize() == 1
        assert q.get_nowait()["type"] == "captureResolved"

    def test_full_queue_drops_oldest(self):
        bus = EventBus()
        q = bus.subscribe("tick")
        for i in range(EventBus.QUEUE_SIZE + 5):
            bus.publish("tick", {"i": i})
        assert q.qsize() == EventBus.QUEUE_SIZE
        assert q.get_nowait()["data"]["i"] == 5

    def test_listener_called_synchronously(self):
        bus = EventBus()
        seen = []
        bus.on("alert", seen.append)
        bus.publish("alert", {"x": 1})
        assert seen == [{"type": "alert", "data": {"x": 1}}]

    def test_failing_listener_does_not_block_others(self):
        bus = EventBus()
        seen = []
        bus.on("alert", MagicMock(side_effect=RuntimeError("boom")))
        bus.on("alert", seen.append)
        bus.publish("alert", {})
        assert len(seen) == 1

    def test_off_removes_listener(self):
        bus = EventBus()
        seen = []
        bus.on("alert", seen.append)
        bus.off("alert", seen.append)
        bus.publish("alert", {})
        assert seen == []

    def test_unsubscribe(self):
        bus = EventBus()
        q = bus.subscribe()
        bus.unsubscribe(q)
        bus.publish("alert", {})
        assert q.empty()

    def test_recent_by_type(self):
        bus = EventBus()
        bus.publish("a", {})
        bus.publish("b", {})
        bus.publish("a", {"n": 2})
        assert [m.get("data") for m in bus.recent("a")] == [{}, {"n": 2}]
        assert len(bus.recent()) == 3


# ---------------------------------------------------------------------------
# Primary election
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestPrimaryElection:
    def test_smallest_gm_id_is_primary(self):
        network = LoopbackNetwork()
        b = _make_peer(network, "gm-b")
        a = _make_peer(network, "gm-a")
        assert a.is_primary() is True
        assert b.is_primary() is False
        assert b.primary_id() == "gm-a"

    def test_inactive_gm_is_skipped(self):
        network = LoopbackNetwork()
        a = _make_peer(network, "gm-a", active=False)
        b = _make_peer(network, "gm-b")
        assert a.is_primary() is False
        assert b.is_primary() is True

    def test_players_never_primary(self):
        network = LoopbackNetwork()
        player = _make_peer(network, "aaa-player", is_gm=False)
        _make_peer(network, "gm")
        assert player.is_primary() is False
        assert player.primary_id() == "gm"

    def test_no_gm_means_no_primary(self):
        network = LoopbackNetwork()
        player = _make_peer(network, "p1", is_gm=False)
        assert player.is_primary() is False
        assert player.primary_id() is None

    def test_active_gms_sorted(self):
        users = [User(id="z", is_gm=True), User(id="p", is_gm=False), User(id="b", is_gm=True)]
        assert [u.id for u in active_gms(users)] == ["b", "z"]


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestBroadcastMessaging:
    def test_delivers_to_other_peers_with_sender(self):
        network = LoopbackNetwork()
        a = _make_peer(network, "gm-a")
        b = _make_peer(network, "gm-b")
        received = []
        b.on("telegraph", lambda payload, sender: received.append((payload, sender)))
        assert a.emit("telegraph", {"x": 1}) is True
        assert received == [({"x": 1}, "gm-a")]

    def test_own_echo_dropped(self):
        network = LoopbackNetwork()
        a = _make_peer(network, "gm-a")
        handler = MagicMock()
        a.on("telegraph", handler)
        a.emit("telegraph", {})
        handler.assert_not_called()

    def test_unknown_type_refused(self):
        a = _make_peer(LoopbackNetwork(), "gm-a")
        assert a.emit("selfDestruct", {}) is False
        with pytest.raises(ValueError):
            a.on("selfDestruct", MagicMock())

    def test_malformed_message_dropped(self):
        network = LoopbackNetwork()
        b = _make_peer(network, "gm-b")
        handler = MagicMock()
        b.on("telegraph", handler)
        network.deliver({"type": "telegraph", "payload": {}})
        handler.assert_not_called()
        assert b.stats["dropped"] == 1

    def test_failing_handler_isolated(self):
        network = LoopbackNetwork()
        a = _make_peer(network, "gm-a")
        b = _make_peer(network, "gm-b")
        second = MagicMock()
        b.on("telegraph", MagicMock(side_effect=RuntimeError("boom")))
        b.on("telegraph", second)
        a.emit("telegraph", {})
        second.assert_called_once()

    def test_transport_failure_returns_false(self):
        transport = MagicMock()
        transport.user_id = "gm"
        transport.emit.side_effect = ConnectionError("socket closed")
        layer = BroadcastLayer(transport)
        assert layer.emit("telegraph", {}) is False
        assert layer.stats["sent"] == 0

    def test_is_gm(self):
        network = LoopbackNetwork()
        a = _make_peer(network, "gm-a")
        _make_peer(network, "p1", is_gm=False)
        assert a.is_gm() is True
        assert a.is_gm("p1") is False
