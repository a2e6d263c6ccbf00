"""Tests for waypoint geometry, selection policies, detection, and the scheduler."""

from __future__ import annotations

import random
from unittest.mock import MagicMock

import pytest

from patrolsim.host.documents import Disposition, TokenDoc, Wall
from patrolsim.simulation.clock import Scheduler, VirtualClock
from patrolsim.simulation.detection import DetectionPolicy, detect_tokens, is_friendly
from patrolsim.simulation.selection import (
    next_priority,
    next_sequential,
    next_weighted,
    select_next,
    step_ping_pong,
)
from patrolsim.simulation.waypoint import (
    ACTIVE,
    OCCUPIED,
    Waypoint,
    angle_difference,
    bearing_from_north,
)


def _make_waypoint(wid: str = "w1", x: float = 500.0, y: float = 500.0, **kwargs) -> Waypoint:
    return Waypoint(id=wid, scene_id="scene-1", x=x, y=y, state=ACTIVE, **kwargs)


def _centered_token(tid: str, cx: float, cy: float, **kwargs) -> TokenDoc:
    """A 1x1 token whose centre sits at (cx, cy) on a 100px grid."""
    return TokenDoc(id=tid, name=tid, x=cx - 50, y=cy - 50, **kwargs)


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestWaypointGeometry:
    def test_bearing_is_clockwise_from_north(self):
        assert bearing_from_north((0, 0), (0, -10)) == pytest.approx(0.0)
        assert bearing_from_north((0, 0), (10, 0)) == pytest.approx(90.0)
        assert bearing_from_north((0, 0), (0, 10)) == pytest.approx(180.0)
        assert bearing_from_north((0, 0), (-10, 0)) == pytest.approx(270.0)

    def test_angle_difference_wraps(self):
        assert angle_difference(350, 10) == pytest.approx(20.0)
        assert angle_difference(0, 180) == pytest.approx(180.0)

    def test_range_in_grid_units(self):
        wp = _make_waypoint(detection_range=2)
        assert wp.is_in_range((700, 500), 100) is True
        assert wp.is_in_range((701, 500), 100) is False

    def test_zero_range_sees_nothing(self):
        wp = _make_waypoint(detection_range=0)
        assert wp.is_in_range((500, 500), 100) is False

    def test_vision_cone(self):
        wp = _make_waypoint(facing_direction=0, vision_angle=90)
        assert wp.is_in_vision_cone((500, 300)) is True      # straight north
        assert wp.is_in_vision_cone((560, 400)) is True      # inside the half-angle
        assert wp.is_in_vision_cone((500, 700)) is False     # behind
        assert wp.is_in_vision_cone((700, 500)) is False     # due east

    def test_own_position_always_visible(self):
        wp = _make_waypoint(vision_angle=10)
        assert wp.is_in_vision_cone((500, 500)) is True

    def test_constructor_clamps(self):
        wp = _make_waypoint(detection_range=-3, weight=-1, vision_angle=400)
        assert wp.detection_range == 0
        assert wp.weight == 0
        assert wp.vision_angle == 360


@pytest.mark.unit
class TestWaypointOccupancy:
    def test_occupy_and_vacate(self):
        wp = _make_waypoint()
        listener = MagicMock()
        wp.listener = listener
        assert wp.occupy("guard-1") is True
        assert wp.state == OCCUPIED
        assert wp.vacate("guard-1") is True
        assert wp.state == ACTIVE
        assert listener.call_count == 2

    def test_second_token_refused(self):
        wp = _make_waypoint()
        wp.occupy("guard-1")
        assert wp.occupy("guard-2") is False
        assert wp.occupied_by == "guard-1"

    def test_same_token_can_reoccupy(self):
        wp = _make_waypoint()
        wp.occupy("guard-1")
        assert wp.occupy("guard-1") is True

    def test_disabled_refuses(self):
        wp = _make_waypoint(disabled=True)
        assert wp.occupy("guard-1") is False

    def test_vacate_by_other_token_ignored(self):
        wp = _make_waypoint()
        wp.occupy("guard-1")
        assert wp.vacate("guard-2") is False
        assert wp.occupied_by == "guard-1"

    def test_unknown_state_rejected(self):
        with pytest.raises(ValueError):
            _make_waypoint().set_state("sleeping")

    def test_serialization_keeps_cone(self):
        wp = _make_waypoint(facing_direction=90, vision_angle=120, tags=["gate"])
        restored = Waypoint.from_dict(wp.to_dict())
        assert restored.facing_direction == 90
        assert restored.vision_angle == 120
        assert restored.tags == ["gate"]

    def test_clone_is_unoccupied(self):
        wp = _make_waypoint()
        wp.occupy("guard-1")
        copy = wp.clone("w2")
        assert copy.id == "w2"
        assert copy.occupied_by is None


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestSelection:
    def test_sequential_wraps_and_skips_unusable(self):
        wps = [_make_waypoint("a"), None, _make_waypoint("c", disabled=True)]
        assert next_sequential(wps, 0) == 0

    def test_sequential_next(self):
        wps = [_make_waypoint("a"), _make_waypoint("b"), _make_waypoint("c")]
        assert next_sequential(wps, 2) == 0
        assert next_sequential(wps, 0) == 1

    def test_ping_pong_bounces(self):
        index, direction = 0, 1
        visited = []
        for _ in range(4):
            index, direction = step_ping_pong(index, direction, 3)
            visited.append((index, direction))
        assert visited == [(1, 1), (2, -1), (1, -1), (0, 1)]

    def test_priority_first_wins_ties(self):
        wps = [_make_waypoint("a", priority=1), _make_waypoint("b", priority=5),
               _make_waypoint("c", priority=5)]
        assert next_priority(wps) == 1

    def test_weighted_skips_zero_weight(self):
        rng = MagicMock()
        rng.random.return_value = 0.0
        wps = [_make_waypoint("a", weight=0), _make_waypoint("b", weight=1)]
        assert next_weighted(wps, rng) == 1

    def test_weighted_distribution_follows_weights(self):
        rng = random.Random(11)
        wps = [_make_waypoint("a", weight=1), _make_waypoint("b", weight=9)]
        picks = [next_weighted(wps, rng) for _ in range(2000)]
        assert 0.85 < picks.count(1) / len(picks) < 0.95

    def test_nothing_selectable(self):
        wps = [None, _make_waypoint("b", disabled=True)]
        for pattern in ("sequential", "random", "weighted", "ping-pong", "priority"):
            assert select_next(pattern, wps, 0, 1, random.Random(1)) is None

    def test_empty_route(self):
        assert select_next("random", [], 0, 1, random.Random(1)) is None


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestDetection:
    def test_is_friendly(self):
        assert is_friendly(Disposition.HOSTILE, Disposition.HOSTILE) is True
        assert is_friendly(Disposition.HOSTILE, Disposition.NEUTRAL) is True
        assert is_friendly(Disposition.HOSTILE, Disposition.FRIENDLY) is False

    def test_sees_player_in_range(self, world):
        _, hero = world.player(x=550, y=450)
        wp = _make_waypoint(detection_range=3)
        assert [t.id for t in detect_tokens(world.ctx, wp)] == [hero.id]

    def test_filters(self, world):
        world.player(actor_id="pc-hidden", x=450, y=450)
        world.host.tokens.update("scene-1", "tok-pc-hidden", {"hidden": True})
        world.host.tokens.create("scene-1", _centered_token("goblin", 520, 500,
                                                            disposition=Disposition.HOSTILE))
        world.host.tokens.create("scene-1", _centered_token("cat", 480, 500,
                                                            disposition=Disposition.NEUTRAL))
        world.host.tokens.create("scene-1", _centered_token("far", 2000, 2000,
                                                            disposition=Disposition.FRIENDLY))
        assert detect_tokens(world.ctx, _make_waypoint(detection_range=3)) == []

    def test_guard_never_sees_itself(self, world):
        guard = world.host.tokens.create("scene-1", _centered_token("guard", 500, 500,
                                                                    disposition=Disposition.FRIENDLY))
        assert detect_tokens(world.ctx, _make_waypoint(), guard=guard) == []

    def test_exclude_npc(self, world):
        world.host.tokens.create("scene-1", _centered_token("villager", 500, 550,
                                                            disposition=Disposition.FRIENDLY))
        policy = DetectionPolicy(exclude_npc=True)
        assert detect_tokens(world.ctx, _make_waypoint(), policy=policy) == []

    def test_wall_blocks_line_of_sight(self, world):
        world.player(x=750, y=450)
        world.host.scenes.get("scene-1").walls.append(Wall(650, 0, 650, 1000))
        wp = _make_waypoint(detection_range=5)
        assert len(detect_tokens(world.ctx, wp)) == 1
        policy = DetectionPolicy(require_line_of_sight=True)
        assert detect_tokens(world.ctx, wp, policy=policy) == []

    def test_policy_round_trip(self):
        policy = DetectionPolicy(exclude_hidden=False, require_line_of_sight=True)
        assert DetectionPolicy.from_dict(policy.to_dict()) == policy


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestScheduler:
    def test_fires_in_due_order_with_clock_stepped(self):
        clock = VirtualClock()
        scheduler = Scheduler(clock)
        fired = []
        scheduler.call_later(2.0, lambda: fired.append(("b", clock.now())))
        scheduler.call_later(1.0, lambda: fired.append(("a", clock.now())))
        assert scheduler.advance(5.0) == 2
        assert fired == [("a", 1.0), ("b", 2.0)]
        assert clock.now() == 5.0

    def test_not_due_yet(self):
        scheduler = Scheduler(VirtualClock())
        callback = MagicMock()
        scheduler.call_later(3.0, callback)
        scheduler.advance(2.9)
        callback.assert_not_called()

    def test_cancel_owner(self):
        scheduler = Scheduler(VirtualClock())
        owner = object()
        callback = MagicMock()
        scheduler.call_later(1.0, callback, owner=owner)
        scheduler.call_later(1.0, callback)
        assert scheduler.cancel_owner(owner) == 1
        assert scheduler.pending(owner) == 0
        scheduler.advance(1.0)
        assert callback.call_count == 1

    def test_failing_callback_is_contained(self):
        scheduler = Scheduler(VirtualClock())
        after = MagicMock()
        scheduler.call_later(1.0, MagicMock(side_effect=RuntimeError("boom")))
        scheduler.call_later(1.0, after)
        assert scheduler.advance(1.0) == 2
        after.assert_called_once()
