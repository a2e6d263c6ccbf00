"""Tests for the Patrol blink/walk loops and the PatrolManager registry."""

from __future__ import annotations

import pytest

from patrolsim.config import PatrolSettings
from patrolsim.simulation.manager import PATROL_STORE_KEY
from patrolsim.simulation.patrol import (
    ACTIVE,
    ALERT,
    DWELL,
    IDLE,
    INVISIBLE,
    MOVING,
    PAUSED,
    VISIBLE,
    Patrol,
)

SCENE = "scene-1"


def _make_route(world, *points):
    return [world.waypoint(x, y) for x, y in points]


def _token(world, patrol):
    return world.host.tokens.get(SCENE, patrol.token_id)


# ---------------------------------------------------------------------------
# Blink loop
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestBlinkLoop:
    def test_first_appear_is_synchronous(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        patrol = world.patrol([w1, w2], world.guard())

        assert patrol.start() is True
        token = _token(world, patrol)
        assert (token.x, token.y) == (450, 450)
        assert token.hidden is False
        assert patrol.phase == VISIBLE
        assert patrol.state == ACTIVE
        assert w1.occupied_by == token.id

    def test_disappear_then_appear_at_next(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        patrol = world.patrol([w1, w2], world.guard())
        patrol.start()

        world.advance(3.0)
        token = _token(world, patrol)
        assert token.hidden is True
        assert patrol.phase == INVISIBLE
        assert patrol.current_waypoint_index == 1
        assert w1.occupied_by is None

        world.advance(2.0)
        assert (token.x, token.y) == (950, 450)
        assert token.hidden is False
        assert w2.occupied_by == token.id

    def test_sequential_wraps_around(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        patrol = world.patrol([w1, w2], world.guard())
        patrol.start()
        world.advance(10.0)
        assert patrol.current_waypoint_index == 0
        assert _token(world, patrol).x == 450

    def test_effects_published(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        patrol = world.patrol([w1, w2], world.guard())
        patrol.start()
        world.advance(3.0)
        appear = world.engine.bus.recent("playAppearEffect")
        assert appear[0]["data"]["x"] == 500
        assert appear[0]["data"]["color"] == patrol.color
        assert len(world.engine.bus.recent("playDisappearEffect")) == 1

    def test_held_waypoint_is_skipped(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        w1.occupy("someone-else")
        patrol = world.patrol([w1, w2], world.guard())
        patrol.start()
        assert patrol.phase == INVISIBLE
        assert patrol.current_waypoint_index == 1
        world.advance(2.0)
        assert patrol.phase == VISIBLE
        assert w2.occupied_by == patrol.token_id

    def test_variance_stays_within_spread(self, world):
        w1, = _make_route(world, (500, 500))
        patrol = world.patrol([w1], world.guard(), timingVariance=50)
        for _ in range(50):
            assert 1.5 <= patrol.effective_appear_duration() <= 4.5


# ---------------------------------------------------------------------------
# Walk loop
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestWalkLoop:
    def test_travel_time_follows_walk_speed(self, world):
        w1, w2 = _make_route(world, (500, 500), (900, 500))
        patrol = world.patrol([w1, w2], world.guard(x=450, y=450), mode="walk")

        patrol.start()
        world.advance(0.0)
        assert patrol.phase == DWELL
        assert w1.occupied_by == patrol.token_id

        world.advance(3.0)
        assert patrol.phase == MOVING
        assert patrol.current_waypoint_index == 1
        assert _token(world, patrol).x == 850
        assert w1.occupied_by is None

        world.advance(1.5)
        assert patrol.phase == MOVING
        world.advance(0.5)
        assert patrol.phase == DWELL
        assert w2.occupied_by == patrol.token_id

    def test_walk_reveals_hidden_guard(self, world):
        w1, = _make_route(world, (500, 500))
        patrol = world.patrol([w1], world.guard(), mode="walk")
        patrol.start()
        assert _token(world, patrol).hidden is False


# ---------------------------------------------------------------------------
# Control
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestPatrolControl:
    def test_pause_cancels_timers(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        patrol = world.patrol([w1, w2], world.guard())
        patrol.start()
        assert world.engine.scheduler.pending(owner=patrol) > 0

        assert patrol.pause() is True
        assert patrol.state == PAUSED
        assert world.engine.scheduler.pending(owner=patrol) == 0
        world.advance(10.0)
        assert patrol.current_waypoint_index == 0

    def test_resume_restarts_loop(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        patrol = world.patrol([w1, w2], world.guard())
        patrol.start()
        patrol.pause()
        assert patrol.resume() is True
        assert patrol.state == ACTIVE
        assert world.engine.scheduler.pending(owner=patrol) > 0
        world.advance(3.0)
        assert patrol.current_waypoint_index == 1

    def test_resume_only_from_paused(self, world):
        w1, = _make_route(world, (500, 500))
        patrol = world.patrol([w1], world.guard())
        assert patrol.resume() is False
        assert patrol.pause() is False

    def test_stop_leaves_guard_visible(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        patrol = world.patrol([w1, w2], world.guard())
        patrol.start()
        world.advance(3.0)
        assert _token(world, patrol).hidden is True

        patrol.stop()
        assert patrol.state == IDLE
        assert _token(world, patrol).hidden is False
        assert world.engine.scheduler.pending(owner=patrol) == 0
        assert all(w.occupied_by is None for w in (w1, w2))

    def test_toggle_cycles(self, world):
        w1, = _make_route(world, (500, 500))
        patrol = world.patrol([w1], world.guard())
        patrol.toggle()
        assert patrol.state == ACTIVE
        patrol.toggle()
        assert patrol.state == PAUSED
        patrol.toggle()
        assert patrol.state == ACTIVE

    def test_engage_combat_freezes_visible(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        patrol = world.patrol([w1, w2], world.guard())
        patrol.start()
        world.advance(3.0)
        patrol.engage_combat()
        assert patrol.state == PAUSED
        assert _token(world, patrol).hidden is False
        assert world.engine.scheduler.pending(owner=patrol) == 0

    def test_start_without_waypoints_warns(self, world):
        patrol = world.patrol([], world.guard())
        assert patrol.start() is False
        assert 'Patrol "Night Watch" has no waypoints!' in world.notifications()

    def test_start_without_token_warns(self, world):
        w1, = _make_route(world, (500, 500))
        patrol = world.patrol([w1])
        assert patrol.start() is False
        assert 'Patrol "Night Watch" has no token!' in world.notifications()

    def test_disabled_patrol_does_not_start_quietly(self, world):
        w1, = _make_route(world, (500, 500))
        patrol = world.patrol([w1], world.guard(), disabled=True)
        assert patrol.start() is False
        assert world.notifications() == []

    def test_route_editing(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        patrol = world.patrol([w1], world.guard())
        assert patrol.add_waypoint(w2.id) is True
        assert patrol.add_waypoint(w2.id) is False
        patrol.current_waypoint_index = 1
        assert patrol.remove_waypoint(w2.id) is True
        assert patrol.current_waypoint_index == 0

    def test_duplicate_waypoint_ids_collapse(self):
        patrol = Patrol(id="p1", scene_id=SCENE, waypoint_ids=["a", "b", "a"])
        assert patrol.waypoint_ids == ["a", "b"]


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestPatrolDetection:
    def test_detects_once_per_presence(self, world):
        w1, = _make_route(world, (500, 500))
        world.player(x=550, y=450)
        patrol = world.patrol([w1], world.guard(), detectEnabled=True)
        patrol.start()
        world.advance(2.9)
        assert world.notifications().count("Night Watch spotted Hero!") == 1
        assert patrol.alert_level == 1

    def test_detection_prompts_player_owner(self, world):
        w1, = _make_route(world, (500, 500))
        world.player(x=550, y=450)
        patrol = world.patrol([w1], world.guard(), detectEnabled=True)
        patrol.start()
        world.advance(0.5)
        prompts = world.sent("openInteractionWindow")
        assert len(prompts) == 1
        assert prompts[0]["targetUserId"] == "player1"
        assert prompts[0]["patrolId"] == patrol.id

    def test_alert_action_publishes_alert(self, world):
        w1, = _make_route(world, (500, 500))
        _, hero = world.player(x=550, y=450)
        patrol = world.patrol([w1], world.guard(), detectionAction="alert")
        patrol.start()
        fresh = patrol.run_detection()
        assert [t.id for t in fresh] == [hero.id]
        assert patrol.state == ALERT
        alert = world.engine.bus.recent("alert")[-1]["data"]
        assert alert == {"patrolId": patrol.id, "sceneId": SCENE, "waypointId": w1.id,
                         "tokenIds": [hero.id]}

    def test_seen_set_resets_when_token_leaves(self, world):
        w1, = _make_route(world, (500, 500))
        _, hero = world.player(x=550, y=450)
        patrol = world.patrol([w1], world.guard())
        patrol.start()
        assert len(patrol.run_detection()) == 1
        assert patrol.run_detection() == []
        world.host.tokens.update(SCENE, hero.id, {"x": 3000})
        assert patrol.run_detection() == []
        world.host.tokens.update(SCENE, hero.id, {"x": 550})
        assert len(patrol.run_detection()) == 1

    def test_combat_action_builds_encounter(self, world):
        w1, = _make_route(world, (500, 500))
        _, hero = world.player(x=550, y=450)
        patrol = world.patrol([w1], world.guard(), detectionAction="combat")
        patrol.start()
        patrol.run_detection()
        combat = world.host.combat.active(SCENE)
        assert {c.token_id for c in combat.combatants} == {patrol.token_id, hero.id}

    def test_reset_alert(self, world):
        w1, = _make_route(world, (500, 500))
        patrol = world.patrol([w1], world.guard())
        patrol.start()
        patrol.raise_alert()
        assert patrol.state == ALERT
        patrol.reset_alert()
        assert patrol.state == ACTIVE
        assert patrol.alert_level == 0


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestPatrolManager:
    def test_patrol_persisted_on_create(self, world):
        w1, = _make_route(world, (500, 500))
        patrol = world.patrol([w1], world.guard())
        records = world.host.storage.get(PATROL_STORE_KEY)[SCENE]
        assert [r["id"] for r in records] == [patrol.id]

    def test_defaults_come_from_settings(self, world):
        patrol = world.manager.create_patrol({"name": "Plain"})
        assert patrol.mode == "blink"
        assert patrol.appear_duration == 3.0
        assert patrol.color is not None

    def test_teardown_and_return_restarts_active(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        patrol = world.patrol([w1, w2], world.guard())
        patrol.start()

        world.engine.on_canvas_teardown()
        assert world.manager.get_patrols() == []

        world.engine.on_canvas_ready(SCENE)
        restored = world.manager.get_patrol(patrol.id)
        assert restored.state == ACTIVE
        assert restored.phase == VISIBLE
        assert world.manager.get_waypoint(w1.id).occupied_by == restored.token_id

    def test_idle_patrols_stay_idle_on_load(self, world):
        w1, = _make_route(world, (500, 500))
        patrol = world.patrol([w1], world.guard())
        world.engine.on_canvas_teardown()
        world.engine.on_canvas_ready(SCENE)
        assert world.manager.get_patrol(patrol.id).state == IDLE

    def test_token_delete_stops_patrol(self, world):
        w1, = _make_route(world, (500, 500))
        patrol = world.patrol([w1], world.guard())
        patrol.start()
        token_id = patrol.token_id
        world.host.tokens.delete(SCENE, token_id)
        world.engine.on_token_deleted(SCENE, token_id)
        assert patrol.state == IDLE
        assert patrol.token_id is None

    def test_max_patrol_limit(self, world_factory):
        world = world_factory(PatrolSettings(max_active_patrols=1))
        assert world.manager.create_patrol({"name": "A"}) is not None
        assert world.manager.create_patrol({"name": "B"}) is None
        assert "Maximum of 1 patrols per scene reached" in world.notifications()

    def test_delete_waypoint_updates_routes(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        patrol = world.patrol([w1, w2], world.guard())
        assert world.manager.delete_waypoint(w1.id) is True
        assert patrol.waypoint_ids == [w2.id]
        assert world.manager.delete_waypoint(w1.id) is False

    def test_statistics(self, world):
        w1, w2, w3 = _make_route(world, (500, 500), (1000, 500), (1500, 500))
        running = world.patrol([w1], world.guard())
        world.patrol([w2], world.guard(), mode="walk")
        running.start()
        stats = world.manager.get_statistics()
        assert stats["totalPatrols"] == 2
        assert stats["activePatrols"] == 1
        assert stats["totalWaypoints"] == 3
        assert stats["unassignedWaypoints"] == 1
        assert stats["blinkPatrols"] == 1
        assert stats["walkPatrols"] == 1

    def test_bulk_start_and_stop(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        world.patrol([w1], world.guard())
        world.patrol([w2], world.guard())
        assert world.manager.start_all() == 2
        assert world.manager.pause_all() == 2
        assert world.manager.resume_all() == 2
        assert world.manager.stop_all() == 2
        assert world.manager.get_active_patrols() == []

    def test_apply_remote_update(self, world):
        w1, w2 = _make_route(world, (500, 500), (1000, 500))
        patrol = world.patrol([w1, w2], world.guard())
        payload = {"patrolId": patrol.id, "state": "alert", "currentWaypointIndex": 1,
                   "alertLevel": 2, "phase": "visible"}
        assert world.manager.apply_remote_update(payload) is True
        assert world.manager.apply_remote_update(payload) is True
        assert (patrol.state, patrol.current_waypoint_index, patrol.alert_level) == (ALERT, 1, 2)
        assert world.manager.apply_remote_update({"patrolId": "missing"}) is False

    def test_export_import_remaps_waypoints(self, world):
        w1, = _make_route(world, (500, 500))
        world.patrol([w1], world.guard())
        blob = world.manager.export_patrols()

        result = world.manager.import_patrols(blob)
        assert result == {"patrols": 1, "waypoints": 1}
        imported = [p for p in world.manager.get_patrols() if p.token_id is None]
        assert len(imported) == 1
        assert imported[0].waypoint_ids != [w1.id]
        assert world.manager.get_waypoint(imported[0].waypoint_ids[0]).x == 500
