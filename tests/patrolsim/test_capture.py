"""Tests for the capture pipeline: bribery, outcome selection, and the executors."""

from __future__ import annotations

import random
from collections import Counter
from unittest.mock import MagicMock

import pytest

from patrolsim.capture.outcomes import (
    BLINDFOLD,
    BRIBE_SUCCESS,
    COMBAT,
    DISREGARD,
    GM_TRIGGERED,
    JAIL,
    THEFT,
    weighted_draw,
)
from patrolsim.capture.theft import is_quest_item
from patrolsim.config import PatrolSettings
from patrolsim.errors import UnknownOutcomeError
from patrolsim.host.documents import Item, User
from patrolsim.simulation.patrol import ALERT, PAUSED

SCENE = "scene-1"


def _settings(**overrides) -> PatrolSettings:
    values = {
        "bribery_enabled": False,
        "assistant_chance": 0.0,
        "bleed_out_enabled": False,
        "capture_outcome_weights": {"disregard": 100},
    }
    values.update(overrides)
    return PatrolSettings(**values)


def _caught(world, patrol_kwargs=None, guard_actor=None, **player_kwargs):
    """A started patrol plus a player token standing on the guard's cell."""
    w1 = world.waypoint(500, 500)
    patrol = world.patrol([w1], world.guard(actor=guard_actor), **(patrol_kwargs or {}))
    patrol.start()
    actor, hero = world.player(**player_kwargs)
    return patrol, actor, hero


def _gold(actor) -> int:
    return actor.system["currency"]["gp"]


# ---------------------------------------------------------------------------
# Disregard and GM-forced outcomes
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestDisregard:
    def test_disregard_resets_alert(self, world):
        patrol, _, hero = _caught(world)
        patrol.raise_alert()
        assert patrol.state == ALERT

        event = world.engine.capture.initiate_capture(patrol, hero)
        assert event.outcome == DISREGARD
        assert event.resolved is True
        assert patrol.alert_level == 0
        assert 'Night Watch glances at Hero... "Must\'ve been the wind."' in world.notifications()

    def test_journal_and_bus(self, world):
        patrol, _, hero = _caught(world)
        event = world.engine.capture.initiate_capture(patrol, hero)
        last = world.engine.journal.entries()[-1]
        assert last["type"] == "capture"
        assert last["undo"] == {"actions": []}
        assert world.engine.bus.recent("captureResolved")[-1]["data"]["id"] == event.id
        assert world.engine.bus.recent("captureInitiated")[-1]["data"]["tokenId"] == hero.id

    def test_gm_triggered_without_patrol(self, world):
        _, hero = world.player()
        event = world.engine.capture.trigger_outcome(hero, DISREGARD)
        assert event.patrol_id == GM_TRIGGERED
        assert event.gm_triggered is True
        assert 'Guard glances at Hero... "Must\'ve been the wind."' in world.notifications()

    def test_capture_disabled(self, world_factory):
        world = world_factory(_settings(capture_enabled=False))
        patrol, _, hero = _caught(world)
        assert world.engine.capture.initiate_capture(patrol, hero) is None

    def test_player_peer_cannot_capture(self, world_factory):
        world = world_factory(_settings(), user=User(id="player1", name="P", is_gm=False))
        _, hero = world.player()
        assert world.engine.capture.initiate_capture(MagicMock(), hero) is None
        assert world.engine.capture.trigger_outcome(hero, DISREGARD) is None

    def test_registry_lists_captures(self, world):
        patrol, _, hero = _caught(world)
        event = world.engine.capture.initiate_capture(patrol, hero)
        capture = world.engine.capture
        assert capture.get_capture(event.id) is event
        assert capture.get_captures() == [event]
        assert capture.get_captures(unresolved_only=True) == []


# ---------------------------------------------------------------------------
# Combat
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestCombatOutcome:
    def test_combat_engages_guard(self, world_factory):
        world = world_factory(_settings(capture_outcome_weights={"combat": 100}))
        patrol, _, hero = _caught(world)

        event = world.engine.capture.initiate_capture(patrol, hero)
        assert event.outcome == COMBAT
        combat = world.host.combat.get(event.details["combatId"])
        assert combat.has_token(hero.id)
        assert combat.has_token(patrol.token_id)
        assert patrol.state == PAUSED
        assert "Night Watch attacks Hero!" in world.notifications()

        start = world.engine.bus.recent("captureStart")[-1]["data"]
        assert start == {"captureId": event.id, "patrolId": patrol.id, "sceneId": SCENE,
                         "tokenId": hero.id, "combatId": combat.id}

    def test_joins_existing_combat(self, world_factory):
        world = world_factory(_settings(capture_outcome_weights={"combat": 100}))
        existing = world.host.combat.create(SCENE)
        patrol, _, hero = _caught(world)
        event = world.engine.capture.initiate_capture(patrol, hero)
        assert event.details["combatId"] == existing.id

    def test_nearby_patrols_alerted(self, world_factory):
        world = world_factory(_settings(capture_outcome_weights={"combat": 100}))
        patrol, _, hero = _caught(world)
        near = world.patrol([world.waypoint(800, 500)], world.guard(name="Near"), name="Near")
        far = world.patrol([world.waypoint(3000, 500)], world.guard(name="Far"), name="Far")
        near.start()
        far.start()

        event = world.engine.capture.initiate_capture(patrol, hero)
        assert event.details["alerted"] == [near.id]
        assert near.state == ALERT
        assert far.state != ALERT

    def test_zero_weights_default_to_combat(self, world_factory):
        world = world_factory(_settings(capture_outcome_weights={"theft": 0}))
        patrol, _, hero = _caught(world)
        assert world.engine.capture.initiate_capture(patrol, hero).outcome == COMBAT


# ---------------------------------------------------------------------------
# Theft
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestTheftOutcome:
    def test_currency_taken_and_undone(self, world_factory):
        world = world_factory(_settings(capture_outcome_weights={"theft": 100},
                                        theft_targeting_weights={"currency": 100}))
        patrol, actor, hero = _caught(world)

        event = world.engine.capture.initiate_capture(patrol, hero)
        assert event.outcome == THEFT
        assert _gold(actor) == 75
        assert event.details["stolen"] == [{"type": "currency", "name": "25 gold", "amount": 25}]
        assert ("warning", "Night Watch confiscated: 25 gold", "player1") in \
            world.host.dialogs.notifications
        assert 'Night Watch released Hero after the "inspection".' in world.notifications()

        entry = world.engine.journal.entries()[-1]
        assert world.engine.journal.undo(entry)["success"] is True
        assert _gold(actor) == 100

    def test_equipment_taken(self, world_factory):
        world = world_factory(_settings(capture_outcome_weights={"theft": 100},
                                        theft_targeting_weights={"equipment": 100},
                                        theft_max_items=1))
        dagger = Item(id="dagger", name="Dagger", type="weapon")
        patrol, actor, hero = _caught(world, items=[dagger])

        world.engine.capture.initiate_capture(patrol, hero)
        assert actor.get_item("dagger") is None
        assert "Night Watch confiscated: Dagger" in world.notifications()
        assert _gold(actor) == 100

    def test_gold_and_weapon_taken_and_undone(self, world_factory):
        world = world_factory(_settings(capture_outcome_weights={"theft": 100},
                                        theft_targeting_weights={"currency": 50, "equipment": 50},
                                        theft_max_items=2))
        dagger = Item(id="dagger", name="Dagger", type="weapon", quantity=1)
        patrol, actor, hero = _caught(world, items=[dagger])

        event = world.engine.capture.initiate_capture(patrol, hero)
        assert sorted(s["type"] for s in event.details["stolen"]) == ["currency", "equipment"]
        assert _gold(actor) == 75
        assert actor.get_item("dagger") is None

        entry = world.engine.journal.entries()[-1]
        assert world.engine.journal.undo(entry)["success"] is True
        assert _gold(actor) == 100
        restored = [i for i in actor.items if i.name == "Dagger"]
        assert len(restored) == 1
        assert restored[0].type == "weapon"
        assert restored[0].quantity == 1

    def test_quest_items_are_never_taken(self, world_factory):
        world = world_factory(_settings(capture_outcome_weights={"theft": 100},
                                        theft_targeting_weights={"equipment": 100}))
        key = Item(id="key", name="Crypt Key", type="tool")
        patrol, actor, hero = _caught(world, items=[key])

        world.engine.capture.initiate_capture(patrol, hero)
        assert actor.get_item("key") is not None
        # nothing eligible, so the pick falls back to currency
        assert _gold(actor) == 75

    def test_nothing_worth_taking(self, world_factory, stat_block):
        world = world_factory(_settings(capture_outcome_weights={"theft": 100}))
        patrol, _, hero = _caught(world, system=stat_block(gold=0))
        event = world.engine.capture.initiate_capture(patrol, hero)
        assert event.details["stolen"] == []
        assert "Night Watch searched Hero but found nothing worth taking." in world.notifications()

    def test_haul_transferred_to_guard(self, world_factory):
        world = world_factory(_settings(capture_outcome_weights={"theft": 100},
                                        theft_targeting_weights={"currency": 100},
                                        theft_transfer_to_guard=True))
        guard_actor = world.npc(actor_id="npc-guard", name="Watchman")
        patrol, actor, hero = _caught(world, guard_actor=guard_actor)

        world.engine.capture.initiate_capture(patrol, hero)
        assert _gold(guard_actor) == 125

        world.engine.journal.undo(world.engine.journal.entries()[-1])
        assert _gold(guard_actor) == 100
        assert _gold(actor) == 100

    def test_is_quest_item(self):
        assert is_quest_item(Item(id="a", name="Quest Scroll")) is True
        assert is_quest_item(Item(id="b", name="Sword", rarity="artifact")) is True
        assert is_quest_item(Item(id="c", name="Rope", flags={"critical": True})) is True
        assert is_quest_item(Item(id="d", name="Rope")) is False


# ---------------------------------------------------------------------------
# Blindfold
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestBlindfoldOutcome:
    def _world(self, world_factory):
        return world_factory(_settings(capture_outcome_weights={"blindfold": 100},
                                       blindfold_min_duration=10, blindfold_max_duration=10))

    def test_timeline(self, world_factory):
        world = self._world(world_factory)
        patrol, _, hero = _caught(world)
        patrol.stop()

        event = world.engine.capture.initiate_capture(patrol, hero)
        assert event.outcome == BLINDFOLD
        assert event.details["duration"] == 10
        assert world.sent("blindfold") == [{"targetUserId": "player1", "tokenId": hero.id}]
        assert world.engine.capture.blindfold.is_blindfolded(hero.id) is True

        world.advance(3.0)
        moved = world.host.tokens.get(SCENE, hero.id)
        assert moved.hidden is True
        assert moved.x % 100 == 0

        world.advance(7.0)
        assert world.host.tokens.get(SCENE, hero.id).hidden is False
        assert world.sent("unblind") == [{"targetUserId": "player1", "tokenId": hero.id}]
        assert "Hero has been relocated... somewhere." in world.notifications()
        assert world.engine.capture.blindfold.is_blindfolded(hero.id) is False

    def test_undo_restores_position(self, world_factory):
        world = self._world(world_factory)
        patrol, _, hero = _caught(world)
        patrol.stop()
        world.engine.capture.initiate_capture(patrol, hero)
        world.advance(10.0)

        world.engine.journal.undo(world.engine.journal.entries()[-1])
        back = world.host.tokens.get(SCENE, hero.id)
        assert (back.x, back.y) == (450, 450)
        assert back.hidden is False


# ---------------------------------------------------------------------------
# Jail
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestJailOutcome:
    def test_jail_and_undo(self, world_factory):
        world = world_factory(_settings(capture_outcome_weights={"jail": 100}))
        patrol, _, hero = _caught(world)

        event = world.engine.capture.initiate_capture(patrol, hero)
        assert event.outcome == JAIL
        jail_id = event.details["jailSceneId"]
        assert world.engine.jail.is_prisoner("pc-1") is True
        jailed = world.engine.bus.recent("playerJailed")[-1]["data"]
        assert jailed["jailSceneId"] == jail_id
        assert jailed["patrolName"] == "Night Watch"

        world.engine.journal.undo(world.engine.journal.entries()[-1])
        assert world.engine.jail.is_prisoner("pc-1") is False
        assert world.host.tokens.get(SCENE, hero.id) is not None

    def test_jail_failure_falls_back_to_combat(self, world_factory):
        world = world_factory(_settings(capture_outcome_weights={"jail": 100}, jail_enabled=False))
        patrol, _, hero = _caught(world)

        event = world.engine.capture.initiate_capture(patrol, hero)
        assert event.outcome == COMBAT
        assert event.details["jailFailed"] is True
        assert "combatId" in event.details
        assert "Failed to send player to jail!" in world.notifications()


# ---------------------------------------------------------------------------
# Bribery
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestBribery:
    def test_bribe_accepted(self, world_factory):
        world = world_factory(_settings(bribery_enabled=True, bribery_chance=100))
        patrol, actor, hero = _caught(world)

        event = world.engine.capture.initiate_capture(patrol, hero)
        assert event.outcome == BRIBE_SUCCESS
        assert event.bribe_amount == 50
        assert _gold(actor) == 50
        assert "Night Watch accepted the bribe and released Hero" in world.notifications()
        decision = [e for e in world.engine.journal.entries() if e["type"] == "bribery"][-1]
        assert decision["payload"]["threshold"] == pytest.approx(37.5)

    def test_bribe_refused_by_chance(self, world_factory):
        world = world_factory(_settings(bribery_enabled=True, bribery_chance=0))
        patrol, actor, hero = _caught(world)
        event = world.engine.capture.initiate_capture(patrol, hero)
        assert event.outcome == DISREGARD
        assert event.bribe_amount == 50
        assert _gold(actor) == 100

    def test_bribe_refused_without_gold(self, world_factory, stat_block):
        world = world_factory(_settings(bribery_enabled=True, bribery_chance=100))
        patrol, actor, hero = _caught(world, system=stat_block(gold=10))
        assert world.engine.capture.initiate_capture(patrol, hero).outcome == DISREGARD
        assert _gold(actor) == 10

    def test_multiplier_scales_bribe(self, world_factory):
        world = world_factory(_settings(bribery_enabled=True, bribery_chance=100))
        patrol, actor, hero = _caught(world, patrol_kwargs={"bribeMultiplier": 1.5})
        event = world.engine.capture.initiate_capture(patrol, hero)
        assert event.bribe_amount == 75
        assert _gold(actor) == 25

    def test_skip_bribery(self, world_factory):
        world = world_factory(_settings(bribery_enabled=True, bribery_chance=100))
        patrol, actor, hero = _caught(world)
        event = world.engine.capture.initiate_capture(patrol, hero, skip_bribery=True)
        assert event.outcome == DISREGARD
        assert event.bribe_amount is None

    def test_bribe_undo_restores_gold(self, world_factory):
        world = world_factory(_settings(bribery_enabled=True, bribery_chance=100))
        patrol, actor, hero = _caught(world)
        world.engine.capture.initiate_capture(patrol, hero)
        world.engine.journal.undo(world.engine.journal.entries()[-1])
        assert _gold(actor) == 100


# ---------------------------------------------------------------------------
# Approval and automation
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestApproval:
    def test_bribery_waits_for_approval(self, world_factory):
        world = world_factory(_settings(bribery_enabled=True, bribery_chance=100,
                                        automate_require_approval=True))
        patrol, actor, hero = _caught(world)

        event = world.engine.capture.initiate_capture(patrol, hero)
        assert event.resolved is False
        assert event.details["awaiting"] == "bribery"
        entry = world.engine.pending.list()[0]
        assert entry["type"] == "bribery"
        assert entry["payload"]["accepted"] is True
        assert entry["payload"]["captureId"] == event.id
        assert _gold(actor) == 100

        assert world.engine.pending.approve(0) is True
        assert event.outcome == BRIBE_SUCCESS
        assert "awaiting" not in event.details
        assert _gold(actor) == 50

    def test_outcome_waits_for_approval(self, world_factory):
        world = world_factory(_settings(capture_outcome_weights={"theft": 30, "combat": 10},
                                        automate_decisions=True,
                                        automate_require_approval=True))
        patrol, actor, hero = _caught(world)

        event = world.engine.capture.initiate_capture(patrol, hero)
        entry = world.engine.pending.list()[0]
        assert entry["type"] == "captureOutcome"
        assert entry["payload"]["outcome"] == THEFT
        assert event.resolved is False

        assert world.engine.pending.approve(0) is True
        assert event.outcome == THEFT
        assert _gold(actor) == 75

    def test_automated_choice_without_approval(self, world_factory):
        world = world_factory(_settings(capture_outcome_weights={"disregard": 50, "blindfold": 10},
                                        automate_decisions=True))
        patrol, _, hero = _caught(world)
        assert world.engine.capture.initiate_capture(patrol, hero).outcome == DISREGARD
        decision = [e for e in world.engine.journal.entries() if e["type"] == "captureOutcome"]
        assert decision[-1]["provider"] == "system"

    def test_patrol_override_beats_setting(self, world_factory):
        world = world_factory(_settings(bribery_enabled=True, bribery_chance=100,
                                        automate_require_approval=True))
        patrol, _, hero = _caught(world, patrol_kwargs={"automateRequireApproval": False})
        assert world.engine.capture.initiate_capture(patrol, hero).outcome == BRIBE_SUCCESS

    def test_resolve_with_random(self, world_factory):
        world = world_factory(_settings(bribery_enabled=True, bribery_chance=100,
                                        automate_require_approval=True))
        patrol, _, hero = _caught(world)
        event = world.engine.capture.initiate_capture(patrol, hero)
        assert world.engine.capture.resolve_bribery(event.id, "random") is True
        assert event.outcome == DISREGARD

    def test_resolve_rejects_unknown(self, world_factory):
        world = world_factory(_settings(bribery_enabled=True, bribery_chance=100,
                                        automate_require_approval=True))
        patrol, _, hero = _caught(world)
        event = world.engine.capture.initiate_capture(patrol, hero)
        capture = world.engine.capture
        assert capture.resolve_bribery("nope", "random") is False
        assert capture.resolve_bribery(event.id, "teleport") is False
        assert capture.resolve_bribery(event.id, DISREGARD) is True
        assert capture.resolve_bribery(event.id, DISREGARD) is False


# ---------------------------------------------------------------------------
# Failure handling and the draw
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestFailureAndDraw:
    def test_executor_failure_hides_token(self, world):
        patrol, _, hero = _caught(world)
        capture = world.engine.capture
        capture._execute_disregard = MagicMock(side_effect=RuntimeError("boom"))

        event = capture.initiate_capture(patrol, hero)
        assert event.resolved is True
        assert event.details["fallback"] == "hidden"
        assert world.host.tokens.get(SCENE, hero.id).hidden is True
        last = world.engine.journal.entries()[-1]
        assert last["undo"]["actions"] == [{"action": "unhideToken", "sceneId": SCENE,
                                            "tokenId": hero.id}]

    def test_weighted_draw_boundaries(self):
        rng = MagicMock()
        rng.random.return_value = 0.5
        assert weighted_draw({"a": 1, "b": 1}, rng) == "a"
        rng.random.return_value = 0.75
        assert weighted_draw({"a": 1, "b": 1}, rng) == "b"
        rng.random.return_value = 0.0
        assert weighted_draw({"a": 0, "b": 3}, rng) == "b"

    def test_weighted_draw_frequencies(self):
        rng = random.Random(1234)
        weights = {COMBAT: 50, THEFT: 30, JAIL: 20}
        counts = Counter(weighted_draw(weights, rng) for _ in range(100_000))
        assert abs(counts[COMBAT] - 50_000) <= 800
        assert abs(counts[THEFT] - 30_000) <= 700
        assert abs(counts[JAIL] - 20_000) <= 600

    def test_weighted_draw_needs_positive_weight(self):
        with pytest.raises(UnknownOutcomeError):
            weighted_draw({"a": 0, "b": -1}, MagicMock())
