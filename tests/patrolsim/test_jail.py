"""Tests for jail scenes, guard scaling, and the prisoner registry."""

from __future__ import annotations

import pytest

from patrolsim.host.documents import TokenDoc
from patrolsim.jail import DEFAULT_GUARD_TEMPLATES, JAIL_SCENES_KEY

SCENE = "scene-1"


def _jail_tokens(world, jail_id: str):
    return world.host.tokens.list(jail_id)


def _jail(world, **kwargs):
    return world.engine.jail.send_to_jail(SCENE, kwargs.pop("token_id"), **kwargs)


# ---------------------------------------------------------------------------
# Guard templates
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestGuardTemplate:
    def test_default_guard_scaling(self):
        stats = DEFAULT_GUARD_TEMPLATES["default-guard"].scaled(3)
        assert stats == {"hp": 42, "ac": 13, "damage": 8, "level": 3}

    def test_elite_guard_scaling(self):
        stats = DEFAULT_GUARD_TEMPLATES["elite-guard"].scaled(5)
        assert stats == {"hp": 61, "ac": 15, "damage": 11, "level": 5}

    def test_below_base_level_uses_base(self):
        stats = DEFAULT_GUARD_TEMPLATES["elite-guard"].scaled(1)
        assert stats["hp"] == 45
        assert stats["level"] == 1


# ---------------------------------------------------------------------------
# Sending to jail
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestSendToJail:
    def test_first_prisoner_takes_first_cell(self, world):
        _, hero = world.player()
        record = _jail(world, token_id=hero.id, captured_by="Night Watch",
                       scale_info={"playerLevel": 3})

        assert record["cellLocation"] == {"x": 146, "y": 224}
        assert record["originalPosition"] == {"x": 450, "y": 450}
        assert record["capturedBy"] == "Night Watch"
        assert record["jailName"] == "[JAIL] Jail 1"
        assert world.host.tokens.get(SCENE, hero.id) is None

        jailed = world.host.tokens.get(record["jailSceneId"], record["tokenId"])
        assert (jailed.x, jailed.y) == (146, 224)
        assert jailed.actor_id == "pc-1"

    def test_jail_prepared_with_scaled_guards(self, world):
        _, hero = world.player()
        record = _jail(world, token_id=hero.id, scale_info={"playerLevel": 3})
        tokens = _jail_tokens(world, record["jailSceneId"])

        guards = [t for t in tokens if t.flags.get("isJailGuard")]
        assert len(guards) == 4
        assert guards[0].flags["scaledStats"] == {"hp": 42, "ac": 13, "damage": 8, "level": 3}
        assert not any(t.flags.get("isPlaceholder") for t in tokens)
        scene = world.host.scenes.get(record["jailSceneId"])
        assert scene.flags["jailPrepared"] is True

    def test_player_pulled_and_told(self, world):
        _, hero = world.player()
        record = _jail(world, token_id=hero.id)
        assert world.sent("pullToScene") == [{"userId": "player1",
                                              "sceneId": record["jailSceneId"]}]
        assert "Hero has been sent to [JAIL] Jail 1!" in world.notifications()

    def test_jail_scene_reused(self, world):
        _, hero = world.player()
        _, rogue = world.player(actor_id="pc-2", name="Rogue")
        first = _jail(world, token_id=hero.id)
        second = _jail(world, token_id=rogue.id)
        assert first["jailSceneId"] == second["jailSceneId"]
        assert second["cellLocation"] == {"x": 65, "y": 361}
        assert world.engine.jail.jail_scene_ids() == [first["jailSceneId"]]
        assert world.host.storage.get(JAIL_SCENES_KEY) == [first["jailSceneId"]]

    def test_guards_spawned_once(self, world):
        _, hero = world.player()
        _, rogue = world.player(actor_id="pc-2", name="Rogue")
        first = _jail(world, token_id=hero.id)
        _jail(world, token_id=rogue.id)
        guards = [t for t in _jail_tokens(world, first["jailSceneId"]) if t.flags.get("isJailGuard")]
        assert len(guards) == 4

    def test_existing_prisoner_refused(self, world):
        actor, hero = world.player()
        record = _jail(world, token_id=hero.id)
        # A second token for the same actor on the origin scene
        clone = world.host.tokens.create(SCENE, TokenDoc(id="", name="Hero", actor_id=actor.id))
        assert _jail(world, token_id=clone.id) is None
        assert world.engine.jail.get_prisoners() == [record]

    def test_token_without_actor_refused(self, world):
        token = world.guard()
        assert _jail(world, token_id=token.id) is None
        assert world.engine.jail.jail_scene_ids() == []

    def test_cells_exhausted_fall_back_to_spawn(self, world):
        jail = world.engine.jail
        tokens = [world.player(actor_id=f"pc-{i}", name=f"P{i}")[1] for i in range(5)]
        records = [_jail(world, token_id=t.id) for t in tokens]
        assert [r["cellLocation"] for r in records[:4]] == [
            {"x": 146, "y": 224}, {"x": 65, "y": 361}, {"x": 273, "y": 629}, {"x": 600, "y": 907},
        ]
        assert records[4]["cellLocation"] == jail.jail_spawn_point(records[0]["jailSceneId"])

    def test_group_spawn_point(self, world):
        _, hero = world.player()
        record = _jail(world, token_id=hero.id)
        assert record["groupSpawnPoint"] == {"x": 755, "y": 24}

    def test_jail_waypoints_seeded(self, world):
        _, hero = world.player()
        record = _jail(world, token_id=hero.id)
        waypoints = world.host.scenes.get_flag(record["jailSceneId"], "waypoints")
        tags = [w["tags"][0] for w in waypoints]
        assert tags.count("guard-spawn") == 4
        assert tags.count("inmate-spawn") == 3
        assert tags.count("patrol-route") == 16


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestRelease:
    def test_release_returns_token_to_origin(self, world):
        _, hero = world.player()
        record = _jail(world, token_id=hero.id)
        jail = world.engine.jail

        assert jail.release_prisoner("pc-1", return_to_origin=True) is True
        back = world.host.tokens.get(SCENE, hero.id)
        assert (back.x, back.y) == (450, 450)
        assert world.host.tokens.get(record["jailSceneId"], hero.id) is None
        assert jail.is_prisoner("pc-1") is False
        assert jail.get_prisoner_info("pc-1")["released"] is True
        assert "Hero has been released!" in world.notifications()

    def test_release_in_place_keeps_token_in_jail(self, world):
        _, hero = world.player()
        record = _jail(world, token_id=hero.id)
        world.engine.jail.release_prisoner("pc-1")
        assert world.host.tokens.get(record["jailSceneId"], hero.id) is not None

    def test_release_unknown_or_twice(self, world):
        _, hero = world.player()
        _jail(world, token_id=hero.id)
        jail = world.engine.jail
        assert jail.release_prisoner("nobody") is False
        assert jail.release_prisoner("pc-1") is True
        assert jail.release_prisoner("pc-1") is False

    def test_release_all_clears_records(self, world):
        _, hero = world.player()
        _, rogue = world.player(actor_id="pc-2", name="Rogue")
        _jail(world, token_id=hero.id)
        _jail(world, token_id=rogue.id)
        jail = world.engine.jail
        assert jail.release_all_prisoners() == 2
        assert jail.get_prisoners() == []
        assert jail.get_prisoner_info("pc-1") is None

    def test_reimprison_moves_token_back(self, world):
        _, hero = world.player()
        record = _jail(world, token_id=hero.id)
        jail = world.engine.jail
        jail.release_prisoner("pc-1", return_to_origin=True)

        assert jail.reimprison(record) is True
        assert jail.is_prisoner("pc-1") is True
        assert world.host.tokens.get(SCENE, hero.id) is None
        assert world.host.tokens.get(record["jailSceneId"], hero.id) is not None
        assert jail.reimprison(record) is False

    def test_release_undo_round_trip_through_journal(self, world):
        _, hero = world.player()
        _jail(world, token_id=hero.id)
        journal = world.engine.journal
        inverse = journal.apply({"action": "releasePrisoner", "actorId": "pc-1"})
        assert world.engine.jail.is_prisoner("pc-1") is False
        assert world.host.tokens.get(SCENE, hero.id) is not None

        journal.apply(inverse)
        assert world.engine.jail.is_prisoner("pc-1") is True


# ---------------------------------------------------------------------------
# Jail scene maintenance
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestJailScenes:
    def test_reset_removes_guards(self, world):
        _, hero = world.player()
        record = _jail(world, token_id=hero.id)
        jail = world.engine.jail
        assert jail.reset_jail_scene(record["jailSceneId"]) is True
        tokens = _jail_tokens(world, record["jailSceneId"])
        assert not any(t.flags.get("isJailGuard") for t in tokens)
        assert "jailPrepared" not in world.host.scenes.get(record["jailSceneId"]).flags

    def test_reset_and_reprepare(self, world):
        _, hero = world.player()
        record = _jail(world, token_id=hero.id)
        world.engine.jail.reset_jail_scene(record["jailSceneId"], reprepare=True,
                                           scale_info={"partyLevel": 5})
        guards = [t for t in _jail_tokens(world, record["jailSceneId"]) if t.flags.get("isJailGuard")]
        assert len(guards) == 4
        assert guards[0].flags["targetLevel"] == 5

    def test_reset_refuses_ordinary_scene(self, world):
        assert world.engine.jail.reset_jail_scene(SCENE) is False

    def test_is_jail_scene(self, world):
        _, hero = world.player()
        record = _jail(world, token_id=hero.id)
        assert world.engine.jail.is_jail_scene(record["jailSceneId"]) is True
        assert world.engine.jail.is_jail_scene(SCENE) is False

    def test_unknown_template(self, world):
        assert world.engine.jail.create_jail_scene("jail_99") is None
