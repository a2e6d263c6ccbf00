"""Capture outcome names, the CaptureEvent record, and the weighted draw."""

from __future__ import annotations

import random
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping

from patrolsim.errors import UnknownOutcomeError

COMBAT = "combat"
THEFT = "theft"
BLINDFOLD = "blindfold"
DISREGARD = "disregard"
JAIL = "jail"
CAPTURE_OUTCOMES = (COMBAT, THEFT, BLINDFOLD, DISREGARD, JAIL)

BRIBE_SUCCESS = "bribe_success"
BRIBE_GENEROUS = "bribe_generous"
BRIBE_BETRAYAL = "bribe_betrayal"
BRIBERY_RESULTS = (BRIBE_SUCCESS, BRIBE_GENEROUS, BRIBE_BETRAYAL)

RANDOM = "random"
GM_TRIGGERED = "gm-triggered"


def weighted_draw(weights: Mapping[str, float], rng: random.Random) -> str:
    """Roll ``r`` in ``[0, sum)`` and return the first key whose running sum reaches ``r``.

    Keys with non-positive weight never win.  Raises UnknownOutcomeError when
    no key has positive weight.
    """
    entries = [(key, float(w)) for key, w in weights.items() if w and w > 0]
    if not entries:
        raise UnknownOutcomeError(f"No positive weight in {dict(weights)}")
    total = sum(w for _, w in entries)
    r = rng.random() * total
    running = 0.0
    for key, weight in entries:
        running += weight
        if running >= r:
            return key
    return entries[-1][0]


@dataclass
class CaptureEvent:
    patrol_id: str
    patrol_name: str
    token_id: str
    token_name: str
    scene_id: str
    actor_id: str | None = None
    timestamp: float = 0.0
    outcome: str | None = None
    resolved: bool = False
    gm_triggered: bool = False
    bribe_amount: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patrolId": self.patrol_id,
            "patrolName": self.patrol_name,
            "tokenId": self.token_id,
            "tokenName": self.token_name,
            "sceneId": self.scene_id,
            "actorId": self.actor_id,
            "timestamp": self.timestamp,
            "outcome": self.outcome,
            "resolved": self.resolved,
            "gmTriggered": self.gm_triggered,
            "bribeAmount": self.bribe_amount,
            "details": dict(self.details),
        }
