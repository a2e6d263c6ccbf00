"""AI decision hook: heuristics with an optional chat-completions oracle."""

from .decisions import COMBAT_ACTIONS, DecisionHook, bias_weights, hit_chance
from .oracle import OpenAIOracle

__all__ = ["COMBAT_ACTIONS", "DecisionHook", "OpenAIOracle", "bias_weights", "hit_chance"]
