"""Configuration management using Pydantic settings."""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_outcome_weights() -> dict[str, int]:
    return {"combat": 30, "theft": 25, "blindfold": 20, "disregard": 15, "jail": 10}


def _default_theft_weights() -> dict[str, int]:
    return {"currency": 70, "equipment": 25, "misc": 5}


class PatrolSettings(BaseSettings):
    """World and client tunables loaded from environment variables.

    Every field can be overridden with a ``PATROL_`` prefixed variable,
    e.g. ``PATROL_MAX_ACTIVE_PATROLS=40``.  Dict fields take JSON.
    """

    model_config = SettingsConfigDict(
        env_prefix="PATROL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    debug: bool = False

    # Patrol defaults
    default_patrol_mode: str = "blink"
    default_blink_pattern: str = "random"
    default_appear_duration: float = 3.0
    default_disappear_duration: float = 2.0
    timing_variance: int = 25              # percent, 0-100
    default_effect_type: str = "fade"
    waypoint_color: str = "#7B68EE"
    default_detection_range: float = 5.0   # grid units
    detection_interval: float = 0.5        # seconds between samples
    enable_detection: bool = True
    max_active_patrols: int = 20
    guard_source: str = "templates"        # "templates" or "actors"
    walk_speed: float = 200.0              # pixels per second

    # Capture pipeline
    capture_enabled: bool = True
    capture_outcome_weights: dict[str, int] = Field(default_factory=_default_outcome_weights)
    bribery_enabled: bool = True
    bribery_base_cost: int = 50
    bribery_chance: int = 70
    alert_radius: float = 500.0            # pixels
    theft_targeting_weights: dict[str, int] = Field(default_factory=_default_theft_weights)
    theft_percent: int = 25
    theft_max_items: int = 3
    theft_transfer_to_guard: bool = False
    theft_notify_player: bool = True
    blindfold_min_duration: float = 5.0
    blindfold_max_duration: float = 10.0

    # Jail
    jail_enabled: bool = True

    # Guard barks
    barks_enabled: bool = True
    bark_cooldown: float = 2.0             # seconds between barks of one type

    # Reinforcements
    alert_cooldown: float = 90.0
    reinforcement_lifetime: float = 30.0
    telegraph_delay: float = 2.0
    assistant_chance: float = 0.5
    combat_round_seconds: float = 6.0

    # Bleed-out
    bleed_out_enabled: bool = True
    bleed_out_threshold: int = 25          # percent of max HP
    bleed_out_base_dc: int = 10
    bleed_out_dc_cap: int = 30
    bleed_out_player_control: str = "player"  # "player", "gm", "auto"

    # AI decision hook
    ai_provider: str = "system"            # "system", "openai", "none"
    ai_api_key: str = ""                   # client-scoped
    ai_api_url: str = "https://api.openai.com/v1/chat/completions"
    ai_model: str = "gpt-4o-mini"
    ai_timeout: float = 10.0
    automate_combat: bool = False
    automate_decisions: bool = False
    automate_require_approval: bool = False
    combat_automation_level: str = "assisted"  # "assisted" or "autoResolve"
    auto_resolve_affects_players: bool = False
    auto_perform_suggestions: bool = False

    # Journal
    ai_log_max_entries: int = 200
    ai_pending_max_entries: int = 100

    # Optional guard actor for generated reinforcements
    guard_actor_id: Optional[str] = None


settings = PatrolSettings()
