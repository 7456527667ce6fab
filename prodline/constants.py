"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class ItemStatus(StrEnum):
    """
    Queue item lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (claimed by an engine instance)
    - PROCESSING -> COMPLETED (terminal stage reached)
    - PROCESSING -> PENDING (administrative reset)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Stage(StrEnum):
    """Named phases of the default production pipeline, in order."""

    QUEUED = "queued"
    PRODUCING = "producing"
    SHIPPING = "shipping"
    DELIVERED = "delivered"


class EngineProfile(StrEnum):
    """Timing profiles for the stage engine."""

    PRODUCTION = "production"
    TEST = "test"


class CallbackOutcome(StrEnum):
    """Result of a single completion-notification attempt."""

    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    GAVE_UP = "gave_up"
    SKIPPED = "skipped"


# Nominal stage durations in milliseconds
DEFAULT_STAGE_DURATIONS_MS: dict[Stage, int] = {
    Stage.QUEUED: 0,
    Stage.PRODUCING: 60_000,
    Stage.SHIPPING: 0,
    Stage.DELIVERED: 0,
}

# Profile dependent engine timings
PROFILE_DEFAULTS: dict[EngineProfile, dict[str, float]] = {
    EngineProfile.PRODUCTION: {
        "engine_tick_interval_seconds": 1.0,
        "engine_jitter_ratio": 0.15,
        "engine_callback_timeout_seconds": 5.0,
    },
    EngineProfile.TEST: {
        "engine_tick_interval_seconds": 0.1,
        "engine_jitter_ratio": 0.05,
        "engine_callback_timeout_seconds": 1.0,
    },
}

# Default values
DEFAULT_MAX_CALLBACK_TRIES = 3
DEFAULT_CALLBACK_BACKOFF_SECONDS = 5.0
DEFAULT_STALE_LOCK_SECONDS = 30

# Metrics names
METRIC_QUEUE_DEPTH = "prodline_queue_depth"
METRIC_ITEMS_CLAIMED = "prodline_items_claimed_total"
METRIC_ORPHANS_ADOPTED = "prodline_orphans_adopted_total"
METRIC_STAGE_TRANSITIONS = "prodline_stage_transitions_total"
METRIC_STAGE_DURATION = "prodline_stage_duration_seconds"
METRIC_ITEMS_COMPLETED = "prodline_items_completed_total"
METRIC_CALLBACK_DELIVERIES = "prodline_callback_deliveries_total"
METRIC_TICK_ERRORS = "prodline_engine_tick_errors_total"
METRIC_LOCKS_RELEASED = "prodline_stale_locks_released_total"

# Trace span names
SPAN_ENGINE_TICK = "engine_tick"
SPAN_CLAIM_ITEM = "claim_item"
SPAN_ADVANCE_STAGE = "advance_stage"
SPAN_DELIVER_CALLBACK = "deliver_callback"
