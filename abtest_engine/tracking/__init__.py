# Tracking モジュール
from abtest_engine.tracking.attribution import (
    AttributionReport,
    attribute_events,
    attribution_window,
    merge_attributions,
)
from abtest_engine.tracking.bandit_rewards import (
    apply_reward_snapshot,
    compute_reward_snapshot,
    thompson_weights,
)
from abtest_engine.tracking.event_tracker import BatchResult, EventTracker

__all__ = [
    "AttributionReport",
    "BatchResult",
    "EventTracker",
    "apply_reward_snapshot",
    "attribute_events",
    "attribution_window",
    "compute_reward_snapshot",
    "merge_attributions",
    "thompson_weights",
]
