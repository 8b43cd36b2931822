"""Analysis module for interval sessions, outcome learning and weekly planning."""

from .recovery_metrics import HeartRateRecoveryAnalyzer, compute_interval_metrics_from_streams
from .interval_evaluation import IntervalSessionEvaluator, ProgressTracker, evaluate_session
from .outcome_learning import (
    compute_learning_evidence,
    compute_learning_stats,
    decay_weight,
    derive_context_key,
    derive_strategy_arm,
    normalize_outcome_class,
)
from .learning_narrative import apply_text_gate, build_learning_narrative, format_context_summary
from .weekly_plan import (
    compute_taper_factor,
    get_key_rules,
    get_weekly_key_suggestion,
    select_weekly_plan,
    should_select_base_key_by_quota,
)

__all__ = [
    "HeartRateRecoveryAnalyzer",
    "compute_interval_metrics_from_streams",
    "IntervalSessionEvaluator",
    "ProgressTracker",
    "evaluate_session",
    "compute_learning_evidence",
    "compute_learning_stats",
    "decay_weight",
    "derive_context_key",
    "derive_strategy_arm",
    "normalize_outcome_class",
    "apply_text_gate",
    "build_learning_narrative",
    "format_context_summary",
    "compute_taper_factor",
    "get_key_rules",
    "get_weekly_key_suggestion",
    "select_weekly_plan",
    "should_select_base_key_by_quota",
]
