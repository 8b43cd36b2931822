"""Context-bucketed, recency-weighted learning of coaching outcomes.

Every coaching day records which strategy arm was chosen, in which context,
and how it turned out. Evidence per arm is recomputed from that log on
demand: events are decay-weighted by age and smoothed with a Laplace prior.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import pandas as pd

from ..config import config
from .learning_narrative import format_context_summary

logger = logging.getLogger(__name__)

GLOBAL_CONTEXT = "ALL"
LEGACY_CONTEXT = "LEGACY"

DayLike = Union[str, date, datetime]


class StrategyArm(Enum):
    """Coaching policy choices whose outcomes are tracked."""

    NEUTRAL = "NEUTRAL"
    FREQ_UP = "FREQ_UP"
    HOLD_ABSORB = "HOLD_ABSORB"
    PROTECT_DELOAD = "PROTECT_DELOAD"
    INTENSITY_SHIFT = "INTENSITY_SHIFT"


class OutcomeClass(Enum):
    """Labelled result of a coaching decision."""

    GOOD = "GOOD"
    NEUTRAL = "NEUTRAL"
    BAD = "BAD"


class StressBucket(Enum):
    LOW = "LOW"
    MED = "MED"
    HIGH = "HIGH"


class HrvBucket(Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"


class DriftBucket(Enum):
    OK = "OK"
    WARN = "WARN"
    BAD = "BAD"


class SleepBucket(Enum):
    OK = "OK"
    LOW = "LOW"


class MonotonyBucket(Enum):
    LOW = "LOW"
    HIGH = "HIGH"


def arm_name(arm: Any) -> str:
    """Normalize an arm to its string name; unknown arms from old logs are kept."""
    if isinstance(arm, StrategyArm):
        return arm.value
    return str(arm or StrategyArm.NEUTRAL.value).upper()


def parse_day(day: DayLike) -> date:
    if isinstance(day, datetime):
        return day.date()
    if isinstance(day, date):
        return day
    return date.fromisoformat(str(day)[:10])


# ---------------------------------------------------------------------------
# Strategy arm policy
# ---------------------------------------------------------------------------

@dataclass
class PolicySignals:
    """Signals of one coaching day used to pick a strategy arm."""

    run_floor_gap: bool = False
    life_stress: str = "LOW"
    hrv_state: str = "NORMAL"
    drift_state: str = "OK"
    had_key: bool = False
    freq_not_red: bool = True
    high_monotony: bool = False
    fatigue_high: bool = False
    has_hard_red_flag: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicySignals":
        def pick(snake: str, camel: str, default: Any) -> Any:
            value = data.get(snake, data.get(camel))
            return default if value is None else value

        return cls(
            run_floor_gap=bool(pick("run_floor_gap", "runFloorGap", False)),
            life_stress=str(pick("life_stress", "lifeStress", "LOW")).upper(),
            hrv_state=str(pick("hrv_state", "hrvState", "NORMAL")).upper(),
            drift_state=str(pick("drift_state", "driftState", "OK")).upper(),
            had_key=bool(pick("had_key", "hadKey", False)),
            freq_not_red=bool(pick("freq_not_red", "freqNotRed", True)),
            high_monotony=bool(pick("high_monotony", "highMonotony", False)),
            fatigue_high=bool(pick("fatigue_high", "fatigueHigh", False)),
            has_hard_red_flag=bool(pick("has_hard_red_flag", "hasHardRedFlag", False)),
        )


@dataclass(frozen=True)
class PolicyRule:
    """A guarded rule; the first matching rule decides the arm."""

    reason: str
    guard: Callable[[PolicySignals], bool]
    arm: StrategyArm
    learning_eligible: bool = True


@dataclass
class StrategyDecision:
    strategy_arm: StrategyArm
    learning_eligible: bool
    policy_reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategyArm": self.strategy_arm.value,
            "learningEligible": self.learning_eligible,
            "policyReason": self.policy_reason,
        }


# Ordered by priority
POLICY_RULES: List[PolicyRule] = [
    PolicyRule("HARD_RED_FLAG", lambda s: s.has_hard_red_flag, StrategyArm.NEUTRAL, learning_eligible=False),
    PolicyRule("RUN_FLOOR_GAP_HIGH_STRESS", lambda s: s.run_floor_gap and s.life_stress == "HIGH", StrategyArm.FREQ_UP),
    PolicyRule("HIGH_MONOTONY_FATIGUE", lambda s: s.high_monotony and s.fatigue_high, StrategyArm.PROTECT_DELOAD),
    PolicyRule("DRIFT_HRV_WARNING", lambda s: s.drift_state == "BAD" and s.hrv_state == "LOW", StrategyArm.PROTECT_DELOAD),
    PolicyRule("RUN_FLOOR_GAP", lambda s: s.run_floor_gap and s.freq_not_red, StrategyArm.FREQ_UP),
    PolicyRule("ABSORB_AFTER_KEY", lambda s: s.had_key and not s.fatigue_high, StrategyArm.HOLD_ABSORB),
]
DEFAULT_RULE = PolicyRule("DEFAULT_HOLD", lambda s: True, StrategyArm.NEUTRAL)


def derive_strategy_arm(signals: Union[PolicySignals, Dict[str, Any]]) -> StrategyDecision:
    """Pick the strategy arm for a coaching day.

    Rules are evaluated in priority order and the first match wins. A hard
    red flag always forces NEUTRAL and excludes the day from learning.
    """
    if not isinstance(signals, PolicySignals):
        signals = PolicySignals.from_dict(signals)

    rule = next((r for r in POLICY_RULES if r.guard(signals)), DEFAULT_RULE)
    return StrategyDecision(rule.arm, rule.learning_eligible, rule.reason)


# ---------------------------------------------------------------------------
# Context key
# ---------------------------------------------------------------------------

def _get(data: Dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    value = data.get(snake, data.get(camel))
    return default if value is None else value


def _finite(x: Any) -> Optional[float]:
    try:
        value = float(x)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def stress_bucket(signals: Dict[str, Any]) -> StressBucket:
    explicit = _get(signals, "life_stress", "lifeStress")
    if explicit is not None:
        try:
            return StressBucket(str(explicit).upper())
        except ValueError:
            pass

    warnings = int(_finite(_get(signals, "warning_count", "warningCount", 0)) or 0)
    if _get(signals, "fatigue_override", "fatigueOverride", False):
        warnings += 1
    if warnings >= 2:
        return StressBucket.HIGH
    if warnings == 1:
        return StressBucket.MED
    return StressBucket.LOW


def hrv_bucket(signals: Dict[str, Any]) -> HrvBucket:
    delta = _finite(_get(signals, "hrv_delta_pct", "hrvDeltaPct"))
    if delta is None:
        return HrvBucket.NORMAL
    if delta <= config.HRV_LOW_DELTA_PCT:
        return HrvBucket.LOW
    if delta >= config.HRV_HIGH_DELTA_PCT:
        return HrvBucket.HIGH
    return HrvBucket.NORMAL


def drift_bucket(signals: Dict[str, Any]) -> DriftBucket:
    signal = str(_get(signals, "drift_signal", "driftSignal", "")).lower()
    if signal == "red":
        return DriftBucket.BAD
    if signal in ("orange", "yellow"):
        return DriftBucket.WARN
    return DriftBucket.OK


def sleep_bucket(signals: Dict[str, Any]) -> SleepBucket:
    recovery = _get(signals, "recovery_signals", "recoverySignals", {}) or {}
    if _get(recovery, "sleep_low", "sleepLow", False):
        return SleepBucket.LOW
    delta = _finite(_get(recovery, "sleep_delta_pct", "sleepDeltaPct"))
    if delta is not None and delta <= config.SLEEP_LOW_DELTA_PCT:
        return SleepBucket.LOW
    return SleepBucket.OK


def monotony_bucket(signals: Dict[str, Any]) -> MonotonyBucket:
    monotony = _finite(_get(signals, "monotony", "monotony"))
    if monotony is not None and monotony >= config.MONOTONY_HIGH:
        return MonotonyBucket.HIGH
    return MonotonyBucket.LOW


def derive_context_key(signals: Dict[str, Any]) -> str:
    """Bucket the athlete's state into a stable pipe-delimited grouping key.

    Example: ``RFgap=T|stress=HIGH|hrv=LOW|drift=WARN|sleep=LOW|mono=HIGH``
    """
    signals = signals or {}
    run_floor_gap = "T" if _get(signals, "run_floor_gap", "runFloorGap", False) else "F"
    parts = [
        f"RFgap={run_floor_gap}",
        f"stress={stress_bucket(signals).value}",
        f"hrv={hrv_bucket(signals).value}",
        f"drift={drift_bucket(signals).value}",
        f"sleep={sleep_bucket(signals).value}",
        f"mono={monotony_bucket(signals).value}",
    ]
    return "|".join(parts)


def parse_context_key(context_key: str) -> Dict[str, str]:
    """Split a context key back into its buckets."""
    buckets = {}
    for part in str(context_key or "").split("|"):
        if "=" in part:
            name, value = part.split("=", 1)
            buckets[name] = value
    return buckets


# ---------------------------------------------------------------------------
# Events and statistics
# ---------------------------------------------------------------------------

def normalize_outcome_class(explicit: Any, outcome_score: Any = None,
                            fallback: Any = None) -> Optional[OutcomeClass]:
    """Resolve an outcome label: explicit class, else score (>=2 GOOD, 1 NEUTRAL, <=0 BAD)."""
    if isinstance(explicit, OutcomeClass):
        return explicit
    if explicit is not None:
        try:
            return OutcomeClass(str(explicit).upper())
        except ValueError:
            logger.debug("Ignoring unknown outcome class %r", explicit)

    score = _finite(outcome_score)
    if score is not None:
        if score >= 2:
            return OutcomeClass.GOOD
        if score >= 1:
            return OutcomeClass.NEUTRAL
        return OutcomeClass.BAD

    if fallback is not None and fallback is not explicit:
        return normalize_outcome_class(fallback)
    return None


@dataclass(frozen=True)
class LearningEvent:
    """One recorded coaching decision and its outcome."""

    day: str
    strategy_arm: str
    outcome_class: Optional[OutcomeClass]
    context_key: str = LEGACY_CONTEXT
    learning_eligible: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearningEvent":
        eligible = _get(data, "learning_eligible", "learningEligible", True)
        return cls(
            day=str(data.get("day", ""))[:10],
            strategy_arm=arm_name(_get(data, "strategy_arm", "strategyArm")),
            outcome_class=normalize_outcome_class(
                _get(data, "outcome_class", "outcomeClass"),
                _get(data, "outcome_score", "outcomeScore"),
            ),
            context_key=str(_get(data, "context_key", "contextKey", LEGACY_CONTEXT)),
            learning_eligible=bool(eligible),
        )


def _as_event(event: Any) -> LearningEvent:
    if isinstance(event, LearningEvent):
        return event
    return LearningEvent.from_dict(event)


def decay_weight(event_day: DayLike, as_of_day: DayLike, half_life_days: float = None) -> float:
    """Recency weight: 1.0 at zero distance, halving every half-life."""
    half_life = config.LEARNING_HALF_LIFE_DAYS if half_life_days is None else half_life_days
    if half_life <= 0:
        return 1.0
    days = abs((parse_day(as_of_day) - parse_day(event_day)).days)
    return 0.5 ** (days / half_life)


@dataclass
class ArmStats:
    """Decay-weighted outcome statistics for one arm."""

    arm: str
    n_eff: float
    n_events: int
    good_weight: float
    neutral_weight: float
    bad_weight: float
    good_posterior: float
    neutral_posterior: float
    bad_posterior: float

    @property
    def score(self) -> float:
        """Expected utility: P(GOOD) - P(BAD)."""
        return self.good_posterior - self.bad_posterior


@dataclass
class LearningStats:
    arm_stats: Dict[str, ArmStats]
    sample_count: int
    red_flag_count: int
    n_eff_total: float


@dataclass
class Recommendation:
    strategy_arm: Optional[str]
    confidence_arm: float
    confidence_context: float
    n_eff_arm: float
    n_eff_total: float
    n_arms_with_data: int
    exploration_need: bool
    context_key: str
    context_summary: str
    global_fallback: bool
    second_arm: Optional[str] = None
    n_eff_second: float = 0.0


@dataclass
class LearningEvidence:
    context_key: str
    arms: Dict[str, ArmStats]
    recommendation: Recommendation
    sample_count: int = 0
    red_flag_count: int = 0
    as_of_day: Optional[str] = None
    notes: List[str] = field(default_factory=list)


OUTCOME_COLUMNS = [c.value for c in OutcomeClass]


def compute_learning_stats(events: Sequence[Any], as_of_day: DayLike,
                           half_life_days: float = None, prior_alpha: float = None) -> LearningStats:
    """Per-arm posteriors over outcome classes, each event weighted by recency.

    Only learning-eligible, labelled events contribute. A Laplace prior of
    `prior_alpha` per class keeps every posterior strictly inside (0, 1).
    """
    alpha = config.LEARNING_PRIOR_ALPHA if prior_alpha is None else prior_alpha
    parsed = [_as_event(e) for e in events]

    red_flag_count = sum(1 for e in parsed if not e.learning_eligible)
    as_of = parse_day(as_of_day)
    rows = []
    for e in parsed:
        if not e.learning_eligible or e.outcome_class is None:
            continue
        try:
            weight = decay_weight(e.day, as_of, half_life_days)
        except ValueError:
            logger.debug("Skipping %s event with invalid day %r", e.strategy_arm, e.day)
            continue
        rows.append({"arm": e.strategy_arm, "outcome": e.outcome_class.value, "weight": weight})

    if not rows:
        return LearningStats(arm_stats={}, sample_count=0, red_flag_count=red_flag_count, n_eff_total=0.0)

    df = pd.DataFrame(rows)
    weights = df.pivot_table(index="arm", columns="outcome", values="weight", aggfunc="sum", fill_value=0.0)
    weights = weights.reindex(columns=OUTCOME_COLUMNS, fill_value=0.0)
    counts = df.groupby("arm").size()

    arm_stats = {}
    for arm, row in weights.sort_index().iterrows():
        n_eff = float(row.sum())
        denom = n_eff + alpha * len(OUTCOME_COLUMNS)
        arm_stats[arm] = ArmStats(
            arm=arm,
            n_eff=n_eff,
            n_events=int(counts[arm]),
            good_weight=float(row["GOOD"]),
            neutral_weight=float(row["NEUTRAL"]),
            bad_weight=float(row["BAD"]),
            good_posterior=(float(row["GOOD"]) + alpha) / denom,
            neutral_posterior=(float(row["NEUTRAL"]) + alpha) / denom,
            bad_posterior=(float(row["BAD"]) + alpha) / denom,
        )

    return LearningStats(
        arm_stats=arm_stats,
        sample_count=len(rows),
        red_flag_count=red_flag_count,
        n_eff_total=float(df["weight"].sum()),
    )


def confidence_for(stats: Optional[ArmStats]) -> float:
    """Confidence that an arm works: P(GOOD) shrunk by sample size."""
    if stats is None or stats.n_eff <= 0:
        return 0.0
    return stats.good_posterior * stats.n_eff / (stats.n_eff + config.LEARNING_CONFIDENCE_K)


def rank_arms(arm_stats: Dict[str, ArmStats]) -> List[ArmStats]:
    """Arms with data, best first (score, then n_eff, then name)."""
    tried = [s for s in arm_stats.values() if s.n_eff > 0]
    return sorted(tried, key=lambda s: (-s.score, -s.n_eff, s.arm))


def compute_learning_evidence(events: Sequence[Any], as_of_day: DayLike, context_key: str,
                              half_life_days: float = None) -> LearningEvidence:
    """Evidence for one context, falling back to all contexts when sparse.

    The exact context is used when its eligible events carry at least the
    configured effective sample size; otherwise the global "ALL" context is
    used and the recommendation is flagged as a global fallback. Asking for
    "ALL" directly aggregates every event without the fallback flag. Arms
    without data are never recommended, and events whose day does not parse
    are skipped.
    """
    parsed = [_as_event(e) for e in events]
    if context_key == GLOBAL_CONTEXT:
        in_context = parsed
    else:
        in_context = [e for e in parsed if e.context_key == context_key]
    stats = compute_learning_stats(in_context, as_of_day, half_life_days)

    used_key = context_key
    global_fallback = False
    if context_key != GLOBAL_CONTEXT and stats.n_eff_total < config.LEARNING_MIN_CONTEXT_N_EFF:
        logger.debug("Context %s too sparse (n_eff=%.2f), using global evidence", context_key, stats.n_eff_total)
        stats = compute_learning_stats(parsed, as_of_day, half_life_days)
        used_key = GLOBAL_CONTEXT
        global_fallback = True

    ranked = rank_arms(stats.arm_stats)
    best = ranked[0] if ranked else None
    second = ranked[1] if len(ranked) > 1 else None

    total_good = sum(s.good_weight for s in stats.arm_stats.values())
    alpha = config.LEARNING_PRIOR_ALPHA
    context_good = (total_good + alpha) / (stats.n_eff_total + alpha * len(OUTCOME_COLUMNS))
    confidence_context = (
        context_good * stats.n_eff_total / (stats.n_eff_total + config.LEARNING_CONFIDENCE_K)
        if stats.n_eff_total > 0 else 0.0
    )

    recommendation = Recommendation(
        strategy_arm=best.arm if best else None,
        confidence_arm=confidence_for(best),
        confidence_context=confidence_context,
        n_eff_arm=best.n_eff if best else 0.0,
        n_eff_total=stats.n_eff_total,
        n_arms_with_data=len(ranked),
        exploration_need=len(ranked) < 2,
        context_key=used_key,
        context_summary=format_context_summary(used_key),
        global_fallback=global_fallback,
        second_arm=second.arm if second else None,
        n_eff_second=second.n_eff if second else 0.0,
    )

    return LearningEvidence(
        context_key=used_key,
        arms=stats.arm_stats,
        recommendation=recommendation,
        sample_count=stats.sample_count,
        red_flag_count=stats.red_flag_count,
        as_of_day=parse_day(as_of_day).isoformat(),
    )
