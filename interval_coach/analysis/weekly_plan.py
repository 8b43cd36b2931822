"""Weekly key-workout suggestion and plan selection.

Key workouts are limited by rest spacing and a rolling weekly quota. Inside
those limits a key type the current phase does not allow is substituted and
scaled rather than dropped, progression advances week by week, and race
proximity triggers a taper.
"""

import logging
import math
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..config import config
from .outcome_learning import StrategyArm, arm_name, parse_day

logger = logging.getLogger(__name__)

NO_KEY_LABEL = "no key"

KEY_TYPE_ALIASES = {
    "schwelle": "threshold",
    "vo2": "vo2_touch",
    "rp": "racepace",
}

KEY_TYPE_LABELS = {
    "steady": "Steady run",
    "threshold": "Threshold intervals",
    "strides": "Easy run with strides",
    "vo2_touch": "VO2 touch",
    "racepace": "Race pace intervals",
    "longrun": "Long run",
    "easy": "Easy run",
}

TEMPLATE_CODES = {
    "steady": "ST",
    "threshold": "TH",
    "strides": "SR",
    "vo2_touch": "VO",
    "racepace": "RP",
    "longrun": "LR",
}

DISTANCE_ALIASES = {
    "half": "hm",
    "21k": "hm",
    "marathon": "m",
    "42k": "m",
}

SCALING_MIN = -3
SCALING_MAX = 1


class TrainingPhase(Enum):
    """Training blocks of a season."""

    BASE = "BASE"
    BUILD = "BUILD"
    RACE = "RACE"
    RESET = "RESET"

    @classmethod
    def parse(cls, value: Any) -> Optional["TrainingPhase"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            return None


def normalize_key_type(key_type: Optional[str]) -> Optional[str]:
    if not key_type:
        return None
    key_type = str(key_type).lower()
    return KEY_TYPE_ALIASES.get(key_type, key_type)


def normalize_distance(distance: Optional[str]) -> str:
    dist = str(distance or "10k").lower()
    return DISTANCE_ALIASES.get(dist, dist)


def _pick(data: Dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    value = data.get(snake, data.get(camel))
    return default if value is None else value


# ---------------------------------------------------------------------------
# Key rules and progression templates
# ---------------------------------------------------------------------------

@dataclass
class KeyRules:
    """Which key workout types a phase/distance combination allows."""

    expected_keys_per_week: float = 0.5
    max_keys_per_week: int = 2
    allowed_key_types: List[str] = field(default_factory=lambda: ["steady", "strides"])
    preferred_key_types: List[str] = field(default_factory=lambda: ["steady"])
    banned_key_types: List[str] = field(default_factory=lambda: ["threshold", "racepace", "vo2_touch"])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyRules":
        def types(snake: str, camel: str) -> List[str]:
            return [normalize_key_type(t) for t in _pick(data, snake, camel, [])]

        return cls(
            expected_keys_per_week=float(_pick(data, "expected_keys_per_week", "expectedKeysPerWeek", 0.5)),
            max_keys_per_week=int(_pick(data, "max_keys_per_week", "maxKeysPerWeek", config.MAX_KEYS_7D)),
            allowed_key_types=types("allowed_key_types", "allowedKeyTypes"),
            preferred_key_types=types("preferred_key_types", "preferredKeyTypes"),
            banned_key_types=types("banned_key_types", "bannedKeyTypes"),
        )

    def permits(self, key_type: str) -> bool:
        """Allowed (or no allow-list) and not banned."""
        if key_type in self.banned_key_types:
            return False
        return not self.allowed_key_types or key_type in self.allowed_key_types


def get_key_rules(phase: Any, distance: Optional[str], weeks_to_event: Optional[float] = None) -> KeyRules:
    """Key workout rules for a training phase and race distance.

    Unknown phases and distances get the conservative default (steady and
    strides only). In BUILD, half-marathon and marathon athletes unlock race
    pace work 8 and 10 weeks before the event respectively.
    """
    phase = TrainingPhase.parse(phase)
    dist = normalize_distance(distance)

    if phase is TrainingPhase.RESET:
        return KeyRules(
            expected_keys_per_week=0,
            max_keys_per_week=0,
            allowed_key_types=["steady", "strides"],
            preferred_key_types=["steady"],
            banned_key_types=["threshold", "racepace", "vo2_touch"],
        )

    if phase is TrainingPhase.BASE:
        if dist in ("5k", "10k"):
            return KeyRules(1, 2, ["steady", "threshold", "strides", "vo2_touch"], ["threshold", "steady"], ["racepace"])
        if dist in ("hm", "m"):
            return KeyRules(1, 2, ["steady", "threshold", "strides"], ["threshold", "steady"], ["racepace", "vo2_touch"])

    if phase is TrainingPhase.BUILD:
        if dist == "5k":
            return KeyRules(
                1, 2,
                ["threshold", "vo2_touch", "racepace", "strides", "steady"],
                ["vo2_touch", "threshold", "racepace"],
                [],
            )
        if dist == "10k":
            return KeyRules(
                1, 2,
                ["threshold", "vo2_touch", "racepace", "strides", "steady"],
                ["threshold", "vo2_touch", "racepace"],
                [],
            )
        if dist in ("hm", "m"):
            unlock_weeks = 8 if dist == "hm" else 10
            allow_racepace = weeks_to_event is not None and weeks_to_event <= unlock_weeks
            if allow_racepace:
                return KeyRules(1, 2, ["threshold", "racepace", "steady"], ["racepace", "threshold"], ["vo2_touch", "strides"])
            return KeyRules(1, 2, ["threshold", "steady"], ["threshold"], ["racepace", "vo2_touch", "strides"])

    if phase is TrainingPhase.RACE:
        if dist == "5k":
            return KeyRules(
                1, 2,
                ["racepace", "vo2_touch", "threshold", "strides", "steady"],
                ["racepace", "vo2_touch", "threshold"],
                [],
            )
        if dist == "10k":
            return KeyRules(
                1, 2,
                ["racepace", "threshold", "vo2_touch", "strides", "steady"],
                ["racepace", "threshold", "vo2_touch"],
                [],
            )
        if dist == "hm":
            return KeyRules(1, 2, ["racepace", "threshold", "vo2_touch", "steady"], ["racepace", "threshold"], ["strides"])
        if dist == "m":
            return KeyRules(1, 2, ["racepace", "threshold", "steady"], ["racepace"], ["vo2_touch", "strides"])

    return KeyRules()


@dataclass(frozen=True)
class ProgressionStep:
    reps: int
    work_min: Optional[float] = None
    work_km: Optional[float] = None
    deload_step: bool = False

    def describe(self) -> str:
        if self.work_km is not None:
            return f"{self.reps}×{self.work_km:g} km"
        if self.work_min is not None:
            return f"{self.reps}×{self.work_min:g} min"
        return f"{self.reps} reps"


PROGRESSION_TEMPLATES: Dict[str, Dict[str, Dict[str, List[ProgressionStep]]]] = {
    "BUILD": {
        "10k": {
            "threshold": [
                ProgressionStep(4, work_min=6),
                ProgressionStep(3, work_min=8),
                ProgressionStep(3, work_min=10),
                ProgressionStep(2, work_min=8, deload_step=True),
            ],
        },
        "hm": {
            "threshold": [
                ProgressionStep(3, work_min=10),
                ProgressionStep(3, work_min=12),
                ProgressionStep(2, work_min=15),
                ProgressionStep(2, work_min=10, deload_step=True),
            ],
            "racepace": [
                ProgressionStep(3, work_km=2.0),
                ProgressionStep(2, work_km=3.0),
                ProgressionStep(2, work_km=4.0),
                ProgressionStep(2, work_km=2.0, deload_step=True),
            ],
        },
        "m": {
            "racepace": [
                ProgressionStep(3, work_km=4.0),
                ProgressionStep(2, work_km=6.0),
                ProgressionStep(2, work_km=8.0),
                ProgressionStep(2, work_km=4.0, deload_step=True),
            ],
        },
    },
    "RACE": {
        "5k": {
            "racepace": [
                ProgressionStep(3, work_km=0.8),
                ProgressionStep(3, work_km=1.0),
                ProgressionStep(2, work_km=1.2, deload_step=True),
            ],
        },
        "10k": {
            "racepace": [
                ProgressionStep(3, work_km=1.5),
                ProgressionStep(3, work_km=2.0),
                ProgressionStep(2, work_km=2.0, deload_step=True),
            ],
        },
        "hm": {
            "racepace": [
                ProgressionStep(2, work_km=4.0),
                ProgressionStep(2, work_km=5.0),
                ProgressionStep(2, work_km=3.0, deload_step=True),
            ],
        },
        "m": {
            "racepace": [
                ProgressionStep(2, work_km=6.0),
                ProgressionStep(2, work_km=8.0),
                ProgressionStep(2, work_km=5.0, deload_step=True),
            ],
        },
    },
}

RACE_PHASE_DAYS = 42


def infer_phase(days_to_race: Optional[float]) -> TrainingPhase:
    """Phase implied by race proximity when none is given."""
    if days_to_race is not None and days_to_race <= RACE_PHASE_DAYS:
        return TrainingPhase.RACE
    return TrainingPhase.BUILD


def get_progression_steps(phase: Any, distance: str, key_type: str) -> List[ProgressionStep]:
    phase = TrainingPhase.parse(phase)
    if phase is None:
        return []
    return PROGRESSION_TEMPLATES.get(phase.value, {}).get(normalize_distance(distance), {}).get(key_type, [])


def compute_taper_factor(days_to_race: Optional[float], taper_start_days: Optional[int] = None) -> float:
    """Volume factor approaching a race: 0.9 at taper start down to 0.6 two days out."""
    if days_to_race is None or not math.isfinite(days_to_race):
        return 1.0
    start = config.TAPER_START_DAYS_DEFAULT if taper_start_days is None else taper_start_days
    end = config.TAPER_END_DAYS
    if days_to_race <= end:
        return 0.6
    if days_to_race >= start:
        return 0.9
    span = start - end
    if span <= 0:
        return 0.9
    return 0.6 + (days_to_race - end) / span * (0.9 - 0.6)


def in_taper_window(days_to_race: Optional[float], distance: str) -> bool:
    if days_to_race is None or days_to_race < 0:
        return False
    return days_to_race <= config.get_taper_start_days(normalize_distance(distance))


# ---------------------------------------------------------------------------
# Weekly key suggestion
# ---------------------------------------------------------------------------

@dataclass
class KeySpacing:
    ok: bool = True
    next_allowed_iso: Optional[str] = None


@dataclass
class KeyHardDecision:
    allowed: bool = True
    reason: Optional[str] = None


@dataclass
class WorkoutDebug:
    """Workout already chosen upstream for this week, if any."""

    chosen_template_id: Optional[str] = None
    adjusted_reps: Optional[int] = None
    scaling_level: int = 0


@dataclass
class WeeklyKeyContext:
    """Inputs for one week's key suggestion."""

    distance: str = "10k"
    day_iso: Optional[str] = None
    phase: Optional[TrainingPhase] = None
    key_rules: Optional[KeyRules] = None
    intensity_key_type: Optional[str] = None
    decision_key_type: Optional[str] = None
    key_spacing: KeySpacing = field(default_factory=KeySpacing)
    key_hard_decision: KeyHardDecision = field(default_factory=KeyHardDecision)
    guardrail_hard_active: bool = False
    runfloor_gap: bool = False
    drift_warning: bool = False
    negative_signals: List[str] = field(default_factory=list)
    workout_debug: WorkoutDebug = field(default_factory=WorkoutDebug)
    days_to_race: Optional[float] = None
    previous_step: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WeeklyKeyContext":
        rules = _pick(data, "key_rules", "keyRules")
        spacing = _pick(data, "key_spacing", "keySpacing", {})
        hard = _pick(data, "key_hard_decision", "keyHardDecision", {})
        debug = _pick(data, "workout_debug", "workoutDebug", {})
        intensity = _pick(data, "intensity_selection", "intensitySelection", {})

        return cls(
            distance=normalize_distance(data.get("distance")),
            day_iso=_pick(data, "day_iso", "dayIso"),
            phase=TrainingPhase.parse(data.get("phase")) if data.get("phase") else None,
            key_rules=KeyRules.from_dict(rules) if rules else None,
            intensity_key_type=normalize_key_type(_pick(intensity, "key_type", "keyType")),
            decision_key_type=normalize_key_type(_pick(data, "decision_key_type", "decisionKeyType")),
            key_spacing=KeySpacing(
                ok=spacing.get("ok") is not False,
                next_allowed_iso=_pick(spacing, "next_allowed_iso", "nextAllowedIso"),
            ),
            key_hard_decision=KeyHardDecision(
                allowed=hard.get("allowed") is not False,
                reason=hard.get("reason"),
            ),
            guardrail_hard_active=bool(_pick(data, "guardrail_hard_active", "guardrailHardActive", False)),
            runfloor_gap=bool(_pick(data, "runfloor_gap", "runfloorGap", False)),
            drift_warning=bool(_pick(data, "drift_warning", "driftWarning", False)),
            negative_signals=list(_pick(data, "negative_signals", "negativeSignals", [])),
            workout_debug=WorkoutDebug(
                chosen_template_id=_pick(debug, "chosen_template_id", "chosenTemplateId"),
                adjusted_reps=_pick(debug, "adjusted_reps", "adjustedReps"),
                scaling_level=int(_pick(debug, "scaling_level", "scalingLevel", 0)),
            ),
            days_to_race=_pick(data, "days_to_race", "daysToRace"),
            previous_step=_pick(data, "previous_step", "previousStep"),
        )

    @property
    def has_warning_signals(self) -> bool:
        return self.guardrail_hard_active or self.drift_warning or bool(self.negative_signals)


@dataclass
class KeySuggestion:
    key_label: str
    key_type: Optional[str]
    template_id: Optional[str]
    progression_step: int
    reps: Optional[int]
    taper_applied: bool
    scaling_level: int
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SuppressionRule:
    """Constraint that, when violated, removes the key for the week."""

    reason: str
    violated: Callable[[WeeklyKeyContext], bool]
    describe: Callable[[WeeklyKeyContext], str]


def _spacing_text(ctx: WeeklyKeyContext) -> str:
    hours = config.KEY_MIN_SPACING_HOURS
    if ctx.key_spacing.next_allowed_iso:
        return f"less than {hours}h since last key, next key from {ctx.key_spacing.next_allowed_iso}"
    return f"less than {hours}h since last key"


# Evaluated in order; the first violated rule suppresses the key
SUPPRESSION_RULES: List[SuppressionRule] = [
    SuppressionRule("KEY_SPACING", lambda c: c.key_spacing.ok is False, _spacing_text),
    SuppressionRule(
        "KEY_HARD_QUOTA",
        lambda c: c.key_hard_decision.allowed is False,
        lambda c: c.key_hard_decision.reason or f"hard key limit ({config.MAX_KEYS_7D}/7d) reached",
    ),
]


def clamp_scaling(level: int) -> int:
    return max(SCALING_MIN, min(SCALING_MAX, level))


def pick_substitute(rules: KeyRules, exclude: Optional[str] = None) -> str:
    """Best permitted type: preferred first, then allowed, then steady."""
    for key_type in rules.preferred_key_types + rules.allowed_key_types:
        if key_type != exclude and rules.permits(key_type):
            return key_type
    return "steady"


def get_weekly_key_suggestion(context: Any) -> KeySuggestion:
    """Suggest this week's key workout.

    Args:
        context: `WeeklyKeyContext` or dict (snake_case or camelCase keys)

    Returns:
        KeySuggestion. When spacing or the weekly hard-key quota is violated
        the label starts with "no key" and no type is set. Otherwise a type
        the rules do not permit is replaced, never suppressed, and the
        workout is scaled down instead.
    """
    ctx = context if isinstance(context, WeeklyKeyContext) else WeeklyKeyContext.from_dict(context or {})
    previous_step = int(ctx.previous_step) if ctx.previous_step is not None else None

    for rule in SUPPRESSION_RULES:
        if rule.violated(ctx):
            text = rule.describe(ctx)
            logger.info("Key suppressed (%s): %s", rule.reason, text)
            return KeySuggestion(
                key_label=f"{NO_KEY_LABEL} ({text})",
                key_type=None,
                template_id=None,
                progression_step=previous_step or 0,
                reps=None,
                taper_applied=False,
                scaling_level=clamp_scaling(ctx.workout_debug.scaling_level),
                reason=rule.reason,
            )

    phase = ctx.phase or infer_phase(ctx.days_to_race)
    weeks_to_event = ctx.days_to_race / 7 if ctx.days_to_race is not None else None
    rules = ctx.key_rules or get_key_rules(phase, ctx.distance, weeks_to_event)

    candidate = (
        ctx.decision_key_type
        or ctx.intensity_key_type
        or (rules.preferred_key_types[0] if rules.preferred_key_types else None)
        or "steady"
    )
    scaling = ctx.workout_debug.scaling_level
    notes = []

    key_type = candidate
    not_preferred = bool(rules.preferred_key_types) and candidate not in rules.preferred_key_types
    if not rules.permits(candidate) or not_preferred:
        key_type = pick_substitute(rules, exclude=candidate)
        if key_type != candidate:
            scaling -= 1
            notes.append(f"{candidate} replaced by {key_type}")

    if ctx.has_warning_signals:
        scaling -= 1
        notes.append("warning signals, scaled down")

    taper_applied = in_taper_window(ctx.days_to_race, ctx.distance)
    if taper_applied:
        step = max(0, (previous_step or 0) - 1)
        scaling -= 1
        notes.append(f"taper ({ctx.days_to_race} days to race)")
    else:
        step = 0 if previous_step is None else previous_step + 1

    steps = get_progression_steps(phase, ctx.distance, key_type)
    current = steps[step % len(steps)] if steps else None
    reps = current.reps if current else ctx.workout_debug.adjusted_reps
    if current and current.deload_step:
        scaling -= 1
        notes.append("deload step")
    if taper_applied and reps:
        reps = max(1, int(reps) - 1)

    if current:
        workload_text = replace(current, reps=reps).describe()
    else:
        workload_text = f"{reps} reps" if reps else None

    scaling = clamp_scaling(scaling)

    if ctx.workout_debug.chosen_template_id and key_type == candidate:
        template_id = ctx.workout_debug.chosen_template_id
    else:
        template_id = f"{TEMPLATE_CODES.get(key_type, 'KEY')}{step + 1}"

    label = KEY_TYPE_LABELS.get(key_type, key_type)
    if workload_text:
        label += f": {workload_text}"
    if scaling < 0:
        label += f" (scaled {scaling})"

    logger.info("Key suggestion %s (step %d, scaling %d)", key_type, step, scaling)
    return KeySuggestion(
        key_label=label,
        key_type=key_type,
        template_id=template_id,
        progression_step=step,
        reps=reps,
        taper_applied=taper_applied,
        scaling_level=scaling,
        reason="; ".join(notes) or "key allowed",
    )


# ---------------------------------------------------------------------------
# Weekly plan
# ---------------------------------------------------------------------------

def should_select_base_key_by_quota(quota_fraction: float, day_iso: Any) -> bool:
    """Deterministically pick roughly `quota_fraction` of weeks for a base key.

    Weeks are numbered by ordinal day // 7 and a week is selected whenever
    the running total floor(week * quota) increases, so a quota of 0.5
    alternates between consecutive weeks.
    """
    if quota_fraction is None or not math.isfinite(quota_fraction) or quota_fraction <= 0:
        return False
    if quota_fraction >= 1:
        return True
    week = parse_day(day_iso).toordinal() // 7
    return math.floor((week + 1) * quota_fraction) > math.floor(week * quota_fraction)


@dataclass
class HistoryEntry:
    type_key: str
    workload: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            type_key=normalize_key_type(_pick(data, "type_key", "typeKey")) or "easy",
            workload=float(data.get("workload") or 0.0),
        )


@dataclass
class WeeklyPlanContext:
    """Inputs for selecting a week's workouts."""

    distance: str = "10k"
    phase: Optional[TrainingPhase] = None
    day_iso: Optional[str] = None
    days_to_race: Optional[float] = None
    runfloor_gap: bool = False
    deload_active: bool = False
    drift_warning: bool = False
    negative_signals: List[str] = field(default_factory=list)
    last_key_date: Optional[str] = None
    last_key_types: List[str] = field(default_factory=list)
    keys_last_7d: int = 0
    history: List[HistoryEntry] = field(default_factory=list)
    learned_arm: Optional[str] = None
    base_key_quota: float = None

    def __post_init__(self):
        if self.base_key_quota is None:
            self.base_key_quota = config.BASE_KEY_QUOTA

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WeeklyPlanContext":
        learned = _pick(data, "learned_arm", "learnedArm")
        return cls(
            distance=normalize_distance(data.get("distance")),
            phase=TrainingPhase.parse(data.get("phase")) if data.get("phase") else None,
            day_iso=_pick(data, "day_iso", "dayIso"),
            days_to_race=_pick(data, "days_to_race", "daysToRace"),
            runfloor_gap=bool(_pick(data, "runfloor_gap", "runfloorGap", False)),
            deload_active=bool(_pick(data, "deload_active", "deloadActive", False)),
            drift_warning=bool(_pick(data, "drift_warning", "driftWarning", False)),
            negative_signals=list(_pick(data, "negative_signals", "negativeSignals", [])),
            last_key_date=_pick(data, "last_key_date", "lastKeyDate"),
            last_key_types=[normalize_key_type(t) for t in _pick(data, "last_key_types", "lastKeyTypes", [])],
            keys_last_7d=int(_pick(data, "keys_last_7d", "keysLast7d", 0)),
            history=[HistoryEntry.from_dict(h) for h in data.get("history") or []],
            learned_arm=arm_name(learned) if learned else None,
            base_key_quota=_pick(data, "base_key_quota", "baseKeyQuota"),
        )


@dataclass
class PlannedWorkout:
    id: str
    name: str
    type_key: str
    is_key: bool
    source: str
    target_workload: Optional[float] = None


@dataclass
class WeeklyPlanResult:
    selected: List[PlannedWorkout]
    rationale: List[str]
    taper_applied: bool
    deload_applied: bool
    runfloor_blocked: bool

    @property
    def key_workouts(self) -> List[PlannedWorkout]:
        return [w for w in self.selected if w.is_key]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class WeeklyPlanSelector:
    """Select the workouts of one training week."""

    def __init__(self, context: WeeklyPlanContext):
        self.ctx = context
        self.phase = context.phase or infer_phase(context.days_to_race)
        weeks_to_event = context.days_to_race / 7 if context.days_to_race is not None else None
        self.rules = get_key_rules(self.phase, context.distance, weeks_to_event)
        self.taper = in_taper_window(context.days_to_race, context.distance)
        self.taper_factor = (
            compute_taper_factor(context.days_to_race, config.get_taper_start_days(context.distance))
            if self.taper else 1.0
        )
        self.deload = context.deload_active or context.learned_arm == StrategyArm.PROTECT_DELOAD.value
        self.rationale: List[str] = []
        self._counter = 0

    def select(self) -> WeeklyPlanResult:
        ctx = self.ctx
        workouts = [
            self._workout("easy", "base", is_key=False),
        ]

        if self.deload:
            self.rationale.append(
                "Deload active: reduced-load workouts" if ctx.deload_active
                else "Learned PROTECT_DELOAD: soft deload this week"
            )
        if self.taper:
            self.rationale.append(
                f"Taper window ({ctx.days_to_race} days to race): volume x{self.taper_factor:.2f}"
            )

        key_type = None
        if ctx.runfloor_gap:
            self.rationale.append("Run-floor gap: key workouts blocked, volume first")
            workouts.append(self._workout("easy", "runfloor", is_key=False))
        else:
            key_type = self._key_decision()

        if key_type == "longrun":
            workouts.append(self._workout("longrun", "quota", is_key=True))
        else:
            workouts.append(self._workout("longrun", "base", is_key=False))
            if key_type:
                source = "deload" if self.deload else "rules"
                workouts.append(self._workout(key_type, source, is_key=True))

        if ctx.learned_arm == StrategyArm.FREQ_UP.value and not ctx.runfloor_gap:
            self.rationale.append("Learned FREQ_UP: extra easy run instead of a second key")
            workouts.append(self._workout("easy", "learning", is_key=False))

        logger.info(
            "Weekly plan %s: %s",
            ctx.day_iso,
            ", ".join(f"{w.type_key}{'*' if w.is_key else ''}" for w in workouts),
        )
        return WeeklyPlanResult(
            selected=workouts,
            rationale=self.rationale,
            taper_applied=self.taper,
            deload_applied=self.deload,
            runfloor_blocked=ctx.runfloor_gap,
        )

    def _key_decision(self) -> Optional[str]:
        """Key type for the week, "longrun" for a base quota key, or None."""
        ctx = self.ctx

        if self.rules.max_keys_per_week <= 0:
            self.rationale.append(f"{self.phase.value} phase: no key workouts")
            return None

        if ctx.last_key_date and ctx.day_iso:
            hours = (parse_day(ctx.day_iso) - parse_day(ctx.last_key_date)).days * 24
            if hours < config.KEY_MIN_SPACING_HOURS:
                self.rationale.append(f"Last key {ctx.last_key_date}: less than {config.KEY_MIN_SPACING_HOURS}h ago")
                return None

        max_keys = min(config.MAX_KEYS_7D, self.rules.max_keys_per_week)
        if ctx.keys_last_7d >= max_keys:
            self.rationale.append(f"Hard key limit ({max_keys}/7d) reached")
            return None

        if self.phase is TrainingPhase.BASE:
            # the phase's expected key rate caps the quota
            quota = min(ctx.base_key_quota, self.rules.expected_keys_per_week)
            if ctx.day_iso and should_select_base_key_by_quota(quota, ctx.day_iso):
                self.rationale.append("BASE quota week: long run is the key")
                return "longrun"
            self.rationale.append("BASE quota: no key this week")
            return None

        if self.deload:
            self.rationale.append("Key replaced by strides during deload")
            return "strides"

        fresh = [t for t in self.rules.preferred_key_types if t not in ctx.last_key_types and self.rules.permits(t)]
        key_type = fresh[0] if fresh else pick_substitute(self.rules)
        if ctx.drift_warning or ctx.negative_signals:
            self.rationale.append(f"Warning signals: {key_type} scaled down")
        else:
            self.rationale.append(f"{self.phase.value} {ctx.distance}: {key_type} key")
        return key_type

    def _target_workload(self, type_key: str, is_key: bool) -> Optional[float]:
        """Next workload from history: same type, else the last key load for key workouts."""
        history = [h for h in self.ctx.history if h.workload > 0]
        previous = [h.workload for h in history if h.type_key == type_key]
        if not previous and is_key and type_key != "longrun":
            previous = [h.workload for h in history if h.type_key not in ("easy", "longrun")]
        if not previous:
            return None

        factor = 1 + config.MAX_WORKLOAD_INCREASE_PCT
        if self.deload:
            factor = config.DELOAD_FACTOR
        factor *= self.taper_factor
        if type_key not in ("easy", "longrun") and (self.ctx.drift_warning or self.ctx.negative_signals):
            factor *= 0.9
        return round(previous[-1] * factor, 1)

    def _workout(self, type_key: str, source: str, is_key: bool) -> PlannedWorkout:
        self._counter += 1
        name = KEY_TYPE_LABELS.get(type_key, type_key)
        if source == "deload" or (self.deload and type_key == "longrun"):
            name = f"{name} (reduced)"
        return PlannedWorkout(
            id=f"{self.ctx.day_iso or 'week'}-{self._counter}-{type_key}",
            name=name,
            type_key=type_key,
            is_key=is_key,
            source=source,
            target_workload=self._target_workload(type_key, is_key),
        )


def select_weekly_plan(context: Any) -> WeeklyPlanResult:
    """Select the week's workouts.

    A run-floor gap blocks every key workout regardless of learned
    preference. Deload (explicit, or learned PROTECT_DELOAD) substitutes
    reduced-load workouts and the taper window scales volume down.
    """
    ctx = context if isinstance(context, WeeklyPlanContext) else WeeklyPlanContext.from_dict(context or {})
    return WeeklyPlanSelector(ctx).select()
