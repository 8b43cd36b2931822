"""Interval session evaluation and progress tracking.

Scores interval sessions from pre-segmented intervals.icu data:

1. Execution: pace consistency across reps and fade towards the end
2. Dose: quality volume against an explicit or implicit target
3. Strain: cadence and respiration stability across reps
4. Intent: which physiological stimulus the session actually hit

Reps are filtered by average speed, duration and segment type. Min/max
speed of a segment is never used (too noisy), micro segments are ignored.
"""

import logging
import math
import numpy as np
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..config import config

logger = logging.getLogger(__name__)


class PlannedIntent(Enum):
    """Intent the session was planned with."""

    RACEPACE = "racepace"
    THRESHOLD = "threshold"
    VO2 = "vo2"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "PlannedIntent":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "unknown").lower())
        except ValueError:
            return cls.UNKNOWN


class SessionIntent(Enum):
    """Intent classified from what the session actually looked like."""

    RACEPACE_LIKE = "racepace_like"
    THRESHOLD_LIKE = "threshold_like"
    VO2_LIKE = "vo2_like"
    MIXED = "mixed"
    UNKNOWN = "unknown"


INTENT_MATCHES = {
    PlannedIntent.RACEPACE: SessionIntent.RACEPACE_LIKE,
    PlannedIntent.THRESHOLD: SessionIntent.THRESHOLD_LIKE,
    PlannedIntent.VO2: SessionIntent.VO2_LIKE,
}


def is_finite_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)


def _opt(x: Any) -> Optional[float]:
    return float(x) if is_finite_number(x) else None


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def linear_down(x: float, good: float, bad: float) -> float:
    """Map x linearly onto a falling score: <= good -> 1.0, >= bad -> 0.0."""
    if x <= good:
        return 1.0
    if x >= bad:
        return 0.0
    return 1.0 - (x - good) / (bad - good)


@dataclass(frozen=True)
class EvalConfig:
    """Thresholds for one session evaluation."""

    hf_max: float = 173
    rep_min_sec: float = 90
    rep_max_sec: float = 900
    rep_min_speed: float = 2.8
    micro_sec: float = 15
    racepace_hr_frac_range: Tuple[float, float] = (0.84, 0.92)
    threshold_hr_frac_range: Tuple[float, float] = (0.82, 0.90)
    vo2_hr_frac_min: float = 0.90
    cv_good: float = 0.02
    cv_ok: float = 0.04
    cv_bad: float = 0.07
    fade_ok: float = 0.02
    fade_bad: float = 0.05
    cadence_drop_warn: float = 3
    resp_rise_warn: float = 6
    short_rep_sec: Tuple[float, float] = (120, 360)
    long_rep_sec: Tuple[float, float] = (360, 900)
    default_target_km: float = 3.0

    @classmethod
    def from_config(cls) -> "EvalConfig":
        """Build the evaluation config from the global application config."""
        return cls(
            hf_max=config.HFMAX,
            rep_min_sec=config.REP_MIN_SEC,
            rep_max_sec=config.REP_MAX_SEC,
            rep_min_speed=config.REP_MIN_SPEED,
            micro_sec=config.MICRO_SEGMENT_SEC,
            racepace_hr_frac_range=config.RACEPACE_HR_FRAC_RANGE,
            threshold_hr_frac_range=config.THRESHOLD_HR_FRAC_RANGE,
            vo2_hr_frac_min=config.VO2_HR_FRAC_MIN,
            cv_good=config.CV_GOOD,
            cv_ok=config.CV_OK,
            cv_bad=config.CV_BAD,
            fade_ok=config.FADE_OK,
            fade_bad=config.FADE_BAD,
            cadence_drop_warn=config.CADENCE_DROP_WARN,
            resp_rise_warn=config.RESP_RISE_WARN,
            short_rep_sec=config.SHORT_REP_SEC_RANGE,
            long_rep_sec=config.LONG_REP_SEC_RANGE,
            default_target_km=config.DOSE_DEFAULT_TARGET_KM,
        )


@dataclass
class ICUInterval:
    """One intervals.icu segment."""

    type: str
    distance: Optional[float]
    moving_time: float
    elapsed_time: float
    average_speed: Optional[float]
    gap: Optional[float] = None
    average_heartrate: Optional[float] = None
    average_cadence: Optional[float] = None
    average_respiration: Optional[float] = None
    average_temp: Optional[float] = None
    average_gradient: Optional[float] = None
    zone: Optional[float] = None
    intensity: Optional[float] = None
    group_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ICUInterval":
        moving = data.get("moving_time")
        return cls(
            type=str(data.get("type") or "").upper(),
            distance=data.get("distance"),
            moving_time=moving if is_finite_number(moving) else 0,
            elapsed_time=data.get("elapsed_time") or 0,
            average_speed=data.get("average_speed"),
            gap=data.get("gap"),
            average_heartrate=data.get("average_heartrate"),
            average_cadence=data.get("average_cadence"),
            average_respiration=data.get("average_respiration"),
            average_temp=data.get("average_temp"),
            average_gradient=data.get("average_gradient"),
            zone=data.get("zone"),
            intensity=data.get("intensity"),
            group_id=data.get("group_id"),
        )


@dataclass
class Rep:
    """A qualifying work segment."""

    idx: int
    moving_sec: float
    dist_m: float
    speed: float
    pace_sec_per_km: float
    gap_speed: Optional[float] = None
    hr: Optional[float] = None
    cad: Optional[float] = None
    resp: Optional[float] = None
    temp: Optional[float] = None


@dataclass
class DoseTarget:
    """Planned quality volume, by distance or by time."""

    target_km: Optional[float] = None
    target_min: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DoseTarget":
        data = data or {}
        return cls(
            target_km=data.get("target_km", data.get("targetKm")),
            target_min=data.get("target_min", data.get("targetMin")),
        )


@dataclass
class SessionScores:
    """Result of one session evaluation."""

    execution: int
    dose: int
    strain: int
    intent_match: int
    overall: int
    reps: List[Rep]
    rep_count: int
    quality_km: float
    quality_min: float
    pace_cv: Optional[float]
    fade_pct: Optional[float]
    hr_frac_avg: Optional[float]
    cadence_drop: Optional[float]
    intent: SessionIntent
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["intent"] = self.intent.value
        return data


@dataclass
class ProgressPoint:
    """Compact per-activity summary for trend comparison."""

    date_iso: str
    activity_id: str
    intent: PlannedIntent
    rep_sec_avg: float
    quality_km: float
    eff_speed_per_bpm: Optional[float]
    cost_bpm_at_speed: Optional[float]
    execution: int
    overall: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressPoint":
        return cls(
            date_iso=str(data.get("date_iso", data.get("dateISO", ""))),
            activity_id=str(data.get("activity_id", data.get("activityId", ""))),
            intent=PlannedIntent.parse(data.get("intent")),
            rep_sec_avg=float(data.get("rep_sec_avg", data.get("repSecAvg", 0)) or 0),
            quality_km=float(data.get("quality_km", data.get("qualityKm", 0)) or 0),
            eff_speed_per_bpm=_opt(data.get("eff_speed_per_bpm", data.get("effSpeedPerBpm"))),
            cost_bpm_at_speed=_opt(data.get("cost_bpm_at_speed", data.get("costBpmAtSpeed"))),
            execution=int(data.get("execution", 0) or 0),
            overall=int(data.get("overall", 0) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["intent"] = self.intent.value
        return data


@dataclass
class ProgressTrend:
    """Trend for one group of comparable sessions."""

    trend_eff: Optional[float]
    trend_exec: Optional[float]
    last: Optional[ProgressPoint]


class IntervalSessionEvaluator:
    """Score interval sessions from intervals.icu segments."""

    def __init__(self, eval_config: Optional[EvalConfig] = None):
        self.cfg = eval_config or EvalConfig.from_config()

    def extract_qualifying_reps(self, intervals: Sequence[Any]) -> List[Rep]:
        """Filter segments down to qualifying work reps, keeping original indices."""
        cfg = self.cfg
        reps = []

        for i, seg in enumerate(intervals):
            if not isinstance(seg, ICUInterval):
                seg = ICUInterval.from_dict(seg)

            if not is_finite_number(seg.moving_time) or seg.moving_time < cfg.micro_sec:
                continue
            if seg.type != "WORK":
                continue
            if not is_finite_number(seg.average_speed) or seg.average_speed <= 0:
                continue
            if not is_finite_number(seg.distance) or seg.distance <= 0:
                continue
            if seg.moving_time < cfg.rep_min_sec or seg.moving_time > cfg.rep_max_sec:
                continue
            if seg.average_speed < cfg.rep_min_speed:
                continue

            speed = float(seg.average_speed)
            reps.append(Rep(
                idx=i,
                moving_sec=float(seg.moving_time),
                dist_m=float(seg.distance),
                speed=speed,
                pace_sec_per_km=1000 / speed,
                gap_speed=_opt(seg.gap),
                hr=_opt(seg.average_heartrate),
                cad=_opt(seg.average_cadence),
                resp=_opt(seg.average_respiration),
                temp=_opt(seg.average_temp),
            ))

        return reps

    def score_execution(self, reps: List[Rep]) -> Dict[str, Any]:
        """Score pace consistency (CV) and fade between first and last rep.

        Returns:
            Dict with score (0-100), pace_cv, fade_pct and notes
        """
        cfg = self.cfg
        if len(reps) < 2:
            return {"score": 0, "pace_cv": None, "fade_pct": None,
                    "notes": ["Too few reps for an execution score."]}

        notes = []
        paces = np.array([r.pace_sec_per_km for r in reps])
        mean_pace = paces.mean()
        cv = float(paces.std() / mean_pace) if mean_pace > 0 else math.nan
        fade_pct = (reps[-1].pace_sec_per_km - reps[0].pace_sec_per_km) / reps[0].pace_sec_per_km

        if not math.isfinite(cv):
            cv_score = 0.0
        else:
            cv_score = linear_down(cv, cfg.cv_good, cfg.cv_bad)
            if cv > cfg.cv_ok:
                notes.append(f"Pace spread elevated (CV {cv * 100:.1f}%).")

        if not math.isfinite(fade_pct):
            fade_score = 0.0
        else:
            # negative split is a perfect finish
            fade_score = 1.0 if fade_pct <= 0 else linear_down(fade_pct, cfg.fade_ok, cfg.fade_bad)
            if fade_pct > cfg.fade_ok:
                notes.append(f"Fade at the end: {fade_pct * 100:.1f}% slower.")

        score = round(100 * clamp01(0.7 * cv_score + 0.3 * fade_score))
        if score >= 85:
            notes.append("Execution: very clean (steady pace, no fade).")

        return {
            "score": score,
            "pace_cv": cv if math.isfinite(cv) else None,
            "fade_pct": fade_pct if math.isfinite(fade_pct) else None,
            "notes": notes,
        }

    def score_dose(self, reps: List[Rep], target: Optional[DoseTarget] = None) -> Dict[str, Any]:
        """Score quality volume against the dose target."""
        target = target or DoseTarget()
        quality_km = sum(r.dist_m for r in reps) / 1000
        quality_min = sum(r.moving_sec for r in reps) / 60

        if is_finite_number(target.target_km) and target.target_km > 0:
            pct = quality_km / target.target_km
            note = f"Quality: {quality_km:.2f} km of {target.target_km:.2f} km target ({round(pct * 100)}%)."
        elif is_finite_number(target.target_min) and target.target_min > 0:
            pct = quality_min / target.target_min
            note = f"Quality: {quality_min:.1f} min of {target.target_min:.1f} min target ({round(pct * 100)}%)."
        else:
            pct = quality_km / self.cfg.default_target_km
            note = f"Quality: {quality_km:.2f} km (no explicit target, heuristic rating)."

        return {"score": round(100 * clamp01(pct)), "quality_km": quality_km,
                "quality_min": quality_min, "notes": [note]}

    def score_strain(self, reps: List[Rep]) -> Dict[str, Any]:
        """Score cadence and respiration stability from first to last rep."""
        cfg = self.cfg
        if len(reps) < 2:
            return {"score": 50, "cadence_drop": None, "notes": ["Too few reps for strain analysis."]}

        notes = []
        cad_first, cad_last = reps[0].cad, reps[-1].cad
        cadence_drop = cad_first - cad_last if cad_first is not None and cad_last is not None else None

        cadence_score = 1.0
        if cadence_drop is None:
            notes.append("Cadence data missing, strain less certain.")
        elif cadence_drop > cfg.cadence_drop_warn:
            cadence_score = 0.5
            notes.append(f"Cadence drops by {cadence_drop:.1f} spm, possible form breakdown or overpacing.")
        else:
            notes.append("Cadence stable, good form signal.")

        resps = [r.resp for r in reps if r.resp is not None]
        resp_score = 1.0
        if len(resps) >= 2:
            resp_delta = resps[-1] - resps[0]
            if resp_delta > cfg.resp_rise_warn:
                resp_score = 0.7
                notes.append(f"Respiration rate rises sharply (+{resp_delta:.1f}/min).")

        score = round(100 * clamp01(0.6 * cadence_score + 0.4 * resp_score))
        return {"score": score, "cadence_drop": cadence_drop, "notes": notes}

    def hr_fraction(self, reps: List[Rep]) -> Optional[float]:
        """Average rep heart rate as a fraction of HFmax."""
        hrs = [r.hr for r in reps if r.hr is not None]
        if not hrs or self.cfg.hf_max <= 0:
            return None
        return float(np.mean(hrs)) / self.cfg.hf_max

    def classify_intent(self, reps: List[Rep]) -> Dict[str, Any]:
        """Classify the stimulus from HR fraction and average rep duration."""
        cfg = self.cfg
        hr_frac = self.hr_fraction(reps)
        if hr_frac is None or not reps:
            return {"intent": SessionIntent.UNKNOWN, "hr_frac_avg": hr_frac,
                    "notes": ["Too little HR/rep data for intent classification."]}

        sec_avg = float(np.mean([r.moving_sec for r in reps]))
        rp_lo, rp_hi = cfg.racepace_hr_frac_range
        th_lo, th_hi = cfg.threshold_hr_frac_range
        is_short = cfg.short_rep_sec[0] <= sec_avg <= cfg.short_rep_sec[1]
        is_long = cfg.long_rep_sec[0] <= sec_avg <= cfg.long_rep_sec[1]
        detail = f"rep avg {sec_avg / 60:.1f} min, HR avg {hr_frac * 100:.1f}% HFmax"

        if is_short and hr_frac >= cfg.vo2_hr_frac_min:
            intent = SessionIntent.VO2_LIKE
            note = f"Intent: VO2-like ({detail})."
        elif is_long and th_lo <= hr_frac <= th_hi:
            intent = SessionIntent.THRESHOLD_LIKE
            note = f"Intent: threshold-like ({detail})."
        elif is_short and rp_lo <= hr_frac <= rp_hi:
            intent = SessionIntent.RACEPACE_LIKE
            note = f"Intent: racepace-like ({detail})."
        else:
            intent = SessionIntent.MIXED
            note = f"Intent: mixed/unclear ({detail})."

        return {"intent": intent, "hr_frac_avg": hr_frac, "notes": [note]}

    @staticmethod
    def score_intent_match(classified: SessionIntent, planned: PlannedIntent) -> int:
        if planned == PlannedIntent.UNKNOWN:
            return 50
        if INTENT_MATCHES.get(planned) == classified:
            return 100
        if classified == SessionIntent.MIXED:
            return 65
        if classified == SessionIntent.UNKNOWN:
            return 50
        return 35

    def evaluate(
        self,
        intervals: Sequence[Any],
        planned_intent: Any = PlannedIntent.UNKNOWN,
        dose_target: Optional[DoseTarget] = None,
    ) -> SessionScores:
        """Evaluate one interval session.

        Args:
            intervals: intervals.icu segments (`ICUInterval` or dicts)
            planned_intent: Planned intent ("racepace", "threshold", "vo2")
            dose_target: Planned quality volume

        Returns:
            SessionScores with all sub-scores and the weighted overall score
        """
        planned = PlannedIntent.parse(planned_intent)
        if isinstance(dose_target, dict):
            dose_target = DoseTarget.from_dict(dose_target)

        reps = self.extract_qualifying_reps(intervals)
        ex = self.score_execution(reps)
        dose = self.score_dose(reps, dose_target)
        strain = self.score_strain(reps)
        cls = self.classify_intent(reps)
        intent_match = self.score_intent_match(cls["intent"], planned)

        overall = round(100 * clamp01(
            0.35 * ex["score"] / 100
            + 0.25 * dose["score"] / 100
            + 0.20 * strain["score"] / 100
            + 0.20 * intent_match / 100
        ))

        logger.debug("Evaluated session: %d reps, overall %d, intent %s", len(reps), overall, cls["intent"].value)

        return SessionScores(
            execution=ex["score"],
            dose=dose["score"],
            strain=strain["score"],
            intent_match=intent_match,
            overall=overall,
            reps=reps,
            rep_count=len(reps),
            quality_km=dose["quality_km"],
            quality_min=dose["quality_min"],
            pace_cv=ex["pace_cv"],
            fade_pct=ex["fade_pct"],
            hr_frac_avg=cls["hr_frac_avg"],
            cadence_drop=strain["cadence_drop"],
            intent=cls["intent"],
            notes=ex["notes"] + dose["notes"] + strain["notes"] + cls["notes"],
        )


def evaluate_session(
    intervals: Sequence[Any],
    planned_intent: Any = PlannedIntent.UNKNOWN,
    dose_target: Optional[DoseTarget] = None,
    eval_config: Optional[EvalConfig] = None,
) -> SessionScores:
    """Evaluate one interval session with the given (or default) config."""
    return IntervalSessionEvaluator(eval_config).evaluate(intervals, planned_intent, dose_target)


def _median(values: List[float]) -> Optional[float]:
    return float(np.median(values)) if values else None


class ProgressTracker:
    """Turn session scores into progress points and compare like with like."""

    def __init__(self, lookback_n: int = 4):
        self.lookback_n = lookback_n

    @staticmethod
    def build_comparable_key(intent: Any, rep_sec_avg: float, quality_km: float) -> str:
        """Group sessions by planned intent, rep length (30s bins) and volume (0.5 km bins)."""
        intent = PlannedIntent.parse(intent)
        rep_bin = int(round(rep_sec_avg / 30) * 30)
        km_bin = round(quality_km / 0.5) * 0.5
        return f"{intent.value}|rep{rep_bin}|km{km_bin:g}"

    @staticmethod
    def to_progress_point(date_iso: str, activity_id: str, planned_intent: Any,
                          scores: SessionScores) -> ProgressPoint:
        reps = scores.reps
        rep_sec_avg = float(np.mean([r.moving_sec for r in reps])) if reps else 0.0
        speeds = [r.gap_speed if r.gap_speed is not None else r.speed for r in reps]
        hrs = [r.hr for r in reps if r.hr is not None]

        eff = None
        if speeds and hrs:
            hr_avg = float(np.mean(hrs))
            if hr_avg > 0:
                eff = float(np.mean(speeds)) / hr_avg

        return ProgressPoint(
            date_iso=date_iso,
            activity_id=str(activity_id),
            intent=PlannedIntent.parse(planned_intent),
            rep_sec_avg=rep_sec_avg,
            quality_km=scores.quality_km,
            eff_speed_per_bpm=eff,
            cost_bpm_at_speed=None,
            execution=scores.execution,
            overall=scores.overall,
        )

    def summarize_progress(self, points: Sequence[ProgressPoint]) -> Dict[str, ProgressTrend]:
        """Median of the last n comparable sessions against the n before.

        Returns:
            Dict of comparable key -> ProgressTrend
        """
        n = self.lookback_n
        grouped: Dict[str, List[ProgressPoint]] = {}
        for p in points:
            key = self.build_comparable_key(p.intent, p.rep_sec_avg, p.quality_km)
            grouped.setdefault(key, []).append(p)

        by_key = {}
        for key, group in grouped.items():
            group = sorted(group, key=lambda p: p.date_iso)
            eff = [p.eff_speed_per_bpm for p in group if p.eff_speed_per_bpm is not None]
            execution = [float(p.execution) for p in group]

            by_key[key] = ProgressTrend(
                trend_eff=self._trend(eff, n),
                trend_exec=self._trend(execution, n),
                last=group[-1] if group else None,
            )

        return by_key

    @staticmethod
    def _trend(values: List[float], n: int) -> Optional[float]:
        recent = _median(values[-n:])
        previous = _median(values[-2 * n:-n])
        if recent is None or previous is None:
            return None
        return recent - previous
