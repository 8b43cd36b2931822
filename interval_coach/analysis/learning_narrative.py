"""Human-readable summaries of learned outcome evidence."""

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..config import config

GLOBAL_SUFFIX = "(based on global data)"

CONTEXT_LABELS = {
    "RFgap": "RunFloorGap",
    "stress": "Stress",
    "hrv": "HRV",
    "drift": "Drift",
    "sleep": "Sleep",
    "mono": "Monotony",
}

ARM_LABELS = {
    "NEUTRAL": "neutral hold",
    "FREQ_UP": "more frequent easy running",
    "HOLD_ABSORB": "hold and absorb",
    "PROTECT_DELOAD": "protective deload",
    "INTENSITY_SHIFT": "intensity shift",
}

POLICY_REASON_TEXT = {
    "HARD_RED_FLAG": "a hard red flag is active, so the day stays neutral",
    "RUN_FLOOR_GAP_HIGH_STRESS": "run load below target while life stress is high",
    "HIGH_MONOTONY_FATIGUE": "training monotony and fatigue are both high",
    "DRIFT_HRV_WARNING": "HR drift is elevated while HRV is suppressed",
    "RUN_FLOOR_GAP": "run load below target",
    "ABSORB_AFTER_KEY": "the last key session still needs to be absorbed",
    "DEFAULT_HOLD": "no signal calls for a change",
}

# Comparative claims: "more robust than", "better than", "than the alternatives", ...
COMPARATIVE_PATTERN = re.compile(
    r"\b(?:more|less)\s+\w+[^,.;!?]*\bthan\b"
    r"|\b\w+er\s+than\b"
    r"|\bthan the alternatives\b",
    re.IGNORECASE,
)


def _finite(value: Any, default: float = 0.0) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return default
    return value if math.isfinite(value) else default


def format_pct(value: Any) -> str:
    """Format a 0-1 fraction as a rounded percentage; non-finite values become 0%."""
    return f"{int(math.floor(_finite(value) * 100 + 0.5))}%"


def arm_label(arm: Optional[str]) -> str:
    if not arm:
        return "no strategy"
    return ARM_LABELS.get(arm, arm)


def confidence_qualifier(confidence: float) -> str:
    if confidence >= config.LEARNING_STRONG_CONFIDENCE:
        return "high confidence"
    if confidence >= 0.35:
        return "moderate confidence"
    return "low confidence"


def format_context_summary(context_key: str, max_parts: int = 3) -> str:
    """Short label for a context key, e.g. "RunFloorGap yes, Stress HIGH, HRV LOW"."""
    if context_key == "ALL":
        return "global context"
    if context_key == "LEGACY":
        return "legacy context"

    parts = []
    for part in str(context_key or "").split("|"):
        if "=" not in part:
            continue
        name, value = part.split("=", 1)
        label = CONTEXT_LABELS.get(name, name)
        if name == "RFgap":
            value = "yes" if value == "T" else "no"
        parts.append(f"{label} {value}")
        if len(parts) >= max_parts:
            break

    return ", ".join(parts) if parts else "unknown context"


def build_learning_narrative(evidence: Any) -> str:
    """Render learning evidence as a short coaching text.

    Comparison language is graded by how much evidence exists:
    - only one arm with data: no comparison at all
    - two arms, confidence below the strong threshold: hedged comparison
    - otherwise: a firm comparison

    A neutral recommendation is always described conservatively.
    """
    rec = evidence.recommendation
    arm = rec.strategy_arm
    confidence = _finite(rec.confidence_arm)
    n_eff = _finite(rec.n_eff_arm)
    n_arms = _tried_arm_count(evidence)

    summary = rec.context_summary or format_context_summary(rec.context_key)
    context_line = f"Context: {summary}"
    if rec.global_fallback and GLOBAL_SUFFIX not in context_line:
        context_line += f" {GLOBAL_SUFFIX}"

    lines = [context_line + "."]

    if arm is None:
        lines.append("No strategy has recorded outcomes here yet; stay conservative.")
    elif arm == "NEUTRAL":
        lines.append("Stay conservative and stabilize: keep the neutral hold until clearer signals arrive.")
    elif n_arms <= 1:
        stats = evidence.arms.get(arm) if evidence.arms else None
        if stats is None or _finite(stats.good_posterior) >= _finite(stats.bad_posterior):
            outcome = "has been well tolerated so far"
        else:
            outcome = "has produced mixed results so far"
        lines.append(
            f"{arm_label(arm).capitalize()} {outcome}; other approaches are "
            f"too little tested to draw a comparison."
        )
    elif confidence < config.LEARNING_STRONG_CONFIDENCE:
        lines.append(
            f"There is currently more evidence for {arm_label(arm)} than for "
            f"{arm_label(rec.second_arm)} (tentative)."
        )
    else:
        lines.append(
            f"{arm_label(arm).capitalize()} has proven more robust than "
            f"{arm_label(rec.second_arm)} in this context."
        )

    lines.append(
        f"n_eff={n_eff:.1f}, Confidence={format_pct(confidence)} ({confidence_qualifier(confidence)})."
    )
    return " ".join(lines)


def _tried_arm_count(evidence: Any) -> int:
    count = getattr(evidence.recommendation, "n_arms_with_data", None)
    if count is not None:
        return int(count)
    return sum(1 for stats in (evidence.arms or {}).values() if _finite(stats.n_eff) > 0)


@dataclass
class TextGate:
    """How much data backs the recommendation a text talks about."""

    recommended_arm: Optional[str] = None
    n_eff_rec: float = 0.0
    n_eff_second: float = 0.0
    n_arms_with_data: int = 0
    confidence_rec: float = 0.0
    confidence_context: float = 0.0
    exploration_need: bool = True
    policy_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TextGate":
        def pick(snake: str, camel: str, default: Any) -> Any:
            value = data.get(snake, data.get(camel))
            return default if value is None else value

        return cls(
            recommended_arm=pick("recommended_arm", "recommendedArm", None),
            n_eff_rec=_finite(pick("n_eff_rec", "nEffRec", 0.0)),
            n_eff_second=_finite(pick("n_eff_second", "nEffSecond", 0.0)),
            n_arms_with_data=int(_finite(pick("n_arms_with_data", "nArmsWithData", 0))),
            confidence_rec=_finite(pick("confidence_rec", "confidenceRec", 0.0)),
            confidence_context=_finite(pick("confidence_context", "confidenceContext", 0.0)),
            exploration_need=bool(pick("exploration_need", "explorationNeed", True)),
            policy_reason=pick("policy_reason", "policyReason", None),
        )

    @classmethod
    def from_evidence(cls, evidence: Any, policy_reason: Optional[str] = None) -> "TextGate":
        rec = evidence.recommendation
        return cls(
            recommended_arm=rec.strategy_arm,
            n_eff_rec=_finite(rec.n_eff_arm),
            n_eff_second=_finite(rec.n_eff_second),
            n_arms_with_data=rec.n_arms_with_data,
            confidence_rec=_finite(rec.confidence_arm),
            confidence_context=_finite(rec.confidence_context),
            exploration_need=rec.exploration_need,
            policy_reason=policy_reason,
        )

    @property
    def comparison_backed(self) -> bool:
        """True when at least two arms carry enough data for a firm comparison."""
        return (
            self.n_arms_with_data >= 2
            and self.n_eff_second >= config.LEARNING_MIN_CONTEXT_N_EFF
            and self.confidence_rec >= config.LEARNING_STRONG_CONFIDENCE
        )


def _strip_comparisons(sentence: str) -> str:
    """Drop comma-separated clauses containing a comparison."""
    body = sentence.rstrip()
    terminator = body[-1] if body and body[-1] in ".!?" else "."
    body = body.rstrip(".!?")

    kept = [clause for clause in body.split(",") if not COMPARATIVE_PATTERN.search(clause)]
    if not kept:
        return ""
    return ",".join(kept).strip() + terminator


def apply_text_gate(text: str, gate: Any) -> str:
    """Remove comparative claims the data cannot back and explain the policy reason.

    Args:
        text: Free coaching text
        gate: `TextGate` or dict (snake_case or camelCase keys)

    Returns:
        The gated text. Comparisons survive only when two arms carry
        enough evidence; the policy-reason explanation is appended.
    """
    if not isinstance(gate, TextGate):
        gate = TextGate.from_dict(gate or {})

    result = text or ""
    if not gate.comparison_backed:
        sentences: List[str] = re.split(r"(?<=[.!?])\s+", result.strip())
        gated = (_strip_comparisons(s) if COMPARATIVE_PATTERN.search(s) else s for s in sentences)
        result = " ".join(s for s in gated if s)

    reason = POLICY_REASON_TEXT.get(gate.policy_reason or "")
    if reason:
        result = f"{result} Reason: {reason}.".strip()
    return result
