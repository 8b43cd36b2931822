"""Tests for context-bucketed outcome learning."""

import pytest
from interval_coach.analysis.outcome_learning import (
    LearningEvent,
    OutcomeClass,
    PolicySignals,
    StrategyArm,
    compute_learning_evidence,
    compute_learning_stats,
    decay_weight,
    derive_context_key,
    derive_strategy_arm,
    normalize_outcome_class,
    parse_context_key,
)

AS_OF = "2026-10-17"
CALM = "RFgap=F|stress=LOW|hrv=NORMAL|drift=OK|sleep=OK|mono=LOW"
STRESSED = "RFgap=T|stress=HIGH|hrv=LOW|drift=BAD|sleep=LOW|mono=HIGH"


def make_event(day=AS_OF, arm="HOLD_ABSORB", outcome="GOOD", context_key=CALM, eligible=True):
    return {
        "day": day,
        "strategyArm": arm,
        "outcomeClass": outcome,
        "contextKey": context_key,
        "learningEligible": eligible,
    }


class TestDeriveStrategyArm:
    """Test the ordered strategy policy."""

    def test_hard_red_flag_overrides_everything(self):
        """A red flag forces NEUTRAL and excludes the day from learning."""
        decision = derive_strategy_arm({
            "runFloorGap": True,
            "lifeStress": "HIGH",
            "hrvState": "LOW",
            "driftState": "BAD",
            "hadKey": True,
            "freqNotRed": True,
            "highMonotony": True,
            "fatigueHigh": True,
            "hasHardRedFlag": True,
        })
        assert decision.strategy_arm == StrategyArm.NEUTRAL
        assert decision.learning_eligible is False
        assert decision.policy_reason == "HARD_RED_FLAG"

    def test_run_floor_gap_with_high_stress(self):
        decision = derive_strategy_arm({
            "runFloorGap": True,
            "lifeStress": "HIGH",
            "hrvState": "NORMAL",
            "driftState": "OK",
            "freqNotRed": True,
        })
        assert decision.strategy_arm == StrategyArm.FREQ_UP
        assert decision.policy_reason == "RUN_FLOOR_GAP_HIGH_STRESS"
        assert decision.learning_eligible is True

    def test_monotony_and_fatigue_protect(self):
        decision = derive_strategy_arm(PolicySignals(high_monotony=True, fatigue_high=True, had_key=True))
        assert decision.strategy_arm == StrategyArm.PROTECT_DELOAD
        assert decision.policy_reason == "HIGH_MONOTONY_FATIGUE"

    def test_drift_with_low_hrv_protects(self):
        decision = derive_strategy_arm(PolicySignals(drift_state="BAD", hrv_state="LOW", run_floor_gap=True))
        assert decision.strategy_arm == StrategyArm.PROTECT_DELOAD
        assert decision.policy_reason == "DRIFT_HRV_WARNING"

    def test_run_floor_gap_alone(self):
        decision = derive_strategy_arm(PolicySignals(run_floor_gap=True))
        assert decision.strategy_arm == StrategyArm.FREQ_UP
        assert decision.policy_reason == "RUN_FLOOR_GAP"

    def test_run_floor_gap_with_red_frequency_falls_through(self):
        decision = derive_strategy_arm(PolicySignals(run_floor_gap=True, freq_not_red=False))
        assert decision.policy_reason == "DEFAULT_HOLD"

    def test_absorb_after_key(self):
        decision = derive_strategy_arm(PolicySignals(had_key=True))
        assert decision.strategy_arm == StrategyArm.HOLD_ABSORB
        assert decision.policy_reason == "ABSORB_AFTER_KEY"

    def test_default_hold(self):
        decision = derive_strategy_arm({})
        assert decision.strategy_arm == StrategyArm.NEUTRAL
        assert decision.learning_eligible is True
        assert decision.policy_reason == "DEFAULT_HOLD"

    def test_to_dict(self):
        data = derive_strategy_arm({"hadKey": True}).to_dict()
        assert data == {"strategyArm": "HOLD_ABSORB", "learningEligible": True, "policyReason": "ABSORB_AFTER_KEY"}


class TestContextKey:
    """Test context bucketing."""

    def test_full_example(self):
        key = derive_context_key({
            "runFloorGap": True,
            "fatigueOverride": True,
            "warningCount": 2,
            "hrvDeltaPct": -10,
            "driftSignal": "orange",
            "recoverySignals": {"sleepLow": True, "sleepDeltaPct": -12},
            "monotony": 3,
        })
        assert key == "RFgap=T|stress=HIGH|hrv=LOW|drift=WARN|sleep=LOW|mono=HIGH"

    def test_empty_signals(self):
        assert derive_context_key({}) == CALM

    def test_stress_buckets(self):
        assert "stress=MED" in derive_context_key({"warningCount": 1})
        assert "stress=HIGH" in derive_context_key({"warningCount": 1, "fatigueOverride": True})
        assert "stress=HIGH" in derive_context_key({"lifeStress": "high"})
        assert "stress=LOW" in derive_context_key({"lifeStress": "LOW", "warningCount": 3})

    def test_hrv_buckets(self):
        assert "hrv=LOW" in derive_context_key({"hrvDeltaPct": -8})
        assert "hrv=NORMAL" in derive_context_key({"hrvDeltaPct": -7.9})
        assert "hrv=HIGH" in derive_context_key({"hrvDeltaPct": 10})
        assert "hrv=NORMAL" in derive_context_key({"hrvDeltaPct": float("nan")})

    def test_drift_and_sleep_buckets(self):
        assert "drift=BAD" in derive_context_key({"driftSignal": "red"})
        assert "drift=WARN" in derive_context_key({"driftSignal": "yellow"})
        assert "sleep=LOW" in derive_context_key({"recoverySignals": {"sleepDeltaPct": -15}})
        assert "sleep=OK" in derive_context_key({"recoverySignals": {"sleepDeltaPct": -5}})

    def test_monotony_cutoff(self):
        assert "mono=HIGH" in derive_context_key({"monotony": 2.0})
        assert "mono=LOW" in derive_context_key({"monotony": 1.9})

    def test_pure_and_parseable(self):
        signals = {"runFloorGap": True, "warningCount": 1, "monotony": 2.5}
        key = derive_context_key(signals)
        assert key == derive_context_key(dict(signals))
        assert parse_context_key(key)["mono"] == "HIGH"


class TestDecayAndStats:
    """Test recency weights and posterior statistics."""

    def test_decay_weight(self):
        assert decay_weight(AS_OF, AS_OF, 45) == pytest.approx(1.0)
        assert decay_weight("2026-09-02", AS_OF, 45) == pytest.approx(0.5)
        assert decay_weight("2026-10-16", AS_OF, 45) > decay_weight("2026-09-17", AS_OF, 45)

    def test_decay_is_symmetric_and_disabled_by_zero_half_life(self):
        assert decay_weight("2026-10-27", AS_OF, 45) == pytest.approx(decay_weight("2026-10-07", AS_OF, 45))
        assert decay_weight("2020-01-01", AS_OF, 0) == 1.0

    def test_posteriors_stay_inside_unit_interval(self):
        """Laplace smoothing keeps posteriors away from 0 and 1."""
        stats = compute_learning_stats([
            make_event(arm="FREQ_UP", outcome="GOOD"),
            make_event(arm="FREQ_UP", outcome="NEUTRAL"),
            make_event(arm="FREQ_UP", outcome="BAD"),
        ], AS_OF)
        arm = stats.arm_stats["FREQ_UP"]

        assert arm.good_posterior > 0.3
        assert arm.bad_posterior > 0.3
        assert arm.good_posterior + arm.neutral_posterior + arm.bad_posterior == pytest.approx(1.0)
        assert arm.n_eff == pytest.approx(3.0)

    def test_all_good_still_below_one(self):
        stats = compute_learning_stats([make_event() for _ in range(5)], AS_OF)
        arm = stats.arm_stats["HOLD_ABSORB"]
        assert arm.good_posterior == pytest.approx(6 / 8)
        assert 0 < arm.bad_posterior < 1

    def test_ineligible_events_only_counted_as_red_flags(self):
        stats = compute_learning_stats([
            make_event(eligible=False),
            make_event(),
            make_event(outcome=None),
        ], AS_OF)
        assert stats.sample_count == 1
        assert stats.red_flag_count == 1
        assert stats.n_eff_total == pytest.approx(1.0)

    def test_empty_log(self):
        stats = compute_learning_stats([], AS_OF)
        assert stats.arm_stats == {}
        assert stats.n_eff_total == 0.0

    def test_unknown_arms_are_kept(self):
        stats = compute_learning_stats([make_event(arm="LONG_RUN_UP")], AS_OF)
        assert "LONG_RUN_UP" in stats.arm_stats

    def test_event_from_outcome_score(self):
        event = LearningEvent.from_dict({"day": "2026-10-01T07:00:00Z", "strategy_arm": "freq_up", "outcome_score": 2})
        assert event.day == "2026-10-01"
        assert event.strategy_arm == "FREQ_UP"
        assert event.outcome_class == OutcomeClass.GOOD
        assert event.context_key == "LEGACY"


class TestLearningEvidence:
    """Test per-context evidence and recommendations."""

    def test_sparse_context_falls_back_to_global(self):
        evidence = compute_learning_evidence([
            make_event(arm="HOLD_ABSORB", outcome="GOOD"),
            make_event(arm="PROTECT_DELOAD", outcome="BAD"),
        ], AS_OF, STRESSED)

        assert evidence.context_key == "ALL"
        assert evidence.recommendation.global_fallback is True
        assert evidence.recommendation.strategy_arm == "HOLD_ABSORB"

    def test_dense_context_is_used(self):
        events = [make_event(arm="FREQ_UP", context_key=STRESSED) for _ in range(3)]
        events += [make_event(arm="HOLD_ABSORB", outcome="BAD") for _ in range(5)]
        evidence = compute_learning_evidence(events, AS_OF, STRESSED)

        assert evidence.context_key == STRESSED
        assert evidence.recommendation.global_fallback is False
        assert set(evidence.arms) == {"FREQ_UP"}

    def test_untried_arm_is_never_recommended(self):
        evidence = compute_learning_evidence(
            [make_event(arm="FREQ_UP", outcome="BAD") for _ in range(2)], AS_OF, CALM
        )
        assert evidence.recommendation.strategy_arm == "FREQ_UP"

    def test_only_bad_arm_with_large_n_eff(self):
        context = "RFgap=T|stress=MED|hrv=LOW|drift=WARN|sleep=LOW|mono=HIGH"
        events = [make_event(arm="FREQ_UP", outcome="BAD", context_key=context) for _ in range(6)]
        rec = compute_learning_evidence(events, AS_OF, context).recommendation

        assert rec.strategy_arm == "FREQ_UP"
        assert rec.n_eff_total > 0
        assert rec.n_eff_arm > 0

    def test_confidence_grows_with_consistent_evidence(self):
        context = "RFgap=T|stress=MED|hrv=NORMAL|drift=OK|sleep=OK|mono=LOW"
        events = [make_event(context_key=context) for _ in range(10)]
        rec = compute_learning_evidence(events, AS_OF, context).recommendation

        assert round(rec.confidence_arm * 100) >= 60

    def test_exploration_need_with_single_arm(self):
        rec = compute_learning_evidence([make_event(), make_event()], AS_OF, CALM).recommendation

        assert rec.exploration_need is True
        assert rec.confidence_arm > 0

    def test_ranking_prefers_good_over_bad(self):
        events = [make_event(arm="FREQ_UP") for _ in range(4)]
        events += [make_event(arm="INTENSITY_SHIFT", outcome="BAD") for _ in range(4)]
        rec = compute_learning_evidence(events, AS_OF, CALM).recommendation

        assert rec.strategy_arm == "FREQ_UP"
        assert rec.second_arm == "INTENSITY_SHIFT"
        assert rec.n_arms_with_data == 2
        assert rec.exploration_need is False

    def test_red_flags_excluded_from_aggregation(self):
        evidence = compute_learning_evidence([
            make_event(arm="FREQ_UP", eligible=False),
            make_event(arm="FREQ_UP"),
        ], AS_OF, CALM)
        assert evidence.sample_count == 1
        assert evidence.red_flag_count == 1

    def test_event_without_valid_day_is_skipped(self):
        """A missing or malformed day excludes only that event."""
        events = [
            make_event(arm="FREQ_UP", context_key=STRESSED),
            {"strategyArm": "FREQ_UP", "outcomeClass": "GOOD", "contextKey": STRESSED},
            make_event(day="not-a-date", arm="FREQ_UP", context_key=STRESSED),
        ]
        evidence = compute_learning_evidence(events, AS_OF, STRESSED)

        assert evidence.sample_count == 1
        assert evidence.recommendation.strategy_arm == "FREQ_UP"
        assert compute_learning_stats(events, AS_OF).sample_count == 1

    def test_global_context_requested_directly(self):
        """Asking for ALL aggregates every event without a fallback flag."""
        events = [make_event(arm="FREQ_UP"), make_event(arm="HOLD_ABSORB", context_key=STRESSED)]
        evidence = compute_learning_evidence(events, AS_OF, "ALL")

        assert evidence.context_key == "ALL"
        assert evidence.recommendation.global_fallback is False
        assert evidence.sample_count == 2
        assert set(evidence.arms) == {"FREQ_UP", "HOLD_ABSORB"}

    def test_idempotent(self):
        events = [make_event(day=f"2026-10-{d:02d}", arm=a) for d in range(1, 10) for a in ("FREQ_UP", "NEUTRAL")]
        first = compute_learning_evidence(events, AS_OF, CALM)
        second = compute_learning_evidence(events, AS_OF, CALM)
        assert first == second


class TestNormalizeOutcomeClass:
    """Test outcome label resolution."""

    def test_score_mapping(self):
        assert normalize_outcome_class(None, 2, None) == OutcomeClass.GOOD
        assert normalize_outcome_class(None, 1, None) == OutcomeClass.NEUTRAL
        assert normalize_outcome_class(None, 0, None) == OutcomeClass.BAD
        assert normalize_outcome_class(None, -1, None) == OutcomeClass.BAD

    def test_explicit_label_wins(self):
        assert normalize_outcome_class("bad", 3, None) == OutcomeClass.BAD

    def test_fallback(self):
        assert normalize_outcome_class(None, None, "NEUTRAL") == OutcomeClass.NEUTRAL
        assert normalize_outcome_class(None, None, None) is None
