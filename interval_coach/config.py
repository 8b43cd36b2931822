"""Configuration management for the interval coach."""

import os
from typing import Dict, Tuple
from dotenv import load_dotenv

load_dotenv()


def _float_pair(name: str, default: str) -> Tuple[float, float]:
    """Parse a "lo,hi" environment variable into a float tuple."""
    raw = os.getenv(name, default)
    lo, hi = (float(part.strip()) for part in raw.split(",", 1))
    return lo, hi


class Config:
    """Application configuration."""

    # Athlete
    HFMAX: float = float(os.getenv("HFMAX", "173"))  # bpm

    # Rep extraction (intervals.icu segments)
    REP_MIN_SEC: float = float(os.getenv("REP_MIN_SEC", "90"))
    REP_MAX_SEC: float = float(os.getenv("REP_MAX_SEC", "900"))
    REP_MIN_SPEED: float = float(os.getenv("REP_MIN_SPEED", "2.8"))  # m/s
    MICRO_SEGMENT_SEC: float = float(os.getenv("MICRO_SEGMENT_SEC", "15"))

    # Intent classification (fraction of HFmax)
    RACEPACE_HR_FRAC_RANGE: Tuple[float, float] = _float_pair("RACEPACE_HR_FRAC_RANGE", "0.84,0.92")
    THRESHOLD_HR_FRAC_RANGE: Tuple[float, float] = _float_pair("THRESHOLD_HR_FRAC_RANGE", "0.82,0.90")
    VO2_HR_FRAC_MIN: float = float(os.getenv("VO2_HR_FRAC_MIN", "0.90"))
    SHORT_REP_SEC_RANGE: Tuple[float, float] = _float_pair("SHORT_REP_SEC_RANGE", "120,360")
    LONG_REP_SEC_RANGE: Tuple[float, float] = _float_pair("LONG_REP_SEC_RANGE", "360,900")

    # Execution / strain thresholds
    CV_GOOD: float = float(os.getenv("CV_GOOD", "0.02"))
    CV_OK: float = float(os.getenv("CV_OK", "0.04"))
    CV_BAD: float = float(os.getenv("CV_BAD", "0.07"))
    FADE_OK: float = float(os.getenv("FADE_OK", "0.02"))
    FADE_BAD: float = float(os.getenv("FADE_BAD", "0.05"))
    CADENCE_DROP_WARN: float = float(os.getenv("CADENCE_DROP_WARN", "3"))  # spm
    RESP_RISE_WARN: float = float(os.getenv("RESP_RISE_WARN", "6"))  # breaths/min
    DOSE_DEFAULT_TARGET_KM: float = float(os.getenv("DOSE_DEFAULT_TARGET_KM", "3.0"))

    # Heart rate recovery from streams
    HRR_WINDOW_SEC: float = float(os.getenv("HRR_WINDOW_SEC", "60"))
    HRR_SAMPLE_TOLERANCE_SEC: float = float(os.getenv("HRR_SAMPLE_TOLERANCE_SEC", "5"))
    WORK_GAP_TOLERANCE_SEC: float = float(os.getenv("WORK_GAP_TOLERANCE_SEC", "5"))
    WORK_MIN_SPEED_CONTRAST: float = float(os.getenv("WORK_MIN_SPEED_CONTRAST", "0.3"))  # m/s

    # Per interval type: fraction between low/high speed quantiles, minimum work duration
    WORK_SPEED_FRACTION: Dict[str, float] = {
        "vo2": 0.6,
        "threshold": 0.5,
        "racepace": 0.55,
    }
    WORK_MIN_SEC: Dict[str, float] = {
        "vo2": float(os.getenv("WORK_MIN_SEC_VO2", "60")),
        "threshold": float(os.getenv("WORK_MIN_SEC_THRESHOLD", "120")),
        "racepace": float(os.getenv("WORK_MIN_SEC_RACEPACE", "60")),
    }
    WORK_MIN_SEC_DEFAULT: float = float(os.getenv("WORK_MIN_SEC_DEFAULT", "60"))

    # Outcome learning
    LEARNING_HALF_LIFE_DAYS: float = float(os.getenv("LEARNING_HALF_LIFE_DAYS", "45"))
    LEARNING_PRIOR_ALPHA: float = float(os.getenv("LEARNING_PRIOR_ALPHA", "1.0"))  # Laplace
    LEARNING_MIN_CONTEXT_N_EFF: float = float(os.getenv("LEARNING_MIN_CONTEXT_N_EFF", "2.0"))
    LEARNING_CONFIDENCE_K: float = float(os.getenv("LEARNING_CONFIDENCE_K", "2.0"))
    LEARNING_STRONG_CONFIDENCE: float = float(os.getenv("LEARNING_STRONG_CONFIDENCE", "0.6"))

    # Context buckets
    HRV_LOW_DELTA_PCT: float = float(os.getenv("HRV_LOW_DELTA_PCT", "-8"))
    HRV_HIGH_DELTA_PCT: float = float(os.getenv("HRV_HIGH_DELTA_PCT", "8"))
    SLEEP_LOW_DELTA_PCT: float = float(os.getenv("SLEEP_LOW_DELTA_PCT", "-10"))
    MONOTONY_HIGH: float = float(os.getenv("MONOTONY_HIGH", "2.0"))

    # Key workout constraints
    KEY_MIN_SPACING_HOURS: int = int(os.getenv("KEY_MIN_SPACING_HOURS", "48"))
    MAX_KEYS_7D: int = int(os.getenv("MAX_KEYS_7D", "2"))
    BASE_KEY_QUOTA: float = float(os.getenv("BASE_KEY_QUOTA", "0.5"))
    MAX_WORKLOAD_INCREASE_PCT: float = float(os.getenv("MAX_WORKLOAD_INCREASE_PCT", "0.1"))
    DELOAD_FACTOR: float = float(os.getenv("DELOAD_FACTOR", "0.65"))

    # Taper windows (days before race)
    TAPER_START_DAYS_DEFAULT: int = int(os.getenv("TAPER_START_DAYS_DEFAULT", "14"))
    TAPER_START_DAYS: Dict[str, int] = {
        "5k": int(os.getenv("TAPER_START_DAYS_5K", "7")),
        "10k": int(os.getenv("TAPER_START_DAYS_10K", "7")),
        "hm": int(os.getenv("TAPER_START_DAYS_HM", "14")),
        "m": int(os.getenv("TAPER_START_DAYS_M", "14")),
    }
    TAPER_END_DAYS: int = int(os.getenv("TAPER_END_DAYS", "2"))

    # Application
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def get_work_min_sec(cls, interval_type: str = None) -> float:
        """Get the minimum qualifying work duration for an interval type."""
        return cls.WORK_MIN_SEC.get(interval_type or "", cls.WORK_MIN_SEC_DEFAULT)

    @classmethod
    def get_work_speed_fraction(cls, interval_type: str = None) -> float:
        """Get the speed threshold position between low and high quantiles."""
        return cls.WORK_SPEED_FRACTION.get(interval_type or "", 0.5)

    @classmethod
    def get_taper_start_days(cls, distance: str) -> int:
        """Get the taper window length for a race distance."""
        return cls.TAPER_START_DAYS.get(distance, cls.TAPER_START_DAYS_DEFAULT)


config = Config()
