"""Heart rate recovery metrics from raw activity streams.

Work phases are detected from the speed stream, every qualifying work phase
is followed into its recovery, and the heart rate drop over the first 60
seconds (HRR60) is aggregated per session.
"""

import logging
import numpy as np
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ..config import config

logger = logging.getLogger(__name__)

HRR60_KEYS = ("HRR60_count", "HRR60_median", "HRR60_min", "HRR60_max")


@dataclass
class Stream:
    """Index-aligned activity streams."""

    time: List[float]
    heartrate: List[Optional[float]]
    velocity_smooth: List[Optional[float]]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Stream":
        def values(key: str) -> List[Any]:
            raw = data.get(key)
            return [] if raw is None else list(raw)

        return cls(
            time=values("time"),
            heartrate=values("heartrate"),
            velocity_smooth=values("velocity_smooth"),
        )

    def is_aligned(self) -> bool:
        """Check that all streams are present and share one length."""
        n = len(self.time)
        return n > 0 and len(self.heartrate) == n and len(self.velocity_smooth) == n


@dataclass
class DetectedInterval:
    """A work phase found inside a stream."""

    start_idx: int
    end_idx: int
    start_time: float
    end_time: float

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


def _to_array(values: Sequence[Any]) -> np.ndarray:
    """Convert a stream to floats, mapping missing samples to NaN."""
    out = np.full(len(values), np.nan)
    for i, v in enumerate(values):
        try:
            out[i] = float(v)
        except (TypeError, ValueError):
            continue
    return out


def empty_metrics(count: Optional[int] = None, interval_type: Optional[str] = None) -> Dict[str, Any]:
    """Build a result with every aggregate unset."""
    return {
        "HRR60_count": count,
        "HRR60_median": None,
        "HRR60_min": None,
        "HRR60_max": None,
        "HR_Drift_bpm": None,
        "HR_Drift_pct": None,
        "drift_flag": None,
        "interval_type": interval_type,
    }


def classify_interval_drift(interval_type: Optional[str], drift_bpm: Optional[float]) -> Optional[str]:
    """Classify HR drift between first and last rep for an interval type."""
    if drift_bpm is None or not np.isfinite(drift_bpm):
        return None
    if interval_type == "threshold":
        if drift_bpm <= 5:
            return "controlled"
        if drift_bpm <= 8:
            return "acceptable"
        return "too_hard"
    if interval_type == "vo2":
        return "overreaching" if drift_bpm > 10 else "acceptable"
    return None


class HeartRateRecoveryAnalyzer:
    """Detect work/recovery cycles and compute HRR60 statistics."""

    def __init__(
        self,
        window_sec: float = None,
        sample_tolerance_sec: float = None,
        gap_tolerance_sec: float = None,
        min_speed_contrast: float = None,
    ):
        """Initialize with detection parameters.

        Args:
            window_sec: Recovery window after the end of work (seconds)
            sample_tolerance_sec: How far past the window end a sample may lie
            gap_tolerance_sec: Dips below the speed threshold shorter than
                this do not end a work phase
            min_speed_contrast: Minimum spread between slow and fast speed
                quantiles for the stream to contain intervals at all
        """
        self.window_sec = window_sec if window_sec is not None else config.HRR_WINDOW_SEC
        self.sample_tolerance_sec = (
            sample_tolerance_sec if sample_tolerance_sec is not None else config.HRR_SAMPLE_TOLERANCE_SEC
        )
        self.gap_tolerance_sec = (
            gap_tolerance_sec if gap_tolerance_sec is not None else config.WORK_GAP_TOLERANCE_SEC
        )
        self.min_speed_contrast = (
            min_speed_contrast if min_speed_contrast is not None else config.WORK_MIN_SPEED_CONTRAST
        )

    def compute_metrics(
        self,
        stream: Any,
        interval_type: Optional[str] = None,
        activity: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Compute HRR60 aggregates for one activity.

        Args:
            stream: `Stream` or dict with time/heartrate/velocity_smooth
            interval_type: "vo2", "threshold", "racepace" or None
            activity: Activity metadata (only used for logging)

        Returns:
            Dict with HRR60_count/median/min/max and HR drift fields.
            Unusable streams yield None everywhere; streams without a
            qualifying interval yield HRR60_count = 0.
        """
        if not isinstance(stream, Stream):
            stream = Stream.from_dict(stream or {})

        if not stream.is_aligned():
            logger.debug("Stream empty or misaligned; no HRR60 for activity %s", (activity or {}).get("id"))
            return empty_metrics(interval_type=interval_type)

        time = _to_array(stream.time)
        hr = _to_array(stream.heartrate)
        speed = _to_array(stream.velocity_smooth)

        threshold = self.speed_threshold(speed, interval_type)
        if threshold is None:
            return empty_metrics(count=0, interval_type=interval_type)

        min_work_sec = config.get_work_min_sec(interval_type)
        intervals = [
            interval for interval in self.detect_work_intervals(time, speed, threshold)
            if interval.duration >= min_work_sec
        ]

        drops = []
        for interval in intervals:
            drop = self.hrr60_for_interval(time, hr, interval)
            if drop is not None:
                drops.append(drop)

        if len(drops) < len(intervals):
            logger.debug("Discarded %d of %d intervals due to HR gaps", len(intervals) - len(drops), len(intervals))

        result = empty_metrics(count=len(drops), interval_type=interval_type)
        if drops:
            values = np.array(drops)
            result["HRR60_median"] = float(np.median(values))
            result["HRR60_min"] = float(values.min())
            result["HRR60_max"] = float(values.max())

        result.update(self.hr_drift(time, hr, intervals, interval_type))
        return result

    def speed_threshold(self, speed: np.ndarray, interval_type: Optional[str] = None) -> Optional[float]:
        """Speed separating work from recovery, or None for a steady stream."""
        finite = speed[np.isfinite(speed)]
        if finite.size < 2:
            return None

        low, high = np.quantile(finite, [0.1, 0.9])
        if high - low < self.min_speed_contrast:
            return None

        return float(low + config.get_work_speed_fraction(interval_type) * (high - low))

    def detect_work_intervals(self, time: np.ndarray, speed: np.ndarray, threshold: float) -> List[DetectedInterval]:
        """Find contiguous phases at or above the speed threshold.

        Short dips below the threshold (up to the gap tolerance) are bridged.
        """
        intervals = []
        start_idx = None
        last_above_idx = None
        gap_start = None

        for i in range(len(time)):
            if not np.isfinite(time[i]):
                continue

            if np.isfinite(speed[i]) and speed[i] >= threshold:
                if start_idx is None:
                    start_idx = i
                last_above_idx = i
                gap_start = None
                continue

            if start_idx is None:
                continue

            if gap_start is None:
                gap_start = time[i]
            if time[i] - gap_start > self.gap_tolerance_sec:
                intervals.append(DetectedInterval(
                    start_idx, last_above_idx, float(time[start_idx]), float(time[last_above_idx])
                ))
                start_idx = None
                last_above_idx = None
                gap_start = None

        if start_idx is not None:
            intervals.append(DetectedInterval(
                start_idx, last_above_idx, float(time[start_idx]), float(time[last_above_idx])
            ))

        return intervals

    def hrr60_for_interval(self, time: np.ndarray, hr: np.ndarray, interval: DetectedInterval) -> Optional[float]:
        """HR(end) - HR(end + 60s), or None if the window has missing HR."""
        target = interval.end_time + self.window_sec
        after = np.nonzero(np.isfinite(time) & (time >= target))[0]
        after = after[after >= interval.end_idx]
        if after.size == 0:
            return None

        target_idx = int(after[0])
        if time[target_idx] - target > self.sample_tolerance_sec:
            return None

        window = hr[interval.end_idx:target_idx + 1]
        if not np.all(np.isfinite(window)):
            return None

        return float(hr[interval.end_idx] - hr[target_idx])

    def hr_drift(
        self,
        time: np.ndarray,
        hr: np.ndarray,
        intervals: List[DetectedInterval],
        interval_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """HR drift between the late phase of the first and last interval."""
        if len(intervals) < 2:
            return {}

        first = self._late_average(time, hr, intervals[0])
        last = self._late_average(time, hr, intervals[-1])
        if first is None or last is None or first <= 0:
            return {}

        drift_bpm = last - first
        return {
            "HR_Drift_bpm": drift_bpm,
            "HR_Drift_pct": drift_bpm / first * 100,
            "drift_flag": classify_interval_drift(interval_type, drift_bpm),
        }

    @staticmethod
    def _late_average(time: np.ndarray, hr: np.ndarray, interval: DetectedInterval) -> Optional[float]:
        # last 40% of the work phase
        late_start = interval.start_time + interval.duration * 0.6
        t = time[interval.start_idx:interval.end_idx + 1]
        h = hr[interval.start_idx:interval.end_idx + 1]
        mask = np.isfinite(h) & (t >= late_start)
        if not mask.any():
            return None
        return float(h[mask].mean())


def compute_interval_metrics_from_streams(
    streams: Any,
    interval_type: Optional[str] = None,
    activity: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Compute HRR60 metrics with default analyzer settings."""
    return HeartRateRecoveryAnalyzer().compute_metrics(streams, interval_type=interval_type, activity=activity)
