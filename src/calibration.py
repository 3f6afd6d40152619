from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, List, Optional, Sequence

import numpy as np

from config import WatchConfig, clamp_threshold
from live_feed import FrameStall
from motion import motion_across_zones
from zones import SampleBounds

logger = logging.getLogger(__name__)

# Scales MAD to a standard deviation under a normal distribution.
MAD_TO_STD = 1.4826


class CalibrationError(RuntimeError):
    pass


class CalibrationInsufficientData(CalibrationError):
    def __init__(self, count: int, needed: int):
        super().__init__(f"Calibration failed: not enough data ({count}/{needed} samples).")
        self.count = count
        self.needed = needed


class CalibrationPreconditionError(CalibrationError):
    NO_SOURCE = "NoSource"
    BLOCKED = "Blocked"
    ALREADY_CALIBRATING = "AlreadyCalibrating"

    _MESSAGES = {
        NO_SOURCE: "no playing video source",
        BLOCKED: "frame access is blocked",
        ALREADY_CALIBRATING: "calibration already in progress",
    }

    def __init__(self, reason: str):
        super().__init__(f"Cannot calibrate: {self._MESSAGES.get(reason, reason)}.")
        self.reason = reason


@dataclass
class ThresholdEstimate:
    trimmedCount: int
    median: float
    mad: float
    robustStd: float
    robustThreshold: float
    p95: float
    raw: float


@dataclass
class CalibrationResult:
    threshold: float
    sampleCount: int
    stalls: int
    static: bool
    estimate: Optional[ThresholdEstimate] = None


def median(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(np.median(np.asarray(values, dtype=np.float64)))


def percentile(sorted_asc: Sequence[float], p: float) -> float:
    """Linear interpolation between the closest ranks; p in 0..1."""
    n = len(sorted_asc)
    if n == 0:
        return 0.0
    idx = (n - 1) * p
    lo, hi = math.floor(idx), math.ceil(idx)
    if lo == hi:
        return float(sorted_asc[lo])
    w = idx - lo
    return float(sorted_asc[lo]) * (1 - w) + float(sorted_asc[hi]) * w


def trim_top(samples: Sequence[float], fraction: float, keep_min: int = 10) -> List[float]:
    ordered = sorted(samples)
    cut = math.floor(len(ordered) * (1 - fraction))
    return ordered[:max(keep_min, cut)]


def robust_estimate(samples: Sequence[float], cfg: WatchConfig) -> ThresholdEstimate:
    trimmed = trim_top(samples, cfg.cal_trim_top)

    m = median(trimmed)
    mad = median([abs(x - m) for x in trimmed])
    robustStd = MAD_TO_STD * mad
    robustThr = m + cfg.cal_mad_k * robustStd
    p95 = percentile(trimmed, 0.95)

    return ThresholdEstimate(
        trimmedCount=len(trimmed),
        median=m,
        mad=mad,
        robustStd=robustStd,
        robustThreshold=robustThr,
        p95=p95,
        raw=max(p95, robustThr) * cfg.cal_safety,
    )


def compute_auto_threshold(samples: Sequence[float], cfg: WatchConfig) -> float:
    return clamp_threshold(robust_estimate(samples, cfg).raw, cfg)


def threshold_from_samples(samples: Sequence[float], cfg: WatchConfig) -> CalibrationResult:
    clean = [float(x) for x in samples if math.isfinite(x) and x >= 0]
    if len(clean) < cfg.cal_min_useful:
        raise CalibrationInsufficientData(len(clean), cfg.cal_min_useful)

    # MAD on near-constant data is unstable, use a fixed floor instead.
    if max(clean) < cfg.cal_static_floor:
        thr = clamp_threshold(max(cfg.thr_min, cfg.cal_static_threshold), cfg)
        return CalibrationResult(thr, len(clean), 0, static=True)

    est = robust_estimate(clean, cfg)
    return CalibrationResult(clamp_threshold(est.raw, cfg), len(clean), 0, static=False, estimate=est)


class AutoCalibrator:
    """
    Collects frame-to-frame motion scores from a frame source and turns them
    into a threshold just above the scene's normal background motion.

    Uses its own frame buffers; the detector's baselines are untouched.
    """

    def __init__(self, cfg: WatchConfig):
        self.cfg = cfg

    def run(
        self,
        captureFrame: Callable[[float], np.ndarray],
        bounds: Sequence[SampleBounds],
        shouldContinue: Callable[[], bool] = lambda: True,
        onProgress: Optional[Callable[[int, Optional[float]], None]] = None,
        sleepFn: Callable[[float], object] = time.sleep,
    ) -> CalibrationResult:
        cfg = self.cfg
        samples: List[float] = []
        stalls = 0
        prev: Optional[np.ndarray] = None

        # Initial frame, retried on stalls like every other sample.
        while prev is None and stalls < cfg.cal_max_stalls and shouldContinue():
            try:
                prev = captureFrame(cfg.cal_frame_wait)
            except FrameStall:
                stalls += 1
                sleepFn(cfg.cal_fallback_delay)

        if prev is not None:
            for i in range(cfg.cal_samples):
                if not shouldContinue():
                    break

                try:
                    curr = captureFrame(cfg.cal_frame_wait)
                except FrameStall:
                    stalls += 1
                    sleepFn(cfg.cal_fallback_delay)
                    if stalls >= cfg.cal_max_stalls:
                        logger.info("Calibration sampling stopped after %d stalls", stalls)
                        break
                    continue

                d = motion_across_zones(curr, prev, bounds, cfg.pixel_stride)
                if math.isfinite(d) and d >= 0:
                    samples.append(d)
                prev = curr

                if onProgress is not None:
                    if len(samples) >= 12 and len(samples) % cfg.cal_progress_every == 0:
                        onProgress(len(samples), compute_auto_threshold(samples, cfg))
                    elif i % 12 == 0:
                        onProgress(len(samples), None)

        res = threshold_from_samples(samples, cfg)
        res.stalls = stalls
        logger.info(
            "Calibration done: threshold=%.2f samples=%d stalls=%d static=%s",
            res.threshold, res.sampleCount, res.stalls, res.static,
        )
        return res
