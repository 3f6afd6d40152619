from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from typing import Callable, List, Optional, Tuple

import numpy as np

from alarm import AlarmMode, AlarmStateMachine
from baseline import BaselineTracker
from calibration import (
    AutoCalibrator,
    CalibrationError,
    CalibrationInsufficientData,
    CalibrationPreconditionError,
    CalibrationResult,
)
from config import WatchConfig, WatchSettings, clamp_threshold, sensitivity_label
from live_feed import FrameAccessBlocked, FrameStall
from zones import Zone, ZoneLimitError, ZoneRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchSnapshot:
    alarm: bool
    blocked: bool
    calibrating: bool
    enabled: bool
    hasSource: bool
    motionScore: float
    dPrev: float
    dRef: float
    threshold: float
    sensitivity: str
    alarmMode: str
    visualActive: bool
    audioActive: bool
    zones: Tuple[Zone, ...]
    coverage: int
    status: str
    calibrationProgress: Optional[Tuple[int, Optional[float]]] = None
    lastCalibration: Optional[CalibrationResult] = None


class MotionWatch:
    """
    Zone motion detector with a dual baseline, an alarm and auto calibration.

    Commands may come from any thread; they are applied under one lock and
    seen whole by the next detection cycle. The frame source is anything with
    captureFrame(timeout) and isPlaying() (see live_feed.LiveFeedController).
    """

    def __init__(
        self,
        cfg: Optional[WatchConfig] = None,
        settings: Optional[WatchSettings] = None,
        source=None,
        logFn: Optional[Callable[[str], None]] = None,
    ):
        self.cfg = cfg or WatchConfig()
        settings = settings or WatchSettings(threshold=self.cfg.thr_default)
        self.logFn = logFn

        self._lock = threading.RLock()
        self._stopEvent = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._settingsListeners: List[Callable[[WatchSettings], None]] = []

        self.registry = ZoneRegistry(self.cfg, settings.zones)
        self.tracker = BaselineTracker(self.cfg.ref_update_every, self.cfg.pixel_stride)
        self.alarm = AlarmStateMachine(settings.alarm_mode)
        self.calibrator = AutoCalibrator(self.cfg)

        self._threshold = clamp_threshold(settings.threshold, self.cfg)
        self._bounds = self.registry.projectToSample(self.cfg.sample_w, self.cfg.sample_h)
        self._source = source

        self._enabled = True
        self._blocked = False
        self._calibrating = False
        self._calRequest = None
        self._calProgress: Optional[Tuple[int, Optional[float]]] = None
        self._lastCalibration: Optional[CalibrationResult] = None

        self._d = 0.0
        self._dPrev = 0.0
        self._dRef = 0.0
        self._status = "source found" if source is not None else "waiting for video source"

    # Observation

    def snapshot(self) -> WatchSnapshot:
        with self._lock:
            return WatchSnapshot(
                alarm=self.alarm.isAlarm,
                blocked=self._blocked,
                calibrating=self._calibrating,
                enabled=self._enabled,
                hasSource=self._source is not None,
                motionScore=self._d,
                dPrev=self._dPrev,
                dRef=self._dRef,
                threshold=self._threshold,
                sensitivity=sensitivity_label(self._threshold),
                alarmMode=self.alarm.mode.value,
                visualActive=self.alarm.visualActive,
                audioActive=self.alarm.audioActive,
                zones=tuple(self.registry.zones),
                coverage=self.registry.coveragePercent(),
                status=self._status,
                calibrationProgress=self._calProgress,
                lastCalibration=self._lastCalibration,
            )

    def settings(self) -> WatchSettings:
        with self._lock:
            return WatchSettings(
                threshold=self._threshold,
                zones=[z.toDict() for z in self.registry.zones],
                alarm_mode=self.alarm.mode.value,
            )

    @property
    def threshold(self) -> float:
        with self._lock:
            return self._threshold

    def addSettingsListener(self, fn: Callable[[WatchSettings], None]) -> None:
        self._settingsListeners.append(fn)

    def statusLine(self) -> str:
        s = self.snapshot()
        if s.blocked:
            state = "BLOCKED (pixels unreadable)"
        elif not s.enabled:
            state = "OFF • disarmed"
        elif s.calibrating:
            state = "ON • calibrating…"
        elif s.alarm:
            state = "ON • ALARM"
        else:
            state = "ON • armed"

        zonesLabel = f"zones={len(s.zones)} (≈{s.coverage}%)" if s.zones else "zones=none (whole frame)"
        return (
            f"{state} • threshold={s.threshold:.2f} ({s.sensitivity}) • "
            f"Δ={s.motionScore:.2f} (prev={s.dPrev:.2f} ref={s.dRef:.2f}) • "
            f"{zonesLabel} • alarm={s.alarmMode} • {s.status}"
        )

    # Commands

    def setThreshold(self, value, statusMsg: Optional[str] = None) -> float:
        with self._lock:
            self._threshold = clamp_threshold(value, self.cfg)
            self._status = statusMsg or f"manual threshold={self._threshold:.2f}"
            thr = self._threshold
        self._emitSettings()
        return thr

    def resetThreshold(self) -> float:
        return self.setThreshold(self.cfg.thr_default, f"reset: threshold={self.cfg.thr_default:.2f}")

    def setAlarmMode(self, mode) -> AlarmMode:
        with self._lock:
            applied = self.alarm.setMode(mode)
            self._status = f"alarm reaction: {applied.value}"
        self._emitSettings()
        return applied

    def addZone(self, rect) -> Zone:
        with self._lock:
            try:
                zone = self.registry.addZone(rect)
            except ZoneLimitError:
                self._status = f"zone limit ({self.cfg.zones_max})"
                raise
            self._zonesChanged(f"zone added ({len(self.registry)}/{self.cfg.zones_max})")
        self._emitSettings()
        return zone

    def undoZone(self) -> None:
        with self._lock:
            if not len(self.registry):
                return
            self.registry.removeLast()
            n = len(self.registry)
            self._zonesChanged(f"removed last zone ({n} left)" if n else "no zones, watching whole frame")
        self._emitSettings()

    def clearZones(self) -> None:
        with self._lock:
            if not len(self.registry):
                return
            self.registry.clear()
            self._zonesChanged("zones cleared, watching whole frame")
        self._emitSettings()

    def enable(self) -> None:
        self._setEnabled(True)

    def disable(self) -> None:
        self._setEnabled(False)

    def toggleEnabled(self) -> bool:
        with self._lock:
            enabled = not self._enabled
        self._setEnabled(enabled)
        return enabled

    def clearAlarm(self) -> None:
        with self._lock:
            self.alarm.clear()
            self.tracker.rebaseline()
            self._status = "alarm cleared"
        self.writeLog("Alarm cleared.")

    def setVideoSource(self, source) -> None:
        with self._lock:
            self._source = source
            self._blocked = False
            self.tracker.reset()
            self.alarm.clear()
            self._status = "source found" if source is not None else "waiting for video source"
        self.writeLog(f"Video source: {'set' if source is not None else 'none'}")

    def startCalibration(self) -> None:
        """Checks preconditions now and lets the detection loop run the calibration."""
        request = self._beginCalibration()
        with self._lock:
            self._calRequest = request

    def calibrate(self) -> CalibrationResult:
        """Runs one calibration on the calling thread."""
        source, bounds = self._beginCalibration()
        return self._runCalibration(source, bounds)

    # Detection loop

    def step(self) -> float:
        """
        One detection cycle. Returns how long the caller should idle before
        the next cycle (0.0 when a frame was processed or waited for).
        """
        with self._lock:
            pending = self._calRequest
            self._calRequest = None
            source = self._source
            bounds = list(self._bounds)

        if pending is not None:
            try:
                self._runCalibration(*pending)
            except (CalibrationError, FrameAccessBlocked) as e:
                logger.info("Calibration ended without a threshold: %s", e)
            return 0.0

        with self._lock:
            if source is None:
                self._status = "waiting for video source"
                return self.cfg.idle_no_source
            if not self._enabled or self._blocked or self._calibrating:
                return self.cfg.idle_paused

        if not source.isPlaying():
            return self.cfg.idle_not_playing

        try:
            curr = source.captureFrame(self.cfg.frame_wait)
        except FrameStall:
            return 0.0
        except FrameAccessBlocked as e:
            self._block(str(e))
            return 0.0
        except Exception as e:
            logger.exception("Frame read failed")
            self._block(f"frame read failed: {e}")
            return 0.0

        with self._lock:
            # Commands that landed while waiting for the frame win.
            if source is not self._source or not self._enabled or self._blocked or self._calibrating:
                return 0.0
            self._processFrame(curr)
        return 0.0

    def run(self, stopEvent: Optional[threading.Event] = None) -> None:
        stop = stopEvent or self._stopEvent
        logger.info("Detection loop started")
        try:
            while not stop.is_set():
                delay = self.step()
                if delay > 0:
                    stop.wait(delay)
        finally:
            with self._lock:
                self.alarm.clear()
                self._status = "stopped"
            logger.info("Detection loop stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopEvent.clear()
        self._thread = threading.Thread(target=self.run, name="motion-watch", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stopEvent.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        with self._lock:
            self.alarm.clear()
            if self._calRequest is not None:
                # Nobody is left to run it.
                self._calRequest = None
                self._calibrating = False
                self._calProgress = None
                self._status = "calibration cancelled"

    # Internals

    def writeLog(self, msg: str):
        logger.info(msg)
        if self.logFn:
            self.logFn(msg)

    def _processFrame(self, curr: np.ndarray) -> None:
        sample = self.tracker.onNewFrame(curr, self._bounds)
        self._dPrev, self._dRef, self._d = sample.dPrev, sample.dRef, sample.score
        if sample.seeded:
            return

        if self.alarm.evaluate(sample.score, self._threshold):
            self._status = f"MOTION Δ={sample.score:.2f} > {self._threshold:.2f}"
            logger.warning(
                "Alarm: score=%.2f (prev=%.2f ref=%.2f) threshold=%.2f",
                sample.score, sample.dPrev, sample.dRef, self._threshold,
            )
            if self.logFn:
                self.logFn(self._status)

        self.tracker.refreshReference(curr, self.alarm.isAlarm)

    def _zonesChanged(self, statusMsg: str) -> None:
        # Stale baselines must never meet the new geometry.
        self._bounds = self.registry.projectToSample(self.cfg.sample_w, self.cfg.sample_h)
        self.tracker.reset()
        self.alarm.clear()
        self._status = statusMsg

    def _setEnabled(self, enabled: bool) -> None:
        with self._lock:
            self._enabled = enabled
            self.alarm.clear()
            self.tracker.reset()
            self._status = "enabled" if enabled else "disabled"
        self.writeLog(f"Detector {'enabled' if enabled else 'disabled'}.")

    def _block(self, reason: str) -> None:
        with self._lock:
            self._blocked = True
            self.alarm.clear()
            self.tracker.reset()
            self._status = f"blocked: {reason}"
        logger.error("Frame access blocked: %s", reason)
        if self.logFn:
            self.logFn(f"ERROR (frame access): {reason}")

    def _beginCalibration(self):
        with self._lock:
            source = self._source
            if self._calibrating:
                reason = CalibrationPreconditionError.ALREADY_CALIBRATING
            elif self._blocked:
                reason = CalibrationPreconditionError.BLOCKED
            elif source is None or not source.isPlaying():
                reason = CalibrationPreconditionError.NO_SOURCE
            else:
                reason = None

            if reason is not None:
                err = CalibrationPreconditionError(reason)
                self._status = str(err)
                raise err

            self._calibrating = True
            self._calProgress = (0, None)
            self.alarm.clear()
            self._status = f"calibrating: 0/{self.cfg.cal_samples}"
            return source, list(self._bounds)

    def _runCalibration(self, source, bounds) -> CalibrationResult:
        def shouldContinue() -> bool:
            return (
                not self._stopEvent.is_set()
                and self._source is source
                and source.isPlaying()
            )

        try:
            result = self.calibrator.run(
                source.captureFrame,
                bounds,
                shouldContinue=shouldContinue,
                onProgress=self._onCalibrationProgress,
                sleepFn=self._stopEvent.wait,
            )
        except CalibrationInsufficientData as e:
            with self._lock:
                self._status = f"calibration failed: not enough data ({e.count})"
            self.writeLog(str(e))
            raise
        except FrameAccessBlocked as e:
            self._block(f"calibration: {e}")
            raise
        except Exception as e:
            logger.exception("Frame read failed during calibration")
            self._block(f"calibration: frame read failed: {e}")
            raise CalibrationError(f"calibration aborted: {e}") from e
        finally:
            with self._lock:
                self._calibrating = False
                self._calProgress = None
                self.tracker.reset()

        with self._lock:
            self._lastCalibration = result
        if result.static:
            msg = f"auto: almost static • threshold={result.threshold:.2f}"
        else:
            msg = f"auto: threshold={result.threshold:.2f}"
        self.setThreshold(result.threshold, msg)
        self.writeLog(f"Calibration finished: {msg} ({result.sampleCount} samples)")
        return result

    def _onCalibrationProgress(self, count: int, estimate: Optional[float]) -> None:
        with self._lock:
            self._calProgress = (count, estimate)
            self._status = f"calibrating: {count}/{self.cfg.cal_samples}"
            if estimate is not None:
                self._status += f" • auto≈{estimate:.2f}"

    def _emitSettings(self) -> None:
        settings = self.settings()
        for fn in list(self._settingsListeners):
            fn(settings)
