"""Tests for the MotionWatch engine: command API, detection cycle and calibration mode."""

from __future__ import annotations

import threading
import time

import numpy as np
import pytest

from calibration import CalibrationError, CalibrationInsufficientData, CalibrationPreconditionError
from config import WatchConfig, WatchSettings
from live_feed import FrameAccessBlocked, FrameStall
from live_motion import MotionWatch
from zones import ZoneLimitError


class _FakeSource:
    def __init__(self, frames=(), playing: bool = True) -> None:
        self.frames = list(frames)
        self.playing = playing
        self.calls = 0

    def isPlaying(self) -> bool:
        return self.playing

    def captureFrame(self, timeout: float) -> np.ndarray:
        self.calls += 1
        if not self.frames:
            time.sleep(min(timeout, 0.005))
            raise FrameStall("no frame")
        item = self.frames.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def _frame(value: int, cfg: WatchConfig | None = None) -> np.ndarray:
    cfg = cfg or WatchConfig()
    return np.full((cfg.sample_h, cfg.sample_w, 3), value, dtype=np.uint8)


def _watch(frames=(), **settings) -> tuple[MotionWatch, _FakeSource]:
    source = _FakeSource(frames)
    watch = MotionWatch(WatchConfig(), WatchSettings(**settings), source=source)
    return watch, source


def test_first_frame_only_seeds() -> None:
    watch, _ = _watch([_frame(0)])
    assert watch.step() == 0.0
    snap = watch.snapshot()
    assert not snap.alarm
    assert snap.motionScore == 0.0
    assert watch.tracker.isSeeded


def test_motion_above_threshold_raises_alarm() -> None:
    watch, _ = _watch([_frame(0), _frame(3)], threshold=2.0, alarm_mode="visual")
    watch.step()
    watch.step()

    snap = watch.snapshot()
    assert snap.alarm
    assert snap.motionScore == 3.0
    assert (snap.dPrev, snap.dRef) == (3.0, 3.0)
    assert (snap.visualActive, snap.audioActive) == (True, False)
    assert "MOTION" in snap.status


def test_motion_at_or_below_threshold_stays_idle() -> None:
    frames = [_frame(0)] + [_frame(i % 2) for i in range(1, 30)]
    watch, _ = _watch(frames, threshold=1.0)
    for _ in frames:
        watch.step()
    assert not watch.snapshot().alarm


def test_reference_frozen_while_alarmed_then_refreshed_once_after_clear() -> None:
    cfg = WatchConfig()
    n = cfg.ref_update_every
    frames = [_frame(0), _frame(200)] + [_frame(200)] * (n * 3) + [_frame(200)] * n
    watch, _ = _watch(frames, threshold=1.0)

    watch.step()
    watch.step()
    assert watch.snapshot().alarm
    frozen = watch.tracker.reference

    for _ in range(n * 3):
        watch.step()
        assert watch.snapshot().alarm
        assert watch.tracker.reference is frozen

    watch.clearAlarm()
    assert not watch.snapshot().alarm
    ref = watch.tracker.reference

    changes = 0
    for _ in range(n):
        watch.step()
        if watch.tracker.reference is not ref:
            changes += 1
            ref = watch.tracker.reference
    assert changes == 1
    assert not watch.snapshot().alarm


def test_clear_alarm_is_idempotent() -> None:
    watch, _ = _watch()
    watch.clearAlarm()
    watch.clearAlarm()
    snap = watch.snapshot()
    assert not snap.alarm
    assert (snap.visualActive, snap.audioActive) == (False, False)


def test_zone_change_resets_baselines_and_alarm() -> None:
    watch, _ = _watch([_frame(0), _frame(100)], threshold=1.0)
    watch.step()
    watch.step()
    assert watch.snapshot().alarm

    watch.addZone({"x": 0.1, "y": 0.1, "w": 0.5, "h": 0.5})

    snap = watch.snapshot()
    assert not snap.alarm
    assert watch.tracker.previous is None
    assert watch.tracker.reference is None
    assert len(snap.zones) == 1
    assert snap.coverage == 25


def test_motion_outside_zones_is_ignored() -> None:
    cfg = WatchConfig()
    moved = _frame(0)
    moved[:, cfg.sample_w // 2:] = 120
    watch, _ = _watch([_frame(0), moved], threshold=1.0)
    watch.addZone({"x": 0.0, "y": 0.0, "w": 0.4, "h": 1.0})

    watch.step()
    watch.step()

    assert watch.snapshot().motionScore == 0.0
    assert not watch.snapshot().alarm


def test_zone_limit_leaves_state_unchanged() -> None:
    watch, _ = _watch(zones=[{"x": i * 0.05, "y": 0, "w": 0.05, "h": 0.1} for i in range(12)])
    seen = []
    watch.addSettingsListener(seen.append)

    with pytest.raises(ZoneLimitError):
        watch.addZone({"x": 0.5, "y": 0.5, "w": 0.1, "h": 0.1})

    assert len(watch.snapshot().zones) == 12
    assert seen == []


def test_undo_and_clear_zones_on_empty_registry_are_noops() -> None:
    watch, _ = _watch()
    seen = []
    watch.addSettingsListener(seen.append)
    watch.undoZone()
    watch.clearZones()
    assert seen == []


def test_settings_changes_are_notified() -> None:
    watch, _ = _watch()
    seen = []
    watch.addSettingsListener(seen.append)

    assert watch.setThreshold(99) == 30.0
    assert watch.setThreshold(-1) == 0.01
    watch.setAlarmMode("audio")
    watch.addZone({"x": 0.2, "y": 0.2, "w": 0.2, "h": 0.2})
    watch.undoZone()

    assert len(seen) == 5
    assert seen[0].threshold == 30.0
    assert seen[2].alarm_mode == "audio"
    assert seen[3].zones == [{"x": 0.2, "y": 0.2, "w": 0.2, "h": 0.2}]
    assert seen[4].zones == []


def test_initial_settings_are_sanitized() -> None:
    watch = MotionWatch(
        WatchConfig(),
        WatchSettings(threshold=float("nan"), zones=[{"x": -1, "y": 2, "w": 0.5, "h": 0.5}], alarm_mode="loud"),
    )
    snap = watch.snapshot()
    assert snap.threshold == 0.01
    assert snap.alarmMode == "both"
    assert snap.zones[0].x == 0.0 and snap.zones[0].y == 0.5
    assert not snap.hasSource


def test_set_alarm_mode_while_alarmed_switches_channels() -> None:
    watch, _ = _watch([_frame(0), _frame(50)], threshold=1.0, alarm_mode="both")
    watch.step()
    watch.step()

    watch.setAlarmMode("audio")

    snap = watch.snapshot()
    assert snap.alarm
    assert (snap.visualActive, snap.audioActive) == (False, True)


def test_disabled_detector_does_not_read_frames() -> None:
    watch, source = _watch([_frame(0), _frame(50)])
    watch.disable()

    assert watch.step() == watch.cfg.idle_paused
    assert source.calls == 0

    assert watch.toggleEnabled() is True
    watch.step()
    assert source.calls == 1


def test_missing_or_paused_source_idles() -> None:
    watch = MotionWatch(WatchConfig())
    assert watch.step() == watch.cfg.idle_no_source

    source = _FakeSource([_frame(0)], playing=False)
    watch.setVideoSource(source)
    assert watch.step() == watch.cfg.idle_not_playing
    assert source.calls == 0


def test_stall_is_not_fatal() -> None:
    watch, _ = _watch([FrameStall("slow"), _frame(0)])
    watch.step()
    assert not watch.snapshot().blocked
    watch.step()
    assert watch.tracker.isSeeded


def test_blocked_frame_access_is_sticky_until_new_source() -> None:
    watch, source = _watch([_frame(0), _frame(90), FrameAccessBlocked("denied")], threshold=1.0)
    watch.step()
    watch.step()
    assert watch.snapshot().alarm

    watch.step()
    snap = watch.snapshot()
    assert snap.blocked
    assert not snap.alarm
    assert (snap.visualActive, snap.audioActive) == (False, False)

    calls = source.calls
    assert watch.step() == watch.cfg.idle_paused
    assert source.calls == calls

    with pytest.raises(CalibrationPreconditionError) as exc:
        watch.calibrate()
    assert exc.value.reason == "Blocked"

    watch.setVideoSource(_FakeSource([_frame(0)]))
    assert not watch.snapshot().blocked


def test_unexpected_source_error_blocks() -> None:
    watch, _ = _watch([PermissionError("tainted")])
    watch.step()
    assert watch.snapshot().blocked


def test_calibration_requires_playing_source() -> None:
    watch = MotionWatch(WatchConfig())
    with pytest.raises(CalibrationPreconditionError) as exc:
        watch.startCalibration()
    assert exc.value.reason == "NoSource"

    watch.setVideoSource(_FakeSource(playing=False))
    with pytest.raises(CalibrationPreconditionError) as exc:
        watch.calibrate()
    assert exc.value.reason == "NoSource"
    assert not watch.snapshot().calibrating


def test_second_calibration_request_is_rejected() -> None:
    watch, _ = _watch()
    watch.startCalibration()
    assert watch.snapshot().calibrating

    with pytest.raises(CalibrationPreconditionError) as exc:
        watch.startCalibration()
    assert exc.value.reason == "AlreadyCalibrating"
    with pytest.raises(CalibrationPreconditionError):
        watch.calibrate()


def _calibration_cfg() -> WatchConfig:
    return WatchConfig(sample_w=10, sample_h=1, pixel_stride=1, cal_samples=80, cal_min_useful=60, cal_max_stalls=2)


def test_calibration_publishes_threshold_and_resets_baselines() -> None:
    cfg = _calibration_cfg()
    frames = [_frame(100 + (i % 2), cfg) for i in range(81)]
    source = _FakeSource(frames)
    watch = MotionWatch(cfg, WatchSettings(threshold=5.0), source=source)
    seen = []
    watch.addSettingsListener(seen.append)

    res = watch.calibrate()

    snap = watch.snapshot()
    assert res.sampleCount == 80
    assert snap.threshold == res.threshold == pytest.approx(1.15)
    assert not snap.calibrating
    assert snap.lastCalibration is res
    assert snap.calibrationProgress is None
    assert watch.tracker.previous is None
    assert seen[-1].threshold == res.threshold


def test_calibration_with_too_few_samples_keeps_threshold() -> None:
    cfg = _calibration_cfg()
    source = _FakeSource([_frame(100 + (i % 2), cfg) for i in range(20)])
    watch = MotionWatch(cfg, WatchSettings(threshold=5.0), source=source)

    with pytest.raises(CalibrationInsufficientData) as exc:
        watch.calibrate()

    snap = watch.snapshot()
    assert exc.value.count == 19
    assert snap.threshold == 5.0
    assert not snap.calibrating
    assert "not enough data" in snap.status


def test_static_scene_calibration_uses_floor() -> None:
    cfg = _calibration_cfg()
    source = _FakeSource([_frame(42, cfg) for _ in range(81)])
    watch = MotionWatch(cfg, WatchSettings(threshold=5.0), source=source)

    res = watch.calibrate()

    assert res.static
    assert watch.snapshot().threshold == 0.03


def test_calibration_requested_through_the_loop() -> None:
    cfg = _calibration_cfg()
    source = _FakeSource([_frame(100 + (i % 2), cfg) for i in range(81)])
    watch = MotionWatch(cfg, WatchSettings(threshold=5.0), source=source)

    watch.startCalibration()
    watch.step()

    snap = watch.snapshot()
    assert not snap.calibrating
    assert snap.threshold == pytest.approx(1.15)


def test_frame_access_loss_during_calibration_blocks() -> None:
    cfg = _calibration_cfg()
    source = _FakeSource([_frame(100, cfg), _frame(101, cfg), FrameAccessBlocked("denied")])
    watch = MotionWatch(cfg, WatchSettings(threshold=5.0), source=source)

    with pytest.raises(FrameAccessBlocked):
        watch.calibrate()

    snap = watch.snapshot()
    assert snap.blocked
    assert not snap.calibrating
    assert snap.calibrationProgress is None
    assert snap.threshold == 5.0

    with pytest.raises(CalibrationPreconditionError) as exc:
        watch.startCalibration()
    assert exc.value.reason == "Blocked"


def test_unexpected_error_during_calibration_blocks() -> None:
    cfg = _calibration_cfg()
    source = _FakeSource([_frame(100, cfg), PermissionError("tainted")])
    watch = MotionWatch(cfg, WatchSettings(threshold=5.0), source=source)

    with pytest.raises(CalibrationError) as exc:
        watch.calibrate()

    assert isinstance(exc.value.__cause__, PermissionError)
    snap = watch.snapshot()
    assert snap.blocked
    assert not snap.calibrating
    assert snap.threshold == 5.0


def test_unexpected_error_during_loop_calibration_keeps_loop_alive() -> None:
    cfg = _calibration_cfg()
    source = _FakeSource([_frame(100, cfg), PermissionError("tainted")])
    watch = MotionWatch(cfg, WatchSettings(threshold=5.0), source=source)

    watch.startCalibration()
    assert watch.step() == 0.0
    assert watch.snapshot().blocked

    source.frames = [_frame(100, cfg), PermissionError("tainted")]
    watch.setVideoSource(source)
    watch.startCalibration()
    watch.start()
    try:
        deadline = time.monotonic() + 5.0
        while not watch.snapshot().blocked and time.monotonic() < deadline:
            time.sleep(0.01)
        assert watch.snapshot().blocked
        assert watch._thread.is_alive()
    finally:
        watch.stop()


def test_stop_cancels_a_calibration_the_loop_never_ran() -> None:
    watch, _ = _watch()
    watch.startCalibration()
    assert watch.snapshot().calibrating

    watch.stop()

    snap = watch.snapshot()
    assert not snap.calibrating
    assert snap.calibrationProgress is None
    watch.startCalibration()
    assert watch.snapshot().calibrating


def test_calibration_suspends_alarm_evaluation() -> None:
    watch, source = _watch([_frame(0), _frame(200)], threshold=1.0)
    watch.step()
    watch.step()
    assert watch.snapshot().alarm

    watch.startCalibration()
    snap = watch.snapshot()
    assert not snap.alarm
    assert snap.calibrating


def test_run_loop_detects_and_stops_cleanly() -> None:
    source = _FakeSource([_frame(0), _frame(200)])
    watch = MotionWatch(WatchConfig(), WatchSettings(threshold=1.0), source=source)
    stop = threading.Event()
    thread = threading.Thread(target=watch.run, args=(stop,), daemon=True)
    thread.start()

    deadline = time.monotonic() + 5.0
    while not watch.snapshot().alarm and time.monotonic() < deadline:
        time.sleep(0.01)
    assert watch.snapshot().alarm

    stop.set()
    thread.join(timeout=5.0)
    assert not thread.is_alive()
    snap = watch.snapshot()
    assert not snap.alarm
    assert snap.status == "stopped"


def test_start_and_stop_manage_the_thread() -> None:
    watch, _ = _watch()
    watch.start()
    watch.start()
    watch.stop()
    assert watch._thread is None


def test_status_line_mentions_state() -> None:
    watch, _ = _watch()
    assert "armed" in watch.statusLine()
    watch.disable()
    assert "OFF" in watch.statusLine()
