from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import math
import os
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

ALARM_MODES = ("visual", "audio", "both")


def _default_home_dir() -> Path:
    env = os.getenv("MOTIONWATCH_HOME")
    if env:
        return Path(env).expanduser()
    return Path.home() / "MotionWatch"


@dataclass
class WatchConfig:
    # Sampling raster
    sample_w: int = 160
    sample_h: int = 90
    pixel_stride: int = 2             # visit every Nth pixel in each axis

    # Threshold range (0–255 average channel delta)
    thr_default: float = 0.80
    thr_min: float = 0.01
    thr_max: float = 30.0
    thr_step: float = 0.01

    # Zones
    zones_max: int = 12
    zone_min_norm: float = 0.02       # fraction of frame width/height

    # Baselines
    ref_update_every: int = 12        # cycles between reference refreshes

    # Detection loop timing (seconds)
    frame_wait: float = 0.8
    idle_no_source: float = 0.2
    idle_paused: float = 0.09
    idle_not_playing: float = 0.14

    # Auto calibration
    cal_samples: int = 260
    cal_trim_top: float = 0.10
    cal_mad_k: float = 6.0
    cal_safety: float = 1.15
    cal_progress_every: int = 24
    cal_max_stalls: int = 14
    cal_frame_wait: float = 0.9
    cal_fallback_delay: float = 0.045
    cal_min_useful: int = 60
    cal_static_floor: float = 0.005   # max sample below this means a static scene
    cal_static_threshold: float = 0.03

    # Settings file
    home_dir: Path = field(default_factory=_default_home_dir)
    settings_name: str = "settings.json"

    @property
    def settings_path(self) -> Path:
        return self.home_dir / self.settings_name


def clamp(v: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, v))


def quantize(v: float, step: float) -> float:
    # half-up like a slider would; round() again so 0.8 stays 0.8
    return round(math.floor(v / step + 0.5) * step, 10)


def to_float(v, fallback: float) -> float:
    try:
        x = float(v)
    except (TypeError, ValueError):
        return fallback
    if math.isnan(x):
        return fallback
    return x


def clamp_threshold(v, cfg: WatchConfig) -> float:
    x = to_float(v, 0.0)
    return clamp(quantize(clamp(x, cfg.thr_min, cfg.thr_max), cfg.thr_step), cfg.thr_min, cfg.thr_max)


def normalize_alarm_mode(mode) -> str:
    mode = str(mode).strip().lower() if mode is not None else ""
    return mode if mode in ALARM_MODES else "both"


def sensitivity_label(threshold: float) -> str:
    if threshold <= 0.20:
        return "Ultra"
    if threshold <= 0.80:
        return "Micro"
    if threshold <= 2.00:
        return "Normal"
    if threshold <= 6.00:
        return "Noisy"
    return "Heavy noise"


@dataclass
class WatchSettings:
    """Persisted fields handed to the engine at construction."""

    threshold: float = 0.80
    zones: List[dict] = field(default_factory=list)
    alarm_mode: str = "both"

    def toDict(self) -> dict:
        return {
            "threshold": self.threshold,
            "zones": [dict(z) for z in self.zones],
            "alarm_mode": self.alarm_mode,
        }


def load_settings(cfg: WatchConfig, path: Optional[Path] = None) -> WatchSettings:
    """
    Read the settings file. A missing or unreadable file gives defaults;
    values are validated later by the engine, not here.
    """
    path = Path(path) if path is not None else cfg.settings_path
    if not path.exists():
        return WatchSettings(threshold=cfg.thr_default)

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Could not read settings %s: %s", path, e)
        return WatchSettings(threshold=cfg.thr_default)

    if not isinstance(raw, dict):
        return WatchSettings(threshold=cfg.thr_default)

    zones = raw.get("zones")
    return WatchSettings(
        threshold=to_float(raw.get("threshold"), cfg.thr_default),
        zones=[z for z in zones if isinstance(z, dict)] if isinstance(zones, list) else [],
        alarm_mode=normalize_alarm_mode(raw.get("alarm_mode")),
    )


def save_settings(settings: WatchSettings, cfg: WatchConfig, path: Optional[Path] = None) -> Path:
    path = Path(path) if path is not None else cfg.settings_path
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings.toDict(), f, indent=2)
    return path
