from __future__ import annotations

from dataclasses import dataclass, asdict
import math
from typing import Iterable, List, Mapping

from config import WatchConfig, clamp, to_float


class ZoneLimitError(RuntimeError):
    pass


@dataclass(frozen=True)
class Zone:
    # normalized frame coordinates, 0..1
    x: float
    y: float
    w: float
    h: float

    def toDict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SampleBounds:
    # half-open pixel rectangle [x0, x1) x [y0, y1) on the sampling raster
    x0: int
    y0: int
    x1: int
    y1: int


def _fields(rect):
    if isinstance(rect, Zone):
        return rect.x, rect.y, rect.w, rect.h
    if isinstance(rect, Mapping):
        return rect.get("x"), rect.get("y"), rect.get("w"), rect.get("h")
    if isinstance(rect, (tuple, list)) and len(rect) == 4:
        return tuple(rect)
    return None, None, None, None


def sanitize_zone(rect, min_norm: float = 0.02) -> Zone:
    rx, ry, rw, rh = _fields(rect)

    x = clamp(to_float(rx, 0.0), 0.0, 1.0)
    y = clamp(to_float(ry, 0.0), 0.0, 1.0)
    w = clamp(to_float(rw, 1.0), 0.0, 1.0)
    h = clamp(to_float(rh, 1.0), 0.0, 1.0)

    w = clamp(w, min_norm, 1.0)
    h = clamp(h, min_norm, 1.0)
    x = clamp(x, 0.0, 1.0 - w)
    y = clamp(y, 0.0, 1.0 - h)
    return Zone(x, y, w, h)


def sanitize_zones(items, min_norm: float = 0.02, max_zones: int = 12) -> List[Zone]:
    if not isinstance(items, (list, tuple)):
        return []

    out: List[Zone] = []
    for item in items:
        if len(out) >= max_zones:
            break
        z = sanitize_zone(item, min_norm)
        if z.w >= min_norm and z.h >= min_norm:
            out.append(z)
    return out


class ZoneRegistry:
    def __init__(self, cfg: WatchConfig, zones: Iterable = ()):
        self.cfg = cfg
        self._zones: List[Zone] = sanitize_zones(list(zones), cfg.zone_min_norm, cfg.zones_max)

    @property
    def zones(self) -> List[Zone]:
        return list(self._zones)

    @property
    def isFull(self) -> bool:
        return len(self._zones) >= self.cfg.zones_max

    def __len__(self) -> int:
        return len(self._zones)

    def addZone(self, rect) -> Zone:
        if self.isFull:
            raise ZoneLimitError(f"Zone limit reached ({self.cfg.zones_max}).")
        z = sanitize_zone(rect, self.cfg.zone_min_norm)
        self._zones.append(z)
        return z

    def removeLast(self) -> None:
        if self._zones:
            self._zones.pop()

    def clear(self) -> None:
        self._zones.clear()

    def projectToSample(self, rasterW: int, rasterH: int) -> List[SampleBounds]:
        if not self._zones:
            return [SampleBounds(0, 0, rasterW, rasterH)]

        bounds = []
        for z in self._zones:
            x0 = int(clamp(math.floor(z.x * rasterW), 0, rasterW - 1))
            y0 = int(clamp(math.floor(z.y * rasterH), 0, rasterH - 1))
            x1 = int(clamp(math.ceil((z.x + z.w) * rasterW), x0 + 1, rasterW))
            y1 = int(clamp(math.ceil((z.y + z.h) * rasterH), y0 + 1, rasterH))
            bounds.append(SampleBounds(x0, y0, x1, y1))
        return bounds

    def coveragePercent(self) -> int:
        # Overlaps are counted twice; display-only estimate.
        if not self._zones:
            return 100
        total = sum(z.w * z.h for z in self._zones)
        return int(math.floor(clamp(total, 0.0, 1.0) * 100 + 0.5))
