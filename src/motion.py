from __future__ import annotations
from typing import Sequence
import numpy as np

from zones import SampleBounds


def check_rasters(curr: np.ndarray, prev: np.ndarray) -> None:
    # Raster size is a system-wide constant; a mismatch is a bug, not bad input.
    assert curr.shape == prev.shape, f"raster shape mismatch: {curr.shape} vs {prev.shape}"
    assert curr.ndim == 3 and curr.shape[2] >= 3, f"expected (H, W, 3|4) raster, got {curr.shape}"


def average_channel_diff(
    curr: np.ndarray,
    prev: np.ndarray,
    bounds: SampleBounds,
    stride: int = 2,
) -> float:
    """
    Mean absolute R/G/B difference over the pixels of `bounds`, visiting every
    `stride`-th pixel in both axes. Alpha is ignored. 0.0 when no pixel is visited.
    """
    check_rasters(curr, prev)
    s = max(1, int(stride))

    a = curr[bounds.y0:bounds.y1:s, bounds.x0:bounds.x1:s, :3]
    b = prev[bounds.y0:bounds.y1:s, bounds.x0:bounds.x1:s, :3]

    visited = a.shape[0] * a.shape[1]
    if visited == 0:
        return 0.0

    # int16 so the subtraction cannot wrap around like uint8 would
    total = int(np.abs(a.astype(np.int16) - b.astype(np.int16)).sum())
    return total / (visited * 3)


def motion_across_zones(
    curr: np.ndarray,
    prev: np.ndarray,
    bounds_list: Sequence[SampleBounds],
    stride: int = 2,
) -> float:
    # Max, not mean: one busy zone must not be diluted by quiet ones.
    score = 0.0
    for b in bounds_list:
        d = average_channel_diff(curr, prev, b, stride)
        if d > score:
            score = d
    return score
