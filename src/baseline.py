from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from motion import motion_across_zones
from zones import SampleBounds


@dataclass
class MotionSample:
    dPrev: float
    dRef: float
    score: float
    seeded: bool = False     # first frame after a reset, nothing compared


class BaselineTracker:
    """
    Keeps the previous frame and a slowly refreshed reference frame.

    The score is the max of both deltas: the previous frame catches fast
    motion, the reference catches slow creep that frame-to-frame deltas miss.
    """

    def __init__(self, ref_update_every: int = 12, stride: int = 2):
        self.ref_update_every = max(1, int(ref_update_every))
        self.stride = stride
        self.previous: Optional[np.ndarray] = None
        self.reference: Optional[np.ndarray] = None
        self.refCounter = 0

    @property
    def isSeeded(self) -> bool:
        return self.previous is not None

    def reset(self):
        self.previous = None
        self.reference = None
        self.refCounter = 0

    def onNewFrame(self, curr: np.ndarray, bounds: Sequence[SampleBounds]) -> MotionSample:
        if self.previous is None:
            self.previous = curr
            self.reference = curr
            self.refCounter = 0
            return MotionSample(0.0, 0.0, 0.0, seeded=True)

        dPrev = motion_across_zones(curr, self.previous, bounds, self.stride)
        if self.reference is not None:
            dRef = motion_across_zones(curr, self.reference, bounds, self.stride)
        else:
            dRef = dPrev

        self.previous = curr
        return MotionSample(dPrev, dRef, max(dPrev, dRef))

    def refreshReference(self, curr: np.ndarray, alarmActive: bool) -> bool:
        """
        Advance the refresh counter unless alarmed. Returns True when the
        reference was replaced. While alarmed the reference stays frozen so
        an ongoing event is never absorbed into the baseline.
        """
        if alarmActive or self.previous is None:
            return False

        self.refCounter += 1
        if self.refCounter >= self.ref_update_every:
            self.reference = curr
            self.refCounter = 0
            return True
        return False

    def rebaseline(self):
        # After a manual alarm clear the current scene becomes "normal".
        if self.previous is not None:
            self.reference = self.previous.copy()
        self.refCounter = 0
