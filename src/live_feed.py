from __future__ import annotations

from dataclasses import dataclass
import logging
from queue import Queue, Empty, Full
from threading import Thread, Event, Lock
import time
from typing import Optional, Union

import cv2
import numpy as np

from video_io import open_capture, parse_source, to_sample_raster, VideoMeta

logger = logging.getLogger(__name__)


class FrameStall(RuntimeError):
    """No frame arrived within the wait timeout. Safe to retry."""


class FrameAccessBlocked(RuntimeError):
    """Pixels cannot be read from this source. Retrying will not help."""


@dataclass
class LiveFeedConfig:
    source: Union[int, str] = 0       # camera index, file path or stream URL
    sample_w: int = 160
    sample_h: int = 90
    flip_horizontal: bool = False
    max_read_failures: int = 50       # consecutive camera read failures before giving up


class LiveFeedController:
    """
    OpenCV capture read on a background thread.

    The detector pulls downsampled rasters with captureFrame(); the window
    pulls the latest full-size RGB frame with readFrameRgb().
    """

    def __init__(self, cfg: LiveFeedConfig):
        self.cfg = cfg
        self.cap: Optional[cv2.VideoCapture] = None
        self.meta: Optional[VideoMeta] = None

        self._frames: Queue = Queue(maxsize=1)
        self._latestRgb: Optional[np.ndarray] = None
        self._latestLock = Lock()
        self._stopEvent = Event()
        self._thread: Optional[Thread] = None
        self._ended = False
        self._error: Optional[BaseException] = None

    def startFeed(self) -> None:
        if self.cap is not None:
            return

        try:
            cap, meta = open_capture(self.cfg.source)
        except RuntimeError as e:
            if not isinstance(parse_source(self.cfg.source), int):
                raise FrameAccessBlocked(str(e)) from e
            raise FrameAccessBlocked(
                f"{e}\n\n"
                "macOS: System Settings → Privacy & Security → Camera\n"
                "Enable access for the app you are running under (Terminal / IDE).\n"
                "Also close other apps that may be using the camera."
            ) from e

        self.cap = cap
        self.meta = meta
        self._ended = False
        self._error = None
        self._stopEvent.clear()
        self._thread = Thread(target=self._readLoop, name="live-feed", daemon=True)
        self._thread.start()
        logger.info("Feed started: %s (%dx%d @ %.1f fps)", self.cfg.source, meta.width, meta.height, meta.fps)

    def stopFeed(self) -> None:
        self._stopEvent.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self.cap is not None:
            self.cap.release()
            self.cap = None
        with self._latestLock:
            self._latestRgb = None

    def isPlaying(self) -> bool:
        return (
            self._thread is not None
            and self._thread.is_alive()
            and not self._ended
            and self._error is None
        )

    def captureFrame(self, timeout: float) -> np.ndarray:
        if self._error is not None:
            raise FrameAccessBlocked(f"Frame read failed: {self._error}")
        try:
            return self._frames.get(timeout=timeout)
        except Empty:
            if self._error is not None:
                raise FrameAccessBlocked(f"Frame read failed: {self._error}")
            raise FrameStall(f"No frame within {timeout:.2f}s")

    def readFrameRgb(self) -> Optional[np.ndarray]:
        """
        Returns the latest full-size RGB frame (H, W, 3), or None if unavailable.
        """
        with self._latestLock:
            return self._latestRgb

    def getDelayMs(self) -> int:
        fps = self.meta.fps if self.meta is not None else 25.0
        return int(1000 / max(1.0, fps))

    def _readLoop(self) -> None:
        failures = 0
        pace = 0.0 if self.meta is None or self.meta.is_camera else 1.0 / max(1.0, self.meta.fps)

        while not self._stopEvent.is_set():
            started = time.monotonic()
            try:
                ok, frame = self.cap.read()
            except cv2.error as e:
                logger.error("Capture error: %s", e)
                self._error = e
                return

            if not ok or frame is None:
                if not self.meta.is_camera:
                    logger.info("End of video: %s", self.cfg.source)
                    self._ended = True
                    return
                failures += 1
                if failures >= self.cfg.max_read_failures:
                    self._error = RuntimeError(
                        "Camera opened but no frames were received. "
                        "This is usually permissions or another app using the camera."
                    )
                    return
                self._stopEvent.wait(0.02)
                continue

            failures = 0
            if self.cfg.flip_horizontal:
                frame = cv2.flip(frame, 1)

            raster = to_sample_raster(frame, self.cfg.sample_w, self.cfg.sample_h)
            with self._latestLock:
                self._latestRgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            self._offer(raster)

            if pace:
                self._stopEvent.wait(max(0.0, pace - (time.monotonic() - started)))

    def _offer(self, raster: np.ndarray) -> None:
        # Keep only the newest raster; the detector wants "now", not a backlog.
        try:
            self._frames.get_nowait()
        except Empty:
            pass
        try:
            self._frames.put_nowait(raster)
        except Full:
            pass
