from __future__ import annotations
from dataclasses import dataclass
from typing import Union
import sys
import cv2
import numpy as np

@dataclass
class VideoMeta:
    fps: float
    width: int
    height: int
    frame_count: int
    is_camera: bool

def parse_source(source: Union[int, str]) -> Union[int, str]:
    # "0" on the command line / in settings means camera 0
    if isinstance(source, str) and source.strip().isdigit():
        return int(source.strip())
    return source

def open_capture(source: Union[int, str]) -> tuple[cv2.VideoCapture, VideoMeta]:
    source = parse_source(source)
    is_camera = isinstance(source, int)

    # macOS: prefer AVFoundation backend for cameras
    if is_camera and sys.platform == "darwin":
        cap = cv2.VideoCapture(source, cv2.CAP_AVFOUNDATION)
    else:
        cap = cv2.VideoCapture(source)

    if not cap.isOpened():
        cap.release()
        raise RuntimeError(f"Could not open video source: {source}")

    fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
    width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
    height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
    frame_count = 0 if is_camera else int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)

    meta = VideoMeta(fps=fps, width=width, height=height, frame_count=frame_count, is_camera=is_camera)
    return cap, meta

def to_sample_raster(frame_bgr: np.ndarray, sample_w: int, sample_h: int) -> np.ndarray:
    """Downsample a BGR frame to the (sample_h, sample_w, 3) RGB sampling raster."""
    small = cv2.resize(frame_bgr, (sample_w, sample_h), interpolation=cv2.INTER_AREA)
    return cv2.cvtColor(small, cv2.COLOR_BGR2RGB)
