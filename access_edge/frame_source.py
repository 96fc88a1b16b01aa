"""
Frame source.

Wraps the capture device and attaches per-frame quality signals:
    exposure   mean luminance, 0 (black) .. 1 (white)
    blur       0 (sharp) .. 1 (featureless), from the variance of the Laplacian
    occlusion  fraction of the frame that is near-black, a proxy for a covered
               or obstructed lens

Signals are computed on a downscaled grayscale copy so they stay cheap next to
inference.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import cv2
import numpy as np

from .config import CameraConfig

logger = logging.getLogger(__name__)

# Laplacian variance at which blur reads 0.5
BLUR_HALF_POINT = 100.0
OCCLUSION_PIXEL_LEVEL = 12
SIGNAL_MAX_WIDTH = 320


@dataclass(frozen=True)
class QualitySignals:
    exposure: Optional[float]
    blur: Optional[float]
    occlusion: Optional[float]


@dataclass
class Frame:
    """One captured frame with its quality signals."""
    frame_id: int
    image: np.ndarray
    captured_at: datetime
    captured_monotonic: float
    signals: QualitySignals


def estimate_quality_signals(image: np.ndarray) -> QualitySignals:
    """
    Compute exposure, blur and occlusion estimates for a BGR or gray image.

    Returns all-None signals for an empty image.
    """
    if image is None or image.size == 0:
        return QualitySignals(exposure=None, blur=None, occlusion=None)

    gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    h, w = gray.shape[:2]
    if w > SIGNAL_MAX_WIDTH:
        scale = SIGNAL_MAX_WIDTH / w
        gray = cv2.resize(gray, (SIGNAL_MAX_WIDTH, max(1, int(h * scale))),
                          interpolation=cv2.INTER_AREA)

    exposure = float(gray.mean()) / 255.0
    lap_var = float(cv2.Laplacian(gray, cv2.CV_64F).var())
    blur = BLUR_HALF_POINT / (BLUR_HALF_POINT + lap_var)
    occlusion = float(np.count_nonzero(gray < OCCLUSION_PIXEL_LEVEL)) / gray.size

    return QualitySignals(exposure=exposure, blur=blur, occlusion=occlusion)


class FrameSource:
    """
    Camera capture with quality signals.

    Usage:
        source = FrameSource(config.camera)
        source.open()
        frame = source.read()   # None when the device returned nothing
        source.release()
    """

    def __init__(
        self,
        config: CameraConfig,
        signal_estimator: Callable[[np.ndarray], QualitySignals] = estimate_quality_signals,
        capture_factory: Optional[Callable[[], "cv2.VideoCapture"]] = None,
    ):
        self.config = config
        self.signal_estimator = signal_estimator
        self._capture_factory = capture_factory or self._default_capture
        self._capture = None
        self._frame_id = 0
        self.stats = {
            "frames_read": 0,
            "read_failures": 0,
            "reconnects": 0,
        }

    def _default_capture(self):
        source = self.config.source
        if source.isdigit():
            return cv2.VideoCapture(int(source))
        if source.startswith("rtsp://"):
            capture = cv2.VideoCapture(source, cv2.CAP_FFMPEG)
            if capture.isOpened():
                return capture
            capture.release()
        return cv2.VideoCapture(source)

    def open(self) -> bool:
        """Connect to the capture device."""
        self.release()
        self._capture = self._capture_factory()
        if self._capture is None or not self._capture.isOpened():
            # Hide credentials embedded in the URL.
            logger.error(f"Failed to open camera: {self.config.source.split('@')[-1]}")
            return False
        logger.info(f"Camera opened: {self.config.source.split('@')[-1]}")
        return True

    def read(self) -> Optional[Frame]:
        """
        Read one frame.

        Returns:
            Frame, or None if the device produced nothing (the caller decides
            when to reconnect)
        """
        if self._capture is None:
            return None

        ok, image = self._capture.read()
        if not ok or image is None:
            self.stats["read_failures"] += 1
            return None

        self._frame_id += 1
        self.stats["frames_read"] += 1
        return Frame(
            frame_id=self._frame_id,
            image=image,
            captured_at=datetime.now(timezone.utc),
            captured_monotonic=time.monotonic(),
            signals=self.signal_estimator(image),
        )

    def reconnect(self) -> bool:
        self.stats["reconnects"] += 1
        logger.warning("Camera read failed, reconnecting...")
        return self.open()

    def release(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None
