"""
Detector and Embedder adapters over the inference backend.

The backend is an external collaborator: it takes an image and returns face
boxes or raw feature vectors. The adapters here enforce the contracts the
matcher relies on:

- Detector returns regions with confidence >= the configured minimum,
  highest confidence first, and an empty list when no face is present.
- Embedder returns a finite unit-norm float32 vector of the model dimension,
  or raises InferenceError.

Every backend call runs with a timeout; a call that exceeds it is reported as
InferenceError and the frame is dropped.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .config import InferenceConfig
from .errors import InferenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FaceRegion:
    """Detected face region in frame pixel coordinates."""
    x: int
    y: int
    width: int
    height: int
    confidence: float
    # Raw backend detection row (landmarks etc.), passed back on embed
    landmarks: Optional[Tuple[float, ...]] = field(default=None, compare=False)

    @property
    def bbox(self) -> Tuple[int, int, int, int]:
        """(x1, y1, x2, y2)"""
        return (self.x, self.y, self.x + self.width, self.y + self.height)


def crop_region(image: np.ndarray, region: FaceRegion, margin: float = 0.2,
                size: Optional[int] = None) -> np.ndarray:
    """
    Crop a face region with a relative margin, clamped to the image.

    Args:
        image: Full BGR frame
        region: Face region
        margin: Fraction of the box size added on each side
        size: If set, resize the crop to size x size

    Raises:
        InferenceError: If the clamped crop is empty
    """
    h, w = image.shape[:2]
    mx = int(region.width * margin)
    my = int(region.height * margin)
    x1 = max(0, region.x - mx)
    y1 = max(0, region.y - my)
    x2 = min(w, region.x + region.width + mx)
    y2 = min(h, region.y + region.height + my)
    if x2 <= x1 or y2 <= y1:
        raise InferenceError(f"Empty crop for region {region.bbox}")

    crop = image[y1:y2, x1:x2]
    if size:
        crop = cv2.resize(crop, (size, size), interpolation=cv2.INTER_LINEAR)
    return crop


class InferenceBackend:
    """
    Interface to the external detection/embedding engine.

    Subclasses implement detect() and embed(). Both may raise any exception;
    the adapters translate failures into InferenceError.
    """

    model_version: str = "unknown"

    def detect(self, image: np.ndarray) -> List[FaceRegion]:
        raise NotImplementedError

    def embed(self, image: np.ndarray, region: FaceRegion) -> np.ndarray:
        raise NotImplementedError

    def close(self) -> None:
        pass


class OpenCVBackend(InferenceBackend):
    """
    YuNet face detector + SFace recognizer through OpenCV's dnn module.

    Usage:
        backend = OpenCVBackend(
            detector_model_path="/opt/access-edge/models/face_detection_yunet.onnx",
            embedder_model_path="/opt/access-edge/models/face_recognition_sface.onnx",
            model_version="sface-2021dec",
        )
        regions = backend.detect(frame)
        vector = backend.embed(frame, regions[0])
    """

    def __init__(
        self,
        detector_model_path: str,
        embedder_model_path: str,
        model_version: str,
        score_threshold: float = 0.6,
        nms_threshold: float = 0.3,
        top_k: int = 50,
        crop_margin: float = 0.2,
        input_size: int = 112,
    ):
        self.model_version = model_version
        self.score_threshold = score_threshold
        self.crop_margin = crop_margin
        self.input_size = input_size

        logger.info(f"Loading face detector: {detector_model_path}")
        start = time.time()
        self._detector = cv2.FaceDetectorYN.create(
            detector_model_path, "", (320, 320), score_threshold, nms_threshold, top_k
        )
        logger.info(f"Loading face recognizer: {embedder_model_path}")
        self._recognizer = cv2.FaceRecognizerSF.create(embedder_model_path, "")
        logger.info(f"Inference models loaded in {time.time() - start:.1f}s")

        self._input_size: Optional[Tuple[int, int]] = None

    def detect(self, image: np.ndarray) -> List[FaceRegion]:
        h, w = image.shape[:2]
        if self._input_size != (w, h):
            self._detector.setInputSize((w, h))
            self._input_size = (w, h)

        _, faces = self._detector.detect(image)
        if faces is None:
            return []

        regions = []
        for row in faces:
            x, y, fw, fh = (int(v) for v in row[:4])
            regions.append(FaceRegion(
                x=x, y=y, width=fw, height=fh,
                confidence=float(row[-1]),
                landmarks=tuple(float(v) for v in row),
            ))
        return regions

    def embed(self, image: np.ndarray, region: FaceRegion) -> np.ndarray:
        if region.landmarks is None:
            # Region from elsewhere; no landmarks to align on.
            crop = crop_region(image, region, self.crop_margin, self.input_size)
            return self._recognizer.feature(crop)
        face_row = np.array(region.landmarks, dtype=np.float32).reshape(1, -1)
        aligned = self._recognizer.alignCrop(image, face_row)
        return self._recognizer.feature(aligned)


def create_backend(config: InferenceConfig) -> InferenceBackend:
    """Instantiate the backend named in the config."""
    if config.backend == "opencv":
        if not config.detector_model_path or not config.embedder_model_path:
            raise ValueError("opencv backend needs detector_model_path and embedder_model_path")
        return OpenCVBackend(
            detector_model_path=config.detector_model_path,
            embedder_model_path=config.embedder_model_path,
            model_version=config.model_version,
            score_threshold=config.min_detection_confidence,
            crop_margin=config.crop_margin,
            input_size=config.input_size,
        )
    raise ValueError(f"Unknown inference backend: {config.backend}")


class _TimedCaller:
    """Runs backend calls on a worker thread with a result timeout."""

    def __init__(self, timeout: float, name: str):
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)

    def call(self, what: str, fn, *args):
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as e:
            future.cancel()
            raise InferenceError(f"{what} timed out after {self.timeout}s") from e
        except InferenceError:
            raise
        except Exception as e:
            raise InferenceError(f"{what} failed: {e}") from e

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


class Detector:
    """
    Face detection adapter.

    Usage:
        detector = Detector(backend, config.inference)
        regions = detector.detect(frame.image)
    """

    def __init__(self, backend: InferenceBackend, config: InferenceConfig):
        self.backend = backend
        self.min_confidence = config.min_detection_confidence
        self._caller = _TimedCaller(config.timeout_seconds, "detector")

    def detect(self, image: np.ndarray) -> List[FaceRegion]:
        """
        Detect faces.

        Returns:
            Regions with confidence >= min_confidence, best first

        Raises:
            InferenceError: On backend failure or timeout
        """
        regions = self._caller.call("detection", self.backend.detect, image)
        if regions is None:
            return []
        kept = [r for r in regions if r.confidence >= self.min_confidence]
        kept.sort(key=lambda r: r.confidence, reverse=True)
        return kept

    def close(self) -> None:
        self._caller.shutdown()


class Embedder:
    """
    Face embedding adapter.

    Usage:
        embedder = Embedder(backend, config.inference)
        vector = embedder.embed(frame.image, region)
    """

    def __init__(self, backend: InferenceBackend, config: InferenceConfig):
        self.backend = backend
        self.dimension = config.embedding_dim
        self._caller = _TimedCaller(config.timeout_seconds, "embedder")

    @property
    def model_version(self) -> str:
        return self.backend.model_version

    def embed(self, image: np.ndarray, region: FaceRegion) -> np.ndarray:
        """
        Compute a unit-norm embedding for one region.

        Raises:
            InferenceError: On backend failure, timeout, wrong shape,
                non-finite values or zero norm
        """
        raw = self._caller.call("embedding", self.backend.embed, image, region)
        if raw is None:
            raise InferenceError("Backend returned no embedding")

        vector = np.asarray(raw, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dimension:
            raise InferenceError(
                f"Embedding has {vector.shape[0]} dims, expected {self.dimension}"
            )
        if not np.all(np.isfinite(vector)):
            raise InferenceError("Embedding contains non-finite values")

        norm = float(np.linalg.norm(vector))
        if norm == 0.0:
            raise InferenceError("Embedding has zero norm")
        return vector / norm

    def close(self) -> None:
        self._caller.shutdown()
