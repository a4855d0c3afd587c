"""Text recognition boundary for the odometer pipeline.

The pipeline never talks to an OCR engine directly. It hands each image
variant to a ``TextRecognizer`` and consumes the returned
``TextObservation`` list. Any engine can sit behind this interface; tests
use fixture-backed fakes.

Classes:
    BoundingBox        - Normalized (0-1) axis-aligned rectangle
    Orientation        - Orientation hint passed with every image
    TextObservation    - One recognized text line
    TextRecognizer     - Abstract recognizer (image + orientation -> observations)
    EasyOCRRecognizer  - EasyOCR-backed recognizer

Usage:
    from odocam.inference import EasyOCRRecognizer, Orientation

    recognizer = EasyOCRRecognizer(languages=("en",), gpu=False)
    observations = recognizer.recognize(image_bgr, Orientation.UP)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Sequence

import cv2
import numpy as np


# ---------------------------------------------------------------------------
# Observation types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned rectangle in normalized image coordinates (0-1)."""

    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    def to_pixel_rect(self, image_width: int, image_height: int) -> tuple:
        """Convert to (x1, y1, x2, y2) pixel coordinates clamped to the image."""
        x1 = int(round(max(0.0, self.x) * image_width))
        y1 = int(round(max(0.0, self.y) * image_height))
        x2 = int(round(min(1.0, self.x + self.width) * image_width))
        y2 = int(round(min(1.0, self.y + self.height) * image_height))
        return x1, y1, x2, y2

    @classmethod
    def from_points(
        cls,
        points: Sequence[Sequence[float]],
        image_width: int,
        image_height: int,
    ) -> "BoundingBox":
        """Build a normalized box enclosing pixel-space polygon points."""
        xs = [float(p[0]) for p in points]
        ys = [float(p[1]) for p in points]
        x1 = min(max(min(xs) / image_width, 0.0), 1.0)
        y1 = min(max(min(ys) / image_height, 0.0), 1.0)
        x2 = min(max(max(xs) / image_width, 0.0), 1.0)
        y2 = min(max(max(ys) / image_height, 0.0), 1.0)
        return cls(x=x1, y=y1, width=x2 - x1, height=y2 - y1)


class Orientation(Enum):
    """Direction the top of the scene points in the stored pixels."""

    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"


@dataclass(frozen=True)
class TextObservation:
    """A single recognized text line (top-ranked string only)."""

    text: str
    confidence: float  # 0.0-1.0
    bounding_box: Optional[BoundingBox] = None


# ---------------------------------------------------------------------------
# Recognizer interface
# ---------------------------------------------------------------------------


class TextRecognizer(ABC):
    """Common interface for OCR engines used by the pipeline."""

    name: str = "base"

    @abstractmethod
    def recognize(
        self,
        image: np.ndarray,
        orientation: Orientation = Orientation.UP,
    ) -> List[TextObservation]:
        """Recognize text lines in an image.

        Args:
            image: BGR numpy array (H, W, 3)
            orientation: Orientation hint for the image

        Returns:
            Observations in engine order. May raise; callers treat an
            exception as "no observations" for this image.
        """
        ...


def upright(image: np.ndarray, orientation: Orientation) -> np.ndarray:
    """Rotate an image so the scene's top faces up."""
    if orientation is Orientation.DOWN:
        return cv2.rotate(image, cv2.ROTATE_180)
    if orientation is Orientation.LEFT:
        return cv2.rotate(image, cv2.ROTATE_90_CLOCKWISE)
    if orientation is Orientation.RIGHT:
        return cv2.rotate(image, cv2.ROTATE_90_COUNTERCLOCKWISE)
    return image


# ---------------------------------------------------------------------------
# EasyOCR
# ---------------------------------------------------------------------------


class EasyOCRRecognizer(TextRecognizer):
    """Recognizer backed by ``easyocr.Reader``.

    Language correction is not applied (odometers are numbers), and no
    character allowlist is set so unit tokens such as "km" or "mi" survive
    for unit detection.

    Args:
        languages: EasyOCR language codes.
        gpu: Run the EasyOCR models on GPU.
        reader: Pre-built reader (or any object with a compatible
            ``readtext``). Created lazily on first use when omitted.
    """

    name = "easyocr"

    def __init__(
        self,
        languages: Sequence[str] = ("en",),
        gpu: bool = False,
        reader: Optional[Any] = None,
    ):
        self.languages = list(languages)
        self.gpu = gpu
        self._reader = reader

    @property
    def reader(self) -> Any:
        if self._reader is None:
            import easyocr

            self._reader = easyocr.Reader(self.languages, gpu=self.gpu, verbose=False)
        return self._reader

    def recognize(
        self,
        image: np.ndarray,
        orientation: Orientation = Orientation.UP,
    ) -> List[TextObservation]:
        rotated = upright(image, orientation)
        h, w = rotated.shape[:2]

        raw_results = self.reader.readtext(rotated, paragraph=False)

        observations = []
        for points, text, confidence in raw_results:
            bbox = None
            if points is not None and len(points) > 0 and w > 0 and h > 0:
                bbox = BoundingBox.from_points(points, w, h)
            observations.append(
                TextObservation(
                    text=str(text),
                    confidence=min(1.0, max(0.0, float(confidence))),
                    bounding_box=bbox,
                )
            )
        return observations
