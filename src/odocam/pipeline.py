"""Odometer photo -> single best-guess mileage.

Stages:
    1. Decode the photo (optionally crop to a region of interest)
    2. Plan image variants (identity + enhanced renderings)
    3. Recognize every variant concurrently; a failing variant is skipped
    4. Build candidates per variant, aggregate across variants
    5. Drop trip-meter readings, score, select, validate

Usage:
    from odocam.inference import EasyOCRRecognizer
    from odocam.pipeline import OdometerPipeline

    pipeline = OdometerPipeline(EasyOCRRecognizer())
    reading = pipeline.recognize("cluster.jpg", prior_mileage=32000)
    print(reading.mileage, reading.confidence, reading.detected_unit)
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

import cv2
import numpy as np

from odocam.errors import (
    ImageProcessingFailed,
    InvalidMileage,
    NoTextFound,
    NoValidMileageFound,
    OCRError,
    RecognitionCancelled,
)
from odocam.inference import BoundingBox, Orientation, TextObservation, TextRecognizer
from odocam.preprocessing import ImageVariant, PreprocessingPlanner, crop_region
from odocam.recognition import (
    CandidateAggregator,
    CandidateBuilder,
    CandidateScorer,
    ConfidenceLevel,
    MileageValidator,
    TripMeterFilter,
    classify_confidence,
    detect_observed_unit,
    max_candidate_area,
)
from odocam.units import DistanceUnit

__all__ = [
    "ImageProcessingFailed",
    "InvalidMileage",
    "MileageReading",
    "NoTextFound",
    "NoValidMileageFound",
    "OCRError",
    "OdometerPipeline",
    "RecognitionCancelled",
    "load_image",
]

log = logging.getLogger(__name__)

ImageSource = Union[np.ndarray, bytes, bytearray, str, Path]

# Seconds between cancel-event checks while variants are recognized
CANCEL_POLL_INTERVAL = 0.05


# ---------------------------------------------------------------------------
# Input decoding
# ---------------------------------------------------------------------------


def load_image(source: ImageSource) -> np.ndarray:
    """Decode a photo into a 3-channel uint8 BGR array.

    Accepts a decoded array, encoded image bytes, or a file path.

    Raises:
        ImageProcessingFailed: The input is not a usable image.
    """
    if isinstance(source, np.ndarray):
        image = source
    elif isinstance(source, (bytes, bytearray)):
        buffer = np.frombuffer(bytes(source), dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
    elif isinstance(source, (str, Path)):
        image = cv2.imread(str(source), cv2.IMREAD_COLOR)
    else:
        raise ImageProcessingFailed()

    if image is None or image.size == 0 or image.dtype != np.uint8:
        raise ImageProcessingFailed()

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    if image.ndim != 3 or image.shape[2] != 3:
        raise ImageProcessingFailed()
    return image


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MileageReading:
    """Final pipeline output, handed to the caller for confirmation."""

    mileage: int
    confidence: float  # 0.0-1.0
    raw_text: str  # OCR text the mileage was read from
    detected_unit: Optional[DistanceUnit] = None

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return classify_confidence(self.confidence)

    @property
    def needs_review(self) -> bool:
        return self.confidence_level is not ConfidenceLevel.HIGH

    def to_miles(self) -> int:
        """Mileage in miles (readings without a unit are taken as miles)."""
        if self.detected_unit is None:
            return self.mileage
        return self.detected_unit.to_miles(self.mileage)

    def to_dict(self) -> dict:
        return {
            "mileage": self.mileage,
            "confidence": round(self.confidence, 4),
            "confidence_level": self.confidence_level.value,
            "raw_text": self.raw_text,
            "detected_unit": self.detected_unit.value if self.detected_unit else None,
        }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class OdometerPipeline:
    """
    Read a single mileage value from an instrument cluster photo.

    Each call is an independent unit of work; the pipeline holds only its
    collaborators and can be shared between threads.
    """

    def __init__(
        self,
        recognizer: TextRecognizer,
        planner: Optional[PreprocessingPlanner] = None,
        builder: Optional[CandidateBuilder] = None,
        aggregator: Optional[CandidateAggregator] = None,
        trip_filter: Optional[TripMeterFilter] = None,
        scorer: Optional[CandidateScorer] = None,
        validator: Optional[MileageValidator] = None,
        max_workers: Optional[int] = None,
    ):
        """
        Args:
            recognizer: OCR engine adapter
            planner: Image variant planner (identity + contrast by default)
            builder: Candidate builder
            aggregator: Cross-variant aggregator
            trip_filter: Trip-meter discard filter
            scorer: Candidate scorer/selector
            validator: Final bounds validator
            max_workers: Recognition threads (defaults to one per variant)
        """
        self.recognizer = recognizer
        self.planner = planner or PreprocessingPlanner()
        self.builder = builder or CandidateBuilder()
        self.aggregator = aggregator or CandidateAggregator()
        self.trip_filter = trip_filter or TripMeterFilter()
        self.scorer = scorer or CandidateScorer()
        self.validator = validator or MileageValidator()
        self.max_workers = max_workers

    def recognize(
        self,
        image: ImageSource,
        prior_mileage: Optional[int] = None,
        orientation: Orientation = Orientation.UP,
        region: Optional[BoundingBox] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> MileageReading:
        """
        Recognize the odometer mileage in a photo.

        Args:
            image: Photo as BGR array, encoded bytes, or file path
            prior_mileage: Last known mileage, biases scoring toward forward progress
            orientation: Orientation hint passed to the recognizer
            region: Normalized region to crop to before recognition
            cancel_event: Set by the caller to abandon the run

        Returns:
            MileageReading for the best candidate

        Raises:
            ImageProcessingFailed: The photo could not be decoded
            NoTextFound: No variant produced any text observation
            NoValidMileageFound: Text was found but no plausible mileage
            InvalidMileage: The selected value failed the bounds check
            RecognitionCancelled: cancel_event was set during the run
        """
        decoded = load_image(image)
        if region is not None:
            decoded = crop_region(decoded, region)

        variants = self.planner.plan(decoded)
        per_variant = self._observe_all(variants, orientation, cancel_event)

        if not any(per_variant):
            raise NoTextFound()

        # One unit for the whole run, whichever variant read the label
        unit = detect_observed_unit([o for observations in per_variant for o in observations])

        raw_candidates = []
        for observations in per_variant:
            raw_candidates.extend(self.builder.build(observations, unit=unit))

        aggregated = self.aggregator.aggregate(raw_candidates)
        survivors = self.trip_filter.discard(aggregated)

        best = self.scorer.select(
            survivors,
            prior_mileage=prior_mileage,
            max_area=max_candidate_area(raw_candidates),
        )
        if best is None:
            raise NoValidMileageFound()

        self.validator.validate(best.value)

        reading = MileageReading(
            mileage=best.value,
            confidence=best.confidence,
            raw_text=best.source_text,
            detected_unit=best.detected_unit,
        )
        log.info(
            "Selected mileage %d (confidence %.2f, unit %s)",
            reading.mileage,
            reading.confidence,
            reading.detected_unit.value if reading.detected_unit else "unknown",
        )
        return reading

    def _observe_all(
        self,
        variants: Sequence[ImageVariant],
        orientation: Orientation,
        cancel_event: Optional[threading.Event],
    ) -> List[List[TextObservation]]:
        """Recognize all variants concurrently, results in variant order."""
        if cancel_event is not None and cancel_event.is_set():
            raise RecognitionCancelled()

        results: List[List[TextObservation]] = [[] for _ in variants]
        timeout = CANCEL_POLL_INTERVAL if cancel_event is not None else None
        cancelled = False

        executor = ThreadPoolExecutor(max_workers=self.max_workers or max(1, len(variants)))
        try:
            futures = {
                executor.submit(self.builder.observe, self.recognizer, variant, orientation): i
                for i, variant in enumerate(variants)
            }
            pending = set(futures)

            while pending:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    for future in pending:
                        future.cancel()
                    log.debug("Recognition cancelled with %d variants pending", len(pending))
                    raise RecognitionCancelled()

                done, pending = wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)
                for future in done:
                    results[futures[future]] = future.result()
        finally:
            executor.shutdown(wait=not cancelled, cancel_futures=True)

        return results
