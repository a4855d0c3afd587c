"""
Mileage recognition components for odocam.

Text cleanup:
- ClusterCorrector: Fix letter/digit confusions only inside numeric runs
- NumericSequenceExtractor: Pull candidate integers out of OCR text

Candidate handling:
- CandidateBuilder: Recognizer observations -> MileageCandidates
- CandidateAggregator: Merge repeated values across variants, boost confidence
- TripMeterFilter: Drop trip-meter/partial readings on an order-of-magnitude gap

Selection:
- CandidateScorer: Multi-factor scoring with four fixed weight policies
- MileageValidator: Final bounds check
- ConfidenceLevel: Classification of the final confidence
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import re

from odocam.errors import InvalidMileage
from odocam.inference import BoundingBox, Orientation, TextObservation, TextRecognizer
from odocam.preprocessing import ImageVariant
from odocam.units import DistanceUnit

log = logging.getLogger(__name__)

MIN_MILEAGE = 0
MAX_MILEAGE = 1_000_000

MIN_RUN_LENGTH = 3
# Longer digit strings can never be in range
MAX_DIGITS = len(str(MAX_MILEAGE))
REPEAT_BOOST = 0.15
TRIP_METER_RATIO = 10.0
TRIP_METER_CUTOFF = 0.5

HIGH_CONFIDENCE_THRESHOLD = 0.80
MEDIUM_CONFIDENCE_THRESHOLD = 0.50

DIGITS = frozenset("0123456789")


# ---------------------------------------------------------------------------
# Cluster-aware correction
# ---------------------------------------------------------------------------


# Common OCR letter-to-digit confusions
LETTER_TO_DIGIT = {
    "O": "0",
    "o": "0",
    "I": "1",
    "l": "1",
}


class ClusterCorrector:
    """
    Fix letter-to-digit confusions without corrupting words.

    Characters are grouped into clusters of digits and ambiguous glyphs.
    A cluster is corrected only when it holds at least one real digit, so
    "ODO" stays "ODO" while "I2345" becomes "12345".
    """

    def __init__(self, table: Optional[Dict[str, str]] = None):
        """
        Args:
            table: Ambiguous glyph -> digit map (defaults to LETTER_TO_DIGIT)
        """
        self.table = dict(LETTER_TO_DIGIT if table is None else table)

    def correct(self, text: str) -> str:
        out: List[str] = []
        cluster: List[str] = []

        for c in text:
            if c in DIGITS or c in self.table:
                cluster.append(c)
                continue
            out.append(self._flush(cluster))
            cluster = []
            out.append(c)

        out.append(self._flush(cluster))
        return "".join(out)

    def _flush(self, cluster: List[str]) -> str:
        if not any(c in DIGITS for c in cluster):
            # Ambiguity alone is not evidence of a number
            return "".join(cluster)
        return "".join(self.table.get(c, c) for c in cluster)


# ---------------------------------------------------------------------------
# Numeric extraction
# ---------------------------------------------------------------------------


_SEPARATORS = re.compile(r"[,.\s]")


class NumericSequenceExtractor:
    """Extract candidate integers from a line of OCR text.

    Thousands separators, decimal points and whitespace are removed, the
    cluster corrector runs, then every run of ``min_run_length`` or more
    digits becomes a candidate. The whole string's digits are parsed as one
    extra candidate when that value is not already present. Digit strings
    with more than ``max_digits`` significant digits are skipped.
    """

    def __init__(
        self,
        corrector: Optional[ClusterCorrector] = None,
        min_run_length: int = MIN_RUN_LENGTH,
        max_digits: int = MAX_DIGITS,
    ):
        self.corrector = corrector or ClusterCorrector()
        self.min_run_length = min_run_length
        self.max_digits = max_digits
        self._run_pattern = re.compile(f"[0-9]{{{min_run_length},}}")

    def clean(self, text: str) -> str:
        """Strip separators and apply cluster correction."""
        return self.corrector.correct(_SEPARATORS.sub("", text))

    def _parse(self, digits: str) -> Optional[int]:
        significant = digits.lstrip("0") or "0"
        if len(significant) > self.max_digits:
            return None
        return int(significant)

    def extract(self, text: str) -> List[int]:
        cleaned = self.clean(text)

        numbers = []
        for run in self._run_pattern.findall(cleaned):
            number = self._parse(run)
            if number is not None:
                numbers.append(number)

        digits = "".join(c for c in cleaned if c in DIGITS)
        if digits:
            full_number = self._parse(digits)
            if full_number is not None and full_number not in numbers:
                numbers.append(full_number)

        return numbers


def detect_unit(text: str) -> Optional[DistanceUnit]:
    """Detect a distance unit token in OCR text.

    Kilometre tokens are checked before mile tokens, so text holding both
    reports kilometres.
    """
    lowered = text.lower()

    if "km" in lowered or "kilometer" in lowered or "kilometre" in lowered:
        return DistanceUnit.KILOMETERS

    if "mi" in lowered or "mile" in lowered:
        return DistanceUnit.MILES

    return None


def detect_observed_unit(observations: Sequence[TextObservation]) -> Optional[DistanceUnit]:
    """Detect the unit over the joined text of a set of observations."""
    return detect_unit(" ".join(o.text for o in observations if o.text))


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ObservationMetadata:
    """Spatial data of the observation a candidate came from."""

    bounding_box: BoundingBox
    area: float


@dataclass(frozen=True)
class MileageCandidate:
    """Single mileage hypothesis extracted from OCR text."""

    value: int
    confidence: float  # Raw OCR confidence (boosted after aggregation)
    source_text: str
    detected_unit: Optional[DistanceUnit] = None
    metadata: Optional[ObservationMetadata] = None


class CandidateBuilder:
    """
    Turn recognizer output into mileage candidates.

    ``observe`` runs the recognizer on one variant and isolates its
    failures. ``build`` extracts candidates from one variant's
    observations and attaches a single unit to every candidate it yields.
    """

    def __init__(
        self,
        extractor: Optional[NumericSequenceExtractor] = None,
        min_mileage: int = MIN_MILEAGE,
        max_mileage: int = MAX_MILEAGE,
    ):
        self.extractor = extractor or NumericSequenceExtractor(
            max_digits=len(str(abs(max_mileage)))
        )
        self.min_mileage = min_mileage
        self.max_mileage = max_mileage

    def observe(
        self,
        recognizer: TextRecognizer,
        variant: ImageVariant,
        orientation: Orientation = Orientation.UP,
    ) -> List[TextObservation]:
        """Recognize one variant. A recognizer error yields no observations."""
        try:
            observations = list(recognizer.recognize(variant.image, orientation))
        except Exception:
            log.warning(
                "Recognition failed on %s variant; skipping",
                variant.method.value,
                exc_info=True,
            )
            return []

        log.debug("%s variant: %d observations", variant.method.value, len(observations))
        return observations

    def build(
        self,
        observations: Sequence[TextObservation],
        unit: Optional[DistanceUnit] = None,
    ) -> List[MileageCandidate]:
        """
        Args:
            observations: One variant's recognizer output
            unit: Unit detected over the whole run (detected from these
                observations when None)
        """
        if unit is None:
            unit = detect_observed_unit(observations)

        candidates = []
        for observation in observations:
            if not observation.text:
                continue

            metadata = None
            if observation.bounding_box is not None:
                metadata = ObservationMetadata(
                    bounding_box=observation.bounding_box,
                    area=observation.bounding_box.area,
                )

            for number in self.extractor.extract(observation.text):
                if not self.min_mileage <= number <= self.max_mileage:
                    continue
                candidates.append(
                    MileageCandidate(
                        value=number,
                        confidence=observation.confidence,
                        source_text=observation.text,
                        detected_unit=unit,
                        metadata=metadata,
                    )
                )

        log.debug("Built candidates: %s", [(c.value, c.confidence) for c in candidates])
        return candidates


# ---------------------------------------------------------------------------
# Cross-variant aggregation
# ---------------------------------------------------------------------------


class CandidateAggregator:
    """
    Merge candidates that share a value, boosting repeated detections.

    For each value the highest-confidence candidate is kept (first seen on
    ties) and its confidence is replaced with
    ``min(1.0, confidence + boost * (count - 1))``. Output is in order of
    first appearance.
    """

    def __init__(self, boost: float = REPEAT_BOOST):
        """
        Args:
            boost: Confidence added per additional detection of a value
        """
        self.boost = boost

    def aggregate(self, candidates: Sequence[MileageCandidate]) -> List[MileageCandidate]:
        best: Dict[int, MileageCandidate] = {}
        counts: Dict[int, int] = {}

        for candidate in candidates:
            counts[candidate.value] = counts.get(candidate.value, 0) + 1
            current = best.get(candidate.value)
            if current is None or candidate.confidence > current.confidence:
                best[candidate.value] = candidate

        aggregated = []
        for value, candidate in best.items():
            boosted = min(1.0, candidate.confidence + self.boost * (counts[value] - 1))
            aggregated.append(replace(candidate, confidence=boosted))

        log.debug(
            "Aggregated %d candidates into %s",
            len(candidates),
            [(c.value, round(c.confidence, 3), counts[c.value]) for c in aggregated],
        )
        return aggregated


# ---------------------------------------------------------------------------
# Trip-meter discard
# ---------------------------------------------------------------------------


class TripMeterFilter:
    """
    Drop trip-meter and partial readings when magnitudes clearly split.

    Engages only when the largest value is at least ``ratio`` times the
    smallest. It then drops every value below ``cutoff * max``. Close
    readings (e.g. 30000 vs 45000) are never touched.
    """

    def __init__(self, ratio: float = TRIP_METER_RATIO, cutoff: float = TRIP_METER_CUTOFF):
        self.ratio = ratio
        self.cutoff = cutoff

    def discard(self, candidates: Sequence[MileageCandidate]) -> List[MileageCandidate]:
        if len(candidates) < 2:
            return list(candidates)

        values = [c.value for c in candidates]
        max_value = max(values)
        min_value = min(values)

        if max_value == 0 or max_value < self.ratio * min_value:
            return list(candidates)

        threshold = self.cutoff * max_value
        kept = [c for c in candidates if c.value >= threshold]
        dropped = [c.value for c in candidates if c.value < threshold]
        if dropped:
            log.debug("Discarded likely trip-meter values %s (max %d)", dropped, max_value)
        return kept


# ---------------------------------------------------------------------------
# Scoring and selection
# ---------------------------------------------------------------------------


# Odometers are overwhelmingly 5-7 digits
DIGIT_COUNT_SCORES = {6: 1.0, 5: 0.9, 7: 0.8, 4: 0.5, 3: 0.2}
DEFAULT_DIGIT_COUNT_SCORE = 0.1

# (low, high, score), inclusive bounds, checked in order
RANGE_SCORES: List[Tuple[int, int, float]] = [
    (10_000, 300_000, 1.0),
    (1_000, 9_999, 0.7),
    (300_001, 500_000, 0.6),
    (500_001, 999_999, 0.4),
    (100, 999, 0.3),
]
DEFAULT_RANGE_SCORE = 0.1

# Odometers do not run backwards
BACKWARD_PRIOR_SCORE = 0.05
# (max forward distance from prior, score), checked in order
PRIOR_DELTA_SCORES: List[Tuple[int, float]] = [
    (5_000, 1.0),
    (20_000, 0.8),
    (50_000, 0.5),
]
DISTANT_PRIOR_SCORE = 0.2


@dataclass(frozen=True)
class ScoreWeights:
    digit_count: float
    range: float
    confidence: float
    prior: float = 0.0
    area: float = 0.0


class WeightPolicy(Enum):
    """Weight set chosen by which optional signals a candidate has."""

    PRIOR_AND_AREA = "prior_and_area"
    PRIOR_ONLY = "prior_only"
    AREA_ONLY = "area_only"
    BASELINE = "baseline"

    @classmethod
    def select(cls, has_prior: bool, has_area: bool) -> "WeightPolicy":
        return _POLICY_BY_SIGNALS[(has_prior, has_area)]

    @property
    def weights(self) -> ScoreWeights:
        return POLICY_WEIGHTS[self]


_POLICY_BY_SIGNALS = {
    (True, True): WeightPolicy.PRIOR_AND_AREA,
    (True, False): WeightPolicy.PRIOR_ONLY,
    (False, True): WeightPolicy.AREA_ONLY,
    (False, False): WeightPolicy.BASELINE,
}

POLICY_WEIGHTS = {
    WeightPolicy.PRIOR_AND_AREA: ScoreWeights(
        digit_count=0.25, range=0.10, confidence=0.25, prior=0.25, area=0.15
    ),
    WeightPolicy.PRIOR_ONLY: ScoreWeights(
        digit_count=0.30, range=0.15, confidence=0.30, prior=0.25
    ),
    WeightPolicy.AREA_ONLY: ScoreWeights(
        digit_count=0.30, range=0.15, confidence=0.25, area=0.30
    ),
    WeightPolicy.BASELINE: ScoreWeights(digit_count=0.40, range=0.25, confidence=0.35),
}


def digit_count_score(value: int) -> float:
    return DIGIT_COUNT_SCORES.get(len(str(abs(value))), DEFAULT_DIGIT_COUNT_SCORE)


def range_score(value: int) -> float:
    for low, high, score in RANGE_SCORES:
        if low <= value <= high:
            return score
    return DEFAULT_RANGE_SCORE


def prior_score(value: int, prior_mileage: int) -> float:
    delta = value - prior_mileage
    if delta < 0:
        return BACKWARD_PRIOR_SCORE
    for max_delta, score in PRIOR_DELTA_SCORES:
        if delta <= max_delta:
            return score
    return DISTANT_PRIOR_SCORE


def max_candidate_area(candidates: Sequence[MileageCandidate]) -> float:
    """Largest bounding-box area among candidates, 0.0 if none has one."""
    return max(
        (c.metadata.area for c in candidates if c.metadata is not None),
        default=0.0,
    )


@dataclass(frozen=True)
class ScoredCandidate:
    """Candidate with its final score and per-factor breakdown."""

    candidate: MileageCandidate
    score: float
    policy: WeightPolicy
    digit_count_score: float
    range_score: float
    prior_score: Optional[float] = None
    area_score: Optional[float] = None


class CandidateScorer:
    """
    Pick the most plausible mileage among candidates.

    Factors:
    - Digit count (domain prior on odometer width)
    - Numeric range
    - OCR confidence (after aggregation boost)
    - Prior mileage, when the caller knows the last reading
    - Relative on-screen text area, when bounding boxes exist

    The weight policy is chosen per candidate. Ties keep input order.
    """

    def score(
        self,
        candidates: Sequence[MileageCandidate],
        prior_mileage: Optional[int] = None,
        has_area_data: Optional[bool] = None,
        max_area: Optional[float] = None,
    ) -> List[ScoredCandidate]:
        """
        Score candidates, best first.

        Args:
            candidates: Aggregated, filtered candidates
            prior_mileage: Last known mileage for this vehicle
            has_area_data: Whether to use area scores (inferred from the
                candidates' metadata when None)
            max_area: Largest text area seen in the whole run, including
                candidates dropped before scoring (taken from
                ``candidates`` when None)

        Returns:
            ScoredCandidates sorted by descending score (stable)
        """
        areas = [c.metadata.area for c in candidates if c.metadata is not None]
        if has_area_data is None:
            has_area_data = bool(areas)
        if not has_area_data:
            max_area = 0.0
        elif max_area is None:
            max_area = max_candidate_area(candidates)

        has_prior = prior_mileage is not None

        scored = []
        for candidate in candidates:
            candidate_area = None
            if max_area > 0 and candidate.metadata is not None:
                candidate_area = candidate.metadata.area / max_area

            policy = WeightPolicy.select(has_prior, candidate_area is not None)
            weights = policy.weights

            digits = digit_count_score(candidate.value)
            in_range = range_score(candidate.value)
            prior = prior_score(candidate.value, prior_mileage) if has_prior else None

            total = (
                weights.digit_count * digits
                + weights.range * in_range
                + weights.confidence * candidate.confidence
            )
            if prior is not None:
                total += weights.prior * prior
            if candidate_area is not None:
                total += weights.area * candidate_area

            scored.append(
                ScoredCandidate(
                    candidate=candidate,
                    score=total,
                    policy=policy,
                    digit_count_score=digits,
                    range_score=in_range,
                    prior_score=prior,
                    area_score=candidate_area,
                )
            )
            log.debug(
                "Score %d: %.3f (%s; digits=%.2f range=%.2f conf=%.2f prior=%s area=%s)",
                candidate.value,
                total,
                policy.value,
                digits,
                in_range,
                candidate.confidence,
                prior,
                None if candidate_area is None else round(candidate_area, 3),
            )

        scored.sort(key=lambda s: -s.score)
        return scored

    def select(
        self,
        candidates: Sequence[MileageCandidate],
        prior_mileage: Optional[int] = None,
        has_area_data: Optional[bool] = None,
        max_area: Optional[float] = None,
    ) -> Optional[MileageCandidate]:
        """Return the highest-scoring candidate, or None if there are none."""
        scored = self.score(candidates, prior_mileage, has_area_data, max_area)
        if not scored:
            return None
        return scored[0].candidate


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class MileageValidator:
    """Last bounds check before a reading leaves the pipeline."""

    def __init__(self, min_mileage: int = MIN_MILEAGE, max_mileage: int = MAX_MILEAGE):
        self.min_mileage = min_mileage
        self.max_mileage = max_mileage

    def validate(self, value: int) -> None:
        """Raise InvalidMileage if value is out of range."""
        if value < self.min_mileage:
            raise InvalidMileage("Mileage cannot be negative")

        if value > self.max_mileage:
            raise InvalidMileage("Mileage exceeds maximum reasonable value")


# ---------------------------------------------------------------------------
# Confidence classification
# ---------------------------------------------------------------------------


class ConfidenceLevel(Enum):
    """Confidence classification levels."""

    HIGH = "high"  # Accept as read
    MEDIUM = "medium"  # Suggest review
    LOW = "low"  # Warn before accepting


def classify_confidence(
    confidence: float,
    high_threshold: float = HIGH_CONFIDENCE_THRESHOLD,
    medium_threshold: float = MEDIUM_CONFIDENCE_THRESHOLD,
) -> ConfidenceLevel:
    if confidence >= high_threshold:
        return ConfidenceLevel.HIGH
    if confidence >= medium_threshold:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW
