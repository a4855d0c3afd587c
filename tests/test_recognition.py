"""Tests for recognition module components."""

import pytest

from odocam.errors import InvalidMileage
from odocam.inference import BoundingBox, TextObservation
from odocam.recognition import (
    CandidateAggregator,
    CandidateBuilder,
    CandidateScorer,
    ClusterCorrector,
    ConfidenceLevel,
    MileageCandidate,
    MileageValidator,
    NumericSequenceExtractor,
    ObservationMetadata,
    TripMeterFilter,
    WeightPolicy,
    classify_confidence,
    detect_unit,
    digit_count_score,
    prior_score,
    range_score,
)
from odocam.units import DistanceUnit


def make_candidate(value, confidence=0.8, text=None, unit=None, area=None):
    metadata = None
    if area is not None:
        box = BoundingBox(x=0.0, y=0.0, width=area, height=1.0)
        metadata = ObservationMetadata(bounding_box=box, area=area)
    return MileageCandidate(
        value=value,
        confidence=confidence,
        source_text=text if text is not None else str(value),
        detected_unit=unit,
        metadata=metadata,
    )


# ---------------------------------------------------------------------------
# ClusterCorrector Tests
# ---------------------------------------------------------------------------


class TestClusterCorrector:
    """Tests for ClusterCorrector."""

    @pytest.fixture
    def corrector(self):
        return ClusterCorrector()

    def test_word_without_digits_untouched(self, corrector):
        """Ambiguous glyphs alone are never corrected."""
        assert corrector.correct("ODO") == "ODO"

    def test_leading_glyph_corrected(self, corrector):
        assert corrector.correct("I2345") == "12345"

    def test_only_numeric_cluster_corrected(self, corrector):
        assert corrector.correct("ODO I2345") == "ODO 12345"

    def test_mixed_glyphs_in_cluster(self, corrector):
        assert corrector.correct("lO5") == "105"

    def test_word_broken_by_other_letters(self, corrector):
        assert corrector.correct("Oil") == "Oil"

    def test_empty(self, corrector):
        assert corrector.correct("") == ""

    def test_custom_table(self):
        corrector = ClusterCorrector({"S": "5"})
        assert corrector.correct("S00") == "500"
        assert corrector.correct("SOS") == "SOS"


# ---------------------------------------------------------------------------
# NumericSequenceExtractor Tests
# ---------------------------------------------------------------------------


class TestNumericSequenceExtractor:
    """Tests for NumericSequenceExtractor."""

    @pytest.fixture
    def extractor(self):
        return NumericSequenceExtractor()

    def test_thousands_separator_and_unit(self, extractor):
        assert extractor.extract("32,847 mi") == [32847]

    def test_leading_glyph_parsed_as_zero(self, extractor):
        assert extractor.extract("O32847") == [32847]

    def test_label_before_number(self, extractor):
        assert extractor.extract("ODO 123456") == [123456]

    def test_short_number_from_whole_string(self, extractor):
        """Fewer than three digits only appear via the whole-string parse."""
        assert extractor.extract("52mi") == [52]

    def test_whole_string_added_when_distinct(self):
        extractor = NumericSequenceExtractor(max_digits=8)
        assert extractor.extract("123 km 45678") == [123, 45678, 12345678]

    def test_whole_string_too_long_skipped(self, extractor):
        assert extractor.extract("123 km 45678") == [123, 45678]

    def test_overlong_run_skipped(self, extractor):
        assert extractor.extract("12345678") == []

    def test_very_long_noise_line(self, extractor):
        assert extractor.extract("8" * 5000) == []
        assert extractor.extract("8" * 5000 + "x45231") == [45231]

    def test_leading_zeros_not_counted(self, extractor):
        assert extractor.extract("0000032847") == [32847]

    def test_whitespace_joins_digit_groups(self, extractor):
        assert extractor.extract("12 34") == [1234]

    def test_decimal_point_removed(self, extractor):
        assert extractor.extract("TRIP 12.3") == [123]

    def test_no_digits(self, extractor):
        assert extractor.extract("ODO") == []
        assert extractor.extract("") == []

    def test_duplicate_runs_kept(self, extractor):
        assert extractor.extract("123x123")[:2] == [123, 123]


class TestDetectUnit:
    """Tests for detect_unit."""

    def test_kilometers(self):
        assert detect_unit("50,000 km") is DistanceUnit.KILOMETERS
        assert detect_unit("Kilometers") is DistanceUnit.KILOMETERS

    def test_miles(self):
        assert detect_unit("32,847 mi") is DistanceUnit.MILES
        assert detect_unit("MILES") is DistanceUnit.MILES

    def test_kilometers_checked_first(self):
        assert detect_unit("km mi") is DistanceUnit.KILOMETERS

    def test_no_unit(self):
        assert detect_unit("ODO 12345") is None


# ---------------------------------------------------------------------------
# CandidateBuilder Tests
# ---------------------------------------------------------------------------


class TestCandidateBuilder:
    """Tests for CandidateBuilder."""

    @pytest.fixture
    def builder(self):
        return CandidateBuilder()

    def test_builds_candidate_with_metadata(self, builder):
        box = BoundingBox(x=0.1, y=0.4, width=0.5, height=0.2)
        observations = [TextObservation("45,231 mi", 0.82, box)]

        candidates = builder.build(observations)

        assert len(candidates) == 1
        c = candidates[0]
        assert c.value == 45231
        assert c.confidence == 0.82
        assert c.source_text == "45,231 mi"
        assert c.detected_unit is DistanceUnit.MILES
        assert c.metadata is not None
        assert c.metadata.area == pytest.approx(0.1)

    def test_unit_detected_across_observations(self, builder):
        """A unit on its own line applies to every number in the variant."""
        observations = [
            TextObservation("88412", 0.9),
            TextObservation("km", 0.95),
        ]

        candidates = builder.build(observations)

        assert [c.value for c in candidates] == [88412]
        assert candidates[0].detected_unit is DistanceUnit.KILOMETERS
        assert candidates[0].metadata is None

    def test_out_of_range_dropped(self, builder):
        candidates = builder.build([TextObservation("1000001", 0.9)])
        assert candidates == []

    def test_upper_bound_kept(self, builder):
        candidates = builder.build([TextObservation("1000000", 0.9)])
        assert [c.value for c in candidates] == [1_000_000]

    def test_multiple_candidates_per_observation(self, builder):
        candidates = builder.build([TextObservation("123 km 45678", 0.6)])
        assert [c.value for c in candidates] == [123, 45678]

    def test_empty_text_skipped(self, builder):
        assert builder.build([TextObservation("", 0.9)]) == []

    def test_run_unit_applied(self, builder):
        """A unit read on another variant is attached to these candidates."""
        candidates = builder.build([TextObservation("45231", 0.9)], unit=DistanceUnit.MILES)
        assert candidates[0].detected_unit is DistanceUnit.MILES

    def test_no_unit_anywhere(self, builder):
        candidates = builder.build([TextObservation("45231", 0.9)])
        assert candidates[0].detected_unit is None

    def test_digit_cap_follows_max_mileage(self):
        builder = CandidateBuilder(max_mileage=20_000_000)
        candidates = builder.build([TextObservation("12345678", 0.9)])
        assert [c.value for c in candidates] == [12345678]

    def test_overlong_text_yields_nothing(self, builder):
        assert builder.build([TextObservation("9" * 5000, 0.9)]) == []


# ---------------------------------------------------------------------------
# CandidateAggregator Tests
# ---------------------------------------------------------------------------


class TestCandidateAggregator:
    """Tests for CandidateAggregator."""

    @pytest.fixture
    def aggregator(self):
        return CandidateAggregator()

    def test_repeated_value_boosted(self, aggregator):
        candidates = [make_candidate(32847, 0.6), make_candidate(32847, 0.7)]

        result = aggregator.aggregate(candidates)

        assert len(result) == 1
        assert result[0].value == 32847
        assert result[0].confidence == pytest.approx(0.85)

    def test_boost_capped(self, aggregator):
        result = aggregator.aggregate([make_candidate(50000, 0.9)] * 3)
        assert result[0].confidence == 1.0

    def test_single_detection_unchanged(self, aggregator):
        result = aggregator.aggregate([make_candidate(50000, 0.42)])
        assert result[0].confidence == 0.42

    def test_keeps_best_entry_details(self, aggregator):
        low = make_candidate(45231, 0.5, text="45231")
        high = make_candidate(45231, 0.8, text="45,231 mi", unit=DistanceUnit.MILES, area=0.2)

        result = aggregator.aggregate([low, high])

        assert result[0].source_text == "45,231 mi"
        assert result[0].detected_unit is DistanceUnit.MILES
        assert result[0].metadata is not None

    def test_first_seen_wins_ties(self, aggregator):
        first = make_candidate(45231, 0.7, text="first")
        second = make_candidate(45231, 0.7, text="second")

        result = aggregator.aggregate([first, second])

        assert result[0].source_text == "first"

    def test_order_of_first_appearance(self, aggregator):
        candidates = [
            make_candidate(300, 0.5),
            make_candidate(45000, 0.5),
            make_candidate(300, 0.5),
            make_candidate(12000, 0.5),
        ]

        result = aggregator.aggregate(candidates)

        assert [c.value for c in result] == [300, 45000, 12000]

    def test_input_not_mutated(self, aggregator):
        original = make_candidate(32847, 0.6)
        aggregator.aggregate([original, make_candidate(32847, 0.6)])
        assert original.confidence == 0.6

    def test_custom_boost(self):
        aggregator = CandidateAggregator(boost=0.05)
        result = aggregator.aggregate([make_candidate(1234, 0.5)] * 3)
        assert result[0].confidence == pytest.approx(0.6)


# ---------------------------------------------------------------------------
# TripMeterFilter Tests
# ---------------------------------------------------------------------------


class TestTripMeterFilter:
    """Tests for TripMeterFilter."""

    @pytest.fixture
    def trip_filter(self):
        return TripMeterFilter()

    def values(self, candidates):
        return [c.value for c in candidates]

    def test_discards_small_value_on_gap(self, trip_filter):
        result = trip_filter.discard([make_candidate(1200), make_candidate(45000)])
        assert self.values(result) == [45000]

    def test_close_values_kept(self, trip_filter):
        candidates = [make_candidate(30000), make_candidate(45000)]
        assert self.values(trip_filter.discard(candidates)) == [30000, 45000]

    def test_single_candidate_untouched(self, trip_filter):
        assert self.values(trip_filter.discard([make_candidate(12)])) == [12]

    def test_empty(self, trip_filter):
        assert trip_filter.discard([]) == []

    def test_zero_treated_as_trip_reading(self, trip_filter):
        result = trip_filter.discard([make_candidate(0), make_candidate(45000)])
        assert self.values(result) == [45000]

    def test_cutoff_applies_to_all_survivors(self, trip_filter):
        """Once engaged, everything below half the maximum goes."""
        candidates = [make_candidate(900), make_candidate(30000), make_candidate(45000)]
        assert self.values(trip_filter.discard(candidates)) == [30000, 45000]

        candidates = [make_candidate(900), make_candidate(9000), make_candidate(45000)]
        assert self.values(trip_filter.discard(candidates)) == [45000]

    def test_gap_just_below_ratio(self, trip_filter):
        candidates = [make_candidate(4501), make_candidate(45000)]
        assert self.values(trip_filter.discard(candidates)) == [4501, 45000]


# ---------------------------------------------------------------------------
# Scoring Tests
# ---------------------------------------------------------------------------


class TestSubScores:
    """Tests for the individual scoring factors."""

    @pytest.mark.parametrize(
        "value,expected",
        [(123456, 1.0), (12345, 0.9), (1234567, 0.8), (1234, 0.5), (123, 0.2), (12, 0.1), (0, 0.1)],
    )
    def test_digit_count(self, value, expected):
        assert digit_count_score(value) == expected

    @pytest.mark.parametrize(
        "value,expected",
        [
            (10_000, 1.0),
            (300_000, 1.0),
            (1_000, 0.7),
            (9_999, 0.7),
            (300_001, 0.6),
            (500_000, 0.6),
            (500_001, 0.4),
            (999_999, 0.4),
            (100, 0.3),
            (999, 0.3),
            (99, 0.1),
            (1_000_000, 0.1),
        ],
    )
    def test_range(self, value, expected):
        assert range_score(value) == expected

    @pytest.mark.parametrize(
        "value,expected",
        [
            (31_000, 0.05),
            (32_000, 1.0),
            (37_000, 1.0),
            (37_001, 0.8),
            (52_000, 0.8),
            (82_000, 0.5),
            (82_001, 0.2),
        ],
    )
    def test_prior(self, value, expected):
        assert prior_score(value, 32_000) == expected


class TestWeightPolicy:
    """Tests for WeightPolicy selection."""

    def test_selection(self):
        assert WeightPolicy.select(True, True) is WeightPolicy.PRIOR_AND_AREA
        assert WeightPolicy.select(True, False) is WeightPolicy.PRIOR_ONLY
        assert WeightPolicy.select(False, True) is WeightPolicy.AREA_ONLY
        assert WeightPolicy.select(False, False) is WeightPolicy.BASELINE

    @pytest.mark.parametrize("policy", list(WeightPolicy))
    def test_weights_sum_to_one(self, policy):
        w = policy.weights
        total = w.digit_count + w.range + w.confidence + w.prior + w.area
        assert total == pytest.approx(1.0)

    def test_unused_signals_weighted_zero(self):
        assert WeightPolicy.BASELINE.weights.prior == 0.0
        assert WeightPolicy.BASELINE.weights.area == 0.0
        assert WeightPolicy.PRIOR_ONLY.weights.area == 0.0
        assert WeightPolicy.AREA_ONLY.weights.prior == 0.0


class TestCandidateScorer:
    """Tests for CandidateScorer."""

    @pytest.fixture
    def scorer(self):
        return CandidateScorer()

    def test_empty_returns_none(self, scorer):
        assert scorer.select([]) is None

    def test_baseline_score(self, scorer):
        scored = scorer.score([make_candidate(150000, 0.8)])
        assert scored[0].policy is WeightPolicy.BASELINE
        assert scored[0].score == pytest.approx(0.4 + 0.25 + 0.35 * 0.8)

    def test_prior_outweighs_raw_confidence(self, scorer):
        candidates = [make_candidate(32847, 0.9), make_candidate(847, 0.95)]

        best = scorer.select(candidates, prior_mileage=32000)

        assert best.value == 32847

    def test_six_digits_beat_two_digits(self, scorer):
        candidates = [make_candidate(52, 0.95), make_candidate(235977, 0.70)]
        assert scorer.select(candidates).value == 235977

    def test_backward_reading_penalized(self, scorer):
        candidates = [make_candidate(41000, 0.9), make_candidate(45500, 0.8)]
        assert scorer.select(candidates, prior_mileage=45000).value == 45500

    def test_larger_text_preferred(self, scorer):
        candidates = [
            make_candidate(45500, 0.6, area=0.05),
            make_candidate(45000, 0.6, area=0.2),
        ]

        scored = scorer.score(candidates)

        assert scored[0].candidate.value == 45000
        assert scored[0].policy is WeightPolicy.AREA_ONLY
        assert scored[0].area_score == pytest.approx(1.0)
        assert scored[1].area_score == pytest.approx(0.25)

    def test_candidate_without_box_uses_non_area_policy(self, scorer):
        candidates = [make_candidate(45000, 0.6, area=0.2), make_candidate(46000, 0.6)]

        scored = {s.candidate.value: s for s in scorer.score(candidates, prior_mileage=44000)}

        assert scored[45000].policy is WeightPolicy.PRIOR_AND_AREA
        assert scored[46000].policy is WeightPolicy.PRIOR_ONLY
        assert scored[46000].area_score is None

    def test_run_wide_max_area(self, scorer):
        """Area is relative to the largest text in the run, not just survivors."""
        candidates = [make_candidate(45000, 0.6, area=0.1)]

        scored = scorer.score(candidates, max_area=0.4)

        assert scored[0].policy is WeightPolicy.AREA_ONLY
        assert scored[0].area_score == pytest.approx(0.25)

    def test_max_area_defaults_to_candidates(self, scorer):
        scored = scorer.score([make_candidate(45000, 0.6, area=0.1)])
        assert scored[0].area_score == pytest.approx(1.0)

    def test_area_can_be_disabled(self, scorer):
        scored = scorer.score([make_candidate(45000, 0.6, area=0.2)], has_area_data=False)
        assert scored[0].policy is WeightPolicy.BASELINE

    def test_ties_keep_input_order(self, scorer):
        a = make_candidate(45000, 0.8)
        b = make_candidate(46000, 0.8)

        assert scorer.select([a, b]).value == 45000
        assert scorer.select([b, a]).value == 46000

    def test_sorted_descending(self, scorer):
        candidates = [make_candidate(12, 0.9), make_candidate(123456, 0.9), make_candidate(1234, 0.9)]
        scores = [s.score for s in scorer.score(candidates)]
        assert scores == sorted(scores, reverse=True)


# ---------------------------------------------------------------------------
# MileageValidator Tests
# ---------------------------------------------------------------------------


class TestMileageValidator:
    """Tests for MileageValidator."""

    @pytest.fixture
    def validator(self):
        return MileageValidator()

    @pytest.mark.parametrize("value", [0, 100, 50000, 999999, 1_000_000])
    def test_valid(self, validator, value):
        validator.validate(value)

    def test_negative(self, validator):
        with pytest.raises(InvalidMileage) as exc_info:
            validator.validate(-1)
        assert exc_info.value.reason == "Mileage cannot be negative"

    def test_too_large(self, validator):
        with pytest.raises(InvalidMileage) as exc_info:
            validator.validate(1_000_001)
        assert exc_info.value.reason == "Mileage exceeds maximum reasonable value"
        assert str(exc_info.value) == "Invalid mileage: Mileage exceeds maximum reasonable value"


# ---------------------------------------------------------------------------
# Confidence classification Tests
# ---------------------------------------------------------------------------


class TestClassifyConfidence:
    def test_levels(self):
        assert classify_confidence(0.95) is ConfidenceLevel.HIGH
        assert classify_confidence(0.80) is ConfidenceLevel.HIGH
        assert classify_confidence(0.79) is ConfidenceLevel.MEDIUM
        assert classify_confidence(0.50) is ConfidenceLevel.MEDIUM
        assert classify_confidence(0.49) is ConfidenceLevel.LOW

    def test_custom_thresholds(self):
        assert classify_confidence(0.7, high_threshold=0.6) is ConfidenceLevel.HIGH
