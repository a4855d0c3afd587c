"""Distance units reported by odometer displays."""

import math
from enum import Enum

KM_PER_MILE = 1.60934
MILES_PER_KM = 0.621371


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class DistanceUnit(Enum):
    """Unit shown next to the odometer reading."""

    MILES = "miles"
    KILOMETERS = "kilometers"

    @property
    def abbreviation(self) -> str:
        """Short form: "mi" or "km"."""
        return "mi" if self is DistanceUnit.MILES else "km"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    def to_miles(self, value: int) -> int:
        """Convert a reading in this unit to whole miles."""
        if self is DistanceUnit.MILES:
            return value
        return _round_half_up(value * MILES_PER_KM)

    def from_miles(self, miles: int) -> int:
        """Convert whole miles to this unit."""
        if self is DistanceUnit.MILES:
            return miles
        return _round_half_up(miles * KM_PER_MILE)
