"""
Solar orientation constraints.

Polyhouse gutters should run close to north-south. How far a structure may
deviate from that axis depends on latitude: near the equator the sun is
overhead and any orientation works, past the arctic circle only a strict
north-south alignment is acceptable.
"""
import math
from dataclasses import dataclass

TROPIC_LATITUDE = 23.44
ARCTIC_LATITUDE = 66.5
BASE_ORIENTATION = 0.0

_ANGLE_TOLERANCE = 1e-9


@dataclass(frozen=True)
class OrientationWindow:
    """Allowed rotations: base +/- deviation, mirrored through 180."""
    base_degrees: float
    allowed_deviation_degrees: float

    @property
    def unrestricted(self) -> bool:
        return self.allowed_deviation_degrees >= 180.0


def allowed_deviation(latitude: float) -> float:
    """
    Maximum deviation from the north-south axis at a latitude.

    Args:
        latitude: Latitude in degrees (sign ignored)

    Returns:
        Deviation in degrees, clamped to [0, 180]
    """
    if not math.isfinite(latitude):
        raise ValueError(f"Latitude must be finite, got {latitude}")

    abs_lat = abs(latitude)

    if abs_lat == 0:
        deviation = 180.0
    elif abs_lat < TROPIC_LATITUDE:
        deviation = TROPIC_LATITUDE + (180.0 - TROPIC_LATITUDE) * (1 - abs_lat / TROPIC_LATITUDE)
    elif abs_lat <= ARCTIC_LATITUDE:
        ratio = math.tan(math.radians(TROPIC_LATITUDE)) / math.tan(math.radians(abs_lat))
        if -1.0 <= ratio <= 1.0:
            deviation = abs(math.degrees(math.asin(ratio)))
        else:
            # asin undefined outside [-1, 1]
            deviation = 0.0
        if not math.isfinite(deviation):
            deviation = 0.0
    else:
        deviation = 0.0

    return min(180.0, max(0.0, deviation))


def calculate_solar_orientation(latitude: float) -> OrientationWindow:
    """Orientation window for a latitude."""
    return OrientationWindow(
        base_degrees=BASE_ORIENTATION,
        allowed_deviation_degrees=allowed_deviation(latitude),
    )


def normalize_angle(angle: float) -> float:
    """Normalise an angle to [0, 360)."""
    normalized = angle % 360.0
    # -1e-17 % 360 yields 360.0
    return 0.0 if normalized >= 360.0 else normalized


def axis_distance(angle: float) -> float:
    """Minimal angular distance from ``angle`` to the 0/180 degree axis."""
    a = normalize_angle(angle)
    return min(a, abs(a - 180.0), 360.0 - a)


def is_orientation_valid(angle: float, latitude: float) -> bool:
    """True if ``angle`` lies within the allowed deviation at ``latitude``."""
    deviation = allowed_deviation(latitude)
    if deviation >= 180.0:
        return True
    return axis_distance(angle) <= deviation + _ANGLE_TOLERANCE


def suggested_orientations(latitude: float) -> list[float]:
    """
    Small set of candidate rotations spanning the allowed window.

    Returns base only when no deviation is allowed; adds base +/- half the
    deviation above 10 degrees and base +/- the full deviation above 20.
    """
    deviation = allowed_deviation(latitude)

    if deviation >= 180.0:
        return [0.0, 45.0, 90.0, 135.0]
    if deviation == 0:
        return [BASE_ORIENTATION]

    candidates = [BASE_ORIENTATION]
    if deviation > 10:
        candidates.append(normalize_angle(BASE_ORIENTATION + deviation / 2))
        candidates.append(normalize_angle(BASE_ORIENTATION - deviation / 2))
    if deviation > 20:
        candidates.append(normalize_angle(BASE_ORIENTATION + deviation))
        candidates.append(normalize_angle(BASE_ORIENTATION - deviation))
    return candidates
