import math

def is_valid_latitude(value) -> bool:
    """A finite number within [-90, 90]."""
    return _is_finite_number(value) and -90.0 <= float(value) <= 90.0

def is_valid_longitude(value) -> bool:
    """A finite number within [-180, 180]."""
    return _is_finite_number(value) and -180.0 <= float(value) <= 180.0

def is_valid_coordinate(latitude, longitude) -> bool:
    return is_valid_latitude(latitude) and is_valid_longitude(longitude)

def _is_finite_number(value) -> bool:
    # bool is an int subclass but never a coordinate
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)
