"""
Geographic utility functions
"""
from math import radians, sin, cos, asin, sqrt, isfinite


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two lat/lng points in meters using Haversine formula.

    Args:
        lat1, lon1: First point coordinates
        lat2, lon2: Second point coordinates

    Returns:
        Distance in meters
    """
    R = 6371000.0  # Earth radius in meters

    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)

    a = sin(dlat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlon / 2) ** 2
    # Rounding can push a a hair above 1 for antipodal points
    c = 2 * asin(sqrt(min(1.0, a)))

    return R * c


def is_valid_coordinate(lat, lng) -> bool:
    """True when lat/lng are finite numbers inside the WGS84 ranges."""
    if isinstance(lat, bool) or isinstance(lng, bool):
        return False
    if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        return False
    if not isfinite(lat) or not isfinite(lng):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0
