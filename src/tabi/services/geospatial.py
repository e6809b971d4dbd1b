"""Geospatial helper functions."""

from __future__ import annotations

import math

from .errors import ValidationError

EARTH_RADIUS_KM = 6371.0

Coordinate = tuple[float, float]


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute distance between two coordinates using the Haversine formula."""

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def validate_coordinates(latitude: float, longitude: float) -> Coordinate:
    """Return the pair as floats or raise ``ValidationError``."""

    try:
        lat, lon = float(latitude), float(longitude)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Coordinates must be numeric, got ({latitude!r}, {longitude!r})") from exc
    if math.isnan(lat) or math.isnan(lon):
        raise ValidationError("Coordinates must not be NaN")
    if not -90.0 <= lat <= 90.0:
        raise ValidationError(f"Latitude {lat} is outside [-90, 90]")
    if not -180.0 <= lon <= 180.0:
        raise ValidationError(f"Longitude {lon} is outside [-180, 180]")
    return lat, lon


def round_coordinate(coordinate: Coordinate, precision: int) -> Coordinate:
    lat, lon = coordinate
    # +0.0 folds -0.0 into 0.0 so both round to the same cache key
    return (round(lat, precision) + 0.0, round(lon, precision) + 0.0)
