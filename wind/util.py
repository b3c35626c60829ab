import math
from dataclasses import dataclass

import numpy as np

# Web Mercator stops being usable past this latitude
MERCATOR_LAT_LIMIT = 85.0

# width in degrees of the band kept when a box is pushed past the latitude limit
POLAR_BAND = 0.1


@dataclass(frozen=True)
class Bounds:
    """Geographic bounding box in degrees (south/west/north/east)."""
    south: float
    west: float
    north: float
    east: float

    def __post_init__(self):
        values = (self.south, self.west, self.north, self.east)
        if not all(math.isfinite(x) for x in values):
            raise ValueError(f"Bounds must be finite, got {values}")
        if self.south >= self.north:
            raise ValueError(f"south ({self.south}) must be below north ({self.north})")
        if self.west >= self.east:
            raise ValueError(f"west ({self.west}) must be below east ({self.east})")

    @property
    def lat_span(self) -> float:
        return self.north - self.south

    @property
    def lng_span(self) -> float:
        return self.east - self.west

    @property
    def center(self):
        return (self.south + self.north) / 2, (self.west + self.east) / 2

    def expanded(self, fraction: float, lat_limit: float = 90.0) -> "Bounds":
        """
        Grow the box by `fraction` of its own span on every side.

        Latitude saturates at +/- lat_limit, longitude is allowed to run past
        +/-180 but never wider than a full turn. A box lying wholly beyond the
        limit collapses to a thin band along it.
        """
        dlat = self.lat_span * fraction
        dlng = self.lng_span * fraction
        south = min(lat_limit, max(-lat_limit, self.south - dlat))
        north = max(-lat_limit, min(lat_limit, self.north + dlat))
        if south >= north:
            if self.south >= 0:
                south, north = lat_limit - POLAR_BAND, lat_limit
            else:
                south, north = -lat_limit, -lat_limit + POLAR_BAND
        west = self.west - dlng
        east = self.east + dlng
        if east - west > 360.0:
            mid = (west + east) / 2
            west, east = mid - 180.0, mid + 180.0
        return Bounds(south=south, west=west, north=north, east=east)

    def as_region(self) -> str:
        """Serialize as the API's `minLat,minLng,maxLat,maxLng` query string."""
        return f"{self.south},{self.west},{self.north},{self.east}"


GLOBAL_BOUNDS = Bounds(south=-MERCATOR_LAT_LIMIT, west=-180.0,
                       north=MERCATOR_LAT_LIMIT, east=180.0)


def wrap_lng(lng):
    """
    Wrap longitude(s) into [-180, 180).

    Works on scalars and numpy arrays.
    """
    return (lng + 180.0) % 360.0 - 180.0


def lng_delta(lng1, lng2):
    """Signed shortest longitude difference lng2 - lng1, in [-180, 180)."""
    return wrap_lng(lng2 - lng1)


def to_unit_vectors(lats, lngs) -> np.ndarray:
    """Lat/lng in degrees to (N, 3) cartesian points on the unit sphere."""
    lat_r = np.radians(np.asarray(lats, dtype=float))
    lng_r = np.radians(np.asarray(lngs, dtype=float))
    return np.column_stack([
        np.cos(lat_r) * np.cos(lng_r),
        np.cos(lat_r) * np.sin(lng_r),
        np.sin(lat_r),
    ])


def wind_to_components(speed, direction_deg):
    """
    Convert wind speed and meteorological direction to (u, v).

    The direction is where the wind blows FROM, clockwise from north, so a
    270 degree (westerly) wind has positive u.

    Args:
        speed (float): Wind speed (m/s)
        direction_deg (float): Direction in degrees, meteorological convention

    Returns:
        tuple: (u, v) - eastward and northward components
    """
    rad = np.radians(direction_deg)
    u = -speed * np.sin(rad)
    v = -speed * np.cos(rad)
    return u, v


def components_to_wind(u, v):
    """
    Convert (u, v) back to speed and meteorological direction in [0, 360).

    Returns:
        tuple: (speed, direction_deg)
    """
    speed = np.hypot(u, v)
    direction = (np.degrees(np.arctan2(-u, -v)) + 360.0) % 360.0
    return speed, direction
