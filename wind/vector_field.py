import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from wind.util import Bounds, components_to_wind

# Keeps the floor of the fractional grid coordinate inside the last cell
_EDGE_EPSILON = 1e-9


@dataclass(frozen=True)
class WindVector:
    """Wind vector with u (east-west) and v (north-south) components."""
    u: float  # m/s, positive eastward
    v: float  # m/s, positive northward

    @property
    def speed(self) -> float:
        return math.hypot(self.u, self.v)

    @property
    def direction(self) -> float:
        """Meteorological direction (blowing from), degrees clockwise from north."""
        return float(components_to_wind(self.u, self.v)[1])


ZERO_WIND = WindVector(0.0, 0.0)


def _as_grid(values, grid_size: int, name: str) -> np.ndarray:
    arr = np.array(values, dtype=float)
    expected = (grid_size + 1, grid_size + 1)
    if arr.shape != expected:
        raise ValueError(f"{name} grid has shape {arr.shape}, expected {expected}")
    # absent or corrupt cells read as calm air
    arr[~np.isfinite(arr)] = 0.0
    arr.setflags(write=False)
    return arr


class VectorField:
    """
    Immutable regular lat/lng grid of (u, v) wind components.

    The grid has (grid_size + 1) x (grid_size + 1) nodes, row-major by
    increasing latitude then increasing longitude, so node [row, col] sits at
        lat = lat_min + row * (lat_max - lat_min) / grid_size
        lng = lng_min + col * (lng_max - lng_min) / grid_size

    Sampling is bilinear. Latitude saturates at the grid edges (no wind beyond
    the poles); longitude is cyclic and wraps modulo 360 before it is mapped
    onto the grid, so fields that span the antimeridian work too.

    Instances are never mutated after construction. A data refresh builds a new
    field and swaps the reference.
    """

    def __init__(self,
                 u,
                 v,
                 lat_min: float,
                 lat_max: float,
                 lng_min: float,
                 lng_max: float):
        u_arr = np.asarray(u)
        if u_arr.ndim != 2 or u_arr.shape[0] != u_arr.shape[1] or u_arr.shape[0] < 2:
            raise ValueError(f"u grid must be square with at least 2x2 nodes, got shape {u_arr.shape}")
        grid_size = u_arr.shape[0] - 1

        if not (lat_min < lat_max):
            raise ValueError(f"lat_min ({lat_min}) must be below lat_max ({lat_max})")
        if not (lng_min < lng_max):
            raise ValueError(f"lng_min ({lng_min}) must be below lng_max ({lng_max})")
        if lng_max - lng_min > 360.0:
            raise ValueError(f"longitude span {lng_max - lng_min} exceeds 360 degrees")

        self._grid_size = grid_size
        self._u = _as_grid(u, grid_size, "u")
        self._v = _as_grid(v, grid_size, "v")
        self._lat_min = float(lat_min)
        self._lat_max = float(lat_max)
        self._lng_min = float(lng_min)
        self._lng_max = float(lng_max)

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_cells(cls,
                   grid: Sequence[Sequence[Optional[dict]]],
                   grid_size: int,
                   lat_min: float,
                   lat_max: float,
                   lng_min: float,
                   lng_max: float) -> "VectorField":
        """
        Wrap a nested list of {"u": .., "v": ..} cells, as served by the API.

        Missing rows, cells or components are treated as zero wind.
        """
        grid_size = int(grid_size)
        if grid_size < 1:
            raise ValueError(f"grid_size must be >= 1, got {grid_size}")
        n = grid_size + 1
        u = np.zeros((n, n))
        v = np.zeros((n, n))
        for row_idx, row in enumerate(grid[:n]):
            if not row:
                continue
            for col_idx, cell in enumerate(row[:n]):
                if not cell:
                    continue
                u[row_idx, col_idx] = _to_float(cell.get("u"))
                v[row_idx, col_idx] = _to_float(cell.get("v"))
        return cls(u, v, lat_min, lat_max, lng_min, lng_max)

    @classmethod
    def zeros(cls, bounds: Bounds, grid_size: int = 1) -> "VectorField":
        """Flat calm field; particles over it stand still."""
        if grid_size < 1:
            raise ValueError(f"grid_size must be >= 1, got {grid_size}")
        shape = (grid_size + 1, grid_size + 1)
        return cls(np.zeros(shape), np.zeros(shape),
                   bounds.south, bounds.north, bounds.west, bounds.east)

    @classmethod
    def uniform(cls, u: float, v: float, bounds: Bounds, grid_size: int = 1) -> "VectorField":
        shape = (grid_size + 1, grid_size + 1)
        return cls(np.full(shape, float(u)), np.full(shape, float(v)),
                   bounds.south, bounds.north, bounds.west, bounds.east)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def u(self) -> np.ndarray:
        return self._u

    @property
    def v(self) -> np.ndarray:
        return self._v

    @property
    def grid_size(self) -> int:
        return self._grid_size

    @property
    def lat_min(self) -> float:
        return self._lat_min

    @property
    def lat_max(self) -> float:
        return self._lat_max

    @property
    def lng_min(self) -> float:
        return self._lng_min

    @property
    def lng_max(self) -> float:
        return self._lng_max

    @property
    def bounds(self) -> Bounds:
        return Bounds(south=self._lat_min, west=self._lng_min,
                      north=self._lat_max, east=self._lng_max)

    @property
    def is_global(self) -> bool:
        return math.isclose(self._lng_max - self._lng_min, 360.0)

    @property
    def max_speed(self) -> float:
        return float(self.speed_grid().max())

    def speed_grid(self) -> np.ndarray:
        return np.hypot(self._u, self._v)

    def node_lats(self) -> np.ndarray:
        return np.linspace(self._lat_min, self._lat_max, self._grid_size + 1)

    def node_lngs(self) -> np.ndarray:
        return np.linspace(self._lng_min, self._lng_max, self._grid_size + 1)

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def sample_at(self, lat: float, lng: float) -> WindVector:
        """
        Bilinearly interpolate the wind vector at (lat, lng).

        Never raises: out-of-range coordinates are clamped (latitude) or
        wrapped (longitude), non-finite coordinates give zero wind.
        """
        u, v = self.sample_many(np.array([lat], dtype=float), np.array([lng], dtype=float))
        return WindVector(float(u[0]), float(v[0]))

    def sample_many(self, lats, lngs) -> Tuple[np.ndarray, np.ndarray]:
        """
        Vectorised `sample_at` over arrays of coordinates.

        Returns:
            tuple: (u, v) arrays with the broadcast shape of lats and lngs
        """
        lats = np.asarray(lats, dtype=float)
        lngs = np.asarray(lngs, dtype=float)
        lats, lngs = np.broadcast_arrays(lats, lngs)
        valid = np.isfinite(lats) & np.isfinite(lngs)
        lats = np.where(valid, lats, self._lat_min)
        lngs = np.where(valid, lngs, self._lng_min)

        n = self._grid_size
        x = self._lng_offset(lngs) / (self._lng_max - self._lng_min) * n
        lat_c = np.clip(lats, self._lat_min, self._lat_max)
        y = (lat_c - self._lat_min) / (self._lat_max - self._lat_min) * n

        x = np.clip(x, 0.0, n - _EDGE_EPSILON)
        y = np.clip(y, 0.0, n - _EDGE_EPSILON)

        x0 = np.floor(x).astype(int)
        y0 = np.floor(y).astype(int)
        x1 = np.minimum(x0 + 1, n)
        y1 = np.minimum(y0 + 1, n)
        dx = x - x0
        dy = y - y0

        w00 = (1 - dx) * (1 - dy)
        w10 = dx * (1 - dy)
        w01 = (1 - dx) * dy
        w11 = dx * dy

        u = (self._u[y0, x0] * w00 + self._u[y0, x1] * w10
             + self._u[y1, x0] * w01 + self._u[y1, x1] * w11)
        v = (self._v[y0, x0] * w00 + self._v[y0, x1] * w10
             + self._v[y1, x0] * w01 + self._v[y1, x1] * w11)

        u = np.where(valid, u, 0.0)
        v = np.where(valid, v, 0.0)
        return u, v

    def _lng_offset(self, lngs: np.ndarray) -> np.ndarray:
        """
        Distance east of lng_min after wrapping modulo 360.

        For a regional field a longitude that wraps outside the span snaps to
        whichever edge is closer around the circle.
        """
        span = self._lng_max - self._lng_min
        offset = np.mod(lngs - self._lng_min, 360.0)
        if span >= 360.0:
            return offset
        outside = offset > span
        past_east = offset - span
        before_west = 360.0 - offset
        snapped = np.where(past_east < before_west, span, 0.0)
        return np.where(outside, snapped, offset)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        """Same shape as the API's wind-field payload."""
        grid = [
            [{"u": float(self._u[r, c]), "v": float(self._v[r, c])} for c in range(self._grid_size + 1)]
            for r in range(self._grid_size + 1)
        ]
        return {
            "grid": grid,
            "gridSize": self._grid_size,
            "latMin": self._lat_min,
            "latMax": self._lat_max,
            "lngMin": self._lng_min,
            "lngMax": self._lng_max,
        }

    def __repr__(self) -> str:
        return (f"VectorField(grid_size={self._grid_size}, "
                f"lat=[{self._lat_min}, {self._lat_max}], lng=[{self._lng_min}, {self._lng_max}])")


def _to_float(value) -> float:
    if value is None:
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) else 0.0
