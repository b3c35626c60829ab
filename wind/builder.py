import logging
from typing import Optional, Sequence

import numpy as np
from scipy.ndimage import uniform_filter
from scipy.spatial import cKDTree

from wind.util import Bounds, lng_delta, to_unit_vectors
from wind.vector_field import VectorField

logger = logging.getLogger(__name__)

# Distance floor in degrees so a sample sitting on a node does not divide by zero
IDW_EPSILON = 1e-4


class FieldBuilder:
    """
    Builds a dense VectorField from irregular wind samples by inverse-distance
    weighting (IDW).

    Every grid node blends every sample with weight 1 / d^2, where d is the
    planar distance in degrees with the longitude difference wrapped into
    [-180, 180). The cost is O(nodes x samples), which is fine for grids up to
    ~60x60 and a few thousand samples. Pass `neighbors=k` to limit each node to
    its k nearest samples through a KD-tree when sample counts grow.
    """

    def __init__(self, epsilon: float = IDW_EPSILON, neighbors: Optional[int] = None):
        if epsilon <= 0:
            raise ValueError(f"epsilon must be positive, got {epsilon}")
        if neighbors is not None and neighbors < 1:
            raise ValueError(f"neighbors must be >= 1, got {neighbors}")
        self.epsilon = epsilon
        self.neighbors = neighbors

    def build_from_samples(self, samples: Sequence, bounds: Bounds, grid_size: int) -> VectorField:
        """
        Interpolate samples onto a (grid_size + 1)^2 node grid covering bounds.

        Args:
            samples: objects with lat, lng, u, v attributes (e.g. WeatherSample)
            bounds: region the grid covers
            grid_size: cells per axis

        Returns:
            VectorField: calm (all-zero) field when there are no usable samples
        """
        if grid_size < 1:
            raise ValueError(f"grid_size must be >= 1, got {grid_size}")

        lats, lngs, us, vs = _sample_arrays(samples)
        if lats.size == 0:
            logger.warning("No usable wind samples, building a calm %dx%d field", grid_size, grid_size)
            return VectorField.zeros(bounds, grid_size)

        node_lats = np.linspace(bounds.south, bounds.north, grid_size + 1)
        node_lngs = np.linspace(bounds.west, bounds.east, grid_size + 1)

        if self.neighbors is not None and self.neighbors < lats.size:
            u, v = self._idw_nearest(node_lats, node_lngs, lats, lngs, us, vs)
        else:
            u, v = self._idw_all(node_lats, node_lngs, lats, lngs, us, vs)

        logger.info("Built %dx%d wind field from %d samples", grid_size, grid_size, lats.size)
        return VectorField(u, v, bounds.south, bounds.north, bounds.west, bounds.east)

    def _weights(self, dlat: np.ndarray, dlng: np.ndarray) -> np.ndarray:
        d2 = dlat ** 2 + dlng ** 2
        return 1.0 / np.maximum(d2, self.epsilon ** 2)

    def _idw_all(self, node_lats, node_lngs, lats, lngs, us, vs):
        n = node_lats.size
        u = np.empty((n, n))
        v = np.empty((n, n))
        # one latitude row at a time keeps the weight matrix at (n, samples)
        dlng = lng_delta(lngs[np.newaxis, :], node_lngs[:, np.newaxis])
        for row, lat in enumerate(node_lats):
            w = self._weights(lat - lats[np.newaxis, :], dlng)
            w_sum = w.sum(axis=1)
            u[row] = (w * us).sum(axis=1) / w_sum
            v[row] = (w * vs).sum(axis=1) / w_sum
        return u, v

    def _idw_nearest(self, node_lats, node_lngs, lats, lngs, us, vs):
        n = node_lats.size
        grid_lat, grid_lng = np.meshgrid(node_lats, node_lngs, indexing="ij")
        tree = cKDTree(to_unit_vectors(lats, lngs))
        _, idx = tree.query(to_unit_vectors(grid_lat.ravel(), grid_lng.ravel()), k=self.neighbors)
        idx = idx.reshape(n * n, self.neighbors)

        dlat = grid_lat.ravel()[:, np.newaxis] - lats[idx]
        dlng = lng_delta(lngs[idx], grid_lng.ravel()[:, np.newaxis])
        w = self._weights(dlat, dlng)
        w_sum = w.sum(axis=1)
        u = (w * us[idx]).sum(axis=1) / w_sum
        v = (w * vs[idx]).sum(axis=1) / w_sum
        return u.reshape(n, n), v.reshape(n, n)

    @staticmethod
    def from_grid(payload: dict) -> VectorField:
        """
        Wrap a dense grid supplied by the data source, bypassing IDW.

        Expects the API shape {grid, gridSize, latMin, latMax, lngMin, lngMax}.
        """
        if not isinstance(payload, dict):
            raise ValueError(f"wind-field payload must be an object, got {type(payload).__name__}")
        missing = [k for k in ("grid", "gridSize", "latMin", "latMax", "lngMin", "lngMax") if k not in payload]
        if missing:
            raise ValueError(f"wind-field payload missing keys: {', '.join(missing)}")
        grid = payload["grid"]
        if not isinstance(grid, list):
            raise ValueError("wind-field grid must be a list of rows")
        try:
            return VectorField.from_cells(
                grid,
                grid_size=int(payload["gridSize"]),
                lat_min=float(payload["latMin"]),
                lat_max=float(payload["latMax"]),
                lng_min=float(payload["lngMin"]),
                lng_max=float(payload["lngMax"]),
            )
        except (TypeError, AttributeError) as e:
            raise ValueError(f"malformed wind-field payload: {e}") from e

    @staticmethod
    def smooth(field: VectorField, passes: int = 1, size: int = 3) -> VectorField:
        """Box-filter u and v to knock down sample noise. Returns a new field."""
        u = np.array(field.u)
        v = np.array(field.v)
        if field.is_global:
            # last column repeats the first one, filter the unique columns cyclically
            for _ in range(passes):
                u[:, :-1] = uniform_filter(u[:, :-1], size=size, mode=("nearest", "wrap"))
                v[:, :-1] = uniform_filter(v[:, :-1], size=size, mode=("nearest", "wrap"))
            u[:, -1] = u[:, 0]
            v[:, -1] = v[:, 0]
        else:
            for _ in range(passes):
                u = uniform_filter(u, size=size, mode="nearest")
                v = uniform_filter(v, size=size, mode="nearest")
        return VectorField(u, v, field.lat_min, field.lat_max, field.lng_min, field.lng_max)


def _sample_arrays(samples):
    if not samples:
        empty = np.empty(0)
        return empty, empty, empty, empty
    data = np.array([[s.lat, s.lng, s.u, s.v] for s in samples], dtype=float)
    finite = np.all(np.isfinite(data), axis=1)
    dropped = int((~finite).sum())
    if dropped:
        logger.warning("Dropping %d non-finite wind samples", dropped)
    data = data[finite]
    return data[:, 0], data[:, 1], data[:, 2], data[:, 3]
