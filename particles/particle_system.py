import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from particles.config import EngineConfig
from wind.util import POLAR_BAND, Bounds, wrap_lng
from wind.vector_field import VectorField

logger = logging.getLogger(__name__)


@dataclass
class Particle:
    """Read-only view of one particle."""
    lng: float
    lat: float
    age: int      # frames since last respawn
    max_age: int  # lifespan before forced respawn


@dataclass(frozen=True)
class ParticleState:
    """Copy of the particle pool after a step."""
    lngs: np.ndarray
    lats: np.ndarray
    speeds: np.ndarray     # m/s sampled at the start of the step, 0 where respawned
    ages: np.ndarray
    max_ages: np.ndarray
    respawned: np.ndarray  # True where the particle was respawned this step

    def __len__(self) -> int:
        return self.lngs.size


class ParticleSystem:
    """
    Pool of wind particles advected through a VectorField.

    Each particle cycles Active -> Respawn -> Active forever: it is moved by the
    local wind every step and respawned at a random spot in the viewport when
    it outlives its max age or drifts too far outside the view. Particles are
    never added or removed after `initialize`; the pool lives in flat numpy
    arrays that are updated in place.
    """

    def __init__(self, config: Optional[EngineConfig] = None, rng: Optional[np.random.Generator] = None):
        self.config = (config or EngineConfig()).validate()
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)
        self._allocate(0)

    def _allocate(self, count: int) -> None:
        self._lngs = np.zeros(count)
        self._lats = np.zeros(count)
        self._ages = np.zeros(count, dtype=np.int64)
        self._max_ages = np.zeros(count, dtype=np.int64)
        self._speeds = np.zeros(count)
        self._respawned = np.zeros(count, dtype=bool)

    @property
    def count(self) -> int:
        return self._lngs.size

    def __len__(self) -> int:
        return self.count

    def particle(self, i: int) -> Particle:
        return Particle(lng=float(self._lngs[i]), lat=float(self._lats[i]),
                        age=int(self._ages[i]), max_age=int(self._max_ages[i]))

    def initialize(self, count: int, viewport: Bounds) -> ParticleState:
        """
        Create `count` particles spread over the viewport grown by
        `spawn_expansion` on every side, so particles drifting in from just
        outside the view already exist.
        """
        if count < 0:
            raise ValueError(f"particle count must be >= 0, got {count}")
        cfg = self.config
        self._allocate(count)
        if count == 0:
            return self.snapshot()

        area = viewport.expanded(cfg.spawn_expansion, cfg.lat_limit)
        everyone = np.ones(count, dtype=bool)
        self._place(everyone, area)
        self._max_ages[:] = self._draw_max_ages(count)
        ages = self.rng.integers(0, cfg.initial_age_max, size=count)
        self._ages[:] = np.minimum(ages, self._max_ages)

        logger.info("Initialized %d particles over %s", count, area)
        return self.snapshot()

    def speed_factor(self, zoom: float, dt: Optional[float] = None) -> float:
        """
        Degrees moved per (m/s) of wind this frame.

        The zoom multiplier is clamped so particles neither crawl when zoomed
        out nor streak when zoomed in; dt is measured in nominal frames and
        capped so a stalled frame does not teleport the pool.
        """
        cfg = self.config
        if zoom is None or not math.isfinite(zoom):
            zoom = cfg.zoom_reference
        zoom_mult = min(cfg.zoom_factor_max, max(cfg.zoom_factor_min, zoom / cfg.zoom_reference))
        if dt is None:
            dt = cfg.frame_seconds
        if not math.isfinite(dt) or dt < 0:
            dt = 0.0
        dt_scale = min(cfg.max_dt_scale, dt / cfg.frame_seconds)
        return cfg.base_speed * zoom_mult * dt_scale

    def step(self,
             field: Optional[VectorField],
             viewport: Optional[Bounds],
             zoom: float,
             dt: Optional[float] = None) -> ParticleState:
        """
        Advance every particle one frame through `field`.

        A missing field counts as calm air; a missing viewport skips the frame.
        """
        self._respawned[:] = False
        if self.count == 0 or viewport is None:
            return self.snapshot()

        cfg = self.config
        if field is None:
            u = np.zeros(self.count)
            v = np.zeros(self.count)
        else:
            u, v = field.sample_many(self._lats, self._lngs)

        factor = self.speed_factor(zoom, dt)
        self._lngs += u * factor
        # positive v is northward, the screen-y flip belongs to the projection
        self._lats += v * factor
        self._lngs[:] = wrap_lng(self._lngs)
        np.clip(self._lats, -cfg.lat_limit, cfg.lat_limit, out=self._lats)
        np.hypot(u, v, out=self._speeds)
        self._ages += 1

        dead = self._ages > self._max_ages
        dead |= ~np.isfinite(self._lngs) | ~np.isfinite(self._lats)
        dead |= self._outside(viewport, cfg.cull_margin)
        self._respawn(dead, viewport)
        self._respawned[:] = dead
        return self.snapshot()

    def reseed_fraction(self, viewport: Bounds, fraction: Optional[float] = None) -> int:
        """Respawn a random share of the pool into a new viewport after pan/zoom/resize."""
        fraction = self.config.reseed_fraction if fraction is None else fraction
        k = int(self.count * fraction)
        if k <= 0:
            return 0
        mask = np.zeros(self.count, dtype=bool)
        mask[self.rng.choice(self.count, size=k, replace=False)] = True
        self._respawn(mask, viewport)
        return k

    def snapshot(self) -> ParticleState:
        return ParticleState(
            lngs=self._lngs.copy(),
            lats=self._lats.copy(),
            speeds=self._speeds.copy(),
            ages=self._ages.copy(),
            max_ages=self._max_ages.copy(),
            respawned=self._respawned.copy(),
        )

    def positions(self):
        """Current (lats, lngs), copied."""
        return self._lats.copy(), self._lngs.copy()

    def clear(self) -> None:
        self._allocate(0)

    # ------------------------------------------------------------------

    def _outside(self, viewport: Bounds, margin: float) -> np.ndarray:
        lim = self.config.lat_limit
        margin_lat = viewport.lat_span * margin
        # a view past the latitude limit still keeps the band along it
        south = min(viewport.south - margin_lat, lim - POLAR_BAND)
        north = max(viewport.north + margin_lat, -lim + POLAR_BAND)
        out = (self._lats < south) | (self._lats > north)

        half_width = viewport.lng_span * (0.5 + margin)
        if half_width < 180.0:
            center = (viewport.west + viewport.east) / 2
            # compare around the circle so a view across the antimeridian works
            offset = np.abs(wrap_lng(self._lngs - center))
            out |= offset > half_width
        return out

    def _respawn(self, mask: np.ndarray, viewport: Bounds) -> None:
        n = int(mask.sum())
        if n == 0:
            return
        self._place(mask, viewport)
        self._ages[mask] = 0
        self._speeds[mask] = 0.0
        self._max_ages[mask] = self._draw_max_ages(n)

    def _place(self, mask: np.ndarray, area: Bounds) -> None:
        lim = self.config.lat_limit
        n = int(mask.sum())
        south = min(max(area.south, -lim), lim)
        north = min(max(area.north, -lim), lim)
        self._lats[mask] = self.rng.uniform(south, north, size=n)
        self._lngs[mask] = wrap_lng(self.rng.uniform(area.west, area.east, size=n))

    def _draw_max_ages(self, n: int) -> np.ndarray:
        lo, hi = self.config.max_age_range
        return self.rng.integers(lo, hi, size=n)
