import os
from dataclasses import dataclass, fields, replace
from typing import Optional, Tuple


@dataclass(frozen=True)
class EngineConfig:
    particle_count: int = 3000
    base_speed: float = 0.015             # degrees per (m/s) per frame at the reference zoom
    zoom_reference: float = 5.0           # zoom where the zoom multiplier is 1
    zoom_factor_min: float = 0.5
    zoom_factor_max: float = 2.0
    max_age_min: int = 50                 # frames, inclusive
    max_age_max: int = 160                # frames, exclusive
    initial_age_max: int = 100            # spread initial ages so respawns don't sync up
    spawn_expansion: float = 0.3          # initial spawn area grows by this x viewport span per side
    cull_margin: float = 0.3              # particles survive this far outside the viewport
    lat_limit: float = 85.0               # Web Mercator safe
    frame_seconds: float = 1.0 / 60.0     # dt that corresponds to one nominal frame
    max_dt_scale: float = 4.0             # cap on catch-up after a stalled frame
    refresh_interval: float = 1800.0      # seconds between field reloads
    reseed_fraction: float = 0.3          # share of particles moved into a new viewport
    max_jump_px: float = 50.0             # longer screen segments are not drawn
    screen_padding_px: float = 20.0
    trail_fade: float = 0.06              # alpha removed from older trails each frame
    seed: Optional[int] = None

    @property
    def max_age_range(self) -> Tuple[int, int]:
        return self.max_age_min, self.max_age_max

    def validate(self) -> "EngineConfig":
        if self.particle_count < 0:
            raise ValueError(f"particle_count must be >= 0, got {self.particle_count}")
        if not (0 < self.max_age_min < self.max_age_max):
            raise ValueError(f"invalid max age range [{self.max_age_min}, {self.max_age_max})")
        if self.initial_age_max < 1:
            raise ValueError(f"initial_age_max must be >= 1, got {self.initial_age_max}")
        if not (0 < self.zoom_factor_min <= self.zoom_factor_max):
            raise ValueError("zoom factor clamp must satisfy 0 < min <= max")
        if self.zoom_reference <= 0 or self.frame_seconds <= 0:
            raise ValueError("zoom_reference and frame_seconds must be positive")
        if not (0 < self.lat_limit <= 90):
            raise ValueError(f"lat_limit must be in (0, 90], got {self.lat_limit}")
        if self.cull_margin < 0 or self.spawn_expansion < 0:
            raise ValueError("cull_margin and spawn_expansion must be >= 0")
        if not (0 <= self.reseed_fraction <= 1):
            raise ValueError(f"reseed_fraction must be in [0, 1], got {self.reseed_fraction}")
        if not (0 <= self.trail_fade <= 1):
            raise ValueError(f"trail_fade must be in [0, 1], got {self.trail_fade}")
        if self.refresh_interval <= 0:
            raise ValueError(f"refresh_interval must be positive, got {self.refresh_interval}")
        return self

    @classmethod
    def from_env(cls, prefix: str = "WINDFIELD_", environ=None) -> "EngineConfig":
        """
        Defaults overridden by environment variables, e.g.
        WINDFIELD_PARTICLE_COUNT=5000 or WINDFIELD_REFRESH_INTERVAL=600.
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = environ.get(prefix + f.name.upper())
            if raw is None or raw == "":
                continue
            kind = int if f.name in _INT_FIELDS else float
            try:
                overrides[f.name] = kind(raw)
            except ValueError as e:
                raise ValueError(f"{prefix + f.name.upper()}={raw!r} is not a valid {kind.__name__}") from e
        return replace(cls(), **overrides).validate()


_INT_FIELDS = {"particle_count", "max_age_min", "max_age_max", "initial_age_max", "seed"}


def api_url_from_env(default: str, environ=None) -> str:
    environ = os.environ if environ is None else environ
    return environ.get("WINDFIELD_API_URL") or default
