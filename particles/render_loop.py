"""
Per-frame driver coupling the particle system to a host map.

The host calls `RenderLoop.step()` once per display refresh. Field reloads run
on a single background worker and are only published between frames, so every
frame advects the whole pool through one field snapshot.
"""
import logging
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from particles.config import EngineConfig
from particles.host import HostMap
from particles.particle_system import ParticleState, ParticleSystem
from wind.sources import FieldSource
from wind.util import Bounds
from wind.vector_field import VectorField

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrameResult:
    """What one frame produced, for whoever draws it."""
    state: ParticleState
    segments: np.ndarray        # (k, 2, 2) pixel segments [[x0, y0], [x1, y1]]
    segment_alphas: np.ndarray  # (k,)
    segment_speeds: np.ndarray  # (k,) m/s
    advanced: bool              # False when paused or the viewport was unavailable

    @property
    def lats(self) -> np.ndarray:
        return self.state.lats

    @property
    def lngs(self) -> np.ndarray:
        return self.state.lngs

    @property
    def speeds(self) -> np.ndarray:
        return self.state.speeds


def segment_alpha(speeds, ages, max_ages) -> np.ndarray:
    """Faster wind draws brighter, particles fade out as they age."""
    speeds = np.asarray(speeds, dtype=float)
    opacity = np.minimum(0.7, 0.25 + speeds * 0.02)
    age_factor = np.clip(1.0 - np.asarray(ages, dtype=float) / np.maximum(max_ages, 1), 0.0, 1.0)
    return opacity * age_factor * 0.7


class TrailCanvas:
    """Drawing surface for particle trails."""

    def fade(self, amount: float) -> None:
        """Partially clear the previous frames so old segments become trails."""

    def draw_segments(self, segments: np.ndarray, alphas: np.ndarray, speeds: np.ndarray) -> None:
        pass

    def clear(self) -> None:
        """Drop every trail at once, e.g. after the map moved."""

    def release(self) -> None:
        pass


class NullCanvas(TrailCanvas):
    """Draws nothing; for headless runs."""


def _empty_frame(state: ParticleState, advanced: bool = False) -> FrameResult:
    return FrameResult(state=state,
                       segments=np.empty((0, 2, 2)),
                       segment_alphas=np.empty(0),
                       segment_speeds=np.empty(0),
                       advanced=advanced)


class RenderLoop:
    """
    Wind particle engine bound to one host map and one field source.

    Owns the published VectorField, the ParticleSystem and the trail canvas.
    `start` subscribes to the host and kicks off the first field load, `stop`
    releases everything. Nothing raised while loading a field or reading the
    host escapes `step`: the animation degrades to calm or static instead.
    """

    def __init__(self,
                 host: HostMap,
                 source: FieldSource,
                 config: Optional[EngineConfig] = None,
                 canvas: Optional[TrailCanvas] = None,
                 executor: Optional[Executor] = None,
                 clock: Callable[[], float] = time.monotonic,
                 system: Optional[ParticleSystem] = None):
        self.host = host
        self.source = source
        self.config = (config or EngineConfig()).validate()
        self.canvas = canvas or NullCanvas()
        self.system = system or ParticleSystem(self.config)
        self.clock = clock

        self._executor = executor
        self._owns_executor = executor is None
        self._field: Optional[VectorField] = None
        self._pending: Optional[Future] = None
        self._last_refresh: Optional[float] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._particle_target = self.config.particle_count
        self._needs_init = False
        self._running = False
        self._enabled = True
        self.frame_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def field(self) -> Optional[VectorField]:
        """Currently published field; None until the first load completes."""
        return self._field

    @property
    def refresh_pending(self) -> bool:
        return self._pending is not None

    def start(self, particle_count: Optional[int] = None) -> None:
        if self._running:
            raise RuntimeError("render loop already started")
        count = self._particle_target if particle_count is None else particle_count
        if count < 0:
            raise ValueError(f"particle count must be >= 0, got {count}")

        self._particle_target = count
        self._running = True
        self._enabled = True
        self.frame_count = 0
        self._unsubscribe = self.host.subscribe(self._on_viewport_change)
        if self._field is None:
            self._schedule_refresh()

        viewport = self._read_viewport()
        if viewport is None:
            logger.info("Viewport not ready, deferring particle initialization")
            self._needs_init = True
        else:
            self.system.initialize(count, viewport)
            self._needs_init = False

    def stop(self) -> None:
        """Halt, unsubscribe and release the canvas. Safe to call twice."""
        if not self._running:
            return
        self._running = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._pending is not None:
            # a load already in flight finishes on its own, its result is dropped
            self._pending.cancel()
            self._pending = None
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        self.canvas.release()
        self.system.clear()
        logger.info("Render loop stopped after %d frames", self.frame_count)

    def set_enabled(self, enabled: bool) -> None:
        """Pause or resume advection without dropping particles or the field."""
        self._enabled = bool(enabled)

    def set_particle_count(self, count: int) -> None:
        """Resize the pool in place; a running loop respawns every particle."""
        if count < 0:
            raise ValueError(f"particle count must be >= 0, got {count}")
        self._particle_target = count
        if self._running:
            self.reset()

    def reset(self) -> None:
        """Respawn the whole pool over the current viewport and drop the trails."""
        if not self._running:
            return
        viewport = self._read_viewport()
        if viewport is None:
            self.system.clear()
            self._needs_init = True
        else:
            self.system.initialize(self._particle_target, viewport)
            self._needs_init = False
        self.canvas.clear()

    # ------------------------------------------------------------------
    # Field refresh
    # ------------------------------------------------------------------

    def refresh_now(self) -> Optional[VectorField]:
        """Load a field synchronously and publish it."""
        try:
            field = self.source.load()
        except Exception:
            logger.exception("Wind field load failed, keeping previous field")
            return None
        self._last_refresh = self.clock()
        return self._publish(field)

    def _schedule_refresh(self) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="wind-refresh")
            self._owns_executor = True
        self._pending = self._executor.submit(self.source.load)
        self._last_refresh = self.clock()

    def _poll_refresh(self) -> None:
        if self._pending is not None:
            if not self._pending.done():
                return
            future, self._pending = self._pending, None
            try:
                field = future.result()
            except Exception:
                logger.exception("Wind field refresh failed, keeping previous field")
                return
            self._publish(field)
        elif self.clock() - self._last_refresh >= self.config.refresh_interval:
            self._schedule_refresh()

    def _publish(self, field) -> Optional[VectorField]:
        if not isinstance(field, VectorField):
            logger.error("Field source returned %r instead of a VectorField", type(field).__name__)
            return None
        self._field = field
        logger.info("Published %s", field)
        return field

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def step(self, dt: Optional[float] = None) -> Optional[FrameResult]:
        """
        Advance and draw one frame.

        Returns None when the loop is not running. When paused or while the
        host has no viewport the particles stay put and nothing is drawn.
        """
        if not self._running:
            return None
        self._poll_refresh()
        if not self._enabled:
            return _empty_frame(self.system.snapshot())

        viewport = self._read_viewport()
        if viewport is None:
            return _empty_frame(self.system.snapshot())
        if self._needs_init:
            self.system.initialize(self._particle_target, viewport)
            self._needs_init = False

        zoom = self._read_zoom()
        screen = self._read_screen_size()
        before = self._project(*self.system.positions())
        if screen is None or before is None:
            return _empty_frame(self.system.snapshot())

        state = self.system.step(self._field, viewport, zoom, dt)
        after = self._project(state.lats, state.lngs)
        if after is None:
            frame = _empty_frame(state, advanced=True)
        else:
            frame = self._build_frame(state, screen, *before, *after)
            self.canvas.fade(self.config.trail_fade)
            if len(frame.segments):
                self.canvas.draw_segments(frame.segments, frame.segment_alphas, frame.segment_speeds)
        self.frame_count += 1
        return frame

    def _build_frame(self, state: ParticleState, screen, x0, y0, x1, y1) -> FrameResult:
        cfg = self.config
        width, height = screen
        pad = cfg.screen_padding_px

        x0, y0, x1, y1 = (np.asarray(a, dtype=float) for a in (x0, y0, x1, y1))
        with np.errstate(invalid="ignore"):
            jump = np.hypot(x1 - x0, y1 - y0)
            keep = ~state.respawned
            keep &= np.isfinite(jump) & (jump < cfg.max_jump_px)
            keep &= (x1 >= -pad) & (x1 <= width + pad) & (y1 >= -pad) & (y1 <= height + pad)

        segments = np.stack([np.column_stack([x0[keep], y0[keep]]),
                             np.column_stack([x1[keep], y1[keep]])], axis=1)
        alphas = segment_alpha(state.speeds[keep], state.ages[keep], state.max_ages[keep])
        return FrameResult(state=state,
                           segments=segments,
                           segment_alphas=alphas,
                           segment_speeds=state.speeds[keep],
                           advanced=True)

    # ------------------------------------------------------------------
    # Host
    # ------------------------------------------------------------------

    def _read_viewport(self) -> Optional[Bounds]:
        try:
            return self.host.get_viewport_bounds()
        except (ValueError, RuntimeError) as e:
            logger.debug("Viewport unavailable: %s", e)
            return None

    def _read_zoom(self) -> float:
        try:
            return float(self.host.get_zoom())
        except (ValueError, RuntimeError, TypeError) as e:
            logger.debug("Zoom unavailable: %s", e)
            return self.config.zoom_reference

    def _read_screen_size(self):
        try:
            return self.host.screen_size()
        except (ValueError, RuntimeError) as e:
            logger.debug("Screen size unavailable: %s", e)
            return None

    def _project(self, lats, lngs):
        try:
            return self.host.project(lats, lngs)
        except (ValueError, RuntimeError) as e:
            logger.debug("Projection unavailable: %s", e)
            return None

    def _on_viewport_change(self) -> None:
        if not self._running or self.system.count == 0:
            return
        viewport = self._read_viewport()
        if viewport is not None:
            self.system.reseed_fraction(viewport)
            self.canvas.clear()
