"""
Boundary with the map the particles are drawn over.

The engine only needs four things from the host: the visible bounds, the zoom,
a lat/lng -> screen pixel projection, and a way to hear about pan/zoom/resize.
"""
import math
from typing import Callable, List, Optional, Tuple

import numpy as np

from wind.util import Bounds

Listener = Callable[[], None]


class HostMap:
    """Interface the render loop expects from a map surface."""

    def get_viewport_bounds(self) -> Optional[Bounds]:  # pragma: no cover - interface
        """Visible bounds, or None while the map is not ready."""
        raise NotImplementedError

    def get_zoom(self) -> float:  # pragma: no cover - interface
        raise NotImplementedError

    def project(self, lats, lngs) -> Tuple[np.ndarray, np.ndarray]:  # pragma: no cover - interface
        """Screen pixel coordinates (x right, y down) of the given points."""
        raise NotImplementedError

    def screen_size(self) -> Tuple[float, float]:  # pragma: no cover - interface
        raise NotImplementedError

    def subscribe(self, listener: Listener) -> Callable[[], None]:  # pragma: no cover - interface
        """Register for viewport changes. Returns a callable that unregisters."""
        raise NotImplementedError


class StaticHostMap(HostMap):
    """
    Equirectangular map of a fixed pixel size, moved programmatically.

    Used for headless runs and tests. `ready=False` mimics a map that has not
    laid itself out yet.
    """

    def __init__(self,
                 bounds: Optional[Bounds],
                 width: int = 1024,
                 height: int = 512,
                 zoom: Optional[float] = None):
        self._bounds = bounds
        self.width = width
        self.height = height
        self._zoom = zoom
        self._listeners: List[Listener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def get_viewport_bounds(self) -> Optional[Bounds]:
        return self._bounds

    def get_zoom(self) -> float:
        if self._zoom is not None:
            return self._zoom
        if self._bounds is None:
            return 0.0
        # web map convention: zoom 0 shows the whole 360 degrees
        return math.log2(360.0 / self._bounds.lng_span)

    def project(self, lats, lngs):
        lats = np.asarray(lats, dtype=float)
        lngs = np.asarray(lngs, dtype=float)
        b = self._bounds
        if b is None:
            return np.full(lats.shape, np.nan), np.full(lats.shape, np.nan)
        x = (lngs - b.west) / b.lng_span * self.width
        y = (b.north - lats) / b.lat_span * self.height
        return x, y

    def screen_size(self):
        return float(self.width), float(self.height)

    def subscribe(self, listener: Listener):
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def move_to(self, bounds: Optional[Bounds], zoom: Optional[float] = None) -> None:
        """Pan/zoom to new bounds and notify listeners."""
        self._bounds = bounds
        if zoom is not None:
            self._zoom = zoom
        for listener in list(self._listeners):
            listener()

    def resize(self, width: int, height: int) -> None:
        self.width = width
        self.height = height
        for listener in list(self._listeners):
            listener()
