import logging
import math
from typing import Optional, Sequence

import cartopy.crs as ccrs
import cartopy.feature as cfeature
import matplotlib.animation as animation
import matplotlib.pyplot as plt
import numpy as np
from matplotlib.collections import LineCollection
from matplotlib.colors import Normalize
from matplotlib.transforms import IdentityTransform

from particles.host import HostMap
from particles.render_loop import RenderLoop, TrailCanvas
from wind.util import Bounds
from wind.vector_field import VectorField

logger = logging.getLogger(__name__)


def create_map_axes(extent: Optional[Sequence[float]] = None,
                    figsize=(12, 6),
                    features: bool = True):
    """
    Figure with a PlateCarree map axes.

    Args:
        extent: [lon_min, lon_max, lat_min, lat_max], whole globe if None
        features: draw land, ocean and coastlines (needs Natural Earth data)

    Returns:
        (fig, ax)
    """
    fig, ax = plt.subplots(figsize=figsize, subplot_kw={'projection': ccrs.PlateCarree()})
    if extent is None:
        ax.set_global()
    else:
        ax.set_extent(extent, crs=ccrs.PlateCarree())

    if features:
        ax.add_feature(cfeature.LAND.with_scale('110m'), facecolor='#2b2b2b')
        ax.add_feature(cfeature.OCEAN.with_scale('110m'), facecolor='#101820')
        ax.coastlines('110m', linewidth=0.5, color='#777777')
    return fig, ax


class MatplotlibHostMap(HostMap):
    """
    HostMap backed by a matplotlib axes whose data coordinates are lng/lat
    degrees, e.g. a cartopy PlateCarree GeoAxes.
    """

    def __init__(self, ax):
        self.ax = ax

    def get_viewport_bounds(self) -> Optional[Bounds]:
        x0, x1 = sorted(self.ax.get_xlim())
        y0, y1 = sorted(self.ax.get_ylim())
        y0, y1 = max(y0, -90.0), min(y1, 90.0)
        if x1 - x0 > 360.0:
            mid = (x0 + x1) / 2
            x0, x1 = mid - 180.0, mid + 180.0
        try:
            return Bounds(south=y0, west=x0, north=y1, east=x1)
        except ValueError:
            # collapsed or not laid out yet
            return None

    def get_zoom(self) -> float:
        bounds = self.get_viewport_bounds()
        if bounds is None:
            return 0.0
        return math.log2(360.0 / bounds.lng_span)

    def project(self, lats, lngs):
        lats = np.asarray(lats, dtype=float)
        lngs = np.asarray(lngs, dtype=float)
        if lats.size == 0:
            return np.empty(0), np.empty(0)
        display = self.ax.transData.transform(np.column_stack([lngs, lats]))
        bbox = self.ax.bbox
        # display y grows upward from the figure bottom, screen y grows down from the axes top
        return display[:, 0] - bbox.x0, bbox.y1 - display[:, 1]

    def screen_size(self):
        bbox = self.ax.bbox
        return float(bbox.width), float(bbox.height)

    def subscribe(self, listener):
        def on_change(_):
            listener()

        callbacks = self.ax.callbacks
        ids = [callbacks.connect('xlim_changed', on_change),
               callbacks.connect('ylim_changed', on_change)]
        canvas = self.ax.figure.canvas
        resize_id = canvas.mpl_connect('resize_event', on_change)

        def unsubscribe():
            for cid in ids:
                callbacks.disconnect(cid)
            canvas.mpl_disconnect(resize_id)
            ids.clear()
        return unsubscribe


class MatplotlibTrailCanvas(TrailCanvas):
    """
    Trails as LineCollections in screen space, colored by wind speed.

    Every frame adds one collection. `fade` scales the opacity of the older
    ones and removes them once they are practically invisible.
    """

    def __init__(self, ax, cmap='viridis', max_speed: float = 30.0,
                 linewidth: float = 1.2, min_weight: float = 0.02):
        self.ax = ax
        self.cmap = plt.get_cmap(cmap)
        self.norm = Normalize(vmin=0.0, vmax=max_speed)
        self.linewidth = linewidth
        self.min_weight = min_weight
        self._trails = []  # [collection, base rgba, weight]

    @property
    def trail_count(self) -> int:
        return len(self._trails)

    def fade(self, amount: float) -> None:
        kept = []
        for entry in self._trails:
            collection, rgba, weight = entry
            weight *= (1.0 - amount)
            if weight < self.min_weight:
                collection.remove()
                continue
            colors = rgba.copy()
            colors[:, 3] *= weight
            collection.set_color(colors)
            entry[2] = weight
            kept.append(entry)
        self._trails = kept

    def draw_segments(self, segments, alphas, speeds) -> None:
        bbox = self.ax.bbox
        display = np.array(segments, dtype=float)
        display[..., 0] += bbox.x0
        display[..., 1] = bbox.y1 - display[..., 1]

        rgba = self.cmap(self.norm(np.asarray(speeds, dtype=float)))
        rgba[:, 3] = alphas
        collection = LineCollection(display, colors=rgba, linewidths=self.linewidth,
                                    transform=IdentityTransform())
        self.ax.add_collection(collection, autolim=False)
        self._trails.append([collection, rgba, 1.0])

    def clear(self) -> None:
        for collection, _, _ in self._trails:
            collection.remove()
        self._trails = []

    def release(self) -> None:
        self.clear()


class WindParticleAnimator:
    """Drive a RenderLoop from a matplotlib FuncAnimation."""

    def __init__(self, loop: RenderLoop, fig=None, interval: int = 50):
        self.loop = loop
        self.fig = fig if fig is not None else loop.host.ax.figure
        self.interval = interval
        self.ani = None
        self.title = None
        self.fig.canvas.mpl_connect('close_event', lambda _: self.loop.stop())

    def update(self, frame):
        result = self.loop.step(dt=self.interval / 1000.0)
        if self.title is not None and result is not None:
            field = self.loop.field
            peak = field.max_speed if field is not None else 0.0
            self.title.set_text(f'Wind particles: frame {frame}, {len(result.state)} particles, '
                                f'max {peak:.1f} m/s')
        return []

    def animate(self, frames=None, repeat=True, show=True):
        if not self.loop.running:
            if self.loop.field is None:
                # draw wind from the first frame instead of waiting on the worker
                self.loop.refresh_now()
            self.loop.start()
        self.title = self.loop.host.ax.set_title('Wind particles')
        self.ani = animation.FuncAnimation(self.fig, self.update, frames=frames, interval=self.interval,
                                           blit=False, repeat=repeat, cache_frame_data=False)
        if show:
            plt.show()
        return self.ani

    def save(self, filename='wind_particles.gif', fps=20):
        if self.ani is None:
            print('No animation to save. Please run animate() first.')
            return
        if filename.endswith('.gif'):
            self.ani.save(filename, writer='pillow', fps=fps)
        else:
            from matplotlib.animation import FFMpegWriter
            writer = FFMpegWriter(fps=fps, codec='libx264', bitrate=1800)
            self.ani.save(filename, writer=writer)
        logger.info("Saved animation to %s", filename)


def plot_wind_field(field: VectorField, ax=None, stride: int = 1, show: bool = False):
    """Quiver plot of the field nodes, colored by speed."""
    lats = field.node_lats()[::stride]
    lngs = field.node_lngs()[::stride]
    X, Y = np.meshgrid(lngs, lats)
    U = field.u[::stride, ::stride]
    V = field.v[::stride, ::stride]

    if ax is None:
        _, ax = plt.subplots(figsize=(12, 6))
    transform = {'transform': ccrs.PlateCarree()} if hasattr(ax, 'projection') else {}
    q = ax.quiver(X, Y, U, V, np.hypot(U, V), cmap='viridis', scale=600, **transform)
    ax.figure.colorbar(q, ax=ax, label='Wind speed (m/s)', shrink=0.7)
    ax.set_title(f'Wind field {field.grid_size}x{field.grid_size}, max {field.max_speed:.1f} m/s')
    ax.set_xlabel('Longitude')
    ax.set_ylabel('Latitude')
    if show:
        plt.show()
    return ax
