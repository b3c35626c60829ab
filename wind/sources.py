"""
Where wind fields come from.

`WeatherApiClient` talks to the weather HTTP API (a prebuilt global grid, or
sparse samples for a region). The `FieldSource` variants turn one of those, an
ERA5-style xarray dataset, or a synthetic generator into a `VectorField`.
`FallbackFieldSource` keeps the animation alive when the API is down.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import requests
import xarray as xr
from scipy.interpolate import RegularGridInterpolator

from wind.builder import FieldBuilder
from wind.util import GLOBAL_BOUNDS, Bounds, wind_to_components, wrap_lng
from wind.vector_field import VectorField

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:5000/api"


class DataSourceError(RuntimeError):
    """The data source failed (network, HTTP status, malformed payload)."""


@dataclass
class WeatherSample:
    """One irregular observation used as FieldBuilder input."""
    lat: float
    lng: float
    u: float  # m/s, positive eastward
    v: float  # m/s, positive northward
    value: Optional[float] = None  # scalar layer value, e.g. temperature

    @classmethod
    def from_record(cls, record: dict) -> "WeatherSample":
        """
        Parse an API record.

        Accepts explicit u/v, or windSpeed + windDirection (meteorological,
        direction the wind blows from).
        """
        try:
            lat = float(record["lat"])
            lng = float(record["lng"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"sample without usable lat/lng: {record!r}") from e

        value = record.get("value")
        value = float(value) if value is not None else None

        if record.get("u") is not None and record.get("v") is not None:
            u, v = float(record["u"]), float(record["v"])
        elif record.get("windSpeed") is not None:
            u, v = wind_to_components(float(record["windSpeed"]),
                                      float(record.get("windDirection") or 0.0))
            u, v = float(u), float(v)
        else:
            raise ValueError(f"sample has neither u/v nor windSpeed: {record!r}")
        return cls(lat=lat, lng=lng, u=u, v=v, value=value)


class WeatherApiClient:
    """
    Thin client for the weather API.

    Failures are raised as DataSourceError; an empty result is returned as
    empty so callers can tell "no data" from "no connection".
    """

    def __init__(self, base_url: str = DEFAULT_API_URL, timeout: float = 10.0, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

    def _get(self, path: str, params: Optional[dict] = None):
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as e:
            raise DataSourceError(f"GET {url} failed: {e}") from e
        except ValueError as e:
            raise DataSourceError(f"GET {url} returned invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise DataSourceError(f"GET {url} returned {type(body).__name__}, expected an object")
        if not body.get("success", False):
            raise DataSourceError(f"GET {url} reported failure: {body.get('error', 'unknown error')}")
        if "data" not in body:
            raise DataSourceError(f"GET {url} response has no data")
        return body["data"]

    def fetch_vector_field(self) -> dict:
        """Prebuilt dense grid: {grid, gridSize, latMin, latMax, lngMin, lngMax}."""
        data = self._get("weather/wind-field")
        if not isinstance(data, dict):
            raise DataSourceError("wind-field data is not an object")
        return data

    def fetch_samples(self, region: Bounds, resolution: int = 30) -> List[WeatherSample]:
        """Sparse wind samples inside region."""
        data = self._get("weather/wind-vectors",
                         params={"bounds": region.as_region(), "resolution": resolution})
        records = data.get("vectors") if isinstance(data, dict) else data
        if records is None:
            return []
        if not isinstance(records, list):
            raise DataSourceError("wind-vectors data is not a list")
        try:
            return [WeatherSample.from_record(r) for r in records]
        except (ValueError, TypeError, AttributeError) as e:
            raise DataSourceError(f"malformed wind sample: {e}") from e


class FieldSource:
    """Anything that can produce a fresh VectorField."""

    name = "source"

    def load(self) -> VectorField:  # pragma: no cover - interface
        raise NotImplementedError


class GridFieldSource(FieldSource):
    """Dense grid straight from the API, no interpolation needed."""

    name = "api-grid"

    def __init__(self, client: WeatherApiClient):
        self.client = client

    def load(self) -> VectorField:
        field = FieldBuilder.from_grid(self.client.fetch_vector_field())
        logger.info("Loaded %s from API", field)
        return field


class SampleFieldSource(FieldSource):
    """Sparse API samples interpolated onto a grid with IDW."""

    name = "api-samples"

    def __init__(self,
                 client: WeatherApiClient,
                 region: Bounds = GLOBAL_BOUNDS,
                 grid_size: int = 40,
                 builder: Optional[FieldBuilder] = None,
                 resolution: int = 30):
        self.client = client
        self.region = region
        self.grid_size = grid_size
        self.builder = builder or FieldBuilder()
        self.resolution = resolution

    def load(self) -> VectorField:
        samples = self.client.fetch_samples(self.region, self.resolution)
        return self.builder.build_from_samples(samples, self.region, self.grid_size)


def procedural_wind(lats, lngs):
    """
    Deterministic, plausible-looking (not physical) wind at lat/lng.

    Zonal bands (easterly trades, mid-latitude westerlies, polar easterlies)
    with sinusoidal meanders. Longitude wavenumbers are integers so the pattern
    is cyclic across the antimeridian.
    """
    lats = np.asarray(lats, dtype=float)
    lngs = np.asarray(lngs, dtype=float)
    lat_r = np.radians(lats)
    lng_r = np.radians(lngs)
    abs_lat = np.abs(lats)

    bands = [abs_lat < 30, abs_lat < 60]
    u = np.select(bands, [-10 - np.cos(lat_r * 4) * 5, 15 + np.sin(lat_r * 3) * 7],
                  -8 - np.cos(lat_r * 5) * 4)
    v = np.select(bands, [np.sin(lat_r * 3) * 4, np.cos(lat_r * 4) * 5],
                  np.sin(lat_r * 3) * 3)

    noise1 = np.sin(lat_r * 8 + lng_r * 3) * np.cos(lat_r * 6 - lng_r * 2)
    noise2 = np.sin(lat_r * 10 + lng_r * 5) * np.cos(lat_r * 8 + lng_r * 4)
    u = u + noise1 * 6 + noise2 * 3
    v = v + noise2 * 6 + noise1 * 3
    return u, v


class ProceduralFieldSource(FieldSource):
    """Synthetic fallback field, used only when no real data is available."""

    name = "procedural"

    def __init__(self, bounds: Bounds = GLOBAL_BOUNDS, grid_size: int = 60):
        if grid_size < 1:
            raise ValueError(f"grid_size must be >= 1, got {grid_size}")
        self.bounds = bounds
        self.grid_size = grid_size

    def load(self) -> VectorField:
        lats = np.linspace(self.bounds.south, self.bounds.north, self.grid_size + 1)
        lngs = np.linspace(self.bounds.west, self.bounds.east, self.grid_size + 1)
        LAT, LNG = np.meshgrid(lats, lngs, indexing="ij")
        u, v = procedural_wind(LAT, LNG)
        return VectorField(u, v, self.bounds.south, self.bounds.north, self.bounds.west, self.bounds.east)


class DatasetFieldSource(FieldSource):
    """
    Regrid an ERA5-style xarray Dataset onto the engine's regular grid.

    The dataset needs `u` and `v` variables over `latitude` / `longitude`, and
    may carry `pressure_level` and `valid_time` dimensions, which are reduced
    by nearest level and by index.
    """

    name = "dataset"

    def __init__(self,
                 ds: xr.Dataset,
                 bounds: Bounds = GLOBAL_BOUNDS,
                 grid_size: int = 60,
                 pressure_level: Optional[float] = None,
                 time_index: int = 0):
        self.ds = ds
        self.bounds = bounds
        self.grid_size = grid_size
        self.time_coord = "valid_time"
        self.plevel_coord = "pressure_level"
        self.lat_coord = "latitude"
        self.lon_coord = "longitude"
        self.pressure_level = pressure_level
        self.time_index = time_index

    @classmethod
    def open(cls, path: str, engine: str = "netcdf4", **kwargs) -> "DatasetFieldSource":
        return cls(xr.open_dataset(path, engine=engine), **kwargs)

    def _slice(self) -> xr.Dataset:
        ds = self.ds
        for var in ("u", "v"):
            if var not in ds:
                raise ValueError(f"dataset has no '{var}' variable")
        if self.time_coord in ds.dims:
            ds = ds.isel({self.time_coord: self.time_index})
        if self.plevel_coord in ds.dims:
            if self.pressure_level is None:
                ds = ds.isel({self.plevel_coord: 0})
            else:
                ds = ds.sel({self.plevel_coord: self.pressure_level}, method="nearest")
        # ERA5 ships 0..360 longitudes and descending latitudes
        ds = ds.assign_coords({self.lon_coord: wrap_lng(ds[self.lon_coord].values)})
        ds = ds.sortby(self.lon_coord).drop_duplicates(self.lon_coord)
        return ds.sortby(self.lat_coord)

    def load(self) -> VectorField:
        ds = self._slice()
        lat_vals = ds[self.lat_coord].values
        lon_vals = ds[self.lon_coord].values
        u_vals = ds["u"].transpose(self.lat_coord, self.lon_coord).values
        v_vals = ds["v"].transpose(self.lat_coord, self.lon_coord).values

        u_interp = RegularGridInterpolator((lat_vals, lon_vals), u_vals,
                                           method="linear", bounds_error=False, fill_value=None)
        v_interp = RegularGridInterpolator((lat_vals, lon_vals), v_vals,
                                           method="linear", bounds_error=False, fill_value=None)

        lats = np.linspace(self.bounds.south, self.bounds.north, self.grid_size + 1)
        lngs = wrap_lng(np.linspace(self.bounds.west, self.bounds.east, self.grid_size + 1))
        LAT, LNG = np.meshgrid(lats, lngs, indexing="ij")
        points = np.column_stack([LAT.ravel(), LNG.ravel()])
        shape = LAT.shape
        u = u_interp(points).reshape(shape)
        v = v_interp(points).reshape(shape)
        logger.info("Regridded dataset onto %dx%d field", self.grid_size, self.grid_size)
        return VectorField(u, v, self.bounds.south, self.bounds.north, self.bounds.west, self.bounds.east)


class FallbackFieldSource(FieldSource):
    """
    Try the primary source, fall back to another one when it fails.

    Only failures trigger the fallback; a primary that answers with no data
    yields its (calm) field.
    """

    name = "fallback"

    def __init__(self, primary: FieldSource, fallback: FieldSource):
        self.primary = primary
        self.fallback = fallback
        self.last_origin: Optional[str] = None

    def load(self) -> VectorField:
        try:
            field = self.primary.load()
            self.last_origin = self.primary.name
            return field
        except (DataSourceError, ValueError) as e:
            logger.warning("%s source unavailable (%s), using %s field",
                           self.primary.name, e, self.fallback.name)
        field = self.fallback.load()
        self.last_origin = self.fallback.name
        return field


def default_source(base_url: str = DEFAULT_API_URL, timeout: float = 10.0) -> FieldSource:
    """API grid with the procedural field as safety net."""
    client = WeatherApiClient(base_url, timeout=timeout)
    return FallbackFieldSource(GridFieldSource(client), ProceduralFieldSource())
