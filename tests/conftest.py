from concurrent.futures import Executor, Future

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pytest
import requests

from particles.config import EngineConfig
from wind.util import Bounds
from wind.vector_field import VectorField

WORLD = Bounds(south=-90.0, west=-180.0, north=90.0, east=180.0)


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class ManualExecutor(Executor):
    """Hands out futures that the test completes by hand."""

    def __init__(self):
        self.futures = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.futures.append(future)
        return future


class StubResponse:
    def __init__(self, payload=None, status=200, bad_json=False):
        self.payload = payload
        self.status = status
        self.bad_json = bad_json

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} Server Error")

    def json(self):
        if self.bad_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self.payload


class StubSession:
    """Stands in for requests.Session; records every GET."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class StaticSource:
    """FieldSource returning a fixed field, or raising what it is given."""

    name = "static"

    def __init__(self, *results):
        self.results = list(results)
        self.loads = 0

    def load(self):
        self.loads += 1
        result = self.results[min(self.loads, len(self.results)) - 1]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def config():
    return EngineConfig(particle_count=400, seed=1234)


@pytest.fixture
def linear_field():
    """Regional field where u = 0.2 * lng + 2 * lat and v = -lat, exact under bilinear sampling."""
    bounds = Bounds(south=0.0, west=0.0, north=10.0, east=10.0)
    lats = np.linspace(bounds.south, bounds.north, 3)
    lngs = np.linspace(bounds.west, bounds.east, 3)
    LAT, LNG = np.meshgrid(lats, lngs, indexing="ij")
    return VectorField(0.2 * LNG + 2 * LAT, -LAT, bounds.south, bounds.north, bounds.west, bounds.east)


@pytest.fixture
def inline_executor():
    return InlineExecutor()


@pytest.fixture
def manual_executor():
    return ManualExecutor()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stub_session():
    def make(payload=None, status=200, bad_json=False, error=None):
        return StubSession(StubResponse(payload, status, bad_json), error=error)
    return make
