import threading

import numpy as np
import pytest

from particles.config import EngineConfig
from particles.host import StaticHostMap
from particles.render_loop import RenderLoop, TrailCanvas, segment_alpha
from wind.sources import DataSourceError, ProceduralFieldSource
from wind.util import GLOBAL_BOUNDS, Bounds
from wind.vector_field import VectorField

from conftest import WORLD, StaticSource

EUROPE = Bounds(south=35.0, west=-10.0, north=60.0, east=30.0)


class RecordingCanvas(TrailCanvas):
    def __init__(self):
        self.fades = []
        self.drawn = []
        self.clears = 0
        self.released = 0

    def fade(self, amount):
        self.fades.append(amount)

    def draw_segments(self, segments, alphas, speeds):
        self.drawn.append((segments, alphas, speeds))

    def clear(self):
        self.clears += 1

    def release(self):
        self.released += 1


@pytest.fixture
def canvas():
    return RecordingCanvas()


@pytest.fixture
def small_config():
    return EngineConfig(particle_count=300, seed=7)


def make_loop(host, source, config, canvas, executor, clock=None):
    kwargs = {"clock": clock} if clock is not None else {}
    return RenderLoop(host, source, config=config, canvas=canvas, executor=executor, **kwargs)


def test_start_initializes_and_subscribes(small_config, canvas, inline_executor):
    host = StaticHostMap(EUROPE)
    loop = make_loop(host, StaticSource(VectorField.uniform(5, 0, WORLD)), small_config, canvas, inline_executor)
    loop.start()
    assert loop.running
    assert host.listener_count == 1
    assert loop.system.count == 300
    assert inline_executor.submitted == 1


def test_start_twice_is_an_error(small_config, canvas, inline_executor):
    loop = make_loop(StaticHostMap(EUROPE), StaticSource(None), small_config, canvas, inline_executor)
    loop.start()
    with pytest.raises(RuntimeError):
        loop.start()


def test_stop_releases_everything_and_is_idempotent(small_config, canvas, inline_executor):
    host = StaticHostMap(EUROPE)
    loop = make_loop(host, StaticSource(VectorField.uniform(5, 0, WORLD)), small_config, canvas, inline_executor)
    loop.start()
    loop.step()
    loop.stop()
    loop.stop()
    assert not loop.running
    assert host.listener_count == 0
    assert canvas.released == 1
    assert loop.system.count == 0
    assert loop.step() is None


def test_step_before_start_does_nothing(small_config, canvas, inline_executor):
    loop = make_loop(StaticHostMap(EUROPE), StaticSource(None), small_config, canvas, inline_executor)
    assert loop.step() is None
    assert canvas.fades == []


def test_first_step_publishes_loaded_field(small_config, canvas, inline_executor):
    field = VectorField.uniform(5, 0, WORLD)
    loop = make_loop(StaticHostMap(EUROPE), StaticSource(field), small_config, canvas, inline_executor)
    loop.start()
    assert loop.field is None
    frame = loop.step()
    assert loop.field is field
    assert frame.advanced
    assert canvas.fades == [small_config.trail_fade]
    assert len(canvas.drawn) == 1


def test_frames_without_field_are_calm(small_config, canvas, manual_executor):
    loop = make_loop(StaticHostMap(EUROPE), StaticSource(None), small_config, canvas, manual_executor)
    loop.start()
    before_lats, before_lngs = loop.system.positions()
    frame = loop.step()
    stayed = ~frame.state.respawned
    np.testing.assert_allclose(frame.lngs[stayed], before_lngs[stayed], atol=1e-9)
    np.testing.assert_allclose(frame.lats[stayed], before_lats[stayed])


def test_refresh_runs_on_interval(small_config, canvas, inline_executor, clock):
    source = StaticSource(VectorField.uniform(5, 0, WORLD))
    loop = make_loop(StaticHostMap(EUROPE), source, small_config, canvas, inline_executor, clock)
    loop.start()
    for _ in range(5):
        loop.step()
        clock.advance(10)
    assert source.loads == 1

    clock.advance(small_config.refresh_interval)
    loop.step()
    assert source.loads == 2
    assert loop.refresh_pending
    loop.step()
    assert not loop.refresh_pending


def test_failed_refresh_keeps_previous_field(small_config, canvas, inline_executor, clock):
    first = VectorField.uniform(5, 0, WORLD)
    source = StaticSource(first, DataSourceError("API down"))
    loop = make_loop(StaticHostMap(EUROPE), source, small_config, canvas, inline_executor, clock)
    loop.start()
    loop.step()
    assert loop.field is first

    clock.advance(small_config.refresh_interval)
    loop.step()
    frame = loop.step()
    assert source.loads == 2
    assert loop.field is first
    assert frame.advanced


def test_non_field_result_is_ignored(small_config, canvas, inline_executor):
    loop = make_loop(StaticHostMap(EUROPE), StaticSource({"grid": []}), small_config, canvas, inline_executor)
    loop.start()
    loop.step()
    assert loop.field is None


def test_refresh_now_publishes_synchronously(small_config, canvas, manual_executor):
    field = VectorField.uniform(1, 1, WORLD)
    loop = make_loop(StaticHostMap(EUROPE), StaticSource(field), small_config, canvas, manual_executor)
    assert loop.refresh_now() is field
    assert loop.field is field


def test_refresh_now_failure_returns_none(small_config, canvas, manual_executor):
    loop = make_loop(StaticHostMap(EUROPE), StaticSource(DataSourceError("down")), small_config, canvas,
                     manual_executor)
    assert loop.refresh_now() is None
    assert loop.field is None


def test_refresh_completing_after_stop_is_discarded(small_config, canvas, manual_executor):
    loop = make_loop(StaticHostMap(EUROPE), StaticSource(None), small_config, canvas, manual_executor)
    loop.start()
    in_flight = manual_executor.futures[0]
    assert in_flight.set_running_or_notify_cancel()
    loop.stop()

    in_flight.set_result(VectorField.uniform(5, 0, WORLD))
    assert loop.step() is None
    assert loop.field is None


def test_refresh_on_worker_thread_after_stop_is_discarded(small_config, canvas):
    release = threading.Event()
    finished = threading.Event()

    class SlowSource:
        name = "slow"

        def load(self):
            release.wait(5)
            finished.set()
            return VectorField.uniform(5, 0, WORLD)

    loop = RenderLoop(StaticHostMap(EUROPE), SlowSource(), config=small_config, canvas=canvas)
    loop.start()
    loop.stop()
    release.set()
    assert finished.wait(5)
    assert loop.field is None


def test_paused_loop_does_not_advance(small_config, canvas, inline_executor):
    loop = make_loop(StaticHostMap(EUROPE), StaticSource(VectorField.uniform(20, 0, WORLD)), small_config,
                     canvas, inline_executor)
    loop.start()
    loop.set_enabled(False)
    lats, lngs = loop.system.positions()
    frame = loop.step()
    assert not frame.advanced
    np.testing.assert_array_equal(frame.lngs, lngs)
    assert canvas.fades == []

    loop.set_enabled(True)
    assert loop.enabled
    assert loop.step().advanced


def test_unavailable_viewport_defers_initialization(small_config, canvas, inline_executor):
    host = StaticHostMap(None)
    loop = make_loop(host, StaticSource(VectorField.uniform(5, 0, WORLD)), small_config, canvas, inline_executor)
    loop.start()
    assert loop.system.count == 0
    frame = loop.step()
    assert not frame.advanced
    assert len(frame.state) == 0

    host.move_to(EUROPE)
    frame = loop.step()
    assert frame.advanced
    assert loop.system.count == 300


def test_host_errors_read_as_missing_viewport(small_config, canvas, inline_executor):
    class BrokenHost(StaticHostMap):
        def get_viewport_bounds(self):
            raise RuntimeError("map container has no size yet")

    loop = make_loop(BrokenHost(EUROPE), StaticSource(None), small_config, canvas, inline_executor)
    loop.start()
    assert not loop.step().advanced


@pytest.mark.parametrize("broken", ["project", "screen_size"])
def test_unready_projection_skips_the_frame(small_config, canvas, inline_executor, broken):
    class UnreadyHost(StaticHostMap):
        pass

    def not_ready(*args):
        raise RuntimeError("map not ready")

    setattr(UnreadyHost, broken, not_ready)
    loop = make_loop(UnreadyHost(EUROPE), StaticSource(VectorField.uniform(5, 0, WORLD)), small_config, canvas,
                     inline_executor)
    loop.start()
    lats, lngs = loop.system.positions()
    frame = loop.step()
    assert not frame.advanced
    np.testing.assert_array_equal(frame.lngs, lngs)
    assert canvas.fades == [] and canvas.drawn == []


def test_polar_viewport_after_deferred_start(small_config, canvas, inline_executor):
    host = StaticHostMap(None)
    loop = make_loop(host, StaticSource(VectorField.uniform(5, 0, WORLD)), small_config, canvas, inline_executor)
    loop.start()
    host.move_to(Bounds(south=86.0, west=0.0, north=89.0, east=10.0))
    frame = loop.step()
    assert frame.advanced
    assert len(frame.state) == 300
    assert np.all(frame.lats <= small_config.lat_limit)


def test_viewport_change_reseeds_and_clears_trails(small_config, canvas, inline_executor):
    host = StaticHostMap(EUROPE)
    loop = make_loop(host, StaticSource(VectorField.uniform(5, 0, WORLD)), small_config, canvas, inline_executor)
    loop.start()
    asia = Bounds(south=10.0, west=90.0, north=40.0, east=140.0)
    host.move_to(asia)
    lats, lngs = loop.system.positions()
    inside = (lats >= asia.south) & (lats <= asia.north) & (lngs >= asia.west) & (lngs <= asia.east)
    assert inside.sum() == int(300 * small_config.reseed_fraction)
    assert canvas.clears == 1


def test_resize_reseeds(small_config, canvas, inline_executor):
    host = StaticHostMap(EUROPE)
    loop = make_loop(host, StaticSource(None), small_config, canvas, inline_executor)
    loop.start()
    host.resize(800, 600)
    assert canvas.clears == 1


def test_segments_follow_particles_on_screen(small_config, canvas, inline_executor):
    host = StaticHostMap(GLOBAL_BOUNDS, width=1024, height=512)
    loop = make_loop(host, StaticSource(VectorField.uniform(10, 0, WORLD)), small_config, canvas, inline_executor)
    loop.start()
    loop.step()
    frame = loop.step()

    assert frame.segments.shape[1:] == (2, 2)
    assert len(frame.segments) > 0.8 * (~frame.state.respawned).sum()
    lengths = np.hypot(*(frame.segments[:, 1] - frame.segments[:, 0]).T)
    assert np.all(lengths < small_config.max_jump_px)
    # eastward wind moves every drawn segment to the right
    assert np.all(frame.segments[:, 1, 0] > frame.segments[:, 0, 0])
    assert len(frame.segment_alphas) == len(frame.segments) == len(frame.segment_speeds)


def test_long_jumps_are_not_drawn(small_config, canvas, inline_executor):
    host = StaticHostMap(GLOBAL_BOUNDS, width=1024, height=512)
    loop = make_loop(host, StaticSource(VectorField.uniform(5000, 0, WORLD)), small_config, canvas, inline_executor)
    loop.start()
    loop.step()
    frame = loop.step()
    assert frame.advanced
    assert len(frame.segments) == 0
    assert canvas.drawn == []


def test_segment_alpha():
    alphas = segment_alpha(np.array([0.0, 100.0, 10.0]), np.array([0, 0, 50]), np.array([100, 100, 100]))
    assert alphas[0] == pytest.approx(0.25 * 0.7)
    assert alphas[1] == pytest.approx(0.7 * 0.7)
    assert alphas[2] == pytest.approx(0.45 * 0.5 * 0.7)
    assert segment_alpha(5.0, 80, 80) == pytest.approx(0.0)


def test_procedural_source_end_to_end(small_config, canvas, inline_executor):
    loop = make_loop(StaticHostMap(GLOBAL_BOUNDS), ProceduralFieldSource(grid_size=20), small_config, canvas,
                     inline_executor)
    loop.start()
    for _ in range(50):
        frame = loop.step()
        assert len(frame.state) == 300
        assert np.all(np.isfinite(frame.lats)) and np.all(np.isfinite(frame.lngs))
    assert loop.frame_count == 50


def test_start_skips_load_when_field_already_published(small_config, canvas, inline_executor):
    source = StaticSource(VectorField.uniform(5, 0, WORLD))
    loop = make_loop(StaticHostMap(EUROPE), source, small_config, canvas, inline_executor)
    loop.refresh_now()
    loop.start()
    assert inline_executor.submitted == 0
    assert not loop.refresh_pending
    loop.step()
    assert source.loads == 1


def test_set_particle_count_resizes_running_pool(small_config, canvas, inline_executor):
    loop = make_loop(StaticHostMap(EUROPE), StaticSource(VectorField.uniform(5, 0, WORLD)), small_config, canvas,
                     inline_executor)
    loop.start()
    loop.step()
    loop.set_particle_count(120)
    assert loop.running
    assert loop.system.count == 120
    assert canvas.clears == 1
    assert len(loop.step().state) == 120

    with pytest.raises(ValueError):
        loop.set_particle_count(-5)


def test_set_particle_count_before_start_sets_the_default(small_config, canvas, inline_executor):
    loop = make_loop(StaticHostMap(EUROPE), StaticSource(None), small_config, canvas, inline_executor)
    loop.set_particle_count(80)
    assert loop.system.count == 0
    loop.start()
    assert loop.system.count == 80


def test_reset_respawns_the_pool(small_config, canvas, inline_executor):
    loop = make_loop(StaticHostMap(EUROPE), StaticSource(None), small_config, canvas, inline_executor)
    loop.start()
    for _ in range(10):
        loop.step()
    loop.reset()
    state = loop.system.snapshot()
    assert len(state) == 300
    assert np.all(state.ages < small_config.initial_age_max)
    assert canvas.clears == 1


def test_reset_without_viewport_defers(small_config, canvas, inline_executor):
    host = StaticHostMap(EUROPE)
    loop = make_loop(host, StaticSource(None), small_config, canvas, inline_executor)
    loop.start()
    host.move_to(None)
    loop.reset()
    assert loop.system.count == 0
    host.move_to(EUROPE)
    loop.step()
    assert loop.system.count == 300
