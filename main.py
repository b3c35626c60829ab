import argparse
import logging
import time

from particles.config import EngineConfig, api_url_from_env
from particles.host import StaticHostMap
from particles.render_loop import RenderLoop
from wind.builder import FieldBuilder
from wind.sources import (DEFAULT_API_URL, DatasetFieldSource, FallbackFieldSource, GridFieldSource,
                          ProceduralFieldSource, SampleFieldSource, WeatherApiClient)
from wind.util import GLOBAL_BOUNDS, Bounds


def parse_bounds(text: str) -> Bounds:
    """'south,west,north,east' -> Bounds"""
    try:
        south, west, north, east = (float(x) for x in text.split(","))
        return Bounds(south=south, west=west, north=north, east=east)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid bounds {text!r}: {e}")


def build_source(args):
    procedural = ProceduralFieldSource()
    if args.source == "procedural":
        return procedural
    if args.source == "dataset":
        return DatasetFieldSource.open(args.dataset, pressure_level=args.pressure_level)

    client = WeatherApiClient(args.api_url, timeout=args.timeout)
    if args.source == "api-samples":
        builder = FieldBuilder(neighbors=args.neighbors)
        primary = SampleFieldSource(client, region=args.bounds, grid_size=args.grid_size, builder=builder)
    else:
        primary = GridFieldSource(client)
    return FallbackFieldSource(primary, procedural)


def run_headless(source, config: EngineConfig, args) -> None:
    """Step the engine without a display and report what happened."""
    frames = args.frames
    loop = RenderLoop(StaticHostMap(args.bounds), source, config=config)
    field = loop.refresh_now()
    loop.start(args.particles)
    print(f"Using {field}")
    respawned = 0
    drawn = 0
    start = time.perf_counter()
    for _ in range(frames):
        result = loop.step()
        respawned += int(result.state.respawned.sum())
        drawn += len(result.segments)
    elapsed = time.perf_counter() - start
    state = loop.system.snapshot()
    loop.stop()

    print(f"{frames} frames in {elapsed:.2f}s ({frames / max(elapsed, 1e-9):.0f} fps)")
    print(f"Particles: {len(state)}, respawns: {respawned}, segments drawn: {drawn}")
    if len(state):
        print(f"Mean speed at end: {state.speeds.mean():.2f} m/s")


def run_animation(source, config: EngineConfig, args) -> None:
    from particles.visualize import (MatplotlibHostMap, MatplotlibTrailCanvas,
                                     WindParticleAnimator, create_map_axes)

    b = args.bounds
    fig, ax = create_map_axes(extent=[b.west, b.east, b.south, b.north], features=not args.no_features)
    loop = RenderLoop(MatplotlibHostMap(ax), source, config=config, canvas=MatplotlibTrailCanvas(ax))
    loop.refresh_now()
    loop.start(args.particles)

    animator = WindParticleAnimator(loop, fig, interval=args.interval)
    animator.animate(frames=args.frames if args.save else None, show=not args.save)
    if args.save:
        animator.save(args.save, fps=max(1, 1000 // args.interval))
        print(f"Saved animation to {args.save}")
    loop.stop()


def main():
    parser = argparse.ArgumentParser(description="Animate wind particles over a map")
    parser.add_argument("--source", choices=["api", "api-samples", "procedural", "dataset"], default="api",
                        help="where the wind field comes from (API sources fall back to procedural)")
    parser.add_argument("--api-url", default=api_url_from_env(DEFAULT_API_URL))
    parser.add_argument("--timeout", type=float, default=10.0)
    parser.add_argument("--dataset", help="ERA5-style NetCDF file for --source dataset")
    parser.add_argument("--pressure-level", type=float, default=None)
    parser.add_argument("--bounds", type=parse_bounds, default=GLOBAL_BOUNDS,
                        help="viewport as south,west,north,east")
    parser.add_argument("--grid-size", type=int, default=40)
    parser.add_argument("--neighbors", type=int, default=None,
                        help="limit IDW to the k nearest samples")
    parser.add_argument("--particles", type=int, default=None)
    parser.add_argument("--frames", type=int, default=300)
    parser.add_argument("--interval", type=int, default=50, help="ms between animation frames")
    parser.add_argument("--save", help="write the animation to a .gif or .mp4 instead of showing it")
    parser.add_argument("--headless", action="store_true", help="run without matplotlib")
    parser.add_argument("--no-features", action="store_true", help="skip land/ocean/coastlines")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    if args.source == "dataset" and not args.dataset:
        parser.error("--source dataset needs --dataset PATH")

    logging.basicConfig(level=args.log_level.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = EngineConfig.from_env()
    source = build_source(args)
    if args.headless:
        run_headless(source, config, args)
    else:
        run_animation(source, config, args)


if __name__ == "__main__":
    main()
