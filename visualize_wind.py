import argparse
import logging

import matplotlib.pyplot as plt

from particles.config import api_url_from_env
from particles.visualize import create_map_axes, plot_wind_field
from wind.builder import FieldBuilder
from wind.sources import DEFAULT_API_URL, ProceduralFieldSource, default_source


def main():
    parser = argparse.ArgumentParser(description="Quiver plot of the current wind field")
    parser.add_argument("--procedural", action="store_true", help="skip the API")
    parser.add_argument("--smooth", type=int, default=0, help="box-filter passes before plotting")
    parser.add_argument("--stride", type=int, default=2)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper())

    if args.procedural:
        source = ProceduralFieldSource()
    else:
        source = default_source(api_url_from_env(DEFAULT_API_URL))
    field = source.load()
    print(f"Loaded {field}, max speed {field.max_speed:.1f} m/s")

    if args.smooth:
        field = FieldBuilder.smooth(field, passes=args.smooth)

    _, ax = create_map_axes()
    plot_wind_field(field, ax=ax, stride=args.stride)
    plt.show()


if __name__ == "__main__":
    main()
