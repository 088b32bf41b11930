"""Command line entry point.

    python -m terraweave generate --seed 12345 --width 32 --height 32 \\
        --zone start:3:sand,grass,forest:flat:no-water:mandatory:priority=1 \\
        --output map.bin --preview map.png
    python -m terraweave inspect map.bin

Zone options follow the id, radius and tile list, separated by colons:
flat, flat=<threshold>, no-water, mandatory, priority=<n>, edge=<n>,
separation=<distance>.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from terraweave import config
from terraweave.environment.generators.map_generator import MapGenerator, load
from terraweave.environment.generators.zones import ZoneConstraints, ZoneRequest
from terraweave.environment.grid import SizeConfig
from terraweave.environment.map_model import MapModel
from terraweave.environment.serialization import read_header
from terraweave.environment.tile_catalog import TileCatalog, load_catalog
from terraweave.environment.tile_types import create_default_catalog
from terraweave.errors import CorruptDataError, TerraweaveError

logger = logging.getLogger("terraweave")


def parse_zone(text: str, catalog: TileCatalog) -> ZoneRequest:
    """Parse "id:radius:tile,tile[:option...]" into a ZoneRequest."""
    parts = text.split(":")
    if len(parts) < 3:
        raise argparse.ArgumentTypeError(
            f"Zone must look like id:radius:tile,tile[:options], got {text!r}"
        )
    zone_id, radius_text, tiles_text, *options = parts

    try:
        radius = int(radius_text)
        allowed = frozenset(
            int(name) if name.isdigit() else catalog.id_for_name(name)
            for name in tiles_text.split(",")
            if name
        )
    except (KeyError, ValueError) as exc:
        raise argparse.ArgumentTypeError(f"Bad zone {zone_id!r}: {exc}") from exc

    constraint_args: dict[str, object] = {}
    mandatory = False
    priority = 0
    for option in options:
        key, _, value = option.partition("=")
        try:
            match key:
                case "flat":
                    constraint_args["flat"] = True
                    if value:
                        constraint_args["flatness_threshold"] = float(value)
                case "no-water":
                    constraint_args["no_water"] = True
                case "mandatory":
                    mandatory = True
                case "priority":
                    priority = int(value)
                case "edge":
                    constraint_args["min_edge_distance"] = int(value)
                case "separation":
                    constraint_args["min_zone_distance"] = float(value)
                case _:
                    raise argparse.ArgumentTypeError(f"Unknown zone option {option!r}")
        except ValueError as exc:
            raise argparse.ArgumentTypeError(f"Bad zone option {option!r}") from exc

    return ZoneRequest(
        id=zone_id,
        radius=radius,
        allowed_tiles=allowed,
        constraints=ZoneConstraints(**constraint_args),  # type: ignore[arg-type]
        mandatory=mandatory,
        priority=priority,
    )


def _load_catalog(path: str | None) -> TileCatalog:
    return load_catalog(path) if path else create_default_catalog()


def _describe(model: MapModel, catalog: TileCatalog | None) -> None:
    print(f"seed:     {model.seed}")
    print(f"size:     {model.width}x{model.height}")
    print(f"catalog:  {model.catalog_checksum:#010x}")
    if catalog is not None:
        counts = [0] * catalog.tile_count
        for tile_id in model.tiles.ravel().tolist():
            counts[tile_id] += 1
        for tile, count in zip(catalog.tiles, counts, strict=True):
            if count:
                print(f"  {tile.name:<16} {count:6d}")
    for zone in model.zones:
        print(f"zone {zone.id!r} at {zone.center}, radius {zone.radius}")
        for name, position in zone.sub_placement_positions():
            print(f"  {name} at {position}")


def cmd_generate(args: argparse.Namespace) -> int:
    catalog = _load_catalog(args.catalog)
    size = SizeConfig(
        width=args.width,
        height=args.height,
        max_height_delta=args.max_height_delta,
        pixels_per_cell=args.pixels_per_cell,
    )
    requests = [parse_zone(text, catalog) for text in args.zone]
    generator = MapGenerator(
        catalog,
        size,
        max_attempts=args.max_attempts,
        time_limit=args.time_limit,
    )

    result = generator.generate(args.seed, requests)
    for skipped in result.skipped_zones:
        print(f"skipped zone {skipped.zone_id!r}: {skipped.reason}")
    if result.model is None:
        assert result.failure is not None
        print(f"generation failed after {result.attempts} attempt(s): "
              f"{result.failure.reason}", file=sys.stderr)
        return 1

    print(f"attempts: {result.attempts}")
    _describe(result.model, catalog)

    if args.output:
        data = generator.encode(result.model)
        Path(args.output).write_bytes(data)
        print(f"wrote {len(data)} bytes to {args.output}")
    if args.preview:
        from terraweave.backends.pillow_preview import PillowMapPreview

        PillowMapPreview(catalog, size.pixels_per_cell).save(result.model, args.preview)
        print(f"wrote preview to {args.preview}")
    return 0


def cmd_inspect(args: argparse.Namespace) -> int:
    data = Path(args.path).read_bytes()
    try:
        header = read_header(data)
    except CorruptDataError as exc:
        print(f"{args.path}: {exc}", file=sys.stderr)
        return 1

    catalog = load_catalog(args.catalog) if args.catalog else None
    expected = catalog.checksum if catalog is not None else header.catalog_checksum
    result = load(data, expected, catalog)
    if result.model is None:
        print(f"{args.path}: {result.error}", file=sys.stderr)
        return 1

    mode = "RLE" if header.mode else "RAW"
    print(f"format:   v{header.version}, {len(data)} bytes, {mode} tile stream")
    _describe(result.model, catalog)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="terraweave", description="Deterministic WFC world-map generator"
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)
    subparsers = parser.add_subparsers(dest="command", required=True)

    gen = subparsers.add_parser("generate", help="Generate a map")
    gen.add_argument("--seed", type=int, help="Master seed (random if omitted)")
    gen.add_argument("--width", type=int, default=32)
    gen.add_argument("--height", type=int, default=32)
    gen.add_argument("--catalog", type=str, help="Tile catalog JSON file")
    gen.add_argument(
        "--zone",
        action="append",
        default=[],
        help="id:radius:tile,tile[:options] (repeatable)",
    )
    gen.add_argument(
        "--max-height-delta", type=float, default=config.DEFAULT_MAX_HEIGHT_DELTA
    )
    gen.add_argument("--max-attempts", type=int, default=config.DEFAULT_MAX_ATTEMPTS)
    gen.add_argument("--time-limit", type=float, help="Seconds, checked between attempts")
    gen.add_argument("--output", type=str, help="Write the encoded map here")
    gen.add_argument("--preview", type=str, help="Write a PNG preview here")
    gen.add_argument(
        "--pixels-per-cell", type=int, default=config.DEFAULT_PIXELS_PER_CELL
    )
    gen.set_defaults(func=cmd_generate)

    inspect = subparsers.add_parser("inspect", help="Describe an encoded map")
    inspect.add_argument("path")
    inspect.add_argument("--catalog", type=str, help="Tile catalog JSON file")
    inspect.set_defaults(func=cmd_inspect)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        return args.func(args)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    except TerraweaveError as exc:
        logger.error(str(exc))
        return 2


if __name__ == "__main__":
    sys.exit(main())
