#!/usr/bin/env python3
"""Benchmark map generation, zone placement and encoding."""

from __future__ import annotations

import argparse
import json
import time
from pathlib import Path

from terraweave.environment.generators.map_generator import MapGenerator
from terraweave.environment.generators.zones import ZoneConstraints, ZoneRequest
from terraweave.environment.grid import SizeConfig
from terraweave.environment.tile_types import (
    LOWLAND_TILES,
    create_default_catalog,
)

GRID_SIZES: tuple[tuple[int, int], ...] = (
    (16, 16),
    (32, 32),
    (48, 48),
    (64, 64),
)


def _zone_requests() -> list[ZoneRequest]:
    return [
        ZoneRequest(
            id="start",
            radius=3,
            allowed_tiles=LOWLAND_TILES,
            constraints=ZoneConstraints(flat=True, flatness_threshold=0.5, no_water=True),
            mandatory=True,
            priority=1,
        ),
        ZoneRequest(
            id="outpost",
            radius=2,
            allowed_tiles=LOWLAND_TILES,
            constraints=ZoneConstraints(no_water=True, min_zone_distance=8.0),
            priority=2,
        ),
    ]


class MapGenBenchmark:
    """Benchmark runner for the generation pipeline."""

    def __init__(self, iterations: int, with_zones: bool) -> None:
        self.iterations = iterations
        self.catalog = create_default_catalog()
        self.requests = _zone_requests() if with_zones else []
        self.results: dict[str, dict[str, float]] = {}

    def _run_case(self, width: int, height: int) -> dict[str, float]:
        """Run one grid size and return averaged timings and sizes."""
        generator = MapGenerator(self.catalog, SizeConfig(width, height))
        generate_total = 0.0
        encode_total = 0.0
        bytes_total = 0
        attempts_total = 0
        failures = 0

        for i in range(self.iterations):
            seed = (width * 1_000_000) + (height * 1_000) + i

            start = time.perf_counter()
            result = generator.generate(seed, self.requests)
            generate_total += time.perf_counter() - start
            attempts_total += result.attempts

            if result.model is None:
                failures += 1
                continue

            start = time.perf_counter()
            data = generator.encode(result.model)
            encode_total += time.perf_counter() - start
            bytes_total += len(data)

        succeeded = max(1, self.iterations - failures)
        return {
            "generate_ms": (generate_total / self.iterations) * 1000.0,
            "encode_ms": (encode_total / succeeded) * 1000.0,
            "bytes": bytes_total / succeeded,
            "attempts": attempts_total / self.iterations,
            "failures": float(failures),
        }

    def run(self) -> None:
        """Run all configured grid-size benchmarks."""
        print("Map Generation Benchmark")
        print("=" * 64)
        print(f"Iterations per size: {self.iterations}")
        print(f"Zones: {len(self.requests)}")
        print()
        print(
            f"{'Size':>10} {'Generate (ms)':>14} {'Encode (ms)':>12} "
            f"{'Bytes':>8} {'Attempts':>9} {'Fail':>5}"
        )
        print("-" * 64)

        for width, height in GRID_SIZES:
            size_key = f"{width}x{height}"
            case = self._run_case(width, height)
            self.results[size_key] = case
            print(
                f"{size_key:>10} {case['generate_ms']:14.2f} {case['encode_ms']:12.2f} "
                f"{case['bytes']:8.0f} {case['attempts']:9.2f} {case['failures']:5.0f}"
            )

    def save_results(self, filename: str) -> None:
        """Save benchmark output to a JSON file."""
        with Path(filename).open("w") as f:
            json.dump(self.results, f, indent=2)
        print(f"\nSaved benchmark results to {filename}")

    def compare_with_baseline(self, baseline_file: str) -> None:
        """Compare current run with a saved baseline JSON file."""
        try:
            with Path(baseline_file).open() as f:
                baseline: dict[str, dict[str, float]] = json.load(f)
        except FileNotFoundError:
            print(f"\nBaseline file not found: {baseline_file}")
            return

        print(f"\nComparison vs baseline: {baseline_file}")
        print("=" * 64)

        for size_key, current in self.results.items():
            if size_key not in baseline:
                continue

            old_ms = baseline[size_key].get("generate_ms", 0.0)
            new_ms = current["generate_ms"]
            if old_ms <= 0:
                continue

            delta_pct = ((new_ms - old_ms) / old_ms) * 100.0
            speed_ratio = old_ms / new_ms if new_ms > 0 else 0.0
            trend = "faster" if speed_ratio > 1.0 else "slower"

            print(
                f"{size_key:>10}: {new_ms:8.2f}ms "
                f"vs {old_ms:8.2f}ms | {speed_ratio:5.2f}x {trend} "
                f"({delta_pct:+6.1f}%)"
            )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Benchmark map generation")
    parser.add_argument(
        "--iterations",
        type=int,
        default=5,
        help="Number of runs per grid size (default: 5)",
    )
    parser.add_argument(
        "--no-zones", action="store_true", help="Skip zone placement"
    )
    parser.add_argument("--save", type=str, help="Save current results to JSON")
    parser.add_argument(
        "--compare",
        type=str,
        help="Compare current results against baseline JSON",
    )
    args = parser.parse_args(argv)

    benchmark = MapGenBenchmark(iterations=args.iterations, with_zones=not args.no_zones)
    benchmark.run()

    if args.save:
        benchmark.save_results(args.save)

    if args.compare:
        benchmark.compare_with_baseline(args.compare)


if __name__ == "__main__":
    main()
