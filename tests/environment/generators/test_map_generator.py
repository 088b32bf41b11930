"""Tests for the generation orchestrator: retry, zones, typed results."""

from __future__ import annotations

import itertools
import math
import os
import subprocess
import sys
from pathlib import Path

import numpy as np
import pytest

from terraweave.environment.generators.constraint_solver import AdjacencyRules
from terraweave.environment.generators.map_generator import (
    AttemptReport,
    GenerationResult,
    MapGenerator,
    generate,
    load,
)
from terraweave.environment.generators.zones import (
    SubPlacement,
    ZoneConstraints,
    ZoneRequest,
    ZoneStatus,
)
from terraweave.environment.grid import SizeConfig
from terraweave.environment.tile_catalog import TileCatalog
from terraweave.environment.tile_types import LOWLAND_TILES
from terraweave.errors import ConfigError, CorruptDataError, GenerationFailure


def _start_zone(**kwargs: object) -> ZoneRequest:
    return ZoneRequest(
        id="start",
        radius=3,
        allowed_tiles=LOWLAND_TILES,
        constraints=ZoneConstraints(flat=True, flatness_threshold=0.5, no_water=True),
        mandatory=True,
        priority=1,
        **kwargs,  # type: ignore[arg-type]
    )


def _assert_adjacency_invariant(tiles: np.ndarray, rules: AdjacencyRules) -> None:
    width, height = tiles.shape
    for x in range(width):
        for y in range(height):
            if x + 1 < width:
                assert rules.pair_allowed(int(tiles[x, y]), int(tiles[x + 1, y]))
            if y + 1 < height:
                assert rules.pair_allowed(int(tiles[x, y]), int(tiles[x, y + 1]))


class TestGeneration:
    """Whole-map generation with the default catalog."""

    def test_generates_resolved_map(self, default_catalog: TileCatalog) -> None:
        generator = MapGenerator(default_catalog, SizeConfig(24, 16))
        result = generator.generate(seed=42)

        assert result.ok
        model = result.unwrap()
        assert model.dimensions == (24, 16)
        assert model.seed == 42
        assert model.catalog_checksum == default_catalog.checksum
        _assert_adjacency_invariant(model.tiles, generator.rules)

    @pytest.mark.parametrize("seed", [0, 7, 12345, 2**63])
    def test_same_inputs_produce_identical_models(
        self, default_catalog: TileCatalog, seed: int
    ) -> None:
        """Determinism: equal seeds, catalog and requests give equal models."""
        size = SizeConfig(20, 20)
        a = MapGenerator(default_catalog, size).generate(seed, [_start_zone()])
        b = MapGenerator(default_catalog, size).generate(seed, [_start_zone()])

        assert a.ok == b.ok
        assert a.attempts == b.attempts
        if a.ok:
            assert a.model == b.model
            assert np.array_equal(a.unwrap().tiles, b.unwrap().tiles)
        else:
            assert a.failure is not None and b.failure is not None
            assert a.failure.reason == b.failure.reason

    def test_omitted_seed_is_returned(self, default_catalog: TileCatalog) -> None:
        generator = MapGenerator(default_catalog, SizeConfig(8, 8))
        result = generator.generate()

        assert 0 <= result.seed < 2**64
        assert result.unwrap().seed == result.seed
        # The returned seed reproduces the map.
        assert generator.generate(result.seed).unwrap() == result.unwrap()

    def test_model_tiles_are_read_only(self, default_catalog: TileCatalog) -> None:
        model = generate(SizeConfig(6, 6), seed=1).unwrap()
        with pytest.raises(ValueError):
            model.tiles[0, 0] = 0

    def test_module_level_generate_uses_default_catalog(
        self, default_catalog: TileCatalog
    ) -> None:
        model = generate(SizeConfig(10, 10), seed=5).unwrap()
        assert model.catalog_checksum == default_catalog.checksum


class TestScenarios:
    """End-to-end scenarios."""

    def test_start_zone_on_16x16(self, default_catalog: TileCatalog) -> None:
        """Seed 12345, 16x16, a mandatory flat dry radius-3 start zone."""
        generator = MapGenerator(default_catalog, SizeConfig(16, 16))
        result = generator.generate(12345, [_start_zone()])

        model = result.unwrap()
        assert [zone.id for zone in model.zones] == ["start"]
        zone = model.zone("start")
        assert zone is not None
        cx, cy = zone.center
        assert 3 <= cx <= 12 and 3 <= cy <= 12

        footprint = zone.footprint()
        assert len(footprint) == 49
        for x, y in footprint:
            assert model.tile_at(x, y) in LOWLAND_TILES
        _assert_adjacency_invariant(model.tiles, generator.rules)
        assert result.zone_statuses == {"start": ZoneStatus.COMMITTED}

        again = MapGenerator(default_catalog, SizeConfig(16, 16)).generate(
            12345, [_start_zone()]
        )
        assert again.unwrap() == model
        assert again.attempts == result.attempts

    def test_start_zone_retries_when_no_center_fits(
        self, default_catalog: TileCatalog
    ) -> None:
        """The first attempt for seed 12345 has water under every candidate."""
        generator = MapGenerator(default_catalog, SizeConfig(16, 16))
        reports = list(generator.generate_stepwise(12345, [_start_zone()]))

        assert not reports[0].succeeded
        assert "start" in reports[0].reason
        assert reports[-1].succeeded
        assert len(reports) > 1

    def test_incompatible_tiles_exhaust_retry_budget(
        self, incompatible_catalog: TileCatalog
    ) -> None:
        """Every attempt contradicts, so the result carries GenerationFailure."""
        generator = MapGenerator(incompatible_catalog, SizeConfig(4, 4), max_attempts=3)
        result = generator.generate(seed=99)

        assert not result.ok
        assert result.model is None
        assert result.attempts == 3
        assert result.failure is not None
        assert result.failure.attempts == 3
        assert result.failure.seed == 99
        with pytest.raises(GenerationFailure):
            result.unwrap()


class TestZonePolicies:
    """Mandatory and optional zone outcomes."""

    def test_unplaceable_mandatory_zone_fails_generation(
        self, default_catalog: TileCatalog
    ) -> None:
        impossible = ZoneRequest(
            id="temple",
            radius=2,
            allowed_tiles=LOWLAND_TILES,
            constraints=ZoneConstraints(flat=True, flatness_threshold=0.0, no_water=True),
            mandatory=True,
        )
        generator = MapGenerator(
            default_catalog, SizeConfig(16, 16), max_attempts=3, candidate_budget=8
        )
        result = generator.generate(1, [impossible])

        assert not result.ok
        assert result.failure is not None
        assert result.failure.zone_id == "temple"
        # No valid center abandons the attempt; every attempt is used up.
        assert result.attempts == 3
        assert result.failure.attempts == 3
        assert result.zone_statuses["temple"] is ZoneStatus.FAILED

    def test_mandatory_resolve_contradiction_fails_at_once(
        self, default_catalog: TileCatalog, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        request = ZoneRequest(
            id="keep",
            radius=1,
            allowed_tiles=frozenset(range(default_catalog.tile_count)),
            mandatory=True,
        )
        generator = MapGenerator(default_catalog, SizeConfig(16, 16), max_attempts=5)
        monkeypatch.setattr(
            generator.placer,
            "commit",
            lambda grid, zone, rng: "localized re-solve contradicted: pinned cells",
        )
        result = generator.generate(4, [request])

        assert not result.ok
        assert result.failure is not None
        assert result.failure.zone_id == "keep"
        assert "re-solve" in result.failure.reason
        assert result.attempts == 1
        assert result.zone_statuses["keep"] is ZoneStatus.FAILED

    def test_unplaceable_optional_zone_is_skipped(
        self, default_catalog: TileCatalog
    ) -> None:
        impossible = ZoneRequest(
            id="shrine",
            radius=1,
            allowed_tiles=LOWLAND_TILES,
            constraints=ZoneConstraints(flat=True, flatness_threshold=0.0, no_water=True),
        )
        result = MapGenerator(
            default_catalog, SizeConfig(16, 16), candidate_budget=4
        ).generate(1, [impossible])

        assert result.ok
        assert result.unwrap().zones == ()
        assert [skipped.zone_id for skipped in result.skipped_zones] == ["shrine"]

    def test_zone_separation_in_generated_maps(self, default_catalog: TileCatalog) -> None:
        requests = [
            ZoneRequest(
                id=f"camp{i}",
                radius=1,
                allowed_tiles=LOWLAND_TILES,
                constraints=ZoneConstraints(min_zone_distance=8.0),
                priority=i,
            )
            for i in range(3)
        ]
        for seed in range(5):
            model = generate(SizeConfig(32, 32), seed, requests).unwrap()
            centers = [zone.center for zone in model.zones]
            for i, (ax, ay) in enumerate(centers):
                for bx, by in centers[i + 1 :]:
                    assert math.hypot(ax - bx, ay - by) >= 8.0

    def test_sub_placements_survive_generation(self, default_catalog: TileCatalog) -> None:
        request = ZoneRequest(
            id="camp",
            radius=2,
            allowed_tiles=LOWLAND_TILES,
            sub_placements=(SubPlacement("spawn", (0, 1)), SubPlacement("well", (-2, 2))),
        )
        model = generate(SizeConfig(20, 20), 3, [request]).unwrap()

        zone = model.zone("camp")
        assert zone is not None
        cx, cy = zone.center
        assert zone.sub_placement_positions() == [
            ("spawn", (cx, cy + 1)),
            ("well", (cx - 2, cy + 2)),
        ]


class TestConfigValidation:
    """Malformed configuration fails fast with ConfigError."""

    def test_duplicate_zone_ids_raise(self, default_catalog: TileCatalog) -> None:
        generator = MapGenerator(default_catalog, SizeConfig(16, 16))
        with pytest.raises(ConfigError):
            generator.generate(1, [_start_zone(), _start_zone()])

    def test_zone_larger_than_grid_raises(self, default_catalog: TileCatalog) -> None:
        generator = MapGenerator(default_catalog, SizeConfig(6, 6))
        with pytest.raises(ConfigError, match="needs 7x7"):
            generator.generate(1, [_start_zone()])

    def test_undefined_zone_tile_raises(self, default_catalog: TileCatalog) -> None:
        request = ZoneRequest(id="x", radius=1, allowed_tiles=frozenset({40}))
        with pytest.raises(ConfigError):
            MapGenerator(default_catalog, SizeConfig(8, 8)).generate(1, [request])

    @pytest.mark.parametrize(
        "kwargs", [{"max_attempts": 0}, {"candidate_budget": 0}, {"time_limit": 0.0}]
    )
    def test_invalid_budgets_raise(
        self, default_catalog: TileCatalog, kwargs: dict[str, float]
    ) -> None:
        with pytest.raises(ConfigError):
            MapGenerator(default_catalog, SizeConfig(8, 8), **kwargs)  # type: ignore[arg-type]


class TestStepwise:
    """generate_stepwise() yields once per whole attempt."""

    def test_yields_one_report_per_attempt(self, incompatible_catalog: TileCatalog) -> None:
        generator = MapGenerator(incompatible_catalog, SizeConfig(3, 3), max_attempts=4)
        stepper = generator.generate_stepwise(seed=8)

        reports: list[AttemptReport] = []
        with pytest.raises(StopIteration) as stop:
            while True:
                reports.append(next(stepper))

        assert [report.attempt for report in reports] == [0, 1, 2, 3]
        assert not any(report.succeeded for report in reports)
        result = stop.value.value
        assert isinstance(result, GenerationResult)
        assert result.attempts == 4

    def test_successful_attempt_is_reported(self, default_catalog: TileCatalog) -> None:
        reports = list(
            MapGenerator(default_catalog, SizeConfig(8, 8)).generate_stepwise(seed=2)
        )
        assert reports[-1].succeeded

    def test_time_limit_checked_between_attempts(
        self, incompatible_catalog: TileCatalog, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Once the limit has passed, no further attempt is started."""
        clock = itertools.count(0.0, 10.0)
        monkeypatch.setattr(
            "terraweave.environment.generators.map_generator.time.perf_counter",
            lambda: next(clock),
        )
        generator = MapGenerator(
            incompatible_catalog, SizeConfig(3, 3), max_attempts=10, time_limit=15.0
        )
        result = generator.generate(seed=1)

        assert not result.ok
        assert result.failure is not None
        assert "Time limit" in result.failure.reason
        assert result.attempts < 10


class TestLoad:
    """load() reports corruption as a typed result."""

    def test_load_round_trip(self, default_catalog: TileCatalog) -> None:
        generator = MapGenerator(default_catalog, SizeConfig(16, 16))
        model = generator.generate(12345, [_start_zone()]).unwrap()
        data = generator.encode(model)

        result = load(data, default_catalog.checksum)
        assert result.ok
        assert result.unwrap() == model
        assert generator.load(data).unwrap() == model

    def test_load_reports_corruption(self, default_catalog: TileCatalog) -> None:
        generator = MapGenerator(default_catalog, SizeConfig(8, 8))
        data = bytearray(generator.encode(generator.generate(4).unwrap()))
        data[len(data) // 2] ^= 0xFF

        result = load(bytes(data), default_catalog.checksum)
        assert not result.ok
        assert isinstance(result.error, CorruptDataError)
        with pytest.raises(CorruptDataError):
            result.unwrap()

    def test_load_rejects_other_catalog(
        self, default_catalog: TileCatalog, chain_catalog: TileCatalog
    ) -> None:
        generator = MapGenerator(default_catalog, SizeConfig(8, 8))
        data = generator.encode(generator.generate(4).unwrap())

        result = load(data, chain_catalog.checksum)
        assert not result.ok
        assert "catalog" in str(result.error)

    def test_mismatched_catalog_argument_raises(
        self, default_catalog: TileCatalog, chain_catalog: TileCatalog
    ) -> None:
        with pytest.raises(ConfigError):
            load(b"", default_catalog.checksum, chain_catalog)


class TestCrossSessionGeneration:
    """Generated maps are identical in separate Python processes.

    Each subprocess runs with a different PYTHONHASHSEED, so any dependence
    on set or dict ordering of hashed values would show up as a mismatch.
    """

    SCRIPT = """
import sys
sys.path.insert(0, '.')
from terraweave.environment.generators.map_generator import generate
from terraweave.environment.generators.zones import ZoneConstraints, ZoneRequest
from terraweave.environment.grid import SizeConfig
from terraweave.environment.tile_types import LOWLAND_TILES
camp = ZoneRequest(
    id="camp",
    radius=2,
    allowed_tiles=LOWLAND_TILES,
    constraints=ZoneConstraints(no_water=True),
)
model = generate(SizeConfig(20, 20), 777, [camp]).unwrap()
print(model.tiles.tobytes().hex())
print(";".join(f"{zone.id}@{zone.center[0]},{zone.center[1]}" for zone in model.zones))
"""

    def test_generate_matches_in_process_run(self) -> None:
        camp = ZoneRequest(
            id="camp",
            radius=2,
            allowed_tiles=LOWLAND_TILES,
            constraints=ZoneConstraints(no_water=True),
        )
        model = generate(SizeConfig(20, 20), 777, [camp]).unwrap()
        expected = [
            model.tiles.tobytes().hex(),
            ";".join(f"{zone.id}@{zone.center[0]},{zone.center[1]}" for zone in model.zones),
        ]

        for hash_seed in ("1", "2"):
            result = subprocess.run(
                [sys.executable, "-c", self.SCRIPT],
                capture_output=True,
                text=True,
                cwd=str(Path(__file__).resolve().parents[3]),
                env={**os.environ, "PYTHONHASHSEED": hash_seed},
            )
            assert result.returncode == 0, f"Process failed: {result.stderr}"
            assert result.stdout.splitlines() == expected
