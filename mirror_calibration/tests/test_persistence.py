"""Tests for profile storage and persisted runner settings."""

from __future__ import annotations

import json
from dataclasses import FrozenInstanceError

import pytest
import yaml
from pydantic import ValidationError

from mirror_calibration.calibration.models import (
    CalibrationRunSummary,
    GridSize,
    MirrorAssignment,
    Point,
    StepTestSettings,
    StepVector,
    TileAddress,
    TileCalibrationResults,
    TileStatus,
)
from mirror_calibration.calibration.summary import compute_calibration_summary
from mirror_calibration.configs.loader import CameraConfig, MotorLimitsConfig, RunnerSettings
from mirror_calibration.detection.sampler import BlobMeasurement
from mirror_calibration.hardware.command_protocol import MotorRef
from mirror_calibration.persistence import (
    ProfileStorageError,
    ProfileStore,
    build_profile_from_summary,
    compute_grid_state_fingerprint,
    load_runner_settings,
    merge_tile_results,
    profile_to_run_summary,
    save_runner_settings,
)
from mirror_calibration.persistence.profiles import UNTITLED_PROFILE_NAME
from mirror_calibration.persistence.settings import are_settings_default, clear_runner_settings

from conftest import IDEAL_CENTERS_2X2, calibrated_tile, make_profile, two_by_two_assignments


# ---------------------------------------------------------------------------
# Profile schema
# ---------------------------------------------------------------------------


class TestProfileSchema:
    def test_blank_name_becomes_untitled(self) -> None:
        assert make_profile(name="   ").name == UNTITLED_PROFILE_NAME
        assert make_profile(name="  Wall A ").name == "Wall A"

    def test_rotation_must_be_quarter_turn(self) -> None:
        with pytest.raises(ValidationError):
            make_profile(array_rotation=45)

    def test_aspect_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            make_profile(calibration_camera_aspect=0.0)

    def test_tile_key_must_match_entry(self) -> None:
        tile = calibrated_tile("0-1", IDEAL_CENTERS_2X2["0-1"])
        with pytest.raises(ValidationError):
            make_profile({"0-0": tile})

    def test_tile_outside_grid_is_rejected(self) -> None:
        tile = calibrated_tile("1-1", IDEAL_CENTERS_2X2["1-1"])
        with pytest.raises(ValidationError):
            make_profile({"1-1": tile}, grid=GridSize(1, 1))

    def test_calibrated_tiles(self) -> None:
        tiles = {key: calibrated_tile(key, c) for key, c in IDEAL_CENTERS_2X2.items()}
        tiles["0-1"] = TileCalibrationResults(tile=TileAddress(0, 1), status=TileStatus.FAILED, error="x")
        profile = make_profile(tiles)
        assert sorted(profile.calibrated_tiles()) == ["0-0", "1-0", "1-1"]


class TestFingerprint:
    def test_stable_and_order_independent(self) -> None:
        grid = GridSize(2, 2)
        wiring = two_by_two_assignments()
        reordered = dict(reversed(list(wiring.items())))
        assert compute_grid_state_fingerprint(grid, wiring) == compute_grid_state_fingerprint(grid, reordered)

    def test_changes_with_wiring_and_size(self) -> None:
        grid = GridSize(2, 2)
        wiring = two_by_two_assignments()
        base = compute_grid_state_fingerprint(grid, wiring)

        swapped = dict(wiring)
        swapped["0-0"] = MirrorAssignment(x=MotorRef("node-0", 1), y=MotorRef("node-0", 0))
        assert compute_grid_state_fingerprint(grid, swapped) != base
        assert compute_grid_state_fingerprint(GridSize(2, 3), wiring) != base

    def test_unwired_and_out_of_grid_entries_are_ignored(self) -> None:
        grid = GridSize(1, 1)
        wiring = {"0-0": MirrorAssignment(x=MotorRef("n", 0))}
        noisy = dict(wiring, **{"0-1": MirrorAssignment(x=MotorRef("n", 1))})
        assert compute_grid_state_fingerprint(grid, noisy) == compute_grid_state_fingerprint(grid, wiring)
        assert compute_grid_state_fingerprint(grid, {"0-0": MirrorAssignment()}) == \
            compute_grid_state_fingerprint(grid, {})


class TestBuildProfile:
    def test_skipped_tiles_are_not_persisted(self) -> None:
        grid = GridSize(2, 2)
        summary = CalibrationRunSummary(
            grid_blueprint=make_profile().grid_blueprint,
            tiles={
                "0-0": calibrated_tile("0-0", IDEAL_CENTERS_2X2["0-0"]),
                "0-1": TileCalibrationResults(tile=TileAddress(0, 1), status=TileStatus.SKIPPED),
                "1-0": TileCalibrationResults(tile=TileAddress(1, 0), status=TileStatus.FAILED, error="e"),
            },
            step_test_settings=StepTestSettings(400, 0.1),
        )
        profile = build_profile_from_summary(
            summary, grid, two_by_two_assignments(),
            RunnerSettings(array_rotation=90), CameraConfig(source_width=2000, source_height=1000),
            name="Wall",
        )

        assert sorted(profile.tiles) == ["0-0", "1-0"]
        assert profile.metrics.total_tiles == 2
        assert profile.metrics.completed_tiles == 1
        assert profile.array_rotation == 90
        assert profile.calibration_camera_aspect == pytest.approx(2.0)
        assert profile.grid_state_fingerprint == compute_grid_state_fingerprint(
            grid, two_by_two_assignments(),
        )

        rebuilt = profile_to_run_summary(profile)
        assert rebuilt.tiles["0-0"] == profile.tiles["0-0"]
        assert rebuilt.step_test_settings.delta_steps == 400


class TestLoadedProfileIsReadOnly:
    def test_tiles_cannot_be_changed(self, tmp_path) -> None:
        store = ProfileStore(tmp_path / "profiles.json")
        saved = store.save(make_profile())
        loaded = store.get(saved.id)

        with pytest.raises(AttributeError):
            loaded.tiles.clear()
        with pytest.raises(TypeError):
            loaded.tiles["0-0"] = loaded.tiles["1-1"]
        with pytest.raises(FrozenInstanceError):
            loaded.tiles["0-0"].combined_bounds = None
        with pytest.raises(ValidationError):
            loaded.tiles = {}

        assert len(loaded.tiles) == 4
        assert loaded.tiles["0-0"].combined_bounds is not None
        assert isinstance(loaded.tiles["0-0"].warnings, tuple)


class TestMergeTileResults:
    LIMITS = MotorLimitsConfig()

    def _rerun_summary(self, key: str, center) -> CalibrationRunSummary:
        grid = GridSize(2, 2)
        results = {
            tile.key: TileCalibrationResults(tile=tile, status=TileStatus.SKIPPED)
            for tile in grid.tiles()
        }
        row, col = (int(part) for part in key.split("-"))
        results[key] = TileCalibrationResults(
            tile=TileAddress(row, col),
            status=TileStatus.COMPLETED,
            home_measurement=BlobMeasurement(
                x=center.x, y=center.y, size=0.2, response=1.0, captured_at=0.0,
                source_width=1920, source_height=1080,
            ),
            step_to_displacement=StepVector(2.5e-4, -2.0e-4),
        )
        return compute_calibration_summary(results, grid, RunnerSettings(), self.LIMITS)

    def test_rerun_replaces_only_measured_tiles(self, tmp_path) -> None:
        store = ProfileStore(tmp_path / "profiles.json")
        original = store.save(make_profile(name="Wall"))

        moved = IDEAL_CENTERS_2X2["1-1"]
        summary = self._rerun_summary("1-1", Point(moved.x + 0.01, moved.y))
        store.save(merge_tile_results(original, summary, self.LIMITS))

        profiles = store.load_all()
        assert len(profiles) == 1
        merged = profiles[0]
        assert merged.id == original.id
        assert merged.name == "Wall"
        assert merged.created_at == original.created_at
        assert merged.grid_blueprint == original.grid_blueprint
        assert sorted(merged.tiles) == ["0-0", "0-1", "1-0", "1-1"]
        assert merged.metrics.total_tiles == 4
        assert merged.metrics.completed_tiles == 4

        for key in ("0-0", "0-1", "1-0"):
            assert merged.tiles[key] == original.tiles[key]

        tile = merged.tiles["1-1"]
        assert tile.home_measurement.x == pytest.approx(moved.x + 0.01)
        assert tile.home_offset.dx == pytest.approx(0.01)
        assert tile.adjusted_home.x == pytest.approx(moved.x)
        assert tile.adjusted_home.steps_x == -40
        assert tile.adjusted_home.steps_y == 0

    def test_failed_rerun_replaces_entry(self) -> None:
        original = make_profile()
        summary = CalibrationRunSummary(
            grid_blueprint=None,
            tiles={"0-1": TileCalibrationResults(tile=TileAddress(0, 1), status=TileStatus.FAILED, error="lost")},
            step_test_settings=StepTestSettings(400),
        )
        merged = merge_tile_results(original, summary, self.LIMITS)

        assert merged.tiles["0-1"].status == TileStatus.FAILED
        assert merged.metrics.failed_tiles == 1
        assert merged.metrics.completed_tiles == 3
        assert merged.grid_blueprint == original.grid_blueprint


# ---------------------------------------------------------------------------
# Profile store
# ---------------------------------------------------------------------------


class TestProfileStore:
    def test_missing_file_is_empty(self, tmp_path) -> None:
        assert ProfileStore(tmp_path / "profiles.json").load_all() == []

    def test_round_trip(self, tmp_path) -> None:
        store = ProfileStore(tmp_path / "profiles.json")
        profile = make_profile(calibration_camera_aspect=2.0, array_rotation=180)
        store.save(profile)

        loaded = store.get(profile.id)
        assert loaded is not None
        assert loaded.name == "bench"
        assert loaded.array_rotation == 180
        assert loaded.calibration_camera_aspect == 2.0
        assert loaded.grid_blueprint == profile.grid_blueprint
        assert loaded.tiles["1-1"] == profile.tiles["1-1"]
        assert loaded.tiles["1-1"].status == TileStatus.COMPLETED

        payload = json.loads((tmp_path / "profiles.json").read_text())
        assert payload["version"] == 1
        assert len(payload["entries"]) == 1

    def test_other_version_loads_empty(self, tmp_path) -> None:
        path = tmp_path / "profiles.json"
        path.write_text(json.dumps({"version": 2, "entries": []}))
        assert ProfileStore(path).load_all() == []

    def test_malformed_entry_is_dropped(self, tmp_path) -> None:
        path = tmp_path / "profiles.json"
        good = make_profile().model_dump(mode="json")
        path.write_text(json.dumps({"version": 1, "entries": [good, {"name": "broken"}]}))

        profiles = ProfileStore(path).load_all()
        assert [p.id for p in profiles] == [good["id"]]

    def test_unreadable_document_raises(self, tmp_path) -> None:
        path = tmp_path / "profiles.json"
        path.write_text("{not json")
        with pytest.raises(ProfileStorageError):
            ProfileStore(path).load_all()

    def test_save_replaces_by_id_and_keeps_created_at(self, tmp_path) -> None:
        store = ProfileStore(tmp_path / "profiles.json")
        first = store.save(make_profile())
        renamed = first.model_copy(
            update={"name": "Renamed", "created_at": "2000-01-01T00:00:00+00:00"},
        )
        stored = store.save(renamed)

        profiles = store.load_all()
        assert len(profiles) == 1
        assert profiles[0].name == "Renamed"
        assert profiles[0].created_at == first.created_at
        assert stored.updated_at >= first.updated_at

    def test_save_appends_new_ids(self, tmp_path) -> None:
        store = ProfileStore(tmp_path / "profiles.json")
        store.save(make_profile(name="one"))
        store.save(make_profile(name="two"))
        assert [p.name for p in store.load_all()] == ["one", "two"]

    def test_delete_and_last_selection(self, tmp_path) -> None:
        store = ProfileStore(tmp_path / "profiles.json")
        profile = store.save(make_profile())
        store.persist_last_profile_id(profile.id)
        assert store.load_last_profile_id() == profile.id

        assert store.delete(profile.id) is True
        assert store.delete(profile.id) is False
        assert store.load_all() == []
        assert store.load_last_profile_id() is None

    def test_clearing_last_selection(self, tmp_path) -> None:
        store = ProfileStore(tmp_path / "profiles.json")
        store.persist_last_profile_id("abc")
        store.persist_last_profile_id(None)
        assert store.load_last_profile_id() is None


# ---------------------------------------------------------------------------
# Runner settings
# ---------------------------------------------------------------------------


class TestRunnerSettingsStorage:
    def test_round_trip(self, tmp_path) -> None:
        path = tmp_path / "runner.yaml"
        settings = RunnerSettings(delta_steps=800, array_rotation=90, staging_position="corner")
        save_runner_settings(settings, path)

        loaded = load_runner_settings(path)
        assert loaded == settings
        assert not are_settings_default(loaded)

    def test_missing_file(self, tmp_path) -> None:
        assert load_runner_settings(tmp_path / "absent.yaml") is None

    def test_other_version_is_ignored(self, tmp_path) -> None:
        path = tmp_path / "runner.yaml"
        path.write_text(yaml.safe_dump({"version": 7, "settings": {"delta_steps": 10}}))
        assert load_runner_settings(path) is None

    def test_invalid_fields_fall_back_individually(self, tmp_path) -> None:
        path = tmp_path / "runner.yaml"
        path.write_text(yaml.safe_dump({
            "version": 1,
            "settings": {
                "delta_steps": -5,
                "array_rotation": 90,
                "staging_position": "diagonal",
                "dwell_s": 0.25,
                "unknown_field": True,
            },
        }))

        loaded = load_runner_settings(path)
        defaults = RunnerSettings()
        assert loaded.delta_steps == defaults.delta_steps
        assert loaded.staging_position == defaults.staging_position
        assert loaded.array_rotation == 90
        assert loaded.dwell_s == 0.25

    def test_clear(self, tmp_path) -> None:
        path = tmp_path / "runner.yaml"
        save_runner_settings(RunnerSettings(), path)
        assert are_settings_default(load_runner_settings(path))
        clear_runner_settings(path)
        assert not path.exists()
