"""Test CSV and JSON persistence."""
import tempfile
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from eye_scene_solver.core.errors import ConfigurationError
from eye_scene_solver.core.forward_projection import project_pupil
from eye_scene_solver.core.scene_calibration import CalibrationConfig, calibrate_scene
from eye_scene_solver.core.scene_models import (
    ObservationSet,
    PerFrameSeries,
    SceneGeometry,
    SmoothedSeries,
    create_default_scene_geometry,
)
from eye_scene_solver.io.loaders import (
    load_calibration_result,
    load_observation_set,
    load_per_frame_series,
    load_scene_geometry,
)
from eye_scene_solver.io.savers import (
    build_smoothed_series_dataframe,
    save_calibration_result,
    save_observation_set,
    save_per_frame_series,
    save_scene_geometry,
)


def create_test_observation_set(*, with_sd: bool = False) -> ObservationSet:
    ellipses = np.array([
        [320.0, 240.0, 500.0, 0.1, 0.2],
        [np.nan, np.nan, np.nan, np.nan, np.nan],
        [330.0, 235.0, 480.0, 0.3, 1.4],
    ])
    return ObservationSet(
        frame_indices=np.array([10, 11, 12], dtype=np.int64),
        ellipses=ellipses,
        fit_rmse=np.array([0.4, np.nan, 0.7]),
        ellipse_sd=np.full((3, 5), 0.01) if with_sd else None,
    )


def test_observation_set_csv() -> None:
    print("\n=== Testing observation CSV ===")
    observation_set = create_test_observation_set(with_sd=True)
    with tempfile.TemporaryDirectory() as tmpdir:
        filepath = Path(tmpdir) / "observations.csv"
        save_observation_set(filepath=filepath, observation_set=observation_set)
        loaded = load_observation_set(filepath=filepath)

    np.testing.assert_array_equal(loaded.frame_indices, observation_set.frame_indices)
    np.testing.assert_allclose(loaded.ellipses, observation_set.ellipses)
    np.testing.assert_allclose(loaded.fit_rmse, observation_set.fit_rmse)
    assert loaded.ellipse_sd is not None
    assert loaded.get_ellipse(1).is_nan
    print("✓ Missing ellipse survives as NaN")


def test_missing_columns_raise() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        filepath = Path(tmpdir) / "bad.csv"
        pd.DataFrame({"frame": [0, 1], "center_x": [1.0, 2.0]}).to_csv(filepath, index=False)
        with pytest.raises(ConfigurationError):
            load_observation_set(filepath=filepath)


def test_per_frame_series_with_boundary_points() -> None:
    boundary_points = [np.random.default_rng(seed=1).normal(size=(6, 2)), None]
    series = PerFrameSeries(
        frame_indices=np.array([0, 1], dtype=np.int64),
        eye_poses=np.array([[1.0, 2.0, 0.0, 2.0], [3.0, 4.0, 0.0, 2.5]]),
        eye_pose_sd=np.full((2, 4), 0.1),
        fit_rmse=np.array([0.5, 0.6]),
        boundary_points=boundary_points,
    )
    with tempfile.TemporaryDirectory() as tmpdir:
        series_path = Path(tmpdir) / "per_frame.csv"
        points_path = Path(tmpdir) / "boundary_points.csv"
        save_per_frame_series(filepath=series_path, per_frame_series=series, boundary_points_filepath=points_path)
        loaded = load_per_frame_series(filepath=series_path, boundary_points_filepath=points_path)

    np.testing.assert_allclose(loaded.eye_poses, series.eye_poses)
    np.testing.assert_allclose(loaded.pupil_radius_sd, [0.1, 0.1])
    assert loaded.boundary_points is not None
    np.testing.assert_allclose(loaded.boundary_points[0], boundary_points[0])
    assert loaded.boundary_points[1] is None


def test_scene_geometry_json() -> None:
    scene = create_default_scene_geometry(translation_mm=np.array([1.0, -2.0, 118.5]), eye_radius_mm=12.0)
    with tempfile.TemporaryDirectory() as tmpdir:
        filepath = Path(tmpdir) / "scene.json"
        save_scene_geometry(filepath=filepath, scene_geometry=scene)
        loaded = load_scene_geometry(filepath=filepath)

    np.testing.assert_allclose(loaded.extrinsic_translation_vector, scene.extrinsic_translation_vector)
    np.testing.assert_allclose(loaded.intrinsic_camera_matrix, scene.intrinsic_camera_matrix)
    assert loaded.eye_radius_mm == 12.0
    assert loaded.eye_anatomy == scene.eye_anatomy


def test_smoothed_series_is_tidy() -> None:
    n_frames = 3
    smoothed = SmoothedSeries(
        frame_indices=np.arange(n_frames, dtype=np.int64),
        ellipses=np.zeros((n_frames, 5)),
        eye_poses=np.zeros((n_frames, 4)),
        pupil_radius_sd=np.full(n_frames, 0.1),
        fit_rmse=np.full(n_frames, 0.3),
        prior_radius=np.full(n_frames, 2.0),
        prior_radius_sd=np.full(n_frames, 0.2),
        posterior_radius=np.full(n_frames, 2.05),
    )
    df = build_smoothed_series_dataframe(smoothed_series=smoothed)

    assert list(df.columns) == ["frame", "quantity", "value", "units"]
    # 5 ellipse fields + 4 pose fields + 5 smoothing quantities per frame
    assert len(df) == n_frames * 14
    posterior = df[df["quantity"] == "posterior_radius_mm"]
    np.testing.assert_allclose(posterior["value"], 2.05)
    assert set(posterior["units"]) == {"mm"}


def create_calibration_observation_set(*, scene_geometry: SceneGeometry) -> ObservationSet:
    poses = np.array([
        [-20.0, -10.0, 0.0, 2.0],
        [-20.0, 10.0, 0.0, 2.0],
        [0.0, 0.0, 0.0, 1.5],
        [20.0, -10.0, 0.0, 2.5],
        [20.0, 10.0, 0.0, 2.0],
    ])
    ellipses = np.array([project_pupil(eye_pose=pose, scene_geometry=scene_geometry).ellipse for pose in poses])
    return ObservationSet(
        frame_indices=np.arange(len(poses), dtype=np.int64),
        ellipses=ellipses,
        fit_rmse=np.array([0.5, 0.8, 1.0, 0.6, 0.9]),
    )


@pytest.mark.parametrize("frame_indices", [None, [0, 2, 4]])
def test_calibration_result_json(frame_indices: list[int] | None) -> None:
    print("\n=== Testing calibration result JSON ===")
    scene = create_default_scene_geometry(constraint_tolerance=0.001)
    observation_set = create_calibration_observation_set(scene_geometry=scene)
    translation = scene.extrinsic_translation_vector
    result = calibrate_scene(
        observation_set=observation_set,
        initial_scene_geometry=scene,
        translation_bounds=(translation, translation),
        n_bins_per_dimension=2,
        config=CalibrationConfig(frame_indices=frame_indices),
    )

    with tempfile.TemporaryDirectory() as tmpdir:
        filepath = Path(tmpdir) / "calibration_result.json"
        save_calibration_result(filepath=filepath, calibration_result=result)
        loaded = load_calibration_result(filepath=filepath)

    assert loaded.selected_frame_indices == result.selected_frame_indices
    assert loaded.constraint_satisfied == result.constraint_satisfied
    assert loaded.error_form == result.error_form
    assert loaded.objective_value == pytest.approx(result.objective_value)
    np.testing.assert_allclose(loaded.scene_geometry.extrinsic_translation_vector, translation)
    np.testing.assert_allclose(loaded.recovered_eye_poses, result.recovered_eye_poses)
    np.testing.assert_allclose(loaded.error_weights, result.error_weights)
    np.testing.assert_allclose(loaded.bin_x_edges, result.bin_x_edges)
    np.testing.assert_allclose(
        loaded.residuals_by_bin()["center_distance_errors"],
        result.residuals_by_bin()["center_distance_errors"],
    )
    print(f"✓ Round trip of {len(loaded.selected_frame_indices)} selected frames")
