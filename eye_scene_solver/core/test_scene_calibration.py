"""Tests for scene calibration."""
import numpy as np
import pytest

from eye_scene_solver.core.errors import ConfigurationError
from eye_scene_solver.core.forward_projection import project_pupil
from eye_scene_solver.core.pattern_search import PatternSearchConfig
from eye_scene_solver.core.scene_calibration import (
    CalibrationConfig,
    calibrate_scene,
    combine_ellipse_errors,
)
from eye_scene_solver.core.scene_models import ObservationSet, SceneGeometry, create_default_scene_geometry


def create_test_observation_set(*, scene_geometry: SceneGeometry) -> ObservationSet:
    """Ellipses for a 5 x 5 grid of gaze directions at three pupil radii seen through the given scene."""
    azimuths, elevations, radii = np.meshgrid(
        np.linspace(-35.0, 35.0, 5),
        np.linspace(-25.0, 25.0, 5),
        np.array([1.0, 2.0, 3.0]),
        indexing="ij",
    )
    poses = np.column_stack([azimuths.ravel(), elevations.ravel(), np.zeros(azimuths.size), radii.ravel()])
    ellipses = np.array([project_pupil(eye_pose=pose, scene_geometry=scene_geometry).ellipse for pose in poses])
    rng = np.random.default_rng(seed=11)
    return ObservationSet(
        frame_indices=np.arange(len(poses), dtype=np.int64),
        ellipses=ellipses,
        fit_rmse=rng.uniform(0.5, 1.5, size=len(poses)),
    )


def test_combine_ellipse_errors_forms() -> None:
    centers = np.array([1.0, 2.0, np.nan])
    shapes = np.array([0.0, 0.01, 0.0])
    areas = np.array([0.0, 0.0, 0.0])
    weights = np.ones(3)

    rmse = combine_ellipse_errors(center_distance_errors=centers, shape_errors=shapes, area_errors=areas, weights=weights)
    sse = combine_ellipse_errors(
        center_distance_errors=centers,
        shape_errors=shapes,
        area_errors=areas,
        weights=weights,
        error_form="SSE",
    )
    # second term is 2 px * (1 + 100 * 0.01); the NaN term is charged the unfit penalty
    assert rmse == pytest.approx(np.sqrt((1.0 + 16.0 + 1000.0**2) / 3.0))
    assert sse == pytest.approx(17.0 + 1000.0**2)

    all_missing = combine_ellipse_errors(
        center_distance_errors=np.full(2, np.nan),
        shape_errors=np.zeros(2),
        area_errors=np.zeros(2),
        weights=np.ones(2),
    )
    assert all_missing == np.inf


def test_losing_an_ellipse_does_not_lower_the_cost() -> None:
    kept = combine_ellipse_errors(
        center_distance_errors=np.array([1.0, 5.0, 5.0]),
        shape_errors=np.zeros(3),
        area_errors=np.zeros(3),
        weights=np.ones(3),
    )
    lost = combine_ellipse_errors(
        center_distance_errors=np.array([1.0, 5.0, np.nan]),
        shape_errors=np.zeros(3),
        area_errors=np.zeros(3),
        weights=np.ones(3),
    )
    assert lost > kept

    lenient = combine_ellipse_errors(
        center_distance_errors=np.array([1.0, np.nan]),
        shape_errors=np.zeros(2),
        area_errors=np.zeros(2),
        weights=np.ones(2),
        error_form="SSE",
        unfit_ellipse_penalty=10.0,
    )
    assert lenient == pytest.approx(101.0)


def test_unknown_error_form_raises() -> None:
    with pytest.raises(ConfigurationError):
        CalibrationConfig(error_form="MAE")


def test_inconsistent_bounds_raise() -> None:
    scene = create_default_scene_geometry()
    observation_set = create_test_observation_set(scene_geometry=scene)

    with pytest.raises(ConfigurationError):
        calibrate_scene(
            observation_set=observation_set,
            initial_scene_geometry=scene,
            translation_bounds=(np.array([5.0, -10.0, 100.0]), np.array([-5.0, 10.0, 140.0])),
        )
    with pytest.raises(ConfigurationError):
        calibrate_scene(
            observation_set=observation_set,
            initial_scene_geometry=scene,
            translation_bounds=(np.array([-10.0, -10.0]), np.array([10.0, 10.0])),
        )
    with pytest.raises(ConfigurationError):
        calibrate_scene(observation_set=observation_set, initial_scene_geometry=scene, radius_bounds=(0.0, 12.0))


def test_empty_observation_set_raises() -> None:
    empty = ObservationSet(
        frame_indices=np.zeros(0, dtype=np.int64),
        ellipses=np.zeros((0, 5)),
        fit_rmse=np.zeros(0),
    )
    with pytest.raises(ConfigurationError):
        calibrate_scene(observation_set=empty, initial_scene_geometry=create_default_scene_geometry())


def test_fixed_scene_is_evaluated_once() -> None:
    scene = create_default_scene_geometry(constraint_tolerance=0.001)
    observation_set = create_test_observation_set(scene_geometry=scene)
    translation = scene.extrinsic_translation_vector

    result = calibrate_scene(
        observation_set=observation_set,
        initial_scene_geometry=scene,
        translation_bounds=(translation, translation),
        n_bins_per_dimension=2,
    )

    assert result.n_function_evaluations == 0
    assert result.objective_value == result.initial_objective_value
    assert result.objective_value < 0.5
    np.testing.assert_allclose(result.scene_geometry.extrinsic_translation_vector, translation)


def test_recovers_perturbed_translation() -> None:
    print("\n=== Testing scene calibration ===")
    true_scene = create_default_scene_geometry(constraint_tolerance=0.001)
    observation_set = create_test_observation_set(scene_geometry=true_scene)
    initial_scene = true_scene.with_translation(np.array([4.0, -3.0, 120.0]))

    result = calibrate_scene(
        observation_set=observation_set,
        initial_scene_geometry=initial_scene,
        translation_bounds=(np.array([-10.0, -10.0, 120.0]), np.array([10.0, 10.0, 120.0])),
        n_bins_per_dimension=3,
        config=CalibrationConfig(
            pattern_search=PatternSearchConfig(initial_mesh_size=2.0, mesh_tolerance=1e-2),
        ),
    )

    recovered = result.scene_geometry.extrinsic_translation_vector
    print(f"✓ Recovered translation {np.array2string(recovered, precision=3)}")
    np.testing.assert_allclose(recovered[:2], [0.0, 0.0], atol=1.0)
    assert recovered[2] == 120.0
    assert result.objective_value < result.initial_objective_value
    assert result.n_selected <= 9
    assert len(result.constraint_satisfied) == result.n_selected
    assert result.recovered_eye_poses.shape == (result.n_selected, 4)
    assert result.scene_geometry.eye_radius_mm == true_scene.eye_radius_mm
    np.testing.assert_allclose(result.initial_scene_geometry.extrinsic_translation_vector, [4.0, -3.0, 120.0])

    grids = result.residuals_by_bin()
    assert grids["center_distance_errors"].shape == (3, 3)
    assert np.sum(np.isfinite(grids["error_weights"])) == result.n_selected


def test_listed_frames_are_used() -> None:
    scene = create_default_scene_geometry(constraint_tolerance=0.001)
    observation_set = create_test_observation_set(scene_geometry=scene)
    translation = scene.extrinsic_translation_vector

    result = calibrate_scene(
        observation_set=observation_set,
        initial_scene_geometry=scene,
        translation_bounds=(translation, translation),
        config=CalibrationConfig(frame_indices=[0, 12, 24], error_form="SSE"),
    )
    assert result.selected_frame_indices == [0, 12, 24]
    assert result.error_form == "SSE"
    assert len(result.bin_x_edges) == 0
