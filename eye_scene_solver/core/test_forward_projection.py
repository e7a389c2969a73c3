"""Tests for forward projection of the pupil."""
import numpy as np
import pytest

from eye_scene_solver.core.errors import ConfigurationError, ModelInconsistencyError
from eye_scene_solver.core.eye_model import (
    EyeAnatomy,
    NUM_IRIS_PERIMETER_POINTS,
    NUM_PUPIL_PERIMETER_POINTS,
    create_eye_model,
)
from eye_scene_solver.core.forward_projection import (
    ANTERIOR_CHAMBER,
    IRIS_PERIMETER,
    POSTERIOR_CHAMBER,
    PUPIL_CENTER,
    PUPIL_PERIMETER,
    ROTATION_CENTER,
    eye_rotation_matrix,
    project_pupil,
    project_pupil_centers,
)
from eye_scene_solver.core.ray_tracing import create_ray_trace_tables
from eye_scene_solver.core.scene_models import EyePose, create_default_scene_geometry


def test_frontal_pupil_lands_on_principal_point() -> None:
    print("\n=== Testing frontal projection ===")
    scene = create_default_scene_geometry()
    projection = project_pupil(eye_pose=np.array([0.0, 0.0, 0.0, 2.0]), scene_geometry=scene)

    center_x, center_y, area, eccentricity, theta = projection.ellipse
    assert center_x == pytest.approx(320.0, abs=1.0)
    assert center_y == pytest.approx(240.0, abs=1.0)
    assert area > 0
    assert eccentricity < 0.01
    print(f"✓ Center ({center_x:.2f}, {center_y:.2f}), area {area:.1f} px^2")


def test_area_grows_with_pupil_radius() -> None:
    scene = create_default_scene_geometry()
    areas = [
        project_pupil(eye_pose=EyePose(azimuth_deg=10.0, elevation_deg=-5.0, pupil_radius_mm=radius), scene_geometry=scene).ellipse[2]
        for radius in (0.5, 1.0, 2.0, 3.5)
    ]
    assert np.all(np.diff(areas) > 0)


def test_rotation_direction_in_image() -> None:
    scene = create_default_scene_geometry()
    right = project_pupil(eye_pose=np.array([20.0, 0.0, 0.0, 2.0]), scene_geometry=scene).ellipse
    up = project_pupil(eye_pose=np.array([0.0, 15.0, 0.0, 2.0]), scene_geometry=scene).ellipse
    assert right[0] > 330.0
    assert up[1] < 230.0


def test_rotated_pupil_is_eccentric_with_valid_theta() -> None:
    scene = create_default_scene_geometry()
    for azimuth, elevation in [(25.0, 0.0), (0.0, -20.0), (-30.0, 15.0), (12.0, 22.0)]:
        ellipse = project_pupil(eye_pose=np.array([azimuth, elevation, 0.0, 2.0]), scene_geometry=scene).ellipse
        assert 0.0 <= ellipse[4] < np.pi
        assert 0.1 < ellipse[3] < 1.0


def test_zero_radius_gives_nan_ellipse() -> None:
    scene = create_default_scene_geometry()
    projection = project_pupil(eye_pose=np.array([5.0, 5.0, 0.0, 0.0]), scene_geometry=scene)
    assert np.all(np.isnan(projection.ellipse))
    assert projection.ellipse_model.is_nan


def test_full_eye_model_labels() -> None:
    scene = create_default_scene_geometry()
    projection = project_pupil(
        eye_pose=np.array([10.0, 5.0, 0.0, 2.0]),
        scene_geometry=scene,
        full_eye_model=True,
    )
    labels = projection.point_labels
    assert labels[:NUM_PUPIL_PERIMETER_POINTS] == (PUPIL_PERIMETER,) * NUM_PUPIL_PERIMETER_POINTS
    assert labels.count(IRIS_PERIMETER) == NUM_IRIS_PERIMETER_POINTS
    assert labels.count(PUPIL_CENTER) == 1
    assert labels.count(ROTATION_CENTER) == 1
    assert labels.count(POSTERIOR_CHAMBER) > 0
    assert labels.count(ANTERIOR_CHAMBER) > 0
    assert projection.image_points.shape == (len(labels), 2)
    assert projection.points_with_label(PUPIL_CENTER).shape == (1, 2)

    pupil_only = project_pupil(eye_pose=np.array([10.0, 5.0, 0.0, 2.0]), scene_geometry=scene)
    np.testing.assert_allclose(projection.ellipse, pupil_only.ellipse)


def test_empty_anatomical_filter_raises() -> None:
    # iris behind the posterior chamber center leaves no posterior chamber points
    scene = create_default_scene_geometry().model_copy(update={"eye_anatomy": EyeAnatomy(iris_depth_mm=20.0)})
    with pytest.raises(ModelInconsistencyError):
        project_pupil(eye_pose=np.array([0.0, 0.0, 0.0, 2.0]), scene_geometry=scene, full_eye_model=True)


def test_non_positive_eye_radius_raises() -> None:
    with pytest.raises(ConfigurationError):
        create_eye_model(eye_radius_mm=0.0)


def test_eye_model_scales_with_radius() -> None:
    reference = create_eye_model(eye_radius_mm=11.29)
    larger = create_eye_model(eye_radius_mm=2 * 11.29)
    np.testing.assert_allclose(larger.rotation_center, 2 * reference.rotation_center)
    np.testing.assert_allclose(larger.pupil_center, 2 * reference.pupil_center)
    assert larger.cornea_refractive_index == reference.cornea_refractive_index


def test_distortion_moves_off_center_points_only() -> None:
    scene = create_default_scene_geometry()
    distorted = scene.model_copy(update={"radial_distortion_vector": np.array([5.0, 0.0])})
    center = project_pupil(eye_pose=np.array([0.0, 0.0, 0.0, 2.0]), scene_geometry=distorted).ellipse
    assert center[0] == pytest.approx(320.0, abs=1.0)

    plain = project_pupil(eye_pose=np.array([30.0, 0.0, 0.0, 2.0]), scene_geometry=scene).ellipse
    pushed = project_pupil(eye_pose=np.array([30.0, 0.0, 0.0, 2.0]), scene_geometry=distorted).ellipse
    assert pushed[0] > plain[0]


def test_ray_traced_projection_differs_from_pinhole() -> None:
    print("\n=== Testing corneal refraction ===")
    scene = create_default_scene_geometry()
    tables = create_ray_trace_tables()
    pose = np.array([15.0, -10.0, 0.0, 2.0])

    pinhole = project_pupil(eye_pose=pose, scene_geometry=scene)
    traced = project_pupil(eye_pose=pose, scene_geometry=scene, ray_trace_tables=tables)

    assert np.all(np.isfinite(traced.ellipse))
    assert not np.allclose(traced.ellipse, pinhole.ellipse)
    assert np.all(traced.ray_trace_errors[:NUM_PUPIL_PERIMETER_POINTS] < 1.0)
    print(f"✓ Pinhole area {pinhole.ellipse[2]:.1f}, refracted area {traced.ellipse[2]:.1f}")


def test_batch_pupil_centers_match_single_projection() -> None:
    scene = create_default_scene_geometry()
    azimuths = np.array([-20.0, 0.0, 25.0])
    elevations = np.array([10.0, 0.0, -15.0])
    centers = project_pupil_centers(azimuths_deg=azimuths, elevations_deg=elevations, scene_geometry=scene)
    assert centers.shape == (3, 2)
    for index in range(3):
        ellipse = project_pupil(
            eye_pose=np.array([azimuths[index], elevations[index], 0.0, 0.5]),
            scene_geometry=scene,
        ).ellipse
        # perimeter ellipse center and projected pupil center differ only by perspective
        assert np.hypot(*(ellipse[:2] - centers[index])) < 1.0


def test_rotation_matrix_stack() -> None:
    stack = eye_rotation_matrix(azimuth_deg=np.array([0.0, 90.0]), elevation_deg=np.array([0.0, 0.0]))
    assert stack.shape == (2, 3, 3)
    np.testing.assert_allclose(stack[0], np.eye(3), atol=1e-12)
    np.testing.assert_allclose(stack[1] @ np.array([1.0, 0.0, 0.0]), [0.0, 1.0, 0.0], atol=1e-12)
