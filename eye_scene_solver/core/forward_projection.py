"""
Forward projection of the pupil onto the camera image.

Pipeline for one eye pose:
1. Place pupil perimeter points (and optionally the rest of the eye) in eyeWorld
2. Optionally replace them with their virtual images seen through the cornea
3. Rotate the eye about its rotation center (headWorld)
4. Permute axes into sceneWorld and project through the pinhole camera
5. Apply radial lens distortion
6. Fit an ellipse to the projected pupil perimeter

Eye rotation is head-fixed: azimuth about p3 first, then elevation about
p2, then torsion about p1. The matrix is Rx(torsion) @ Ry(elevation) @ Rz(azimuth).
This is not the same as an eye-fixed (Fick) sequence.

sceneWorld axes: X = p2 (right), Y = -p3, Z = p1 (toward the camera).
With the default extrinsic rotation diag(1, -1, -1), positive azimuth moves
the pupil right in the image and positive elevation moves it up.
"""
import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.spatial.transform import Rotation

from eye_scene_solver.core.ellipse_geometry import NAN_ELLIPSE, fit_transparent_ellipse
from eye_scene_solver.core.errors import ModelInconsistencyError
from eye_scene_solver.core.eye_model import (
    EyeModel,
    NUM_IRIS_PERIMETER_POINTS,
    NUM_PUPIL_PERIMETER_POINTS,
    create_eye_model,
    create_perimeter_points,
    sample_ellipsoid_surface,
)
from eye_scene_solver.core.ray_tracing import RayTraceTables, refract_eye_world_points
from eye_scene_solver.core.scene_models import Ellipse, EyePose, SceneGeometry

logger = logging.getLogger(__name__)

PUPIL_PERIMETER = "pupilPerimeter"
PUPIL_CENTER = "pupilCenter"
IRIS_CENTER = "irisCenter"
ROTATION_CENTER = "rotationCenter"
POSTERIOR_CHAMBER = "posteriorChamber"
IRIS_PERIMETER = "irisPerimeter"
ANTERIOR_CHAMBER = "anteriorChamber"

REFRACTED_LABELS: frozenset[str] = frozenset({PUPIL_PERIMETER, PUPIL_CENTER, IRIS_CENTER, IRIS_PERIMETER})


@dataclass(frozen=True)
class PupilProjection:
    """Result of projecting one eye pose."""

    ellipse: NDArray[np.float64]
    """(5,) transparent ellipse of the pupil perimeter"""

    eye_world_points: NDArray[np.float64]
    """(N, 3) points in eyeWorld, after refraction when ray tracing is on"""

    head_world_points: NDArray[np.float64]
    """(N, 3) points after eye rotation"""

    image_points: NDArray[np.float64]
    """(N, 2) projected, distorted image points"""

    point_labels: tuple[str, ...]
    ray_trace_errors: NDArray[np.float64]
    """(N,) camera node distance (mm) of each traced ray, NaN for untraced points"""

    @property
    def ellipse_model(self) -> Ellipse:
        return Ellipse.from_array(self.ellipse)

    def points_with_label(self, label: str) -> NDArray[np.float64]:
        mask = np.array([point_label == label for point_label in self.point_labels])
        return self.image_points[mask]


def eye_rotation_matrix(
    *,
    azimuth_deg: float | NDArray[np.float64],
    elevation_deg: float | NDArray[np.float64],
    torsion_deg: float | NDArray[np.float64] = 0.0,
) -> NDArray[np.float64]:
    """
    Head-fixed eye rotation matrix (or a stack of them for array inputs).

    Returns:
        (3, 3), or (G, 3, 3) when the angles are arrays of length G
    """
    angles = np.stack(np.broadcast_arrays(azimuth_deg, elevation_deg, torsion_deg), axis=-1)
    return Rotation.from_euler("zyx", angles, degrees=True).as_matrix()


def _filter_surface_points(
    *,
    points: NDArray[np.float64],
    keep: NDArray[np.bool_],
    label: str,
) -> NDArray[np.float64]:
    kept = points[keep]
    if len(kept) == 0:
        raise ModelInconsistencyError(
            f"No {label} points survived the anatomical filter; check the eye model parameters"
        )
    return kept


def assemble_eye_world_points(
    *,
    eye_model: EyeModel,
    pupil_radius_mm: float,
    full_eye_model: bool = False,
) -> tuple[NDArray[np.float64], tuple[str, ...]]:
    """
    Labeled eyeWorld points for one pupil radius.

    The first NUM_PUPIL_PERIMETER_POINTS rows are always the pupil perimeter.

    Args:
        eye_model: Eye geometry
        pupil_radius_mm: Pupil radius
        full_eye_model: Also include centers, iris and chamber surfaces

    Returns:
        points: (N, 3)
        labels: N labels
    """
    blocks = [
        create_perimeter_points(
            center=eye_model.pupil_center,
            radius_mm=pupil_radius_mm,
            n_points=NUM_PUPIL_PERIMETER_POINTS,
        )
    ]
    labels = [PUPIL_PERIMETER] * NUM_PUPIL_PERIMETER_POINTS

    if full_eye_model:
        centers = np.vstack([eye_model.pupil_center, eye_model.iris_center, eye_model.rotation_center])
        blocks.append(centers)
        labels.extend([PUPIL_CENTER, IRIS_CENTER, ROTATION_CENTER])

        # posterior chamber between its own center and the iris plane
        posterior = sample_ellipsoid_surface(
            center=eye_model.posterior_chamber_center,
            semi_axes=eye_model.posterior_chamber_semi_axes,
        )
        posterior = _filter_surface_points(
            points=posterior,
            keep=(posterior[:, 0] > eye_model.posterior_chamber_center[0])
            & (posterior[:, 0] < eye_model.iris_center[0]),
            label=POSTERIOR_CHAMBER,
        )
        blocks.append(posterior)
        labels.extend([POSTERIOR_CHAMBER] * len(posterior))

        blocks.append(
            create_perimeter_points(
                center=eye_model.iris_center,
                radius_mm=eye_model.iris_radius_mm,
                n_points=NUM_IRIS_PERIMETER_POINTS,
            )
        )
        labels.extend([IRIS_PERIMETER] * NUM_IRIS_PERIMETER_POINTS)

        # corneal front surface anterior to the iris plane
        anterior = sample_ellipsoid_surface(
            center=eye_model.cornea_front_center,
            semi_axes=np.full(3, eye_model.cornea_front_radius_mm),
        )
        anterior = _filter_surface_points(
            points=anterior,
            keep=anterior[:, 0] > eye_model.iris_center[0],
            label=ANTERIOR_CHAMBER,
        )
        blocks.append(anterior)
        labels.extend([ANTERIOR_CHAMBER] * len(anterior))

    return np.vstack(blocks), tuple(labels)


def rotate_about_center(
    *,
    points: NDArray[np.float64],
    rotation: NDArray[np.float64],
    center: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Rotate (N, 3) points about a center. A (G, 3, 3) rotation stack gives (G, N, 3)."""
    return np.einsum("...ij,nj->...ni", rotation, points - center) + center


def head_world_to_image(
    *,
    points: NDArray[np.float64],
    scene_geometry: SceneGeometry,
) -> NDArray[np.float64]:
    """
    Project headWorld points (..., 3) to distorted image points (..., 2).
    """
    scene_points = np.stack([points[..., 1], -points[..., 2], points[..., 0]], axis=-1)
    camera_points = scene_points @ scene_geometry.extrinsic_rotation_matrix.T + scene_geometry.extrinsic_translation_vector
    homogeneous = camera_points @ scene_geometry.intrinsic_camera_matrix.T
    image_points = homogeneous[..., :2] / homogeneous[..., 2:3]

    if scene_geometry.has_distortion:
        intrinsic = scene_geometry.intrinsic_camera_matrix
        principal_point = np.array([intrinsic[0, 2], intrinsic[1, 2]])
        focal_lengths = np.array([intrinsic[0, 0], intrinsic[1, 1]])
        k1, k2 = scene_geometry.radial_distortion_vector

        normalized = (image_points - principal_point) / focal_lengths
        radius_squared = np.sum(normalized**2, axis=-1, keepdims=True)
        distortion = 1.0 + k1 * radius_squared + k2 * radius_squared**2
        image_points = normalized * distortion * focal_lengths + principal_point

    return image_points


def camera_node_in_eye_world(
    *,
    rotation: NDArray[np.float64],
    eye_model: EyeModel,
    scene_geometry: SceneGeometry,
) -> NDArray[np.float64]:
    """
    Camera center expressed in the unrotated eyeWorld frame.

    Undoes the extrinsic transform, the sceneWorld axis permutation and the
    eye rotation, so rays can be traced before the eye is rotated.
    """
    scene_node = np.linalg.solve(
        scene_geometry.extrinsic_rotation_matrix,
        -scene_geometry.extrinsic_translation_vector,
    )
    head_node = np.array([scene_node[2], scene_node[0], -scene_node[1]])
    return rotation.T @ (head_node - eye_model.rotation_center) + eye_model.rotation_center


def project_pupil(
    *,
    eye_pose: EyePose | NDArray[np.float64],
    scene_geometry: SceneGeometry,
    ray_trace_tables: RayTraceTables | None = None,
    full_eye_model: bool = False,
) -> PupilProjection:
    """
    Project the pupil (and optionally the whole eye) for one eye pose.

    Args:
        eye_pose: EyePose or [azimuth, elevation, torsion, pupil radius]
        scene_geometry: Camera and eye parameters
        ray_trace_tables: Corneal refraction tables; None for a pinhole-only model
        full_eye_model: Also project centers, iris and chamber surfaces

    Returns:
        PupilProjection with the fitted ellipse (all-NaN for a zero radius)
    """
    pose = eye_pose.as_array() if isinstance(eye_pose, EyePose) else np.asarray(eye_pose, dtype=float)
    azimuth, elevation, torsion, pupil_radius = pose

    eye_model = create_eye_model(
        eye_radius_mm=float(scene_geometry.eye_radius_mm),
        anatomy=scene_geometry.eye_anatomy,
    )
    eye_world_points, labels = assemble_eye_world_points(
        eye_model=eye_model,
        pupil_radius_mm=pupil_radius,
        full_eye_model=full_eye_model,
    )
    rotation = eye_rotation_matrix(azimuth_deg=azimuth, elevation_deg=elevation, torsion_deg=torsion)

    ray_trace_errors = np.full(len(eye_world_points), np.nan)
    if ray_trace_tables is not None:
        camera_node = camera_node_in_eye_world(
            rotation=rotation,
            eye_model=eye_model,
            scene_geometry=scene_geometry,
        )
        traced = np.array([label in REFRACTED_LABELS for label in labels])
        eye_world_points = eye_world_points.copy()
        eye_world_points[traced], ray_trace_errors[traced] = refract_eye_world_points(
            points=eye_world_points[traced],
            eye_model=eye_model,
            camera_node=camera_node,
            tables=ray_trace_tables,
        )

    head_world_points = rotate_about_center(
        points=eye_world_points,
        rotation=rotation,
        center=eye_model.rotation_center,
    )
    image_points = head_world_to_image(points=head_world_points, scene_geometry=scene_geometry)

    if np.isfinite(pupil_radius) and pupil_radius > 0:
        ellipse = fit_transparent_ellipse(points=image_points[:NUM_PUPIL_PERIMETER_POINTS])
    else:
        ellipse = NAN_ELLIPSE.copy()

    return PupilProjection(
        ellipse=ellipse,
        eye_world_points=eye_world_points,
        head_world_points=head_world_points,
        image_points=image_points,
        point_labels=labels,
        ray_trace_errors=ray_trace_errors,
    )


def project_pupil_centers(
    *,
    azimuths_deg: NDArray[np.float64],
    elevations_deg: NDArray[np.float64],
    scene_geometry: SceneGeometry,
) -> NDArray[np.float64]:
    """
    Image location of the (unrefracted) pupil center for many eye rotations at once.

    Returns:
        (G, 2) image points
    """
    eye_model = create_eye_model(
        eye_radius_mm=float(scene_geometry.eye_radius_mm),
        anatomy=scene_geometry.eye_anatomy,
    )
    rotations = eye_rotation_matrix(azimuth_deg=azimuths_deg, elevation_deg=elevations_deg)
    head_points = rotate_about_center(
        points=eye_model.pupil_center[None, :],
        rotation=rotations,
        center=eye_model.rotation_center,
    )
    return head_world_to_image(points=head_points[:, 0, :], scene_geometry=scene_geometry)
