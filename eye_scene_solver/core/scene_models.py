"""
Data models shared by the projection, calibration and smoothing code.

Image coordinates are pixels with x to the right and y down.
Eye rotations are degrees; pupil and eye radii are millimeters.
"""
from typing import Literal

import numpy as np
from numpy.typing import NDArray as NumpyArray
from numpydantic import NDArray, Shape
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from eye_scene_solver.core.eye_model import EyeAnatomy, REFERENCE_EYE_RADIUS_MM

ELLIPSE_FIELDS: tuple[str, ...] = ("center_x", "center_y", "area", "eccentricity", "theta")
EYE_POSE_FIELDS: tuple[str, ...] = ("azimuth_deg", "elevation_deg", "torsion_deg", "pupil_radius_mm")


def _as_float_array(value: object) -> object:
    if isinstance(value, (list, tuple, np.ndarray)):
        return np.asarray(value, dtype=np.float64)
    return value


class EyePose(BaseModel):
    """Rotation of the eye plus pupil radius for one frame."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    azimuth_deg: float
    elevation_deg: float
    torsion_deg: float = 0.0
    pupil_radius_mm: float

    def as_array(self) -> np.ndarray:
        return np.array([self.azimuth_deg, self.elevation_deg, self.torsion_deg, self.pupil_radius_mm])

    @classmethod
    def from_array(cls, values: np.ndarray) -> "EyePose":
        """Create from [azimuth, elevation, torsion, radius]."""
        return cls(
            azimuth_deg=float(values[0]),
            elevation_deg=float(values[1]),
            torsion_deg=float(values[2]),
            pupil_radius_mm=float(values[3]),
        )

    @classmethod
    def nan(cls) -> "EyePose":
        return cls.from_array(np.full(4, np.nan))


class Ellipse(BaseModel):
    """Ellipse in transparent form. All-NaN encodes "no ellipse"."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    center_x: float
    center_y: float
    area: float
    eccentricity: float
    theta: float

    @model_validator(mode="after")
    def validate_ranges(self) -> "Ellipse":
        if not np.isnan(self.eccentricity) and not 0.0 <= self.eccentricity < 1.0:
            raise ValueError(f"eccentricity must be in [0, 1), got {self.eccentricity}")
        if not np.isnan(self.theta) and not 0.0 <= self.theta < np.pi:
            raise ValueError(f"theta must be in [0, pi), got {self.theta}")
        return self

    @property
    def is_nan(self) -> bool:
        return bool(np.all(np.isnan(self.as_array())))

    def as_array(self) -> np.ndarray:
        return np.array([self.center_x, self.center_y, self.area, self.eccentricity, self.theta])

    @classmethod
    def from_array(cls, values: np.ndarray) -> "Ellipse":
        return cls(**{name: float(value) for name, value in zip(ELLIPSE_FIELDS, values)})

    @classmethod
    def nan(cls) -> "Ellipse":
        return cls.from_array(np.full(5, np.nan))


class SceneGeometry(BaseModel):
    """
    Camera and eye parameters that define the projection.

    imagePoint = K @ [R | t] @ sceneWorldPoint, followed by radial distortion
    in normalized image coordinates.
    """

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        arbitrary_types_allowed=True,
        ser_json_inf_nan="constants",
    )

    intrinsic_camera_matrix: NDArray[Shape["3, 3"], float]
    extrinsic_rotation_matrix: NDArray[Shape["3, 3"], float]
    extrinsic_translation_vector: NDArray[Shape["3"], float]
    """Camera translation (mm)"""

    radial_distortion_vector: NDArray[Shape["2"], float]
    """Radial distortion coefficients [k1, k2]"""

    eye_radius_mm: float = Field(gt=0)
    constraint_tolerance: float = Field(gt=0)
    """Allowed shape and area mismatch for the inverse projection"""

    eye_anatomy: EyeAnatomy = Field(default_factory=EyeAnatomy)

    @field_validator(
        "intrinsic_camera_matrix",
        "extrinsic_rotation_matrix",
        "extrinsic_translation_vector",
        "radial_distortion_vector",
        mode="before",
    )
    @classmethod
    def coerce_float_arrays(cls, value: object) -> object:
        return _as_float_array(value)

    @property
    def has_distortion(self) -> bool:
        return bool(np.any(self.radial_distortion_vector != 0))

    def with_translation(self, translation: np.ndarray) -> "SceneGeometry":
        return self.model_copy(update={"extrinsic_translation_vector": np.asarray(translation, dtype=np.float64)})

    def with_eye_radius(self, eye_radius_mm: float) -> "SceneGeometry":
        return self.model_copy(update={"eye_radius_mm": float(eye_radius_mm)})


def create_default_scene_geometry(
    *,
    translation_mm: np.ndarray | None = None,
    eye_radius_mm: float = REFERENCE_EYE_RADIUS_MM,
    constraint_tolerance: float = 0.02,
) -> SceneGeometry:
    """
    Scene with a 640x480 camera looking straight at the eye from 120mm away.

    Args:
        translation_mm: Camera translation, defaults to [0, 0, 120]
        eye_radius_mm: Eye radius
        constraint_tolerance: Shape/area tolerance for the inverse projection
    """
    return SceneGeometry(
        intrinsic_camera_matrix=np.array([
            [772.5483, 0.0, 320.0],
            [0.0, 772.5483, 240.0],
            [0.0, 0.0, 1.0],
        ]),
        extrinsic_rotation_matrix=np.array([
            [1.0, 0.0, 0.0],
            [0.0, -1.0, 0.0],
            [0.0, 0.0, -1.0],
        ]),
        extrinsic_translation_vector=np.array([0.0, 0.0, 120.0]) if translation_mm is None else translation_mm,
        radial_distortion_vector=np.zeros(2),
        eye_radius_mm=eye_radius_mm,
        constraint_tolerance=constraint_tolerance,
    )


class ObservationSet(BaseModel):
    """Per-frame pupil ellipses with their fit quality."""

    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)

    frame_indices: NumpyArray[np.int64]  # (N,)
    ellipses: NumpyArray[np.float64]  # (N, 5) transparent form
    fit_rmse: NumpyArray[np.float64]  # (N,)
    ellipse_sd: NumpyArray[np.float64] | None = None  # (N, 5)

    @model_validator(mode="after")
    def validate_shapes(self) -> "ObservationSet":
        n_frames = len(self.frame_indices)
        if self.frame_indices.ndim != 1:
            raise ValueError(f"frame_indices must be 1D, got shape {self.frame_indices.shape}")
        if self.ellipses.shape != (n_frames, 5):
            raise ValueError(f"ellipses shape {self.ellipses.shape} != ({n_frames}, 5)")
        if self.fit_rmse.shape != (n_frames,):
            raise ValueError(f"fit_rmse shape {self.fit_rmse.shape} != ({n_frames},)")
        if self.ellipse_sd is not None and self.ellipse_sd.shape != (n_frames, 5):
            raise ValueError(f"ellipse_sd shape {self.ellipse_sd.shape} != ({n_frames}, 5)")
        return self

    @property
    def n_frames(self) -> int:
        return len(self.frame_indices)

    @property
    def ellipse_centers(self) -> np.ndarray:
        return self.ellipses[:, :2]

    def get_ellipse(self, position: int) -> Ellipse:
        return Ellipse.from_array(self.ellipses[position])

    @classmethod
    def concatenate(cls, observation_sets: list["ObservationSet"]) -> "ObservationSet":
        """
        Join observation sets from several acquisitions.

        Frames are renumbered consecutively in the given order.
        """
        if not observation_sets:
            raise ValueError("No observation sets to concatenate")
        has_sd = all(obs.ellipse_sd is not None for obs in observation_sets)
        n_total = sum(obs.n_frames for obs in observation_sets)
        return cls(
            frame_indices=np.arange(n_total, dtype=np.int64),
            ellipses=np.vstack([obs.ellipses for obs in observation_sets]),
            fit_rmse=np.concatenate([obs.fit_rmse for obs in observation_sets]),
            ellipse_sd=np.vstack([obs.ellipse_sd for obs in observation_sets]) if has_sd else None,
        )


class PerFrameSeries(BaseModel):
    """Per-frame eye pose estimates with uncertainty, input to radius smoothing."""

    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)

    frame_indices: NumpyArray[np.int64]  # (N,)
    eye_poses: NumpyArray[np.float64]  # (N, 4) azimuth, elevation, torsion, pupil radius
    eye_pose_sd: NumpyArray[np.float64]  # (N, 4)
    fit_rmse: NumpyArray[np.float64]  # (N,)
    boundary_points: list[NumpyArray[np.float64] | None] | None = None  # N entries of (K, 2)

    @model_validator(mode="after")
    def validate_shapes(self) -> "PerFrameSeries":
        n_frames = len(self.frame_indices)
        if self.eye_poses.shape != (n_frames, 4):
            raise ValueError(f"eye_poses shape {self.eye_poses.shape} != ({n_frames}, 4)")
        if self.eye_pose_sd.shape != (n_frames, 4):
            raise ValueError(f"eye_pose_sd shape {self.eye_pose_sd.shape} != ({n_frames}, 4)")
        if self.fit_rmse.shape != (n_frames,):
            raise ValueError(f"fit_rmse shape {self.fit_rmse.shape} != ({n_frames},)")
        if self.boundary_points is not None:
            if len(self.boundary_points) != n_frames:
                raise ValueError(f"boundary_points has {len(self.boundary_points)} entries, expected {n_frames}")
            for points in self.boundary_points:
                if points is not None and (points.ndim != 2 or points.shape[1] != 2):
                    raise ValueError(f"boundary points must be (K, 2), got {points.shape}")
        return self

    @property
    def n_frames(self) -> int:
        return len(self.frame_indices)

    @property
    def pupil_radii(self) -> np.ndarray:
        return self.eye_poses[:, 3]

    @property
    def pupil_radius_sd(self) -> np.ndarray:
        return self.eye_pose_sd[:, 3]


class SmoothedSeries(BaseModel):
    """Per-frame output of the radius smoother."""

    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)

    frame_indices: NumpyArray[np.int64]  # (N,)
    ellipses: NumpyArray[np.float64]  # (N, 5)
    eye_poses: NumpyArray[np.float64]  # (N, 4)
    pupil_radius_sd: NumpyArray[np.float64]  # (N,) posterior SD
    fit_rmse: NumpyArray[np.float64]  # (N,) boundary RMSE of the refit
    prior_radius: NumpyArray[np.float64]  # (N,)
    prior_radius_sd: NumpyArray[np.float64]  # (N,)
    posterior_radius: NumpyArray[np.float64]  # (N,)

    @model_validator(mode="after")
    def validate_shapes(self) -> "SmoothedSeries":
        n_frames = len(self.frame_indices)
        if self.ellipses.shape != (n_frames, 5):
            raise ValueError(f"ellipses shape {self.ellipses.shape} != ({n_frames}, 5)")
        if self.eye_poses.shape != (n_frames, 4):
            raise ValueError(f"eye_poses shape {self.eye_poses.shape} != ({n_frames}, 4)")
        for name in ("pupil_radius_sd", "fit_rmse", "prior_radius", "prior_radius_sd", "posterior_radius"):
            values = getattr(self, name)
            if values.shape != (n_frames,):
                raise ValueError(f"{name} shape {values.shape} != ({n_frames},)")
        return self

    @property
    def n_frames(self) -> int:
        return len(self.frame_indices)


class CalibrationResult(BaseModel):
    """Calibrated scene geometry plus everything needed to audit the fit."""

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        arbitrary_types_allowed=True,
        ser_json_inf_nan="constants",
    )

    scene_geometry: SceneGeometry
    initial_scene_geometry: SceneGeometry

    selected_frame_indices: list[int]
    selected_ellipses: NDArray[Shape["*, 5"], float]
    error_weights: NDArray[Shape["*"], float]

    recovered_eye_poses: NDArray[Shape["*, 4"], float]
    center_distance_errors: NDArray[Shape["*"], float]
    shape_errors: NDArray[Shape["*"], float]
    area_errors: NDArray[Shape["*"], float]
    constraint_satisfied: list[bool]

    translation_lower_bound: NDArray[Shape["3"], float]
    translation_upper_bound: NDArray[Shape["3"], float]
    radius_bounds: tuple[float, float]
    pose_lower_bound: NDArray[Shape["4"], float]
    pose_upper_bound: NDArray[Shape["4"], float]

    objective_value: float
    initial_objective_value: float
    error_form: Literal["RMSE", "SSE"]
    n_function_evaluations: int

    n_bins_per_dimension: int
    bin_x_edges: NDArray[Shape["*"], float]
    bin_y_edges: NDArray[Shape["*"], float]

    @field_validator(
        "selected_ellipses",
        "error_weights",
        "recovered_eye_poses",
        "center_distance_errors",
        "shape_errors",
        "area_errors",
        "translation_lower_bound",
        "translation_upper_bound",
        "pose_lower_bound",
        "pose_upper_bound",
        "bin_x_edges",
        "bin_y_edges",
        mode="before",
    )
    @classmethod
    def coerce_float_arrays(cls, value: object) -> object:
        return _as_float_array(value)

    @property
    def n_selected(self) -> int:
        return len(self.selected_frame_indices)

    @property
    def n_relaxed(self) -> int:
        """Number of selected ellipses whose inverse projection missed the shape/area tolerance."""
        return int(np.sum(~np.asarray(self.constraint_satisfied, dtype=bool)))

    def residuals_by_bin(self) -> dict[str, np.ndarray]:
        """
        Arrange per-ellipse residuals on the frame-selection grid.

        Returns:
            Dict of (n_bins, n_bins) arrays indexed [x_bin, y_bin] with keys
            error_weights, center_distance_errors, shape_errors, area_errors.
            Bins without a selected ellipse are NaN.
        """
        n_bins = self.n_bins_per_dimension
        grids = {
            name: np.full((n_bins, n_bins), np.nan)
            for name in ("error_weights", "center_distance_errors", "shape_errors", "area_errors")
        }
        if len(self.bin_x_edges) != n_bins + 1 or len(self.bin_y_edges) != n_bins + 1:
            return grids

        x_bins = np.clip(np.digitize(self.selected_ellipses[:, 0], self.bin_x_edges) - 1, 0, n_bins - 1)
        y_bins = np.clip(np.digitize(self.selected_ellipses[:, 1], self.bin_y_edges) - 1, 0, n_bins - 1)
        for name, grid in grids.items():
            grid[x_bins, y_bins] = np.asarray(getattr(self, name))
        return grids
