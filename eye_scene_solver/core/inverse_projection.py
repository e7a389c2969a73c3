"""
Inverse projection: recover the eye pose that explains an observed pupil ellipse.

The search runs over azimuth, elevation and pupil radius (torsion is held at
zero). It minimizes the distance between the predicted and target ellipse
centers, subject to the predicted ellipse matching the target's shape
(eccentricity and orientation) and area within the scene's constraint
tolerance. When no pose meets the tolerance, a penalized search returns the
best compromise and the residual shape/area errors are reported instead of
raising.
"""
import logging
from dataclasses import dataclass, field, replace
from functools import partial

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import minimize

from eye_scene_solver.core.ellipse_geometry import (
    ellipse_area_error,
    ellipse_center_distance,
    ellipse_shape_error,
    fit_transparent_ellipse,
    sampson_distances,
    transparent_to_implicit,
)
from eye_scene_solver.core.errors import ConfigurationError
from eye_scene_solver.core.forward_projection import project_pupil, project_pupil_centers
from eye_scene_solver.core.ray_tracing import RayTraceTables
from eye_scene_solver.core.scene_models import Ellipse, EyePose, ObservationSet, SceneGeometry
from eye_scene_solver.core.worker_pool import worker_pool

logger = logging.getLogger(__name__)

# cost for candidate poses whose ellipse cannot be formed (e.g. points behind the camera)
INVALID_PREDICTION_COST: float = 1e12


@dataclass
class EyePoseBounds:
    """Lower/upper bounds on [azimuth_deg, elevation_deg, torsion_deg, pupil_radius_mm]."""

    lower: NDArray[np.float64] = field(default_factory=lambda: np.array([-35.0, -25.0, 0.0, 0.25]))
    upper: NDArray[np.float64] = field(default_factory=lambda: np.array([35.0, 25.0, 0.0, 4.0]))

    def __post_init__(self) -> None:
        self.lower = np.asarray(self.lower, dtype=np.float64)
        self.upper = np.asarray(self.upper, dtype=np.float64)
        if self.lower.shape != (4,) or self.upper.shape != (4,):
            raise ConfigurationError(
                f"Pose bounds must have 4 elements, got {self.lower.shape} and {self.upper.shape}"
            )
        if not (np.all(np.isfinite(self.lower)) and np.all(np.isfinite(self.upper))):
            raise ConfigurationError(f"Pose bounds must be finite: {self.lower}, {self.upper}")
        if np.any(self.lower > self.upper):
            raise ConfigurationError(f"Pose lower bound {self.lower} exceeds upper bound {self.upper}")
        if self.lower[2] != 0 or self.upper[2] != 0:
            raise ConfigurationError("Torsion is not fit; its bounds must both be 0")
        if self.lower[3] < 0:
            raise ConfigurationError(f"Pupil radius lower bound must be >= 0, got {self.lower[3]}")

    @property
    def free_mask(self) -> NDArray[np.bool_]:
        return self.lower < self.upper

    def clip(self, pose: NDArray[np.float64]) -> NDArray[np.float64]:
        return np.clip(pose, self.lower, self.upper)

    def with_pinned_radius(self, pupil_radius_mm: float) -> "EyePoseBounds":
        """Copy with lower and upper radius bound set to the given value."""
        lower = self.lower.copy()
        upper = self.upper.copy()
        lower[3] = upper[3] = pupil_radius_mm
        return replace(self, lower=lower, upper=upper)


@dataclass
class InverseSolverConfig:
    """Settings for the constrained pose search."""

    max_iterations: int = 200
    """SLSQP iteration limit"""

    function_tolerance: float = 1e-10
    """SLSQP ftol on the squared center distance (px^2)"""

    finite_difference_step: float = 1e-3
    """Step for numerical gradients (deg / mm)"""

    constraint_slack: float = 1e-5
    """Allowed overshoot of the tolerance before a fit counts as relaxed"""

    relaxation_penalty_weight: float = 1e4
    """Weight (px^2 per unit^2) on constraint violation in the relaxed search"""

    seed_grid_step_deg: float = 5.0
    """Spacing of the azimuth/elevation grid used to seed the search"""

    boundary_fit_method: str = "Powell"
    """scipy.optimize method for fitting poses to boundary points"""

    boundary_fit_max_iterations: int = 2000


@dataclass(frozen=True)
class InverseProjectionResult:
    """Best pose for one target ellipse, with the residuals the calibrator consumes."""

    eye_pose: NDArray[np.float64]
    """(4,) [azimuth, elevation, torsion, pupil radius]"""

    predicted_ellipse: NDArray[np.float64]
    center_distance_error: float
    shape_error: float
    area_error: float
    constraint_satisfied: bool

    @property
    def eye_pose_model(self) -> EyePose:
        return EyePose.from_array(self.eye_pose)

    @property
    def predicted_ellipse_model(self) -> Ellipse:
        return Ellipse.from_array(self.predicted_ellipse)

    @classmethod
    def missing(cls) -> "InverseProjectionResult":
        return cls(
            eye_pose=np.full(4, np.nan),
            predicted_ellipse=np.full(5, np.nan),
            center_distance_error=np.nan,
            shape_error=np.nan,
            area_error=np.nan,
            constraint_satisfied=False,
        )


@dataclass(frozen=True)
class BoundaryFitResult:
    """Pose fit directly to pupil boundary points."""

    eye_pose: NDArray[np.float64]
    ellipse: NDArray[np.float64]
    rmse: float
    """Root mean square Sampson distance of the boundary points (px)"""

    @classmethod
    def missing(cls) -> "BoundaryFitResult":
        return cls(eye_pose=np.full(4, np.nan), ellipse=np.full(5, np.nan), rmse=np.nan)


class InverseSolverContext:
    """
    State shared by the objective and constraint functions of one search.

    The free parameters are the entries of the pose whose bounds differ.
    The last forward projection is cached because SLSQP evaluates the
    objective and both constraints at the same point.
    """

    def __init__(
        self,
        *,
        target_ellipse: NDArray[np.float64],
        scene_geometry: SceneGeometry,
        pose_bounds: EyePoseBounds,
        ray_trace_tables: RayTraceTables | None,
    ) -> None:
        self.target_ellipse = target_ellipse
        self.scene_geometry = scene_geometry
        self.pose_bounds = pose_bounds
        self.ray_trace_tables = ray_trace_tables
        self.free_mask = pose_bounds.free_mask
        self.tolerance = scene_geometry.constraint_tolerance
        self._cached_key: bytes | None = None
        self._cached_ellipse: NDArray[np.float64] | None = None

    def full_pose(self, free_values: NDArray[np.float64]) -> NDArray[np.float64]:
        pose = self.pose_bounds.lower.copy()
        pose[self.free_mask] = free_values
        return pose

    def predicted_ellipse(self, free_values: NDArray[np.float64]) -> NDArray[np.float64]:
        key = np.asarray(free_values, dtype=np.float64).tobytes()
        if key != self._cached_key:
            self._cached_ellipse = project_pupil(
                eye_pose=self.full_pose(free_values),
                scene_geometry=self.scene_geometry,
                ray_trace_tables=self.ray_trace_tables,
            ).ellipse
            self._cached_key = key
        return self._cached_ellipse

    def errors(self, free_values: NDArray[np.float64]) -> tuple[float, float, float]:
        """(center distance, shape error, area error) at the given free values."""
        predicted = self.predicted_ellipse(free_values)
        if np.any(np.isnan(predicted)):
            return np.nan, np.nan, np.nan
        return (
            ellipse_center_distance(target=self.target_ellipse, candidate=predicted),
            ellipse_shape_error(target=self.target_ellipse, candidate=predicted),
            ellipse_area_error(target=self.target_ellipse, candidate=predicted),
        )


def _center_distance_objective(free_values: NDArray[np.float64], context: InverseSolverContext) -> float:
    center_distance, _, _ = context.errors(free_values)
    if np.isnan(center_distance):
        return INVALID_PREDICTION_COST
    return center_distance**2


def _shape_constraint(free_values: NDArray[np.float64], context: InverseSolverContext) -> float:
    _, shape_error, _ = context.errors(free_values)
    if np.isnan(shape_error):
        return -1.0
    return context.tolerance**2 - shape_error**2


def _area_constraint(free_values: NDArray[np.float64], context: InverseSolverContext) -> float:
    _, _, area_error = context.errors(free_values)
    if np.isnan(area_error):
        return -1.0
    return context.tolerance**2 - area_error**2


def _relaxed_objective(
    free_values: NDArray[np.float64],
    context: InverseSolverContext,
    penalty_weight: float,
) -> float:
    center_distance, shape_error, area_error = context.errors(free_values)
    if np.isnan(center_distance):
        return INVALID_PREDICTION_COST
    violation = (
        max(0.0, shape_error**2 - context.tolerance**2)
        + max(0.0, area_error**2 - context.tolerance**2)
    )
    return center_distance**2 + penalty_weight * violation


def initial_eye_pose_guess(
    *,
    target_ellipse: NDArray[np.float64],
    scene_geometry: SceneGeometry,
    pose_bounds: EyePoseBounds,
    grid_step_deg: float = 5.0,
) -> NDArray[np.float64]:
    """
    Seed pose: the azimuth/elevation grid point whose pupil center lands
    nearest the target center, with the radius scaled to match the target area.
    """
    def axis_grid(index: int) -> NDArray[np.float64]:
        low, high = pose_bounds.lower[index], pose_bounds.upper[index]
        n_values = max(2, int(np.ceil((high - low) / grid_step_deg)) + 1) if high > low else 1
        return np.linspace(low, high, n_values)

    azimuths, elevations = np.meshgrid(axis_grid(0), axis_grid(1), indexing="ij")
    azimuths = azimuths.ravel()
    elevations = elevations.ravel()
    centers = project_pupil_centers(
        azimuths_deg=azimuths,
        elevations_deg=elevations,
        scene_geometry=scene_geometry,
    )
    best = int(np.nanargmin(np.linalg.norm(centers - target_ellipse[:2], axis=1)))

    trial_radius = float(np.clip(2.0, max(pose_bounds.lower[3], 1e-3), pose_bounds.upper[3]))
    guess = np.array([azimuths[best], elevations[best], 0.0, trial_radius])
    if pose_bounds.free_mask[3]:
        trial_area = project_pupil(eye_pose=guess, scene_geometry=scene_geometry).ellipse[2]
        if np.isfinite(trial_area) and trial_area > 0:
            guess[3] = trial_radius * np.sqrt(target_ellipse[2] / trial_area)
    return pose_bounds.clip(guess)


def solve_eye_pose(
    *,
    target_ellipse: Ellipse | NDArray[np.float64],
    scene_geometry: SceneGeometry,
    pose_bounds: EyePoseBounds | None = None,
    x0: NDArray[np.float64] | None = None,
    ray_trace_tables: RayTraceTables | None = None,
    config: InverseSolverConfig | None = None,
) -> InverseProjectionResult:
    """
    Find the eye pose whose projected pupil best reproduces a target ellipse.

    Args:
        target_ellipse: Observed ellipse (transparent form)
        scene_geometry: Camera and eye parameters
        pose_bounds: Search bounds, physiological defaults if None
        x0: Starting pose [az, el, torsion, radius], seeded from a grid if None
        ray_trace_tables: Corneal refraction tables, None for pinhole only
        config: Solver settings

    Returns:
        InverseProjectionResult; all-NaN when the target is missing
    """
    target = target_ellipse.as_array() if isinstance(target_ellipse, Ellipse) else np.asarray(target_ellipse, dtype=float)
    if not np.all(np.isfinite(target)) or target[2] <= 0:
        return InverseProjectionResult.missing()

    pose_bounds = pose_bounds or EyePoseBounds()
    config = config or InverseSolverConfig()
    context = InverseSolverContext(
        target_ellipse=target,
        scene_geometry=scene_geometry,
        pose_bounds=pose_bounds,
        ray_trace_tables=ray_trace_tables,
    )

    if x0 is None or not np.all(np.isfinite(x0)):
        x0 = initial_eye_pose_guess(
            target_ellipse=target,
            scene_geometry=scene_geometry,
            pose_bounds=pose_bounds,
            grid_step_deg=config.seed_grid_step_deg,
        )
    x0 = pose_bounds.clip(np.asarray(x0, dtype=float))
    free_mask = context.free_mask
    free_bounds = list(zip(pose_bounds.lower[free_mask], pose_bounds.upper[free_mask]))
    x0_free = x0[free_mask]

    if not np.any(free_mask):
        best_free = x0_free
    else:
        constrained = minimize(
            _center_distance_objective,
            x0_free,
            args=(context,),
            method="SLSQP",
            bounds=free_bounds,
            constraints=[
                {"type": "ineq", "fun": _shape_constraint, "args": (context,)},
                {"type": "ineq", "fun": _area_constraint, "args": (context,)},
            ],
            options={
                "maxiter": config.max_iterations,
                "ftol": config.function_tolerance,
                "eps": config.finite_difference_step,
            },
        )
        best_free = np.clip(constrained.x, pose_bounds.lower[free_mask], pose_bounds.upper[free_mask])

    _, shape_error, area_error = context.errors(best_free)
    limit = context.tolerance + config.constraint_slack
    satisfied = bool(shape_error <= limit and area_error <= limit)

    if not satisfied and np.any(free_mask):
        relaxed = minimize(
            _relaxed_objective,
            best_free,
            args=(context, config.relaxation_penalty_weight),
            method="L-BFGS-B",
            bounds=free_bounds,
            options={"maxiter": config.max_iterations, "eps": config.finite_difference_step},
        )
        relaxed_free = np.clip(relaxed.x, pose_bounds.lower[free_mask], pose_bounds.upper[free_mask])
        if (
            _relaxed_objective(relaxed_free, context, config.relaxation_penalty_weight)
            < _relaxed_objective(best_free, context, config.relaxation_penalty_weight)
        ):
            best_free = relaxed_free
        _, shape_error, area_error = context.errors(best_free)
        satisfied = bool(shape_error <= limit and area_error <= limit)
        if not satisfied:
            logger.debug(
                f"Inverse projection relaxed: shape error {shape_error:.4f}, "
                f"area error {area_error:.4f} (tolerance {context.tolerance})"
            )

    center_distance, shape_error, area_error = context.errors(best_free)
    return InverseProjectionResult(
        eye_pose=context.full_pose(best_free),
        predicted_ellipse=context.predicted_ellipse(best_free).copy(),
        center_distance_error=center_distance,
        shape_error=shape_error,
        area_error=area_error,
        constraint_satisfied=satisfied,
    )


def inverse_projection_worker(
    target_ellipse: NDArray[np.float64],
    *,
    scene_geometry: SceneGeometry,
    pose_bounds: EyePoseBounds,
    ray_trace_tables: RayTraceTables | None,
    config: InverseSolverConfig,
) -> InverseProjectionResult:
    """Worker function for batch inverse projection (picklable via functools.partial)."""
    return solve_eye_pose(
        target_ellipse=target_ellipse,
        scene_geometry=scene_geometry,
        pose_bounds=pose_bounds,
        ray_trace_tables=ray_trace_tables,
        config=config,
    )


def estimate_eye_poses(
    *,
    observation_set: ObservationSet,
    scene_geometry: SceneGeometry,
    pose_bounds: EyePoseBounds | None = None,
    ray_trace_tables: RayTraceTables | None = None,
    config: InverseSolverConfig | None = None,
    n_workers: int | None = 1,
) -> list[InverseProjectionResult]:
    """
    Inverse-project every frame of an observation set.

    Frames with a missing ellipse give all-NaN results.
    """
    worker_fn = partial(
        inverse_projection_worker,
        scene_geometry=scene_geometry,
        pose_bounds=pose_bounds or EyePoseBounds(),
        ray_trace_tables=ray_trace_tables,
        config=config or InverseSolverConfig(),
    )
    logger.info(f"Estimating eye poses for {observation_set.n_frames} frames...")
    with worker_pool(n_workers=n_workers) as task_map:
        results = task_map(worker_fn, list(observation_set.ellipses))

    n_relaxed = sum(1 for result in results if not result.constraint_satisfied and np.isfinite(result.shape_error))
    n_missing = sum(1 for result in results if np.isnan(result.center_distance_error))
    logger.info(f"✓ Estimated {len(results)} poses ({n_relaxed} relaxed, {n_missing} missing)")
    return results


class BoundaryFitContext:
    """State for fitting a pose to boundary points."""

    def __init__(
        self,
        *,
        boundary_points: NDArray[np.float64],
        scene_geometry: SceneGeometry,
        pose_bounds: EyePoseBounds,
        ray_trace_tables: RayTraceTables | None,
    ) -> None:
        self.boundary_points = boundary_points
        self.scene_geometry = scene_geometry
        self.pose_bounds = pose_bounds
        self.ray_trace_tables = ray_trace_tables
        self.free_mask = pose_bounds.free_mask

    def full_pose(self, free_values: NDArray[np.float64]) -> NDArray[np.float64]:
        pose = self.pose_bounds.lower.copy()
        pose[self.free_mask] = free_values
        return pose

    def project(self, free_values: NDArray[np.float64]) -> NDArray[np.float64]:
        return project_pupil(
            eye_pose=self.full_pose(free_values),
            scene_geometry=self.scene_geometry,
            ray_trace_tables=self.ray_trace_tables,
        ).ellipse

    def rmse(self, free_values: NDArray[np.float64]) -> float:
        ellipse = self.project(free_values)
        if np.any(np.isnan(ellipse)):
            return np.nan
        distances = sampson_distances(
            implicit=transparent_to_implicit(transparent=ellipse),
            points=self.boundary_points,
        )
        return float(np.sqrt(np.mean(distances**2)))


def _boundary_rmse_objective(free_values: NDArray[np.float64], context: BoundaryFitContext) -> float:
    rmse = context.rmse(free_values)
    return INVALID_PREDICTION_COST if np.isnan(rmse) else rmse


def fit_eye_pose_to_boundary_points(
    *,
    boundary_points: NDArray[np.float64] | None,
    scene_geometry: SceneGeometry,
    pose_bounds: EyePoseBounds | None = None,
    x0: NDArray[np.float64] | None = None,
    ray_trace_tables: RayTraceTables | None = None,
    config: InverseSolverConfig | None = None,
) -> BoundaryFitResult:
    """
    Fit the eye pose whose projected pupil best passes through boundary points.

    Parameters with equal lower and upper bounds are held at that value,
    which is how the radius smoother pins the pupil radius.

    Args:
        boundary_points: (K, 2) pupil boundary points; None or fewer than 5 gives NaN
        scene_geometry: Camera and eye parameters
        pose_bounds: Search bounds
        x0: Starting pose; derived from an ellipse fit to the points if None
        ray_trace_tables: Corneal refraction tables
        config: Solver settings

    Returns:
        BoundaryFitResult with the RMSE of the point-to-ellipse distances
    """
    if boundary_points is None:
        return BoundaryFitResult.missing()
    points = np.asarray(boundary_points, dtype=float)
    points = points[np.all(np.isfinite(points), axis=1)]
    if len(points) < 5:
        return BoundaryFitResult.missing()

    pose_bounds = pose_bounds or EyePoseBounds()
    config = config or InverseSolverConfig()

    if x0 is None or not np.all(np.isfinite(x0)):
        direct_fit = fit_transparent_ellipse(points=points)
        if np.any(np.isnan(direct_fit)):
            return BoundaryFitResult.missing()
        x0 = solve_eye_pose(
            target_ellipse=direct_fit,
            scene_geometry=scene_geometry,
            pose_bounds=pose_bounds,
            ray_trace_tables=ray_trace_tables,
            config=config,
        ).eye_pose

    context = BoundaryFitContext(
        boundary_points=points,
        scene_geometry=scene_geometry,
        pose_bounds=pose_bounds,
        ray_trace_tables=ray_trace_tables,
    )
    x0_free = pose_bounds.clip(np.asarray(x0, dtype=float))[context.free_mask]

    if np.any(context.free_mask):
        result = minimize(
            _boundary_rmse_objective,
            x0_free,
            args=(context,),
            method=config.boundary_fit_method,
            bounds=list(zip(pose_bounds.lower[context.free_mask], pose_bounds.upper[context.free_mask])),
            options={"maxiter": config.boundary_fit_max_iterations},
        )
        best_free = np.clip(result.x, pose_bounds.lower[context.free_mask], pose_bounds.upper[context.free_mask])
    else:
        best_free = x0_free

    return BoundaryFitResult(
        eye_pose=context.full_pose(best_free),
        ellipse=context.project(best_free),
        rmse=context.rmse(best_free),
    )
