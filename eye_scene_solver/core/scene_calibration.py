"""
Scene calibration: fit camera translation (and optionally eye radius) to observed pupil ellipses.

For a candidate scene, every selected ellipse is inverse-projected. The
candidate's cost combines the resulting center distance errors with
multiplicative shape and area penalties:

    term_i = center_i * (1 + 100 * shape_i) * (1 + 100 * area_i) * weight_i
    cost   = sqrt(mean(term_i^2))      (RMSE)
           = sum(term_i^2)             (SSE)

A scene that reproduces an ellipse center only by giving up on its shape
or area is penalized sharply. The outer search is a pattern search because
the cost wraps an inner optimization and has no usable gradient.

Eye radius and camera depth trade off against each other (a bigger eye
further away looks much the same), so by default the radius is held fixed
and only the translation is searched.
"""
import logging
from dataclasses import dataclass, field
from functools import partial

import numpy as np
from numpy.typing import NDArray

from eye_scene_solver.core.errors import ConfigurationError
from eye_scene_solver.core.frame_selection import FrameSelection, select_frames_by_bin, select_listed_frames
from eye_scene_solver.core.inverse_projection import (
    EyePoseBounds,
    InverseProjectionResult,
    InverseSolverConfig,
    inverse_projection_worker,
)
from eye_scene_solver.core.pattern_search import PatternSearchConfig, pattern_search, validate_bounds
from eye_scene_solver.core.ray_tracing import RayTraceConfig, RayTraceTables, create_ray_trace_tables
from eye_scene_solver.core.scene_models import CalibrationResult, ObservationSet, SceneGeometry
from eye_scene_solver.core.worker_pool import TaskMapper, worker_pool

logger = logging.getLogger(__name__)

ERROR_FORMS: tuple[str, ...] = ("RMSE", "SSE")
SCENE_PARAMETER_NAMES: tuple[str, ...] = ("translation_x", "translation_y", "translation_z", "eye_radius")
DEFAULT_TRANSLATION_HALF_WIDTHS_MM = np.array([10.0, 10.0, 30.0])


@dataclass
class CalibrationConfig:
    """Settings for a scene calibration run."""

    pattern_search: PatternSearchConfig = field(default_factory=PatternSearchConfig)
    inverse_solver: InverseSolverConfig = field(default_factory=InverseSolverConfig)

    error_form: str = "RMSE"
    """How per-ellipse terms are combined: "RMSE" or "SSE" """

    shape_penalty: float = 100.0
    area_penalty: float = 100.0

    unfit_ellipse_penalty: float = 1000.0
    """Term (px) charged for a selected ellipse the candidate scene cannot reproduce"""

    frame_indices: list[int] | None = None
    """Use these frames instead of selecting frames by spatial binning"""

    ray_trace: RayTraceConfig | None = None
    """Corneal ray tracing settings; None for a pinhole-only model"""

    n_workers: int | None = 1
    """Processes for the per-ellipse inverse projections (None = all cores, 1 = serial)"""

    def __post_init__(self) -> None:
        if self.error_form not in ERROR_FORMS:
            raise ConfigurationError(f"Unknown error form: {self.error_form}. Use one of {ERROR_FORMS}")


@dataclass
class CalibrationContext:
    """Everything the scene objective needs, passed explicitly."""

    selection: FrameSelection
    base_scene_geometry: SceneGeometry
    pose_bounds: EyePoseBounds
    free_mask: NDArray[np.bool_]
    """Which of [tx, ty, tz, eye_radius] are searched"""

    fixed_parameters: NDArray[np.float64]
    """[tx, ty, tz, eye_radius] values used for the fixed entries"""

    ray_trace_tables: RayTraceTables | None
    inverse_solver_config: InverseSolverConfig
    error_form: str
    shape_penalty: float
    area_penalty: float
    unfit_ellipse_penalty: float

    def full_parameters(self, free_values: NDArray[np.float64]) -> NDArray[np.float64]:
        parameters = self.fixed_parameters.copy()
        parameters[self.free_mask] = free_values
        return parameters

    def scene_for(self, free_values: NDArray[np.float64]) -> SceneGeometry:
        parameters = self.full_parameters(free_values)
        return self.base_scene_geometry.model_copy(
            update={
                "extrinsic_translation_vector": parameters[:3].copy(),
                "eye_radius_mm": float(parameters[3]),
            }
        )


def combine_ellipse_errors(
    *,
    center_distance_errors: NDArray[np.float64],
    shape_errors: NDArray[np.float64],
    area_errors: NDArray[np.float64],
    weights: NDArray[np.float64],
    error_form: str = "RMSE",
    shape_penalty: float = 100.0,
    area_penalty: float = 100.0,
    unfit_ellipse_penalty: float = 1000.0,
) -> float:
    """
    Combine per-ellipse residuals into one calibration cost.

    An ellipse with NaN residuals could not be reproduced by the candidate
    scene and is charged unfit_ellipse_penalty, so a scene cannot lower its
    cost by losing ellipses. If no ellipse is reproduced the cost is inf.
    """
    terms = (
        center_distance_errors
        * (1.0 + shape_penalty * shape_errors)
        * (1.0 + area_penalty * area_errors)
        * weights
    )
    unfit = ~np.isfinite(terms)
    if np.all(unfit):
        return np.inf
    terms = np.where(unfit, unfit_ellipse_penalty, terms)
    if error_form == "RMSE":
        return float(np.sqrt(np.mean(terms**2)))
    if error_form == "SSE":
        return float(np.sum(terms**2))
    raise ConfigurationError(f"Unknown error form: {error_form}. Use one of {ERROR_FORMS}")


def evaluate_scene(
    free_values: NDArray[np.float64],
    *,
    context: CalibrationContext,
    task_map: TaskMapper,
) -> tuple[float, list[InverseProjectionResult]]:
    """Inverse-project every selected ellipse under a candidate scene and score it."""
    worker_fn = partial(
        inverse_projection_worker,
        scene_geometry=context.scene_for(free_values),
        pose_bounds=context.pose_bounds,
        ray_trace_tables=context.ray_trace_tables,
        config=context.inverse_solver_config,
    )
    results = task_map(worker_fn, list(context.selection.ellipses))
    cost = combine_ellipse_errors(
        center_distance_errors=np.array([r.center_distance_error for r in results]),
        shape_errors=np.array([r.shape_error for r in results]),
        area_errors=np.array([r.area_error for r in results]),
        weights=context.selection.error_weights,
        error_form=context.error_form,
        shape_penalty=context.shape_penalty,
        area_penalty=context.area_penalty,
        unfit_ellipse_penalty=context.unfit_ellipse_penalty,
    )
    return cost, results


def scene_objective(
    free_values: NDArray[np.float64],
    *,
    context: CalibrationContext,
    task_map: TaskMapper,
) -> float:
    cost, _ = evaluate_scene(free_values, context=context, task_map=task_map)
    logger.debug(f"Scene {context.full_parameters(free_values)} -> cost {cost:.6g}")
    return cost


def _resolve_translation_bounds(
    *,
    translation_bounds: tuple[NDArray[np.float64], NDArray[np.float64]] | None,
    initial_translation: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    if translation_bounds is None:
        return (
            initial_translation - DEFAULT_TRANSLATION_HALF_WIDTHS_MM,
            initial_translation + DEFAULT_TRANSLATION_HALF_WIDTHS_MM,
        )
    lower = np.asarray(translation_bounds[0], dtype=np.float64)
    upper = np.asarray(translation_bounds[1], dtype=np.float64)
    if lower.shape != (3,) or upper.shape != (3,):
        raise ConfigurationError(f"Translation bounds must have 3 elements, got {lower.shape} and {upper.shape}")
    return lower, upper


def calibrate_scene(
    *,
    observation_set: ObservationSet,
    initial_scene_geometry: SceneGeometry,
    translation_bounds: tuple[NDArray[np.float64], NDArray[np.float64]] | None = None,
    radius_bounds: tuple[float, float] | None = None,
    pose_bounds: EyePoseBounds | None = None,
    n_bins_per_dimension: int = 10,
    config: CalibrationConfig | None = None,
) -> CalibrationResult:
    """
    Fit camera translation (and optionally eye radius) to observed ellipses.

    Args:
        observation_set: Per-frame ellipses with fit RMSE
        initial_scene_geometry: Starting scene; intrinsics, rotation and distortion stay fixed
        translation_bounds: (lower, upper) translation in mm; initial +/- [10, 10, 30] if None
        radius_bounds: (lower, upper) eye radius; fixed at the initial radius if None
        pose_bounds: Eye pose bounds for the inverse projections
        n_bins_per_dimension: Spatial bins per image axis for frame selection
        config: Search settings

    Returns:
        CalibrationResult

    Raises:
        ConfigurationError: Empty or inconsistent bounds, or unusable observations
    """
    config = config or CalibrationConfig()
    pose_bounds = pose_bounds or EyePoseBounds()

    if observation_set.n_frames == 0:
        raise ConfigurationError("Observation set is empty")

    logger.info("=" * 80)
    logger.info("SCENE CALIBRATION")
    logger.info("=" * 80)

    # =========================================================================
    # BOUNDS
    # =========================================================================
    initial_translation = np.asarray(initial_scene_geometry.extrinsic_translation_vector, dtype=np.float64)
    translation_lower, translation_upper = _resolve_translation_bounds(
        translation_bounds=translation_bounds,
        initial_translation=initial_translation,
    )
    if radius_bounds is None:
        radius_bounds = (initial_scene_geometry.eye_radius_mm, initial_scene_geometry.eye_radius_mm)
    radius_lower, radius_upper = float(radius_bounds[0]), float(radius_bounds[1])
    if radius_lower <= 0:
        raise ConfigurationError(f"Eye radius lower bound must be positive, got {radius_lower}")

    lower = np.append(translation_lower, radius_lower)
    upper = np.append(translation_upper, radius_upper)
    validate_bounds(lower=lower, upper=upper, name="Scene")

    x0 = np.append(initial_translation, initial_scene_geometry.eye_radius_mm)
    if np.any((x0 < lower) | (x0 > upper)):
        logger.warning(f"Initial scene parameters {x0} outside bounds, clipping")
        x0 = np.clip(x0, lower, upper)

    free_mask = lower < upper
    if free_mask[2] and free_mask[3]:
        logger.warning(
            "Camera depth and eye radius are both free; they are not jointly identifiable. "
            "Consider fixing one of them."
        )
    logger.info("Free parameters: " + ", ".join(
        f"{name} [{lo:.2f}, {hi:.2f}]"
        for name, lo, hi, free in zip(SCENE_PARAMETER_NAMES, lower, upper, free_mask) if free
    ))

    # =========================================================================
    # FRAME SELECTION
    # =========================================================================
    if config.frame_indices is not None:
        selection = select_listed_frames(observation_set=observation_set, frame_indices=config.frame_indices)
    else:
        selection = select_frames_by_bin(observation_set=observation_set, n_bins=n_bins_per_dimension)

    context = CalibrationContext(
        selection=selection,
        base_scene_geometry=initial_scene_geometry,
        pose_bounds=pose_bounds,
        free_mask=free_mask,
        fixed_parameters=x0.copy(),
        ray_trace_tables=create_ray_trace_tables(config=config.ray_trace) if config.ray_trace is not None else None,
        inverse_solver_config=config.inverse_solver,
        error_form=config.error_form,
        shape_penalty=config.shape_penalty,
        area_penalty=config.area_penalty,
        unfit_ellipse_penalty=config.unfit_ellipse_penalty,
    )

    # =========================================================================
    # SEARCH
    # =========================================================================
    with worker_pool(n_workers=config.n_workers) as task_map:
        objective = partial(scene_objective, context=context, task_map=task_map)
        if np.any(free_mask):
            search = pattern_search(
                objective=objective,
                x0=x0[free_mask],
                lower=lower[free_mask],
                upper=upper[free_mask],
                config=config.pattern_search,
            )
            best_free = search.x
            initial_cost = search.initial_fun
            n_evaluations = search.n_function_evaluations
            logger.info(
                f"Pattern search: {search.exit_message} after {search.n_iterations} iterations, "
                f"{n_evaluations} evaluations"
            )
        else:
            logger.info("No free scene parameters; evaluating the initial scene only")
            best_free = x0[free_mask]
            initial_cost = np.nan
            n_evaluations = 0

        final_cost, results = evaluate_scene(best_free, context=context, task_map=task_map)
        if not np.isfinite(initial_cost):
            initial_cost = final_cost

    calibrated_scene = context.scene_for(best_free)
    parameters = context.full_parameters(best_free)

    center_errors = np.array([r.center_distance_error for r in results])
    constraint_satisfied = [bool(r.constraint_satisfied) for r in results]
    n_relaxed = sum(1 for ok, err in zip(constraint_satisfied, center_errors) if not ok and np.isfinite(err))

    logger.info(f"  Initial cost: {initial_cost:.4f}")
    logger.info(f"  Final cost:   {final_cost:.4f}")
    logger.info(f"  Translation:  {np.array2string(parameters[:3], precision=3)} mm")
    logger.info(f"  Eye radius:   {parameters[3]:.3f} mm")
    logger.info(f"  Median center error: {np.nanmedian(center_errors):.3f} px")
    if n_relaxed:
        logger.warning(f"  {n_relaxed}/{len(results)} ellipses could not meet the shape/area tolerance")
    logger.info("✓ Scene calibration complete")

    return CalibrationResult(
        scene_geometry=calibrated_scene,
        initial_scene_geometry=initial_scene_geometry,
        selected_frame_indices=[int(frame) for frame in selection.frame_indices],
        selected_ellipses=selection.ellipses,
        error_weights=selection.error_weights,
        recovered_eye_poses=np.array([r.eye_pose for r in results]).reshape(-1, 4),
        center_distance_errors=center_errors,
        shape_errors=np.array([r.shape_error for r in results]),
        area_errors=np.array([r.area_error for r in results]),
        constraint_satisfied=constraint_satisfied,
        translation_lower_bound=translation_lower,
        translation_upper_bound=translation_upper,
        radius_bounds=(radius_lower, radius_upper),
        pose_lower_bound=pose_bounds.lower,
        pose_upper_bound=pose_bounds.upper,
        objective_value=final_cost,
        initial_objective_value=initial_cost,
        error_form=config.error_form,
        n_function_evaluations=n_evaluations,
        n_bins_per_dimension=n_bins_per_dimension,
        bin_x_edges=selection.x_edges,
        bin_y_edges=selection.y_edges,
    )
