"""
Empirical-Bayes temporal smoothing of pupil radius.

Pupil size changes slowly compared to the frame rate, so neighboring frames
are informative about each frame's radius. For every frame:

    prior       weighted mean of the neighbors' radii in a window around the
                frame; weights combine each neighbor's measurement precision
                (min-max scaled within the window) with an exponential decay
                exp(-|offset| / tau) in time
    likelihood  the frame's own radius, with SD = measurement SD ** exponent
                (inflated enormously for frames whose fit RMSE is too high)
    posterior   Gaussian conjugate combination of prior and likelihood

The eye pose is then refit to the frame's pupil boundary points with the
radius pinned to the posterior value.

Frames are assumed to be consecutive; window offsets are row offsets.
"""
import logging
from dataclasses import dataclass, field
from functools import partial

import numpy as np
from numpy.typing import NDArray

from eye_scene_solver.core.errors import ConfigurationError
from eye_scene_solver.core.inverse_projection import (
    BoundaryFitResult,
    EyePoseBounds,
    InverseSolverConfig,
    fit_eye_pose_to_boundary_points,
)
from eye_scene_solver.core.ray_tracing import RayTraceConfig, RayTraceTables, create_ray_trace_tables
from eye_scene_solver.core.scene_models import PerFrameSeries, SceneGeometry, SmoothedSeries
from eye_scene_solver.core.worker_pool import worker_pool

logger = logging.getLogger(__name__)

TINY = np.finfo(np.float64).tiny


@dataclass
class SmoothingConfig:
    """Settings for radius smoothing."""

    decay_tau_frames: float = 3.0
    """Time constant (frames) of the exponential temporal weighting"""

    likelihood_error_exponent: float = 1.0
    """Exponent applied to each frame's own radius SD"""

    bad_frame_rmse_threshold: float = 2.0
    """Frames with a fit RMSE above this are distrusted"""

    bad_frame_sd_inflation: float = 1e20
    """Factor applied to the likelihood SD of a distrusted frame"""

    pose_bounds: EyePoseBounds = field(
        default_factory=lambda: EyePoseBounds(
            lower=np.array([-35.0, -25.0, 0.0, 0.5]),
            upper=np.array([35.0, 25.0, 0.0, 4.0]),
        )
    )
    """Bounds for the refit; the radius bound clips the posterior"""

    inverse_solver: InverseSolverConfig = field(default_factory=InverseSolverConfig)
    ray_trace: RayTraceConfig | None = None

    n_workers: int | None = 1
    """Processes for the per-frame refits (None = all cores, 1 = serial)"""

    n_frames: int | None = None
    """Only smooth the first n frames"""

    def __post_init__(self) -> None:
        if self.decay_tau_frames <= 0:
            raise ConfigurationError(f"decay_tau_frames must be positive, got {self.decay_tau_frames}")
        if self.likelihood_error_exponent <= 0:
            raise ConfigurationError(
                f"likelihood_error_exponent must be positive, got {self.likelihood_error_exponent}"
            )


@dataclass(frozen=True)
class RadiusPosteriors:
    """(N,) arrays of the Bayesian combination for each frame."""

    prior_mean: NDArray[np.float64]
    prior_sd: NDArray[np.float64]
    likelihood_mean: NDArray[np.float64]
    likelihood_sd: NDArray[np.float64]
    posterior_mean: NDArray[np.float64]
    posterior_sd: NDArray[np.float64]


def temporal_window_half_width(*, decay_tau_frames: float) -> int:
    """Window reaches ten time constants, at least 10 frames."""
    return int(np.ceil(max(decay_tau_frames * 10.0, 10.0)))


def _neighborhood_prior(
    *,
    radii: NDArray[np.float64],
    radius_sd: NDArray[np.float64],
    bad: NDArray[np.bool_],
    temporal_weights: NDArray[np.float64],
) -> tuple[float, float]:
    """Prior mean and SD from the neighbors of one frame (NaN if no neighbor is usable)."""
    usable = np.isfinite(radii) & np.isfinite(radius_sd)
    if not np.any(usable):
        return np.nan, np.nan
    radii = radii[usable]
    bad = bad[usable]
    temporal_weights = temporal_weights[usable]

    precision = 1.0 / (radius_sd[usable] + TINY)
    precision_range = np.max(precision) - np.min(precision)
    if precision_range > 0:
        precision = (precision - np.min(precision)) / precision_range
    else:
        precision = np.ones_like(precision)

    # drop bad neighbors unless they are all bad
    if np.any(bad) and not np.all(bad):
        precision[bad] = 0.0

    weights = precision * temporal_weights
    if np.sum(weights) == 0:
        weights = temporal_weights
    prior_mean = float(np.sum(weights * radii) / np.sum(weights))

    temporal_mean = np.sum(temporal_weights * radii) / np.sum(temporal_weights)
    prior_sd = float(np.sqrt(np.sum(temporal_weights * (radii - temporal_mean) ** 2) / np.sum(temporal_weights)))
    return prior_mean, prior_sd


def combine_gaussians(
    *,
    prior_mean: float,
    prior_sd: float,
    likelihood_mean: float,
    likelihood_sd: float,
) -> tuple[float, float]:
    """Conjugate update of a Gaussian prior with a Gaussian likelihood."""
    prior_var = prior_sd**2
    likelihood_var = likelihood_sd**2
    total_var = prior_var + likelihood_var
    if total_var == 0:
        return (prior_mean + likelihood_mean) / 2.0, 0.0
    posterior_mean = (prior_var * likelihood_mean + likelihood_var * prior_mean) / total_var
    posterior_sd = np.sqrt(prior_var * likelihood_var / total_var)
    return float(posterior_mean), float(posterior_sd)


def compute_radius_posteriors(
    *,
    radii: NDArray[np.float64],
    radius_sd: NDArray[np.float64],
    fit_rmse: NDArray[np.float64],
    config: SmoothingConfig,
) -> RadiusPosteriors:
    """
    Prior, likelihood and posterior pupil radius for every frame.

    Args:
        radii: (N,) initial radius estimates (NaN = missing)
        radius_sd: (N,) measurement SD of each estimate
        fit_rmse: (N,) ellipse fit RMSE of each frame
        config: Smoothing settings

    Returns:
        RadiusPosteriors
    """
    n_frames = len(radii)
    half_width = temporal_window_half_width(decay_tau_frames=config.decay_tau_frames)
    bad = fit_rmse > config.bad_frame_rmse_threshold

    prior_mean = np.full(n_frames, np.nan)
    prior_sd = np.full(n_frames, np.nan)
    likelihood_sd = radius_sd**config.likelihood_error_exponent
    likelihood_sd = np.where(bad, likelihood_sd * config.bad_frame_sd_inflation, likelihood_sd)
    posterior_mean = np.full(n_frames, np.nan)
    posterior_sd = np.full(n_frames, np.nan)

    for frame in range(n_frames):
        start = max(0, frame - half_width)
        stop = min(n_frames, frame + half_width + 1)
        neighbors = np.array([position for position in range(start, stop) if position != frame], dtype=np.int64)
        if len(neighbors) > 0:
            prior_mean[frame], prior_sd[frame] = _neighborhood_prior(
                radii=radii[neighbors],
                radius_sd=radius_sd[neighbors],
                bad=bad[neighbors],
                temporal_weights=np.exp(-np.abs(neighbors - frame) / config.decay_tau_frames),
            )

        if not (np.isfinite(radii[frame]) and np.isfinite(likelihood_sd[frame])):
            continue
        if np.isnan(prior_mean[frame]):
            # nothing to borrow from; the frame stands on its own measurement
            posterior_mean[frame], posterior_sd[frame] = radii[frame], likelihood_sd[frame]
            continue
        if bad[frame]:
            # a bad frame takes its prior, also when every variance is zero
            posterior_mean[frame], posterior_sd[frame] = prior_mean[frame], prior_sd[frame]
            continue
        posterior_mean[frame], posterior_sd[frame] = combine_gaussians(
            prior_mean=prior_mean[frame],
            prior_sd=prior_sd[frame],
            likelihood_mean=radii[frame],
            likelihood_sd=likelihood_sd[frame],
        )

    return RadiusPosteriors(
        prior_mean=prior_mean,
        prior_sd=prior_sd,
        likelihood_mean=radii.copy(),
        likelihood_sd=likelihood_sd,
        posterior_mean=posterior_mean,
        posterior_sd=posterior_sd,
    )


def radius_refit_worker(
    task: tuple[NDArray[np.float64] | None, NDArray[np.float64], float],
    *,
    scene_geometry: SceneGeometry,
    pose_bounds: EyePoseBounds,
    ray_trace_tables: RayTraceTables | None,
    config: InverseSolverConfig,
) -> BoundaryFitResult:
    """Refit one frame's pose with its radius pinned (worker function)."""
    boundary_points, initial_pose, posterior_radius = task
    if boundary_points is None or not np.isfinite(posterior_radius) or not np.all(np.isfinite(initial_pose[:2])):
        return BoundaryFitResult.missing()

    pinned_radius = float(np.clip(posterior_radius, pose_bounds.lower[3], pose_bounds.upper[3]))
    x0 = initial_pose.copy()
    x0[2] = 0.0
    x0[3] = pinned_radius
    return fit_eye_pose_to_boundary_points(
        boundary_points=boundary_points,
        scene_geometry=scene_geometry,
        pose_bounds=pose_bounds.with_pinned_radius(pinned_radius),
        x0=x0,
        ray_trace_tables=ray_trace_tables,
        config=config,
    )


def smooth_pupil_radius(
    *,
    per_frame_series: PerFrameSeries,
    scene_geometry: SceneGeometry,
    config: SmoothingConfig | None = None,
) -> SmoothedSeries:
    """
    Smooth pupil radius over time and refit each frame with the smoothed radius.

    Args:
        per_frame_series: Initial per-frame poses, their SDs, fit RMSE and boundary points
        scene_geometry: Calibrated scene
        config: Smoothing settings

    Returns:
        SmoothedSeries; frames without boundary points or an initial radius are NaN
    """
    config = config or SmoothingConfig()
    n_frames = per_frame_series.n_frames
    if config.n_frames is not None:
        n_frames = min(n_frames, config.n_frames)

    logger.info("=" * 80)
    logger.info("PUPIL RADIUS SMOOTHING")
    logger.info("=" * 80)
    logger.info(f"Frames: {n_frames}")
    logger.info(f"Window half-width: {temporal_window_half_width(decay_tau_frames=config.decay_tau_frames)} frames "
                f"(tau={config.decay_tau_frames})")

    eye_poses = per_frame_series.eye_poses[:n_frames]
    fit_rmse = per_frame_series.fit_rmse[:n_frames]
    posteriors = compute_radius_posteriors(
        radii=eye_poses[:, 3],
        radius_sd=per_frame_series.pupil_radius_sd[:n_frames],
        fit_rmse=fit_rmse,
        config=config,
    )
    n_bad = int(np.sum(fit_rmse > config.bad_frame_rmse_threshold))
    logger.info(f"✓ Posterior radii computed ({n_bad} frames over the RMSE threshold)")

    boundary_points = per_frame_series.boundary_points
    if boundary_points is None:
        logger.warning("No boundary points supplied; refit outputs will be NaN")
        boundary_points = [None] * per_frame_series.n_frames
    tasks = [
        (boundary_points[frame], eye_poses[frame], posteriors.posterior_mean[frame])
        for frame in range(n_frames)
    ]

    worker_fn = partial(
        radius_refit_worker,
        scene_geometry=scene_geometry,
        pose_bounds=config.pose_bounds,
        ray_trace_tables=create_ray_trace_tables(config=config.ray_trace) if config.ray_trace is not None else None,
        config=config.inverse_solver,
    )
    with worker_pool(n_workers=config.n_workers) as task_map:
        refits = task_map(worker_fn, tasks)

    n_missing = sum(1 for refit in refits if np.isnan(refit.rmse))
    logger.info(f"✓ Refit {n_frames - n_missing} frames ({n_missing} missing)")

    return SmoothedSeries(
        frame_indices=per_frame_series.frame_indices[:n_frames],
        ellipses=np.array([refit.ellipse for refit in refits]).reshape(-1, 5),
        eye_poses=np.array([refit.eye_pose for refit in refits]).reshape(-1, 4),
        pupil_radius_sd=posteriors.posterior_sd,
        fit_rmse=np.array([refit.rmse for refit in refits]),
        prior_radius=posteriors.prior_mean,
        prior_radius_sd=posteriors.prior_sd,
        posterior_radius=posteriors.posterior_mean,
    )
