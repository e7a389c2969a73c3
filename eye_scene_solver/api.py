"""Calibrate a scene and smooth pupil radius for one acquisition."""

from pathlib import Path
import logging
from dataclasses import dataclass, field

import numpy as np

from eye_scene_solver.core.inverse_projection import EyePoseBounds
from eye_scene_solver.core.radius_smoothing import SmoothingConfig, smooth_pupil_radius
from eye_scene_solver.core.scene_calibration import CalibrationConfig, calibrate_scene
from eye_scene_solver.core.scene_models import CalibrationResult, SceneGeometry, SmoothedSeries
from eye_scene_solver.io.loaders import load_observation_set, load_per_frame_series
from eye_scene_solver.io.savers import save_calibration_result, save_scene_geometry, save_smoothed_series

logger = logging.getLogger(__name__)


@dataclass
class SessionConfig:
    """Complete configuration for one acquisition."""

    observations_csv: Path
    """Per-frame ellipses (frame, center_x, center_y, area, eccentricity, theta, rmse)"""

    output_dir: Path
    """Output directory"""

    initial_scene_geometry: SceneGeometry
    """Starting scene for the calibration"""

    per_frame_csv: Path | None = None
    """Per-frame poses with SDs; smoothing is skipped without it"""

    boundary_points_csv: Path | None = None
    """Tidy pupil boundary points (frame, x, y) for the smoothing refit"""

    translation_bounds: tuple[np.ndarray, np.ndarray] | None = None
    """Camera translation bounds (mm); initial +/- [10, 10, 30] if None"""

    radius_bounds: tuple[float, float] | None = None
    """Eye radius bounds (mm); fixed at the initial radius if None"""

    pose_bounds: EyePoseBounds = field(default_factory=EyePoseBounds)

    n_bins_per_dimension: int = 10
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    smoothing: SmoothingConfig = field(default_factory=SmoothingConfig)


@dataclass
class SessionResult:
    calibration: CalibrationResult
    smoothed_series: SmoothedSeries | None


def process_pupil_session(*, config: SessionConfig) -> SessionResult:
    """
    Pipeline:
    1. Load observations
    2. Calibrate scene geometry
    3. Smooth pupil radius (when per-frame poses are available)
    4. Save

    Args:
        config: SessionConfig

    Returns:
        SessionResult
    """
    logger.info("=" * 80)
    logger.info("EYE SCENE PIPELINE")
    logger.info("=" * 80)
    logger.info(f"Input:  {config.observations_csv.name}")
    logger.info(f"Output: {config.output_dir}")

    # =========================================================================
    # STEP 1: LOAD DATA
    # =========================================================================
    logger.info(f"\n{'='*80}")
    logger.info("STEP 1: LOAD DATA")
    logger.info("=" * 80)
    observation_set = load_observation_set(filepath=config.observations_csv)
    n_valid = int(np.sum(np.all(np.isfinite(observation_set.ellipses), axis=1)))
    logger.info(f"  {n_valid}/{observation_set.n_frames} frames have an ellipse")

    # =========================================================================
    # STEP 2: CALIBRATE
    # =========================================================================
    logger.info(f"\n{'='*80}")
    logger.info("STEP 2: CALIBRATE SCENE")
    logger.info("=" * 80)
    calibration = calibrate_scene(
        observation_set=observation_set,
        initial_scene_geometry=config.initial_scene_geometry,
        translation_bounds=config.translation_bounds,
        radius_bounds=config.radius_bounds,
        pose_bounds=config.pose_bounds,
        n_bins_per_dimension=config.n_bins_per_dimension,
        config=config.calibration,
    )

    # =========================================================================
    # STEP 3: SMOOTH
    # =========================================================================
    smoothed_series = None
    if config.per_frame_csv is not None:
        logger.info(f"\n{'='*80}")
        logger.info("STEP 3: SMOOTH PUPIL RADIUS")
        logger.info("=" * 80)
        per_frame_series = load_per_frame_series(
            filepath=config.per_frame_csv,
            boundary_points_filepath=config.boundary_points_csv,
        )
        smoothed_series = smooth_pupil_radius(
            per_frame_series=per_frame_series,
            scene_geometry=calibration.scene_geometry,
            config=config.smoothing,
        )
    else:
        logger.info("\nNo per-frame poses given, skipping radius smoothing")

    # =========================================================================
    # STEP 4: SAVE
    # =========================================================================
    logger.info(f"\n{'='*80}")
    logger.info("STEP 4: SAVE RESULTS")
    logger.info("=" * 80)
    config.output_dir.mkdir(parents=True, exist_ok=True)
    save_scene_geometry(filepath=config.output_dir / "scene_geometry.json", scene_geometry=calibration.scene_geometry)
    save_calibration_result(filepath=config.output_dir / "calibration_result.json", calibration_result=calibration)
    if smoothed_series is not None:
        save_smoothed_series(filepath=config.output_dir / "smoothed_series.csv", smoothed_series=smoothed_series)

    logger.info(f"\n{'='*80}")
    logger.info("✓ PIPELINE COMPLETE")
    logger.info("=" * 80)
    return SessionResult(calibration=calibration, smoothed_series=smoothed_series)
