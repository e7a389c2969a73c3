"""Load observations and scene records from CSV / JSON."""

import logging
from pathlib import Path

import numpy as np
import pandas as pd

from eye_scene_solver.core.errors import ConfigurationError
from eye_scene_solver.core.scene_models import (
    CalibrationResult,
    ELLIPSE_FIELDS,
    EYE_POSE_FIELDS,
    ObservationSet,
    PerFrameSeries,
    SceneGeometry,
)

logger = logging.getLogger(__name__)


def _require_columns(*, df: pd.DataFrame, columns: list[str], filepath: Path) -> None:
    missing = [column for column in columns if column not in df.columns]
    if missing:
        raise ConfigurationError(f"{filepath.name} is missing required columns: {missing}")


def load_observation_set(*, filepath: Path) -> ObservationSet:
    """
    Load per-frame ellipses from a CSV.

    Expected columns:
    - frame
    - center_x, center_y, area, eccentricity, theta
    - rmse
    - optional sd_center_x, sd_center_y, sd_area, sd_eccentricity, sd_theta

    Empty cells load as NaN (missing ellipse).
    """
    df = pd.read_csv(filepath_or_buffer=filepath)
    _require_columns(df=df, columns=["frame", *ELLIPSE_FIELDS, "rmse"], filepath=filepath)

    sd_columns = [f"sd_{name}" for name in ELLIPSE_FIELDS]
    has_sd = all(column in df.columns for column in sd_columns)

    observation_set = ObservationSet(
        frame_indices=df["frame"].to_numpy(dtype=np.int64),
        ellipses=df[list(ELLIPSE_FIELDS)].to_numpy(dtype=np.float64),
        fit_rmse=df["rmse"].to_numpy(dtype=np.float64),
        ellipse_sd=df[sd_columns].to_numpy(dtype=np.float64) if has_sd else None,
    )
    logger.info(f"Loaded {observation_set.n_frames} observations from {filepath.name}")
    return observation_set


def load_boundary_points(*, filepath: Path, frame_indices: np.ndarray) -> list[np.ndarray | None]:
    """
    Load pupil boundary points from a tidy CSV with columns frame, x, y.

    Returns:
        One (K, 2) array per requested frame, None where the frame has no points
    """
    df = pd.read_csv(filepath_or_buffer=filepath)
    _require_columns(df=df, columns=["frame", "x", "y"], filepath=filepath)

    points_by_frame = {
        int(frame): group[["x", "y"]].to_numpy(dtype=np.float64)
        for frame, group in df.groupby("frame", sort=False)
    }
    points = [points_by_frame.get(int(frame)) for frame in frame_indices]
    logger.info(f"Loaded boundary points for {sum(p is not None for p in points)}/{len(points)} frames")
    return points


def load_per_frame_series(*, filepath: Path, boundary_points_filepath: Path | None = None) -> PerFrameSeries:
    """
    Load per-frame eye poses from a CSV.

    Expected columns:
    - frame
    - azimuth_deg, elevation_deg, torsion_deg, pupil_radius_mm
    - sd_azimuth_deg, sd_elevation_deg, sd_torsion_deg, sd_pupil_radius_mm
    - rmse
    """
    df = pd.read_csv(filepath_or_buffer=filepath)
    sd_columns = [f"sd_{name}" for name in EYE_POSE_FIELDS]
    _require_columns(df=df, columns=["frame", *EYE_POSE_FIELDS, *sd_columns, "rmse"], filepath=filepath)

    frame_indices = df["frame"].to_numpy(dtype=np.int64)
    boundary_points = None
    if boundary_points_filepath is not None:
        boundary_points = load_boundary_points(filepath=boundary_points_filepath, frame_indices=frame_indices)

    return PerFrameSeries(
        frame_indices=frame_indices,
        eye_poses=df[list(EYE_POSE_FIELDS)].to_numpy(dtype=np.float64),
        eye_pose_sd=df[sd_columns].to_numpy(dtype=np.float64),
        fit_rmse=df["rmse"].to_numpy(dtype=np.float64),
        boundary_points=boundary_points,
    )


def load_scene_geometry(*, filepath: Path) -> SceneGeometry:
    return SceneGeometry.model_validate_json(filepath.read_text())


def load_calibration_result(*, filepath: Path) -> CalibrationResult:
    return CalibrationResult.model_validate_json(filepath.read_text())
