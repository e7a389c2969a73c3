"""Save observations, scene geometry and smoothing results."""

import logging
from pathlib import Path

import numpy as np
import pandas as pd

from eye_scene_solver.core.scene_models import (
    CalibrationResult,
    ELLIPSE_FIELDS,
    EYE_POSE_FIELDS,
    ObservationSet,
    PerFrameSeries,
    SceneGeometry,
    SmoothedSeries,
)

logger = logging.getLogger(__name__)


def save_observation_set(*, filepath: Path, observation_set: ObservationSet) -> None:
    """
    Save per-frame ellipses as CSV.

    Columns: frame, center_x, center_y, area, eccentricity, theta, rmse, [sd_*]
    """
    data: dict[str, np.ndarray] = {"frame": observation_set.frame_indices}
    for index, name in enumerate(ELLIPSE_FIELDS):
        data[name] = observation_set.ellipses[:, index]
    data["rmse"] = observation_set.fit_rmse
    if observation_set.ellipse_sd is not None:
        for index, name in enumerate(ELLIPSE_FIELDS):
            data[f"sd_{name}"] = observation_set.ellipse_sd[:, index]

    df = pd.DataFrame(data=data)
    df.to_csv(path_or_buf=filepath, index=False)
    logger.info(f"Saved observations: {filepath} ({len(df)} frames)")


def save_boundary_points(*, filepath: Path, frame_indices: np.ndarray, boundary_points: list[np.ndarray | None]) -> None:
    """Save boundary points as a tidy CSV with columns frame, x, y."""
    frames = []
    for frame, points in zip(frame_indices, boundary_points):
        if points is None:
            continue
        frames.append(pd.DataFrame({"frame": int(frame), "x": points[:, 0], "y": points[:, 1]}))
    df = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=["frame", "x", "y"])
    df.to_csv(path_or_buf=filepath, index=False)
    logger.info(f"Saved boundary points: {filepath} ({len(df)} points)")


def save_per_frame_series(
    *,
    filepath: Path,
    per_frame_series: PerFrameSeries,
    boundary_points_filepath: Path | None = None,
) -> None:
    """Save per-frame poses as CSV, and boundary points to a second CSV if given a path."""
    data: dict[str, np.ndarray] = {"frame": per_frame_series.frame_indices}
    for index, name in enumerate(EYE_POSE_FIELDS):
        data[name] = per_frame_series.eye_poses[:, index]
    for index, name in enumerate(EYE_POSE_FIELDS):
        data[f"sd_{name}"] = per_frame_series.eye_pose_sd[:, index]
    data["rmse"] = per_frame_series.fit_rmse

    pd.DataFrame(data=data).to_csv(path_or_buf=filepath, index=False)
    logger.info(f"Saved per-frame series: {filepath} ({per_frame_series.n_frames} frames)")

    if boundary_points_filepath is not None and per_frame_series.boundary_points is not None:
        save_boundary_points(
            filepath=boundary_points_filepath,
            frame_indices=per_frame_series.frame_indices,
            boundary_points=per_frame_series.boundary_points,
        )


def build_smoothed_series_dataframe(*, smoothed_series: SmoothedSeries) -> pd.DataFrame:
    """
    Tidy table of the smoothed series.

    Columns: frame, quantity, value, units
    """
    columns: dict[str, tuple[np.ndarray, str]] = {}
    for index, name in enumerate(ELLIPSE_FIELDS):
        units = {"center_x": "px", "center_y": "px", "area": "px^2", "eccentricity": "", "theta": "rad"}[name]
        columns[f"ellipse_{name}"] = (smoothed_series.ellipses[:, index], units)
    for index, name in enumerate(EYE_POSE_FIELDS):
        columns[name] = (smoothed_series.eye_poses[:, index], "mm" if name.endswith("_mm") else "deg")
    columns["pupil_radius_sd_mm"] = (smoothed_series.pupil_radius_sd, "mm")
    columns["fit_rmse"] = (smoothed_series.fit_rmse, "px")
    columns["prior_radius_mm"] = (smoothed_series.prior_radius, "mm")
    columns["prior_radius_sd_mm"] = (smoothed_series.prior_radius_sd, "mm")
    columns["posterior_radius_mm"] = (smoothed_series.posterior_radius, "mm")

    n_frames = smoothed_series.n_frames
    chunks = [
        pd.DataFrame({
            "frame": smoothed_series.frame_indices,
            "quantity": [quantity] * n_frames,
            "value": values,
            "units": [units] * n_frames,
        })
        for quantity, (values, units) in columns.items()
    ]
    return pd.concat(chunks, ignore_index=True).sort_values(["frame", "quantity"], ignore_index=True)


def save_smoothed_series(*, filepath: Path, smoothed_series: SmoothedSeries) -> None:
    df = build_smoothed_series_dataframe(smoothed_series=smoothed_series)
    df.to_csv(path_or_buf=filepath, index=False)
    logger.info(f"Saved smoothed series: {filepath} ({smoothed_series.n_frames} frames, {len(df)} rows)")


def save_scene_geometry(*, filepath: Path, scene_geometry: SceneGeometry) -> None:
    filepath.write_text(scene_geometry.model_dump_json(indent=4))
    logger.info(f"Saved scene geometry: {filepath}")


def save_calibration_result(*, filepath: Path, calibration_result: CalibrationResult) -> None:
    filepath.write_text(calibration_result.model_dump_json(indent=4))
    logger.info(f"Saved calibration result: {filepath}")
