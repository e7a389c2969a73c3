"""
Choosing which frames drive a calibration.

Spatial binning: ellipse centers are binned on an n x n grid spanning the
observed range, and only the best-fit ellipse of each occupied bin is kept.
This stops clusters of similar frames (e.g. long fixations) from dominating
the scene search and spreads the evidence across the visual field.

Fixation selection: find a steady run of frames near the median pupil
position after an acquisition start, for aligning a scene to a known
fixation target.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import brentq

from eye_scene_solver.core.errors import ConfigurationError
from eye_scene_solver.core.scene_models import ObservationSet

logger = logging.getLogger(__name__)

BinCoordinate = tuple[int, int]


@dataclass(frozen=True)
class FrameSelection:
    """Frames chosen for calibration and how they were chosen."""

    positions: NDArray[np.int64]
    """Row positions within the observation set"""

    frame_indices: NDArray[np.int64]
    ellipses: NDArray[np.float64]
    fit_rmse: NDArray[np.float64]
    error_weights: NDArray[np.float64]
    bin_map: dict[BinCoordinate, NDArray[np.int64]]
    """Occupied bin -> row positions of every valid frame in it"""

    x_edges: NDArray[np.float64]
    y_edges: NDArray[np.float64]

    @property
    def n_selected(self) -> int:
        return len(self.positions)


def compute_bin_edges(*, values: NDArray[np.float64], n_bins: int) -> NDArray[np.float64]:
    """Evenly spaced edges covering the finite values."""
    low = float(np.nanmin(values))
    high = float(np.nanmax(values))
    if high <= low:
        low, high = low - 0.5, high + 0.5
    return np.linspace(low, high, n_bins + 1)


def bin_ellipse_centers(
    *,
    centers: NDArray[np.float64],
    n_bins: int,
) -> tuple[dict[BinCoordinate, NDArray[np.int64]], NDArray[np.float64], NDArray[np.float64]]:
    """
    Group ellipse centers into an n_bins x n_bins grid in one pass.

    Rows with a NaN center are left out. The upper edge belongs to the last bin.

    Args:
        centers: (N, 2) ellipse centers (px)
        n_bins: Bins per dimension

    Returns:
        bin_map: (x_bin, y_bin) -> row positions, occupied bins only
        x_edges: (n_bins + 1,)
        y_edges: (n_bins + 1,)
    """
    if n_bins < 1:
        raise ConfigurationError(f"n_bins_per_dimension must be >= 1, got {n_bins}")
    valid_positions = np.flatnonzero(np.all(np.isfinite(centers), axis=1))
    if len(valid_positions) == 0:
        raise ConfigurationError("No valid ellipse centers to bin")

    valid_centers = centers[valid_positions]
    x_edges = compute_bin_edges(values=valid_centers[:, 0], n_bins=n_bins)
    y_edges = compute_bin_edges(values=valid_centers[:, 1], n_bins=n_bins)
    x_bins = np.clip(np.digitize(valid_centers[:, 0], x_edges) - 1, 0, n_bins - 1)
    y_bins = np.clip(np.digitize(valid_centers[:, 1], y_edges) - 1, 0, n_bins - 1)

    grouped: dict[BinCoordinate, list[int]] = defaultdict(list)
    for position, x_bin, y_bin in zip(valid_positions, x_bins, y_bins):
        grouped[(int(x_bin), int(y_bin))].append(int(position))

    bin_map = {coordinate: np.array(positions, dtype=np.int64) for coordinate, positions in grouped.items()}
    return bin_map, x_edges, y_edges


def compute_error_weights(*, fit_rmse: NDArray[np.float64]) -> NDArray[np.float64]:
    """Inverse fit error, scaled to a mean of 1."""
    if np.any(~np.isfinite(fit_rmse)) or np.any(fit_rmse <= 0):
        raise ConfigurationError(f"Fit errors of selected frames must be positive and finite, got {fit_rmse}")
    weights = 1.0 / fit_rmse
    return weights / np.mean(weights)


def _build_selection(
    *,
    observation_set: ObservationSet,
    positions: NDArray[np.int64],
    bin_map: dict[BinCoordinate, NDArray[np.int64]],
    x_edges: NDArray[np.float64],
    y_edges: NDArray[np.float64],
) -> FrameSelection:
    fit_rmse = observation_set.fit_rmse[positions]
    return FrameSelection(
        positions=positions,
        frame_indices=observation_set.frame_indices[positions],
        ellipses=observation_set.ellipses[positions],
        fit_rmse=fit_rmse,
        error_weights=compute_error_weights(fit_rmse=fit_rmse),
        bin_map=bin_map,
        x_edges=x_edges,
        y_edges=y_edges,
    )


def select_frames_by_bin(*, observation_set: ObservationSet, n_bins: int) -> FrameSelection:
    """
    Keep the lowest-RMSE frame of every occupied bin.

    Frames with a NaN ellipse or NaN RMSE never get selected.
    """
    valid = np.all(np.isfinite(observation_set.ellipses), axis=1) & np.isfinite(observation_set.fit_rmse)
    centers = np.where(valid[:, None], observation_set.ellipse_centers, np.nan)
    bin_map, x_edges, y_edges = bin_ellipse_centers(centers=centers, n_bins=n_bins)

    selected = []
    for coordinate in sorted(bin_map):
        positions = bin_map[coordinate]
        selected.append(positions[np.argmin(observation_set.fit_rmse[positions])])
    positions = np.array(selected, dtype=np.int64)

    logger.info(
        f"Selected {len(positions)} frames from {int(valid.sum())} valid ellipses "
        f"({len(bin_map)}/{n_bins * n_bins} bins occupied)"
    )
    return _build_selection(
        observation_set=observation_set,
        positions=positions,
        bin_map=bin_map,
        x_edges=x_edges,
        y_edges=y_edges,
    )


def select_listed_frames(*, observation_set: ObservationSet, frame_indices: list[int]) -> FrameSelection:
    """Use caller-chosen frames instead of binning."""
    if len(frame_indices) == 0:
        raise ConfigurationError("Frame list is empty")
    position_lookup = {int(frame): position for position, frame in enumerate(observation_set.frame_indices)}
    missing = [frame for frame in frame_indices if int(frame) not in position_lookup]
    if missing:
        raise ConfigurationError(f"Frames not in the observation set: {missing}")

    positions = np.array([position_lookup[int(frame)] for frame in frame_indices], dtype=np.int64)
    if not np.all(np.isfinite(observation_set.ellipses[positions])):
        raise ConfigurationError("Listed frames include missing ellipses")
    logger.info(f"Using {len(positions)} caller-listed frames")
    return _build_selection(
        observation_set=observation_set,
        positions=positions,
        bin_map={},
        x_edges=np.array([]),
        y_edges=np.array([]),
    )


@dataclass
class FixationSelectionConfig:
    """Settings for finding a steady fixation frame."""

    window_length: int = 600
    """Frames examined after the window start"""

    target_run_length: int = 30
    """Preferred number of consecutive steady frames"""

    threshold_tolerance: float = 0.25
    """Largest acceptable deviation (px) from the median center over the run"""


@dataclass(frozen=True)
class FixationFrame:
    frame_index: int
    run_start_index: int
    run_length: int
    threshold: float


def longest_run_below(*, errors: NDArray[np.float64], threshold: float) -> tuple[int, int]:
    """
    Longest run of consecutive entries with error <= threshold (NaN breaks a run).

    Returns:
        (start position, length); length 0 if there is no such entry
    """
    below = np.concatenate([[0], (errors <= threshold).astype(np.int8), [0]])
    changes = np.diff(below)
    starts = np.flatnonzero(changes == 1)
    ends = np.flatnonzero(changes == -1)
    if len(starts) == 0:
        return 0, 0
    lengths = ends - starts
    best = int(np.argmax(lengths))
    return int(starts[best]), int(lengths[best])


def select_fixation_frame(
    *,
    observation_set: ObservationSet,
    window_start: int = 0,
    config: FixationSelectionConfig | None = None,
) -> FixationFrame | None:
    """
    Find a frame where the eye is likely fixating the center target.

    Within the window, each frame's error is the distance of its ellipse
    center from the median center. For the target run length, the smallest
    threshold giving a run that long is found by root finding on the
    longest-run step function. While that threshold exceeds the tolerance,
    the target length is shortened. The lowest-RMSE frame of the run wins.

    Args:
        observation_set: Observations in frame order
        window_start: Row position of the acquisition start
        config: Selection settings

    Returns:
        FixationFrame, or None if the window holds no valid ellipse
    """
    config = config or FixationSelectionConfig()
    window = slice(window_start, min(window_start + config.window_length + 1, observation_set.n_frames))
    centers = observation_set.ellipse_centers[window]
    if len(centers) == 0 or not np.any(np.all(np.isfinite(centers), axis=1)):
        logger.warning("Unable to find a suitable set of frames: no valid ellipses in window")
        return None

    median_center = np.nanmedian(centers, axis=0)
    errors = np.linalg.norm(centers - median_center, axis=1)
    max_error = float(np.nanmax(errors))

    target_length = config.target_run_length
    threshold = np.nan
    while target_length >= 1:
        _, reachable = longest_run_below(errors=errors, threshold=max_error)
        if reachable >= target_length:
            threshold = brentq(
                lambda t: target_length - longest_run_below(errors=errors, threshold=t)[1] - 0.5,
                -1.0,
                max_error,
                xtol=1e-9,
            )
            # snap to the error value at the step so the comparison is exact
            threshold = float(np.min(errors[errors >= threshold - 1e-9]))
            if threshold < config.threshold_tolerance or target_length == 1:
                break
        target_length -= 1

    if not np.isfinite(threshold):
        logger.warning("Unable to find a suitable set of frames from the acquisition")
        return None

    run_start, run_length = longest_run_below(errors=errors, threshold=threshold)
    run_positions = np.arange(run_start, run_start + run_length) + window_start
    best_position = int(run_positions[np.nanargmin(observation_set.fit_rmse[run_positions])])

    logger.info(
        f"Fixation run of {run_length} frames at threshold {threshold:.3f}px, "
        f"frame {observation_set.frame_indices[best_position]}"
    )
    return FixationFrame(
        frame_index=int(observation_set.frame_indices[best_position]),
        run_start_index=int(observation_set.frame_indices[run_positions[0]]),
        run_length=run_length,
        threshold=threshold,
    )
