"""Tests for the observation and scene data models."""
import numpy as np
import pytest

from eye_scene_solver.core.scene_models import ObservationSet


def create_test_observation_set(*, n_frames: int, first_frame: int, with_sd: bool) -> ObservationSet:
    ellipses = np.column_stack([
        300.0 + np.arange(n_frames),
        240.0 - np.arange(n_frames),
        np.full(n_frames, 500.0),
        np.full(n_frames, 0.2),
        np.full(n_frames, 1.0),
    ])
    return ObservationSet(
        frame_indices=np.arange(first_frame, first_frame + n_frames, dtype=np.int64),
        ellipses=ellipses,
        fit_rmse=np.linspace(0.5, 1.0, n_frames),
        ellipse_sd=np.full((n_frames, 5), 0.02) if with_sd else None,
    )


def test_concatenate_renumbers_frames() -> None:
    print("\n=== Testing observation set concatenation ===")
    first = create_test_observation_set(n_frames=3, first_frame=100, with_sd=True)
    second = create_test_observation_set(n_frames=2, first_frame=7, with_sd=True)

    joined = ObservationSet.concatenate([first, second])

    assert joined.n_frames == 5
    np.testing.assert_array_equal(joined.frame_indices, np.arange(5))
    np.testing.assert_allclose(joined.ellipses[:3], first.ellipses)
    np.testing.assert_allclose(joined.ellipses[3:], second.ellipses)
    np.testing.assert_allclose(joined.fit_rmse, np.concatenate([first.fit_rmse, second.fit_rmse]))
    assert joined.ellipse_sd is not None
    assert joined.ellipse_sd.shape == (5, 5)
    print("✓ Frames renumbered 0-4")


def test_concatenate_drops_sd_unless_every_set_has_it() -> None:
    joined = ObservationSet.concatenate([
        create_test_observation_set(n_frames=2, first_frame=0, with_sd=True),
        create_test_observation_set(n_frames=2, first_frame=0, with_sd=False),
    ])
    assert joined.ellipse_sd is None


def test_concatenate_needs_observation_sets() -> None:
    with pytest.raises(ValueError):
        ObservationSet.concatenate([])
