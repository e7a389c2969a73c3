"""Tests for the bounded pattern search."""
import numpy as np
import pytest

from eye_scene_solver.core.errors import ConfigurationError
from eye_scene_solver.core.pattern_search import PatternSearchConfig, pattern_search


def test_quadratic_minimum() -> None:
    print("\n=== Testing pattern search on a quadratic ===")
    target = np.array([1.3, -2.7, 0.4])

    def objective(x: np.ndarray) -> float:
        return float(np.sum((x - target) ** 2))

    result = pattern_search(
        objective=objective,
        x0=np.zeros(3),
        lower=np.full(3, -5.0),
        upper=np.full(3, 5.0),
        config=PatternSearchConfig(mesh_tolerance=1e-6, function_tolerance=0.0),
    )

    np.testing.assert_allclose(result.x, target, atol=1e-4)
    assert result.fun < result.initial_fun
    assert result.exit_message == "Mesh tolerance reached"
    print(f"✓ {result.exit_message} after {result.n_function_evaluations} evaluations")


def test_minimum_on_bound() -> None:
    result = pattern_search(
        objective=lambda x: float((x[0] - 10.0) ** 2 + x[1] ** 2),
        x0=np.array([0.0, 1.0]),
        lower=np.array([-2.0, -2.0]),
        upper=np.array([3.0, 2.0]),
    )
    assert result.x[0] == pytest.approx(3.0)
    assert np.all(result.x <= [3.0, 2.0])


def test_nan_objective_is_treated_as_worse() -> None:
    def objective(x: np.ndarray) -> float:
        return np.nan if x[0] < 0 else float((x[0] - 0.5) ** 2)

    result = pattern_search(objective=objective, x0=np.array([2.0]), lower=np.array([-4.0]), upper=np.array([4.0]))
    assert result.x[0] == pytest.approx(0.5, abs=1e-3)


def test_cache_avoids_repeat_evaluations() -> None:
    calls = []

    def objective(x: np.ndarray) -> float:
        calls.append(x.copy())
        return float(np.sum(x**2))

    cached = pattern_search(
        objective=objective,
        x0=np.array([3.0, -3.0]),
        lower=np.full(2, -10.0),
        upper=np.full(2, 10.0),
    )
    assert cached.n_function_evaluations == len(calls)

    calls.clear()
    uncached = pattern_search(
        objective=objective,
        x0=np.array([3.0, -3.0]),
        lower=np.full(2, -10.0),
        upper=np.full(2, 10.0),
        config=PatternSearchConfig(use_cache=False),
    )
    assert uncached.n_function_evaluations > cached.n_function_evaluations
    np.testing.assert_allclose(uncached.x, cached.x)


def test_evaluation_budget() -> None:
    result = pattern_search(
        objective=lambda x: float(np.sum(x**2)),
        x0=np.full(4, 4.0),
        lower=np.full(4, -5.0),
        upper=np.full(4, 5.0),
        config=PatternSearchConfig(max_function_evaluations=20),
    )
    assert result.n_function_evaluations <= 20
    assert result.exit_message == "Maximum function evaluations reached"


def test_inconsistent_bounds_raise() -> None:
    with pytest.raises(ConfigurationError):
        pattern_search(objective=lambda x: 0.0, x0=np.zeros(2), lower=np.array([1.0, 0.0]), upper=np.array([0.0, 1.0]))
    with pytest.raises(ConfigurationError):
        pattern_search(objective=lambda x: 0.0, x0=np.zeros(0), lower=np.zeros(0), upper=np.zeros(0))
    with pytest.raises(ConfigurationError):
        pattern_search(objective=lambda x: 0.0, x0=np.zeros(1), lower=np.array([-np.inf]), upper=np.array([1.0]))


def test_invalid_mesh_settings_raise() -> None:
    with pytest.raises(ConfigurationError):
        PatternSearchConfig(mesh_contraction=1.5)
    with pytest.raises(ConfigurationError):
        PatternSearchConfig(initial_mesh_size=0.0)
