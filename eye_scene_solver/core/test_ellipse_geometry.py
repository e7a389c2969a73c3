"""Tests for ellipse fitting and conversions."""
import numpy as np
import pytest

from eye_scene_solver.core.ellipse_geometry import (
    ellipse_area_error,
    ellipse_shape_error,
    explicit_to_implicit,
    explicit_to_transparent,
    fit_ellipse_direct,
    fit_transparent_ellipse,
    implicit_to_explicit,
    normalize_theta,
    sampson_distances,
    transparent_to_explicit,
)


def create_test_ellipse_points(
    *,
    center: tuple[float, float] = (310.0, 250.0),
    semi_major: float = 40.0,
    semi_minor: float = 25.0,
    theta: float = 0.6,
    n_points: int = 12,
) -> np.ndarray:
    angles = np.linspace(0.0, 2.0 * np.pi, n_points, endpoint=False)
    x = semi_major * np.cos(angles)
    y = semi_minor * np.sin(angles)
    return np.column_stack([
        center[0] + x * np.cos(theta) - y * np.sin(theta),
        center[1] + x * np.sin(theta) + y * np.cos(theta),
    ])


def test_fit_recovers_known_ellipse() -> None:
    print("\n=== Testing direct ellipse fit ===")
    points = create_test_ellipse_points()
    explicit = fit_ellipse_direct(points=points)
    np.testing.assert_allclose(explicit, [310.0, 250.0, 40.0, 25.0, 0.6], atol=1e-3)
    print("✓ Recovered center, axes and angle")


def test_fit_is_exact_for_five_points() -> None:
    points = create_test_ellipse_points(n_points=5, theta=2.5)
    explicit = fit_ellipse_direct(points=points)
    np.testing.assert_allclose(explicit, [310.0, 250.0, 40.0, 25.0, 2.5], atol=1e-3)


def test_implicit_conversion_handles_negated_coefficients() -> None:
    implicit = explicit_to_implicit(explicit=np.array([0.0, 0.0, 10.0, 5.0, 0.3]))
    np.testing.assert_allclose(implicit_to_explicit(implicit=-implicit), [0.0, 0.0, 10.0, 5.0, 0.3], atol=1e-9)


def test_fit_needs_five_points() -> None:
    points = create_test_ellipse_points(n_points=4)
    assert np.all(np.isnan(fit_ellipse_direct(points=points)))
    assert np.all(np.isnan(fit_transparent_ellipse(points=points)))


def test_fit_of_identical_points_is_nan() -> None:
    points = np.tile([100.0, 100.0], (6, 1))
    assert np.all(np.isnan(fit_transparent_ellipse(points=points)))


def test_transparent_round_trip() -> None:
    explicit = np.array([12.0, -4.0, 9.0, 3.0, 1.2])
    transparent = explicit_to_transparent(explicit=explicit)
    assert transparent[2] == pytest.approx(np.pi * 27.0)
    assert transparent[3] == pytest.approx(np.sqrt(1.0 - (3.0 / 9.0) ** 2))
    np.testing.assert_allclose(transparent_to_explicit(transparent=transparent), explicit)


def test_normalize_theta_range() -> None:
    for theta in (-3.0, -0.1, 0.0, 1.0, np.pi, 4.0, 7.0):
        assert 0.0 <= normalize_theta(theta) < np.pi


def test_sampson_distance_is_zero_on_ellipse() -> None:
    points = create_test_ellipse_points()
    implicit = explicit_to_implicit(explicit=np.array([310.0, 250.0, 40.0, 25.0, 0.6]))
    np.testing.assert_allclose(sampson_distances(implicit=implicit, points=points), 0.0, atol=1e-9)


def test_sampson_distance_approximates_radial_offset() -> None:
    implicit = explicit_to_implicit(explicit=np.array([0.0, 0.0, 10.0, 10.0, 0.0]))
    distances = sampson_distances(implicit=implicit, points=np.array([[10.5, 0.0], [0.0, -9.5]]))
    np.testing.assert_allclose(distances, 0.5, atol=0.02)


def test_shape_error_ignores_half_turns() -> None:
    target = np.array([0.0, 0.0, 100.0, 0.6, 0.01])
    candidate = np.array([0.0, 0.0, 100.0, 0.6, np.pi - 0.01])
    assert ellipse_shape_error(target=target, candidate=candidate) < 0.03


def test_area_error_is_relative() -> None:
    target = np.array([0.0, 0.0, 200.0, 0.0, 0.0])
    candidate = np.array([5.0, 5.0, 150.0, 0.0, 0.0])
    assert ellipse_area_error(target=target, candidate=candidate) == pytest.approx(0.25)


def test_fit_ignores_nan_points() -> None:
    points = create_test_ellipse_points(n_points=8)
    points[2] = np.nan
    explicit = fit_ellipse_direct(points=points)
    np.testing.assert_allclose(explicit, [310.0, 250.0, 40.0, 25.0, 0.6], atol=1e-3)


def test_fit_orients_tall_ellipse() -> None:
    # major axis along image y
    points = create_test_ellipse_points(center=(50.0, 60.0), semi_major=30.0, semi_minor=10.0, theta=np.pi / 2.0)
    explicit = fit_ellipse_direct(points=points)
    np.testing.assert_allclose(explicit[:4], [50.0, 60.0, 30.0, 10.0], atol=1e-3)
    assert abs(explicit[4] - np.pi / 2.0) < 1e-3
