"""
Ellipse fitting and parameterizations.

Three forms are used:
    implicit:     [A, B, C, D, E, F] with A*x^2 + B*x*y + C*y^2 + D*x + E*y + F = 0
    explicit:     [center_x, center_y, semi_major, semi_minor, theta]
    transparent:  [center_x, center_y, area, eccentricity, theta]

theta is the angle of the major axis in image coordinates, in [0, pi).
Eccentricity is sqrt(1 - (semi_minor / semi_major)^2).
A failed or degenerate fit is returned as all-NaN.
"""
import logging

import cv2
import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)

NAN_ELLIPSE = np.full(5, np.nan)
NAN_ELLIPSE.flags.writeable = False


def normalize_theta(theta: float) -> float:
    """Map an axis angle into [0, pi)."""
    if theta < 0:
        theta += np.pi
    theta = float(np.mod(theta, np.pi))
    return theta


def fit_ellipse_direct(*, points: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Direct least-squares ellipse fit using OpenCV.

    cv2.fitEllipseDirect only accepts float32 points, so the points are
    centered and scaled to unit RMS radius before the cast. Rounding then
    scales with the ellipse size, not with its position in the image.

    Args:
        points: (N, 2) image points; NaN rows are ignored

    Returns:
        (5,) [center_x, center_y, semi_major, semi_minor, theta], all-NaN
        if fewer than 5 valid points remain or no ellipse fits
    """
    points = np.asarray(points, dtype=float)
    valid_points = points[np.all(np.isfinite(points), axis=1)]
    if len(valid_points) < 5:
        return NAN_ELLIPSE.copy()

    mean = valid_points.mean(axis=0)
    scale = np.sqrt(np.mean(np.sum((valid_points - mean) ** 2, axis=1)))
    if not scale > 1e-9:
        return NAN_ELLIPSE.copy()
    normalized = ((valid_points - mean) / scale).astype(np.float32)

    (cx, cy), (width, height), angle = cv2.fitEllipseDirect(normalized)

    # OpenCV returns:
    # - (width, height): FULL axis lengths
    # - angle: rotation of the WIDTH axis in degrees
    if not (np.isfinite(width) and np.isfinite(height) and width > 0 and height > 0):
        return NAN_ELLIPSE.copy()
    if width >= height:
        semi_major = width / 2.0
        semi_minor = height / 2.0
        theta = np.deg2rad(angle)
    else:
        semi_major = height / 2.0
        semi_minor = width / 2.0
        theta = np.deg2rad(angle + 90.0)

    return np.array([
        mean[0] + scale * cx,
        mean[1] + scale * cy,
        scale * semi_major,
        scale * semi_minor,
        normalize_theta(float(theta)),
    ])



def implicit_to_explicit(*, implicit: NDArray[np.float64]) -> NDArray[np.float64]:
    """Convert implicit coefficients to [cx, cy, semi_major, semi_minor, theta]."""
    implicit = np.asarray(implicit, dtype=float)
    if not np.all(np.isfinite(implicit)):
        return NAN_ELLIPSE.copy()
    # the angle formula below assumes A + C > 0
    if implicit[0] + implicit[2] < 0:
        implicit = -implicit
    a, b, c, d, e, f = implicit
    discriminant = b**2 - 4.0 * a * c
    if discriminant >= 0:
        return NAN_ELLIPSE.copy()

    center_x = (2.0 * c * d - b * e) / discriminant
    center_y = (2.0 * a * e - b * d) / discriminant

    numerator = 2.0 * (a * e**2 + c * d**2 - b * d * e + discriminant * f)
    root = np.sqrt((a - c) ** 2 + b**2)
    major_term = numerator * (a + c + root)
    minor_term = numerator * (a + c - root)
    if major_term < 0 or minor_term < 0:
        return NAN_ELLIPSE.copy()
    semi_major = -np.sqrt(major_term) / discriminant
    semi_minor = -np.sqrt(minor_term) / discriminant
    if semi_minor > semi_major:
        semi_major, semi_minor = semi_minor, semi_major

    if b != 0:
        theta = np.arctan((c - a - root) / b)
    elif a < c:
        theta = 0.0
    else:
        theta = np.pi / 2.0

    return np.array([center_x, center_y, semi_major, semi_minor, normalize_theta(theta)])


def explicit_to_transparent(*, explicit: NDArray[np.float64]) -> NDArray[np.float64]:
    center_x, center_y, semi_major, semi_minor, theta = explicit
    if not np.all(np.isfinite(explicit)) or semi_major <= 0:
        return NAN_ELLIPSE.copy()
    area = np.pi * semi_major * semi_minor
    eccentricity = np.sqrt(max(0.0, 1.0 - (semi_minor / semi_major) ** 2))
    return np.array([center_x, center_y, area, eccentricity, normalize_theta(theta)])


def transparent_to_explicit(*, transparent: NDArray[np.float64]) -> NDArray[np.float64]:
    center_x, center_y, area, eccentricity, theta = transparent
    if not np.all(np.isfinite(transparent)) or area <= 0:
        return NAN_ELLIPSE.copy()
    axis_ratio = np.sqrt(1.0 - eccentricity**2)
    semi_major = np.sqrt(area / (np.pi * axis_ratio))
    return np.array([center_x, center_y, semi_major, semi_major * axis_ratio, theta])


def explicit_to_implicit(*, explicit: NDArray[np.float64]) -> NDArray[np.float64]:
    center_x, center_y, semi_major, semi_minor, theta = explicit
    sin_t = np.sin(theta)
    cos_t = np.cos(theta)
    a = semi_major**2 * sin_t**2 + semi_minor**2 * cos_t**2
    b = 2.0 * (semi_minor**2 - semi_major**2) * sin_t * cos_t
    c = semi_major**2 * cos_t**2 + semi_minor**2 * sin_t**2
    d = -2.0 * a * center_x - b * center_y
    e = -b * center_x - 2.0 * c * center_y
    f = a * center_x**2 + b * center_x * center_y + c * center_y**2 - semi_major**2 * semi_minor**2
    return np.array([a, b, c, d, e, f])


def transparent_to_implicit(*, transparent: NDArray[np.float64]) -> NDArray[np.float64]:
    return explicit_to_implicit(explicit=transparent_to_explicit(transparent=transparent))


def fit_transparent_ellipse(*, points: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Fit an ellipse to image points and return it in transparent form.

    Args:
        points: (N, 2) image points, N >= 5

    Returns:
        (5,) [center_x, center_y, area, eccentricity, theta], all-NaN on failure
    """
    return explicit_to_transparent(explicit=fit_ellipse_direct(points=points))


def ellipse_shape_error(
    *,
    target: NDArray[np.float64],
    candidate: NDArray[np.float64],
) -> float:
    """
    Distance between two ellipses in the (eccentricity, 2*theta) polar plane.

    Doubling theta makes orientations 0 and pi coincide, and near-circles
    are close to each other regardless of their (ill-defined) theta.
    """
    target_point = target[3] * np.array([np.cos(2.0 * target[4]), np.sin(2.0 * target[4])])
    candidate_point = candidate[3] * np.array([np.cos(2.0 * candidate[4]), np.sin(2.0 * candidate[4])])
    return float(np.linalg.norm(target_point - candidate_point))


def ellipse_area_error(
    *,
    target: NDArray[np.float64],
    candidate: NDArray[np.float64],
) -> float:
    """Absolute area difference as a proportion of the target area."""
    return float(abs(candidate[2] - target[2]) / target[2])


def ellipse_center_distance(
    *,
    target: NDArray[np.float64],
    candidate: NDArray[np.float64],
) -> float:
    return float(np.hypot(candidate[0] - target[0], candidate[1] - target[1]))


def sampson_distances(
    *,
    implicit: NDArray[np.float64],
    points: NDArray[np.float64],
) -> NDArray[np.float64]:
    """
    First-order (Sampson) distance of each point to a conic.

    Args:
        implicit: (6,) conic coefficients
        points: (N, 2) image points

    Returns:
        (N,) unsigned distances in pixels
    """
    a, b, c, d, e, f = implicit
    x = points[:, 0]
    y = points[:, 1]
    value = a * x**2 + b * x * y + c * y**2 + d * x + e * y + f
    grad_x = 2.0 * a * x + b * y + d
    grad_y = b * x + 2.0 * c * y + e
    return np.abs(value) / np.sqrt(grad_x**2 + grad_y**2)
