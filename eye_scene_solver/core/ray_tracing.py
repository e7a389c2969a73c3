"""
Corneal ray tracing.

A point inside the eye is seen by the camera at a "virtual image" location:
light leaving the point refracts at the back and front corneal surfaces
before reaching the camera node. For each point we search for the ray
angle that, after refraction, passes closest to the camera node.

The search runs separately in the p1/p2 and p1/p3 planes (both corneal
surfaces are spheres centered on the optical axis, so each plane cuts them
in great circles). The two best angles define a 3D ray; tracing it gives
the exit ray, and extending the exit ray backwards to the original point's
depth gives the virtual image point.

All coordinates are eyeWorld (see eye_model).
"""
import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import minimize_scalar

from eye_scene_solver.core.errors import ConfigurationError
from eye_scene_solver.core.eye_model import EyeModel

logger = logging.getLogger(__name__)


@dataclass
class RayTraceConfig:
    """Settings for the ray angle search."""

    ray_theta_resolution: float = np.pi / 180.0
    """Spacing of the candidate ray angle grid (radians)"""

    max_abs_ray_theta: float = 8.0 / 9.0 * np.pi
    """Largest candidate ray angle magnitude (radians)"""

    refine_theta: bool = True
    """Refine the best grid angle with a bounded scalar search"""

    refine_tolerance: float = 1e-10
    """Absolute angle tolerance of the refinement (radians)"""


@dataclass(frozen=True)
class RayTraceTables:
    """Precomputed candidate ray angles shared by every traced point."""

    candidate_thetas: NDArray[np.float64]
    cos_thetas: NDArray[np.float64]
    sin_thetas: NDArray[np.float64]
    theta_step: float
    refine_theta: bool
    refine_tolerance: float


def create_ray_trace_tables(*, config: RayTraceConfig | None = None) -> RayTraceTables:
    """Build the candidate angle grid described by a RayTraceConfig."""
    if config is None:
        config = RayTraceConfig()
    if config.ray_theta_resolution <= 0:
        raise ConfigurationError(f"ray_theta_resolution must be positive, got {config.ray_theta_resolution}")
    if not 0 < config.max_abs_ray_theta < np.pi:
        raise ConfigurationError(f"max_abs_ray_theta must be in (0, pi), got {config.max_abs_ray_theta}")

    n_steps = int(np.floor(config.max_abs_ray_theta / config.ray_theta_resolution))
    thetas = np.arange(-n_steps, n_steps + 1) * config.ray_theta_resolution
    logger.debug(f"Ray trace tables: {len(thetas)} candidate angles per plane")

    return RayTraceTables(
        candidate_thetas=thetas,
        cos_thetas=np.cos(thetas),
        sin_thetas=np.sin(thetas),
        theta_step=config.ray_theta_resolution,
        refine_theta=config.refine_theta,
        refine_tolerance=config.refine_tolerance,
    )


def _exit_sphere(
    *,
    origins: NDArray[np.float64],
    directions: NDArray[np.float64],
    center: NDArray[np.float64],
    radius: float,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Far intersection of rays (K, 3) with a sphere, and the outward normals there."""
    offsets = origins - center
    b = np.sum(offsets * directions, axis=-1)
    c = np.sum(offsets * offsets, axis=-1) - radius**2
    discriminant = b**2 - c
    with np.errstate(invalid="ignore"):
        distance = -b + np.sqrt(discriminant)
    distance = np.where((discriminant >= 0) & (distance > 0), distance, np.nan)
    hits = origins + distance[..., None] * directions
    normals = (hits - center) / radius
    return hits, normals


def _refract(
    *,
    directions: NDArray[np.float64],
    outward_normals: NDArray[np.float64],
    index_from: float,
    index_to: float,
) -> NDArray[np.float64]:
    """Vector form of Snell's law. Total internal reflection gives NaN."""
    eta = index_from / index_to
    cos_incident = np.sum(outward_normals * directions, axis=-1)
    sin2_transmitted = eta**2 * (1.0 - cos_incident**2)
    with np.errstate(invalid="ignore"):
        cos_transmitted = np.sqrt(1.0 - sin2_transmitted)
    cos_transmitted = np.where(sin2_transmitted <= 1.0, cos_transmitted, np.nan)
    # the normal facing the incident ray is -outward_normals
    refracted = eta * directions + (cos_transmitted - eta * cos_incident)[..., None] * outward_normals
    return refracted / np.linalg.norm(refracted, axis=-1, keepdims=True)


def trace_through_cornea(
    *,
    origin: NDArray[np.float64],
    directions: NDArray[np.float64],
    eye_model: EyeModel,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Trace rays from one point inside the eye out through both corneal surfaces.

    The back surface is skipped when the origin lies outside it (points at
    the limbus already sit inside the corneal stroma). Rays leaving the
    cornea posterior to the iris plane are blocked by the sclera and are
    returned as NaN.

    Args:
        origin: (3,) start point
        directions: (K, 3) unit directions
        eye_model: Eye geometry

    Returns:
        exit_points: (K, 3) points on the front corneal surface
        exit_directions: (K, 3) unit directions in air
    """
    origins = np.broadcast_to(origin, directions.shape)
    inside_back_surface = np.sum((origin - eye_model.cornea_back_center) ** 2) < eye_model.cornea_back_radius_mm**2

    if inside_back_surface:
        hits, normals = _exit_sphere(
            origins=origins,
            directions=directions,
            center=eye_model.cornea_back_center,
            radius=eye_model.cornea_back_radius_mm,
        )
        directions = _refract(
            directions=directions,
            outward_normals=normals,
            index_from=eye_model.aqueous_refractive_index,
            index_to=eye_model.cornea_refractive_index,
        )
        origins = hits

    exit_points, normals = _exit_sphere(
        origins=origins,
        directions=directions,
        center=eye_model.cornea_front_center,
        radius=eye_model.cornea_front_radius_mm,
    )
    exit_directions = _refract(
        directions=directions,
        outward_normals=normals,
        index_from=eye_model.cornea_refractive_index,
        index_to=eye_model.air_refractive_index,
    )
    blocked = ~(exit_points[..., 0] > eye_model.iris_center[0])
    exit_points[blocked] = np.nan
    exit_directions[blocked] = np.nan
    return exit_points, exit_directions


def camera_node_distances(
    *,
    exit_points: NDArray[np.float64],
    exit_directions: NDArray[np.float64],
    camera_node: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Perpendicular distance from the camera node to each exit ray. Rays pointing away give inf."""
    offsets = camera_node - exit_points
    along = np.sum(offsets * exit_directions, axis=-1)
    perpendicular = offsets - along[..., None] * exit_directions
    distances = np.linalg.norm(perpendicular, axis=-1)
    with np.errstate(invalid="ignore"):
        distances = np.where(along > 0, distances, np.inf)
    return np.where(np.isnan(distances), np.inf, distances)


def _plane_directions(*, cos_thetas: NDArray[np.float64], sin_thetas: NDArray[np.float64], axis: int) -> NDArray[np.float64]:
    directions = np.zeros((len(cos_thetas), 3))
    directions[:, 0] = cos_thetas
    directions[:, axis] = sin_thetas
    return directions


def _best_plane_theta(
    *,
    point: NDArray[np.float64],
    camera_node: NDArray[np.float64],
    eye_model: EyeModel,
    tables: RayTraceTables,
    axis: int,
) -> float:
    """Best ray angle in the plane spanned by p1 and the given axis (1 or 2)."""
    in_plane_point = np.zeros(3)
    in_plane_point[[0, axis]] = point[[0, axis]]
    in_plane_node = np.zeros(3)
    in_plane_node[[0, axis]] = camera_node[[0, axis]]

    def plane_error(thetas: NDArray[np.float64]) -> NDArray[np.float64]:
        exit_points, exit_directions = trace_through_cornea(
            origin=in_plane_point,
            directions=_plane_directions(cos_thetas=np.cos(thetas), sin_thetas=np.sin(thetas), axis=axis),
            eye_model=eye_model,
        )
        return camera_node_distances(
            exit_points=exit_points,
            exit_directions=exit_directions,
            camera_node=in_plane_node,
        )

    errors = plane_error(tables.candidate_thetas)
    if not np.any(np.isfinite(errors)):
        return np.nan
    best_theta = float(tables.candidate_thetas[np.argmin(errors)])

    if tables.refine_theta:
        result = minimize_scalar(
            lambda theta: float(plane_error(np.array([theta]))[0]),
            bounds=(best_theta - tables.theta_step, best_theta + tables.theta_step),
            method="bounded",
            options={"xatol": tables.refine_tolerance},
        )
        if np.isfinite(result.fun) and result.fun <= float(np.min(errors)):
            best_theta = float(result.x)
    return best_theta


def virtual_image_point(
    *,
    point: NDArray[np.float64],
    camera_node: NDArray[np.float64],
    eye_model: EyeModel,
    tables: RayTraceTables,
) -> tuple[NDArray[np.float64], float]:
    """
    Apparent position of an eye point seen through the cornea from the camera node.

    Args:
        point: (3,) eyeWorld point inside the eye
        camera_node: (3,) camera center in the same (unrotated) eyeWorld frame
        eye_model: Eye geometry
        tables: Candidate angle tables

    Returns:
        virtual_point: (3,) virtual image, NaN if no ray reaches the camera
        error: distance (mm) between the camera node and the best 3D exit ray
    """
    theta_p1p2 = _best_plane_theta(point=point, camera_node=camera_node, eye_model=eye_model, tables=tables, axis=1)
    theta_p1p3 = _best_plane_theta(point=point, camera_node=camera_node, eye_model=eye_model, tables=tables, axis=2)
    if not (np.isfinite(theta_p1p2) and np.isfinite(theta_p1p3)):
        return np.full(3, np.nan), np.nan

    direction = np.array([
        np.cos(theta_p1p2) * np.cos(theta_p1p3),
        np.sin(theta_p1p2) * np.cos(theta_p1p3),
        np.cos(theta_p1p2) * np.sin(theta_p1p3),
    ])
    direction /= np.linalg.norm(direction)

    exit_points, exit_directions = trace_through_cornea(
        origin=point,
        directions=direction[None, :],
        eye_model=eye_model,
    )
    exit_point = exit_points[0]
    exit_direction = exit_directions[0]
    error = float(camera_node_distances(
        exit_points=exit_points,
        exit_directions=exit_directions,
        camera_node=camera_node,
    )[0])

    if not np.all(np.isfinite(exit_direction)) or abs(exit_direction[0]) < 1e-12:
        return np.full(3, np.nan), error

    # extend the exit ray backwards to the depth of the original point
    back_distance = (exit_point[0] - point[0]) / exit_direction[0]
    return exit_point - back_distance * exit_direction, error


def refract_eye_world_points(
    *,
    points: NDArray[np.float64],
    eye_model: EyeModel,
    camera_node: NDArray[np.float64],
    tables: RayTraceTables,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Replace each point by its virtual image.

    Returns:
        virtual_points: (N, 3)
        errors: (N,) camera node distance of the best ray for each point
    """
    virtual_points = np.empty_like(points)
    errors = np.empty(len(points))
    for index, point in enumerate(points):
        virtual_points[index], errors[index] = virtual_image_point(
            point=point,
            camera_node=camera_node,
            eye_model=eye_model,
            tables=tables,
        )
    return virtual_points, errors
