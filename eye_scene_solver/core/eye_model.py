"""
Eye Model
=========

Anatomical description of an eye as a function of eye radius.

COORDINATE SYSTEM ("eyeWorld", millimeters):
    Origin: apex of the anterior corneal surface
    p1: depth axis, positive toward the camera (everything inside the eye has p1 < 0)
    p2: horizontal axis
    p3: vertical axis

The population values below describe an emmetropic eye with radius 11.29mm.
Linear dimensions scale by eye_radius / 11.29, so changing the eye radius
moves the rotation center, pupil plane and corneal surfaces together.
"""
import logging
from dataclasses import dataclass
from functools import lru_cache

import numpy as np
from numpy.typing import NDArray
from pydantic import BaseModel, ConfigDict, Field

from eye_scene_solver.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

REFERENCE_EYE_RADIUS_MM: float = 11.29
NUM_PUPIL_PERIMETER_POINTS: int = 5
NUM_IRIS_PERIMETER_POINTS: int = 5
NUM_SURFACE_FACETS: int = 30


class EyeAnatomy(BaseModel):
    """
    Per-subject anatomical parameters, defined for the reference eye radius.

    Defaults are population averages. Override individual fields to describe
    a particular subject; all linear values are rescaled by the eye radius.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    cornea_front_radius_mm: float = Field(default=7.8, gt=0)
    cornea_back_radius_mm: float = Field(default=6.5, gt=0)
    cornea_thickness_mm: float = Field(default=0.55, gt=0)
    pupil_depth_mm: float = Field(default=3.7, gt=0)
    iris_depth_mm: float = Field(default=3.9, gt=0)
    iris_radius_mm: float = Field(default=5.9, gt=0)
    rotation_center_depth_mm: float = Field(default=13.3, gt=0)
    axial_length_mm: float = Field(default=23.58, gt=0)
    posterior_chamber_semi_axes_mm: tuple[float, float, float] = (10.148, 11.455, 11.365)
    """(axial, horizontal, vertical) semi-axes of the posterior chamber ellipsoid"""

    cornea_refractive_index: float = Field(default=1.376, gt=0)
    aqueous_refractive_index: float = Field(default=1.3374, gt=0)
    air_refractive_index: float = Field(default=1.0, gt=0)


@dataclass(frozen=True)
class EyeModel:
    """Geometric primitives of one eye in eyeWorld coordinates (mm)."""

    eye_radius_mm: float
    pupil_center: NDArray[np.float64]
    iris_center: NDArray[np.float64]
    iris_radius_mm: float
    rotation_center: NDArray[np.float64]
    posterior_chamber_center: NDArray[np.float64]
    posterior_chamber_semi_axes: NDArray[np.float64]
    cornea_front_center: NDArray[np.float64]
    cornea_front_radius_mm: float
    cornea_back_center: NDArray[np.float64]
    cornea_back_radius_mm: float
    cornea_refractive_index: float
    aqueous_refractive_index: float
    air_refractive_index: float


def _on_axis(depth_mm: float) -> NDArray[np.float64]:
    point = np.array([depth_mm, 0.0, 0.0])
    point.flags.writeable = False
    return point


@lru_cache(maxsize=128)
def create_eye_model(*, eye_radius_mm: float, anatomy: EyeAnatomy | None = None) -> EyeModel:
    """
    Build the eye model for a given eye radius.

    Results are memoized; the returned arrays are read-only.

    Args:
        eye_radius_mm: Radius of the eye (mm)
        anatomy: Per-subject anatomy, population defaults if None

    Returns:
        EyeModel in eyeWorld coordinates
    """
    if not np.isfinite(eye_radius_mm) or eye_radius_mm <= 0:
        raise ConfigurationError(f"Eye radius must be positive and finite, got {eye_radius_mm}")
    if anatomy is None:
        anatomy = EyeAnatomy()

    scale = eye_radius_mm / REFERENCE_EYE_RADIUS_MM

    semi_axes = np.array(anatomy.posterior_chamber_semi_axes_mm) * scale
    semi_axes.flags.writeable = False
    axial_length = anatomy.axial_length_mm * scale
    cornea_back_radius = anatomy.cornea_back_radius_mm * scale

    return EyeModel(
        eye_radius_mm=float(eye_radius_mm),
        pupil_center=_on_axis(-anatomy.pupil_depth_mm * scale),
        iris_center=_on_axis(-anatomy.iris_depth_mm * scale),
        iris_radius_mm=anatomy.iris_radius_mm * scale,
        rotation_center=_on_axis(-anatomy.rotation_center_depth_mm * scale),
        posterior_chamber_center=_on_axis(-axial_length + semi_axes[0]),
        posterior_chamber_semi_axes=semi_axes,
        cornea_front_center=_on_axis(-anatomy.cornea_front_radius_mm * scale),
        cornea_front_radius_mm=anatomy.cornea_front_radius_mm * scale,
        cornea_back_center=_on_axis(-(anatomy.cornea_thickness_mm * scale + cornea_back_radius)),
        cornea_back_radius_mm=cornea_back_radius,
        cornea_refractive_index=anatomy.cornea_refractive_index,
        aqueous_refractive_index=anatomy.aqueous_refractive_index,
        air_refractive_index=anatomy.air_refractive_index,
    )


def create_perimeter_points(
    *,
    center: NDArray[np.float64],
    radius_mm: float,
    n_points: int = NUM_PUPIL_PERIMETER_POINTS,
) -> NDArray[np.float64]:
    """
    Points evenly spaced on a circle lying in the p2/p3 plane at the center's depth.

    Returns:
        (n_points, 3) array [p1, p2, p3]
    """
    angles = np.arange(n_points) * (2.0 * np.pi / n_points)
    points = np.empty((n_points, 3))
    points[:, 0] = center[0]
    points[:, 1] = np.cos(angles) * radius_mm + center[1]
    points[:, 2] = np.sin(angles) * radius_mm + center[2]
    return points


def sample_ellipsoid_surface(
    *,
    center: NDArray[np.float64],
    semi_axes: NDArray[np.float64],
    n_facets: int = NUM_SURFACE_FACETS,
) -> NDArray[np.float64]:
    """
    Sample an axis-aligned ellipsoid on an (n_facets+1) x (n_facets+1) grid.

    The grid poles lie on the p1 axis.

    Returns:
        ((n_facets+1)**2, 3) surface points
    """
    polar = np.linspace(-np.pi / 2.0, np.pi / 2.0, n_facets + 1)
    azimuth = np.linspace(-np.pi, np.pi, n_facets + 1)
    polar_grid, azimuth_grid = np.meshgrid(polar, azimuth, indexing="ij")

    p1 = center[0] + semi_axes[0] * np.sin(polar_grid)
    p2 = center[1] + semi_axes[1] * np.cos(polar_grid) * np.cos(azimuth_grid)
    p3 = center[2] + semi_axes[2] * np.cos(polar_grid) * np.sin(azimuth_grid)
    return np.column_stack([p1.ravel(), p2.ravel(), p3.ravel()])
