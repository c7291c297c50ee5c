"""Core well calculations and utilities."""

import logging
import typing

import numba
import numpy as np

from poreflow.errors import ValidationError
from poreflow.types import Orientation

logger = logging.getLogger(__name__)

__all__ = [
    "compute_well_index",
    "compute_3D_effective_drainage_radius",
    "compute_2D_effective_drainage_radius",
    "compute_effective_permeability_for_well",
    "compute_segment_conductance",
    "orientation_axis",
]


def orientation_axis(direction: typing.Union[str, Orientation]) -> int:
    """Map a well direction ("x", "y", "z" or `Orientation`) to an axis index."""
    try:
        orientation = Orientation(direction) if isinstance(direction, str) else direction
    except ValueError:
        raise ValidationError(
            f"Invalid well direction {direction!r}, expected 'x', 'y' or 'z'"
        ) from None
    return {Orientation.X: 0, Orientation.Y: 1, Orientation.Z: 2}[orientation]


@numba.njit(cache=True)
def compute_well_index(
    permeability: float,
    interval_thickness: float,
    wellbore_radius: float,
    effective_drainage_radius: float,
    skin_factor: float = 0.0,
) -> float:
    """
    Compute the well index of a perforation using the Peaceman equation.

    The formula for the well index is:
    WI = (2π * k * h) / (ln(re/rw) + s)

    where:
        - WI is the well index (m³)
        - k is the effective permeability of the perforated cell (m²)
        - h is the length of the perforated interval (m)
        - re is the effective drainage radius (m)
        - rw is the wellbore radius (m)
        - s is the skin factor (dimensionless, default is 0)

    :param permeability: Effective permeability (m²).
    :param interval_thickness: Length of the perforated interval (m).
    :param wellbore_radius: Radius of the wellbore (m).
    :param effective_drainage_radius: Effective drainage radius (m).
    :param skin_factor: Skin factor for the well (dimensionless, default is 0).
    :return: The well index (m³).
    """
    return (2.0 * np.pi * permeability * interval_thickness) / (
        np.log(effective_drainage_radius / wellbore_radius) + skin_factor
    )


@numba.njit(cache=True)
def compute_3D_effective_drainage_radius(
    interval_thickness: np.ndarray,
    permeability: np.ndarray,
    axis: int,
) -> float:
    """
    Compute the effective drainage radius of a perforation in a 3D model using
    Peaceman's formula for anisotropic cells.

    For a well along z:

        r_z = 0.28 * √[ (∆x² √(k_y/k_x) + ∆y² √(k_x/k_y)) ] / ( (k_y/k_x)^¼ + (k_x/k_y)^¼ )

    and likewise for wells along x and y with the transverse axes.

    :param interval_thickness: Cell size along x, y and z (m).
    :param permeability: Permeability along x, y and z (m²).
    :param axis: Axis of the well (0, 1 or 2).
    :return: The effective drainage radius (m).
    """
    if axis == 0:
        i, j = 1, 2
    elif axis == 1:
        i, j = 0, 2
    else:
        i, j = 0, 1
    d_i = interval_thickness[i]
    d_j = interval_thickness[j]
    k_i = max(permeability[i], 1e-30)
    k_j = max(permeability[j], 1e-30)
    ratio = np.sqrt(k_j / k_i)
    numerator = np.sqrt(d_i**2 * ratio + d_j**2 / ratio)
    denominator = (k_j / k_i) ** 0.25 + (k_i / k_j) ** 0.25
    return 0.28 * numerator / denominator


@numba.njit(cache=True)
def compute_2D_effective_drainage_radius(
    interval_thickness: np.ndarray,
    permeability: np.ndarray,
) -> float:
    """
    Compute the effective drainage radius of a perforation in a 2D (areal) model.

        r = 0.28 * √[ (∆x² √(k_y/k_x) + ∆y² √(k_x/k_y)) / (√(k_y/k_x) + √(k_x/k_y)) ]

    :param interval_thickness: Cell size along x and y (m).
    :param permeability: Permeability along x and y (m²).
    :return: The effective drainage radius (m).
    """
    k_x = max(permeability[0], 1e-30)
    k_y = max(permeability[1], 1e-30)
    delta_x = interval_thickness[0]
    delta_y = interval_thickness[1]
    return 0.28 * np.sqrt(
        (delta_x**2 * np.sqrt(k_y / k_x) + delta_y**2 * np.sqrt(k_x / k_y))
        / (np.sqrt(k_y / k_x) + np.sqrt(k_x / k_y))
    )


@numba.njit(cache=True)
def compute_effective_permeability_for_well(permeability: np.ndarray, axis: int) -> float:
    """
    Geometric mean of the two permeabilities perpendicular to the well axis.

    :param permeability: (kx, ky, kz) of the perforated cell (m²).
    :param axis: Axis of the well (0, 1 or 2).
    """
    kx = max(permeability[0], 0.0)
    ky = max(permeability[1], 0.0)
    kz = max(permeability[2], 0.0)
    if axis == 2:
        return np.sqrt(kx * ky)
    elif axis == 0:
        return np.sqrt(ky * kz)
    return np.sqrt(kx * kz)


def compute_segment_conductance(radius: float, length: float) -> float:
    """
    Hagen-Poiseuille conductance `π r⁴ / (8 L)` of a well-bore segment (m³).

    Multiplied by the mobility and the potential difference it gives the
    laminar volumetric flow rate through the segment.
    """
    if radius <= 0.0 or length <= 0.0:
        raise ValidationError("Segment radius and length must be positive.")
    return float(np.pi * radius**4 / (8.0 * length))
