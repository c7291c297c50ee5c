import typing

import numba
import numpy as np

from poreflow._precision import get_dtype
from poreflow.errors import ValidationError
from poreflow.mesh.base import Mesh
from poreflow.types import FloatArray

__all__ = [
    "as_permeability_tensor",
    "compute_half_face_trans",
    "compute_face_trans",
    "compute_boundary_trans",
    "upwind",
]


def as_permeability_tensor(permeability: typing.Any, number_of_cells: int) -> FloatArray:
    """
    Normalize a permeability input to a diagonal tensor per cell.

    :param permeability: Scalar, per-cell vector of shape (nc,), or an array of
        shape (d, nc) / (nc, d) with d <= 3 diagonal entries per cell (m²).
        Missing diagonal entries repeat the last given one.
    :param number_of_cells: Number of cells.
    :return: Array of shape (nc, 3) with kx, ky, kz per cell.
    """
    perm = np.asarray(permeability, dtype=get_dtype())
    nc = number_of_cells
    if perm.ndim == 0:
        tensor = np.full((nc, 3), float(perm), dtype=get_dtype())
    elif perm.ndim == 1 and perm.shape[0] == nc:
        tensor = np.repeat(perm[:, None], 3, axis=1)
    elif perm.ndim == 2 and perm.shape[1] == nc and perm.shape[0] <= 3:
        tensor = perm.T
    elif perm.ndim == 2 and perm.shape[0] == nc and perm.shape[1] <= 3:
        tensor = perm
    else:
        raise ValidationError(
            f"Permeability must be a scalar or of shape ({nc},), (d, {nc}) or ({nc}, d), "
            f"got {perm.shape}"
        )
    if tensor.shape[1] < 3:
        pad = np.repeat(tensor[:, -1:], 3 - tensor.shape[1], axis=1)
        tensor = np.hstack([tensor, pad])
    if np.any(tensor < 0.0):
        raise ValidationError("Permeability must be non-negative.")
    return np.ascontiguousarray(tensor)


@numba.njit(cache=True)
def _half_trans(
    areas: np.ndarray,
    normals: np.ndarray,
    face_centroids: np.ndarray,
    cell_centroids: np.ndarray,
    cells: np.ndarray,
    permeability: np.ndarray,
) -> np.ndarray:
    n = cells.shape[0]
    out = np.zeros(n)
    for f in range(n):
        c = cells[f]
        dist2 = 0.0
        kdn = 0.0
        for d in range(3):
            dx = face_centroids[f, d] - cell_centroids[c, d]
            dist2 += dx * dx
            kdn += permeability[c, d] * dx * normals[f, d]
        if dist2 > 0.0:
            out[f] = areas[f] * abs(kdn) / dist2
    return out


def compute_half_face_trans(mesh: Mesh, permeability: typing.Any) -> FloatArray:
    """
    Compute half-face transmissibilities of all interior faces.

    For a cell with centroid `x_c` and a face with centroid `x_f`, area `A` and
    unit normal `n`, the half transmissibility is `A (K d)·n / |d|²` where
    `d = x_f - x_c`.

    :param mesh: Mesh.
    :param permeability: Permeability, see `as_permeability_tensor`.
    :return: Array of shape (nf, 2), one half transmissibility per side.
    """
    K = as_permeability_tensor(permeability, mesh.number_of_cells)
    half = np.zeros((mesh.number_of_faces, 2), dtype=get_dtype())
    for side in range(2):
        half[:, side] = _half_trans(
            mesh.face_areas,
            mesh.face_normals,
            mesh.face_centroids,
            mesh.cell_centroids,
            mesh.neighbors[:, side],
            K,
        )
    return half


def compute_face_trans(mesh: Mesh, permeability: typing.Any) -> FloatArray:
    """
    Two-point flux approximation transmissibility of each interior face.

    The two half transmissibilities are combined harmonically,
    `T = 1 / (1/T_left + 1/T_right)`. A face next to an impermeable cell gets
    zero transmissibility.

    :param mesh: Mesh.
    :param permeability: Permeability, see `as_permeability_tensor`.
    :return: Array of shape (nf,) (m³).
    """
    half = compute_half_face_trans(mesh, permeability)
    product = half[:, 0] * half[:, 1]
    total = half[:, 0] + half[:, 1]
    return np.where(total > 0.0, product / np.where(total > 0.0, total, 1.0), 0.0)


def compute_boundary_trans(mesh: Mesh, permeability: typing.Any) -> FloatArray:
    """Half transmissibility between each boundary face and its cell (m³)."""
    K = as_permeability_tensor(permeability, mesh.number_of_cells)
    if mesh.number_of_boundary_faces == 0:
        return np.zeros(0, dtype=get_dtype())
    return _half_trans(
        mesh.boundary_areas,
        mesh.boundary_normals,
        mesh.boundary_centroids,
        mesh.cell_centroids,
        mesh.boundary_cells,
        K,
    )


@numba.njit(cache=True)
def upwind(
    potential_difference: np.ndarray,
    left_values: np.ndarray,
    right_values: np.ndarray,
) -> np.ndarray:
    """
    Select the upstream value for each face.

    Flow goes from the left to the right cell when the potential difference
    (left minus right) is positive, so the left value is upstream.
    """
    n = potential_difference.shape[0]
    out = np.empty(n)
    for f in range(n):
        if potential_difference[f] >= 0.0:
            out[f] = left_values[f]
        else:
            out[f] = right_values[f]
    return out
