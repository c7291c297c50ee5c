import logging
import math
import typing

import attrs
import numpy as np

from poreflow._precision import get_dtype
from poreflow.constants import c
from poreflow.discretization.tpfa import (
    as_permeability_tensor,
    compute_boundary_trans,
    compute_face_trans,
)
from poreflow.errors import ValidationError
from poreflow.mesh.base import Mesh
from poreflow.mesh.cartesian import CartesianMesh
from poreflow.types import FloatArray, FloatOrArray
from poreflow.utils import as_cell_array

logger = logging.getLogger(__name__)

__all__ = ["DiscretizedDomain", "discretized_domain", "get_1d_reservoir"]


@attrs.frozen(eq=False)
class DiscretizedDomain:
    """
    Mesh together with rock properties and the derived two-point flux geometry.
    """

    mesh: Mesh
    """Underlying mesh."""
    porosity: FloatArray
    """Porosity of each cell."""
    permeability: FloatArray
    """Diagonal permeability of each cell, shape (nc, 3) (m²)."""
    net_to_gross: FloatArray
    """Net-to-gross ratio of each cell."""
    rock_compressibility: float = 0.0
    """Rock (pore volume) compressibility (1/Pa)."""
    rock_reference_pressure: float = attrs.field(
        factory=lambda: c.DEFAULT_REFERENCE_PRESSURE
    )
    """Pressure at which pore volumes are `pore_volumes` (Pa)."""
    transmissibilities: FloatArray = attrs.field(default=None)
    """Face transmissibilities (m³)."""
    boundary_transmissibilities: FloatArray = attrs.field(default=None)
    """Half transmissibilities of boundary faces (m³)."""
    gravity: bool = True
    """Whether gravity acts on the fluids."""

    def __attrs_post_init__(self) -> None:
        nc = self.mesh.number_of_cells
        if self.porosity.shape != (nc,) or self.net_to_gross.shape != (nc,):
            raise ValidationError("Porosity and net-to-gross must have one value per cell.")
        if np.any(self.porosity <= 0.0) or np.any(self.porosity > 1.0):
            raise ValidationError("Porosity must lie in (0, 1].")
        if np.any(self.net_to_gross <= 0.0) or np.any(self.net_to_gross > 1.0):
            raise ValidationError("Net-to-gross must lie in (0, 1].")
        if self.rock_compressibility < 0.0:
            raise ValidationError("Rock compressibility must be non-negative.")
        if self.transmissibilities is None:
            object.__setattr__(
                self,
                "transmissibilities",
                compute_face_trans(self.mesh, self.permeability),
            )
        if self.boundary_transmissibilities is None:
            object.__setattr__(
                self,
                "boundary_transmissibilities",
                compute_boundary_trans(self.mesh, self.permeability),
            )
        if self.transmissibilities.shape != (self.mesh.number_of_faces,):
            raise ValidationError(
                f"Expected {self.mesh.number_of_faces} face transmissibilities, "
                f"got {self.transmissibilities.shape}"
            )

    @property
    def number_of_cells(self) -> int:
        return self.mesh.number_of_cells

    @property
    def number_of_faces(self) -> int:
        return self.mesh.number_of_faces

    @property
    def neighbors(self) -> np.ndarray:
        return self.mesh.neighbors

    @property
    def pore_volumes(self) -> FloatArray:
        """Pore volume of each cell at the rock reference pressure (m³)."""
        return self.mesh.cell_volumes * self.porosity * self.net_to_gross

    @property
    def cell_depths(self) -> FloatArray:
        return self.mesh.cell_depths

    @property
    def face_depth_differences(self) -> FloatArray:
        """Depth of the second cell minus depth of the first cell, per face (m)."""
        depths = self.mesh.cell_depths
        if not self.gravity:
            return np.zeros(self.mesh.number_of_faces, dtype=get_dtype())
        return depths[self.mesh.neighbors[:, 1]] - depths[self.mesh.neighbors[:, 0]]

    def pore_volume(self, pressure: FloatOrArray) -> FloatOrArray:
        """
        Pressure dependent pore volume, linearized about the rock reference pressure.

        :param pressure: Cell pressures (Pa).
        :return: Pore volumes (m³).
        """
        if self.rock_compressibility == 0.0:
            return self.pore_volumes
        return self.pore_volumes * (
            1.0 + self.rock_compressibility * (pressure - self.rock_reference_pressure)
        )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(cells={self.number_of_cells}, "
            f"faces={self.number_of_faces})"
        )


def discretized_domain(
    mesh: Mesh,
    porosity: typing.Any = None,
    permeability: typing.Any = None,
    net_to_gross: typing.Any = 1.0,
    rock_compressibility: float = 0.0,
    rock_reference_pressure: typing.Optional[float] = None,
    transmissibility_multipliers: typing.Any = None,
    gravity: bool = True,
) -> DiscretizedDomain:
    """
    Build a `DiscretizedDomain` from a mesh and rock properties.

    :param mesh: Mesh to discretize.
    :param porosity: Scalar or per-cell porosity. Defaults to `c.DEFAULT_POROSITY`.
    :param permeability: Scalar, per-cell or per-cell diagonal permeability (m²).
        Defaults to `c.DEFAULT_PERMEABILITY`.
    :param net_to_gross: Scalar or per-cell net-to-gross ratio.
    :param rock_compressibility: Pore volume compressibility (1/Pa).
    :param rock_reference_pressure: Reference pressure for the rock compressibility (Pa).
    :param transmissibility_multipliers: Optional scalar or per-face multipliers
        applied to the computed transmissibilities.
    :param gravity: Whether gravity acts on the fluids.
    :return: The discretized domain.
    """
    nc = mesh.number_of_cells
    porosity = c.DEFAULT_POROSITY if porosity is None else porosity
    permeability = c.DEFAULT_PERMEABILITY if permeability is None else permeability
    K = as_permeability_tensor(permeability, nc)
    trans = compute_face_trans(mesh, K)
    if transmissibility_multipliers is not None:
        trans = trans * as_cell_array(
            transmissibility_multipliers, mesh.number_of_faces, "transmissibility_multipliers"
        )
    return DiscretizedDomain(
        mesh=mesh,
        porosity=as_cell_array(porosity, nc, "porosity"),
        permeability=K,
        net_to_gross=as_cell_array(net_to_gross, nc, "net_to_gross"),
        rock_compressibility=float(rock_compressibility),
        rock_reference_pressure=(
            c.DEFAULT_REFERENCE_PRESSURE
            if rock_reference_pressure is None
            else float(rock_reference_pressure)
        ),
        transmissibilities=trans,
        boundary_transmissibilities=compute_boundary_trans(mesh, K),
        gravity=gravity,
    )


def get_1d_reservoir(
    nc: int,
    length: float = 1.0,
    permeability: typing.Any = None,
    porosity: typing.Any = None,
    area: float = 1.0,
    z_max: typing.Optional[float] = None,
    **kwargs: typing.Any,
) -> DiscretizedDomain:
    """
    Build a 1D reservoir of `nc` cells with cross-sectional `area`.

    The reservoir is horizontal with total `length` by default. When `z_max`
    is given, it is a vertical column reaching from depth zero to `z_max`,
    and `length` is not used.

    :param nc: Number of cells.
    :param length: Length of a horizontal reservoir (m).
    :param permeability: Permeability (m²). Defaults to `c.DEFAULT_PERMEABILITY`.
    :param porosity: Porosity. Defaults to `c.DEFAULT_POROSITY`.
    :param area: Cross-sectional area (m²).
    :param z_max: Depth of the bottom of a vertical column (m).
    :param kwargs: Additional keyword arguments for `discretized_domain`.
    :return: The discretized domain.
    """
    if area <= 0.0:
        raise ValidationError("Cross-sectional area must be positive.")
    side = math.sqrt(area)
    if z_max is None:
        mesh = CartesianMesh((nc, 1, 1), extent=(length, side, side))
    else:
        mesh = CartesianMesh((1, 1, nc), extent=(side, side, z_max))
    return discretized_domain(
        mesh, porosity=porosity, permeability=permeability, **kwargs
    )
