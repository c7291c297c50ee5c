import logging
import typing

import attrs
import numpy as np

from poreflow.constants import c
from poreflow.discretization.domain import DiscretizedDomain
from poreflow.discretization.tpfa import as_permeability_tensor
from poreflow.errors import ValidationError
from poreflow.mesh.base import Mesh
from poreflow.mesh.cartesian import CartesianMesh
from poreflow.types import CartesianIndex, CellIndex, FloatArray, IntArray, Orientation
from poreflow.wells.core import (
    compute_2D_effective_drainage_radius,
    compute_3D_effective_drainage_radius,
    compute_effective_permeability_for_well,
    compute_segment_conductance,
    compute_well_index,
    orientation_axis,
)

logger = logging.getLogger(__name__)

__all__ = ["Well", "setup_well", "setup_vertical_well"]


@attrs.frozen(eq=False)
class Well:
    """
    Multi-segment well.

    The well-bore is a chain of nodes: a top node, where the bottom-hole
    pressure is measured and the facility injects or withdraws fluid, followed
    by one node per perforation. Consecutive nodes are connected by segments.
    A simple well is the degenerate case with a single node carrying every
    perforation.
    """

    name: str
    """Unique well name."""
    cells: IntArray
    """Perforated reservoir cells."""
    perforation_nodes: IntArray
    """Well node each perforation connects to."""
    well_indices: FloatArray
    """Well index of each perforation (m³)."""
    perforation_depth_differences: FloatArray
    """Cell depth minus node depth for each perforation (m)."""
    node_depths: FloatArray
    """Depth of each well node (m)."""
    node_volumes: FloatArray
    """Fluid volume of each well node (m³)."""
    segments: IntArray
    """Node pairs (upper, lower) of each segment, shape (ns, 2)."""
    segment_conductances: FloatArray
    """Hagen-Poiseuille conductance of each segment (m³)."""
    radius: float = 0.1
    """Well-bore radius (m)."""
    simple: bool = False
    """Whether this is a single-node well."""

    def __attrs_post_init__(self) -> None:
        nperf = self.cells.shape[0]
        if nperf == 0:
            raise ValidationError(f"Well '{self.name}' must have at least one perforation.")
        for name in ("perforation_nodes", "well_indices", "perforation_depth_differences"):
            if getattr(self, name).shape != (nperf,):
                raise ValidationError(f"'{name}' of well '{self.name}' must have {nperf} entries")
        nn = self.node_depths.shape[0]
        if self.node_volumes.shape != (nn,) or np.any(self.node_volumes <= 0.0):
            raise ValidationError(f"Well '{self.name}' node volumes must be positive, one per node.")
        if self.perforation_nodes.min() < 0 or self.perforation_nodes.max() >= nn:
            raise ValidationError(f"Perforation node index out of range in well '{self.name}'")
        if np.any(self.well_indices < 0.0):
            raise ValidationError(f"Well indices of '{self.name}' must be non-negative.")
        if self.segments.shape != (self.segment_conductances.shape[0], 2):
            raise ValidationError(f"Segments of well '{self.name}' are inconsistent.")

    @property
    def number_of_nodes(self) -> int:
        return int(self.node_depths.shape[0])

    @property
    def number_of_perforations(self) -> int:
        return int(self.cells.shape[0])

    @property
    def number_of_segments(self) -> int:
        return int(self.segments.shape[0])

    @property
    def segment_depth_differences(self) -> FloatArray:
        """Depth of the lower node minus depth of the upper node per segment (m)."""
        return self.node_depths[self.segments[:, 1]] - self.node_depths[self.segments[:, 0]]

    def __repr__(self) -> str:
        kind = "simple" if self.simple else "multi-segment"
        return f"Well({self.name!r}, {kind}, perforations={self.number_of_perforations})"


def _resolve_cells(
    mesh: Mesh, reservoir_cells: typing.Sequence[typing.Union[CellIndex, CartesianIndex]]
) -> IntArray:
    cells = []
    for cell in reservoir_cells:
        if isinstance(cell, (tuple, list)):
            if not isinstance(mesh, CartesianMesh):
                raise ValidationError("Logical cell indices require a Cartesian mesh.")
            cells.append(mesh.cell_index(*cell))
        else:
            index = int(cell)
            if not 0 <= index < mesh.number_of_cells:
                raise ValidationError(f"Perforated cell {index} is outside the mesh.")
            cells.append(index)
    if not cells:
        raise ValidationError("A well needs at least one perforated cell.")
    if len(set(cells)) != len(cells):
        raise ValidationError("A cell can be perforated only once per well.")
    return np.asarray(cells, dtype=np.int64)


def setup_well(
    mesh: typing.Union[Mesh, DiscretizedDomain],
    permeability: typing.Any,
    reservoir_cells: typing.Sequence[typing.Union[CellIndex, CartesianIndex]],
    name: str,
    radius: typing.Optional[float] = None,
    skin: float = 0.0,
    direction: typing.Union[str, Orientation] = "z",
    simple_well: bool = False,
    reference_depth: typing.Optional[float] = None,
    WI: typing.Optional[typing.Any] = None,
) -> Well:
    """
    Set up a well perforating the given cells, in the listed order from the top.

    :param mesh: Mesh (or discretized domain) the well lives in.
    :param permeability: Reservoir permeability (scalar, per cell or per cell diagonal) (m²).
    :param reservoir_cells: Perforated cells as linear or logical indices.
    :param name: Well name.
    :param radius: Well-bore radius (m). Defaults to `c.DEFAULT_WELLBORE_RADIUS`.
    :param skin: Skin factor.
    :param direction: Well direction in the perforated cells ("x", "y" or "z").
    :param simple_well: Use a single well node instead of a segmented well-bore.
    :param reference_depth: Depth of the top node, where the bottom-hole pressure is
        measured. Defaults to the top of the first perforated cell.
    :param WI: Explicit well indices (scalar or one per perforation), bypassing Peaceman.
    :return: The well.
    """
    if isinstance(mesh, DiscretizedDomain):
        mesh = mesh.mesh
    if not name:
        raise ValidationError("Well name must be a non-empty string.")
    radius = c.DEFAULT_WELLBORE_RADIUS if radius is None else float(radius)
    if radius <= 0.0:
        raise ValidationError("Well-bore radius must be positive.")
    cells = _resolve_cells(mesh, reservoir_cells)
    nperf = cells.shape[0]
    axis = orientation_axis(direction)
    K = as_permeability_tensor(permeability, mesh.number_of_cells)
    dims = mesh.cell_dimensions

    if WI is None:
        well_indices = np.empty(nperf)
        for n, cell in enumerate(cells):
            if mesh.dimensions == 3:
                re = compute_3D_effective_drainage_radius(dims[cell], K[cell], axis)
                k_eff = compute_effective_permeability_for_well(K[cell], axis)
                length = dims[cell, axis]
            else:
                re = compute_2D_effective_drainage_radius(dims[cell, :2], K[cell, :2])
                k_eff = float(np.sqrt(K[cell, 0] * K[cell, 1]))
                length = dims[cell, 2]
            if re <= radius:
                raise ValidationError(
                    f"Well-bore radius {radius} m of well '{name}' exceeds the effective "
                    f"drainage radius {re:.4g} m of cell {cell}"
                )
            well_indices[n] = compute_well_index(k_eff, length, radius, re, skin)
    else:
        well_indices = np.broadcast_to(np.asarray(WI, dtype=np.float64), (nperf,)).copy()

    centroids = mesh.cell_centroids[cells]
    cell_depths = centroids[:, 2]
    if reference_depth is None:
        reference_depth = float(cell_depths[0] - dims[cells[0], 2] / 2.0)
    area = np.pi * radius**2

    if simple_well:
        total_length = float(dims[cells, axis].sum())
        node_depths = np.array([reference_depth])
        node_volumes = np.array([area * total_length])
        perforation_nodes = np.zeros(nperf, dtype=np.int64)
        segments = np.zeros((0, 2), dtype=np.int64)
        conductances = np.zeros(0)
    else:
        top = centroids[0].copy()
        top[2] = reference_depth
        positions = np.vstack([top[None, :], centroids])
        node_depths = positions[:, 2].copy()
        segments = np.column_stack([np.arange(nperf), np.arange(1, nperf + 1)]).astype(np.int64)
        lengths = np.linalg.norm(positions[1:] - positions[:-1], axis=1)
        lengths = np.maximum(lengths, 0.5 * dims[cells, axis])
        conductances = np.array([compute_segment_conductance(radius, L) for L in lengths])
        node_volumes = np.concatenate([[area * lengths[0]], area * dims[cells, axis]])
        perforation_nodes = np.arange(1, nperf + 1, dtype=np.int64)

    well = Well(
        name=name,
        cells=cells,
        perforation_nodes=perforation_nodes,
        well_indices=well_indices,
        perforation_depth_differences=cell_depths - node_depths[perforation_nodes],
        node_depths=node_depths,
        node_volumes=node_volumes,
        segments=segments,
        segment_conductances=conductances,
        radius=radius,
        simple=simple_well,
    )
    logger.debug(f"Set up {well!r} with well indices {well_indices}")
    return well


def setup_vertical_well(
    mesh: typing.Union[CartesianMesh, DiscretizedDomain],
    permeability: typing.Any,
    i: int,
    j: int,
    name: str,
    heel: int = 0,
    toe: typing.Optional[int] = None,
    **kwargs: typing.Any,
) -> Well:
    """
    Set up a vertical well through column (i, j) of a Cartesian mesh.

    :param mesh: Cartesian mesh (or a domain built on one).
    :param permeability: Reservoir permeability (m²).
    :param i: Logical x index of the column.
    :param j: Logical y index of the column.
    :param name: Well name.
    :param heel: First perforated layer (0-based).
    :param toe: Last perforated layer (0-based, inclusive). Defaults to the bottom layer.
    :param kwargs: Additional keyword arguments for `setup_well`.
    :return: The well.
    """
    grid = mesh.mesh if isinstance(mesh, DiscretizedDomain) else mesh
    if not isinstance(grid, CartesianMesh):
        raise ValidationError("Vertical wells require a Cartesian mesh.")
    nz = grid.shape3[2]
    toe = nz - 1 if toe is None else toe
    if not 0 <= heel <= toe < nz:
        raise ValidationError(f"Invalid perforation interval [{heel}, {toe}] for {nz} layers")
    cells = [grid.cell_index(i, j, k) for k in range(heel, toe + 1)]
    kwargs.setdefault("direction", "z")
    return setup_well(grid, permeability, cells, name, **kwargs)
