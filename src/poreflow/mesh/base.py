import typing

import attrs
import numpy as np

from poreflow._precision import get_dtype
from poreflow.errors import ValidationError
from poreflow.types import FloatArray, IntArray

__all__ = ["Mesh"]


def _as_float_array(value: typing.Any) -> FloatArray:
    return np.ascontiguousarray(value, dtype=get_dtype())


def _as_index_array(value: typing.Any) -> IntArray:
    return np.ascontiguousarray(value, dtype=np.int64)


def _as_vector_array(value: typing.Any) -> FloatArray:
    """Coerce a (n, d) array of points/vectors with d <= 3 to shape (n, 3)."""
    array = np.asarray(value, dtype=get_dtype())
    if array.ndim == 1:
        array = array.reshape(-1, 1)
    if array.ndim != 2 or array.shape[1] > 3:
        raise ValidationError(
            f"Expected an array of shape (n, 1..3), got shape {array.shape}"
        )
    if array.shape[1] < 3:
        array = np.hstack(
            [array, np.zeros((array.shape[0], 3 - array.shape[1]), dtype=array.dtype)]
        )
    return np.ascontiguousarray(array)


def _empty_vectors() -> FloatArray:
    return np.zeros((0, 3), dtype=get_dtype())


@attrs.frozen(eq=False)
class Mesh:
    """
    Cell and face topology of a finite-volume mesh, with geometry.

    Only interior faces are stored in `neighbors`. Faces on the domain boundary
    are stored separately and carry the single cell they belong to. The third
    coordinate of every point is depth, positive downwards.
    """

    cell_volumes: FloatArray = attrs.field(converter=_as_float_array)
    """Bulk volume of each cell (m³)."""
    cell_centroids: FloatArray = attrs.field(converter=_as_vector_array)
    """Cell centroids, shape (nc, 3) (m)."""
    neighbors: IntArray = attrs.field(converter=_as_index_array)
    """Cell pair of each interior face, shape (nf, 2)."""
    face_areas: FloatArray = attrs.field(converter=_as_float_array)
    """Area of each interior face (m²)."""
    face_normals: FloatArray = attrs.field(converter=_as_vector_array)
    """Unit normal of each interior face, pointing from the first cell to the second, shape (nf, 3)."""
    face_centroids: FloatArray = attrs.field(converter=_as_vector_array)
    """Centroid of each interior face, shape (nf, 3) (m)."""
    boundary_cells: IntArray = attrs.field(
        factory=lambda: np.zeros(0, dtype=np.int64), converter=_as_index_array
    )
    """Cell owning each boundary face."""
    boundary_areas: FloatArray = attrs.field(
        factory=lambda: np.zeros(0), converter=_as_float_array
    )
    """Area of each boundary face (m²)."""
    boundary_normals: FloatArray = attrs.field(
        factory=_empty_vectors, converter=_as_vector_array
    )
    """Outward unit normal of each boundary face, shape (nb, 3)."""
    boundary_centroids: FloatArray = attrs.field(
        factory=_empty_vectors, converter=_as_vector_array
    )
    """Centroid of each boundary face, shape (nb, 3) (m)."""
    dimensions: int = attrs.field(default=3, validator=attrs.validators.in_((1, 2, 3)))
    """Number of spatial dimensions of the mesh."""

    def __attrs_post_init__(self) -> None:
        nc = self.cell_volumes.shape[0]
        if self.cell_volumes.ndim != 1 or nc == 0:
            raise ValidationError("Mesh must have at least one cell.")
        if np.any(self.cell_volumes <= 0.0):
            raise ValidationError("Cell volumes must be positive.")
        if self.cell_centroids.shape != (nc, 3):
            raise ValidationError(
                f"Cell centroids must have shape ({nc}, 3), got {self.cell_centroids.shape}"
            )

        neighbors = self.neighbors.reshape(-1, 2) if self.neighbors.size == 0 else self.neighbors
        object.__setattr__(self, "neighbors", neighbors)
        if neighbors.ndim != 2 or neighbors.shape[1] != 2:
            raise ValidationError(
                f"Neighbors must have shape (nf, 2), got {neighbors.shape}"
            )
        nf = neighbors.shape[0]
        if nf and (neighbors.min() < 0 or neighbors.max() >= nc):
            raise ValidationError("Face neighbor index out of range.")
        if np.any(neighbors[:, 0] == neighbors[:, 1]):
            raise ValidationError("A face cannot connect a cell to itself.")
        for name in ("face_areas",):
            if getattr(self, name).shape != (nf,):
                raise ValidationError(f"'{name}' must have shape ({nf},)")
        for name in ("face_normals", "face_centroids"):
            if getattr(self, name).shape != (nf, 3):
                raise ValidationError(f"'{name}' must have shape ({nf}, 3)")
        if np.any(self.face_areas <= 0.0):
            raise ValidationError("Face areas must be positive.")

        nb = self.boundary_cells.shape[0]
        if nb and (self.boundary_cells.min() < 0 or self.boundary_cells.max() >= nc):
            raise ValidationError("Boundary face cell index out of range.")
        if self.boundary_areas.shape != (nb,):
            raise ValidationError(f"'boundary_areas' must have shape ({nb},)")
        for name in ("boundary_normals", "boundary_centroids"):
            if getattr(self, name).shape != (nb, 3):
                raise ValidationError(f"'{name}' must have shape ({nb}, 3)")
        if np.any(self.boundary_areas <= 0.0):
            raise ValidationError("Boundary face areas must be positive.")

    @property
    def number_of_cells(self) -> int:
        return int(self.cell_volumes.shape[0])

    @property
    def number_of_faces(self) -> int:
        return int(self.neighbors.shape[0])

    @property
    def number_of_boundary_faces(self) -> int:
        return int(self.boundary_cells.shape[0])

    @property
    def cell_depths(self) -> FloatArray:
        """Depth of each cell centroid (m)."""
        return self.cell_centroids[:, 2]

    @property
    def cell_dimensions(self) -> FloatArray:
        """
        Approximate (dx, dy, dz) extent of each cell, shape (nc, 3).

        General meshes carry no logical axes, so cells are treated as cubes of
        equal volume. Structured meshes override this with exact sizes.
        """
        side = np.cbrt(self.cell_volumes)
        return np.repeat(side[:, None], 3, axis=1)

    def cell_neighbors(self, cell: int) -> IntArray:
        """Return the cells sharing an interior face with `cell`."""
        left = self.neighbors[:, 0]
        right = self.neighbors[:, 1]
        return np.concatenate([right[left == cell], left[right == cell]])

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(cells={self.number_of_cells}, "
            f"faces={self.number_of_faces}, dimensions={self.dimensions})"
        )
