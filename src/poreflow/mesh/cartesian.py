import logging
import typing

import attrs
import numpy as np

from poreflow._precision import get_dtype
from poreflow.errors import ValidationError
from poreflow.mesh.base import Mesh
from poreflow.types import CartesianIndex, CellIndex, FloatArray

logger = logging.getLogger(__name__)

__all__ = ["CartesianMesh"]


def _axis_spacing(count: int, extent: typing.Any, axis: int) -> FloatArray:
    """
    Build the cell sizes along one axis.

    :param count: Number of cells along the axis.
    :param extent: Total length of the axis, or one size per cell.
    :param axis: Axis index, used in error messages.
    :return: Array of `count` cell sizes.
    """
    dtype = get_dtype()
    if extent is None:
        return np.ones(count, dtype=dtype)
    spacing = np.asarray(extent, dtype=dtype)
    if spacing.ndim == 0:
        spacing = np.full(count, float(spacing) / count, dtype=dtype)
    if spacing.shape != (count,):
        raise ValidationError(
            f"Spacing along axis {axis} must be a total length or have {count} entries, "
            f"got shape {spacing.shape}"
        )
    if np.any(spacing <= 0.0):
        raise ValidationError(f"Cell sizes along axis {axis} must be positive.")
    return spacing


@attrs.frozen(eq=False, init=False, repr=False)
class CartesianMesh(Mesh):
    """
    Logically Cartesian 1D, 2D or 3D mesh.

    Cells are numbered with the first logical index varying fastest, so
    that cell (i, j, k) has linear index `i + nx * j + nx * ny * k`. Axes not
    present in a 1D or 2D mesh have unit thickness, and such meshes lie at
    zero depth.

    Example:
    ```python
    mesh = CartesianMesh((10, 10, 3), extent=(1000.0, 1000.0, 30.0))
    mesh.cell_index(2, 3, 1)  # 132
    ```
    """

    shape: typing.Tuple[int, ...] = attrs.field(kw_only=True)
    """Logical number of cells along each axis."""
    spacing: typing.Tuple[FloatArray, FloatArray, FloatArray] = attrs.field(
        kw_only=True
    )
    """Cell sizes along x, y and z."""
    origin: typing.Tuple[float, float, float] = attrs.field(kw_only=True)
    """Coordinates of the corner of the first cell."""

    def __init__(
        self,
        dims: typing.Union[int, typing.Sequence[int]],
        extent: typing.Optional[typing.Sequence[typing.Any]] = None,
        origin: typing.Optional[typing.Sequence[float]] = None,
    ) -> None:
        """
        :param dims: Number of cells along each axis, e.g. `(nx,)`, `(nx, ny)` or `(nx, ny, nz)`.
        :param extent: Total physical size per axis, or one array of cell sizes per axis.
            Defaults to unit-sized cells.
        :param origin: Coordinates of the corner of the first cell. Defaults to zero.
        """
        shape = (int(dims),) if np.isscalar(dims) else tuple(int(n) for n in dims)  # type: ignore[arg-type]
        if not 1 <= len(shape) <= 3:
            raise ValidationError(f"Cartesian mesh must be 1D, 2D or 3D, got {shape}")
        if any(n < 1 for n in shape):
            raise ValidationError(f"Cell counts must be positive, got {shape}")
        dimensions = len(shape)

        if extent is None:
            extent = (None,) * dimensions
        elif np.isscalar(extent):
            extent = (extent,)
        if len(extent) != dimensions:
            raise ValidationError(
                f"Extent must have one entry per axis ({dimensions}), got {len(extent)}"
            )
        origin_ = np.zeros(3, dtype=get_dtype())
        if origin is not None:
            if len(origin) != dimensions:
                raise ValidationError(
                    f"Origin must have one entry per axis ({dimensions}), got {len(origin)}"
                )
            origin_[:dimensions] = origin

        shape3 = shape + (1,) * (3 - dimensions)
        spacing = [
            _axis_spacing(shape3[axis], extent[axis] if axis < dimensions else None, axis)
            for axis in range(3)
        ]

        centers = [
            origin_[axis] + np.cumsum(spacing[axis]) - spacing[axis] / 2
            for axis in range(3)
        ]
        if dimensions < 3:
            # Lower dimensional meshes are horizontal.
            centers[2] = np.zeros(1, dtype=get_dtype())
        grid_centers = np.meshgrid(*centers, indexing="ij")
        grid_sizes = np.meshgrid(*spacing, indexing="ij")
        cell_centroids = np.column_stack([g.ravel(order="F") for g in grid_centers])
        sizes = np.column_stack([g.ravel(order="F") for g in grid_sizes])
        cell_volumes = sizes.prod(axis=1)

        index = np.arange(int(np.prod(shape3))).reshape(shape3, order="F")
        neighbors = []
        face_areas = []
        face_normals = []
        face_centroids = []
        boundary_cells = []
        boundary_areas = []
        boundary_normals = []
        boundary_centroids = []
        for axis in range(dimensions):
            unit = np.zeros(3)
            unit[axis] = 1.0
            lower = [slice(None)] * 3
            upper = [slice(None)] * 3
            lower[axis] = slice(None, -1)
            upper[axis] = slice(1, None)
            left = index[tuple(lower)].ravel(order="F")
            right = index[tuple(upper)].ravel(order="F")
            area = cell_volumes / sizes[:, axis]
            if left.size:
                centroid = cell_centroids[left].copy()
                centroid[:, axis] += sizes[left, axis] / 2
                neighbors.append(np.column_stack([left, right]))
                face_areas.append(area[left])
                face_normals.append(np.repeat(unit[None, :], left.size, axis=0))
                face_centroids.append(centroid)

            for side, sign in ((0, -1.0), (-1, 1.0)):
                selector = [slice(None)] * 3
                selector[axis] = side
                cells = index[tuple(selector)].ravel(order="F")
                centroid = cell_centroids[cells].copy()
                centroid[:, axis] += sign * sizes[cells, axis] / 2
                boundary_cells.append(cells)
                boundary_areas.append(area[cells])
                boundary_normals.append(np.repeat(sign * unit[None, :], cells.size, axis=0))
                boundary_centroids.append(centroid)

        def _stack(parts, width=None):
            if parts:
                return np.concatenate(parts)
            return np.zeros((0,) if width is None else (0, width))

        self.__attrs_init__(
            cell_volumes=cell_volumes,
            cell_centroids=cell_centroids,
            neighbors=_stack(neighbors, 2).astype(np.int64),
            face_areas=_stack(face_areas),
            face_normals=_stack(face_normals, 3),
            face_centroids=_stack(face_centroids, 3),
            boundary_cells=_stack(boundary_cells).astype(np.int64),
            boundary_areas=_stack(boundary_areas),
            boundary_normals=_stack(boundary_normals, 3),
            boundary_centroids=_stack(boundary_centroids, 3),
            dimensions=dimensions,
            shape=shape,
            spacing=tuple(spacing),
            origin=tuple(float(v) for v in origin_),
        )
        logger.debug(
            f"Built Cartesian mesh {shape} with {self.number_of_cells} cells and "
            f"{self.number_of_faces} interior faces"
        )

    @property
    def shape3(self) -> typing.Tuple[int, int, int]:
        """Logical shape padded to three axes."""
        return self.shape + (1,) * (3 - len(self.shape))  # type: ignore[return-value]

    @property
    def cell_dimensions(self) -> FloatArray:
        """Exact (dx, dy, dz) of each cell, shape (nc, 3)."""
        grids = np.meshgrid(*self.spacing, indexing="ij")
        return np.column_stack([g.ravel(order="F") for g in grids])

    def cell_index(self, i: int, j: int = 0, k: int = 0) -> CellIndex:
        """
        Convert a logical (i, j, k) index to a linear cell index.

        :raises ValidationError: If the logical index is outside the mesh.
        """
        nx, ny, nz = self.shape3
        if not (0 <= i < nx and 0 <= j < ny and 0 <= k < nz):
            raise ValidationError(
                f"Logical index ({i}, {j}, {k}) outside mesh of shape {self.shape}"
            )
        return int(i + nx * j + nx * ny * k)

    def cell_ijk(self, index: CellIndex) -> CartesianIndex:
        """Convert a linear cell index to its logical index (one entry per mesh axis)."""
        if not 0 <= index < self.number_of_cells:
            raise ValidationError(
                f"Cell index {index} outside mesh with {self.number_of_cells} cells"
            )
        nx, ny, _ = self.shape3
        i = index % nx
        j = (index // nx) % ny
        k = index // (nx * ny)
        return (int(i), int(j), int(k))[: len(self.shape)]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(shape={self.shape}, cells={self.number_of_cells})"
