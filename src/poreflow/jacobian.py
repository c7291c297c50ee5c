"""Sparse finite-difference Jacobians using distance-2 colouring of the entity graph."""

import logging
import typing

import numba
import numpy as np
from scipy.sparse import coo_matrix, csr_matrix

from poreflow.assembly import Assembler
from poreflow.types import FloatArray, IntArray

logger = logging.getLogger(__name__)

__all__ = ["entity_graph", "color_entities", "JacobianBuilder"]


def entity_graph(number_of_entities: int, first: IntArray, second: IntArray) -> csr_matrix:
    """
    Symmetric entity adjacency including self connections.

    :param number_of_entities: Number of entities.
    :param first: First entity of each connection.
    :param second: Second entity of each connection.
    :return: Boolean adjacency in CSR format.
    """
    diagonal = np.arange(number_of_entities, dtype=np.int64)
    rows = np.concatenate([first, second, diagonal])
    cols = np.concatenate([second, first, diagonal])
    data = np.ones(rows.shape[0], dtype=np.int8)
    graph = coo_matrix((data, (rows, cols)), shape=(number_of_entities, number_of_entities))
    graph = graph.tocsr()
    graph.sum_duplicates()
    graph.data[:] = 1
    graph.sort_indices()
    return graph


@numba.njit(cache=True)
def _greedy_distance2_coloring(indptr: np.ndarray, indices: np.ndarray, n: int) -> np.ndarray:
    colors = np.full(n, -1, dtype=np.int64)
    forbidden = np.full(n + 1, -1, dtype=np.int64)
    for v in range(n):
        for a_pos in range(indptr[v], indptr[v + 1]):
            a = indices[a_pos]
            for b_pos in range(indptr[a], indptr[a + 1]):
                color = colors[indices[b_pos]]
                if color >= 0:
                    forbidden[color] = v
        color = 0
        while forbidden[color] == v:
            color += 1
        colors[v] = color
    return colors


def color_entities(graph: csr_matrix) -> IntArray:
    """
    Greedy distance-2 colouring: no two entities of the same colour share a neighbour.

    Perturbing all entities of one colour together therefore changes every
    residual row through at most one entity.
    """
    n = graph.shape[0]
    return _greedy_distance2_coloring(
        graph.indptr.astype(np.int64), graph.indices.astype(np.int64), n
    )


class JacobianBuilder:
    """
    Builds the Jacobian of an assembler's residual by coloured finite differences.

    The sparsity pattern couples every equation of an entity with every
    unknown of each adjacent entity. One residual evaluation is needed per
    colour and per unknown of an entity.
    """

    def __init__(self, assembler: Assembler) -> None:
        self.assembler = assembler
        first, second = assembler.entity_connections()
        self.graph = entity_graph(assembler.number_of_entities, first, second)
        self.colors = color_entities(self.graph)
        self.number_of_colors = int(self.colors.max()) + 1 if self.colors.size else 0

        coo = self.graph.tocoo()
        row_entities = coo.row.astype(np.int64)
        col_entities = coo.col.astype(np.int64)
        m = assembler.unknowns_per_entity
        offsets = assembler.entity_offsets

        rows = []
        cols = []
        col_entity = []
        col_local = []
        # Expand each entity block into unknown-level entries
        for size_r in np.unique(m[row_entities]):
            for size_c in np.unique(m[col_entities]):
                mask = (m[row_entities] == size_r) & (m[col_entities] == size_c)
                if not np.any(mask):
                    continue
                er = row_entities[mask]
                ec = col_entities[mask]
                for i in range(size_r):
                    for j in range(size_c):
                        rows.append(offsets[er] + i)
                        cols.append(offsets[ec] + j)
                        col_entity.append(ec)
                        col_local.append(np.full(ec.shape[0], j, dtype=np.int64))
        self.rows = np.concatenate(rows)
        self.cols = np.concatenate(cols)
        entry_entity = np.concatenate(col_entity)
        entry_local = np.concatenate(col_local)
        entry_color = self.colors[entry_entity]

        self.max_unknowns = int(m.max()) if m.size else 0
        self._groups: typing.List[typing.Tuple[IntArray, IntArray]] = []
        for color in range(self.number_of_colors):
            entities = np.flatnonzero(self.colors == color)
            for j in range(self.max_unknowns):
                owned = entities[m[entities] > j]
                if owned.size == 0:
                    continue
                columns = offsets[owned] + j
                entries = np.flatnonzero((entry_color == color) & (entry_local == j))
                self._groups.append((columns, entries))
        logger.debug(
            f"Jacobian pattern with {self.rows.shape[0]} entries, {self.number_of_colors} "
            f"colours and {len(self._groups)} residual evaluations"
        )

    @property
    def number_of_evaluations(self) -> int:
        return len(self._groups)

    def __call__(
        self,
        residual: typing.Callable[[FloatArray], FloatArray],
        x: FloatArray,
        r0: FloatArray,
        perturbation: float,
    ) -> csr_matrix:
        """
        Evaluate the Jacobian at `x`.

        :param residual: Residual function of the global unknowns.
        :param x: Unknowns at which to differentiate.
        :param r0: Residual at `x`.
        :param perturbation: Relative perturbation size.
        :return: Jacobian in CSR format.
        """
        assembler = self.assembler
        steps = perturbation * np.maximum(np.abs(x), assembler.perturbation_scales)
        # Step backwards where a forward step leaves the admissible range
        steps = np.where(x + steps > assembler.upper_bounds, -steps, steps)
        data = np.zeros(self.rows.shape[0])
        for columns, entries in self._groups:
            perturbed = x.copy()
            perturbed[columns] += steps[columns]
            difference = residual(perturbed) - r0
            data[entries] = difference[self.rows[entries]] / steps[self.cols[entries]]
        n = assembler.size
        return csr_matrix((data, (self.rows, self.cols)), shape=(n, n))
