import enum
import typing

import attrs
import numpy as np
from scipy.sparse import csr_array, csr_matrix
from scipy.sparse.linalg import LinearOperator
from typing_extensions import TypeAlias

from poreflow.errors import ValidationError


__all__ = [
    "Phase",
    "Orientation",
    "CellIndex",
    "CartesianIndex",
    "FloatOrArray",
    "StateValues",
    "ModelStateValues",
    "Preconditioner",
    "PreconditionerFactory",
    "IterativeSolver",
    "IterativeSolverFunc",
    "Solver",
    "Range",
]

T = typing.TypeVar("T")

CellIndex: TypeAlias = int
"""Linear (0-based) cell index."""
CartesianIndex: TypeAlias = typing.Tuple[int, ...]
"""Logical (0-based) Cartesian cell index, e.g. (i, j, k)."""

FloatOrArray = typing.Union[float, np.typing.NDArray[np.floating]]
FloatArray: TypeAlias = np.typing.NDArray[np.floating]
IntArray: TypeAlias = np.typing.NDArray[np.integer]

StateValues: TypeAlias = typing.Dict[str, np.typing.NDArray]
"""Mapping from variable name to per-entity array of values."""
ModelStateValues: TypeAlias = typing.Dict[str, StateValues]
"""Mapping from sub-model name to its `StateValues`."""


class Phase(str, enum.Enum):
    """Fluid phases."""

    AQUEOUS = "aqueous"
    LIQUID = "liquid"
    VAPOR = "vapor"


class Orientation(enum.Enum):
    """Directional orientation of a well or face."""

    X = "x"
    Y = "y"
    Z = "z"


PreconditionerStr = typing.Literal[
    "cpr", "ilu", "amg", "diagonal", "block_jacobi", "polynomial"
]
PreconditionerFactory = typing.Callable[
    [typing.Union[csr_array, csr_matrix]], LinearOperator
]
Preconditioner = typing.Union[
    LinearOperator, PreconditionerStr, PreconditionerFactory, str
]

IterativeSolverStr = typing.Literal[
    "gmres", "lgmres", "bicgstab", "tfqmr", "cgs", "direct", "auto"
]


class IterativeSolverFunc(typing.Protocol):
    """
    Protocol for a (SciPy compatible) linear solver function.
    """

    def __call__(
        self,
        A: typing.Any,
        b: typing.Any,
        x0: typing.Optional[typing.Any],
        *,
        rtol: float,
        atol: float,
        maxiter: typing.Optional[int],
        M: typing.Optional[typing.Any],
        callback: typing.Optional[typing.Callable[[np.typing.NDArray], None]],
    ) -> typing.Tuple[np.typing.NDArray, int]: ...


IterativeSolver = typing.Union[IterativeSolverFunc, IterativeSolverStr, str]
Solver = IterativeSolver
SolverFunc = IterativeSolverFunc


@attrs.frozen(slots=True)
class Range:
    """
    Class representing minimum and maximum values.
    """

    min: float = attrs.field(converter=float)
    """Minimum value."""
    max: float = attrs.field(converter=float)
    """Maximum value."""

    def __attrs_post_init__(self) -> None:
        if self.min > self.max:
            raise ValidationError("Minimum value cannot be greater than maximum value.")

    def clip(self, value: FloatOrArray) -> FloatOrArray:
        """Clip `value` into the range."""
        return np.clip(value, self.min, self.max)

    def __contains__(self, value: float) -> bool:
        return self.min <= value <= self.max
