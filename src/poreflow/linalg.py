"""Linear solvers and preconditioners for the Newton linear systems."""

import logging
import threading
import typing

import numpy as np
import pyamg  # type: ignore[import-untyped]
from scipy.sparse import csr_matrix, diags, issparse  # type: ignore[import-untyped]
from scipy.sparse.linalg import (  # type: ignore[import-untyped]
    LinearOperator,
    bicgstab,
    cgs,
    gmres,
    lgmres,
    spilu,
    spsolve,
    tfqmr,
)

from poreflow.errors import PreconditionerError, SolverError, ValidationError
from poreflow.types import (
    IntArray,
    Preconditioner,
    PreconditionerFactory,
    Solver,
    SolverFunc,
)

logger = logging.getLogger(__name__)

__all__ = [
    "build_cpr_preconditioner",
    "build_ilu_preconditioner",
    "build_diagonal_preconditioner",
    "build_amg_preconditioner",
    "build_block_jacobi_preconditioner",
    "build_polynomial_preconditioner",
    "CachedPreconditionerFactory",
    "preconditioner_factory",
    "solver_func",
    "list_preconditioner_factories",
    "list_solver_funcs",
    "get_preconditioner_factory",
    "get_solver_func",
    "solve_linear_system",
]

_PIVOT_FLOOR = max(1e-10, 100 * np.finfo(np.float64).eps)


def _as_csr(A: typing.Any) -> csr_matrix:
    return csr_matrix(A.tocsr()) if issparse(A) else csr_matrix(A)


def _operator(A: typing.Any, apply: typing.Callable[[np.ndarray], np.ndarray]) -> LinearOperator:
    return LinearOperator(shape=A.shape, matvec=apply, dtype=np.float64)  # type: ignore[arg-type]


def build_amg_preconditioner(A: typing.Any, cycle: str = "V", **kwargs: typing.Any) -> LinearOperator:
    """
    Smoothed aggregation AMG (pyamg) used as a preconditioner.

    :param A: Coefficient matrix.
    :param cycle: Multigrid cycle ("V", "W" or "F").
    :param kwargs: Options for `pyamg.smoothed_aggregation_solver`.
    """
    hierarchy = pyamg.smoothed_aggregation_solver(_as_csr(A), **kwargs)
    return hierarchy.aspreconditioner(cycle=cycle)


def build_diagonal_preconditioner(A: typing.Any) -> LinearOperator:
    """Jacobi preconditioner. Vanishing diagonal entries are replaced by one."""
    diagonal = _as_csr(A).diagonal()
    inverse = diags(1.0 / np.where(np.abs(diagonal) < _PIVOT_FLOOR, 1.0, diagonal))
    return _operator(A, inverse.dot)


def build_block_jacobi_preconditioner(A: typing.Any, block_size: int = 2) -> LinearOperator:
    """
    Inverts the `block_size` square diagonal blocks of `A`.

    Singular blocks are replaced by their diagonal. A trailing partial block
    is padded with the identity.
    """
    A = _as_csr(A)
    n = A.shape[0]
    count = -(-n // block_size)
    padded = count * block_size
    blocks = np.zeros((count, block_size, block_size))
    offsets = np.arange(block_size)
    for row in range(block_size):
        for column in range(block_size):
            rows = np.arange(count) * block_size + row
            columns = np.arange(count) * block_size + column
            inside = (rows < n) & (columns < n)
            blocks[inside, row, column] = np.asarray(A[rows[inside], columns[inside]]).ravel()
    missing = np.arange(n, padded)
    blocks[missing // block_size, missing % block_size, missing % block_size] = 1.0

    singular = np.flatnonzero(np.abs(np.linalg.det(blocks)) < _PIVOT_FLOOR)
    if singular.size:
        diagonal = blocks[singular][:, offsets, offsets]
        blocks[singular] = 0.0
        blocks[singular[:, None], offsets, offsets] = np.where(
            np.abs(diagonal) < _PIVOT_FLOOR, 1.0, diagonal
        )
    inverses = np.linalg.inv(blocks)

    def apply(x: np.ndarray) -> np.ndarray:
        y = np.zeros(padded)
        y[:n] = np.ravel(x)
        return np.einsum("bij,bj->bi", inverses, y.reshape(count, block_size)).ravel()[:n]

    return _operator(A, apply)


def build_ilu_preconditioner(A: typing.Any, **kwargs: typing.Any) -> LinearOperator:
    """
    Incomplete LU factorization (`scipy.sparse.linalg.spilu`).

    :param kwargs: Options for `spilu`; `drop_tol` defaults to 1e-4 and
        `fill_factor` to 10.
    """
    kwargs.setdefault("drop_tol", 1e-4)
    kwargs.setdefault("fill_factor", 10)
    factor = spilu(_as_csr(A).tocsc(), **kwargs)
    return _operator(A, factor.solve)


def build_polynomial_preconditioner(A: typing.Any, degree: int = 2) -> LinearOperator:
    """Truncated Neumann series `sum_k (I - D⁻¹A)^k D⁻¹` of the Jacobi splitting."""
    A = _as_csr(A)
    diagonal = A.diagonal()
    inverse = 1.0 / np.where(np.abs(diagonal) < _PIVOT_FLOOR, 1.0, diagonal)

    def apply(x: np.ndarray) -> np.ndarray:
        base = inverse * np.ravel(x)
        term = base
        result = base.copy()
        for _ in range(degree):
            term = term - inverse * (A @ term)
            result += term
        return result

    return _operator(A, apply)


_CPR_AMG_OPTIONS = {
    "max_coarse": 500,
    "presmoother": ("gauss_seidel", {"sweep": "symmetric", "iterations": 1}),
    "postsmoother": ("gauss_seidel", {"sweep": "symmetric", "iterations": 1}),
}


def build_cpr_preconditioner(
    A: typing.Any,
    *,
    pressure_indices: typing.Optional[IntArray] = None,
    block_sizes: typing.Optional[IntArray] = None,
    block_size: int = 2,
    amg_options: typing.Optional[typing.Dict[str, typing.Any]] = None,
    ilu_options: typing.Optional[typing.Dict[str, typing.Any]] = None,
) -> LinearOperator:
    """
    Two-stage Constrained Pressure Residual (CPR) preconditioner.

    The pressure system sums the equations of each entity and keeps the
    pressure columns. Its correction `z = P (R A P)⁻¹ R r` is computed with
    AMG, then ILU on the full matrix smooths the remaining residual
    `r - A z`.

    :param A: The Jacobian.
    :param pressure_indices: Index of the pressure unknown of every entity.
        The unknowns and equations of an entity start at its pressure index.
    :param block_sizes: Number of equations of each entity. Defaults to one.
    :param block_size: Uniform block size used when `pressure_indices` is
        not given; pressure is then the first unknown of each block.
    :param amg_options: Options for the pressure stage AMG.
    :param ilu_options: Options for the ILU stage.
    :raises ValidationError: If there are no pressure unknowns.
    :raises PreconditionerError: If either stage cannot be built.
    """
    A = _as_csr(A)
    n = A.shape[0]
    if pressure_indices is None:
        pressure_indices = np.arange(0, n, block_size, dtype=np.int64)
        block_sizes = np.minimum(block_size, n - pressure_indices)
    pressure_indices = np.asarray(pressure_indices, dtype=np.int64)
    if pressure_indices.size == 0:
        raise ValidationError("CPR needs at least one pressure unknown.")
    if block_sizes is None:
        block_sizes = np.ones_like(pressure_indices)
    block_sizes = np.asarray(block_sizes, dtype=np.int64)

    count = pressure_indices.size
    rows = np.repeat(np.arange(count), block_sizes)
    columns = np.repeat(pressure_indices, block_sizes) + (
        np.arange(rows.size) - np.repeat(np.cumsum(block_sizes) - block_sizes, block_sizes)
    )
    restriction = csr_matrix((np.ones(rows.size), (rows, columns)), shape=(count, n))
    prolongation = csr_matrix(
        (np.ones(count), (pressure_indices, np.arange(count))), shape=(n, count)
    )
    pressure_matrix = (restriction @ A @ prolongation).tocsr()

    try:
        pressure_stage = build_amg_preconditioner(
            pressure_matrix, **(amg_options or _CPR_AMG_OPTIONS)
        )
    except Exception as exc:
        raise PreconditionerError(f"CPR pressure stage setup failed: {exc}") from exc
    try:
        smoother = build_ilu_preconditioner(A, **(ilu_options or {}))
    except Exception as exc:
        raise PreconditionerError(f"CPR smoothing stage setup failed: {exc}") from exc

    def apply(r: np.ndarray) -> np.ndarray:
        r = np.ravel(r)
        z = prolongation @ pressure_stage.dot(restriction @ r)
        return z + smoother.dot(r - A @ z)

    return _operator(A, apply)


def _direct(
    A: typing.Any,
    b: typing.Any,
    x0: typing.Optional[typing.Any] = None,
    **kwargs: typing.Any,
) -> typing.Tuple[np.ndarray, int]:
    x = spsolve(_as_csr(A).tocsc(), b)
    return x, 0 if np.all(np.isfinite(x)) else -1


def _lgmres(
    A: typing.Any,
    b: typing.Any,
    x0: typing.Optional[typing.Any] = None,
    *,
    inner_m: int = 50,
    outer_k: int = 5,
    **kwargs: typing.Any,
) -> typing.Tuple[np.ndarray, int]:
    return lgmres(A, b, x0=x0, inner_m=inner_m, outer_k=outer_k, **kwargs)


class _Registry:
    """Thread safe name to callable mapping."""

    def __init__(self, kind: str, entries: typing.Dict[str, typing.Callable[..., typing.Any]]):
        self.kind = kind
        self._entries = dict(entries)
        self._lock = threading.Lock()

    def add(self, name: str, func: typing.Callable[..., typing.Any], override: bool) -> None:
        with self._lock:
            if name in self._entries and not override:
                raise ValidationError(
                    f"A {self.kind} named {name!r} is already registered. Pass `override=True` to replace it."
                )
            self._entries[name] = func

    def get(self, name: str) -> typing.Callable[..., typing.Any]:
        with self._lock:
            try:
                return self._entries[name]
            except KeyError:
                raise ValidationError(
                    f"Unknown {self.kind} {name!r}. Registered: {sorted(self._entries)}"
                ) from None

    def names(self) -> typing.List[str]:
        with self._lock:
            return list(self._entries)

    def register(
        self,
        func: typing.Optional[typing.Callable[..., typing.Any]],
        name: typing.Optional[str],
        override: bool,
    ) -> typing.Any:
        def decorator(func: typing.Callable[..., typing.Any]) -> typing.Callable[..., typing.Any]:
            key = name or getattr(func, "__name__", None)
            if not key:
                raise ValidationError(f"Give a name to register this {self.kind} under.")
            self.add(key, func, override)
            return func

        return decorator if func is None else decorator(func)


_preconditioners = _Registry(
    "preconditioner factory",
    {
        "cpr": build_cpr_preconditioner,
        "amg": build_amg_preconditioner,
        "ilu": build_ilu_preconditioner,
        "diagonal": build_diagonal_preconditioner,
        "block_jacobi": build_block_jacobi_preconditioner,
        "polynomial": build_polynomial_preconditioner,
    },
)
_solvers = _Registry(
    "solver",
    {
        "direct": _direct,
        "bicgstab": bicgstab,
        "lgmres": _lgmres,
        "gmres": gmres,
        "tfqmr": tfqmr,
        "cgs": cgs,
    },
)

_AUTO_KRYLOV = ("bicgstab", "lgmres")


def preconditioner_factory(
    func: typing.Optional[PreconditionerFactory] = None,
    name: typing.Optional[str] = None,
    override: bool = False,
) -> typing.Any:
    """
    Register a preconditioner factory, as a decorator or a plain call.

    A factory takes the (row scaled) Jacobian and returns a `LinearOperator`
    approximating its inverse.

    :param func: Factory to register.
    :param name: Registry name. Defaults to `func.__name__`.
    :param override: Whether to replace a factory of the same name.
    """
    return _preconditioners.register(func, name, override)


def solver_func(
    func: typing.Optional[SolverFunc] = None,
    name: typing.Optional[str] = None,
    override: bool = False,
) -> typing.Any:
    """
    Register a linear solver following the SciPy Krylov interface
    `func(A, b, x0, *, rtol, atol, maxiter, M, callback) -> (x, info)`.

    :param func: Solver to register.
    :param name: Registry name. Defaults to `func.__name__`. "auto" is reserved.
    :param override: Whether to replace a solver of the same name.
    """
    if name == "auto" or getattr(func, "__name__", None) == "auto":
        raise ValidationError("The solver name 'auto' is reserved.")
    return _solvers.register(func, name, override)


def list_preconditioner_factories() -> typing.List[str]:
    return _preconditioners.names()


def list_solver_funcs() -> typing.List[str]:
    return _solvers.names() + ["auto"]


def get_preconditioner_factory(name: str) -> PreconditionerFactory:
    return _preconditioners.get(name)


def get_solver_func(name: str) -> SolverFunc:
    return _solvers.get(name)


class CachedPreconditionerFactory:
    """
    Reuses a preconditioner over successive Newton iterations.

    The preconditioner is rebuilt after `update_frequency` uses (never when
    zero) or when the matrix entries moved by more than `recompute_threshold`
    in relative norm. Register the instance to select it by name in `Config`::

        CachedPreconditionerFactory("cpr", name="cached_cpr").register()
        config = Config(preconditioner="cached_cpr")
    """

    def __init__(
        self,
        factory: typing.Union[str, PreconditionerFactory],
        name: typing.Optional[str] = None,
        update_frequency: int = 10,
        recompute_threshold: float = 0.5,
    ) -> None:
        if isinstance(factory, str):
            self.factory = get_preconditioner_factory(factory)
            self.name = name or factory
        else:
            self.factory = factory
            self.name = name or getattr(factory, "__name__", "cached")
        self.update_frequency = update_frequency
        self.recompute_threshold = recompute_threshold
        self.reset()

    def reset(self) -> None:
        self._operator: typing.Optional[LinearOperator] = None
        self._entries: typing.Optional[np.ndarray] = None
        self._uses = 0

    def _stale(self, A: csr_matrix) -> bool:
        if self._operator is None or self._entries is None:
            return True
        if self.update_frequency and self._uses >= self.update_frequency:
            return True
        if A.data.shape != self._entries.shape:
            return True
        reference = np.linalg.norm(self._entries)
        if self.recompute_threshold <= 0.0 or reference == 0.0:
            return False
        return np.linalg.norm(A.data - self._entries) > self.recompute_threshold * reference

    def __call__(self, A: typing.Any, **kwargs: typing.Any) -> typing.Optional[LinearOperator]:
        A = _as_csr(A)
        if self._stale(A):
            logger.debug(f"Building {self.name!r} preconditioner after {self._uses} reuse(s)")
            self._operator = self.factory(A, **kwargs)  # type: ignore[call-arg]
            self._entries = A.data.copy()
            self._uses = 0
        self._uses += 1
        return self._operator

    def register(self, override: bool = False) -> None:
        preconditioner_factory(self, name=self.name, override=override)  # type: ignore[arg-type]


def _resolve_solvers(
    solver: typing.Union[Solver, typing.Iterable[Solver]],
    size: int,
    direct_solver_threshold: int,
) -> typing.List[typing.Tuple[str, SolverFunc]]:
    if isinstance(solver, str):
        if solver == "auto":
            names = ("direct",) if size <= direct_solver_threshold else _AUTO_KRYLOV
            return [(name, get_solver_func(name)) for name in names]
        return [(solver, get_solver_func(solver))]
    if callable(solver):
        return [(getattr(solver, "__name__", "custom"), typing.cast(SolverFunc, solver))]
    if isinstance(solver, (list, tuple)):
        resolved = []
        for item in solver:
            resolved.extend(_resolve_solvers(item, size, direct_solver_threshold))
        return resolved
    raise ValidationError(f"Invalid solver {solver!r}")


def _build_preconditioner(
    A: csr_matrix,
    preconditioner: typing.Optional[Preconditioner],
    pressure_indices: typing.Optional[IntArray],
    block_sizes: typing.Optional[IntArray],
) -> typing.Optional[LinearOperator]:
    if preconditioner is None or isinstance(preconditioner, LinearOperator):
        return preconditioner
    if isinstance(preconditioner, str):
        factory = get_preconditioner_factory(preconditioner)
    elif callable(preconditioner):
        factory = preconditioner
    else:
        raise ValidationError(f"Invalid preconditioner {preconditioner!r}")
    if factory is not build_cpr_preconditioner:
        return factory(A)
    if pressure_indices is None or len(pressure_indices) == 0:
        logger.debug("No pressure unknowns, using ILU instead of CPR")
        return build_ilu_preconditioner(A)
    return build_cpr_preconditioner(A, pressure_indices=pressure_indices, block_sizes=block_sizes)


def solve_linear_system(
    A: typing.Any,
    b: np.ndarray,
    max_iterations: int = 200,
    rtol: typing.Optional[float] = None,
    atol: typing.Optional[float] = None,
    solver: typing.Union[Solver, typing.Iterable[Solver]] = "auto",
    preconditioner: typing.Optional[Preconditioner] = "cpr",
    fallback_to_direct: bool = False,
    direct_solver_threshold: int = 20000,
    pressure_indices: typing.Optional[IntArray] = None,
    block_sizes: typing.Optional[IntArray] = None,
) -> typing.Tuple[np.ndarray, typing.Dict[str, typing.Any]]:
    """
    Solve `A x = b`, trying the given solvers in order.

    :param A: Coefficient matrix.
    :param b: Right-hand side.
    :param max_iterations: Iteration limit of each Krylov solver.
    :param rtol: Relative tolerance. Defaults to 1e-6.
    :param atol: Absolute tolerance. Defaults to `max(1e-12, 1e-10 ||b||)`.
    :param solver: Registered name, callable or list of these. "auto" solves
        directly up to `direct_solver_threshold` unknowns and with
        preconditioned BiCGSTAB, then LGMRES, above.
    :param preconditioner: Registered name, factory, `LinearOperator` or None.
    :param fallback_to_direct: Whether to solve directly after every other solver failed.
    :param direct_solver_threshold: Largest system "auto" solves directly.
    :param pressure_indices: Pressure unknowns, for CPR.
    :param block_sizes: Equations per entity, for CPR.
    :return: The solution and a report with the name of the solver used.
    :raises ValidationError: For unknown solvers or preconditioners.
    :raises PreconditionerError: If the preconditioner cannot be built.
    :raises SolverError: If no solver produced a solution.
    """
    A = _as_csr(A)
    size = A.shape[0]
    candidates = _resolve_solvers(solver, size, direct_solver_threshold)
    only_direct = all(func is _direct for _, func in candidates)
    M = None
    if not only_direct:
        try:
            M = _build_preconditioner(A, preconditioner, pressure_indices, block_sizes)
        except (ValidationError, PreconditionerError):
            raise
        except Exception as exc:
            raise PreconditionerError(f"Preconditioner setup failed: {exc}") from exc

    rtol = 1e-6 if rtol is None else rtol
    atol = max(1e-12, 1e-10 * float(np.linalg.norm(b))) if atol is None else atol
    for name, func in candidates:
        try:
            x, info = func(
                A,
                b,
                None,
                rtol=rtol,
                atol=atol,
                maxiter=max_iterations,
                M=None if func is _direct else M,
                callback=None,
            )
        except (ArithmeticError, ValueError, RuntimeError) as exc:
            logger.warning(f"Linear solver {name!r} raised {exc!r}")
            continue
        if info == 0 and np.all(np.isfinite(x)):
            return np.ascontiguousarray(x), {"solver": name}
        logger.warning(f"Linear solver {name!r} did not converge (info={info})")

    if only_direct or not fallback_to_direct:
        raise SolverError(f"No linear solver could solve the system of {size} unknowns.")
    logger.warning(f"Falling back to a direct solve of {size} unknowns")
    try:
        x = spsolve(A.tocsc(), b)
    except Exception as exc:
        raise SolverError(f"Direct solve of {size} unknowns failed: {exc}") from exc
    if not np.all(np.isfinite(x)):
        raise SolverError("Direct solve produced non-finite values; the matrix may be singular.")
    return np.ascontiguousarray(x), {"solver": "direct"}
