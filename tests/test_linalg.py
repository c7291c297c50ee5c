import numpy as np
import pytest
from scipy.linalg import block_diag
from scipy.sparse import csr_matrix, diags, eye, kron

from poreflow.errors import SolverError, ValidationError
from poreflow.linalg import (
    CachedPreconditionerFactory,
    build_block_jacobi_preconditioner,
    build_cpr_preconditioner,
    get_preconditioner_factory,
    list_preconditioner_factories,
    list_solver_funcs,
    solve_linear_system,
    solver_func,
)


def _block_system(n_entities=20):
    laplacian = diags(
        [-np.ones(n_entities - 1), 2.5 * np.ones(n_entities), -np.ones(n_entities - 1)],
        [-1, 0, 1],
    )
    coupling = np.array([[1.0, 0.2], [0.1, 1.0]])
    A = (kron(laplacian, coupling) + 0.5 * eye(2 * n_entities)).tocsr()
    rng = np.random.default_rng(42)
    b = rng.standard_normal(2 * n_entities)
    return A, b


def test_direct_solve():
    A, b = _block_system()
    x, report = solve_linear_system(A, b, solver="direct")
    np.testing.assert_allclose(x, np.linalg.solve(A.toarray(), b), rtol=1e-10)
    assert report["solver"] == "direct"


def test_auto_uses_direct_below_threshold():
    A, b = _block_system()
    x, report = solve_linear_system(A, b)
    assert report["solver"] == "direct"
    np.testing.assert_allclose(A @ x, b, atol=1e-10)


@pytest.mark.parametrize(
    "preconditioner", ["ilu", "cpr", "diagonal", "block_jacobi", "polynomial", None]
)
def test_iterative_solvers(preconditioner):
    A, b = _block_system()
    pressure_indices = np.arange(0, A.shape[0], 2)
    x, report = solve_linear_system(
        A,
        b,
        solver=["bicgstab", "lgmres"],
        preconditioner=preconditioner,
        rtol=1e-10,
        atol=1e-14,
        pressure_indices=pressure_indices,
        block_sizes=np.full(pressure_indices.size, 2),
    )
    assert report["solver"] in ("bicgstab", "lgmres")
    np.testing.assert_allclose(A @ x, b, atol=1e-7)


def test_cpr_preconditioner_approximates_inverse():
    A, b = _block_system()
    M = build_cpr_preconditioner(A, pressure_indices=np.arange(0, A.shape[0], 2), block_sizes=np.full(20, 2))
    y = M.matvec(b)
    assert np.linalg.norm(A @ y - b) < np.linalg.norm(b)


def test_unknown_solver_and_preconditioner():
    A, b = _block_system()
    with pytest.raises(ValidationError):
        solve_linear_system(A, b, solver="magic")
    with pytest.raises(ValidationError):
        solve_linear_system(A, b, solver="bicgstab", preconditioner="magic")
    with pytest.raises(ValidationError):
        get_preconditioner_factory("magic")


def test_failed_iterative_solve_raises():
    A, b = _block_system()
    with pytest.raises(SolverError):
        solve_linear_system(
            A, b, solver="bicgstab", preconditioner=None, max_iterations=1, rtol=1e-14, atol=0.0
        )
    x, report = solve_linear_system(
        A,
        b,
        solver="bicgstab",
        preconditioner=None,
        max_iterations=1,
        rtol=1e-14,
        atol=0.0,
        fallback_to_direct=True,
    )
    assert report["solver"] == "direct"
    np.testing.assert_allclose(A @ x, b, atol=1e-10)


def test_registries():
    assert {"cpr", "amg", "ilu"} <= set(list_preconditioner_factories())
    assert {"lgmres", "direct", "auto"} <= set(list_solver_funcs())


def test_cached_preconditioner_reuses_operator():
    A, b = _block_system()
    cached = CachedPreconditionerFactory("ilu", name="test_cached_ilu", update_frequency=5)
    first = cached(A)
    second = cached(A)
    assert first is second
    cached.reset()
    assert cached(A) is not first


def test_block_jacobi_inverts_diagonal_blocks():
    blocks = np.array([[[2.0, 1.0], [1.0, 3.0]], [[4.0, 0.0], [0.0, 0.0]]])
    A = csr_matrix(block_diag(*blocks))
    M = build_block_jacobi_preconditioner(A, block_size=2)
    x = np.array([1.0, 2.0, 8.0, 5.0])
    expected = np.concatenate([np.linalg.solve(blocks[0], x[:2]), [2.0, 5.0]])
    np.testing.assert_allclose(M.matvec(x), expected)


def test_register_custom_solver():
    def reversed_direct(A, b, x0=None, **kwargs):
        return np.linalg.solve(A.toarray(), b), 0

    solver_func(reversed_direct, name="test_dense_solver")
    A, b = _block_system()
    x, report = solve_linear_system(A, b, solver="test_dense_solver", preconditioner=None)
    assert report["solver"] == "test_dense_solver"
    np.testing.assert_allclose(A @ x, b, atol=1e-10)
    with pytest.raises(ValidationError):
        solver_func(reversed_direct, name="test_dense_solver")
    with pytest.raises(ValidationError):
        solver_func(reversed_direct, name="auto")
