import numpy as np
import pytest

from poreflow.constants import c
from poreflow.discretization.domain import discretized_domain, get_1d_reservoir
from poreflow.discretization.tpfa import (
    as_permeability_tensor,
    compute_boundary_trans,
    compute_face_trans,
    upwind,
)
from poreflow.errors import ValidationError
from poreflow.mesh.cartesian import CartesianMesh


def test_uniform_line_transmissibility():
    k = 1e-13
    mesh = CartesianMesh((5,), extent=(10.0,))
    trans = compute_face_trans(mesh, k)
    # Unit cross section, dx = 2
    np.testing.assert_allclose(trans, k / 2.0)
    np.testing.assert_allclose(compute_boundary_trans(mesh, k), 2.0 * k / 2.0)


def test_harmonic_average_between_cells():
    mesh = CartesianMesh((2,), extent=(2.0,))
    trans = compute_face_trans(mesh, [1.0, 3.0])
    half = np.array([2.0, 6.0])
    np.testing.assert_allclose(trans, [1.0 / (1.0 / half[0] + 1.0 / half[1])])


def test_impermeable_cell_blocks_flow():
    mesh = CartesianMesh((3,), extent=(3.0,))
    trans = compute_face_trans(mesh, [1.0, 0.0, 1.0])
    np.testing.assert_allclose(trans, 0.0)


def test_anisotropic_permeability_uses_axis_component():
    mesh = CartesianMesh((2, 2), extent=(2.0, 2.0))
    kx, ky = 2.0, 5.0
    trans = compute_face_trans(mesh, np.array([[kx] * 4, [ky] * 4]))
    x_faces = np.abs(mesh.face_normals[:, 0]) == 1.0
    np.testing.assert_allclose(trans[x_faces], kx)
    np.testing.assert_allclose(trans[~x_faces], ky)


def test_permeability_tensor_shapes():
    tensor = as_permeability_tensor(1.0, 4)
    assert tensor.shape == (4, 3)
    tensor = as_permeability_tensor(np.array([[1.0, 2.0]] * 3), 3)
    np.testing.assert_allclose(tensor[0], [1.0, 2.0, 2.0])
    with pytest.raises(ValidationError):
        as_permeability_tensor(np.ones(5), 4)
    with pytest.raises(ValidationError):
        as_permeability_tensor(-1.0, 4)


def test_upwind_selects_upstream_values():
    dpsi = np.array([1.0, -1.0, 0.0])
    left = np.array([10.0, 20.0, 30.0])
    right = np.array([1.0, 2.0, 3.0])
    np.testing.assert_allclose(upwind(dpsi, left, right), [10.0, 2.0, 30.0])


def test_domain_pore_volume_and_compressibility():
    mesh = CartesianMesh((4,), extent=(4.0,))
    domain = discretized_domain(
        mesh,
        porosity=0.2,
        permeability=1e-13,
        rock_compressibility=1e-9,
        rock_reference_pressure=1e7,
    )
    np.testing.assert_allclose(domain.pore_volumes, 0.2)
    pressure = np.full(4, 2e7)
    np.testing.assert_allclose(domain.pore_volume(pressure), 0.2 * (1.0 + 1e-9 * 1e7))


def test_domain_validation():
    mesh = CartesianMesh((4,))
    with pytest.raises(ValidationError):
        discretized_domain(mesh, porosity=1.5)
    with pytest.raises(ValidationError):
        discretized_domain(mesh, porosity=[0.1, 0.2])


def test_transmissibility_multipliers():
    mesh = CartesianMesh((3,), extent=(3.0,))
    base = discretized_domain(mesh, permeability=1e-13)
    faulted = discretized_domain(mesh, permeability=1e-13, transmissibility_multipliers=[1.0, 0.0])
    np.testing.assert_allclose(faulted.transmissibilities, [base.transmissibilities[0], 0.0])


def test_vertical_reservoir_depth_differences():
    domain = get_1d_reservoir(5, z_max=10.0, permeability=c.DARCY)
    np.testing.assert_allclose(domain.cell_depths, [1.0, 3.0, 5.0, 7.0, 9.0])
    np.testing.assert_allclose(domain.face_depth_differences, 2.0)
    flat = get_1d_reservoir(5, length=10.0, permeability=c.DARCY)
    np.testing.assert_allclose(flat.face_depth_differences, 0.0)
    no_gravity = get_1d_reservoir(5, z_max=10.0, gravity=False)
    np.testing.assert_allclose(no_gravity.face_depth_differences, 0.0)
