import numpy as np
import pytest

from poreflow._precision import with_precision
from poreflow.errors import ValidationError
from poreflow.mesh.base import Mesh
from poreflow.mesh.cartesian import CartesianMesh


def test_cartesian_2d_counts():
    mesh = CartesianMesh((3, 2), extent=(3.0, 2.0))
    assert mesh.number_of_cells == 6
    # 2 x-faces per row, 3 y-faces
    assert mesh.number_of_faces == 2 * 2 + 3
    assert mesh.number_of_boundary_faces == 2 * 2 + 2 * 3
    np.testing.assert_allclose(mesh.cell_volumes, 1.0)
    np.testing.assert_allclose(mesh.cell_depths, 0.0)


def test_cartesian_linear_ordering():
    mesh = CartesianMesh((10, 10, 3), extent=(1000.0, 1000.0, 30.0))
    assert mesh.cell_index(2, 3, 1) == 132
    assert mesh.cell_ijk(132) == (2, 3, 1)
    assert mesh.cell_index(0, 0, 0) == 0
    np.testing.assert_allclose(mesh.cell_centroids[132], [250.0, 350.0, 15.0])


def test_cartesian_depths_increase_downward():
    mesh = CartesianMesh((1, 1, 4), extent=(1.0, 1.0, 40.0))
    np.testing.assert_allclose(mesh.cell_depths, [5.0, 15.0, 25.0, 35.0])
    np.testing.assert_array_equal(mesh.neighbors, [[0, 1], [1, 2], [2, 3]])


def test_cartesian_variable_spacing():
    mesh = CartesianMesh((3,), extent=([1.0, 2.0, 3.0],))
    np.testing.assert_allclose(mesh.cell_volumes, [1.0, 2.0, 3.0])
    np.testing.assert_allclose(mesh.cell_centroids[:, 0], [0.5, 2.0, 4.5])
    np.testing.assert_allclose(mesh.face_centroids[:, 0], [1.0, 3.0])


def test_cartesian_face_geometry():
    mesh = CartesianMesh((2, 2, 2), extent=(2.0, 4.0, 6.0))
    assert mesh.number_of_faces == 12
    assert mesh.number_of_boundary_faces == 24
    x_faces = np.abs(mesh.face_normals[:, 0]) == 1.0
    np.testing.assert_allclose(mesh.face_areas[x_faces], 2.0 * 3.0)
    np.testing.assert_allclose(np.linalg.norm(mesh.boundary_normals, axis=1), 1.0)


def test_cartesian_invalid_input():
    with pytest.raises(ValidationError):
        CartesianMesh((0, 2))
    with pytest.raises(ValidationError):
        CartesianMesh((2, 2), extent=(1.0,))
    mesh = CartesianMesh((2, 2))
    with pytest.raises(ValidationError):
        mesh.cell_index(2, 0)
    with pytest.raises(ValidationError):
        mesh.cell_ijk(4)


def test_general_mesh_validation():
    mesh = Mesh(
        cell_volumes=[1.0, 1.0],
        cell_centroids=[[0.5, 0.5, 0.5], [1.5, 0.5, 0.5]],
        neighbors=[[0, 1]],
        face_areas=[1.0],
        face_normals=[[1.0, 0.0, 0.0]],
        face_centroids=[[1.0, 0.5, 0.5]],
    )
    assert mesh.number_of_cells == 2
    np.testing.assert_array_equal(mesh.cell_neighbors(0), [1])
    with pytest.raises(ValidationError):
        Mesh(
            cell_volumes=[1.0, 1.0],
            cell_centroids=[[0.5, 0.5, 0.5], [1.5, 0.5, 0.5]],
            neighbors=[[0, 2]],
            face_areas=[1.0],
            face_normals=[[1.0, 0.0, 0.0]],
            face_centroids=[[1.0, 0.5, 0.5]],
        )
    with pytest.raises(ValidationError):
        Mesh(
            cell_volumes=[1.0, -1.0],
            cell_centroids=[[0.5, 0.5, 0.5], [1.5, 0.5, 0.5]],
            neighbors=[[0, 1]],
            face_areas=[1.0],
            face_normals=[[1.0, 0.0, 0.0]],
            face_centroids=[[1.0, 0.5, 0.5]],
        )


def test_mesh_precision_context():
    with with_precision(np.float32):
        mesh = CartesianMesh((2, 2, 1), extent=(2.0, 2.0, 1.0))
    assert mesh.cell_volumes.dtype == np.float32
    assert mesh.face_areas.dtype == np.float32
    assert CartesianMesh((2, 2, 1)).cell_volumes.dtype == np.float64
    with pytest.raises(TypeError):
        with with_precision(np.int32):
            pass
