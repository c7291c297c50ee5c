import numpy as np
import pytest

from poreflow.constants import c
from poreflow.errors import ValidationError
from poreflow.mesh.cartesian import CartesianMesh
from poreflow.wells.base import setup_vertical_well, setup_well
from poreflow.wells.controls import (
    BottomHolePressureTarget,
    DisabledControl,
    InjectorControl,
    ProducerControl,
    SurfaceLiquidRateTarget,
    TotalRateTarget,
    check_limits,
)
from poreflow.wells.core import (
    compute_3D_effective_drainage_radius,
    compute_segment_conductance,
    compute_well_index,
    orientation_axis,
)


def test_well_index():
    WI = compute_well_index(1e-13, 10.0, 0.1, 20.0, 0.0)
    assert WI == pytest.approx(2.0 * np.pi * 1e-13 * 10.0 / np.log(200.0))
    with_skin = compute_well_index(1e-13, 10.0, 0.1, 20.0, 2.0)
    assert with_skin < WI


def test_peaceman_radius_isotropic():
    re = compute_3D_effective_drainage_radius(
        np.array([100.0, 100.0, 10.0]), np.full(3, 1e-13), 2
    )
    assert re == pytest.approx(0.28 * np.sqrt(2.0) * 100.0 / 2.0)
    assert re == pytest.approx(19.8, rel=1e-2)


def test_segment_conductance():
    assert compute_segment_conductance(0.1, 10.0) == pytest.approx(np.pi * 1e-4 / 80.0)
    with pytest.raises(ValidationError):
        compute_segment_conductance(0.1, 0.0)


def test_orientation_axis():
    assert orientation_axis("x") == 0
    assert orientation_axis("z") == 2
    with pytest.raises(ValidationError):
        orientation_axis("w")


def test_vertical_multisegment_well():
    mesh = CartesianMesh((3, 3, 4), extent=(300.0, 300.0, 40.0))
    well = setup_vertical_well(mesh, 1e-13, 1, 1, "P1")
    assert well.number_of_perforations == 4
    assert well.number_of_nodes == 5
    assert well.number_of_segments == 4
    np.testing.assert_array_equal(well.cells, [mesh.cell_index(1, 1, k) for k in range(4)])
    np.testing.assert_array_equal(well.perforation_nodes, [1, 2, 3, 4])
    np.testing.assert_allclose(well.node_depths, [0.0, 5.0, 15.0, 25.0, 35.0])
    np.testing.assert_allclose(well.perforation_depth_differences, 0.0)
    np.testing.assert_allclose(well.segment_depth_differences, [5.0, 10.0, 10.0, 10.0])
    dx = 100.0
    expected = compute_well_index(1e-13, 10.0, c.DEFAULT_WELLBORE_RADIUS, 0.198 * dx, 0.0)
    np.testing.assert_allclose(well.well_indices, expected, rtol=1e-2)


def test_partial_perforation_interval():
    mesh = CartesianMesh((2, 2, 5), extent=(20.0, 20.0, 50.0))
    well = setup_vertical_well(mesh, 1e-13, 0, 1, "I1", heel=1, toe=2)
    assert well.number_of_perforations == 2
    assert well.node_depths[0] == pytest.approx(10.0)
    with pytest.raises(ValidationError):
        setup_vertical_well(mesh, 1e-13, 0, 0, "bad", heel=3, toe=1)


def test_simple_well():
    mesh = CartesianMesh((3, 3, 2), extent=(300.0, 300.0, 20.0))
    well = setup_well(mesh, 1e-13, [(0, 0, 0), (0, 0, 1)], "S", simple_well=True, reference_depth=5.0)
    assert well.simple
    assert well.number_of_nodes == 1
    assert well.number_of_segments == 0
    np.testing.assert_array_equal(well.perforation_nodes, [0, 0])
    np.testing.assert_allclose(well.perforation_depth_differences, [0.0, 10.0])


def test_explicit_well_index():
    mesh = CartesianMesh((4, 1, 1), extent=(40.0, 1.0, 1.0))
    well = setup_well(mesh, 1e-13, [0, 1, 2], "H", direction="x", WI=1e-12)
    np.testing.assert_allclose(well.well_indices, 1e-12)


def test_well_validation():
    mesh = CartesianMesh((3, 3, 2), extent=(3.0, 3.0, 2.0))
    with pytest.raises(ValidationError):
        setup_well(mesh, 1e-13, [0], "big", radius=1.0)
    with pytest.raises(ValidationError):
        setup_well(mesh, 1e-13, [0, 0], "dup", WI=1.0)
    with pytest.raises(ValidationError):
        setup_well(mesh, 1e-13, [100], "out", WI=1.0)
    with pytest.raises(ValidationError):
        setup_well(mesh, 1e-13, [0], "", WI=1.0)


def test_control_validation():
    with pytest.raises(ValidationError):
        BottomHolePressureTarget(0.0)
    with pytest.raises(ValidationError):
        InjectorControl(TotalRateTarget(-1.0), [1.0, 0.0])
    with pytest.raises(ValidationError):
        ProducerControl(TotalRateTarget(1.0))
    with pytest.raises(ValidationError):
        InjectorControl(TotalRateTarget(1.0), [0.0, 0.0])
    with pytest.raises(ValidationError):
        ProducerControl(BottomHolePressureTarget(1e6), limits={"bogus": 1.0})
    control = InjectorControl(TotalRateTarget(1.0), [3.0, 1.0])
    np.testing.assert_allclose(control.mix, [0.75, 0.25])
    assert control.is_injector()
    assert not DisabledControl().is_injector()


def test_injector_switches_on_bhp_limit():
    control = InjectorControl(TotalRateTarget(0.01), [1.0, 0.0], limits={"bhp": 3e7})
    assert check_limits(control, 2e7, {"rate": 0.01}) is None
    switched = check_limits(control, 3.5e7, {"rate": 0.01})
    assert isinstance(switched.target, BottomHolePressureTarget)
    assert switched.target.value == 3e7
    np.testing.assert_allclose(switched.mix, control.mix)


def test_producer_switches_on_rate_limit():
    control = ProducerControl(
        BottomHolePressureTarget(1e6), limits={"bhp": 1e6, "lrat": -0.01}
    )
    assert check_limits(control, 1e6, {"lrat": -0.005}) is None
    switched = check_limits(control, 1e6, {"lrat": -0.02})
    assert isinstance(switched.target, SurfaceLiquidRateTarget)
    assert switched.target.value == -0.01
    assert check_limits(DisabledControl(), 1e6, {}) is None
