import numpy as np
import pytest

from poreflow.discretization.domain import discretized_domain, get_1d_reservoir
from poreflow.errors import ValidationError
from poreflow.forces import (
    FlowBoundaryCondition,
    PoissonSource,
    SourceTerm,
    setup_forces,
    setup_reservoir_forces,
)
from poreflow.mesh.cartesian import CartesianMesh
from poreflow.models import SimulationModel, setup_reservoir_model
from poreflow.systems.compositional import CompositionalSystem
from poreflow.systems.simple import PoissonSystem
from poreflow.wells.base import setup_well
from poreflow.wells.controls import (
    BottomHolePressureTarget,
    DisabledControl,
    InjectorControl,
    ProducerControl,
    SurfaceGasRateTarget,
    TotalRateTarget,
)


@pytest.fixture
def line_model(two_phase_system, line_domain):
    model, _ = setup_reservoir_model(line_domain, two_phase_system)
    return model


@pytest.fixture
def well_model(two_phase_system):
    mesh = CartesianMesh((5, 1, 1), extent=(50.0, 10.0, 10.0))
    injector = setup_well(mesh, 1e-13, [0], "I", direction="x", WI=1e-12)
    producer = setup_well(mesh, 1e-13, [4], "P", direction="x", WI=1e-12)
    model, _ = setup_reservoir_model(
        mesh, two_phase_system, wells=[injector, producer], porosity=0.2, permeability=1e-13
    )
    return model


def test_sources_and_boundaries(line_model):
    forces = setup_forces(
        line_model,
        sources=SourceTerm(0, 0.1, fractional_flow=[1.0, 0.0]),
        bc=FlowBoundaryCondition(9, 1e7, fractional_flow=[0.0, 1.0]),
    )
    assert len(forces.sources) == 1
    assert forces.bc[0].trans_flow > 0.0
    assert not forces.has_wells


def test_explicit_boundary_transmissibility(line_model):
    forces = setup_forces(line_model, bc=[FlowBoundaryCondition(9, 1e7, trans_flow=1e-12)])
    assert forces.bc[0].trans_flow == 1e-12


def test_fractional_flow_is_normalized():
    source = SourceTerm(0, 1.0, fractional_flow=[2.0, 2.0])
    np.testing.assert_allclose(source.fractional_flow, [0.5, 0.5])
    with pytest.raises(ValidationError):
        SourceTerm(0, 1.0, fractional_flow=[0.0, 0.0])


def test_force_validation(line_model):
    with pytest.raises(ValidationError):
        setup_forces(line_model, sources=SourceTerm(10, 1.0))
    with pytest.raises(ValidationError):
        setup_forces(line_model, sources=SourceTerm(0, 1.0, fractional_flow=[1.0, 0.0, 0.0]))
    with pytest.raises(ValidationError):
        setup_forces(line_model, bc=FlowBoundaryCondition(0, 0.0))
    with pytest.raises(ValidationError):
        setup_forces(line_model, bc=FlowBoundaryCondition(0, 1e5, fractional_flow=[1.0]))
    with pytest.raises(ValueError):
        SourceTerm(0, 1.0, kind="energy")


def test_boundary_needs_boundary_face():
    mesh = CartesianMesh((3, 3, 3))
    model = SimulationModel(discretized_domain(mesh), PoissonSystem())
    forces = setup_forces(model, bc=FlowBoundaryCondition(0, 1.0))
    assert forces.bc[0].trans_flow > 0.0
    with pytest.raises(ValidationError):
        setup_forces(model, bc=FlowBoundaryCondition(mesh.cell_index(1, 1, 1), 1.0))


def test_poisson_sources():
    domain = get_1d_reservoir(4)
    model = SimulationModel(domain, PoissonSystem())
    forces = setup_forces(model, sources=[PoissonSource(0, 1.0), PoissonSource(3, -1.0)])
    assert [source.value for source in forces.sources] == [1.0, -1.0]
    with pytest.raises(ValidationError):
        setup_forces(model, sources=PoissonSource(0, 1.0, fractional_flow=[1.0]))


def test_volume_sources_rejected_for_compositional(methane_decane_eos, line_domain):
    model, _ = setup_reservoir_model(line_domain, CompositionalSystem(methane_decane_eos))
    with pytest.raises(ValidationError):
        setup_forces(model, sources=SourceTerm(0, 1e-3, kind="volume"))


def test_missing_controls_shut_wells(well_model):
    forces = setup_reservoir_forces(
        well_model, control={"P": ProducerControl(BottomHolePressureTarget(1e6))}
    )
    assert isinstance(forces.control["I"], DisabledControl)
    assert isinstance(forces.control["P"], ProducerControl)
    assert forces.has_wells


def test_control_validation(well_model):
    with pytest.raises(ValidationError):
        setup_reservoir_forces(well_model, control={"X": DisabledControl()})
    with pytest.raises(ValidationError):
        setup_reservoir_forces(
            well_model, control={"I": InjectorControl(TotalRateTarget(1e-3), [1.0, 0.0, 0.0])}
        )
    with pytest.raises(ValidationError):
        setup_reservoir_forces(
            well_model, control={"P": ProducerControl(SurfaceGasRateTarget(-1e-3))}
        )
    with pytest.raises(ValidationError):
        setup_reservoir_forces(
            well_model,
            control={"P": ProducerControl(BottomHolePressureTarget(1e6), limits={"grat": -1.0})},
        )
