import numpy as np
import pytest

from poreflow.assembly import Assembler
from poreflow.config import Config
from poreflow.discretization.domain import get_1d_reservoir
from poreflow.forces import PoissonSource, setup_forces, setup_reservoir_forces
from poreflow.jacobian import JacobianBuilder
from poreflow.models import FACILITY, ReservoirModel, SimulationModel, setup_reservoir_model
from poreflow.systems.simple import PoissonSystem
from poreflow.wells.base import setup_well
from poreflow.wells.controls import BottomHolePressureTarget, ProducerControl


@pytest.fixture
def well_setup(two_phase_system):
    domain = get_1d_reservoir(6, length=60.0, permeability=1e-13, porosity=0.2, area=100.0)
    well = setup_well(domain, 1e-13, [2, 3, 4], "P", direction="x", WI=1e-12)
    model, parameters = setup_reservoir_model(domain, two_phase_system, wells=[well])
    return model, parameters


def test_layout(well_setup):
    model, parameters = well_setup
    assembler = Assembler(model, parameters)
    assert [group.name for group in assembler.groups] == ["Reservoir", "P", FACILITY]
    assert assembler.size == 6 * 2 + 4 * 2 + 1
    assert assembler.number_of_entities == 6 + 4 + 1
    assert assembler.pressure_indices.shape == (10,)
    np.testing.assert_array_equal(assembler.block_sizes, 2)
    np.testing.assert_array_equal(assembler.pressure_indices[:3], [0, 2, 4])
    assert assembler.upper_bounds[1] == 1.0


def test_pack_unpack(well_setup):
    model, parameters = well_setup
    assembler = Assembler(model, parameters)
    state = model.setup_state(
        pressure=np.linspace(1e7, 2e7, 6), saturations=[np.linspace(0.2, 0.7, 6), np.linspace(0.8, 0.3, 6)]
    )
    x = assembler.pack(state)
    assert x[0] == 1e7
    assert x[1] == pytest.approx(0.2)
    unpacked = assembler.unpack(x)
    for name in ("Reservoir", "P"):
        np.testing.assert_allclose(unpacked[name]["pressure"], state[name]["pressure"])
        np.testing.assert_allclose(unpacked[name]["saturations"], state[name]["saturations"])
    np.testing.assert_allclose(unpacked[FACILITY]["surface_rate"], 0.0)


def test_equilibrium_has_zero_residual(two_phase_system, line_domain):
    model, parameters = setup_reservoir_model(line_domain, two_phase_system)
    assembler = Assembler(model, parameters)
    state = model.setup_state(pressure=1e7, saturations=[0.3, 0.7])
    context = assembler.begin_step(state, 86400.0, setup_forces(model))
    evaluation = assembler.evaluate(assembler.pack(state), context)
    np.testing.assert_allclose(evaluation.residual, 0.0, atol=1e-12)
    converged, measures = assembler.convergence(evaluation, Config())
    assert converged
    assert measures["Reservoir"]["cnv"] == 0.0


def test_coloured_jacobian_matches_dense(well_setup):
    model, parameters = well_setup
    assembler = Assembler(model, parameters)
    state = model.setup_state(
        pressure=np.array([2.0e7, 1.9e7, 1.85e7, 1.8e7, 1.7e7, 1.6e7]),
        saturations=[np.linspace(0.2, 0.7, 6), np.linspace(0.8, 0.3, 6)],
    )
    state["P"]["pressure"] = np.array([1.5e7, 1.52e7, 1.54e7, 1.56e7])
    state[FACILITY]["surface_rate"] = np.array([-2.0])
    forces = setup_reservoir_forces(
        model, control={"P": ProducerControl(BottomHolePressureTarget(1.5e7))}
    )
    context = assembler.begin_step(state, 3600.0, forces)

    def residual(x):
        return assembler.evaluate(x, context).residual

    x = assembler.pack(state)
    r0 = residual(x)
    builder = JacobianBuilder(assembler)
    assert builder.number_of_evaluations < assembler.size
    perturbation = 1e-7
    J = builder(residual, x, r0, perturbation).toarray()

    steps = perturbation * np.maximum(np.abs(x), assembler.perturbation_scales)
    steps = np.where(x + steps > assembler.upper_bounds, -steps, steps)
    dense = np.zeros((assembler.size, assembler.size))
    for column in range(assembler.size):
        perturbed = x.copy()
        perturbed[column] += steps[column]
        dense[:, column] = (residual(perturbed) - r0) / steps[column]
    np.testing.assert_allclose(J, dense, rtol=1e-8, atol=1e-10 * np.abs(dense).max())
    # The well couples reservoir cells 2 to 4 with the well nodes
    node_columns = assembler.group_by_name["P"].offset
    assert np.any(J[2 * 2, node_columns + 2] != 0.0)


def test_poisson_gauge():
    domain = get_1d_reservoir(5)
    reservoir = ReservoirModel(SimulationModel(domain, PoissonSystem()))
    parameters = reservoir.setup_parameters()
    assembler = Assembler(reservoir, parameters)
    state = reservoir.setup_state(potential=3.0)
    forces = setup_forces(reservoir, sources=[PoissonSource(0, 1.0), PoissonSource(4, -1.0)])
    context = assembler.begin_step(state, 1.0, forces)
    assert context.gauge is not None
    assert context.gauge[0] == 3.0
    evaluation = assembler.evaluate(assembler.pack(state), context)
    assert evaluation.blocks["Reservoir"][0, 0] == 0.0
    np.testing.assert_allclose(evaluation.blocks["Reservoir"][0, 4], 1.0)


def test_segment_flux_is_smooth_through_reversal(two_phase_system):
    domain = get_1d_reservoir(
        6, length=60.0, permeability=1e-13, porosity=0.2, area=100.0, gravity=False
    )
    well = setup_well(domain, 1e-13, [2, 3, 4], "P", direction="x", WI=1e-12)
    model, parameters = setup_reservoir_model(domain, two_phase_system, wells=[well])
    assembler = Assembler(model, parameters)
    state = model.setup_state(pressure=1e7, saturations=[0.2, 0.8])
    # Water-rich top node above an oil-rich node at the same pressure
    state["P"]["saturations"] = np.array([[0.9, 0.1, 0.2, 0.2], [0.1, 0.9, 0.8, 0.8]])
    context = assembler.begin_step(state, 3600.0, setup_reservoir_forces(model))
    x = assembler.pack(state)
    top = assembler.group_by_name["P"].offset
    h = 2.0

    def node_residual(dp):
        y = x.copy()
        y[top] += dp
        return assembler.evaluate(y, context).blocks["P"][:, 1]

    r0 = node_residual(0.0)
    forward = (node_residual(h) - r0) / h
    backward = (r0 - node_residual(-h)) / h
    assert np.all(np.abs(forward) > 0.0)
    np.testing.assert_allclose(forward, backward, rtol=1e-2)
