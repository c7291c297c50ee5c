import numpy as np
import pytest

from poreflow.analyses import full_well_outputs, report_times
from poreflow.config import Config
from poreflow.constants import c
from poreflow.discretization.domain import get_1d_reservoir
from poreflow.errors import SimulationError, ValidationError
from poreflow.fluids.densities import ConstantCompressibilityDensities
from poreflow.fluids.relperm import BrooksCoreyRelPerm
from poreflow.fluids.viscosities import ConstantViscosities
from poreflow.forces import (
    FlowBoundaryCondition,
    Forces,
    PoissonSource,
    SourceTerm,
    setup_forces,
    setup_reservoir_forces,
)
from poreflow.mesh.cartesian import CartesianMesh
from poreflow.models import SimulationModel, setup_reservoir_model
from poreflow.simulate import Simulator, setup_reservoir_simulator, simulate
from poreflow.systems.compositional import CompositionalSystem
from poreflow.systems.immiscible import ImmiscibleSystem
from poreflow.systems.simple import HeatSystem, PoissonSystem
from poreflow.timing import Time
from poreflow.types import Phase
from poreflow.wells.base import setup_vertical_well
from poreflow.wells.controls import (
    BottomHolePressureTarget,
    InjectorControl,
    ProducerControl,
    TotalRateTarget,
)


def test_poisson_with_balanced_sources():
    model = SimulationModel(get_1d_reservoir(5), PoissonSystem())
    state0 = model.setup_state(potential=0.0)
    forces = setup_forces(model, sources=[PoissonSource(0, 1.0), PoissonSource(4, -1.0)])
    result = simulate(state0, model, [1.0], forces=forces)
    np.testing.assert_allclose(
        result.states[0]["potential"], [0.0, -0.2, -0.4, -0.6, -0.8], atol=1e-8
    )


def test_poisson_with_boundary_values():
    model = SimulationModel(get_1d_reservoir(5), PoissonSystem())
    state0 = model.setup_state(potential=0.0)
    forces = setup_forces(
        model,
        bc=[
            FlowBoundaryCondition(0, 1.0, trans_flow=10.0),
            FlowBoundaryCondition(4, 0.0, trans_flow=10.0),
        ],
    )
    result = simulate(state0, model, [1.0], forces=forces)
    np.testing.assert_allclose(result.states[0]["potential"], [0.9, 0.7, 0.5, 0.3, 0.1], atol=1e-8)


def test_heat_diffusion_conserves_energy():
    model = SimulationModel(get_1d_reservoir(10, length=10.0), HeatSystem())
    temperature = np.full(10, 300.0)
    temperature[0] = 400.0
    state0 = model.setup_state(temperature=temperature)
    result = simulate(state0, model, [0.5, 0.5, 1.0, 10.0])
    assert len(result) == 4
    previous_max = 400.0
    for state in result.states:
        T = state["temperature"]
        assert T.sum() == pytest.approx(3100.0, abs=1e-4)
        assert np.all(T >= 300.0 - 1e-8)
        assert T.max() < previous_max
        previous_max = T.max()
    assert np.all(np.diff(result.states[-1]["temperature"]) <= 1e-6)


def test_single_phase_pressure_with_boundary(line_domain):
    system = ImmiscibleSystem((Phase.LIQUID,))
    model, parameters = setup_reservoir_model(line_domain, system)
    state0 = model.setup_state(pressure=1e7)
    forces = setup_forces(model, bc=FlowBoundaryCondition(0, 2e7))
    result = simulate(
        state0,
        model,
        [Time(hours=1), Time(days=10)],
        forces=forces,
        parameters=parameters,
        tol_cnv=1e-8,
    )
    early = result.states[0]["Reservoir"]["pressure"]
    assert early[0] > early[-1]
    assert np.all(np.diff(early) <= 0.0)
    assert np.all(early >= 1e7 - 1.0)
    late = result.states[1]["Reservoir"]["pressure"]
    np.testing.assert_allclose(late, 2e7, rtol=1e-4)
    assert result.reports[1].time == pytest.approx(Time(hours=1) + Time(days=10))


def test_buckley_leverett():
    # Equal densities so that the mass sink balances the injected volume
    system = ImmiscibleSystem(
        (Phase.AQUEOUS, Phase.LIQUID),
        relative_permeabilities=BrooksCoreyRelPerm(2, exponents=2.0),
        densities=ConstantCompressibilityDensities(
            reference_densities=[1000.0, 1000.0], compressibilities=[1e-9, 1e-9]
        ),
        viscosities=ConstantViscosities([1e-3, 5e-3]),
    )
    domain = get_1d_reservoir(10, length=100.0, permeability=c.DARCY, porosity=0.2)
    model, parameters = setup_reservoir_model(domain, system)
    state0 = model.setup_state(pressure=1e7, saturations=[0.0, 1.0])
    pore_volume = float(domain.pore_volumes.sum())
    duration = Time(days=10)
    # 0.2 pore volumes injected, about 0.2 MPa of drawdown across the core
    rate = 0.2 * pore_volume * 1000.0 / duration
    forces = setup_forces(
        model,
        sources=[SourceTerm(0, rate, fractional_flow=[1.0, 0.0]), SourceTerm(9, -rate)],
    )
    simulator = Simulator(model, state0, parameters)
    initial = simulator.initial_state()
    initial_masses = initial["Reservoir"]["total_masses"].sum(axis=1)

    result = simulate(
        simulator, [Time(days=1)] * 10, forces=forces, config=Config(max_timestep=Time(days=1))
    )
    final = result.states[-1]["Reservoir"]
    masses = final["total_masses"].sum(axis=1)
    injected = rate * duration
    np.testing.assert_allclose(masses.sum(), initial_masses.sum(), rtol=1e-5)
    assert 0.9 * injected < masses[0] - initial_masses[0] < 1.0001 * injected

    assert np.all(final["pressure"] > 9e6)
    assert final["pressure"][0] > final["pressure"][-1]

    # Welge tangent for these curves gives a front saturation of 1/sqrt(6)
    # travelling at 1.73 times the injected pore volume fraction (about 35 m)
    water = final["saturations"][0]
    assert water[0] > 0.5
    assert water[-1] < 0.05
    assert np.all(np.diff(water) <= 1e-8)
    front = int(np.argmax(water < 0.2))
    assert 3 <= front <= 6
    np.testing.assert_allclose(final["saturations"].sum(axis=0), 1.0)
    assert all(report.newton_iterations > 0 for report in result.reports)


def test_wells_drive_flow(two_phase_system):
    mesh = CartesianMesh((10, 1, 1), extent=(100.0, 10.0, 10.0))
    permeability = 0.1 * c.DARCY
    injector = setup_vertical_well(mesh, permeability, 0, 0, "I")
    producer = setup_vertical_well(mesh, permeability, 9, 0, "P")
    model, parameters = setup_reservoir_model(
        mesh,
        two_phase_system,
        wells=[injector, producer],
        porosity=0.2,
        permeability=permeability,
    )
    state0 = model.setup_state(pressure=1e7, saturations=[0.0, 1.0])
    forces = setup_reservoir_forces(
        model,
        control={
            "I": InjectorControl(TotalRateTarget(1e-4), [1.0, 0.0], density=1000.0),
            "P": ProducerControl(BottomHolePressureTarget(9.5e6)),
        },
    )
    simulator, config = setup_reservoir_simulator(
        model, state0, parameters, max_timestep=Time(days=1)
    )
    result = simulate(simulator, [Time(days=2)] * 3, forces=forces, config=config)
    assert len(result.states) == 3

    outputs = full_well_outputs(model, result.states, forces)
    np.testing.assert_allclose(outputs["I"]["rate"], 1e-4, rtol=1e-4)
    np.testing.assert_allclose(outputs["I"]["mass_rate"], 0.1, rtol=1e-4)
    np.testing.assert_allclose(outputs["P"]["bhp"], 9.5e6, rtol=1e-4)
    assert np.all(outputs["P"]["rate"] < 0.0)
    assert np.all(outputs["I"]["bhp"] > outputs["P"]["bhp"])
    assert set(outputs["P"]) >= {"water_rate", "oil_rate", "liquid_rate"}
    np.testing.assert_allclose(
        outputs["P"]["liquid_rate"], outputs["P"]["water_rate"] + outputs["P"]["oil_rate"]
    )

    water = result.states[-1]["Reservoir"]["saturations"][0]
    assert water[0] > 0.0
    np.testing.assert_allclose(report_times(result.reports), [Time(days=d) for d in (2, 4, 6)])


def test_compositional_injection_conserves_moles(methane_decane_eos):
    domain = get_1d_reservoir(5, length=100.0, permeability=0.1 * c.DARCY, porosity=0.2)
    system = CompositionalSystem(methane_decane_eos)
    model, parameters = setup_reservoir_model(domain, system, temperature=350.0)
    state0 = model.setup_state(pressure=5e6, overall_mole_fractions=[0.5, 0.5])
    rate = 1e-4
    forces = setup_forces(model, sources=SourceTerm(0, rate, fractional_flow=[1.0, 0.0]))
    simulator = Simulator(model, state0, parameters)
    initial = simulator.initial_state()["Reservoir"]["total_masses"].sum(axis=1)

    duration = Time(days=1)
    result = simulate(
        simulator, [duration / 4] * 4, forces=forces, config=Config(max_timestep=duration / 4)
    )
    final = result.states[-1]["Reservoir"]
    moles = final["total_masses"].sum(axis=1)
    injected = rate * duration / methane_decane_eos.mixture.molar_masses[0]
    assert moles[0] - initial[0] == pytest.approx(injected, rel=1e-3)
    assert moles[1] == pytest.approx(initial[1], rel=1e-5)
    assert final["pressure"][0] > 5e6
    np.testing.assert_allclose(final["saturations"].sum(axis=0), 1.0)
    assert np.all(final["phase_state"] == 2)


def test_simulate_argument_validation(line_domain):
    model = SimulationModel(line_domain, PoissonSystem())
    state0 = model.setup_state(potential=0.0)
    with pytest.raises(ValidationError):
        simulate(state0, model, None)
    with pytest.raises(ValidationError):
        simulate(state0, model, [1.0], config=Config(), tol_cnv=1e-4)
    with pytest.raises(ValidationError):
        simulate(state0, model, [1.0], bogus_option=1)
    with pytest.raises(ValidationError):
        simulate(state0, "not a model", [1.0])


def test_switched_control_is_reported(two_phase_system):
    mesh = CartesianMesh((10, 1, 1), extent=(100.0, 10.0, 10.0))
    permeability = 0.1 * c.DARCY
    injector = setup_vertical_well(mesh, permeability, 0, 0, "I")
    producer = setup_vertical_well(mesh, permeability, 9, 0, "P")
    model, parameters = setup_reservoir_model(
        mesh,
        two_phase_system,
        wells=[injector, producer],
        porosity=0.2,
        permeability=permeability,
    )
    state0 = model.setup_state(pressure=1e7, saturations=[0.0, 1.0])
    # The producer cannot sustain 100 times the injection rate above its bhp limit
    forces = setup_reservoir_forces(
        model,
        control={
            "I": InjectorControl(TotalRateTarget(1e-4), [1.0, 0.0], density=1000.0),
            "P": ProducerControl(TotalRateTarget(-1e-2), limits={"bhp": 9.5e6}),
        },
    )
    simulator, config = setup_reservoir_simulator(
        model, state0, parameters, max_timestep=Time(days=1)
    )
    result = simulate(simulator, [Time(days=1)] * 2, forces=forces, config=config)

    outputs = full_well_outputs(model, result.states, forces)
    assert list(outputs["P"]["control"]) == ["bhp", "bhp"]
    np.testing.assert_allclose(outputs["P"]["target"], 9.5e6)
    np.testing.assert_allclose(outputs["P"]["bhp"], 9.5e6, rtol=1e-4)
    assert np.all(outputs["P"]["rate"] > -1e-2)
    assert list(outputs["I"]["control"]) == ["rate", "rate"]
    np.testing.assert_allclose(outputs["I"]["target"], 1e-4)


def test_multisegment_rate_injector_five_spot(two_phase_system):
    mesh = CartesianMesh((5, 5, 3), extent=(500.0, 500.0, 30.0))
    permeability = 0.5 * c.DARCY
    injector = setup_vertical_well(mesh, permeability, 0, 0, "I")
    producer = setup_vertical_well(mesh, permeability, 4, 4, "P")
    assert not injector.simple
    assert injector.number_of_segments == 3
    model, parameters = setup_reservoir_model(
        mesh,
        two_phase_system,
        wells=[injector, producer],
        porosity=0.2,
        permeability=permeability,
    )
    state0 = model.setup_state(pressure=2e7, saturations=[0.0, 1.0])
    rate = 100.0 / Time(days=1)
    forces = setup_reservoir_forces(
        model,
        control={
            "I": InjectorControl(TotalRateTarget(rate), [1.0, 0.0], density=1000.0),
            "P": ProducerControl(BottomHolePressureTarget(1.8e7)),
        },
    )
    simulator, config = setup_reservoir_simulator(model, state0, parameters)
    result = simulate(simulator, [Time(days=5)] * 2, forces=forces, config=config)
    assert len(result.states) == 2

    outputs = full_well_outputs(model, result.states, forces)
    np.testing.assert_allclose(outputs["I"]["rate"], rate, rtol=1e-3)
    np.testing.assert_allclose(outputs["P"]["bhp"], 1.8e7, rtol=1e-4)
    assert np.all(outputs["I"]["bhp"] > outputs["P"]["bhp"])
    assert np.all(outputs["P"]["rate"] < 0.0)
    water = result.states[-1]["Reservoir"]["saturations"][0]
    assert water[mesh.cell_index(0, 0, 2)] > 0.0
    # Well-bore nodes carry the injected water down to the lowest perforation
    assert result.states[-1]["I"]["saturations"][0, -1] > 0.5


def test_unresolved_boundary_transmissibility_is_filled_in(line_domain):
    system = ImmiscibleSystem((Phase.LIQUID,))
    model, parameters = setup_reservoir_model(line_domain, system)
    state0 = model.setup_state(pressure=1e7)
    forces = Forces(bc=[FlowBoundaryCondition(0, 2e7)])
    result = simulate(state0, model, [Time(days=10)], forces=forces, parameters=parameters)
    pressure = result.states[0]["Reservoir"]["pressure"]
    assert pressure[0] > 1e7
    assert np.all(np.diff(pressure) <= 0.0)

    with pytest.raises(ValidationError):
        simulate(state0, model, [Time(days=1)], forces=Forces(bc=[FlowBoundaryCondition(42, 2e7)]))


def test_invalid_saturations_are_rejected(two_phase_system, line_domain):
    model = SimulationModel(line_domain, two_phase_system)
    state0 = {"pressure": np.full(10, 1e7), "saturations": np.array([[0.5] * 10, [0.8] * 10])}
    with pytest.raises(ValidationError):
        Simulator(model, state0)
    state0["saturations"] = np.array([[-0.1] * 10, [1.1] * 10])
    with pytest.raises(ValidationError):
        Simulator(model, state0)


def test_run_without_progress_fails(two_phase_system, line_domain):
    model, parameters = setup_reservoir_model(line_domain, two_phase_system)
    state0 = model.setup_state(pressure=1e7, saturations=[0.0, 1.0])
    forces = setup_forces(
        model, sources=[SourceTerm(0, 1e-3, fractional_flow=[1.0, 0.0]), SourceTerm(9, -1e-3)]
    )
    config = Config(
        max_nonlinear_iterations=1,
        tol_cnv=1e-12,
        tol_mb=1e-15,
        max_timestep_cuts=100,
        max_report_step_cuts=3,
    )
    with pytest.raises(SimulationError, match="cuts in report step 1"):
        simulate(state0, model, [Time(days=1)], forces=forces, parameters=parameters, config=config)
