import numpy as np
import pytest

from poreflow.config import Config
from poreflow.errors import ValidationError
from poreflow.fluids.capillary_pressures import BrooksCoreyCapillaryPressure
from poreflow.fluids.relperm import BrooksCoreyRelPerm
from poreflow.systems.compositional import CompositionalSystem
from poreflow.systems.immiscible import ImmiscibleSystem
from poreflow.systems.simple import HeatSystem, PoissonSystem
from poreflow.systems.variables import OverallMoleFractions, Pressure, Saturations
from poreflow.types import Phase


def test_immiscible_layout(two_phase_system):
    assert two_phase_system.number_of_phases == 2
    assert two_phase_system.number_of_components == 2
    assert two_phase_system.number_of_unknowns == 2
    assert two_phase_system.equation_names == ("aqueous_mass", "liquid_mass")
    np.testing.assert_allclose(two_phase_system.reference_densities, [1000.0, 800.0])


def test_single_phase_has_only_pressure():
    system = ImmiscibleSystem((Phase.LIQUID,))
    assert [variable.name for variable in system.primary_variables] == ["pressure"]
    state = system.initial_values(3, pressure=1e7)
    np.testing.assert_allclose(state["saturations"], 1.0)


def test_immiscible_secondary(two_phase_system):
    state = two_phase_system.initial_values(
        3, pressure=[1e5, 2e5, 3e5], saturations=[[0.2, 0.5, 0.9], [0.8, 0.5, 0.1]]
    )
    secondary = two_phase_system.secondary(state, {})
    kr = secondary["relative_permeabilities"]
    np.testing.assert_allclose(kr[0], [0.04, 0.25, 0.81])
    np.testing.assert_allclose(secondary["mobilities"][0], kr[0] / 1e-3)
    np.testing.assert_allclose(secondary["mobilities"][1], kr[1] / 5e-3)
    rho = secondary["phase_mass_densities"]
    np.testing.assert_allclose(rho[0, 0], 1000.0)
    np.testing.assert_allclose(
        secondary["component_concentrations"], rho * state["saturations"]
    )
    np.testing.assert_allclose(secondary["phase_pressures"], np.vstack([state["pressure"]] * 2))


def test_capillary_pressure_in_phase_pressures():
    system = ImmiscibleSystem(
        (Phase.AQUEOUS, Phase.LIQUID),
        capillary_pressure=BrooksCoreyCapillaryPressure(entry_pressure=1e4),
    )
    state = system.initial_values(1, pressure=1e6, saturations=[0.25, 0.75])
    secondary = system.secondary(state, {})
    np.testing.assert_allclose(secondary["phase_pressures"][:, 0], [1e6, 1e6 + 2e4])


def test_outputs_total_masses(two_phase_system):
    state = two_phase_system.initial_values(2, pressure=1e5, saturations=[0.5, 0.5])
    secondary = two_phase_system.secondary(state, {})
    outputs = two_phase_system.outputs(state, secondary, np.array([2.0, 4.0]))
    np.testing.assert_allclose(outputs["total_masses"][:, 1], [2000.0, 1600.0])


def test_initial_value_validation(two_phase_system):
    with pytest.raises(ValidationError):
        two_phase_system.initial_values(2, pressure=1e5, saturations=[0.5, 0.6])
    with pytest.raises(ValidationError):
        two_phase_system.initial_values(2, pressure=1e5)
    with pytest.raises(ValidationError):
        two_phase_system.initial_values(2, pressure=1e5, saturations=[0.5, 0.5], temperature=300.0)
    with pytest.raises(ValidationError):
        two_phase_system.initial_values(2, pressure=-1.0, saturations=[0.5, 0.5])


def test_relperm_phase_mismatch():
    with pytest.raises(ValidationError):
        ImmiscibleSystem((Phase.AQUEOUS, Phase.LIQUID), relative_permeabilities=BrooksCoreyRelPerm(3))
    with pytest.raises(ValidationError):
        ImmiscibleSystem((Phase.AQUEOUS, Phase.AQUEOUS))


def test_pressure_update_limits():
    config = Config(max_pressure_change=0.2)
    primary = np.array([[1e6, 2e6]])
    dx = np.array([[5e5, -1e5]])
    limited = Pressure().limit_update(primary, dx, config)
    np.testing.assert_allclose(limited, [[2e5, -1e5]])
    np.testing.assert_allclose(Pressure().project(np.array([[-5.0, 3.0]]), minimum=1.0), [[1.0, 3.0]])


def test_saturation_update_limits():
    config = Config(max_saturation_change=0.2)
    variable = Saturations(number=3)
    primary = np.array([[0.3, 0.3], [0.3, 0.3]])
    dx = np.array([[0.4, 0.05], [0.0, 0.05]])
    limited = variable.limit_update(primary, dx, config)
    np.testing.assert_allclose(limited[:, 0], [0.2, 0.0])
    np.testing.assert_allclose(limited[:, 1], [0.05, 0.05])

    # The eliminated fraction is limited too
    dx = np.array([[0.15, 0.0], [0.15, 0.0]])
    limited = variable.limit_update(primary, dx, config)
    np.testing.assert_allclose(limited[:, 0], [0.1, 0.1])


def test_saturation_projection():
    variable = Saturations(number=3)
    projected = variable.project(np.array([[-0.1, 0.8], [0.5, 0.6]]))
    np.testing.assert_allclose(projected[:, 0], [0.0, 0.5])
    np.testing.assert_allclose(projected[:, 1], [0.8 / 1.4, 0.6 / 1.4])
    full = variable.from_primary(projected)
    np.testing.assert_allclose(full.sum(axis=0), 1.0)
    assert np.all(full >= -1e-15)


def test_mole_fraction_floor():
    projected = OverallMoleFractions(number=2).project(np.array([[-0.2, 0.4]]))
    np.testing.assert_allclose(projected, [[1e-12, 0.4]])


def test_compositional_secondary(methane_decane_eos):
    system = CompositionalSystem(methane_decane_eos)
    state = system.initial_values(2, pressure=5e6, overall_mole_fractions=[[0.5, 0.999], [0.5, 0.001]])
    secondary = system.secondary(state, {"temperature": np.full(2, 350.0)})
    S = secondary["saturations"]
    np.testing.assert_allclose(S.sum(axis=0), 1.0)
    assert 0.0 < S[1, 0] < 1.0
    assert secondary["phase_state"][0] == 2
    # Component amounts are recovered from the phase split
    xi = secondary["total_amount_density"]
    np.testing.assert_allclose(
        secondary["component_concentrations"], state["overall_mole_fractions"] * xi[None, :], rtol=1e-8
    )
    assert np.all(secondary["phase_viscosities"] > 0.0)


def test_compositional_phase_validation(methane_decane_eos):
    with pytest.raises(ValidationError):
        CompositionalSystem(methane_decane_eos, phases=(Phase.VAPOR, Phase.LIQUID))
    system = CompositionalSystem(methane_decane_eos)
    with pytest.raises(ValidationError):
        system.initial_values(1, pressure=1e6, overall_mole_fractions=[0.7, 0.7])


def test_scalar_systems():
    heat = HeatSystem()
    assert not heat.steady
    assert [variable.name for variable in heat.primary_variables] == ["temperature"]
    poisson = PoissonSystem(conductivity=2.0)
    assert poisson.steady
    assert poisson.equation_names == ("potential",)
    state = poisson.initial_values(4, potential=0.0)
    np.testing.assert_allclose(state["potential"], 0.0)


def test_validate_values_checks_fractions(two_phase_system, methane_decane_eos):
    pressure = np.full(2, 1e7)
    with pytest.raises(ValidationError):
        two_phase_system.validate_values(
            {"pressure": pressure, "saturations": np.array([[0.5, 0.5], [0.8, 0.5]])}, 2
        )
    with pytest.raises(ValidationError):
        two_phase_system.validate_values(
            {"pressure": pressure, "saturations": np.array([[-0.2, 0.5], [1.2, 0.5]])}, 2
        )
    two_phase_system.validate_values(
        {"pressure": pressure, "saturations": np.array([[0.3, 0.5], [0.7, 0.5]])}, 2
    )

    system = CompositionalSystem(methane_decane_eos)
    with pytest.raises(ValidationError):
        system.validate_values(
            {"pressure": pressure, "overall_mole_fractions": np.array([[0.6, 0.5], [0.6, 0.5]])}, 2
        )
    with pytest.raises(ValidationError):
        system.initial_values(2, pressure=1e7, overall_mole_fractions=[0.7, 0.4])
