import numpy as np
import pytest

from poreflow.constants import c
from poreflow.errors import ComputationError, ValidationError
from poreflow.fluids.eos import (
    GenericCubicEOS,
    MolecularProperty,
    MultiComponentMixture,
    SoaveRedlichKwong,
)
from poreflow.fluids.flash import (
    LIQUID_STATE,
    TWO_PHASE_STATE,
    VAPOR_STATE,
    flash_mixture,
    rachford_rice,
    wilson_k_values,
)


def test_ideal_gas_limit(methane_decane_eos):
    Z = methane_decane_eos.compressibility_factors(1e5, 300.0, np.array([1.0, 0.0]))
    assert 0.99 < Z[0] < 1.0
    rho = methane_decane_eos.molar_densities(1e5, 300.0, np.array([1.0, 0.0]))
    np.testing.assert_allclose(rho, 1e5 / (Z * c.UNIVERSAL_GAS_CONSTANT * 300.0), rtol=1e-6)


def test_liquid_root_is_denser(methane_decane_eos):
    x = np.array([0.05, 0.95])
    liquid = methane_decane_eos.mass_densities(1e6, 350.0, x, "liquid")
    vapor = methane_decane_eos.mass_densities(1e6, 350.0, x, "vapor")
    assert liquid[0] >= vapor[0]
    assert 500.0 < liquid[0] < 900.0


def test_srk_variant():
    mixture = MultiComponentMixture(
        [MolecularProperty(0.016043, 4.599e6, 190.56, 9.86e-5, 0.011)]
    )
    eos = GenericCubicEOS(mixture, SoaveRedlichKwong())
    Z = eos.compressibility_factors(1e5, 300.0, np.array([1.0]))
    assert 0.99 < Z[0] < 1.0


def test_mixture_validation():
    component = MolecularProperty(0.016043, 4.599e6, 190.56, 9.86e-5, 0.011)
    with pytest.raises(ValidationError):
        MultiComponentMixture([component, component], binary_interaction=[[0.0, 0.1], [0.2, 0.0]])
    with pytest.raises(ValidationError):
        MultiComponentMixture([component], names=["a", "b"])
    with pytest.raises(ValidationError):
        GenericCubicEOS(MultiComponentMixture([component])).compressibility_factors(
            1e5, 300.0, np.array([0.5, 0.5])
        )


def test_rachford_rice():
    V = rachford_rice(np.array([0.5, 0.5]), np.array([2.0, 0.5]))
    assert V == pytest.approx(0.5)
    z = np.array([0.2, 0.3, 0.5])
    K = np.array([3.0, 1.2, 0.1])
    V = rachford_rice(z, K)
    assert np.sum(z * (K - 1.0) / (1.0 + V * (K - 1.0))) == pytest.approx(0.0, abs=1e-10)
    assert np.isnan(rachford_rice(np.array([0.5, 0.5]), np.array([2.0, 3.0])))


def test_wilson_k_values(methane_decane_eos):
    mixture = methane_decane_eos.mixture
    K = wilson_k_values(
        5e6,
        350.0,
        mixture.critical_pressures,
        mixture.critical_temperatures,
        mixture.acentric_factors,
    )
    expected = (
        mixture.critical_pressures
        / 5e6
        * np.exp(5.373 * (1.0 + mixture.acentric_factors) * (1.0 - mixture.critical_temperatures / 350.0))
    )
    np.testing.assert_allclose(K, expected)
    assert K[0] > 1.0 > K[1]


def test_two_phase_flash(methane_decane_eos):
    z = np.array([[0.5], [0.5]])
    result = flash_mixture(methane_decane_eos, 5e6, 350.0, z)
    assert result.phase_state[0] == TWO_PHASE_STATE
    V = result.vapor_fraction[0]
    assert 0.0 < V < 1.0
    x = result.liquid_mole_fractions[:, 0]
    y = result.vapor_mole_fractions[:, 0]
    np.testing.assert_allclose(V * y + (1.0 - V) * x, z[:, 0], atol=1e-10)
    assert y[0] > x[0]

    # Fugacity equality
    phi_l = methane_decane_eos.fugacity_coefficients(5e6, 350.0, x, "liquid")[:, 0]
    phi_v = methane_decane_eos.fugacity_coefficients(5e6, 350.0, y, "vapor")[:, 0]
    np.testing.assert_allclose(x * phi_l, y * phi_v, rtol=1e-6)


def test_flash_warm_start(methane_decane_eos):
    z = np.array([[0.5, 0.6], [0.5, 0.4]])
    cold = flash_mixture(methane_decane_eos, 5e6, 350.0, z)
    warm = flash_mixture(
        methane_decane_eos, 5e6, 350.0, z, k_values=cold.k_values, phase_state=cold.phase_state
    )
    np.testing.assert_allclose(warm.vapor_fraction, cold.vapor_fraction, rtol=1e-8)


def test_single_phase_flash(methane_decane_eos):
    z = np.array([[0.999, 1e-4], [0.001, 1.0 - 1e-4]])
    result = flash_mixture(methane_decane_eos, 1e5, 350.0, z)
    assert result.phase_state[0] == VAPOR_STATE
    assert result.vapor_fraction[0] == 1.0
    np.testing.assert_allclose(result.vapor_mole_fractions[:, 0], z[:, 0], rtol=1e-9)
    # Decane with a trace of methane at 1 bar is a liquid
    assert result.phase_state[1] == LIQUID_STATE
    assert result.vapor_fraction[1] == 0.0


def test_flash_rejects_bad_pressure(methane_decane_eos):
    with pytest.raises(ComputationError):
        flash_mixture(methane_decane_eos, -1.0, 350.0, np.array([[0.5], [0.5]]))
