import numpy as np
import pytest

from poreflow.errors import ValidationError
from poreflow.fluids.capillary_pressures import BrooksCoreyCapillaryPressure
from poreflow.fluids.densities import ConstantCompressibilityDensities
from poreflow.fluids.eos import MultiComponentMixture
from poreflow.fluids.relperm import BrooksCoreyRelPerm
from poreflow.fluids.viscosities import ConstantViscosities, LBCViscosities
from poreflow.types import Phase


def test_corey_relative_permeabilities():
    relperm = BrooksCoreyRelPerm(2, exponents=2.0)
    S = np.array([[0.5, 1.0, 0.0], [0.5, 0.0, 1.0]])
    kr = relperm(S)
    np.testing.assert_allclose(kr, [[0.25, 1.0, 0.0], [0.25, 0.0, 1.0]])


def test_corey_residuals_and_endpoints():
    relperm = BrooksCoreyRelPerm(
        (Phase.AQUEOUS, Phase.LIQUID),
        exponents=[2.0, 3.0],
        residuals=[0.2, 0.2],
        endpoints=[0.5, 1.0],
    )
    S = np.array([[0.2, 0.5, 0.8], [0.8, 0.5, 0.2]])
    kr = relperm(S)
    np.testing.assert_allclose(kr[0], 0.5 * np.array([0.0, 0.5, 1.0]) ** 2)
    np.testing.assert_allclose(kr[1], np.array([1.0, 0.5, 0.0]) ** 3)


def test_corey_three_phase_clamps():
    relperm = BrooksCoreyRelPerm(3)
    S = np.array([[1.2], [-0.1], [-0.1]])
    kr = relperm(S)
    np.testing.assert_allclose(kr[:, 0], [1.0, 0.0, 0.0])


def test_corey_validation():
    with pytest.raises(ValidationError):
        BrooksCoreyRelPerm(2, residuals=[0.6, 0.5])
    with pytest.raises(ValidationError):
        BrooksCoreyRelPerm(2, exponents=[1.0, 2.0, 3.0])
    with pytest.raises(ValidationError):
        BrooksCoreyRelPerm(2)(np.ones((3, 1)))


def test_brooks_corey_capillary_pressure():
    pc = BrooksCoreyCapillaryPressure(entry_pressure=1e4, exponent=2.0)
    S = np.array([[1.0, 0.25, 0.0], [0.0, 0.75, 1.0]])
    values = pc(S)
    np.testing.assert_allclose(values[0], 0.0)
    np.testing.assert_allclose(values[1, :2], [1e4, 2e4])
    # Capped at the maximum for a dry wetting phase
    np.testing.assert_allclose(values[1, 2], 1e6)


def test_capillary_pressure_validation():
    with pytest.raises(ValidationError):
        BrooksCoreyCapillaryPressure(entry_pressure=1e4, phase=0, wetting_phase=0)
    with pytest.raises(ValueError):
        BrooksCoreyCapillaryPressure(entry_pressure=-1.0)


def test_constant_compressibility_densities():
    densities = ConstantCompressibilityDensities(
        reference_pressure=1e5,
        reference_densities=[1000.0, 700.0],
        compressibilities=[1e-9, 1e-8],
    )
    p = np.array([1e5, 1.1e6])
    rho = densities(p, 2)
    np.testing.assert_allclose(rho[:, 0], [1000.0, 700.0])
    np.testing.assert_allclose(rho[:, 1], [1000.0 * np.exp(1e-3), 700.0 * np.exp(1e-2)])


def test_densities_length_mismatch():
    densities = ConstantCompressibilityDensities(reference_densities=[1000.0, 700.0])
    with pytest.raises(ValidationError):
        densities(np.array([1e5]), 3)


def test_constant_viscosities():
    mu = ConstantViscosities([1e-3, 5e-3])(np.zeros(3), 2)
    assert mu.shape == (2, 3)
    np.testing.assert_allclose(mu[1], 5e-3)
    shared = ConstantViscosities(2e-3)(np.zeros(2), 3)
    np.testing.assert_allclose(shared, 2e-3)
    with pytest.raises(ValidationError):
        ConstantViscosities(0.0)


def test_lbc_dilute_methane(co2_methane_eos):
    mixture = MultiComponentMixture({"C1": co2_methane_eos.mixture.components[1]})
    mu = LBCViscosities()(mixture, np.array([300.0]), np.array([[1.0]]), np.array([40.0]))
    assert 0.8e-5 < mu[0] < 1.5e-5


def test_lbc_liquid_more_viscous(methane_decane_eos):
    lbc = LBCViscosities()
    mixture = methane_decane_eos.mixture
    x = np.array([[0.2], [0.8]])
    p, T = 5e6, 350.0
    xi_liquid = methane_decane_eos.molar_densities(p, T, x, "liquid")
    xi_vapor = methane_decane_eos.molar_densities(p, T, np.array([[0.99], [0.01]]), "vapor")
    mu_liquid = lbc(mixture, np.array([T]), x, xi_liquid)
    mu_vapor = lbc(mixture, np.array([T]), np.array([[0.99], [0.01]]), xi_vapor)
    assert mu_liquid[0] > 10.0 * mu_vapor[0]
