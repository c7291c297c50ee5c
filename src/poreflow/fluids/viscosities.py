import typing

import attrs
import numba
import numpy as np

from poreflow.constants import c
from poreflow.errors import ValidationError
from poreflow.types import FloatArray

if typing.TYPE_CHECKING:
    from poreflow.fluids.eos import MultiComponentMixture

__all__ = ["ConstantViscosities", "LBCViscosities", "compute_lbc_viscosity"]


def _as_vector(value: typing.Any) -> FloatArray:
    return np.atleast_1d(np.asarray(value, dtype=np.float64))


@attrs.frozen(eq=False)
class ConstantViscosities:
    """Pressure independent phase viscosities."""

    values: FloatArray = attrs.field(
        factory=lambda: c.DEFAULT_VISCOSITY, converter=_as_vector
    )
    """Viscosity per phase, or a single value for all phases (Pa·s)."""

    def __attrs_post_init__(self) -> None:
        if np.any(self.values <= 0.0):
            raise ValidationError("Viscosities must be positive.")

    def phase_values(self, number_of_phases: int) -> FloatArray:
        if self.values.size == 1:
            return np.full(number_of_phases, self.values[0])
        if self.values.size != number_of_phases:
            raise ValidationError(
                f"Expected {number_of_phases} viscosities, got {self.values.size}"
            )
        return self.values

    def __call__(self, pressure: FloatArray, number_of_phases: int) -> FloatArray:
        """
        :param pressure: Pressure per entity (Pa), used only for its length.
        :param number_of_phases: Number of phases.
        :return: Viscosities, shape (nph, n) (Pa·s).
        """
        n = np.asarray(pressure).shape[0]
        return np.repeat(self.phase_values(number_of_phases)[:, None], n, axis=1)


_LBC_COEFFICIENTS = np.array([0.1023, 0.023364, 0.058533, -0.040758, 0.0093324])


@numba.njit(cache=True)
def compute_lbc_viscosity(
    temperature: np.ndarray,
    mole_fractions: np.ndarray,
    molar_density: np.ndarray,
    molar_masses: np.ndarray,
    critical_pressures: np.ndarray,
    critical_temperatures: np.ndarray,
    critical_volumes: np.ndarray,
    coefficients: np.ndarray,
) -> np.ndarray:
    """
    Lohrenz-Bray-Clark viscosity of a hydrocarbon phase.

    Dilute gas viscosities follow Stiel and Thodos and are mixed with the
    Herning-Zipperer rule. The dense fluid correction is a quartic polynomial
    in the reduced density.

    :param temperature: Temperature per entity (K).
    :param mole_fractions: Phase composition, shape (ncomp, n).
    :param molar_density: Phase molar density per entity (mol/m³).
    :param molar_masses: Component molar masses (kg/mol).
    :param critical_pressures: Component critical pressures (Pa).
    :param critical_temperatures: Component critical temperatures (K).
    :param critical_volumes: Component critical molar volumes (m³/mol).
    :param coefficients: LBC polynomial coefficients.
    :return: Viscosity per entity (Pa·s).
    """
    ncomp, n = mole_fractions.shape
    mu = np.zeros(n)
    for i in range(n):
        T = temperature[i]
        num = 0.0
        den = 0.0
        tc_mix = 0.0
        mw_mix = 0.0
        pc_mix = 0.0
        vc_mix = 0.0
        for k in range(ncomp):
            x = mole_fractions[k, i]
            mw = molar_masses[k] * 1000.0
            pc_atm = critical_pressures[k] / 101325.0
            tr = T / critical_temperatures[k]
            zeta = critical_temperatures[k] ** (1.0 / 6.0) / (
                np.sqrt(mw) * pc_atm ** (2.0 / 3.0)
            )
            if tr <= 1.5:
                mu_k = 34e-5 * tr**0.94 / zeta
            else:
                mu_k = 17.78e-5 * (4.58 * tr - 1.67) ** 0.625 / zeta
            sqrt_mw = np.sqrt(mw)
            num += x * mu_k * sqrt_mw
            den += x * sqrt_mw
            tc_mix += x * critical_temperatures[k]
            mw_mix += x * mw
            pc_mix += x * pc_atm
            vc_mix += x * critical_volumes[k]
        mu_dilute = num / den if den > 0.0 else 0.0
        zeta_mix = tc_mix ** (1.0 / 6.0) / (np.sqrt(mw_mix) * pc_mix ** (2.0 / 3.0))
        rho_r = molar_density[i] * vc_mix
        poly = coefficients[0]
        power = 1.0
        for j in range(1, coefficients.shape[0]):
            power *= rho_r
            poly += coefficients[j] * power
        # Result in centipoise
        mu_cp = mu_dilute + (poly**4 - 1e-4) / zeta_mix
        mu[i] = mu_cp * 1e-3
    return mu


@attrs.frozen
class LBCViscosities:
    """Lohrenz-Bray-Clark viscosities for compositional liquid and vapor phases."""

    coefficients: typing.Tuple[float, ...] = tuple(_LBC_COEFFICIENTS)
    """Polynomial coefficients of the dense fluid correction."""

    def __call__(
        self,
        mixture: "MultiComponentMixture",
        temperature: FloatArray,
        mole_fractions: FloatArray,
        molar_density: FloatArray,
    ) -> FloatArray:
        """
        :param mixture: Component properties.
        :param temperature: Temperature per entity (K).
        :param mole_fractions: Phase composition, shape (ncomp, n).
        :param molar_density: Phase molar density per entity (mol/m³).
        :return: Viscosity per entity (Pa·s).
        """
        return compute_lbc_viscosity(
            np.ascontiguousarray(temperature, dtype=np.float64),
            np.ascontiguousarray(mole_fractions, dtype=np.float64),
            np.ascontiguousarray(molar_density, dtype=np.float64),
            mixture.molar_masses,
            mixture.critical_pressures,
            mixture.critical_temperatures,
            mixture.critical_volumes,
            np.asarray(self.coefficients, dtype=np.float64),
        )
