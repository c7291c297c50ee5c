"""Cubic equations of state for multicomponent mixtures."""

import math
import typing

import attrs
import numba
import numpy as np

from poreflow.constants import c
from poreflow.errors import ValidationError
from poreflow.types import FloatArray

__all__ = [
    "MolecularProperty",
    "MultiComponentMixture",
    "PengRobinson",
    "SoaveRedlichKwong",
    "GenericCubicEOS",
]

LIQUID_ROOT = 0
VAPOR_ROOT = 1
GIBBS_ROOT = -1


@attrs.frozen
class MolecularProperty:
    """Critical properties of a pure component (SI units)."""

    molar_mass: float = attrs.field(converter=float, validator=attrs.validators.gt(0))
    """Molar mass (kg/mol)."""
    critical_pressure: float = attrs.field(converter=float, validator=attrs.validators.gt(0))
    """Critical pressure (Pa)."""
    critical_temperature: float = attrs.field(
        converter=float, validator=attrs.validators.gt(0)
    )
    """Critical temperature (K)."""
    critical_volume: float = attrs.field(converter=float, validator=attrs.validators.gt(0))
    """Critical molar volume (m³/mol)."""
    acentric_factor: float = attrs.field(converter=float)
    """Pitzer acentric factor."""


@attrs.frozen(eq=False, init=False)
class MultiComponentMixture:
    """A set of components with optional binary interaction coefficients."""

    components: typing.Tuple[MolecularProperty, ...]
    """Component properties."""
    names: typing.Tuple[str, ...]
    """Component names."""
    binary_interaction: FloatArray
    """Symmetric binary interaction coefficients, shape (ncomp, ncomp)."""

    def __init__(
        self,
        components: typing.Union[
            typing.Sequence[MolecularProperty], typing.Mapping[str, MolecularProperty]
        ],
        binary_interaction: typing.Optional[typing.Any] = None,
        names: typing.Optional[typing.Sequence[str]] = None,
    ) -> None:
        if isinstance(components, typing.Mapping):
            if names is None:
                names = list(components.keys())
            components = list(components.values())
        components = tuple(components)
        ncomp = len(components)
        if ncomp < 1:
            raise ValidationError("A mixture needs at least one component.")
        if names is None:
            names = [f"C{i + 1}" for i in range(ncomp)]
        if len(names) != ncomp:
            raise ValidationError(f"Expected {ncomp} component names, got {len(names)}")
        if binary_interaction is None:
            kij = np.zeros((ncomp, ncomp))
        else:
            kij = np.array(binary_interaction, dtype=np.float64)
            if kij.shape != (ncomp, ncomp):
                raise ValidationError(
                    f"Binary interaction matrix must have shape ({ncomp}, {ncomp}), got {kij.shape}"
                )
            if not np.allclose(kij, kij.T):
                raise ValidationError("Binary interaction matrix must be symmetric.")
            np.fill_diagonal(kij, 0.0)
        self.__attrs_init__(components, tuple(names), kij)

    @property
    def number_of_components(self) -> int:
        return len(self.components)

    @property
    def molar_masses(self) -> FloatArray:
        return np.array([comp.molar_mass for comp in self.components])

    @property
    def critical_pressures(self) -> FloatArray:
        return np.array([comp.critical_pressure for comp in self.components])

    @property
    def critical_temperatures(self) -> FloatArray:
        return np.array([comp.critical_temperature for comp in self.components])

    @property
    def critical_volumes(self) -> FloatArray:
        return np.array([comp.critical_volume for comp in self.components])

    @property
    def acentric_factors(self) -> FloatArray:
        return np.array([comp.acentric_factor for comp in self.components])

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(self.names)})"


@attrs.frozen
class PengRobinson:
    """Peng-Robinson (1978) cubic equation of state parameters."""

    omega_a: float = 0.45724
    omega_b: float = 0.07780
    delta_1: float = 1.0 + math.sqrt(2.0)
    delta_2: float = 1.0 - math.sqrt(2.0)
    kind_id: typing.ClassVar[int] = 0


@attrs.frozen
class SoaveRedlichKwong:
    """Soave-Redlich-Kwong cubic equation of state parameters."""

    omega_a: float = 0.42748
    omega_b: float = 0.08664
    delta_1: float = 1.0
    delta_2: float = 0.0
    kind_id: typing.ClassVar[int] = 1


CubicKind = typing.Union[PengRobinson, SoaveRedlichKwong]


@numba.njit(cache=True)
def _m_factor(omega: float, kind_id: int) -> float:
    if kind_id == 0:
        if omega <= 0.49:
            return 0.37464 + 1.54226 * omega - 0.26992 * omega**2
        return 0.379642 + 1.48503 * omega - 0.164423 * omega**2 + 0.016666 * omega**3
    return 0.48 + 1.574 * omega - 0.176 * omega**2


@numba.njit(cache=True)
def component_parameters(
    temperature: float,
    critical_temperatures: np.ndarray,
    critical_pressures: np.ndarray,
    acentric_factors: np.ndarray,
    kind_id: int,
    omega_a: float,
    omega_b: float,
    R: float,
) -> typing.Tuple[np.ndarray, np.ndarray]:
    """Temperature dependent attraction `a_i` and co-volume `b_i` of each component."""
    n = critical_temperatures.shape[0]
    ai = np.empty(n)
    bi = np.empty(n)
    for i in range(n):
        tc = critical_temperatures[i]
        pc = critical_pressures[i]
        m = _m_factor(acentric_factors[i], kind_id)
        alpha = (1.0 + m * (1.0 - np.sqrt(temperature / tc))) ** 2
        ai[i] = omega_a * (R * tc) ** 2 / pc * alpha
        bi[i] = omega_b * R * tc / pc
    return ai, bi


@numba.njit(cache=True)
def _cubic_roots(c2: float, c1: float, c0: float, B: float) -> typing.Tuple[float, float]:
    """
    Smallest and largest real root of `Z³ + c2 Z² + c1 Z + c0 = 0` above `B`.

    Cardano's method on the depressed cubic.
    """
    q = (3.0 * c1 - c2 * c2) / 9.0
    r = (9.0 * c2 * c1 - 27.0 * c0 - 2.0 * c2**3) / 54.0
    disc = q**3 + r * r
    shift = c2 / 3.0
    if disc >= 0.0:
        sq = np.sqrt(disc)
        u = r + sq
        v = r - sq
        s = math.copysign(abs(u) ** (1.0 / 3.0), u)
        t = math.copysign(abs(v) ** (1.0 / 3.0), v)
        z = s + t - shift
        return z, z

    theta = np.arccos(r / np.sqrt(-(q**3)))
    scale = 2.0 * np.sqrt(-q)
    z0 = scale * np.cos(theta / 3.0) - shift
    z1 = scale * np.cos((theta + 2.0 * np.pi) / 3.0) - shift
    z2 = scale * np.cos((theta + 4.0 * np.pi) / 3.0) - shift
    z_max = max(z0, max(z1, z2))
    z_min = min(z0, min(z1, z2))
    if z_min <= B:
        z_min = z_max
    return z_min, z_max


@numba.njit(cache=True)
def _ln_phi_at(
    Z: float,
    A: float,
    B: float,
    a: float,
    b: float,
    bi: np.ndarray,
    sum_xa: np.ndarray,
    d1: float,
    d2: float,
) -> np.ndarray:
    n = bi.shape[0]
    out = np.empty(n)
    log_term = np.log((Z + d1 * B) / (Z + d2 * B))
    base = -np.log(Z - B)
    for i in range(n):
        out[i] = (
            bi[i] / b * (Z - 1.0)
            + base
            - A / ((d1 - d2) * B) * (2.0 * sum_xa[i] / a - bi[i] / b) * log_term
        )
    return out


@numba.njit(cache=True)
def phase_ln_phi(
    pressure: float,
    temperature: float,
    x: np.ndarray,
    ai: np.ndarray,
    bi: np.ndarray,
    kij: np.ndarray,
    d1: float,
    d2: float,
    R: float,
    root: int,
) -> typing.Tuple[np.ndarray, float]:
    """
    Log fugacity coefficients and compressibility factor of a phase.

    :param root: 0 for the liquid (smallest) root, 1 for the vapor (largest)
        root, -1 for the root with the lowest Gibbs energy.
    """
    n = x.shape[0]
    sum_xa = np.zeros(n)
    a = 0.0
    b = 0.0
    for i in range(n):
        b += x[i] * bi[i]
        for j in range(n):
            sum_xa[i] += x[j] * np.sqrt(ai[i] * ai[j]) * (1.0 - kij[i, j])
        a += x[i] * sum_xa[i]
    RT = R * temperature
    A = a * pressure / (RT * RT)
    B = b * pressure / RT

    c2 = (d1 + d2 - 1.0) * B - 1.0
    c1 = A + d1 * d2 * B * B - (d1 + d2) * B * (B + 1.0)
    c0 = -(A * B + d1 * d2 * B * B * (B + 1.0))
    z_lo, z_hi = _cubic_roots(c2, c1, c0, B)

    if root == 0 or (root == -1 and z_lo == z_hi):
        return _ln_phi_at(z_lo, A, B, a, b, bi, sum_xa, d1, d2), z_lo
    if root == 1:
        return _ln_phi_at(z_hi, A, B, a, b, bi, sum_xa, d1, d2), z_hi

    ln_lo = _ln_phi_at(z_lo, A, B, a, b, bi, sum_xa, d1, d2)
    ln_hi = _ln_phi_at(z_hi, A, B, a, b, bi, sum_xa, d1, d2)
    g_lo = 0.0
    g_hi = 0.0
    for i in range(n):
        g_lo += x[i] * ln_lo[i]
        g_hi += x[i] * ln_hi[i]
    if g_lo <= g_hi:
        return ln_lo, z_lo
    return ln_hi, z_hi


@numba.njit(cache=True)
def _evaluate_phase(
    pressure: np.ndarray,
    temperature: np.ndarray,
    x: np.ndarray,
    critical_temperatures: np.ndarray,
    critical_pressures: np.ndarray,
    acentric_factors: np.ndarray,
    kij: np.ndarray,
    kind_id: int,
    omega_a: float,
    omega_b: float,
    d1: float,
    d2: float,
    R: float,
    root: int,
) -> typing.Tuple[np.ndarray, np.ndarray]:
    ncomp, n = x.shape
    Z = np.empty(n)
    ln_phi = np.empty((ncomp, n))
    for cell in range(n):
        ai, bi = component_parameters(
            temperature[cell],
            critical_temperatures,
            critical_pressures,
            acentric_factors,
            kind_id,
            omega_a,
            omega_b,
            R,
        )
        lp, z = phase_ln_phi(
            pressure[cell], temperature[cell], x[:, cell].copy(), ai, bi, kij, d1, d2, R, root
        )
        Z[cell] = z
        ln_phi[:, cell] = lp
    return Z, ln_phi


def _root_flag(phase: typing.Optional[str]) -> int:
    if phase is None:
        return GIBBS_ROOT
    if phase == "liquid":
        return LIQUID_ROOT
    if phase == "vapor":
        return VAPOR_ROOT
    raise ValidationError(f"Unknown phase {phase!r}, expected 'liquid', 'vapor' or None")


@attrs.frozen(eq=False)
class GenericCubicEOS:
    """
    Two-parameter cubic equation of state for a mixture.

    The cubic in the compressibility factor is

    `Z³ + ((δ1 + δ2 - 1) B - 1) Z² + (A + δ1 δ2 B² - (δ1 + δ2) B (B + 1)) Z - (A B + δ1 δ2 B² (B + 1)) = 0`

    with van der Waals mixing rules for `a` and `b`.
    """

    mixture: MultiComponentMixture
    """Mixture the equation of state describes."""
    kind: CubicKind = attrs.field(factory=PengRobinson)
    """Equation of state variant."""

    @property
    def number_of_components(self) -> int:
        return self.mixture.number_of_components

    @property
    def component_names(self) -> typing.Tuple[str, ...]:
        return self.mixture.names

    def kernel_arguments(self) -> typing.Tuple[typing.Any, ...]:
        """Arguments shared by the numba kernels, in kernel order."""
        mixture = self.mixture
        return (
            mixture.critical_temperatures,
            mixture.critical_pressures,
            mixture.acentric_factors,
            mixture.binary_interaction,
            self.kind.kind_id,
            self.kind.omega_a,
            self.kind.omega_b,
            self.kind.delta_1,
            self.kind.delta_2,
            float(c.UNIVERSAL_GAS_CONSTANT),
        )

    def _evaluate(
        self,
        pressure: typing.Any,
        temperature: typing.Any,
        mole_fractions: typing.Any,
        phase: typing.Optional[str],
    ) -> typing.Tuple[FloatArray, FloatArray]:
        x = np.asarray(mole_fractions, dtype=np.float64)
        if x.ndim == 1:
            x = x[:, None]
        ncomp, n = x.shape
        if ncomp != self.number_of_components:
            raise ValidationError(
                f"Expected {self.number_of_components} mole fractions per entity, got {ncomp}"
            )
        p = np.broadcast_to(np.asarray(pressure, dtype=np.float64), (n,)).copy()
        T = np.broadcast_to(np.asarray(temperature, dtype=np.float64), (n,)).copy()
        return _evaluate_phase(
            p, T, np.ascontiguousarray(x), *self.kernel_arguments(), _root_flag(phase)
        )

    def compressibility_factors(
        self,
        pressure: typing.Any,
        temperature: typing.Any,
        mole_fractions: typing.Any,
        phase: typing.Optional[str] = None,
    ) -> FloatArray:
        """
        Compressibility factor `Z` of a phase.

        :param pressure: Pressure (Pa), scalar or per entity.
        :param temperature: Temperature (K), scalar or per entity.
        :param mole_fractions: Composition, shape (ncomp,) or (ncomp, n).
        :param phase: "liquid", "vapor" or None for the stable root.
        :return: Compressibility factor per entity.
        """
        Z, _ = self._evaluate(pressure, temperature, mole_fractions, phase)
        return Z

    def fugacity_coefficients(
        self,
        pressure: typing.Any,
        temperature: typing.Any,
        mole_fractions: typing.Any,
        phase: typing.Optional[str] = None,
    ) -> FloatArray:
        """Fugacity coefficients, shape (ncomp, n)."""
        _, ln_phi = self._evaluate(pressure, temperature, mole_fractions, phase)
        return np.exp(ln_phi)

    def molar_densities(
        self,
        pressure: typing.Any,
        temperature: typing.Any,
        mole_fractions: typing.Any,
        phase: typing.Optional[str] = None,
    ) -> FloatArray:
        """Molar density `p / (Z R T)` per entity (mol/m³)."""
        Z = self.compressibility_factors(pressure, temperature, mole_fractions, phase)
        return np.asarray(pressure) / (Z * c.UNIVERSAL_GAS_CONSTANT * np.asarray(temperature))

    def mass_densities(
        self,
        pressure: typing.Any,
        temperature: typing.Any,
        mole_fractions: typing.Any,
        phase: typing.Optional[str] = None,
    ) -> FloatArray:
        """Mass density per entity (kg/m³)."""
        x = np.asarray(mole_fractions, dtype=np.float64)
        if x.ndim == 1:
            x = x[:, None]
        molar_mass = self.mixture.molar_masses @ x
        return self.molar_densities(pressure, temperature, x, phase) * molar_mass
