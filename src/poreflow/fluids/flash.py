"""
Isothermal two-phase (liquid-vapor) flash for cubic equations of state.

The flash runs cell by cell in numba kernels: a stability test decides
whether a mixture splits, successive substitution converges the split and
Li's rule labels single-phase mixtures.
"""

import logging
import typing

import attrs
import numba
import numpy as np

from poreflow.constants import c
from poreflow.errors import ComputationError
from poreflow.fluids.eos import GenericCubicEOS, component_parameters, phase_ln_phi
from poreflow.types import FloatArray

logger = logging.getLogger(__name__)

__all__ = [
    "LIQUID_STATE",
    "VAPOR_STATE",
    "TWO_PHASE_STATE",
    "wilson_k_values",
    "rachford_rice",
    "FlashResults",
    "flash_mixture",
]

LIQUID_STATE = 0
VAPOR_STATE = 1
TWO_PHASE_STATE = 2


@numba.njit(cache=True)
def wilson_k_values(
    pressure: float,
    temperature: float,
    critical_pressures: np.ndarray,
    critical_temperatures: np.ndarray,
    acentric_factors: np.ndarray,
) -> np.ndarray:
    """Wilson correlation `K_i = Pc_i / p * exp(5.373 (1 + w_i) (1 - Tc_i / T))`."""
    n = critical_pressures.shape[0]
    K = np.empty(n)
    for i in range(n):
        K[i] = (
            critical_pressures[i]
            / pressure
            * np.exp(5.373 * (1.0 + acentric_factors[i]) * (1.0 - critical_temperatures[i] / temperature))
        )
    return K


@numba.njit(cache=True)
def _rr_function(V: float, z: np.ndarray, K: np.ndarray) -> typing.Tuple[float, float]:
    f = 0.0
    df = 0.0
    for i in range(z.shape[0]):
        km1 = K[i] - 1.0
        den = 1.0 + V * km1
        f += z[i] * km1 / den
        df -= z[i] * km1 * km1 / (den * den)
    return f, df


@numba.njit(cache=True)
def rachford_rice(
    z: np.ndarray,
    K: np.ndarray,
    tol: float = 1e-14,
    max_iterations: int = 200,
) -> float:
    """
    Solve the Rachford-Rice equation for the vapor mole fraction.

    Newton iterations are safeguarded by bisection inside the bracket between
    the two asymptotes `1 / (1 - K_max)` and `1 / (1 - K_min)`. The returned
    value may lie outside [0, 1] (negative flash).

    :return: Vapor mole fraction, or NaN if all K-values lie on one side of one.
    """
    k_max = K.max()
    k_min = K.min()
    if k_max <= 1.0 or k_min >= 1.0:
        return np.nan
    lo = 1.0 / (1.0 - k_max)
    hi = 1.0 / (1.0 - k_min)
    margin = 1e-12 * (hi - lo)
    lo += margin
    hi -= margin
    V = 0.5 * (lo + hi)
    if lo < 0.0 < hi:
        V = min(max(0.5, lo), hi)
    for _ in range(max_iterations):
        f, df = _rr_function(V, z, K)
        # f is strictly decreasing in V
        if f > 0.0:
            lo = V
        else:
            hi = V
        if abs(f) < tol:
            return V
        step = V - f / df if df != 0.0 else 0.5 * (lo + hi)
        if step <= lo or step >= hi:
            step = 0.5 * (lo + hi)
        if abs(step - V) < tol * max(1.0, abs(V)):
            return step
        V = step
    return V


@numba.njit(cache=True)
def _stability_trial(
    pressure: float,
    temperature: float,
    z: np.ndarray,
    d: np.ndarray,
    W0: np.ndarray,
    ai: np.ndarray,
    bi: np.ndarray,
    kij: np.ndarray,
    d1: float,
    d2: float,
    R: float,
    root: int,
) -> typing.Tuple[bool, np.ndarray]:
    """Michelsen tangent plane distance iterations for one trial phase."""
    n = z.shape[0]
    W = W0.copy()
    for _ in range(200):
        total = W.sum()
        x = W / total
        ln_phi, _ = phase_ln_phi(pressure, temperature, x, ai, bi, kij, d1, d2, R, root)
        W_new = np.exp(d - ln_phi)
        change = 0.0
        trivial = 0.0
        for i in range(n):
            change += (np.log(W_new[i]) - np.log(W[i])) ** 2
            trivial += (np.log(W_new[i] / z[i])) ** 2
        W = W_new
        if trivial < 1e-8:
            return False, W
        if change < 1e-20:
            break
    return W.sum() > 1.0 + 1e-8, W


@numba.njit(cache=True)
def _stability_test(
    pressure: float,
    temperature: float,
    z: np.ndarray,
    K: np.ndarray,
    ai: np.ndarray,
    bi: np.ndarray,
    kij: np.ndarray,
    d1: float,
    d2: float,
    R: float,
) -> typing.Tuple[bool, np.ndarray]:
    """
    Two-sided Michelsen stability test.

    :return: Whether the mixture is stable, and K-value estimates for the split if not.
    """
    ln_phi_z, _ = phase_ln_phi(pressure, temperature, z, ai, bi, kij, d1, d2, R, -1)
    d = np.log(z) + ln_phi_z
    vapor_unstable, Wv = _stability_trial(
        pressure, temperature, z, d, z * K, ai, bi, kij, d1, d2, R, 1
    )
    liquid_unstable, Wl = _stability_trial(
        pressure, temperature, z, d, z / K, ai, bi, kij, d1, d2, R, 0
    )
    if not (vapor_unstable or liquid_unstable):
        return True, K
    if vapor_unstable and liquid_unstable:
        K_new = (Wv / Wv.sum()) / (Wl / Wl.sum())
    elif vapor_unstable:
        K_new = (Wv / Wv.sum()) / z
    else:
        K_new = z / (Wl / Wl.sum())
    return False, K_new


@numba.njit(cache=True)
def _li_label(
    temperature: float,
    z: np.ndarray,
    critical_temperatures: np.ndarray,
    critical_volumes: np.ndarray,
) -> int:
    """Label a single-phase mixture with Li's pseudo-critical temperature."""
    num = 0.0
    den = 0.0
    for i in range(z.shape[0]):
        w = z[i] * critical_volumes[i]
        num += w * critical_temperatures[i]
        den += w
    if temperature > num / den:
        return VAPOR_STATE
    return LIQUID_STATE


@numba.njit(cache=True)
def _flash_kernel(
    pressure: np.ndarray,
    temperature: np.ndarray,
    z_all: np.ndarray,
    K_all: np.ndarray,
    warm: np.ndarray,
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
    critical_volumes: np.ndarray,
    z_floor: float,
    tol: float,
    max_iterations: int,
):
    ncomp, n = z_all.shape
    V_out = np.zeros(n)
    x_out = np.zeros((ncomp, n))
    y_out = np.zeros((ncomp, n))
    ZL = np.zeros(n)
    ZV = np.zeros(n)
    state = np.zeros(n, dtype=np.int64)
    K_out = np.zeros((ncomp, n))
    failed = np.zeros(n, dtype=np.bool_)

    for cell in range(n):
        p = pressure[cell]
        T = temperature[cell]
        z = np.maximum(z_all[:, cell], z_floor)
        z = z / z.sum()
        ai, bi = component_parameters(
            T, critical_temperatures, critical_pressures, acentric_factors,
            kind_id, omega_a, omega_b, R,
        )
        K = K_all[:, cell].copy()
        valid = True
        for i in range(ncomp):
            if not (K[i] > 0.0 and np.isfinite(K[i])):
                valid = False
        if not valid:
            K = wilson_k_values(p, T, critical_pressures, critical_temperatures, acentric_factors)

        split = False
        V = np.nan
        if warm[cell] and valid:
            V = rachford_rice(z, K)
            split = np.isfinite(V) and 0.0 < V < 1.0
        if not split:
            stable, K_trial = _stability_test(p, T, z, K, ai, bi, kij, d1, d2, R)
            if not stable:
                K = K_trial
                V = rachford_rice(z, K)
                split = np.isfinite(V)

        if split:
            converged = False
            err = np.inf
            x = z.copy()
            y = z.copy()
            for _ in range(max_iterations):
                V = rachford_rice(z, K)
                if not np.isfinite(V):
                    break
                V = min(max(V, 0.0), 1.0)
                for i in range(ncomp):
                    x[i] = z[i] / (1.0 + V * (K[i] - 1.0))
                    y[i] = K[i] * x[i]
                x = x / x.sum()
                y = y / y.sum()
                ln_l, zl = phase_ln_phi(p, T, x, ai, bi, kij, d1, d2, R, 0)
                ln_v, zv = phase_ln_phi(p, T, y, ai, bi, kij, d1, d2, R, 1)
                err = 0.0
                for i in range(ncomp):
                    r = np.log(x[i]) + ln_l[i] - np.log(y[i]) - ln_v[i]
                    err += r * r
                    K[i] = np.exp(ln_l[i] - ln_v[i])
                ZL[cell] = zl
                ZV[cell] = zv
                if err < tol * tol:
                    converged = True
                    break
            if not converged and not (err < 1e-12):
                failed[cell] = True
            V = rachford_rice(z, K)
            if np.isfinite(V) and 0.0 < V < 1.0:
                for i in range(ncomp):
                    x[i] = z[i] / (1.0 + V * (K[i] - 1.0))
                    y[i] = K[i] * x[i]
                x_out[:, cell] = x / x.sum()
                y_out[:, cell] = y / y.sum()
                V_out[cell] = V
                state[cell] = TWO_PHASE_STATE
                K_out[:, cell] = K
                continue

        # Single phase
        label = _li_label(T, z, critical_temperatures, critical_volumes)
        _, zz = phase_ln_phi(p, T, z, ai, bi, kij, d1, d2, R, -1)
        x_out[:, cell] = z
        y_out[:, cell] = z
        ZL[cell] = zz
        ZV[cell] = zz
        state[cell] = label
        V_out[cell] = 1.0 if label == VAPOR_STATE else 0.0
        K_out[:, cell] = K
    return V_out, x_out, y_out, ZL, ZV, state, K_out, failed


@attrs.frozen(eq=False)
class FlashResults:
    """Outcome of a flash over a set of entities."""

    vapor_fraction: FloatArray
    """Vapor mole fraction `V` per entity."""
    liquid_mole_fractions: FloatArray
    """Liquid composition, shape (ncomp, n)."""
    vapor_mole_fractions: FloatArray
    """Vapor composition, shape (ncomp, n)."""
    liquid_compressibility: FloatArray
    """Liquid compressibility factor per entity."""
    vapor_compressibility: FloatArray
    """Vapor compressibility factor per entity."""
    phase_state: np.ndarray
    """0 for liquid only, 1 for vapor only, 2 for two phases."""
    k_values: FloatArray
    """Equilibrium ratios (used to warm start the next flash), shape (ncomp, n)."""

    @property
    def two_phase(self) -> np.ndarray:
        return self.phase_state == TWO_PHASE_STATE


def flash_mixture(
    eos: GenericCubicEOS,
    pressure: typing.Any,
    temperature: typing.Any,
    overall_mole_fractions: FloatArray,
    k_values: typing.Optional[FloatArray] = None,
    phase_state: typing.Optional[np.ndarray] = None,
    tol: float = 1e-11,
    max_iterations: int = 1000,
) -> FlashResults:
    """
    Flash a set of mixtures at given pressures and temperatures.

    :param eos: Equation of state.
    :param pressure: Pressure per entity (Pa).
    :param temperature: Temperature per entity (K).
    :param overall_mole_fractions: Overall composition, shape (ncomp, n).
    :param k_values: K-values from a previous flash, used as a starting point.
    :param phase_state: Phase state from a previous flash. Two-phase entities
        skip the stability test when the warm start still splits.
    :param tol: Tolerance on the fugacity equality residual.
    :param max_iterations: Maximum successive substitution iterations.
    :return: `FlashResults`.
    :raises ComputationError: If the flash fails to converge for some entity.
    """
    z = np.ascontiguousarray(overall_mole_fractions, dtype=np.float64)
    ncomp, n = z.shape
    p = np.broadcast_to(np.asarray(pressure, dtype=np.float64), (n,)).copy()
    T = np.broadcast_to(np.asarray(temperature, dtype=np.float64), (n,)).copy()
    if np.any(p <= 0.0) or not np.all(np.isfinite(p)):
        raise ComputationError("Flash requires positive, finite pressures.")
    if k_values is None:
        K = np.full((ncomp, n), np.nan)
        warm = np.zeros(n, dtype=np.bool_)
    else:
        K = np.ascontiguousarray(k_values, dtype=np.float64)
        if phase_state is None:
            warm = np.ones(n, dtype=np.bool_)
        else:
            warm = np.asarray(phase_state) == TWO_PHASE_STATE
    mixture = eos.mixture
    V, x, y, ZL, ZV, state, K_out, failed = _flash_kernel(
        p,
        T,
        z,
        K,
        warm,
        *eos.kernel_arguments(),
        mixture.critical_volumes,
        float(c.MINIMUM_MOLE_FRACTION),
        tol,
        max_iterations,
    )
    if failed.any():
        raise ComputationError(
            f"Flash did not converge in {int(failed.sum())} of {n} cells "
            f"(first failing cell {int(np.argmax(failed))})"
        )
    return FlashResults(
        vapor_fraction=V,
        liquid_mole_fractions=x,
        vapor_mole_fractions=y,
        liquid_compressibility=ZL,
        vapor_compressibility=ZV,
        phase_state=state,
        k_values=K_out,
    )
