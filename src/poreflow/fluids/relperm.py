"""Relative permeability models for multiphase flow."""

import typing

import attrs
import numba
import numpy as np

from poreflow.errors import ValidationError
from poreflow.types import FloatArray, Phase

__all__ = ["BrooksCoreyRelPerm", "compute_brooks_corey_relative_permeabilities"]


@numba.njit(cache=True)
def compute_brooks_corey_relative_permeabilities(
    saturations: np.ndarray,
    exponents: np.ndarray,
    residuals: np.ndarray,
    endpoints: np.ndarray,
) -> np.ndarray:
    """
    Brooks-Corey relative permeabilities for any number of phases.

    `kr_a = endpoint_a * clamp((S_a - Sr_a) / (1 - sum(Sr)), 0, 1) ** n_a`

    :param saturations: Phase saturations, shape (nph, n).
    :param exponents: Corey exponent per phase.
    :param residuals: Residual saturation per phase.
    :param endpoints: Maximum relative permeability per phase.
    :return: Relative permeabilities, shape (nph, n).
    """
    nph, n = saturations.shape
    total_residual = 0.0
    for ph in range(nph):
        total_residual += residuals[ph]
    movable = 1.0 - total_residual
    kr = np.zeros((nph, n))
    if movable <= 1e-12:
        return kr
    for ph in range(nph):
        for i in range(n):
            s = (saturations[ph, i] - residuals[ph]) / movable
            if s < 0.0:
                s = 0.0
            elif s > 1.0:
                s = 1.0
            kr[ph, i] = endpoints[ph] * s ** exponents[ph]
    return kr


def _per_phase(value: typing.Any, count: int, name: str) -> FloatArray:
    array = np.asarray(value, dtype=np.float64)
    if array.ndim == 0:
        return np.full(count, float(array))
    if array.shape != (count,):
        raise ValidationError(
            f"'{name}' must be a scalar or have one entry per phase ({count}), got {array.shape}"
        )
    return array.copy()


@attrs.frozen(eq=False, init=False)
class BrooksCoreyRelPerm:
    """
    Brooks-Corey (power law) relative permeability for an arbitrary number of phases.

    Exponents, residual saturations and endpoints may be given as scalars
    (applied to every phase) or with one entry per phase.
    """

    number_of_phases: int
    """Number of phases the model applies to."""
    exponents: FloatArray
    """Corey exponent per phase."""
    residuals: FloatArray
    """Residual saturation per phase."""
    endpoints: FloatArray
    """Endpoint (maximum) relative permeability per phase."""

    def __init__(
        self,
        phases_or_count: typing.Union[int, typing.Sequence[Phase], typing.Any],
        exponents: typing.Any = 1.0,
        residuals: typing.Any = 0.0,
        endpoints: typing.Any = 1.0,
    ) -> None:
        """
        :param phases_or_count: Number of phases, a sequence of phases, or a
            system exposing `number_of_phases`.
        :param exponents: Corey exponent(s).
        :param residuals: Residual saturation(s).
        :param endpoints: Endpoint relative permeability (or permeabilities).
        """
        if isinstance(phases_or_count, (int, np.integer)):
            count = int(phases_or_count)
        elif hasattr(phases_or_count, "number_of_phases"):
            count = int(phases_or_count.number_of_phases)
        else:
            count = len(phases_or_count)
        if count < 1:
            raise ValidationError("At least one phase is required.")
        exponents = _per_phase(exponents, count, "exponents")
        residuals = _per_phase(residuals, count, "residuals")
        endpoints = _per_phase(endpoints, count, "endpoints")
        if np.any(exponents <= 0.0):
            raise ValidationError("Corey exponents must be positive.")
        if np.any(residuals < 0.0) or residuals.sum() >= 1.0:
            raise ValidationError(
                "Residual saturations must be non-negative and sum to less than one."
            )
        if np.any(endpoints < 0.0):
            raise ValidationError("Endpoint relative permeabilities must be non-negative.")
        self.__attrs_init__(count, exponents, residuals, endpoints)

    def __call__(self, saturations: FloatArray) -> FloatArray:
        """
        Evaluate relative permeabilities.

        :param saturations: Phase saturations, shape (nph, n).
        :return: Relative permeabilities, shape (nph, n).
        """
        saturations = np.atleast_2d(np.asarray(saturations, dtype=np.float64))
        if saturations.shape[0] != self.number_of_phases:
            raise ValidationError(
                f"Expected saturations for {self.number_of_phases} phases, got {saturations.shape[0]}"
            )
        return compute_brooks_corey_relative_permeabilities(
            np.ascontiguousarray(saturations),
            self.exponents,
            self.residuals,
            self.endpoints,
        )
