import typing

import attrs
import numpy as np

from poreflow.constants import c
from poreflow.errors import ValidationError
from poreflow.types import FloatArray

__all__ = ["ConstantCompressibilityDensities"]


def _as_vector(value: typing.Any) -> FloatArray:
    return np.atleast_1d(np.asarray(value, dtype=np.float64))


@attrs.frozen(eq=False)
class ConstantCompressibilityDensities:
    """
    Phase mass densities with constant isothermal compressibility.

    `rho_a(p) = rho_ref_a * exp(c_a * (p - p_ref))`

    Reference densities and compressibilities are given per phase, or as
    scalars shared by all phases.
    """

    reference_pressure: float = attrs.field(
        factory=lambda: c.DEFAULT_REFERENCE_PRESSURE, converter=float
    )
    """Pressure at which the phases have their reference density (Pa)."""
    reference_densities: FloatArray = attrs.field(
        factory=lambda: c.DEFAULT_REFERENCE_DENSITY, converter=_as_vector
    )
    """Phase mass densities at the reference pressure (kg/m³)."""
    compressibilities: FloatArray = attrs.field(
        factory=lambda: c.DEFAULT_PHASE_COMPRESSIBILITY, converter=_as_vector
    )
    """Phase compressibilities (1/Pa)."""

    def __attrs_post_init__(self) -> None:
        if np.any(self.reference_densities <= 0.0):
            raise ValidationError("Reference densities must be positive.")
        if np.any(self.compressibilities < 0.0):
            raise ValidationError("Compressibilities must be non-negative.")
        sizes = {self.reference_densities.size, self.compressibilities.size} - {1}
        if len(sizes) > 1:
            raise ValidationError(
                "Reference densities and compressibilities must have matching lengths."
            )

    def __call__(self, pressure: FloatArray, number_of_phases: int) -> FloatArray:
        """
        :param pressure: Pressure per entity (Pa).
        :param number_of_phases: Number of phases in the system.
        :return: Mass densities, shape (nph, n) (kg/m³).
        """
        rho_ref = self.phase_values(self.reference_densities, number_of_phases)
        comp = self.phase_values(self.compressibilities, number_of_phases)
        dp = np.asarray(pressure, dtype=np.float64)[None, :] - self.reference_pressure
        return rho_ref[:, None] * np.exp(comp[:, None] * dp)

    @staticmethod
    def phase_values(values: FloatArray, number_of_phases: int) -> FloatArray:
        if values.size == 1:
            return np.full(number_of_phases, values[0])
        if values.size != number_of_phases:
            raise ValidationError(
                f"Expected {number_of_phases} per-phase values, got {values.size}"
            )
        return values
