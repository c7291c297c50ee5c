"""Primary variables and their Newton update rules."""

import typing

import attrs
import numpy as np

from poreflow.constants import c
from poreflow.types import FloatArray

if typing.TYPE_CHECKING:
    from poreflow.config import Config

__all__ = [
    "PrimaryVariable",
    "Pressure",
    "Saturations",
    "OverallMoleFractions",
    "ScalarVariable",
    "SurfaceRate",
]


@attrs.frozen
class PrimaryVariable:
    """
    A named state variable solved for by Newton's method.

    State values of a variable have shape (n,) for scalar variables or
    (k, n) for fraction variables. The primary unknowns always have shape
    (count, n).
    """

    name: str
    """Name of the variable in state mappings."""

    @property
    def count(self) -> int:
        """Number of primary unknowns per entity."""
        return 1

    @property
    def bounds(self) -> typing.Tuple[float, float]:
        """Lower and upper bound of each primary unknown."""
        return (-np.inf, np.inf)

    @property
    def perturbation_scale(self) -> float:
        """Typical magnitude used to size finite-difference perturbations."""
        return 1.0

    def value_shape(self, n: int) -> typing.Tuple[int, ...]:
        return (n,)

    def to_primary(self, values: FloatArray) -> FloatArray:
        return np.asarray(values, dtype=np.float64).reshape(1, -1)

    def from_primary(self, primary: FloatArray) -> FloatArray:
        return primary[0].copy()

    def limit_update(self, primary: FloatArray, dx: FloatArray, config: "Config") -> FloatArray:
        """Limit a Newton update `dx` of the unknowns `primary`."""
        return dx

    def project(self, primary: FloatArray) -> FloatArray:
        """Project updated unknowns back into their admissible set."""
        return primary


@attrs.frozen
class Pressure(PrimaryVariable):
    """Pressure with a relative change limit."""

    name: str = "pressure"

    @property
    def bounds(self) -> typing.Tuple[float, float]:
        return (0.0, np.inf)

    @property
    def perturbation_scale(self) -> float:
        return float(c.BAR)

    def limit_update(self, primary: FloatArray, dx: FloatArray, config: "Config") -> FloatArray:
        max_change = config.max_pressure_change * np.abs(primary)
        return np.clip(dx, -max_change, max_change)

    def project(self, primary: FloatArray, minimum: float = 0.0) -> FloatArray:
        return np.maximum(primary, minimum)


@attrs.frozen
class _Fractions(PrimaryVariable):
    """Fractions summing to one with the last fraction eliminated."""

    number: int = 2
    """Number of fractions (including the eliminated one)."""

    @property
    def count(self) -> int:
        return self.number - 1

    @property
    def bounds(self) -> typing.Tuple[float, float]:
        return (0.0, 1.0)

    def value_shape(self, n: int) -> typing.Tuple[int, ...]:
        return (self.number, n)

    def to_primary(self, values: FloatArray) -> FloatArray:
        return np.asarray(values, dtype=np.float64)[:-1].copy()

    def from_primary(self, primary: FloatArray) -> FloatArray:
        last = 1.0 - primary.sum(axis=0)
        return np.vstack([primary, last[None, :]])

    def _max_change(self, config: "Config") -> float:
        raise NotImplementedError

    def limit_update(self, primary: FloatArray, dx: FloatArray, config: "Config") -> FloatArray:
        """
        Scale the update per entity so that no fraction, including the
        eliminated one, changes by more than the configured maximum.
        """
        full = np.vstack([dx, -dx.sum(axis=0)[None, :]])
        largest = np.abs(full).max(axis=0)
        limit = self._max_change(config)
        factor = np.where(largest > limit, limit / np.maximum(largest, 1e-300), 1.0)
        return dx * factor[None, :]

    def project(self, primary: FloatArray) -> FloatArray:
        clipped = np.clip(primary, 0.0, 1.0)
        total = clipped.sum(axis=0)
        scale = np.where(total > 1.0, 1.0 / np.maximum(total, 1e-300), 1.0)
        return clipped * scale[None, :]


@attrs.frozen
class Saturations(_Fractions):
    """Phase saturations (Appleyard chop on updates)."""

    name: str = "saturations"

    def _max_change(self, config: "Config") -> float:
        return config.max_saturation_change


@attrs.frozen
class OverallMoleFractions(_Fractions):
    """Overall component mole fractions."""

    name: str = "overall_mole_fractions"

    def _max_change(self, config: "Config") -> float:
        return config.max_composition_change

    def project(self, primary: FloatArray) -> FloatArray:
        floor = float(c.MINIMUM_MOLE_FRACTION)
        projected = super().project(primary)
        return np.maximum(projected, floor)


@attrs.frozen
class ScalarVariable(PrimaryVariable):
    """Unbounded scalar field (temperature, potential) with an optional absolute change limit."""

    max_change: typing.Optional[float] = None
    """Largest absolute change per Newton update."""

    def limit_update(self, primary: FloatArray, dx: FloatArray, config: "Config") -> FloatArray:
        if self.max_change is None:
            return dx
        return np.clip(dx, -self.max_change, self.max_change)


@attrs.frozen
class SurfaceRate(PrimaryVariable):
    """Well surface rate in conserved units per second (positive for injection)."""

    name: str = "surface_rate"

    @property
    def perturbation_scale(self) -> float:
        return 1e-3
