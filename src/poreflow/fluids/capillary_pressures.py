import typing

import attrs
import numpy as np

from poreflow.errors import ValidationError
from poreflow.types import FloatArray

__all__ = ["BrooksCoreyCapillaryPressure"]


@attrs.frozen
class BrooksCoreyCapillaryPressure:
    """
    Brooks-Corey capillary pressure between a phase and the wetting reference phase.

    `pc = pe * Se ** (-1 / lambda)` with `Se = (S_w - Sr_w) / (1 - Sr_w)`,
    capped at `max_pressure`. The pressure of `phase` is the reference pressure
    plus `pc`. All other phases have zero capillary pressure.
    """

    entry_pressure: float = attrs.field(converter=float, validator=attrs.validators.ge(0))
    """Capillary entry pressure (Pa)."""
    exponent: float = attrs.field(default=2.0, converter=float, validator=attrs.validators.gt(0))
    """Pore size distribution index (lambda)."""
    residual: float = attrs.field(
        default=0.0,
        converter=float,
        validator=attrs.validators.and_(attrs.validators.ge(0), attrs.validators.lt(1)),
    )
    """Residual saturation of the wetting phase."""
    phase: int = 1
    """Index of the (non-wetting) phase the capillary pressure applies to."""
    wetting_phase: int = 0
    """Index of the wetting phase whose saturation controls the capillary pressure."""
    max_pressure: typing.Optional[float] = None
    """Upper bound on the capillary pressure (Pa). Defaults to 100 times the entry pressure."""

    def __attrs_post_init__(self) -> None:
        if self.phase == self.wetting_phase:
            raise ValidationError("Capillary phase must differ from the wetting phase.")

    def __call__(self, saturations: FloatArray) -> FloatArray:
        """
        :param saturations: Phase saturations, shape (nph, n).
        :return: Capillary pressures added to the reference pressure, shape (nph, n) (Pa).
        """
        nph, n = saturations.shape
        if max(self.phase, self.wetting_phase) >= nph:
            raise ValidationError(f"Capillary pressure phase index out of range for {nph} phases")
        cap = self.max_pressure if self.max_pressure is not None else 100.0 * self.entry_pressure
        se = (saturations[self.wetting_phase] - self.residual) / (1.0 - self.residual)
        se = np.clip(se, 1e-12, 1.0)
        pc = np.zeros((nph, n))
        pc[self.phase] = np.minimum(self.entry_pressure * se ** (-1.0 / self.exponent), cap)
        return pc
