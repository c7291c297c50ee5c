"""Well targets, controls and operating limits."""

import logging
import typing

import attrs
import numpy as np

from poreflow.errors import ValidationError
from poreflow.types import FloatArray, Phase

logger = logging.getLogger(__name__)

__all__ = [
    "WellTarget",
    "BottomHolePressureTarget",
    "TotalRateTarget",
    "SurfaceWaterRateTarget",
    "SurfaceOilRateTarget",
    "SurfaceGasRateTarget",
    "SurfaceLiquidRateTarget",
    "WellControl",
    "InjectorControl",
    "ProducerControl",
    "DisabledControl",
    "LIMIT_TARGETS",
    "TARGET_KEYS",
    "active_target",
    "check_limits",
]


@attrs.frozen
class WellTarget:
    """Base class for well targets."""

    value: float = attrs.field(converter=float)
    """Target value, in Pa for pressures and m³/s (surface) for rates."""

    key: typing.ClassVar[str] = ""
    """Name of the quantity, also used as key in control limits."""
    phases: typing.ClassVar[typing.Optional[typing.Tuple[Phase, ...]]] = None
    """Phases whose surface volumes make up a rate target (None for all)."""


@attrs.frozen
class BottomHolePressureTarget(WellTarget):
    """Fixed bottom-hole (top node) pressure."""

    key: typing.ClassVar[str] = "bhp"

    def __attrs_post_init__(self) -> None:
        if self.value <= 0.0:
            raise ValidationError("Bottom-hole pressure target must be positive.")


@attrs.frozen
class TotalRateTarget(WellTarget):
    """Total surface volume rate."""

    key: typing.ClassVar[str] = "rate"


@attrs.frozen
class SurfaceWaterRateTarget(WellTarget):
    """Surface water (aqueous phase) volume rate."""

    key: typing.ClassVar[str] = "wrat"
    phases: typing.ClassVar[typing.Tuple[Phase, ...]] = (Phase.AQUEOUS,)


@attrs.frozen
class SurfaceOilRateTarget(WellTarget):
    """Surface oil (liquid phase) volume rate."""

    key: typing.ClassVar[str] = "orat"
    phases: typing.ClassVar[typing.Tuple[Phase, ...]] = (Phase.LIQUID,)


@attrs.frozen
class SurfaceGasRateTarget(WellTarget):
    """Surface gas (vapor phase) volume rate."""

    key: typing.ClassVar[str] = "grat"
    phases: typing.ClassVar[typing.Tuple[Phase, ...]] = (Phase.VAPOR,)


@attrs.frozen
class SurfaceLiquidRateTarget(WellTarget):
    """Surface liquid (water plus oil) volume rate."""

    key: typing.ClassVar[str] = "lrat"
    phases: typing.ClassVar[typing.Tuple[Phase, ...]] = (Phase.AQUEOUS, Phase.LIQUID)


LIMIT_TARGETS: typing.Dict[str, typing.Type[WellTarget]] = {
    target.key: target
    for target in (
        BottomHolePressureTarget,
        TotalRateTarget,
        SurfaceWaterRateTarget,
        SurfaceOilRateTarget,
        SurfaceGasRateTarget,
        SurfaceLiquidRateTarget,
    )
}


def _convert_limits(value: typing.Optional[typing.Mapping[str, float]]) -> typing.Dict[str, float]:
    if value is None:
        return {}
    limits = {}
    for key, limit in value.items():
        if key not in LIMIT_TARGETS:
            raise ValidationError(
                f"Unknown well limit {key!r}, expected one of {sorted(LIMIT_TARGETS)}"
            )
        limits[key] = float(limit)
    return limits


@attrs.frozen
class WellControl:
    """Base class for well controls."""

    def is_injector(self) -> bool:
        return False

    def is_producer(self) -> bool:
        return False


def _as_mix(value: typing.Any) -> FloatArray:
    mix = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if mix.ndim != 1 or np.any(mix < 0.0) or mix.sum() <= 0.0:
        raise ValidationError("Injection mix must be non-negative fractions with a positive sum.")
    return mix / mix.sum()


@attrs.frozen(eq=False)
class InjectorControl(WellControl):
    """
    Injector control.

    The injected stream composition `mix` holds mass fractions per component
    for immiscible systems and mole fractions for compositional systems.
    `density` is the surface density of the injected stream (kg/m³, or mol/m³
    for compositional systems) used to convert rates to surface volumes.
    Rate targets are positive.
    """

    target: WellTarget
    """Active target."""
    mix: FloatArray = attrs.field(converter=_as_mix)
    """Injected stream composition."""
    density: float = attrs.field(default=1.0, converter=float, validator=attrs.validators.gt(0))
    """Surface density of the injected stream."""
    limits: typing.Dict[str, float] = attrs.field(factory=dict, converter=_convert_limits)
    """Operating limits by target key. "bhp" is an upper bound, rates are upper bounds."""

    def __attrs_post_init__(self) -> None:
        if not isinstance(self.target, BottomHolePressureTarget) and self.target.value < 0.0:
            raise ValidationError("Injection rate targets must be positive.")
        for key, limit in self.limits.items():
            if key != "bhp" and limit < 0.0:
                raise ValidationError("Injection rate limits must be positive.")

    def is_injector(self) -> bool:
        return True

    def with_target(self, target: WellTarget) -> "InjectorControl":
        return attrs.evolve(self, target=target)


@attrs.frozen(eq=False)
class ProducerControl(WellControl):
    """
    Producer control.

    Rate targets and rate limits are negative (production). The bottom-hole
    pressure limit is a lower bound.
    """

    target: WellTarget
    """Active target."""
    limits: typing.Dict[str, float] = attrs.field(factory=dict, converter=_convert_limits)
    """Operating limits by target key."""

    def __attrs_post_init__(self) -> None:
        if not isinstance(self.target, BottomHolePressureTarget) and self.target.value > 0.0:
            raise ValidationError("Production rate targets must be negative.")
        for key, limit in self.limits.items():
            if key != "bhp" and limit > 0.0:
                raise ValidationError("Production rate limits must be negative.")

    def is_producer(self) -> bool:
        return True

    def with_target(self, target: WellTarget) -> "ProducerControl":
        return attrs.evolve(self, target=target)


@attrs.frozen
class DisabledControl(WellControl):
    """Shut well: the surface rate is zero."""


TARGET_KEYS: typing.Tuple[str, ...] = ("shut", *LIMIT_TARGETS)
"""Active target names by code, as recorded in the facility outputs of a state."""


def active_target(control: WellControl) -> typing.Tuple[int, float]:
    """
    Code (index into `TARGET_KEYS`) and value of the target a control operates on.

    Shut wells give `(0, 0.0)`.
    """
    if isinstance(control, (InjectorControl, ProducerControl)):
        return TARGET_KEYS.index(control.target.key), control.target.value
    return 0, 0.0


def check_limits(
    control: WellControl,
    bhp: float,
    surface_rates: typing.Mapping[str, float],
) -> typing.Optional[WellControl]:
    """
    Check a well's operating limits against its current state.

    :param control: Current control.
    :param bhp: Current bottom-hole pressure (Pa).
    :param surface_rates: Current surface rates by target key (m³/s).
    :return: A control switched to the first violated limit, or None.
    """
    if not isinstance(control, (InjectorControl, ProducerControl)):
        return None
    injector = isinstance(control, InjectorControl)
    for key, limit in control.limits.items():
        if key == control.target.key:
            continue
        current = bhp if key == "bhp" else surface_rates.get(key)
        if current is None:
            continue
        # Injector limits are upper bounds, producer limits lower bounds
        violated = current > limit if injector else current < limit
        if violated:
            return control.with_target(LIMIT_TARGETS[key](limit))
    return None
