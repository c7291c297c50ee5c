"""Physical constants, unit conversion factors and simulation defaults (SI units)."""

from contextlib import contextmanager
from contextvars import ContextVar
import typing

import attrs


__all__ = ["Constant", "Constants", "c"]


@attrs.frozen(slots=True)
class Constant:
    """A named value with an optional unit."""

    value: typing.Any
    """Value in SI units."""
    description: typing.Optional[str] = None
    """What the value stands for."""
    unit: typing.Optional[str] = None
    """Unit of `value`."""


_DEFAULTS: typing.Tuple[typing.Tuple[str, Constant], ...] = (
    # Multiply by these to convert field units into SI
    ("DARCY", Constant(9.869232667160130e-13, "Darcy", "m²")),
    ("MILLIDARCY", Constant(9.869232667160130e-16, "Millidarcy", "m²")),
    ("BAR", Constant(1e5, "Bar", "Pa")),
    ("ATMOSPHERE", Constant(101325.0, "Standard atmosphere", "Pa")),
    ("PSI", Constant(6894.757293168, "Pound per square inch", "Pa")),
    ("CENTIPOISE", Constant(1e-3, "Centipoise", "Pa·s")),
    ("DAY", Constant(86400.0, "Day", "s")),
    ("YEAR", Constant(365.0 * 86400.0, "Year of 365 days", "s")),
    ("STB", Constant(0.158987294928, "Stock tank barrel", "m³")),
    ("ACCELERATION_DUE_TO_GRAVITY", Constant(9.80665, "Gravitational acceleration", "m/s²")),
    ("UNIVERSAL_GAS_CONSTANT", Constant(8.3144598, "Molar gas constant", "J/(mol·K)")),
    ("STANDARD_PRESSURE", Constant(101325.0, "Surface pressure", "Pa")),
    ("STANDARD_TEMPERATURE", Constant(288.15, "Surface temperature", "K")),
    ("DEFAULT_REFERENCE_DENSITY", Constant(1000.0, "Phase density at reference pressure", "kg/m³")),
    ("DEFAULT_PHASE_COMPRESSIBILITY", Constant(1e-10, "Phase compressibility", "1/Pa")),
    ("DEFAULT_REFERENCE_PRESSURE", Constant(1e5, "Reference pressure of densities", "Pa")),
    ("DEFAULT_VISCOSITY", Constant(1e-3, "Phase viscosity", "Pa·s")),
    ("DEFAULT_PERMEABILITY", Constant(9.869232667160130e-14, "Rock permeability", "m²")),
    ("DEFAULT_POROSITY", Constant(0.1, "Rock porosity")),
    ("DEFAULT_TEMPERATURE", Constant(303.15, "Reservoir temperature", "K")),
    ("DEFAULT_WELLBORE_RADIUS", Constant(0.1, "Well-bore radius", "m")),
    ("MINIMUM_MOLE_FRACTION", Constant(1e-12, "Floor on mole fractions")),
)


class Constants:
    """
    Set of constants readable as attributes (`constants.DARCY`).

    Keyword arguments override or add entries, either as plain values or as
    `Constant` objects. Calling an instance gives a context manager within
    which the module level proxy `c` resolves to it::

        with Constants(UNIVERSAL_GAS_CONSTANT=8.314)():
            ...
    """

    __slots__ = ("_entries",)

    def __init__(self, **overrides: typing.Any) -> None:
        entries = dict(_DEFAULTS)
        for name, value in overrides.items():
            entries[name] = value if isinstance(value, Constant) else Constant(value)
        object.__setattr__(self, "_entries", entries)

    def __getattr__(self, name: str) -> typing.Any:
        try:
            return self._entries[name].value
        except KeyError:
            raise AttributeError(f"No constant named {name!r}") from None

    def __setattr__(self, name: str, value: typing.Any) -> None:
        raise AttributeError("Constants are read-only; pass overrides to `Constants(...)`")

    def __getitem__(self, name: str) -> Constant:
        return self._entries[name]

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def names(self) -> typing.Tuple[str, ...]:
        return tuple(self._entries)

    @contextmanager
    def __call__(self) -> typing.Iterator["Constants"]:
        token = _active.set(self)
        try:
            yield self
        finally:
            _active.reset(token)

    def __repr__(self) -> str:
        return f"Constants({len(self._entries)} entries)"


_active: ContextVar[Constants] = ContextVar("poreflow_constants", default=Constants())


class _ActiveConstants:
    def __getattr__(self, name: str) -> typing.Any:
        return getattr(_active.get(), name)

    def __getitem__(self, name: str) -> Constant:
        return _active.get()[name]

    def __repr__(self) -> str:
        return repr(_active.get())


c = _ActiveConstants()
"""Constants of the current context."""
