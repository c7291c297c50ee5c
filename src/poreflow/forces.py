"""Source terms, boundary conditions and well controls driving a simulation."""

import logging
import typing

import attrs
import numpy as np

from poreflow.errors import ValidationError
from poreflow.models import ReservoirModel, SimulationModel, reservoir_model
from poreflow.systems.base import FlowSystem
from poreflow.systems.compositional import CompositionalSystem
from poreflow.types import FloatArray
from poreflow.wells.controls import (
    DisabledControl,
    InjectorControl,
    LIMIT_TARGETS,
    ProducerControl,
    WellControl,
)

logger = logging.getLogger(__name__)

__all__ = [
    "SourceTerm",
    "PoissonSource",
    "FlowBoundaryCondition",
    "Forces",
    "setup_forces",
    "setup_reservoir_forces",
]


def _as_fractions(value: typing.Any) -> typing.Optional[FloatArray]:
    if value is None:
        return None
    fractions = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if fractions.ndim != 1 or np.any(fractions < 0.0) or fractions.sum() <= 0.0:
        raise ValidationError("Fractional flow must be non-negative with a positive sum.")
    return fractions / fractions.sum()


@attrs.frozen(eq=False)
class SourceTerm:
    """
    Source (positive) or sink (negative) in a single cell.

    For flow systems the value is a mass rate (kg/s) or, with `kind="volume"`,
    a reservoir volume rate (m³/s). Injection uses `fractional_flow` (mass
    fractions per component for immiscible systems, volume fractions per phase
    for volume sources and mole fractions for compositional systems), or the
    resident fluid when it is not given. Production takes the fluid flowing
    out of the cell.
    """

    cell: int = attrs.field(converter=int)
    """Cell index."""
    value: float = attrs.field(converter=float)
    """Rate, positive for injection."""
    fractional_flow: typing.Optional[FloatArray] = attrs.field(
        default=None, converter=_as_fractions
    )
    """Composition of the injected stream."""
    kind: typing.Literal["mass", "volume"] = attrs.field(
        default="mass", validator=attrs.validators.in_(("mass", "volume"))
    )
    """Whether `value` is a mass or a reservoir volume rate."""


@attrs.frozen(eq=False)
class PoissonSource(SourceTerm):
    """Right hand side contribution `f` of a Poisson (or heat) problem in a cell."""


@attrs.frozen(eq=False)
class FlowBoundaryCondition:
    """
    Fixed value boundary coupled to a cell through a transmissibility.

    For flow systems `pressure` is the boundary pressure; fluid enters with
    `fractional_flow` (or the resident composition) when the boundary pressure
    is higher than the cell pressure. For scalar systems it is the boundary
    value of the unknown.
    """

    cell: int = attrs.field(converter=int)
    """Cell index."""
    pressure: float = attrs.field(converter=float)
    """Boundary pressure (Pa) or boundary value."""
    fractional_flow: typing.Optional[FloatArray] = attrs.field(
        default=None, converter=_as_fractions
    )
    """Composition of inflowing fluid."""
    trans_flow: typing.Optional[float] = attrs.field(
        default=None,
        converter=attrs.converters.optional(float),
        validator=attrs.validators.optional(attrs.validators.ge(0)),
    )
    """Boundary transmissibility. Defaults to the cell's boundary half transmissibilities."""


@attrs.frozen(eq=False)
class Forces:
    """Forces acting during a report step."""

    sources: typing.Tuple[SourceTerm, ...] = attrs.field(factory=tuple, converter=tuple)
    """Source terms."""
    bc: typing.Tuple[FlowBoundaryCondition, ...] = attrs.field(factory=tuple, converter=tuple)
    """Boundary conditions with resolved transmissibilities."""
    control: typing.Dict[str, WellControl] = attrs.field(factory=dict)
    """Active control per well."""

    @property
    def has_wells(self) -> bool:
        return bool(self.control)


def _as_tuple(value: typing.Any, kind: type) -> tuple:
    if value is None:
        return ()
    if isinstance(value, kind):
        return (value,)
    return tuple(value)


def _resolve_boundary(
    model: SimulationModel, bc: FlowBoundaryCondition, boundary_trans: FloatArray
) -> FlowBoundaryCondition:
    if bc.trans_flow is not None:
        return bc
    mesh = model.domain.mesh
    faces = mesh.boundary_cells == bc.cell
    if not np.any(faces):
        raise ValidationError(
            f"Cell {bc.cell} has no boundary face; give `trans_flow` explicitly."
        )
    return attrs.evolve(bc, trans_flow=float(boundary_trans[faces].sum()))


def setup_forces(
    model: typing.Union[SimulationModel, ReservoirModel],
    sources: typing.Optional[typing.Union[SourceTerm, typing.Iterable[SourceTerm]]] = None,
    bc: typing.Optional[
        typing.Union[FlowBoundaryCondition, typing.Iterable[FlowBoundaryCondition]]
    ] = None,
) -> Forces:
    """
    Validate sources and boundary conditions against a model.

    :param model: Model the forces act on.
    :param sources: Source term(s).
    :param bc: Boundary condition(s).
    :return: `Forces` with boundary transmissibilities resolved.
    :raises ValidationError: For cells out of range, fractional flows of the wrong
        length or unsupported source kinds.
    """
    reservoir = reservoir_model(model)
    system = reservoir.system
    nc = reservoir.number_of_cells
    sources = _as_tuple(sources, SourceTerm)
    bcs = _as_tuple(bc, FlowBoundaryCondition)
    ncomp = system.number_of_components if isinstance(system, FlowSystem) else None

    for source in sources:
        if not 0 <= source.cell < nc:
            raise ValidationError(f"Source cell {source.cell} is outside the model ({nc} cells)")
        if source.fractional_flow is not None:
            if ncomp is None:
                raise ValidationError("Fractional flow is only meaningful for flow systems.")
            if source.fractional_flow.shape[0] != ncomp:
                raise ValidationError(
                    f"Source fractional flow must have {ncomp} entries, "
                    f"got {source.fractional_flow.shape[0]}"
                )
        if source.kind == "volume" and isinstance(system, CompositionalSystem):
            raise ValidationError("Volume sources are not supported for compositional systems.")

    boundary_trans = system.boundary_transmissibilities(reservoir.domain)
    resolved = []
    for condition in bcs:
        if not 0 <= condition.cell < nc:
            raise ValidationError(
                f"Boundary cell {condition.cell} is outside the model ({nc} cells)"
            )
        if ncomp is not None:
            if condition.pressure <= 0.0:
                raise ValidationError("Boundary pressures must be positive.")
            if condition.fractional_flow is not None and condition.fractional_flow.shape[0] != ncomp:
                raise ValidationError(
                    f"Boundary fractional flow must have {ncomp} entries, "
                    f"got {condition.fractional_flow.shape[0]}"
                )
        resolved.append(_resolve_boundary(reservoir, condition, boundary_trans))
    return Forces(sources=sources, bc=tuple(resolved))


def _validate_control(model: ReservoirModel, name: str, control: WellControl) -> None:
    system = model.system
    if not isinstance(control, WellControl):
        raise ValidationError(f"Control of well {name!r} must be a WellControl, got {control!r}")
    if isinstance(control, InjectorControl):
        if control.mix.shape[0] != system.number_of_components:
            raise ValidationError(
                f"Injection mix of well {name!r} must have {system.number_of_components} "
                f"entries, got {control.mix.shape[0]}"
            )
    if isinstance(control, (InjectorControl, ProducerControl)):
        keys = [control.target.key, *control.limits]
        for key in keys:
            phases = LIMIT_TARGETS[key].phases
            if phases is not None and not set(phases) & set(system.phases):
                raise ValidationError(
                    f"Well {name!r} uses {key!r} but the system has no phase among "
                    f"{[phase.value for phase in phases]}"
                )


def setup_reservoir_forces(
    model: ReservoirModel,
    control: typing.Optional[typing.Mapping[str, WellControl]] = None,
    sources: typing.Optional[typing.Union[SourceTerm, typing.Iterable[SourceTerm]]] = None,
    bc: typing.Optional[
        typing.Union[FlowBoundaryCondition, typing.Iterable[FlowBoundaryCondition]]
    ] = None,
) -> Forces:
    """
    Set up forces for a reservoir model with wells.

    Wells without a control are shut.

    :param model: Reservoir model.
    :param control: Control per well name.
    :param sources: Source term(s) in the reservoir.
    :param bc: Boundary condition(s) of the reservoir.
    :return: `Forces`.
    :raises ValidationError: If a control references an unknown well or is
        inconsistent with the system.
    """
    forces = setup_forces(model, sources=sources, bc=bc)
    control = dict(control or {})
    unknown = set(control) - set(model.well_names)
    if unknown:
        raise ValidationError(
            f"Controls given for unknown well(s) {sorted(unknown)}, model wells: "
            f"{list(model.well_names)}"
        )
    controls: typing.Dict[str, WellControl] = {}
    for name in model.well_names:
        well_control = control.get(name)
        if well_control is None:
            logger.debug(f"No control for well {name!r}, the well is shut")
            well_control = DisabledControl()
        _validate_control(model, name, well_control)
        controls[name] = well_control
    return attrs.evolve(forces, control=controls)
