"""Simulation models and their state and parameter setup."""

import logging
import typing

import attrs
import numpy as np

from poreflow.discretization.domain import DiscretizedDomain, discretized_domain
from poreflow.errors import ValidationError
from poreflow.mesh.base import Mesh
from poreflow.systems.base import FlowSystem, System
from poreflow.systems.variables import SurfaceRate
from poreflow.types import FloatArray, IntArray, ModelStateValues, StateValues
from poreflow.utils import as_cell_array, as_row_array
from poreflow.wells.base import Well

logger = logging.getLogger(__name__)

__all__ = [
    "SimulationModel",
    "ReservoirModel",
    "RESERVOIR",
    "FACILITY",
    "setup_reservoir_model",
    "setup_reservoir_state",
    "reservoir_model",
    "well_node_cells",
]

RESERVOIR = "Reservoir"
"""Name of the reservoir sub-model."""
FACILITY = "Facility"
"""Name of the facility sub-model holding well surface rates."""

_REPLACEABLE = ("relative_permeabilities", "densities", "viscosities", "capillary_pressure")


@attrs.frozen(eq=False)
class SimulationModel:
    """A physical system on a discretized domain."""

    domain: DiscretizedDomain
    """Mesh, rock properties and transmissibilities."""
    system: System
    """Equations and variables."""
    name: str = RESERVOIR
    """Name of the model, used as key in composite states."""

    @property
    def number_of_cells(self) -> int:
        return self.domain.number_of_cells

    def setup_state(self, **values: typing.Any) -> StateValues:
        """
        Set up a validated initial state.

        :param values: Initial value per primary variable (scalar, per row or per cell).
        :return: State values keyed by variable name.
        """
        return self.system.initial_values(self.number_of_cells, **values)

    def setup_parameters(self, **overrides: typing.Any) -> StateValues:
        """
        Set up the model parameters, optionally overriding defaults.

        :param overrides: Parameter values by name. Per-cell parameters may be
            given as scalars.
        :return: Parameters keyed by name.
        """
        parameters = self.system.default_parameters(self.domain)
        for name, value in overrides.items():
            if name not in parameters:
                raise ValidationError(
                    f"Unknown parameter {name!r} for {self.system!r}, expected one of "
                    f"{sorted(parameters)}"
                )
            default = parameters[name]
            if default.ndim == 1:
                parameters[name] = as_cell_array(value, default.shape[0], name)
            else:
                parameters[name] = as_row_array(value, default.shape[0], default.shape[1], name)
        if np.any(parameters["transmissibilities"] < 0.0):
            raise ValidationError("Transmissibilities must be non-negative.")
        return parameters

    def replace_variables(self, **property_models: typing.Any) -> "SimulationModel":
        """
        Return a copy of the model with some property models of the system replaced.

        :param property_models: New property models, e.g. `relative_permeabilities=...`.
        """
        unknown = set(property_models) - set(_REPLACEABLE)
        if unknown:
            raise ValidationError(
                f"Cannot replace {sorted(unknown)}, replaceable: {list(_REPLACEABLE)}"
            )
        for name in property_models:
            if not hasattr(self.system, name):
                raise ValidationError(f"{self.system!r} has no property model {name!r}")
        system = attrs.evolve(self.system, **property_models)
        return attrs.evolve(self, system=system)

    def validate_state(self, values: StateValues) -> None:
        self.system.validate_values(values, self.number_of_cells)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.system!r}, cells={self.number_of_cells})"


def well_node_cells(well: Well) -> IntArray:
    """Reservoir cell whose state initializes (and parametrizes) each well node."""
    if well.simple:
        return well.cells[:1].copy()
    return np.concatenate([well.cells[:1], well.cells])


@attrs.frozen(eq=False)
class ReservoirModel:
    """
    A reservoir model coupled to wells and a facility.

    Sub-models are keyed by name: the reservoir (`"Reservoir"`), one per well
    (the well name) and the facility (`"Facility"`), which holds one surface
    rate per well.
    """

    reservoir: SimulationModel
    """Reservoir sub-model."""
    wells: typing.Tuple[Well, ...] = attrs.field(factory=tuple, converter=tuple)
    """Wells, in facility order."""
    reference_densities: typing.Optional[FloatArray] = None
    """Surface density per phase, used for surface volume rates of mass based systems."""

    def __attrs_post_init__(self) -> None:
        names = [well.name for well in self.wells]
        if len(set(names)) != len(names):
            raise ValidationError(f"Well names must be unique, got {names}")
        for name in names:
            if name in (RESERVOIR, FACILITY, self.reservoir.name):
                raise ValidationError(f"Well name {name!r} is reserved.")
        nc = self.reservoir.number_of_cells
        for well in self.wells:
            if well.cells.max() >= nc:
                raise ValidationError(f"Well '{well.name}' perforates a cell outside the reservoir.")
        if self.wells and not isinstance(self.reservoir.system, FlowSystem):
            raise ValidationError("Wells require a flow system.")

    @property
    def system(self) -> System:
        return self.reservoir.system

    @property
    def domain(self) -> DiscretizedDomain:
        return self.reservoir.domain

    @property
    def number_of_cells(self) -> int:
        return self.reservoir.number_of_cells

    @property
    def well_names(self) -> typing.Tuple[str, ...]:
        return tuple(well.name for well in self.wells)

    @property
    def sub_model_names(self) -> typing.Tuple[str, ...]:
        names = (self.reservoir.name, *self.well_names)
        return (*names, FACILITY) if self.wells else names

    def well(self, name: str) -> Well:
        for well in self.wells:
            if well.name == name:
                return well
        raise ValidationError(f"No well named {name!r} in the model, wells: {self.well_names}")

    def setup_state(self, **values: typing.Any) -> ModelStateValues:
        return setup_reservoir_state(self, **values)

    def setup_parameters(self, **overrides: typing.Any) -> ModelStateValues:
        """
        Set up parameters for all sub-models.

        Overrides apply to the reservoir; well node parameters are taken from
        the perforated cells.
        """
        reservoir = self.reservoir.setup_parameters(**overrides)
        parameters: ModelStateValues = {self.reservoir.name: reservoir}
        for well in self.wells:
            cells = well_node_cells(well)
            parameters[well.name] = {
                name: value[..., cells].copy()
                for name, value in reservoir.items()
                if name != "transmissibilities"
            }
        if self.wells:
            parameters[FACILITY] = {}
        return parameters

    def replace_variables(self, **property_models: typing.Any) -> "ReservoirModel":
        return attrs.evolve(self, reservoir=self.reservoir.replace_variables(**property_models))

    def validate_state(self, state: ModelStateValues) -> None:
        """
        Check that `state` holds every sub-model with values shaped for its entities.

        :raises ValidationError: On missing or malformed sub-model states.
        """
        missing = set(self.sub_model_names) - set(state)
        if missing:
            raise ValidationError(f"State is missing sub-model(s) {sorted(missing)}")
        self.reservoir.validate_state(state[self.reservoir.name])
        for well in self.wells:
            self.system.validate_values(state[well.name], well.number_of_nodes)
        if self.wells:
            rates = np.asarray(state[FACILITY].get("surface_rate"))
            if rates.shape != (len(self.wells),):
                raise ValidationError(
                    f"Facility state must hold one surface rate per well ({len(self.wells)})"
                )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.reservoir!r}, wells={list(self.well_names)})"


AnyModel = typing.Union[SimulationModel, ReservoirModel]


def reservoir_model(model: AnyModel) -> SimulationModel:
    """Return the reservoir sub-model of `model` (or `model` itself)."""
    if isinstance(model, ReservoirModel):
        return model.reservoir
    return model


def setup_reservoir_model(
    mesh_or_domain: typing.Union[Mesh, DiscretizedDomain],
    system: System,
    wells: typing.Sequence[Well] = (),
    reference_densities: typing.Optional[typing.Any] = None,
    porosity: typing.Any = None,
    permeability: typing.Any = None,
    temperature: typing.Optional[typing.Any] = None,
    **kwargs: typing.Any,
) -> typing.Tuple[ReservoirModel, ModelStateValues]:
    """
    Set up a reservoir model with wells and its default parameters.

    :param mesh_or_domain: Mesh (discretized with `porosity`, `permeability` and
        `kwargs`) or an already discretized domain.
    :param system: Flow system.
    :param wells: Wells perforating the reservoir.
    :param reference_densities: Surface density per phase (kg/m³). Defaults to the
        reference densities of the system's density model, where it has one.
    :param porosity: Porosity when a mesh is given.
    :param permeability: Permeability (m²) when a mesh is given.
    :param temperature: Reservoir temperature (K), scalar or per cell.
    :param kwargs: Additional keyword arguments for `discretized_domain`.
    :return: The model and its parameters.
    """
    if isinstance(mesh_or_domain, DiscretizedDomain):
        if porosity is not None or permeability is not None or kwargs:
            raise ValidationError(
                "Rock properties can only be given together with a mesh, not a discretized domain."
            )
        domain = mesh_or_domain
    else:
        domain = discretized_domain(
            mesh_or_domain, porosity=porosity, permeability=permeability, **kwargs
        )
    if reference_densities is None and hasattr(system, "reference_densities"):
        reference_densities = system.reference_densities
    if reference_densities is not None:
        reference_densities = np.atleast_1d(np.asarray(reference_densities, dtype=np.float64))
        if isinstance(system, FlowSystem) and reference_densities.shape != (
            system.number_of_phases,
        ):
            raise ValidationError(
                f"Expected {system.number_of_phases} reference densities, "
                f"got {reference_densities.shape[0]}"
            )
    model = ReservoirModel(
        reservoir=SimulationModel(domain, system),
        wells=tuple(wells),
        reference_densities=reference_densities,
    )
    overrides = {} if temperature is None else {"temperature": temperature}
    parameters = model.setup_parameters(**overrides)
    logger.debug(f"Set up {model!r}")
    return model, parameters


def setup_reservoir_state(model: ReservoirModel, **values: typing.Any) -> ModelStateValues:
    """
    Set up the initial state of a reservoir model.

    Well nodes start from the state of the cells they are attached to; all
    surface rates start at zero.

    :param model: Reservoir model.
    :param values: Initial reservoir values per primary variable.
    :return: State keyed by sub-model name.
    """
    reservoir = model.reservoir.setup_state(**values)
    state: ModelStateValues = {model.reservoir.name: reservoir}
    for well in model.wells:
        cells = well_node_cells(well)
        state[well.name] = {name: value[..., cells].copy() for name, value in reservoir.items()}
    if model.wells:
        state[FACILITY] = {SurfaceRate().name: np.zeros(len(model.wells))}
    return state
