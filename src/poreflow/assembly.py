"""Global unknown layout and residual assembly for reservoir models with wells."""

import logging
import typing

import attrs
import numpy as np

from poreflow.config import Config
from poreflow.constants import c
from poreflow.errors import ComputationError, ValidationError
from poreflow.forces import Forces
from poreflow.models import FACILITY, ReservoirModel
from poreflow.systems.base import FlowSystem, SecondaryValues, System
from poreflow.systems.variables import Pressure, PrimaryVariable, SurfaceRate
from poreflow.types import FloatArray, IntArray, ModelStateValues, Phase, StateValues
from poreflow.wells.base import Well
from poreflow.wells.controls import (
    BottomHolePressureTarget,
    DisabledControl,
    InjectorControl,
    ProducerControl,
    TotalRateTarget,
    WellControl,
)

logger = logging.getLogger(__name__)

__all__ = [
    "UnknownGroup",
    "StepContext",
    "Evaluation",
    "Assembler",
    "surface_rates_by_key",
]

SEGMENT_UPWIND_SMOOTHING = 1e3
"""Potential difference (Pa) over which well-bore segment upwinding switches direction."""


@attrs.frozen
class UnknownGroup:
    """Unknowns of one sub-model, laid out entity by entity."""

    name: str
    """Sub-model name."""
    variables: typing.Tuple[PrimaryVariable, ...]
    """Primary variables of every entity."""
    count: int
    """Number of entities."""
    offset: int
    """Global index of the first unknown."""
    entity_offset: int
    """Global index of the first entity."""

    @property
    def unknowns_per_entity(self) -> int:
        return sum(variable.count for variable in self.variables)

    @property
    def size(self) -> int:
        return self.count * self.unknowns_per_entity

    @property
    def stop(self) -> int:
        return self.offset + self.size

    def variable_columns(self) -> typing.List[typing.Tuple[PrimaryVariable, slice]]:
        """Each variable with the columns of its unknowns inside an entity block."""
        columns = []
        start = 0
        for variable in self.variables:
            columns.append((variable, slice(start, start + variable.count)))
            start += variable.count
        return columns

    def global_indices(self, column: int) -> IntArray:
        """Global index of unknown `column` for every entity."""
        return self.offset + column + self.unknowns_per_entity * np.arange(self.count)


@attrs.define
class StepContext:
    """Data fixed during a ministep."""

    dt: float
    """Ministep length (s)."""
    forces: Forces
    """Forces acting during the ministep."""
    controls: typing.Dict[str, WellControl]
    """Active well controls, possibly switched by limits."""
    accumulation0: typing.Dict[str, FloatArray]
    """Conserved amounts at the start of the ministep, per sub-model."""
    state0: ModelStateValues
    """State at the start of the ministep."""
    gauge: typing.Optional[typing.Tuple[float, float]] = None
    """Value and scale pinning cell 0 of a steady problem without boundary conditions."""
    switched: typing.Set[str] = attrs.field(factory=set)
    """Wells whose control was switched in this ministep."""


@attrs.frozen(eq=False)
class Evaluation:
    """Residual and intermediate quantities at one iterate."""

    residual: FloatArray
    """Global residual vector."""
    blocks: typing.Dict[str, FloatArray]
    """Residual per sub-model, shape (neq, n)."""
    values: ModelStateValues
    """State values at the iterate."""
    secondary: typing.Dict[str, SecondaryValues]
    """Secondary values per sub-model."""
    volumes: typing.Dict[str, FloatArray]
    """Storage volumes per sub-model."""
    well_rates: typing.Dict[str, typing.Dict[str, typing.Any]]
    """Per well: "bhp", "mass_rate", "amount_rates" and "surface_rates" (by target key)."""

    def flash_cache(self) -> typing.Dict[str, SecondaryValues]:
        """Flash results to warm start evaluations near this iterate."""
        cache = {}
        for name, secondary in self.secondary.items():
            if "k_values" in secondary:
                cache[name] = {
                    "k_values": secondary["k_values"],
                    "phase_state": secondary["phase_state"],
                }
        return cache


def surface_rates_by_key(
    system: FlowSystem,
    control: WellControl,
    surface_rate: float,
    amount_rates: FloatArray,
    reference_densities: typing.Optional[FloatArray],
) -> typing.Dict[str, float]:
    """
    Surface volume rates of a well stream keyed by target key.

    :param system: Flow system.
    :param control: Active well control.
    :param surface_rate: Well rate in conserved units per second.
    :param amount_rates: Component rates of the stream (conserved units per second).
    :param reference_densities: Surface phase densities for mass based systems.
    :return: Signed rates for "rate", "wrat", "orat", "grat" and "lrat" (m³/s).
    """
    volumes = system.surface_volume_rates(amount_rates, reference_densities)
    water = volumes.get(Phase.AQUEOUS, 0.0)
    oil = volumes.get(Phase.LIQUID, 0.0)
    gas = volumes.get(Phase.VAPOR, 0.0)
    if isinstance(control, InjectorControl):
        total = surface_rate / control.density
    else:
        total = water + oil + gas
    return {"rate": total, "wrat": water, "orat": oil, "grat": gas, "lrat": water + oil}


class Assembler:
    """
    Lays out the unknowns of a reservoir model and evaluates its residual.

    Unknown groups are the reservoir cells, the nodes of each well and the
    facility (one surface rate per well). Within a group, the unknowns of an
    entity are contiguous, and equations follow the same layout.

    For conservation systems the residual of an entity is

        M(x) - M(x0) + dt * (sum of outgoing fluxes - sources)

    and steady systems drop the accumulation and the time step.
    """

    def __init__(self, model: ReservoirModel, parameters: ModelStateValues) -> None:
        """
        :param model: Reservoir model (possibly without wells).
        :param parameters: Parameters keyed by sub-model name.
        """
        self.model = model
        self.parameters = parameters
        self.system: System = model.system
        missing = set(model.sub_model_names) - {FACILITY} - set(parameters)
        if missing:
            raise ValidationError(f"Parameters missing for sub-model(s) {sorted(missing)}")
        if "transmissibilities" not in parameters[model.reservoir.name]:
            raise ValidationError("Reservoir parameters must contain 'transmissibilities'.")

        groups = []
        offset = 0
        entity_offset = 0
        variables = self.system.primary_variables
        sizes = [(model.reservoir.name, variables, model.number_of_cells)]
        sizes += [(well.name, variables, well.number_of_nodes) for well in model.wells]
        if model.wells:
            sizes.append((FACILITY, (SurfaceRate(),), len(model.wells)))
        for name, group_variables, count in sizes:
            group = UnknownGroup(name, group_variables, count, offset, entity_offset)
            groups.append(group)
            offset += group.size
            entity_offset += count
        self.groups: typing.Tuple[UnknownGroup, ...] = tuple(groups)
        self.group_by_name = {group.name: group for group in groups}
        self.size = offset
        self.number_of_entities = entity_offset
        self._build_unknown_properties()

    def _build_unknown_properties(self) -> None:
        lower = np.empty(self.size)
        upper = np.empty(self.size)
        scales = np.empty(self.size)
        pressure_indices = []
        block_sizes = []
        for group in self.groups:
            m = group.unknowns_per_entity
            for variable, columns in group.variable_columns():
                low, high = variable.bounds
                for column in range(columns.start, columns.stop):
                    indices = group.global_indices(column)
                    lower[indices] = low
                    upper[indices] = high
                    scales[indices] = variable.perturbation_scale
                if isinstance(variable, Pressure):
                    pressure_indices.append(group.global_indices(columns.start))
                    block_sizes.append(np.full(group.count, m, dtype=np.int64))
        self.lower_bounds = lower
        self.upper_bounds = upper
        self.perturbation_scales = scales
        if pressure_indices:
            self.pressure_indices = np.concatenate(pressure_indices)
            self.block_sizes = np.concatenate(block_sizes)
        else:
            self.pressure_indices = np.zeros(0, dtype=np.int64)
            self.block_sizes = np.zeros(0, dtype=np.int64)
        self.unknowns_per_entity = np.concatenate(
            [np.full(group.count, group.unknowns_per_entity, dtype=np.int64) for group in self.groups]
        )
        self.entity_offsets = np.concatenate(
            [
                group.offset + group.unknowns_per_entity * np.arange(group.count, dtype=np.int64)
                for group in self.groups
            ]
        )

    def entity_connections(self) -> typing.Tuple[IntArray, IntArray]:
        """
        Pairs of global entities whose residuals depend on each other.

        Faces couple cells, perforations couple cells and well nodes, segments
        couple well nodes and each facility entity is coupled to the top node
        of its well.
        """
        model = self.model
        reservoir = self.group_by_name[model.reservoir.name]
        first = [reservoir.entity_offset + model.domain.neighbors[:, 0]]
        second = [reservoir.entity_offset + model.domain.neighbors[:, 1]]
        for index, well in enumerate(model.wells):
            group = self.group_by_name[well.name]
            first.append(reservoir.entity_offset + well.cells)
            second.append(group.entity_offset + well.perforation_nodes)
            first.append(group.entity_offset + well.segments[:, 0])
            second.append(group.entity_offset + well.segments[:, 1])
            facility = self.group_by_name[FACILITY]
            first.append(np.array([facility.entity_offset + index]))
            second.append(np.array([group.entity_offset]))
        return (
            np.concatenate(first).astype(np.int64),
            np.concatenate(second).astype(np.int64),
        )

    def pack(self, state: ModelStateValues) -> FloatArray:
        """Flatten the primary values of `state` into a global unknown vector."""
        x = np.empty(self.size)
        for group in self.groups:
            values = state[group.name]
            block = np.empty((group.count, group.unknowns_per_entity))
            for variable, columns in group.variable_columns():
                block[:, columns] = variable.to_primary(values[variable.name]).T
            x[group.offset : group.stop] = block.ravel()
        return x

    def unpack(self, x: FloatArray) -> ModelStateValues:
        """Split a global unknown vector into state values per sub-model."""
        state: ModelStateValues = {}
        for group in self.groups:
            block = x[group.offset : group.stop].reshape(group.count, group.unknowns_per_entity)
            state[group.name] = {
                variable.name: variable.from_primary(block[:, columns].T.copy())
                for variable, columns in group.variable_columns()
            }
        return state

    def variable_indices(
        self,
    ) -> typing.Iterator[typing.Tuple[UnknownGroup, PrimaryVariable, IntArray]]:
        """Yield every variable with the global indices of its unknowns, shape (count, n)."""
        for group in self.groups:
            for variable, columns in group.variable_columns():
                indices = np.vstack(
                    [group.global_indices(column) for column in range(columns.start, columns.stop)]
                )
                yield group, variable, indices

    def entity_volumes(self, name: str, values: StateValues) -> FloatArray:
        """Storage volume of each entity of a sub-model (pore volume or node volume)."""
        if name == self.model.reservoir.name:
            return self.system.storage_volumes(self.model.domain, values)
        return self.model.well(name).node_volumes

    def _well_secondary(self, secondary: SecondaryValues) -> SecondaryValues:
        # No capillary pressure inside the well-bore
        secondary = dict(secondary)
        pressure = secondary["pressure"]
        secondary["phase_pressures"] = np.repeat(
            pressure[None, :], secondary["saturations"].shape[0], axis=0
        )
        return secondary

    def begin_step(self, state0: ModelStateValues, dt: float, forces: Forces) -> StepContext:
        """
        Prepare a ministep from `state0`.

        :param state0: State at the start of the ministep.
        :param dt: Ministep length (s).
        :param forces: Forces of the current report step.
        """
        accumulation0 = {}
        for group in self.groups:
            if group.name == FACILITY:
                continue
            values = state0[group.name]
            secondary = self.system.secondary(values, self.parameters[group.name])
            if group.name != self.model.reservoir.name:
                secondary = self._well_secondary(secondary)
            volumes = self.entity_volumes(group.name, values)
            accumulation0[group.name] = self.system.accumulation(values, secondary, volumes)

        gauge = None
        if self.system.steady and not forces.bc:
            trans = self.parameters[self.model.reservoir.name]["transmissibilities"]
            neighbors = self.model.domain.neighbors
            scale = float(trans[(neighbors[:, 0] == 0) | (neighbors[:, 1] == 0)].sum()) or 1.0
            variable = self.system.primary_variables[0]
            value = float(state0[self.model.reservoir.name][variable.name][0])
            gauge = (value, scale)
            total = sum(source.value for source in forces.sources)
            if abs(total) > 1e-10 * max(1.0, sum(abs(s.value) for s in forces.sources)):
                logger.warning(
                    f"Sources sum to {total:.4g} in a steady problem without boundary "
                    "conditions; the problem has no solution and is solved in a least "
                    "consistent sense"
                )

        controls = dict(forces.control)
        return StepContext(
            dt=float(dt),
            forces=forces,
            controls=controls,
            accumulation0=accumulation0,
            state0=state0,
            gauge=gauge,
        )

    def evaluate(
        self,
        x: FloatArray,
        context: StepContext,
        cache: typing.Optional[typing.Dict[str, SecondaryValues]] = None,
    ) -> Evaluation:
        """
        Evaluate the residual at `x`.

        :param x: Global unknown vector.
        :param context: Ministep context.
        :param cache: Warm start data per sub-model (flash K-values).
        :return: `Evaluation`.
        :raises ComputationError: If a secondary variable cannot be evaluated.
        """
        cache = cache or {}
        model = self.model
        system = self.system
        values = self.unpack(x)
        res_name = model.reservoir.name
        res_values = values[res_name]
        res_parameters = self.parameters[res_name]
        dt_factor = 1.0 if system.steady else context.dt

        res_secondary = system.secondary(res_values, res_parameters, cache.get(res_name))
        res_volumes = self.entity_volumes(res_name, res_values)
        neq = system.number_of_equations
        res_flow = np.zeros((neq, model.number_of_cells))

        neighbors = model.domain.neighbors
        left = neighbors[:, 0]
        right = neighbors[:, 1]
        if left.size:
            fluxes = system.face_fluxes(
                left,
                right,
                res_parameters["transmissibilities"],
                model.domain.face_depth_differences,
                res_values,
                res_secondary,
            )
            np.add.at(res_flow.T, left, fluxes.T)
            np.add.at(res_flow.T, right, -fluxes.T)

        for source in context.forces.sources:
            res_flow[:, source.cell] -= system.source_rates(source, res_values, res_secondary)
        for bc in context.forces.bc:
            res_flow[:, bc.cell] -= system.boundary_rates(
                bc, typing.cast(float, bc.trans_flow), res_values, res_secondary
            )

        blocks: typing.Dict[str, FloatArray] = {}
        secondaries: typing.Dict[str, SecondaryValues] = {res_name: res_secondary}
        volumes: typing.Dict[str, FloatArray] = {res_name: res_volumes}
        well_rates: typing.Dict[str, typing.Dict[str, typing.Any]] = {}
        facility_residual = np.zeros(len(model.wells))

        for index, well in enumerate(model.wells):
            well_values = values[well.name]
            well_secondary = self._well_secondary(
                system.secondary(well_values, self.parameters[well.name], cache.get(well.name))
            )
            well_flow = np.zeros((neq, well.number_of_nodes))
            perforation_rates = self._perforation_rates(
                well, res_values, res_secondary, well_values, well_secondary
            )
            np.add.at(res_flow.T, well.cells, perforation_rates.T)
            np.add.at(well_flow.T, well.perforation_nodes, -perforation_rates.T)

            if well.number_of_segments:
                segment_fluxes = self._segment_fluxes(well, well_values, well_secondary)
                np.add.at(well_flow.T, well.segments[:, 0], segment_fluxes.T)
                np.add.at(well_flow.T, well.segments[:, 1], -segment_fluxes.T)

            surface_rate = float(values[FACILITY]["surface_rate"][index])
            control = context.controls[well.name]
            amount_rates = self._top_node_rates(control, surface_rate, well_secondary)
            well_flow[:, 0] -= amount_rates

            well_volumes = well.node_volumes
            accumulation = system.accumulation(well_values, well_secondary, well_volumes)
            blocks[well.name] = (
                accumulation - context.accumulation0[well.name] + context.dt * well_flow
            )
            secondaries[well.name] = well_secondary
            volumes[well.name] = well_volumes

            bhp = float(well_values["pressure"][0])
            rates = surface_rates_by_key(
                typing.cast(FlowSystem, system),
                control,
                surface_rate,
                amount_rates,
                model.reference_densities,
            )
            facility_residual[index] = self._control_residual(control, bhp, surface_rate, rates)
            well_rates[well.name] = {
                "bhp": bhp,
                "mass_rate": float(amount_rates @ typing.cast(FlowSystem, system).component_molar_masses),
                "surface_rate": surface_rate,
                "amount_rates": amount_rates,
                "surface_rates": rates,
            }

        if system.steady:
            res_block = dt_factor * res_flow
        else:
            accumulation = system.accumulation(res_values, res_secondary, res_volumes)
            res_block = accumulation - context.accumulation0[res_name] + dt_factor * res_flow
        if context.gauge is not None:
            value, scale = context.gauge
            res_block[0, 0] = scale * (res_values[system.primary_variables[0].name][0] - value)
        blocks[res_name] = res_block
        if model.wells:
            blocks[FACILITY] = facility_residual[None, :]

        residual = np.empty(self.size)
        for group in self.groups:
            residual[group.offset : group.stop] = blocks[group.name].T.ravel()
        if not np.all(np.isfinite(residual)):
            raise ComputationError("Residual contains non-finite values.")
        return Evaluation(
            residual=residual,
            blocks=blocks,
            values=values,
            secondary=secondaries,
            volumes=volumes,
            well_rates=well_rates,
        )

    def _perforation_rates(
        self,
        well: Well,
        res_values: StateValues,
        res_secondary: SecondaryValues,
        well_values: StateValues,
        well_secondary: SecondaryValues,
    ) -> FloatArray:
        """
        Component rates from each perforated cell into the well (positive for production).

        Inflow carries the cell's mobile fluid. Outflow (injection into the cell)
        carries the well-bore fluid of the node with the cell's total mobility.
        """
        cells = well.cells
        nodes = well.perforation_nodes
        g = float(c.ACCELERATION_DUE_TO_GRAVITY)
        node_density = (
            well_secondary["saturations"] * well_secondary["phase_mass_densities"]
        ).sum(axis=0)[nodes]
        depth_differences = (
            well.perforation_depth_differences
            if self.model.domain.gravity
            else np.zeros(well.number_of_perforations)
        )
        dp = (
            res_values["pressure"][cells]
            - well_values["pressure"][nodes]
            - node_density * g * depth_differences
        )
        drive = well.well_indices * dp
        mobilities = res_secondary["mobilities"][:, cells]
        inflow = np.einsum(
            "cpk,pk->ck",
            res_secondary["component_phase_fractions"][:, :, cells],
            res_secondary["phase_amount_densities"][:, cells] * mobilities,
        )
        outflow = mobilities.sum(axis=0)[None, :] * well_secondary["component_concentrations"][:, nodes]
        return np.where(dp[None, :] >= 0.0, inflow, outflow) * drive[None, :]

    def _segment_fluxes(
        self, well: Well, well_values: StateValues, well_secondary: SecondaryValues
    ) -> FloatArray:
        """
        Component rates along the well-bore segments, from upper to lower node.

        The well-bore fluid moves as a mixture driven by the node pressures and
        the mixture head. The carried amounts blend the two nodes with a weight
        that goes smoothly from one node to the other over
        `SEGMENT_UPWIND_SMOOTHING` of potential difference, so that the rates
        stay differentiable where the flow reverses.
        """
        upper = well.segments[:, 0]
        lower = well.segments[:, 1]
        g = float(c.ACCELERATION_DUE_TO_GRAVITY)
        S = well_secondary["saturations"]
        mixture_density = (S * well_secondary["phase_mass_densities"]).sum(axis=0)
        depth_differences = (
            well.segment_depth_differences
            if self.model.domain.gravity
            else np.zeros(well.number_of_segments)
        )
        pressure = well_values["pressure"]
        dpsi = (
            pressure[upper]
            - pressure[lower]
            + 0.5 * (mixture_density[upper] + mixture_density[lower]) * g * depth_differences
        )
        # Component amounts per unit of pressure gradient and conductance
        carried = np.einsum(
            "cpn,pn->cn",
            well_secondary["component_phase_fractions"],
            well_secondary["phase_amount_densities"] * S / well_secondary["phase_viscosities"],
        )
        weight = 0.5 * (1.0 + np.tanh(dpsi / SEGMENT_UPWIND_SMOOTHING))
        face = weight[None, :] * carried[:, upper] + (1.0 - weight)[None, :] * carried[:, lower]
        return face * (well.segment_conductances * dpsi)[None, :]

    def _top_node_rates(
        self, control: WellControl, surface_rate: float, well_secondary: SecondaryValues
    ) -> FloatArray:
        """Component rates entering the top node from the facility."""
        if isinstance(control, InjectorControl) and surface_rate >= 0.0:
            return surface_rate * control.mix
        concentrations = well_secondary["component_concentrations"][:, 0]
        return surface_rate * concentrations / concentrations.sum()

    @staticmethod
    def _control_residual(
        control: WellControl, bhp: float, surface_rate: float, rates: typing.Mapping[str, float]
    ) -> float:
        if isinstance(control, DisabledControl) or not isinstance(
            control, (InjectorControl, ProducerControl)
        ):
            return surface_rate
        target = control.target
        if isinstance(target, BottomHolePressureTarget):
            return (bhp - target.value) / max(abs(target.value), float(c.BAR))
        scale = abs(target.value) if target.value != 0.0 else 1.0
        key = "rate" if isinstance(target, TotalRateTarget) else target.key
        return (rates[key] - target.value) / scale

    def convergence(
        self, evaluation: Evaluation, config: Config
    ) -> typing.Tuple[bool, typing.Dict[str, typing.Dict[str, float]]]:
        """
        Check every sub-model residual for convergence.

        The reservoir uses the system's measures, wells the CNV measure with
        `config.tol_cnv_well` and the facility the absolute control residual.

        :return: Whether all sub-models converged and the measures per sub-model.
        """
        converged = True
        measures: typing.Dict[str, typing.Dict[str, float]] = {}
        res_name = self.model.reservoir.name
        ok, res_measures = self.system.convergence(
            evaluation.blocks[res_name],
            evaluation.volumes[res_name],
            evaluation.secondary[res_name],
            config,
        )
        converged &= ok
        measures[res_name] = res_measures
        for well in self.model.wells:
            _, well_measures = self.system.convergence(
                evaluation.blocks[well.name],
                evaluation.volumes[well.name],
                evaluation.secondary[well.name],
                config,
            )
            well_measures = {"cnv": well_measures["cnv"]}
            converged &= well_measures["cnv"] <= config.tol_cnv_well
            measures[well.name] = well_measures
        if self.model.wells:
            error = float(np.abs(evaluation.blocks[FACILITY]).max())
            converged &= error <= config.tol_facility
            measures[FACILITY] = {"control": error}
        return bool(converged), measures
