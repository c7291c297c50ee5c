"""Well and report step analysis of simulation results."""

import logging
import typing
import warnings

import numpy as np

from poreflow.assembly import surface_rates_by_key
from poreflow.errors import ValidationError
from poreflow.forces import Forces
from poreflow.models import FACILITY, ReservoirModel
from poreflow.states import ModelState
from poreflow.systems.base import FlowSystem
from poreflow.types import FloatArray, ModelStateValues, Phase
from poreflow.wells.controls import (
    TARGET_KEYS,
    DisabledControl,
    InjectorControl,
    ProducerControl,
    WellControl,
    active_target,
)

logger = logging.getLogger(__name__)

__all__ = ["full_well_outputs", "report_times"]

_PHASE_RATE_KEYS = {
    Phase.AQUEOUS: ("water_rate", "wrat"),
    Phase.LIQUID: ("oil_rate", "orat"),
    Phase.VAPOR: ("gas_rate", "grat"),
}


def _state_values(state: typing.Any) -> ModelStateValues:
    if isinstance(state, ModelState):
        return state.values
    return state


def _stream_amounts(
    control: WellControl, surface_rate: float, top_amounts: FloatArray
) -> FloatArray:
    """Component rates of the stream between the facility and the top node."""
    if isinstance(control, InjectorControl) and surface_rate >= 0.0:
        return surface_rate * control.mix
    total = top_amounts.sum()
    if total <= 0.0:
        return np.zeros_like(top_amounts)
    return surface_rate * top_amounts / total


def full_well_outputs(
    model: ReservoirModel,
    states: typing.Sequence[typing.Any],
    forces: typing.Union[Forces, typing.Sequence[Forces]],
) -> typing.Dict[str, typing.Dict[str, FloatArray]]:
    """
    Collect well quantities over the report steps of a simulation.

    Rates follow the injection-positive sign convention. The phase rates
    present depend on the phases of the system (`water_rate`, `oil_rate`,
    `gas_rate`, and `liquid_rate` when both water and oil flow).

    :param model: The simulated reservoir model.
    :param states: States at the end of each report step, as returned in
        `SimulationResult.states` (or `ModelState` objects).
    :param forces: The forces used for the simulation, one for all report
        steps or one per report step.
    :return: Per well, arrays over the report steps for `bhp` (Pa),
        `mass_rate` (kg/s), `rate` (total surface volume rate, m³/s) and the
        phase surface rates (m³/s). `control` holds the active target
        ("bhp", "rate", ..., or "shut") and `target` its value, as recorded in
        the states when available so that limit switches are reported.
    :raises ValidationError: If the states or forces do not match the model.
    """
    system = model.system
    if not isinstance(system, FlowSystem) or not model.wells:
        raise ValidationError("Well outputs require a flow system with wells.")
    if isinstance(forces, Forces):
        step_forces = [forces] * len(states)
    else:
        step_forces = list(forces)
        if len(step_forces) != len(states):
            raise ValidationError(
                f"Got {len(step_forces)} forces for {len(states)} states; give one "
                "forces object or one per state"
            )

    phase_keys = [_PHASE_RATE_KEYS[phase] for phase in system.phases]
    has_liquid = Phase.AQUEOUS in system.phases and Phase.LIQUID in system.phases
    molar_masses = np.asarray(system.component_molar_masses)
    number_of_steps = len(states)

    outputs: typing.Dict[str, typing.Dict[str, FloatArray]] = {}
    for index, well in enumerate(model.wells):
        keys = ["bhp", "mass_rate", "rate"] + [name for name, _ in phase_keys]
        if has_liquid:
            keys.append("liquid_rate")
        entry = {key: np.zeros(number_of_steps) for key in keys}
        entry["target"] = np.zeros(number_of_steps)
        active: typing.List[str] = []

        for step, (state, step_force) in enumerate(zip(states, step_forces)):
            values = _state_values(state)
            if well.name not in values or FACILITY not in values:
                raise ValidationError(f"State {step} holds no values for well {well.name!r}.")
            well_values = values[well.name]
            if "total_masses" not in well_values:
                raise ValidationError(
                    f"State {step} of well {well.name!r} has no `total_masses` output."
                )
            facility = values[FACILITY]
            surface_rate = float(np.asarray(facility["surface_rate"])[index])
            control = step_force.control.get(well.name, DisabledControl())
            if "control_targets" in facility:
                code = int(np.asarray(facility["control_targets"])[index])
                target_value = float(np.asarray(facility["target_values"])[index])
            else:
                code, target_value = active_target(control)
            active.append(TARGET_KEYS[code])
            entry["target"][step] = target_value
            amounts = _stream_amounts(
                control, surface_rate, np.asarray(well_values["total_masses"])[:, 0]
            )
            rates = surface_rates_by_key(
                system, control, surface_rate, amounts, model.reference_densities
            )

            entry["bhp"][step] = float(np.asarray(well_values["pressure"])[0])
            entry["mass_rate"][step] = float(amounts @ molar_masses)
            entry["rate"][step] = rates["rate"]
            for name, key in phase_keys:
                entry[name][step] = rates[key]
            if has_liquid:
                entry["liquid_rate"][step] = rates["lrat"]

            if isinstance(control, ProducerControl) and surface_rate > 0.0:
                warnings.warn(
                    f"Producer {well.name!r} is injecting at report step {step + 1} "
                    f"(surface rate {surface_rate:.4g})."
                )
            elif isinstance(control, InjectorControl) and surface_rate < 0.0:
                warnings.warn(
                    f"Injector {well.name!r} is producing at report step {step + 1} "
                    f"(surface rate {surface_rate:.4g})."
                )
        entry["control"] = np.array(active)
        outputs[well.name] = entry
        logger.debug(f"Collected outputs of well {well.name!r} over {number_of_steps} report steps")
    return outputs


def report_times(reports: typing.Sequence[typing.Any]) -> FloatArray:
    """
    Cumulative simulated time at the end of each report step.

    :param reports: `ReportStep` objects (or report step lengths in seconds).
    :return: Array of times in seconds.
    """
    lengths = [float(getattr(report, "step_size", report)) for report in reports]
    return np.cumsum(np.asarray(lengths, dtype=np.float64))
