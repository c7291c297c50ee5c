import logging
import typing

import attrs
import numpy as np

from poreflow.assembly import Assembler
from poreflow.config import Config
from poreflow.errors import SimulationError, TimingError, ValidationError
from poreflow.forces import Forces, setup_forces
from poreflow.jacobian import JacobianBuilder
from poreflow.models import FACILITY, ReservoirModel, SimulationModel
from poreflow.newton import NewtonReport, solve_ministep
from poreflow.states import ModelState
from poreflow.timing import Timer
from poreflow.types import ModelStateValues, StateValues
from poreflow.wells.controls import DisabledControl, WellControl, active_target

logger = logging.getLogger(__name__)

__all__ = [
    "Simulator",
    "ReportStep",
    "SimulationResult",
    "setup_reservoir_simulator",
    "simulate",
]

AnyModel = typing.Union[SimulationModel, ReservoirModel]
ForcesSpec = typing.Optional[typing.Union[Forces, typing.Sequence[Forces]]]


@attrs.frozen
class ReportStep:
    """Summary of one report step."""

    step: int
    """Report step index (1-based)."""
    time: float
    """Simulated time at the end of the report step (s)."""
    step_size: float
    """Length of the report step (s)."""
    ministeps: typing.Tuple[NewtonReport, ...]
    """Newton report of every accepted ministep."""
    failures: int = 0
    """Number of ministeps that were cut."""

    @property
    def newton_iterations(self) -> int:
        return sum(report.iterations for report in self.ministeps)


@attrs.frozen(eq=False)
class SimulationResult:
    """States at the end of each report step and the matching reports."""

    states: typing.List[typing.Any]
    """Output values per report step (flat for single models, per sub-model otherwise)."""
    reports: typing.List[ReportStep]
    """Report per report step."""

    def __len__(self) -> int:
        return len(self.states)

    def __iter__(self) -> typing.Iterator[typing.Any]:
        return iter(self.states)


class Simulator:
    """
    Fully implicit simulator for a model from an initial state.

    Works with both a single `SimulationModel` (flat states and parameters)
    and a `ReservoirModel` with wells (states and parameters keyed by
    sub-model name).
    """

    def __init__(
        self,
        model: AnyModel,
        state0: typing.Union[StateValues, ModelStateValues],
        parameters: typing.Optional[typing.Union[StateValues, ModelStateValues]] = None,
    ) -> None:
        """
        :param model: Model to simulate.
        :param state0: Initial state.
        :param parameters: Model parameters. Defaults to `model.setup_parameters()`.
        :raises ValidationError: If the state or parameters do not match the model.
        """
        self.model = model
        self.single = isinstance(model, SimulationModel)
        if self.single:
            self.reservoir = ReservoirModel(reservoir=typing.cast(SimulationModel, model))
        elif isinstance(model, ReservoirModel):
            self.reservoir = model
        else:
            raise ValidationError(f"Cannot simulate {model!r}")
        if parameters is None:
            parameters = model.setup_parameters()
        self.parameters = self._wrap(parameters)
        self.state0 = self._wrap(state0)
        self.reservoir.validate_state(self.state0)
        self.assembler = Assembler(self.reservoir, self.parameters)
        self.jacobian = JacobianBuilder(self.assembler)
        self.reports: typing.List[ReportStep] = []
        logger.debug(
            f"Simulator for {model!r} with {self.assembler.size} unknowns and "
            f"{self.jacobian.number_of_evaluations} residual evaluations per Jacobian"
        )

    def _wrap(self, values: typing.Any) -> ModelStateValues:
        if self.single:
            return {self.reservoir.reservoir.name: dict(values)}
        return {name: dict(sub_values) for name, sub_values in values.items()}

    def _unwrap(self, values: ModelStateValues) -> typing.Any:
        if self.single:
            return values[self.reservoir.reservoir.name]
        return values

    def _forces_per_step(self, forces: ForcesSpec, count: int) -> typing.List[Forces]:
        if forces is None:
            forces = setup_forces(self.reservoir)
        if isinstance(forces, Forces):
            steps = [forces] * count
        else:
            steps = list(forces)
            if len(steps) != count:
                raise ValidationError(
                    f"Got {len(steps)} forces for {count} report steps; give one "
                    "forces object or one per report step"
                )
        completed: typing.Dict[int, Forces] = {}
        for step in steps:
            if id(step) not in completed:
                completed[id(step)] = self._complete_forces(step)
        return [completed[id(step)] for step in steps]

    def _complete_forces(self, forces: Forces) -> Forces:
        # Forces built directly may carry unresolved boundary transmissibilities
        resolved = setup_forces(self.reservoir, sources=forces.sources, bc=forces.bc)
        unknown = set(forces.control) - set(self.reservoir.well_names)
        if unknown:
            raise ValidationError(f"Forces control unknown well(s) {sorted(unknown)}")
        controls: typing.Dict[str, WellControl] = {}
        for name in self.reservoir.well_names:
            controls[name] = forces.control.get(name, DisabledControl())
        return attrs.evolve(resolved, control=controls)

    def _outputs(
        self,
        values: ModelStateValues,
        secondary: typing.Mapping[str, typing.Any],
        controls: typing.Optional[typing.Mapping[str, WellControl]] = None,
    ) -> ModelStateValues:
        system = self.reservoir.system
        outputs: ModelStateValues = {}
        for name, sub_values in values.items():
            entry = {key: np.array(value, copy=True) for key, value in sub_values.items()}
            if name != FACILITY and name in secondary:
                volumes = self.assembler.entity_volumes(name, sub_values)
                entry.update(system.outputs(sub_values, secondary[name], volumes))
            outputs[name] = entry
        if controls is not None and FACILITY in outputs:
            targets = [active_target(controls[name]) for name in self.reservoir.well_names]
            outputs[FACILITY]["control_targets"] = np.array([code for code, _ in targets])
            outputs[FACILITY]["target_values"] = np.array([value for _, value in targets])
        return outputs

    def initial_state(self) -> ModelState:
        """Initial state together with its derived outputs."""
        system = self.reservoir.system
        secondary = {
            name: system.secondary(values, self.parameters[name])
            for name, values in self.state0.items()
            if name != FACILITY
        }
        return ModelState(
            step=0, time=0.0, step_size=0.0, values=self._outputs(self.state0, secondary)
        )

    def run(
        self,
        timesteps: typing.Sequence[float],
        forces: ForcesSpec = None,
        config: typing.Optional[Config] = None,
    ) -> typing.Generator[ModelState, None, None]:
        """
        Advance the model over the report steps `timesteps`.

        Each report step is covered by ministeps chosen by a `Timer`; a
        failed ministep is cut and retried.

        :param timesteps: Length of each report step (s).
        :param forces: One `Forces` for all report steps or one per report step.
        :param config: Run configuration.
        :yield: The state at the end of each report step (and after every
            ministep when `config.output_substates` is set).
        :raises SimulationError: If a ministep cannot be completed after the
            maximum number of cuts.
        """
        config = config or Config()
        timer = Timer(
            report_steps=timesteps,
            max_step_size=config.max_timestep,
            min_step_size=config.min_timestep,
            backoff_factor=config.timestep_backoff_factor,
            max_growth_per_step=config.max_timestep_growth,
            target_newton_iterations=config.target_newton_iterations,
            max_rejects=config.max_timestep_cuts,
            max_report_rejects=config.max_report_step_cuts,
        )
        step_forces = self._forces_per_step(forces, timer.number_of_report_steps)
        self.reports = []
        state = self.state0

        logger.info(
            f"Starting simulation of {timer.number_of_report_steps} report steps "
            f"({timer.simulation_time:.6g} s)"
        )
        with config.constants():
            while not timer.done():
                index = timer.report_index
                forces_now = step_forces[index]
                ministeps: typing.List[NewtonReport] = []
                failures = 0
                completed = False
                while not completed:
                    dt = timer.propose_step_size()
                    result = solve_ministep(
                        self.assembler, self.jacobian, state, dt, forces_now, config
                    )
                    report = typing.cast(NewtonReport, result.metadata)
                    if not result.success:
                        failures += 1
                        logger.warning(
                            f"Ministep of {dt:.4g} s in report step {index + 1} failed "
                            f"({result.message}). Cutting time step."
                        )
                        try:
                            timer.reject_step(dt)
                        except TimingError as exc:
                            raise SimulationError(
                                f"Simulation failed in report step {index + 1} at "
                                f"{timer.elapsed_time:.6g} s and cannot reduce the time "
                                f"step further. {exc}\n{result.message}"
                            ) from exc
                        continue

                    solution = result.value
                    state = solution.state
                    ministeps.append(report)
                    # Switched controls stay active for the rest of the report step
                    forces_now = attrs.evolve(forces_now, control=dict(report.controls))
                    completed = timer.accept_step(dt, newton_iterations=report.iterations)
                    evaluation = solution.evaluation
                    if config.output_substates and not completed and evaluation is not None:
                        yield ModelState(
                            step=index + 1,
                            time=timer.elapsed_time,
                            step_size=dt,
                            values=self._outputs(state, evaluation.secondary, forces_now.control),
                            ministeps=len(ministeps),
                        )

                step_size = timer.report_steps[index]
                self.reports.append(
                    ReportStep(
                        step=index + 1,
                        time=timer.elapsed_time,
                        step_size=step_size,
                        ministeps=tuple(ministeps),
                        failures=failures,
                    )
                )
                if (index + 1) % config.log_interval == 0 or timer.done():
                    logger.info(
                        f"Report step {index + 1}/{timer.number_of_report_steps} done: "
                        f"{len(ministeps)} ministep(s), {failures} cut(s), "
                        f"{sum(r.iterations for r in ministeps)} Newton iterations, "
                        f"time {timer.elapsed_time:.6g} s"
                    )
                evaluation = solution.evaluation
                secondary = evaluation.secondary if evaluation is not None else {}
                yield ModelState(
                    step=index + 1,
                    time=timer.elapsed_time,
                    step_size=step_size,
                    values=self._outputs(state, secondary, forces_now.control),
                    ministeps=len(ministeps),
                )
        logger.info(f"Simulation completed after {timer.step} ministeps")

    def simulate(
        self,
        timesteps: typing.Sequence[float],
        forces: ForcesSpec = None,
        config: typing.Optional[Config] = None,
    ) -> SimulationResult:
        """
        Run all report steps and collect the results.

        :return: `SimulationResult` with one state per report step.
        """
        config = config or Config()
        states = [
            self._unwrap(model_state.values)
            for model_state in self.run(timesteps, forces=forces, config=config)
        ]
        return SimulationResult(states=states, reports=list(self.reports))

    def __repr__(self) -> str:
        return f"Simulator({self.model!r})"


def setup_reservoir_simulator(
    model: AnyModel,
    state0: typing.Union[StateValues, ModelStateValues],
    parameters: typing.Optional[typing.Union[StateValues, ModelStateValues]] = None,
    **config_kwargs: typing.Any,
) -> typing.Tuple[Simulator, Config]:
    """
    Set up a simulator and a run configuration.

    :param model: Model to simulate.
    :param state0: Initial state.
    :param parameters: Model parameters.
    :param config_kwargs: `Config` fields, e.g. `tol_cnv=1e-4`.
    :return: The simulator and its configuration.
    """
    unknown = set(config_kwargs) - {field.name for field in attrs.fields(Config)}
    if unknown:
        raise ValidationError(f"Unknown configuration option(s) {sorted(unknown)}")
    return Simulator(model, state0, parameters), Config(**config_kwargs)


def simulate(
    first: typing.Any,
    second: typing.Any = None,
    timesteps: typing.Optional[typing.Sequence[float]] = None,
    forces: ForcesSpec = None,
    config: typing.Optional[Config] = None,
    parameters: typing.Optional[typing.Union[StateValues, ModelStateValues]] = None,
    **config_kwargs: typing.Any,
) -> SimulationResult:
    """
    Simulate a model over report steps.

    Accepted call forms:

    - `simulate(simulator, timesteps, forces=..., config=...)`
    - `simulate(state0, model, timesteps, forces=..., parameters=...)`

    Extra keyword arguments are `Config` fields and cannot be combined with `config`.

    :return: `SimulationResult` with the state at the end of each report step.
    """
    if config is not None and config_kwargs:
        raise ValidationError("Give either `config` or configuration keywords, not both.")
    if config is None:
        unknown = set(config_kwargs) - {field.name for field in attrs.fields(Config)}
        if unknown:
            raise ValidationError(f"Unknown configuration option(s) {sorted(unknown)}")
        config = Config(**config_kwargs)

    if isinstance(first, Simulator):
        simulator = first
        if timesteps is None:
            timesteps = second
        elif second is not None:
            raise ValidationError("`simulate(simulator, timesteps)` takes no model argument.")
    elif isinstance(second, (SimulationModel, ReservoirModel)):
        simulator = Simulator(second, first, parameters)
    else:
        raise ValidationError(
            "Call as simulate(simulator, timesteps, ...) or simulate(state0, model, timesteps, ...)"
        )
    if timesteps is None:
        raise ValidationError("Report step lengths `timesteps` are required.")
    return simulator.simulate(timesteps, forces=forces, config=config)
