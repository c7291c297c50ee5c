"""Newton-Raphson solution of a single ministep."""

import logging
import typing
import warnings

import attrs
import numpy as np
from scipy.sparse import diags

from poreflow.assembly import Assembler, Evaluation, StepContext
from poreflow.config import Config
from poreflow.errors import ComputationError, PreconditionerError, SolverError
from poreflow.forces import Forces
from poreflow.jacobian import JacobianBuilder
from poreflow.linalg import solve_linear_system
from poreflow.systems.variables import Pressure
from poreflow.types import FloatArray, ModelStateValues
from poreflow.wells.controls import InjectorControl, ProducerControl, check_limits

logger = logging.getLogger(__name__)

__all__ = [
    "EvolutionResult",
    "NewtonReport",
    "MinistepSolution",
    "solve_ministep",
    "apply_newton_update",
]

T = typing.TypeVar("T")
M = typing.TypeVar("M")


@attrs.frozen
class EvolutionResult(typing.Generic[T, M]):
    """
    Result of a single evolution step in the simulation.
    """

    value: T
    """The result value if successful, otherwise the last iterate (or None)."""
    success: bool = True
    """Indicates if the evolution step was successful."""
    message: typing.Optional[str] = None
    """A message providing additional information about the result."""
    metadata: typing.Optional[M] = None
    """Optional metadata related to the evolution step."""


@attrs.frozen
class NewtonReport:
    """Convergence history of a ministep."""

    dt: float
    """Ministep length (s)."""
    converged: bool
    """Whether the ministep converged."""
    iterations: int
    """Number of Newton updates performed."""
    measures: typing.Tuple[typing.Dict[str, typing.Dict[str, float]], ...] = ()
    """Convergence measures per sub-model at each iteration."""
    linear_solvers: typing.Tuple[str, ...] = ()
    """Linear solver that produced each Newton update."""
    switched_controls: typing.Dict[str, str] = attrs.field(factory=dict)
    """New target key of each well whose control switched on a limit."""
    controls: typing.Dict[str, typing.Any] = attrs.field(factory=dict)
    """Well controls active at the end of the ministep."""


@attrs.frozen(eq=False)
class MinistepSolution:
    """State at the end of a ministep and the evaluation it converged with."""

    state: ModelStateValues
    """Primary values per sub-model."""
    evaluation: typing.Optional[Evaluation]
    """Residual evaluation at the final iterate."""


def apply_newton_update(
    assembler: Assembler, x: FloatArray, dx: FloatArray, config: Config
) -> FloatArray:
    """
    Apply a Newton update variable by variable.

    Each variable limits its part of the update (relative pressure change,
    Appleyard chop on fractions) and projects the result back into its
    admissible set.

    :param assembler: Assembler defining the unknown layout.
    :param x: Current unknowns.
    :param dx: Newton update.
    :param config: Run configuration with the update limits.
    :return: Updated unknowns.
    """
    updated = x.copy()
    for _, variable, indices in assembler.variable_indices():
        primary = x[indices]
        step = variable.limit_update(primary, dx[indices], config)
        if isinstance(variable, Pressure):
            values = variable.project(primary + step, config.minimum_pressure)
        else:
            values = variable.project(primary + step)
        updated[indices] = values
    return updated


def _row_scaled(jacobian, residual: FloatArray):
    scale = np.asarray(abs(jacobian).max(axis=1).todense()).ravel()
    scale = np.where(scale > 0.0, 1.0 / np.where(scale > 0.0, scale, 1.0), 1.0)
    D = diags(scale)
    return (D @ jacobian).tocsr(), scale * residual


def _switch_controls(context: StepContext, evaluation: Evaluation) -> typing.Dict[str, str]:
    switched = {}
    for name, rates in evaluation.well_rates.items():
        if name in context.switched:
            continue
        control = context.controls[name]
        new_control = check_limits(control, rates["bhp"], rates["surface_rates"])
        if new_control is None:
            continue
        old_key = typing.cast(typing.Any, control).target.key
        new_key = typing.cast(typing.Any, new_control).target.key
        logger.info(f"Well {name!r} switched from {old_key!r} to {new_key!r} control")
        context.controls[name] = new_control
        context.switched.add(name)
        switched[name] = new_key
    return switched


def _warn_rate_anomalies(context: StepContext, evaluation: Evaluation) -> None:
    for name, rates in evaluation.well_rates.items():
        control = context.controls[name]
        rate = rates["surface_rate"]
        if isinstance(control, ProducerControl) and rate > 0.0:
            warnings.warn(f"Producer {name!r} is injecting (surface rate {rate:.4g}).")
        elif isinstance(control, InjectorControl) and rate < 0.0:
            warnings.warn(f"Injector {name!r} is producing (surface rate {rate:.4g}).")


def solve_ministep(
    assembler: Assembler,
    jacobian: JacobianBuilder,
    state0: ModelStateValues,
    dt: float,
    forces: Forces,
    config: Config,
) -> EvolutionResult[MinistepSolution, NewtonReport]:
    """
    Solve one ministep with Newton's method.

    :param assembler: Residual assembler of the model.
    :param jacobian: Jacobian builder for the assembler.
    :param state0: State at the start of the ministep.
    :param dt: Ministep length (s).
    :param forces: Forces acting during the ministep.
    :param config: Run configuration.
    :return: `EvolutionResult` with the new state. Failed results carry the
        reason in `message` and should be retried with a shorter ministep.
    """
    context = assembler.begin_step(state0, dt, forces)
    x = assembler.pack(state0)
    cache: typing.Optional[typing.Dict[str, typing.Any]] = None
    relaxation = 1.0
    previous_norm = np.inf
    history: typing.List[typing.Dict[str, typing.Dict[str, float]]] = []
    solvers: typing.List[str] = []
    switched: typing.Dict[str, str] = {}
    evaluation: typing.Optional[Evaluation] = None

    def report(converged: bool, iterations: int) -> NewtonReport:
        return NewtonReport(
            dt=dt,
            converged=converged,
            iterations=iterations,
            measures=tuple(history),
            linear_solvers=tuple(solvers),
            switched_controls=dict(switched),
            controls=dict(context.controls),
        )

    def failure(message: str, iterations: int) -> EvolutionResult[MinistepSolution, NewtonReport]:
        logger.debug(f"Ministep of {dt:.4g} s failed: {message}")
        return EvolutionResult(
            value=MinistepSolution(state=assembler.unpack(x), evaluation=evaluation),
            success=False,
            message=message,
            metadata=report(False, iterations),
        )

    for iteration in range(config.max_nonlinear_iterations + 1):
        try:
            evaluation = assembler.evaluate(x, context, cache)
            if config.check_limits and context.controls:
                changes = _switch_controls(context, evaluation)
                if changes:
                    switched.update(changes)
                    evaluation = assembler.evaluate(x, context, cache)
        except ComputationError as exc:
            return failure(f"Residual evaluation failed at iteration {iteration}: {exc}", iteration)

        converged, measures = assembler.convergence(evaluation, config)
        history.append(measures)
        norm = float(np.linalg.norm(evaluation.residual))
        logger.debug(f"Iteration {iteration}: residual norm = {norm:.4e}, measures = {measures}")
        if converged and iteration >= config.min_nonlinear_iterations:
            if config.warn_rate_anomalies:
                _warn_rate_anomalies(context, evaluation)
            return EvolutionResult(
                value=MinistepSolution(state=evaluation.values, evaluation=evaluation),
                success=True,
                metadata=report(True, iteration),
            )
        if iteration == config.max_nonlinear_iterations:
            break

        cache = evaluation.flash_cache()
        base_cache = cache

        def residual(y: FloatArray) -> FloatArray:
            return assembler.evaluate(y, context, base_cache).residual

        try:
            J = jacobian(residual, x, evaluation.residual, config.jacobian_perturbation)
            A, b = _row_scaled(J, -evaluation.residual)
            dx, info = solve_linear_system(
                A,
                b,
                max_iterations=config.max_linear_iterations,
                rtol=config.linear_rtol,
                atol=config.linear_atol,
                solver=config.linear_solver,
                preconditioner=config.preconditioner,
                fallback_to_direct=config.fallback_to_direct,
                direct_solver_threshold=config.direct_solver_threshold,
                pressure_indices=assembler.pressure_indices,
                block_sizes=assembler.block_sizes,
            )
        except ComputationError as exc:
            return failure(f"Jacobian evaluation failed at iteration {iteration}: {exc}", iteration)
        except (SolverError, PreconditionerError) as exc:
            logger.warning(f"Linear solver failed at iteration {iteration}: {exc}")
            return failure(f"Linear solver failure during Newton iteration. {exc}", iteration)
        solvers.append(info["solver"])

        if config.relaxation and iteration > 0:
            if norm > previous_norm:
                relaxation = max(relaxation - config.relaxation_step, config.minimum_relaxation)
            else:
                relaxation = min(relaxation + config.relaxation_step, 1.0)
        x = apply_newton_update(assembler, x, relaxation * dx, config)
        previous_norm = norm

    return failure(
        f"Newton did not converge in {config.max_nonlinear_iterations} iterations",
        config.max_nonlinear_iterations,
    )
