import math
import typing

import attrs

from poreflow.constants import Constants
from poreflow.types import IterativeSolver, Preconditioner

__all__ = ["Config"]


@attrs.frozen
class Config:
    """Simulation run configuration and parameters."""

    tol_cnv: float = attrs.field(default=1e-3, validator=attrs.validators.gt(0))
    """
    Tolerance on the maximum normalized cell residual (CNV).

    Each cell residual is divided by its pore volume times the phase density,
    so the measure is a local saturation-like error.
    """
    tol_mb: float = attrs.field(default=1e-7, validator=attrs.validators.gt(0))
    """Tolerance on the normalized total mass balance error (MB) of each component."""
    tol_cnv_well: float = attrs.field(default=1e-2, validator=attrs.validators.gt(0))
    """Tolerance on the normalized residual of well nodes."""
    tol_facility: float = attrs.field(default=1e-5, validator=attrs.validators.gt(0))
    """Relative tolerance on well control equations."""
    tol_generic: float = attrs.field(default=1e-6, validator=attrs.validators.gt(0))
    """Tolerance on the scaled residual of systems without a phase concept (heat, Poisson)."""
    max_nonlinear_iterations: int = attrs.field(
        default=15,
        validator=attrs.validators.and_(
            attrs.validators.ge(1), attrs.validators.le(200)
        ),
    )
    """
    Maximum number of Newton iterations per ministep.

    The ministep is cut when this limit is reached without convergence.
    """
    min_nonlinear_iterations: int = attrs.field(
        default=1, validator=attrs.validators.ge(0)
    )
    """Minimum number of Newton updates performed before convergence is accepted."""
    max_pressure_change: float = attrs.field(
        default=0.2, validator=attrs.validators.gt(0)
    )
    """Maximum relative pressure change per Newton update."""
    max_saturation_change: float = attrs.field(
        default=0.2,
        validator=attrs.validators.and_(attrs.validators.gt(0), attrs.validators.le(1)),
    )
    """Maximum absolute saturation change per Newton update (Appleyard chop)."""
    max_composition_change: float = attrs.field(
        default=0.2,
        validator=attrs.validators.and_(attrs.validators.gt(0), attrs.validators.le(1)),
    )
    """Maximum absolute overall mole fraction change per Newton update."""
    minimum_pressure: float = attrs.field(default=1000.0, validator=attrs.validators.ge(0))
    """Lower bound on pressures during Newton updates (Pa)."""
    relaxation: bool = True
    """Whether to relax Newton updates when the residual starts to oscillate."""
    minimum_relaxation: float = attrs.field(
        default=0.5,
        validator=attrs.validators.and_(attrs.validators.gt(0), attrs.validators.le(1)),
    )
    """Smallest relaxation factor applied to a Newton update."""
    relaxation_step: float = attrs.field(
        default=0.1,
        validator=attrs.validators.and_(attrs.validators.gt(0), attrs.validators.le(1)),
    )
    """Amount by which the relaxation factor changes between iterations."""
    jacobian_perturbation: float = attrs.field(
        default=1e-7,
        validator=attrs.validators.and_(attrs.validators.gt(0), attrs.validators.lt(1e-2)),
    )
    """Relative perturbation used for the finite-difference Jacobian."""
    linear_solver: typing.Union[IterativeSolver, typing.Iterable[IterativeSolver]] = "auto"
    """
    Linear solver(s) for the Newton systems.

    "auto" uses a direct sparse LU solve below `direct_solver_threshold`
    unknowns and BiCGSTAB otherwise.
    """
    preconditioner: typing.Optional[Preconditioner] = "cpr"
    """
    Preconditioner for iterative solvers.

    "cpr" falls back to "ilu" for models without a pressure unknown.
    """
    linear_rtol: float = attrs.field(default=1e-6, validator=attrs.validators.gt(0))
    """Relative tolerance of the iterative linear solver."""
    linear_atol: typing.Optional[float] = None
    """Absolute tolerance of the iterative linear solver (scaled from the right-hand side when None)."""
    max_linear_iterations: int = attrs.field(
        default=200,
        validator=attrs.validators.and_(
            attrs.validators.ge(1), attrs.validators.le(5000)
        ),
    )
    """Maximum number of iterations of the iterative linear solver."""
    direct_solver_threshold: int = attrs.field(
        default=20_000, validator=attrs.validators.ge(0)
    )
    """Size below which the "auto" linear solver uses a direct solve."""
    fallback_to_direct: bool = True
    """Whether to fall back to a direct solver if the iterative solvers fail."""
    max_timestep_cuts: int = attrs.field(default=8, validator=attrs.validators.ge(0))
    """Maximum number of consecutive ministep cuts before the simulation is aborted."""
    max_report_step_cuts: typing.Optional[int] = attrs.field(
        default=20, validator=attrs.validators.optional(attrs.validators.ge(0))
    )
    """Maximum number of ministep cuts within one report step before the simulation is aborted."""
    timestep_backoff_factor: float = attrs.field(
        default=0.5,
        validator=attrs.validators.and_(attrs.validators.gt(0), attrs.validators.lt(1)),
    )
    """Factor applied to the ministep size after a failed ministep."""
    max_timestep: float = attrs.field(default=math.inf, validator=attrs.validators.gt(0))
    """Largest allowed ministep (s)."""
    min_timestep: float = attrs.field(default=1e-3, validator=attrs.validators.gt(0))
    """Smallest allowed ministep (s)."""
    max_timestep_growth: float = attrs.field(
        default=2.0, validator=attrs.validators.ge(1)
    )
    """Largest growth factor of the ministep between two accepted ministeps."""
    target_newton_iterations: int = attrs.field(
        default=8, validator=attrs.validators.ge(1)
    )
    """Newton iteration count that the ministep size selection aims for."""
    check_limits: bool = True
    """Whether well limits may switch the active control during a solve."""
    warn_rate_anomalies: bool = True
    """Whether to warn about producers injecting or injectors producing."""
    log_interval: int = attrs.field(default=1, validator=attrs.validators.ge(1))
    """Interval (in report steps) at which to log simulation progress."""
    output_substates: bool = False
    """Whether to also yield the state after every accepted ministep, not only at report steps."""
    constants: Constants = attrs.field(factory=Constants)
    """Physical and conversion constants used in the simulation."""
