class PoreflowError(Exception):
    """Base class for all poreflow errors."""

    pass


class ValidationError(PoreflowError, ValueError):
    """Raised when input data fails validation checks."""

    pass


class PreconditionerError(PoreflowError):
    """Raised when a preconditioner cannot be built or applied."""

    pass


class SolverError(PoreflowError):
    """Raised when a linear solver fails to converge within the specified iterations."""

    pass


class ComputationError(PoreflowError):
    """Raised when there is an error during numerical computations."""

    pass


class ConvergenceError(ComputationError):
    """Raised when an inner iterative procedure (e.g. a flash) does not converge."""

    pass


class SimulationError(PoreflowError):
    """Base class for simulation-related errors."""

    pass


class TimingError(SimulationError):
    """Raised when there is an error related to simulation timing."""

    pass


class StorageError(PoreflowError):
    """Raised when simulation output cannot be written or read."""

    pass
