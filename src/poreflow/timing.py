from collections import deque
from datetime import timedelta
import logging
import typing

import attrs
import numpy as np

from poreflow.errors import TimingError, ValidationError

__all__ = ["Time", "Timer"]

logger = logging.getLogger(__name__)


def Time(
    milliseconds: float = 0,
    seconds: float = 0,
    minutes: float = 0,
    hours: float = 0,
    days: float = 0,
    weeks: float = 0,
    years: float = 0,
) -> float:
    """
    Expresses time components as total seconds.

    :param milliseconds: Number of milliseconds.
    :param seconds: Number of seconds.
    :param minutes: Number of minutes.
    :param hours: Number of hours.
    :param days: Number of days.
    :param weeks: Number of weeks.
    :param years: Number of (365 day) years.
    :return: Total time in seconds.
    """
    delta = timedelta(
        weeks=weeks,
        days=days + 365.0 * years,
        hours=hours,
        minutes=minutes,
        seconds=seconds,
        milliseconds=milliseconds,
    )
    return delta.total_seconds()


def _as_report_steps(value: typing.Any) -> typing.Tuple[float, ...]:
    steps = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if steps.ndim != 1 or steps.size == 0:
        raise ValidationError("Report steps must be a non-empty sequence of durations.")
    if np.any(steps <= 0.0) or not np.all(np.isfinite(steps)):
        raise ValidationError("Report step durations must be positive and finite.")
    return tuple(float(step) for step in steps)


@attrs.frozen(slots=True)
class StepMetrics:
    """Metrics for a single ministep attempt."""

    step_number: int
    step_size: float
    newton_iters: typing.Optional[int] = None
    success: bool = True


@attrs.define
class Timer:
    """
    Ministep controller for a sequence of report steps.

    Each report step is covered by one or more ministeps. Ministeps never
    cross a report step boundary, grow with fast Newton convergence and are
    cut after failures.
    """

    report_steps: typing.Tuple[float, ...] = attrs.field(converter=_as_report_steps)
    """Length of each report step in seconds."""
    max_step_size: float = np.inf
    """Maximum allowable ministep in seconds."""
    min_step_size: float = 1e-3
    """Minimum allowable ministep in seconds."""
    initial_step_size: typing.Optional[float] = None
    """First ministep in seconds. Defaults to the first report step (capped by `max_step_size`)."""
    backoff_factor: float = 0.5
    """Factor by which to reduce the ministep on failed attempts."""
    max_growth_per_step: float = 2.0
    """Maximum multiplicative growth allowed between accepted ministeps."""
    target_newton_iterations: int = 8
    """Newton iteration count that the ministep growth aims for."""
    max_rejects: int = 8
    """Maximum number of consecutive ministep rejections allowed."""
    max_report_rejects: typing.Optional[int] = None
    """Maximum number of ministep rejections within one report step. Unlimited when None."""
    metrics_history_size: int = 10
    """Number of recent ministeps to track."""
    failure_memory_window: int = 5
    """Number of recent failures to remember."""

    elapsed_time: float = attrs.field(init=False, default=0.0)
    """Current simulation time in seconds (sum of all accepted ministeps)."""
    report_index: int = attrs.field(init=False, default=0)
    """Index of the current report step."""
    report_elapsed: float = attrs.field(init=False, default=0.0)
    """Time covered so far within the current report step."""
    step_size: float = attrs.field(init=False, default=0.0)
    """Most recently accepted ministep in seconds."""
    next_step_size: float = attrs.field(init=False, default=0.0)
    """Ministep to propose next."""
    step: int = attrs.field(init=False, default=0)
    """Number of accepted ministeps."""
    rejection_count: int = attrs.field(init=False, default=0)
    """Count of consecutive ministep rejections."""
    report_rejection_count: int = attrs.field(init=False, default=0)
    """Count of ministep rejections in the current report step."""
    recent_metrics: deque = attrs.field(init=False)
    """Recent ministep metrics."""
    failed_step_sizes: deque = attrs.field(init=False)
    """Recent failed ministep sizes."""

    def __attrs_post_init__(self) -> None:
        if self.min_step_size <= 0.0 or self.max_step_size < self.min_step_size:
            raise ValidationError("Ministep bounds must satisfy 0 < min <= max.")
        if self.initial_step_size is None:
            self.initial_step_size = min(self.report_steps[0], self.max_step_size)
        self.next_step_size = min(max(self.initial_step_size, self.min_step_size), self.max_step_size)
        self.step_size = self.next_step_size
        self.recent_metrics = deque(maxlen=self.metrics_history_size)
        self.failed_step_sizes = deque(maxlen=self.failure_memory_window)

    @property
    def number_of_report_steps(self) -> int:
        return len(self.report_steps)

    @property
    def simulation_time(self) -> float:
        return float(sum(self.report_steps))

    @property
    def next_step(self) -> int:
        """Returns the number of the next ministep."""
        return self.step + 1

    def done(self) -> bool:
        """Checks if every report step has been completed."""
        return self.report_index >= self.number_of_report_steps

    @property
    def time_remaining(self) -> float:
        """Remaining simulation time in seconds."""
        return max(self.simulation_time - self.elapsed_time, 0.0)

    @property
    def report_time_remaining(self) -> float:
        """Remaining time in the current report step in seconds."""
        if self.done():
            return 0.0
        return max(self.report_steps[self.report_index] - self.report_elapsed, 0.0)

    def _is_near_failed_size(self, dt: float, tolerance: float = 0.15) -> bool:
        """Check if proposed step size is near a recently failed size."""
        for failed_size in self.failed_step_sizes:
            if abs(dt - failed_size) / failed_size < tolerance:
                return True
        return False

    def propose_step_size(self) -> float:
        """
        Proposes the next ministep without updating state.

        The ministep is capped by the remaining time of the report step and is
        stretched to the end of the report step when it would otherwise leave
        a remainder shorter than `min_step_size`.
        """
        dt = self.next_step_size
        remaining = self.report_time_remaining
        if dt >= remaining or remaining - dt < self.min_step_size:
            dt = remaining
        elif remaining < 2.0 * dt:
            # Split the rest of the report step evenly
            dt = 0.5 * remaining
        logger.debug(
            f"Proposing ministep of {dt:.6g} s for ministep {self.next_step} "
            f"in report step {self.report_index + 1}"
        )
        return dt

    def reject_step(self, step_size: float) -> float:
        """
        Registers a rejected ministep and computes a shorter one.

        :param step_size: The ministep that failed.
        :return: The next ministep to try, in seconds.
        :raises TimingError: If a rejection limit (consecutive or per report step)
            is exceeded, or if the ministep cannot be reduced further.
        """
        self.rejection_count += 1
        self.report_rejection_count += 1
        if self.rejection_count > self.max_rejects:
            raise TimingError(
                f"Maximum number of consecutive ministep cuts ({self.max_rejects}) exceeded"
            )
        if (
            self.max_report_rejects is not None
            and self.report_rejection_count > self.max_report_rejects
        ):
            raise TimingError(
                f"Maximum number of ministep cuts in report step {self.report_index + 1} "
                f"({self.max_report_rejects}) exceeded at {self.report_elapsed:.6g} s of "
                f"{self.report_steps[self.report_index]:.6g} s"
            )
        if step_size <= self.min_step_size * (1.0 + 1e-12):
            raise TimingError(
                f"Ministep of {step_size:.4g} s failed and is already at the minimum "
                f"of {self.min_step_size:.4g} s"
            )
        self.failed_step_sizes.append(step_size)
        self.recent_metrics.append(
            StepMetrics(step_number=self.next_step, step_size=step_size, success=False)
        )
        self.next_step_size = max(step_size * self.backoff_factor, self.min_step_size)
        logger.debug(
            f"Ministep of {step_size:.6g} s rejected at elapsed time {self.elapsed_time:.6g} s. "
            f"New size: {self.next_step_size:.6g} s"
        )
        return self.next_step_size

    def accept_step(
        self, step_size: float, newton_iterations: typing.Optional[int] = None
    ) -> bool:
        """
        Registers an accepted ministep and computes the next one.

        :param step_size: The ministep that was just accepted.
        :param newton_iterations: Number of Newton iterations it took.
        :return: Whether the ministep completed its report step.
        """
        remaining = self.report_time_remaining
        if step_size > remaining * (1.0 + 1e-10):
            raise TimingError(
                f"Ministep {step_size} exceeds remaining report step time {remaining}."
            )
        self.step += 1
        self.step_size = step_size
        self.elapsed_time += step_size
        self.report_elapsed += step_size
        self.recent_metrics.append(
            StepMetrics(
                step_number=self.step,
                step_size=step_size,
                newton_iters=newton_iterations,
                success=True,
            )
        )

        # A ministep shortened to fit the report step does not reduce the next one
        dt = max(self.next_step_size, step_size)
        if newton_iterations is not None:
            factor = self.target_newton_iterations / max(newton_iterations, 1)
            dt *= min(max(factor, self.backoff_factor), self.max_growth_per_step)
        if self.rejection_count == 0 and self._is_near_failed_size(dt):
            dt *= 0.8
        elif self.rejection_count > 0:
            # No growth right after a cut
            dt = min(dt, step_size)
        self.next_step_size = min(max(dt, self.min_step_size), self.max_step_size)
        self.rejection_count = 0

        completed = self.report_elapsed >= self.report_steps[self.report_index] * (1.0 - 1e-12)
        if completed:
            self.report_index += 1
            self.report_elapsed = 0.0
            self.report_rejection_count = 0
            self.elapsed_time = float(sum(self.report_steps[: self.report_index]))
        logger.debug(
            f"Ministep of {step_size:.6g} s accepted for ministep {self.step} "
            f"at elapsed time {self.elapsed_time:.6g} s. Next size: {self.next_step_size:.6g} s"
        )
        return completed
