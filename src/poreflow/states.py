import logging
from os import PathLike
import typing

import attrs
import numpy as np

from poreflow.errors import ValidationError
from poreflow.types import ModelStateValues, StateValues

logger = logging.getLogger(__name__)


__all__ = ["ModelState"]


def _as_values(data: typing.Mapping[str, typing.Any]) -> ModelStateValues:
    values: ModelStateValues = {}
    for name, sub_values in data.items():
        if not isinstance(sub_values, typing.Mapping):
            raise ValidationError(f"Values of sub-model {name!r} must be a mapping.")
        values[str(name)] = {str(key): np.asarray(value) for key, value in sub_values.items()}
    return values


@attrs.frozen(eq=False)
class ModelState:
    """
    The state of a model at the end of a report step.

    `values` holds, per sub-model, the primary variables together with the
    derived outputs of the system (e.g. `total_masses`, `saturations`).
    """

    step: int
    """Report step index of the state (0 for the initial state)."""
    time: float
    """Simulated time at this state in seconds."""
    step_size: float
    """Length of the report step that ended at this state in seconds."""
    values: ModelStateValues = attrs.field(converter=_as_values)
    """State values per sub-model."""
    ministeps: int = 0
    """Number of ministeps taken during the report step."""

    def __getitem__(self, name: str) -> StateValues:
        return self.values[name]

    @property
    def sub_models(self) -> typing.Tuple[str, ...]:
        return tuple(self.values)

    def dump(self, recurse: bool = True) -> typing.Dict[str, typing.Any]:
        """Mapping representation used by the state stores."""
        return {
            "step": int(self.step),
            "time": float(self.time),
            "step_size": float(self.step_size),
            "ministeps": int(self.ministeps),
            "values": {
                name: {key: np.asarray(value) for key, value in sub_values.items()}
                for name, sub_values in self.values.items()
            },
        }

    @classmethod
    def load(cls, data: typing.Mapping[str, typing.Any]) -> "ModelState":
        """
        Rebuild a state from its mapping representation.

        :raises ValidationError: If required entries are missing.
        """
        missing = {"step", "time", "step_size", "values"} - set(data)
        if missing:
            raise ValidationError(f"Dumped model state is missing {sorted(missing)}")
        return cls(
            step=int(data["step"]),
            time=float(data["time"]),
            step_size=float(data["step_size"]),
            values=data["values"],
            ministeps=int(data.get("ministeps", 0)),
        )

    def to_file(self, filepath: typing.Union[str, PathLike], **dump_kwargs: typing.Any) -> None:
        """Dump the state to a file, choosing the store from the file extension."""
        from poreflow.stores import store_for_path

        store_for_path(filepath).dump([self], **dump_kwargs)

    @classmethod
    def from_file(cls, filepath: typing.Union[str, PathLike]) -> typing.Optional["ModelState"]:
        """Load the first state stored in a file."""
        from poreflow.stores import store_for_path

        return next(iter(store_for_path(filepath).load(cls)), None)

    def __repr__(self) -> str:
        return (
            f"ModelState(step={self.step}, time={self.time:.6g}, "
            f"sub_models={list(self.values)})"
        )
