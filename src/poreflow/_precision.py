from contextlib import contextmanager
from contextvars import ContextVar

import numpy as np


__all__ = ["get_dtype", "with_precision"]

_array_dtype: ContextVar[np.typing.DTypeLike] = ContextVar(
    "_array_dtype", default=np.float64
)


def get_dtype() -> np.typing.DTypeLike:
    """Floating point type of mesh, rock and state arrays built in the current context."""
    return _array_dtype.get()


@contextmanager
def with_precision(dtype: np.typing.DTypeLike):
    """
    Build mesh and rock arrays with `dtype` inside the context.

    Newton iterations run in float64 regardless. A lower precision only
    shrinks stored geometry and rock properties of large meshes.

    :param dtype: A numpy floating point type.
    """
    if not np.issubdtype(np.dtype(dtype), np.floating):
        raise TypeError(f"Expected a floating point type, got {dtype!r}")
    token = _array_dtype.set(dtype)
    try:
        yield
    finally:
        _array_dtype.reset(token)
