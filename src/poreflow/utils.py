import typing

import numpy as np

from poreflow._precision import get_dtype
from poreflow.errors import ValidationError

__all__ = ["as_cell_array", "as_row_array"]


def as_cell_array(
    value: typing.Any,
    count: int,
    name: str = "value",
    dtype: typing.Optional[np.typing.DTypeLike] = None,
) -> np.typing.NDArray:
    """
    Broadcast a scalar or per-entity sequence to a 1D array of length `count`.

    :param value: Scalar or array-like with `count` entries.
    :param count: Number of entities (cells, nodes, ...).
    :param name: Name used in error messages.
    :param dtype: Data type of the result. Defaults to the current precision.
    :return: A new 1D array.
    :raises ValidationError: If the value cannot be broadcast.
    """
    dtype = dtype or get_dtype()
    array = np.asarray(value, dtype=dtype)
    if array.ndim == 0:
        return np.full(count, float(array), dtype=dtype)
    array = array.reshape(-1) if array.ndim == 2 and 1 in array.shape else array
    if array.shape != (count,):
        raise ValidationError(
            f"'{name}' must be a scalar or have shape ({count},), got {array.shape}"
        )
    return array.copy()


def as_row_array(
    value: typing.Any,
    rows: int,
    count: int,
    name: str = "value",
    dtype: typing.Optional[np.typing.DTypeLike] = None,
) -> np.typing.NDArray:
    """
    Broadcast a value to a 2D array of shape `(rows, count)`.

    Accepts a scalar, a vector with one entry per row (repeated for every
    entity), or an array already shaped `(rows, count)`.

    :param value: Value to broadcast.
    :param rows: Number of rows (phases, components, ...).
    :param count: Number of entities.
    :param name: Name used in error messages.
    :param dtype: Data type of the result. Defaults to the current precision.
    :return: A new 2D array.
    :raises ValidationError: If the value cannot be broadcast.
    """
    dtype = dtype or get_dtype()
    array = np.asarray(value, dtype=dtype)
    if array.ndim == 0:
        return np.full((rows, count), float(array), dtype=dtype)
    if array.ndim == 1:
        if array.shape[0] != rows:
            raise ValidationError(
                f"'{name}' must have {rows} entries per entity, got {array.shape[0]}"
            )
        return np.repeat(array[:, None], count, axis=1)
    if array.shape == (rows, count):
        return array.copy()
    if array.shape == (rows, 1):
        return np.repeat(array, count, axis=1)
    raise ValidationError(
        f"'{name}' must be broadcastable to shape ({rows}, {count}), got {array.shape}"
    )
