"""
Stores for sequences of `ModelState`.

Backends are picked by name or by file extension:

- `hdf5`/`h5`: one group per state, appendable.
- `pickle`/`pkl` (`gz`, `xz`): compressed pickle of the dumped states.
- `json`: orjson document with arrays as nested lists.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from contextlib import contextmanager
import gzip
import logging
import lzma
from os import PathLike
from pathlib import Path
import pickle
import typing

import h5py
import numpy as np
import orjson

from poreflow.errors import StorageError, ValidationError
from poreflow.states import ModelState


__all__ = [
    "DataStore",
    "HDF5Store",
    "PickleStore",
    "JSONStore",
    "new_store",
    "store_for_path",
]

logger = logging.getLogger(__name__)

StateT = typing.TypeVar("StateT", bound=ModelState)
StatePath = typing.Union[str, PathLike]
Compression = typing.Optional[typing.Literal["gzip", "lzma"]]

_BACKENDS: typing.Dict[str, typing.Type["DataStore"]] = {}


@contextmanager
def _storage_errors(path: Path) -> typing.Iterator[None]:
    """Re-raise failures of a store operation on `path` as `StorageError`."""
    try:
        yield
    except StorageError:
        raise
    except Exception as exc:
        raise StorageError(f"Store operation on '{path}' failed: {exc}") from exc


def _checked_path(filepath: StatePath, extension: str, create_parent: bool = True) -> Path:
    """
    Normalize `filepath`, appending `extension` when the path has none.

    :raises StorageError: On an empty path or a different extension.
    """
    path = Path(filepath)
    if not str(filepath).strip():
        raise StorageError("Store path cannot be empty")
    if not path.suffix:
        path = path.with_suffix(extension)
    elif extension not in path.suffixes:
        raise StorageError(
            f"Expected a '{extension}' file, got '{path.name}'. "
            f"Use '{path.with_suffix(extension)}' instead."
        )
    if create_parent:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create directory '{path.parent}': {exc}") from exc
    return path


class DataStore(ABC):
    """A file holding a sequence of model states."""

    names: typing.ClassVar[typing.Tuple[str, ...]] = ()
    """Backend names and file extensions served by the store."""
    supports_append: typing.ClassVar[bool] = False
    """Whether `dump` adds to existing content instead of replacing it."""

    filepath: Path

    def __init_subclass__(cls, **kwargs: typing.Any) -> None:
        super().__init_subclass__(**kwargs)
        for name in cls.names:
            _BACKENDS[name] = cls

    def dump(self, data: typing.Iterable[ModelState], exist_ok: bool = True) -> None:
        """
        Write `data` to the store.

        :param data: States to write.
        :param exist_ok: Whether an existing file may be written to.
        :raises StorageError: If writing fails.
        """
        states = list(data)
        with _storage_errors(self.filepath):
            self._write([state.dump(recurse=True) for state in states], exist_ok)
        logger.debug(f"Wrote {len(states)} state(s) to {self.filepath}")

    def load(self, typ: typing.Type[StateT] = ModelState) -> typing.Iterator[StateT]:  # type: ignore[assignment]
        """
        Read the states of the store in order.

        :param typ: State class rebuilding each entry through `typ.load`.
        :raises StorageError: If reading fails.
        """
        with _storage_errors(self.filepath):
            for entry in self._read():
                yield typ.load(entry)

    @abstractmethod
    def _write(self, entries: typing.List[typing.Dict[str, typing.Any]], exist_ok: bool) -> None: ...

    @abstractmethod
    def _read(self) -> typing.Iterator[typing.Mapping[str, typing.Any]]: ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self.filepath)!r})"


class HDF5Store(DataStore):
    """
    HDF5 store with one group per state, named after the report step.

    Sub-model values become sub-groups holding compressed datasets; scalar
    entries (step, time, ...) are group attributes. Dumping into an existing
    file adds or replaces the groups of the dumped steps.
    """

    names = ("hdf5", "h5")
    supports_append = True

    def __init__(
        self,
        filepath: StatePath,
        compression: typing.Optional[typing.Literal["gzip", "lzf"]] = "gzip",
        compression_level: int = 3,
    ) -> None:
        extension = ".hdf5" if str(filepath).endswith(".hdf5") else ".h5"
        self.filepath = _checked_path(filepath, extension)
        self.compression = compression
        self.compression_level = compression_level if compression == "gzip" else None

    @staticmethod
    def group_name(entry: typing.Mapping[str, typing.Any]) -> str:
        return f"state_{int(entry['step']):06d}"

    def _put(self, group: h5py.Group, entry: typing.Mapping[str, typing.Any]) -> None:
        for key, value in entry.items():
            if isinstance(value, Mapping):
                self._put(group.require_group(key), value)
                continue
            array = np.asarray(value)
            if array.ndim == 0:
                group.attrs[key] = array.item()
                continue
            if key in group:
                del group[key]
            group.create_dataset(
                key,
                data=array,
                compression=self.compression if array.size else None,
                compression_opts=self.compression_level if array.size else None,
            )

    def _get(self, group: h5py.Group) -> typing.Dict[str, typing.Any]:
        entry: typing.Dict[str, typing.Any] = {
            key: value.item() if isinstance(value, np.generic) else value
            for key, value in group.attrs.items()
        }
        for key, item in group.items():
            entry[key] = self._get(item) if isinstance(item, h5py.Group) else item[()]
        return entry

    def _write(self, entries: typing.List[typing.Dict[str, typing.Any]], exist_ok: bool) -> None:
        with h5py.File(self.filepath, "a" if exist_ok else "w-") as f:
            for entry in entries:
                self._put(f.require_group(self.group_name(entry)), entry)

    def _read(self) -> typing.Iterator[typing.Mapping[str, typing.Any]]:
        with h5py.File(self.filepath, "r") as f:
            for name in sorted(f):
                yield self._get(f[name])


class PickleStore(DataStore):
    """Pickle store, gzip compressed unless `compression` is None. Each dump replaces the file."""

    names = ("pickle", "pkl", "gz", "xz")

    _suffixes: typing.ClassVar[typing.Dict[typing.Optional[str], str]] = {
        "gzip": ".pkl.gz",
        "lzma": ".pkl.xz",
        None: ".pkl",
    }

    def __init__(
        self,
        filepath: StatePath,
        compression: Compression = "gzip",
        compression_level: int = 6,
    ) -> None:
        name = str(filepath)
        if name.endswith(".gz"):
            compression = "gzip"
        elif name.endswith(".xz"):
            compression = "lzma"
        else:
            name = str(_checked_path(filepath, ".pkl"))
        for suffix in (".pkl.gz", ".pkl.xz", ".pkl", ".gz", ".xz"):
            if name.endswith(suffix):
                name = name[: -len(suffix)]
                break
        self.compression = compression
        self.compression_level = compression_level
        self.filepath = Path(name + self._suffixes[compression])

    def _open(self, mode: str) -> typing.IO[bytes]:
        if self.compression == "gzip":
            return gzip.open(self.filepath, mode, compresslevel=self.compression_level)
        if self.compression == "lzma":
            return lzma.open(self.filepath, mode, preset=self.compression_level)
        return open(self.filepath, mode)

    def _write(self, entries: typing.List[typing.Dict[str, typing.Any]], exist_ok: bool) -> None:
        if not exist_ok and self.filepath.exists():
            raise StorageError(f"'{self.filepath}' already exists")
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        with self._open("wb") as f:
            pickle.dump(entries, f, protocol=pickle.HIGHEST_PROTOCOL)

    def _read(self) -> typing.Iterator[typing.Mapping[str, typing.Any]]:
        with self._open("rb") as f:
            entries = pickle.load(f)
        yield from entries


class JSONStore(DataStore):
    """JSON store written with orjson. Each dump replaces the file."""

    names = ("json",)

    def __init__(self, filepath: StatePath) -> None:
        self.filepath = _checked_path(filepath, ".json")

    def _write(self, entries: typing.List[typing.Dict[str, typing.Any]], exist_ok: bool) -> None:
        if not exist_ok and self.filepath.exists():
            raise StorageError(f"'{self.filepath}' already exists")
        self.filepath.write_bytes(
            orjson.dumps(entries, option=orjson.OPT_SERIALIZE_NUMPY | orjson.OPT_INDENT_2)
        )

    def _read(self) -> typing.Iterator[typing.Mapping[str, typing.Any]]:
        yield from orjson.loads(self.filepath.read_bytes())


def new_store(backend: str, filepath: StatePath, **kwargs: typing.Any) -> DataStore:
    """
    Create a store by backend name.

    :param backend: One of "hdf5", "h5", "pickle", "pkl", "gz", "xz" or "json".
    :param filepath: File of the store.
    :param kwargs: Backend options, e.g. `compression`.
    :raises ValidationError: If the backend is unknown.
    """
    try:
        store_cls = _BACKENDS[backend]
    except KeyError:
        raise ValidationError(
            f"Unknown store backend {backend!r}. Choose from {sorted(_BACKENDS)}"
        ) from None
    return store_cls(filepath, **kwargs)


def store_for_path(filepath: StatePath, **kwargs: typing.Any) -> DataStore:
    """Create the store matching the extension of `filepath`."""
    return new_store(Path(filepath).suffix.lower().lstrip("."), filepath, **kwargs)
