"""Object-storage operations used to keep uploads in a Google Cloud Storage bucket.

The :class:`GCSService` works on top of a :class:`StorageBackend`, a small
interface for the raw bucket operations (read, write, compose, list and so on).
On top of those it adds ordered listing of chunk objects, prefix deletion and
composition of any number of objects with CRC32C verification.
"""

from __future__ import annotations

import abc
import math
import re
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable

COMPOSE_RETRIES = 3

# Maximum number of objects a single compose request may combine.
MAX_OBJECT_COMPOSITION = 32

_CASTAGNOLI = 0x82F63B78
_MASK = 0xFFFFFFFF


def _make_table() -> tuple[int, ...]:
    table = []
    for n in range(256):
        c = n
        for _ in range(8):
            c = (c >> 1) ^ _CASTAGNOLI if c & 1 else c >> 1
        table.append(c)
    return tuple(table)


_TABLE = _make_table()


def crc32c(data: bytes, crc: int = 0) -> int:
    """Return the CRC32C (Castagnoli) of ``data``, continuing from ``crc``."""
    crc = ~crc & _MASK
    for byte in data:
        crc = _TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return ~crc & _MASK


def _gf2_times(matrix: list[int], vector: int) -> int:
    total = 0
    for row in matrix:
        if not vector:
            break
        if vector & 1:
            total ^= row
        vector >>= 1
    return total


def _gf2_square(matrix: list[int]) -> list[int]:
    return [_gf2_times(matrix, row) for row in matrix]


def crc32c_combine(crc1: int, crc2: int, len2: int) -> int:
    """Return the CRC32C of ``A + B`` given ``crc32c(A)``, ``crc32c(B)`` and ``len(B)``."""
    if len2 <= 0:
        return crc1

    # Operator for one zero bit, then for two and four zero bits.
    odd = [_CASTAGNOLI] + [1 << n for n in range(31)]
    even = _gf2_square(odd)
    odd = _gf2_square(even)

    while True:
        even = _gf2_square(odd)
        if len2 & 1:
            crc1 = _gf2_times(even, crc1)
        len2 >>= 1
        if not len2:
            break
        odd = _gf2_square(even)
        if len2 & 1:
            crc1 = _gf2_times(odd, crc1)
        len2 >>= 1
        if not len2:
            break

    return (crc1 ^ crc2) & _MASK


_INDEX_RE = re.compile(r"[+-]?[0-9]+")


def _parse_index(text: str) -> int:
    if not _INDEX_RE.fullmatch(text):
        raise ValueError(f"invalid chunk index: {text!r}")
    index = int(text)
    if index < 0:
        raise ValueError(f"negative chunk index: {text!r}")
    return index


def order_object_names(names: Iterable[str]) -> list[str]:
    """Order listed object names for composition or deletion.

    Names are expected as ``[uid]_[chunk_idx]`` and are placed at their chunk
    index; gaps are filled with empty strings. Names ending in ``info`` are
    skipped. A name without an underscore is a composed object and is returned
    alone. Temporary objects named ``[uid]_tmp_[level]_[idx]`` are appended in
    listing order. Any other shape raises ``ValueError``.
    """
    ordered: list[str] = []
    for name in names:
        if name.endswith("info"):
            continue

        file_name = name.split("/")[-1]
        parts = file_name.split("_")

        if len(parts) == 1:
            return [name]
        if len(parts) == 4:
            ordered.append(name)
            continue
        if len(parts) != 2:
            raise ValueError("Invalid filter format for object name")

        index = _parse_index(parts[1])
        if len(ordered) <= index:
            ordered.extend([""] * (index - len(ordered) + 1))
        ordered[index] = name

    return ordered


class ObjectNotExistError(LookupError):
    """The requested object does not exist in the bucket."""

    def __init__(self, message: str = "storage: object doesn't exist") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class GCSObjectParams:
    """Identifies one object: its bucket and its name."""

    bucket: str
    id: str


@dataclass
class GCSComposeParams:
    """Sources to compose, in order, into ``destination`` inside ``bucket``."""

    bucket: str
    sources: list[str] = field(default_factory=list)
    destination: str = ""


@dataclass(frozen=True)
class GCSFilterParams:
    """Selects the objects in ``bucket`` whose names start with ``prefix``."""

    bucket: str
    prefix: str = ""


@dataclass
class ObjectAttrs:
    """Attributes of a stored object."""

    name: str
    size: int
    crc32c: int
    content_type: str = ""
    metadata: dict[str, str] = field(default_factory=dict)


class StorageBackend(abc.ABC):
    """Raw bucket operations that :class:`GCSService` builds upon."""

    @abc.abstractmethod
    def attrs(self, bucket: str, name: str) -> ObjectAttrs:
        """Return the attributes of an object, or raise ObjectNotExistError."""

    @abc.abstractmethod
    def open(self, bucket: str, name: str) -> BinaryIO:
        """Open an object for reading, or raise ObjectNotExistError."""

    @abc.abstractmethod
    def update_metadata(self, bucket: str, name: str, metadata: dict[str, str]) -> None:
        """Replace the custom metadata of an object."""

    @abc.abstractmethod
    def delete(self, bucket: str, name: str) -> None:
        """Delete an object, or raise ObjectNotExistError."""

    @abc.abstractmethod
    def write(self, bucket: str, name: str, reader: BinaryIO) -> int:
        """Store everything readable from ``reader``; raise LookupError if the bucket is missing."""

    @abc.abstractmethod
    def compose(
        self, bucket: str, sources: list[str], destination: str, content_type: str
    ) -> None:
        """Concatenate ``sources`` into ``destination``."""

    @abc.abstractmethod
    def list_names(self, bucket: str, prefix: str) -> Iterable[str]:
        """Yield the names of all objects starting with ``prefix``."""


class GCSAPI(abc.ABC):
    """Operations the upload store needs from cloud storage."""

    @abc.abstractmethod
    def read_object(self, params: GCSObjectParams) -> BinaryIO: ...

    @abc.abstractmethod
    def get_object_size(self, params: GCSObjectParams) -> int: ...

    @abc.abstractmethod
    def set_object_metadata(
        self, params: GCSObjectParams, metadata: dict[str, str]
    ) -> None: ...

    @abc.abstractmethod
    def delete_object(self, params: GCSObjectParams) -> None: ...

    @abc.abstractmethod
    def delete_objects_with_filter(self, params: GCSFilterParams) -> None: ...

    @abc.abstractmethod
    def write_object(self, params: GCSObjectParams, reader: BinaryIO) -> int: ...

    @abc.abstractmethod
    def compose_objects(self, params: GCSComposeParams) -> None: ...

    @abc.abstractmethod
    def filter_objects(self, params: GCSFilterParams) -> list[str]: ...


class GCSService(GCSAPI):
    """Implements :class:`GCSAPI` on top of a :class:`StorageBackend`."""

    def __init__(self, backend: StorageBackend) -> None:
        self.backend = backend

    def get_object_attrs(self, params: GCSObjectParams) -> ObjectAttrs:
        return self.backend.attrs(params.bucket, params.id)

    def get_object_size(self, params: GCSObjectParams) -> int:
        return self.get_object_attrs(params).size

    def read_object(self, params: GCSObjectParams) -> BinaryIO:
        return self.backend.open(params.bucket, params.id)

    def set_object_metadata(
        self, params: GCSObjectParams, metadata: dict[str, str]
    ) -> None:
        self.backend.update_metadata(params.bucket, params.id, dict(metadata))

    def delete_object(self, params: GCSObjectParams) -> None:
        self.backend.delete(params.bucket, params.id)

    def delete_objects_with_filter(self, params: GCSFilterParams) -> None:
        """Delete every object that :meth:`filter_objects` selects."""
        for name in self.filter_objects(params):
            self.delete_object(GCSObjectParams(bucket=params.bucket, id=name))

    def write_object(self, params: GCSObjectParams, reader: BinaryIO) -> int:
        try:
            return self.backend.write(params.bucket, params.id, reader)
        except LookupError as exc:
            raise RuntimeError(
                f"gcsstore: the bucket {params.bucket} could not be found "
                "while trying to write an object"
            ) from exc

    def compose_from(
        self, sources: list[str], dst_params: GCSObjectParams, content_type: str
    ) -> int:
        """Compose ``sources`` into the destination and return its CRC32C."""
        self.backend.compose(dst_params.bucket, list(sources), dst_params.id, content_type)
        return self.get_object_attrs(dst_params).crc32c

    def compose_objects(self, params: GCSComposeParams) -> None:
        """Compose any number of objects, in rounds of at most 32 each."""
        self._recursive_compose(list(params.sources), params, 0)

    def filter_objects(self, params: GCSFilterParams) -> list[str]:
        return order_object_names(self.backend.list_names(params.bucket, params.prefix))

    def _compose(self, bucket: str, sources: list[str], destination: str) -> None:
        if not sources:
            raise ValueError("no source objects to compose")

        dst_params = GCSObjectParams(bucket=bucket, id=destination)
        crc = 0
        first: ObjectAttrs | None = None
        for name in sources:
            attrs = self.get_object_attrs(GCSObjectParams(bucket=bucket, id=name))
            if first is None:
                first = attrs
                crc = attrs.crc32c
            else:
                crc = crc32c_combine(crc, attrs.crc32c, attrs.size)

        assert first is not None
        for _ in range(COMPOSE_RETRIES):
            if self.compose_from(sources, dst_params, first.content_type) == crc:
                return

        self.delete_object(dst_params)
        raise RuntimeError("GCS compose failed: Mismatch of CRC32 checksums")

    def _recursive_compose(
        self, sources: list[str], params: GCSComposeParams, level: int
    ) -> None:
        if len(sources) <= MAX_OBJECT_COMPOSITION:
            self._compose(params.bucket, sources, params.destination)
            self.delete_objects_with_filter(
                GCSFilterParams(bucket=params.bucket, prefix=f"{params.destination}_tmp")
            )
            return

        count = math.ceil(len(sources) / MAX_OBJECT_COMPOSITION)
        temporaries = []
        for i in range(count):
            start = i * MAX_OBJECT_COMPOSITION
            end = len(sources) if i == count - 1 else start + MAX_OBJECT_COMPOSITION
            tmp_name = f"{params.destination}_tmp_{level}_{i}"
            self._compose(params.bucket, sources[start:end], tmp_name)
            temporaries.append(tmp_name)

        self._recursive_compose(temporaries, params, level + 1)