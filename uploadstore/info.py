"""Upload metadata and the errors shared by the storage backends."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


class NotFoundError(LookupError):
    """The requested upload does not exist."""

    def __init__(self, message: str = "upload not found") -> None:
        super().__init__(message)


class FileLockedError(RuntimeError):
    """The upload is locked by someone else."""

    def __init__(self, message: str = "file currently locked") -> None:
        super().__init__(message)


def _sorted(mapping: dict[str, str] | None) -> dict[str, str] | None:
    if mapping is None:
        return None
    return {key: mapping[key] for key in sorted(mapping)}


@dataclass
class FileInfo:
    """State of a single upload, stored alongside its data."""

    id: str = ""
    size: int = 0
    size_is_deferred: bool = False
    offset: int = 0
    meta_data: dict[str, str] = field(default_factory=dict)
    is_partial: bool = False
    is_final: bool = False
    partial_uploads: list[str] | None = None
    storage: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the info as a mapping using the on-disk field names."""
        return {
            "ID": self.id,
            "Size": self.size,
            "SizeIsDeferred": self.size_is_deferred,
            "Offset": self.offset,
            "MetaData": _sorted(self.meta_data),
            "IsPartial": self.is_partial,
            "IsFinal": self.is_final,
            "PartialUploads": (
                list(self.partial_uploads) if self.partial_uploads is not None else None
            ),
            "Storage": _sorted(self.storage),
        }

    def to_json(self) -> str:
        """Serialise the info to compact JSON."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls, data: str | bytes | bytearray) -> FileInfo:
        """Parse info previously produced by :meth:`to_json`."""
        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8")
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("file info must be a JSON object")
        partial = obj.get("PartialUploads")
        storage = obj.get("Storage")
        return cls(
            id=obj.get("ID") or "",
            size=int(obj.get("Size") or 0),
            size_is_deferred=bool(obj.get("SizeIsDeferred", False)),
            offset=int(obj.get("Offset") or 0),
            meta_data=dict(obj.get("MetaData") or {}),
            is_partial=bool(obj.get("IsPartial", False)),
            is_final=bool(obj.get("IsFinal", False)),
            partial_uploads=list(partial) if partial is not None else None,
            storage=dict(storage) if storage is not None else None,
        )