"""Storage backend keeping uploads as files in a local directory.

Each upload ``<id>`` is stored as two files: ``<id>`` holds the raw data and
``<id>.info`` holds its :class:`FileInfo` as JSON. Nothing is ever cleaned up
automatically.
"""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from typing import BinaryIO, Iterable

from .info import FileInfo, NotFoundError
from .uid import uid

_FILE_PERM = 0o664
_CHUNK = 64 * 1024


def _copy_stream(src: BinaryIO, dst: BinaryIO) -> int:
    written = 0
    while chunk := src.read(_CHUNK):
        dst.write(chunk)
        written += len(chunk)
    return written


def _open_append(path: str) -> BinaryIO:
    fd = os.open(path, os.O_WRONLY | os.O_APPEND, _FILE_PERM)
    return os.fdopen(fd, "ab")


@dataclass
class FileUpload:
    """One upload stored on disk."""

    info: FileInfo
    info_path: str
    bin_path: str

    def get_info(self) -> FileInfo:
        return copy.deepcopy(self.info)

    def write_chunk(self, offset: int, src: BinaryIO) -> int:
        """Append everything readable from ``src``; return the byte count."""
        written = 0
        with _open_append(self.bin_path) as dst:
            try:
                while chunk := src.read(_CHUNK):
                    dst.write(chunk)
                    written += len(chunk)
            finally:
                self.info.offset += written
        return written

    def get_reader(self) -> BinaryIO:
        return open(self.bin_path, "rb")

    def terminate(self) -> None:
        os.remove(self.info_path)
        os.remove(self.bin_path)

    def concat_uploads(self, uploads: Iterable[FileUpload]) -> None:
        """Append the data of each partial upload, in order, to this one."""
        with _open_append(self.bin_path) as dst:
            for partial in uploads:
                with open(partial.bin_path, "rb") as src:
                    _copy_stream(src, dst)

    def declare_length(self, length: int) -> None:
        self.info.size = length
        self.info.size_is_deferred = False
        self._write_info()

    def finish_upload(self) -> None:
        """Persist the final state of the upload's info next to its data."""
        self._write_info()

    def _write_info(self) -> None:
        data = self.info.to_json().encode("utf-8")
        fd = os.open(
            self.info_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, _FILE_PERM
        )
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)


@dataclass(frozen=True)
class FileStore:
    """Stores uploads in ``path``, which must already exist."""

    path: str

    def _bin_path(self, upload_id: str) -> str:
        return os.path.join(self.path, upload_id)

    def _info_path(self, upload_id: str) -> str:
        return os.path.join(self.path, upload_id + ".info")

    def new_upload(self, info: FileInfo) -> FileUpload:
        upload_id = uid()
        bin_path = self._bin_path(upload_id)
        info = copy.deepcopy(info)
        info.id = upload_id
        info.storage = {"Type": "filestore", "Path": bin_path}

        try:
            fd = os.open(bin_path, os.O_CREAT | os.O_WRONLY, _FILE_PERM)
        except FileNotFoundError as exc:
            raise FileNotFoundError(
                f"upload directory does not exist: {self.path}"
            ) from exc
        os.close(fd)

        upload = FileUpload(
            info=info, info_path=self._info_path(upload_id), bin_path=bin_path
        )
        upload._write_info()
        return upload

    def get_upload(self, upload_id: str) -> FileUpload:
        info_path = self._info_path(upload_id)
        bin_path = self._bin_path(upload_id)
        try:
            with open(info_path, "rb") as handle:
                data = handle.read()
        except FileNotFoundError as exc:
            raise NotFoundError() from exc
        info = FileInfo.from_json(data)
        try:
            size = os.stat(bin_path).st_size
        except FileNotFoundError as exc:
            raise NotFoundError() from exc
        info.offset = size
        return FileUpload(info=info, info_path=info_path, bin_path=bin_path)