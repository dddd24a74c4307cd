"""Storage backend keeping uploads in a Google Cloud Storage bucket.

An upload ``<id>`` is stored as a JSON info object ``<id>.info`` and a series of
chunk objects ``<id>_0``, ``<id>_1``, ... which are composed into the single
data object ``<id>`` when the upload finishes.
"""

from __future__ import annotations

import copy
import io
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import BinaryIO

from .gcsservice import (
    GCSAPI,
    GCSComposeParams,
    GCSFilterParams,
    GCSObjectParams,
    ObjectNotExistError,
)
from .info import FileInfo, NotFoundError
from .uid import uid

# Number of object size requests issued in parallel while computing an offset.
CONCURRENT_SIZE_REQUESTS = 32


@dataclass
class GCSStore:
    """Stores uploads in ``bucket`` through ``service``.

    ``object_prefix`` is prepended to every object name and may be used to
    build a pseudo-directory structure such as ``path/to/uploads``.
    """

    bucket: str
    service: GCSAPI
    object_prefix: str = ""

    def new_upload(self, info: FileInfo) -> GCSUpload:
        info = copy.deepcopy(info)
        if not info.id:
            info.id = uid()
        info.storage = {
            "Type": "gcsstore",
            "Bucket": self.bucket,
            "Key": self._key_with_prefix(info.id),
        }
        self._write_info(self._key_with_prefix(info.id), info)
        return GCSUpload(info.id, self)

    def get_upload(self, upload_id: str) -> GCSUpload:
        return GCSUpload(upload_id, self)

    def _key_with_prefix(self, key: str) -> str:
        prefix = self.object_prefix
        if prefix and not prefix.endswith("/"):
            prefix += "/"
        return prefix + key

    def _object(self, name: str) -> GCSObjectParams:
        return GCSObjectParams(bucket=self.bucket, id=name)

    def _filter(self, prefix: str) -> GCSFilterParams:
        return GCSFilterParams(bucket=self.bucket, prefix=prefix)

    def _write_info(self, key: str, info: FileInfo) -> None:
        data = info.to_json().encode("utf-8")
        self.service.write_object(self._object(f"{key}.info"), io.BytesIO(data))


@dataclass
class GCSUpload:
    """One upload stored in the bucket of ``store``."""

    id: str
    store: GCSStore

    @property
    def _key(self) -> str:
        return self.store._key_with_prefix(self.id)

    def write_chunk(self, offset: int, src: BinaryIO) -> int:
        """Store ``src`` as the next chunk object; return the bytes written."""
        store = self.store
        names = store.service.filter_objects(store._filter(f"{self._key}_"))
        max_index = -1
        for name in names:
            index = int(name.split("_")[-1])
            max_index = max(max_index, index)
        chunk_name = f"{self._key}_{max_index + 1}"
        return store.service.write_object(store._object(chunk_name), src)

    def get_info(self) -> FileInfo:
        """Read the stored info, refresh its offset from the chunks and save it."""
        store = self.store
        info_params = store._object(f"{self._key}.info")
        try:
            reader = store.service.read_object(info_params)
        except ObjectNotExistError as exc:
            raise NotFoundError() from exc
        try:
            data = reader.read()
        finally:
            close = getattr(reader, "close", None)
            if close is not None:
                close()
        info = FileInfo.from_json(data)

        names = store.service.filter_objects(store._filter(self._key))
        info.offset = self._total_size(names)
        store._write_info(self._key, info)
        return info

    def _total_size(self, names: list[str]) -> int:
        if not names:
            return 0
        service = self.store.service
        with ThreadPoolExecutor(max_workers=CONCURRENT_SIZE_REQUESTS) as pool:
            futures = [
                pool.submit(service.get_object_size, self.store._object(name))
                for name in names
            ]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            for future in pending:
                future.cancel()
            for future in futures:
                if future in done and future.exception() is not None:
                    raise future.exception()
            wait(futures)
            return sum(future.result() for future in futures)

    def finish_upload(self) -> None:
        """Compose all chunks into the data object and attach the metadata."""
        store = self.store
        filter_params = store._filter(f"{self._key}_")
        names = store.service.filter_objects(filter_params)
        store.service.compose_objects(
            GCSComposeParams(bucket=store.bucket, sources=names, destination=self._key)
        )
        store.service.delete_objects_with_filter(filter_params)
        info = self.get_info()
        store.service.set_object_metadata(store._object(self._key), info.meta_data)

    def terminate(self) -> None:
        self.store.service.delete_objects_with_filter(self.store._filter(self._key))

    def get_reader(self) -> BinaryIO:
        return self.store.service.read_object(self.store._object(self._key))