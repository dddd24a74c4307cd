import io
import threading

import pytest

from uploadstore.gcsservice import (
    GCSAPI,
    GCSComposeParams,
    GCSFilterParams,
    GCSObjectParams,
    ObjectNotExistError,
)
from uploadstore.gcsstore import GCSStore
from uploadstore.info import FileInfo, NotFoundError

MOCK_ID = "123456789abcdefghijklmnopqrstuvwxyz"
MOCK_BUCKET = "bucket"
MOCK_SIZE = 1337
MOCK_READER_DATA = b"helloworld"
MOCK_INFO_JSON = (
    '{"ID":"%s","Size":%d,"MetaData":{"foo":"bar"},'
    '"Storage":{"Bucket":"bucket","Key":"%s","Type":"gcsstore"}}'
    % (MOCK_ID, MOCK_SIZE, MOCK_ID)
)
MOCK_PARTIALS = [f"{MOCK_ID}_0", f"{MOCK_ID}_1", f"{MOCK_ID}_2"]


def mock_info(**changes):
    info = FileInfo(
        id=MOCK_ID,
        size=MOCK_SIZE,
        meta_data={"foo": "bar"},
        storage={"Type": "gcsstore", "Bucket": MOCK_BUCKET, "Key": MOCK_ID},
    )
    for key, value in changes.items():
        setattr(info, key, value)
    return info


class FakeService(GCSAPI):
    def __init__(self):
        self.calls = []
        self.written = {}
        self.objects = {}
        self.filters = {}
        self.sizes = {}
        self.size_error = None
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def read_object(self, params):
        self._record("read_object", params)
        if params.id not in self.objects:
            raise ObjectNotExistError()
        return io.BytesIO(self.objects[params.id])

    def get_object_size(self, params):
        self._record("get_object_size", params)
        if self.size_error is not None:
            raise self.size_error
        return self.sizes[params.id]

    def set_object_metadata(self, params, metadata):
        self._record("set_object_metadata", params, dict(metadata))

    def delete_object(self, params):
        self._record("delete_object", params)

    def delete_objects_with_filter(self, params):
        self._record("delete_objects_with_filter", params)

    def write_object(self, params, reader):
        data = reader.read()
        self._record("write_object", params, data)
        self.written[params.id] = data
        return len(data)

    def compose_objects(self, params):
        self._record("compose_objects", params)

    def filter_objects(self, params):
        self._record("filter_objects", params)
        return list(self.filters.get(params.prefix, []))


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def store(service):
    return GCSStore(MOCK_BUCKET, service)


def test_new_upload(store, service):
    assert store.bucket == MOCK_BUCKET
    upload = store.new_upload(mock_info())
    assert upload.id == MOCK_ID
    expected = mock_info().to_json().encode()
    assert service.calls == [
        ("write_object", GCSObjectParams(MOCK_BUCKET, f"{MOCK_ID}.info"), expected)
    ]


def test_new_upload_with_prefix(store, service):
    store.object_prefix = "/path/to/file"
    upload = store.new_upload(mock_info())
    assert upload.id == MOCK_ID
    key = "/path/to/file/" + MOCK_ID
    expected = mock_info(
        storage={"Type": "gcsstore", "Bucket": MOCK_BUCKET, "Key": key}
    ).to_json().encode()
    assert service.written == {f"{key}.info": expected}


def test_new_upload_generates_id(store, service):
    upload = store.new_upload(FileInfo(size=5))
    assert len(upload.id) == 32
    stored = FileInfo.from_json(service.written[f"{upload.id}.info"])
    assert stored.storage["Key"] == upload.id
    assert stored.size == 5


def test_get_info(store, service):
    service.objects[f"{MOCK_ID}.info"] = MOCK_INFO_JSON.encode()
    service.filters[MOCK_ID] = MOCK_PARTIALS
    service.sizes = {name: 100 for name in MOCK_PARTIALS}

    info = store.get_upload(MOCK_ID).get_info()
    expected = mock_info(offset=300)
    assert info == expected

    names = [call[0] for call in service.calls]
    assert names[:2] == ["read_object", "filter_objects"]
    assert service.calls[1][1] == GCSFilterParams(MOCK_BUCKET, MOCK_ID)
    assert sorted(call[1].id for call in service.calls[2:5]) == MOCK_PARTIALS
    assert service.calls[-1] == (
        "write_object",
        GCSObjectParams(MOCK_BUCKET, f"{MOCK_ID}.info"),
        expected.to_json().encode(),
    )


def test_get_info_not_found(store, service):
    with pytest.raises(NotFoundError):
        store.get_upload(MOCK_ID).get_info()
    assert [call[0] for call in service.calls] == ["read_object"]


def test_get_info_size_error(store, service):
    service.objects[f"{MOCK_ID}.info"] = MOCK_INFO_JSON.encode()
    service.filters[MOCK_ID] = MOCK_PARTIALS
    service.size_error = RuntimeError("size failed")
    with pytest.raises(RuntimeError, match="size failed"):
        store.get_upload(MOCK_ID).get_info()
    assert service.written == {}


def test_get_reader(store, service):
    service.objects[MOCK_ID] = MOCK_READER_DATA
    reader = store.get_upload(MOCK_ID).get_reader()
    assert reader.read(len(MOCK_READER_DATA)) == MOCK_READER_DATA
    assert service.calls == [("read_object", GCSObjectParams(MOCK_BUCKET, MOCK_ID))]


def test_terminate(store, service):
    store.get_upload(MOCK_ID).terminate()
    assert service.calls == [
        ("delete_objects_with_filter", GCSFilterParams(MOCK_BUCKET, MOCK_ID))
    ]


def test_finish_upload(store, service):
    service.objects[f"{MOCK_ID}.info"] = MOCK_INFO_JSON.encode()
    service.filters[f"{MOCK_ID}_"] = MOCK_PARTIALS
    service.filters[MOCK_ID] = MOCK_PARTIALS
    service.sizes = {name: 100 for name in MOCK_PARTIALS}

    store.get_upload(MOCK_ID).finish_upload()

    filter_chunks = GCSFilterParams(MOCK_BUCKET, f"{MOCK_ID}_")
    info_params = GCSObjectParams(MOCK_BUCKET, f"{MOCK_ID}.info")
    ordered = [call for call in service.calls if call[0] != "get_object_size"]
    assert ordered == [
        ("filter_objects", filter_chunks),
        (
            "compose_objects",
            GCSComposeParams(MOCK_BUCKET, MOCK_PARTIALS, MOCK_ID),
        ),
        ("delete_objects_with_filter", filter_chunks),
        ("read_object", info_params),
        ("filter_objects", GCSFilterParams(MOCK_BUCKET, MOCK_ID)),
        ("write_object", info_params, mock_info(offset=300).to_json().encode()),
        (
            "set_object_metadata",
            GCSObjectParams(MOCK_BUCKET, MOCK_ID),
            {"foo": "bar"},
        ),
    ]
    sizes = [call for call in service.calls if call[0] == "get_object_size"]
    assert sorted(call[1].id for call in sizes) == MOCK_PARTIALS


def test_write_chunk(store, service):
    service.filters[f"{MOCK_ID}_"] = [f"{MOCK_ID}_0"]
    written = store.get_upload(MOCK_ID).write_chunk(
        MOCK_SIZE // 3, io.BytesIO(MOCK_READER_DATA)
    )
    assert written == len(MOCK_READER_DATA)
    assert service.calls == [
        ("filter_objects", GCSFilterParams(MOCK_BUCKET, f"{MOCK_ID}_")),
        (
            "write_object",
            GCSObjectParams(MOCK_BUCKET, f"{MOCK_ID}_1"),
            MOCK_READER_DATA,
        ),
    ]


def test_write_first_chunk_with_prefix(store, service):
    store.object_prefix = "uploads"
    store.get_upload(MOCK_ID).write_chunk(0, io.BytesIO(b"abc"))
    assert service.written == {f"uploads/{MOCK_ID}_0": b"abc"}
    assert service.calls[0][1] == GCSFilterParams(MOCK_BUCKET, f"uploads/{MOCK_ID}_")


def test_write_chunk_invalid_index(store, service):
    service.filters[f"{MOCK_ID}_"] = [f"{MOCK_ID}_x"]
    with pytest.raises(ValueError):
        store.get_upload(MOCK_ID).write_chunk(0, io.BytesIO(b"abc"))
    assert service.written == {}