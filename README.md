# uploadstore

Building blocks for servers that accept resumable uploads in the tus style:
storage backends, per-upload locks, and hooks that tell other systems what
happened to an upload.

## What is inside

- `uploadstore.info` has `FileInfo`, which holds the state of one upload (id,
  size, offset, metadata, storage details). It has `to_json` and `from_json`,
  and the JSON uses the field names `ID`, `Size`, `SizeIsDeferred`, `Offset`,
  `MetaData`, `IsPartial`, `IsFinal`, `PartialUploads` and `Storage`. The
  module also has the errors `NotFoundError` and `FileLockedError`.
- `uploadstore.uid` has `uid()`, which returns 128 random bits as 32 hex
  characters.
- `uploadstore.body_reader` has `BodyReader`, which wraps a request body. It
  counts the bytes read (`bytes_read`). When the wrapped stream fails, it
  keeps the error in `error` and does not raise it, and from then on it reads
  as end of stream.
- `uploadstore.filestore` has `FileStore`, which keeps uploads in a local
  directory.
- `uploadstore.filelocker` has `FileLocker`, which gives exclusive per-upload
  locks backed by lock files on disk.
- `uploadstore.gcsservice` and `uploadstore.gcsstore` keep uploads in an
  object-storage bucket. Each chunk is written as its own object, and the
  chunks are composed into one object when the upload finishes.
- `uploadstore.hooks` runs hook scripts from a directory (`FileHook`) or posts
  hook events to an HTTP endpoint (`HttpHook`).
- `uploadstore.cli` holds the server settings (`Flags`, `parse_flags`,
  `parse_enabled_hooks`), the `greeting` and `version_text` texts, and the
  `HookDispatcher` that sends upload events to the configured hook handler.

## Storing an upload on disk

Every upload is kept as two files: `<id>` holds the raw bytes and `<id>.info`
holds the upload's `FileInfo` as JSON. The directory must already exist,
because `FileStore` does not create it. If it is missing, `new_upload` raises
`FileNotFoundError("upload directory does not exist: ...")`.

```python
import io
import os

from uploadstore.filestore import FileStore
from uploadstore.info import FileInfo

os.makedirs("./uploads", exist_ok=True)
store = FileStore("./uploads")

upload = store.new_upload(FileInfo(size=11, meta_data={"filename": "hello.txt"}))
upload.write_chunk(0, io.BytesIO(b"hello world"))   # returns 11

info = upload.get_info()
print(info.id, info.offset)   # the new 32-character id, then 11

with upload.get_reader() as reader:
    print(reader.read())      # b"hello world"

upload.terminate()            # removes both files
```

- `get_upload(upload_id)` reads the stored info again and takes the offset
  from the size of the data file. It raises `NotFoundError` when either file
  is missing.
- `declare_length(length)` sets the size of an upload that was created with
  `size_is_deferred=True`, and saves the info.
- `concat_uploads(uploads)` appends the data of the given uploads, in order,
  to this one.
- `finish_upload()` saves the info again.

Nothing is ever cleaned up on its own.

## Locking an upload

`FileLocker(path).new_lock(upload_id)` returns a `FileLock` on the file
`<path>/<upload_id>.lock`. The lock file holds the id of the process that
owns the lock. A lock file left behind by a process that has ended is
removed and taken over.

```python
from uploadstore.filelocker import FileLocker
from uploadstore.info import FileLockedError

locker = FileLocker("./uploads")
lock = locker.new_lock(upload_id)

try:
    lock.lock()
except FileLockedError:
    ...  # a live process holds this upload
else:
    try:
        ...  # work on the upload
    finally:
        lock.unlock()
```

The lock is held by the process, not by the `FileLock` object. Calling
`lock()` a second time from the same process, even through another
`FileLock` for the same id, raises `FileLockedError`. Unlocking a lock that
was never taken does nothing. Unlocking a lock file that another process
owns raises `LockOwnershipError`.

## Storing uploads in a bucket

`GCSStore(bucket, service, object_prefix="")` keeps an upload `<id>` as
follows:

- an info object `<id>.info`;
- chunk objects `<id>_0`, `<id>_1`, … written by `write_chunk`;
- after `finish_upload`, a single data object `<id>`. The chunks are composed
  into it, then deleted, and the upload's metadata is set on it.

`get_info` computes the offset by adding up the sizes of the chunk objects,
with up to 32 size requests running at once. It then writes the info back.
It raises `NotFoundError` when the info object does not exist. `terminate`
deletes every object under the upload's key.

`service` is any `GCSAPI`. The `GCSService` class implements `GCSAPI` on top
of a `StorageBackend`, which you subclass to supply the raw bucket operations:
`attrs`, `open`, `update_metadata`, `delete`, `write`, `compose` and
`list_names`. On top of these, `GCSService` adds:

- `filter_objects`: lists chunk names in chunk order (see
  `order_object_names`);
- `delete_objects_with_filter`: deletes everything that `filter_objects`
  returns for a prefix;
- `compose_objects`: composes any number of objects in rounds of at most 32,
  using temporary `<dst>_tmp_<level>_<i>` objects. Each compose is checked
  against the CRC32C computed from the sources with `crc32c_combine`. It is
  retried up to 3 times; if the checksums still differ, the destination is
  deleted and `RuntimeError` is raised.

The package has no client for Google Cloud Storage itself. The bucket
operations come from the `StorageBackend` you provide.

## Hooks

Hook events are the members of `HookType`: `pre-create`, `post-create`,
`post-receive`, `post-terminate`, `post-finish` and `pre-finish`.
`invoke_hook(hook_type, event, capture_output)` returns `(output, code)`.

- `FileHook(directory)` runs the executable named after the event in that
  directory. The working directory is the hook directory. The event is passed
  as JSON (`HookEvent.to_json()`) on standard input, and `TUS_ID`,
  `TUS_SIZE` and `TUS_OFFSET` are set in the environment.
  - A missing script is not an error and returns `(None, -1)`, so you only
    need to provide the hooks you use.
  - A non-zero exit raises `HookInvocationError`, which carries the output and
    the return code.
- `HttpHook(endpoint, max_retries=3, backoff=1, forward_headers=[])` POSTs
  the event as JSON with a `Hook-Name` header.
  - Network errors and 5xx responses are tried up to `max_retries` times in
    total, `backoff` seconds apart.
  - Headers named in `forward_headers` are copied from the client's request
    (`HTTPRequestInfo.header`).
  - A response of 400 or higher raises `HookError`, which carries
    `status_code` and `body`.

## Settings and hook dispatch

`parse_flags(argv)` turns arguments such as
`-upload-dir ./data -hooks-dir ./hooks -hooks-stop-code 3` into `Flags`.
Options may be written with `-` or `--`, and boolean options take an optional
`true`/`false` value. `-hooks-enabled-events` is parsed by
`parse_enabled_hooks`: an unknown event raises `ValueError`, and an empty
value enables every event.

`HookDispatcher(flags)` picks a `FileHook` when a hook directory is set, or
otherwise an `HttpHook` when an HTTP endpoint is set. You can also pass a
`hook_handler` yourself.

- `invoke_hook` does nothing for events that are not enabled. It logs
  finished and terminated uploads, and counts failures per event in
  `hook_errors`. When a `post-receive` hook returns the configured stop code,
  it calls `event.stop_upload()`.
- `hook_callback` (and `pre_create_callback`, `pre_finish_callback`) raises an
  error that names the hook type when the hook fails.

## What this package does not do

It contains no HTTP server and no request handling for the tus protocol, and
it installs no command. `Flags` has options for listening, TLS, metrics and
S3 storage, but nothing in the package acts on them. There is no S3 storage,
no in-memory locker, no gRPC or plugin hooks, and no metrics endpoint.