"""Command-line configuration, greeting and hook dispatching for the upload server."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections import Counter
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Callable, Optional, Sequence, Union

from .hooks import (
    AVAILABLE_HOOKS,
    FileHook,
    HookError,
    HookEvent,
    HookHandler,
    HookInvocationError,
    HookType,
    HttpHook,
)

VERSION_NAME = "n/a"
GIT_COMMIT = "n/a"
BUILD_DATE = "n/a"

LOG_PREFIX = "[uploadstore] "

DEFAULT_ENABLED_HOOKS = "pre-create,post-create,post-receive,post-terminate,post-finish"


@dataclass
class Flags:
    """Server configuration as given on the command line."""

    http_host: str = "0.0.0.0"
    http_port: str = "1080"
    http_sock: str = ""
    max_size: int = 0
    upload_dir: str = "./data"
    base_path: str = "/files/"
    timeout: int = 6 * 1000
    s3_bucket: str = ""
    s3_object_prefix: str = ""
    s3_endpoint: str = ""
    s3_part_size: int = 50 * 1024 * 1024
    s3_disable_content_hashes: bool = False
    s3_disable_ssl: bool = False
    gcs_bucket: str = ""
    gcs_object_prefix: str = ""
    enabled_hooks_string: str = DEFAULT_ENABLED_HOOKS
    file_hooks_dir: str = ""
    http_hooks_endpoint: str = ""
    http_hooks_forward_headers: str = ""
    http_hooks_retry: int = 3
    http_hooks_backoff: int = 1
    hooks_stop_upload_code: int = 0
    enabled_hooks: list[HookType] = field(default_factory=lambda: list(AVAILABLE_HOOKS))
    show_version: bool = False
    expose_metrics: bool = True
    metrics_path: str = "/metrics"
    behind_proxy: bool = False
    verbose_output: bool = True
    s3_transfer_acceleration: bool = False
    tls_cert_file: str = ""
    tls_key_file: str = ""
    tls_mode: str = "tls12"


_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def _parse_bool(value: str) -> bool:
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value {value!r}")


def _parse_int(value: str) -> int:
    text = value.strip()
    try:
        return int(text, 0)
    except ValueError:
        pass
    try:
        # A leading zero marks an octal number.
        return int(text, 8)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer value {value!r}") from None


# (option name, Flags field, kind, help)
_OPTIONS: tuple[tuple[str, str, type, str], ...] = (
    ("host", "http_host", str, "Host to bind HTTP server to"),
    ("port", "http_port", str, "Port to bind HTTP server to"),
    ("unix-sock", "http_sock", str,
     "If set, will listen to a UNIX socket at this location instead of a TCP socket"),
    ("max-size", "max_size", int, "Maximum size of a single upload in bytes"),
    ("upload-dir", "upload_dir", str, "Directory to store uploads in"),
    ("base-path", "base_path", str, "Basepath of the HTTP server"),
    ("timeout", "timeout", int,
     "Read timeout for connections in milliseconds.  A zero value means that reads will not timeout"),
    ("s3-bucket", "s3_bucket", str, "Use AWS S3 with this bucket as storage backend"),
    ("s3-object-prefix", "s3_object_prefix", str, "Prefix for S3 object names"),
    ("s3-endpoint", "s3_endpoint", str,
     "Endpoint to use S3 compatible implementations like minio (requires s3-bucket to be pass)"),
    ("s3-part-size", "s3_part_size", int,
     "Size in bytes of the individual upload requests made to the S3 API. Defaults to 50MiB"),
    ("s3-disable-content-hashes", "s3_disable_content_hashes", bool,
     "Disable the calculation of MD5 and SHA256 hashes for the content that gets uploaded to S3"),
    ("s3-disable-ssl", "s3_disable_ssl", bool,
     "Disable SSL and only use HTTP for communication with S3"),
    ("gcs-bucket", "gcs_bucket", str,
     "Use Google Cloud Storage with this bucket as storage backend "
     "(requires the GCS_SERVICE_ACCOUNT_FILE environment variable to be set)"),
    ("gcs-object-prefix", "gcs_object_prefix", str,
     "Prefix for GCS object names (can't contain underscore character)"),
    ("hooks-enabled-events", "enabled_hooks_string", str,
     "Comma separated list of enabled hook events (e.g. post-create,post-finish). "
     "Leave empty to enable default events"),
    ("hooks-dir", "file_hooks_dir", str, "Directory to search for available hooks scripts"),
    ("hooks-http", "http_hooks_endpoint", str,
     "An HTTP endpoint to which hook events will be sent to"),
    ("hooks-http-forward-headers", "http_hooks_forward_headers", str,
     "List of HTTP request headers to be forwarded from the client request to the hook endpoint"),
    ("hooks-http-retry", "http_hooks_retry", int,
     "Number of times to retry on a 500 or network timeout"),
    ("hooks-http-backoff", "http_hooks_backoff", int,
     "Number of seconds to wait before retrying each retry"),
    ("hooks-stop-code", "hooks_stop_upload_code", int,
     "Return code from post-receive hook which causes the server to stop and delete the "
     "current upload. A zero value means that no uploads will be stopped"),
    ("version", "show_version", bool, "Print version information"),
    ("expose-metrics", "expose_metrics", bool, "Expose metrics about server usage"),
    ("metrics-path", "metrics_path", str,
     "Path under which the metrics endpoint will be accessible"),
    ("behind-proxy", "behind_proxy", bool,
     "Respect X-Forwarded-* and similar headers which may be set by proxies"),
    ("verbose", "verbose_output", bool, "Enable verbose logging output"),
    ("s3-transfer-acceleration", "s3_transfer_acceleration", bool,
     "Use AWS S3 transfer acceleration endpoint"),
    ("tls-certificate", "tls_cert_file", str,
     "Path to the file containing the x509 TLS certificate to be used."),
    ("tls-key", "tls_key_file", str,
     "Path to the file containing the key for the TLS certificate."),
    ("tls-mode", "tls_mode", str,
     "Specify which TLS mode to use; valid modes are tls13, tls12, and tls12-strong."),
)


def _build_parser() -> argparse.ArgumentParser:
    defaults = {f.name: f.default for f in fields(Flags) if f.name != "enabled_hooks"}
    parser = argparse.ArgumentParser(allow_abbrev=False)
    for name, dest, kind, help_text in _OPTIONS:
        names = [f"-{name}", f"--{name}"]
        help_text = f"{help_text} (default {defaults[dest]!r})"
        if kind is bool:
            parser.add_argument(
                *names, dest=dest, nargs="?", const=True, type=_parse_bool,
                metavar="BOOL", default=argparse.SUPPRESS, help=help_text,
            )
        elif kind is int:
            parser.add_argument(
                *names, dest=dest, type=_parse_int, default=argparse.SUPPRESS,
                help=help_text,
            )
        else:
            parser.add_argument(*names, dest=dest, default=argparse.SUPPRESS, help=help_text)
    return parser


def parse_enabled_hooks(value: str) -> list[HookType]:
    """Parse a comma separated list of hook events; empty means all of them."""
    enabled: list[HookType] = []
    if value:
        available = {hook.value: hook for hook in AVAILABLE_HOOKS}
        for name in value.split(","):
            if name not in available:
                raise ValueError(
                    f"Unknown hook event type in -hooks-enabled-events flag: {name}"
                )
            enabled.append(available[name])
    return enabled or list(AVAILABLE_HOOKS)


def parse_flags(argv: Optional[Sequence[str]] = None) -> Flags:
    """Parse command-line arguments into :class:`Flags`."""
    if argv is None:
        argv = sys.argv[1:]
    namespace = _build_parser().parse_args(list(argv))
    flags = Flags(**vars(namespace))
    flags.enabled_hooks = parse_enabled_hooks(flags.enabled_hooks_string)
    if flags.file_hooks_dir:
        flags.file_hooks_dir = os.path.abspath(flags.file_hooks_dir)
    return flags


def greeting(flags: Flags) -> str:
    """Return the welcome text shown at the root path."""
    return f"""Welcome to uploadstore
======================

Congratulations on setting up uploadstore! Thanks for joining our cause, you have
taken the first step towards making the future of resumable uploading a reality!
We hope you are as excited about this as we are!

While you did an awesome job on getting the server running, this is just the
welcome message, so let's talk about the places that really matter:

- {flags.base_path} - send your tus uploads to this endpoint
- {flags.metrics_path} - gather statistics to keep the server running smoothly

So quit lollygagging, send over your files and experience the future!

Version = {VERSION_NAME}
GitCommit = {GIT_COMMIT}
BuildDate = {BUILD_DATE}
"""


def version_text() -> str:
    """Return the version information printed by ``-version``."""
    return f"Version: {VERSION_NAME}\nCommit: {GIT_COMMIT}\nDate: {BUILD_DATE}\n"


class _Formatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%Y/%m/%d %H:%M:%S.%f")
        return f"{LOG_PREFIX}{stamp} {record.getMessage()}"


def _default_logger() -> logging.Logger:
    logger = logging.getLogger("uploadstore")
    if not logger.handlers:
        formatter = _Formatter()
        out = logging.StreamHandler(sys.stdout)
        out.addFilter(lambda record: record.levelno < logging.WARNING)
        out.setFormatter(formatter)
        err = logging.StreamHandler(sys.stderr)
        err.setLevel(logging.WARNING)
        err.setFormatter(formatter)
        logger.addHandler(out)
        logger.addHandler(err)
        logger.setLevel(logging.INFO)
        logger.propagate = False
    return logger


def _log_event(logger: logging.Logger, level: int, event_name: str, **details: object) -> None:
    parts = [f"event={json.dumps(event_name)}"]
    parts.extend(f"{key}={json.dumps(str(value))}" for key, value in details.items())
    logger.log(level, " ".join(parts))


def _handler_from_flags(flags: Flags, logger: logging.Logger) -> Optional[HookHandler]:
    if flags.file_hooks_dir:
        logger.info("Using '%s' for hooks", flags.file_hooks_dir)
        return FileHook(directory=flags.file_hooks_dir)
    if flags.http_hooks_endpoint:
        logger.info("Using '%s' as the endpoint for hooks", flags.http_hooks_endpoint)
        return HttpHook(
            endpoint=flags.http_hooks_endpoint,
            max_retries=flags.http_hooks_retry,
            backoff=flags.http_hooks_backoff,
            forward_headers=flags.http_hooks_forward_headers.split(","),
        )
    return None


HookName = Union[HookType, str]


class HookDispatcher:
    """Invokes the configured hook handler for enabled hook events.

    Without an explicit ``hook_handler`` one is chosen from the flags: a hook
    directory first, then an HTTP endpoint. Hook errors are counted per type
    in :attr:`hook_errors`.
    """

    def __init__(
        self,
        flags: Flags,
        hook_handler: Optional[HookHandler] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.flags = flags
        self.logger = logger if logger is not None else _default_logger()
        self.hook_errors: Counter[str] = Counter({hook.value: 0 for hook in AVAILABLE_HOOKS})
        if hook_handler is None:
            hook_handler = _handler_from_flags(flags, self.logger)
        self.hook_handler = hook_handler
        if hook_handler is not None:
            names = ", ".join(str(hook) for hook in flags.enabled_hooks)
            self.logger.info("Enabled hook events: %s", names)
            hook_handler.setup()

    def hook_callback(self, hook_type: HookName, event: HookEvent) -> None:
        """Invoke a blocking hook, raising a descriptive error if it fails."""
        try:
            self.invoke_hook(hook_type, event, True)
        except HookError as exc:
            raise HookError(
                f"{hook_type} hook failed: {exc}", exc.status_code, exc.body
            ) from exc
        except HookInvocationError as exc:
            output = (exc.output or b"").decode("utf-8", errors="replace")
            raise HookInvocationError(
                f"{hook_type} hook failed: {exc}\n{output}",
                output=exc.output,
                return_code=exc.return_code,
            ) from exc
        except Exception as exc:
            raise HookInvocationError(f"{hook_type} hook failed: {exc}\n") from exc

    def pre_create_callback(self, event: HookEvent) -> None:
        self.hook_callback(HookType.PRE_CREATE, event)

    def pre_finish_callback(self, event: HookEvent) -> None:
        self.hook_callback(HookType.PRE_FINISH, event)

    def invoke_hook(
        self, hook_type: HookName, event: HookEvent, capture_output: bool
    ) -> Optional[bytes]:
        """Run the hook if enabled and return its captured output.

        A post-receive hook whose return code equals the configured stop code
        stops the upload. Errors from the handler are logged, counted and
        raised again.
        """
        if hook_type not in self.flags.enabled_hooks:
            return None

        upload_id = event.upload.id
        if hook_type == HookType.POST_FINISH:
            _log_event(self.logger, logging.INFO, "UploadFinished",
                       id=upload_id, size=event.upload.size)
        elif hook_type == HookType.POST_TERMINATE:
            _log_event(self.logger, logging.INFO, "UploadTerminated", id=upload_id)

        if self.hook_handler is None:
            return None

        name = str(hook_type)
        if self.flags.verbose_output:
            _log_event(self.logger, logging.INFO, "HookInvocationStart", type=name, id=upload_id)

        output: Optional[bytes] = None
        return_code = 0
        error: Optional[Exception] = None
        try:
            output, return_code = self.hook_handler.invoke_hook(hook_type, event, capture_output)
        except HookInvocationError as exc:
            error, output, return_code = exc, exc.output, exc.return_code
        except Exception as exc:
            error = exc

        if error is not None:
            _log_event(self.logger, logging.ERROR, "HookInvocationError",
                       type=name, id=upload_id, error=error)
            self.hook_errors[name] += 1
        elif self.flags.verbose_output:
            _log_event(self.logger, logging.INFO, "HookInvocationFinish", type=name, id=upload_id)

        stop_code = self.flags.hooks_stop_upload_code
        if hook_type == HookType.POST_RECEIVE and stop_code != 0 and stop_code == return_code:
            _log_event(self.logger, logging.INFO, "HookStopUpload", id=upload_id)
            event.stop_upload()

        if error is not None:
            raise error
        return output


Callback = Callable[[HookEvent], None]