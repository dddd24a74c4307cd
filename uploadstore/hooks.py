"""Hooks notifying external programs or HTTP endpoints about upload events."""

from __future__ import annotations

import abc
import json
import os
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

import requests
from requests.structures import CaseInsensitiveDict

from .info import FileInfo


class HookType(str, Enum):
    """The events a hook can be invoked for."""

    POST_FINISH = "post-finish"
    POST_TERMINATE = "post-terminate"
    POST_RECEIVE = "post-receive"
    POST_CREATE = "post-create"
    PRE_CREATE = "pre-create"
    PRE_FINISH = "pre-finish"

    def __str__(self) -> str:
        return self.value


AVAILABLE_HOOKS: tuple[HookType, ...] = (
    HookType.PRE_CREATE,
    HookType.POST_CREATE,
    HookType.POST_RECEIVE,
    HookType.POST_TERMINATE,
    HookType.POST_FINISH,
    HookType.PRE_FINISH,
)


class HookInvocationError(RuntimeError):
    """A hook ran but failed; carries its output and return code."""

    def __init__(
        self, message: str, *, output: Optional[bytes] = None, return_code: int = 0
    ) -> None:
        super().__init__(message)
        self.output = output
        self.return_code = return_code


class HookError(HookInvocationError):
    """A hook rejected the event with a status code and a response body."""

    def __init__(self, message: str, status_code: int, body: bytes = b"") -> None:
        super().__init__(message, output=body, return_code=status_code)
        self.status_code = status_code
        self.body = body


@dataclass
class HTTPRequestInfo:
    """The parts of the client request that are passed on to hooks."""

    method: str = ""
    uri: str = ""
    remote_addr: str = ""
    header: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "Method": self.method,
            "URI": self.uri,
            "RemoteAddr": self.remote_addr,
            "Header": {key: list(self.header[key]) for key in sorted(self.header)},
        }


@dataclass
class HookEvent:
    """An upload together with the request that caused the event."""

    upload: FileInfo = field(default_factory=FileInfo)
    http_request: HTTPRequestInfo = field(default_factory=HTTPRequestInfo)
    on_stop: Optional[Callable[[], None]] = field(
        default=None, repr=False, compare=False
    )

    def stop_upload(self) -> None:
        """Ask the server to stop the upload this event belongs to."""
        if self.on_stop is not None:
            self.on_stop()

    def to_dict(self) -> dict[str, Any]:
        return {"Upload": self.upload.to_dict(), "HTTPRequest": self.http_request.to_dict()}

    def to_json(self) -> str:
        """Serialise the event to compact JSON."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)


def _hook_name(hook_type: Union[HookType, str]) -> str:
    return hook_type.value if isinstance(hook_type, HookType) else str(hook_type)


class HookHandler(abc.ABC):
    """Something that can be invoked for hook events."""

    @abc.abstractmethod
    def setup(self) -> None:
        """Prepare the handler before the first invocation."""

    @abc.abstractmethod
    def invoke_hook(
        self, hook_type: Union[HookType, str], event: HookEvent, capture_output: bool
    ) -> tuple[Optional[bytes], int]:
        """Run the hook and return its output (if captured) and return code."""


@dataclass
class FileHook(HookHandler):
    """Runs the executable named after the hook type inside ``directory``."""

    directory: str

    def setup(self) -> None:
        """Resolve the hook directory to an absolute path."""
        if self.directory:
            self.directory = os.path.abspath(self.directory)

    def invoke_hook(
        self, hook_type: Union[HookType, str], event: HookEvent, capture_output: bool
    ) -> tuple[Optional[bytes], int]:
        """Run the hook executable with the event as JSON on stdin.

        A missing executable is not an error and yields ``(None, -1)``.
        """
        hook_path = self.directory + os.sep + _hook_name(hook_type)
        env = dict(os.environ)
        env["TUS_ID"] = event.upload.id
        env["TUS_SIZE"] = str(event.upload.size)
        env["TUS_OFFSET"] = str(event.upload.offset)
        payload = event.to_json().encode("utf-8")

        try:
            completed = subprocess.run(
                [hook_path],
                input=payload,
                stdout=subprocess.PIPE if capture_output else None,
                env=env,
                cwd=self.directory or None,
                check=False,
            )
        except FileNotFoundError:
            return None, -1
        except OSError as exc:
            raise HookInvocationError(str(exc), return_code=-1) from exc

        output = completed.stdout if capture_output else None
        raw_code = completed.returncode
        code = raw_code if raw_code >= 0 else -1
        if raw_code != 0:
            message = f"exit status {raw_code}" if raw_code > 0 else f"signal: {-raw_code}"
            raise HookInvocationError(message, output=output, return_code=code)
        return output, code


_TOKEN_PUNCTUATION = set("!#$%&'*+-.^_`|~")


def _canonical_header_key(key: str) -> str:
    if not all(
        (c.isascii() and c.isalnum()) or c in _TOKEN_PUNCTUATION for c in key
    ):
        return key
    result = []
    upper = True
    for c in key:
        if upper and "a" <= c <= "z":
            c = c.upper()
        elif not upper and "A" <= c <= "Z":
            c = c.lower()
        result.append(c)
        upper = c == "-"
    return "".join(result)


@dataclass
class HttpHook(HookHandler):
    """Posts hook events as JSON to ``endpoint``.

    Network errors and 5xx responses are retried up to ``max_retries``
    attempts in total, waiting ``backoff`` seconds between them.
    """

    endpoint: str
    max_retries: int = 3
    backoff: float = 1
    forward_headers: list[str] = field(default_factory=list)
    timeout: Optional[float] = None
    _session: Optional[requests.Session] = field(
        default=None, init=False, repr=False, compare=False
    )

    def setup(self) -> None:
        """Open the HTTP session reused by every invocation."""
        if self._session is None:
            self._session = requests.Session()

    def invoke_hook(
        self, hook_type: Union[HookType, str], event: HookEvent, capture_output: bool
    ) -> tuple[Optional[bytes], int]:
        body = event.to_json().encode("utf-8")
        headers: CaseInsensitiveDict = CaseInsensitiveDict()
        for key in self.forward_headers:
            values = event.http_request.header.get(_canonical_header_key(key))
            if values is not None:
                headers[key] = ", ".join(values)
        headers["Hook-Name"] = _hook_name(hook_type)
        headers["Content-Type"] = "application/json"

        response = self._send(body, headers)
        content = response.content
        if response.status_code >= 400:
            raise HookError(
                f"endpoint returned: {response.status_code} {response.reason}",
                response.status_code,
                content,
            )
        return (content if capture_output else None), response.status_code

    def _send(self, body: bytes, headers: CaseInsensitiveDict) -> requests.Response:
        post = self._session.post if self._session is not None else requests.post
        attempts = max(1, self.max_retries)
        response: Optional[requests.Response] = None
        error: Optional[requests.RequestException] = None
        for attempt in range(attempts):
            if attempt:
                time.sleep(self.backoff)
            try:
                response = post(
                    self.endpoint, data=body, headers=dict(headers), timeout=self.timeout
                )
            except requests.RequestException as exc:
                response, error = None, exc
                continue
            error = None
            if response.status_code < 500:
                return response
        if response is not None:
            return response
        assert error is not None
        raise error