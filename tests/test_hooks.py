import json
import os
import sys

import pytest
import requests
import responses

from uploadstore.hooks import (
    FileHook,
    HookError,
    HookEvent,
    HookInvocationError,
    HookType,
    HTTPRequestInfo,
    HttpHook,
)
from uploadstore.info import FileInfo

ENDPOINT = "http://localhost/hooks"


def _event():
    return HookEvent(
        upload=FileInfo(id="abc", size=42, offset=11, meta_data={"foo": "bar"}),
        http_request=HTTPRequestInfo(
            method="PATCH",
            uri="/files/abc",
            remote_addr="127.0.0.1",
            header={"Authorization": ["Bearer token"]},
        ),
    )


def _write_hook(directory, name, body):
    path = directory / name
    path.write_text(f"#!{sys.executable}\n{body}\n")
    path.chmod(0o755)
    return path


def test_event_json_round_trip():
    data = json.loads(_event().to_json())
    assert data["Upload"]["ID"] == "abc"
    assert data["Upload"]["Size"] == 42
    assert data["Upload"]["MetaData"] == {"foo": "bar"}
    assert data["HTTPRequest"]["Method"] == "PATCH"
    assert data["HTTPRequest"]["URI"] == "/files/abc"
    assert data["HTTPRequest"]["Header"] == {"Authorization": ["Bearer token"]}


def test_stop_upload_calls_callback():
    stopped = []
    event = HookEvent(upload=FileInfo(id="abc"), on_stop=lambda: stopped.append(True))
    event.stop_upload()
    assert stopped == [True]


def test_hook_type_string_value():
    assert HookType("pre-create") is HookType.PRE_CREATE
    assert str(HookType.POST_FINISH) == "post-finish"


def test_hook_error_carries_status_and_body():
    err = HookError("boom", 403, b"denied")
    assert err.status_code == 403
    assert err.body == b"denied"
    assert err.return_code == 403
    assert str(err) == "boom"
    assert isinstance(err, HookInvocationError)


def test_file_hook_missing_executable(tmp_path):
    hook = FileHook(str(tmp_path))
    assert hook.invoke_hook(HookType.POST_CREATE, _event(), True) == (None, -1)


def test_file_hook_passes_environment_and_stdin(tmp_path):
    _write_hook(
        tmp_path,
        "post-receive",
        "import json, os, sys\n"
        "payload = json.load(sys.stdin)\n"
        "print(json.dumps({'id': os.environ['TUS_ID'], 'size': os.environ['TUS_SIZE'],"
        " 'offset': os.environ['TUS_OFFSET'], 'cwd': os.getcwd(),"
        " 'upload_id': payload['Upload']['ID'],"
        " 'method': payload['HTTPRequest']['Method']}))",
    )
    hook = FileHook(str(tmp_path))
    output, code = hook.invoke_hook(HookType.POST_RECEIVE, _event(), True)
    assert code == 0
    result = json.loads(output)
    assert result["id"] == "abc"
    assert result["size"] == "42"
    assert result["offset"] == "11"
    assert result["upload_id"] == "abc"
    assert result["method"] == "PATCH"
    assert os.path.realpath(result["cwd"]) == os.path.realpath(str(tmp_path))


def test_file_hook_without_capture_returns_no_output(tmp_path):
    _write_hook(tmp_path, "post-finish", "import sys\nsys.exit(0)")
    hook = FileHook(str(tmp_path))
    assert hook.invoke_hook(HookType.POST_FINISH, _event(), False) == (None, 0)


def test_file_hook_nonzero_exit_raises(tmp_path):
    _write_hook(
        tmp_path, "pre-create", "import sys\nsys.stdout.write('partial')\nsys.exit(3)"
    )
    hook = FileHook(str(tmp_path))
    with pytest.raises(HookInvocationError) as info:
        hook.invoke_hook(HookType.PRE_CREATE, _event(), True)
    assert info.value.return_code == 3
    assert info.value.output == b"partial"
    assert str(info.value) == "exit status 3"


def test_http_hook_posts_event_and_returns_body():
    hook = HttpHook(ENDPOINT, max_retries=1, backoff=0)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, ENDPOINT, body=b"ok", status=200)
        output, code = hook.invoke_hook(HookType.POST_FINISH, _event(), True)
        request = rsps.calls[0].request
        assert request.headers["Hook-Name"] == "post-finish"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.body)["Upload"]["ID"] == "abc"
    assert output == b"ok"
    assert code == 200


def test_http_hook_without_capture_returns_no_output():
    hook = HttpHook(ENDPOINT, max_retries=1, backoff=0)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, ENDPOINT, body=b"ok", status=201)
        assert hook.invoke_hook(HookType.POST_CREATE, _event(), False) == (None, 201)


def test_http_hook_forwards_selected_headers():
    hook = HttpHook(ENDPOINT, max_retries=1, backoff=0, forward_headers=["authorization"])
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, ENDPOINT, status=200)
        hook.invoke_hook(HookType.PRE_CREATE, _event(), True)
        assert rsps.calls[0].request.headers["authorization"] == "Bearer token"


def test_http_hook_error_status_raises_hook_error():
    hook = HttpHook(ENDPOINT, max_retries=1, backoff=0)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, ENDPOINT, body=b"rejected", status=400)
        with pytest.raises(HookError) as info:
            hook.invoke_hook(HookType.PRE_CREATE, _event(), True)
    assert info.value.status_code == 400
    assert info.value.body == b"rejected"
    assert str(info.value) == "endpoint returned: 400 Bad Request"


def test_http_hook_retries_server_errors():
    hook = HttpHook(ENDPOINT, max_retries=3, backoff=0)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, ENDPOINT, status=500)
        rsps.add(responses.POST, ENDPOINT, body=b"fine", status=200)
        output, code = hook.invoke_hook(HookType.POST_RECEIVE, _event(), True)
        assert len(rsps.calls) == 2
    assert (output, code) == (b"fine", 200)


def test_http_hook_gives_up_after_network_errors():
    hook = HttpHook(ENDPOINT, max_retries=2, backoff=0)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, ENDPOINT, body=requests.ConnectionError("down"))
        with pytest.raises(requests.ConnectionError):
            hook.invoke_hook(HookType.POST_RECEIVE, _event(), False)
        assert len(rsps.calls) == 2