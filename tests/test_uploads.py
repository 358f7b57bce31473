import base64
import hashlib
import json
from unittest.mock import MagicMock

import httpx
import pytest
import requests
from conftest import FAKE_JWT, StubAsyncTokens, StubTokens, make_response

from ascgate import (
    AssetUploader,
    AsyncAssetUploader,
    AsyncClient,
    Client,
    SizeMismatch,
    UploadFailure,
    ValidationFailure,
    checksum,
)

BASE = "https://api.example.test/v1"
PAYLOAD = bytes(range(256)) * 3 + b"\x00" * 232  # 1000 bytes


class _NoLimit:
    def acquire_slot(self):
        pass


class _AsyncNoLimit:
    async def acquire_slot(self):
        pass


def _operation(offset, length, index):
    return {
        "method": "PUT",
        "url": f"https://upload.example.test/part/{index}",
        "offset": offset,
        "length": length,
        "requestHeaders": [{"name": "Content-Type", "value": "image/png"}],
    }


def _reserved(ops):
    return {
        "data": {
            "type": "appScreenshots",
            "id": "shot-1",
            "attributes": {"uploadOperations": ops},
        }
    }


DEFAULT_OPS = [_operation(0, 600, 0), _operation(600, 400, 1)]


class FakeApi:
    """Dispatches requests.Session.request calls by method."""

    def __init__(self, ops=None, put_status=200, commit_status=200, reserve_status=201):
        self.ops = DEFAULT_OPS if ops is None else ops
        self.put_status = put_status
        self.commit_status = commit_status
        self.reserve_status = reserve_status
        self.calls = []

    def __call__(self, method, url, headers=None, data=None, timeout=None):
        self.calls.append((method, url, headers, data))
        if method == "POST":
            return make_response(self.reserve_status, _reserved(self.ops))
        if method == "PUT":
            return make_response(self.put_status)
        body = json.loads(data)
        body["data"]["attributes"]["assetDeliveryState"] = {"state": "UPLOAD_COMPLETE"}
        return make_response(self.commit_status, body)

    def by_method(self, method):
        return [c for c in self.calls if c[0] == method]


def _uploader(api: FakeApi, clock=None):
    session = MagicMock(spec=requests.Session)
    session.request.side_effect = api
    client = Client(StubTokens(), rate_limiter=_NoLimit(), base_url=BASE, session=session)
    if clock is not None:
        client._sleep = clock.sleep
    return AssetUploader(client)


def test_checksum_is_base64_md5():
    assert checksum(b"hello") == base64.b64encode(hashlib.md5(b"hello").digest()).decode()
    assert checksum(b"") == "1B2M2Y8AsgTpgAmY7PhCfg=="


def test_size_mismatch_before_any_request():
    api = FakeApi()
    with pytest.raises(SizeMismatch) as exc_info:
        _uploader(api).upload(PAYLOAD, 1024, "shot.png", "set-1")
    assert exc_info.value.message == "File size mismatch: expected 1024, got 1000"
    assert api.calls == []


def test_negative_size_is_a_validation_failure():
    api = FakeApi()
    with pytest.raises(ValidationFailure):
        _uploader(api).upload(b"", -1, "shot.png", "set-1")
    assert api.calls == []


def test_happy_path():
    api = FakeApi()
    result = _uploader(api).upload(PAYLOAD, len(PAYLOAD), "shot.png", "set-1")

    (reserve,) = api.by_method("POST")
    assert reserve[1] == f"{BASE}/appScreenshots"
    assert json.loads(reserve[3]) == {
        "data": {
            "type": "appScreenshots",
            "attributes": {"fileName": "shot.png", "fileSize": 1000},
            "relationships": {
                "appScreenshotSet": {"data": {"type": "appScreenshotSets", "id": "set-1"}}
            },
        }
    }
    assert reserve[2]["Authorization"] == f"Bearer {FAKE_JWT}"

    puts = api.by_method("PUT")
    assert [p[1] for p in puts] == [
        "https://upload.example.test/part/0",
        "https://upload.example.test/part/1",
    ]
    assert puts[0][3] == PAYLOAD[:600]
    assert puts[1][3] == PAYLOAD[600:]
    for put in puts:
        assert put[2] == {"Content-Type": "image/png"}
        assert "Authorization" not in put[2]

    (commit,) = api.by_method("PATCH")
    assert commit[1] == f"{BASE}/appScreenshots/shot-1"
    assert json.loads(commit[3])["data"] == {
        "type": "appScreenshots",
        "id": "shot-1",
        "attributes": {"sourceFileChecksum": checksum(PAYLOAD), "uploaded": True},
    }
    assert result["id"] == "shot-1"
    assert result["attributes"]["assetDeliveryState"] == {"state": "UPLOAD_COMPLETE"}
    # reserve, transfers, commit in that order
    assert [c[0] for c in api.calls] == ["POST", "PUT", "PUT", "PATCH"]


def test_operations_are_sent_in_server_order():
    api = FakeApi(ops=[_operation(600, 400, 1), _operation(0, 600, 0)])
    _uploader(api).upload(PAYLOAD, len(PAYLOAD), "shot.png", "set-1")
    puts = api.by_method("PUT")
    assert puts[0][3] == PAYLOAD[600:]
    assert puts[1][3] == PAYLOAD[:600]


def test_failed_chunk_aborts_before_commit():
    api = FakeApi(put_status=403)
    with pytest.raises(UploadFailure) as exc_info:
        _uploader(api).upload(PAYLOAD, len(PAYLOAD), "shot.png", "set-1")
    assert exc_info.value.status == 403  # noqa: PLR2004
    assert exc_info.value.phase == "transfer"
    assert "Chunk upload failed: 403" in exc_info.value.message
    assert len(api.by_method("PUT")) == 1
    assert api.by_method("PATCH") == []


def test_transport_error_during_transfer():
    api = FakeApi()

    def _flaky(method, url, **kwargs):
        if method == "PUT":
            raise requests.ConnectionError("upload host unreachable")
        return api(method, url, **kwargs)

    uploader = _uploader(api)
    uploader.client._session.request.side_effect = _flaky
    with pytest.raises(UploadFailure) as exc_info:
        uploader.upload(PAYLOAD, len(PAYLOAD), "shot.png", "set-1")
    assert exc_info.value.phase == "transfer"
    assert exc_info.value.__cause__.code == "NETWORK_ERROR"
    assert api.by_method("PATCH") == []


def test_no_upload_operations():
    api = FakeApi(ops=[])
    with pytest.raises(UploadFailure) as exc_info:
        _uploader(api).upload(PAYLOAD, len(PAYLOAD), "shot.png", "set-1")
    assert exc_info.value.message == "No upload operations provided"
    assert api.by_method("PUT") == []


@pytest.mark.parametrize(
    "ops",
    [
        [_operation(0, 600, 0)],
        [_operation(0, 600, 0), _operation(500, 500, 1)],
        [_operation(0, 600, 0), _operation(601, 399, 1)],
        [_operation(0, 1000, 0), _operation(1000, 0, 1)],
    ],
)
def test_plan_must_tile_the_payload(ops):
    api = FakeApi(ops=ops)
    with pytest.raises(UploadFailure) as exc_info:
        _uploader(api).upload(PAYLOAD, len(PAYLOAD), "shot.png", "set-1")
    assert exc_info.value.phase == "reserve"
    assert api.by_method("PUT") == []


def test_malformed_operation():
    api = FakeApi(ops=[{"method": "PUT", "offset": 0, "length": 1000}])
    with pytest.raises(UploadFailure) as exc_info:
        _uploader(api).upload(PAYLOAD, len(PAYLOAD), "shot.png", "set-1")
    assert exc_info.value.phase == "reserve"


def test_reserve_failure_is_wrapped(clock):
    api = FakeApi(reserve_status=409)
    with pytest.raises(UploadFailure) as exc_info:
        _uploader(api, clock).upload(PAYLOAD, len(PAYLOAD), "shot.png", "set-1")
    assert exc_info.value.phase == "reserve"
    assert exc_info.value.status == 409  # noqa: PLR2004
    assert exc_info.value.__cause__.code == "CONFLICT"


def test_commit_failure_is_wrapped(clock):
    api = FakeApi(commit_status=500)
    with pytest.raises(UploadFailure) as exc_info:
        _uploader(api, clock).upload(PAYLOAD, len(PAYLOAD), "shot.png", "set-1")
    assert exc_info.value.phase == "commit"
    # the commit itself went through the retrying executor
    assert len(api.by_method("PATCH")) == 3  # noqa: PLR2004


def test_upload_file(tmp_path):
    path = tmp_path / "shot.png"
    path.write_bytes(PAYLOAD)
    api = FakeApi()
    result = _uploader(api).upload_file(path, 1000, "shot.png", "set-1")
    assert result["id"] == "shot-1"


def test_upload_file_missing():
    api = FakeApi()
    with pytest.raises(UploadFailure) as exc_info:
        _uploader(api).upload_file("/nonexistent/shot.png", 10, "shot.png", "set-1")
    assert exc_info.value.code == "FILE_READ_ERROR"
    assert exc_info.value.status == 400  # noqa: PLR2004
    assert api.calls == []


def test_custom_asset_types():
    api = FakeApi()
    session = MagicMock(spec=requests.Session)
    session.request.side_effect = api
    client = Client(StubTokens(), rate_limiter=_NoLimit(), base_url=BASE, session=session)
    uploader = AssetUploader(
        client,
        asset_type="appPreviews",
        set_type="appPreviewSets",
        set_relationship="appPreviewSet",
    )
    uploader.upload(PAYLOAD, len(PAYLOAD), "clip.mov", "set-9")
    reserve = json.loads(api.by_method("POST")[0][3])
    assert reserve["data"]["type"] == "appPreviews"
    assert "appPreviewSet" in reserve["data"]["relationships"]
    assert api.by_method("PATCH")[0][1] == f"{BASE}/appPreviews/shot-1"


# ---------- async ----------


def _async_uploader(put_status=200, ops=None):
    seen = []
    ops = DEFAULT_OPS if ops is None else ops

    def handler(request: httpx.Request):
        seen.append(request)
        if request.method == "POST":
            return httpx.Response(201, json=_reserved(ops))
        if request.method == "PUT":
            return httpx.Response(put_status)
        return httpx.Response(200, json=json.loads(request.content))

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = AsyncClient(
        StubAsyncTokens(), rate_limiter=_AsyncNoLimit(), base_url=BASE, client=http
    )
    return AsyncAssetUploader(client), seen


@pytest.mark.asyncio
async def test_async_happy_path():
    uploader, seen = _async_uploader()
    result = await uploader.upload(PAYLOAD, len(PAYLOAD), "shot.png", "set-1")
    assert [r.method for r in seen] == ["POST", "PUT", "PUT", "PATCH"]
    assert seen[1].content == PAYLOAD[:600]
    assert seen[2].content == PAYLOAD[600:]
    assert "Authorization" not in seen[1].headers
    assert seen[0].headers["Authorization"] == f"Bearer {FAKE_JWT}"
    assert result["attributes"]["sourceFileChecksum"] == checksum(PAYLOAD)


@pytest.mark.asyncio
async def test_async_chunk_failure():
    uploader, seen = _async_uploader(put_status=500)
    with pytest.raises(UploadFailure) as exc_info:
        await uploader.upload(PAYLOAD, len(PAYLOAD), "shot.png", "set-1")
    assert exc_info.value.status == 500  # noqa: PLR2004
    assert [r.method for r in seen] == ["POST", "PUT"]


@pytest.mark.asyncio
async def test_async_size_mismatch():
    uploader, seen = _async_uploader()
    with pytest.raises(SizeMismatch):
        await uploader.upload(PAYLOAD, 1024, "shot.png", "set-1")
    assert seen == []


@pytest.mark.asyncio
async def test_async_upload_file(tmp_path):
    path = tmp_path / "shot.png"
    path.write_bytes(PAYLOAD)
    uploader, _ = _async_uploader()
    result = await uploader.upload_file(path, len(PAYLOAD), "shot.png", "set-1")
    assert result["id"] == "shot-1"
