import io

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import ANY, Stubber

import storage
from errors import NotFound, StorageError
from storage import LocalStorage, R2Storage


def test_local_upload_then_download(tmp_path):
    local = LocalStorage(str(tmp_path / "bucket"))
    rendered = tmp_path / "render.mp3"
    rendered.write_bytes(b"ID3 rendered")

    local.upload("renders/t1/out.mp3", str(rendered), "audio/mpeg")
    local.download("renders/t1/out.mp3", str(tmp_path / "copy.mp3"))

    assert (tmp_path / "bucket" / "renders" / "t1" / "out.mp3").read_bytes() == b"ID3 rendered"
    assert (tmp_path / "copy.mp3").read_bytes() == b"ID3 rendered"


def test_local_accepts_absolute_paths_as_keys(tmp_path):
    source = tmp_path / "uploads" / "song.flac"
    source.parent.mkdir()
    source.write_bytes(b"fLaC")
    local = LocalStorage(str(tmp_path / "elsewhere"))

    local.download(str(source), str(tmp_path / "copy.flac"))

    assert (tmp_path / "copy.flac").read_bytes() == b"fLaC"


def test_local_rejects_keys_outside_root(tmp_path):
    local = LocalStorage(str(tmp_path / "bucket"))

    with pytest.raises(StorageError, match="escapes"):
        local.download("../secrets.txt", str(tmp_path / "out"))


def test_local_missing_key_is_not_found(tmp_path):
    local = LocalStorage(str(tmp_path))

    with pytest.raises(NotFound, match="audio file missing"):
        local.download("uploads/missing.mp3", str(tmp_path / "out"))


@pytest.fixture
def r2():
    client = boto3.client(
        "s3",
        endpoint_url="https://account.r2.cloudflarestorage.com",
        aws_access_key_id="key",
        aws_secret_access_key="secret",
        region_name="auto",
    )
    with Stubber(client) as stubber:
        yield R2Storage("account", "key", "secret", "tracks", client=client), stubber
        stubber.assert_no_pending_responses()


def test_r2_download_writes_object_body(r2, tmp_path):
    r2_storage, stubber = r2
    body = b"ID3 uploaded track"
    stubber.add_response(
        "get_object",
        {"Body": StreamingBody(io.BytesIO(body), len(body))},
        {"Bucket": "tracks", "Key": "uploads/u1/track.mp3"},
    )

    r2_storage.download("uploads/u1/track.mp3", str(tmp_path / "source.mp3"))

    assert (tmp_path / "source.mp3").read_bytes() == body


def test_r2_missing_object_is_not_found(r2, tmp_path):
    r2_storage, stubber = r2
    stubber.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)

    with pytest.raises(NotFound):
        r2_storage.download("uploads/gone.mp3", str(tmp_path / "source.mp3"))


def test_r2_upload_sets_content_type(r2, tmp_path):
    r2_storage, stubber = r2
    rendered = tmp_path / "render.mp3"
    rendered.write_bytes(b"ID3 rendered")
    stubber.add_response(
        "put_object",
        {},
        {"Bucket": "tracks", "Key": "renders/t1/out.mp3", "Body": ANY, "ContentType": "audio/mpeg"},
    )

    r2_storage.upload("renders/t1/out.mp3", str(rendered), "audio/mpeg")


def test_r2_upload_failure_is_storage_error(r2, tmp_path):
    r2_storage, stubber = r2
    rendered = tmp_path / "render.mp3"
    rendered.write_bytes(b"ID3")
    stubber.add_client_error("put_object", service_error_code="AccessDenied", http_status_code=403)

    with pytest.raises(StorageError, match="r2 put object"):
        r2_storage.upload("renders/t1/out.mp3", str(rendered), "audio/mpeg")


def test_get_storage_prefers_r2_when_configured(monkeypatch, tmp_path):
    monkeypatch.setattr(storage, "UPLOAD_DIR", str(tmp_path))
    assert isinstance(storage.get_storage(), LocalStorage)

    for name, value in (
        ("R2_ACCOUNT_ID", "account"),
        ("R2_ACCESS_KEY_ID", "key"),
        ("R2_SECRET_ACCESS_KEY", "secret"),
        ("R2_BUCKET", "tracks"),
    ):
        monkeypatch.setattr(storage, name, value)
    r2_storage = storage.get_storage()

    assert isinstance(r2_storage, R2Storage)
    assert r2_storage.endpoint_url == "https://account.r2.cloudflarestorage.com"
