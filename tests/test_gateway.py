import hashlib
import io

from b2sdk.v2.exception import FileNotPresent
import pytest

from config import Settings
from gateway import (
    CHUNK_SIZE,
    B2Gateway,
    ContentNotFound,
    HashFSGateway,
    InvalidContentID,
    build_gateway,
    parse_cid,
)


class FakeDownloadedFile:
    def __init__(self, data: bytes) -> None:
        self.data = data

    def save(self, file) -> None:
        file.write(self.data)


class FakeBucket:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    def upload_unbound_stream(self, read_only_object, file_name, content_type=None):
        self.objects[file_name] = read_only_object.read()

    def download_file_by_name(self, file_name):
        if file_name not in self.objects:
            raise FileNotPresent()
        return FakeDownloadedFile(self.objects[file_name])


def test_hashfs_round_trip(tmp_path) -> None:
    gateway = HashFSGateway(tmp_path / "content")
    payload = b"0123456789"
    stored = gateway.put(io.BytesIO(payload))

    assert stored.cid == hashlib.sha256(payload).hexdigest()
    assert stored.size == len(payload)
    with gateway.get(stored.cid) as stream:
        assert stream.read() == payload


def test_hashfs_same_bytes_share_one_identifier(tmp_path) -> None:
    gateway = HashFSGateway(tmp_path / "content")
    first = gateway.put(io.BytesIO(b"same bytes"))
    second = gateway.put(io.BytesIO(b"same bytes"))
    other = gateway.put(io.BytesIO(b"other bytes"))
    assert first == second
    assert other.cid != first.cid


def test_hashfs_missing_content(tmp_path) -> None:
    gateway = HashFSGateway(tmp_path / "content")
    with pytest.raises(ContentNotFound):
        gateway.get("a" * 64)


def test_hashfs_rejects_paths_as_identifiers(tmp_path) -> None:
    gateway = HashFSGateway(tmp_path / "content")
    with pytest.raises(InvalidContentID):
        gateway.get("../../etc/passwd")


@pytest.mark.parametrize("value", [None, "", "doesnotexist", "a" * 63, "g" * 64, "a" * 65])
def test_parse_cid_rejects_malformed_values(value) -> None:
    with pytest.raises(InvalidContentID):
        parse_cid(value)


def test_parse_cid_normalizes_case() -> None:
    assert parse_cid("AB" * 32) == "ab" * 32


def test_b2_round_trip_uses_content_keys() -> None:
    bucket = FakeBucket()
    gateway = B2Gateway(bucket, prefix="photos/")
    stored = gateway.put(io.BytesIO(b"remote bytes"))

    assert list(bucket.objects) == [f"photos/{stored.cid}"]
    assert stored.size == len(b"remote bytes")
    stream = gateway.get(stored.cid)
    try:
        assert stream.read() == b"remote bytes"
    finally:
        stream.close()


def test_b2_missing_content() -> None:
    gateway = B2Gateway(FakeBucket())
    with pytest.raises(ContentNotFound):
        gateway.get("b" * 64)


def test_build_gateway_defaults_to_hashfs(tmp_path) -> None:
    settings = Settings(content_root=tmp_path / "content")
    gateway = build_gateway(settings)
    assert isinstance(gateway, HashFSGateway)
    assert (tmp_path / "content").is_dir()


class ChunkCountingStream(io.BytesIO):
    def __init__(self, data: bytes) -> None:
        super().__init__(data)
        self.read_sizes: list[int] = []

    def read(self, size=-1):
        self.read_sizes.append(size)
        return super().read(size)


def test_b2_put_reads_upload_in_chunks() -> None:
    payload = b"x" * (CHUNK_SIZE * 2 + 5)
    stream = ChunkCountingStream(payload)
    bucket = FakeBucket()
    stored = B2Gateway(bucket).put(stream)

    assert stored.cid == hashlib.sha256(payload).hexdigest()
    assert stored.size == len(payload)
    assert bucket.objects[f"content/{stored.cid}"] == payload
    assert stream.read_sizes and all(size == CHUNK_SIZE for size in stream.read_sizes)
