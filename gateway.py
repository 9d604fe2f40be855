from __future__ import annotations

from dataclasses import dataclass
import hashlib
import logging
import os
from pathlib import Path
import re
import tempfile
from typing import Any, BinaryIO, Optional, Protocol

from b2sdk.v2 import B2Api, InMemoryAccountInfo
from b2sdk.v2.exception import B2Error, FileNotPresent
from hashfs import HashFS

from config import Settings

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

CID_PATTERN = re.compile(r"^[0-9a-f]{64}$")
# Transfers larger than this spill from memory to a temporary file.
SPOOL_MAX_SIZE = 8 * 1024 * 1024
CHUNK_SIZE = 64 * 1024


class GatewayError(Exception):
    """The content gateway could not complete an ingestion or retrieval."""


class ContentNotFound(GatewayError):
    """No content is stored under the requested identifier."""


class InvalidContentID(ValueError):
    """A value is not a well-formed content identifier."""


@dataclass(frozen=True)
class StoredContent:
    cid: str
    size: int


class ContentGateway(Protocol):
    def put(self, stream: BinaryIO) -> StoredContent:
        ...

    def get(self, cid: str) -> BinaryIO:
        ...


def parse_cid(value: Optional[str]) -> str:
    """Validate a content identifier (hex SHA-256) and return its canonical form."""
    candidate = (value or "").strip().lower()
    if not CID_PATTERN.match(candidate):
        raise InvalidContentID(f"{value!r} is not a content identifier")
    return candidate


class HashFSGateway:
    """Content-addressed directory on local disk, keyed by SHA-256."""

    def __init__(self, root: Path, *, depth: int = 3, width: int = 2) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.fs = HashFS(str(self.root), depth=depth, width=width, algorithm="sha256")

    def put(self, stream: BinaryIO) -> StoredContent:
        try:
            address = self.fs.put(stream)
            size = os.path.getsize(address.abspath)
        except OSError as exc:
            raise GatewayError(f"could not ingest content: {exc}") from exc
        if address.is_duplicate:
            logger.info("content already present cid=%s", address.id)
        return StoredContent(cid=address.id, size=size)

    def get(self, cid: str) -> BinaryIO:
        cid = parse_cid(cid)
        try:
            return self.fs.open(cid)
        except OSError as exc:
            raise ContentNotFound(f"no content stored under {cid}") from exc


class B2Gateway:
    """Content-addressed objects in a Backblaze B2 bucket, keyed by SHA-256."""

    def __init__(self, bucket: Any, *, prefix: str = "content") -> None:
        self.bucket = bucket
        self.prefix = prefix.strip("/")

    @classmethod
    def authorize(
        cls, key_id: str, app_key: str, bucket_name: str, *, prefix: str = "content"
    ) -> "B2Gateway":
        info = InMemoryAccountInfo()
        b2_api = B2Api(info)
        b2_api.authorize_account("production", key_id, app_key)
        return cls(b2_api.get_bucket_by_name(bucket_name), prefix=prefix)

    def _key(self, cid: str) -> str:
        return f"{self.prefix}/{cid}" if self.prefix else cid

    def put(self, stream: BinaryIO) -> StoredContent:
        # The object key is the digest, so the content is spooled while hashing.
        digest = hashlib.sha256()
        size = 0
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE) as buffer:
            for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
                digest.update(chunk)
                buffer.write(chunk)
                size += len(chunk)
            buffer.seek(0)
            stored = StoredContent(cid=digest.hexdigest(), size=size)
            try:
                self.bucket.upload_unbound_stream(
                    buffer,
                    self._key(stored.cid),
                    content_type="application/octet-stream",
                )
            except B2Error as exc:
                raise GatewayError(f"could not ingest content: {exc}") from exc
        return stored

    def get(self, cid: str) -> BinaryIO:
        cid = parse_cid(cid)
        buffer = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
        try:
            downloaded = self.bucket.download_file_by_name(self._key(cid))
            downloaded.save(buffer)
        except FileNotPresent as exc:
            buffer.close()
            raise ContentNotFound(f"no content stored under {cid}") from exc
        except B2Error as exc:
            buffer.close()
            raise GatewayError(f"could not retrieve {cid}: {exc}") from exc
        buffer.seek(0)
        return buffer


def build_gateway(settings: Settings) -> ContentGateway:
    """Construct the gateway backend named by ``settings.gateway``."""
    if settings.gateway == "b2":
        logger.info("using b2 gateway bucket=%s", settings.bucket_name)
        return B2Gateway.authorize(
            settings.key_id, settings.app_key, settings.bucket_name
        )
    logger.info("using hashfs gateway root=%s", settings.content_root)
    return HashFSGateway(settings.content_root)
