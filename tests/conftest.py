from __future__ import annotations

from dataclasses import dataclass
from email.message import Message
import json
import os
from pathlib import Path
import socket
import subprocess
import sys
import time
from typing import Any, AsyncIterator
import urllib.error
import urllib.request
from uuid import uuid4

import pytest
import pytest_asyncio

from database import Database
from gateway import HashFSGateway
from service import PhotoService


@dataclass
class TestResponse:
    status: int
    headers: Message
    body: bytes

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text)


class TestClient:
    __test__ = False

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    def request(
        self,
        method: str,
        path: str,
        *,
        body: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> TestResponse:
        url = f"{self.base_url}{path}"
        request = urllib.request.Request(
            url, data=body, headers=headers or {}, method=method
        )
        try:
            response = urllib.request.urlopen(request, timeout=5)
        except urllib.error.HTTPError as exc:
            response = exc
        content = response.read()
        return TestResponse(status=response.code, headers=response.headers, body=content)

    def upload(
        self,
        path: str,
        *,
        content: bytes,
        file_name: str,
        fields: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> TestResponse:
        body, content_type = encode_multipart(
            file_name=file_name, content=content, fields=fields
        )
        req_headers = headers.copy() if headers else {}
        req_headers["Content-Type"] = content_type
        return self.request("POST", path, body=body, headers=req_headers)


def encode_multipart(
    *,
    file_name: str,
    content: bytes,
    fields: dict[str, str] | None = None,
    file_field: str = "data",
) -> tuple[bytes, str]:
    """Build a multipart/form-data body with one file part and text fields."""
    boundary = f"----pinphotos{uuid4().hex}"
    chunks: list[bytes] = []
    for name, value in (fields or {}).items():
        chunks.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
                f"{value}\r\n"
            ).encode("utf-8")
        )
    chunks.append(
        (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{file_field}"; filename="{file_name}"\r\n'
            "Content-Type: application/octet-stream\r\n\r\n"
        ).encode("utf-8")
    )
    chunks.append(content)
    chunks.append(f"\r\n--{boundary}--\r\n".encode("utf-8"))
    return b"".join(chunks), f"multipart/form-data; boundary={boundary}"


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncIterator[Database]:
    db = Database(tmp_path / "pinphotos.db")
    await db.initialize()
    yield db


@pytest.fixture
def gateway(tmp_path: Path) -> HashFSGateway:
    return HashFSGateway(tmp_path / "content")


@pytest.fixture
def service(database: Database, gateway: HashFSGateway) -> PhotoService:
    return PhotoService(database, gateway)


@dataclass
class ServerInfo:
    base_url: str
    db_path: Path


def _find_free_port() -> int:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return int(sock.getsockname()[1])
    except PermissionError as exc:
        raise RuntimeError("Socket binding is not permitted in this environment.") from exc


def _wait_for_server(base_url: str, proc: subprocess.Popen[str]) -> None:
    deadline = time.time() + 10
    last_error: Exception | None = None
    while time.time() < deadline:
        if proc.poll() is not None:
            raise RuntimeError("Robyn server process exited early.")
        try:
            with urllib.request.urlopen(f"{base_url}/", timeout=1) as resp:
                if resp.status == 200:
                    return
        except Exception as exc:  # pragma: no cover - transient startup errors
            last_error = exc
        time.sleep(0.2)
    raise RuntimeError(f"Robyn server failed to start: {last_error}")


@pytest.fixture(scope="module")
def server(tmp_path_factory: pytest.TempPathFactory) -> ServerInfo:
    repo_root = Path(__file__).resolve().parents[1]
    data_dir = tmp_path_factory.mktemp("data")
    db_path = data_dir / "pinphotos.db"
    try:
        port = _find_free_port()
    except RuntimeError as exc:
        pytest.skip(str(exc))
    env = os.environ.copy()
    env.update(
        {
            "ROBYN_HOST": "127.0.0.1",
            "ROBYN_PORT": str(port),
            "PINPHOTOS_DB_PATH": str(db_path),
            "PINPHOTOS_GATEWAY": "hashfs",
            "PINPHOTOS_CONTENT_ROOT": str(data_dir / "content"),
            "PINPHOTOS_LOG_LEVEL": "WARNING",
            "ROBYN_ENV": "test",
        }
    )
    proc = subprocess.Popen(
        [sys.executable, "app.py", "--log-level", "ERROR"],
        cwd=repo_root,
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        text=True,
    )
    try:
        _wait_for_server(f"http://127.0.0.1:{port}", proc)
        yield ServerInfo(base_url=f"http://127.0.0.1:{port}", db_path=db_path)
    finally:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:  # pragma: no cover - safety net
            proc.kill()
