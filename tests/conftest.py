from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from email.message import Message
import io
import json
import os
from pathlib import Path
import shutil
import socket
import subprocess
import time
from typing import Iterator, Optional, Sequence
import urllib.error
import urllib.request

from PIL import Image
import pytest

BOUNDARY = "stargram-test-boundary"


def png_bytes(color: tuple[int, int, int] = (255, 0, 0), size: tuple[int, int] = (4, 4)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def jpeg_bytes(color: tuple[int, int, int] = (0, 0, 255)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color).save(buffer, format="JPEG")
    return buffer.getvalue()


def gif_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("P", (4, 4)).save(buffer, format="GIF")
    return buffer.getvalue()


def mpo_bytes() -> bytes:
    """A JPEG with a second picture in a multi-picture segment, as phone cameras write."""
    buffer = io.BytesIO()
    first, second = Image.new("RGB", (8, 8), (10, 20, 30)), Image.new("RGB", (8, 8), (30, 20, 10))
    first.save(buffer, format="MPO", save_all=True, append_images=[second])
    return buffer.getvalue()


def noise_png_bytes(side: int) -> bytes:
    """A PNG of random pixels, which compresses to roughly side * side * 3 bytes."""
    buffer = io.BytesIO()
    Image.frombytes("RGB", (side, side), os.urandom(side * side * 3)).save(buffer, format="PNG")
    return buffer.getvalue()


@dataclass
class FormField:
    name: str
    data: bytes
    filename: Optional[str] = None
    content_type: Optional[str] = None


def caption_field(text: str) -> FormField:
    return FormField("caption", text.encode("utf-8"))


def image_field(name: str, data: bytes, filename: Optional[str] = None) -> FormField:
    return FormField(name, data, filename=filename or f"{name}.png", content_type="image/png")


def build_multipart(fields: Sequence[FormField], boundary: str = BOUNDARY) -> bytes:
    """Encode fields as a multipart/form-data body, in the given order."""
    chunks: list[bytes] = []
    for field in fields:
        disposition = f'form-data; name="{field.name}"'
        if field.filename is not None:
            disposition += f'; filename="{field.filename}"'
        chunks.append(f"--{boundary}\r\n".encode("latin-1"))
        chunks.append(f"Content-Disposition: {disposition}\r\n".encode("latin-1"))
        if field.content_type:
            chunks.append(f"Content-Type: {field.content_type}\r\n".encode("latin-1"))
        chunks.append(b"\r\n")
        chunks.append(field.data)
        chunks.append(b"\r\n")
    chunks.append(f"--{boundary}--\r\n".encode("latin-1"))
    return b"".join(chunks)


def multipart_content_type(boundary: str = BOUNDARY) -> str:
    return f"multipart/form-data; boundary={boundary}"


def robyn_form(fields: Sequence[FormField]) -> tuple[dict[str, str], dict[str, bytes], bytes]:
    """Split fields the way Robyn hands a multipart request to a handler.

    Text fields go to a dict by name, files to a dict by filename, and the
    body is every payload joined in order.
    """
    form_data: dict[str, str] = {}
    files: dict[str, bytes] = {}
    for field in fields:
        if field.filename is None:
            form_data[field.name] = field.data.decode("utf-8")
        else:
            files[field.filename] = field.data
    return form_data, files, b"".join(field.data for field in fields)


@dataclass
class TestResponse:
    __test__ = False
    status: int
    headers: Message
    content: bytes

    @property
    def body(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self):
        return json.loads(self.body)


class TestClient:
    __test__ = False

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.token: Optional[str] = None

    def request(
        self,
        method: str,
        path: str,
        *,
        json_data: dict | None = None,
        body: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> TestResponse:
        url = f"{self.base_url}{path}"
        req_headers = headers.copy() if headers else {}
        if self.token:
            req_headers.setdefault("Authentication", self.token)
        if json_data is not None:
            body = json.dumps(json_data).encode("utf-8")
            req_headers.setdefault("Content-Type", "application/json")
        request = urllib.request.Request(
            url, data=body, headers=req_headers, method=method
        )
        try:
            response = urllib.request.urlopen(request, timeout=15)
        except urllib.error.HTTPError as exc:
            response = exc
        return TestResponse(
            status=response.code, headers=response.headers, content=response.read()
        )


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
            with urllib.request.urlopen(f"{base_url}/feeds/missing/images/0", timeout=1):
                return
        except urllib.error.HTTPError:
            # Any HTTP answer, a 404 included, means the server is up.
            return
        except Exception as exc:  # pragma: no cover - transient startup errors
            last_error = exc
        time.sleep(0.2)
    raise RuntimeError(f"Robyn server failed to start: {last_error}")


@contextmanager
def _run_server(
    tmp_path_factory: pytest.TempPathFactory, extra_env: dict[str, str] | None = None
) -> Iterator[ServerInfo]:
    if shutil.which("robyn") is None:
        pytest.skip("Robyn CLI is not available in this environment.")
    repo_root = Path(__file__).resolve().parents[1]
    db_path = tmp_path_factory.mktemp("db") / "stargram.db"
    try:
        port = _find_free_port()
    except RuntimeError as exc:
        pytest.skip(str(exc))
    env = os.environ.copy()
    # The app derives Robyn's cap from its own body limit.
    env.pop("ROBYN_MAX_PAYLOAD_SIZE", None)
    env.update(
        {
            "ROBYN_HOST": "127.0.0.1",
            "ROBYN_PORT": str(port),
            "STARGRAM_DB_PATH": str(db_path),
            "STARGRAM_LOG_LEVEL": "ERROR",
        }
    )
    env.update(extra_env or {})
    proc = subprocess.Popen(
        ["robyn", "app.py", "--log-level", "ERROR"],
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


@pytest.fixture(scope="module")
def server(tmp_path_factory: pytest.TempPathFactory) -> Iterator[ServerInfo]:
    with _run_server(tmp_path_factory) as info:
        yield info


@pytest.fixture(scope="module")
def small_body_server(tmp_path_factory: pytest.TempPathFactory) -> Iterator[ServerInfo]:
    """A server that accepts upload bodies of at most 200 kB."""
    with _run_server(tmp_path_factory, {"STARGRAM_MAX_BODY_BYTES": "200000"}) as info:
        yield info
