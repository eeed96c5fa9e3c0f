"""Socket-level integration tests for the content server."""

from __future__ import annotations

import json
import shutil
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from config import MAX_BODY_BYTES, ServerConfig
from response import HTTPResponse
from router import Router
from server import HTTPServer

ENGINES = ["selectors", "threadpool"]


def _start_server(content_root: Path, *, engine: str, **overrides) -> tuple[HTTPServer, threading.Thread]:
    config = ServerConfig(content_root=content_root, port=0, engine=engine, **overrides)
    server = HTTPServer(config)
    thread = threading.Thread(target=server.start, daemon=True)
    thread.start()

    deadline = time.time() + 3
    while server.port == 0 and time.time() < deadline:
        time.sleep(0.01)

    if server.port == 0:
        raise RuntimeError("Server did not bind to a port")

    return server, thread


def _stop_server(server: HTTPServer, thread: threading.Thread) -> None:
    server.stop()
    thread.join(timeout=2.0)


def _recv_http_response(sock: socket.socket) -> bytes:
    buffer = bytearray()
    while b"\r\n\r\n" not in buffer:
        chunk = sock.recv(4096)
        if not chunk:
            break
        buffer.extend(chunk)

    header_end = buffer.find(b"\r\n\r\n")
    if header_end == -1:
        return bytes(buffer)

    head = bytes(buffer[:header_end])
    body = bytes(buffer[header_end + 4 :])
    headers = _parse_headers(head)
    content_length = int(headers.get("content-length", "0"))
    while len(body) < content_length:
        chunk = sock.recv(65536)
        if not chunk:
            break
        body += chunk

    return head + b"\r\n\r\n" + body


def _parse_headers(head: bytes) -> dict[str, str]:
    headers: dict[str, str] = {}
    for line in head.split(b"\r\n")[1:]:
        if b":" not in line:
            continue
        key, value = line.split(b":", 1)
        headers[key.strip().lower().decode("iso-8859-1")] = value.strip().decode("iso-8859-1")
    return headers


def _request(
    server: HTTPServer,
    target: str,
    *,
    method: str = "GET",
    extra_headers: str = "",
) -> tuple[int, dict[str, str], bytes]:
    payload = (
        f"{method} {target} HTTP/1.1\r\n"
        "Host: localhost\r\n"
        "Connection: close\r\n"
        f"{extra_headers}"
        "\r\n"
    ).encode("iso-8859-1")
    with socket.create_connection((server.host, server.port), timeout=3) as sock:
        sock.sendall(payload)
        raw = _recv_http_response(sock)

    head, body = raw.split(b"\r\n\r\n", 1)
    status = int(head.split(b" ", 2)[1])
    return status, _parse_headers(head), body


@pytest.fixture
def content_root(tmp_path: Path) -> Path:
    root = tmp_path / "content"
    (root / "pages" / "guides").mkdir(parents=True)
    (root / "pages" / "index.mdx").write_text("# Home\n\n<Callout>Hi</Callout>\n")
    (root / "pages" / "guides" / "getting-started.md").write_text("# Start\n")
    (root / "a.mdx").write_text("a")
    (root / "b.md").write_text("b")
    (root / "notes.txt").write_text("not served")
    return root


@pytest.fixture(params=ENGINES)
def running_server(request: pytest.FixtureRequest, content_root: Path):
    server, thread = _start_server(content_root, engine=request.param)
    try:
        yield server
    finally:
        _stop_server(server, thread)


def test_fetch_file_returns_exact_bytes(running_server: HTTPServer, content_root: Path) -> None:
    status, headers, body = _request(running_server, "/api/mdx/pages/index.mdx")

    assert status == 200
    assert headers["content-type"] == "text/markdown"
    assert headers["x-file-extension"] == ".mdx"
    assert body == (content_root / "pages" / "index.mdx").read_bytes()


def test_traversal_returns_400(running_server: HTTPServer) -> None:
    status, headers, body = _request(running_server, "/api/mdx/../../etc/passwd")

    assert status == 400
    assert json.loads(body)["kind"] == "InvalidPath"
    assert headers["access-control-allow-origin"] == "*"


def test_missing_file_returns_404(running_server: HTTPServer) -> None:
    status, headers, body = _request(running_server, "/api/mdx/missing.mdx")

    payload = json.loads(body)
    assert status == 404
    assert payload["kind"] == "NotFound"
    assert payload["path"] == "missing.mdx"
    assert headers["access-control-allow-origin"] == "*"


def test_list_files_excludes_disallowed(running_server: HTTPServer) -> None:
    status, _headers, body = _request(running_server, "/api/mdx/files")

    assert status == 200
    assert json.loads(body) == {
        "files": ["a.mdx", "b.md", "pages/guides/getting-started.md", "pages/index.mdx"],
    }


def test_every_listed_file_is_fetchable(running_server: HTTPServer) -> None:
    _status, _headers, body = _request(running_server, "/api/mdx/files")

    for relative_path in json.loads(body)["files"]:
        status, _headers, _body = _request(running_server, f"/api/mdx/{relative_path}")
        assert status == 200


def test_post_returns_405_with_cors(running_server: HTTPServer) -> None:
    status, headers, body = _request(running_server, "/api/mdx/files", method="POST")

    assert status == 405
    assert headers["allow"] == "GET, HEAD, OPTIONS"
    assert headers["access-control-allow-methods"] == "GET"
    assert json.loads(body)["kind"] == "MethodNotAllowed"


def test_health_survives_missing_content_root(running_server: HTTPServer, content_root: Path) -> None:
    shutil.rmtree(content_root)

    status, _headers, body = _request(running_server, "/health")
    files_status, _files_headers, files_body = _request(running_server, "/api/mdx/files")

    assert status == 200
    assert json.loads(body) == {"status": "ok"}
    assert files_status == 200
    assert json.loads(files_body) == {"files": []}


def test_head_returns_length_without_body(running_server: HTTPServer, content_root: Path) -> None:
    status, headers, body = _request(running_server, "/api/mdx/a.mdx", method="HEAD")

    assert status == 200
    assert headers["content-length"] == "1"
    assert body == b""


def test_preflight_returns_204(running_server: HTTPServer) -> None:
    status, headers, _body = _request(
        running_server,
        "/api/mdx/files",
        method="OPTIONS",
        extra_headers="Origin: http://localhost:3000\r\nAccess-Control-Request-Method: GET\r\n",
    )

    assert status == 204
    assert headers["access-control-allow-origin"] == "*"
    assert "access-control-max-age" in headers


def test_concurrent_requests(running_server: HTTPServer) -> None:
    with ThreadPoolExecutor(max_workers=20) as executor:
        futures = [
            executor.submit(_request, running_server, "/api/mdx/pages/index.mdx")
            for _ in range(20)
        ]
        results = [future.result() for future in futures]

    assert all(status == 200 for status, _headers, _body in results)


def test_large_file_is_streamed_completely(running_server: HTTPServer, content_root: Path) -> None:
    large = content_root / "large.md"
    large.write_bytes(b"0123456789abcdef" * 65_536)

    status, headers, body = _request(running_server, "/api/mdx/large.md")

    assert status == 200
    assert int(headers["content-length"]) == large.stat().st_size
    assert body == large.read_bytes()


def test_malformed_request_returns_400_with_cors(running_server: HTTPServer) -> None:
    with socket.create_connection((running_server.host, running_server.port), timeout=3) as sock:
        sock.sendall(b"BROKEN\r\n\r\n")
        raw = _recv_http_response(sock)

    head, body = raw.split(b"\r\n\r\n", 1)
    assert head.startswith(b"HTTP/1.1 400 Bad Request")
    assert _parse_headers(head)["access-control-allow-origin"] == "*"
    assert json.loads(body)["kind"] == "BadRequest"


def test_oversized_body_returns_413(running_server: HTTPServer) -> None:
    payload = (
        b"POST /api/mdx/files HTTP/1.1\r\n"
        b"Host: localhost\r\n"
        + f"Content-Length: {MAX_BODY_BYTES + 1}\r\n".encode("ascii")
        + b"\r\n"
    )
    with socket.create_connection((running_server.host, running_server.port), timeout=3) as sock:
        sock.sendall(payload)
        raw = _recv_http_response(sock)

    assert raw.startswith(b"HTTP/1.1 413 Payload Too Large")


def test_keepalive_serves_pipelined_requests_in_order(running_server: HTTPServer) -> None:
    with socket.create_connection((running_server.host, running_server.port), timeout=3) as sock:
        sock.sendall(
            b"GET /api/mdx/a.mdx HTTP/1.1\r\n"
            b"Host: localhost\r\n"
            b"\r\n"
            b"GET /api/mdx/missing.md HTTP/1.1\r\n"
            b"Host: localhost\r\n"
            b"Connection: close\r\n"
            b"\r\n"
        )
        first = _recv_http_response(sock)
        second = _recv_http_response(sock)

    assert first.startswith(b"HTTP/1.1 200 OK")
    assert b"Connection: keep-alive" in first
    assert first.endswith(b"\r\n\r\na")
    assert second.startswith(b"HTTP/1.1 404 Not Found")


@pytest.mark.parametrize("engine", ENGINES)
def test_idle_client_times_out(content_root: Path, engine: str) -> None:
    server, thread = _start_server(content_root, engine=engine, timeout_secs=0.3)
    try:
        with socket.create_connection((server.host, server.port), timeout=3) as sock:
            sock.sendall(b"GET /health HTTP/1.1\r\nHost: localhost\r\n")
            raw = _recv_http_response(sock)
    finally:
        _stop_server(server, thread)

    assert raw.startswith(b"HTTP/1.1 408 Request Timeout")


def test_custom_prefix_and_origin_list(content_root: Path) -> None:
    server, thread = _start_server(
        content_root,
        engine="selectors",
        api_prefix="/docs/api",
        cors_origins=("http://localhost:3000",),
    )
    try:
        status, headers, _body = _request(
            server,
            "/docs/api/b.md",
            extra_headers="Origin: http://localhost:3000\r\n",
        )
        old_status, _old_headers, _old_body = _request(server, "/api/mdx/b.md")
    finally:
        _stop_server(server, thread)

    assert status == 200
    assert headers["access-control-allow-origin"] == "http://localhost:3000"
    assert headers["vary"] == "Origin"
    assert old_status == 404


def test_port_already_bound_fails_start(content_root: Path) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]
        server = HTTPServer(ServerConfig(content_root=content_root, port=port))

        with pytest.raises(OSError):
            server.start()


@pytest.mark.parametrize("engine", ENGINES)
def test_file_deleted_after_resolution_returns_500(content_root: Path, engine: str) -> None:
    router = Router()
    router.add_route(
        "GET",
        "/gone",
        lambda _request: HTTPResponse(status_code=200, file_path=content_root / "gone.md"),
    )
    config = ServerConfig(content_root=content_root, port=0, engine=engine)
    server = HTTPServer(config, router=router)
    thread = threading.Thread(target=server.start, daemon=True)
    thread.start()
    deadline = time.time() + 3
    while server.port == 0 and time.time() < deadline:
        time.sleep(0.01)
    try:
        status, headers, body = _request(server, "/gone")
    finally:
        _stop_server(server, thread)

    assert status == 500
    assert headers["connection"] == "close"
    assert json.loads(body)["kind"] == "InternalError"
