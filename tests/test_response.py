"""Unit tests for HTTP response serialization."""

import json
from pathlib import Path

from response import HTTPResponse, as_head_response, error_response, json_response


def test_response_serialization_sets_length_and_default_content_type() -> None:
    response = HTTPResponse(status_code=200, body="hello")

    raw = response.to_bytes()

    assert raw.startswith(b"HTTP/1.1 200 OK\r\n")
    assert b"Content-Type: text/plain; charset=utf-8\r\n" in raw
    assert b"Content-Length: 5\r\n" in raw
    assert b"Server: mdx-content-server/1.0\r\n" in raw
    assert raw.endswith(b"\r\n\r\nhello")


def test_file_response_streams_file_bytes(tmp_path: Path) -> None:
    page = tmp_path / "index.mdx"
    page.write_bytes(b"# Title\n\nBody\n")
    response = HTTPResponse(
        status_code=200,
        headers={"Content-Type": "text/markdown"},
        file_path=page,
    )

    raw = response.to_bytes()

    assert b"Content-Type: text/markdown\r\n" in raw
    assert b"Content-Length: 14\r\n" in raw
    assert raw.endswith(b"\r\n\r\n# Title\n\nBody\n")


def test_json_and_error_responses() -> None:
    ok = json_response(200, {"status": "ok"})
    error = error_response(404, "NotFound", "File not found", path="missing.mdx")

    assert ok.headers["Content-Type"] == "application/json"
    assert json.loads(ok.body) == {"status": "ok"}
    assert json.loads(error.body) == {
        "kind": "NotFound",
        "error": "File not found",
        "path": "missing.mdx",
    }
    assert error.to_bytes().startswith(b"HTTP/1.1 404 Not Found\r\n")


def test_no_content_response_has_no_length() -> None:
    raw = HTTPResponse(status_code=204).to_bytes()

    assert raw.startswith(b"HTTP/1.1 204 No Content\r\n")
    assert b"Content-Length" not in raw
    assert raw.endswith(b"\r\n\r\n")


def test_head_response_of_file_keeps_length(tmp_path: Path) -> None:
    page = tmp_path / "index.md"
    page.write_bytes(b"12345")

    head = as_head_response(HTTPResponse(status_code=200, file_path=page))
    raw = head.to_bytes()

    assert b"Content-Length: 5\r\n" in raw
    assert raw.endswith(b"\r\n\r\n")
