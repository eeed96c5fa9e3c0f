"""HTTP response model and serializer."""

import json
from dataclasses import dataclass, field
from email.utils import formatdate
from pathlib import Path
from typing import Any

from config import SERVER_NAME

REASON_PHRASES: dict[int, str] = {
    200: "OK",
    204: "No Content",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    408: "Request Timeout",
    413: "Payload Too Large",
    414: "URI Too Long",
    431: "Request Header Fields Too Large",
    500: "Internal Server Error",
    501: "Not Implemented",
    503: "Service Unavailable",
    505: "HTTP Version Not Supported",
}

BODYLESS_STATUSES = {204, 304}


@dataclass(slots=True)
class PreparedResponse:
    head: bytes
    body: bytes | None = None
    file_path: Path | None = None
    file_size: int = 0


@dataclass(slots=True)
class HTTPResponse:
    status_code: int
    reason_phrase: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | str = b""
    file_path: Path | None = None
    content_length_override: int | None = None

    def __post_init__(self) -> None:
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")
        if self.file_path is not None and self.body:
            raise ValueError("Response cannot set both body and file_path")

    def to_bytes(self) -> bytes:
        """Serialize the response into HTTP/1.1 wire format bytes."""
        prepared = prepare_response(self)
        payload = bytearray(prepared.head)
        if prepared.body is not None:
            payload.extend(prepared.body)
        elif prepared.file_path is not None:
            payload.extend(prepared.file_path.read_bytes())
        return bytes(payload)


def json_response(
    status_code: int,
    payload: Any,
    headers: dict[str, str] | None = None,
) -> HTTPResponse:
    merged = {"Content-Type": "application/json"}
    if headers:
        merged.update(headers)
    return HTTPResponse(
        status_code=status_code,
        headers=merged,
        body=json.dumps(payload, sort_keys=True),
    )


def error_response(
    status_code: int,
    kind: str,
    message: str,
    *,
    path: str | None = None,
    headers: dict[str, str] | None = None,
) -> HTTPResponse:
    payload = {"kind": kind, "error": message}
    if path is not None:
        payload["path"] = path
    return json_response(status_code, payload, headers)


def as_head_response(get_response: HTTPResponse) -> HTTPResponse:
    """Strip the body from a GET response while keeping its Content-Length."""
    if get_response.file_path is not None:
        body_size = get_response.file_path.stat().st_size
    else:
        body_size = len(get_response.body)
    return HTTPResponse(
        status_code=get_response.status_code,
        reason_phrase=get_response.reason_phrase,
        headers=dict(get_response.headers),
        body=b"",
        content_length_override=body_size,
    )


def prepare_response(response: HTTPResponse) -> PreparedResponse:
    reason = response.reason_phrase or REASON_PHRASES.get(response.status_code, "Unknown")
    normalized_headers = dict(response.headers)
    normalized_headers.setdefault(
        "Date",
        formatdate(timeval=None, localtime=False, usegmt=True),
    )
    normalized_headers.setdefault("Server", SERVER_NAME)

    body: bytes | None = None
    file_path: Path | None = None
    file_size = 0
    if response.status_code in BODYLESS_STATUSES:
        normalized_headers.pop("Content-Type", None)
        normalized_headers.pop("Content-Length", None)
        body = b""
    elif response.file_path is not None:
        file_path = response.file_path
        file_size = file_path.stat().st_size
        content_length = response.content_length_override
        if content_length is None:
            content_length = file_size
        normalized_headers.setdefault("Content-Type", "application/octet-stream")
        normalized_headers["Content-Length"] = str(content_length)
    else:
        body = response.body
        content_length = response.content_length_override
        if content_length is None:
            content_length = len(body)
        normalized_headers.setdefault("Content-Type", "text/plain; charset=utf-8")
        normalized_headers["Content-Length"] = str(content_length)

    header_lines = [f"HTTP/1.1 {response.status_code} {reason}"]
    header_lines.extend(f"{key}: {value}" for key, value in normalized_headers.items())
    head = "\r\n".join(header_lines).encode("iso-8859-1") + b"\r\n\r\n"
    return PreparedResponse(head=head, body=body, file_path=file_path, file_size=file_size)
