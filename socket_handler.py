"""Low-level socket read/write utilities."""

from __future__ import annotations

import socket
from dataclasses import dataclass

from config import (
    BUFFER_SIZE,
    MAX_BODY_BYTES,
    MAX_HEADER_BYTES,
    MAX_REQUEST_BYTES,
    READ_CHUNK_SIZE,
)
from response import HTTPResponse, prepare_response


class HTTPReadError(Exception):
    """Raised when a client request cannot be safely read from the socket."""


class MalformedRequestError(HTTPReadError):
    """Raised when socket bytes do not form a complete HTTP request."""


class HeaderTooLargeError(HTTPReadError):
    """Raised when HTTP headers exceed configured maximum size."""


class PayloadTooLargeError(HTTPReadError):
    """Raised when request body exceeds configured maximum size."""


class SocketTimeoutError(HTTPReadError):
    """Raised when a client times out while sending request bytes."""


class ResponseBodyError(Exception):
    """Raised when a response file body cannot be opened for sending."""


@dataclass(slots=True)
class RequestHeadInfo:
    header_end_index: int
    expected_body_length: int
    has_transfer_encoding: bool


def _framing_headers(header_bytes: bytes) -> dict[str, str]:
    framing: dict[str, str] = {}
    for line in header_bytes.decode("iso-8859-1").split("\r\n")[1:]:
        if not line:
            continue
        if ":" not in line:
            raise MalformedRequestError("Malformed header while reading request")
        name, value = line.split(":", 1)
        name = name.strip().lower()
        if name in {"content-length", "transfer-encoding"}:
            framing[name] = value.strip()
    return framing


def inspect_http_request_head(buffer: bytes) -> RequestHeadInfo | None:
    """Inspect request headers from an in-memory buffer, if complete."""
    if len(buffer) > MAX_REQUEST_BYTES:
        raise PayloadTooLargeError("Request exceeded MAX_REQUEST_BYTES")

    header_end_index = buffer.find(b"\r\n\r\n")
    if header_end_index == -1:
        if len(buffer) > MAX_HEADER_BYTES:
            raise HeaderTooLargeError("Headers exceeded MAX_HEADER_BYTES")
        return None

    if header_end_index + 4 > MAX_HEADER_BYTES:
        raise HeaderTooLargeError("Headers exceeded MAX_HEADER_BYTES")

    framing = _framing_headers(bytes(buffer[:header_end_index]))

    # Requests with a transfer coding are framed as head-only; the parser
    # rejects them with 501 and the connection is closed afterwards.
    if "transfer-encoding" in framing:
        return RequestHeadInfo(header_end_index, 0, has_transfer_encoding=True)

    expected_body_length = 0
    if "content-length" in framing:
        try:
            expected_body_length = int(framing["content-length"])
        except ValueError as exc:
            raise MalformedRequestError("Invalid Content-Length header") from exc
        if expected_body_length < 0:
            raise MalformedRequestError("Negative Content-Length header")
        if expected_body_length > MAX_BODY_BYTES:
            raise PayloadTooLargeError("Body exceeded MAX_BODY_BYTES")

    return RequestHeadInfo(header_end_index, expected_body_length, has_transfer_encoding=False)


def extract_http_request_message(buffer: bytes) -> tuple[bytes, bytes] | None:
    """Split one complete HTTP request off the front of ``buffer``."""
    head_info = inspect_http_request_head(buffer)
    if head_info is None:
        return None

    request_length = head_info.header_end_index + 4 + head_info.expected_body_length
    if len(buffer) < request_length:
        return None
    return buffer[:request_length], buffer[request_length:]


def read_http_request_message(
    client_socket: socket.socket,
    initial_buffer: bytes = b"",
) -> tuple[bytes, bytes]:
    """Read one HTTP/1.1 request and return (request_bytes, leftover_bytes)."""
    buffer = bytearray(initial_buffer)

    while True:
        extracted = extract_http_request_message(bytes(buffer))
        if extracted is not None:
            return extracted

        try:
            chunk = client_socket.recv(max(BUFFER_SIZE, READ_CHUNK_SIZE))
        except socket.timeout as exc:
            raise SocketTimeoutError("Timed out waiting for request bytes") from exc

        if not chunk:
            if not buffer:
                return b"", b""
            raise MalformedRequestError("Connection closed before request completed")

        buffer.extend(chunk)


def write_http_response_message(
    client_socket: socket.socket,
    response: HTTPResponse,
) -> int:
    """Write an HTTPResponse, sending file bodies incrementally.

    The file body is opened before anything is written, so a file that
    vanished after resolution raises ``ResponseBodyError`` with the socket
    untouched. Returns the number of bytes written. A client disconnect
    surfaces as ``OSError`` and abandons the remaining file transfer.
    """
    try:
        prepared = prepare_response(response)
        file_obj = None
        if prepared.file_path is not None and prepared.file_size > 0:
            file_obj = prepared.file_path.open("rb")
    except OSError as exc:
        raise ResponseBodyError(f"Cannot open response body: {exc}") from exc

    if file_obj is None:
        client_socket.sendall(prepared.head)
        if prepared.body:
            client_socket.sendall(prepared.body)
        return len(prepared.head) + len(prepared.body or b"")

    with file_obj:
        client_socket.sendall(prepared.head)
        return len(prepared.head) + client_socket.sendfile(file_obj, 0, prepared.file_size)
