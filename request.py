"""HTTP request model and parser."""

from dataclasses import dataclass, field
from urllib.parse import parse_qs, urlsplit

from config import MAX_BODY_BYTES, MAX_TARGET_LENGTH

ALLOWED_HTTP_VERSIONS = {"HTTP/1.1", "HTTP/1.0"}
KNOWN_METHODS = {
    "GET",
    "HEAD",
    "POST",
    "PUT",
    "DELETE",
    "OPTIONS",
    "PATCH",
    "TRACE",
    "CONNECT",
}


class HTTPRequestParseError(ValueError):
    """Request parse error carrying an HTTP status code."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class HTTPRequest:
    method: str
    path: str
    http_version: str
    raw_target: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    query_params: dict[str, list[str]] = field(default_factory=dict)
    keep_alive: bool = False

    @property
    def origin(self) -> str | None:
        return self.headers.get("origin")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "HTTPRequest":
        """Parse raw HTTP request bytes into a structured request object.

        ``path`` keeps its percent-encoding; decoding is left to the handler
        that interprets it.
        """
        try:
            header_bytes, body = raw.split(b"\r\n\r\n", 1)
        except ValueError as exc:
            raise HTTPRequestParseError("Missing CRLF CRLF request separator") from exc

        lines = header_bytes.decode("iso-8859-1").split("\r\n")
        if not lines or not lines[0]:
            raise HTTPRequestParseError("Missing request line")

        first_line_parts = lines[0].split(" ")
        if len(first_line_parts) != 3:
            raise HTTPRequestParseError("Invalid request line")

        method, target, http_version = first_line_parts
        if not method or not target or not http_version:
            raise HTTPRequestParseError("Request line contains empty tokens")

        normalized_method = method.upper()
        if normalized_method not in KNOWN_METHODS:
            raise HTTPRequestParseError("Method not implemented", status_code=501)

        if http_version not in ALLOWED_HTTP_VERSIONS:
            raise HTTPRequestParseError("Unsupported HTTP version", status_code=505)

        if len(target) > MAX_TARGET_LENGTH:
            raise HTTPRequestParseError("Request target too long", status_code=414)

        if not target.startswith("/") and not (normalized_method == "OPTIONS" and target == "*"):
            raise HTTPRequestParseError("Request target must be an absolute path")

        parsed_target = urlsplit(target)
        path = parsed_target.path or "/"
        query_params = parse_qs(parsed_target.query, keep_blank_values=True)

        headers: dict[str, str] = {}
        for line in lines[1:]:
            if not line:
                continue
            if ":" not in line:
                raise HTTPRequestParseError("Malformed header line")
            name, value = line.split(":", 1)
            header_name = name.strip().lower()
            if not header_name:
                raise HTTPRequestParseError("Header name cannot be empty")
            headers[header_name] = value.strip()

        if http_version == "HTTP/1.1" and "host" not in headers:
            raise HTTPRequestParseError("Host header required for HTTP/1.1")

        if "transfer-encoding" in headers:
            raise HTTPRequestParseError("Transfer-Encoding is not supported", status_code=501)

        if "content-length" in headers:
            try:
                expected_body_length = int(headers["content-length"])
            except ValueError as exc:
                raise HTTPRequestParseError("Invalid Content-Length") from exc

            if expected_body_length < 0:
                raise HTTPRequestParseError("Negative Content-Length is invalid")

            if len(body) != expected_body_length:
                raise HTTPRequestParseError("Body length does not match Content-Length")

        if len(body) > MAX_BODY_BYTES:
            raise HTTPRequestParseError("Body exceeded MAX_BODY_BYTES", status_code=413)

        return cls(
            method=normalized_method,
            path=path,
            raw_target=target,
            http_version=http_version,
            headers=headers,
            body=body,
            query_params=query_params,
            keep_alive=_is_keep_alive(http_version, headers.get("connection", "")),
        )


def _is_keep_alive(http_version: str, connection_header: str) -> bool:
    token = connection_header.lower()
    if http_version == "HTTP/1.1":
        return "close" not in token
    if http_version == "HTTP/1.0":
        return "keep-alive" in token
    return False
