"""Main HTTP server entry point and connection lifecycle orchestration."""

from __future__ import annotations

import argparse
import itertools
import json
import logging
import os
import selectors
import signal
import socket
import time
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from config import (
    API_PREFIX,
    CORS_ORIGINS,
    ENGINES,
    HOST,
    IDLE_SWEEP_INTERVAL_SECS,
    LOG_FORMAT,
    LOG_FORMATS,
    MAX_ACTIVE_CONNECTIONS,
    MAX_KEEPALIVE_REQUESTS,
    PORT,
    REQUEST_QUEUE_SIZE,
    SELECT_TIMEOUT_SECS,
    SERVER_ENGINE,
    SOCKET_TIMEOUT_SECS,
    WORKER_COUNT,
    WRITE_CHUNK_SIZE,
    ConfigError,
    ServerConfig,
)
from handlers.content_handlers import build_router
from request import HTTPRequest, HTTPRequestParseError
from response import REASON_PHRASES, HTTPResponse, error_response, prepare_response
from router import Router
from socket_handler import (
    HeaderTooLargeError,
    HTTPReadError,
    MalformedRequestError,
    PayloadTooLargeError,
    ResponseBodyError,
    SocketTimeoutError,
    extract_http_request_message,
    read_http_request_message,
    write_http_response_message,
)
from thread_pool import ThreadPool

logger = logging.getLogger(__name__)

ERROR_KINDS: dict[int, str] = {
    400: "BadRequest",
    408: "RequestTimeout",
    413: "PayloadTooLarge",
    414: "URITooLong",
    431: "HeaderTooLarge",
    500: "InternalError",
    501: "NotImplemented",
    503: "ServiceUnavailable",
    505: "HTTPVersionNotSupported",
}

READ_ERROR_STATUS: dict[type[HTTPReadError], int] = {
    MalformedRequestError: 400,
    SocketTimeoutError: 408,
    PayloadTooLargeError: 413,
    HeaderTooLargeError: 431,
}


@dataclass(slots=True)
class OutboundResponse:
    """Tracks incremental write state for a queued HTTP response."""

    response: HTTPResponse
    method: str
    path: str
    started_at: float
    connection_reused: bool
    request_id: int
    bytes_in: int
    close_after: bool
    pending_chunks: deque[memoryview] = field(default_factory=deque)
    file_obj: BinaryIO | None = None
    file_remaining: int = 0
    file_offset: int = 0
    bytes_sent: int = 0

    def close_resources(self) -> None:
        if self.file_obj is not None:
            self.file_obj.close()
            self.file_obj = None


@dataclass(slots=True)
class ConnectionState:
    sock: socket.socket
    address: tuple[str, int]
    connection_id: int
    recv_buffer: bytearray = field(default_factory=bytearray)
    queued_responses: deque[OutboundResponse] = field(default_factory=deque)
    current_response: OutboundResponse | None = None
    requests_served: int = 0
    last_activity: float = field(default_factory=time.monotonic)
    closing: bool = False


class HTTPServer:
    """Content server handle with an explicit start/stop lifecycle.

    ``start()`` blocks while serving and owns the listening socket for its
    whole duration; ``stop()`` may be called from another thread or a signal
    handler and makes ``start()`` return after releasing every connection.
    """

    def __init__(self, config: ServerConfig, router: Router | None = None) -> None:
        self.config = config
        self.host = config.host
        self.port = config.port
        self.engine = config.engine
        self.router = router or build_router(config)

        self._server_socket: socket.socket | None = None
        self._pool: ThreadPool | None = None
        self._selector_connections: dict[int, ConnectionState] = {}
        self._connection_ids = itertools.count(1)
        self._running = False

    def start(self) -> None:
        """Start listening and process clients according to the configured engine."""
        logger.info(
            "Serving %s on %s:%s under %s (engine=%s)",
            self.config.content_root,
            self.host,
            self.port,
            self.config.api_prefix,
            self.engine,
        )
        if self.engine == "threadpool":
            self._start_threadpool()
            return
        if self.engine == "selectors":
            self._start_selectors()
            return
        raise ValueError(f"Unsupported engine: {self.engine}")

    def stop(self) -> None:
        self._running = False
        if self._server_socket is not None:
            self._server_socket.close()
            self._server_socket = None
        if self._pool is not None:
            self._pool.shutdown()
            self._pool = None

    def _listen(self, server_socket: socket.socket) -> None:
        server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server_socket.bind((self.host, self.port))
        server_socket.listen(128)
        self._server_socket = server_socket
        self.port = server_socket.getsockname()[1]
        self._running = True

    def _start_threadpool(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server_socket:
            self._listen(server_socket)
            server_socket.settimeout(0.2)
            self._pool = ThreadPool(
                worker_count=self.config.worker_count,
                queue_size=self.config.request_queue_size,
                handler=self._handle_client,
            )
            self._pool.start()

            try:
                while self._running:
                    try:
                        client_socket, address = server_socket.accept()
                    except socket.timeout:
                        continue
                    except OSError:
                        break

                    if self._pool is None or not self._pool.submit(client_socket, address):
                        self._send_busy_response(client_socket, address)
            finally:
                if self._pool is not None:
                    self._pool.shutdown()
                    self._pool = None
                self._running = False

    def _start_selectors(self) -> None:
        with (
            socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server_socket,
            selectors.DefaultSelector() as selector,
        ):
            self._listen(server_socket)
            server_socket.setblocking(False)
            selector.register(server_socket, selectors.EVENT_READ, data=None)

            last_idle_sweep = time.monotonic()
            try:
                while self._running:
                    try:
                        events = selector.select(timeout=SELECT_TIMEOUT_SECS)
                    except OSError:
                        if not self._running:
                            break
                        raise

                    for key, mask in events:
                        if key.data is None:
                            self._accept_selector_clients(server_socket, selector)
                            continue

                        state: ConnectionState = key.data
                        if mask & selectors.EVENT_READ:
                            self._handle_selector_read(state, selector)
                        if mask & selectors.EVENT_WRITE:
                            self._handle_selector_write(state, selector)

                    now = time.monotonic()
                    if now - last_idle_sweep >= IDLE_SWEEP_INTERVAL_SECS:
                        self._sweep_idle_connections(selector, now)
                        last_idle_sweep = now
            finally:
                for state in list(self._selector_connections.values()):
                    self._close_selector_connection(state, selector)
                self._selector_connections.clear()
                self._running = False

    def _send_busy_response(self, client_socket: socket.socket, address: tuple[str, int]) -> None:
        with client_socket:
            started_at = time.perf_counter()
            response = self._protocol_error(503, origin=None)
            response.headers["Retry-After"] = "1"
            try:
                bytes_sent = write_http_response_message(client_socket, response)
            except OSError:
                return
            self._record_and_log(
                address=address,
                method="-",
                path="-",
                response=response,
                payload_size=bytes_sent,
                bytes_in=0,
                started_at=started_at,
                connection_reused=False,
                connection_id=0,
                request_id=0,
            )

    def _handle_client(self, client_socket: socket.socket, address: tuple[str, int]) -> None:
        connection_id = next(self._connection_ids)
        with client_socket:
            client_socket.settimeout(self.config.timeout_secs)
            request_count = 0
            carry = b""
            while request_count < MAX_KEEPALIVE_REQUESTS and self._running:
                started_at = time.perf_counter()
                method, path, bytes_in = "-", "-", 0
                should_close = True
                try:
                    raw_request, carry = read_http_request_message(client_socket, carry)
                except HTTPReadError as exc:
                    response = self._protocol_error(READ_ERROR_STATUS.get(type(exc), 400))
                except OSError:
                    return
                else:
                    if not raw_request:
                        return
                    bytes_in = len(raw_request)
                    try:
                        request = HTTPRequest.from_bytes(raw_request)
                    except HTTPRequestParseError as exc:
                        response = self._protocol_error(exc.status_code)
                    else:
                        request_count += 1
                        method, path = request.method, request.path
                        response = self._dispatch(request)
                        should_close = self._apply_connection_headers(
                            request,
                            response,
                            request_count,
                        )

                try:
                    try:
                        bytes_sent = write_http_response_message(client_socket, response)
                    except ResponseBodyError:
                        logger.exception("Cannot open response body for %s", path)
                        response = self._protocol_error(500)
                        should_close = True
                        bytes_sent = write_http_response_message(client_socket, response)
                except OSError as exc:
                    logger.debug("Client %s went away mid-response: %s", address[0], exc)
                    return

                self._record_and_log(
                    address=address,
                    method=method,
                    path=path,
                    response=response,
                    payload_size=bytes_sent,
                    bytes_in=bytes_in,
                    started_at=started_at,
                    connection_reused=request_count > 1,
                    connection_id=connection_id,
                    request_id=request_count,
                )
                if should_close:
                    return

    def _accept_selector_clients(
        self,
        server_socket: socket.socket,
        selector: selectors.BaseSelector,
    ) -> None:
        while True:
            try:
                client_socket, address = server_socket.accept()
            except OSError:
                return

            if len(self._selector_connections) >= self.config.max_active_connections:
                client_socket.settimeout(self.config.timeout_secs)
                self._send_busy_response(client_socket, address)
                continue

            client_socket.setblocking(False)
            state = ConnectionState(
                sock=client_socket,
                address=address,
                connection_id=next(self._connection_ids),
            )
            self._selector_connections[client_socket.fileno()] = state
            selector.register(client_socket, selectors.EVENT_READ, data=state)

    def _handle_selector_read(
        self,
        state: ConnectionState,
        selector: selectors.BaseSelector,
    ) -> None:
        try:
            chunk = state.sock.recv(8192)
        except BlockingIOError:
            return
        except OSError:
            self._close_selector_connection(state, selector)
            return

        if not chunk:
            state.closing = True
            self._update_selector_interest(state, selector)
            return

        state.last_activity = time.monotonic()
        state.recv_buffer.extend(chunk)

        while not state.closing:
            started_at = time.perf_counter()
            try:
                extracted = extract_http_request_message(bytes(state.recv_buffer))
            except HTTPReadError as exc:
                response = self._protocol_error(READ_ERROR_STATUS.get(type(exc), 400))
                self._queue_selector_response(state, response, started_at=started_at)
                break

            if extracted is None:
                break

            raw_request, leftover = extracted
            state.recv_buffer = bytearray(leftover)

            try:
                request = HTTPRequest.from_bytes(raw_request)
            except HTTPRequestParseError as exc:
                self._queue_selector_response(
                    state,
                    self._protocol_error(exc.status_code),
                    started_at=started_at,
                    bytes_in=len(raw_request),
                )
                break

            state.requests_served += 1
            response = self._dispatch(request)
            should_close = self._apply_connection_headers(
                request,
                response,
                state.requests_served,
            )
            self._queue_selector_response(
                state,
                response,
                started_at=started_at,
                method=request.method,
                path=request.path,
                bytes_in=len(raw_request),
                close_after=should_close,
            )

        self._update_selector_interest(state, selector)

    def _queue_selector_response(
        self,
        state: ConnectionState,
        response: HTTPResponse,
        *,
        started_at: float,
        method: str = "-",
        path: str = "-",
        bytes_in: int = 0,
        close_after: bool = True,
    ) -> None:
        if close_after:
            response.headers.setdefault("Connection", "close")
            state.closing = True

        outbound = OutboundResponse(
            response=response,
            method=method,
            path=path,
            started_at=started_at,
            connection_reused=state.requests_served > 1,
            request_id=state.requests_served,
            bytes_in=bytes_in,
            close_after=close_after,
        )
        try:
            prepared = prepare_response(response)
            if prepared.file_path is not None and prepared.file_size > 0:
                outbound.file_obj = prepared.file_path.open("rb")
                outbound.file_remaining = prepared.file_size
        except OSError:
            logger.exception("Cannot open response body for %s", path)
            response = self._protocol_error(500)
            response.headers["Connection"] = "close"
            outbound.response = response
            outbound.close_after = True
            state.closing = True
            prepared = prepare_response(response)

        outbound.pending_chunks.append(memoryview(prepared.head))
        if prepared.body:
            outbound.pending_chunks.append(memoryview(prepared.body))
        state.queued_responses.append(outbound)

    def _handle_selector_write(
        self,
        state: ConnectionState,
        selector: selectors.BaseSelector,
    ) -> None:
        while True:
            if state.current_response is None:
                if not state.queued_responses:
                    break
                state.current_response = state.queued_responses.popleft()

            outbound = state.current_response
            try:
                sent = self._send_some(state.sock, outbound)
            except BlockingIOError:
                return
            except OSError as exc:
                logger.debug("Client %s went away mid-response: %s", state.address[0], exc)
                self._close_selector_connection(state, selector)
                return

            if sent is None:
                self._finalize_selector_response(state, outbound, selector)
                if state.sock.fileno() not in self._selector_connections:
                    return
                state.current_response = None
                continue
            if sent <= 0:
                return
            state.last_activity = time.monotonic()
            outbound.bytes_sent += sent

        self._update_selector_interest(state, selector)

    def _send_some(self, sock: socket.socket, outbound: OutboundResponse) -> int | None:
        """Send one slice of ``outbound``; None once it is fully written."""
        if outbound.pending_chunks:
            view = outbound.pending_chunks[0]
            sent = sock.send(view)
            if sent < len(view):
                outbound.pending_chunks[0] = view[sent:]
            else:
                outbound.pending_chunks.popleft()
            return sent

        if outbound.file_obj is None or outbound.file_remaining <= 0:
            outbound.close_resources()
            return None

        count = min(WRITE_CHUNK_SIZE, outbound.file_remaining)
        if hasattr(os, "sendfile"):
            sent = os.sendfile(
                sock.fileno(),
                outbound.file_obj.fileno(),
                outbound.file_offset,
                count,
            )
        else:
            outbound.file_obj.seek(outbound.file_offset)
            sent = sock.send(outbound.file_obj.read(count))

        if sent == 0:
            # File shrank underneath us; the declared length cannot be met.
            raise OSError("response file truncated during transfer")
        outbound.file_offset += sent
        outbound.file_remaining -= sent
        return sent

    def _finalize_selector_response(
        self,
        state: ConnectionState,
        outbound: OutboundResponse,
        selector: selectors.BaseSelector,
    ) -> None:
        outbound.close_resources()
        self._record_and_log(
            address=state.address,
            method=outbound.method,
            path=outbound.path,
            response=outbound.response,
            payload_size=outbound.bytes_sent,
            bytes_in=outbound.bytes_in,
            started_at=outbound.started_at,
            connection_reused=outbound.connection_reused,
            connection_id=state.connection_id,
            request_id=outbound.request_id,
        )
        if outbound.close_after:
            self._close_selector_connection(state, selector)

    def _sweep_idle_connections(
        self,
        selector: selectors.BaseSelector,
        now: float,
    ) -> None:
        for state in list(self._selector_connections.values()):
            if now - state.last_activity <= self.config.timeout_secs:
                continue
            if state.closing or state.current_response is not None or state.queued_responses:
                # Client stopped reading; drop it instead of queueing more output.
                logger.debug("Dropping stalled connection %s", state.connection_id)
                self._close_selector_connection(state, selector)
                continue
            self._queue_selector_response(
                state,
                self._protocol_error(408),
                started_at=time.perf_counter(),
            )
            state.last_activity = now
            self._update_selector_interest(state, selector)

    def _update_selector_interest(
        self,
        state: ConnectionState,
        selector: selectors.BaseSelector,
    ) -> None:
        if state.sock.fileno() not in self._selector_connections:
            return

        has_pending_write = bool(state.current_response is not None or state.queued_responses)
        if state.closing and not has_pending_write:
            self._close_selector_connection(state, selector)
            return

        events = selectors.EVENT_READ
        if has_pending_write:
            events |= selectors.EVENT_WRITE
        if state.closing:
            events = selectors.EVENT_WRITE

        try:
            selector.modify(state.sock, events, data=state)
        except (KeyError, ValueError, OSError):
            self._close_selector_connection(state, selector)

    def _close_selector_connection(
        self,
        state: ConnectionState,
        selector: selectors.BaseSelector,
    ) -> None:
        fileno = state.sock.fileno()
        if fileno not in self._selector_connections:
            return

        try:
            selector.unregister(state.sock)
        except (KeyError, ValueError):
            logger.debug("Connection %s was not registered", state.connection_id)

        if state.current_response is not None:
            state.current_response.close_resources()
            state.current_response = None
        while state.queued_responses:
            state.queued_responses.popleft().close_resources()

        self._selector_connections.pop(fileno, None)
        state.sock.close()

    def _dispatch(self, request: HTTPRequest) -> HTTPResponse:
        try:
            return self.router.dispatch(request)
        except Exception:
            logger.exception("Unhandled error while dispatching %s %s", request.method, request.path)
            return self._protocol_error(500, origin=request.origin)

    def _protocol_error(self, status_code: int, origin: str | None = None) -> HTTPResponse:
        """Build a JSON error for failures detected before routing."""
        response = error_response(
            status_code,
            ERROR_KINDS.get(status_code, "BadRequest"),
            REASON_PHRASES.get(status_code, "Bad Request"),
        )
        response.headers.update(self.router.cors.headers_for(origin))
        response.headers["Connection"] = "close"
        return response

    def _apply_connection_headers(
        self,
        request: HTTPRequest,
        response: HTTPResponse,
        request_count: int,
    ) -> bool:
        should_close = (
            not request.keep_alive
            or request_count >= MAX_KEEPALIVE_REQUESTS
            or not self._running
        )
        if should_close:
            response.headers["Connection"] = "close"
        else:
            response.headers.setdefault("Connection", "keep-alive")
            response.headers.setdefault(
                "Keep-Alive",
                (
                    f"timeout={int(self.config.timeout_secs)}, "
                    f"max={MAX_KEEPALIVE_REQUESTS - request_count}"
                ),
            )
        return should_close

    def _record_and_log(
        self,
        *,
        address: tuple[str, int],
        method: str,
        path: str,
        response: HTTPResponse,
        payload_size: int,
        bytes_in: int,
        started_at: float,
        connection_reused: bool,
        connection_id: int,
        request_id: int,
    ) -> None:
        duration_ms = (time.perf_counter() - started_at) * 1000
        event = {
            "client": address[0],
            "method": method,
            "path": path,
            "status": response.status_code,
            "engine": self.engine,
            "connection_id": connection_id,
            "request_id": request_id,
            "bytes_in": bytes_in,
            "bytes_out": payload_size,
            "latency_ms": round(duration_ms, 3),
            "connection_reused": connection_reused,
        }
        if self.config.log_format == "json":
            logger.info(json.dumps(event, sort_keys=True))
            return

        logger.info(
            (
                "client=%s method=%s path=%s status=%s engine=%s "
                "connection_id=%s request_id=%s bytes_in=%s bytes_out=%s "
                "duration_ms=%.2f connection_reused=%s"
            ),
            event["client"],
            event["method"],
            event["path"],
            event["status"],
            event["engine"],
            event["connection_id"],
            event["request_id"],
            event["bytes_in"],
            event["bytes_out"],
            duration_ms,
            event["connection_reused"],
        )


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve Markdown/MDX sources over HTTP")
    parser.add_argument("--content-root", required=True, type=Path)
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--api-prefix", default=API_PREFIX)
    parser.add_argument(
        "--cors-origin",
        dest="cors_origins",
        action="append",
        help="allowed CORS origin; repeat for several (default: *)",
    )
    parser.add_argument("--engine", choices=ENGINES, default=SERVER_ENGINE)
    parser.add_argument("--workers", type=int, default=WORKER_COUNT)
    parser.add_argument("--queue-size", type=int, default=REQUEST_QUEUE_SIZE)
    parser.add_argument("--max-connections", type=int, default=MAX_ACTIVE_CONNECTIONS)
    parser.add_argument("--timeout", type=float, default=SOCKET_TIMEOUT_SECS)
    parser.add_argument("--log-format", choices=LOG_FORMATS, default=LOG_FORMAT)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
    )
    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    return ServerConfig(
        content_root=args.content_root,
        host=args.host,
        port=args.port,
        api_prefix=args.api_prefix,
        cors_origins=tuple(args.cors_origins or CORS_ORIGINS),
        engine=args.engine,
        worker_count=args.workers,
        request_queue_size=args.queue_size,
        max_active_connections=args.max_connections,
        timeout_secs=args.timeout,
        log_format=args.log_format,
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level))
    try:
        config = config_from_args(args)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    server = HTTPServer(config)

    def _handle_signal(signum: int, _frame: object) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        server.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        server.start()
    except OSError as exc:
        logger.error("Cannot listen on %s:%s: %s", config.host, config.port, exc)
        return 1
    finally:
        server.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
