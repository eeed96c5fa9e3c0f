"""Routing table and per-request dispatch with uniform CORS headers."""

from __future__ import annotations

import logging
from collections.abc import Callable

from cors import CorsPolicy
from request import HTTPRequest
from response import HTTPResponse, as_head_response, error_response

logger = logging.getLogger(__name__)

Handler = Callable[[HTTPRequest], HTTPResponse]

ALLOWED_METHODS = ("GET", "HEAD", "OPTIONS")
ALLOW_HEADER = ", ".join(ALLOWED_METHODS)


class Router:
    def __init__(self, cors: CorsPolicy | None = None) -> None:
        self.cors = cors or CorsPolicy()
        self._routes: dict[tuple[str, str], Handler] = {}
        self._prefix_routes: list[tuple[str, str, Handler]] = []

    def add_route(self, method: str, path: str, handler: Handler) -> None:
        normalized_method = _normalize_method(method)
        if not path.startswith("/"):
            raise ValueError("path must start with '/'")
        self._routes[(normalized_method, path)] = handler

    def add_prefix_route(self, method: str, prefix: str, handler: Handler) -> None:
        """Route ``prefix`` and everything below ``prefix/`` to ``handler``.

        Exact routes win over prefix routes; among prefixes the longest wins.
        """
        normalized_method = _normalize_method(method)
        if not prefix.startswith("/"):
            raise ValueError("path must start with '/'")
        self._prefix_routes.append((normalized_method, prefix.rstrip("/"), handler))
        self._prefix_routes.sort(key=lambda route: len(route[1]), reverse=True)

    def resolve(self, method: str, path: str) -> Handler | None:
        normalized_method = method.upper().strip()
        handler = self._routes.get((normalized_method, path))
        if handler is not None:
            return handler

        for route_method, prefix, prefix_handler in self._prefix_routes:
            if route_method != normalized_method:
                continue
            if path == prefix or path.startswith(prefix + "/"):
                return prefix_handler
        return None

    def dispatch(self, request: HTTPRequest) -> HTTPResponse:
        """Produce the response for ``request`` with CORS headers attached."""
        cors_headers = self.cors.headers_for(
            request.origin,
            preflight=request.method == "OPTIONS",
        )
        response = self._dispatch(request)
        response.headers.update(cors_headers)
        return response

    def _dispatch(self, request: HTTPRequest) -> HTTPResponse:
        if request.method == "OPTIONS":
            return HTTPResponse(status_code=204, headers={"Allow": ALLOW_HEADER})

        if request.method not in {"GET", "HEAD"}:
            return error_response(
                405,
                "MethodNotAllowed",
                f"Method {request.method} is not allowed",
                path=request.path,
                headers={"Allow": ALLOW_HEADER},
            )

        handler = self.resolve("GET", request.path)
        if handler is None:
            response = error_response(404, "NotFound", "Route not found", path=request.path)
        else:
            try:
                response = handler(request)
            except Exception:
                logger.exception("Unhandled error in route handler for %s", request.path)
                response = error_response(500, "InternalError", "Internal server error")

        if request.method == "HEAD":
            return as_head_response(response)
        return response


def _normalize_method(method: str) -> str:
    normalized_method = method.upper().strip()
    if not normalized_method:
        raise ValueError("method cannot be empty")
    return normalized_method
