"""Route handlers for health, listing and single-file fetch."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import unquote

from catalog import FileCatalog
from config import ServerConfig
from content_types import classify
from cors import CorsPolicy
from path_resolver import ContentError, InvalidPathError, PathResolver
from request import HTTPRequest
from response import HTTPResponse, error_response, json_response
from router import Router

logger = logging.getLogger(__name__)


def health(request: HTTPRequest) -> HTTPResponse:
    _ = request
    return json_response(200, {"status": "ok"})


@dataclass
class ListFilesHandler:
    catalog: FileCatalog

    def __call__(self, _request: HTTPRequest) -> HTTPResponse:
        entries = self.catalog.list_files()
        return json_response(200, {"files": [entry.relative_path for entry in entries]})


@dataclass
class FetchFileHandler:
    resolver: PathResolver
    api_prefix: str

    def __call__(self, request: HTTPRequest) -> HTTPResponse:
        raw_relative_path = request.path[len(self.api_prefix) :].removeprefix("/")
        try:
            requested_path = decode_requested_path(raw_relative_path)
            resolved = self.resolver.resolve(requested_path)
        except ContentError as exc:
            logger.debug("Rejected %s: %s (%s)", request.path, exc.kind, exc)
            return error_response(exc.status_code, exc.kind, str(exc), path=exc.path)

        rule = classify(resolved.extension)
        return HTTPResponse(
            status_code=200,
            headers={
                "Content-Type": rule.mime_type,
                "X-File-Extension": resolved.extension,
                "X-Content-Type-Options": "nosniff",
            },
            file_path=resolved.path,
        )


def decode_requested_path(raw_path: str) -> str:
    """Percent-decode a path, rejecting bytes that are not valid UTF-8."""
    try:
        return unquote(raw_path, errors="strict")
    except UnicodeDecodeError as exc:
        raise InvalidPathError("Malformed percent-encoding", path=raw_path) from exc


def build_router(config: ServerConfig) -> Router:
    prefix = config.api_prefix
    router = Router(cors=CorsPolicy(allowed_origins=config.cors_origins))
    router.add_route("GET", "/health", health)
    router.add_route("GET", f"{prefix}/health", health)
    router.add_route("GET", f"{prefix}/files", ListFilesHandler(FileCatalog(config.content_root)))
    router.add_prefix_route(
        "GET",
        prefix,
        FetchFileHandler(PathResolver(config.content_root), api_prefix=prefix),
    )
    return router
