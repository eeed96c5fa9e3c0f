"""Sandboxed resolution of client-supplied paths under the content root."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from content_types import ALLOWED_EXTENSIONS, is_allowed_extension, is_regular_file

logger = logging.getLogger(__name__)


class ContentError(Exception):
    """Base error for a requested path that cannot be served."""

    kind = "ContentError"
    status_code = 400

    def __init__(self, message: str, *, path: str) -> None:
        super().__init__(message)
        self.path = path

    def to_payload(self) -> dict[str, str]:
        return {"kind": self.kind, "error": str(self), "path": self.path}


class InvalidPathError(ContentError):
    """Malformed input, or input that canonicalizes outside the content root."""

    kind = "InvalidPath"
    status_code = 400


class NotFoundError(ContentError):
    """Absent file, or a file whose extension is not served."""

    kind = "NotFound"
    status_code = 404


class NotAFileError(NotFoundError):
    """Directory or special file. Reported to clients as NotFound."""


@dataclass(frozen=True, slots=True)
class ResolvedFile:
    path: Path
    relative_path: str
    extension: str


class PathResolver:
    """Map requested relative paths to regular files inside ``content_root``.

    ``..`` segments are refused outright. Containment is then checked after
    canonicalization (symlinks resolved) by comparing path components against
    the canonical root. A request without an extension tries each allowed
    extension in turn, so ``guides/intro`` finds ``guides/intro.mdx``.
    """

    def __init__(self, content_root: Path | str) -> None:
        self.content_root = Path(content_root).resolve()

    def resolve(self, requested_path: str) -> ResolvedFile:
        if not requested_path:
            raise InvalidPathError("Empty path", path=requested_path)
        if "\x00" in requested_path:
            raise InvalidPathError("Path contains a NUL byte", path=requested_path)

        relative = PurePosixPath(requested_path)
        if relative.is_absolute() or Path(requested_path).is_absolute():
            raise InvalidPathError("Absolute paths are not allowed", path=requested_path)
        if ".." in relative.parts:
            logger.debug("Rejected parent segment in %r", requested_path)
            raise InvalidPathError("Parent segments are not allowed", path=requested_path)

        bare = self._canonicalize(relative, requested_path)

        for candidate in _candidates(relative):
            canonical = self._canonicalize(candidate, requested_path)
            if not is_allowed_extension(candidate.suffix):
                continue
            if not is_allowed_extension(canonical.suffix):
                continue
            if not os.path.exists(canonical):
                continue
            if not is_regular_file(canonical):
                logger.debug("Rejected non-regular file %s", canonical)
                raise NotAFileError("Not a file", path=requested_path)
            return ResolvedFile(
                path=canonical,
                relative_path=candidate.as_posix(),
                extension=candidate.suffix.lower(),
            )

        if not relative.suffix and os.path.isdir(bare):
            raise NotAFileError("Not a file", path=requested_path)
        raise NotFoundError("File not found", path=requested_path)

    def _canonicalize(self, relative: PurePosixPath, requested_path: str) -> Path:
        try:
            canonical = (self.content_root / relative).resolve(strict=False)
        except (OSError, RuntimeError) as exc:
            raise InvalidPathError("Path cannot be resolved", path=requested_path) from exc

        try:
            canonical.relative_to(self.content_root)
        except ValueError as exc:
            logger.debug("Rejected path escaping content root: %r", requested_path)
            raise InvalidPathError("Path escapes the content root", path=requested_path) from exc
        return canonical


def _candidates(relative: PurePosixPath) -> list[PurePosixPath]:
    if relative.suffix:
        return [relative]
    if relative.name in {"", ".", ".."}:
        return []
    return [relative.with_name(relative.name + extension) for extension in ALLOWED_EXTENSIONS]
