"""Directory scan producing the listing of servable content files."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from content_types import is_allowed_extension, is_regular_file

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    relative_path: str
    extension: str


class FileCatalog:
    """Snapshot listing of eligible files under a content root.

    Every call rescans the filesystem. Entries are sorted by relative POSIX
    path. A missing or unreadable root yields an empty listing and a warning,
    never an exception.
    """

    def __init__(self, content_root: Path | str) -> None:
        self.content_root = Path(content_root).resolve()

    def list_files(self) -> list[CatalogEntry]:
        if not self.content_root.is_dir():
            logger.warning("Catalog unavailable: content root %s is missing", self.content_root)
            return []

        entries: list[CatalogEntry] = []
        for dirpath, _dirnames, filenames in os.walk(
            self.content_root,
            onerror=self._on_walk_error,
            followlinks=False,
        ):
            for filename in filenames:
                entry = self._entry_for(Path(dirpath) / filename)
                if entry is not None:
                    entries.append(entry)

        entries.sort(key=lambda entry: entry.relative_path)
        return entries

    def _entry_for(self, path: Path) -> CatalogEntry | None:
        if not is_allowed_extension(path.suffix):
            return None

        try:
            canonical = path.resolve(strict=True)
            canonical.relative_to(self.content_root)
        except (OSError, RuntimeError, ValueError):
            # Dangling link or a link pointing outside the root.
            return None

        if not is_allowed_extension(canonical.suffix) or not is_regular_file(canonical):
            return None

        relative = PurePosixPath(path.relative_to(self.content_root).as_posix())
        return CatalogEntry(relative_path=str(relative), extension=relative.suffix.lower())

    def _on_walk_error(self, error: OSError) -> None:
        logger.warning("Catalog unavailable for %s: %s", error.filename, error.strerror or error)
