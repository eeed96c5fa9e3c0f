"""Extension to MIME type table and the shared file eligibility rule."""

import os
import stat
from dataclasses import dataclass
from pathlib import Path

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True, slots=True)
class ContentTypeRule:
    extension: str
    mime_type: str


# Order matters: extensionless lookups try these in sequence.
CONTENT_TYPE_RULES: dict[str, ContentTypeRule] = {
    ".mdx": ContentTypeRule(".mdx", "text/markdown"),
    ".md": ContentTypeRule(".md", "text/markdown"),
    ".markdown": ContentTypeRule(".markdown", "text/markdown"),
}

ALLOWED_EXTENSIONS: tuple[str, ...] = tuple(CONTENT_TYPE_RULES)


def classify(extension: str) -> ContentTypeRule:
    """Return the content type rule for an extension, falling back to binary."""
    normalized = extension.lower()
    rule = CONTENT_TYPE_RULES.get(normalized)
    if rule is None:
        return ContentTypeRule(normalized, DEFAULT_MIME_TYPE)
    return rule


def is_allowed_extension(extension: str) -> bool:
    return extension.lower() in CONTENT_TYPE_RULES


def is_regular_file(path: Path) -> bool:
    """True for regular files only; directories, FIFOs and devices are not."""
    try:
        mode = os.stat(path).st_mode
    except (OSError, ValueError):
        return False
    return stat.S_ISREG(mode)
