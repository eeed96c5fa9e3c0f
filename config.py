"""Configuration defaults and the validated startup configuration."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

SERVER_NAME: str = "mdx-content-server/1.0"
HOST: str = "127.0.0.1"
PORT: int = 3001
API_PREFIX: str = "/api/mdx"
CORS_ORIGINS: tuple[str, ...] = ("*",)
CORS_MAX_AGE_SECS: int = 600

SERVER_ENGINE: str = "selectors"
WORKER_COUNT: int = 8
REQUEST_QUEUE_SIZE: int = 64
MAX_ACTIVE_CONNECTIONS: int = 256

BUFFER_SIZE: int = 1024
READ_CHUNK_SIZE: int = 8192
WRITE_CHUNK_SIZE: int = 65_536
SOCKET_TIMEOUT_SECS: int = 5
MAX_KEEPALIVE_REQUESTS: int = 100
SELECT_TIMEOUT_SECS: float = 0.2
IDLE_SWEEP_INTERVAL_SECS: float = 0.5

MAX_REQUEST_BYTES: int = 1_048_576
MAX_HEADER_BYTES: int = 16_384
MAX_BODY_BYTES: int = 65_536
MAX_TARGET_LENGTH: int = 4096

LOG_FORMAT: str = "plain"

ENGINES = ("selectors", "threadpool")
LOG_FORMATS = ("plain", "json")


class ConfigError(ValueError):
    """Raised when startup configuration is unusable."""


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Immutable server configuration, validated once at construction."""

    content_root: Path
    host: str = HOST
    port: int = PORT
    api_prefix: str = API_PREFIX
    cors_origins: tuple[str, ...] = CORS_ORIGINS
    engine: str = SERVER_ENGINE
    worker_count: int = WORKER_COUNT
    request_queue_size: int = REQUEST_QUEUE_SIZE
    max_active_connections: int = MAX_ACTIVE_CONNECTIONS
    timeout_secs: float = SOCKET_TIMEOUT_SECS
    log_format: str = LOG_FORMAT

    def __post_init__(self) -> None:
        object.__setattr__(self, "content_root", _validate_content_root(self.content_root))
        object.__setattr__(self, "api_prefix", _validate_prefix(self.api_prefix))
        object.__setattr__(self, "cors_origins", _validate_origins(self.cors_origins))

        if not self.host:
            raise ConfigError("host cannot be empty")
        # Port 0 asks the OS for an ephemeral port.
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port out of range: {self.port}")
        if self.engine not in ENGINES:
            raise ConfigError(f"unsupported engine: {self.engine}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"unsupported log format: {self.log_format}")
        for name in ("worker_count", "request_queue_size", "max_active_connections"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.timeout_secs <= 0:
            raise ConfigError("timeout_secs must be positive")


def _validate_content_root(value: Path | str) -> Path:
    raw = Path(value)
    try:
        root = raw.resolve(strict=True)
    except (OSError, RuntimeError) as exc:
        raise ConfigError(f"content root does not exist: {raw}") from exc
    if not root.is_dir():
        raise ConfigError(f"content root is not a directory: {raw}")
    return root


def _validate_prefix(prefix: str) -> str:
    normalized = prefix.strip().rstrip("/")
    if not normalized:
        raise ConfigError("api prefix cannot be empty")
    if not normalized.startswith("/"):
        raise ConfigError("api prefix must start with '/'")
    segments = normalized.split("/")[1:]
    if any(segment in {"", ".", ".."} for segment in segments):
        raise ConfigError(f"api prefix has an invalid segment: {prefix!r}")
    if any(char.isspace() or char in "?#%" for char in normalized):
        raise ConfigError(f"api prefix has invalid characters: {prefix!r}")
    return normalized


def _validate_origins(origins: tuple[str, ...] | list[str]) -> tuple[str, ...]:
    normalized = tuple(origin.strip().rstrip("/") for origin in origins)
    if not normalized:
        raise ConfigError("at least one CORS origin is required")
    for origin in normalized:
        if origin == "*":
            continue
        if not origin.startswith(("http://", "https://")):
            raise ConfigError(f"CORS origin must be '*' or an http(s) origin: {origin!r}")
    return normalized
