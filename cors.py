"""Cross-origin resource sharing headers applied to every response."""

from collections.abc import Iterable

from config import CORS_MAX_AGE_SECS, CORS_ORIGINS


class CorsPolicy:
    def __init__(
        self,
        allowed_origins: Iterable[str] = CORS_ORIGINS,
        allowed_methods: Iterable[str] = ("GET",),
        allowed_headers: Iterable[str] = ("Content-Type",),
        max_age_secs: int = CORS_MAX_AGE_SECS,
    ) -> None:
        self.allowed_origins = tuple(allowed_origins)
        self.allowed_methods = tuple(method.upper() for method in allowed_methods)
        self.allowed_headers = tuple(allowed_headers)
        self.max_age_secs = max_age_secs

    @property
    def allows_any_origin(self) -> bool:
        return "*" in self.allowed_origins

    def headers_for(self, origin: str | None, *, preflight: bool = False) -> dict[str, str]:
        """Build the CORS header set for a request carrying ``origin``.

        Methods and headers are always advertised. The allow-origin header is
        ``*`` for a wildcard policy, the echoed origin when it is listed, and
        absent otherwise so browsers block the response.
        """
        headers = {
            "Access-Control-Allow-Methods": ", ".join(self.allowed_methods),
            "Access-Control-Allow-Headers": ", ".join(self.allowed_headers),
        }
        if self.allows_any_origin:
            headers["Access-Control-Allow-Origin"] = "*"
        else:
            headers["Vary"] = "Origin"
            if origin is not None and origin.rstrip("/") in self.allowed_origins:
                headers["Access-Control-Allow-Origin"] = origin

        if preflight:
            headers["Access-Control-Max-Age"] = str(self.max_age_secs)
        return headers
