"""WSGI middlewares: the common interface, CORS handling and a passthrough."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable

WSGIApp = Callable[[dict, Callable[..., Any]], Iterable[bytes]]

ALLOWED_METHODS = ("HEAD", "GET", "POST", "PUT", "PATCH", "DELETE")

# Content-Type is in the default safelist.
EXPOSED_HEADERS = (
    "Accept",
    "Accept-Encoding",
    "Accept-Post",
    "Connect-Accept-Encoding",
    "Connect-Content-Encoding",
    "Content-Encoding",
    "Grpc-Accept-Encoding",
    "Grpc-Encoding",
    "Grpc-Message",
    "Grpc-Status",
    "Grpc-Status-Details-Bin",
)


class Middleware(ABC):
    """Wraps a WSGI application in another one."""

    @abstractmethod
    def handler(self, app: WSGIApp) -> WSGIApp:
        """Return ``app`` wrapped by this middleware."""


class CorsMiddleware(Middleware):
    """Cross-origin resource sharing for the evaluation endpoints."""

    def __init__(self, allowed_origins: Iterable[str] | None) -> None:
        origins = [origin.lower() for origin in (allowed_origins or [])]
        self._allow_all = not origins or "*" in origins
        self._exact: set[str] = set()
        self._patterns: list[tuple[str, str]] = []
        for origin in origins:
            if origin == "*":
                continue
            if "*" in origin:
                prefix, _, suffix = origin.partition("*")
                self._patterns.append((prefix, suffix))
            else:
                self._exact.add(origin)

    def _origin_allowed(self, origin: str) -> bool:
        if self._allow_all:
            return True
        origin = origin.lower()
        if origin in self._exact:
            return True
        return any(
            len(origin) >= len(prefix) + len(suffix)
            and origin.startswith(prefix)
            and origin.endswith(suffix)
            for prefix, suffix in self._patterns
        )

    @staticmethod
    def _method_allowed(method: str) -> bool:
        method = method.upper()
        return method == "OPTIONS" or method in ALLOWED_METHODS

    def _allow_origin_value(self, origin: str) -> str:
        return "*" if self._allow_all else origin

    def _preflight_headers(self, environ: dict) -> list[tuple[str, str]]:
        headers = [("Vary", "Origin, Access-Control-Request-Method, Access-Control-Request-Headers")]
        origin = environ.get("HTTP_ORIGIN", "")
        if not origin or not self._origin_allowed(origin):
            return headers
        requested = environ.get("HTTP_ACCESS_CONTROL_REQUEST_METHOD", "")
        if not self._method_allowed(requested):
            return headers
        headers.append(("Access-Control-Allow-Origin", self._allow_origin_value(origin)))
        headers.append(("Access-Control-Allow-Methods", requested.upper()))
        requested_headers = environ.get("HTTP_ACCESS_CONTROL_REQUEST_HEADERS", "").strip()
        if requested_headers:
            headers.append(("Access-Control-Allow-Headers", requested_headers))
        return headers

    def _actual_headers(self, environ: dict) -> list[tuple[str, str]]:
        headers = [("Vary", "Origin")]
        origin = environ.get("HTTP_ORIGIN", "")
        if not origin or not self._origin_allowed(origin):
            return headers
        if not self._method_allowed(environ.get("REQUEST_METHOD", "GET")):
            return headers
        headers.append(("Access-Control-Allow-Origin", self._allow_origin_value(origin)))
        headers.append(("Access-Control-Expose-Headers", ", ".join(EXPOSED_HEADERS)))
        return headers

    def handler(self, app: WSGIApp) -> WSGIApp:
        def cors_app(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
            method = environ.get("REQUEST_METHOD", "GET").upper()
            if method == "OPTIONS" and environ.get("HTTP_ACCESS_CONTROL_REQUEST_METHOD"):
                start_response("204 No Content", self._preflight_headers(environ))
                return []

            extra = self._actual_headers(environ)

            def cors_start_response(status, headers, exc_info=None):
                return start_response(status, list(headers) + extra, exc_info)

            return app(environ, cors_start_response)

        return cors_app


class PassthroughMiddleware(Middleware):
    """Leaves requests untouched; the WSGI server negotiates the HTTP protocol."""

    def handler(self, app: WSGIApp) -> WSGIApp:
        return app