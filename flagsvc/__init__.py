"""Feature-flag evaluation and sync services with WSGI middleware and metrics."""

__version__ = "0.1.0"

__all__ = [
    "connect_service",
    "eventing",
    "flag_evaluation",
    "http_metrics",
    "json_codec",
    "middleware",
    "sync_multiplexer",
    "sync_service",
]