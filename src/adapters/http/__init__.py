"""HTTP transport adapter."""

from src.adapters.http.transport import (
    HttpResponse,
    HttpTransport,
    UrllibTransport,
    classify_transport_error,
    get_json,
    head_ok,
    is_transient_exception,
    is_transient_status,
)

__all__ = [
    "HttpResponse",
    "HttpTransport",
    "UrllibTransport",
    "classify_transport_error",
    "get_json",
    "head_ok",
    "is_transient_exception",
    "is_transient_status",
]
