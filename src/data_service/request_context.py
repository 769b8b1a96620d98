"""Build sanitized request snapshots from incoming FastAPI requests."""

from typing import Any, Optional

from fastapi import Request

from src.common.protocol import HttpRequestSnapshot


def snapshot_request(request: Request, body: Optional[Any] = None) -> HttpRequestSnapshot:
    """Capture method, path, query, params, body, headers and client address.

    Redaction happens inside HttpRequestSnapshot, so the returned snapshot is
    already safe to publish or store.
    """
    return HttpRequestSnapshot(
        method=request.method,
        path=request.url.path,
        query=dict(request.query_params),
        params=dict(request.path_params),
        body=body,
        headers=dict(request.headers),
        ip=request.client.host if request.client else None,
    )
