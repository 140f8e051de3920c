"""Mapping of marketplace errors to HTTP responses."""

from fastapi import HTTPException

from errors import MarketError


def http_error(error: MarketError) -> HTTPException:
    """Build the HTTPException for a marketplace error.

    The body is ``{"detail": {"code": ..., "message": ...}}``.
    """
    return HTTPException(status_code=error.http_status, detail=error.to_dict())
