"""Inbound request checks performed before any body is read.

Each validator returns a :class:`ValidationFailure` describing the HTTP
error to send, or None when the request may proceed.
"""

from __future__ import annotations

import hmac
from collections.abc import Mapping
from dataclasses import dataclass


@dataclass(frozen=True)
class ValidationFailure:
    """A rejected inbound request.

    Attributes:
        code: Stable machine-readable error code.
        message: Human-readable explanation.
        status: HTTP status to respond with.
    """

    code: str
    message: str
    status: int


def extract_local_key(headers: Mapping[str, str]) -> str | None:
    """Pull the caller's key from ``Authorization: Bearer`` or ``x-api-key``."""
    auth = headers.get("authorization")
    if auth and auth.startswith("Bearer "):
        return auth[7:]
    return headers.get("x-api-key")


def validate_local_auth(
    headers: Mapping[str, str],
    local_api_key: str | None,
) -> ValidationFailure | None:
    """Check the inbound key against the configured local API key.

    No local key configured means every caller is accepted.
    """
    if not local_api_key:
        return None

    provided = extract_local_key(headers)
    if provided is None or not hmac.compare_digest(
        provided.encode(), local_api_key.encode()
    ):
        return ValidationFailure(
            code="ERR_UNAUTHORIZED",
            message="Unauthorized: invalid or missing local API key",
            status=401,
        )
    return None


def validate_method(method: str, path: str) -> ValidationFailure | None:
    """Only POST is forwarded, except GET for the model listing."""
    if method == "GET" and path == "/v1/models":
        return None
    if method == "POST" and path != "/v1/models":
        return None
    return ValidationFailure(
        code="ERR_METHOD_NOT_ALLOWED",
        message=f"Method {method} not allowed for {path}",
        status=405,
    )


def validate_body_size(size: int, max_bytes: int) -> ValidationFailure | None:
    if size > max_bytes:
        return ValidationFailure(
            code="ERR_BODY_TOO_LARGE",
            message=f"Request body too large: {size} bytes (max {max_bytes})",
            status=413,
        )
    return None
