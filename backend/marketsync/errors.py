"""Error taxonomy for the marketplace sync core.

Account-level and remote failures are caught inside per-account / per-line
loops and recorded; only :class:`ConfigurationError` is allowed to abort a
whole run.
"""

from __future__ import annotations

from typing import Any, Optional

MAX_PAYLOAD_CHARS = 500


def truncate_payload(payload: Any, limit: int = MAX_PAYLOAD_CHARS) -> Optional[str]:
    if payload is None:
        return None
    text = payload if isinstance(payload, str) else repr(payload)
    return text[:limit]


class SyncError(Exception):
    code = "sync_error"
    http_status = 500

    def __init__(self, message: str = "", *, code: Optional[str] = None, detail: Any = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        self.detail = detail

    def to_dict(self) -> dict:
        body = {"error": self.code, "detail": self.message}
        if self.detail is not None:
            body["extra"] = self.detail
        return body


class ConfigurationError(SyncError):
    code = "configuration_error"
    http_status = 500


class InvalidRequest(SyncError):
    code = "invalid_request"
    http_status = 400


class AccountError(SyncError):
    """Halts one account's work until an operator reconnects it."""

    http_status = 401


class TokenMissing(AccountError):
    code = "token_missing"


class TokenExpired(AccountError):
    code = "token_expired"


class NeedsReauth(AccountError):
    code = "needs_reauth"


class RemoteError(SyncError):
    http_status = 502

    def __init__(self, message: str = "", *, status_code: Optional[int] = None,
                 payload: Any = None, code: Optional[str] = None):
        super().__init__(message, code=code, detail=truncate_payload(payload))
        self.status_code = status_code


class RemoteRateLimited(RemoteError):
    code = "remote_rate_limited"


class RemoteServerError(RemoteError):
    code = "remote_server_error"


class RemoteClientError(RemoteError):
    code = "remote_client_error"


class MappingConflict(SyncError):
    code = "mapping_conflict"
    http_status = 409
