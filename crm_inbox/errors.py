"""Error taxonomy for the inbox reconciliation service."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class InboxError(Exception):
    code: str
    detail: str
    status_code: int = 400
    retryable: bool = False

    def __str__(self) -> str:
        return self.detail


class NotFound(InboxError):
    """Reference resolves in neither representation; usually stale client state."""

    def __init__(self, detail: str, code: str = "message_not_found"):
        super().__init__(code=code, detail=detail, status_code=404, retryable=False)


class Forbidden(InboxError):
    def __init__(self, detail: str, code: str = "forbidden"):
        super().__init__(code=code, detail=detail, status_code=403, retryable=False)


class StoreUnavailable(InboxError):
    def __init__(self, detail: str, code: str = "store_unavailable"):
        super().__init__(code=code, detail=detail, status_code=503, retryable=True)


class MalformedRecord(InboxError):
    """Raised while translating a stored record; the engine skips these."""

    def __init__(self, detail: str, code: str = "malformed_record"):
        super().__init__(code=code, detail=detail, status_code=422, retryable=False)

