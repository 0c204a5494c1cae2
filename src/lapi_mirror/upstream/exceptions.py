from __future__ import annotations


class UpstreamError(RuntimeError):
    """Transient failure talking to the upstream API."""


class UpstreamHTTPError(UpstreamError):
    def __init__(self, status: int, message: str, body: object = None) -> None:
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.body = body


class UpstreamAuthError(UpstreamHTTPError):
    def __init__(self, message: str = "Re-authentication failed", body: object = None) -> None:
        super().__init__(401, message, body)
