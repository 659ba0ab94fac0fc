from __future__ import annotations


class ForkChatError(Exception):
    """Base error. ``status_code`` is the HTTP-equivalent status for outer surfaces."""

    status_code = 500


class ProtocolError(ForkChatError):
    status_code = 502


class UpstreamError(ForkChatError):
    status_code = 502

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Upstream returned HTTP {status_code}: {body[:500]}")
        self.upstream_status = status_code
        self.body = body


class UpstreamTimeout(ForkChatError):
    status_code = 504


class NotFound(ForkChatError):
    status_code = 404


class Forbidden(ForkChatError):
    status_code = 403


class BadRequest(ForkChatError):
    status_code = 400


class IncompleteUsage(ForkChatError):
    status_code = 502


class StreamCancelled(ForkChatError):
    status_code = 499
