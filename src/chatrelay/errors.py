from __future__ import annotations


class ChatError(Exception):
    """Base class for errors reported back to the caller of a channel operation."""

    code = "server_error"


class ValidationError(ChatError):
    code = "invalid_request"


class AuthorizationError(ChatError):
    code = "forbidden"


class NotFoundError(ChatError):
    code = "not_found"


class StoreError(ChatError):
    """The durable store failed; callers see a generic server failure."""

    code = "server_error"
