"""Normalized error hierarchy for keyswitch."""

from __future__ import annotations

from typing import Optional


class KeyswitchError(Exception):
    """Base class for all keyswitch errors.

    :param message: Human-readable error description.
    :param key: The identifier involved (record id, name, object key or path), if any.
    :param operation: The operation that failed, if known.
    """

    def __init__(self, message: str = "", *, key: Optional[str] = None, operation: Optional[str] = None) -> None:
        self.key = key
        self.operation = operation
        super().__init__(message)

    def _context(self) -> list[str]:
        parts = []
        if self.key is not None:
            parts.append(f"key={self.key!r}")
        if self.operation is not None:
            parts.append(f"operation={self.operation!r}")
        return parts

    def __str__(self) -> str:
        parts = [super().__str__(), *self._context()]
        return " | ".join(parts) if len(parts) > 1 else parts[0]

    def __repr__(self) -> str:
        cls = type(self).__name__
        args = [repr(self.args[0] if self.args else ""), *self._context()]
        return f"{cls}({', '.join(args)})"


class InvalidInput(KeyswitchError):
    """Raised for malformed caller input (blank name, empty payload, bad settings)."""


class AlreadyExists(KeyswitchError):
    """Raised when a record id or name is already taken."""


class NotFound(KeyswitchError):
    """Raised when a record, bucket or remote object does not exist."""


class NotLoaded(KeyswitchError):
    """Raised when the registry is used before ``load()``."""


class StorageFailure(KeyswitchError):
    """Raised when the registry or a snapshot cannot be read or written."""


class CorruptData(KeyswitchError):
    """Raised when stored or downloaded bytes cannot be decoded."""


class AuthenticationFailed(KeyswitchError):
    """Raised when the object store rejects or half-answers the authorization handshake."""


class RemoteFailure(KeyswitchError):
    """Raised when the object store answers with a non-success status.

    :param status: HTTP status code, if one was received.
    :param body: Response body, truncated to a small byte budget.
    """

    def __init__(
        self,
        message: str = "",
        *,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        status: Optional[int] = None,
        body: str = "",
    ) -> None:
        self.status = status
        self.body = body
        super().__init__(message, key=key, operation=operation)

    def _context(self) -> list[str]:
        parts = super()._context()
        if self.status is not None:
            parts.append(f"status={self.status}")
        if self.body:
            parts.append(f"body={self.body!r}")
        return parts


class DeadlineExceeded(KeyswitchError):
    """Raised when a network operation runs past its deadline."""


class Canceled(KeyswitchError):
    """Raised when a network operation is canceled by the caller."""
