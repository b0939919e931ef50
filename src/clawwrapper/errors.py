from __future__ import annotations

from typing import Optional


class WrapperError(Exception):
    """Base error for the wrapper. `status_code` is the HTTP status routes should surface."""

    status_code: int = 500

    def __init__(self, message: str = "", *, hint: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.hint = hint


class NotConfiguredError(WrapperError):
    status_code = 503

    def __init__(self, message: str = "Gateway cannot start: not configured", **kwargs):
        super().__init__(message, **kwargs)


class ProcessSpawnError(WrapperError):
    status_code = 503


class ProcessNotReadyError(WrapperError):
    status_code = 503

    def __init__(self, message: str = "Gateway did not become ready in time", **kwargs):
        super().__init__(message, **kwargs)


class ProxyUnreachableError(WrapperError):
    status_code = 502


class ArchiveValidationError(WrapperError):
    status_code = 400


class PayloadTooLargeError(WrapperError):
    status_code = 413


class AuthRequiredError(WrapperError):
    status_code = 401

    def __init__(self, message: str = "Auth required", **kwargs):
        super().__init__(message, **kwargs)


class AuthInvalidError(WrapperError):
    status_code = 401

    def __init__(self, message: str = "Invalid password", **kwargs):
        super().__init__(message, **kwargs)


class CommandNotAllowedError(WrapperError):
    status_code = 400

    def __init__(self, message: str = "Command not allowed", **kwargs):
        super().__init__(message, **kwargs)


class InvalidArgumentError(WrapperError):
    status_code = 400
