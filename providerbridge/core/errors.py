"""Project error hierarchy.

Every error carries an ``ErrorCode`` discriminant; callers branch on
``exc.code`` rather than on the concrete class.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"

    SERVER_ALREADY_RUNNING = "SERVER_ALREADY_RUNNING"
    PORT_IN_USE = "PORT_IN_USE"
    SERVER_START_ERROR = "SERVER_START_ERROR"
    SERVER_STOP_ERROR = "SERVER_STOP_ERROR"

    TUNNEL_START_ERROR = "TUNNEL_START_ERROR"
    TUNNEL_PORT_CONFLICT = "TUNNEL_PORT_CONFLICT"
    TUNNEL_STOP_ERROR = "TUNNEL_STOP_ERROR"
    TUNNEL_RESTART_ERROR = "TUNNEL_RESTART_ERROR"
    TUNNEL_NO_URL = "TUNNEL_NO_URL"

    MODEL_VALIDATION_ERROR = "MODEL_VALIDATION_ERROR"
    MODEL_REQUEST_ERROR = "MODEL_REQUEST_ERROR"
    MODEL_STREAM_ERROR = "MODEL_STREAM_ERROR"
    INVALID_URL = "INVALID_URL"


class BridgeError(Exception):
    """Base error; also used directly for proxy lifecycle failures."""

    def __init__(self, message: str, code: ErrorCode, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class ConfigurationError(BridgeError):
    """Settings or secret storage unavailable or invalid."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message, ErrorCode.CONFIGURATION_ERROR, cause)


class TunnelError(BridgeError):
    """Tunnel create/close/restart failure."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        code: ErrorCode = ErrorCode.TUNNEL_START_ERROR,
    ) -> None:
        super().__init__(message, code, cause)

    @property
    def is_port_conflict(self) -> bool:
        return self.code is ErrorCode.TUNNEL_PORT_CONFLICT


class ModelError(BridgeError):
    """Upstream request or validation failure."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        code: ErrorCode = ErrorCode.MODEL_REQUEST_ERROR,
    ) -> None:
        super().__init__(message, code, cause)
