from __future__ import annotations

from typing import Any, Dict, Mapping, Optional


class GraphSessionError(Exception):
    """Base exception for every error raised by graphsession.

    Carries the failed query, its parameters and the underlying cause so
    that callers can log a failure without re-deriving state.
    """

    def __init__(
        self,
        message: str = "",
        *,
        query: Optional[str] = None,
        parameters: Optional[Mapping[str, Any]] = None,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.query = query
        self.parameters = dict(parameters) if parameters else {}
        self.cause = cause
        self.context = context or {}

    def __str__(self) -> str:
        result = self.message
        if self.context:
            context_str = ", ".join(
                f"{key}={value}" for key, value in self.context.items()
            )
            result += f" ({context_str})"
        if self.cause:
            result += f" (caused by: {self.cause})"
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "query": self.query,
            "parameters": self.parameters,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigurationError(GraphSessionError):
    """Raised when driver or session configuration is invalid"""


class DriverError(GraphSessionError):
    """Raised on driver lifecycle misuse (duplicate init, use after close)"""


class AuthenticationError(GraphSessionError):
    """Raised when the server rejects the supplied credentials"""


class ConnectivityError(GraphSessionError):
    """Raised when the server cannot be reached or a connection breaks"""


class PoolExhausted(GraphSessionError):
    """Raised when no connection becomes available within the timeout"""


class StatementError(GraphSessionError):
    """Raised when the server rejects a statement.

    The server diagnostic code (for example
    ``Neo.ClientError.Statement.SyntaxError``) is kept on ``code``.
    """

    def __init__(
        self, message: str = "", *, code: Optional[str] = None, **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)
        self.code = code

    def __str__(self) -> str:
        result = super().__str__()
        if self.code:
            result = f"[{self.code}] {result}"
        return result

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["code"] = self.code
        return data


class TransactionError(GraphSessionError):
    """Raised on invalid transaction state transitions or rejected commits"""


class SessionClosed(GraphSessionError):
    """Raised when an operation is attempted on a closed session"""


class ConcurrentAccessError(GraphSessionError):
    """Raised when overlapping units of work are issued on one session"""
