import functools
from logging import Logger
from typing import Any, Callable, Dict, Optional, TypeVar

from kafka.errors import KafkaError
from psycopg2 import Error as PostgreSQLError
from valkey.exceptions import ValkeyError

F = TypeVar("F", bound=Callable[..., Any])


class GatewayError(Exception):
    """Base class of every error that may cross a component boundary."""

    code: str = "GatewayError"
    status_code: int = 500
    default_message: str = "Gateway error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "statusCode": self.status_code}


class NotFound(GatewayError):
    code = "NotFound"
    status_code = 404
    default_message = "Resource not found"


class QuotaExceeded(GatewayError):
    code = "QuotaExceeded"
    status_code = 429
    default_message = "Quota exceeded"


class Unauthorized(GatewayError):
    code = "Unauthorized"
    status_code = 401
    default_message = "Unauthorized"


class InvalidSignature(GatewayError):
    code = "InvalidSignature"
    status_code = 401
    default_message = "Invalid signature"


class UpstreamUnavailable(GatewayError):
    code = "UpstreamUnavailable"
    status_code = 503
    default_message = "Upstream service unavailable"


class ValidationError(GatewayError):
    code = "ValidationError"
    status_code = 400
    default_message = "Invalid input"


class InternalError(GatewayError):
    code = "InternalError"
    status_code = 500
    default_message = "Internal error"


UPSTREAM_ERRORS = (PostgreSQLError, KafkaError, ValkeyError)


def operation_boundary(message: str) -> Callable[[F], F]:
    """
    Translate failures escaping a public component method into the error taxonomy.

    GatewayError subclasses pass through untouched. Backend driver errors become
    UpstreamUnavailable, everything else becomes InternalError. The original cause is
    logged through the component's `logger` attribute and chained, but callers only
    ever see `message`.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            try:
                return func(self, *args, **kwargs)
            except GatewayError:
                raise
            except UPSTREAM_ERRORS as e:
                logger: Optional[Logger] = getattr(self, "logger", None)
                if logger:
                    logger.exception(f"{message}: upstream failure in {func.__name__}: {e}")
                raise UpstreamUnavailable(message) from e
            except Exception as e:
                logger = getattr(self, "logger", None)
                if logger:
                    logger.exception(f"{message}: unexpected failure in {func.__name__}: {e}")
                raise InternalError(message) from e

        return wrapper  # type: ignore[return-value]

    return decorator
