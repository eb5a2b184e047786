"""
Exception hierarchy for the Cosmetica session client.

Every failure the client handles is a ``CosmeticaError`` carrying an error code,
a severity and the recovery the caller is expected to take. The hierarchy keeps
the distinction the authentication flow depends on: the server could not be
reached (``TransientNetworkError``) versus the server answered and refused or
garbled the request.
"""

from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Error codes reported in logs and audit records."""

    # authentication
    AUTH_REJECTED = "auth.rejected"
    AUTH_SERVER_UNREACHABLE = "auth.server_unreachable"
    AUTH_UNAUTHORIZED = "auth.unauthorized"

    # transport
    NETWORK_CONNECTION_FAILED = "network.connection_failed"
    NETWORK_TIMEOUT = "network.timeout"

    # server answers
    RESPONSE_MALFORMED = "response.malformed"
    RESPONSE_ERROR_BODY = "response.error_body"
    RESPONSE_SERVER_ERROR = "response.server_error"
    RESPONSE_NOT_FOUND = "response.not_found"

    # token file
    PERSISTENCE_READ_FAILED = "persistence.read_failed"
    PERSISTENCE_WRITE_FAILED = "persistence.write_failed"

    CONFIG_INVALID_VALUE = "config.invalid_value"
    INTERNAL_UNEXPECTED_ERROR = "internal.unexpected"


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecoveryAction(Enum):
    """What the session does (or expects) after the error."""
    RETRY_LATER = "retry_later"
    REAUTHENTICATE = "reauthenticate"
    CONTINUE_IN_MEMORY = "continue_in_memory"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class CosmeticaError(Exception):
    """
    Base exception class for all Cosmetica session client errors.

    Args:
        message: Diagnostic message for logs
        error_code: Classification of the failure
        severity: How serious the failure is for the session
        context: Extra key/value details (never tokens)
        recovery_actions: Expected follow-up actions
        cause: Underlying exception, if any
        user_message: Text suitable for the unauthenticated screen
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.recovery_actions = list(recovery_actions or [])
        self.cause = cause
        self.user_message = user_message or message

        self.context = dict(context or {})
        if cause is not None:
            self.context.setdefault('cause', f"{type(cause).__name__}: {cause}")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error_code.value}: {self.message})"


class TransientNetworkError(CosmeticaError):
    """The remote service could not be reached (offline, timeout, refused)."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_LATER],
            **kwargs
        )


class AuthServerUnreachable(TransientNetworkError):
    """The token exchange could not reach the authentication server."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code=ErrorCode.AUTH_SERVER_UNREACHABLE, **kwargs)


class MalformedResponse(CosmeticaError):
    """
    The server answered, but the payload could not be understood.

    The raw body is kept so that it can be dumped at elevated verbosity.
    """

    def __init__(self, message: str, raw_body: Optional[str] = None, url: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if url:
            context['url'] = url

        super().__init__(
            message=message,
            error_code=ErrorCode.RESPONSE_MALFORMED,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.IGNORE],
            context=context,
            **kwargs
        )
        self.raw_body = raw_body


class ServerError(CosmeticaError):
    """The server answered with an error status or a structured error body."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.RESPONSE_SERVER_ERROR,
        status: Optional[int] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if status is not None:
            context['status'] = status

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.REAUTHENTICATE],
            context=context,
            **kwargs
        )
        self.status = status


class AuthenticationError(CosmeticaError):
    """Authentication related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_UNAUTHORIZED, **kwargs):
        recovery_actions = kwargs.pop('recovery_actions', [RecoveryAction.REAUTHENTICATE])
        severity = kwargs.pop('severity', ErrorSeverity.HIGH)
        super().__init__(
            message=message,
            error_code=error_code,
            severity=severity,
            recovery_actions=recovery_actions,
            **kwargs
        )


class AuthRejected(AuthenticationError):
    """The server explicitly refused the platform token exchange."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.AUTH_REJECTED,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            user_message="Could not sign in to Cosmetica with this account.",
            **kwargs
        )


class PersistenceError(CosmeticaError):
    """The token cache file could not be read or written."""

    def __init__(self, message: str, error_code: ErrorCode, path: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if path:
            context['path'] = path

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.CONTINUE_IN_MEMORY],
            context=context,
            **kwargs
        )


class ConfigurationError(CosmeticaError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> CosmeticaError:
    """
    Convert a generic exception to a structured CosmeticaError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured CosmeticaError
    """
    if isinstance(exception, CosmeticaError):
        return exception

    if isinstance(exception, (ConnectionError, TimeoutError)):
        error_code = (
            ErrorCode.NETWORK_TIMEOUT if isinstance(exception, TimeoutError)
            else ErrorCode.NETWORK_CONNECTION_FAILED
        )
        return TransientNetworkError(str(exception), error_code=error_code, context=context, cause=exception)

    if isinstance(exception, ValueError):
        return MalformedResponse(str(exception), context=context, cause=exception)

    return CosmeticaError(
        message=str(exception) or type(exception).__name__,
        error_code=default_error_code,
        context=context,
        cause=exception
    )
