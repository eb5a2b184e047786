"""
Logging configuration for the Cosmetica session client.

Provides the console/file handler setup, a JSON formatter for machine-readable
output, an audit trail for authentication and sync outcomes, and a filter that
masks session tokens should one ever reach a log message.
"""

import json
import logging
import logging.handlers
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional, Set
from enum import Enum

from cosmetica_shared.exceptions import CosmeticaError

AUDIT_LOGGER_NAME = "audit"
REDACTED = "<redacted>"


class LogLevel(Enum):
    """Log level enumeration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(Enum):
    """Log format enumeration."""
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Session events recorded on the audit logger."""
    AUTHENTICATION = "authentication"
    SETTINGS_SYNC = "settings_sync"
    TOKEN_CACHE = "token_cache"
    ERROR_EVENT = "error_event"


# Secrets known to the process; masked by SecretRedactingFilter
_secrets: Set[str] = set()
_secrets_lock = threading.Lock()


def register_secret(value: Optional[str]) -> None:
    """Mask this value in every record passing a SecretRedactingFilter."""
    if value:
        with _secrets_lock:
            _secrets.add(value)


def redact(text: str) -> str:
    with _secrets_lock:
        secrets = sorted(_secrets, key=len, reverse=True)
    for secret in secrets:
        text = text.replace(secret, REDACTED)
    return text


class SecretRedactingFilter(logging.Filter):
    """Rewrites records whose rendered message contains a registered secret."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def describe_error(error: CosmeticaError) -> Dict[str, Any]:
    """Structured fields for a CosmeticaError attached to a record."""
    return {
        'code': error.error_code.value,
        'severity': error.severity.value,
        'context': error.context,
        'recovery_actions': [action.value for action in error.recovery_actions],
    }


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with error and audit details when attached."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'thread': record.threadName,
        }

        user_id = getattr(record, 'user_id', None)
        if user_id:
            entry['user_id'] = user_id

        error = getattr(record, 'error_info', None)
        if isinstance(error, CosmeticaError):
            entry['error'] = describe_error(error)

        audit = getattr(record, 'audit_info', None)
        if audit:
            entry['audit'] = audit

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """Human-readable lines with source location and indented error details."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        lines = [super().format(record)]

        error = getattr(record, 'error_info', None)
        if isinstance(error, CosmeticaError):
            for key, value in describe_error(error).items():
                if value:
                    lines.append(f"  {key}: {json.dumps(value, default=str)}")

        audit = getattr(record, 'audit_info', None)
        if audit:
            lines.append(f"  audit: {json.dumps(audit, default=str)}")

        return "\n".join(lines)


class AuditLogger:
    """
    Writes session outcomes to the ``audit`` logger.

    Every record carries an ``audit_info`` dict (event type, identity key,
    result and optional context) for the structured formatters.
    """

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self.logger = logging.getLogger(logger_name)

    def _emit(
        self,
        event_type: AuditEventType,
        message: str,
        user_id: Optional[str],
        result: str,
        **context: Any
    ) -> None:
        audit_info: Dict[str, Any] = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'result': result,
        }
        if user_id:
            audit_info['user_id'] = user_id
        context = {key: value for key, value in context.items() if value is not None}
        if context:
            audit_info['context'] = context

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_authentication(
        self,
        user_id: str,
        success: bool = True,
        source: Optional[str] = None,
        failure_reason: Optional[str] = None
    ):
        """Record the outcome of an authentication attempt."""
        self._emit(
            AuditEventType.AUTHENTICATION,
            f"Authentication {'successful' if success else 'failed'} for user: {user_id}",
            user_id,
            "success" if success else "failure",
            source=source,
            failure_reason=failure_reason
        )

    def log_settings_sync(self, user_id: str, success: bool, error_message: Optional[str] = None):
        self._emit(
            AuditEventType.SETTINGS_SYNC,
            f"Settings sync {'completed' if success else 'failed'} for user: {user_id}",
            user_id,
            "success" if success else "failure",
            error_message=error_message
        )

    def log_token_cached(self, user_id: str, persisted: bool):
        self._emit(
            AuditEventType.TOKEN_CACHE,
            f"Credential cached for user: {user_id} (persisted: {persisted})",
            user_id,
            "success" if persisted else "memory_only"
        )

    def log_error(self, error: CosmeticaError, user_id: Optional[str] = None):
        self._emit(
            AuditEventType.ERROR_EVENT,
            f"Error occurred: {error.message}",
            user_id,
            "error",
            error_code=error.error_code.value,
            severity=error.severity.value
        )


def _build_formatter(log_format: LogFormat) -> logging.Formatter:
    if log_format == LogFormat.JSON:
        return StructuredFormatter()
    if log_format == LogFormat.DETAILED:
        return DetailedFormatter()
    return logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    enable_audit: bool = True
) -> logging.Logger:
    """
    Configure the root logger for the client.

    Replaces existing root handlers with a stderr handler and, if ``log_file``
    is given, a rotating file handler. Every handler masks registered secrets.

    Args:
        log_level: Minimum log level to capture
        log_format: Format for log output
        log_file: Path to a log file (optional)
        max_file_size: Maximum size of the log file before rotation
        backup_count: Number of rotated files to keep
        enable_audit: Whether to emit audit records

    Returns:
        The configured root logger
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.value))

    formatter = _build_formatter(log_format)
    handlers = [logging.StreamHandler(sys.stderr)]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding='utf-8'
        ))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(SecretRedactingFilter())
        root_logger.addHandler(handler)

    logging.getLogger(AUDIT_LOGGER_NAME).disabled = not enable_audit
    return root_logger


def log_structured_error(
    logger: logging.Logger,
    error: CosmeticaError,
    user_id: Optional[str] = None,
    level: int = logging.ERROR
):
    """
    Log a CosmeticaError with its code, severity and context attached.

    Args:
        logger: Logger instance to use
        error: The structured error to log
        user_id: Optional identity key for context
        level: Log level to use
    """
    logger.log(level, error.message, extra={'error_info': error, 'user_id': user_id})
