"""Logging helpers bound to the application logger."""

import enum
import logging
import traceback
from typing import Optional

from .formatters import LogError, LogRecord

DEFAULT_APP_NAME = "abap-remote-fs-auth"


class LogEvent(enum.Enum):
    # Token lookup chain
    OAUTH_NOT_CONFIGURED = "oauth_not_configured"
    OAUTH_TOKEN_CACHE_HIT = "oauth_token_cache_hit"
    OAUTH_GRANT_JOINED = "oauth_grant_joined"
    OAUTH_VAULT_RESTORED = "oauth_vault_restored"
    OAUTH_VAULT_MISS = "oauth_vault_miss"
    OAUTH_VAULT_RESTORE_FAILED = "oauth_vault_restore_failed"
    OAUTH_VAULT_SAVED = "oauth_vault_saved"
    OAUTH_VAULT_SAVE_SKIPPED = "oauth_vault_save_skipped"
    OAUTH_VAULT_SAVE_FAILED = "oauth_vault_save_failed"
    OAUTH_VAULT_DELETED = "oauth_vault_deleted"

    # Interactive grant
    OAUTH_GRANT_STARTED = "oauth_grant_started"
    OAUTH_GRANT_SUCCEEDED = "oauth_grant_succeeded"
    OAUTH_GRANT_FAILED = "oauth_grant_failed"
    OAUTH_LOGON_TIMEOUT = "oauth_logon_timeout"
    OAUTH_GRANT_ABANDONED = "oauth_grant_abandoned"
    OAUTH_LOGIN_SERVER_CLOSED = "oauth_login_server_closed"

    # Refresh exchange
    OAUTH_REFRESH_REQUEST = "oauth_refresh_request"
    OAUTH_REFRESH_FAILED = "oauth_refresh_failed"
    OAUTH_TOKEN_REFRESHED = "oauth_token_refreshed"

    # Lifecycle
    OAUTH_LOGOUT = "oauth_logout"
    OAUTH_MANAGER_SHUTDOWN = "oauth_manager_shutdown"
    CONFIG_LOADED = "config_loaded"
    CONFIG_CONNECTION_INVALID = "config_connection_invalid"
    LOGIN_PROVIDER_LOAD_FAILED = "login_provider_load_failed"
    REPO_STATE_ENTRY_INVALID = "repo_state_entry_invalid"
    REPO_STATE_UPDATED = "repo_state_updated"
    FASTAPI_STARTUP_COMPLETE = "fastapi_startup_complete"
    FASTAPI_SHUTDOWN = "fastapi_shutdown"
    REQUEST_FAILURE = "request_failure"


_logger = None


def init_logger(app_name: str = DEFAULT_APP_NAME):
    """Initialize the logger for this module."""
    global _logger
    _logger = logging.getLogger(app_name)


def _log(level: int, record: LogRecord, exc: Optional[BaseException] = None) -> None:
    if _logger is None:
        init_logger()

    if exc is not None:
        record.error = LogError(
            name=type(exc).__name__,
            message=str(exc),
            stack_trace="".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
            args=exc.args if hasattr(exc, "args") else tuple(),
        )
        if not record.message:
            record.message = str(exc) or "An unspecified error occurred"

    _logger.log(level=level, msg=record.message, extra={"log_record": record})


def debug(record: LogRecord):
    """Log a debug message."""
    _log(logging.DEBUG, record)


def info(record: LogRecord):
    """Log an info message."""
    _log(logging.INFO, record)


def warning(record: LogRecord, exc: Optional[BaseException] = None):
    """Log a warning message."""
    _log(logging.WARNING, record, exc=exc)


def error(record: LogRecord, exc: Optional[BaseException] = None):
    """Log an error message."""
    _log(logging.ERROR, record, exc=exc)


def critical(record: LogRecord, exc: Optional[BaseException] = None):
    """Log a critical message."""
    _log(logging.CRITICAL, record, exc=exc)
