"""Structured log records and the console/file formatters that render them."""

import dataclasses
import json
import logging
import re
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple


@dataclasses.dataclass
class LogError:
    name: str
    message: str
    stack_trace: Optional[str] = None
    args: Optional[Tuple[Any, ...]] = None


@dataclasses.dataclass
class LogRecord:
    event: str
    message: str
    conn_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[LogError] = None


_SENSITIVE_PATTERNS = [
    (r'(Bearer\s+)([a-zA-Z0-9\-_\.]{8,})', lambda m, c: m.group(1) + c * 10),
    (r'("?(?:access_token|refresh_token|accessToken|refreshToken|client_secret|clientSecret)"?\s*[:=]\s*"?)([^"&\s,}]+)',
     lambda m, c: m.group(1) + c * 8),
    (r'("?[Aa]uthorization"?\s*:\s*"?)([^"\s,}]+)', lambda m, c: m.group(1) + c * 10),
    (r'([a-zA-Z0-9\-_]{32,})', lambda m, c: m.group(1)[:6] + c * 8 + m.group(1)[-4:]),
]


def mask_sensitive_string(text: str, mask_char: str = "*") -> str:
    """Mask tokens, client secrets and authorization headers in free text."""
    if not isinstance(text, str):
        return text

    masked = text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        masked = re.sub(pattern, lambda m: replacement(m, mask_char), masked)
    return masked


def mask_sensitive_data(data: Any, mask_char: str = "*") -> Any:
    """Recursively mask sensitive data in dictionaries, lists, and strings."""
    if isinstance(data, dict):
        return {key: mask_sensitive_data(value, mask_char) for key, value in data.items()}
    elif isinstance(data, list):
        return [mask_sensitive_data(item, mask_char) for item in data]
    elif isinstance(data, str):
        return mask_sensitive_string(data, mask_char)
    return data


def _error_dict(exc_info) -> Dict[str, Any]:
    exc_type, exc_value, exc_tb = exc_info
    return {
        "name": exc_type.__name__ if exc_type else "UnknownError",
        "message": str(exc_value),
        "stack_trace": "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
        "args": exc_value.args if hasattr(exc_value, "args") else [],
    }


class ColoredConsoleFormatter(logging.Formatter):
    """Console formatter with color support and one-line JSON output."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[95m', # Magenta
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        log_dict = self._get_simplified_log_dict(record)
        formatted = json.dumps(log_dict, ensure_ascii=False)

        use_colors = (
            self.use_colors
            and hasattr(sys.stdout, 'isatty')
            and sys.stdout.isatty()
        )
        if use_colors:
            return f"{self.COLORS.get(record.levelname, '')}{formatted}{self.RESET}"
        return formatted

    def _get_simplified_log_dict(self, record: logging.LogRecord) -> dict:
        """Extract simplified log dictionary for console output."""
        simplified = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S"),
            "level": record.levelname,
        }
        log_payload = getattr(record, "log_record", None)
        if not isinstance(log_payload, LogRecord):
            simplified["message"] = record.getMessage()
            return simplified

        message = log_payload.message
        if len(message) > 200:
            message = message[:200] + "..."
        simplified["event"] = log_payload.event
        simplified["message"] = message
        if log_payload.conn_id:
            simplified["conn"] = log_payload.conn_id

        if log_payload.error and record.levelname in ['ERROR', 'WARNING', 'CRITICAL']:
            simplified["error"] = log_payload.error.name
            if log_payload.error.message != log_payload.message:
                simplified["error_msg"] = log_payload.error.message[:100]

        if log_payload.data and record.levelname in ['ERROR', 'CRITICAL']:
            for field in ('status_code', 'timeout', 'login_url'):
                if field in log_payload.data:
                    simplified[field] = log_payload.data[field]
        return simplified


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        header = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        log_payload = getattr(record, "log_record", None)
        if isinstance(log_payload, LogRecord):
            header["detail"] = mask_sensitive_data(dataclasses.asdict(log_payload))
        else:
            header["message"] = record.getMessage()
            if record.exc_info:
                header["error"] = _error_dict(record.exc_info)
        return json.dumps(header, ensure_ascii=False, default=str)


class UvicornAccessFormatter(logging.Formatter):
    """Plain formatter for uvicorn access logs, dimmed on a TTY."""

    DIM = '\033[2m'
    RESET = '\033[0m'

    def __init__(self):
        super().__init__(fmt="%(levelname)s:     %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        formatted_message = super().format(record)
        if hasattr(sys.stdout, 'isatty') and sys.stdout.isatty():
            return f"{self.DIM}{formatted_message}{self.RESET}"
        return formatted_message
