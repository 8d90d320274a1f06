import json
import logging
import re
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from contextvars import ContextVar

# Context variables for correlation
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
query_var: ContextVar[Optional[str]] = ContextVar('query', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)


class SecretMasker:
    """Masks sensitive information in log messages."""

    def __init__(self):
        """Initialize secret masker with patterns."""
        self.patterns = [
            # Access and refresh tokens
            r'(?i)(access_token|refresh_token|access|refresh)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
            # Client secrets
            r'(?i)(client_secret)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
            # Authorization headers
            r'(?i)(bearer|basic)[\s]+()([a-zA-Z0-9\-_\.=+/]{10,})',
            # OAuth codes
            r'(?i)(code|authorization_code)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
        ]

        self.compiled_patterns = [re.compile(pattern) for pattern in self.patterns]

    @staticmethod
    def _mask(secret: str) -> str:
        # Keep first 4 and last 4 characters, mask the rest
        if len(secret) > 8:
            return secret[:4] + '*' * (len(secret) - 8) + secret[-4:]
        return '*' * len(secret)

    def mask_secrets(self, text: str) -> str:
        """Mask sensitive information in text."""
        if not text:
            return text

        masked_text = text

        for pattern in self.compiled_patterns:
            def replace_match(match):
                prefix = match.group(1)
                if pattern.groups == 3:
                    return f"{prefix} {self._mask(match.group(3))}"
                return f"{prefix}: {self._mask(match.group(2))}"

            masked_text = pattern.sub(replace_match, masked_text)

        return masked_text

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive information in dictionary."""
        if not data:
            return data

        masked_data = {}

        for key, value in data.items():
            if isinstance(value, str):
                if re.search(r'(?i)token|secret|^code$', key):
                    masked_data[key] = self._mask(value)
                else:
                    masked_data[key] = self.mask_secrets(value)
            elif isinstance(value, dict):
                masked_data[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [self.mask_dict(item) if isinstance(item, dict)
                                    else self.mask_secrets(item) if isinstance(item, str)
                                    else item for item in value]
            else:
                masked_data[key] = value

        return masked_data


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self):
        """Initialize formatter."""
        super().__init__()
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        request_id = request_id_var.get()
        query = query_var.get()
        user_id = user_id_var.get()

        log_entry = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': self.mask_secrets(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        # Add correlation fields if available
        if request_id:
            log_entry['requestId'] = request_id
        if query:
            log_entry['query'] = query
        if user_id:
            log_entry['userId'] = user_id

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        if hasattr(record, 'fields') and record.fields:
            log_entry['fields'] = self.masker.mask_dict(record.fields)

        return json.dumps(log_entry, ensure_ascii=False)

    def mask_secrets(self, text: str) -> str:
        """Mask secrets in text."""
        return self.masker.mask_secrets(text)


class CorrelationContext:
    """Context manager for correlation data."""

    def __init__(self, request_id: Optional[str] = None,
                 query: Optional[str] = None,
                 user_id: Optional[str] = None):
        """Initialize correlation context."""
        self.request_id = request_id
        self.query = query
        self.user_id = user_id
        self._tokens = []

    def __enter__(self):
        """Set correlation context."""
        if self.request_id is not None:
            self._tokens.append((request_id_var, request_id_var.set(self.request_id)))
        if self.query is not None:
            self._tokens.append((query_var, query_var.set(self.query)))
        if self.user_id is not None:
            self._tokens.append((user_id_var, user_id_var.set(self.user_id)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Restore correlation context."""
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


def setup_logging(level: str = 'INFO',
                  log_file: Optional[str] = None) -> logging.Logger:
    """Setup structured logging for the wavestats logger tree."""
    logger = logging.getLogger('wavestats')
    logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    logger.handlers.clear()

    formatter = StructuredFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def log_with_fields(logger: logging.Logger, level: str, message: str,
                    fields: Optional[Dict[str, Any]] = None, **kwargs):
    """Log message with additional fields."""
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    merged = dict(fields or {})
    merged.update(kwargs)
    logger.log(levelno, message, extra={'fields': merged} if merged else None)


def log_query_start(logger: logging.Logger, query: str, **kwargs):
    """Log start of a logical query."""
    with CorrelationContext(query=query):
        log_with_fields(logger, 'DEBUG', 'Query started', kwargs)


def log_query_complete(logger: logging.Logger, query: str, duration_ms: int,
                       outcome: str = 'ok', **kwargs):
    """Log completion of a logical query."""
    with CorrelationContext(query=query):
        log_with_fields(logger, 'INFO', 'Query completed', {
            'duration_ms': duration_ms,
            'outcome': outcome,
            **kwargs
        })


def log_token_refresh(logger: logging.Logger, succeeded: bool, **kwargs):
    """Log an access token refresh attempt."""
    log_with_fields(logger, 'INFO' if succeeded else 'WARNING',
                    'Access token refreshed' if succeeded else 'Access token refresh failed',
                    {'succeeded': succeeded, **kwargs})


def log_error(logger: logging.Logger, message: str, error: Exception, **kwargs):
    """Log error with exception details."""
    logger.error(message, exc_info=error, extra={'fields': {
        'error_type': type(error).__name__,
        'error_message': str(error),
        **kwargs
    }})
