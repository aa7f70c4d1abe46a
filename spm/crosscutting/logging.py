import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Context variables for correlation
command_var: ContextVar[Optional[str]] = ContextVar('command', default=None)
playlist_id_var: ContextVar[Optional[str]] = ContextVar('playlist_id', default=None)
stage_var: ContextVar[Optional[str]] = ContextVar('stage', default=None)

ROOT_LOGGER_NAME = 'spm'


class SecretMasker:
    """Masks sensitive information in log messages."""

    def __init__(self):
        """Initialize secret masker with patterns."""
        self.patterns = [
            # Spotify access/refresh tokens
            r'(?i)(access_token|refresh_token|spotify_access_token|spotify_refresh_token)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Client secrets
            r'(?i)(client_secret|spotify_client_secret)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{16,})["\']?',
            # Authorization headers
            r'(?i)(authorization|bearer)[\s]*[:=]?[\s]*["\']?([a-zA-Z0-9\-_\.]{30,})["\']?',
            # OAuth codes
            r'(?i)(code|authorization_code)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Generic tokens and keys
            r'(?i)(token|key|secret|password)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
        ]

        self.compiled_patterns = [re.compile(pattern) for pattern in self.patterns]

    def mask_secrets(self, text: str) -> str:
        """Mask sensitive information in text."""
        if not text:
            return text

        def replace_match(match):
            prefix = match.group(1)
            secret = match.group(2)
            # Keep first 4 and last 4 characters
            if len(secret) > 8:
                masked_secret = secret[:4] + '*' * (len(secret) - 8) + secret[-4:]
            else:
                masked_secret = '*' * len(secret)
            return f"{prefix}: {masked_secret}"

        masked_text = text
        for pattern in self.compiled_patterns:
            masked_text = pattern.sub(replace_match, masked_text)
        return masked_text

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive information in dictionary."""
        if not data:
            return data

        masked_data = {}
        for key, value in data.items():
            if isinstance(value, str):
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


def _correlation_fields() -> Dict[str, str]:
    fields = {}
    command = command_var.get()
    playlist_id = playlist_id_var.get()
    stage = stage_var.get()
    if command:
        fields['command'] = command
    if playlist_id:
        fields['playlistId'] = playlist_id
    if stage:
        fields['stage'] = stage
    return fields


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self):
        super().__init__()
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as a single JSON line."""
        log_entry = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': self.masker.mask_secrets(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }
        log_entry.update(_correlation_fields())

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        if getattr(record, 'fields', None):
            log_entry['fields'] = self.masker.mask_dict(record.fields)

        return json.dumps(log_entry, ensure_ascii=False)


class PlainFormatter(logging.Formatter):
    """Human readable formatter that still masks secrets."""

    def __init__(self):
        super().__init__('%(levelname)s %(name)s: %(message)s')
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        text = self.masker.mask_secrets(super().format(record))
        fields = getattr(record, 'fields', None)
        if fields:
            rendered = ' '.join(f"{k}={v}" for k, v in self.masker.mask_dict(fields).items())
            text = f"{text} [{rendered}]"
        return text


class CorrelationContext:
    """Context manager for correlation data."""

    def __init__(self, command: Optional[str] = None,
                 playlist_id: Optional[str] = None,
                 stage: Optional[str] = None):
        self.command = command
        self.playlist_id = playlist_id
        self.stage = stage
        self._tokens = []

    def __enter__(self):
        """Set correlation context."""
        if self.command is not None:
            self._tokens.append((command_var, command_var.set(self.command)))
        if self.playlist_id is not None:
            self._tokens.append((playlist_id_var, playlist_id_var.set(self.playlist_id)))
        if self.stage is not None:
            self._tokens.append((stage_var, stage_var.set(self.stage)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Restore correlation context."""
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


def setup_logging(level: str = 'WARNING',
                  json_output: bool = False,
                  log_file: Optional[str] = None,
                  command: Optional[str] = None) -> logging.Logger:
    """Setup logging for the spm logger tree. Logs go to stderr so stdout stays parseable."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.WARNING))
    logger.handlers.clear()
    logger.propagate = False

    formatter = StructuredFormatter() if json_output else PlainFormatter()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    if command:
        command_var.set(command)

    return logger


def log_with_fields(logger: logging.Logger, level: str, message: str,
                    fields: Optional[Dict[str, Any]] = None, exc_info: bool = False, **kwargs):
    """Log message with additional structured fields."""
    merged = dict(fields or {})
    merged.update(kwargs)
    logger.log(getattr(logging, level.upper()), message, exc_info=exc_info,
               extra={'fields': merged} if merged else None)


# Convenience functions for common logging patterns
def log_plan_applied(logger: logging.Logger, result, **kwargs):
    """Log a committed playlist mutation."""
    with CorrelationContext(playlist_id=result.playlist_id, stage='applied'):
        log_with_fields(logger, 'INFO', f"Applied {result.action}", {
            'before_count': result.before_count,
            'after_count': result.after_count,
            'removed': result.removed,
            'snapshot_id': result.snapshot_id,
            **kwargs
        })


def log_generation_summary(logger: logging.Logger, result, **kwargs):
    """Log the outcome of a recommendation pool generation."""
    with CorrelationContext(stage='generate'):
        log_with_fields(logger, 'INFO', 'Generation finished', {
            'seed_count': result.seed_count,
            'generated_count': result.generated_count,
            'shortfall': result.shortfall,
            'filtered_count': result.filtered_count,
            **kwargs
        })


def log_error(logger: logging.Logger, message: str, error: Exception, **kwargs):
    """Log error with exception details."""
    log_with_fields(logger, 'ERROR', message, {
        'error_type': type(error).__name__,
        'error_message': str(error),
        **kwargs
    }, exc_info=True)
