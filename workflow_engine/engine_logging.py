# workflow_engine/engine_logging.py
"""
Structured logging for the workflow engine.
Console output in dev, JSON records everywhere else.
"""

import logging as _logging
import logging.config as _logging_config
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

ROOT_LOGGER_NAME = "engine"

# Record attributes copied into JSON output when passed via `extra=`
_CONTEXT_FIELDS = ("run_id", "step_id", "capability", "attempt", "depth", "duration_ms")

_SENSITIVE_KEYS = ("password", "token", "secret", "api_key", "apikey", "authorization")


class EngineJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that adds run and step identifiers to every record."""

    def add_fields(self, log_record: Dict[str, Any], record: _logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = time.time()
        log_record['environment'] = os.getenv('APP_ENV', 'dev')
        log_record['component'] = getattr(record, 'component', record.name)

        for field_name in _CONTEXT_FIELDS:
            if hasattr(record, field_name):
                log_record[field_name] = getattr(record, field_name)


def setup_logging(log_file: Optional[Path] = None, level: Optional[str] = None) -> _logging.Logger:
    """
    Configure logging for processes embedding the engine.

    Args:
        log_file: Optional file to append records to in addition to stdout.
        level: Log level name. Defaults to LOG_LEVEL, then INFO.

    Returns:
        The engine root logger
    """
    env = os.getenv('APP_ENV', 'dev')
    level_name = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    formatter = 'console' if env == 'dev' else 'json'

    handlers_list = ['console']
    handlers_config: Dict[str, Dict[str, Any]] = {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': formatter,
            'level': level_name,
            'stream': 'ext://sys.stdout'
        }
    }

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers_config['file'] = {
            'class': 'logging.FileHandler',
            'filename': str(log_file),
            'formatter': formatter,
            'level': level_name,
            'mode': 'a',
            'encoding': 'utf-8'
        }
        handlers_list.append('file')

    _logging_config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'json': {
                '()': EngineJsonFormatter,
                'format': '%(name)s %(levelname)s %(message)s'
            },
            'console': {
                'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                'datefmt': '%Y-%m-%d %H:%M:%S'
            }
        },
        'handlers': handlers_config,
        'root': {
            'level': level_name,
            'handlers': handlers_list
        },
        'loggers': {
            ROOT_LOGGER_NAME: {
                'level': 'DEBUG' if env == 'dev' else level_name,
                # Propagate to root so pytest's caplog sees engine records
                'handlers': [],
                'propagate': True
            }
        }
    })

    return _logging.getLogger(ROOT_LOGGER_NAME)


def get_logger(name: str) -> _logging.Logger:
    """
    Get a logger under the engine namespace.

    Args:
        name: Logger name, typically __name__ of the calling module
    """
    if name.startswith("workflow_engine."):
        name = name[len("workflow_engine."):]
    return _logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def sanitize_for_logging(data: Any) -> Any:
    """
    Redact secrets from task inputs before they are logged.

    Args:
        data: Mapping, list or scalar taken from a task input

    Returns:
        A copy with sensitive values replaced
    """
    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS):
                sanitized[key] = '***REDACTED***'
            else:
                sanitized[key] = sanitize_for_logging(value)
        return sanitized
    elif isinstance(data, (list, tuple)):
        return [sanitize_for_logging(item) for item in data]
    elif isinstance(data, str):
        lowered = data.lower()
        if any(marker in lowered for marker in ('bearer ', 'password=', 'sk-')):
            return '***REDACTED***'

    return data
