"""JSON logging setup shared by the API process and the services."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

_STANDARD_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
    'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'taskName', 'message',
}


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object; ``extra={...}`` fields go under ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)

        extra = {key: value for key, value in record.__dict__.items() if key not in _STANDARD_ATTRS}
        if extra:
            payload['extra'] = extra
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str = 'INFO', *, json_output: bool = True) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if getattr(root, '_sewdle_configured', False):
        return

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
    root.addHandler(handler)
    root._sewdle_configured = True  # type: ignore[attr-defined]


def log_event(action: str, *, message: str | None = None, level: str = 'info', **fields: Any) -> None:
    """Emit a structured domain event on the ``sewdle.events`` logger."""
    logger = logging.getLogger('sewdle.events')
    log_method = getattr(logger, level.lower(), logger.info)
    payload: dict[str, Any] = {'action': action}
    payload.update(fields)
    try:
        log_method(message or action, extra=payload)
    except Exception:
        # logging must not break the business flow
        logger.debug('structured log emission failed', exc_info=True)
