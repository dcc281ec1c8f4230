"""
Logging setup for the API, the RQ job and the batch CLI.

LOG_FORMAT picks "text" (default) or "json"; LOG_LEVEL defaults to INFO.
Engine modules attach run/lead/provider context through `extra=`, e.g.

    logger.info("Item %s/%s failed: %s", run_id, lead_id, e,
                extra={'run_id': run_id, 'lead_id': lead_id})

JSON output carries those as top-level keys; text output appends them as
key=value pairs so one grep finds every line for a lead.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone

# Attributes engine log calls may set through `extra=`
CONTEXT_FIELDS = ('run_id', 'lead_id', 'provider')


def _context(record):
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log aggregators."""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plain text with any run/lead/provider context appended."""

    def format(self, record):
        line = super().format(record)
        context = _context(record)
        if not context:
            return line
        suffix = ' '.join(f'{key}={value}' for key, value in context.items())
        head, sep, tail = line.partition('\n')
        return f'{head} [{suffix}]{sep}{tail}'


# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = (
    'urllib3',
    'requests',
    'rq.worker',
    'sqlalchemy.engine',
    'alembic',
)


def configure_logging(app=None):
    """Install one stderr handler on the root logger (replacing any others)."""
    level = getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    log_format = os.getenv('LOG_FORMAT', 'text').lower()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if log_format == 'json':
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ContextTextFormatter(
            '[%(asctime)s] %(levelname)s %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if app is not None:
        app.logger.setLevel(level)
