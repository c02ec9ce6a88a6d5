import json
import logging
import os
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler

LOG_DIR = os.environ.get('LOG_DIR', 'logs')
if not os.path.exists(LOG_DIR):
    try:
        os.makedirs(LOG_DIR)
    except OSError:
        LOG_DIR = '.'

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(trace_id)s] [%(filename)s:%(lineno)d] - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Set by tracing.Trace for the duration of a chat turn or heartbeat run
current_trace_id: ContextVar[str] = ContextVar('current_trace_id', default='-')
current_user_id: ContextVar[str] = ContextVar('current_user_id', default='-')


class TraceContextFilter(logging.Filter):
    """Stamps every record with the active trace and user id."""

    def filter(self, record):
        record.trace_id = current_trace_id.get()
        record.user_id = current_user_id.get()
        return True


class JsonFormatter(logging.Formatter):
    """Outputs log records as single-line JSON objects."""

    def format(self, record):
        log_entry = {
            "timestamp": self.formatTime(record, DATE_FORMAT),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "trace_id": getattr(record, 'trace_id', '-'),
            "user_id": getattr(record, 'user_id', '-'),
            "filename": record.filename,
            "lineno": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def _build_handlers():
    """Console (INFO), rotating main file (DEBUG) and rotating error file (ERROR)."""
    handlers = []
    context_filter = TraceContextFilter()

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    handlers.append(console)

    for filename, level, max_bytes, backups in (
        ('agent.log', logging.DEBUG, 5 * 1024 * 1024, 5),
        ('errors.log', logging.ERROR, 2 * 1024 * 1024, 3),
    ):
        try:
            handler = RotatingFileHandler(
                os.path.join(LOG_DIR, filename),
                maxBytes=max_bytes,
                backupCount=backups
            )
        except OSError:
            continue
        handler.setLevel(level)
        handlers.append(handler)

    if os.environ.get('LOG_FORMAT', 'text').lower() == 'json':
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
    return handlers


root_logger = logging.getLogger()
if not getattr(root_logger, '_agent_engine_configured', False):
    root_logger.setLevel(logging.DEBUG)
    for _handler in _build_handlers():
        root_logger.addHandler(_handler)
    root_logger._agent_engine_configured = True

logger = logging.getLogger('agent_engine')
logger.setLevel(logging.DEBUG)

# Reduce noise from third-party libraries
for _noisy in ('urllib3', 'httpx', 'httpcore', 'openai', 'pinecone'):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger.info("Agent engine logging initialized")
