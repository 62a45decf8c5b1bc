import logging
import sys
import json
from typing import Any, Dict, Iterable, List, Optional, Union
from datetime import datetime, timezone
from pathlib import Path

# Attributes every LogRecord carries; anything else was passed through ``extra``
_RECORD_ATTRIBUTES = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName', 'taskName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'message', 'asctime'
}

# Keyword arguments Logger.log() understands itself
_LOG_KWARGS = {'exc_info', 'stack_info', 'stacklevel', 'extra'}

CONTEXT_PREFIX = 'ctx_'

NOISY_LOGGERS = ['aiohttp.access', 'aiohttp.client', 'asyncio', 'urllib3']


def job_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Job context (tool id, job name, counters) attached by StructuredLogger."""
    return {
        key[len(CONTEXT_PREFIX):]: value
        for key, value in record.__dict__.items()
        if key.startswith(CONTEXT_PREFIX)
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line; job context is nested under ``context``."""

    def __init__(self, service_name: str = "docmanifest"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        context = job_context(record)
        if context:
            entry["context"] = context

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES and not key.startswith(CONTEXT_PREFIX):
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter: ``time | LEVEL | logger | message | key=value ...``"""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__(datefmt='%Y-%m-%d %H:%M:%S')
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        parts = [self.formatTime(record, self.datefmt), f"{record.levelname:8}", record.name, record.getMessage()]

        context = job_context(record)
        if context:
            parts.append(" ".join(f"{key}={value}" for key, value in context.items()))

        line = " | ".join(parts)
        color = self.COLORS.get(record.levelname) if self.use_colors else None
        if color:
            line = f"{color}{line}{self.RESET}"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    service_name: str = "docmanifest",
    log_file: Optional[str] = None,
    use_json: bool = False,
    use_colors: bool = True,
    quiet_loggers: Iterable[str] = NOISY_LOGGERS
) -> None:
    """Configure the root logger for a pipeline run.

    Console output goes to stderr so that command output on stdout stays
    machine readable. A log file, when given, always receives JSON lines.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Service name stamped on JSON records
        log_file: Optional path of a JSON log file
        use_json: Emit JSON on the console as well
        use_colors: Color console lines when stderr is a terminal
        quiet_loggers: Third-party loggers capped at WARNING
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter(service_name) if use_json
                         else ColoredFormatter(use_colors and sys.stderr.isatty()))
    handlers: List[logging.Handler] = [console]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(JSONFormatter(service_name))
        handlers.append(file_handler)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


class StructuredLogger(logging.LoggerAdapter):
    """Logger adapter for pipeline jobs.

    Default context (tool id, job name) and any extra keyword arguments of a
    call end up on the record as ``ctx_*`` attributes::

        log = get_structured_logger(__name__, tool_id='cursor', job='crawl')
        log.info('Crawl finished', pages=12)
    """

    def __init__(self, logger: Union[str, logging.Logger], **default_context):
        if isinstance(logger, str):
            logger = logging.getLogger(logger)
        super().__init__(logger, default_context)

    def bind(self, **context) -> 'StructuredLogger':
        """Return a logger with additional default context."""
        return StructuredLogger(self.logger, **{**self.extra, **context})

    def process(self, msg, kwargs):
        context = dict(self.extra)
        for key in [key for key in kwargs if key not in _LOG_KWARGS]:
            context[key] = kwargs.pop(key)

        extra = dict(kwargs.get('extra') or {})
        extra.update({f"{CONTEXT_PREFIX}{key}": value for key, value in context.items()})
        kwargs['extra'] = extra
        return msg, kwargs


def get_structured_logger(name: str, **default_context) -> StructuredLogger:
    return StructuredLogger(name, **default_context)
