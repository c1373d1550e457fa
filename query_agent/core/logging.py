import logging
import sys
import json
from .settings import settings
from .observability import current_trace_id

class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_obj = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "trace_id": getattr(record, "trace_id", None)
        }
        fields = getattr(record, "fields", None)
        if fields:
            log_obj.update(fields)
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)

class TraceIdFilter(logging.Filter):
    """Stamps the current correlation id on every record."""

    def filter(self, record):
        if getattr(record, "trace_id", None) is None:
            record.trace_id = current_trace_id()
        return True

def setup_logging():
    root = logging.getLogger()
    root.setLevel(settings.log_level)

    if not any(isinstance(h.formatter, JSONFormatter) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        handler.addFilter(TraceIdFilter())
        root.addHandler(handler)

    # Silence chatty libraries
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    return root
