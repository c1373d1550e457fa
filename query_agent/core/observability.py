import logging
import uuid
import contextvars
import re
import time
import zlib
from functools import wraps
from typing import Optional, Dict, Any

from query_agent.core.security_rules import PII_PATTERNS

# Context Variables for Trace Context
_trace_id_ctx = contextvars.ContextVar("trace_id", default=None)
_span_id_ctx = contextvars.ContextVar("span_id", default=None)

logger = logging.getLogger("query_agent.trace")

SQL_LOG_MAX_LENGTH = 500


def current_trace_id() -> Optional[str]:
    return _trace_id_ctx.get()


class TraceManager:
    """
    Manages structured logging and tracing context.
    Events are emitted through the standard logging tree so the JSON formatter
    renders the extra fields next to the message.
    """

    @staticmethod
    def get_trace_id() -> str:
        tid = _trace_id_ctx.get()
        if not tid:
            tid = str(uuid.uuid4())
            _trace_id_ctx.set(tid)
        return tid

    @staticmethod
    def set_trace_id(trace_id: str):
        _trace_id_ctx.set(trace_id)

    @staticmethod
    def log(level: str, message: str, extra: Optional[Dict[str, Any]] = None):
        """
        Structured log emission.
        """
        fields = {
            "span_id": _span_id_ctx.get(),
            **(extra or {})
        }
        logger.log(
            logging.getLevelName(level.upper()),
            message,
            extra={"fields": fields, "trace_id": TraceManager.get_trace_id()},
        )

    @staticmethod
    def info(message: str, **kwargs):
        TraceManager.log("INFO", message, kwargs)

    @staticmethod
    def warning(message: str, **kwargs):
        TraceManager.log("WARNING", message, kwargs)

    @staticmethod
    def error(message: str, exc: Optional[BaseException] = None, **kwargs):
        extra = kwargs
        if exc:
            extra["error"] = str(exc)
            extra["error_type"] = type(exc).__name__
        TraceManager.log("ERROR", message, extra)

    @staticmethod
    def span(name: str):
        """
        Decorator to trace a function execution as a span.
        """
        def decorator(func):
            @wraps(func)
            async def wrapper(*args, **kwargs):
                parent_span = _span_id_ctx.get()
                current_span = str(uuid.uuid4())
                token = _span_id_ctx.set(current_span)

                start_time = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                    duration = time.perf_counter() - start_time
                    TraceManager.info(f"End Span: {name}", span_name=name, parent_span=parent_span, duration_ms=duration*1000)
                    return result
                except Exception as e:
                    duration = time.perf_counter() - start_time
                    TraceManager.error(f"Error Span: {name}", exc=e, span_name=name, duration_ms=duration*1000)
                    raise
                finally:
                    _span_id_ctx.reset(token)
            return wrapper
        return decorator


def hash_tenant_id(tenant_id: Optional[str]) -> Optional[str]:
    """Short stable digest so raw tenant ids never reach the logs."""
    if tenant_id is None:
        return None
    return format(zlib.crc32(tenant_id.encode("utf-8")), "08x")


def redact_pii(text: str) -> str:
    redacted = text
    for p_name, pattern in PII_PATTERNS.items():
        redacted = re.sub(pattern, f"[{p_name.upper()}]", redacted)
    return redacted


def normalize_sql_for_logging(sql: str) -> str:
    """Whitespace-collapsed, PII-redacted, truncated SQL fingerprint."""
    collapsed = " ".join((sql or "").split())
    redacted = redact_pii(collapsed)
    if len(redacted) > SQL_LOG_MAX_LENGTH:
        return redacted[:SQL_LOG_MAX_LENGTH] + "...[truncated]"
    return redacted


def log_tool_call(
    *,
    tool_name: str,
    tenant_id: Optional[str],
    duration_ms: float,
    success: bool,
    sql: Optional[str] = None,
    allow_deny_reason: Optional[str] = None,
    rows_returned: Optional[int] = None,
    error: Optional[BaseException] = None,
):
    fields: Dict[str, Any] = {
        "event": "tool_call",
        "tool_name": tool_name,
        "tenant_hash": hash_tenant_id(tenant_id),
        "duration_ms": round(duration_ms),
        "success": success,
    }
    if sql is not None:
        fields["normalized_sql"] = normalize_sql_for_logging(sql)
    if allow_deny_reason:
        fields["allow_deny_reason"] = allow_deny_reason
    if rows_returned is not None:
        fields["rows_returned"] = rows_returned

    if success:
        TraceManager.info("Tool call executed", **fields)
    else:
        TraceManager.error("Tool call failed", exc=error, **fields)


def log_tool_loop_termination(
    *,
    reason: str,
    tenant_id: Optional[str],
    tool_call_count: int,
    max_tool_calls: int,
    duration_ms: float,
    error: Optional[BaseException] = None,
):
    fields = {
        "event": "tool_loop_termination",
        "reason": reason,
        "tenant_hash": hash_tenant_id(tenant_id),
        "tool_call_count": tool_call_count,
        "max_tool_calls": max_tool_calls,
        "duration_ms": round(duration_ms),
    }
    if reason == "completed":
        TraceManager.info("Tool loop completed", **fields)
    elif reason in ("max_tool_calls", "aborted", "timeout"):
        # Cancellations are not failures
        TraceManager.warning("Tool loop stopped early", **fields)
    else:
        TraceManager.error("Tool loop terminated with error", exc=error, **fields)
