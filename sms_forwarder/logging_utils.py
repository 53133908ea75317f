import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from sms_forwarder.metrics import record_callback, record_http_request
from sms_forwarder.utils import format_utc


# request_id of the request being served, stamped on every log line
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REQUEST_LOGGER = "sms_forwarder.requests"
LOG_FORMAT = "%(ts)s %(level)s %(name)s %(message)s"

# Routed through the JSON handler instead of uvicorn's own formatters
UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# Client libraries that log every outbound call at INFO
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "twilio.http_client": logging.WARNING,
}

# Scrapes are not counted as traffic
UNMETERED_PATHS = frozenset({"/metrics"})


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding the record's UTC time, level and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = format_utc(datetime.fromtimestamp(record.created, tz=timezone.utc))
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send every log line to stdout as one JSON object.

    Uvicorn shares the handler. Its access log is switched off because
    RequestLoggingMiddleware writes one line per request instead.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter(LOG_FORMAT))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    return root


def level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per HTTP request.

    Every line carries request_id, method, path, status and latency_ms.
    Telephony callbacks add the fields set by record_callback_outcome:
    - event_type: sms, call or call_status
    - sid: provider message or call id (when parsed)
    - result: ok or error
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers["X-Request-ID"] = request_id

            path = request.url.path
            if path not in UNMETERED_PATHS:
                record_http_request(
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    latency_seconds=elapsed,
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            log_data.update(getattr(request.state, "callback_log_data", {}))

            logging.getLogger(REQUEST_LOGGER).log(
                level_for_status(response.status_code), "Request completed", extra=log_data
            )
            return response
        finally:
            request_id_ctx.reset(token)


def record_callback_outcome(request: Request, event_type: str, sid: Optional[str] = None, result: str = "ok"):
    """
    Count a telephony callback and attach its outcome to the request log line.

    Args:
        request: FastAPI request object
        event_type: sms, call or call_status
        sid: MessageSid or CallSid, None if the form could not be parsed
        result: ok or error
    """
    record_callback(event_type, result)

    callback_data = {"event_type": event_type, "result": result}
    if sid is not None:
        callback_data["sid"] = sid
    request.state.callback_log_data = callback_data
