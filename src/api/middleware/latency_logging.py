"""Request latency logging middleware."""

import logging
import time
from typing import Callable

from fastapi import Request, Response

logger = logging.getLogger(__name__)

# Thresholds for log levels (in milliseconds)
SLOW_REQUEST_THRESHOLD_MS = 1000
VERY_SLOW_REQUEST_THRESHOLD_MS = 3000

# Probes are polled constantly; only slow ones are worth a line
QUIET_PATHS = ("/health", "/health/ready")


async def latency_logging_middleware(request: Request, call_next: Callable) -> Response:
    """Log method, path, status and latency for every request.

    Slow requests and 5xx responses are escalated to warning/error.
    """
    start_time = time.perf_counter()
    path = request.url.path
    response = None

    try:
        response = await call_next(request)
        return response
    finally:
        latency_ms = (time.perf_counter() - start_time) * 1000
        status_code = response.status_code if response else 500
        log_msg = f"{request.method} {path} - {status_code} - {latency_ms:.2f}ms"
        extra = {
            "method": request.method,
            "path": path,
            "status_code": status_code,
            "latency_ms": round(latency_ms, 2),
        }

        if path in QUIET_PATHS:
            if latency_ms > 100:
                logger.debug(log_msg, extra=extra)
        elif status_code >= 500:
            logger.error(log_msg, extra=extra)
        elif latency_ms > VERY_SLOW_REQUEST_THRESHOLD_MS:
            logger.error(f"VERY SLOW REQUEST: {log_msg}", extra=extra)
        elif latency_ms > SLOW_REQUEST_THRESHOLD_MS:
            logger.warning(f"SLOW REQUEST: {log_msg}", extra=extra)
        elif status_code >= 400:
            logger.warning(log_msg, extra=extra)
        else:
            logger.info(log_msg, extra=extra)
