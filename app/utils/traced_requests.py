import logging
from contextlib import contextmanager
from typing import Any, Mapping, Optional

from opentelemetry.trace import Tracer

from app.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    correlation_id: Optional[str],
    start_message: str,
    extra_attrs: Optional[Mapping[str, Any]] = None,
):
    """
    Span for one proxied request, tagged with its correlation id.

    Attributes with a ``None`` value are skipped. An exception escaping the
    block is logged with the correlation id and re-raised; the span records it.
    """
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("proxy.correlation_id", correlation_id or "")
        for key, value in (extra_attrs or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        logger.info(start_message)
        try:
            yield span
        except Exception as e:
            log_exception_with_details(logger, f"[{operation}] [{correlation_id}]", e)
            raise
