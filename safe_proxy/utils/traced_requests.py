import logging
from contextlib import contextmanager
from typing import Dict, Optional

from opentelemetry.trace import Tracer

from safe_proxy.target.descriptor import TargetDescriptor

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    descriptor: TargetDescriptor,
    start_message: str,
    extra_attrs: Optional[Dict] = None,
):
    """Context manager to create a span, set target attributes, and log a start message."""
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("proxy.target.scheme", descriptor.scheme)
        span.set_attribute("proxy.target.host", descriptor.hostname)
        span.set_attribute("proxy.target.port", descriptor.effective_port)
        span.set_attribute("proxy.target.path", descriptor.path)
        if extra_attrs:
            for k, v in extra_attrs.items():
                span.set_attribute(k, v)
        logger.info(start_message)
        yield span
