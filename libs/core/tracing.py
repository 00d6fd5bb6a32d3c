from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Mapping
from urllib.parse import urlparse, urlunparse

from opentelemetry import trace as _trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from libs.core import logging as core_logging

LOGGER = core_logging.get_logger("tracing")
DEFAULT_TRACER = "resume-gateway"

_TRACING_CONFIGURED = False


def configure_tracing(service_name: str, endpoint: str | None = None) -> bool:
    """Install an OTLP/HTTP exporter. Without an endpoint spans stay no-op."""
    global _TRACING_CONFIGURED
    if _TRACING_CONFIGURED:
        return True
    resolved_endpoint = _normalize_otlp_traces_endpoint(endpoint)
    if not resolved_endpoint:
        LOGGER.info("tracing_disabled", service_name=service_name)
        return False
    try:
        resource = Resource.create({"service.name": service_name})
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=resolved_endpoint))
        )
        _trace.set_tracer_provider(provider)
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning("tracing_configure_failed", service_name=service_name, error=str(exc))
        return False
    _TRACING_CONFIGURED = True
    LOGGER.info("tracing_configured", service_name=service_name, endpoint=resolved_endpoint)
    return True


def get_tracer(name: str = DEFAULT_TRACER):
    return _trace.get_tracer(name)


@contextmanager
def start_span(
    name: str,
    *,
    attributes: Mapping[str, Any] | None = None,
    tracer_name: str = DEFAULT_TRACER,
) -> Iterator[Any]:
    tracer = get_tracer(tracer_name)
    with tracer.start_as_current_span(name, record_exception=False) as span:
        set_span_attributes(span, attributes)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise


def set_span_attributes(span: Any, attributes: Mapping[str, Any] | None) -> None:
    if not attributes:
        return
    for key, value in attributes.items():
        if not isinstance(key, str) or not key:
            continue
        normalized = _normalize_attribute_value(value)
        if normalized is None:
            continue
        span.set_attribute(key, normalized)


def _normalize_attribute_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple)):
        items = [_normalize_attribute_value(item) for item in value]
        scalars = [item for item in items if isinstance(item, (bool, int, float, str))]
        return scalars or None
    return str(value)


def _normalize_otlp_traces_endpoint(endpoint: str | None) -> str | None:
    if endpoint is None:
        return None
    raw = endpoint.strip()
    if not raw:
        return None
    parsed = urlparse(raw)
    if not parsed.scheme or not parsed.netloc:
        return raw
    if parsed.path in {"", "/"}:
        path = "/v1/traces"
    elif parsed.path.endswith("/v1/traces"):
        path = parsed.path
    else:
        path = parsed.path.rstrip("/") + "/v1/traces"
    return urlunparse(parsed._replace(path=path))
