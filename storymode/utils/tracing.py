from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.trace import Span

from storymode.utils.logging import get_logger

log = get_logger(__name__)

_CONFIGURED = False


def _parse_headers(raw: str) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for pair in raw.split(","):
        if not pair.strip() or "=" not in pair:
            continue
        key, value = pair.split("=", 1)
        key = key.strip()
        if key:
            headers[key] = value.strip()
    return headers


def configure_tracing(service_name: str | None = None) -> None:
    """Install an OTLP exporter when an endpoint is configured and the SDK is installed."""

    global _CONFIGURED
    if _CONFIGURED:
        return
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        log.debug("tracing_disabled_no_endpoint")
        return
    try:
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    except ImportError:  # pragma: no cover - tracing extra not installed
        log.info("tracing_sdk_missing")
        return

    sample_ratio_raw = os.getenv("TRACING_SAMPLE_RATIO", "0.1")
    try:
        sample_ratio = float(sample_ratio_raw)
    except ValueError:
        log.warning("tracing_sample_ratio_invalid", value=sample_ratio_raw)
        sample_ratio = 0.1
    sample_ratio = max(min(sample_ratio, 1.0), 0.0)
    if sample_ratio <= 0.0:
        log.debug("tracing_disabled_zero_sample")
        return

    headers_env = os.getenv("OTEL_EXPORTER_OTLP_HEADERS")
    service = service_name or os.getenv("OTEL_SERVICE_NAME", "storymode")
    try:
        provider = TracerProvider(
            resource=Resource.create({"service.name": service}),
            sampler=ParentBased(TraceIdRatioBased(sample_ratio)),
        )
        exporter = OTLPSpanExporter(endpoint=endpoint, headers=_parse_headers(headers_env) if headers_env else None)
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
    except Exception as exc:  # pragma: no cover - configuration failure
        log.warning("tracing_configuration_failed", error=str(exc))
        return

    _CONFIGURED = True
    log.info("tracing_configured", endpoint=endpoint, sample_ratio=sample_ratio, service=service)


@contextmanager
def start_span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[Span]:
    tracer = trace.get_tracer("storymode")
    with tracer.start_as_current_span(name, record_exception=True, set_status_on_exception=True) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span
