"""OpenTelemetry setup for the analytics API.

Spans are created through ``opentelemetry.trace`` everywhere else; until
``init_tracing`` installs a provider they go to the API's no-op tracer, which
still carries an inbound ``traceparent`` through to child spans.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger("call_analytics.tracing")

_provider: TracerProvider | None = None
_log_provider: LoggerProvider | None = None
_log_handler: LoggingHandler | None = None


def instrument_app(app: FastAPI) -> None:
    """Wrap the app in server spans that join the caller's ``traceparent``."""

    FastAPIInstrumentor.instrument_app(app)


def init_tracing(
    *,
    service_name: str,
    service_version: str,
    endpoint: str | None,
    enabled: bool,
) -> TracerProvider | None:
    """
    Install global tracer and log providers exporting to an OTLP gRPC collector.

    Redis commands are instrumented as child spans. Returns the tracer provider,
    or None when tracing is disabled. Without an endpoint spans are recorded but
    never exported and logs stay local.
    """

    global _provider, _log_provider, _log_handler

    if not enabled:
        logger.info("tracing_disabled service=%s", service_name)
        return None

    if _provider is not None:
        return _provider

    resource = Resource.create(
        {"service.name": service_name, "service.version": service_version}
    )
    provider = TracerProvider(resource=resource)
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))

        log_provider = LoggerProvider(resource=resource)
        log_provider.add_log_record_processor(
            BatchLogRecordProcessor(OTLPLogExporter(endpoint=endpoint, insecure=True))
        )
        set_logger_provider(log_provider)
        _log_handler = LoggingHandler(level=logging.NOTSET, logger_provider=log_provider)
        logging.getLogger().addHandler(_log_handler)
        _log_provider = log_provider
        logger.info("tracing_initialized service=%s endpoint=%s", service_name, endpoint)
    else:
        logger.info("tracing_initialized service=%s endpoint=none", service_name)

    trace.set_tracer_provider(provider)
    RedisInstrumentor().instrument(tracer_provider=provider)
    _provider = provider
    return provider


def shutdown_tracing() -> None:
    """Flush pending spans and logs and release exporter resources."""

    global _provider, _log_provider, _log_handler

    if _provider is None:
        return
    RedisInstrumentor().uninstrument()
    if _log_handler is not None:
        logging.getLogger().removeHandler(_log_handler)
        _log_handler = None
    if _log_provider is not None:
        _log_provider.shutdown()
        _log_provider = None
    _provider.shutdown()
    _provider = None
