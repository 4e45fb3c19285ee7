"""Observability utilities for tracing, metrics, and logging."""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional
from functools import wraps

import structlog
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.instrumentation.asyncio import AsyncioInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.asyncpg import AsyncPGInstrumentor
from prometheus_client import Counter, Histogram, REGISTRY
from prometheus_client.registry import CollectorRegistry

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


def setup_tracing(service_name: str, service_version: str = "0.1.0"):
    """Setup OpenTelemetry tracing and instrument httpx and asyncpg."""
    try:
        resource = Resource.create({
            "service.name": service_name,
            "service.version": service_version,
        })

        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(provider)

        AsyncioInstrumentor().instrument()
        HTTPXClientInstrumentor().instrument()
        AsyncPGInstrumentor().instrument()

        logger.info("OpenTelemetry tracing initialized", service_name=service_name)

    except Exception as e:
        logger.error("Failed to setup tracing", error=str(e))


class Metrics:
    """Prometheus metrics collection."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        # Worker metrics
        self.worker_jobs_total = Counter(
            'worker_jobs_total',
            'Total worker jobs processed',
            ['worker_type', 'job_type', 'status'],
            registry=self.registry
        )

        self.worker_job_duration_seconds = Histogram(
            'worker_job_duration_seconds',
            'Worker job duration',
            ['worker_type', 'job_type'],
            registry=self.registry
        )

        # Language model metrics
        self.llm_requests_total = Counter(
            'llm_requests_total',
            'Total chat completion requests',
            ['status'],
            registry=self.registry
        )

        self.llm_retries_total = Counter(
            'llm_retries_total',
            'Chat completion retries after rate limiting',
            registry=self.registry
        )

        self.llm_quota_wait_seconds = Histogram(
            'llm_quota_wait_seconds',
            'Time spent waiting for token quota',
            registry=self.registry
        )

        # Collaborator metrics
        self.registry_requests_total = Counter(
            'patent_registry_requests_total',
            'Requests sent to the patent registry',
            ['endpoint', 'status'],
            registry=self.registry
        )

        self.ocr_jobs_total = Counter(
            'ocr_jobs_total',
            'Text extraction jobs',
            ['status'],
            registry=self.registry
        )

        self.ocr_jobs_duration_seconds = Histogram(
            'ocr_jobs_duration_seconds',
            'Text extraction job duration',
            registry=self.registry
        )

        # Pipeline metrics
        self.pipeline_runs_total = Counter(
            'pipeline_runs_total',
            'Competitor research pipeline runs',
            ['status'],
            registry=self.registry
        )

        self.pipeline_runs_duration_seconds = Histogram(
            'pipeline_runs_duration_seconds',
            'Competitor research pipeline duration',
            registry=self.registry
        )

        self.documents_stored = Counter(
            'competitor_documents_stored_total',
            'Competitor documents written to the store',
            ['document_type', 'status'],
            registry=self.registry
        )


# Global metrics instance
metrics = Metrics()


def trace_span(span_name: str, attributes: Optional[Dict[str, Any]] = None):
    """Decorator to create a trace span."""
    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            tracer = trace.get_tracer(__name__)
            with tracer.start_as_current_span(span_name, attributes=attributes or {}) as span:
                try:
                    result = await func(*args, **kwargs)
                    span.set_status(Status(StatusCode.OK))
                    return result
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            tracer = trace.get_tracer(__name__)
            with tracer.start_as_current_span(span_name, attributes=attributes or {}) as span:
                try:
                    result = func(*args, **kwargs)
                    span.set_status(Status(StatusCode.OK))
                    return result
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


@asynccontextmanager
async def trace_operation(operation_name: str, attributes: Optional[Dict[str, Any]] = None):
    """Context manager for tracing operations."""
    tracer = trace.get_tracer(__name__)
    with tracer.start_as_current_span(operation_name, attributes=attributes or {}) as span:
        try:
            yield span
            span.set_status(Status(StatusCode.OK))
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise


def track_metrics(metric_name: str, labels: Optional[Dict[str, str]] = None):
    """Decorator that counts outcomes on ``<metric_name>_total`` and times on
    ``<metric_name>_duration_seconds``."""
    def decorator(func):
        def _record(status: str, start_time: float):
            getattr(metrics, f"{metric_name}_total").labels(
                status=status, **(labels or {})
            ).inc()
            histogram = getattr(metrics, f"{metric_name}_duration_seconds")
            if labels:
                histogram = histogram.labels(**labels)
            histogram.observe(time.time() - start_time)

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.time()
            try:
                result = await func(*args, **kwargs)
            except Exception:
                _record("error", start_time)
                raise
            _record("success", start_time)
            return result

        return async_wrapper

    return decorator
