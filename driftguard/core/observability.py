"""
Observability Module
-------------------
Prometheus metrics for the drift, alert and audit components, OpenTelemetry
tracing of drift scans, and the /metrics endpoint of the API.
"""

import time
import logging
from contextlib import contextmanager
from typing import Dict, Callable, Generator, Optional
import functools

from fastapi import FastAPI
from prometheus_client import Counter, Histogram
from starlette_exporter import PrometheusMiddleware, handle_metrics
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

from driftguard.core.config import Settings

# Set up logging
logger = logging.getLogger(__name__)

TRACER_NAME = "driftguard"

# Prometheus metrics
DRIFT_SCAN_COUNTER = Counter(
    'driftguard_drift_scans_total',
    'Total number of drift detection scans',
    ['environment']
)

DRIFT_CHANGE_COUNTER = Counter(
    'driftguard_drift_changes_total',
    'Total number of drift changes detected',
    ['category', 'impact']
)

DRIFT_SCAN_DURATION = Histogram(
    'driftguard_drift_scan_duration_seconds',
    'Duration of drift detection scans in seconds',
    ['environment'],
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120)
)

ALERT_COUNTER = Counter(
    'driftguard_alerts_total',
    'Total number of security alerts created',
    ['severity', 'category']
)

ALERT_TRANSITION_COUNTER = Counter(
    'driftguard_alert_transitions_total',
    'Alert status transitions',
    ['status']
)

ESCALATION_COUNTER = Counter(
    'driftguard_alert_escalations_total',
    'Number of executed alert escalations',
    ['rule']
)

NOTIFICATION_COUNTER = Counter(
    'driftguard_notifications_total',
    'Notification delivery attempts',
    ['channel', 'outcome']
)

NOTIFICATION_DURATION = Histogram(
    'driftguard_notification_duration_seconds',
    'Time spent delivering a notification through one channel',
    ['channel_type'],
    buckets=(0.05, 0.1, 0.5, 1, 2.5, 5, 10, 30)
)

AUDIT_ENTRY_COUNTER = Counter(
    'driftguard_audit_entries_total',
    'Audit entries appended to the ledger',
    ['event_type', 'severity']
)

AUDIT_WRITE_FAILURES = Counter(
    'driftguard_audit_write_failures_total',
    'Audit ledger writes that failed to persist'
)

INTEGRITY_VIOLATION_COUNTER = Counter(
    'driftguard_integrity_violations_total',
    'Integrity verification runs that found violations'
)


def setup_tracing(settings: Settings) -> Optional[trace.Tracer]:
    """
    Install an OTLP-exporting tracer provider tagged with the service name
    and environment. Does nothing unless ENABLE_TRACING is set.
    """
    if not settings.ENABLE_TRACING:
        logger.info("OpenTelemetry tracing is disabled")
        return None

    resource = Resource.create({
        "service.name": settings.PROJECT_NAME.lower(),
        "service.version": settings.VERSION,
        "deployment.environment": settings.ENVIRONMENT,
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.OTLP_ENDPOINT, insecure=True))
    )
    trace.set_tracer_provider(provider)

    logger.info(f"OpenTelemetry tracing exporting to {settings.OTLP_ENDPOINT}")
    return trace.get_tracer(TRACER_NAME)


@contextmanager
def timed_execution(
    metric: Histogram,
    labels: Dict[str, str] = None
) -> Generator[None, None, None]:
    """
    Record the duration of the enclosed block in a histogram

    Args:
        metric: Prometheus histogram to record duration
        labels: Labels to apply to the metric
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        if labels:
            metric.labels(**labels).observe(duration)
        else:
            metric.observe(duration)


def track_drift_detection(func: Callable) -> Callable:
    """
    Decorator recording scan metrics and a trace span around drift detection.

    The wrapped coroutine takes the environment as its first argument after
    ``self`` and must return a DriftResult.
    """
    @functools.wraps(func)
    async def wrapper(self, environment: str, *args, **kwargs):
        DRIFT_SCAN_COUNTER.labels(environment=environment).inc()

        tracer = trace.get_tracer(TRACER_NAME)
        with tracer.start_as_current_span("drift_detection") as span:
            span.set_attribute("driftguard.environment", environment)
            with timed_execution(DRIFT_SCAN_DURATION, {"environment": environment}):
                result = await func(self, environment, *args, **kwargs)

            span.set_attribute("driftguard.drift_score", result.drift_score)
            span.set_attribute("driftguard.change_count", len(result.changes))
            for change in result.changes:
                DRIFT_CHANGE_COUNTER.labels(
                    category=change.category.value,
                    impact=change.impact.value
                ).inc()

            return result

    return wrapper


def initialize_metrics(app: FastAPI) -> None:
    """Add the Prometheus middleware and expose /metrics"""
    app.add_middleware(
        PrometheusMiddleware,
        app_name="driftguard",
        prefix="driftguard_http",
        group_paths=True
    )
    app.add_route("/metrics", handle_metrics)

    logger.info("Prometheus metrics initialized")
