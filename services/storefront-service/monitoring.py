"""Monitoring and observability setup.

Tracing and metrics are exported over OTLP gRPC when ``OTEL_EXPORT_ENABLED``
is set. With export disabled the SDK providers are still installed, so spans
and instruments work in-process (tests, local runs without a collector).

Exemplars:
----------
Histograms recorded inside an active span (order totals, gateway call
durations) carry exemplars linking the data point to the trace, so a slow
gateway call in Grafana leads straight to the checkout trace in Tempo.
"""
import logging
from opentelemetry import trace, metrics
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource

from config import (
    OTEL_EXPORTER_OTLP_ENDPOINT,
    OTEL_EXPORT_ENABLED,
    PROFILING_ENABLED,
    PYROSCOPE_SERVER,
    SERVICE_NAME,
    ENVIRONMENT,
)

logger = logging.getLogger(__name__)


def init_tracing() -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing.

    Returns:
        Tracer instance
    """
    resource = Resource.create({"service.name": SERVICE_NAME})

    tracer_provider = TracerProvider(resource=resource)
    if OTEL_EXPORT_ENABLED:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        otlp_span_exporter = OTLPSpanExporter(
            endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )
        tracer_provider.add_span_processor(BatchSpanProcessor(otlp_span_exporter))
        logger.info(f"Tracing initialized with endpoint: {OTEL_EXPORTER_OTLP_ENDPOINT}")
    trace.set_tracer_provider(tracer_provider)

    return trace.get_tracer(__name__)


def init_metrics() -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Returns:
        Meter instance
    """
    resource = Resource.create({"service.name": SERVICE_NAME})

    metric_readers = []
    if OTEL_EXPORT_ENABLED:
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

        otlp_metric_exporter = OTLPMetricExporter(
            endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )
        metric_readers.append(PeriodicExportingMetricReader(
            otlp_metric_exporter,
            export_interval_millis=5000
        ))

    meter_provider = MeterProvider(
        resource=resource,
        metric_readers=metric_readers
    )
    metrics.set_meter_provider(meter_provider)

    logger.info("Metrics initialized", extra={"otlp_export": OTEL_EXPORT_ENABLED})

    return metrics.get_meter(__name__)


def init_profiling() -> None:
    """Initialize Pyroscope profiling."""
    if not PROFILING_ENABLED:
        return
    try:
        import pyroscope

        pyroscope.configure(
            application_name=SERVICE_NAME,
            server_address=PYROSCOPE_SERVER,
            tags={"env": ENVIRONMENT}
        )
        logger.info(f"Profiling initialized with server: {PYROSCOPE_SERVER}")
    except Exception as e:
        logger.warning(f"Failed to initialize profiling: {e}")


# Initialize tracer and meter
tracer = init_tracing()
meter = init_metrics()

# Catalog metrics
product_views_counter = meter.create_counter(
    "storefront.products.views",
    description="Product catalog and detail views, by view type (list, detail)",
    unit="1"
)

# Cart metrics
cart_additions_counter = meter.create_counter(
    "storefront.cart.additions",
    description="Items added to carts, by cart owner type (user, guest)",
    unit="1"
)

cart_merge_items_counter = meter.create_counter(
    "storefront.cart.merge_items",
    description="Guest cart lines merged into user carts, by outcome",
    unit="1"
)

# Order metrics
orders_created_counter = meter.create_counter(
    "storefront.orders.created",
    description="Orders created at checkout, by payment method",
    unit="1"
)

order_total_histogram = meter.create_histogram(
    "storefront.orders.total",
    description="Order totals at creation",
    unit="BDT"
)

stock_reservation_failures_counter = meter.create_counter(
    "storefront.orders.stock_reservation_failures",
    description="Checkouts rejected because stock could not be reserved",
    unit="1"
)

order_status_overrides_counter = meter.create_counter(
    "storefront.orders.status_overrides",
    description="Manual order status changes made from the admin panel",
    unit="1"
)

# Payment metrics
payment_initiations_counter = meter.create_counter(
    "storefront.payments.initiations",
    description="Payment session requests, by outcome",
    unit="1"
)

payment_callbacks_counter = meter.create_counter(
    "storefront.payments.callbacks",
    description="Gateway callbacks received, by outcome",
    unit="1"
)

gateway_duration_histogram = meter.create_histogram(
    "storefront.gateway.duration",
    description="Duration of payment gateway calls",
    unit="s"
)

gateway_token_refresh_counter = meter.create_counter(
    "storefront.gateway.token_refreshes",
    description="Gateway token grants, by source of the token in use",
    unit="1"
)

# Security monitoring metrics
auth_failures_counter = meter.create_counter(
    "storefront.auth.failures",
    description="Total number of authentication failures",
    unit="1"
)

auth_attempts_counter = meter.create_counter(
    "storefront.auth.attempts",
    description="Total number of authentication attempts",
    unit="1"
)

rate_limit_exceeded_counter = meter.create_counter(
    "storefront.rate_limit.exceeded",
    description="Total number of rate limit violations",
    unit="1"
)

suspicious_activity_counter = meter.create_counter(
    "storefront.security.suspicious_activity",
    description="Total number of suspicious activity detections",
    unit="1"
)
