"""OpenTelemetry metrics and logs for the tokenization engine."""

import logging
from decimal import Decimal

from opentelemetry import metrics
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource

from tokenengine._version import VERSION
from tokenengine.config import Settings, get_settings


# Module-level state
_initialized = False
_meter = None
_log_handler = None

# Counters (cumulative)
_asset_transitions_total = None
_primary_units_sold_total = None
_primary_value_total = None
_resale_trades_total = None
_resale_units_total = None
_listings_total = None
_listings_closed_total = None
_distributions_total = None
_distributed_value_total = None
_payouts_total = None
_sweep_outcomes_total = None
_invariant_violations_total = None


def setup_telemetry(settings: Settings | None = None) -> bool:
    """Initialize OpenTelemetry metrics and the OTLP log handler.

    Returns True if telemetry was initialized, False if disabled.
    """
    global _initialized, _meter, _log_handler
    global _asset_transitions_total, _primary_units_sold_total, _primary_value_total
    global _resale_trades_total, _resale_units_total
    global _listings_total, _listings_closed_total
    global _distributions_total, _distributed_value_total, _payouts_total
    global _sweep_outcomes_total, _invariant_violations_total

    if _initialized:
        return True

    if settings is None:
        settings = get_settings()
    if not settings.otlp_enabled:
        return False

    resource = Resource.create({
        "service.name": "tokenization-engine",
        "service.version": VERSION,
    })

    exporter = OTLPMetricExporter(endpoint=settings.otlp_endpoint)
    reader = PeriodicExportingMetricReader(
        exporter,
        export_interval_millis=settings.otlp_export_interval,
    )
    provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(provider)

    _meter = metrics.get_meter("tokenization_engine", VERSION)

    _asset_transitions_total = _meter.create_counter(
        "engine_asset_transitions_total",
        description="Lifecycle transitions applied to tokenized assets",
        unit="1",
    )
    _primary_units_sold_total = _meter.create_counter(
        "engine_primary_units_sold_total",
        description="Units sold in primary sale windows",
        unit="units",
    )
    _primary_value_total = _meter.create_counter(
        "engine_primary_value_total",
        description="Cash value of primary sales",
        unit="currency",
    )
    _resale_trades_total = _meter.create_counter(
        "engine_resale_trades_total",
        description="Marketplace fills executed",
        unit="1",
    )
    _resale_units_total = _meter.create_counter(
        "engine_resale_units_total",
        description="Units transferred through the marketplace",
        unit="units",
    )
    _listings_total = _meter.create_counter(
        "engine_listings_total",
        description="Marketplace listings created",
        unit="1",
    )
    _listings_closed_total = _meter.create_counter(
        "engine_listings_closed_total",
        description="Listings cancelled or expired",
        unit="1",
    )
    _distributions_total = _meter.create_counter(
        "engine_distributions_total",
        description="Distribution events computed",
        unit="1",
    )
    _distributed_value_total = _meter.create_counter(
        "engine_distributed_value_total",
        description="Revenue allocated to holders",
        unit="currency",
    )
    _payouts_total = _meter.create_counter(
        "engine_payouts_total",
        description="Payout line settlement outcomes",
        unit="1",
    )
    _sweep_outcomes_total = _meter.create_counter(
        "engine_sweep_outcomes_total",
        description="Scheduler sweep results per outcome",
        unit="1",
    )
    _invariant_violations_total = _meter.create_counter(
        "engine_invariant_violations_total",
        description="Ledger invariant violations detected (assets frozen)",
        unit="1",
    )

    # === LOGS ===
    logs_endpoint = settings.otlp_endpoint.replace("/v1/metrics", "/v1/logs")
    log_exporter = OTLPLogExporter(endpoint=logs_endpoint)
    logger_provider = LoggerProvider(resource=resource)
    logger_provider.add_log_record_processor(BatchLogRecordProcessor(log_exporter))
    set_logger_provider(logger_provider)

    _log_handler = LoggingHandler(
        level=logging.INFO,
        logger_provider=logger_provider,
    )

    _initialized = True
    return True


def get_log_handler() -> LoggingHandler | None:
    """Get the OTLP logging handler to attach to Python loggers."""
    return _log_handler


# --- Counter update functions ---

def record_transition(event: str, to_status: str) -> None:
    """Record an asset lifecycle transition."""
    if not _initialized:
        return

    _asset_transitions_total.add(1, {"event": event, "to_status": to_status})


def record_primary_sale(symbol: str, units: int, price: Decimal) -> None:
    if not _initialized:
        return

    attributes = {"symbol": symbol}
    _primary_units_sold_total.add(units, attributes)
    _primary_value_total.add(float(price * units), attributes)


def record_resale(symbol: str, units: int) -> None:
    if not _initialized:
        return

    attributes = {"symbol": symbol}
    _resale_trades_total.add(1, attributes)
    _resale_units_total.add(units, attributes)


def record_listing_created(symbol: str) -> None:
    if not _initialized:
        return

    _listings_total.add(1, {"symbol": symbol})


def record_listing_closed(reason: str) -> None:
    """Record a listing leaving the book without being filled (cancelled/expired)."""
    if not _initialized:
        return

    _listings_closed_total.add(1, {"reason": reason})


def record_distribution(symbol: str, allocated: Decimal) -> None:
    if not _initialized:
        return

    attributes = {"symbol": symbol}
    _distributions_total.add(1, attributes)
    _distributed_value_total.add(float(allocated), attributes)


def record_payout_outcome(outcome: str) -> None:
    """Record a payout line settlement outcome (settled/failed/abandoned)."""
    if not _initialized:
        return

    _payouts_total.add(1, {"outcome": outcome})


def record_sweep(outcome: str, count: int) -> None:
    if not _initialized or count == 0:
        return

    _sweep_outcomes_total.add(count, {"outcome": outcome})


def record_invariant_violation(asset_id: str) -> None:
    if not _initialized:
        return

    _invariant_violations_total.add(1, {"asset_id": asset_id})
