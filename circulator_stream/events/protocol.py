"""
Broker Protocol Utilities
=========================

Logical topic names and the string formatting used for message properties.
"""

from datetime import datetime, timezone

EXTERNAL_SENSOR_DATA = "external-sensor-data"
PROCESSED_SENSOR_DATA = "processed-sensor-data"
SYSTEM_METRICS = "system-metrics"
ALERT_DATA = "alert-data"
PROCESSING_RESULTS = "processing-results"


def format_timestamp(ts: datetime) -> str:
    """
    Format a timestamp as RFC 3339 in UTC.

    Naive datetimes are taken to be UTC.

    Examples:
        >>> format_timestamp(datetime(2025, 1, 2, 3, 4, 5))
        '2025-01-02T03:04:05Z'
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_bool(value: bool) -> str:
    """
    Examples:
        >>> format_bool(True)
        'true'
    """
    return "true" if value else "false"


def format_float(value: float) -> str:
    """
    Examples:
        >>> format_float(0.9)
        '0.90'
    """
    return f"{value:.2f}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
