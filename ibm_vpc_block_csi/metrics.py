from prometheus_client import Counter, Histogram, start_http_server

from .logging import logger


REQUEST_TOTAL = Counter(
    "csi_request_total",
    "Total number of CSI requests",
    ["method", "status"]
)

REQUEST_LATENCY = Histogram(
    "csi_request_seconds",
    "CSI request latency in seconds",
    ["method"],
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0)
)


def record_request(method, status, latency):
    """Record a finished request with its latency and status"""
    REQUEST_TOTAL.labels(method=method, status=status).inc()
    REQUEST_LATENCY.labels(method=method).observe(latency)


def start_metrics_server(address):
    host, _, port = address.rpartition(":")
    start_http_server(int(port), addr=host or "0.0.0.0")
    logger.info(f"Serving metrics on {address}/metrics")
