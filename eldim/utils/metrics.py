"""Prometheus Metrics - what eldim is doing

Self-Explanatory: Counters/gauges for uploads, backends and auth.
How: prometheus_client default registry, served on /metrics behind Basic Auth.

Metrics Categories:
1. Configuration: loaded clients, backends, recipients
2. Traffic: requests served, uploads per client, bytes received
3. Backends: writes/deletes per backend and result, write latency
4. Security: client auth failures, metrics auth failures
"""

import time
from contextlib import contextmanager
from typing import Iterator

import structlog
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    REGISTRY,
)

from eldim.version import __version__

logger = structlog.get_logger()

# ============================================================================
# CONFIGURATION METRICS
# ============================================================================

loaded_clients = Gauge(
    "eldim_loaded_clients",
    "Number of clients loaded from the client roster",
)

loaded_backends = Gauge(
    "eldim_loaded_backends",
    "Number of storage backends configured",
    ["protocol"],
)

loaded_recipients = Gauge(
    "eldim_loaded_recipients",
    "Number of age recipients every upload is encrypted for",
    ["kind"],  # age, ssh
)

# ============================================================================
# TRAFFIC METRICS
# ============================================================================

http_requests_served_total = Counter(
    "eldim_http_requests_served_total",
    "HTTP requests served",
    ["method", "path", "status"],
)

client_uploads_total = Counter(
    "eldim_client_uploads_total",
    "Uploads accepted per client",
    ["client"],
)

upload_bytes_total = Counter(
    "eldim_upload_bytes_total",
    "Plaintext bytes received per client",
    ["client"],
)

upload_outcomes_total = Counter(
    "eldim_upload_outcomes_total",
    "Terminal state of upload requests",
    ["outcome"],  # success or an error code (authentication_failed, upload_too_large, ...)
)

# ============================================================================
# BACKEND METRICS
# ============================================================================

backend_writes_total = Counter(
    "eldim_backend_writes_total",
    "Object writes per backend",
    ["backend", "result"],  # ok, error, timeout, cancelled
)

backend_deletes_total = Counter(
    "eldim_backend_deletes_total",
    "Compensating deletes per backend",
    ["backend", "result"],
)

backend_write_duration_seconds = Histogram(
    "eldim_backend_write_duration_seconds",
    "Time spent writing one object to one backend",
    ["backend"],
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120, 300],
)

# ============================================================================
# SECURITY METRICS
# ============================================================================

auth_failures_total = Counter(
    "eldim_auth_failures_total",
    "Upload requests that matched no client",
    ["reason"],  # unknown_ip, no_match
)

metrics_auth_failures_total = Counter(
    "eldim_metrics_auth_failures_total",
    "Failed HTTP Basic Auth attempts on /metrics",
)

encryption_operations_total = Counter(
    "eldim_encryption_operations_total",
    "age encryption/decryption operations",
    ["operation", "result"],
)

build_info = Info(
    "eldim_build",
    "eldim build information",
)

build_info.info({"version": __version__})

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def record_configuration(clients: int, backends_by_protocol: dict, age_ids: int, ssh_keys: int):
    """Set gauges that describe the loaded configuration"""
    loaded_clients.set(clients)
    for protocol, count in backends_by_protocol.items():
        loaded_backends.labels(protocol=protocol).set(count)
    loaded_recipients.labels(kind="age").set(age_ids)
    loaded_recipients.labels(kind="ssh").set(ssh_keys)


def record_upload(client: str, size: int):
    client_uploads_total.labels(client=client).inc()
    upload_bytes_total.labels(client=client).inc(size)


def record_outcome(outcome: str):
    upload_outcomes_total.labels(outcome=outcome).inc()


@contextmanager
def track_backend_write(backend: str) -> Iterator[None]:
    """Observe write latency for one backend, success or not"""
    start_time = time.time()
    try:
        yield
    finally:
        backend_write_duration_seconds.labels(backend=backend).observe(time.time() - start_time)


def get_metrics_text() -> bytes:
    """Get Prometheus metrics in text format"""
    return generate_latest(REGISTRY)


logger.info("Prometheus metrics initialized")
