"""Prometheus metrics for VM lifecycle operations."""
from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

operation_duration = Histogram(
    "qemuvm_operation_seconds",
    "Duration of VM lifecycle operations",
    ["operation", "status"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, float("inf")),
)

operation_errors = Counter(
    "qemuvm_operation_errors_total",
    "Total VM lifecycle operation errors",
    ["operation", "error_type"],
)

hypervisor_request_duration = Histogram(
    "qemuvm_hypervisor_request_seconds",
    "Duration of hypervisor API requests",
    ["method", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
)

parallel_slots_in_use = Gauge(
    "qemuvm_parallel_slots_in_use",
    "Concurrency gate slots currently held",
)
