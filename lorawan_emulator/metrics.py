"""
Prometheus Metrics for the emulator sync and provisioning service

Metrics Categories:
- Sync: org-state pulls, push outcomes, credential backfill
- Provisioning: per-step TTN calls, per-device outcomes
- Ingest: webhook uplinks, auth failures
- Locking: emulator lock actions
"""
import time
from typing import Optional
from prometheus_client import (
    Counter, Histogram,
    CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
)

# Create custom registry (allows multiple instances for testing)
registry = CollectorRegistry()

# ============================================================
# Sync Metrics
# ============================================================

org_state_pulls_total = Counter(
    'org_state_pulls_total',
    'Org-state pulls by outcome',
    ['outcome'],
    registry=registry
)

org_state_pull_duration_seconds = Histogram(
    'org_state_pull_duration_seconds',
    'Org-state pull wall-clock duration in seconds',
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    registry=registry
)

push_sync_total = Counter(
    'push_sync_total',
    'Push sync attempts by outcome (success, partial, failed, invalid)',
    ['outcome'],
    registry=registry
)

credential_backfill_total = Counter(
    'credential_backfill_total',
    'Credential backfill results per device',
    ['result'],
    registry=registry
)

# ============================================================
# Provisioning Metrics
# ============================================================

ttn_steps_total = Counter(
    'ttn_steps_total',
    'TTN provisioning steps by step name and result',
    ['step', 'result'],
    registry=registry
)

ttn_devices_total = Counter(
    'ttn_devices_total',
    'TTN provisioning outcomes per device',
    ['operation', 'status'],
    registry=registry
)

# ============================================================
# Ingest Metrics
# ============================================================

uplink_requests_total = Counter(
    'uplink_requests_total',
    'Total uplink webhook requests by resulting status',
    ['status'],
    registry=registry
)

webhook_auth_failures_total = Counter(
    'webhook_auth_failures_total',
    'Webhook secret verification failures',
    ['reason'],
    registry=registry
)

uplink_write_failures_total = Counter(
    'uplink_write_failures_total',
    'Best-effort uplink writes that failed, by target table',
    ['table'],
    registry=registry
)

uplink_processing_duration_seconds = Histogram(
    'uplink_processing_duration_seconds',
    'Uplink processing duration in seconds',
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=registry
)

# ============================================================
# Lock Metrics
# ============================================================

emulator_lock_actions_total = Counter(
    'emulator_lock_actions_total',
    'Emulator lock actions by action and result',
    ['action', 'result'],
    registry=registry
)

# ============================================================
# Helper Functions
# ============================================================

class MetricsTimer:
    """Context manager for timing operations"""

    def __init__(self, histogram, labels: Optional[dict] = None):
        self.histogram = histogram
        self.labels = labels or {}
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self.start_time
        if self.labels:
            self.histogram.labels(**self.labels).observe(duration)
        else:
            self.histogram.observe(duration)


def track_pull(outcome: str, duration_ms: Optional[int] = None):
    """Track org-state pull"""
    org_state_pulls_total.labels(outcome=outcome).inc()
    if duration_ms is not None:
        org_state_pull_duration_seconds.observe(duration_ms / 1000.0)


def track_push(outcome: str):
    """Track push sync outcome"""
    push_sync_total.labels(outcome=outcome).inc()


def track_backfill(result: str, count: int = 1):
    """Track credential backfill results"""
    credential_backfill_total.labels(result=result).inc(count)


def track_ttn_step(step: str, ok: bool):
    """Track one TTN provisioning step"""
    ttn_steps_total.labels(step=step, result="ok" if ok else "failed").inc()


def track_ttn_device(operation: str, status: str):
    """Track a per-device provisioning outcome"""
    ttn_devices_total.labels(operation=operation, status=status).inc()


def track_uplink(status: str):
    """Track uplink request"""
    uplink_requests_total.labels(status=status).inc()


def track_webhook_auth_failure(reason: str):
    """Track webhook secret failure"""
    webhook_auth_failures_total.labels(reason=reason).inc()


def track_uplink_write_failure(table: str):
    """Track a failed best-effort write"""
    uplink_write_failures_total.labels(table=table).inc()


def track_lock_action(action: str, result: str):
    """Track emulator lock action"""
    emulator_lock_actions_total.labels(action=action, result=result).inc()


def get_metrics_text() -> bytes:
    """Get metrics in Prometheus text format"""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    """Get Prometheus content type"""
    return CONTENT_TYPE_LATEST
