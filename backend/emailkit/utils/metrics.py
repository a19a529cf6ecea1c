"""
Prometheus metrics definitions for the API and Celery workers.
All metrics are registered here and can be imported by other modules.
"""
from prometheus_client import Counter, Histogram, Gauge

# HTTP request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'path'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Error metrics
errors_total = Counter(
    'errors_total',
    'Total errors',
    ['error_type']
)

# Usage ledger metrics
usage_events_recorded_total = Counter(
    'usage_events_recorded_total',
    'Total usage events recorded',
    ['kind']
)

usage_record_failures_total = Counter(
    'usage_record_failures_total',
    'Total usage events that could not be recorded'
)

# Reporting metrics
usage_reports_total = Counter(
    'usage_reports_total',
    'Total usage reports sent to the payment provider',
    ['channel', 'status']
)

usage_credits_reported_total = Counter(
    'usage_credits_reported_total',
    'Total credits acknowledged by the payment provider',
    ['channel']
)

usage_report_cycle_duration_seconds = Histogram(
    'usage_report_cycle_duration_seconds',
    'Usage reporting cycle duration in seconds',
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

usage_report_cycles_skipped_total = Counter(
    'usage_report_cycles_skipped_total',
    'Reporting ticks skipped because a cycle was still running'
)

usage_report_cycle_in_progress = Gauge(
    'usage_report_cycle_in_progress',
    'Whether a usage reporting cycle is currently running'
)

# Credit gate metrics
credit_checks_total = Counter(
    'credit_checks_total',
    'Total pre-flight credit checks',
    ['result']
)

# Celery worker metrics
worker_tasks_processing = Gauge(
    'worker_tasks_processing',
    'Number of Celery tasks currently running',
    ['task']
)

worker_tasks_completed_total = Counter(
    'worker_tasks_completed_total',
    'Total Celery tasks completed',
    ['task', 'status']
)

worker_tasks_failed_total = Counter(
    'worker_tasks_failed_total',
    'Total Celery tasks failed',
    ['task']
)
