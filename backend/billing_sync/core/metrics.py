"""Prometheus metrics for the application"""
from prometheus_client import Counter, Histogram, REGISTRY

# Webhook metrics
try:
    webhook_events_counter = Counter(
        'billing_sync_webhook_events_total',
        'Total number of webhook deliveries by ledger outcome',
        ['outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('billing_sync_webhook_events_total')

try:
    webhook_rejections_counter = Counter(
        'billing_sync_webhook_rejections_total',
        'Total number of webhook deliveries rejected at the codec',
        ['reason']
    )
except ValueError:
    webhook_rejections_counter = REGISTRY._names_to_collectors.get('billing_sync_webhook_rejections_total')

# Reconciler metrics
try:
    reconcile_conflicts_counter = Counter(
        'billing_sync_reconcile_conflicts_total',
        'Total number of optimistic-lock conflicts during apply'
    )
except ValueError:
    reconcile_conflicts_counter = REGISTRY._names_to_collectors.get('billing_sync_reconcile_conflicts_total')

try:
    reconcile_duration_histogram = Histogram(
        'billing_sync_reconcile_duration_seconds',
        'Time spent applying one event, retries included',
        ['source']
    )
except ValueError:
    reconcile_duration_histogram = REGISTRY._names_to_collectors.get('billing_sync_reconcile_duration_seconds')

try:
    parked_events_counter = Counter(
        'billing_sync_parked_events_total',
        'Parked event lifecycle transitions',
        ['status']
    )
except ValueError:
    parked_events_counter = REGISTRY._names_to_collectors.get('billing_sync_parked_events_total')

try:
    review_flags_counter = Counter(
        'billing_sync_review_flags_total',
        'Total number of records flagged for manual review',
        ['reason']
    )
except ValueError:
    review_flags_counter = REGISTRY._names_to_collectors.get('billing_sync_review_flags_total')

# Collaborator metrics
try:
    provider_errors_counter = Counter(
        'billing_sync_provider_errors_total',
        'Total number of failed billing provider calls',
        ['operation', 'kind']
    )
except ValueError:
    provider_errors_counter = REGISTRY._names_to_collectors.get('billing_sync_provider_errors_total')

try:
    cache_invalidation_failures_counter = Counter(
        'billing_sync_cache_invalidation_failures_total',
        'Total number of failed best-effort cache invalidations'
    )
except ValueError:
    cache_invalidation_failures_counter = REGISTRY._names_to_collectors.get('billing_sync_cache_invalidation_failures_total')

# Background job metrics
try:
    ledger_purged_counter = Counter(
        'billing_sync_ledger_purged_total',
        'Total number of idempotency records purged after the retention window'
    )
except ValueError:
    ledger_purged_counter = REGISTRY._names_to_collectors.get('billing_sync_ledger_purged_total')
