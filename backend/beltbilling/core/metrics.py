"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name: str, documentation: str, labels=()):
    # Module may be imported more than once under test runners; reuse the collector
    try:
        return Counter(name, documentation, list(labels))
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook ingestion
webhook_received_counter = _counter(
    'beltbilling_webhook_events_received_total',
    'Webhook events accepted for processing',
    ['gateway']
)
webhook_duplicate_counter = _counter(
    'beltbilling_webhook_duplicates_total',
    'Webhook deliveries collapsed onto an existing event',
    ['gateway']
)
webhook_rejected_counter = _counter(
    'beltbilling_webhook_rejected_total',
    'Webhook requests rejected before persistence',
    ['gateway', 'reason']
)
webhook_processed_counter = _counter(
    'beltbilling_webhook_events_processed_total',
    'Webhook processing attempts by outcome',
    ['gateway', 'outcome']
)

# Credentials
token_refresh_counter = _counter(
    'beltbilling_gateway_token_refresh_total',
    'Token endpoint requests by outcome',
    ['gateway', 'outcome']
)

# Subscription lifecycle
subscription_transition_counter = _counter(
    'beltbilling_subscription_transitions_total',
    'Subscription status transitions',
    ['from_status', 'to_status']
)

# Background sweeps
scheduler_runs_counter = _counter(
    'beltbilling_scheduler_runs_total',
    'Total number of background sweep runs',
    ['task', 'status']
)
