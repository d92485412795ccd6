"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name: str, documentation: str, labelnames=()):
    # Re-importing the module (tests, reloads) must not register twice
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook metrics
webhook_events_counter = _counter(
    'mindsync_webhook_events_total',
    'Total number of webhook events received',
    ['provider', 'event_type', 'status']
)

# Billing metrics
checkout_sessions_counter = _counter(
    'mindsync_checkout_sessions_total',
    'Total number of checkout session requests',
    ['status']
)

# Account lifecycle metrics
users_archived_counter = _counter(
    'mindsync_users_archived_total',
    'Total number of user records archived before deletion',
    ['source']
)
