"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

# Webhook metrics
try:
    webhook_events_counter = Counter(
        'storefront_webhook_events_total',
        'Total number of verified Stripe webhook events handled',
        ['event_type', 'outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('storefront_webhook_events_total')

try:
    webhook_rejections_counter = Counter(
        'storefront_webhook_rejections_total',
        'Total number of webhook deliveries rejected before processing',
        ['reason']
    )
except ValueError:
    webhook_rejections_counter = REGISTRY._names_to_collectors.get('storefront_webhook_rejections_total')

# Checkout metrics
try:
    checkout_sessions_counter = Counter(
        'storefront_checkout_sessions_total',
        'Total number of checkout sessions created',
        ['kind', 'mode']
    )
except ValueError:
    checkout_sessions_counter = REGISTRY._names_to_collectors.get('storefront_checkout_sessions_total')

# Refund metrics
try:
    refund_outcomes_counter = Counter(
        'storefront_refund_outcomes_total',
        'Refund request decisions and execution outcomes',
        ['outcome']
    )
except ValueError:
    refund_outcomes_counter = REGISTRY._names_to_collectors.get('storefront_refund_outcomes_total')

# Chat platform side effects
try:
    platform_failures_counter = Counter(
        'storefront_platform_failures_total',
        'Best-effort chat platform actions that failed',
        ['action']
    )
except ValueError:
    platform_failures_counter = REGISTRY._names_to_collectors.get('storefront_platform_failures_total')
