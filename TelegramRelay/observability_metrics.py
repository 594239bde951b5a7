from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


# ----------------------------
# Streams (live + backfill)
# ----------------------------
relay_events_seen_total = Counter(
    "relay_events_seen_total",
    "Raw Telegram events observed, by source stream.",
    ["source"],
)

relay_events_skipped_total = Counter(
    "relay_events_skipped_total",
    "Raw events dropped by the classifier.",
    ["source", "reason"],
)

relay_events_relayed_total = Counter(
    "relay_events_relayed_total",
    "Classified events handed to the webhook, by kind.",
    ["kind"],
)

backfill_pages_fetched_total = Counter(
    "backfill_pages_fetched_total",
    "History pages fetched by the backfill paginator.",
)

backfill_runs_total = Counter(
    "backfill_runs_total",
    "Backfill runs by outcome.",
    ["outcome"],
)


# ----------------------------
# Webhook delivery
# ----------------------------
webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Webhook delivery outcomes after the retry policy (ok/failed).",
    ["kind", "outcome"],
)

webhook_attempts_total = Counter(
    "webhook_attempts_total",
    "Individual webhook POST attempts by reason.",
    ["reason"],
)

webhook_delivery_seconds = Histogram(
    "webhook_delivery_seconds",
    "Latency of single webhook POST attempts.",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0),
)


# ----------------------------
# Orchestrator
# ----------------------------
relay_state = Gauge(
    "relay_state",
    "1 for the orchestrator's current state, 0 otherwise.",
    ["state"],
)

swallowed_exceptions_total = Counter(
    "swallowed_exceptions_total",
    "Exceptions suppressed on best-effort paths.",
    ["context", "exception_type"],
)
