"""Prometheus metrics."""

from prometheus_client import Counter, Histogram

# Setup metrics
audit_setups = Counter(
    "ciphertrail_audit_setups_total",
    "Total audit setups",
    ["dialect", "status"],
)

audit_setup_duration = Histogram(
    "ciphertrail_audit_setup_duration_seconds",
    "Audit setup duration",
    ["dialect"],
)

audit_batch_size = Histogram(
    "ciphertrail_audit_batch_tables",
    "Tables per batch setup request",
    buckets=(1, 3, 5, 10, 25, 50, 100),
)

# Removal metrics
audit_removals = Counter(
    "ciphertrail_audit_removals_total",
    "Total audit removals",
    ["dialect", "status"],
)

# Read path metrics
decrypt_attempts = Counter(
    "ciphertrail_decrypt_attempts_total",
    "Decryption attempts against audit tables",
    ["result"],
)

# Operational event metrics
system_events = Counter(
    "ciphertrail_system_events_total",
    "Operational events logged",
    ["action", "success"],
)

system_event_errors = Counter(
    "ciphertrail_system_event_errors_total",
    "Operational events that could not be written",
)
