"""
Prometheus metrics for the identity and occupancy core.

Exposes counters for:
- Profile fetches issued by the session resolver
- Session resolutions skipped by de-duplication
- Watchdog timeouts during session initialisation
- Occupancy operations by outcome
- Partial two-sided writes by the side left written
"""

from prometheus_client import Counter, Histogram


# ============================================================================
# Session metrics
# ============================================================================

profile_fetches_total = Counter(
    'societyhub_profile_fetches_total',
    'Profile rows fetched from the record store by the session resolver',
    ['reason']  # 'sign_in', 'sign_up', 'session_change'
)

session_resolutions_deduplicated_total = Counter(
    'societyhub_session_resolutions_deduplicated_total',
    'Session resolutions skipped because the subject was already resolved or in flight',
    ['source']  # 'resolver', 'store'
)

watchdog_timeouts_total = Counter(
    'societyhub_watchdog_timeouts_total',
    'Initial session probes forced out of loading by the watchdog'
)


# ============================================================================
# Occupancy metrics
# ============================================================================

occupancy_operations_total = Counter(
    'societyhub_occupancy_operations_total',
    'Occupancy coordinator operations',
    ['operation', 'outcome']  # outcome: 'success', 'error', 'partial'
)

occupancy_operation_duration_seconds = Histogram(
    'societyhub_occupancy_operation_duration_seconds',
    'Duration of occupancy coordinator operations',
    ['operation'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

partial_writes_total = Counter(
    'societyhub_partial_writes_total',
    'Two-sided writes that left one side written',
    ['side']  # 'profile', 'flat'
)
