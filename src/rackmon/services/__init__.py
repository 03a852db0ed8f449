"""Business-logic layer: resilient upstream fetching, the fallback cascade, storage and the monitoring cycle.

- circuit_breaker.py / retry.py / pagination.py / upstream.py (building blocks for upstream calls)
- external_api.py (ExternalApiClient: breaker + retries + paging + response normalization)
- fallback.py (database -> API -> synthetic cascade)
- store.py (MongoDB-backed TelemetryStore)
- monitoring.py (periodic fetch/store/evaluate loop)
"""

# Import side-effects are intentionally avoided here; modules are imported by routers/services as needed.
