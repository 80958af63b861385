"""
delivery — Multi-channel notification delivery engine.

Sub-modules:
    providers/       — Per-provider adapters (simulated, HTTP relay)
    engine           — Facade: submit, status, cancel, webhooks, stats
    dispatcher       — Worker loop: claim, failover, retry, backoff
    registry         — Configured providers and their circuit state
    circuit_breaker  — Closed / open / half-open transitions
    rate_limiter     — Provider and recipient token buckets
    scheduler        — Quiet hours and digest timing
    deduplicator     — Fingerprints and the suppression window
    queue / store    — In-memory backends; sql — SQLAlchemy backends
    templates        — Jinja2 rendering
    models           — Data structures shared across the engine
"""
