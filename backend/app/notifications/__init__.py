"""
notifications — Multi-channel notification delivery engine.

Sub-modules:
    channels/      — Per-channel delivery adapters (email, SMS, push, in-app)
    orchestrator   — Send pipeline, state machine, retry policy
    scheduler      — Retry scheduler & rate-window reaper background jobs
    engine         — Composition root used by the API layer
    store          — Notification records, claims and transitions
    event_log      — Append-only lifecycle history
    preferences    — Per-user channel/category preferences (Redis-cached)
    rate_limiter   — Daily per-user counters
    registry       — Per-user delivery endpoints
    templates      — Mustache-style renderer and template storage
    webhooks       — Provider callback authentication & normalisation
    models         — Enums and data structures shared across the engine
    records        — SQLAlchemy tables
"""
