"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging
    errors      — exception hierarchy & handlers
    middleware  — request id / timing middleware
    health      — health check aggregation
    database    — async SQLAlchemy engine & sessions
    cache       — Redis preference cache
"""
