"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — console / JSON logging with request context
    errors      — exception hierarchy & handlers
    middleware  — request logging and correlation IDs
    health      — service health check aggregation
    database    — async SQLAlchemy engine and sessions
    cache       — Redis cache layer
"""
