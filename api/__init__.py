"""
HTTP API for the order event broker.

This package provides a single FastAPI application that exposes:
- Event ingestion and log reads for producers
- Subscription management for consumers
- Delivery audit, dead-letter retry and replay for operators
"""

from api.main import app, create_app

__all__ = ["app", "create_app"]
