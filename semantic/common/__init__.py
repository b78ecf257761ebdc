"""Common utilities shared across the embedding engine.

Includes:
- ``config``: Pydantic-based engine configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers for embedding and pool activity.

Import pattern:
- from semantic.common.config import EmbedderConfig
- from semantic.common.logging import configure_logging
"""
