"""
HTTP surface of the ECA server.

This module provides:
- Webhook authentication (bearer secret, scoped API keys)
- The webhook ingestion pipeline and its response envelopes
- Read and analytics routes (api.routes) and the FastAPI app factory
  (api.app.create_app)

Invariants:
    - Every webhook response is a success or failure envelope
    - Business errors map to 4xx, store and deadline failures to 5xx
"""

from .auth import Caller, WebhookAuthenticator, hash_api_key
from .settings import ApiKeyConfig, Settings
from .webhook import WebhookPipeline

__all__ = [
    "Settings",
    "ApiKeyConfig",
    "WebhookAuthenticator",
    "Caller",
    "hash_api_key",
    "WebhookPipeline",
]
