"""
API module for SyncDB.

This module provides the external interface:
- Dispatcher: runs a batch of method calls against one engine
- HTTP server: JSON envelope over aiohttp

Invariants:
    - Every request reaches the engine through the Dispatcher
    - Malformed requests are rejected before any method runs

How to change safely:
    - Add verbs to the typed method table, not ad-hoc routes
    - Keep HTTP handlers free of engine logic
"""

from .dispatch import (
    ERROR_NOT_JSON,
    ERROR_NOT_REQUEST,
    Dispatcher,
    MethodId,
    MethodTableError,
    RequestError,
    Verb,
)
from .http_server import HttpServer, create_http_app

__all__ = [
    "Dispatcher",
    "MethodId",
    "Verb",
    "RequestError",
    "MethodTableError",
    "ERROR_NOT_JSON",
    "ERROR_NOT_REQUEST",
    "HttpServer",
    "create_http_app",
]
