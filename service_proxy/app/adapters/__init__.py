"""
Adapters package for the proxy service.

Contains the HTTP client for the upstream Service Map API. The adapter
turns responses and transport errors into typed upstream outcomes and
never raises for upstream failures.
"""

from .servicemap_client import ServiceMapClient

__all__ = [
    "ServiceMapClient",
]
