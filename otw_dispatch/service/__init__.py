"""
Service layer for OTW Dispatch.

Orchestrates lifecycle, pricing and throttling over the persistence layer.
"""

from .request_service import RequestService

__all__ = ["RequestService"]
