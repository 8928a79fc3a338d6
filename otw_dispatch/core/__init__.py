"""
Core modules for OTW Dispatch.

This package contains the request lifecycle, pricing, rate limiting
and the shared error hierarchy.
"""
