"""
OTW Dispatch.

Delivery request lifecycle, pricing and throttling for the OTW delivery service.
"""

__version__ = "0.1.0"
