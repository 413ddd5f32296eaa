"""
narwhal library service.

Authenticated gRPC service for media libraries.
"""

__version__ = "0.1.0"
