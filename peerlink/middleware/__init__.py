"""
Middleware package for the FastAPI application.
"""
from peerlink.middleware.auth import APIKeyMiddleware

__all__ = ['APIKeyMiddleware']
