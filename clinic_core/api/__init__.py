"""
Remote API access for the clinic backend
"""
from .remote_client import APIConfig, RemoteAPIClient, DEFAULT_ENDPOINTS, HEALTH_ENDPOINT

__all__ = ["APIConfig", "RemoteAPIClient", "DEFAULT_ENDPOINTS", "HEALTH_ENDPOINT"]
