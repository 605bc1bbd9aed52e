"""
Remote API Client for the clinic backend
Thin requests-based wrapper exposing per-entity CRUD calls and a health check
"""
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
import logging

import requests

from clinic_core.errors import TransientNetworkError, PermanentRemoteError

logger = logging.getLogger(__name__)


# Entity type -> REST collection
DEFAULT_ENDPOINTS = {
    "patient": "/api/patients",
    "appointment": "/api/appointments",
    "xray": "/api/images",
    "image": "/api/images",
    "event": "/api/events",
}

HEALTH_ENDPOINT = "/api/health"

# Client errors that still mean "try again later"
RETRYABLE_CLIENT_STATUSES = {408, 425, 429}


@dataclass
class APIConfig:
    """Configuration for the remote API connection"""
    api_name: str = "clinic"
    base_url: str = "http://localhost:5059"
    api_key: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    timeout: float = 10.0
    endpoints: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ENDPOINTS))


class RemoteAPIClient:
    """
    Remote system contract consumed by the sync layer.

    Every call either returns the decoded JSON body or raises:
    - TransientNetworkError for timeouts, connection errors, 5xx, 408/429
    - PermanentRemoteError for any other non-2xx status

    Usage:
        client = RemoteAPIClient(APIConfig(base_url="https://api.example.com"))
        patient = client.create("patient", {"name": "X"})
    """

    def __init__(self, config: APIConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if config.headers:
            self.session.headers.update(config.headers)

        if config.api_key:
            self._set_auth_header()

    def _set_auth_header(self):
        """Bearer token authentication"""
        self.session.headers["Authorization"] = f"Bearer {self.config.api_key}"

    def endpoint_for(self, entity: str) -> str:
        """Resolve the collection path for an entity type."""
        endpoint = self.config.endpoints.get(entity)
        if endpoint is None:
            # Unknown entity types follow the plural REST convention
            endpoint = f"/api/{entity}s"
        return endpoint

    # =========================================================================
    # ENTITY OPERATIONS
    # =========================================================================

    def list(self, entity: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Fetch the entity collection, optionally filtered by query params."""
        params = {k: v for k, v in (filters or {}).items() if v not in (None, "")}
        data = self._make_request(self.endpoint_for(entity), params=params or None)

        if data is None:
            return []
        if isinstance(data, dict):
            # Accept {"patients": [...]} / {"data": [...]} envelopes
            for key in (f"{entity}s", "data", "items"):
                if isinstance(data.get(key), list):
                    return data[key]
        if not isinstance(data, list):
            raise PermanentRemoteError(
                f"Unexpected list payload for {entity}",
                endpoint=self.endpoint_for(entity),
            )
        return data

    def create(
        self,
        entity: str,
        data: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Create a record; returns the stored record if the server echoes it."""
        return self._make_request(
            self.endpoint_for(entity),
            method="POST",
            data=data,
            idempotency_key=idempotency_key,
        )

    def update(
        self,
        entity: str,
        record_id: str,
        data: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Update a record by id."""
        return self._make_request(
            f"{self.endpoint_for(entity)}/{record_id}",
            method="PUT",
            data=data,
            idempotency_key=idempotency_key,
        )

    def delete(
        self,
        entity: str,
        record_id: str,
        idempotency_key: Optional[str] = None,
    ) -> None:
        """Delete a record by id."""
        self._make_request(
            f"{self.endpoint_for(entity)}/{record_id}",
            method="DELETE",
            idempotency_key=idempotency_key,
        )

    def health_check(self) -> bool:
        """Active liveness probe against the backend."""
        try:
            self._make_request(HEALTH_ENDPOINT)
            return True
        except (TransientNetworkError, PermanentRemoteError) as e:
            logger.debug(f"Health check failed: {e}")
            return False

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    def _make_request(
        self,
        endpoint: str,
        method: str = "GET",
        params: Optional[Dict] = None,
        data: Optional[Dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """
        Make HTTP request with error classification

        Args:
            endpoint: API endpoint (appended to base_url)
            method: HTTP method (GET, POST, etc.)
            params: Query parameters
            data: Request body data
            idempotency_key: Sent as Idempotency-Key so replays are safe

        Returns:
            Decoded JSON body, or None for empty/204 responses
        """
        url = f"{self.config.base_url.rstrip('/')}{endpoint}"
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=data,
                headers=headers,
                timeout=self.config.timeout
            )
        except requests.exceptions.Timeout as e:
            raise TransientNetworkError(
                f"{self.config.api_name} request timed out: {e}", endpoint=endpoint
            )
        except requests.exceptions.RequestException as e:
            raise TransientNetworkError(
                f"{self.config.api_name} request failed: {e}", endpoint=endpoint
            )

        status = response.status_code
        if status >= 500 or status in RETRYABLE_CLIENT_STATUSES:
            raise TransientNetworkError(
                f"HTTP {status}: {response.reason}", endpoint=endpoint, status_code=status
            )
        if status >= 400:
            raise PermanentRemoteError(
                f"HTTP {status}: {response.reason}", endpoint=endpoint, status_code=status
            )

        if status == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError:
            raise TransientNetworkError(
                f"Invalid JSON from {self.config.api_name}", endpoint=endpoint, status_code=status
            )
