"""HTTP access to the collaborator services (persistence, catalogue, suggestions).

Role:
    CollaboratorClient wraps a requests.Session with the base URL, auth header, and
    timeout from Settings and turns transport/HTTP failures into GatewayError.
    PersistenceGateway exposes the narrow write/read contract the conversation core
    needs; every method maps to one collaborator endpoint.

Error contract:
    - GatewayError: network failure, timeout, non-2xx status, or undecodable body.
    - ConflictError: HTTP 409; callers treat it as "already exists".
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .config import Settings

logger = logging.getLogger("linkwizard.gateway")

RECENT_CAMPAIGN_LIMIT = 10


class GatewayError(Exception):
    """A collaborator call failed; carries the operation name for user-facing messages."""

    def __init__(self, operation: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.status_code = status_code


class ConflictError(GatewayError):
    """The collaborator reported that the resource already exists."""


class CollaboratorClient:
    """Thin JSON client over requests.Session bound to the collaborator base URL."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None) -> None:
        """Purpose: Configure base URL, timeout, and auth header for collaborator calls.
        Inputs/Outputs: Inputs are Settings and an optional pre-built requests.Session.
        Side Effects / State: Creates a requests.Session when none is supplied.
        Dependencies: requests.
        Failure Modes: None at init; errors surface on request.
        If Removed: Gateway and suggestion provider cannot reach collaborators.
        Testing Notes: Pass a MagicMock session and assert URLs/params passed to it.
        """
        # Bind base URL, timeout, and default headers.
        self._base_url = settings.api_base_url.rstrip("/")
        self._timeout = settings.request_timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Accept": "application/json"})
        if settings.api_token:
            self._session.headers.update({"Authorization": f"Bearer {settings.api_token}"})

    def get_json(self, operation: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self._request(operation, "GET", path, params=params)

    def post_json(self, operation: str, path: str, payload: Dict[str, Any]) -> Any:
        return self._request(operation, "POST", path, json=payload)

    def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> Any:
        """Purpose: Execute one HTTP call and decode its JSON body.
        Inputs/Outputs: Inputs are operation label, method, path, and requests kwargs;
            output is the decoded JSON (None for an empty body).
        Side Effects / State: Network I/O.
        Dependencies: requests.Session.request.
        Failure Modes: 409 raises ConflictError; other transport, status, and decode
            failures raise GatewayError.
        If Removed: No collaborator call can be made.
        Testing Notes: Mock responses with 200/409/500 and a ConnectionError.
        """
        # Send the request, then map status codes to errors.
        url = f"{self._base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("operation=%s method=%s url=%s error=%s", operation, method, url, exc)
            raise GatewayError(operation, str(exc)) from exc

        if response.status_code == 409:
            logger.info("operation=%s status=409 conflict", operation)
            raise ConflictError(operation, "resource already exists", status_code=409)
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            logger.warning("operation=%s status=%s", operation, response.status_code)
            raise GatewayError(operation, f"HTTP {response.status_code}", status_code=response.status_code) from exc

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError(operation, "invalid JSON response", status_code=response.status_code) from exc

    def close(self) -> None:
        self._session.close()


class PersistenceGateway:
    """Narrow persistence contract used by the conversation core."""

    def __init__(self, client: CollaboratorClient) -> None:
        self._client = client

    def check_health(self) -> bool:
        # Health is a probe: any failure means "unhealthy", never an exception.
        try:
            self._client.get_json("Health check", "/health")
        except GatewayError:
            return False
        return True

    def recent_campaign_names(self) -> List[str]:
        """Purpose: Fetch the most recent distinct active campaign names.
        Inputs/Outputs: No inputs; returns up to RECENT_CAMPAIGN_LIMIT names.
        Side Effects / State: Network I/O.
        Dependencies: GET /recent-campaign-names.
        Failure Modes: GatewayError propagates so the retry controller can count it.
        If Removed: The existing-campaign step has nothing to offer.
        Testing Notes: Non-string entries and duplicates are dropped.
        """
        # Keep distinct non-empty names only.
        data = self._client.get_json("Loading recent campaigns", "/recent-campaign-names")
        names: List[str] = []
        for entry in data or []:
            if isinstance(entry, str) and entry.strip() and entry not in names:
                names.append(entry)
        return names[:RECENT_CAMPAIGN_LIMIT]

    def known_tags(self) -> List[str]:
        data = self._client.get_json("Loading tags", "/known-tags")
        return [str(entry["name"]) for entry in data or [] if isinstance(entry, dict) and entry.get("name")]

    def create_tag(self, name: str, user_id: Optional[int], account_id: Optional[int]) -> str:
        """Purpose: Create a tag, returning the stored tag name.
        Inputs/Outputs: Inputs are tag name and owner ids; output is the canonical name.
        Side Effects / State: May insert a tag row on the collaborator.
        Dependencies: POST /tags (idempotent server-side: returns an existing tag).
        Failure Modes: ConflictError on 409; GatewayError on other failures.
        If Removed: Custom tags cannot be created from the conversation.
        Testing Notes: Server returning an existing tag yields that tag's name.
        """
        # Post the tag and prefer the server's spelling.
        data = self._client.post_json(
            "Creating tag",
            "/tags",
            {"name": name, "userId": user_id, "accountId": account_id},
        )
        if isinstance(data, dict) and data.get("name"):
            return str(data["name"])
        return name

    def campaign_tags(self, campaign_name: str) -> List[str]:
        data = self._client.get_json(
            "Loading campaign tags", f"/campaign-tags/{quote(campaign_name, safe='')}"
        )
        return [str(tag) for tag in data or [] if tag]

    def create_landing_page(
        self, campaign_name: str, url: str, label: str, user_id: Optional[int], account_id: Optional[int]
    ) -> Dict[str, Any]:
        data = self._client.post_json(
            "Saving landing page",
            "/landing-pages",
            {
                "campaignName": campaign_name,
                "url": url,
                "label": label,
                "userId": user_id,
                "accountId": account_id,
            },
        )
        return data if isinstance(data, dict) else {}

    def create_tracking_link(
        self, link_payload: Dict[str, Any], user_id: Optional[int], account_id: Optional[int]
    ) -> Dict[str, Any]:
        payload = dict(link_payload)
        payload.update({"userId": user_id, "accountId": account_id})
        data = self._client.post_json("Saving tracking link", "/tracking-links", payload)
        return data if isinstance(data, dict) else {}
