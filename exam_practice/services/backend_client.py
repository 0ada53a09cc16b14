"""
services/backend_client.py

HTTP access to the platform backend (question bank, identity, finance,
practice-test records).

Public API:
  - BackendClient.get_collection(path, params) -> List[dict]
  - BackendClient.get_json / post_json / patch_json
  - BackendClient.login(username, password) -> Identity
  - unwrap_collection(data) -> List[dict]
  - iri(kind, id) -> "/api/<kind>/<id>"

Every transport or HTTP-status failure surfaces as BackendError so callers
only ever catch one exception type at the network boundary.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from jose import JWTError, jwt

from config import API_URL, HTTP_TIMEOUT
from exam_practice.models.session_state import Identity

logger = logging.getLogger(__name__)

LD_JSON = "application/ld+json"
MERGE_PATCH_JSON = "application/merge-patch+json"


class BackendError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class VerificationRequired(BackendError):
    """Login refused because the account email is not verified yet."""


def unwrap_collection(data: Any) -> List[dict]:
    """Plain array, or a collection wrapper exposing `hydra:member` / `member`."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        members = data.get("hydra:member")
        if members is None:
            members = data.get("member")
        if isinstance(members, list):
            return members
    return []


def iri(kind: str, resource_id: int) -> str:
    return f"/api/{kind}/{resource_id}"


def _error_message(response: httpx.Response, default: str) -> str:
    """Extract the server's error text (hydra:description > detail > message > error)."""
    try:
        body = response.json()
    except ValueError:
        text = response.text[:100]
        return f"Server error ({response.status_code}): {text}" if text else default
    if isinstance(body, dict):
        for key in ("hydra:description", "detail", "message", "error"):
            if body.get(key):
                return str(body[key])
    return default


class BackendClient:
    """Authenticated JSON client; one instance per logged-in user."""

    def __init__(
        self,
        token: Optional[str] = None,
        *,
        base_url: str = API_URL,
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.token = token
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Accept": LD_JSON}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        default_error: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        try:
            response = await self._client.request(
                method, path, json=json, params=params, headers=self._headers(headers),
            )
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} network error: {e}")
            raise BackendError(f"Network error: {e}") from e

        if response.is_error:
            message = _error_message(response, default_error)
            logger.warning(f"{method} {path} -> {response.status_code}: {message}")
            raise BackendError(message, response.status_code)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"Invalid JSON from {path}", response.status_code) from e

    # ── Generic verbs ──────────────────────────────────────────────────────

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params=params, default_error=f"Failed to load {path}")

    async def get_collection(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[dict]:
        return unwrap_collection(await self.get_json(path, params=params))

    async def post_json(self, path: str, payload: Any, content_type: str = LD_JSON) -> Any:
        return await self._request(
            "POST", path, json=payload,
            headers={"Content-Type": content_type},
            default_error=f"Request to {path} failed",
        )

    async def patch_json(self, path: str, payload: Any) -> Any:
        return await self._request(
            "PATCH", path, json=payload,
            headers={"Content-Type": MERGE_PATCH_JSON},
            default_error=f"Update of {path} failed",
        )

    # ── Identity ───────────────────────────────────────────────────────────

    async def login(self, username: str, password: str) -> Identity:
        """Exchange credentials for a bearer token and decode its claims."""
        try:
            data = await self._request(
                "POST", "/api/login_check",
                json={"username": username, "password": password},
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                default_error="Invalid credentials",
            )
        except BackendError as e:
            if "verified" in e.message.lower():
                raise VerificationRequired(e.message, e.status_code) from e
            raise

        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise BackendError("Login response did not contain a token")
        identity = decode_identity(token)
        self.token = token
        return identity


def decode_identity(token: str) -> Identity:
    """
    Read the token's claims without verifying the signature.
    The identity service is trusted; the claims only key local state.
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as e:
        raise BackendError(f"Malformed token: {e}") from e

    user_id = claims.get("id")
    if user_id is None:
        raise BackendError("Token has no user id claim")
    return Identity(
        user_id=int(user_id),
        token=token,
        email=claims.get("email") or claims.get("username") or "",
        first_name=claims.get("firstName") or "",
        last_name=claims.get("lastName") or "",
        roles=list(claims.get("roles") or []),
        is_verified=bool(claims.get("isVerified", True)),
    )
