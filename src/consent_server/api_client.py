"""
Events API client for the consent server.

All OAuth decisions that matter (request parsing, PKCE binding, grant
persistence, code issuance) are made by the Tampa.dev events API. This
module is the consent server's only way of reaching it: each call opens a
short-lived ``httpx.AsyncClient`` with the configured timeout, forwards the
browser's session cookie, and converts the JSON reply into a typed result.

Transport failures and malformed replies raise ``ApiCommunicationError``;
the raw detail goes to the log, never to the browser.
"""

from typing import Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel

from ..shared.config import ConsentServerConfig
from ..shared.logging_utils import OAuthLogger
from ..shared.oauth_models import (
    AuthorizationRequest,
    AuthUser,
    CompleteResponse,
    CompletionResult,
    OAuthGrant,
    ParseRequestResponse,
    ParseResult,
)

logger = OAuthLogger("CONSENT-SERVER")


class ApiCommunicationError(Exception):
    """The events API could not be reached or sent an unusable reply."""

    def __init__(self, path: str, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"{path}: {detail}")


class _CurrentUserResponse(BaseModel):
    user: Optional[AuthUser] = None


class _GrantListResponse(BaseModel):
    grants: List[OAuthGrant] = []


class EventsApiClient:
    """
    Async client for the events API's auth and internal OAuth endpoints.

    Holds configuration only; no connection or response state outlives a
    single call.
    """

    def __init__(self, config: ConsentServerConfig,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            config: Consent server configuration (API host, timeout)
            transport: Optional httpx transport, e.g. ``httpx.MockTransport``
        """
        self.base_url = config.events_api_url
        self.timeout = config.request_timeout_seconds
        self.transport = transport

    def _headers(self, cookie: Optional[str], json_body: bool = False) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if json_body:
            headers["Content-Type"] = "application/json"
        if cookie:
            headers["Cookie"] = cookie
        return headers

    async def _request(self, method: str, path: str, cookie: Optional[str],
                       json_body: Optional[dict] = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                if method == "GET":
                    response = await client.get(url, headers=self._headers(cookie))
                elif method == "POST":
                    response = await client.post(
                        url, json=json_body, headers=self._headers(cookie, json_body=True)
                    )
                else:
                    response = await client.request(method, url, headers=self._headers(cookie))
        except httpx.HTTPError as e:
            logger.log_api_call(method, path, {"error": type(e).__name__, "detail": str(e)}, success=False)
            raise ApiCommunicationError(path, str(e)) from e

        logger.log_api_call(method, path, {"status_code": response.status_code},
                            success=response.status_code < 400)
        return response

    @staticmethod
    def _decode(path: str, response: httpx.Response, model):
        try:
            return model.model_validate(response.json())
        except ValueError as e:
            # json.JSONDecodeError and pydantic.ValidationError are both ValueErrors
            raise ApiCommunicationError(path, f"unusable response body: {e}") from e

    async def fetch_current_user(self, cookie: Optional[str]) -> Optional[AuthUser]:
        """
        Resolve the signed-in user from the forwarded session cookie.

        Args:
            cookie: Raw ``Cookie`` header from the browser

        Returns:
            Optional[AuthUser]: The user, or None when not signed in
        """
        path = "/auth/me"
        response = await self._request("GET", path, cookie)
        if response.status_code != 200:
            return None
        return self._decode(path, response, _CurrentUserResponse).user

    async def parse_request(self, url: str, cookie: Optional[str]) -> ParseResult:
        """
        Ask the API to parse a raw authorization URL.

        The API also looks up the client and any existing grant for the
        signed-in user. It drops ``nonce``; callers re-read it from the URL.

        Args:
            url: Full authorization URL as received by this server
            cookie: Raw ``Cookie`` header from the browser

        Returns:
            ParseResult: ParseSuccess or ParseFailure
        """
        path = "/oauth/internal/parse-request"
        response = await self._request("POST", path, cookie, json_body={"url": url})
        return self._decode(path, response, ParseRequestResponse).to_result()

    async def complete_authorization(self,
                                     oauth_request: AuthorizationRequest,
                                     user_id: str,
                                     approved_scopes: List[str],
                                     cookie: Optional[str]) -> CompletionResult:
        """
        Ask the API to record the grant and mint an authorization code.

        Args:
            oauth_request: Parsed request, nonce already re-injected
            user_id: Approving user
            approved_scopes: Exact scopes the user approved
            cookie: Raw ``Cookie`` header from the browser

        Returns:
            CompletionResult: CompletionSuccess carrying the redirect target,
            or CompletionFailure
        """
        path = "/oauth/internal/complete"
        body = {
            "oauthRequest": oauth_request.to_api(),
            "userId": user_id,
            "approvedScopes": list(approved_scopes),
        }
        response = await self._request("POST", path, cookie, json_body=body)
        return self._decode(path, response, CompleteResponse).to_result()

    async def list_grants(self, user_id: str, cookie: Optional[str]) -> List[OAuthGrant]:
        """List apps the user has authorized; empty on a non-200 reply."""
        path = f"/oauth/internal/grants/{quote(user_id, safe='')}"
        response = await self._request("GET", path, cookie)
        if response.status_code != 200:
            return []
        return self._decode(path, response, _GrantListResponse).grants

    async def revoke_grant(self, user_id: str, grant_id: str, cookie: Optional[str]) -> bool:
        """Revoke one grant; True when the API accepted the revocation."""
        path = f"/oauth/internal/grants/{quote(user_id, safe='')}/{quote(grant_id, safe='')}"
        response = await self._request("DELETE", path, cookie)
        return 200 <= response.status_code < 300
