"""
OAuth 2.1 consent Pydantic models for request/response validation.

This module defines the data models exchanged between the consent server,
the browser and the Tampa.dev events API: parsed authorization requests,
client metadata, existing grants, display groups for the consent screen,
and the tagged result types returned by the backend's internal OAuth
endpoints.

The backend speaks camelCase JSON. Models use snake_case attributes with
camelCase aliases, and are serialized back with ``by_alias=True``.
"""

import json
from typing import List, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .security import InputValidator


class _ApiModel(BaseModel):
    """Base model for payloads exchanged with the events API."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
    )


class AuthorizationRequest(_ApiModel):
    """
    OAuth 2.1 authorization request as parsed by the events API.

    Immutable once parsed. Fields the backend returns that are not modelled
    here are kept, so the request can be handed back to the completion
    endpoint exactly as it was received.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
    )

    response_type: str = Field(..., min_length=1, description="OAuth response type")
    client_id: str = Field(..., min_length=1, description="OAuth client identifier")
    redirect_uri: str = Field(..., min_length=1, description="Client redirect URI")
    scope: Optional[List[str]] = Field(default=None, description="Requested scopes")
    state: Optional[str] = Field(default=None, description="Opaque client state")
    code_challenge: Optional[str] = Field(default=None, description="PKCE code challenge")
    code_challenge_method: Optional[str] = Field(default=None, description="PKCE challenge method")
    nonce: Optional[str] = Field(default=None, description="OIDC nonce")

    def to_api(self) -> dict:
        """Serialize for the events API (camelCase, nulls omitted)."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_form_value(self) -> str:
        """Serialize as the opaque value carried in the consent form."""
        return json.dumps(self.to_api())


class ClientInfo(_ApiModel):
    """Registered OAuth client metadata, fetched per request."""

    client_id: str = Field(..., description="OAuth client identifier")
    client_name: Optional[str] = None
    logo_uri: Optional[str] = None
    client_uri: Optional[str] = None
    policy_uri: Optional[str] = None
    tos_uri: Optional[str] = None
    redirect_uris: Optional[List[str]] = None

    @property
    def display_name(self) -> str:
        return self.client_name or self.client_id or "Unknown App"

    @property
    def client_host(self) -> Optional[str]:
        if not self.client_uri:
            return None
        return urlparse(self.client_uri).hostname


class ExistingGrant(_ApiModel):
    """Prior consent record for a (user, client) pair."""

    scopes: List[str] = Field(default_factory=list)


class ScopeGroup(BaseModel):
    """Display-only aggregation of raw scopes into one permission line."""

    key: str
    label: str
    icon: str
    description: str
    order: int


class AuthUser(_ApiModel):
    """The signed-in Tampa.dev user as returned by ``/auth/me``."""

    id: str = Field(..., min_length=1)
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str = "user"
    github_username: Optional[str] = None


class OAuthGrant(_ApiModel):
    """An app the user has authorized, as listed on the account page."""

    grant_id: str
    client_id: str
    client_name: str
    client_uri: Optional[str] = None
    logo_uri: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    granted_at: str


class OAuthError(BaseModel):
    """
    OAuth 2.1 error response model.

    Standard error parameters as defined in RFC 6749, sent back to the
    client's redirect URI as query parameters.
    """

    error: str = Field(..., min_length=1, description="Error code")
    error_description: Optional[str] = Field(
        default=None,
        description="Human-readable error description"
    )
    state: Optional[str] = Field(
        default=None,
        description="State parameter from request"
    )

    def to_query_params(self) -> dict:
        params = {"error": self.error}
        if self.error_description:
            params["error_description"] = self.error_description
        if self.state:
            params["state"] = self.state
        return params


# Tagged results for the events API's internal OAuth endpoints

class ParseSuccess(BaseModel):
    """The backend parsed the authorization URL."""

    kind: Literal["ok"] = "ok"
    oauth_request: AuthorizationRequest
    client: Optional[ClientInfo] = None
    existing_grant: Optional[ExistingGrant] = None


class ParseFailure(BaseModel):
    """The backend rejected the authorization URL."""

    kind: Literal["error"] = "error"
    message: str


ParseResult = Union[ParseSuccess, ParseFailure]


class CompletionSuccess(BaseModel):
    """The backend created the grant and minted an authorization code."""

    kind: Literal["ok"] = "ok"
    redirect_to: str


class CompletionFailure(BaseModel):
    """The backend refused or failed to complete the authorization."""

    kind: Literal["error"] = "error"
    message: str


CompletionResult = Union[CompletionSuccess, CompletionFailure]


class ParseRequestResponse(_ApiModel):
    """Raw body of ``POST /oauth/internal/parse-request``."""

    success: bool
    oauth_request: Optional[AuthorizationRequest] = None
    client: Optional[ClientInfo] = None
    existing_grant: Optional[ExistingGrant] = None
    error: Optional[str] = None

    def to_result(self) -> ParseResult:
        if not self.success or self.oauth_request is None:
            return ParseFailure(message=self.error or "Failed to parse OAuth request")
        return ParseSuccess(
            oauth_request=self.oauth_request,
            client=self.client,
            existing_grant=self.existing_grant,
        )


class CompleteResponse(_ApiModel):
    """Raw body of ``POST /oauth/internal/complete``."""

    success: bool
    redirect_to: Optional[str] = None
    error: Optional[str] = None

    def to_result(self) -> CompletionResult:
        if not self.success or not self.redirect_to:
            return CompletionFailure(message=self.error or "Failed to complete authorization")
        return CompletionSuccess(redirect_to=self.redirect_to)


class ConsentDecisionForm(_ApiModel):
    """
    Validated consent form submission.

    Replaces loose ``form.get(...)`` access: missing or malformed fields
    raise ``pydantic.ValidationError`` instead of silently becoming empty
    strings. JSON-carrying fields (``oauthRequest``, ``approvedScopes``) are
    decoded here.
    """

    intent: Literal["approve", "deny"]
    oauth_request: Optional[AuthorizationRequest] = None
    user_id: Optional[str] = None
    approved_scopes: Optional[List[str]] = None
    redirect_uri: Optional[str] = None
    state: Optional[str] = None

    @field_validator("oauth_request", "approved_scopes", mode="before")
    @classmethod
    def decode_json_field(cls, v):
        """Decode JSON-serialized hidden form fields."""
        if v is None or v == "":
            return None
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Field must be valid JSON: {exc.msg}") from exc
        return v

    @field_validator("user_id", "redirect_uri", "state", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def check_intent_requirements(self):
        """Approval needs the full request; denial needs a redirect target."""
        if self.intent == "approve":
            missing = [
                alias for alias, value in (
                    ("oauthRequest", self.oauth_request),
                    ("userId", self.user_id),
                    ("approvedScopes", self.approved_scopes),
                ) if value is None
            ]
            if missing:
                raise ValueError(f"Approval is missing: {', '.join(missing)}")
            if not InputValidator.validate_redirect_uri(self.oauth_request.redirect_uri):
                raise ValueError("oauthRequest.redirectUri must be an absolute URI")
        else:
            target = self.denial_redirect_uri
            if target is None:
                raise ValueError("Denial requires redirectUri")
            if not InputValidator.validate_redirect_uri(target):
                raise ValueError("redirectUri must be an absolute URI")
        return self

    @property
    def denial_redirect_uri(self) -> Optional[str]:
        if self.redirect_uri:
            return self.redirect_uri
        if self.oauth_request is not None:
            return self.oauth_request.redirect_uri
        return None

    @property
    def denial_state(self) -> Optional[str]:
        if self.state:
            return self.state
        if self.oauth_request is not None:
            return self.oauth_request.state
        return None
