"""
OAuth 2.1 consent orchestration.

Decides, for each inbound authorization request, whether it can be approved
silently against an existing grant or needs the interactive consent screen,
and turns the user's decision into a correctly formed OAuth redirect.

The flow is an explicit state machine. ``transition`` is a pure lookup from
(state, event) to (next state, effect); ``ConsentFlow`` walks one request
through it and logs every step. Nothing here outlives a single HTTP
exchange.
"""

from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import BaseModel

from ..shared.logging_utils import OAuthLogger
from ..shared.oauth_models import (
    AuthorizationRequest,
    AuthUser,
    ClientInfo,
    CompletionFailure,
    ConsentDecisionForm,
    ExistingGrant,
    OAuthError,
    ParseFailure,
    ScopeGroup,
)
from ..shared.scopes import ScopeClassifier
from .api_client import ApiCommunicationError, EventsApiClient

logger = OAuthLogger("CONSENT-SERVER")

REQUIRED_PARAMETERS = ("client_id", "redirect_uri", "response_type")
DEFAULT_SCOPES = ["profile"]

MISSING_PARAMETERS_MESSAGE = "Missing required OAuth parameters"
COMMUNICATION_ERROR_MESSAGE = "Failed to communicate with authorization server"
ACCESS_DENIED_DESCRIPTION = "User denied the authorization request"
SERVER_ERROR_DESCRIPTION = "Authorization server error"


class ConsentState(str, Enum):
    """States of a single authorization request."""
    RECEIVED = "RECEIVED"
    PARSED = "PARSED"
    AUTO_APPROVING = "AUTO_APPROVING"
    AWAITING_DECISION = "AWAITING_DECISION"
    COMPLETED = "COMPLETED"
    DENIED = "DENIED"
    ERROR = "ERROR"


TERMINAL_STATES = frozenset({ConsentState.COMPLETED, ConsentState.DENIED, ConsentState.ERROR})


class ConsentEvent(str, Enum):
    """Things that can happen to an authorization request."""
    PARAMETERS_MISSING = "PARAMETERS_MISSING"
    PARSE_FAILED = "PARSE_FAILED"
    PARSE_SUCCEEDED = "PARSE_SUCCEEDED"
    GRANT_COVERS_SCOPES = "GRANT_COVERS_SCOPES"
    CONSENT_REQUIRED = "CONSENT_REQUIRED"
    USER_APPROVED = "USER_APPROVED"
    USER_DENIED = "USER_DENIED"
    COMPLETION_SUCCEEDED = "COMPLETION_SUCCEEDED"
    COMPLETION_FAILED = "COMPLETION_FAILED"


class ConsentEffect(str, Enum):
    """What the server must do after a transition."""
    NONE = "NONE"
    RENDER_ERROR = "RENDER_ERROR"
    RENDER_CONSENT = "RENDER_CONSENT"
    COMPLETE_AUTHORIZATION = "COMPLETE_AUTHORIZATION"
    REDIRECT = "REDIRECT"
    REDIRECT_WITH_ERROR = "REDIRECT_WITH_ERROR"


S, E, X = ConsentState, ConsentEvent, ConsentEffect

TRANSITIONS: Dict[Tuple[ConsentState, ConsentEvent], Tuple[ConsentState, ConsentEffect]] = {
    (S.RECEIVED, E.PARAMETERS_MISSING): (S.ERROR, X.RENDER_ERROR),
    (S.RECEIVED, E.PARSE_FAILED): (S.ERROR, X.RENDER_ERROR),
    (S.RECEIVED, E.PARSE_SUCCEEDED): (S.PARSED, X.NONE),
    (S.PARSED, E.GRANT_COVERS_SCOPES): (S.AUTO_APPROVING, X.COMPLETE_AUTHORIZATION),
    (S.PARSED, E.CONSENT_REQUIRED): (S.AWAITING_DECISION, X.RENDER_CONSENT),
    (S.AUTO_APPROVING, E.COMPLETION_SUCCEEDED): (S.COMPLETED, X.REDIRECT),
    # silent re-consent failing is not fatal; show the screen instead
    (S.AUTO_APPROVING, E.COMPLETION_FAILED): (S.AWAITING_DECISION, X.RENDER_CONSENT),
    (S.AUTO_APPROVING, E.PARAMETERS_MISSING): (S.ERROR, X.RENDER_ERROR),
    (S.AWAITING_DECISION, E.USER_APPROVED): (S.AWAITING_DECISION, X.COMPLETE_AUTHORIZATION),
    (S.AWAITING_DECISION, E.COMPLETION_SUCCEEDED): (S.COMPLETED, X.REDIRECT),
    (S.AWAITING_DECISION, E.COMPLETION_FAILED): (S.ERROR, X.REDIRECT_WITH_ERROR),
    (S.AWAITING_DECISION, E.USER_DENIED): (S.DENIED, X.REDIRECT_WITH_ERROR),
    (S.AWAITING_DECISION, E.PARAMETERS_MISSING): (S.ERROR, X.RENDER_ERROR),
}

del S, E, X


class InvalidTransitionError(Exception):
    """An event fired in a state that does not accept it."""

    def __init__(self, state: ConsentState, event: ConsentEvent):
        self.state = state
        self.event = event
        super().__init__(f"Event {event.value} is not valid in state {state.value}")


def transition(state: ConsentState, event: ConsentEvent) -> Tuple[ConsentState, ConsentEffect]:
    """
    Pure state machine step.

    Args:
        state: Current state
        event: Event that occurred

    Returns:
        Tuple[ConsentState, ConsentEffect]: Next state and required effect

    Raises:
        InvalidTransitionError: If the pair is not in the transition table
    """
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(state, event) from None


class ConsentFlow:
    """Tracks one authorization request through the state machine."""

    def __init__(self, initial: ConsentState = ConsentState.RECEIVED,
                 client_id: Optional[str] = None):
        self.state = initial
        self.client_id = client_id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def fire(self, event: ConsentEvent) -> ConsentEffect:
        previous = self.state
        self.state, effect = transition(previous, event)
        logger.log_state_transition(
            previous.value, event.value, self.state.value,
            {"client_id": self.client_id, "effect": effect.value} if self.client_id else {"effect": effect.value}
        )
        return effect


# Outcomes handed back to the HTTP layer

class ConsentRedirect(BaseModel):
    """Send the browser somewhere (client app or backend-provided target)."""
    state: ConsentState
    location: str


class ConsentScreen(BaseModel):
    """Render the interactive consent screen."""
    state: ConsentState = ConsentState.AWAITING_DECISION
    oauth_request: AuthorizationRequest
    client: Optional[ClientInfo] = None
    user: AuthUser
    requested_scopes: List[str]
    scope_groups: List[ScopeGroup]


class ConsentFailure(BaseModel):
    """Render a terminal error page; there is nowhere safe to redirect."""
    state: ConsentState = ConsentState.ERROR
    message: str
    communication_error: bool = False


ConsentOutcome = Union[ConsentRedirect, ConsentScreen, ConsentFailure]


# Pure helpers

def missing_required_parameters(query: Mapping[str, str]) -> List[str]:
    """Names of required authorization parameters that are absent or empty."""
    return [name for name in REQUIRED_PARAMETERS if not query.get(name)]


def requested_scopes_from_query(scope: Optional[str]) -> List[str]:
    """Split the space-delimited ``scope`` parameter; absent means profile."""
    if not scope or not scope.strip():
        return list(DEFAULT_SCOPES)
    return scope.split()


def decide_auto_approval(existing_grant: Optional[ExistingGrant],
                         requested_scopes: List[str],
                         prompt: Optional[str]) -> bool:
    """
    Whether a request may skip the consent screen.

    True only when a grant exists for this user and client, the client did
    not send ``prompt=consent``, and every requested (already role-filtered)
    scope is in the grant.
    """
    if existing_grant is None or prompt == "consent":
        return False
    granted = set(existing_grant.scopes)
    return all(scope in granted for scope in requested_scopes)


def inject_nonce(oauth_request: AuthorizationRequest, nonce: Optional[str]) -> AuthorizationRequest:
    """
    Put the OIDC nonce from the raw query back into the parsed request.

    The events API's parser drops ``nonce``; without it the ID token could
    not be bound to the client's login attempt.
    """
    if not nonce:
        return oauth_request
    return oauth_request.model_copy(update={"nonce": nonce})


def build_error_redirect(redirect_uri: str, error: str,
                         description: Optional[str] = None,
                         state: Optional[str] = None) -> str:
    """
    Append OAuth error parameters to a client redirect URI.

    Existing query parameters of the client are kept; any ``error``,
    ``error_description`` or ``state`` already present is replaced rather
    than duplicated.

    Args:
        redirect_uri: Client redirect URI
        error: OAuth error code
        description: Human-readable description
        state: Client state to echo back (omitted when empty)

    Returns:
        str: Redirect URL
    """
    oauth_error = OAuthError(error=error, error_description=description, state=state)
    params = oauth_error.to_query_params()

    parsed = urlparse(redirect_uri)
    query = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if key not in ("error", "error_description", "state")
    ]
    query.extend(params.items())
    return urlunparse(parsed._replace(query=urlencode(query)))


def finalize_denial(redirect_uri: str, state: Optional[str]) -> str:
    """Redirect target for a denied request (``access_denied``)."""
    return build_error_redirect(redirect_uri, "access_denied", ACCESS_DENIED_DESCRIPTION, state)


class ConsentOrchestrator:
    """
    Runs the consent flow against the events API.

    Every backend failure is converted here into one of the terminal
    outcomes; nothing escapes to the HTTP layer as an exception.
    """

    def __init__(self, api_client: EventsApiClient, classifier: Optional[ScopeClassifier] = None):
        self.api_client = api_client
        self.classifier = classifier or ScopeClassifier()

    async def begin(self,
                    request_url: str,
                    query: Mapping[str, str],
                    user: AuthUser,
                    cookie: Optional[str] = None) -> ConsentOutcome:
        """
        Handle an inbound authorization request from a signed-in user.

        Args:
            request_url: Full authorization URL as received
            query: Its query parameters
            user: Signed-in user
            cookie: Raw ``Cookie`` header to forward

        Returns:
            ConsentOutcome: Redirect (auto-approved), consent screen, or error
        """
        flow = ConsentFlow(client_id=query.get("client_id"))

        missing = missing_required_parameters(query)
        if missing:
            flow.fire(ConsentEvent.PARAMETERS_MISSING)
            logger.log_error("invalid_request", MISSING_PARAMETERS_MESSAGE, {"missing": missing})
            return ConsentFailure(message=MISSING_PARAMETERS_MESSAGE)

        try:
            parsed = await self.api_client.parse_request(request_url, cookie)
        except ApiCommunicationError as e:
            flow.fire(ConsentEvent.PARSE_FAILED)
            logger.log_error("communication_error", COMMUNICATION_ERROR_MESSAGE, {"detail": e.detail})
            return ConsentFailure(message=COMMUNICATION_ERROR_MESSAGE, communication_error=True)

        if isinstance(parsed, ParseFailure):
            flow.fire(ConsentEvent.PARSE_FAILED)
            logger.log_error("invalid_request", parsed.message)
            return ConsentFailure(message=parsed.message)

        flow.fire(ConsentEvent.PARSE_SUCCEEDED)

        requested_scopes = self.classifier.filter_scopes_for_role(
            requested_scopes_from_query(query.get("scope")), user.role
        )
        oauth_request = inject_nonce(parsed.oauth_request, query.get("nonce"))

        if decide_auto_approval(parsed.existing_grant, requested_scopes, query.get("prompt")):
            flow.fire(ConsentEvent.GRANT_COVERS_SCOPES)
            logger.log_consent_decision(user.id, oauth_request.client_id, "auto-approve",
                                        {"scopes": " ".join(requested_scopes)})
            redirect_to = await self._try_auto_approval(oauth_request, user.id, requested_scopes, cookie)
            if redirect_to is not None:
                flow.fire(ConsentEvent.COMPLETION_SUCCEEDED)
                return ConsentRedirect(state=flow.state, location=redirect_to)
            flow.fire(ConsentEvent.COMPLETION_FAILED)
        else:
            flow.fire(ConsentEvent.CONSENT_REQUIRED)

        return ConsentScreen(
            state=flow.state,
            oauth_request=oauth_request,
            client=parsed.client,
            user=user,
            requested_scopes=requested_scopes,
            scope_groups=self.classifier.group_scopes(requested_scopes),
        )

    async def _try_auto_approval(self, oauth_request: AuthorizationRequest, user_id: str,
                                 scopes: List[str], cookie: Optional[str]) -> Optional[str]:
        try:
            result = await self.api_client.complete_authorization(oauth_request, user_id, scopes, cookie)
        except ApiCommunicationError as e:
            logger.log_error("auto_approval_failed", "Falling back to consent screen", {"detail": e.detail})
            return None
        if isinstance(result, CompletionFailure):
            logger.log_error("auto_approval_failed", "Falling back to consent screen", {"detail": result.message})
            return None
        return result.redirect_to

    async def finalize_approval(self,
                                oauth_request: AuthorizationRequest,
                                user_id: str,
                                approved_scopes: List[str],
                                cookie: Optional[str] = None) -> ConsentRedirect:
        """
        Complete an explicit approval through the events API.

        The backend mints the authorization code and returns the redirect
        target, which is passed through untouched. Any failure sends the
        browser back to the client with ``server_error`` and its ``state``.

        Args:
            oauth_request: Request with nonce re-injected
            user_id: Approving user
            approved_scopes: Exact scopes approved
            cookie: Raw ``Cookie`` header to forward

        Returns:
            ConsentRedirect: COMPLETED or ERROR redirect
        """
        flow = ConsentFlow(initial=ConsentState.AWAITING_DECISION, client_id=oauth_request.client_id)
        flow.fire(ConsentEvent.USER_APPROVED)
        logger.log_consent_decision(user_id, oauth_request.client_id, "approve",
                                    {"scopes": " ".join(approved_scopes)})

        try:
            result = await self.api_client.complete_authorization(
                oauth_request, user_id, approved_scopes, cookie
            )
        except ApiCommunicationError as e:
            result = CompletionFailure(message=e.detail)

        if isinstance(result, CompletionFailure):
            flow.fire(ConsentEvent.COMPLETION_FAILED)
            logger.log_error("server_error", "Failed to complete authorization", {"detail": result.message})
            location = build_error_redirect(
                oauth_request.redirect_uri, "server_error", SERVER_ERROR_DESCRIPTION, oauth_request.state
            )
            return ConsentRedirect(state=flow.state, location=location)

        flow.fire(ConsentEvent.COMPLETION_SUCCEEDED)
        return ConsentRedirect(state=flow.state, location=result.redirect_to)

    def deny(self, redirect_uri: str, state: Optional[str],
             user_id: Optional[str] = None, client_id: Optional[str] = None) -> ConsentRedirect:
        """Turn a denial into an ``access_denied`` redirect; no backend call."""
        flow = ConsentFlow(initial=ConsentState.AWAITING_DECISION, client_id=client_id)
        flow.fire(ConsentEvent.USER_DENIED)
        logger.log_consent_decision(user_id or "unknown", client_id or "unknown", "deny")
        return ConsentRedirect(state=flow.state, location=finalize_denial(redirect_uri, state))

    async def decide(self, form: ConsentDecisionForm, cookie: Optional[str] = None) -> ConsentRedirect:
        """
        Apply a validated consent form submission.

        Args:
            form: Validated approve/deny submission
            cookie: Raw ``Cookie`` header to forward

        Returns:
            ConsentRedirect: Where to send the browser
        """
        if form.intent == "deny":
            client_id = form.oauth_request.client_id if form.oauth_request else None
            return self.deny(form.denial_redirect_uri, form.denial_state, form.user_id, client_id)

        return await self.finalize_approval(
            form.oauth_request, form.user_id, form.approved_scopes, cookie
        )
