import json
from typing import Optional
from urllib.parse import parse_qsl, quote, urlsplit, urlunsplit

from fastapi import Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError

from ..shared.config import ConsentServerConfig
from ..shared.logging_utils import OAuthLogger
from ..shared.oauth_models import AuthUser, ConsentDecisionForm
from ..shared.scopes import scope_label
from ..shared.security import InputValidator
from .api_client import ApiCommunicationError, EventsApiClient
from .orchestrator import (
    COMMUNICATION_ERROR_MESSAGE,
    ConsentFailure,
    ConsentOrchestrator,
    ConsentRedirect,
)

logger = OAuthLogger("CONSENT-SERVER")


def get_templates(request: Request) -> Jinja2Templates:
    return request.app.state.templates


def get_config(request: Request) -> ConsentServerConfig:
    return request.app.state.config


def get_api_client(request: Request) -> EventsApiClient:
    return request.app.state.api_client


def get_orchestrator(request: Request) -> ConsentOrchestrator:
    return request.app.state.orchestrator


def external_url(request: Request, config: ConsentServerConfig) -> str:
    """The URL the browser used, rebuilt on the public origin when configured."""
    url = str(request.url)
    if not config.public_base_url:
        return url
    parts = urlsplit(url)
    base = urlsplit(config.public_base_url)
    return urlunsplit((base.scheme, base.netloc, parts.path, parts.query, parts.fragment))


def login_redirect(request: Request, config: ConsentServerConfig) -> RedirectResponse:
    """Send an anonymous user to sign in, coming back to this exact URL."""
    return_to = quote(external_url(request, config), safe="")
    location = f"{config.login_path}?returnTo={return_to}"

    logger.log_oauth_message(
        "CONSENT-SERVER", "USER-BROWSER",
        "Login Required",
        {"path": request.url.path, "redirect": config.login_path}
    )
    return RedirectResponse(url=location, status_code=302)


def redirect_log_details(outcome: ConsentRedirect) -> dict:
    """Loggable view of a redirect; the query may carry a live authorization code."""
    parts = urlsplit(outcome.location)
    params = dict(parse_qsl(parts.query, keep_blank_values=True))
    return {
        "state": outcome.state.value,
        "target": urlunsplit((parts.scheme, parts.netloc, parts.path, "", "")),
        "has_code": "code" in params,
        "error": params.get("error"),
    }


def wants_json(request: Request) -> bool:
    return "application/json" in request.headers.get("accept", "")


def render_error(request: Request, message: str, status_code: int = 400) -> HTMLResponse:
    return get_templates(request).TemplateResponse(
        request,
        "error.html",
        {"error": InputValidator.sanitize_string(message)},
        status_code=status_code,
    )


async def resolve_user(request: Request) -> Optional[AuthUser]:
    """Look up the signed-in user; raises ApiCommunicationError when the API is down."""
    return await get_api_client(request).fetch_current_user(request.headers.get("cookie"))


async def authorize_endpoint(request: Request):
    """OAuth 2.1 authorization endpoint: consent screen or redirect"""

    config = get_config(request)
    cookie = request.headers.get("cookie")
    # first value wins for repeated parameters
    query = {key: request.query_params.getlist(key)[0] for key in request.query_params}

    logger.log_http_request("GET", request.url.path, params=query)

    try:
        user = await resolve_user(request)
    except ApiCommunicationError as e:
        logger.log_error("communication_error", COMMUNICATION_ERROR_MESSAGE, {"detail": e.detail})
        return render_error(request, COMMUNICATION_ERROR_MESSAGE, status_code=502)

    if user is None:
        return login_redirect(request, config)

    outcome = await get_orchestrator(request).begin(
        external_url(request, config), query, user, cookie
    )

    if isinstance(outcome, ConsentRedirect):
        logger.log_oauth_message(
            "CONSENT-SERVER", "THIRD-PARTY-APP",
            "Authorization Redirect",
            redirect_log_details(outcome)
        )
        return RedirectResponse(url=outcome.location, status_code=302)

    if isinstance(outcome, ConsentFailure):
        return render_error(request, outcome.message,
                            status_code=502 if outcome.communication_error else 400)

    return get_templates(request).TemplateResponse(request, "consent.html", {
        "user": outcome.user,
        "client": outcome.client,
        "client_name": outcome.client.display_name if outcome.client else outcome.oauth_request.client_id,
        "oauth_request": outcome.oauth_request,
        "oauth_request_json": outcome.oauth_request.to_form_value(),
        "approved_scopes_json": json.dumps(outcome.requested_scopes),
        "scope_groups": outcome.scope_groups,
        "completion_delay_seconds": config.completion_redirect_delay_seconds,
        "home_path": config.home_path,
        "account_settings_path": config.account_settings_path,
    })


async def authorize_decision_endpoint(request: Request):
    """Process the user's approve/deny decision"""

    form_data = await request.form()
    raw = {key: form_data.get(key) for key in (
        "intent", "oauthRequest", "userId", "approvedScopes", "redirectUri", "state"
    ) if form_data.get(key) is not None}

    logger.log_http_request("POST", request.url.path, params={"intent": raw.get("intent")})

    try:
        form = ConsentDecisionForm.model_validate(raw)
    except ValidationError as e:
        logger.log_error("invalid_request", "Invalid consent form submission",
                         {"errors": [err["msg"] for err in e.errors()]})
        if wants_json(request):
            return JSONResponse(status_code=400, content={"error": "Invalid action"})
        return render_error(request, "Invalid action", status_code=400)

    outcome = await get_orchestrator(request).decide(form, request.headers.get("cookie"))

    logger.log_oauth_message(
        "CONSENT-SERVER", "THIRD-PARTY-APP",
        "Authorization Redirect",
        redirect_log_details(outcome)
    )

    # The consent page submits with fetch() and follows the target itself
    if wants_json(request):
        return JSONResponse(content={"redirectTo": outcome.location})
    return RedirectResponse(url=outcome.location, status_code=302)


async def render_authorized_apps(request: Request, user: AuthUser,
                                 message: Optional[str] = None,
                                 error: Optional[str] = None,
                                 status_code: int = 200) -> HTMLResponse:
    cookie = request.headers.get("cookie")
    try:
        grants = await get_api_client(request).list_grants(user.id, cookie)
    except ApiCommunicationError as e:
        logger.log_error("communication_error", "Failed to load authorized apps", {"detail": e.detail})
        grants = []
        error = error or "Failed to load authorized apps"

    return get_templates(request).TemplateResponse(request, "authorized_apps.html", {
        "user": user,
        "grants": grants,
        "scope_label": scope_label,
        "message": message,
        "error": error,
    }, status_code=status_code)


async def authorized_apps_endpoint(request: Request):
    """List the third-party apps the user has authorized"""

    try:
        user = await resolve_user(request)
    except ApiCommunicationError:
        return render_error(request, COMMUNICATION_ERROR_MESSAGE, status_code=502)

    if user is None:
        return login_redirect(request, get_config(request))

    return await render_authorized_apps(request, user)


async def revoke_app_endpoint(request: Request):
    """Revoke one authorized app for the signed-in user"""

    try:
        user = await resolve_user(request)
    except ApiCommunicationError:
        return render_error(request, COMMUNICATION_ERROR_MESSAGE, status_code=502)

    if user is None:
        return login_redirect(request, get_config(request))

    form_data = await request.form()
    intent = form_data.get("intent")
    grant_id = form_data.get("grantId")

    if intent != "revoke" or not grant_id:
        return await render_authorized_apps(request, user, error="Invalid action", status_code=400)

    try:
        revoked = await get_api_client(request).revoke_grant(user.id, grant_id, request.headers.get("cookie"))
    except ApiCommunicationError as e:
        logger.log_error("communication_error", "Failed to revoke grant", {"detail": e.detail})
        revoked = False

    logger.log_oauth_message(
        "CONSENT-SERVER", "CONSENT-SERVER",
        "Grant Revocation",
        {"user_id": user.id, "grant_id": grant_id, "revoked": revoked},
        success=revoked
    )

    if not revoked:
        return await render_authorized_apps(request, user, error="Failed to revoke access")
    return await render_authorized_apps(request, user, message="Access revoked")
