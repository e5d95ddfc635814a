"""
Tampa.dev OAuth 2.1 Consent Server

This FastAPI application hosts the "Sign in with Tampa.dev" consent screen.
Third-party apps send users to ``/oauth/authorize``; the server checks who
is signed in, asks the events API to parse the request, and either approves
it silently against an existing grant or shows the consent screen. The
user's decision is turned into a redirect back to the app.

Key Features:
- OAuth 2.1 authorization code flow consent (PKCE enforced by the API)
- Scope grouping into plain-language permissions
- Silent re-consent for returning users, overridable with prompt=consent
- OIDC nonce carried through to code issuance
- Authorized apps list with revocation

Security Features:
- Role-gated scopes hidden from users who cannot grant them
- Strict query construction for error redirects
- Security headers (no framing, no caching) on every response
"""

from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.templating import Jinja2Templates

from ..shared.config import ConsentServerConfig
from ..shared.logging_utils import OAuthLogger
from ..shared.scopes import ScopeClassifier
from ..shared.security import SecurityHeaders
from .api_client import EventsApiClient
from .orchestrator import ConsentOrchestrator
from .routes import (
    authorize_decision_endpoint,
    authorize_endpoint,
    authorized_apps_endpoint,
    revoke_app_endpoint,
)

logger = OAuthLogger("CONSENT-SERVER")

templates_dir = Path(__file__).parent / "templates"


def create_app(config: Optional[ConsentServerConfig] = None,
               api_client: Optional[EventsApiClient] = None,
               classifier: Optional[ScopeClassifier] = None) -> FastAPI:
    """
    Build the consent server application.

    Args:
        config: Server configuration (defaults to environment)
        api_client: Events API client (defaults to one built from config)
        classifier: Scope classifier (defaults to the standard scope tables)

    Returns:
        FastAPI: Configured application
    """
    config = config or ConsentServerConfig.from_env()
    api_client = api_client or EventsApiClient(config)
    classifier = classifier or ScopeClassifier()

    app = FastAPI(
        title="Tampa.dev OAuth Consent Server",
        description="""
        Consent screen for "Sign in with Tampa.dev".

        **Key Endpoints:**
        - `/oauth/authorize` - Authorization consent screen (GET) and decision (POST)
        - `/profile/authorized-apps` - Apps the user has authorized
        - `/health` - Health check endpoint
        """,
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.state.config = config
    app.state.api_client = api_client
    app.state.classifier = classifier
    app.state.orchestrator = ConsentOrchestrator(api_client, classifier)
    app.state.templates = Jinja2Templates(directory=str(templates_dir))

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """
        Add security headers to all HTTP responses.

        The consent screen must not be framed or cached.
        """
        response = await call_next(request)

        for header_name, header_value in SecurityHeaders.get_oauth_security_headers().items():
            response.headers[header_name] = header_value

        return response

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring server status."""
        return JSONResponse(
            status_code=200,
            content={
                "status": "healthy",
                "service": "oauth-consent-server",
                "version": "1.0.0",
                "events_api": config.events_api_url,
            }
        )

    @app.get("/",
             summary="Consent Server Information",
             description="Get information about the consent server and available endpoints.")
    async def root():
        """Root endpoint describing the consent server."""
        return JSONResponse(
            content={
                "service": "Tampa.dev OAuth Consent Server",
                "oauth_version": "2.1",
                "endpoints": {
                    "authorize": {
                        "url": "/oauth/authorize",
                        "methods": ["GET", "POST"],
                        "description": "Consent screen and approve/deny decision"
                    },
                    "authorized_apps": {
                        "url": "/profile/authorized-apps",
                        "methods": ["GET", "POST"],
                        "description": "List and revoke authorized apps"
                    },
                    "health": {
                        "url": "/health",
                        "methods": ["GET"],
                        "description": "Health check endpoint"
                    }
                }
            }
        )

    @app.get("/oauth/authorize",
             summary="OAuth 2.1 Consent Screen",
             description="""
             Show the consent screen for an OAuth 2.1 authorization request,
             or redirect straight back when an existing grant covers it.

             **Required Parameters:** client_id, redirect_uri, response_type

             **Optional Parameters:** scope, state, code_challenge,
             code_challenge_method, nonce, prompt (``consent`` forces the screen)
             """)
    async def authorize(request: Request):
        """OAuth 2.1 consent screen."""
        return await authorize_endpoint(request)

    @app.post("/oauth/authorize",
              summary="Consent Decision",
              description="Approve or deny an authorization request; always answers with a redirect.")
    async def authorize_decision(request: Request):
        """Apply the user's consent decision."""
        return await authorize_decision_endpoint(request)

    @app.get("/profile/authorized-apps", summary="Authorized Apps")
    async def authorized_apps(request: Request):
        """List apps the signed-in user has authorized."""
        return await authorized_apps_endpoint(request)

    @app.post("/profile/authorized-apps", summary="Revoke Authorized App")
    async def revoke_app(request: Request):
        """Revoke an authorized app."""
        return await revoke_app_endpoint(request)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    startup_config = app.state.config
    logger.log_startup(startup_config.port, {"events_api": startup_config.events_api_url})
    uvicorn.run(app, host=startup_config.host, port=startup_config.port)
