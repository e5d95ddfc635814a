"""
Unit tests for consent server endpoints.

Tests the HTTP surface of the consent server: login redirects, the consent
screen, auto-approval, the approve/deny decision, and error rendering. The
events API is replaced by an AsyncMock so no network access is needed.
"""

import json
import pytest
from unittest.mock import patch
from urllib.parse import parse_qs, unquote, urlparse

from src.consent_server import routes
from src.consent_server.api_client import ApiCommunicationError
from src.consent_server.orchestrator import ConsentRedirect, ConsentState
from src.shared.oauth_models import CompletionFailure, CompletionSuccess, ParseFailure

CALLBACK_WITH_CODE = "https://app.example.com/callback?code=abc123&state=xyz"


class TestServiceEndpoints:
    """Test cases for health and info endpoints."""

    def test_health_endpoint(self, client):
        """Test health check endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "consent" in data["service"]
        assert data["events_api"] == "https://api.test.tampa.dev"

    def test_root_endpoint_info(self, client):
        """Test root endpoint service information."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["oauth_version"] == "2.1"
        assert "authorize" in data["endpoints"]

    def test_security_headers_present(self, client):
        """Test that every response carries the anti-framing headers."""
        response = client.get("/health")

        assert response.headers["x-frame-options"] == "DENY"
        assert response.headers["x-content-type-options"] == "nosniff"
        assert "no-store" in response.headers["cache-control"]
        assert "frame-ancestors 'none'" in response.headers["content-security-policy"]


class TestAuthorizeEndpoint:
    """Test cases for GET /oauth/authorize."""

    def test_anonymous_user_sent_to_login(self, client, api_client, oauth_params):
        """Test that an anonymous user is redirected to login with returnTo."""
        api_client.fetch_current_user.return_value = None

        response = client.get("/oauth/authorize", params=oauth_params, follow_redirects=False)

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("/login?returnTo=")

        return_to = urlparse(unquote(location.split("returnTo=", 1)[1]))
        assert return_to.path == "/oauth/authorize"
        assert {k: v[0] for k, v in parse_qs(return_to.query).items()} == oauth_params
        api_client.parse_request.assert_not_awaited()

    def test_login_redirect_uses_public_base_url(self, config, api_client, oauth_params):
        """Test that returnTo is rebuilt on the configured public origin."""
        from fastapi.testclient import TestClient
        from src.consent_server.main import create_app

        config = config.model_copy(update={"public_base_url": "https://tampa.dev"})
        client = TestClient(create_app(config=config, api_client=api_client))
        api_client.fetch_current_user.return_value = None

        response = client.get("/oauth/authorize", params=oauth_params, follow_redirects=False)

        return_to = unquote(response.headers["location"].split("returnTo=", 1)[1])
        assert return_to.startswith("https://tampa.dev/oauth/authorize?")

    def test_cookie_forwarded_to_api(self, client, api_client, oauth_params):
        """Test that the browser's cookie is passed to the events API."""
        api_client.fetch_current_user.return_value = None

        client.get("/oauth/authorize", params=oauth_params,
                   headers={"Cookie": "session=abc"}, follow_redirects=False)

        api_client.fetch_current_user.assert_awaited_once_with("session=abc")

    def test_first_time_consent_screen(self, client, api_client, member_user, oauth_params, parse_success):
        """Test the consent screen for a request without a scope parameter."""
        api_client.fetch_current_user.return_value = member_user
        api_client.parse_request.return_value = parse_success()

        response = client.get("/oauth/authorize", params=oauth_params)

        assert response.status_code == 200
        assert "Meetup Buddy" in response.text
        assert response.text.count('data-group="profile"') == 1
        assert "Your Profile" in response.text
        assert 'name="approvedScopes" value="[&#34;profile&#34;]"' in response.text
        assert "Allow Access" in response.text
        api_client.complete_authorization.assert_not_awaited()

        url_sent = api_client.parse_request.await_args.args[0]
        assert url_sent.startswith("http://testserver/oauth/authorize?")

    def test_consent_screen_has_legal_and_account_links(self, client, api_client, member_user,
                                                        oauth_params, parse_success):
        api_client.fetch_current_user.return_value = member_user
        api_client.parse_request.return_value = parse_success()

        response = client.get("/oauth/authorize", params=oauth_params)

        assert "https://app.example.com/terms" in response.text
        assert "https://app.example.com/privacy" in response.text
        assert "/profile?tab=accounts" in response.text
        assert "Authorization Complete" in response.text

    def test_consent_screen_hides_admin_scope(self, client, api_client, member_user,
                                              oauth_params, parse_success):
        api_client.fetch_current_user.return_value = member_user
        api_client.parse_request.return_value = parse_success()
        oauth_params["scope"] = "read:user admin"

        response = client.get("/oauth/authorize", params=oauth_params)

        assert response.status_code == 200
        assert 'data-group="admin"' not in response.text
        assert "Administration" not in response.text

    def test_missing_parameters(self, client, api_client, member_user):
        """Test that missing parameters render an error without parsing."""
        api_client.fetch_current_user.return_value = member_user

        response = client.get("/oauth/authorize", params={"client_id": "client-abc"})

        assert response.status_code == 400
        assert "Missing required OAuth parameters" in response.text
        api_client.parse_request.assert_not_awaited()

    def test_parse_failure_rendered(self, client, api_client, member_user, oauth_params):
        api_client.fetch_current_user.return_value = member_user
        api_client.parse_request.return_value = ParseFailure(message="Invalid redirect_uri for client")

        response = client.get("/oauth/authorize", params=oauth_params)

        assert response.status_code == 400
        assert "Invalid redirect_uri for client" in response.text

    def test_parse_error_message_escaped(self, client, api_client, member_user, oauth_params):
        """Test that backend error text cannot inject markup."""
        api_client.fetch_current_user.return_value = member_user
        api_client.parse_request.return_value = ParseFailure(message="<script>alert(1)</script>")

        response = client.get("/oauth/authorize", params=oauth_params)

        assert "<script>alert(1)</script>" not in response.text
        assert "&lt;script&gt;" in response.text

    def test_parse_communication_error(self, client, api_client, member_user, oauth_params):
        api_client.fetch_current_user.return_value = member_user
        api_client.parse_request.side_effect = ApiCommunicationError("/oauth/internal/parse-request", "timeout")

        response = client.get("/oauth/authorize", params=oauth_params)

        assert response.status_code == 502
        assert "Failed to communicate with authorization server" in response.text
        assert "timeout" not in response.text

    def test_user_lookup_communication_error(self, client, api_client, oauth_params):
        api_client.fetch_current_user.side_effect = ApiCommunicationError("/auth/me", "refused")

        response = client.get("/oauth/authorize", params=oauth_params)

        assert response.status_code == 502
        api_client.parse_request.assert_not_awaited()

    def test_auto_approval_redirects(self, client, api_client, member_user, oauth_params, parse_success):
        """Test that a covering grant skips the consent screen."""
        api_client.fetch_current_user.return_value = member_user
        api_client.parse_request.return_value = parse_success(existing_scopes=["profile"])
        api_client.complete_authorization.return_value = CompletionSuccess(redirect_to=CALLBACK_WITH_CODE)

        response = client.get("/oauth/authorize", params=oauth_params, follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == CALLBACK_WITH_CODE

    def test_prompt_consent_shows_screen(self, client, api_client, member_user, oauth_params, parse_success):
        api_client.fetch_current_user.return_value = member_user
        api_client.parse_request.return_value = parse_success(existing_scopes=["profile"])
        oauth_params["prompt"] = "consent"

        response = client.get("/oauth/authorize", params=oauth_params)

        assert response.status_code == 200
        api_client.complete_authorization.assert_not_awaited()


class TestAuthorizeDecisionEndpoint:
    """Test cases for POST /oauth/authorize."""

    def test_approve_redirects_to_backend_target(self, client, api_client, approve_form, member_user):
        api_client.complete_authorization.return_value = CompletionSuccess(redirect_to=CALLBACK_WITH_CODE)

        response = client.post("/oauth/authorize", data=approve_form,
                               headers={"Cookie": "session=abc"}, follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == CALLBACK_WITH_CODE

        sent_request, user_id, scopes, cookie = api_client.complete_authorization.await_args.args
        assert sent_request.client_id == "client-abc"
        assert user_id == member_user.id
        assert scopes == ["profile"]
        assert cookie == "session=abc"

    def test_approve_carries_nonce(self, client, api_client, approve_form, oauth_request):
        """Test that a nonce in the hidden request reaches the completion call."""
        api_client.complete_authorization.return_value = CompletionSuccess(redirect_to=CALLBACK_WITH_CODE)
        approve_form["oauthRequest"] = oauth_request.model_copy(update={"nonce": "n-123"}).to_form_value()

        client.post("/oauth/authorize", data=approve_form, follow_redirects=False)

        assert api_client.complete_authorization.await_args.args[0].nonce == "n-123"

    def test_approve_failure_redirects_server_error(self, client, api_client, approve_form):
        api_client.complete_authorization.return_value = CompletionFailure(message="db down")

        response = client.post("/oauth/authorize", data=approve_form, follow_redirects=False)

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        params = parse_qs(location.query)
        assert location.netloc == "app.example.com"
        assert params["error"] == ["server_error"]
        assert params["state"] == ["xyz"]

    def test_deny_redirects_access_denied(self, client, api_client):
        response = client.post("/oauth/authorize", data={
            "intent": "deny",
            "redirectUri": "https://app.example.com/callback?tenant=42",
            "state": "xyz",
        }, follow_redirects=False)

        assert response.status_code == 302
        params = parse_qs(urlparse(response.headers["location"]).query)
        assert params["error"] == ["access_denied"]
        assert params["error_description"] == ["User denied the authorization request"]
        assert params["state"] == ["xyz"]
        assert params["tenant"] == ["42"]
        api_client.complete_authorization.assert_not_awaited()

    def test_deny_falls_back_to_request_redirect_uri(self, client, approve_form):
        approve_form["intent"] = "deny"
        del approve_form["redirectUri"]

        response = client.post("/oauth/authorize", data=approve_form, follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://app.example.com/callback?")

    @pytest.mark.parametrize("form", [
        {"intent": "maybe", "redirectUri": "https://app.example.com/callback"},
        {"redirectUri": "https://app.example.com/callback"},
        {"intent": "deny"},
        {"intent": "deny", "redirectUri": "not a uri"},
        {"intent": "approve", "userId": "user-123", "approvedScopes": json.dumps(["profile"])},
        {"intent": "approve", "oauthRequest": "{not json", "userId": "u", "approvedScopes": "[]"},
    ])
    def test_invalid_submission(self, client, api_client, form):
        """Test that malformed forms are rejected without a redirect."""
        response = client.post("/oauth/authorize", data=form, follow_redirects=False)

        assert response.status_code == 400
        assert "Invalid action" in response.text
        api_client.complete_authorization.assert_not_awaited()


class TestDecisionJsonResponses:
    """Test cases for the fetch()-driven decision used by the consent page."""

    JSON_HEADERS = {"Accept": "application/json"}

    def test_approve_returns_redirect_target(self, client, api_client, approve_form):
        api_client.complete_authorization.return_value = CompletionSuccess(redirect_to=CALLBACK_WITH_CODE)

        response = client.post("/oauth/authorize", data=approve_form,
                               headers=self.JSON_HEADERS, follow_redirects=False)

        assert response.status_code == 200
        assert response.json() == {"redirectTo": CALLBACK_WITH_CODE}

    def test_approve_failure_returns_error_redirect_target(self, client, api_client, approve_form):
        api_client.complete_authorization.return_value = CompletionFailure(message="db down")

        response = client.post("/oauth/authorize", data=approve_form, headers=self.JSON_HEADERS)

        params = parse_qs(urlparse(response.json()["redirectTo"]).query)
        assert params["error"] == ["server_error"]
        assert params["state"] == ["xyz"]

    def test_invalid_submission_returns_json_error(self, client, api_client):
        response = client.post("/oauth/authorize", data={"intent": "approve"}, headers=self.JSON_HEADERS)

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid action"}
        api_client.complete_authorization.assert_not_awaited()

    def test_consent_page_waits_for_completion(self, client, api_client, member_user,
                                               oauth_params, parse_success):
        """Test that the page submits approval with fetch and handles bfcache restores."""
        api_client.fetch_current_user.return_value = member_user
        api_client.parse_request.return_value = parse_success()

        response = client.get("/oauth/authorize", params=oauth_params)

        assert '"Accept": "application/json"' in response.text
        assert "event.persisted" in response.text


class TestRedirectLogging:
    """Test cases for keeping authorization codes out of the logs."""

    SECRET_CALLBACK = "https://app.example.com/callback?code=user-123:grant-9:SUPERSECRETAUTHCODEVALUE&state=xyz"

    def test_approval_redirect_log_omits_code(self, client, api_client, approve_form):
        api_client.complete_authorization.return_value = CompletionSuccess(redirect_to=self.SECRET_CALLBACK)

        with patch.object(routes.logger.logger, "info") as mock_info:
            response = client.post("/oauth/authorize", data=approve_form, follow_redirects=False)

        assert response.headers["location"] == self.SECRET_CALLBACK
        logged = "\n".join(str(call.args[0]) for call in mock_info.call_args_list)
        assert "SUPERSECRETAUTHCODEVALUE" not in logged
        assert "https://app.example.com/callback" in logged
        assert "has_code" in logged

    def test_auto_approval_redirect_log_omits_code(self, client, api_client, member_user,
                                                   oauth_params, parse_success):
        api_client.fetch_current_user.return_value = member_user
        api_client.parse_request.return_value = parse_success(existing_scopes=["profile"])
        api_client.complete_authorization.return_value = CompletionSuccess(redirect_to=self.SECRET_CALLBACK)

        with patch.object(routes.logger.logger, "info") as mock_info:
            client.get("/oauth/authorize", params=oauth_params, follow_redirects=False)

        logged = "\n".join(str(call.args[0]) for call in mock_info.call_args_list)
        assert "SUPERSECRETAUTHCODEVALUE" not in logged

    def test_redirect_log_details(self):
        outcome = ConsentRedirect(state=ConsentState.DENIED,
                                  location="myapp://cb?error=access_denied&state=s")

        details = routes.redirect_log_details(outcome)

        assert details == {
            "state": "DENIED",
            "target": "myapp://cb",
            "has_code": False,
            "error": "access_denied",
        }


class TestRepeatedQueryParameters:
    """Test cases for authorize requests that repeat a parameter."""

    def test_first_value_wins(self, client, api_client, member_user, oauth_params, parse_success):
        api_client.fetch_current_user.return_value = member_user
        api_client.parse_request.return_value = parse_success()
        params = list(oauth_params.items()) + [("scope", "read:events"), ("scope", "read:user")]

        response = client.get("/oauth/authorize", params=params)

        assert response.status_code == 200
        assert 'data-group="events"' in response.text
        assert 'data-group="profile"' not in response.text
