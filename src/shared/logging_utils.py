"""
Colored logging utilities for the OAuth 2.1 consent server.

This module provides colored console logging with component identification,
timestamps, and message formatting for clear visualization of the consent
flow between the browser, the consent server, the events API and the
third-party app receiving the redirect.
"""

import logging
from datetime import datetime
from typing import Dict, Any, Optional
from enum import Enum

from colorama import Fore, Style, init

init(autoreset=True)  # Windows console support


class ComponentType(str, Enum):
    """Consent flow component types."""
    CONSENT_SERVER = "CONSENT-SERVER"
    EVENTS_API = "EVENTS-API"
    USER_BROWSER = "USER-BROWSER"
    THIRD_PARTY_APP = "THIRD-PARTY-APP"
    SYSTEM = "SYSTEM"


class MessageType(str, Enum):
    """Consent flow message types for logging."""
    REQUEST = "REQUEST"
    RESPONSE = "RESPONSE"
    ERROR = "ERROR"
    INFO = "INFO"
    STATE_TRANSITION = "STATE-TRANSITION"
    CONSENT_DECISION = "CONSENT-DECISION"
    REDIRECT = "REDIRECT"


class OAuthLogger:
    """
    Colored logger for OAuth 2.1 consent flows.

    Provides logging with color coding, timestamps, and structured message
    formatting to help follow a consent request from the browser to the
    events API and back out to the client application.
    """

    def __init__(self, component_name: str):
        """
        Initialize OAuth logger for a specific component.

        Args:
            component_name: Name of the component (CONSENT-SERVER, etc.)
        """
        self.component_name = component_name.upper()
        self.colors = self._get_component_colors()

        self.logger = logging.getLogger(f"oauth.{component_name.lower()}")
        self.logger.setLevel(logging.INFO)

        # Remove existing handlers to avoid duplicates
        self.logger.handlers.clear()

        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        self.logger.addHandler(handler)
        self.logger.propagate = False

    def _get_component_colors(self) -> Dict[str, str]:
        """Get color scheme for different components and message types."""
        return {
            'CONSENT-SERVER': Fore.GREEN + Style.BRIGHT,
            'EVENTS-API': Fore.YELLOW + Style.BRIGHT,
            'USER-BROWSER': Fore.BLUE + Style.BRIGHT,
            'THIRD-PARTY-APP': Fore.CYAN + Style.BRIGHT,
            'SYSTEM': Fore.MAGENTA + Style.BRIGHT,
            'ERROR': Fore.RED + Style.BRIGHT,
            'SUCCESS': Fore.GREEN + Style.BRIGHT,
            'INFO': Fore.CYAN,
            'DEBUG': Fore.WHITE + Style.DIM,
            'HEADER': Fore.WHITE + Style.BRIGHT,
            'SEPARATOR': Fore.WHITE + Style.DIM,
            'RESET': Style.RESET_ALL
        }

    def _format_timestamp(self) -> str:
        """Format current timestamp for log messages."""
        return datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

    def _sanitize_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Sanitize sensitive data for logging.

        Redacts cookies and secrets, and truncates codes, challenges and
        nonces.
        """
        sanitized = {}
        for key, value in data.items():
            key_lower = key.lower()

            if any(sensitive in key_lower for sensitive in ['password', 'secret', 'cookie', 'authorization']):
                sanitized[key] = '[REDACTED]'
            elif any(token in key_lower for token in ['token', 'code', 'challenge', 'nonce']):
                if isinstance(value, str) and len(value) > 10:
                    sanitized[key] = f"{value[:10]}..."
                else:
                    sanitized[key] = value
            else:
                sanitized[key] = value

        return sanitized

    def _emit(self, line: str) -> None:
        self.logger.info(line)

    def log_oauth_message(self,
                          source: str,
                          destination: str,
                          message_type: str,
                          data: Dict[str, Any],
                          success: bool = True):
        """
        Log an OAuth message with color coding and formatting.

        Args:
            source: Source component name
            destination: Destination component name
            message_type: Type of message (REQUEST, RESPONSE, etc.)
            data: Message data dictionary
            success: Whether the operation was successful
        """
        timestamp = self._format_timestamp()
        source_color = self.colors.get(source.upper(), self.colors['INFO'])
        dest_color = self.colors.get(destination.upper(), self.colors['INFO'])

        if not success:
            msg_color = self.colors['ERROR']
        elif message_type in ['RESPONSE', 'SUCCESS']:
            msg_color = self.colors['SUCCESS']
        else:
            msg_color = self.colors['INFO']

        self._emit(
            f"{self.colors['HEADER']}[{timestamp}] {source_color}{source}{self.colors['RESET']}"
            f" → {dest_color}{destination}{self.colors['RESET']}"
        )
        self._emit(f"{msg_color}{message_type}:{self.colors['RESET']}")

        for key, value in self._sanitize_data(data).items():
            self._emit(f"  {self.colors['INFO']}{key}:{self.colors['RESET']} {value}")

        self._emit(f"{self.colors['SEPARATOR']}{'-' * 60}{self.colors['RESET']}")

    def log_api_call(self,
                     method: str,
                     path: str,
                     details: Optional[Dict[str, Any]] = None,
                     success: bool = True):
        """
        Log a call from this component to the events API.

        Args:
            method: HTTP method
            path: API path
            details: Request or response details
            success: Whether the call succeeded
        """
        call_data = {"method": method, "path": path}
        if details:
            call_data.update(details)

        self.log_oauth_message(
            source=self.component_name,
            destination=ComponentType.EVENTS_API.value,
            message_type="API-CALL",
            data=call_data,
            success=success
        )

    def log_state_transition(self,
                             from_state: str,
                             event: str,
                             to_state: str,
                             details: Optional[Dict[str, Any]] = None):
        """
        Log a consent state machine transition.

        Args:
            from_state: State before the event
            event: Event that fired
            to_state: Resulting state
            details: Additional context
        """
        transition_data = {"from": from_state, "event": event, "to": to_state}
        if details:
            transition_data.update(details)

        self.log_oauth_message(
            source=self.component_name,
            destination=self.component_name,
            message_type=MessageType.STATE_TRANSITION.value,
            data=transition_data,
            success=to_state != "ERROR"
        )

    def log_consent_decision(self,
                             user_id: str,
                             client_id: str,
                             decision: str,
                             details: Optional[Dict[str, Any]] = None):
        """
        Log a user's approve/deny decision.

        Args:
            user_id: Deciding user
            client_id: Client the decision applies to
            decision: "approve", "deny" or "auto-approve"
            details: Additional context
        """
        decision_data = {"user_id": user_id, "client_id": client_id, "decision": decision}
        if details:
            decision_data.update(details)

        self.log_oauth_message(
            source=ComponentType.USER_BROWSER.value,
            destination=self.component_name,
            message_type=MessageType.CONSENT_DECISION.value,
            data=decision_data,
            success=True
        )

    def log_http_request(self,
                         method: str,
                         path: str,
                         params: Optional[Dict[str, Any]] = None,
                         headers: Optional[Dict[str, str]] = None):
        """
        Log HTTP request details.

        Args:
            method: HTTP method
            path: Request path
            params: Query parameters or form data
            headers: Request headers (sensitive headers will be redacted)
        """
        request_data = {
            "method": method,
            "path": path
        }

        if params:
            request_data["parameters"] = self._sanitize_data(params)

        if headers:
            safe_headers = {}
            for key, value in headers.items():
                if key.lower() in ['authorization', 'cookie', 'x-api-key']:
                    safe_headers[key] = '[REDACTED]'
                else:
                    safe_headers[key] = value
            request_data["headers"] = safe_headers

        self.log_oauth_message(
            source=ComponentType.USER_BROWSER.value,
            destination=self.component_name,
            message_type="HTTP-REQUEST",
            data=request_data
        )

    def log_error(self,
                  error_type: str,
                  message: str,
                  details: Optional[Dict[str, Any]] = None):
        """
        Log error messages with context.

        Args:
            error_type: Type of error
            message: Error message
            details: Additional error context
        """
        error_data = {
            "error_type": error_type,
            "message": message
        }

        if details:
            error_data.update(details)

        self.log_oauth_message(
            source=self.component_name,
            destination="ERROR-HANDLER",
            message_type="ERROR",
            data=error_data,
            success=False
        )

    def log_startup(self, port: int, additional_info: Optional[Dict[str, Any]] = None):
        """
        Log component startup information.

        Args:
            port: Port number the component is running on
            additional_info: Additional startup information
        """
        self._emit(f"{self.colors['SUCCESS']}🚀 {self.component_name} started on port {port}{self.colors['RESET']}")
        if additional_info:
            for key, value in additional_info.items():
                self._emit(f"   {key}: {value}")
        self._emit(f"{self.colors['SEPARATOR']}{'-' * 60}{self.colors['RESET']}")


def create_logger(component_name: str) -> OAuthLogger:
    """
    Factory function to create OAuth logger instances.

    Args:
        component_name: Name of the component

    Returns:
        OAuthLogger: Configured logger instance
    """
    return OAuthLogger(component_name)
