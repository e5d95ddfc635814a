"""
Security utilities for the OAuth 2.1 consent server.

This module provides redirect URI validation, input sanitization and the
standard security headers applied to every consent server response.
"""

from typing import Optional
from urllib.parse import urlparse


class InputValidator:
    """
    Input validation and sanitization utilities.

    Provides validation for redirect targets and sanitization of text that
    originates outside this server (backend error messages, form values).
    """

    DANGEROUS_URI_CHARS = ['<', '>', '"', "'", ' ', '\n', '\r', '\t']

    @staticmethod
    def validate_redirect_uri(redirect_uri: str, allowed_schemes: Optional[list] = None) -> bool:
        """
        Validate an OAuth redirect URI.

        Client apps may register custom schemes (``claude-desktop://...``),
        so any scheme is accepted unless ``allowed_schemes`` narrows it.
        The URI must be absolute, and http/https URIs need a host. A query
        string of the client's own is fine.

        Args:
            redirect_uri: URI to validate
            allowed_schemes: Optional list of permitted URI schemes

        Returns:
            bool: True if valid URI, False otherwise
        """
        if not isinstance(redirect_uri, str) or not redirect_uri:
            return False

        if any(char in redirect_uri for char in InputValidator.DANGEROUS_URI_CHARS):
            return False

        try:
            parsed = urlparse(redirect_uri)
        except ValueError:
            return False

        if not parsed.scheme:
            return False

        if allowed_schemes is not None and parsed.scheme not in allowed_schemes:
            return False

        if parsed.scheme in ['http', 'https'] and not parsed.netloc:
            return False

        return True

    @staticmethod
    def sanitize_string(input_str: str, max_length: int = 300) -> str:
        """
        Sanitize string input by removing control characters.

        Args:
            input_str: String to sanitize
            max_length: Maximum allowed length

        Returns:
            str: Sanitized string
        """
        if not isinstance(input_str, str):
            return ""

        # Remove null bytes and control characters
        sanitized = ''.join(char for char in input_str if ord(char) >= 32 or char in ['\n', '\t'])

        sanitized = sanitized[:max_length]

        return sanitized.strip()


class SecurityHeaders:
    """
    Security headers for HTTP responses.

    The consent screen must never be framed (clickjacking would let a page
    trick users into clicking "Allow Access") and must never be cached.
    """

    @staticmethod
    def get_oauth_security_headers() -> dict:
        """
        Get security headers for OAuth endpoints.

        Returns:
            dict: Dictionary of security headers
        """
        return {
            'X-Content-Type-Options': 'nosniff',
            'X-Frame-Options': 'DENY',
            'Content-Security-Policy': "frame-ancestors 'none'",
            'Referrer-Policy': 'no-referrer',
            'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
            'Cache-Control': 'no-cache, no-store, must-revalidate',
            'Pragma': 'no-cache',
            'Expires': '0'
        }
