#!/usr/bin/env python3
"""
Token Guard

Makes sure a usable Google access token exists before any Calendar call.

Refresh outcomes are classified so callers can react correctly:
- success            -> new AccessCredential
- invalid_grant      -> ReauthRequiredError (refresh token is dead)
- anything else      -> TransientAuthError (may succeed on one retry)

The guard itself never retries.
"""

import logging
import time
from typing import Callable, Optional

import requests

from classsync import config
from classsync.core.errors import ReauthRequiredError, TransientAuthError
from classsync.core.models import AccessCredential


class TokenGuard:
    """Refresh Google OAuth access tokens ahead of expiry."""

    def __init__(self, client_id: str = None, client_secret: str = None,
                 token_uri: str = None, margin_seconds: int = None,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.time):
        self.logger = logging.getLogger('token-guard')

        self.client_id = client_id if client_id is not None else config.GOOGLE_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else config.GOOGLE_CLIENT_SECRET
        self.token_uri = token_uri or config.GOOGLE_TOKEN_URI
        self.margin_seconds = (margin_seconds if margin_seconds is not None
                               else config.TOKEN_EXPIRY_MARGIN_SECONDS)
        self.session = session or requests.Session()
        self.clock = clock

    def needs_refresh(self, credential: AccessCredential) -> bool:
        """True when expiry is unknown or falls inside the safety margin."""
        if not credential.access_token or credential.expires_at is None:
            return True
        return self.clock() >= credential.expires_at - self.margin_seconds

    def ensure_access(self, credential: AccessCredential, force: bool = False) -> AccessCredential:
        """Return a credential that is valid for at least the safety margin."""
        if not force and not self.needs_refresh(credential):
            self.logger.debug("Access token is still valid")
            return credential

        if not credential.refresh_token:
            self.logger.error("❌ No refresh token available")
            raise ReauthRequiredError('Missing refresh token, re-authorization required')

        self.logger.info("🔄 Access token expired or expiring soon, refreshing...")
        return self._refresh(credential)

    def _refresh(self, credential: AccessCredential) -> AccessCredential:
        try:
            response = self.session.post(
                self.token_uri,
                data={
                    'grant_type': 'refresh_token',
                    'refresh_token': credential.refresh_token,
                    'client_id': self.client_id,
                    'client_secret': self.client_secret,
                },
                timeout=config.HTTP_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            self.logger.error(f"❌ Token refresh request failed: {e}")
            raise TransientAuthError(f"Token refresh request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if not response.ok:
            error = payload.get('error') if isinstance(payload, dict) else None
            self.logger.error(f"❌ Failed to refresh token: {response.status_code} {error or ''}")

            if error == 'invalid_grant':
                raise ReauthRequiredError('Refresh token is no longer valid, re-authorization required')

            raise TransientAuthError(f"Token refresh failed: {response.status_code} {error or ''}".strip())

        access_token = payload.get('access_token') if isinstance(payload, dict) else None
        if not access_token:
            self.logger.error("❌ Token refresh response carried no access token")
            raise TransientAuthError('Token refresh response carried no access token')

        expires_in = payload.get('expires_in')
        expires_at = int(self.clock()) + int(expires_in) if expires_in else None

        self.logger.info("✅ Token refreshed successfully")
        return AccessCredential(
            access_token=access_token,
            refresh_token=payload.get('refresh_token') or credential.refresh_token,
            expires_at=expires_at,
        )
