"""
Google OAuth 2.0 sign-in.

A GoogleAuthGateway is built once from Settings and handed to the Flask app;
nothing is registered globally. The flow:

1. ``authorization_url`` sends the browser to Google's consent screen.
2. Google redirects back with an authorization code.
3. ``exchange`` trades the code for tokens, reads the profile and derives the
   role. The resulting Principal is what the session keeps.
"""

import logging
import os
from typing import Optional

import google.oauth2.credentials
import google_auth_oauthlib.flow
import requests
from pydantic import BaseModel

from letterdrive.roles import resolve_role

logger = logging.getLogger(__name__)

SCOPES = [
    'openid',
    'https://www.googleapis.com/auth/userinfo.profile',
    'https://www.googleapis.com/auth/userinfo.email',
    'https://www.googleapis.com/auth/drive',
]

AUTH_URI = 'https://accounts.google.com/o/oauth2/auth'
TOKEN_URI = 'https://oauth2.googleapis.com/token'
USERINFO_URI = 'https://www.googleapis.com/oauth2/v3/userinfo'
REVOKE_URI = 'https://oauth2.googleapis.com/revoke'

REQUEST_TIMEOUT = 10


class AuthError(Exception):
    """The provider refused or failed the sign-in."""


class Principal(BaseModel):
    """The signed-in user as kept in the session."""

    displayName: str = ""
    email: str = ""
    role: str
    accessToken: str
    refreshToken: Optional[str] = None

    def public(self):
        return {'displayName': self.displayName, 'email': self.email, 'role': self.role}


class GoogleAuthGateway:
    def __init__(self, settings):
        self.settings = settings
        # Google may grant previously granted scopes too (include_granted_scopes)
        os.environ.setdefault('OAUTHLIB_RELAX_TOKEN_SCOPE', '1')

    def _client_config(self):
        return {
            'web': {
                'client_id': self.settings.google_client_id,
                'client_secret': self.settings.google_client_secret,
                'auth_uri': AUTH_URI,
                'token_uri': TOKEN_URI,
                'redirect_uris': [self.settings.callback_url],
            }
        }

    def _flow(self, state=None):
        flow = google_auth_oauthlib.flow.Flow.from_client_config(
            self._client_config(), scopes=SCOPES, state=state,
            # The callback builds a fresh Flow, so no PKCE verifier survives.
            autogenerate_code_verifier=False)
        flow.redirect_uri = self.settings.callback_url
        return flow

    def authorization_url(self):
        """Return ``(url, state)``; the state must come back on the callback."""
        return self._flow().authorization_url(
            # Offline access gives a refresh token for expired access tokens
            access_type='offline',
            include_granted_scopes='true')

    def exchange(self, authorization_response, state):
        try:
            flow = self._flow(state=state)
            flow.fetch_token(authorization_response=authorization_response)
            credentials = flow.credentials
            profile = self.fetch_profile(credentials.token)
        except AuthError:
            raise
        except Exception as exc:
            logger.error("OAuth token exchange failed: %s", exc)
            raise AuthError(str(exc)) from exc

        email = profile.get('email', '')
        principal = Principal(
            displayName=profile.get('name', ''),
            email=email,
            role=resolve_role(email, self.settings.admin_email_suffix),
            accessToken=credentials.token,
            refreshToken=credentials.refresh_token,
        )
        logger.info("Signed in %s as %s", principal.email, principal.role)
        return principal

    def fetch_profile(self, access_token):
        response = requests.get(
            USERINFO_URI,
            headers={'Authorization': f'Bearer {access_token}'},
            timeout=REQUEST_TIMEOUT)
        if response.status_code != 200:
            raise AuthError(f"userinfo request failed with status {response.status_code}")
        return response.json()

    def credentials_for(self, principal):
        return google.oauth2.credentials.Credentials(
            token=principal.accessToken,
            refresh_token=principal.refreshToken,
            token_uri=TOKEN_URI,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=SCOPES)

    def revoke(self, token):
        try:
            response = requests.post(
                REVOKE_URI,
                params={'token': token},
                headers={'content-type': 'application/x-www-form-urlencoded'},
                timeout=REQUEST_TIMEOUT)
        except requests.RequestException as exc:
            logger.warning("Token revocation failed: %s", exc)
            return False
        return response.status_code == 200
