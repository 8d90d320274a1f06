import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests

from wavestats.crosscutting.config import Settings
from wavestats.domain.entities import CredentialPair
from wavestats.domain.errors import (
    FailureKind, InvalidResponseFormat, RefreshError, UpstreamAuthError, UpstreamFailure,
)
from wavestats.domain.ports import TokenExchanger

logger = logging.getLogger(__name__)

# Statuses the token endpoint uses for a rejected grant or client
_REJECTED_STATUSES = (400, 401, 403)


class SpotifyTokenExchanger(TokenExchanger):
    """Spotify accounts service client for the authorization-code flow.

    Stateless apart from its configuration: every method is one POST to the
    token endpoint, authenticated with HTTP Basic client credentials.
    """

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self._session = session or requests.Session()

    def authorize_url(self, state: Optional[str] = None) -> str:
        """URL that starts the login flow on the accounts service."""
        params = {
            'client_id': self.settings.client_id,
            'response_type': 'code',
            'redirect_uri': self.settings.redirect_uri,
            'scope': self.settings.scope_string,
        }
        if state:
            params['state'] = state
        return f'{self.settings.authorize_url}?{urlencode(params)}'

    def exchange_code(self, code: str) -> CredentialPair:
        """Exchange an authorization code for a credential pair.

        Raises:
            UpstreamAuthError: the code is invalid, expired or already used.
            UpstreamFailure: network failure, timeout or server error.
        """
        if not code:
            raise UpstreamAuthError("Missing authorization code")

        response = self._post({
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.settings.redirect_uri,
        })
        if response.status_code in _REJECTED_STATUSES:
            logger.error(f"Authorization code rejected: {response.status_code} - {_error_description(response)}")
            raise UpstreamAuthError(f"Authorization code rejected: {_error_description(response)}")
        self._raise_for_server_error(response)

        data = _json(response)
        if not data.get('refresh_token'):
            raise InvalidResponseFormat("Token response is missing refresh_token")
        return _credential_pair(data, fallback_refresh_token=None)

    def refresh(self, refresh_token: str) -> CredentialPair:
        """Obtain a new access token.

        The upstream may rotate the refresh token; when it does not, the one
        passed in stays valid and is returned in the pair.

        Raises:
            RefreshError: the refresh token is invalid or revoked. Terminal.
            UpstreamFailure: network failure, timeout or server error.
        """
        if not refresh_token:
            raise RefreshError("Missing refresh token")

        response = self._post({
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        })
        if response.status_code in _REJECTED_STATUSES:
            logger.error(f"Refresh token rejected: {response.status_code} - {_error_description(response)}")
            raise RefreshError("Failed to refresh token")
        self._raise_for_server_error(response)

        return _credential_pair(_json(response), fallback_refresh_token=refresh_token)

    def _post(self, data: Dict[str, str]) -> requests.Response:
        try:
            return self._session.post(
                self.settings.token_url,
                data=data,
                auth=(self.settings.client_id or '', self.settings.client_secret or ''),
                headers={'Content-Type': 'application/x-www-form-urlencoded'},
                timeout=self.settings.upstream_timeout,
            )
        except requests.exceptions.Timeout as e:
            raise UpstreamFailure(FailureKind.TIMEOUT, f"Token endpoint timed out: {e}")
        except requests.exceptions.RequestException as e:
            raise UpstreamFailure(FailureKind.TRANSIENT, f"Token endpoint unreachable: {e}")

    @staticmethod
    def _raise_for_server_error(response: requests.Response) -> None:
        if response.status_code == 429:
            raise UpstreamFailure(FailureKind.RATE_LIMITED, "Token endpoint rate limited", status=429)
        if response.status_code >= 400:
            kind = FailureKind.TRANSIENT if response.status_code >= 500 else FailureKind.REJECTED
            raise UpstreamFailure(kind, f"Token endpoint returned {response.status_code}",
                                  status=response.status_code)


def _json(response: requests.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        raise InvalidResponseFormat("Token endpoint returned a non-JSON body")
    if not isinstance(data, dict):
        raise InvalidResponseFormat("Token endpoint returned an unexpected payload")
    return data


def _error_description(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or 'no details'
    if isinstance(data, dict):
        return data.get('error_description') or data.get('error') or 'no details'
    return 'no details'


def _credential_pair(data: Dict[str, Any], fallback_refresh_token: Optional[str]) -> CredentialPair:
    access_token = data.get('access_token')
    if not access_token or not isinstance(access_token, str):
        raise InvalidResponseFormat("Token response is missing access_token")
    return CredentialPair(
        access_token=access_token,
        refresh_token=data.get('refresh_token') or fallback_refresh_token,
        expires_in=data.get('expires_in'),
        scope=data.get('scope'),
    )
