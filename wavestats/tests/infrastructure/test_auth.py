from urllib.parse import parse_qs, urlparse

import pytest
import requests

from wavestats.crosscutting.config import Settings
from wavestats.domain.errors import (
    FailureKind, InvalidResponseFormat, RefreshError, UpstreamAuthError, UpstreamFailure,
)
from wavestats.infrastructure.auth import SpotifyTokenExchanger


class _Resp:
    def __init__(self, status_code, payload=None, text=''):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _Session:
    """Records token endpoint POSTs and answers with a canned response."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, data=None, auth=None, headers=None, timeout=None):
        self.calls.append({'url': url, 'data': data, 'auth': auth, 'headers': headers, 'timeout': timeout})
        if self.error:
            raise self.error
        return self.response


class TestSpotifyTokenExchanger:
    """Tests for the authorization-code and refresh grants."""

    def setup_method(self):
        """Set up test fixtures."""
        self.settings = Settings(
            client_id='client-id-123',
            client_secret='client-secret-456',
            redirect_uri='http://127.0.0.1:4000/callback',
        )

    def _exchanger(self, response=None, error=None):
        self.session = _Session(response, error)
        return SpotifyTokenExchanger(self.settings, session=self.session)

    def test_authorize_url_includes_scopes_and_redirect(self):
        url = self._exchanger().authorize_url(state='xyz')

        parsed = urlparse(url)
        params = parse_qs(parsed.query)

        assert parsed.netloc == 'accounts.spotify.com'
        assert parsed.path == '/authorize'
        assert params['client_id'] == ['client-id-123']
        assert params['response_type'] == ['code']
        assert params['redirect_uri'] == ['http://127.0.0.1:4000/callback']
        assert params['state'] == ['xyz']
        scopes = params['scope'][0].split(' ')
        for scope in ['user-top-read', 'user-read-recently-played', 'user-follow-read', 'user-library-read']:
            assert scope in scopes

    def test_exchange_code_posts_with_basic_auth(self):
        exchanger = self._exchanger(_Resp(200, {
            'access_token': 'AT', 'refresh_token': 'RT', 'expires_in': 3600, 'scope': 'user-top-read',
        }))

        pair = exchanger.exchange_code('AUTHCODE')

        call = self.session.calls[0]
        assert call['url'] == 'https://accounts.spotify.com/api/token'
        assert call['data'] == {
            'grant_type': 'authorization_code',
            'code': 'AUTHCODE',
            'redirect_uri': 'http://127.0.0.1:4000/callback',
        }
        assert call['auth'] == ('client-id-123', 'client-secret-456')
        assert call['timeout'] == 5.0
        assert pair.access_token == 'AT'
        assert pair.refresh_token == 'RT'
        assert pair.expires_in == 3600

    def test_exchange_code_rejected(self):
        exchanger = self._exchanger(_Resp(400, {'error': 'invalid_grant', 'error_description': 'Invalid authorization code'}))

        with pytest.raises(UpstreamAuthError) as exc_info:
            exchanger.exchange_code('USED')

        assert not isinstance(exc_info.value, RefreshError)
        assert 'Invalid authorization code' in exc_info.value.message

    def test_exchange_code_without_code(self):
        with pytest.raises(UpstreamAuthError):
            self._exchanger().exchange_code('')
        assert self.session.calls == []

    def test_exchange_code_missing_refresh_token(self):
        exchanger = self._exchanger(_Resp(200, {'access_token': 'AT'}))

        with pytest.raises(InvalidResponseFormat):
            exchanger.exchange_code('AUTHCODE')

    def test_exchange_code_non_json_body(self):
        exchanger = self._exchanger(_Resp(200, None, text='<html>'))

        with pytest.raises(InvalidResponseFormat):
            exchanger.exchange_code('AUTHCODE')

    def test_refresh_keeps_refresh_token_when_not_rotated(self):
        exchanger = self._exchanger(_Resp(200, {'access_token': 'AT2', 'expires_in': 3600}))

        pair = exchanger.refresh('RT')

        assert self.session.calls[0]['data'] == {'grant_type': 'refresh_token', 'refresh_token': 'RT'}
        assert pair.access_token == 'AT2'
        assert pair.refresh_token == 'RT'

    def test_refresh_returns_rotated_refresh_token(self):
        exchanger = self._exchanger(_Resp(200, {'access_token': 'AT2', 'refresh_token': 'RT2'}))

        assert exchanger.refresh('RT').refresh_token == 'RT2'

    @pytest.mark.parametrize('status', [400, 401])
    def test_refresh_rejected_is_terminal(self, status):
        exchanger = self._exchanger(_Resp(status, {'error': 'invalid_grant'}))

        with pytest.raises(RefreshError) as exc_info:
            exchanger.refresh('REVOKED')

        assert exc_info.value.code == 'REFRESH_ERROR'

    def test_refresh_missing_access_token(self):
        exchanger = self._exchanger(_Resp(200, {'token_type': 'Bearer'}))

        with pytest.raises(InvalidResponseFormat):
            exchanger.refresh('RT')

    def test_server_error_is_transient(self):
        exchanger = self._exchanger(_Resp(503, None, text='unavailable'))

        with pytest.raises(UpstreamFailure) as exc_info:
            exchanger.refresh('RT')

        assert exc_info.value.kind is FailureKind.TRANSIENT
        assert exc_info.value.status == 503

    def test_rate_limited(self):
        exchanger = self._exchanger(_Resp(429))

        with pytest.raises(UpstreamFailure) as exc_info:
            exchanger.exchange_code('AUTHCODE')

        assert exc_info.value.kind is FailureKind.RATE_LIMITED
        assert exc_info.value.retryable

    def test_timeout(self):
        exchanger = self._exchanger(error=requests.exceptions.ReadTimeout("read timed out"))

        with pytest.raises(UpstreamFailure) as exc_info:
            exchanger.refresh('RT')

        assert exc_info.value.kind is FailureKind.TIMEOUT

    def test_connection_error(self):
        exchanger = self._exchanger(error=requests.exceptions.ConnectionError("refused"))

        with pytest.raises(UpstreamFailure) as exc_info:
            exchanger.exchange_code('AUTHCODE')

        assert exc_info.value.kind is FailureKind.TRANSIENT
