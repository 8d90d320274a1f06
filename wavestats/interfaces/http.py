import os
import logging
import uuid
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlencode

from flask import Flask, Response, g, jsonify, redirect, request
from werkzeug.exceptions import HTTPException

from wavestats.application.queries import QueryResult, StatsService
from wavestats.application.session import RequestContext
from wavestats.crosscutting.config import Settings, get_settings
from wavestats.crosscutting.logging import log_error
from wavestats.crosscutting.metrics import MetricsCollector
from wavestats.domain.entities import CredentialPair
from wavestats.domain.errors import (
    InvalidArgument, InvalidResponseFormat, NotFound, QueryError, UpstreamAuthError, UpstreamFailure,
)
from wavestats.infrastructure.auth import SpotifyTokenExchanger
from wavestats.infrastructure.persistence.profile_store import InMemoryProfileStore, JsonProfileStore
from wavestats.infrastructure.providers.spotify import SpotifyWebClient

VERSION = "0.1.0"

ACCESS_COOKIE = 'access_token'
REFRESH_COOKIE = 'refresh_token'
REFRESH_HEADER = 'X-Refresh-Token'
ROTATED_TOKEN_HEADER = 'X-Access-Token'
REFRESH_COOKIE_MAX_AGE = 30 * 24 * 3600

_STATUS_BY_ERROR = (
    (UpstreamAuthError, 401),
    (NotFound, 404),
    (InvalidArgument, 400),
    (InvalidResponseFormat, 502),
)


def status_for(error: QueryError) -> int:
    """HTTP status for a query error; Unauthenticated maps to 401 too."""
    if error.code == 'UNAUTHENTICATED':
        return 401
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


def serialize(data: Any) -> Any:
    if isinstance(data, list):
        return [serialize(item) for item in data]
    if hasattr(data, 'to_dict'):
        return data.to_dict()
    return data


def build_service(settings: Settings, metrics: MetricsCollector,
                  exchanger: Optional[SpotifyTokenExchanger] = None) -> StatsService:
    """Wire the query layer from settings."""
    if settings.profile_db_path:
        profile_store = JsonProfileStore(settings.profile_db_path)
        profile_store.initialize()
    else:
        profile_store = InMemoryProfileStore()
    return StatsService(
        client=SpotifyWebClient(settings, on_call=metrics.record_upstream_call),
        exchanger=exchanger or SpotifyTokenExchanger(settings),
        profile_store=profile_store,
        metrics=metrics,
    )


class HTTPServer:
    """HTTP server exposing the OAuth flow and the stats queries."""

    def __init__(self, settings: Optional[Settings] = None,
                 service: Optional[StatsService] = None,
                 exchanger: Optional[SpotifyTokenExchanger] = None,
                 debug: bool = False):
        """Initialize HTTP server."""
        self.settings = settings or get_settings()
        self.debug = debug
        self.app = Flask(__name__)
        self.logger = logging.getLogger(__name__)

        self.version = VERSION
        self.commit = os.getenv('GIT_COMMIT', 'unknown')

        self.exchanger = exchanger or SpotifyTokenExchanger(self.settings)
        self.metrics = service.metrics if service else MetricsCollector()
        self.service = service or build_service(self.settings, self.metrics, self.exchanger)

        self._setup_routes()
        self._setup_error_handlers()

    # Request plumbing

    def _context(self) -> RequestContext:
        """Build the per-request credential context from headers or cookies."""
        auth_header = request.headers.get('Authorization', '')
        access_token = auth_header[7:].strip() if auth_header.startswith('Bearer ') else None
        refresh_token = request.headers.get(REFRESH_HEADER)

        g.credentials_from_cookies = False
        if not access_token and not refresh_token:
            access_token = request.cookies.get(ACCESS_COOKIE)
            refresh_token = request.cookies.get(REFRESH_COOKIE)
            g.credentials_from_cookies = bool(access_token or refresh_token)

        return RequestContext(
            access_token=access_token or None,
            refresh_token=refresh_token or None,
            request_id=request.headers.get('X-Request-Id') or uuid.uuid4().hex,
        )

    def _respond(self, result: QueryResult) -> Response:
        response = jsonify(serialize(result.data))
        if result.token_rotated and result.token:
            response.headers[ROTATED_TOKEN_HEADER] = result.token
            if g.get('credentials_from_cookies'):
                self._set_token_cookie(response, ACCESS_COOKIE, result.token, max_age=3600)
        return response

    def _set_token_cookie(self, response: Response, name: str, value: str, max_age: int) -> None:
        response.set_cookie(
            name, value,
            max_age=max_age,
            httponly=True,
            secure=self.settings.frontend_uri.startswith('https://'),
            samesite='Lax',
        )

    @staticmethod
    def _int_arg(name: str, default: Optional[int]) -> Optional[int]:
        raw = request.args.get(name)
        if raw is None or raw == '':
            return default
        try:
            return int(raw)
        except ValueError:
            raise InvalidArgument(f"{name} must be an integer")

    def _frontend_redirect(self, pair: CredentialPair) -> Response:
        """Redirect to the front end carrying the new credentials."""
        target = f"{self.settings.frontend_uri}/auth/callback"

        if self.settings.token_delivery == 'query':
            # Legacy behaviour: tokens travel in the URL
            query = urlencode({'access': pair.access_token, 'refresh': pair.refresh_token})
            return redirect(f"{target}?{query}")

        response = redirect(target)
        self._set_token_cookie(response, ACCESS_COOKIE, pair.access_token, max_age=pair.expires_in or 3600)
        if pair.refresh_token:
            self._set_token_cookie(response, REFRESH_COOKIE, pair.refresh_token, max_age=REFRESH_COOKIE_MAX_AGE)
        return response

    def _setup_error_handlers(self) -> None:

        @self.app.errorhandler(QueryError)
        def handle_query_error(error: QueryError):
            return jsonify({'error': error.to_dict()}), status_for(error)

        @self.app.errorhandler(Exception)
        def handle_unexpected(error: Exception):
            if isinstance(error, HTTPException):
                return error
            log_error(self.logger, "Unhandled error while serving request", error, path=request.path)
            return jsonify({'error': {'code': 'INTERNAL_ERROR', 'message': 'Internal server error'}}), 500

    def _setup_routes(self) -> None:
        """Setup Flask routes."""

        @self.app.route('/health', methods=['GET'])
        def health_check():
            """Health check endpoint."""
            return jsonify({
                'status': 'healthy',
                'version': self.version,
                'commit': self.commit,
                'timestamp': datetime.now().isoformat()
            }), 200

        @self.app.route('/', methods=['GET'])
        def root():
            """Root endpoint with basic info."""
            return jsonify({
                'service': 'wavestats HTTP Interface',
                'version': self.version,
                'endpoints': {
                    'health': '/health',
                    'login': '/login',
                    'oauth_callback': '/callback',
                    'me': '/api/me',
                    'top_tracks': '/api/top-tracks',
                    'top_artists': '/api/top-artists',
                    'audio_features': '/api/tracks/<id>/audio-features',
                    'genre_stats': '/api/genre-stats',
                    'user_stats': '/api/user-stats',
                    'playlists': '/api/playlists',
                    'followed_artists': '/api/followed-artists',
                    'random_tracks': '/api/recommendations/random',
                    'metrics': '/api/metrics',
                }
            }), 200

        @self.app.route('/login', methods=['GET'])
        def login():
            """Redirect to the Spotify authorization page."""
            if not self.settings.client_id:
                return jsonify({
                    'error': {'code': 'INTERNAL_ERROR', 'message': 'Spotify client ID not configured'}
                }), 500
            return redirect(self.exchanger.authorize_url())

        @self.app.route('/callback', methods=['GET'])
        def oauth_callback():
            """OAuth callback endpoint for Spotify."""
            code = request.args.get('code')
            error = request.args.get('error')

            if error:
                self.logger.error(f"OAuth error: {error}")
                return jsonify({
                    'error': {'code': 'UPSTREAM_AUTH_ERROR', 'message': 'OAuth authorization failed',
                              'details': error}
                }), 400

            if not code:
                return jsonify({
                    'error': {'code': 'BAD_REQUEST', 'message': 'Missing authorization code'}
                }), 400

            try:
                pair = self.exchanger.exchange_code(code)
            except UpstreamFailure as e:
                self.logger.error(f"Token exchange failed: {e}")
                return jsonify({
                    'error': {'code': 'INTERNAL_ERROR', 'message': 'Failed to authenticate with Spotify'}
                }), 502

            self.logger.info("OAuth tokens issued, redirecting to front end")
            return self._frontend_redirect(pair)

        @self.app.route('/api/me', methods=['GET'])
        def me():
            return self._respond(self.service.me(self._context()))

        @self.app.route('/api/top-tracks', methods=['GET'])
        def top_tracks():
            return self._respond(self.service.top_tracks(
                self._context(),
                limit=self._int_arg('limit', 20),
                time_range=request.args.get('timeRange', 'medium_term'),
            ))

        @self.app.route('/api/top-artists', methods=['GET'])
        def top_artists():
            return self._respond(self.service.top_artists(
                self._context(),
                limit=self._int_arg('limit', 20),
                time_range=request.args.get('timeRange', 'medium_term'),
            ))

        @self.app.route('/api/tracks/<track_id>/audio-features', methods=['GET'])
        def analyze_track(track_id: str):
            return self._respond(self.service.analyze_track(self._context(), track_id))

        @self.app.route('/api/genre-stats', methods=['GET'])
        def genre_stats():
            return self._respond(self.service.genre_stats(
                self._context(),
                time_range=request.args.get('timeRange', 'medium_term'),
                limit=self._int_arg('limit', 20),
            ))

        @self.app.route('/api/user-stats', methods=['GET'])
        def user_stats():
            return self._respond(self.service.user_stats(
                self._context(), year=self._int_arg('year', None),
            ))

        @self.app.route('/api/playlists', methods=['GET'])
        def playlists_stats():
            return self._respond(self.service.playlists_stats(
                self._context(),
                limit=self._int_arg('limit', 20),
                offset=self._int_arg('offset', 0),
            ))

        @self.app.route('/api/followed-artists', methods=['GET'])
        def followed_artists():
            return self._respond(self.service.followed_artists(
                self._context(),
                limit=self._int_arg('limit', 20),
                after=request.args.get('after') or None,
            ))

        @self.app.route('/api/recommendations/random', methods=['GET'])
        def random_recommended_tracks():
            return self._respond(self.service.random_recommended_tracks(
                self._context(),
                time_range=request.args.get('timeRange', 'medium_term'),
            ))

        @self.app.route('/api/metrics', methods=['GET'])
        def metrics():
            return jsonify(self.metrics.to_dict()), 200

    def run(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """Run the HTTP server."""
        host = host or self.settings.host
        port = port or self.settings.port
        self.logger.info(f"Starting wavestats HTTP server on {host}:{port}")
        self.app.run(host=host, port=port, debug=self.debug, threaded=True)


def create_app(settings: Optional[Settings] = None) -> Flask:
    """Create Flask app (WSGI entry point)."""
    server = HTTPServer(settings)
    return server.app
