from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar

from wavestats.crosscutting.logging import log_token_refresh
from wavestats.crosscutting.metrics import MetricsCollector
from wavestats.domain.errors import RefreshError, Unauthenticated, UpstreamAuthError, UpstreamFailure
from wavestats.domain.ports import TokenExchanger

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RequestContext:
    """Credentials of one inbound request. Never shared between requests."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token or self.refresh_token)

    def require_authenticated(self) -> None:
        if not self.is_authenticated:
            raise Unauthenticated("Not authenticated")


@dataclass(frozen=True)
class Invocation(Generic[T]):
    """Result of an upstream call plus the access token that produced it."""

    result: T
    token: str


class ResilientInvoker:
    """Runs upstream calls with one transparent refresh on token expiry.

    One invoker is bound to one logical query. Sibling calls of that query
    (possibly on different threads) share it, so an expired token is
    refreshed at most once for the whole query: a call that failed with a
    token another sibling already replaced retries with the new token
    instead of refreshing again.
    """

    def __init__(self, context: RequestContext, exchanger: TokenExchanger,
                 metrics: Optional[MetricsCollector] = None):
        self.context = context
        self._exchanger = exchanger
        self._metrics = metrics
        self._access_token = context.access_token
        self._refresh_token = context.refresh_token
        self._lock = threading.Lock()
        self._refresh_failure: Optional[Exception] = None
        self.refresh_count = 0
        # Set by the query layer when it answers with a fallback value
        self.degraded = False

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._refresh_token

    @property
    def token_rotated(self) -> bool:
        """True when the query ended with a different access token."""
        return self._access_token != self.context.access_token

    def invoke(self, call: Callable[..., T], *args: Any, **kwargs: Any) -> Invocation[T]:
        """Call call(access_token, *args, **kwargs), refreshing once on expiry.

        Non-auth failures propagate unchanged. The retry after a refresh is
        not retried again, whatever it raises.
        """
        self.context.require_authenticated()
        token = self._current_token()

        try:
            return Invocation(call(token, *args, **kwargs), token)
        except UpstreamFailure as failure:
            if not failure.is_auth_expired:
                raise
            logger.warning("Access token expired, refreshing...")
            new_token = self._renew(token)
            if new_token is None:
                raise

        return Invocation(call(new_token, *args, **kwargs), new_token)

    def _current_token(self) -> str:
        with self._lock:
            if self._refresh_failure is not None:
                raise self._refresh_failure
            if self._access_token:
                return self._access_token
            # Only a refresh token was supplied
            self._refresh_locked()
            return self._access_token

    def _renew(self, stale_token: str) -> Optional[str]:
        """Return a usable token after stale_token was rejected, or None."""
        with self._lock:
            if self._refresh_failure is not None:
                # A sibling already tried and failed
                raise self._refresh_failure
            if self._access_token != stale_token:
                return self._access_token
            if self.refresh_count > 0:
                # The refreshed token itself was rejected
                return None
            if not self._refresh_token:
                raise UpstreamAuthError("Access token rejected and no refresh token supplied")
            self._refresh_locked()
            return self._access_token

    def _refresh_locked(self) -> None:
        try:
            pair = self._exchanger.refresh(self._refresh_token)
        except (RefreshError, UpstreamFailure) as e:
            self._refresh_failure = e
            log_token_refresh(logger, False, request_id=self.context.request_id)
            if self._metrics:
                self._metrics.record_refresh(succeeded=False)
            raise
        self.refresh_count += 1
        self._access_token = pair.access_token
        if pair.refresh_token:
            self._refresh_token = pair.refresh_token
        log_token_refresh(logger, True, request_id=self.context.request_id)
        if self._metrics:
            self._metrics.record_refresh(succeeded=True)


def invoke(call: Callable[..., T], access_token: Optional[str], refresh_token: Optional[str],
           *args: Any, exchanger: TokenExchanger, **kwargs: Any) -> Invocation[T]:
    """One-off resilient call for callers without a query-scoped invoker."""
    context = RequestContext(access_token=access_token, refresh_token=refresh_token)
    return ResilientInvoker(context, exchanger).invoke(call, *args, **kwargs)
