"""Connection-level resilience for any Transport.

``RetryingTransport`` decorates a protocol transport with:
- a hard timeout per remote call (expiry counts as a transient failure)
- bounded exponential retry of transient failures, login included
- one transparent re-authentication when the session is rejected
- session refresh before a call when the session TTL has run out

This budget is separate from, and smaller than, the queue's job-level
retry budget: a job only sees the error once these retries are spent.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from connectors.erp_base import Credentials, Session, Transport
from core.config import RetryConfig
from core.errors import (
    AuthenticationError,
    AuthenticationExpiredError,
    TransientNetworkError,
)
from core.observability.logging import get_logger


logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class RetryingTransport(Transport):
    """Transport decorator adding timeouts, retries and re-authentication.

    Usage:
        transport = RetryingTransport(
            create_transport(settings),
            credentials=Credentials.from_settings(settings),
            retry=RetryConfig(max_retries=3),
        )
        await transport.execute("res.partner", "read", [[7]])
    """

    def __init__(
        self,
        inner: Transport,
        credentials: Optional[Credentials] = None,
        retry: Optional[RetryConfig] = None,
        timeout_seconds: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
        metrics=None,
    ):
        super().__init__(inner.settings)
        self.inner = inner
        self.credentials = credentials
        self.retry = retry or RetryConfig()
        self.timeout_seconds = timeout_seconds or inner.settings.timeout_seconds
        self._sleep = sleep
        self._metrics = metrics

    # Session state is owned by the wrapped transport.
    @property
    def session(self) -> Optional[Session]:
        return self.inner.session

    def current_session_id(self) -> Optional[int]:
        return self.inner.current_session_id()

    def invalidate_session(self) -> None:
        self.inner.invalidate_session()

    async def authenticate(self, credentials: Optional[Credentials] = None) -> Session:
        """Log in, retrying transient failures like any other call."""
        if credentials is not None:
            self.credentials = credentials
        if self.credentials is None:
            raise AuthenticationError("No credentials configured for the remote ERP.")
        return await self._with_retry(lambda: self.inner.authenticate(self.credentials), "authenticate")

    async def execute(
        self,
        model: str,
        method: str,
        args: Optional[List[Any]] = None,
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> Any:
        session = self.inner.session
        if session is None or session.is_expired:
            await self.authenticate()

        reauthenticated = False
        while True:
            try:
                return await self._with_retry(
                    lambda: self.inner.execute(model, method, args, kwargs),
                    f"{model}.{method}",
                )
            except AuthenticationExpiredError:
                if reauthenticated:
                    raise
                reauthenticated = True
                logger.warning(
                    "Session rejected, re-authenticating",
                    extra_fields={"model": model, "method": method},
                )
                self._record("reauth")
                self.inner.invalidate_session()
                await self.authenticate()

    async def _with_retry(self, call: Callable[[], Awaitable[Any]], what: str) -> Any:
        """Run ``call()`` under the timeout, retrying transient failures."""
        attempt = 0
        while True:
            try:
                return await self._bounded(call(), what)
            except TransientNetworkError as e:
                if attempt >= self.retry.max_retries:
                    logger.error(
                        "Remote call failed after retries",
                        extra_fields={"call": what, "attempts": attempt + 1, "error": str(e)},
                    )
                    raise
                delay = self.retry.get_delay(attempt)
                attempt += 1
                logger.warning(
                    f"Transient error, retrying in {delay:.2f}s",
                    extra_fields={"call": what, "attempt": attempt, "error": str(e)},
                )
                self._record("retry")
                await self._sleep(delay)

    async def _bounded(self, call: Awaitable[Any], what: str) -> Any:
        """Await ``call`` under the per-call timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(
                f"Remote call {what} timed out after {self.timeout_seconds}s"
            ) from e
        except ConnectionError as e:
            raise TransientNetworkError(f"Connection failed during {what}: {e}") from e

    def _record(self, event: str) -> None:
        if self._metrics is not None:
            self._metrics.record_transport_event(event)

    async def close(self) -> None:
        await self.inner.close()
