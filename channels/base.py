"""
Channel collaborators — shared infrastructure for outbound calls and messages.

Provides:
- ChannelError: failures reported by a collaborator, with a retryable flag
- CircuitBreaker: per-collaborator breaker so a dead backend fails fast
- HttpCollaborator: httpx client with tenacity retries and a breaker
- CallPlacer / MessageSender: the interfaces the Action Executor depends on
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from models.schemas import ContactAttributes

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all collaborator operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Stops calling a collaborator that keeps failing.

    After ``failure_threshold`` consecutive failures calls are refused for
    ``recovery_timeout`` seconds. The first call after that is a probe: a
    success closes the breaker, a failure reopens it at once.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0, name: str = ""):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if time.monotonic() - self._opened_at < self.recovery_timeout:
            return "open"
        return "half_open"

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        probing = self.state == "half_open"
        self._consecutive_failures += 1
        if probing or self._consecutive_failures >= self.failure_threshold:
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", channel=self.name, failures=self._consecutive_failures)

    def record_success(self):
        if self._opened_at is not None:
            logger.info("circuit_closed", channel=self.name)
        self._opened_at = None
        self._consecutive_failures = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._consecutive_failures}


# ══════════════════════════════════════════════════════════════
#  HTTP COLLABORATOR
# ══════════════════════════════════════════════════════════════

class HttpCollaborator:
    """
    Base for REST collaborators. Transport errors are retried inside the
    collaborator; HTTP error statuses and breaker trips surface as ChannelError.
    """

    channel = ""

    def __init__(
        self,
        base_url: str = "",
        api_key: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._breaker = breaker or CircuitBreaker(name=self.channel)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        return await client.request(method, path, **kwargs)

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        if self._breaker.is_open:
            raise CircuitOpenError(self.channel)
        try:
            resp = await self._send(method, path, **kwargs)
        except httpx.HTTPError as e:
            self._breaker.record_failure()
            logger.error("collaborator_transport_error", channel=self.channel, error=str(e))
            raise ChannelError(f"{self.channel} request failed: {e}", self.channel, retryable=True) from e

        if resp.status_code >= 400:
            self._breaker.record_failure()
            logger.error("collaborator_api_error", channel=self.channel,
                         status=resp.status_code, body=resp.text[:500])
            raise ChannelError(
                f"{self.channel} API returned {resp.status_code}",
                self.channel,
                retryable=resp.status_code >= 500,
            )

        self._breaker.record_success()
        return resp.json() if resp.content else {}

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


# ══════════════════════════════════════════════════════════════
#  INTERFACES
# ══════════════════════════════════════════════════════════════

class CallPlacer(abc.ABC):
    """Places an AI phone call to a contact."""

    @property
    @abc.abstractmethod
    def is_available(self) -> bool:
        ...

    @abc.abstractmethod
    async def place_call(
        self,
        agent_id: str,
        phone_number_id: str,
        contact: ContactAttributes,
    ) -> dict[str, Any]:
        """Returns the provider response; raises ChannelError on failure."""


class MessageSender(abc.ABC):
    """Sends a templated message (WhatsApp, email) to a contact."""

    @property
    @abc.abstractmethod
    def is_available(self) -> bool:
        ...

    @abc.abstractmethod
    async def send(self, template_ref: Any, contact: ContactAttributes) -> dict[str, Any]:
        """``template_ref`` is the step's action config."""
