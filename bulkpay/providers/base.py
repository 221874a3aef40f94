"""
Provider gateway interface.

Every payout rail (PayPal, Giftogram gift cards, XE bank transfers) is
wrapped by a gateway that:

  - is built for exactly one environment (sandbox or production), with its
    own base URL, credentials and cached access token
  - refreshes its token proactively, when it is within the refresh buffer
    of expiry, not reactively on a 401
  - never raises for transport or provider errors: every call returns a
    ProviderResult with either ``data`` or ``error``/``details`` filled in
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from bulkpay.config import settings
from bulkpay.engine.errors import ConfigurationError
from bulkpay.models.enums import Environment
from bulkpay.providers.retry import ProviderError, error_for_status, with_retry


@dataclass
class ProviderResult:
    """Normalized outcome of one provider call."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    details: Any = None
    error_code: Optional[str] = None

    @classmethod
    def failed(cls, error: str, **kwargs: Any) -> "ProviderResult":
        return cls(success=False, error=error, **kwargs)


@dataclass
class AccessToken:
    """A cached credential. ``expires_at`` of None means it never expires (static API keys)."""

    value: str
    expires_at: Optional[datetime] = None

    def is_fresh(self, buffer_seconds: int, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return self.expires_at - now > timedelta(seconds=buffer_seconds)


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class ProviderGateway(ABC):
    """Base class for provider gateways."""

    name: str = ""
    base_urls: dict[str, str] = {}

    def __init__(
        self,
        environment: str,
        *,
        timeout: Optional[float] = None,
        refresh_buffer_seconds: Optional[int] = None,
        status_max_retries: Optional[int] = None,
        status_retry_base_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if environment not in {e.value for e in Environment}:
            raise ConfigurationError(
                f"Invalid environment '{environment}' for {self.name}. Must be 'sandbox' or 'production'.",
                provider=self.name,
            )
        self.environment = environment
        self.base_url = self.base_urls[environment]
        self.logger = logging.getLogger(f"bulkpay.providers.{self.name}")
        self._refresh_buffer = (
            refresh_buffer_seconds if refresh_buffer_seconds is not None else settings.token_refresh_buffer_seconds
        )
        self._status_max_retries = (
            status_max_retries if status_max_retries is not None else settings.status_max_retries
        )
        self._status_retry_base_delay = (
            status_retry_base_delay if status_retry_base_delay is not None else settings.status_retry_base_delay
        )
        self._token: Optional[AccessToken] = None
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.provider_timeout_seconds,
            transport=transport,
        )

    def _require(self, environment: str, **credentials: Optional[str]) -> None:
        """Fail construction when a credential is missing. Called before the HTTP client exists."""
        missing = [key for key, value in credentials.items() if not value]
        if missing:
            raise ConfigurationError(
                f"{self.name} credentials missing for {environment}: {', '.join(missing)}",
                provider=self.name,
                environment=environment,
                missing=missing,
            )

    # ── Authentication ───────────────────────────────────────────────

    @abstractmethod
    async def _fetch_token(self) -> ProviderResult:
        """Exchange the long-lived credentials for an AccessToken (in ``data``)."""
        ...

    @abstractmethod
    def _auth_headers(self, token: AccessToken) -> dict[str, str]:
        ...

    async def authenticate(self) -> ProviderResult:
        result = await self._fetch_token()
        if result.success:
            self._token = result.data
            self.logger.info(
                "%s %s authenticated (expires %s)",
                self.name,
                self.environment,
                self._token.expires_at.isoformat() if self._token.expires_at else "never",
            )
        else:
            self._token = None
            self.logger.error("%s %s authentication failed: %s", self.name, self.environment, result.error)
        return result

    async def ensure_authenticated(self) -> ProviderResult:
        if self._token is not None and self._token.is_fresh(self._refresh_buffer):
            return ProviderResult(success=True, data=self._token)
        return await self.authenticate()

    # ── HTTP plumbing ───────────────────────────────────────────────

    def _error_message(self, body: Any) -> Optional[str]:
        """Human message from an error body. Providers override the key order."""
        if isinstance(body, dict):
            message = body.get("message")
            if message:
                return str(message)
        if isinstance(body, str) and body:
            return body[:200]
        return None

    def _error_code(self, body: Any, status_code: int) -> Optional[str]:
        return None

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError(f"{self.name} request timed out", code="TIMEOUT") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} request failed: {e}", code="NETWORK_ERROR") from e

        if response.is_error:
            body = _decode(response)
            raise error_for_status(
                response.status_code,
                self._error_message(body) or f"{self.name} returned HTTP {response.status_code}",
                details=body,
                code=self._error_code(body, response.status_code),
                retry_after=response.headers.get("Retry-After"),
            )
        return response

    async def _request(
        self,
        method: str,
        path: str,
        *,
        authenticated: bool = True,
        retry: bool = False,
        **kwargs: Any,
    ) -> ProviderResult:
        """
        Perform one HTTP call and normalize the outcome.

        ``retry`` is only for idempotent reads; submissions go out exactly once.
        """
        if authenticated:
            auth = await self.ensure_authenticated()
            if not auth.success:
                return auth
            kwargs["headers"] = {**self._auth_headers(self._token), **kwargs.get("headers", {})}

        try:
            if retry:
                response = await with_retry(
                    self._send,
                    method,
                    path,
                    max_retries=self._status_max_retries,
                    base_delay=self._status_retry_base_delay,
                    **kwargs,
                )
            else:
                response = await self._send(method, path, **kwargs)
        except ProviderError as e:
            self.logger.warning("%s %s %s failed: %s", self.name, method, path, e)
            return ProviderResult.failed(
                str(e),
                status_code=e.status_code,
                details=e.details,
                error_code=e.code,
            )

        return ProviderResult(success=True, data=_decode(response), status_code=response.status_code)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def test_connection(self) -> ProviderResult:
        """Force a fresh authentication round-trip."""
        return await self.authenticate()

    @abstractmethod
    async def get_status(self, reference: str) -> ProviderResult:
        """Current provider-side status for a batch, order or contract."""
        ...

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()
