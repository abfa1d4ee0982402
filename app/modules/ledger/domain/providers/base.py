from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Mapping

import httpx
import structlog

from app.modules.ledger.domain.events import CanonicalEvent
from app.modules.ledger.domain.receipts import canonical_hash
from app.shared.core.config import Settings, get_settings
from app.shared.core.exceptions import UpstreamProviderError
from app.shared.core.http import get_http_client, provider_timeout
from app.shared.core.retry import with_provider_retry

logger = structlog.get_logger()

_REAUTH_STATUS_CODES = frozenset({401, 403})


@dataclass
class PollResult:
    """One bounded window of provider changes."""

    items: list[dict[str, Any]] = field(default_factory=list)
    cursor: str | None = None
    external_account_id: str | None = None


class ProviderAdapter(ABC):
    """
    Base class for provider integrations.

    An adapter owns three concerns for one provider:
    - normalization of raw payload items into canonical events,
    - webhook signature verification over the raw request body,
    - a poll fetch of changes since the persisted cursor.
    """

    name: ClassVar[str]

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    @abstractmethod
    def normalize(self, raw: Mapping[str, Any]) -> list[CanonicalEvent]:
        """Map one raw payload item to zero or more canonical events."""
        raise NotImplementedError()

    @abstractmethod
    def webhook_secret(self) -> str | None:
        raise NotImplementedError()

    @abstractmethod
    def verify_signature(
        self, body: bytes, headers: Mapping[str, str], secret: str, now: datetime
    ) -> bool:
        """`headers` keys are lower-cased by the caller."""
        raise NotImplementedError()

    @abstractmethod
    def is_configured(self) -> bool:
        """True when credentials for poll-mode ingestion are present."""
        raise NotImplementedError()

    @abstractmethod
    async def fetch_changes(self, cursor: str | None, now: datetime) -> PollResult:
        raise NotImplementedError()

    def webhook_account_id(self, payload: Mapping[str, Any]) -> str | None:
        """Provider-native account identifier used to resolve webhook scope."""
        return None

    def _event(self, raw: Any, **fields: Any) -> CanonicalEvent:
        return CanonicalEvent(provider=self.name, raw_hash=canonical_hash(raw), **fields)

    async def _send_json(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | None = None,
        json_body: Mapping[str, Any] | None = None,
    ) -> Any:
        client = get_http_client()

        async def _send() -> httpx.Response:
            return await client.request(
                method,
                url,
                headers=dict(headers or {}),
                params=dict(params or {}),
                json=dict(json_body) if json_body is not None else None,
                timeout=provider_timeout(),
            )

        try:
            response = await with_provider_retry(_send)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.error(
                "provider_http_error",
                provider=self.name,
                status_code=status_code,
                url=url,
            )
            raise UpstreamProviderError(
                f"{self.name} returned HTTP {status_code}",
                provider=self.name,
                reauth_required=status_code in _REAUTH_STATUS_CODES,
                details={"status_code": status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "provider_transport_error",
                provider=self.name,
                url=url,
                error=str(exc),
            )
            raise UpstreamProviderError(
                f"{self.name} request failed: {type(exc).__name__}",
                provider=self.name,
            ) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamProviderError(
                f"{self.name} returned a non-JSON response", provider=self.name
            ) from exc
        return payload

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        payload = await self._send_json(method, url, **kwargs)
        if not isinstance(payload, dict):
            raise UpstreamProviderError(
                f"{self.name} returned an unexpected payload type", provider=self.name
            )
        return payload

    async def _request_list(self, method: str, url: str, **kwargs: Any) -> list[Any]:
        payload = await self._send_json(method, url, **kwargs)
        if isinstance(payload, dict):
            # Some list endpoints wrap results in an envelope.
            for value in payload.values():
                if isinstance(value, list):
                    return value
            return []
        if not isinstance(payload, list):
            raise UpstreamProviderError(
                f"{self.name} returned an unexpected payload type", provider=self.name
            )
        return payload
