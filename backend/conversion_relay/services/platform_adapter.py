"""Common contract for ad platform adapters.

WHAT:
    `SendResult` (the explicit outcome of one delivery attempt), the
    `PlatformAdapter` protocol, and `get_adapter` which picks the concrete
    adapter from a job's platform tag.

WHY:
    Provider failures are data, not exceptions: the worker decides retry vs.
    terminal from `is_retryable` and escalation from `requires_attention`,
    without knowing anything about Meta or Google error formats.

REFERENCES:
    - conversion_relay/services/meta_capi_service.py
    - conversion_relay/services/google_conversions_service.py
    - conversion_relay/workers/delivery_worker.py
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from conversion_relay.models import IntegrationTypeEnum
from conversion_relay.schemas import DeliveryJob


@dataclass
class SendResult:
    """
    Outcome of one adapter call.

    WHAT: Success flag plus the classification the worker needs
    WHY: Retry/escalation policy lives in the worker, not the adapter
    """
    success: bool
    is_retryable: bool = False
    provider_events_accepted: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    trace_id: Optional[str] = None
    # Permanent credential/permission problem; an operator must reconnect
    requires_attention: bool = False

    @classmethod
    def ok(cls, accepted: int = 1, trace_id: Optional[str] = None) -> "SendResult":
        return cls(success=True, provider_events_accepted=accepted, trace_id=trace_id)

    @classmethod
    def fail(
        cls,
        error: str,
        error_code: Optional[str] = None,
        *,
        retryable: bool = False,
        requires_attention: bool = False,
        trace_id: Optional[str] = None,
    ) -> "SendResult":
        return cls(
            success=False,
            is_retryable=retryable,
            error=error,
            error_code=error_code,
            trace_id=trace_id,
            requires_attention=requires_attention,
        )


class PlatformAdapter(Protocol):
    """One ad platform's delivery contract. Implementations hold no per-call state."""

    async def send(
        self,
        credentials: Any,
        job: DeliveryJob,
        settings: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        ...


def get_adapter(
    platform: IntegrationTypeEnum,
    http_client: httpx.AsyncClient,
    token_cache=None,
) -> PlatformAdapter:
    """Return the adapter for a platform tag.

    Args:
        platform: The job's platform
        http_client: Shared client; safe for concurrent use
        token_cache: Google only; an AccessTokenCache shared by the worker

    Raises:
        ValueError: For a platform without an adapter
    """
    # Import here to avoid circular imports
    from conversion_relay.services.google_conversions_service import AccessTokenCache, GoogleAdsAdapter
    from conversion_relay.services.meta_capi_service import MetaCAPIAdapter

    if platform == IntegrationTypeEnum.meta_capi:
        return MetaCAPIAdapter(http_client)
    if platform == IntegrationTypeEnum.google_ads:
        return GoogleAdsAdapter(http_client, token_cache or AccessTokenCache())
    raise ValueError(f"No adapter for platform {platform!r}")
