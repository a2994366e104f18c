"""Meta Conversions API (CAPI) adapter.

WHAT:
    Sends one server-side conversion event per delivery job to Meta and
    classifies the response into a SendResult.

WHY:
    - Server-side events are more reliable than browser pixels
    - Deduplication with the browser pixel via event_id (the conversion id)
    - PII arrives already hashed; this module never sees raw email/phone

HOW:
    Uses Meta's Conversions API endpoint:
    POST https://graph.facebook.com/v18.0/{pixel_id}/events

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
    - https://developers.facebook.com/docs/graph-api/guides/error-handling
    - conversion_relay/services/platform_adapter.py
"""

import os
import logging
from typing import Optional, Dict, Any

import httpx

from conversion_relay.schemas import DeliveryJob, HashedUserData, MetaCredentials
from conversion_relay.services.platform_adapter import SendResult

logger = logging.getLogger(__name__)

META_GRAPH_API_VERSION = os.getenv("META_GRAPH_API_VERSION", "v18.0")
META_GRAPH_BASE_URL = f"https://graph.facebook.com/{META_GRAPH_API_VERSION}"
REQUEST_TIMEOUT_SECONDS = 10.0

EVENT_NAME_MAP = {
    "email_captured": "Lead",
    "application_started": "InitiateCheckout",
    "signup_complete": "CompleteRegistration",
    "first_transaction": "Purchase",
    "activated": "Purchase",
}

META_STANDARD_EVENTS = frozenset({
    "AddPaymentInfo", "AddToCart", "AddToWishlist", "CompleteRegistration",
    "Contact", "CustomizeProduct", "Donate", "FindLocation", "InitiateCheckout",
    "Lead", "Purchase", "Schedule", "Search", "StartTrial", "SubmitApplication",
    "Subscribe", "ViewContent",
})

# Graph API error codes
RETRYABLE_ERROR_CODES = frozenset({
    1,      # API unknown
    2,      # API service (temporary)
    4,      # Application request limit
    17,     # User request limit
    32,     # Page request limit
    341,    # Application limit reached
    613,    # Calls within one hour exceeded
    80004,  # Ads account rate limit
})
ATTENTION_ERROR_CODES = frozenset({
    190,  # Invalid or expired access token
    102,  # Session key invalid
    10,   # Permission denied
    368,  # Temporarily blocked for policy violations
})
INSUFFICIENT_USER_DATA = "INSUFFICIENT_USER_DATA"


def map_event_name(event_name: str) -> str:
    """Map an internal funnel event name to a Meta standard event.

    Standard Meta names pass through; anything unknown reports as Lead.
    """
    if event_name in EVENT_NAME_MAP:
        return EVENT_NAME_MAP[event_name]
    if event_name in META_STANDARD_EVENTS:
        return event_name
    return "Lead"


def has_minimum_user_data(user_data: HashedUserData) -> bool:
    """True when Meta has at least one usable match key.

    Email hash, phone hash, or fbc alone are enough; fbp only counts with an IP.
    """
    return bool(
        user_data.email_hash
        or user_data.phone_hash
        or user_data.fbc
        or (user_data.fbp and user_data.ip_address)
    )


def build_user_data(user_data: HashedUserData) -> Dict[str, Any]:
    """Meta `user_data` block: hashes as arrays, browser hints unhashed."""
    result: Dict[str, Any] = {}

    if user_data.email_hash:
        result["em"] = [user_data.email_hash]
    if user_data.phone_hash:
        result["ph"] = [user_data.phone_hash]
    if user_data.external_id_hash:
        result["external_id"] = [user_data.external_id_hash]
    if user_data.fbc:
        result["fbc"] = user_data.fbc
    if user_data.fbp:
        result["fbp"] = user_data.fbp
    if user_data.ip_address:
        result["client_ip_address"] = user_data.ip_address
    if user_data.user_agent:
        result["client_user_agent"] = user_data.user_agent

    return result


def build_event_payload(job: DeliveryJob, test_event_code: Optional[str] = None) -> Dict[str, Any]:
    """Build the request body for one job, without the access token.

    Args:
        job: Delivery job carrying the event summary and hashed match keys
        test_event_code: Routes the event to Test Events in Events Manager

    Returns:
        `{"data": [event], "test_event_code"?}`
    """
    event = {
        "event_name": map_event_name(job.event.name),
        "event_time": int(job.event.occurred_at.timestamp()),
        "event_id": job.event.id,  # CRITICAL for deduplication
        "action_source": "website",
        "user_data": build_user_data(job.hashed_user_data),
        "custom_data": {
            "value": job.event.value,
            "currency": job.event.currency,
            "order_id": job.event.id,
        },
    }

    if job.event.page_url:
        event["event_source_url"] = job.event.page_url

    payload: Dict[str, Any] = {"data": [event]}
    if test_event_code:
        payload["test_event_code"] = test_event_code
    return payload


def estimate_match_quality(user_data: Dict[str, Any]) -> int:
    """Rough 0-10 estimate of Meta's Event Match Quality for a user_data block."""
    score = 0.0
    if user_data.get("em"):
        score += 3
    if user_data.get("ph"):
        score += 2
    if user_data.get("fbc"):
        score += 4
    if user_data.get("fbp"):
        score += 2
    if user_data.get("client_ip_address"):
        score += 0.5
    if user_data.get("client_user_agent"):
        score += 0.5
    if user_data.get("external_id"):
        score += 1
    return min(10, round(score * 0.8))


def classify_graph_error(status_code: int, error_code: Optional[int]) -> Dict[str, bool]:
    """Map an HTTP status + Graph error code to retry/attention flags."""
    if error_code is not None:
        if error_code in RETRYABLE_ERROR_CODES:
            return {"retryable": True, "requires_attention": False}
        if error_code in ATTENTION_ERROR_CODES or 200 <= error_code <= 299:
            return {"retryable": False, "requires_attention": True}
        if status_code >= 500:
            return {"retryable": True, "requires_attention": False}
        return {"retryable": False, "requires_attention": False}

    return {"retryable": status_code >= 500 or status_code == 429, "requires_attention": False}


class MetaCAPIAdapter:
    """Delivers DeliveryJobs to Meta Conversions API.

    WHAT: One POST per job, outcome classified into a SendResult
    WHY: The worker owns retry policy; this class only reports what happened

    Usage:
        ```python
        async with httpx.AsyncClient() as client:
            adapter = MetaCAPIAdapter(client)
            result = await adapter.send(credentials, job)
        ```
    """

    def __init__(self, http_client: httpx.AsyncClient):
        self.http_client = http_client

    @staticmethod
    def events_url(pixel_id: str) -> str:
        return f"{META_GRAPH_BASE_URL}/{pixel_id}/events"

    async def send(
        self,
        credentials: MetaCredentials,
        job: DeliveryJob,
        settings: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        """Send one conversion event to the integration's pixel.

        Never raises for provider or network failures.
        """
        if not has_minimum_user_data(job.hashed_user_data):
            logger.warning(
                f"[META_CAPI] Job {job.idempotency_key} has no usable match keys, not sending"
            )
            return SendResult.fail(
                "Insufficient user data for Meta matching (need email, phone, fbc, or fbp with IP)",
                INSUFFICIENT_USER_DATA,
            )

        payload = build_event_payload(job, credentials.test_event_code)
        user_data = payload["data"][0]["user_data"]

        logger.info(
            f"[META_CAPI] Sending event {job.event.id} to pixel {credentials.pixel_id}",
            extra={
                "event_name": payload["data"][0]["event_name"],
                "test_mode": bool(credentials.test_event_code),
                "match_keys": sorted(user_data.keys()),
                "match_quality": estimate_match_quality(user_data),
            }
        )

        body = {**payload, "access_token": credentials.access_token.get_secret_value()}

        try:
            response = await self.http_client.post(
                self.events_url(credentials.pixel_id),
                json=body,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except httpx.TimeoutException:
            logger.warning(f"[META_CAPI] Timeout sending event {job.event.id}")
            return SendResult.fail("Request timeout", "TIMEOUT", retryable=True)
        except httpx.RequestError as e:
            logger.warning(f"[META_CAPI] Network error sending event {job.event.id}: {type(e).__name__}")
            return SendResult.fail(f"Network error: {type(e).__name__}", "NETWORK_ERROR", retryable=True)

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code != 200:
            error = data.get("error")
            if not isinstance(error, dict):
                error = {}
            error_code = error.get("code")
            if not isinstance(error_code, int):
                error_code = None
            flags = classify_graph_error(response.status_code, error_code)

            logger.error(
                f"[META_CAPI] API error: {response.status_code} code={error_code} "
                f"retryable={flags['retryable']}",
                extra={"fbtrace_id": error.get("fbtrace_id"), "error_subcode": error.get("error_subcode")}
            )
            return SendResult.fail(
                error.get("message") or f"HTTP {response.status_code}",
                str(error_code) if error_code is not None else f"HTTP_{response.status_code}",
                retryable=flags["retryable"],
                requires_attention=flags["requires_attention"],
                trace_id=error.get("fbtrace_id"),
            )

        events_received = data.get("events_received", 0)
        fbtrace_id = data.get("fbtrace_id")

        logger.info(
            f"[META_CAPI] Success: {events_received} event(s) received",
            extra={"events_received": events_received, "fbtrace_id": fbtrace_id}
        )
        return SendResult.ok(accepted=events_received, trace_id=fbtrace_id)
