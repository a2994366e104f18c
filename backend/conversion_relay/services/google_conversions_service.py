"""Google Ads Offline Conversions adapter.

WHAT:
    Uploads one click conversion per delivery job to Google Ads via the REST
    `uploadClickConversions` endpoint, with OAuth access tokens refreshed
    from the integration's refresh token.

WHY:
    - Improves Google Ads campaign optimization with real conversion data
    - Closes the attribution loop: ad click -> conversion -> report back to Google
    - Enhanced conversions (hashed email/phone) match when no gclid was captured

HOW:
    1. Fail fast (no network) on missing identifiers / conversion action / config
    2. Exchange the refresh token for an access token (cached per customer)
    3. POST the conversion with partialFailure=true
    4. Map partialFailureError rows back to the job and classify by errorCode

PREREQUISITES:
    1. Conversion Action must exist in Google Ads account
    2. gclid must be captured within 90 days
    3. GOOGLE_DEVELOPER_TOKEN, GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET set

REFERENCES:
    - https://developers.google.com/google-ads/api/docs/conversions/upload-clicks
    - https://developers.google.com/google-ads/api/docs/best-practices/partial-failures
    - https://developers.google.com/identity/protocols/oauth2/web-server#offline
"""

import os
import time
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from conversion_relay.exceptions import ConversionRelayError
from conversion_relay.schemas import DeliveryJob, GoogleAdsCredentials, HashedUserData
from conversion_relay.services.platform_adapter import SendResult

logger = logging.getLogger(__name__)

GOOGLE_ADS_API_BASE_URL = "https://googleads.googleapis.com"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
REQUEST_TIMEOUT_SECONDS = 30.0
TOKEN_EXPIRY_BUFFER_SECONDS = 5 * 60

RETRYABLE_ERROR_CODES = frozenset({
    "RESOURCE_EXHAUSTED",
    "RESOURCE_TEMPORARILY_EXHAUSTED",
    "INTERNAL_ERROR",
    "TRANSIENT_ERROR",
    "DEADLINE_EXCEEDED",
    "CONCURRENT_MODIFICATION",
    "TOO_RECENT_CONVERSION_ACTION",
    "TOO_RECENT_CLICK",
})
ATTENTION_ERROR_CODES = frozenset({
    "UNAUTHORIZED",
    "PERMISSION_DENIED",
    "CUSTOMER_NOT_ENABLED",
    "USER_PERMISSION_DENIED",
})
# errorCode object keys whose values are all credential/permission problems
ATTENTION_ERROR_TYPES = frozenset({"authenticationError", "authorizationError"})

MISSING_IDENTIFIERS = "MISSING_IDENTIFIERS"
MISSING_CONVERSION_ACTION = "MISSING_CONVERSION_ACTION"
CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
INVALID_TOKEN_RESPONSE = "INVALID_TOKEN_RESPONSE"
PARTIAL_FAILURE = "PARTIAL_FAILURE"


def google_ads_api_version() -> str:
    return os.getenv("GOOGLE_ADS_API_VERSION", "v17")


class GoogleTokenError(ConversionRelayError):
    """OAuth refresh failed. `retryable` separates outages from revoked grants.

    `error_code` is UNAUTHORIZED for a rejected grant, CONFIGURATION_ERROR for
    missing client settings and INVALID_TOKEN_RESPONSE for an unusable body.
    """

    def __init__(self, message: str, retryable: bool, error_code: str = "UNAUTHORIZED"):
        super().__init__(message)
        self.retryable = retryable
        self.error_code = error_code


class AccessTokenCache:
    """In-process access token cache keyed by customer id.

    WHAT: Holds access tokens until 5 minutes before they expire
    WHY: One refresh per token lifetime instead of one per conversion

    One instance per worker process, shared by all concurrent jobs.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._tokens: Dict[str, Tuple[str, float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> Optional[str]:
        cached = self._tokens.get(key)
        if cached and cached[1] > self._clock() + TOKEN_EXPIRY_BUFFER_SECONDS:
            return cached[0]
        return None

    def set(self, key: str, token: str, expires_in: float) -> None:
        self._tokens[key] = (token, self._clock() + expires_in)

    def invalidate(self, key: str) -> None:
        self._tokens.pop(key, None)

    def lock(self, key: str) -> asyncio.Lock:
        """Per-key lock so concurrent jobs share one refresh."""
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]


def format_conversion_date_time(moment: datetime) -> str:
    """Format as Google expects: 'yyyy-mm-dd hh:mm:ss+hh:mm' (always UTC here)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    dt_str = moment.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S%z")
    # Fix timezone format: +0000 -> +00:00
    if len(dt_str) > 5 and dt_str[-5] in "+-" and ":" not in dt_str[-5:]:
        dt_str = dt_str[:-2] + ":" + dt_str[-2:]
    return dt_str


def has_minimum_data(user_data: HashedUserData) -> bool:
    """gclid is the primary key; enhanced conversions need an email or phone hash."""
    return bool(user_data.gclid or user_data.email_hash or user_data.phone_hash)


def build_user_identifiers(user_data: HashedUserData) -> List[Dict[str, str]]:
    identifiers = []
    if user_data.email_hash:
        identifiers.append({"hashedEmail": user_data.email_hash})
    if user_data.phone_hash:
        identifiers.append({"hashedPhoneNumber": user_data.phone_hash})
    return identifiers


def resolve_conversion_action_id(
    job: DeliveryJob,
    credentials: GoogleAdsCredentials,
    settings: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """Per-event mapping from integration settings, else the default action."""
    mapping = (settings or {}).get("conversion_actions") or {}
    action_id = mapping.get(job.event.name) if isinstance(mapping, dict) else None
    return str(action_id) if action_id else credentials.conversion_action_id


def build_conversion(job: DeliveryJob, customer_id: str, conversion_action_id: str) -> Dict[str, Any]:
    """Build the ClickConversion JSON for one job."""
    conversion: Dict[str, Any] = {
        "conversionAction": f"customers/{customer_id}/conversionActions/{conversion_action_id}",
        "conversionDateTime": format_conversion_date_time(job.event.occurred_at),
        "conversionValue": job.event.value,
        "currencyCode": job.event.currency,
        "orderId": job.event.id,  # Deduplication key
    }

    if job.hashed_user_data.gclid:
        conversion["gclid"] = job.hashed_user_data.gclid

    identifiers = build_user_identifiers(job.hashed_user_data)
    if identifiers:
        conversion["userIdentifiers"] = identifiers

    return conversion


def parse_failure_errors(failure: Optional[Dict[str, Any]]) -> Dict[int, List[Dict[str, Any]]]:
    """Group GoogleAdsFailure errors by conversion row index.

    WHAT: Reads `details[].errors[]`; the row comes from the
          `fieldPathElements` entry named "conversions"
    WHY: partialFailure responses are per row; the job must only fail on
         errors attributed to its own row

    Errors without a row index are attributed to row 0 (single-row requests).

    Returns:
        {row_index: [{"code", "type", "message"}, ...]}
    """
    rows: Dict[int, List[Dict[str, Any]]] = {}
    if not isinstance(failure, dict):
        return rows

    for detail in failure.get("details") or []:
        if not isinstance(detail, dict):
            continue
        for error in detail.get("errors") or []:
            if not isinstance(error, dict):
                continue

            error_type, code = None, None
            error_code = error.get("errorCode") or {}
            if isinstance(error_code, dict) and error_code:
                # errorCode is an object like {"conversionUploadError": "EXPIRED_GCLID"}
                error_type, code = next(iter(error_code.items()))

            index = 0
            location = error.get("location") or {}
            for element in location.get("fieldPathElements") or []:
                if element.get("fieldName") == "conversions" and element.get("index") is not None:
                    index = int(element["index"])
                    break

            rows.setdefault(index, []).append({
                "code": str(code) if code is not None else None,
                "type": error_type,
                "message": error.get("message"),
            })

    return rows


def _is_unparsed_failure(failure: Any) -> bool:
    """A partialFailureError with a non-zero status code or a message."""
    if not isinstance(failure, dict):
        return False
    return bool(failure.get("code")) or bool(failure.get("message"))


def classify_errors(errors: List[Dict[str, Any]], status_code: Optional[int] = None) -> SendResult:
    """Turn the errors of one row into a failed SendResult."""
    codes = [e["code"] for e in errors if e.get("code")]
    message = "; ".join(e["message"] for e in errors if e.get("message")) or "Conversion rejected"

    if not codes:
        retryable = status_code is not None and (status_code == 429 or status_code >= 500)
        code = f"HTTP_{status_code}" if status_code else "UNKNOWN"
        return SendResult.fail(message, code, retryable=retryable, requires_attention=status_code in (401, 403))

    retryable = all(code in RETRYABLE_ERROR_CODES for code in codes)
    requires_attention = any(
        e.get("code") in ATTENTION_ERROR_CODES or e.get("type") in ATTENTION_ERROR_TYPES
        for e in errors
    )
    return SendResult.fail(
        message,
        codes[0],
        retryable=retryable and not requires_attention,
        requires_attention=requires_attention,
    )


class GoogleAdsAdapter:
    """Delivers DeliveryJobs to Google Ads as click conversions.

    WHAT: Upload one conversion per job, outcome classified into a SendResult
    WHY: The worker owns retry policy; this class only reports what happened

    Usage:
        ```python
        adapter = GoogleAdsAdapter(http_client, AccessTokenCache())
        result = await adapter.send(credentials, job, settings)
        ```
    """

    def __init__(self, http_client: httpx.AsyncClient, token_cache: AccessTokenCache):
        self.http_client = http_client
        self.token_cache = token_cache

    async def get_access_token(self, credentials: GoogleAdsCredentials) -> str:
        """Return a cached access token or refresh one.

        Raises:
            GoogleTokenError: retryable for network/5xx, not for rejected grants
        """
        key = credentials.customer_id
        token = self.token_cache.get(key)
        if token:
            return token

        async with self.token_cache.lock(key):
            token = self.token_cache.get(key)
            if token:
                return token

            client_id = os.getenv("GOOGLE_CLIENT_ID")
            client_secret = os.getenv("GOOGLE_CLIENT_SECRET")
            if not client_id or not client_secret:
                raise GoogleTokenError(
                    "Google OAuth client credentials not configured",
                    retryable=False,
                    error_code=CONFIGURATION_ERROR,
                )

            try:
                response = await self.http_client.post(
                    GOOGLE_OAUTH_TOKEN_URL,
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "refresh_token": credentials.refresh_token.get_secret_value(),
                        "grant_type": "refresh_token",
                    },
                    timeout=REQUEST_TIMEOUT_SECONDS,
                )
            except httpx.RequestError as e:
                raise GoogleTokenError(f"Token refresh network error: {type(e).__name__}", retryable=True) from e

            if response.status_code != 200:
                try:
                    body = response.json()
                except ValueError:
                    body = None
                error = body.get("error") if isinstance(body, dict) else None
                logger.error(
                    f"[GOOGLE_CONV] OAuth token refresh failed: {response.status_code} {error or ''}".rstrip()
                )
                raise GoogleTokenError(
                    f"OAuth token refresh failed: {response.status_code}",
                    retryable=response.status_code >= 500 or response.status_code == 429,
                )

            try:
                data = response.json()
                token = data["access_token"]
                expires_in = float(data.get("expires_in", 3600))
                if not isinstance(token, str) or not token:
                    raise TypeError("access_token is not a non-empty string")
            except (ValueError, TypeError, KeyError, AttributeError):
                logger.error("[GOOGLE_CONV] OAuth token response had no usable access_token")
                raise GoogleTokenError(
                    "OAuth token response had no usable access_token",
                    retryable=False,
                    error_code=INVALID_TOKEN_RESPONSE,
                ) from None
            self.token_cache.set(key, token, expires_in)
            logger.debug(f"[GOOGLE_CONV] Refreshed access token for customer {key}")
            return token

    async def send(
        self,
        credentials: GoogleAdsCredentials,
        job: DeliveryJob,
        settings: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        """Upload one conversion. Never raises for provider or network failures."""
        user_data = job.hashed_user_data
        if not has_minimum_data(user_data):
            logger.warning(f"[GOOGLE_CONV] Job {job.idempotency_key} has no gclid, email or phone, not sending")
            return SendResult.fail("No gclid, email or phone hash to match on", MISSING_IDENTIFIERS)

        conversion_action_id = resolve_conversion_action_id(job, credentials, settings)
        if not conversion_action_id:
            logger.warning(f"[GOOGLE_CONV] No conversion action for event '{job.event.name}'")
            return SendResult.fail(
                f"No conversion action configured for event '{job.event.name}'",
                MISSING_CONVERSION_ACTION,
            )

        developer_token = os.getenv("GOOGLE_DEVELOPER_TOKEN")
        if not developer_token:
            logger.error("[GOOGLE_CONV] GOOGLE_DEVELOPER_TOKEN not configured")
            return SendResult.fail("Google Ads developer token not configured", CONFIGURATION_ERROR)

        try:
            access_token = await self.get_access_token(credentials)
        except GoogleTokenError as e:
            if e.retryable:
                return SendResult.fail(str(e), "TOKEN_REFRESH_FAILED", retryable=True)
            if e.error_code != "UNAUTHORIZED":
                return SendResult.fail(str(e), e.error_code)
            return SendResult.fail(
                "Failed to obtain access token",
                "UNAUTHORIZED",
                requires_attention=True,
            )

        url = (
            f"{GOOGLE_ADS_API_BASE_URL}/{google_ads_api_version()}"
            f"/customers/{credentials.customer_id}:uploadClickConversions"
        )
        headers = {
            "Authorization": f"Bearer {access_token}",
            "developer-token": developer_token,
        }
        if credentials.login_customer_id:
            headers["login-customer-id"] = credentials.login_customer_id

        body = {
            "conversions": [build_conversion(job, credentials.customer_id, conversion_action_id)],
            "partialFailure": True,
            "validateOnly": False,
        }

        logger.info(
            f"[GOOGLE_CONV] Uploading conversion {job.event.id}",
            extra={
                "gclid": user_data.gclid[:20] if user_data.gclid else None,
                "has_email": bool(user_data.email_hash),
                "has_phone": bool(user_data.phone_hash),
                "customer_id": credentials.customer_id,
            }
        )

        try:
            response = await self.http_client.post(url, json=body, headers=headers, timeout=REQUEST_TIMEOUT_SECONDS)
        except httpx.TimeoutException:
            logger.warning(f"[GOOGLE_CONV] Timeout uploading conversion {job.event.id}")
            return SendResult.fail("Request timeout", "TIMEOUT", retryable=True)
        except httpx.RequestError as e:
            logger.warning(f"[GOOGLE_CONV] Network error uploading {job.event.id}: {type(e).__name__}")
            return SendResult.fail(f"Network error: {type(e).__name__}", "NETWORK_ERROR", retryable=True)

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 300:
            error = data.get("error")
            if not isinstance(error, dict):
                error = {}
            row_errors = parse_failure_errors(error)
            errors = [e for errs in row_errors.values() for e in errs]
            if not errors:
                errors = [{"code": None, "type": None, "message": error.get("message")}]
            if response.status_code == 401:
                self.token_cache.invalidate(credentials.customer_id)

            result = classify_errors(errors, response.status_code)
            logger.error(
                f"[GOOGLE_CONV] API error: {response.status_code} code={result.error_code} "
                f"retryable={result.is_retryable}"
            )
            return result

        partial_failure = data.get("partialFailureError")
        failed_rows = parse_failure_errors(partial_failure)
        row_errors = failed_rows.get(0)
        if not failed_rows and _is_unparsed_failure(partial_failure):
            # Failure reported without per-row errors; the single row did not land
            row_errors = [{"code": PARTIAL_FAILURE, "type": None, "message": partial_failure.get("message")}]
        if row_errors:
            result = classify_errors(row_errors)
            logger.warning(
                f"[GOOGLE_CONV] Partial failure uploading conversion {job.event.id}: {result.error_code}",
                extra={"gclid": user_data.gclid[:20] if user_data.gclid else None, "order_id": job.event.id}
            )
            return result

        logger.info(f"[GOOGLE_CONV] Successfully uploaded conversion {job.event.id}")
        return SendResult.ok(accepted=1)
