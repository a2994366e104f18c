"""PII normalization and hashing for ad platform matching.

WHAT:
    Normalizes and SHA-256 hashes emails, phones and external ids, and
    classifies email domains as business or consumer.

WHY:
    - Meta CAPI and Google enhanced conversions only accept hashed PII
    - Hashing must be deterministic so platforms can match and deduplicate
    - Raw PII must never reach the queue; `hash_user_data` is the only place
      the raw bag is read

NOTE:
    `normalize_phone` is a best-effort normalization (strip formatting, swap a
    national leading 0 for the default country code), not E.164 validation.

All functions are pure and never raise on malformed strings.
"""

import hashlib
import os
import re
from datetime import datetime
from enum import Enum
from typing import Optional

from conversion_relay.schemas import HashedUserData, UserData


DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_PHONE_COUNTRY_CODE", "+61")

_PHONE_STRIP = re.compile(r"[^\d+]")

CONSUMER_EMAIL_DOMAINS = frozenset({
    # Global
    "gmail.com",
    "googlemail.com",
    "yahoo.com",
    "yahoo.co.uk",
    "hotmail.com",
    "hotmail.co.uk",
    "outlook.com",
    "live.com",
    "msn.com",
    "icloud.com",
    "me.com",
    "mac.com",
    "aol.com",
    "protonmail.com",
    "proton.me",
    "zoho.com",
    "gmx.com",
    "gmx.net",
    "mail.com",
    # Australia
    "bigpond.com",
    "bigpond.net.au",
    "optusnet.com.au",
    "ozemail.com.au",
    "tpg.com.au",
    "internode.on.net",
    "dodo.com.au",
    # Regional
    "qq.com",
    "163.com",
    "126.com",
    "mail.ru",
    "yandex.ru",
    "yandex.com",
    "naver.com",
    "daum.net",
    "web.de",
    "orange.fr",
    "free.fr",
    "libero.it",
    "wp.pl",
    "o2.pl",
})


class EmailType(str, Enum):
    business = "business"
    consumer = "consumer"


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _strip_phone(raw: str) -> str:
    """Keep digits and a single leading '+' (leading once formatting is gone)."""
    digits = _PHONE_STRIP.sub("", raw or "")
    leading_plus = digits.startswith("+")
    digits = digits.replace("+", "")
    return f"+{digits}" if leading_plus else digits


def hash_email(raw: str) -> str:
    """Lowercase, trim and SHA-256 an email (64 hex chars)."""
    return _sha256((raw or "").strip().lower())


def hash_phone(raw: str) -> str:
    """SHA-256 a phone after dropping everything but digits and a leading '+'."""
    return _sha256(_strip_phone(raw))


def hash_data(raw: str) -> str:
    """Generic lowercase/trim SHA-256, used for external ids."""
    return _sha256((raw or "").strip().lower())


def classify_email_domain(raw: str) -> EmailType:
    """Classify an email as consumer webmail or business.

    Used for segmentation only; hashing does not depend on it.
    """
    _, _, domain = (raw or "").strip().lower().rpartition("@")
    if domain in CONSUMER_EMAIL_DOMAINS:
        return EmailType.consumer
    return EmailType.business


def normalize_phone(raw: str, default_country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Best-effort E.164-ish normalization.

    Examples:
        "0412 345 678" (+61)  -> "+61412345678"
        "+1 (555) 123-4567"   -> "+15551234567"
    """
    normalized = _strip_phone(raw)
    if normalized.startswith("+"):
        return normalized

    if normalized.startswith("0"):
        normalized = normalized[1:]
    return f"{default_country_code}{normalized}"


def _present(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def hash_user_data(
    user_data: UserData,
    default_country_code: Optional[str] = None,
    event_time: Optional[datetime] = None,
) -> HashedUserData:
    """Derive the queue-safe match keys from a raw UserData bag.

    WHAT: Hashes email, normalized phone and external id; passes through
          click ids, cookies, IP and user agent.
    WHY: Empty PII is dropped rather than hashed, since platforms reject the
         hash of an empty string as a match key.

    Deterministic: recomputing for the same input yields the same output.
    """
    country_code = default_country_code or DEFAULT_COUNTRY_CODE

    phone_hash = None
    if _present(user_data.phone) and _strip_phone(user_data.phone).lstrip("+"):
        phone_hash = hash_phone(normalize_phone(user_data.phone, country_code))

    fbc = user_data.fbc
    if not fbc and _present(user_data.fbclid):
        # fbc format: fb.1.{creation time ms}.{fbclid}; the event time keeps it deterministic
        created_ms = int(event_time.timestamp() * 1000) if event_time else 0
        fbc = f"fb.1.{created_ms}.{user_data.fbclid.strip()}"

    return HashedUserData(
        email_hash=hash_email(user_data.email) if _present(user_data.email) else None,
        phone_hash=phone_hash,
        external_id_hash=hash_data(user_data.external_id) if _present(user_data.external_id) else None,
        gclid=user_data.gclid or None,
        fbc=fbc or None,
        fbp=user_data.fbp or None,
        ip_address=user_data.ip_address or None,
        user_agent=user_data.user_agent or None,
    )
