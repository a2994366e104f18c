"""Meta CAPI adapter tests (payload shape + response classification)."""

import asyncio
import hashlib
import json
from datetime import datetime, timezone

import httpx
import pytest

from conversion_relay.models import IntegrationTypeEnum
from conversion_relay.schemas import CanonicalEvent, HashedUserData, MetaCredentials, UserData
from conversion_relay.services.dispatch_service import build_delivery_jobs
from conversion_relay.services.meta_capi_service import (
    INSUFFICIENT_USER_DATA,
    MetaCAPIAdapter,
    build_event_payload,
    estimate_match_quality,
    has_minimum_user_data,
    map_event_name,
)


CREDENTIALS = MetaCredentials(pixel_id="123456", access_token="EAAB-token")


def _send(client, job, credentials=CREDENTIALS):
    async def _run():
        async with client:
            return await MetaCAPIAdapter(client).send(credentials, job)
    return asyncio.run(_run())


def _graph_error(status, code, message="error"):
    return lambda request: httpx.Response(
        status, json={"error": {"message": message, "code": code, "fbtrace_id": "TRACE"}}
    )


@pytest.mark.parametrize("internal,expected", [
    ("email_captured", "Lead"),
    ("application_started", "InitiateCheckout"),
    ("signup_complete", "CompleteRegistration"),
    ("first_transaction", "Purchase"),
    ("activated", "Purchase"),
    ("Purchase", "Purchase"),
    ("something_custom", "Lead"),
])
def test_map_event_name(internal, expected):
    assert map_event_name(internal) == expected


def test_minimum_user_data_rules():
    assert has_minimum_user_data(HashedUserData(email_hash="a" * 64))
    assert has_minimum_user_data(HashedUserData(phone_hash="b" * 64))
    assert has_minimum_user_data(HashedUserData(fbc="fb.1.1.abc"))
    assert has_minimum_user_data(HashedUserData(fbp="fb.1.1.123", ip_address="1.2.3.4"))
    assert not has_minimum_user_data(HashedUserData(fbp="fb.1.1.123"))
    assert not has_minimum_user_data(HashedUserData(gclid="gclid-only"))


def test_end_to_end_signup_payload_and_success(mock_http):
    """signup_complete with an email becomes one CompleteRegistration event."""
    event = CanonicalEvent(
        id="evt_1",
        organization_id="org_1",
        lead_id="lead_1",
        name="signup_complete",
        occurred_at=datetime(2024, 1, 15, 3, 30, tzinfo=timezone.utc),
        value=49,
        currency="aud",
        page_url="https://example.com/signup",
        user_data=UserData(email="A@B.com "),
    )
    (job,) = build_delivery_jobs(event, [IntegrationTypeEnum.meta_capi])
    client = mock_http(lambda request: httpx.Response(200, json={"events_received": 1, "fbtrace_id": "ABC"}))

    result = _send(client, job)

    assert result.success
    assert result.provider_events_accepted == 1
    assert result.trace_id == "ABC"

    (request,) = client.requests
    assert request.url.path.endswith("/123456/events")
    body = json.loads(request.content)
    assert body["access_token"] == "EAAB-token"
    (sent,) = body["data"]
    assert sent["event_name"] == "CompleteRegistration"
    assert sent["event_id"] == "evt_1"
    assert sent["event_time"] == int(datetime(2024, 1, 15, 3, 30, tzinfo=timezone.utc).timestamp())
    assert sent["action_source"] == "website"
    assert sent["event_source_url"] == "https://example.com/signup"
    assert sent["user_data"]["em"] == [hashlib.sha256(b"a@b.com").hexdigest()]
    assert sent["custom_data"] == {"value": 49.0, "currency": "AUD", "order_id": "evt_1"}


def test_payload_includes_test_event_code_and_unhashed_browser_hints(make_job):
    job = make_job(user_data={
        "email_hash": "a" * 64,
        "external_id_hash": "c" * 64,
        "fbc": "fb.1.1700000000000.abc",
        "fbp": "fb.1.1.123",
        "ip_address": "203.0.113.9",
        "user_agent": "Mozilla/5.0",
    })

    payload = build_event_payload(job, test_event_code="TEST123")

    assert payload["test_event_code"] == "TEST123"
    user_data = payload["data"][0]["user_data"]
    assert user_data["external_id"] == ["c" * 64]
    assert user_data["client_ip_address"] == "203.0.113.9"
    assert user_data["client_user_agent"] == "Mozilla/5.0"
    assert estimate_match_quality(user_data) >= 8
    assert "access_token" not in payload


def test_insufficient_user_data_fails_fast_without_network(mock_http, make_job):
    client = mock_http(lambda request: httpx.Response(200, json={}))
    job = make_job(user_data={"gclid": "only-google"})

    result = _send(client, job)

    assert not result.success
    assert not result.is_retryable
    assert result.error_code == INSUFFICIENT_USER_DATA
    assert client.requests == []


@pytest.mark.parametrize("code", [1, 2, 4, 17, 32, 341, 613, 80004])
def test_transient_graph_errors_are_retryable(mock_http, make_job, code):
    result = _send(mock_http(_graph_error(400, code)), make_job())

    assert not result.success
    assert result.is_retryable
    assert not result.requires_attention
    assert result.error_code == str(code)
    assert result.trace_id == "TRACE"


@pytest.mark.parametrize("code", [190, 102, 10, 200, 299, 368])
def test_credential_and_permission_errors_need_attention(mock_http, make_job, code):
    result = _send(mock_http(_graph_error(400, code)), make_job())

    assert not result.is_retryable
    assert result.requires_attention


def test_invalid_parameter_is_not_retryable(mock_http, make_job):
    result = _send(mock_http(_graph_error(400, 100, "Invalid parameter")), make_job())

    assert not result.is_retryable
    assert not result.requires_attention
    assert result.error == "Invalid parameter"


def test_error_field_that_is_not_an_object_is_handled(mock_http, make_job):
    result = _send(mock_http(lambda request: httpx.Response(400, json={"error": "boom"})), make_job())

    assert not result.success
    assert not result.is_retryable
    assert result.error == "HTTP 400"


def test_server_errors_are_retryable(mock_http, make_job):
    result = _send(mock_http(lambda request: httpx.Response(503, text="unavailable")), make_job())

    assert result.is_retryable
    assert result.error_code == "HTTP_503"


def test_unknown_client_error_is_not_retryable(mock_http, make_job):
    result = _send(mock_http(lambda request: httpx.Response(404, json={})), make_job())

    assert not result.success
    assert not result.is_retryable


def test_network_errors_and_timeouts_are_retryable(mock_http, make_job):
    def _timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    def _refused(request):
        raise httpx.ConnectError("refused", request=request)

    timeout = _send(mock_http(_timeout), make_job())
    refused = _send(mock_http(_refused), make_job())

    assert timeout.is_retryable and timeout.error_code == "TIMEOUT"
    assert refused.is_retryable and refused.error_code == "NETWORK_ERROR"


def test_access_token_is_never_logged(mock_http, make_job, caplog):
    caplog.set_level("DEBUG")

    _send(mock_http(_graph_error(400, 190, "Invalid OAuth access token")), make_job())

    assert "EAAB-token" not in caplog.text
