"""Integration Directory tests against a SQLite database."""

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from conversion_relay.exceptions import SyncLogAlreadyCompletedError
from conversion_relay.models import (
    Integration,
    IntegrationStatusEnum,
    IntegrationTypeEnum,
    SyncLog,
    SyncStatusEnum,
)
from conversion_relay.schemas import GoogleAdsCredentials, MetaCredentials


def _integration(session_factory, integration_id):
    db = session_factory()
    try:
        return db.get(Integration, integration_id)
    finally:
        db.close()


def _logs(session_factory, integration_id):
    db = session_factory()
    try:
        return db.query(SyncLog).filter(SyncLog.integration_id == integration_id).all()
    finally:
        db.close()


def test_returns_active_integration_with_decrypted_credentials(directory, seed_integration):
    integration_id = seed_integration(settings={"foo": "bar"})

    integration = directory.get_active_integration("org_1", IntegrationTypeEnum.meta_capi)

    assert integration.id == integration_id
    assert isinstance(integration.credentials, MetaCredentials)
    assert integration.credentials.pixel_id == "123456"
    assert integration.credentials.access_token.get_secret_value() == "EAAB-test-token"
    assert integration.settings == {"foo": "bar"}


def test_google_credentials_are_normalized(directory, seed_integration):
    seed_integration(integration_type=IntegrationTypeEnum.google_ads)

    integration = directory.get_active_integration("org_1", IntegrationTypeEnum.google_ads)

    assert isinstance(integration.credentials, GoogleAdsCredentials)
    assert integration.credentials.customer_id == "1234567890"


def test_returns_none_when_no_active_integration(directory, seed_integration):
    seed_integration(status=IntegrationStatusEnum.paused)
    seed_integration(organization_id="org_2")

    assert directory.get_active_integration("org_1", IntegrationTypeEnum.meta_capi) is None
    assert directory.get_active_integration("org_1", IntegrationTypeEnum.google_ads) is None


def test_multiple_active_integrations_is_a_configuration_error(
    directory, seed_integration, session_factory, caplog
):
    # Rows that predate the unique index
    with session_factory.kw["bind"].begin() as conn:
        conn.execute(text("DROP INDEX uq_integrations_active_per_org_type"))
    seed_integration()
    seed_integration()

    assert directory.get_active_integration("org_1", IntegrationTypeEnum.meta_capi) is None
    assert "Multiple active" in caplog.text


def test_second_active_integration_for_same_platform_is_rejected(seed_integration):
    seed_integration()

    with pytest.raises(IntegrityError):
        seed_integration()


def test_paused_integration_does_not_block_an_active_one(directory, seed_integration):
    seed_integration(status=IntegrationStatusEnum.paused)
    active_id = seed_integration()
    seed_integration(integration_type=IntegrationTypeEnum.google_ads)

    assert directory.get_active_integration("org_1", IntegrationTypeEnum.meta_capi).id == active_id


def test_undecryptable_credentials_flag_integration_and_log_failure(
    directory, seed_integration, session_factory, caplog
):
    integration_id = seed_integration(raw_credentials=b"\x01" * 64)

    assert directory.get_active_integration("org_1", IntegrationTypeEnum.meta_capi) is None

    integration = _integration(session_factory, integration_id)
    assert integration.status == IntegrationStatusEnum.error
    assert integration.last_error
    logs = _logs(session_factory, integration_id)
    assert [log.status for log in logs] == [SyncStatusEnum.failed]
    assert str(integration_id) in caplog.text


def test_credentials_failing_validation_are_treated_like_decryption_errors(
    directory, seed_integration, session_factory, caplog
):
    integration_id = seed_integration(credentials={"accessToken": "leaky-token"})

    assert directory.get_active_integration("org_1", IntegrationTypeEnum.meta_capi) is None

    assert _integration(session_factory, integration_id).status == IntegrationStatusEnum.error
    assert "leaky-token" not in caplog.text


def test_update_integration_status_sets_and_clears_error(directory, seed_integration, session_factory):
    integration_id = seed_integration()

    directory.update_integration_status(integration_id, IntegrationStatusEnum.error, "Token expired")
    flagged = _integration(session_factory, integration_id)
    assert flagged.status == IntegrationStatusEnum.error
    assert flagged.last_error == "Token expired"
    assert flagged.last_sync_at is not None

    directory.update_integration_status(integration_id, IntegrationStatusEnum.active)
    cleared = _integration(session_factory, integration_id)
    assert cleared.status == IntegrationStatusEnum.active
    assert cleared.last_error is None


def test_record_error_keeps_status(directory, seed_integration, session_factory):
    integration_id = seed_integration()

    directory.record_error(integration_id, "Rate limited")

    integration = _integration(session_factory, integration_id)
    assert integration.status == IntegrationStatusEnum.active
    assert integration.last_error == "Rate limited"


def test_open_sync_log_reuses_running_log_for_same_job(directory, seed_integration, session_factory):
    integration_id = seed_integration()

    first = directory.open_sync_log(integration_id, "meta-evt_1")
    second = directory.open_sync_log(integration_id, "meta-evt_1")
    other = directory.open_sync_log(integration_id, "meta-evt_2")

    assert first == second
    assert other != first
    assert len(_logs(session_factory, integration_id)) == 2


def test_complete_sync_log_is_single_shot(directory, seed_integration, session_factory):
    integration_id = seed_integration()
    log_id = directory.open_sync_log(integration_id, "meta-evt_1")

    directory.complete_sync_log(
        log_id, SyncStatusEnum.completed, records_processed=1, metadata={"trace_id": "abc"}
    )

    with pytest.raises(SyncLogAlreadyCompletedError):
        directory.complete_sync_log(log_id, SyncStatusEnum.failed, records_failed=1)

    (log,) = _logs(session_factory, integration_id)
    assert log.status == SyncStatusEnum.completed
    assert log.records_processed == 1
    assert log.completed_at is not None
    assert log.metadata_ == {"trace_id": "abc"}


def test_completed_log_is_not_reopened(directory, seed_integration):
    integration_id = seed_integration()
    log_id = directory.open_sync_log(integration_id, "meta-evt_1")
    directory.complete_sync_log(log_id, SyncStatusEnum.failed, records_failed=1, error="boom")

    assert directory.open_sync_log(integration_id, "meta-evt_1") != log_id


def test_create_sync_log_truncates_long_errors(directory, seed_integration, session_factory):
    integration_id = seed_integration()

    directory.create_sync_log(integration_id, SyncStatusEnum.failed, error="x" * 5000)

    (log,) = _logs(session_factory, integration_id)
    assert len(log.error) == 1000
