from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from packages.integration.db import SessionLocal
from packages.integration.domain import ChannelIntegration, IntegrationStatus, MessageStatus, Platform, Provider
from packages.integration.errors import DecryptionError, NotFound, PersistenceError
from packages.integration.models import ChannelIntegration as ChannelRow
from packages.integration.registry import ChannelRegistry, InboundMessageStore, OutboundLogStore


def _wa(tenant="t-1", **kw):
    base = dict(tenant_id=tenant, platform=Platform.whatsapp, provider=Provider.meta,
                access_token="EAAG-secret", config={"phone_number_id": "PNID-1"})
    base.update(kw)
    return ChannelIntegration(**base)


def test_create_then_get_returns_same_record(registry):
    created = registry.create(_wa(status=IntegrationStatus.disabled, refresh_token="r-1"))
    assert created.id
    assert created.status == IntegrationStatus.active
    assert created.created_at == created.updated_at

    loaded = registry.get_by_id(created.id)
    assert loaded.model_dump() == created.model_dump()


def test_tokens_are_encrypted_at_rest(registry, vault):
    created = registry.create(_wa(refresh_token="r-1"))
    with SessionLocal() as db:
        row = db.get(ChannelRow, created.id)
    assert row.access_token != "EAAG-secret"
    assert vault.decrypt(row.access_token) == "EAAG-secret"
    assert vault.decrypt(row.refresh_token) == "r-1"


def test_corrupt_ciphertext_raises_instead_of_plaintext(registry):
    created = registry.create(_wa())
    with SessionLocal() as db:
        db.get(ChannelRow, created.id).access_token = "EAAG-plaintext-token"
        db.commit()
    with pytest.raises(DecryptionError):
        registry.get_by_id(created.id)


def test_get_by_tenant_and_platform(registry):
    first = registry.create(_wa())
    registry.create(_wa(platform=Platform.telegram, provider=Provider.custom, config={"bot_token": "T"}))
    registry.create(_wa(tenant="t-2"))
    assert {c.platform for c in registry.get_by_tenant("t-1")} == {Platform.whatsapp, Platform.telegram}
    assert registry.get_by_tenant("nobody") == []
    assert registry.get_by_platform_and_tenant(Platform.whatsapp, "t-1").id == first.id
    with pytest.raises(NotFound):
        registry.get_by_platform_and_tenant(Platform.messenger, "t-1")


def test_platform_lookup_prefers_active_channel(registry):
    old = registry.create(_wa())
    registry.set_status(old.id, IntegrationStatus.disabled)
    newer = registry.create(_wa(access_token="EAAG-2"))
    assert registry.get_by_platform_and_tenant("whatsapp", "t-1").id == newer.id


def test_update_persists_and_missing_id_is_not_found(registry):
    created = registry.create(_wa())
    changed = created.model_copy(update={"config": {"phone_number_id": "PNID-9"}, "access_token": "EAAG-new"})
    updated = registry.update(changed)
    assert updated.updated_at >= created.updated_at
    loaded = registry.get_by_id(created.id)
    assert loaded.config == {"phone_number_id": "PNID-9"}
    assert loaded.access_token == "EAAG-new"

    with pytest.raises(NotFound):
        registry.update(created.model_copy(update={"id": "missing"}))


def test_delete_then_get_is_not_found(registry):
    created = registry.create(_wa())
    registry.delete(created.id)
    with pytest.raises(NotFound):
        registry.get_by_id(created.id)
    with pytest.raises(NotFound):
        registry.delete(created.id)


def test_expiring_ids_only_lists_active_rows_in_window(registry):
    now = datetime(2026, 1, 1)
    soon = registry.create(_wa(token_expiry=now + timedelta(days=2)))
    registry.create(_wa(token_expiry=now + timedelta(days=30)))
    registry.create(_wa(token_expiry=None))
    errored = registry.create(_wa(token_expiry=now - timedelta(days=1)))
    registry.set_status(errored.id, IntegrationStatus.error)
    assert registry.list_expiring_ids(now + timedelta(days=7)) == [soon.id]


def test_aware_expiry_is_stored_as_utc(registry):
    aware = datetime(2026, 1, 1, 12, tzinfo=timezone(timedelta(hours=-5)))
    created = registry.create(_wa(token_expiry=aware))
    assert registry.get_by_id(created.id).token_expiry == datetime(2026, 1, 1, 17)


def test_create_wraps_storage_errors(vault, tmp_path, monkeypatch):
    # no schema created on this database
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'empty.db'}")
    with pytest.raises(PersistenceError):
        ChannelRegistry(vault).create(_wa())


def test_reads_and_status_updates_wrap_storage_errors(vault, tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'empty.db'}")
    registry = ChannelRegistry(vault)
    calls = [
        lambda: registry.get_by_id("c-1"),
        lambda: registry.get_by_tenant("t-1"),
        lambda: registry.get_by_platform_and_tenant(Platform.whatsapp, "t-1"),
        lambda: registry.list_active(),
        lambda: registry.set_status("c-1", IntegrationStatus.disabled),
    ]
    for call in calls:
        with pytest.raises(PersistenceError):
            call()


def test_inbound_store_lifecycle(database):
    store = InboundMessageStore()
    rec = store.record(Platform.telegram, b'{"raw": true}')
    assert store.get_unprocessed()[0].id == rec.id
    store.mark_processed(rec.id)
    assert store.get_unprocessed() == []
    (listed,) = store.list(Platform.telegram)
    assert listed.processed is True and listed.payload == b'{"raw": true}'
    assert store.list(Platform.whatsapp) == []
    with pytest.raises(NotFound):
        store.mark_processed("missing")


def test_outbound_log_finalizes_once(registry):
    channel = registry.create(_wa())
    logs = OutboundLogStore()
    log = logs.create_queued(channel.id, "573", {"type": "text", "text": "hi"})
    assert logs.get_by_status(MessageStatus.queued)[0].id == log.id

    logs.finalize(log.id, MessageStatus.sent, {"status_code": 200})
    with pytest.raises(PersistenceError):
        logs.finalize(log.id, MessageStatus.failed, {"error": "late"})

    stored = logs.get(log.id)
    assert stored.status == MessageStatus.sent
    assert stored.response == {"status_code": 200}
    assert [entry.id for entry in logs.get_by_channel_id(channel.id)] == [log.id]
    assert [entry.id for entry in logs.list(Platform.whatsapp, tenant_id="t-1")] == [log.id]
    assert logs.list(Platform.telegram) == []
    assert logs.list(tenant_id="t-2") == []


def test_registry_rows_use_platform_strings(registry):
    registry.create(_wa(provider=Provider.dialog360))
    with SessionLocal() as db:
        row = db.execute(select(ChannelRow)).scalar_one()
    assert (row.platform, row.provider, row.status) == ("whatsapp", "360dialog", "active")
