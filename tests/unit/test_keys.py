"""Unit tests for streamguard/keys — rotation policy, signed URLs and object storage."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
from cryptography.fernet import Fernet

from streamguard.alerts import AlertDispatcher
from streamguard.audit.models import AuditFilters
from streamguard.audit.trail import AuditTrail
from streamguard.config import KeyRotationConfig
from streamguard.constants import COLLECTION_SECURITY_ALERTS, COLLECTION_SECURITY_KEYS
from streamguard.errors import InputValidationError, KeyRotationError, StoreUnavailableError
from streamguard.keys.rotation import KeyRotationManager
from streamguard.keys.storage import LocalObjectStorage
from streamguard.stores.memory import MemoryDocumentStore
from streamguard.stores.sqlite_store import SQLiteDocumentStore
from streamguard.utils.clock import ManualClock

BASE_URL = "https://media.localhost"


class UnwritableStore(MemoryDocumentStore):
    async def put(self, collection: str, doc_id: str, doc: dict[str, Any]) -> None:
        raise StoreUnavailableError("read-only replica", store="memory")


def _manager(
    store: MemoryDocumentStore,
    clock: ManualClock,
    random_source: Any,
    audit: AuditTrail | None = None,
    alerts: AlertDispatcher | None = None,
    config: KeyRotationConfig | None = None,
) -> KeyRotationManager:
    storage = LocalObjectStorage(BASE_URL, b"test-signing-secret", store, clock=clock)
    return KeyRotationManager(
        store,
        storage,
        Fernet(Fernet.generate_key()),
        config=config,
        clock=clock,
        random_source=random_source,
        audit=audit,
        alerts=alerts,
    )


@pytest.fixture
def manager(
    document_store: MemoryDocumentStore, clock: ManualClock, random_source: Any, audit: AuditTrail
) -> KeyRotationManager:
    alerts = AlertDispatcher(document_store, clock=clock)
    return _manager(document_store, clock, random_source, audit=audit, alerts=alerts)


# ─── Key lifecycle ────────────────────────────────────────────────────────────


class TestCurrentKey:
    async def test_first_call_creates_a_key(self, manager: KeyRotationManager) -> None:
        key = await manager.get_current_active_key()
        assert len(key.id) == 16
        assert len(key.key_data) == 64
        assert await manager.get_current_active_key() == key

    async def test_key_material_is_encrypted_at_rest(
        self, manager: KeyRotationManager, document_store: MemoryDocumentStore
    ) -> None:
        key = await manager.get_current_active_key()
        doc = await document_store.get(COLLECTION_SECURITY_KEYS, key.id)
        assert doc["key_data"] != key.key_data
        assert key.key_data not in str(doc)

    async def test_rotates_after_interval(self, manager: KeyRotationManager, clock: ManualClock) -> None:
        first = await manager.get_current_active_key()
        clock.advance(hours=6, minutes=1)
        second = await manager.get_current_active_key()
        assert second.id != first.id
        active_ids = [k.id for k in await manager.list_active_keys()]
        assert active_ids == [second.id, first.id]

    async def test_rotates_after_usage_threshold(
        self, manager: KeyRotationManager, document_store: MemoryDocumentStore
    ) -> None:
        first = await manager.get_current_active_key()
        await document_store.update(COLLECTION_SECURITY_KEYS, first.id, {"rotation_count": 101})
        assert (await manager.get_current_active_key()).id != first.id

    async def test_lookup_failure_raises_rotation_error(self, clock: ManualClock, random_source: Any) -> None:
        class DownStore(MemoryDocumentStore):
            async def query(self, *args: Any, **kwargs: Any) -> list[dict[str, Any]]:
                raise StoreUnavailableError("down", store="memory")

        with pytest.raises(KeyRotationError):
            await _manager(DownStore(), clock, random_source).get_current_active_key()


class TestRotation:
    async def test_active_set_is_bounded_and_never_empty(
        self, manager: KeyRotationManager, clock: ManualClock
    ) -> None:
        created = []
        for _ in range(5):
            created.append(await manager.rotate())
            active = await manager.list_active_keys()
            assert 1 <= len(active) <= 3
            clock.advance(minutes=1)

        active_ids = [k.id for k in await manager.list_active_keys()]
        assert active_ids == [k.id for k in reversed(created[-3:])]

    async def test_rotation_is_audited(self, manager: KeyRotationManager, audit: AuditTrail) -> None:
        key = await manager.rotate(reason="manual")
        (event,) = await audit.query(AuditFilters(action="key_rotation"))
        assert event.resource_id == key.id
        assert event.metadata["reason"] == "manual"
        assert event.metadata["rotation_type"] == "scheduled_rotation"

    async def test_store_failure_raises_rotation_error(self, clock: ManualClock, random_source: Any) -> None:
        with pytest.raises(KeyRotationError):
            await _manager(UnwritableStore(), clock, random_source).rotate()


class TestEmergencyRotation:
    async def test_replaces_every_active_key(
        self, manager: KeyRotationManager, clock: ManualClock, audit: AuditTrail
    ) -> None:
        await manager.rotate()
        clock.advance(minutes=1)
        await manager.rotate()

        new_key = await manager.emergency_rotate("key material leaked")

        assert [k.id for k in await manager.list_active_keys()] == [new_key.id]
        (event,) = await audit.query(AuditFilters(action="key_rotation", severity="high"))
        assert event.metadata["rotation_type"] == "emergency_rotation"
        assert len(event.metadata["deactivated_keys"]) == 2

    async def test_raises_an_alert(self, manager: KeyRotationManager, document_store: MemoryDocumentStore) -> None:
        new_key = await manager.emergency_rotate("key material leaked")
        (alert,) = await document_store.query(COLLECTION_SECURITY_ALERTS)
        assert alert["type"] == "emergency_key_rotation"
        assert alert["severity"] == "high"
        assert alert["data"]["new_key_id"] == new_key.id

    async def test_reason_required(self, manager: KeyRotationManager) -> None:
        with pytest.raises(InputValidationError):
            await manager.emergency_rotate("")


class TestCleanup:
    async def test_purges_only_expired_keys(self, manager: KeyRotationManager, clock: ManualClock) -> None:
        old = await manager.get_current_active_key()
        clock.advance(hours=25)
        fresh = await manager.get_current_active_key()

        assert await manager.cleanup_expired() == 1
        assert await manager.get_key(old.id) is None
        assert await manager.get_key(fresh.id) is not None

    async def test_is_idempotent(self, manager: KeyRotationManager, clock: ManualClock) -> None:
        await manager.get_current_active_key()
        clock.advance(hours=25)
        await manager.cleanup_expired()
        assert await manager.cleanup_expired() == 0


# ─── Signed URLs ──────────────────────────────────────────────────────────────


class TestSignedUrls:
    async def test_signed_url_validates(self, manager: KeyRotationManager) -> None:
        signed = await manager.sign_url("videos/abc.mp4", ttl_minutes=15)
        assert signed.url.startswith(f"{BASE_URL}/videos/abc.mp4?X-Expires=")
        assert await manager.validate(signed.url, signed.key_id) is True

    async def test_signing_counts_key_usage(self, manager: KeyRotationManager) -> None:
        signed = await manager.sign_url("videos/abc.mp4")
        await manager.sign_url("videos/def.mp4")
        key = await manager.get_key(signed.key_id)
        assert key is not None
        assert key.rotation_count == 2
        assert key.last_used is not None

    async def test_tampered_path_is_rejected(self, manager: KeyRotationManager) -> None:
        signed = await manager.sign_url("videos/abc.mp4")
        assert await manager.validate(signed.url.replace("abc.mp4", "abd.mp4"), signed.key_id) is False

    async def test_tampered_storage_signature_is_rejected(self, manager: KeyRotationManager) -> None:
        signed = await manager.sign_url("videos/abc.mp4")
        head, _, _ = signed.url.rpartition("&X-Signature=")
        assert await manager.validate(f"{head}&X-Signature={'0' * 64}", signed.key_id) is False

    async def test_expired_url_is_rejected(self, manager: KeyRotationManager, clock: ManualClock) -> None:
        signed = await manager.sign_url("videos/abc.mp4", ttl_minutes=15)
        clock.advance(minutes=16)
        assert await manager.validate(signed.url, signed.key_id) is False

    async def test_wrong_key_id_is_rejected(self, manager: KeyRotationManager, clock: ManualClock) -> None:
        signed = await manager.sign_url("videos/abc.mp4")
        clock.advance(minutes=1)
        other = await manager.rotate()
        assert await manager.validate(signed.url, other.id) is False
        assert await manager.validate(signed.url, "0000000000000000") is False

    async def test_overlapping_key_still_validates(self, manager: KeyRotationManager, clock: ManualClock) -> None:
        signed = await manager.sign_url("videos/abc.mp4", ttl_minutes=30)
        clock.advance(minutes=1)
        await manager.rotate()
        assert await manager.validate(signed.url, signed.key_id) is True

    async def test_emergency_rotation_invalidates_urls(self, manager: KeyRotationManager) -> None:
        signed = await manager.sign_url("videos/abc.mp4")
        await manager.emergency_rotate("compromised")
        assert await manager.validate(signed.url, signed.key_id) is False

    @pytest.mark.parametrize("resource_ref,ttl", [("", 15), ("/", 15), ("videos/a.mp4", 0)])
    async def test_invalid_sign_input(self, manager: KeyRotationManager, resource_ref: str, ttl: float) -> None:
        with pytest.raises(InputValidationError):
            await manager.sign_url(resource_ref, ttl_minutes=ttl)


class TestLocalObjectStorage:
    def test_foreign_url_has_no_resource(self, document_store: MemoryDocumentStore) -> None:
        storage = LocalObjectStorage(BASE_URL, b"secret", document_store)
        assert storage.resource_ref("https://evil.example.com/videos/a.mp4") is None
        assert storage.resource_ref(f"{BASE_URL}/videos/my%20clip.mp4?X-Expires=1") == "videos/my clip.mp4"

    async def test_quarantine(self, document_store: MemoryDocumentStore, clock: ManualClock) -> None:
        storage = LocalObjectStorage(BASE_URL, b"secret", document_store, clock=clock)
        await storage.quarantine("uploads/evil.exe", "malware_detection", source="incident_1")
        assert await storage.is_quarantined("uploads/evil.exe") is True
        assert await storage.is_quarantined("uploads/fine.png") is False


class TestKeyRecovery:
    async def test_keys_from_a_lost_cipher_are_replaced(
        self, document_store: MemoryDocumentStore, clock: ManualClock, random_source: Any
    ) -> None:
        before_restart = _manager(document_store, clock, random_source)
        old = await before_restart.get_current_active_key()
        signed = await before_restart.sign_url("videos/abc.mp4")

        after_restart = _manager(document_store, clock, random_source)
        clock.advance(seconds=1)
        fresh = await after_restart.get_current_active_key()

        assert fresh.id != old.id
        assert (await document_store.get(COLLECTION_SECURITY_KEYS, old.id))["is_active"] is False
        assert [k.id for k in await after_restart.list_active_keys()] == [fresh.id]
        assert await after_restart.get_key(old.id) is None
        assert await after_restart.validate(signed.url, old.id) is False
        assert (await after_restart.sign_url("videos/abc.mp4")).key_id == fresh.id
        assert (await after_restart.rotate()).id != fresh.id


class TestConcurrentSigning:
    async def test_usage_count_is_exact_under_concurrency(
        self, tmp_path: Path, clock: ManualClock, random_source: Any
    ) -> None:
        store = SQLiteDocumentStore(str(tmp_path / "keys.db"))
        await store.initialize()
        try:
            manager = _manager(store, clock, random_source)
            key = await manager.get_current_active_key()
            await asyncio.gather(*(manager.sign_url(f"videos/{n}.mp4") for n in range(20)))
            loaded = await manager.get_key(key.id)
            assert loaded is not None
            assert loaded.rotation_count == 20
        finally:
            await store.close()
