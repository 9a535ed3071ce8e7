"""Tests for FirestoreEntitlementStore against a mocked async Firestore client."""

import asyncio
from datetime import timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from google.api_core.datetime_helpers import DatetimeWithNanoseconds
from google.api_core.exceptions import (
    AlreadyExists,
    DeadlineExceeded,
    FailedPrecondition,
    ServiceUnavailable,
)

from entitlement_sync.errors import EntitlementSyncError, ErrorKind, StoreConflictError
from entitlement_sync.models.entitlement import EntitlementPatch, EntitlementSource
from entitlement_sync.repositories.firestore_store import FirestoreEntitlementStore

UPDATE_TIME = DatetimeWithNanoseconds(
    2026, 10, 19, 12, 0, 0, nanosecond=123456789, tzinfo=timezone.utc
)
VERSION = "2026-10-19T12:00:00.123456789Z"


def document_snapshot(data=None, doc_id="user-1"):
    snap = MagicMock()
    snap.exists = data is not None
    snap.id = doc_id
    snap.update_time = UPDATE_TIME if data is not None else None
    snap.to_dict.return_value = data
    return snap


async def stream_of(*docs):
    for doc in docs:
        yield doc


@pytest.fixture
def doc_ref():
    ref = MagicMock()
    ref.get = AsyncMock(return_value=document_snapshot())
    ref.create = AsyncMock()
    ref.update = AsyncMock()
    ref.set = AsyncMock()
    return ref


@pytest.fixture
def client(doc_ref):
    client = MagicMock()
    client.collection.return_value.document.return_value = doc_ref
    client.write_option.return_value = "precondition"
    return client


@pytest.fixture
def firestore_store(client):
    return FirestoreEntitlementStore(client, collection="entitlements")


def grant():
    return EntitlementPatch(
        is_premium=True,
        source=EntitlementSource.STORE_VERIFIED,
        purchase_token="token-1",
        status="active",
    )


class TestRead:
    """Document to snapshot mapping."""

    def test_missing_document(self, firestore_store, client):
        snapshot = asyncio.run(firestore_store.read("user-1"))
        assert snapshot.exists is False
        assert snapshot.version is None
        client.collection.assert_called_with("entitlements")
        client.collection.return_value.document.assert_called_with("user-1")

    def test_existing_document(self, firestore_store, doc_ref):
        doc_ref.get.return_value = document_snapshot(
            {"isPremium": True, "source": "store-verified", "acknowledgedTokens": ["token-1"]}
        )
        snapshot = asyncio.run(firestore_store.read("user-1"))
        assert snapshot.is_premium is True
        assert snapshot.record.user_id == "user-1"
        assert snapshot.record.source == EntitlementSource.STORE_VERIFIED
        assert snapshot.version == VERSION

    def test_backend_error(self, firestore_store, doc_ref):
        doc_ref.get.side_effect = ServiceUnavailable("backend down")
        with pytest.raises(EntitlementSyncError) as exc_info:
            asyncio.run(firestore_store.read("user-1"))
        assert exc_info.value.kind == ErrorKind.NETWORK


class TestWrite:
    """Conditional writes."""

    def test_first_write_creates(self, firestore_store, doc_ref):
        doc_ref.get.return_value = document_snapshot({"isPremium": True})
        snapshot = asyncio.run(firestore_store.write("user-1", grant(), None))

        document = doc_ref.create.await_args.args[0]
        assert document["userId"] == "user-1"
        assert document["isPremium"] is True
        assert document["source"] == "store-verified"
        assert document["purchaseToken"] == "token-1"
        assert document["createdAt"] is not None
        doc_ref.update.assert_not_awaited()
        assert snapshot.is_premium is True

    def test_update_carries_precondition(self, firestore_store, client, doc_ref):
        doc_ref.get.return_value = document_snapshot({"isPremium": True})
        asyncio.run(firestore_store.write("user-1", grant(), VERSION))

        last_update_time = client.write_option.call_args.kwargs["last_update_time"]
        assert last_update_time.rfc3339() == VERSION
        fields = doc_ref.update.await_args.args[0]
        assert doc_ref.update.await_args.kwargs["option"] == "precondition"
        assert fields["isPremium"] is True
        assert fields["source"] == "store-verified"
        assert fields["purchaseToken"] == "token-1"
        assert fields["status"] == "active"
        assert "updatedAt" in fields
        assert "productId" not in fields
        assert "acknowledgedTokens" not in fields

    @pytest.mark.parametrize(
        "version,error",
        [(None, AlreadyExists("exists")), (VERSION, FailedPrecondition("stale"))],
    )
    def test_conflicts(self, firestore_store, doc_ref, version, error):
        doc_ref.create.side_effect = error
        doc_ref.update.side_effect = error
        with pytest.raises(StoreConflictError):
            asyncio.run(firestore_store.write("user-1", grant(), version))

    def test_backend_error(self, firestore_store, doc_ref):
        doc_ref.update.side_effect = DeadlineExceeded("too slow")
        with pytest.raises(EntitlementSyncError) as exc_info:
            asyncio.run(firestore_store.write("user-1", grant(), VERSION))
        assert not isinstance(exc_info.value, StoreConflictError)
        assert exc_info.value.kind == ErrorKind.TIMEOUT


class TestAcknowledgmentLedger:
    """acknowledgedTokens array."""

    def test_is_acknowledged(self, firestore_store, doc_ref):
        doc_ref.get.return_value = document_snapshot({"acknowledgedTokens": ["token-1"]})
        assert asyncio.run(firestore_store.is_acknowledged("user-1", "token-1")) is True
        assert asyncio.run(firestore_store.is_acknowledged("user-1", "token-2")) is False
        assert doc_ref.get.await_args.kwargs["field_paths"] == ["acknowledgedTokens"]

    def test_missing_document_is_not_acknowledged(self, firestore_store):
        assert asyncio.run(firestore_store.is_acknowledged("user-1", "token-1")) is False

    def test_record_uses_array_union_merge(self, firestore_store, doc_ref):
        asyncio.run(firestore_store.record_acknowledgment("user-1", "token-1"))
        document = doc_ref.set.await_args.args[0]
        assert document["userId"] == "user-1"
        assert list(document["acknowledgedTokens"].values) == ["token-1"]
        assert doc_ref.set.await_args.kwargs["merge"] is True


class TestFindUserByToken:
    """Owner lookup queries."""

    def test_found_by_purchase_token(self, firestore_store, client):
        collection = client.collection.return_value
        collection.where.return_value.limit.return_value.stream.side_effect = [
            stream_of(document_snapshot({}, doc_id="user-7")),
        ]
        assert asyncio.run(firestore_store.find_user_by_token("token-1")) == "user-7"

    def test_found_in_ledger(self, firestore_store, client):
        collection = client.collection.return_value
        collection.where.return_value.limit.return_value.stream.side_effect = [
            stream_of(),
            stream_of(document_snapshot({}, doc_id="user-8")),
        ]
        assert asyncio.run(firestore_store.find_user_by_token("token-1")) == "user-8"

    def test_not_found(self, firestore_store, client):
        collection = client.collection.return_value
        collection.where.return_value.limit.return_value.stream.side_effect = [
            stream_of(),
            stream_of(),
        ]
        assert asyncio.run(firestore_store.find_user_by_token("token-1")) is None
