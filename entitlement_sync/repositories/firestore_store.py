"""Firestore-backed entitlement store.

One document per user in the configured collection, keyed by user ID.
The document ``update_time`` is the version token: updates carry a
``last_update_time`` precondition and first writes use ``create()``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from google.api_core.datetime_helpers import DatetimeWithNanoseconds
from google.api_core.exceptions import (
    AlreadyExists,
    FailedPrecondition,
    GoogleAPICallError,
    NotFound,
)
from google.cloud.firestore_v1 import ArrayUnion
from google.cloud.firestore_v1.async_client import AsyncClient
from google.cloud.firestore_v1.base_query import FieldFilter

from entitlement_sync.errors import (
    EntitlementSyncError,
    StoreConflictError,
    classify_error,
    technical_message,
)
from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.entitlement import (
    EntitlementPatch,
    EntitlementRecord,
    EntitlementSnapshot,
)
from entitlement_sync.repositories.entitlement_store import EntitlementStore

logger = get_logger(__name__)


def _version_of(update_time: Optional[datetime]) -> Optional[str]:
    if update_time is None:
        return None
    if isinstance(update_time, DatetimeWithNanoseconds):
        return update_time.rfc3339()
    return update_time.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _patch_document(patch: EntitlementPatch, now: datetime) -> dict[str, Any]:
    """Changed patch fields as camelCase document fields."""
    fields = EntitlementRecord.model_fields
    document: dict[str, Any] = {}
    for name, value in patch.changed_fields().items():
        key = fields[name].alias or name
        document[key] = value.value if isinstance(value, Enum) else value
    document["updatedAt"] = now
    return document


def _store_error(error: GoogleAPICallError, operation: str, user_id: str) -> EntitlementSyncError:
    kind = classify_error(error)
    logger.error(
        "entitlement_store_error",
        operation=operation,
        user_id=user_id,
        error_kind=kind.value,
        error=technical_message(error),
    )
    return EntitlementSyncError(f"Firestore {operation} failed for {user_id}", kind=kind, cause=error)


class FirestoreEntitlementStore(EntitlementStore):
    """Entitlement records in Firestore (Firebase Admin async client)."""

    def __init__(self, client: AsyncClient, collection: str = "entitlements"):
        self._client = client
        self._collection = collection

    def _doc(self, user_id: str):
        return self._client.collection(self._collection).document(user_id)

    async def read(self, user_id: str) -> EntitlementSnapshot:
        try:
            snap = await self._doc(user_id).get()
        except GoogleAPICallError as e:
            raise _store_error(e, "read", user_id) from e

        if not snap.exists:
            return EntitlementSnapshot(user_id=user_id)

        data = snap.to_dict() or {}
        data["userId"] = user_id
        return EntitlementSnapshot(
            user_id=user_id,
            record=EntitlementRecord.from_document(data),
            version=_version_of(snap.update_time),
        )

    async def write(
        self,
        user_id: str,
        patch: EntitlementPatch,
        expected_version: Optional[str],
    ) -> EntitlementSnapshot:
        doc_ref = self._doc(user_id)
        now = datetime.now(timezone.utc)

        try:
            if expected_version is None:
                record = patch.apply_to(EntitlementRecord(user_id=user_id, created_at=now), now)
                await doc_ref.create(record.to_document())
            else:
                option = self._client.write_option(
                    last_update_time=DatetimeWithNanoseconds.from_rfc3339(expected_version)
                )
                await doc_ref.update(_patch_document(patch, now), option=option)
        except (AlreadyExists, FailedPrecondition, NotFound) as e:
            logger.info(
                "entitlement_write_conflict",
                user_id=user_id,
                expected_version=expected_version,
                error_type=type(e).__name__,
            )
            raise StoreConflictError(
                f"Entitlement for {user_id} changed since version {expected_version}", cause=e
            ) from e
        except GoogleAPICallError as e:
            raise _store_error(e, "write", user_id) from e

        return await self.read(user_id)

    async def is_acknowledged(self, user_id: str, purchase_token: str) -> bool:
        try:
            snap = await self._doc(user_id).get(field_paths=["acknowledgedTokens"])
        except GoogleAPICallError as e:
            raise _store_error(e, "read", user_id) from e
        if not snap.exists:
            return False
        tokens = (snap.to_dict() or {}).get("acknowledgedTokens") or []
        return purchase_token in tokens

    async def record_acknowledgment(self, user_id: str, purchase_token: str) -> None:
        try:
            await self._doc(user_id).set(
                {
                    "userId": user_id,
                    "acknowledgedTokens": ArrayUnion([purchase_token]),
                    "updatedAt": datetime.now(timezone.utc),
                },
                merge=True,
            )
        except GoogleAPICallError as e:
            raise _store_error(e, "record_acknowledgment", user_id) from e

    async def find_user_by_token(self, purchase_token: str) -> Optional[str]:
        collection = self._client.collection(self._collection)
        queries = (
            collection.where(filter=FieldFilter("purchaseToken", "==", purchase_token)),
            collection.where(
                filter=FieldFilter("acknowledgedTokens", "array_contains", purchase_token)
            ),
        )
        try:
            for query in queries:
                async for doc in query.limit(1).stream():
                    return doc.id
        except GoogleAPICallError as e:
            raise _store_error(e, "find_user_by_token", "-") from e
        return None
