"""Entitlement store - single source of truth for the premium flag.

Every read returns a versioned snapshot; every write is conditional on the
version the caller read. Records are created on first write and never deleted.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

from entitlement_sync.errors import StoreConflictError
from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.entitlement import (
    EntitlementPatch,
    EntitlementRecord,
    EntitlementSnapshot,
)

logger = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementStore(ABC):
    """Read / conditional-write access to entitlement records."""

    @abstractmethod
    async def read(self, user_id: str) -> EntitlementSnapshot:
        """Read the current record and its version token."""

    @abstractmethod
    async def write(
        self,
        user_id: str,
        patch: EntitlementPatch,
        expected_version: Optional[str],
    ) -> EntitlementSnapshot:
        """Apply ``patch`` atomically if the stored version is still ``expected_version``.

        ``expected_version=None`` means the caller saw no record; the write then
        creates one and fails if another writer created it first.

        Raises:
            StoreConflictError: If the document changed since it was read
        """

    @abstractmethod
    async def is_acknowledged(self, user_id: str, purchase_token: str) -> bool:
        """Whether ``purchase_token`` is in the user's acknowledgment ledger."""

    @abstractmethod
    async def record_acknowledgment(self, user_id: str, purchase_token: str) -> None:
        """Append ``purchase_token`` to the ledger (no-op if present)."""

    @abstractmethod
    async def find_user_by_token(self, purchase_token: str) -> Optional[str]:
        """User owning ``purchase_token``, if any record references it."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryEntitlementStore(EntitlementStore):
    """Thread-safe in-memory store used for local runs and tests.

    Versions are monotonically increasing revision numbers per document.
    """

    def __init__(self):
        self._records: Dict[str, EntitlementRecord] = {}
        self._revisions: Dict[str, int] = {}
        self._lock = threading.RLock()

    async def read(self, user_id: str) -> EntitlementSnapshot:
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return EntitlementSnapshot(user_id=user_id)
            return EntitlementSnapshot(
                user_id=user_id,
                record=record.model_copy(deep=True),
                version=str(self._revisions[user_id]),
            )

    async def write(
        self,
        user_id: str,
        patch: EntitlementPatch,
        expected_version: Optional[str],
    ) -> EntitlementSnapshot:
        with self._lock:
            current = self._records.get(user_id)
            current_version = str(self._revisions[user_id]) if current is not None else None
            if current_version != expected_version:
                raise StoreConflictError(
                    f"Entitlement for {user_id} changed: expected version "
                    f"{expected_version}, found {current_version}"
                )

            now = utcnow()
            if current is None:
                current = EntitlementRecord(user_id=user_id, created_at=now)
            updated = patch.apply_to(current, now)

            self._records[user_id] = updated
            self._revisions[user_id] = self._revisions.get(user_id, 0) + 1
            return EntitlementSnapshot(
                user_id=user_id,
                record=updated.model_copy(deep=True),
                version=str(self._revisions[user_id]),
            )

    async def is_acknowledged(self, user_id: str, purchase_token: str) -> bool:
        with self._lock:
            record = self._records.get(user_id)
            return record is not None and record.has_acknowledged(purchase_token)

    async def record_acknowledgment(self, user_id: str, purchase_token: str) -> None:
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                record = EntitlementRecord(user_id=user_id, created_at=utcnow())
            if record.has_acknowledged(purchase_token):
                return
            # Ledger appends bump the revision like any other document update
            self._records[user_id] = record.model_copy(
                update={"acknowledged_tokens": [*record.acknowledged_tokens, purchase_token]}
            )
            self._revisions[user_id] = self._revisions.get(user_id, 0) + 1

    async def find_user_by_token(self, purchase_token: str) -> Optional[str]:
        with self._lock:
            for user_id, record in self._records.items():
                if record.purchase_token == purchase_token or record.has_acknowledged(
                    purchase_token
                ):
                    return user_id
            return None

    def put(self, record: EntitlementRecord) -> None:
        """Insert or replace a record unconditionally (seeding and tests)."""
        with self._lock:
            self._records[record.user_id] = record
            self._revisions[record.user_id] = self._revisions.get(record.user_id, 0) + 1

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._revisions.clear()

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def __len__(self) -> int:
        return self.count()

    def __repr__(self) -> str:
        return f"InMemoryEntitlementStore(records={self.count()})"


# Global store instance
_store_instance: Optional[EntitlementStore] = None
_store_lock = threading.Lock()


def get_entitlement_store() -> EntitlementStore:
    """Get global entitlement store (singleton).

    Defaults to an in-memory store until the application lifespan installs
    the configured backend with ``set_entitlement_store``.
    """
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = InMemoryEntitlementStore()
    return _store_instance


def set_entitlement_store(store: Optional[EntitlementStore]) -> None:
    global _store_instance
    with _store_lock:
        _store_instance = store


def reset_entitlement_store() -> None:
    """Drop the global store; an in-memory store also loses its data."""
    global _store_instance
    with _store_lock:
        if isinstance(_store_instance, InMemoryEntitlementStore):
            _store_instance.clear()
        _store_instance = None
