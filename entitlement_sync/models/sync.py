"""Orchestrator and acknowledgment outcomes."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .entitlement import EntitlementRecord


class SyncState(str, Enum):
    """States of one orchestrator invocation."""

    START = "start"
    VERIFYING = "verifying"
    DECIDING = "deciding"
    WRITING = "writing"
    ACKNOWLEDGING = "acknowledging"
    DONE = "done"
    FAILED = "failed"


class SyncStatus(str, Enum):
    """How an invocation ended."""

    SYNCED = "synced"  # A write changed or refreshed the record
    GUARD_BLOCKED = "guard-blocked"  # Downgrade refused, existing entitlement kept
    UNCHANGED = "unchanged"  # Nothing to write
    FAILED = "failed"


class AcknowledgmentStatus(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    ALREADY_ACKNOWLEDGED = "already-acknowledged"
    FAILED = "failed"


class ClassifiedError(BaseModel):
    """A failure mapped onto the shared taxonomy."""

    kind: str
    message: Optional[str] = None
    retryable: bool = False
    retry_after_seconds: Optional[float] = None


class AcknowledgmentOutcome(BaseModel):
    status: AcknowledgmentStatus
    purchase_token: str
    product_id: str
    error: Optional[ClassifiedError] = None

    @property
    def ok(self) -> bool:
        return self.status != AcknowledgmentStatus.FAILED


class SyncOutcome(BaseModel):
    """Result returned to the webhook responder or client re-sync endpoint."""

    user_id: str
    status: SyncStatus
    final_state: SyncState
    entitlement: Optional[EntitlementRecord] = None
    verification_status: Optional[str] = None
    acknowledgment: Optional[AcknowledgmentOutcome] = None
    error: Optional[ClassifiedError] = None
    conflict_retries: int = Field(default=0, description="Re-evaluations after a version conflict")

    @property
    def failed(self) -> bool:
        return self.status == SyncStatus.FAILED

    @property
    def is_premium(self) -> bool:
        return self.entitlement is not None and self.entitlement.is_premium
