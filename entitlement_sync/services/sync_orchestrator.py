"""Sync orchestrator - reconciles one user's entitlement with the billing platform.

State machine per invocation:
    START -> VERIFYING -> DECIDING -> WRITING -> ACKNOWLEDGING -> DONE
with FAILED reachable from VERIFYING or WRITING.

Concurrent invocations for the same user are resolved by conditional writes:
a version conflict triggers one re-read and re-decision, so a downgrade that
lost the race is evaluated again against the fresh record.
"""

import asyncio
import threading
from typing import Optional

from entitlement_sync.config import Config, get_config
from entitlement_sync.errors import (
    EntitlementSyncError,
    StoreConflictError,
    classify_error,
    is_retryable,
    retry_delay_seconds,
    technical_message,
)
from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.entitlement import (
    EntitlementPatch,
    EntitlementSnapshot,
    EntitlementSource,
)
from entitlement_sync.models.sync import (
    AcknowledgmentOutcome,
    AcknowledgmentStatus,
    ClassifiedError,
    SyncOutcome,
    SyncState,
    SyncStatus,
)
from entitlement_sync.models.verification import VerificationAttempt, VerificationResult
from entitlement_sync.repositories.entitlement_store import (
    EntitlementStore,
    get_entitlement_store,
)
from entitlement_sync.services.acknowledgment_tracker import AcknowledgmentTracker
from entitlement_sync.services.billing_client import get_billing_client
from entitlement_sync.services.downgrade_guard import should_block_downgrade
from entitlement_sync.services.purchase_verifier import PurchaseVerifier
from entitlement_sync.state_logger import (
    log_downgrade_blocked,
    log_entitlement_change,
    log_sync_state_change,
)

logger = get_logger(__name__)


class _Decision:
    """What DECIDING concluded: an optional patch and the resulting status."""

    __slots__ = ("patch", "status")

    def __init__(self, patch: Optional[EntitlementPatch], status: SyncStatus):
        self.patch = patch
        self.status = status


class SyncOrchestrator:
    """Runs verification, guarded write and acknowledgment for one user."""

    def __init__(
        self,
        store: EntitlementStore,
        verifier: PurchaseVerifier,
        tracker: AcknowledgmentTracker,
        config: Optional[Config] = None,
        max_conflict_retries: int = 1,
    ):
        self.store = store
        self.verifier = verifier
        self.tracker = tracker
        self.config = config or get_config()
        self.max_conflict_retries = max_conflict_retries

    async def sync(
        self,
        user_id: str,
        product_id: str,
        purchase_token: Optional[str] = None,
        allow_downgrade: bool = False,
    ) -> SyncOutcome:
        """Reconcile ``user_id``'s entitlement.

        Args:
            user_id: User whose record is reconciled
            product_id: Billing product ID
            purchase_token: Token to verify; None for a token-less re-sync
            allow_downgrade: Explicit intent to clear an existing premium flag

        Returns:
            SyncOutcome with status synced, guard-blocked, unchanged or failed.
            Failures are reported in the outcome, not raised.
        """
        state = SyncState.START
        logger.info(
            "sync_started",
            user_id=user_id,
            product_id=product_id,
            token=purchase_token,
            token_less=not purchase_token,
            allow_downgrade=allow_downgrade,
        )

        try:
            snapshot = await self.store.read(user_id)
        except EntitlementSyncError as e:
            return self._failed(user_id, state, EntitlementSnapshot(user_id=user_id), e)
        attempt = VerificationAttempt(
            user_id=user_id,
            product_id=product_id,
            purchase_token=purchase_token or None,
            existing_is_premium=snapshot.is_premium,
            allow_downgrade=allow_downgrade,
        )

        # VERIFYING
        state = self._transition(user_id, state, SyncState.VERIFYING)
        if not attempt.is_token_less:
            try:
                attempt.verified_result = await self.verifier.verify(
                    product_id, attempt.purchase_token
                )
            except (EntitlementSyncError, asyncio.TimeoutError) as e:
                return self._failed(user_id, state, snapshot, e)
        result = attempt.verified_result

        # DECIDING / WRITING, re-decided after a version conflict
        conflict_retries = 0
        while True:
            state = self._transition(user_id, state, SyncState.DECIDING)
            decision = self._decide(snapshot, attempt)
            if decision.patch is None:
                return self._done(
                    user_id, state, decision.status, snapshot, result, None, conflict_retries
                )

            state = self._transition(user_id, state, SyncState.WRITING)
            try:
                written = await asyncio.shield(
                    self.store.write(user_id, decision.patch, snapshot.version)
                )
            except StoreConflictError as e:
                if conflict_retries >= self.max_conflict_retries:
                    return self._failed(
                        user_id,
                        state,
                        snapshot,
                        e,
                        result,
                        conflict_retries,
                        attempt_no=conflict_retries + 1,
                    )
                conflict_retries += 1
                logger.info(
                    "sync_conflict_reevaluating",
                    user_id=user_id,
                    expected_version=snapshot.version,
                    retry=conflict_retries,
                )
                try:
                    snapshot = await self.store.read(user_id)
                except EntitlementSyncError as reread_error:
                    return self._failed(
                        user_id, state, snapshot, reread_error, result, conflict_retries
                    )
                attempt.existing_is_premium = snapshot.is_premium
                continue
            except EntitlementSyncError as e:
                return self._failed(user_id, state, snapshot, e, result, conflict_retries)
            break

        log_entitlement_change(
            user_id,
            snapshot.record.is_premium if snapshot.record else None,
            written.record.is_premium,
            source=written.record.source.value,
            reason=result.status.value if result else "token-less",
            product_id=written.record.product_id,
            guard_blocked=decision.status == SyncStatus.GUARD_BLOCKED,
        )

        # ACKNOWLEDGING
        acknowledgment = None
        if result is not None and result.is_entitled and result.purchase_token:
            state = self._transition(user_id, state, SyncState.ACKNOWLEDGING)
            acknowledgment = await self._acknowledge(user_id, result)

        return self._done(
            user_id, state, decision.status, written, result, acknowledgment, conflict_retries
        )

    def _decide(self, snapshot: EntitlementSnapshot, attempt: VerificationAttempt) -> _Decision:
        result = attempt.verified_result
        existing = attempt.existing_is_premium
        proposed = result.is_entitled if result is not None else False

        if existing and not proposed and should_block_downgrade(existing, attempt.allow_downgrade):
            log_downgrade_blocked(
                attempt.user_id,
                result.status.value if result else None,
                token_less=attempt.is_token_less,
                product_id=attempt.product_id,
            )
            if result is None:
                return _Decision(None, SyncStatus.GUARD_BLOCKED)
            # Keep the grant; only record that a verification happened
            return _Decision(
                EntitlementPatch(
                    is_premium=True,
                    source=snapshot.record.source,
                    last_verified_at=result.verified_at,
                    status=result.status.value,
                ),
                SyncStatus.GUARD_BLOCKED,
            )

        if result is None:
            # Token-less: nothing verified, only an explicit downgrade is written
            if not existing:
                return _Decision(None, SyncStatus.UNCHANGED)
            return _Decision(
                EntitlementPatch(is_premium=False, source=EntitlementSource.UNKNOWN),
                SyncStatus.SYNCED,
            )

        return _Decision(self._verified_patch(result), SyncStatus.SYNCED)

    @staticmethod
    def _verified_patch(result: VerificationResult) -> EntitlementPatch:
        return EntitlementPatch(
            is_premium=result.is_entitled,
            source=EntitlementSource.STORE_VERIFIED,
            product_id=result.product_id,
            purchase_token=result.purchase_token,
            last_verified_at=result.verified_at,
            entitlement_type=result.entitlement_type,
            status=result.status.value,
            expires_at=result.expires_at,
            auto_renewing=result.auto_renewing,
            order_id=result.order_id,
            base_plan_id=result.base_plan_id,
        )

    async def _acknowledge(self, user_id: str, result: VerificationResult) -> AcknowledgmentOutcome:
        try:
            return await self.tracker.acknowledge(
                user_id,
                result.purchase_token,
                result.product_id,
                product_kind=result.product_kind,
                platform_acknowledged=result.acknowledged,
            )
        except EntitlementSyncError as e:
            # Ledger write failed; the grant already persisted stays
            kind = classify_error(e)
            logger.warning(
                "acknowledgment_ledger_failed",
                user_id=user_id,
                token=result.purchase_token,
                error_kind=kind.value,
                error=technical_message(e),
            )
            return AcknowledgmentOutcome(
                status=AcknowledgmentStatus.FAILED,
                purchase_token=result.purchase_token,
                product_id=result.product_id,
                error=self._classify(e),
            )

    def _transition(self, user_id: str, old: SyncState, new: SyncState) -> SyncState:
        log_sync_state_change(user_id, old.value, new.value)
        return new

    @staticmethod
    def _classify(error: BaseException, attempt_no: int = 1) -> ClassifiedError:
        kind = classify_error(error)
        retryable = is_retryable(kind)
        return ClassifiedError(
            kind=kind.value,
            message=technical_message(error) or type(error).__name__,
            retryable=retryable,
            retry_after_seconds=retry_delay_seconds(attempt_no) if retryable else None,
        )

    def _failed(
        self,
        user_id: str,
        state: SyncState,
        snapshot: EntitlementSnapshot,
        error: BaseException,
        result: Optional[VerificationResult] = None,
        conflict_retries: int = 0,
        attempt_no: int = 1,
    ) -> SyncOutcome:
        classified = self._classify(error, attempt_no)
        self._transition(user_id, state, SyncState.FAILED)
        logger.warning(
            "sync_failed",
            user_id=user_id,
            failed_in=state.value,
            error_kind=classified.kind,
            error=classified.message,
            retryable=classified.retryable,
        )
        return SyncOutcome(
            user_id=user_id,
            status=SyncStatus.FAILED,
            final_state=SyncState.FAILED,
            entitlement=snapshot.record,
            verification_status=result.status.value if result else None,
            error=classified,
            conflict_retries=conflict_retries,
        )

    def _done(
        self,
        user_id: str,
        state: SyncState,
        status: SyncStatus,
        snapshot: EntitlementSnapshot,
        result: Optional[VerificationResult],
        acknowledgment: Optional[AcknowledgmentOutcome],
        conflict_retries: int,
    ) -> SyncOutcome:
        self._transition(user_id, state, SyncState.DONE)
        outcome = SyncOutcome(
            user_id=user_id,
            status=status,
            final_state=SyncState.DONE,
            entitlement=snapshot.record,
            verification_status=result.status.value if result else None,
            acknowledgment=acknowledgment,
            conflict_retries=conflict_retries,
        )
        logger.info(
            "sync_completed",
            user_id=user_id,
            status=status.value,
            is_premium=outcome.is_premium,
            verification_status=outcome.verification_status,
            acknowledgment=acknowledgment.status.value if acknowledgment else None,
        )
        return outcome


# Global orchestrator instance
_orchestrator_instance: Optional[SyncOrchestrator] = None
_orchestrator_lock = threading.Lock()


def build_sync_orchestrator(
    store: Optional[EntitlementStore] = None,
    config: Optional[Config] = None,
) -> SyncOrchestrator:
    """Wire an orchestrator from the global billing client, store and config."""
    config = config or get_config()
    store = store or get_entitlement_store()
    client = get_billing_client()
    return SyncOrchestrator(
        store=store,
        verifier=PurchaseVerifier(client, config),
        tracker=AcknowledgmentTracker(client, store, config),
        config=config,
    )


def get_sync_orchestrator() -> SyncOrchestrator:
    """Get global orchestrator instance (singleton)."""
    global _orchestrator_instance
    if _orchestrator_instance is None:
        with _orchestrator_lock:
            if _orchestrator_instance is None:
                _orchestrator_instance = build_sync_orchestrator()
    return _orchestrator_instance


def reset_sync_orchestrator() -> None:
    global _orchestrator_instance
    with _orchestrator_lock:
        _orchestrator_instance = None
