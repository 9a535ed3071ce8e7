"""Audit logging for entitlement transitions.

Tracks state changes with before/after values so every flip of the premium
flag can be traced back to the invocation that caused it.
"""

from typing import Any, Optional

from entitlement_sync.logging_config import get_logger

logger = get_logger(__name__)


def log_sync_state_change(
    user_id: str,
    old_state: Any,
    new_state: Any,
    **extra_context: Any,
) -> None:
    """Log an orchestrator state-machine transition (DEBUG)."""
    logger.debug(
        "sync_state_changed",
        user_id=user_id,
        old_state=str(old_state),
        new_state=str(new_state),
        **extra_context,
    )


def log_entitlement_change(
    user_id: str,
    old_is_premium: Optional[bool],
    new_is_premium: bool,
    source: str,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log a write to the premium flag.

    Args:
        user_id: User identifier
        old_is_premium: Previous flag (None if the record did not exist)
        new_is_premium: Flag after the write
        source: Provenance recorded with the write
        reason: Verification status or other cause
        **extra_context: Additional context (product_id, token, etc.)
    """
    event = "entitlement_changed" if old_is_premium != new_is_premium else "entitlement_refreshed"
    logger.info(
        event,
        user_id=user_id,
        old_is_premium=old_is_premium,
        new_is_premium=new_is_premium,
        source=source,
        reason=reason,
        **extra_context,
    )


def log_downgrade_blocked(
    user_id: str,
    proposed_status: Optional[str],
    token_less: bool,
    **extra_context: Any,
) -> None:
    """Log a refused true -> false write."""
    logger.warning(
        "downgrade_blocked",
        user_id=user_id,
        proposed_status=proposed_status,
        token_less=token_less,
        **extra_context,
    )


def log_acknowledgment_recorded(
    user_id: str,
    token: str,
    product_id: str,
    remote_call: bool,
    **extra_context: Any,
) -> None:
    """Log a token appended to the acknowledgment ledger."""
    logger.info(
        "acknowledgment_recorded",
        user_id=user_id,
        token=token,
        product_id=product_id,
        remote_call=remote_call,
        **extra_context,
    )
