"""Downgrade guard - decides whether a true -> false write may proceed."""


def should_block_downgrade(existing_is_premium: bool, allow_downgrade: bool) -> bool:
    """Return True when a proposed downgrade must be refused.

    A downgrade is blocked only when the user currently has premium and the
    caller has not explicitly asked to clear it.

    Args:
        existing_is_premium: Premium flag currently stored for the user
        allow_downgrade: Caller's explicit intent to clear premium

    Returns:
        True if the write must not lower the flag
    """
    return existing_is_premium is True and allow_downgrade is False
