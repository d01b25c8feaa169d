"""Exception hierarchy for HSSE Guard."""

from __future__ import annotations


class HSSEGuardError(Exception):
    """Base class for all engine errors."""
    pass


class MalformedRecordError(HSSEGuardError, ValueError):
    """Raised when a storage row cannot be turned into a validated value type."""
    pass


class InvalidThresholdOrderError(HSSEGuardError, ValueError):
    """Raised when SLA offsets violate ``0 < warning < escalation1 < escalation2``."""
    pass


class StoreError(HSSEGuardError):
    """Raised by a store when a read or write for one entity fails."""
    pass


class DispatchError(HSSEGuardError):
    """Raised by a dispatcher when a notification cannot be delivered."""
    pass
