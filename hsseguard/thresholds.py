"""
SLA Threshold Resolver.

Resolves the timing configuration for one ``(tenant, bucket)`` pair:

1. Look up the tenant's override.
2. If present and valid, use it.
3. If absent, use the built-in default for the bucket.
4. If present but invalid (malformed, or offsets out of order), use the
   built-in default and flag the fallback.  The violation is logged once
   for the resolution and recorded in the audit trail.

Severity buckets (incident screening) and priority buckets (corrective
actions) are two independent tables resolved by the same algorithm.
"""

from __future__ import annotations

import enum
import logging
from typing import Optional

from hsseguard.audit import AuditEventType, AuditLog
from hsseguard.config import SLAThresholdConfig, default_thresholds
from hsseguard.errors import InvalidThresholdOrderError, MalformedRecordError
from hsseguard.models import Bucket
from hsseguard.store import ThresholdOverrideStore

logger = logging.getLogger(__name__)


class ThresholdSource(str, enum.Enum):
    TENANT = "tenant"
    DEFAULT = "default"


class ResolvedThresholds:
    """Thresholds for one bucket plus where they came from."""

    def __init__(
        self,
        config: SLAThresholdConfig,
        source: ThresholdSource,
        fallback_reason: Optional[str] = None,
    ) -> None:
        self.config = config
        self.source = source
        self.fallback_reason = fallback_reason

    @property
    def is_fallback(self) -> bool:
        """True when a tenant override existed but was rejected."""
        return self.fallback_reason is not None

    def __repr__(self) -> str:
        return (
            f"ResolvedThresholds(source={self.source.value}, "
            f"fallback={self.is_fallback}, {self.config.describe()})"
        )


class ThresholdResolver:
    """Resolves per-tenant thresholds with fallback to built-in defaults."""

    def __init__(
        self,
        override_store: ThresholdOverrideStore,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self._store = override_store
        self._audit_log = audit_log

    def resolve(self, tenant_id: str, bucket: Bucket) -> ResolvedThresholds:
        """Resolve thresholds for ``tenant_id`` and ``bucket``.

        Never raises for bad tenant data; the worst case is the default.
        """
        default = default_thresholds(bucket)

        try:
            raw = self._store.get_threshold_override(tenant_id, bucket)
        except Exception as exc:
            logger.error(
                "Could not read threshold override for tenant=%s bucket=%s: %s; using default",
                tenant_id, bucket, exc,
            )
            return ResolvedThresholds(default, ThresholdSource.DEFAULT)

        if raw is None:
            return ResolvedThresholds(default, ThresholdSource.DEFAULT)

        try:
            config = SLAThresholdConfig.from_record(raw)
        except (InvalidThresholdOrderError, MalformedRecordError) as exc:
            reason = str(exc)
            logger.warning(
                "Invalid SLA thresholds for tenant=%s bucket=%s (%s); "
                "falling back to default (%s)",
                tenant_id, bucket, reason, default.describe(),
            )
            if self._audit_log is not None:
                self._audit_log.record(
                    tenant_id=tenant_id,
                    event_type=AuditEventType.THRESHOLD_FALLBACK,
                    target_entity=str(bucket),
                    metadata={"reason": reason, "default": default.describe()},
                    actor="THRESHOLD_RESOLVER",
                )
            return ResolvedThresholds(default, ThresholdSource.DEFAULT, fallback_reason=reason)

        return ResolvedThresholds(config, ThresholdSource.TENANT)
