"""
Escalation Scheduler -- the periodic SLA sweep.

Each sweep visits every tenant, loads the entities still pending in their
owning workflow, and moves each one through the fixed three-stage model:

    {level 0, no warning} -> {level 0, warning sent} -> {level 1} -> {level 2}

**Highest threshold first:**  thresholds are evaluated from escalation 2
down to the warning.  A sweep that runs late enough to span several
thresholds jumps straight to the final level and emits exactly one event;
intermediate stages are never replayed.  Sweep cadence is therefore not
a correctness concern -- a missed run neither under- nor over-notifies.

**Exactly once per threshold:**  a planned transition is committed with a
compare-and-set on the state read at the start of the entity's step.  If
another sweep (a slow run overlapping the next scheduled one) already
advanced the entity, the update is rejected, nothing is emitted, and the
conflict is counted, not logged as an error.

**Failure isolation:**  a store failure for one entity is logged and the
sweep moves on.  A dispatcher failure never rolls back a committed level.

**Shutdown:**  ``request_shutdown()`` lets the current entity finish and
skips the rest; the next scheduled run picks them up.

The scheduler never moves an entity out of scope; that happens when the
owning workflow changes its status.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from hsseguard.audit import SYSTEM_TENANT, AuditEventType, AuditLog
from hsseguard.config import DEFAULT_SETTINGS, EngineSettings, SLAThresholdConfig
from hsseguard.models import (
    Bucket,
    Escalatable,
    EscalationEvent,
    EscalationStage,
    EscalationState,
    SweepSummary,
)
from hsseguard.notifications import NotificationAdapter
from hsseguard.store import EntityStore
from hsseguard.thresholds import ResolvedThresholds, ThresholdResolver

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Transition planning (pure)
# ---------------------------------------------------------------------------

class PlannedTransition:
    """The single transition one sweep will attempt for an entity."""

    def __init__(
        self,
        stage: EscalationStage,
        new_state: EscalationState,
        elapsed: timedelta,
    ) -> None:
        self.stage = stage
        self.new_state = new_state
        self.elapsed = elapsed

    @property
    def new_level(self) -> int:
        return self.new_state.escalation_level

    def to_event(self, entity: Escalatable, triggered_at: datetime) -> EscalationEvent:
        return EscalationEvent(
            entity_id=entity.entity_id,
            tenant_id=entity.tenant_id,
            kind=entity.kind,
            stage=self.stage,
            new_level=self.new_level,
            elapsed=self.elapsed,
            triggered_at=triggered_at,
            reference_label=entity.reference_label,
            title=entity.title,
            severity=entity.severity,
            priority=entity.priority,
            assignee_id=entity.assignee_id,
        )

    def __repr__(self) -> str:
        return f"PlannedTransition(stage={self.stage.value}, new_level={self.new_level})"


def plan_transition(
    entity: Escalatable,
    thresholds: SLAThresholdConfig,
    now: datetime,
) -> Optional[PlannedTransition]:
    """Decide which transition, if any, is due for ``entity`` at ``now``.

    Evaluated highest threshold first.  The warning is only sent while the
    entity is still at level 0; an entity that was escalated past it (a
    late first sweep) never gets a warning afterwards.

    Returns:
        The transition to attempt, or ``None`` if nothing is due.
    """
    elapsed = now - entity.reference_at
    level = entity.escalation_level

    if elapsed >= thresholds.escalation2_offset and level < 2:
        return PlannedTransition(
            EscalationStage.ESCALATION_2,
            EscalationState(
                escalation_level=2,
                warning_sent_at=entity.warning_sent_at,
                escalated_at=now,
            ),
            elapsed,
        )

    if elapsed >= thresholds.escalation1_offset and level < 1:
        return PlannedTransition(
            EscalationStage.ESCALATION_1,
            EscalationState(
                escalation_level=1,
                warning_sent_at=entity.warning_sent_at,
                escalated_at=now,
            ),
            elapsed,
        )

    if elapsed >= thresholds.warning_offset and level == 0 and entity.warning_sent_at is None:
        return PlannedTransition(
            EscalationStage.WARNING,
            EscalationState(
                escalation_level=0,
                warning_sent_at=now,
                escalated_at=entity.escalated_at,
            ),
            elapsed,
        )

    return None


# ---------------------------------------------------------------------------
# Per-sweep threshold memo
# ---------------------------------------------------------------------------

class _ThresholdMemo:
    """Resolves each ``(tenant, bucket)`` once per sweep.

    Keeps the fallback warning to one log line per resolution rather than
    one per entity.  The override store is read under a per-key lock, so a
    slow lookup for one tenant does not hold up the other workers.
    """

    def __init__(self, resolver: ThresholdResolver) -> None:
        self._resolver = resolver
        self._resolved: dict[tuple[str, Bucket], ResolvedThresholds] = {}
        self._key_locks: dict[tuple[str, Bucket], threading.Lock] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str, bucket: Bucket) -> ResolvedThresholds:
        key = (tenant_id, bucket)
        with self._lock:
            resolved = self._resolved.get(key)
            if resolved is not None:
                return resolved
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            with self._lock:
                resolved = self._resolved.get(key)
            if resolved is None:
                resolved = self._resolver.resolve(tenant_id, bucket)
                with self._lock:
                    self._resolved[key] = resolved
            return resolved


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class EscalationScheduler:
    """Runs the SLA sweep over every tenant's pending entities.

    Stateless between invocations: all durable state lives in the entity
    store, so the sweep can be restarted or run concurrently at any time.
    """

    def __init__(
        self,
        entity_store: EntityStore,
        resolver: ThresholdResolver,
        notifier: NotificationAdapter,
        settings: EngineSettings = DEFAULT_SETTINGS,
        audit_log: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = entity_store
        self._resolver = resolver
        self._notifier = notifier
        self._settings = settings
        self._audit_log = audit_log
        self._clock = clock
        self._shutdown = threading.Event()

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    # -- lifecycle --

    def request_shutdown(self) -> None:
        """Finish the current entity and skip the remaining ones.

        Applies to the sweep in progress; the next ``run_sweep`` or
        ``sweep_tenant`` call starts with the flag cleared.
        """
        self._shutdown.set()

    def reset_shutdown(self) -> None:
        self._shutdown.clear()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    # -- sweep --

    def run_sweep(self, now: Optional[datetime] = None) -> SweepSummary:
        """Sweep every tenant once.

        Args:
            now: Logical sweep time.  Defaults to the clock; pass a value to
                replay a sweep at a given instant.

        Returns:
            Aggregate ``SweepSummary`` for the run.  ``started_at`` is the
            logical time; ``finished_at`` adds the measured sweep duration.
        """
        self.reset_shutdown()
        wall_start = self._clock()
        now = self._normalize(now, wall_start)
        summary = SweepSummary(started_at=now)
        logger.info("Starting SLA escalation sweep at %s", now.isoformat())

        try:
            tenants = self._store.list_tenants()
        except Exception:
            logger.exception("Could not list tenants; sweep aborted")
            summary.errors += 1
            return self._finish(summary, wall_start)

        memo = _ThresholdMemo(self._resolver)
        workers = min(self._settings.max_workers, len(tenants))

        if workers <= 1:
            for tenant_id in tenants:
                summary.absorb(self._sweep_tenant(tenant_id, now, memo))
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(self._sweep_tenant, tenant_id, now, memo): tenant_id
                    for tenant_id in tenants
                }
                for future in as_completed(futures):
                    tenant_id = futures[future]
                    try:
                        summary.absorb(future.result())
                    except Exception:
                        logger.exception("Sweep failed for tenant %s", tenant_id)
                        summary.errors += 1

        return self._finish(summary, wall_start)

    def sweep_tenant(self, tenant_id: str, now: Optional[datetime] = None) -> SweepSummary:
        """Sweep a single tenant."""
        self.reset_shutdown()
        wall_start = self._clock()
        now = self._normalize(now, wall_start)
        summary = SweepSummary(started_at=now)
        summary.absorb(self._sweep_tenant(tenant_id, now, _ThresholdMemo(self._resolver)))
        summary.finished_at = self._finished_at(summary, wall_start)
        return summary

    # -- internals --

    @staticmethod
    def _normalize(now: Optional[datetime], default: datetime) -> datetime:
        now = now or default
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    def _finished_at(self, summary: SweepSummary, wall_start: datetime) -> datetime:
        return summary.started_at + (self._clock() - wall_start)

    def _finish(self, summary: SweepSummary, wall_start: datetime) -> SweepSummary:
        summary.finished_at = self._finished_at(summary, wall_start)
        logger.info(
            "SLA sweep completed: %d processed, %d warnings, %d escalations, "
            "%d conflicts, %d errors, %d dispatch failures, %d skipped",
            summary.entities_processed, summary.warnings_sent, summary.escalations_sent,
            summary.conflicts, summary.errors, summary.dispatch_failures, summary.skipped,
        )
        if self._audit_log is not None:
            self._audit_log.record(
                tenant_id=SYSTEM_TENANT,
                event_type=AuditEventType.SWEEP_COMPLETED,
                metadata=summary.model_dump(mode="json"),
            )
        return summary

    def _sweep_tenant(self, tenant_id: str, now: datetime, memo: _ThresholdMemo) -> SweepSummary:
        summary = SweepSummary()

        try:
            entities = self._store.list_pending(tenant_id)
        except Exception:
            logger.exception("Could not load pending entities for tenant %s", tenant_id)
            summary.errors += 1
            return summary

        for index, entity in enumerate(entities):
            if self._shutdown.is_set():
                remaining = len(entities) - index
                summary.skipped += remaining
                logger.info(
                    "Shutdown requested; skipping %d remaining entities for tenant %s",
                    remaining, tenant_id,
                )
                break
            try:
                self._process_entity(entity, now, memo, summary)
            except Exception as exc:
                summary.errors += 1
                logger.exception(
                    "Escalation check failed for %s (tenant %s)", entity.entity_id, tenant_id
                )
                if self._audit_log is not None:
                    self._audit_log.record(
                        tenant_id=tenant_id,
                        event_type=AuditEventType.ENTITY_ERROR,
                        target_entity=entity.entity_id,
                        metadata={"error": f"{type(exc).__name__}: {exc}"},
                    )

        return summary

    def _process_entity(
        self,
        entity: Escalatable,
        now: datetime,
        memo: _ThresholdMemo,
        summary: SweepSummary,
    ) -> None:
        if not self._settings.is_pending(entity):
            summary.skipped += 1
            return
        summary.entities_processed += 1

        resolved = memo.get(entity.tenant_id, self._settings.bucket_for(entity))
        plan = plan_transition(entity, resolved.config, now)
        if plan is None:
            return

        committed = self._store.conditional_update(
            entity.entity_id,
            expected_level=entity.escalation_level,
            new_state=plan.new_state,
            expected_warning_sent=entity.warning_sent_at is not None,
        )
        if not committed:
            summary.conflicts += 1
            logger.debug(
                "%s already advanced by another sweep; skipping %s",
                entity.entity_id, plan.stage.value,
            )
            return

        event = plan.to_event(entity, now)
        if plan.stage == EscalationStage.WARNING:
            summary.warnings_sent += 1
        else:
            summary.escalations_sent += 1
        logger.info(
            "%s for %s (tenant %s): %.1fh elapsed, level %d -> %d",
            plan.stage.value, entity.entity_id, entity.tenant_id,
            event.hours_elapsed, entity.escalation_level, plan.new_level,
        )
        if self._audit_log is not None:
            self._audit_log.record(
                tenant_id=entity.tenant_id,
                event_type=(
                    AuditEventType.WARNING_SENT if plan.stage == EscalationStage.WARNING
                    else AuditEventType.ESCALATED
                ),
                target_entity=entity.entity_id,
                metadata={
                    "stage": plan.stage.value,
                    "previous_level": entity.escalation_level,
                    "new_level": plan.new_level,
                    "elapsed_hours": round(event.hours_elapsed, 2),
                    "threshold_source": resolved.source.value,
                },
            )

        result = self._notifier.deliver(event)
        if not result.delivered:
            summary.dispatch_failures += 1
