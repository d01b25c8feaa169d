"""
Notification Dispatcher Adapter.

The engine hands every committed transition to a ``Dispatcher`` as an
``EscalationEvent``.  Delivery (email, chat, push) and message content
belong to the dispatcher; this module only defines the contract and the
adapter the scheduler calls.

**Failure semantics:**  ``NotificationAdapter.deliver()`` never raises.
A dispatcher exception or a falsy result becomes a failed
``DispatchResult``, is logged and audited, and leaves the committed
escalation state untouched.  Failed notifications are not retried by this
engine.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol, Union

from pydantic import BaseModel, Field

from hsseguard.audit import AuditEventType, AuditLog
from hsseguard.errors import DispatchError
from hsseguard.models import EntityKind, EscalationEvent, EscalationStage, Role

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    def send(self, event: EscalationEvent) -> Union[bool, "DispatchResult"]:
        ...


class DispatchResult:
    """Outcome of handing one event to the dispatcher."""

    def __init__(self, event: EscalationEvent, delivered: bool, message: str = "") -> None:
        self.event = event
        self.delivered = delivered
        self.message = message

    def __repr__(self) -> str:
        return (
            f"DispatchResult(entity='{self.event.entity_id}', "
            f"stage={self.event.stage.value}, delivered={self.delivered})"
        )


# ---------------------------------------------------------------------------
# Notification requests
# ---------------------------------------------------------------------------

class NotificationRequest(BaseModel):
    """Who should hear about an event, and the subject line to use."""

    event: EscalationEvent
    audience: list[Role] = Field(default_factory=list)
    subject: str = ""


_STAGE_TEXT = {
    EscalationStage.WARNING: "SLA Warning",
    EscalationStage.ESCALATION_1: "SLA Escalation",
    EscalationStage.ESCALATION_2: "Critical SLA Escalation",
}


def audience_for(event: EscalationEvent) -> list[Role]:
    """Roles to notify for an event.

    Screening stages go to HSSE managers.  A corrective action warning
    goes to the assignee; its escalations go to the HSSE oversight roles.
    """
    if event.kind == EntityKind.INCIDENT_SCREENING:
        return [Role.HSSE_MANAGER]
    if event.stage == EscalationStage.WARNING:
        return [Role.ASSIGNEE]
    return [Role.HSSE_MANAGER, Role.HSSE_OFFICER, Role.ADMIN]


def build_request(event: EscalationEvent) -> NotificationRequest:
    what = "Screening" if event.kind == EntityKind.INCIDENT_SCREENING else "Action"
    label = event.reference_label or event.entity_id
    return NotificationRequest(
        event=event,
        audience=audience_for(event),
        subject=f"{what} {_STAGE_TEXT[event.stage]}: {label}",
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class NotificationAdapter:
    """Calls the dispatcher and turns every outcome into a ``DispatchResult``."""

    def __init__(self, dispatcher: Dispatcher, audit_log: Optional[AuditLog] = None) -> None:
        self._dispatcher = dispatcher
        self._audit_log = audit_log

    def deliver(self, event: EscalationEvent) -> DispatchResult:
        try:
            outcome = self._dispatcher.send(event)
        except Exception as exc:
            result = DispatchResult(event, delivered=False, message=f"{type(exc).__name__}: {exc}")
        else:
            if isinstance(outcome, DispatchResult):
                result = outcome
            elif outcome:
                result = DispatchResult(event, delivered=True)
            else:
                result = DispatchResult(event, delivered=False, message="dispatcher reported failure")

        if result.delivered:
            logger.debug("Delivered %s for %s", event.stage.value, event.entity_id)
        else:
            logger.error(
                "Notification for %s (%s, level %d) not delivered: %s",
                event.entity_id, event.stage.value, event.new_level, result.message,
            )
        self._audit(result)
        return result

    def _audit(self, result: DispatchResult) -> None:
        if self._audit_log is None:
            return
        event = result.event
        self._audit_log.record(
            tenant_id=event.tenant_id,
            event_type=(
                AuditEventType.DISPATCH_SENT if result.delivered
                else AuditEventType.DISPATCH_FAILED
            ),
            target_entity=event.entity_id,
            metadata={
                "stage": event.stage.value,
                "new_level": event.new_level,
                "message": result.message,
            },
            actor="DISPATCHER",
        )


# ---------------------------------------------------------------------------
# Dispatchers
# ---------------------------------------------------------------------------

class LoggingDispatcher:
    """Stub dispatcher: logs the request it would send.

    Production deployments replace this with an email/chat integration.
    """

    def send(self, event: EscalationEvent) -> DispatchResult:
        request = build_request(event)
        audience = ", ".join(role.value for role in request.audience)
        logger.info(
            "[STUB] %s -> %s (%.1fh elapsed)", request.subject, audience, event.hours_elapsed
        )
        return DispatchResult(event, delivered=True, message=f"[STUB] notified {audience}")


class RecordingDispatcher:
    """Collects events in memory.  ``fail=True`` makes every send raise."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.events: list[EscalationEvent] = []
        self._lock = threading.Lock()

    def send(self, event: EscalationEvent) -> bool:
        if self.fail:
            raise DispatchError(f"delivery unavailable for {event.entity_id}")
        with self._lock:
            self.events.append(event)
        return True

    def events_for(self, entity_id: str) -> list[EscalationEvent]:
        with self._lock:
            return [e for e in self.events if e.entity_id == entity_id]
