"""
Tests for hsseguard.notifications -- dispatcher adapter and requests.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from hsseguard.audit import AuditEventType, AuditLog
from hsseguard.models import EntityKind, EscalationEvent, EscalationStage, Role
from hsseguard.notifications import (
    DispatchResult,
    LoggingDispatcher,
    NotificationAdapter,
    RecordingDispatcher,
    audience_for,
    build_request,
)


def _make_event(
    kind: EntityKind = EntityKind.INCIDENT_SCREENING,
    stage: EscalationStage = EscalationStage.ESCALATION_1,
    **kwargs,
) -> EscalationEvent:
    data = {
        "entity_id": "inc-1",
        "tenant_id": "acme",
        "kind": kind,
        "stage": stage,
        "new_level": 0 if stage == EscalationStage.WARNING else 1,
        "elapsed": timedelta(hours=13),
        "triggered_at": datetime(2026, 1, 5, 21, 0, tzinfo=timezone.utc),
        "reference_label": "INC-2026-0001",
    }
    data.update(kwargs)
    return EscalationEvent(**data)


class _ReturnsFalse:
    def send(self, event):
        return False


class _ReturnsNone:
    def send(self, event):
        return None


class TestAudience:
    def test_screening_goes_to_managers(self):
        for stage in EscalationStage:
            assert audience_for(_make_event(stage=stage)) == [Role.HSSE_MANAGER]

    def test_action_warning_goes_to_assignee(self):
        event = _make_event(EntityKind.CORRECTIVE_ACTION, EscalationStage.WARNING)
        assert audience_for(event) == [Role.ASSIGNEE]

    def test_action_escalation_goes_to_oversight(self):
        event = _make_event(EntityKind.CORRECTIVE_ACTION, EscalationStage.ESCALATION_2, new_level=2)
        assert set(audience_for(event)) == {Role.HSSE_MANAGER, Role.HSSE_OFFICER, Role.ADMIN}


class TestBuildRequest:
    def test_subject_uses_reference_label(self):
        request = build_request(_make_event(stage=EscalationStage.WARNING))
        assert request.subject == "Screening SLA Warning: INC-2026-0001"

    def test_subject_falls_back_to_entity_id(self):
        event = _make_event(
            EntityKind.CORRECTIVE_ACTION, EscalationStage.ESCALATION_2,
            new_level=2, entity_id="act-7", reference_label="",
        )
        assert build_request(event).subject == "Action Critical SLA Escalation: act-7"


class TestNotificationAdapter:
    def test_successful_delivery_audited(self):
        audit_log = AuditLog()
        dispatcher = RecordingDispatcher()
        result = NotificationAdapter(dispatcher, audit_log).deliver(_make_event())

        assert result.delivered is True
        assert dispatcher.events_for("inc-1") == [result.event]
        entries = audit_log.query("acme", event_type=AuditEventType.DISPATCH_SENT)
        assert len(entries) == 1
        assert entries[0].actor == "DISPATCHER"

    def test_exception_becomes_failed_result(self, caplog):
        audit_log = AuditLog()
        adapter = NotificationAdapter(RecordingDispatcher(fail=True), audit_log)

        with caplog.at_level(logging.ERROR, logger="hsseguard.notifications"):
            result = adapter.deliver(_make_event())

        assert result.delivered is False
        assert "DispatchError" in result.message
        assert len(caplog.records) == 1
        assert len(audit_log.query("acme", event_type=AuditEventType.DISPATCH_FAILED)) == 1

    def test_false_return_is_failure(self):
        result = NotificationAdapter(_ReturnsFalse()).deliver(_make_event())
        assert result.delivered is False

    def test_none_return_is_failure(self):
        audit_log = AuditLog()
        result = NotificationAdapter(_ReturnsNone(), audit_log).deliver(_make_event())
        assert result.delivered is False
        assert audit_log.query("acme", event_type=AuditEventType.DISPATCH_SENT) == []
        assert len(audit_log.query("acme", event_type=AuditEventType.DISPATCH_FAILED)) == 1

    def test_dispatch_result_passed_through(self):
        event = _make_event()

        class _Explicit:
            def send(self, e):
                return DispatchResult(e, delivered=False, message="mailbox full")

        result = NotificationAdapter(_Explicit()).deliver(event)
        assert result.delivered is False
        assert result.message == "mailbox full"


class TestLoggingDispatcher:
    def test_logs_stub_message(self, caplog):
        with caplog.at_level(logging.INFO, logger="hsseguard.notifications"):
            result = LoggingDispatcher().send(_make_event(stage=EscalationStage.WARNING))
        assert result.delivered is True
        assert any("[STUB]" in r.getMessage() for r in caplog.records)
        assert "hsse_manager" in result.message

    def test_events_are_immutable(self):
        event = _make_event()
        with pytest.raises(ValidationError):
            event.new_level = 2
