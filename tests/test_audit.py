"""
Tests for hsseguard.audit -- Append-Only, Tamper-Evident Audit Log.

Covers: append + chain verification, tamper detection, query filtering,
export format, personal data redaction, concurrent appends, and tenant
isolation.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

from hsseguard.audit import (
    SYSTEM_TENANT,
    AuditEntry,
    AuditEventType,
    AuditLog,
    redact_personal_data,
)


def _make_entry(
    tenant_id: str = "acme",
    actor: str = "SCHEDULER",
    event_type: AuditEventType = AuditEventType.ESCALATED,
    target_entity: str = "inc-1",
    metadata: dict | None = None,
) -> AuditEntry:
    return AuditEntry(
        tenant_id=tenant_id,
        actor=actor,
        event_type=event_type,
        target_entity=target_entity,
        metadata=metadata or {},
    )


# ---------------------------------------------------------------------------
# 1. Append + chain verification
# ---------------------------------------------------------------------------

class TestAppendAndChainVerification:
    def test_append_single_entry(self):
        log = AuditLog()
        appended = log.append(_make_entry())
        assert appended.previous_hash == ""
        assert len(log) == 1

    def test_append_multiple_entries_builds_chain(self):
        log = AuditLog()
        e1 = log.append(_make_entry(target_entity="inc-1"))
        e2 = log.append(_make_entry(target_entity="inc-2"))
        e3 = log.append(_make_entry(target_entity="inc-3"))

        assert e1.previous_hash == ""
        assert e2.previous_hash == e1.compute_hash()
        assert e3.previous_hash == e2.compute_hash()

    def test_record_shortcut(self):
        log = AuditLog()
        entry = log.record("acme", AuditEventType.WARNING_SENT, target_entity="inc-9")
        assert entry.actor == "SCHEDULER"
        assert entry.metadata == {}
        assert log.verify_chain() == (True, None)

    def test_empty_log_is_valid(self):
        log = AuditLog()
        assert log.verify_chain() == (True, None)
        assert len(log) == 0


# ---------------------------------------------------------------------------
# 2. Tamper detection
# ---------------------------------------------------------------------------

class TestTamperDetection:
    def test_modified_metadata_breaks_chain(self):
        log = AuditLog()
        for i in range(3):
            log.append(_make_entry(metadata={"new_level": i}))

        log._entries[1].metadata = {"new_level": 0}

        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at in (1, 2)

    def test_modified_first_entry_detected(self):
        log = AuditLog()
        log.append(_make_entry())
        log.append(_make_entry())

        log._entries[0].actor = "TAMPERED"

        valid, _ = log.verify_chain()
        assert valid is False

    def test_export_reports_broken_chain(self):
        log = AuditLog()
        log.append(_make_entry())
        log.append(_make_entry())
        log._entries[0].target_entity = "inc-other"

        export = log.export_for_review("acme")
        assert export["export_metadata"]["chain_integrity"].startswith("BROKEN_AT_INDEX_")


# ---------------------------------------------------------------------------
# 3. Query filtering
# ---------------------------------------------------------------------------

class TestQueryFiltering:
    def test_query_by_event_type(self):
        log = AuditLog()
        log.append(_make_entry(event_type=AuditEventType.WARNING_SENT))
        log.append(_make_entry(event_type=AuditEventType.ESCALATED))
        log.append(_make_entry(event_type=AuditEventType.WARNING_SENT))

        assert len(log.query("acme", event_type=AuditEventType.ESCALATED)) == 1

    def test_query_by_target_entity(self):
        log = AuditLog()
        log.append(_make_entry(target_entity="inc-1"))
        log.append(_make_entry(target_entity="inc-2"))
        assert [e.target_entity for e in log.query("acme", target_entity="inc-2")] == ["inc-2"]

    def test_query_by_time_range(self):
        log = AuditLog()
        now = datetime.now(timezone.utc)
        for hours_ago in (2, 1, 0):
            entry = _make_entry()
            entry.timestamp = now - timedelta(hours=hours_ago)
            log.append(entry)

        results = log.query(
            "acme",
            time_start=now - timedelta(hours=1, minutes=30),
            time_end=now - timedelta(minutes=30),
        )
        assert len(results) == 1

    def test_query_returns_copies(self):
        log = AuditLog()
        log.append(_make_entry(metadata={"new_level": 1}))
        log.query("acme")[0].metadata["new_level"] = 2
        assert log.verify_chain() == (True, None)


# ---------------------------------------------------------------------------
# 4. Tenant isolation
# ---------------------------------------------------------------------------

class TestTenantIsolation:
    def test_tenant_entries_not_visible_to_other_tenant(self):
        log = AuditLog()
        log.append(_make_entry(tenant_id="acme"))
        log.append(_make_entry(tenant_id="beta"))
        log.append(_make_entry(tenant_id="acme"))

        assert len(log.query("acme")) == 2
        assert [e.tenant_id for e in log.query("beta")] == ["beta"]

    def test_sweep_entries_kept_under_system_tenant(self):
        log = AuditLog()
        log.record(SYSTEM_TENANT, AuditEventType.SWEEP_COMPLETED)
        assert log.query("acme") == []
        assert len(log.query(SYSTEM_TENANT)) == 1

    def test_export_scoped_by_tenant(self):
        log = AuditLog()
        log.append(_make_entry(tenant_id="acme"))
        log.append(_make_entry(tenant_id="beta"))

        export = log.export_for_review("acme")
        assert export["export_metadata"]["entry_count"] == 1
        assert all(e["tenant_id"] == "acme" for e in export["entries"])


# ---------------------------------------------------------------------------
# 5. Personal data redaction
# ---------------------------------------------------------------------------

class TestRedaction:
    def test_redact_known_keys(self):
        redacted = redact_personal_data({
            "assignee_name": "Dana Smith",
            "recipients": ["a@example.com"],
            "stage": "escalation_1",
        })
        assert redacted["assignee_name"] == "[REDACTED]"
        assert redacted["recipients"] == "[REDACTED]"
        assert redacted["stage"] == "escalation_1"

    def test_redact_patterns_in_values(self):
        redacted = redact_personal_data(
            {"message": "bounced for ops@example.com, call 555-123-4567"}
        )
        assert "ops@example.com" not in redacted["message"]
        assert "[REDACTED-EMAIL]" in redacted["message"]
        assert "[REDACTED-PHONE]" in redacted["message"]

    def test_redact_nested_metadata(self):
        redacted = redact_personal_data({"outer": {"email": "x@y.io", "new_level": 2}})
        assert redacted["outer"]["email"] == "[REDACTED]"
        assert redacted["outer"]["new_level"] == 2

    def test_export_applies_redaction(self):
        log = AuditLog()
        log.append(_make_entry(metadata={"recipient": "Dana Smith", "new_level": 1}))
        entry = log.export_for_review("acme")["entries"][0]
        assert entry["metadata"]["recipient"] == "[REDACTED]"
        assert entry["metadata"]["new_level"] == 1


# ---------------------------------------------------------------------------
# 6. Export format
# ---------------------------------------------------------------------------

class TestExportFormat:
    def test_export_contains_required_fields(self):
        log = AuditLog()
        log.append(_make_entry())
        meta = log.export_for_review("acme")["export_metadata"]
        assert set(meta) >= {"tenant_id", "exported_at", "entry_count", "chain_integrity"}
        assert meta["chain_integrity"] == "VALID"

    def test_event_type_serialized_as_string(self):
        log = AuditLog()
        log.append(_make_entry(event_type=AuditEventType.THRESHOLD_FALLBACK))
        entry = log.export_for_review("acme")["entries"][0]
        assert entry["event_type"] == "THRESHOLD_FALLBACK"


# ---------------------------------------------------------------------------
# 7. Concurrent appends
# ---------------------------------------------------------------------------

class TestConcurrentAppends:
    def test_parallel_appends_keep_chain_valid(self):
        log = AuditLog()

        def worker(tenant_id):
            for i in range(25):
                log.record(tenant_id, AuditEventType.ESCALATED, target_entity=f"{tenant_id}-{i}")

        threads = [threading.Thread(target=worker, args=(t,)) for t in ("a", "b", "c", "d")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(log) == 100
        assert log.verify_chain() == (True, None)

    def test_entries_keep_insertion_order(self):
        log = AuditLog()
        ids = [log.append(_make_entry(target_entity=f"inc-{i}")).entry_id for i in range(10)]
        assert [e.entry_id for e in log.query("acme")] == ids
