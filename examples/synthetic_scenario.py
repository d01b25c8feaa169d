"""
Synthetic Scenario: Incident Screening and Corrective Action SLA Walkthrough
==========================================================================

This script demonstrates the HSSE Guard engine using entirely synthetic
data for two fictional tenants.

Steps demonstrated:
  1. Severity policy table and the mandatory minimum-severity classifier
  2. Load engine settings and tenant SLA overrides from YAML
  3. Register pending incidents and corrective actions from storage rows
  4. Run the SLA sweep at several points in time
  5. Re-run a sweep to show that nothing is sent twice
  6. Export the audit log for one tenant

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from hsseguard.audit import AuditLog
from hsseguard.config import (
    EngineSettings,
    load_settings_from_yaml,
    load_threshold_overrides_from_yaml,
)
from hsseguard.models import EntityKind, SeverityLevel
from hsseguard.notifications import LoggingDispatcher, NotificationAdapter
from hsseguard.scheduler import EscalationScheduler
from hsseguard.severity import (
    policy_for,
    validate_selected_severity,
    workflow_label,
)
from hsseguard.store import InMemoryEntityStore, InMemoryThresholdStore
from hsseguard.thresholds import ThresholdResolver

T0 = datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _rows() -> tuple[list[dict], list[dict]]:
    incidents = [
        {
            "id": "inc-nw-001",
            "reference_id": "NW-2026-0041",
            "title": "(Synthetic) Forklift contact with racking",
            "tenant_id": "northwind",
            "status": "submitted",
            "severity_v2": "level_3",
            "created_at": T0.isoformat(),
        },
        {
            "id": "inc-nw-002",
            "reference_id": "NW-2026-0042",
            "title": "(Synthetic) Dropped load in yard",
            "tenant_id": "northwind",
            "status": "submitted",
            "severity_v2": "level_4",
            "created_at": T0.isoformat(),
        },
        {
            "id": "inc-co-001",
            "reference_id": "CO-2026-0007",
            "title": "(Synthetic) Minor hydrocarbon release",
            "tenant_id": "contoso",
            "status": "submitted",
            "severity_v2": "level_2",
            "created_at": T0.isoformat(),
        },
        {
            # Missing created_at: rejected at the storage boundary.
            "id": "inc-co-002",
            "tenant_id": "contoso",
            "status": "submitted",
        },
    ]
    actions = [
        {
            "id": "act-nw-001",
            "title": "(Synthetic) Replace damaged racking upright",
            "tenant_id": "northwind",
            "status": "in_progress",
            "priority": "high",
            "due_date": T0.isoformat(),
            "assigned_to": "user-synthetic-17",
        },
    ]
    return incidents, actions


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    _banner("HSSE Guard Synthetic Scenario")
    print("All tenants, incidents and people in this demo are synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Severity policy
    # ------------------------------------------------------------------
    _banner("Step 1: Severity Policy and Minimum Severity")

    for level in SeverityLevel:
        policy = policy_for(level)
        print(
            f"  {level.key}: {workflow_label(level).value:<28} "
            f"close_on_spot={policy.allow_close_on_spot} "
            f"blocked_until_verified={policy.blocked_until_verified}"
        )

    check = validate_selected_severity(
        "level_2", injury_classification="Lost Time Injury", emergency_activated=False
    )
    print(f"\nLevel 2 selected for a lost time injury: valid={check.is_valid}")
    print(f"  {check.message}")

    # ------------------------------------------------------------------
    # Step 2: Configuration
    # ------------------------------------------------------------------
    _banner("Step 2: Load Settings and Tenant Overrides")

    sample_yaml = Path(__file__).parent / "tenant_thresholds.yaml"
    if sample_yaml.exists():
        settings = load_settings_from_yaml(sample_yaml)
        overrides = load_threshold_overrides_from_yaml(sample_yaml)
    else:
        settings = EngineSettings()
        overrides = []
    print(f"Settings: {settings.model_dump(mode='json')}")
    for override in overrides:
        print(f"  override {override.tenant_id} / {override.bucket}: {override.values}")

    # ------------------------------------------------------------------
    # Step 3: Register pending work
    # ------------------------------------------------------------------
    _banner("Step 3: Register Pending Incidents and Actions")

    store = InMemoryEntityStore(settings)
    incidents, actions = _rows()
    added = store.add_records(incidents, EntityKind.INCIDENT_SCREENING)
    added += store.add_records(actions, EntityKind.CORRECTIVE_ACTION)
    print(f"Registered {added} entities across tenants {store.list_tenants()}")

    audit_log = AuditLog()
    scheduler = EscalationScheduler(
        store,
        ThresholdResolver(InMemoryThresholdStore(overrides), audit_log),
        NotificationAdapter(LoggingDispatcher(), audit_log),
        settings=settings,
        audit_log=audit_log,
    )

    # ------------------------------------------------------------------
    # Step 4: Sweeps
    # ------------------------------------------------------------------
    _banner("Step 4: SLA Sweeps")

    for hours in (2, 5, 9, 13, 30):
        now = T0 + timedelta(hours=hours)
        summary = scheduler.run_sweep(now=now)
        print(
            f"\n+{hours:>2}h  processed={summary.entities_processed} "
            f"warnings={summary.warnings_sent} escalations={summary.escalations_sent} "
            f"conflicts={summary.conflicts} errors={summary.errors}"
        )
        for entity_id in ("inc-nw-001", "inc-nw-002", "inc-co-001", "act-nw-001"):
            entity = store.get(entity_id)
            print(
                f"       {entity_id}: level={entity.escalation_level} "
                f"warning_sent={entity.state().warning_sent}"
            )

    # ------------------------------------------------------------------
    # Step 5: Idempotent re-run
    # ------------------------------------------------------------------
    _banner("Step 5: Re-run at the Same Instant")

    summary = scheduler.run_sweep(now=T0 + timedelta(hours=30))
    print(
        f"warnings={summary.warnings_sent} escalations={summary.escalations_sent} "
        "(nothing is sent twice)"
    )

    # ------------------------------------------------------------------
    # Step 6: Audit export
    # ------------------------------------------------------------------
    _banner("Step 6: Audit Log Export (northwind)")

    export = audit_log.export_for_review("northwind")
    print(json.dumps(export["export_metadata"], indent=2))
    valid, broken_at = audit_log.verify_chain()
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")

    _banner("Scenario Complete")
    print("This demo exercised:")
    print("  - Severity policy lookups and minimum-severity validation")
    print("  - YAML settings and per-tenant SLA overrides, including a fallback")
    print("  - Warning and escalation sweeps for screenings and corrective actions")
    print("  - Idempotent re-runs")
    print("  - Append-only, tamper-evident audit log with export")


if __name__ == "__main__":
    main()
