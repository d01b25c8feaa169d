"""
Append-Only, Hash-Chained Audit Trail.

Every escalation decision the engine takes is recorded here: warnings and
escalations committed by the sweep, threshold fallbacks caused by invalid
tenant configuration, notification delivery outcomes, per-entity failures
and the summary of each sweep.  Entries are linked via SHA-256 so that any
later modification is detectable by ``verify_chain()``.

Queries and exports are always scoped by ``tenant_id``.

The log is safe to append to from the sweep's worker threads.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


SYSTEM_TENANT = "__system__"
"""Tenant id used for entries that are not owned by any tenant (sweep runs)."""


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Auditable engine actions."""

    # Committed transitions
    WARNING_SENT = "WARNING_SENT"
    ESCALATED = "ESCALATED"

    # Configuration
    THRESHOLD_FALLBACK = "THRESHOLD_FALLBACK"

    # Notification delivery
    DISPATCH_SENT = "DISPATCH_SENT"
    DISPATCH_FAILED = "DISPATCH_FAILED"

    # Sweep
    ENTITY_ERROR = "ENTITY_ERROR"
    SWEEP_COMPLETED = "SWEEP_COMPLETED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit record with a hash link to its predecessor."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    tenant_id: str = Field(..., description="Owning tenant; scopes queries and exports.")
    actor: str = Field(default="SCHEDULER", description="Component that took the action.")
    event_type: AuditEventType
    target_entity: str = Field(default="", description="Entity id, bucket key or sweep id.")
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first entry.",
    )

    def canonical_bytes(self) -> bytes:
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "tenant_id": self.tenant_id,
            "actor": self.actor,
            "event_type": self.event_type.value,
            "target_entity": self.target_entity,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Export redaction
# ---------------------------------------------------------------------------

_PERSONAL_PATTERNS: dict[str, re.Pattern] = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"\+?\b\d{3}[-. ]?\d{3}[-. ]?\d{4}\b"),
}

_PERSONAL_KEYS = {"full_name", "email", "phone", "assignee_name", "recipient", "recipients"}


def redact_personal_data(metadata: dict[str, Any]) -> dict[str, Any]:
    """Replace recipient names, emails and phone numbers with markers.

    Applied to every entry by ``AuditLog.export_for_review``.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _PERSONAL_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            for name, pattern in _PERSONAL_PATTERNS.items():
                value = pattern.sub(f"[REDACTED-{name.upper()}]", value)
            redacted[key] = value
        elif isinstance(value, dict):
            redacted[key] = redact_personal_data(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There is no update or delete.  ``verify_chain()`` walks the log and
    reports the first broken link.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Link ``entry`` to the current tail and append it."""
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else ""
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        tenant_id: str,
        event_type: AuditEventType,
        target_entity: str = "",
        metadata: Optional[dict[str, Any]] = None,
        actor: str = "SCHEDULER",
    ) -> AuditEntry:
        """Build and append an entry in one call."""
        return self.append(AuditEntry(
            tenant_id=tenant_id,
            actor=actor,
            event_type=event_type,
            target_entity=target_entity,
            metadata=metadata or {},
        ))

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Return ``(valid, broken_at)`` for the whole chain."""
        with self._lock:
            entries = list(self._entries)
            hashes = list(self._hashes)

        for i, entry in enumerate(entries):
            expected_prev = "" if i == 0 else entries[i - 1].compute_hash()
            if entry.previous_hash != expected_prev:
                return (False, i)
            if hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        tenant_id: str,
        event_type: Optional[AuditEventType] = None,
        target_entity: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        """Tenant-scoped query; returns deep copies."""
        with self._lock:
            entries = list(self._entries)

        results = []
        for entry in entries:
            if entry.tenant_id != tenant_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if target_entity is not None and entry.target_entity != target_entity:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        tenant_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """JSON-serializable, redacted export of one tenant's entries."""
        entries = self.query(tenant_id, time_start=time_start, time_end=time_end)

        exported = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_personal_data(entry.metadata)
            exported.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()
        return {
            "export_metadata": {
                "tenant_id": tenant_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(exported),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": exported,
        }

    def __len__(self) -> int:
        return len(self._entries)
