"""
Storage contracts consumed by the engine, with in-memory implementations.

The engine never talks to a database directly.  It needs two read/write
contracts:

* ``EntityStore``: list the tenants and their pending entities, and commit
  a new escalation state with a compare-and-set keyed on the previously
  read state.  The compare-and-set is the engine's only concurrency-control
  point; it is what makes overlapping sweeps safe.
* ``ThresholdOverrideStore``: look up a tenant's raw threshold override for
  a bucket.

The in-memory stores serve tests, the synthetic example and
single-process deployments.  Horizontally scaled deployments must back
``EntityStore`` with a shared database that performs the conditional update
atomically (for example ``UPDATE ... WHERE id = :id AND escalation_level =
:expected``); a per-process lock is not shared between instances.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Iterable, Mapping, Optional, Protocol

from hsseguard.config import DEFAULT_SETTINGS, EngineSettings, ThresholdOverride
from hsseguard.errors import StoreError
from hsseguard.models import Bucket, EntityKind, Escalatable, EscalationState

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

class EntityStore(Protocol):
    def list_tenants(self) -> list[str]:
        ...

    def list_pending(self, tenant_id: str) -> list[Escalatable]:
        ...

    def conditional_update(
        self,
        entity_id: str,
        expected_level: int,
        new_state: EscalationState,
        expected_warning_sent: bool = False,
    ) -> bool:
        """Commit ``new_state`` only if the stored state still matches.

        Returns False (without raising) when another writer got there
        first.  Raises ``StoreError`` on I/O failure.
        """
        ...


class ThresholdOverrideStore(Protocol):
    def get_threshold_override(
        self, tenant_id: str, bucket: Bucket
    ) -> Optional[Mapping[str, Any]]:
        ...


# ---------------------------------------------------------------------------
# In-memory entity store
# ---------------------------------------------------------------------------

class InMemoryEntityStore:
    """Lock-guarded, tenant-partitioned entity store.

    Entities are returned as deep copies so that callers cannot mutate
    stored state except through ``conditional_update`` (scheduler-owned
    fields) and ``set_status`` (owning-workflow field).
    """

    def __init__(self, settings: EngineSettings = DEFAULT_SETTINGS) -> None:
        self._settings = settings
        self._entities: dict[str, Escalatable] = {}
        self._lock = threading.Lock()

    def add(self, entity: Escalatable) -> None:
        """Register an entity that has entered its pending state.

        Raises:
            ValueError: If an entity with the same id already exists.
        """
        with self._lock:
            if entity.entity_id in self._entities:
                raise ValueError(f"Entity '{entity.entity_id}' already registered.")
            self._entities[entity.entity_id] = copy.deepcopy(entity)

    def add_record(self, record: Mapping[str, Any], kind: EntityKind) -> Escalatable:
        """Validate a raw storage row and register it.

        Raises:
            MalformedRecordError: If the row is malformed.
        """
        entity = Escalatable.from_record(record, kind)
        self.add(entity)
        return entity

    def add_records(self, records: Iterable[Mapping[str, Any]], kind: EntityKind) -> int:
        """Register valid rows; malformed rows are logged and skipped.

        Returns:
            Number of rows registered.
        """
        added = 0
        for record in records:
            try:
                self.add_record(record, kind)
            except ValueError as exc:
                logger.warning("Rejected %s row: %s", kind.value, exc)
                continue
            added += 1
        return added

    def get(self, entity_id: str) -> Escalatable:
        with self._lock:
            if entity_id not in self._entities:
                raise KeyError(f"No entity registered with id '{entity_id}'")
            return copy.deepcopy(self._entities[entity_id])

    def set_status(self, entity_id: str, status: str) -> None:
        """Owning-workflow status change (e.g. screening completed)."""
        with self._lock:
            if entity_id not in self._entities:
                raise KeyError(f"No entity registered with id '{entity_id}'")
            self._entities[entity_id] = self._entities[entity_id].model_copy(
                update={"status": status}
            )

    def list_tenants(self) -> list[str]:
        with self._lock:
            return sorted({e.tenant_id for e in self._entities.values()})

    def list_pending(self, tenant_id: str) -> list[Escalatable]:
        with self._lock:
            pending = [
                copy.deepcopy(e)
                for e in self._entities.values()
                if e.tenant_id == tenant_id and self._settings.is_pending(e)
            ]
        pending.sort(key=lambda e: e.reference_at)
        return pending

    def conditional_update(
        self,
        entity_id: str,
        expected_level: int,
        new_state: EscalationState,
        expected_warning_sent: bool = False,
    ) -> bool:
        with self._lock:
            current = self._entities.get(entity_id)
            if current is None:
                raise StoreError(f"Entity '{entity_id}' not found during update.")
            if current.escalation_level != expected_level:
                return False
            if (current.warning_sent_at is not None) != expected_warning_sent:
                return False
            self._entities[entity_id] = current.model_copy(update={
                "escalation_level": new_state.escalation_level,
                "warning_sent_at": new_state.warning_sent_at,
                "escalated_at": new_state.escalated_at,
            })
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._entities)

    def __contains__(self, entity_id: str) -> bool:
        with self._lock:
            return entity_id in self._entities


# ---------------------------------------------------------------------------
# In-memory threshold override store
# ---------------------------------------------------------------------------

class InMemoryThresholdStore:
    """Tenant threshold overrides keyed by ``(tenant_id, bucket)``.

    A lookup for tenant A never returns tenant B's row.
    """

    def __init__(self, overrides: Iterable[ThresholdOverride] = ()) -> None:
        self._overrides: dict[tuple[str, Bucket], dict[str, Any]] = {}
        for override in overrides:
            self.put(override)

    def put(self, override: ThresholdOverride) -> None:
        """Insert or replace the override for ``(tenant_id, bucket)``."""
        self._overrides[(override.tenant_id, override.bucket)] = copy.deepcopy(override.values)

    def get_threshold_override(
        self, tenant_id: str, bucket: Bucket
    ) -> Optional[Mapping[str, Any]]:
        values = self._overrides.get((tenant_id, bucket))
        return copy.deepcopy(values) if values is not None else None

    def list_tenants(self) -> list[str]:
        return sorted({tenant for tenant, _ in self._overrides})

    def __len__(self) -> int:
        return len(self._overrides)
