"""
Core data models for HSSE Guard.

Storage rows reach the engine only through the validating factories defined
here (``Escalatable.from_record``).  A malformed row raises
``MalformedRecordError`` instead of leaking ``None`` values into the
escalation arithmetic.
"""

from __future__ import annotations

import enum
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from hsseguard.errors import MalformedRecordError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

# Pre-unification ratings still found on older rows.
_LEGACY_SEVERITY = {
    "low": 1,
    "medium": 2,
    "high": 3,
    "critical": 4,
}


class SeverityLevel(int, enum.Enum):
    """Five-level HSSE severity (1 lowest risk, 5 catastrophic).

    Totally ordered: members compare as plain integers.
    """

    LEVEL_1 = 1
    LEVEL_2 = 2
    LEVEL_3 = 3
    LEVEL_4 = 4
    LEVEL_5 = 5

    @property
    def key(self) -> str:
        """Storage key, e.g. ``level_3``."""
        return f"level_{self.value}"

    @classmethod
    def parse(cls, value: Any) -> Optional[SeverityLevel]:
        """Parse a stored severity value.

        Accepts ``3``, ``"3"``, ``"level_3"``, ``"Level 3"`` and the legacy
        ``low/medium/high/critical`` ratings.  Returns ``None`` for anything
        unrecognized.
        """
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, SeverityLevel):
            return value
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                return None
        if isinstance(value, str):
            text = value.strip().lower().replace(" ", "_")
            if text in _LEGACY_SEVERITY:
                return cls(_LEGACY_SEVERITY[text])
            if text.startswith("level_"):
                text = text[len("level_"):]
            if text.isdigit():
                try:
                    return cls(int(text))
                except ValueError:
                    return None
        return None


class PriorityTier(str, enum.Enum):
    """Corrective action priority tiers."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: Any) -> Optional[PriorityTier]:
        if isinstance(value, PriorityTier):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class EntityKind(str, enum.Enum):
    """Kinds of entity under time-based governance."""

    INCIDENT_SCREENING = "incident_screening"
    CORRECTIVE_ACTION = "corrective_action"


class BucketKind(str, enum.Enum):
    """Threshold table a bucket belongs to."""

    SEVERITY = "severity"
    PRIORITY = "priority"


class EscalationStage(str, enum.Enum):
    """The three time-based stages of the escalation model."""

    WARNING = "WARNING"
    ESCALATION_1 = "ESCALATION_1"
    ESCALATION_2 = "ESCALATION_2"


class Role(str, enum.Enum):
    """Notification audiences.

    ``ASSIGNEE`` is the person the governed entity is assigned to; the
    other roles are tenant-level HSSE oversight roles.
    """

    HSSE_MANAGER = "hsse_manager"
    HSSE_OFFICER = "hsse_officer"
    ADMIN = "admin"
    ASSIGNEE = "assignee"


# ---------------------------------------------------------------------------
# Buckets
# ---------------------------------------------------------------------------

class Bucket(BaseModel):
    """Key under which SLA thresholds are configured.

    Severity buckets use ``level_N`` keys; priority buckets use the tier
    value.  Keys are normalized on construction so that ``"Level 3"`` and
    ``"level_3"`` address the same bucket.
    """

    model_config = ConfigDict(frozen=True)

    kind: BucketKind = Field(..., description="Which threshold table this key belongs to.")
    key: str = Field(..., description="Normalized bucket key.")

    @field_validator("key", mode="before")
    @classmethod
    def normalize_key(cls, v: Any, info) -> str:
        kind = info.data.get("kind")
        if kind == BucketKind.SEVERITY:
            level = SeverityLevel.parse(v)
            if level is None:
                raise ValueError(f"'{v}' is not a severity level")
            return level.key
        if kind == BucketKind.PRIORITY:
            tier = PriorityTier.parse(v)
            if tier is None:
                raise ValueError(f"'{v}' is not a priority tier")
            return tier.value
        return v

    @classmethod
    def for_severity(cls, level: SeverityLevel) -> Bucket:
        return cls(kind=BucketKind.SEVERITY, key=level.key)

    @classmethod
    def for_priority(cls, tier: PriorityTier) -> Bucket:
        return cls(kind=BucketKind.PRIORITY, key=tier.value)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.key}"


# ---------------------------------------------------------------------------
# Escalatable entities
# ---------------------------------------------------------------------------

def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive timestamps from storage are UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class EscalationState(BaseModel):
    """The scheduler-owned part of an entity: level and stage timestamps."""

    escalation_level: int = Field(default=0, ge=0, le=2)
    warning_sent_at: Optional[datetime] = Field(default=None)
    escalated_at: Optional[datetime] = Field(default=None)

    @property
    def warning_sent(self) -> bool:
        return self.warning_sent_at is not None


# Row shapes written by the owning workflows, mapped onto Escalatable fields.
_RECORD_ALIASES: dict[EntityKind, dict[str, str]] = {
    EntityKind.INCIDENT_SCREENING: {
        "id": "entity_id",
        "created_at": "reference_at",
        "severity_v2": "severity",
        "screening_escalation_level": "escalation_level",
        "screening_sla_warning_sent_at": "warning_sent_at",
        "screening_escalated_at": "escalated_at",
        "reference_id": "reference_label",
    },
    EntityKind.CORRECTIVE_ACTION: {
        "id": "entity_id",
        "due_date": "reference_at",
        "sla_warning_sent_at": "warning_sent_at",
        "sla_escalation_sent_at": "escalated_at",
        "assigned_to": "assignee_id",
    },
}


class Escalatable(BaseModel):
    """An entity under time-based governance.

    Created by the owning workflow when it enters its pending status
    (incident awaiting screening, corrective action awaiting completion).
    Only the scheduler changes ``escalation_level``, ``warning_sent_at``
    and ``escalated_at``; only the owning workflow changes ``status``.
    """

    entity_id: str = Field(..., min_length=1, description="Identity of the governed entity.")
    tenant_id: str = Field(..., min_length=1, description="Owning tenant (isolation key).")
    kind: EntityKind = Field(..., description="Which workflow governs this entity.")
    reference_at: datetime = Field(
        ...,
        description=(
            "Instant elapsed time is measured from: creation for incident "
            "screening, due date for corrective actions."
        ),
    )
    status: str = Field(..., min_length=1, description="Owning workflow status.")
    escalation_level: int = Field(default=0, ge=0, le=2)
    warning_sent_at: Optional[datetime] = Field(default=None)
    escalated_at: Optional[datetime] = Field(default=None)
    severity: Optional[SeverityLevel] = Field(
        default=None,
        description="Assessed severity (incidents).  Unrecognized values are treated as unset.",
    )
    priority: Optional[PriorityTier] = Field(
        default=None,
        description="Priority tier (corrective actions).  Unrecognized values are treated as unset.",
    )
    assignee_id: Optional[str] = Field(default=None)
    reference_label: str = Field(default="", description="Human-facing reference, e.g. INC-2024-0042.")
    title: str = Field(default="")

    @field_validator("severity", mode="before")
    @classmethod
    def parse_severity(cls, v: Any) -> Optional[SeverityLevel]:
        return SeverityLevel.parse(v)

    @field_validator("priority", mode="before")
    @classmethod
    def parse_priority(cls, v: Any) -> Optional[PriorityTier]:
        return PriorityTier.parse(v)

    @field_validator("escalation_level", mode="before")
    @classmethod
    def null_level_is_zero(cls, v: Any) -> Any:
        return 0 if v is None else v

    @field_validator("reference_label", "title", mode="before")
    @classmethod
    def null_text_is_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("reference_at", "warning_sent_at", "escalated_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @classmethod
    def from_record(cls, record: Mapping[str, Any], kind: EntityKind) -> Escalatable:
        """Build a validated entity from a storage row.

        Accepts either native field names or the column names the owning
        workflows write (``created_at``/``due_date``,
        ``screening_escalation_level`` and so on).

        Raises:
            MalformedRecordError: If a required field is missing or invalid.
        """
        if not isinstance(record, Mapping):
            raise MalformedRecordError(f"Expected a mapping, got {type(record).__name__}")

        aliases = _RECORD_ALIASES[kind]
        data: dict[str, Any] = {}
        for column, value in record.items():
            field = aliases.get(column, column)
            if field in cls.model_fields and field not in data:
                data[field] = value
        data["kind"] = kind

        try:
            return cls(**data)
        except ValidationError as exc:
            raise MalformedRecordError(
                f"Malformed {kind.value} record {record.get('id', record.get('entity_id'))!r}: "
                f"{exc.error_count()} validation error(s)"
            ) from exc

    def state(self) -> EscalationState:
        return EscalationState(
            escalation_level=self.escalation_level,
            warning_sent_at=self.warning_sent_at,
            escalated_at=self.escalated_at,
        )

    def bucket(
        self,
        default_severity: SeverityLevel = SeverityLevel.LEVEL_2,
        default_priority: PriorityTier = PriorityTier.MEDIUM,
    ) -> Bucket:
        """Threshold bucket for this entity.

        Unassessed incidents fall into ``default_severity``; actions
        without a priority fall into ``default_priority``.
        """
        if self.kind == EntityKind.INCIDENT_SCREENING:
            return Bucket.for_severity(self.severity or default_severity)
        return Bucket.for_priority(self.priority or default_priority)


# ---------------------------------------------------------------------------
# Sweep outputs
# ---------------------------------------------------------------------------

class EscalationEvent(BaseModel):
    """One committed transition, handed to the dispatcher.  Never persisted."""

    model_config = ConfigDict(frozen=True)

    entity_id: str
    tenant_id: str
    kind: EntityKind
    stage: EscalationStage
    new_level: int = Field(..., ge=0, le=2)
    elapsed: timedelta
    triggered_at: datetime
    reference_label: str = ""
    title: str = ""
    severity: Optional[SeverityLevel] = None
    priority: Optional[PriorityTier] = None
    assignee_id: Optional[str] = None

    @property
    def hours_elapsed(self) -> float:
        return self.elapsed.total_seconds() / 3600


class SweepSummary(BaseModel):
    """Counts reported by one sweep invocation."""

    entities_processed: int = 0
    warnings_sent: int = 0
    escalations_sent: int = 0
    conflicts: int = 0
    errors: int = 0
    dispatch_failures: int = 0
    skipped: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def absorb(self, other: SweepSummary) -> None:
        """Add another summary's counters into this one."""
        self.entities_processed += other.entities_processed
        self.warnings_sent += other.warnings_sent
        self.escalations_sent += other.escalations_sent
        self.conflicts += other.conflicts
        self.errors += other.errors
        self.dispatch_failures += other.dispatch_failures
        self.skipped += other.skipped
