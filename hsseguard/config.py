"""
SLA Threshold Configuration and Engine Settings.

Each tenant may override the timing of the three escalation stages per
bucket: per severity level for incident screening, per priority tier for
corrective actions.  Both tables share one ordering rule::

    0 < warning_offset < escalation1_offset < escalation2_offset

Offsets are measured from the entity's reference instant (creation for
incident screening, due date for corrective actions).

**Why overrides are kept raw:**  A tenant row that violates the ordering
rule must not stop the engine.  Overrides are therefore loaded as raw
mappings and validated at resolution time by ``SLAThresholdConfig.from_record``;
the resolver falls back to the built-in default for that bucket and logs
the violation.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from hsseguard.errors import InvalidThresholdOrderError, MalformedRecordError
from hsseguard.models import Bucket, BucketKind, Escalatable, EntityKind, PriorityTier, SeverityLevel


# ---------------------------------------------------------------------------
# Threshold model
# ---------------------------------------------------------------------------

def check_threshold_order(
    warning_offset: timedelta,
    escalation1_offset: timedelta,
    escalation2_offset: timedelta,
) -> None:
    """Raise ``InvalidThresholdOrderError`` unless ``0 < w < e1 < e2``."""
    if warning_offset <= timedelta(0):
        raise InvalidThresholdOrderError(
            f"warning_offset ({warning_offset}) must be greater than zero"
        )
    if escalation1_offset <= warning_offset:
        raise InvalidThresholdOrderError(
            f"escalation1_offset ({escalation1_offset}) must be > warning_offset ({warning_offset})"
        )
    if escalation2_offset <= escalation1_offset:
        raise InvalidThresholdOrderError(
            f"escalation2_offset ({escalation2_offset}) must be > "
            f"escalation1_offset ({escalation1_offset})"
        )


_OFFSETS = TypeAdapter(dict[str, timedelta])

_HOUR = timedelta(hours=1)
_DAY = timedelta(days=1)


def _offsets_from_record(record: Mapping[str, Any]) -> dict[str, Any]:
    """Map one of the accepted row shapes onto the three offset fields."""
    if "warning_offset" in record:
        return {
            "warning_offset": record.get("warning_offset"),
            "escalation1_offset": record.get("escalation1_offset"),
            "escalation2_offset": record.get("escalation2_offset"),
        }

    if "max_screening_hours" in record:
        # Screening table: warning before the screening deadline, then
        # escalation at one and two escalation windows past it.
        try:
            max_hours = float(record["max_screening_hours"])
            before = float(record["warning_hours_before"])
            after = float(record["escalation_hours"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedRecordError(f"Incomplete screening SLA row: {exc}") from exc
        return {
            "warning_offset": (max_hours - before) * _HOUR,
            "escalation1_offset": (max_hours + after) * _HOUR,
            "escalation2_offset": (max_hours + 2 * after) * _HOUR,
        }

    for suffix, unit in (("hours", _HOUR), ("days", _DAY)):
        names = (f"warning_{suffix}", f"escalation1_{suffix}", f"escalation2_{suffix}")
        if names[0] in record:
            try:
                w, e1, e2 = (float(record[n]) for n in names)
            except (KeyError, TypeError, ValueError) as exc:
                raise MalformedRecordError(f"Incomplete SLA row: {exc}") from exc
            return {
                "warning_offset": w * unit,
                "escalation1_offset": e1 * unit,
                "escalation2_offset": e2 * unit,
            }

    raise MalformedRecordError(
        "SLA row has no recognized offset fields "
        "(expected *_offset, *_hours, *_days or max_screening_hours)."
    )


class SLAThresholdConfig(BaseModel):
    """Timing of the warning and the two escalation stages for one bucket."""

    model_config = ConfigDict(frozen=True)

    warning_offset: timedelta = Field(
        ...,
        description="Elapsed time after which the warning is sent (level stays 0).",
    )
    escalation1_offset: timedelta = Field(
        ...,
        description="Elapsed time after which the entity moves to escalation level 1.",
    )
    escalation2_offset: timedelta = Field(
        ...,
        description="Elapsed time after which the entity moves to escalation level 2.",
    )

    @model_validator(mode="after")
    def offsets_ordered(self) -> SLAThresholdConfig:
        check_threshold_order(
            self.warning_offset, self.escalation1_offset, self.escalation2_offset
        )
        return self

    @classmethod
    def from_hours(cls, warning: float, escalation1: float, escalation2: float) -> SLAThresholdConfig:
        return cls(
            warning_offset=timedelta(hours=warning),
            escalation1_offset=timedelta(hours=escalation1),
            escalation2_offset=timedelta(hours=escalation2),
        )

    @classmethod
    def from_record(cls, record: Any) -> SLAThresholdConfig:
        """Validating factory for tenant override rows.

        Accepts an ``SLAThresholdConfig``, or a mapping carrying either
        ``warning_offset``/``escalation1_offset``/``escalation2_offset``
        (timedelta, seconds or ISO-8601 duration), the ``*_hours`` or
        ``*_days`` triplets, or the screening table columns
        ``max_screening_hours``, ``warning_hours_before`` and
        ``escalation_hours``.

        Raises:
            MalformedRecordError: If the row shape or a value is invalid.
            InvalidThresholdOrderError: If the offsets are not ordered.
        """
        if isinstance(record, SLAThresholdConfig):
            return record
        if not isinstance(record, Mapping):
            raise MalformedRecordError(f"Expected a mapping, got {type(record).__name__}")

        try:
            offsets = _OFFSETS.validate_python(_offsets_from_record(record))
        except ValidationError as exc:
            raise MalformedRecordError(f"Invalid SLA offset value: {exc.errors()[0]['msg']}") from exc

        check_threshold_order(**offsets)
        return cls(**offsets)

    def describe(self) -> str:
        return (
            f"warning={self.warning_offset}, escalation1={self.escalation1_offset}, "
            f"escalation2={self.escalation2_offset}"
        )


# ---------------------------------------------------------------------------
# Built-in defaults
# ---------------------------------------------------------------------------

def _screening(max_hours: float, before: float, after: float) -> SLAThresholdConfig:
    return SLAThresholdConfig.from_record({
        "max_screening_hours": max_hours,
        "warning_hours_before": before,
        "escalation_hours": after,
    })


DEFAULT_SCREENING_THRESHOLDS: Mapping[SeverityLevel, SLAThresholdConfig] = MappingProxyType({
    SeverityLevel.LEVEL_1: _screening(24, 4, 8),   # 20h / 32h / 40h
    SeverityLevel.LEVEL_2: _screening(12, 2, 4),   # 10h / 16h / 20h
    SeverityLevel.LEVEL_3: _screening(8, 2, 4),    # 6h / 12h / 16h
    SeverityLevel.LEVEL_4: _screening(4, 1, 2),    # 3h / 6h / 8h
    SeverityLevel.LEVEL_5: _screening(2, 1, 1),    # 1h / 3h / 4h
})
"""Screening thresholds used when a tenant has no valid override."""

DEFAULT_ACTION_THRESHOLDS: Mapping[PriorityTier, SLAThresholdConfig] = MappingProxyType({
    PriorityTier.CRITICAL: SLAThresholdConfig.from_hours(4, 24, 48),
    PriorityTier.HIGH: SLAThresholdConfig.from_hours(12, 48, 96),
    PriorityTier.MEDIUM: SLAThresholdConfig.from_hours(24, 48, 120),
    PriorityTier.LOW: SLAThresholdConfig.from_hours(24, 72, 168),
})
"""Corrective action thresholds, measured from the due date."""


def default_thresholds(bucket: Bucket) -> SLAThresholdConfig:
    """Return the built-in thresholds for a bucket."""
    if bucket.kind == BucketKind.SEVERITY:
        return DEFAULT_SCREENING_THRESHOLDS[SeverityLevel.parse(bucket.key)]
    return DEFAULT_ACTION_THRESHOLDS[PriorityTier(bucket.key)]


# ---------------------------------------------------------------------------
# Tenant overrides
# ---------------------------------------------------------------------------

class ThresholdOverride(BaseModel):
    """One tenant override row, kept raw until resolution."""

    tenant_id: str = Field(..., min_length=1)
    bucket: Bucket
    values: dict[str, Any] = Field(
        default_factory=dict,
        description="Raw offset fields, validated by the resolver.",
    )


def load_threshold_overrides_from_yaml(path: str | Path) -> list[ThresholdOverride]:
    """Load tenant threshold overrides from a YAML file.

    Example YAML structure::

        thresholds:
          - tenant_id: "acme"
            kind: severity
            key: level_3
            warning_hours: 4
            escalation1_hours: 8
            escalation2_hours: 12
          - tenant_id: "acme"
            kind: priority
            key: high
            warning_offset: PT6H
            escalation1_offset: P1D
            escalation2_offset: P2D

    Offsets are not checked here; an out-of-order row still loads and is
    rejected (with a logged fallback) when it is resolved.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If a tenant id or bucket is invalid.
    """
    raw = _read_yaml(path)
    if not isinstance(raw, dict) or "thresholds" not in raw:
        raise ValueError(
            "YAML file must contain a top-level 'thresholds' key with a list of override objects."
        )

    rows = raw["thresholds"]
    if not isinstance(rows, list):
        raise ValueError("'thresholds' must be a list of override objects.")

    overrides: list[ThresholdOverride] = []
    for idx, entry in enumerate(rows):
        if not isinstance(entry, dict):
            raise ValueError(f"Threshold entry at index {idx} must be a mapping.")
        entry = dict(entry)
        tenant_id = entry.pop("tenant_id", None)
        bucket = Bucket(kind=entry.pop("kind", None), key=entry.pop("key", None))
        overrides.append(ThresholdOverride(tenant_id=tenant_id, bucket=bucket, values=entry))

    return overrides


# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------

class EngineSettings(BaseModel):
    """Operational settings for the sweep.

    The sweep is driven by an external scheduler; ``sweep_interval_minutes``
    documents the expected cadence and is reported by the health endpoint.
    """

    sweep_interval_minutes: int = Field(
        default=30,
        gt=0,
        description="Cadence at which the external scheduler calls the sweep.",
    )
    max_workers: int = Field(
        default=4,
        ge=1,
        description="Maximum number of tenants swept in parallel.",
    )
    screening_pending_statuses: list[str] = Field(
        default_factory=lambda: ["submitted", "pending_dept_rep_incident_review"],
        description="Incident statuses that mean 'awaiting screening'.",
    )
    action_closed_statuses: list[str] = Field(
        default_factory=lambda: ["completed", "verified", "closed"],
        description="Corrective action statuses that take an action out of sweep scope.",
    )
    default_severity: SeverityLevel = Field(
        default=SeverityLevel.LEVEL_2,
        description="Bucket used for incidents that have not been assessed yet.",
    )
    default_priority: PriorityTier = Field(
        default=PriorityTier.MEDIUM,
        description="Bucket used for actions without a priority.",
    )

    def is_pending(self, entity: Escalatable) -> bool:
        """Whether the owning workflow still has the entity in its pending state."""
        if entity.kind == EntityKind.INCIDENT_SCREENING:
            return entity.status in self.screening_pending_statuses
        return entity.status not in self.action_closed_statuses

    def bucket_for(self, entity: Escalatable) -> Bucket:
        return entity.bucket(self.default_severity, self.default_priority)


DEFAULT_SETTINGS = EngineSettings()


def load_settings_from_yaml(path: str | Path) -> EngineSettings:
    """Load ``EngineSettings`` from the top-level ``settings`` key of a YAML file.

    A file without a ``settings`` key yields the defaults.
    """
    raw = _read_yaml(path)
    if raw is None:
        return EngineSettings()
    if not isinstance(raw, dict):
        raise ValueError("Settings YAML must be a mapping.")
    section: Optional[dict] = raw.get("settings")
    if section is None:
        return EngineSettings()
    if not isinstance(section, dict):
        raise ValueError("'settings' must be a mapping.")
    return EngineSettings(**section)


def _read_yaml(path: str | Path) -> Any:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    with open(path, "r") as f:
        return yaml.safe_load(f)
