"""
Severity Policy Table and Minimum-Severity Classifier.

Implements the unified five-level HSSE risk matrix:

* Levels 1-2 (low): close on the spot, no formal review.
* Level 3 (serious): HSSE review required.
* Level 4 (major): HSSE review required; closure blocked until corrective
  actions are verified.
* Level 5 (catastrophic): as level 4, plus HSSE manager closure approval.

**Mandatory floors (audit rules):**

* Fatality or permanent disability: must be level 5.
* Lost-time injury / lost-workday case: at least level 4.
* Emergency response activated, or an emergency event type: at least
  level 4.

Unknown classification strings never raise.  They are treated as "no
trigger" so that values added to the platform later fail open instead of
blocking the workflow.
"""

from __future__ import annotations

import enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from hsseguard.models import SeverityLevel


# ---------------------------------------------------------------------------
# Policy table
# ---------------------------------------------------------------------------

class SeverityPolicy(BaseModel):
    """Workflow permissions owned by one severity level."""

    model_config = ConfigDict(frozen=True)

    level: SeverityLevel
    allow_close_on_spot: bool
    requires_review: bool
    requires_manager_closure: bool
    blocked_until_verified: bool


SEVERITY_POLICIES: Mapping[SeverityLevel, SeverityPolicy] = MappingProxyType({
    SeverityLevel.LEVEL_1: SeverityPolicy(
        level=SeverityLevel.LEVEL_1,
        allow_close_on_spot=True,
        requires_review=False,
        requires_manager_closure=False,
        blocked_until_verified=False,
    ),
    SeverityLevel.LEVEL_2: SeverityPolicy(
        level=SeverityLevel.LEVEL_2,
        allow_close_on_spot=True,
        requires_review=False,
        requires_manager_closure=False,
        blocked_until_verified=False,
    ),
    SeverityLevel.LEVEL_3: SeverityPolicy(
        level=SeverityLevel.LEVEL_3,
        allow_close_on_spot=False,
        requires_review=True,
        requires_manager_closure=False,
        blocked_until_verified=False,
    ),
    SeverityLevel.LEVEL_4: SeverityPolicy(
        level=SeverityLevel.LEVEL_4,
        allow_close_on_spot=False,
        requires_review=True,
        requires_manager_closure=False,
        blocked_until_verified=True,
    ),
    SeverityLevel.LEVEL_5: SeverityPolicy(
        level=SeverityLevel.LEVEL_5,
        allow_close_on_spot=False,
        requires_review=True,
        requires_manager_closure=True,
        blocked_until_verified=True,
    ),
})


class WorkflowLabel(str, enum.Enum):
    """Single descriptive tag consumers use to pick closure-workflow copy."""

    MANAGER_CLOSURE_REQUIRED = "manager_closure_required"
    REVIEW_REQUIRED = "review_required"
    CLOSE_ON_SPOT_ALLOWED = "close_on_spot_allowed"
    STANDARD = "standard"
    UNKNOWN = "unknown"


def _require_level(level: Any) -> SeverityLevel:
    parsed = SeverityLevel.parse(level)
    if parsed is None:
        raise ValueError(f"Unknown severity level: {level!r}")
    return parsed


def policy_for(level: Any) -> SeverityPolicy:
    """Return the fixed workflow policy for a severity level.

    Args:
        level: A ``SeverityLevel`` or anything ``SeverityLevel.parse``
            accepts.

    Raises:
        ValueError: If ``level`` is not one of the five levels.
    """
    return SEVERITY_POLICIES[_require_level(level)]


def workflow_label(level: Any) -> WorkflowLabel:
    """Derive the workflow tag for a level.

    Precedence: manager closure > review required > close on spot >
    standard.  Unset or unrecognized levels yield ``UNKNOWN``.
    """
    parsed = SeverityLevel.parse(level)
    if parsed is None:
        return WorkflowLabel.UNKNOWN

    policy = SEVERITY_POLICIES[parsed]
    if policy.requires_manager_closure:
        return WorkflowLabel.MANAGER_CLOSURE_REQUIRED
    if policy.requires_review:
        return WorkflowLabel.REVIEW_REQUIRED
    if policy.allow_close_on_spot:
        return WorkflowLabel.CLOSE_ON_SPOT_ALLOWED
    return WorkflowLabel.STANDARD


def _flag(level: Any, name: str) -> bool:
    parsed = SeverityLevel.parse(level)
    if parsed is None:
        return False
    return getattr(SEVERITY_POLICIES[parsed], name)


def can_close_on_spot(level: Any) -> bool:
    return _flag(level, "allow_close_on_spot")


def requires_review(level: Any) -> bool:
    return _flag(level, "requires_review")


def requires_manager_closure(level: Any) -> bool:
    return _flag(level, "requires_manager_closure")


def is_closure_blocked(level: Any) -> bool:
    """Whether closure waits on verified corrective actions (levels 4-5)."""
    return _flag(level, "blocked_until_verified")


# ---------------------------------------------------------------------------
# Minimum-severity classifier
# ---------------------------------------------------------------------------

class FloorReason(str, enum.Enum):
    """Why a minimum severity applies."""

    FATALITY_REQUIRED = "fatality_required"
    LTI_MINIMUM = "lti_minimum"
    ERP_MINIMUM = "erp_minimum"


FATALITY_CLASSIFICATIONS = frozenset({"fatality", "permanent_disability"})
LOST_TIME_CLASSIFICATIONS = frozenset({"lost_time_injury", "lost_time", "lwdc"})
EMERGENCY_EVENT_TYPES = frozenset({"emergency_crisis"})


class SeverityFloor:
    """Minimum mandatory severity and the rule that imposed it."""

    def __init__(self, level: SeverityLevel, reason: Optional[FloorReason]) -> None:
        self.level = level
        self.reason = reason

    def __iter__(self):
        # Unpacks as (level, reason).
        return iter((self.level, self.reason))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SeverityFloor):
            return (self.level, self.reason) == (other.level, other.reason)
        if isinstance(other, tuple):
            return (self.level, self.reason) == other
        return NotImplemented

    def __repr__(self) -> str:
        reason = self.reason.value if self.reason else None
        return f"SeverityFloor(level={self.level.value}, reason={reason})"


def _normalize(value: Optional[str]) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower().replace(" ", "_").replace("-", "_")


def minimum_severity(
    injury_classification: Optional[str],
    emergency_activated: Optional[bool],
    event_type: Optional[str],
) -> SeverityFloor:
    """Compute the minimum severity an event must be classified at.

    Rules are evaluated in fixed order and the first match wins:
    fatality / permanent disability (5), lost-time injury (4), emergency
    response or emergency event type (4).  Otherwise level 1 with no
    reason.

    Args:
        injury_classification: Injury classification code, if any.
        emergency_activated: Whether the emergency response plan was
            activated.
        event_type: Event type code, if any.

    Returns:
        A ``SeverityFloor`` (unpacks as ``(level, reason)``).
    """
    injury = _normalize(injury_classification)

    if injury in FATALITY_CLASSIFICATIONS:
        return SeverityFloor(SeverityLevel.LEVEL_5, FloorReason.FATALITY_REQUIRED)

    if injury in LOST_TIME_CLASSIFICATIONS:
        return SeverityFloor(SeverityLevel.LEVEL_4, FloorReason.LTI_MINIMUM)

    if emergency_activated is True or _normalize(event_type) in EMERGENCY_EVENT_TYPES:
        return SeverityFloor(SeverityLevel.LEVEL_4, FloorReason.ERP_MINIMUM)

    return SeverityFloor(SeverityLevel.LEVEL_1, None)


def is_below_minimum(selected: Any, minimum: Any) -> bool:
    """Whether a selected severity is below the mandatory minimum.

    An unset (or unrecognized) selection is never below the minimum;
    callers enforce "severity set before closure" separately.
    """
    selected_level = SeverityLevel.parse(selected)
    if selected_level is None:
        return False
    return selected_level < _require_level(minimum)


class SeverityValidation:
    """Outcome of checking a chosen severity against the event's floor."""

    def __init__(
        self,
        selected: Optional[SeverityLevel],
        floor: SeverityFloor,
        below_minimum: bool,
    ) -> None:
        self.selected = selected
        self.floor = floor
        self.below_minimum = below_minimum

    @property
    def is_valid(self) -> bool:
        return not self.below_minimum

    @property
    def message(self) -> str:
        if not self.below_minimum:
            return ""
        reason = self.floor.reason.value if self.floor.reason else "minimum"
        return (
            f"Severity level {self.selected.value} is below the mandatory "
            f"minimum level {self.floor.level.value} ({reason})."
        )

    def __repr__(self) -> str:
        selected = self.selected.value if self.selected else None
        return (
            f"SeverityValidation(selected={selected}, "
            f"minimum={self.floor.level.value}, below_minimum={self.below_minimum})"
        )


def validate_selected_severity(
    selected: Any,
    injury_classification: Optional[str] = None,
    emergency_activated: Optional[bool] = None,
    event_type: Optional[str] = None,
) -> SeverityValidation:
    """Check a user-chosen severity against the event's attributes."""
    floor = minimum_severity(injury_classification, emergency_activated, event_type)
    selected_level = SeverityLevel.parse(selected)
    return SeverityValidation(
        selected=selected_level,
        floor=floor,
        below_minimum=is_below_minimum(selected_level, floor.level),
    )
