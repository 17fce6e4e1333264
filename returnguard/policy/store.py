"""
returnguard/policy/store.py
============================
Versioned Policy Store — ReturnGuard

Responsibility:
    - Hold exactly one active, immutable Policy version
    - Validate proposed edits (ranges, integer counts, threshold ordering)
    - Atomically swap in a new version and audit the change
    - Keep every past version for audit replay

Invariant (checked on every edit, never clamped):
    autoApproveBelow < reviewQueueThreshold < highRiskThreshold < autoBlockThreshold

Readers never block: ``get_active`` returns the current reference, which
is always a complete Policy. Writers serialize on a lock.
"""

import logging
import threading
from dataclasses import dataclass, replace, fields
from datetime import datetime, timezone
from typing import Any

from returnguard.audit.log import AuditLog, make_entry
from returnguard.errors import InvalidPolicy
from returnguard.models import EntityRef

logger = logging.getLogger("returnguard.policy")

POLICY_REF = EntityRef("policy", "active")


@dataclass(frozen=True)
class Policy:
    auto_approve_below: float = 40
    review_queue_threshold: float = 60
    high_risk_threshold: float = 70
    auto_block_threshold: float = 90
    max_returns_per_month: int = 5
    blacklist_duration: int = 30
    enable_ml_scoring: bool = True
    enable_image_analysis: bool = True
    version: int = 1
    updated_by: str = "system"
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            wire: getattr(self, attr) for wire, attr in WIRE_NAMES.items()
        }
        data["version"] = self.version
        data["updatedBy"] = self.updated_by
        data["updatedAt"] = self.updated_at.isoformat() if self.updated_at else None
        return data


# camelCase wire name → attribute name
WIRE_NAMES: dict[str, str] = {
    "autoApproveBelow": "auto_approve_below",
    "reviewQueueThreshold": "review_queue_threshold",
    "highRiskThreshold": "high_risk_threshold",
    "autoBlockThreshold": "auto_block_threshold",
    "maxReturnsPerMonth": "max_returns_per_month",
    "blacklistDuration": "blacklist_duration",
    "enableMLScoring": "enable_ml_scoring",
    "enableImageAnalysis": "enable_image_analysis",
}

THRESHOLD_FIELDS: tuple[str, ...] = (
    "auto_approve_below",
    "review_queue_threshold",
    "high_risk_threshold",
    "auto_block_threshold",
)
COUNT_FIELDS: tuple[str, ...] = ("max_returns_per_month", "blacklist_duration")
TOGGLE_FIELDS: tuple[str, ...] = ("enable_ml_scoring", "enable_image_analysis")

_EDITABLE: set[str] = set(THRESHOLD_FIELDS) | set(COUNT_FIELDS) | set(TOGGLE_FIELDS)
_ATTR_TO_WIRE: dict[str, str] = {attr: wire for wire, attr in WIRE_NAMES.items()}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def normalize_fields(new_values: dict[str, Any]) -> dict[str, Any]:
    """
    Map camelCase or snake_case keys onto Policy attribute names.

    Raises:
        InvalidPolicy: On an unknown or non-editable field.
    """
    normalized: dict[str, Any] = {}
    for key, value in new_values.items():
        attr = WIRE_NAMES.get(key, key)
        if attr not in _EDITABLE:
            raise InvalidPolicy("unknown_field", f"{key!r} is not an editable policy field")
        normalized[attr] = value
    return normalized


def validate_policy(policy: Policy) -> None:
    """
    Check ranges, types and threshold ordering of a candidate policy.

    Raises:
        InvalidPolicy: Naming the first violated constraint.
    """
    for attr in THRESHOLD_FIELDS:
        value = getattr(policy, attr)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidPolicy(
                "threshold_type",
                f"{_ATTR_TO_WIRE[attr]} must be a number, got {type(value).__name__}",
            )
        if value < 0 or value > 100:
            raise InvalidPolicy(
                "threshold_range",
                f"{_ATTR_TO_WIRE[attr]} must lie in [0, 100], got {value}",
            )

    for attr in COUNT_FIELDS:
        value = getattr(policy, attr)
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidPolicy(
                "count_type",
                f"{_ATTR_TO_WIRE[attr]} must be an integer, got {type(value).__name__}",
            )
        if value < 0:
            raise InvalidPolicy(
                "count_range",
                f"{_ATTR_TO_WIRE[attr]} must be non-negative, got {value}",
            )

    for attr in TOGGLE_FIELDS:
        value = getattr(policy, attr)
        if not isinstance(value, bool):
            raise InvalidPolicy(
                "toggle_type",
                f"{_ATTR_TO_WIRE[attr]} must be a boolean, got {type(value).__name__}",
            )

    for low_attr, high_attr in zip(THRESHOLD_FIELDS, THRESHOLD_FIELDS[1:]):
        low, high = getattr(policy, low_attr), getattr(policy, high_attr)
        if not low < high:
            raise InvalidPolicy(
                "threshold_order",
                f"{_ATTR_TO_WIRE[low_attr]} ({low}) must be below "
                f"{_ATTR_TO_WIRE[high_attr]} ({high})",
            )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class PolicyStore:
    """Holds the active policy and its full version history."""

    def __init__(self, audit: AuditLog, initial: Policy | None = None) -> None:
        policy = initial or Policy(updated_at=datetime.now(timezone.utc))
        validate_policy(policy)
        self._audit = audit
        self._write_lock = threading.Lock()
        self._active = policy
        self._history: list[Policy] = [policy]

    def get_active(self) -> Policy:
        return self._active

    def get_version(self, version: int) -> Policy:
        for policy in self._history:
            if policy.version == version:
                return policy
        raise KeyError(f"No policy version {version}")

    def history(self) -> list[Policy]:
        return list(self._history)

    def propose(self, new_values: dict[str, Any], actor: str = "system") -> Policy:
        """
        Validate and activate a (partial) policy edit.

        Args:
            new_values: Fields to change, camelCase or snake_case.
            actor:      Who made the edit (recorded in the audit trail).

        Returns:
            The new active Policy.

        Raises:
            InvalidPolicy: The edit violates a constraint; nothing changed.
            AuditWriteError: The audit entry could not be written; nothing changed.
        """
        changes = normalize_fields(new_values)

        with self._write_lock:
            current = self._active
            candidate = replace(
                current,
                **changes,
                version=current.version + 1,
                updated_by=actor,
                updated_at=datetime.now(timezone.utc),
            )
            validate_policy(candidate)

            diffs = [
                f"{_ATTR_TO_WIRE[attr]}: {getattr(current, attr)} -> {getattr(candidate, attr)}"
                for attr in _ATTR_TO_WIRE
                if getattr(current, attr) != getattr(candidate, attr)
            ]
            entry = make_entry(
                actor=actor,
                action="policy_updated",
                target=POLICY_REF,
                reason="; ".join(diffs) if diffs else "No field changed",
                policy_version=candidate.version,
                details={"previous_version": current.version},
            )
            self._audit.append(entry)

            self._history.append(candidate)
            self._active = candidate

        logger.info("Policy v%d active (by %s): %s", candidate.version, actor, entry.reason)
        return candidate

    def reset(self, actor: str = "system") -> Policy:
        """Re-activate the default thresholds and toggles as a new version."""
        defaults = Policy()
        return self.propose(
            {f.name: getattr(defaults, f.name) for f in fields(Policy) if f.name in _EDITABLE},
            actor=actor,
        )
