"""
returnguard/risk/scorer.py
===========================
Deterministic Customer Risk Scorer — ReturnGuard

Responsibility:
    - Accept a CustomerSignalBundle (from signals.py) and the active Policy
    - Compute an integer risk score (0–100) from additive signal contributions
    - Write the score and the derived cached status back onto the Customer
    - Audit the change, and only when something actually changed

Scoring philosophy:
    - Every contribution is non-negative in return count and flag count, so
      more evidence never lowers the score
    - The high-value share can shrink when a cheap return is added, but each
      window return adds more points than the share can lose
    - The ML adjustment is a signed additive term; the total is clamped
    - An imported baseline score is a floor, so re-scoring only raises it
    - Same bundle + same policy → same score (audit replay)

This module does NOT:
    - Decide returns or route chats
    - Persist customers
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from returnguard.audit.log import AuditLog, make_entry
from returnguard.models import AuditLogEntry, Customer, CustomerStatus
from returnguard.policy.bands import classify_band, derive_customer_status
from returnguard.policy.store import Policy
from returnguard.risk.signals import (
    CustomerSignalBundle,
    HIGH_VALUE_AMOUNT,
    RETURN_WINDOW_DAYS,
    build_signal_bundle,
)

logger = logging.getLogger("returnguard.risk.scorer")


# ---------------------------------------------------------------------------
# Contribution constants
# PER_RETURN_POINTS must stay above HIGH_VALUE_WEIGHT / 2, otherwise adding a
# low-value return to a one-return window could lower the score.
# ---------------------------------------------------------------------------

PER_RETURN_POINTS: float = 8.0
EXCESS_RETURNS_STEP: float = 20.0
HIGH_VALUE_WEIGHT: float = 15.0
FLAG_POINTS: float = 10.0
FLAG_CAP: float = 30.0
ML_WEIGHT: float = 20.0


# ---------------------------------------------------------------------------
# Contributions
# ---------------------------------------------------------------------------


def _return_volume_points(bundle: CustomerSignalBundle, policy: Policy) -> float:
    points = bundle.window_return_count * PER_RETURN_POINTS
    if bundle.window_return_count > policy.max_returns_per_month:
        points += EXCESS_RETURNS_STEP
    return points


def _high_value_points(bundle: CustomerSignalBundle) -> float:
    return bundle.high_value_share * HIGH_VALUE_WEIGHT


def _flag_points(bundle: CustomerSignalBundle) -> float:
    return min(bundle.flag_count * FLAG_POINTS, FLAG_CAP)


def _ml_adjustment(bundle: CustomerSignalBundle, policy: Policy) -> float:
    """Signed term in [-ML_WEIGHT/2, +ML_WEIGHT/2]; zero when ML is off."""
    if not policy.enable_ml_scoring or bundle.ml_confidence is None:
        return 0.0
    return (bundle.ml_confidence - 0.5) * ML_WEIGHT


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def score_bundle(bundle: CustomerSignalBundle, policy: Policy) -> int:
    """
    Score a signal bundle under a policy.

    An imported baseline acts as a floor: the computed score never drops
    below it.

    Returns:
        Integer risk score clamped to [0, 100].
    """
    raw = (
        _return_volume_points(bundle, policy)
        + _high_value_points(bundle)
        + _flag_points(bundle)
        + _ml_adjustment(bundle, policy)
    )
    computed = int(round(min(max(raw, 0.0), 100.0)))
    return max(computed, bundle.baseline_score)


def compute_score(
    customer: Customer,
    policy: Policy,
    now: datetime | None = None,
    high_value_amount: float = HIGH_VALUE_AMOUNT,
) -> int:
    """
    Compute a customer's risk score without side effects.

    Args:
        customer:          Customer to score.
        policy:            Policy supplying ``maxReturnsPerMonth`` and ``enableMLScoring``.
        now:               Reference time for the trailing window (default: now, UTC).
        high_value_amount: Amount at or above which a return is high-value.

    Returns:
        Integer risk score in [0, 100].
    """
    bundle = build_signal_bundle(
        customer,
        now or datetime.now(timezone.utc),
        window_days=RETURN_WINDOW_DAYS,
        high_value_amount=high_value_amount,
    )
    return score_bundle(bundle, policy)


@dataclass(frozen=True)
class RiskAssessment:
    """A computed re-score that has not yet been written to the customer."""

    score: int
    status: CustomerStatus
    blocked_until: datetime | None
    policy_version: int
    entry: AuditLogEntry | None = None

    @property
    def entries(self) -> list[AuditLogEntry]:
        return [self.entry] if self.entry is not None else []


class RiskScoreAggregator:
    """Scores customers and keeps their cached score and status current."""

    def __init__(self, audit: AuditLog, high_value_amount: float = HIGH_VALUE_AMOUNT) -> None:
        self._audit = audit
        self.high_value_amount = high_value_amount

    def assess(
        self,
        customer: Customer,
        policy: Policy,
        actor: str = "risk_engine",
        now: datetime | None = None,
    ) -> RiskAssessment:
        """
        Re-score a customer without touching it or the audit log.

        The returned assessment carries the audit entry for the change (None
        when neither score nor status moved). Callers that need the entry in
        a larger batch write it themselves and then call ``apply``.
        """
        now = now or datetime.now(timezone.utc)
        bundle = build_signal_bundle(
            customer, now, high_value_amount=self.high_value_amount
        )
        score = score_bundle(bundle, policy)
        status = derive_customer_status(score, policy)

        blocked_until = customer.blocked_until
        if status is CustomerStatus.BLOCKED:
            if customer.status is not CustomerStatus.BLOCKED or blocked_until is None:
                blocked_until = now + timedelta(days=policy.blacklist_duration)
        else:
            blocked_until = None

        score_changed = score != customer.risk_score
        status_changed = status is not customer.status

        entry = None
        if score_changed or status_changed:
            details = bundle.to_dict()
            details["band"] = classify_band(score, policy).value
            if score_changed:
                action = "risk_score_changed"
                reason = f"Risk score {customer.risk_score} -> {score}"
            else:
                action = "customer_status_changed"
                reason = f"Risk score {score} re-banded under policy v{policy.version}"
            if status_changed:
                reason += f" (status {customer.status.value} -> {status.value})"
            entry = make_entry(
                actor=actor,
                action=action,
                target=customer.ref,
                reason=reason,
                policy_version=policy.version,
                details=details,
                timestamp=now,
            )

        return RiskAssessment(score, status, blocked_until, policy.version, entry)

    def apply(self, customer: Customer, assessment: RiskAssessment) -> int:
        """Write an already-audited assessment onto the customer."""
        if assessment.entry is not None:
            logger.info("Customer %s: %s", customer.customer_id, assessment.entry.reason)
        customer.risk_score = assessment.score
        customer.status = assessment.status
        customer.blocked_until = assessment.blocked_until
        customer.score_policy_version = assessment.policy_version
        return assessment.score

    def evaluate(
        self,
        customer: Customer,
        policy: Policy,
        actor: str = "risk_engine",
        now: datetime | None = None,
    ) -> int:
        """
        Re-score a customer and update its cached score and status.

        The caller must hold the customer's entity lock.

        Returns:
            The new risk score.

        Raises:
            AuditWriteError: The change could not be audited; customer untouched.
        """
        assessment = self.assess(customer, policy, actor=actor, now=now)
        self._audit.append_many(assessment.entries)
        return self.apply(customer, assessment)
