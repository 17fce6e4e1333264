"""
returnguard/policy/bands.py
============================
Risk Band Classification — ReturnGuard

Single source of truth for turning a 0–100 score into a band or a cached
customer status. Every component that needs a band calls these functions;
none of them compares raw scores against thresholds on its own.
"""

from returnguard.models import CustomerStatus, RiskBand
from returnguard.policy.store import Policy


def classify_band(score: int, policy: Policy) -> RiskBand:
    """
    Classify a risk score into a band using the policy thresholds.

        score <  autoApproveBelow     → low
        score <  highRiskThreshold    → medium
        score <  autoBlockThreshold   → high
        otherwise                     → auto_block
    """
    if score < policy.auto_approve_below:
        return RiskBand.LOW
    if score < policy.high_risk_threshold:
        return RiskBand.MEDIUM
    if score < policy.auto_block_threshold:
        return RiskBand.HIGH
    return RiskBand.AUTO_BLOCK


def derive_customer_status(score: int, policy: Policy) -> CustomerStatus:
    """Cached customer status for a score; re-deriving is idempotent."""
    if score >= policy.auto_block_threshold:
        return CustomerStatus.BLOCKED
    if score >= policy.high_risk_threshold:
        return CustomerStatus.UNDER_REVIEW
    if score >= policy.review_queue_threshold:
        return CustomerStatus.WARNED
    return CustomerStatus.NORMAL
