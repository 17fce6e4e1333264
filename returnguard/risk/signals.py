"""
returnguard/risk/signals.py
============================
Customer Risk Signals — ReturnGuard

Responsibility:
    - Reduce a Customer's return history and flags to a typed signal bundle
    - Apply the trailing return window relative to an explicit ``now``
    - Validate raw inputs (amounts, ML confidence) before scoring

The bundle is what the scorer consumes and what audit entries record, so a
past score can be replayed from the bundle alone.

This module does NOT:
    - Compute the risk score (that is scorer.py)
    - Read or write customer status
    - Append audit entries
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from returnguard.models import Customer

logger = logging.getLogger("returnguard.risk.signals")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

RETURN_WINDOW_DAYS: int = 30
HIGH_VALUE_AMOUNT: float = 2500.0


# ---------------------------------------------------------------------------
# Signal bundle
# ---------------------------------------------------------------------------


class CustomerSignalBundle:
    """
    Immutable container for all inputs to the risk scorer.

    Attributes:
        window_return_count:  Returns filed inside the trailing window
        high_value_count:     Window returns at or above the high-value amount
        flag_count:           Distinct behavioral flags on the customer
        ml_confidence:        External model fraud confidence (0–1) or None
        baseline_score:       Imported score the result may not drop below
    """

    __slots__ = (
        "window_return_count",
        "high_value_count",
        "flag_count",
        "ml_confidence",
        "baseline_score",
    )

    def __init__(
        self,
        window_return_count: int,
        high_value_count: int,
        flag_count: int,
        ml_confidence: float | None,
        baseline_score: int = 0,
    ) -> None:
        self.window_return_count = window_return_count
        self.high_value_count = high_value_count
        self.flag_count = flag_count
        self.ml_confidence = ml_confidence
        self.baseline_score = baseline_score

    @property
    def high_value_share(self) -> float:
        if self.window_return_count == 0:
            return 0.0
        return self.high_value_count / self.window_return_count

    def to_dict(self) -> dict[str, Any]:
        return {attr: getattr(self, attr) for attr in self.__slots__}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CustomerSignalBundle):
            return NotImplemented
        return all(
            getattr(self, attr) == getattr(other, attr)
            for attr in self.__slots__
        )

    def __repr__(self) -> str:
        fields = ", ".join(
            f"{attr}={getattr(self, attr)!r}" for attr in self.__slots__
        )
        return f"CustomerSignalBundle({fields})"


# ---------------------------------------------------------------------------
# Factory / validator
# ---------------------------------------------------------------------------


def build_signal_bundle(
    customer: Customer,
    now: datetime,
    window_days: int = RETURN_WINDOW_DAYS,
    high_value_amount: float = HIGH_VALUE_AMOUNT,
) -> CustomerSignalBundle:
    """
    Build a validated signal bundle for one customer.

    Args:
        customer:          Customer whose history is summarized.
        now:               Reference time for the trailing window.
        window_days:       Length of the trailing window in days.
        high_value_amount: Amount at or above which a return is high-value.

    Returns:
        CustomerSignalBundle ready for scoring.

    Raises:
        ValueError: If a return amount is negative or the ML confidence
            lies outside [0, 1].
    """
    window_start = now - timedelta(days=window_days)

    window_count = 0
    high_value = 0
    for record in customer.returns:
        if record.amount < 0:
            raise ValueError(
                f"Return {record.return_id} has a negative amount: {record.amount}"
            )
        if window_start <= record.filed_at <= now:
            window_count += 1
            if record.amount >= high_value_amount:
                high_value += 1

    ml_confidence = customer.ml_confidence
    if ml_confidence is not None:
        if isinstance(ml_confidence, bool) or not isinstance(ml_confidence, (int, float)):
            raise ValueError(
                f"ml_confidence must be a number, got {type(ml_confidence).__name__}"
            )
        ml_confidence = float(ml_confidence)
        if ml_confidence < 0.0 or ml_confidence > 1.0:
            raise ValueError(f"ml_confidence out of range: {ml_confidence}")

    bundle = CustomerSignalBundle(
        window_return_count=window_count,
        high_value_count=high_value,
        flag_count=len(set(customer.flags)),
        ml_confidence=ml_confidence,
        baseline_score=customer.baseline_score,
    )

    logger.debug("Signal bundle for %s: %s", customer.customer_id, bundle)
    return bundle
