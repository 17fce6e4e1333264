"""
returnguard/reporting.py
=========================
Operator Reporting Views — ReturnGuard

Read-only aggregates for the dashboard, the flagged-customer list and the
chatbot analytics panel. Every band comes from classify_band so the views
never drift from the decision logic.
"""

from collections import Counter
from datetime import datetime
from typing import Any, Iterable

from returnguard.models import (
    ChatSession,
    Customer,
    CustomerStatus,
    Intent,
    ReturnRequest,
    ReturnStatus,
    RiskBand,
    SessionStatus,
)
from returnguard.policy.bands import classify_band
from returnguard.policy.store import Policy

_HIGH_BANDS: frozenset[RiskBand] = frozenset({RiskBand.HIGH, RiskBand.AUTO_BLOCK})


def dashboard_stats(
    customers: Iterable[Customer],
    returns: Iterable[ReturnRequest],
    policy: Policy,
    now: datetime,
) -> dict[str, int]:
    """Headline counters: today's returns, high-risk accounts, review queue, blacklist."""
    customers = list(customers)
    returns = list(returns)
    return {
        "total_returns_today": sum(1 for r in returns if r.filed_at.date() == now.date()),
        "high_risk_accounts": sum(
            1 for c in customers if classify_band(c.risk_score, policy) in _HIGH_BANDS
        ),
        "manual_review_queue": sum(1 for r in returns if r.status is ReturnStatus.UNDER_REVIEW),
        "blacklisted_customers": sum(1 for c in customers if c.status is CustomerStatus.BLOCKED),
    }


def flagged_customers(
    customers: Iterable[Customer],
    policy: Policy,
    band: str | None = None,
    status: str | None = None,
) -> list[dict[str, Any]]:
    """
    Customers whose status is not normal, highest score first.

    Raises:
        ValueError: On an unknown band or status filter.
    """
    band_filter = RiskBand(band) if band else None
    status_filter = CustomerStatus(status) if status else None

    rows: list[dict[str, Any]] = []
    for customer in customers:
        if customer.status is CustomerStatus.NORMAL:
            continue
        customer_band = classify_band(customer.risk_score, policy)
        if band_filter is not None and customer_band is not band_filter:
            continue
        if status_filter is not None and customer.status is not status_filter:
            continue
        row = customer.to_dict()
        row["band"] = customer_band.value
        rows.append(row)

    rows.sort(key=lambda row: (-row["risk_score"], row["customer_id"]))
    return rows


def chat_analytics(sessions: Iterable[ChatSession]) -> dict[str, Any]:
    """Intent distribution, flagged-message volume and sessions needing attention."""
    sessions = list(sessions)
    intents: Counter[str] = Counter()
    flagged_messages = 0
    total_messages = 0

    for session in sessions:
        for message in session.messages:
            total_messages += 1
            intents[message.intent.value] += 1
            if message.flagged:
                flagged_messages += 1

    distribution = [
        {
            "intent": intent.value,
            "count": intents[intent.value],
            "percentage": round(100.0 * intents[intent.value] / total_messages, 1)
            if total_messages else 0.0,
        }
        for intent in Intent
    ]

    return {
        "total_sessions": len(sessions),
        "total_messages": total_messages,
        "flagged_messages": flagged_messages,
        "intents": distribution,
        "flagged_sessions": sorted(
            s.session_id for s in sessions if s.status is SessionStatus.FLAGGED
        ),
        "escalated_sessions": sorted(
            s.session_id for s in sessions if s.status is SessionStatus.ESCALATED
        ),
        "resolved_sessions": sum(1 for s in sessions if s.status is SessionStatus.RESOLVED),
    }
