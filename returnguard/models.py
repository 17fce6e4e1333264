"""
returnguard/models.py
======================
Domain Data Model — ReturnGuard

Responsibility:
    - Define the enums for every status, band, recommendation and intent
    - Define the entities owned by the engine (Customer, ReturnRequest,
      ChatSession) and the immutable records it produces (ImageVerdict,
      AuditLogEntry)
    - Provide JSON-safe ``to_dict()`` views for the API layer

This module does NOT:
    - Compute scores, verdicts or transitions
    - Store entities (that is stores.py)
    - Read policy thresholds
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class CustomerStatus(str, Enum):
    """Cached customer standing, derived from risk score + policy."""

    NORMAL = "normal"
    WARNED = "warned"
    UNDER_REVIEW = "under_review"
    BLOCKED = "blocked"


class ReturnStatus(str, Enum):
    """Return request lifecycle states."""

    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


TERMINAL_RETURN_STATUSES: frozenset[ReturnStatus] = frozenset(
    {ReturnStatus.APPROVED, ReturnStatus.REJECTED}
)


class Recommendation(str, Enum):
    """Image / score recommendation, ordered by severity."""

    APPROVE = "approve"
    REVIEW = "review"
    REJECT = "reject"


_SEVERITY: dict[Recommendation, int] = {
    Recommendation.APPROVE: 0,
    Recommendation.REVIEW: 1,
    Recommendation.REJECT: 2,
}


def strictest(*recommendations: Recommendation) -> Recommendation:
    """Return the most severe recommendation (reject > review > approve)."""
    return max(recommendations, key=lambda rec: _SEVERITY[rec])


class SessionStatus(str, Enum):
    """Chat session lifecycle states."""

    ACTIVE = "active"
    FLAGGED = "flagged"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class RiskBand(str, Enum):
    """Risk band derived from a score via policy thresholds."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    AUTO_BLOCK = "auto_block"


class Intent(str, Enum):
    """Chat intents, in detection priority order."""

    RETURN = "return"
    EXCHANGE = "exchange"
    SIZE = "size"
    REFUND = "refund"
    DAMAGED = "damaged"
    GENERAL_INQUIRY = "general_inquiry"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Entity references
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class EntityRef:
    """Typed reference to an audited entity, e.g. ("return", "RET-1A2B")."""

    kind: str
    entity_id: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.entity_id}"


# ---------------------------------------------------------------------------
# Customer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReturnRecord:
    """One entry in a customer's return history."""

    return_id: str
    amount: float
    filed_at: datetime
    reason: str = ""


@dataclass
class Customer:
    customer_id: str
    name: str = ""
    returns: list[ReturnRecord] = field(default_factory=list)
    risk_score: int = 0
    flags: list[str] = field(default_factory=list)
    status: CustomerStatus = CustomerStatus.NORMAL
    ml_confidence: float | None = None
    blocked_until: datetime | None = None
    score_policy_version: int | None = None
    baseline_score: int = 0

    @property
    def ref(self) -> EntityRef:
        return EntityRef("customer", self.customer_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "name": self.name,
            "risk_score": self.risk_score,
            "status": self.status.value,
            "flags": list(self.flags),
            "return_count": len(self.returns),
            "ml_confidence": self.ml_confidence,
            "blocked_until": _iso(self.blocked_until),
            "baseline_score": self.baseline_score,
        }


# ---------------------------------------------------------------------------
# Image verdict
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageVerdict:
    """Fused image analysis result. Never mutated; re-analysis makes a new one."""

    label: str
    confidence: float
    damage_detected: bool
    authenticity: float
    recommendation: Recommendation
    reasons: tuple[str, ...]
    policy_version: int
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "confidence": self.confidence,
            "damage_detected": self.damage_detected,
            "authenticity": self.authenticity,
            "recommendation": self.recommendation.value,
            "reasons": list(self.reasons),
            "policy_version": self.policy_version,
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# Return request
# ---------------------------------------------------------------------------


@dataclass
class ReturnRequest:
    return_id: str
    customer_id: str
    reason: str
    amount: float
    filed_at: datetime
    images: list[str] = field(default_factory=list)
    verdict: ImageVerdict | None = None
    verdicts: list[ImageVerdict] = field(default_factory=list)
    status: ReturnStatus = ReturnStatus.PENDING
    decided_by: str | None = None
    degraded: bool = False

    @property
    def ref(self) -> EntityRef:
        return EntityRef("return", self.return_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RETURN_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "return_id": self.return_id,
            "customer_id": self.customer_id,
            "reason": self.reason,
            "amount": self.amount,
            "images": list(self.images),
            "status": self.status.value,
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "verdict_count": len(self.verdicts),
            "decided_by": self.decided_by,
            "degraded": self.degraded,
            "filed_at": _iso(self.filed_at),
        }


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChatMessage:
    message_id: str
    text: str
    intent: Intent
    flagged: bool
    response: str
    created_at: datetime
    order_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "text": self.text,
            "intent": self.intent.value,
            "flagged": self.flagged,
            "response": self.response,
            "order_ref": self.order_ref,
            "created_at": _iso(self.created_at),
        }


@dataclass
class ChatSession:
    session_id: str
    customer_id: str
    risk_score: int
    started_at: datetime
    messages: list[ChatMessage] = field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE
    last_activity: datetime | None = None

    @property
    def ref(self) -> EntityRef:
        return EntityRef("chat_session", self.session_id)

    @property
    def flagged_count(self) -> int:
        return sum(1 for msg in self.messages if msg.flagged)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "customer_id": self.customer_id,
            "risk_score": self.risk_score,
            "status": self.status.value,
            "messages": [msg.to_dict() for msg in self.messages],
            "started_at": _iso(self.started_at),
            "last_activity": _iso(self.last_activity),
        }


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit record. Never mutated or deleted."""

    entry_id: str
    timestamp: datetime
    actor: str
    action: str
    target: EntityRef
    reason: str
    policy_version: int | None = None
    details: tuple[tuple[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "timestamp": _iso(self.timestamp),
            "actor": self.actor,
            "action": self.action,
            "target": str(self.target),
            "reason": self.reason,
            "policy_version": self.policy_version,
            "details": dict(self.details),
        }
