"""
returnguard/returns/engine.py
==============================
Return Decision Engine — ReturnGuard

Responsibility:
    - Own the return state machine:
          pending → under_review → {approved, rejected}
          pending → {approved, rejected}
    - Combine the customer's risk band with an optional image verdict
    - Accept human overrides (reason required, idempotent)
    - Audit every transition, and every rejected transition attempt

Decision table (policy thresholds via classify_band):
    auto_block band               → rejected, whatever the verdict says
    otherwise: score default      = approve (low band) | review (other bands)
               final              = strictest(verdict, score default)
               approve → approved, review → under_review, reject → rejected

Callers (the engine facade) hold the return's and the customer's entity
locks for the whole call. Audit entries are written before the request is
mutated, so an audit failure leaves the request untouched.

This module does NOT:
    - Call the image classifier or fuse verdicts
    - Re-score customers
    - Look up entities by id
"""

import logging
from datetime import datetime, timezone
from typing import Any

from returnguard.audit.log import AuditLog, make_entry
from returnguard.errors import InvalidTransition
from returnguard.models import (
    AuditLogEntry,
    Customer,
    ImageVerdict,
    Recommendation,
    ReturnRequest,
    ReturnStatus,
    RiskBand,
    strictest,
)
from returnguard.policy.bands import classify_band
from returnguard.policy.store import Policy

logger = logging.getLogger("returnguard.returns")

ENGINE_ACTOR = "decision_engine"

_OUTCOME: dict[Recommendation, ReturnStatus] = {
    Recommendation.APPROVE: ReturnStatus.APPROVED,
    Recommendation.REVIEW: ReturnStatus.UNDER_REVIEW,
    Recommendation.REJECT: ReturnStatus.REJECTED,
}

HUMAN_DECISIONS: frozenset[ReturnStatus] = frozenset(
    {ReturnStatus.APPROVED, ReturnStatus.REJECTED}
)


def score_default(band: RiskBand) -> Recommendation:
    """Recommendation implied by the risk band alone."""
    if band is RiskBand.AUTO_BLOCK:
        return Recommendation.REJECT
    if band is RiskBand.LOW:
        return Recommendation.APPROVE
    return Recommendation.REVIEW


class ReturnDecisionEngine:
    def __init__(self, audit: AuditLog) -> None:
        self._audit = audit

    # ---- internal helpers ------------------------------------------------

    def _signals(
        self,
        request: ReturnRequest,
        customer: Customer,
        policy: Policy,
        verdict: ImageVerdict | None,
        degraded: bool,
    ) -> dict[str, Any]:
        return {
            "risk_score": customer.risk_score,
            "band": classify_band(customer.risk_score, policy).value,
            "verdict": verdict.recommendation.value if verdict else None,
            "degraded": degraded,
            "from_status": request.status.value,
        }

    def _commit(
        self,
        request: ReturnRequest,
        status: ReturnStatus,
        entries: list[AuditLogEntry],
        decided_by: str | None,
        verdict: ImageVerdict | None = None,
        degraded: bool = False,
    ) -> ReturnRequest:
        self._audit.append_many(entries)

        if verdict is not None:
            request.verdicts.append(verdict)
            request.verdict = verdict
        if status is not request.status:
            logger.info(
                "Return %s: %s -> %s (by %s)",
                request.return_id, request.status.value, status.value, decided_by,
            )
            request.status = status
            request.decided_by = decided_by
        request.degraded = request.degraded or degraded
        return request

    def refuse_transition(
        self,
        request: ReturnRequest,
        requested: str,
        actor: str,
        policy: Policy,
        now: datetime,
    ) -> None:
        """Audit the refused attempt, then raise InvalidTransition."""
        self._audit.append(
            make_entry(
                actor=actor,
                action="transition_rejected",
                target=request.ref,
                reason=f"Refused {request.status.value} -> {requested}",
                policy_version=policy.version,
                timestamp=now,
            )
        )
        logger.warning(
            "Return %s: refused transition %s -> %s by %s",
            request.return_id, request.status.value, requested, actor,
        )
        raise InvalidTransition("return", request.return_id, request.status.value, requested)

    def _decision_entry(
        self,
        request: ReturnRequest,
        customer: Customer,
        policy: Policy,
        verdict: ImageVerdict | None,
        degraded: bool,
        now: datetime,
    ) -> tuple[ReturnStatus, AuditLogEntry]:
        band = classify_band(customer.risk_score, policy)

        if band is RiskBand.AUTO_BLOCK:
            status = ReturnStatus.REJECTED
            reason = (
                f"Risk score {customer.risk_score} in auto-block band "
                f"(>= {policy.auto_block_threshold})"
            )
        else:
            default = score_default(band)
            if verdict is not None:
                recommendation = strictest(verdict.recommendation, default)
                reason = (
                    f"Risk band {band.value} ({default.value}) + image verdict "
                    f"{verdict.recommendation.value} -> {recommendation.value}"
                )
            else:
                recommendation = default
                reason = f"Risk band {band.value}, score-only -> {recommendation.value}"
            status = _OUTCOME[recommendation]

        if degraded:
            reason += " [degraded: image analysis unavailable]"

        details = self._signals(request, customer, policy, verdict, degraded)
        details["to_status"] = status.value
        entry = make_entry(
            actor=ENGINE_ACTOR,
            action="return_decided",
            target=request.ref,
            reason=reason,
            policy_version=policy.version,
            details=details,
            timestamp=now,
        )
        return status, entry

    # ---- public API ------------------------------------------------------

    def file(
        self,
        request: ReturnRequest,
        customer: Customer,
        policy: Policy,
        now: datetime | None = None,
        related: list[AuditLogEntry] | None = None,
    ) -> ReturnRequest:
        """
        Record a newly filed return and decide it if no verdict is pending.

        Auto-block customers are rejected immediately. When image analysis
        is enabled and images were declared, the request stays pending until
        ``attach_verdict`` (or the degraded fallback) runs.

        ``related`` entries (the customer re-score) are written in the same
        audit batch as the filing and decision.
        """
        now = now or datetime.now(timezone.utc)
        filed = make_entry(
            actor=customer.customer_id,
            action="return_filed",
            target=request.ref,
            reason=f"{request.reason} ({request.amount:.2f}, {len(request.images)} image(s))",
            policy_version=policy.version,
            details={"risk_score": customer.risk_score},
            timestamp=now,
        )

        band = classify_band(customer.risk_score, policy)
        awaiting_images = policy.enable_image_analysis and bool(request.images)

        if band is not RiskBand.AUTO_BLOCK and awaiting_images:
            logger.info(
                "Return %s filed; awaiting analysis of %d image(s).",
                request.return_id, len(request.images),
            )
            return self._commit(
                request, ReturnStatus.PENDING, [filed] + list(related or []), decided_by=None,
            )

        status, decided = self._decision_entry(request, customer, policy, None, False, now)
        return self._commit(
            request, status, [filed, decided] + list(related or []), decided_by=ENGINE_ACTOR,
        )

    def evaluate(
        self,
        request: ReturnRequest,
        customer: Customer,
        policy: Policy,
        verdict: ImageVerdict | None = None,
        degraded: bool = False,
        now: datetime | None = None,
    ) -> ReturnRequest:
        """
        Decide a pending return from its risk band and optional verdict.

        Raises:
            InvalidTransition: The request is no longer pending.
        """
        now = now or datetime.now(timezone.utc)
        if request.status is not ReturnStatus.PENDING:
            self.refuse_transition(request, "evaluate", ENGINE_ACTOR, policy, now)

        status, entry = self._decision_entry(request, customer, policy, verdict, degraded, now)
        return self._commit(
            request, status, [entry], decided_by=ENGINE_ACTOR,
            verdict=verdict, degraded=degraded,
        )

    def attach_verdict(
        self,
        request: ReturnRequest,
        customer: Customer,
        policy: Policy,
        verdict: ImageVerdict,
        now: datetime | None = None,
    ) -> ReturnRequest:
        """
        Record a new verdict; decide the return if it is still pending.

        Under-review returns keep their state (a human decides). Verdicts
        for terminal returns are refused.
        """
        now = now or datetime.now(timezone.utc)
        if request.is_terminal:
            self.refuse_transition(request, "attach_verdict", ENGINE_ACTOR, policy, now)

        recorded = make_entry(
            actor=ENGINE_ACTOR,
            action="image_verdict_recorded",
            target=request.ref,
            reason=f"{verdict.recommendation.value}: {'; '.join(verdict.reasons)}",
            policy_version=verdict.policy_version,
            details={
                "label": verdict.label,
                "confidence": verdict.confidence,
                "authenticity": verdict.authenticity,
                "damage_detected": verdict.damage_detected,
            },
            timestamp=now,
        )

        if request.status is ReturnStatus.PENDING:
            status, decided = self._decision_entry(request, customer, policy, verdict, False, now)
            return self._commit(
                request, status, [recorded, decided], decided_by=ENGINE_ACTOR, verdict=verdict,
            )

        return self._commit(
            request, request.status, [recorded], decided_by=request.decided_by, verdict=verdict,
        )

    def record_degraded(
        self,
        request: ReturnRequest,
        customer: Customer,
        policy: Policy,
        message: str,
        now: datetime | None = None,
    ) -> ReturnRequest:
        """
        Fallback when image analysis is unavailable.

        Pending returns are decided score-only and marked degraded; other
        non-terminal returns only get an audit note.
        """
        now = now or datetime.now(timezone.utc)
        logger.warning("Return %s: image analysis unavailable (%s)", request.return_id, message)

        if request.status is ReturnStatus.PENDING:
            return self.evaluate(request, customer, policy, degraded=True, now=now)
        if request.is_terminal:
            self.refuse_transition(request, "attach_verdict", ENGINE_ACTOR, policy, now)

        note = make_entry(
            actor=ENGINE_ACTOR,
            action="image_analysis_unavailable",
            target=request.ref,
            reason=message,
            policy_version=policy.version,
            timestamp=now,
        )
        return self._commit(request, request.status, [note], decided_by=request.decided_by)

    def override(
        self,
        request: ReturnRequest,
        decision: ReturnStatus,
        reason: str | None,
        actor: str,
        policy: Policy,
        now: datetime | None = None,
    ) -> ReturnRequest:
        """
        Apply a human decision.

        Re-submitting the decision a return already carries is a no-op.

        Raises:
            ValueError: Missing reason or a decision other than approved/rejected.
            InvalidTransition: A different decision on a terminal return.
        """
        if decision not in HUMAN_DECISIONS:
            raise ValueError(
                f"Human decision must be 'approved' or 'rejected', got {decision.value!r}"
            )
        if not reason or not reason.strip():
            raise ValueError("A reason is required for a human override")

        now = now or datetime.now(timezone.utc)

        if request.status is decision:
            logger.info(
                "Return %s already %s; override by %s ignored.",
                request.return_id, decision.value, actor,
            )
            return request
        if request.is_terminal:
            self.refuse_transition(request, decision.value, actor, policy, now)

        entry = make_entry(
            actor=actor,
            action="return_overridden",
            target=request.ref,
            reason=reason.strip(),
            policy_version=policy.version,
            details={"from_status": request.status.value, "to_status": decision.value},
            timestamp=now,
        )
        return self._commit(request, decision, [entry], decided_by=actor)
