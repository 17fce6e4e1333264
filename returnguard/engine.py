"""
returnguard/engine.py
======================
Decision Engine Facade — ReturnGuard

Responsibility (the only entry point the API / UI collaborator calls):
    1. Resolve entity ids (UnknownEntity on a miss)
    2. Run external classifier I/O BEFORE taking any entity lock
    3. Take the per-entity locks, snapshot the active policy once,
       and hand the decision to the owning component
    4. Keep decision components apart: they share only the PolicyStore,
       the AuditLog and the entity stores

External interface:
    submit_return, submit_image_for_analysis, decide_return,
    post_chat_message, get_customer_risk, update_policy, get_audit_trail
plus customer / chat-session lifecycle helpers and reporting views.

This layer MUST NOT:
    - Score, fuse, or route on its own
    - Swallow InvalidPolicy / InvalidTransition / AuditWriteError
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from returnguard import reporting
from returnguard.audit.log import AuditLog, AuditSink, JsonlAuditSink, make_entry
from returnguard.chat.router import ChatRiskRouter
from returnguard.config import Settings
from returnguard.errors import AnalysisUnavailable
from returnguard.imaging.classifier import ClassifierOutput, ImageClassifier, build_classifier
from returnguard.imaging.fuser import fuse
from returnguard.locks import EntityLocks
from returnguard.models import (
    AuditLogEntry,
    ChatMessage,
    ChatSession,
    Customer,
    CustomerStatus,
    EntityRef,
    ImageVerdict,
    ReturnRecord,
    ReturnRequest,
    ReturnStatus,
    SessionStatus,
)
from returnguard.policy.bands import classify_band, derive_customer_status
from returnguard.policy.store import POLICY_REF, Policy, PolicyStore
from returnguard.returns.engine import ENGINE_ACTOR, ReturnDecisionEngine
from returnguard.risk.scorer import RiskScoreAggregator
from returnguard.stores import EntityStore

logger = logging.getLogger("returnguard.engine")


class ReturnGuardEngine:
    """Owns the entity stores and routes every external event to its component."""

    def __init__(
        self,
        settings: Settings | None = None,
        classifier: ImageClassifier | None = None,
        audit_sink: AuditSink | None = None,
        initial_policy: Policy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.classifier = classifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.audit = AuditLog(sink=audit_sink)
        self.policies = PolicyStore(self.audit, initial=initial_policy)
        self.risk = RiskScoreAggregator(self.audit, self.settings.high_value_amount)
        self.returns_engine = ReturnDecisionEngine(self.audit)
        self.chat = ChatRiskRouter(self.audit)
        self.locks = EntityLocks()

        self.customers: EntityStore[Customer] = EntityStore("customer", lambda c: c.customer_id)
        self.returns: EntityStore[ReturnRequest] = EntityStore("return", lambda r: r.return_id)
        self.sessions: EntityStore[ChatSession] = EntityStore("chat_session", lambda s: s.session_id)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReturnGuardEngine":
        """Build an engine with the configured classifier and audit sink."""
        sink = JsonlAuditSink(settings.audit_log_path) if settings.audit_log_path else None
        return cls(settings=settings, classifier=build_classifier(settings), audit_sink=sink)

    # ---- customers -------------------------------------------------------

    def register_customer(
        self,
        customer_id: str,
        name: str = "",
        returns: list[ReturnRecord] | None = None,
        flags: list[str] | None = None,
        ml_confidence: float | None = None,
        risk_score: int | None = None,
        actor: str = "system",
    ) -> Customer:
        """
        Add a customer to the engine.

        With ``risk_score`` the given score is imported (e.g. from a legacy
        system) and kept as the customer's baseline: later re-scores never
        drop below it. Otherwise the customer is scored from history and
        flags.
        """
        if customer_id in self.customers:
            raise ValueError(f"customer {customer_id!r} already exists")
        if risk_score is not None and not 0 <= risk_score <= 100:
            raise ValueError(f"risk_score must lie in [0, 100], got {risk_score}")

        customer = Customer(
            customer_id=customer_id,
            name=name,
            returns=list(returns or []),
            flags=list(dict.fromkeys(flags or [])),
            ml_confidence=ml_confidence,
        )
        now = self._clock()

        with self.locks.hold(customer.ref):
            policy = self.policies.get_active()
            if risk_score is None:
                self.risk.evaluate(customer, policy, actor=actor, now=now)
            else:
                customer.baseline_score = customer.risk_score = int(risk_score)
                customer.status = derive_customer_status(customer.risk_score, policy)
                customer.score_policy_version = policy.version
                if customer.status is CustomerStatus.BLOCKED:
                    customer.blocked_until = now + timedelta(days=policy.blacklist_duration)
            self.audit.append(
                make_entry(
                    actor=actor,
                    action="customer_registered",
                    target=customer.ref,
                    reason=f"Registered with risk score {customer.risk_score}",
                    policy_version=policy.version,
                    timestamp=now,
                )
            )
            self.customers.add(customer)

        return customer

    def add_customer_flag(self, customer_id: str, flag: str, actor: str = "operator") -> Customer:
        """Attach a behavioral flag and re-score the customer."""
        flag = flag.strip()
        if not flag:
            raise ValueError("Flag must be non-empty")

        customer = self.customers.get(customer_id)
        with self.locks.hold(customer.ref):
            if flag in customer.flags:
                return customer
            policy = self.policies.get_active()
            now = self._clock()
            flagged = make_entry(
                actor=actor,
                action="customer_flagged",
                target=customer.ref,
                reason=flag,
                policy_version=policy.version,
                timestamp=now,
            )
            assessment = self.risk.assess(
                replace(customer, flags=customer.flags + [flag]), policy, actor=actor, now=now
            )
            self.audit.append_many([flagged] + assessment.entries)
            customer.flags.append(flag)
            self.risk.apply(customer, assessment)
        return customer

    def refresh_customer_risk(self, customer_id: str, actor: str = "risk_engine") -> dict[str, Any]:
        customer = self.customers.get(customer_id)
        with self.locks.hold(customer.ref):
            self.risk.evaluate(customer, self.policies.get_active(), actor=actor, now=self._clock())
        return self.get_customer_risk(customer_id)

    def get_customer_risk(self, customer_id: str) -> dict[str, Any]:
        customer = self.customers.get(customer_id)
        policy = self.policies.get_active()
        return {
            "customer_id": customer.customer_id,
            "score": customer.risk_score,
            "status": customer.status.value,
            "band": classify_band(customer.risk_score, policy).value,
            "flags": list(customer.flags),
            "blocked_until": customer.blocked_until.isoformat() if customer.blocked_until else None,
        }

    # ---- returns ---------------------------------------------------------

    def submit_return(
        self,
        customer_id: str,
        reason: str,
        amount: float,
        images: list[str] | None = None,
    ) -> ReturnRequest:
        """
        File a return and decide it when no image verdict is pending.

        The decision uses the customer's score at filing time. The re-score
        that includes the new return is computed up front and audited in the
        same batch as the filing, so an audit failure leaves both the return
        store and the customer untouched.
        """
        if not reason or not reason.strip():
            raise ValueError("A return reason is required")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
            raise ValueError(f"Return amount must be a positive number, got {amount!r}")

        customer = self.customers.get(customer_id)
        now = self._clock()
        request = ReturnRequest(
            return_id=f"RET-{uuid4().hex[:8].upper()}",
            customer_id=customer.customer_id,
            reason=reason.strip(),
            amount=float(amount),
            filed_at=now,
            images=list(images or []),
        )

        with self.locks.hold(customer.ref, request.ref):
            policy = self.policies.get_active()
            record = ReturnRecord(request.return_id, request.amount, now, request.reason)
            assessment = self.risk.assess(
                replace(customer, returns=customer.returns + [record]), policy, now=now
            )
            self.returns_engine.file(
                request, customer, policy, now=now, related=assessment.entries
            )
            self.returns.add(request)
            customer.returns.append(record)
            self.risk.apply(customer, assessment)

        return request

    def _classify(self, image_bytes: bytes, policy: Policy) -> ClassifierOutput:
        if not policy.enable_image_analysis:
            raise AnalysisUnavailable("Image analysis is disabled by policy")
        if self.classifier is None:
            raise AnalysisUnavailable("No image classifier is configured")
        try:
            return self.classifier.classify(image_bytes)
        except AnalysisUnavailable:
            raise
        except Exception as exc:
            logger.error("Classifier raised unexpectedly: %s", exc, exc_info=True)
            raise AnalysisUnavailable(f"Classifier error: {exc}") from exc

    def submit_image_for_analysis(self, return_id: str, image_bytes: bytes) -> ImageVerdict:
        """
        Classify an item photo, fuse a verdict, and decide a pending return.

        Raises:
            UnknownEntity: No such return.
            InvalidTransition: The return is already approved or rejected.
            AnalysisUnavailable: Classifier failed or analysis is disabled;
                the return has already been decided score-only (degraded)
                and is available as ``exc.return_request``.
        """
        request = self.returns.get(return_id)
        customer = self.customers.get(request.customer_id)

        if request.is_terminal:
            with self.locks.hold(request.ref):
                self.returns_engine.refuse_transition(
                    request, "attach_verdict", ENGINE_ACTOR,
                    self.policies.get_active(), self._clock(),
                )

        # External I/O: no entity lock held here
        failure: AnalysisUnavailable | None = None
        output: ClassifierOutput | None = None
        try:
            output = self._classify(image_bytes, self.policies.get_active())
        except AnalysisUnavailable as exc:
            failure = exc

        with self.locks.hold(customer.ref, request.ref):
            policy = self.policies.get_active()
            now = self._clock()
            if output is not None:
                try:
                    verdict = fuse(output, policy, now=now)
                except AnalysisUnavailable as exc:
                    failure = exc
                else:
                    self.returns_engine.attach_verdict(request, customer, policy, verdict, now=now)
                    return verdict

            self.returns_engine.record_degraded(request, customer, policy, failure.message, now=now)
            failure.return_request = request
            raise failure

    def decide_return(
        self,
        return_id: str,
        human_decision: str | ReturnStatus | None = None,
        reason: str | None = None,
        actor: str = "operator",
    ) -> ReturnRequest:
        """
        Decide a return automatically (no ``human_decision``) or apply a
        human override ("approved" / "rejected", reason required).
        """
        request = self.returns.get(return_id)
        customer = self.customers.get(request.customer_id)

        decision: ReturnStatus | None = None
        if human_decision is not None:
            try:
                decision = ReturnStatus(human_decision)
            except ValueError:
                raise ValueError(
                    f"Unknown decision {human_decision!r}; expected 'approved' or 'rejected'"
                ) from None

        with self.locks.hold(customer.ref, request.ref):
            policy = self.policies.get_active()
            now = self._clock()
            if decision is None:
                return self.returns_engine.evaluate(
                    request, customer, policy, verdict=request.verdict, now=now,
                )
            return self.returns_engine.override(request, decision, reason, actor, policy, now=now)

    # ---- chat ------------------------------------------------------------

    def open_chat_session(self, customer_id: str) -> ChatSession:
        customer = self.customers.get(customer_id)
        with self.locks.hold(customer.ref):
            session = self.chat.open_session(customer, self.policies.get_active(), now=self._clock())
            self.sessions.add(session)
        return session

    def post_chat_message(self, session_id: str, text: str) -> ChatMessage:
        session = self.sessions.get(session_id)
        with self.locks.hold(session.ref):
            return self.chat.route(session, text, self.policies.get_active(), now=self._clock())

    def _session_transition(
        self, session_id: str, target: SessionStatus, actor: str, reason: str,
    ) -> ChatSession:
        session = self.sessions.get(session_id)
        with self.locks.hold(session.ref):
            return self.chat.transition(
                session, target, actor, reason, self.policies.get_active(), now=self._clock(),
            )

    def resolve_chat_session(self, session_id: str, actor: str, reason: str) -> ChatSession:
        return self._session_transition(session_id, SessionStatus.RESOLVED, actor, reason)

    def escalate_chat_session(self, session_id: str, actor: str, reason: str) -> ChatSession:
        return self._session_transition(session_id, SessionStatus.ESCALATED, actor, reason)

    # ---- policy ----------------------------------------------------------

    def get_policy(self) -> Policy:
        return self.policies.get_active()

    def update_policy(self, fields: dict[str, Any], actor: str = "risk_manager") -> Policy:
        return self.policies.propose(fields, actor=actor)

    def reset_policy(self, actor: str = "risk_manager") -> Policy:
        return self.policies.reset(actor=actor)

    # ---- audit -----------------------------------------------------------

    def get_audit_trail(self, kind: str, entity_id: str) -> list[AuditLogEntry]:
        """Audit entries for one entity, oldest first."""
        if kind == POLICY_REF.kind:
            return self.audit.query_by_target(POLICY_REF)
        stores = {store.kind: store for store in (self.customers, self.returns, self.sessions)}
        if kind not in stores:
            raise ValueError(f"Unknown entity kind {kind!r}")
        stores[kind].get(entity_id)
        return self.audit.query_by_target(EntityRef(kind, entity_id))

    def recent_audit(self, limit: int = 20) -> list[AuditLogEntry]:
        return self.audit.recent(limit)

    # ---- reporting -------------------------------------------------------

    def dashboard_stats(self, now: datetime | None = None) -> dict[str, int]:
        return reporting.dashboard_stats(
            self.customers, self.returns, self.policies.get_active(), now or self._clock(),
        )

    def flagged_customers(self, band: str | None = None, status: str | None = None) -> list[dict[str, Any]]:
        return reporting.flagged_customers(
            self.customers, self.policies.get_active(), band=band, status=status,
        )

    def chat_analytics(self) -> dict[str, Any]:
        return reporting.chat_analytics(self.sessions)
