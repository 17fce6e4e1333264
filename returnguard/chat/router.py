"""
returnguard/chat/router.py
===========================
Chat Risk Router — ReturnGuard

Responsibility:
    - Own the chat session state machine:
          active    → {flagged, resolved}
          flagged   → {escalated, resolved}
          escalated → resolved
          resolved  is terminal
    - Pick a canned response from {intent, risk band}
    - Flag messages from high-risk sessions and escalate on request

Routing:
    session risk snapshot > highRiskThreshold
        → canned deferral, message flagged
        → 3rd flagged message moves an active session to flagged
        → on an already-flagged session, a refund / urgency message escalates
    otherwise
        → intent-specific template, message not flagged

The session's risk score is the snapshot taken when the session opened;
the threshold comes from the policy passed in for this message.
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from returnguard.audit.log import AuditLog, make_entry
from returnguard.chat.intent import detect_intent, extract_order_ref, wants_escalation
from returnguard.errors import InvalidTransition
from returnguard.models import (
    AuditLogEntry,
    ChatMessage,
    ChatSession,
    Customer,
    Intent,
    SessionStatus,
)
from returnguard.policy.bands import classify_band
from returnguard.policy.store import Policy

logger = logging.getLogger("returnguard.chat")

ROUTER_ACTOR = "chat_router"
FLAGGED_MESSAGES_TO_FLAG_SESSION: int = 3

DEFERRAL_RESPONSE: str = (
    "I understand your request. Due to our quality assurance process, this "
    "request will be reviewed by our team within 24 hours. You'll receive an "
    "email update soon."
)

RESPONSES: dict[Intent, str] = {
    Intent.RETURN: (
        "I can help you with your return. Please provide your order number "
        "and the reason for return."
    ),
    Intent.EXCHANGE: (
        "I'd be happy to help with your exchange. What would you like to "
        "exchange and what's your order number?"
    ),
    Intent.SIZE: (
        "Size exchanges are easy! Please share your order number and the "
        "size you'd prefer."
    ),
    Intent.REFUND: (
        "I can assist with your refund request. Please provide your order details."
    ),
    Intent.DAMAGED: (
        "I'm sorry to hear about the damage. Please share photos if possible "
        "and your order number for a quick resolution."
    ),
    Intent.GENERAL_INQUIRY: (
        "How can I help you today? I can assist with returns, exchanges, "
        "and order inquiries."
    ),
}

_ALLOWED: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset({SessionStatus.FLAGGED, SessionStatus.RESOLVED}),
    SessionStatus.FLAGGED: frozenset({SessionStatus.ESCALATED, SessionStatus.RESOLVED}),
    SessionStatus.ESCALATED: frozenset({SessionStatus.RESOLVED}),
    SessionStatus.RESOLVED: frozenset(),
}


def is_high_risk(session: ChatSession, policy: Policy) -> bool:
    return session.risk_score > policy.high_risk_threshold


class ChatRiskRouter:
    def __init__(self, audit: AuditLog) -> None:
        self._audit = audit

    def _status_entry(
        self,
        session: ChatSession,
        target: SessionStatus,
        actor: str,
        reason: str,
        policy: Policy,
        now: datetime,
    ) -> AuditLogEntry:
        if target not in _ALLOWED[session.status]:
            raise InvalidTransition(
                "chat_session", session.session_id, session.status.value, target.value
            )
        return make_entry(
            actor=actor,
            action=f"chat_session_{target.value}",
            target=session.ref,
            reason=reason,
            policy_version=policy.version,
            details={"from_status": session.status.value, "risk_score": session.risk_score},
            timestamp=now,
        )

    def open_session(
        self,
        customer: Customer,
        policy: Policy,
        now: datetime | None = None,
    ) -> ChatSession:
        """Start a session, snapshotting the customer's current risk score."""
        now = now or datetime.now(timezone.utc)
        session = ChatSession(
            session_id=f"CHAT-{uuid4().hex[:8].upper()}",
            customer_id=customer.customer_id,
            risk_score=customer.risk_score,
            started_at=now,
            last_activity=now,
        )
        self._audit.append(
            make_entry(
                actor=customer.customer_id,
                action="chat_session_opened",
                target=session.ref,
                reason=(
                    f"Risk snapshot {customer.risk_score} "
                    f"({classify_band(customer.risk_score, policy).value})"
                ),
                policy_version=policy.version,
                timestamp=now,
            )
        )
        return session

    def route(
        self,
        session: ChatSession,
        text: str,
        policy: Policy,
        now: datetime | None = None,
    ) -> ChatMessage:
        """
        Route one inbound customer message.

        The caller must hold the session's entity lock.

        Raises:
            ValueError: Empty message text.
            InvalidTransition: The session is resolved.
        """
        if not text or not text.strip():
            raise ValueError("Message text must be non-empty")
        if session.status is SessionStatus.RESOLVED:
            raise InvalidTransition(
                "chat_session", session.session_id, session.status.value, "message"
            )

        now = now or datetime.now(timezone.utc)
        intent = detect_intent(text)
        high_risk = is_high_risk(session, policy)

        message = ChatMessage(
            message_id=f"MSG-{uuid4().hex[:10].upper()}",
            text=text.strip(),
            intent=intent,
            flagged=high_risk,
            response=DEFERRAL_RESPONSE if high_risk else RESPONSES[intent],
            created_at=now,
            order_ref=extract_order_ref(text),
        )

        entries: list[AuditLogEntry] = []
        new_status = session.status

        if high_risk:
            entries.append(
                make_entry(
                    actor=ROUTER_ACTOR,
                    action="chat_message_flagged",
                    target=session.ref,
                    reason=(
                        f"Risk {session.risk_score} above high-risk threshold "
                        f"{policy.high_risk_threshold}; intent {intent.value} deferred"
                    ),
                    policy_version=policy.version,
                    details={"message_id": message.message_id, "intent": intent.value},
                    timestamp=now,
                )
            )

            flagged_total = session.flagged_count + 1
            if (
                session.status is SessionStatus.ACTIVE
                and flagged_total >= FLAGGED_MESSAGES_TO_FLAG_SESSION
            ):
                new_status = SessionStatus.FLAGGED
                entries.append(self._status_entry(
                    session, new_status, ROUTER_ACTOR,
                    f"{flagged_total} flagged messages in session", policy, now,
                ))
            elif session.status is SessionStatus.FLAGGED and wants_escalation(text, intent):
                new_status = SessionStatus.ESCALATED
                entries.append(self._status_entry(
                    session, new_status, ROUTER_ACTOR,
                    f"Escalation trigger on flagged session (intent {intent.value})",
                    policy, now,
                ))

        self._audit.append_many(entries)

        session.messages.append(message)
        session.last_activity = now
        if new_status is not session.status:
            logger.info(
                "Chat %s: %s -> %s", session.session_id, session.status.value, new_status.value,
            )
            session.status = new_status

        logger.info(
            "Chat %s: intent=%s flagged=%s", session.session_id, intent.value, message.flagged,
        )
        return message

    def transition(
        self,
        session: ChatSession,
        target: SessionStatus,
        actor: str,
        reason: str,
        policy: Policy,
        now: datetime | None = None,
    ) -> ChatSession:
        """
        Human-driven status change (resolve, or escalate a flagged session).

        Raises:
            ValueError: Missing reason.
            InvalidTransition: Target not reachable from the current status.
        """
        if not reason or not reason.strip():
            raise ValueError("A reason is required to change a chat session's status")

        now = now or datetime.now(timezone.utc)
        entry = self._status_entry(session, target, actor, reason.strip(), policy, now)
        self._audit.append(entry)

        logger.info(
            "Chat %s: %s -> %s (by %s)",
            session.session_id, session.status.value, target.value, actor,
        )
        session.status = target
        session.last_activity = now
        return session
