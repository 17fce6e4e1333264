# returnguard/chat/__init__.py
# =============================
# Support Chat Routing — ReturnGuard
#
# Responsibility:
#   - Keyword intent detection over a fixed vocabulary
#   - {intent, risk band} → canned response lookup
#   - Chat session state machine (active / flagged / escalated / resolved)
#
# Every response is a template; no model is called.

from returnguard.chat.intent import (  # noqa: F401
    detect_intent,
    extract_order_ref,
    wants_escalation,
)
from returnguard.chat.router import (  # noqa: F401
    DEFERRAL_RESPONSE,
    RESPONSES,
    ChatRiskRouter,
)
