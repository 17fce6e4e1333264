# returnguard/returns/__init__.py
# ================================
# Return Decisions — ReturnGuard
#
# Owns the return state machine and the fusion of risk band + image verdict.

from returnguard.returns.engine import (  # noqa: F401
    ENGINE_ACTOR,
    ReturnDecisionEngine,
    score_default,
)
